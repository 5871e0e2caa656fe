"""Session calculation cache.

Each form-filling session gets its own table of formula results so every
shortcode on screen and in the PDF sees the same value for a formula. A
formula is computed at most once per session; concurrent requests for the
same formula wait for the first computation instead of repeating it.
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict

from .catalog import name_key

logger = logging.getLogger(__name__)


class ResolutionTimeout(Exception):
    """Raised when a resolution budget runs out before a value is available."""


class CalculationEntry(BaseModel):
    """A computed formula value; immutable once stored."""

    model_config = ConfigDict(frozen=True)

    formula_name: str
    value: float | str | bool
    unit: str | None = None
    computed_at: datetime


Compute = Callable[[], tuple[Any, str | None]]


class _SessionTable:
    """One session's entries plus its in-flight computations."""

    def __init__(self, now: float) -> None:
        self.lock = threading.Lock()
        self.entries: dict[str, CalculationEntry] = {}
        self.in_flight: dict[str, Future] = {}
        self.last_used = now


class SessionCache:
    """Per-session memoisation of formula results with single-flight semantics.

    Sessions are partitioned: each has its own lock, so work in one session
    never waits on another. Finding an existing partition takes no lock; the
    registry lock is held only to create a partition or to run the idle
    sweep, which happens at most once per ``sweep_interval_seconds``.
    """

    def __init__(
        self,
        session_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: float | None = None,
    ):
        self.session_ttl_seconds = session_ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds or min(session_ttl_seconds or 60.0, 60.0)
        self._clock = clock
        self._sessions: dict[str, _SessionTable] = {}
        self._registry_lock = threading.Lock()
        self._next_sweep = clock() + self.sweep_interval_seconds

    def _table(self, session_id: str, create: bool) -> _SessionTable | None:
        now = self._clock()
        if self.session_ttl_seconds and now >= self._next_sweep:
            self._sweep(now)

        table = self._sessions.get(session_id)
        if table is None and create:
            with self._registry_lock:
                table = self._sessions.get(session_id)
                if table is None:
                    table = self._sessions[session_id] = _SessionTable(now)
                    logger.debug("session table created: %s", session_id)
        if table is not None:
            table.last_used = now
        return table

    def _sweep(self, now: float) -> None:
        """Drop partitions idle for longer than the TTL; runs at most once per interval."""
        with self._registry_lock:
            if now < self._next_sweep:
                return
            self._next_sweep = now + self.sweep_interval_seconds
            cutoff = now - self.session_ttl_seconds
            stale = [sid for sid, table in self._sessions.items() if table.last_used < cutoff]
            for sid in stale:
                del self._sessions[sid]
                logger.info("session table expired: %s", sid)

    def get_or_compute(
        self,
        session_id: str,
        formula_name: str,
        compute: Compute,
        timeout: float | None = None,
    ) -> CalculationEntry:
        """Return the session's entry for a formula, computing it on first use.

        ``compute`` returns ``(value, unit)``. If it raises, nothing is
        stored and every waiting caller sees the same exception.

        Raises:
            ResolutionTimeout: If another caller's in-flight computation does
                not finish within ``timeout`` seconds
        """
        key = name_key(formula_name)
        table = self._table(session_id, create=True)

        with table.lock:
            entry = table.entries.get(key)
            if entry is not None:
                logger.debug("cache hit: %s/%s", session_id, formula_name)
                return entry
            future = table.in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                table.in_flight[key] = future

        if not owner:
            logger.debug("waiting on in-flight computation: %s/%s", session_id, formula_name)
            try:
                return future.result(timeout=timeout)
            except FutureTimeout as e:
                raise ResolutionTimeout(
                    f"timed out waiting for {formula_name!r} in session {session_id}"
                ) from e

        logger.debug("cache miss: %s/%s", session_id, formula_name)
        try:
            value, unit = compute()
        except BaseException as e:
            with table.lock:
                table.in_flight.pop(key, None)
            future.set_exception(e)
            raise

        entry = CalculationEntry(
            formula_name=formula_name,
            value=value,
            unit=unit,
            computed_at=datetime.now(timezone.utc),
        )
        with table.lock:
            table.entries[key] = entry
            table.in_flight.pop(key, None)
        future.set_result(entry)
        return entry

    def lookup(self, session_id: str, formula_name: str) -> CalculationEntry | None:
        """Peek at a stored entry without computing anything."""
        table = self._table(session_id, create=False)
        if table is None:
            return None
        with table.lock:
            return table.entries.get(name_key(formula_name))

    def snapshot(self, session_id: str) -> dict[str, CalculationEntry]:
        """Read-only copy of a session's table, keyed by formula name."""
        table = self._table(session_id, create=False)
        if table is None:
            return {}
        with table.lock:
            return {entry.formula_name: entry for entry in table.entries.values()}

    def invalidate(self, session_id: str) -> None:
        """Drop a session's whole table (session restarted, submitted or abandoned)."""
        with self._registry_lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.info("session table cleared: %s", session_id)

    def sessions(self) -> list[str]:
        with self._registry_lock:
            return list(self._sessions)

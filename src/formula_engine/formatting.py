"""Value formatting for rendered shortcodes.

A format spec is ``kind`` optionally followed by options, e.g.
``currency``, ``currency:decimals=2``, ``number:decimals=0,suffix= kWh``.

Rounding is half-up (halves away from zero) on the decimal representation of
the value, so 1842.5 renders as 1843 and 2.675 with two decimals as 2.68.
"""

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import BaseModel

from .config import Settings
from .evaluator import is_numeric, to_number

KINDS = {"text", "number", "integer", "currency", "percentage", "date"}

DEFAULT_DECIMALS = {"currency": 0, "integer": 0, "percentage": 1}

MAX_DECIMALS = 20


class FormatError(ValueError):
    pass


class FormatSpec(BaseModel):
    kind: str = "text"
    decimals: int | None = None
    prefix: str = ""
    suffix: str = ""
    symbol: str | None = None
    date_format: str | None = None
    fallback: str | None = None


def parse_format_spec(text: str | None) -> FormatSpec | None:
    """Parse 'kind[:opt=value[,opt=value...]]'. Returns None for empty input."""
    if text is None or not text.strip():
        return None

    kind, _, rest = text.partition(":")
    kind = kind.strip().lower()
    if kind not in KINDS:
        raise FormatError(f"unknown format: {kind!r}")

    options: dict[str, Any] = {"kind": kind}
    for part in rest.replace(",", ":").split(":") if rest else []:
        if not part.strip():
            continue
        key, sep, value = part.partition("=")
        key = key.strip().lower()
        if not sep:
            raise FormatError(f"format option without value: {part!r}")
        if key == "decimals":
            try:
                options["decimals"] = int(value)
            except ValueError:
                raise FormatError(f"decimals must be an integer, got {value!r}") from None
            if not 0 <= options["decimals"] <= MAX_DECIMALS:
                raise FormatError(f"decimals must be between 0 and {MAX_DECIMALS}, got {value!r}")
        elif key == "format":
            options["date_format"] = value.strip()
        elif key in ("prefix", "suffix", "symbol", "fallback"):
            options[key] = value
        else:
            raise FormatError(f"unknown format option: {key!r}")

    return FormatSpec(**options)


def round_half_up(value: float, decimals: int) -> Decimal:
    quantum = Decimal(1).scaleb(-decimals)
    rounded = Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    if rounded == 0:
        rounded = abs(rounded)
    return rounded


def format_number(value: float, decimals: int, settings: Settings, trim: bool = False) -> str:
    rounded = round_half_up(value, decimals)
    grouping = "," if settings.thousands_separator else ""
    text = format(rounded, f"{grouping}.{decimals}f")
    if trim and "." in text:
        text = text.rstrip("0").rstrip(".")
    # swap through a sentinel so the two separators can't collide
    return (
        text.replace(",", "\0")
        .replace(".", settings.decimal_separator)
        .replace("\0", settings.thousands_separator)
    )


def _as_date(value: Any) -> date | None:
    if isinstance(value, (date, datetime)):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def _format_date(value: Any, spec: FormatSpec, settings: Settings) -> str:
    when = _as_date(value)
    if when is None:
        return str(value)
    match spec.date_format:
        case "iso":
            return when.strftime("%Y-%m-%d")
        case "long":
            return f"{when.day} {when.strftime('%B')} {when.year}"
        case None:
            return when.strftime(settings.date_format)
        case pattern:
            return when.strftime(pattern)


def format_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_value(value: Any, spec: FormatSpec | None, settings: Settings | None = None) -> str:
    """Render a resolved value according to a format spec."""
    settings = settings or Settings()
    spec = spec or FormatSpec()
    if value is None:
        return ""

    kind = spec.kind
    if kind in ("number", "integer", "currency", "percentage") and not is_numeric(value):
        # non-numeric values pass through untouched
        kind = "text"

    match kind:
        case "currency" | "integer":
            decimals = spec.decimals if spec.decimals is not None else 0
            text = format_number(to_number(value), decimals, settings)
            if spec.symbol:
                text = f"{text} {spec.symbol}"
        case "number":
            if spec.decimals is None:
                text = format_number(to_number(value), 2, settings, trim=True)
            else:
                text = format_number(to_number(value), spec.decimals, settings)
        case "percentage":
            decimals = spec.decimals if spec.decimals is not None else DEFAULT_DECIMALS["percentage"]
            text = format_number(to_number(value), decimals, settings) + " %"
        case "date":
            text = _format_date(value, spec, settings)
        case _:
            text = format_text(value)

    return f"{spec.prefix}{text}{spec.suffix}"

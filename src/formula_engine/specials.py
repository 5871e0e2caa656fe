"""Special shortcode functions ([special:name] and the bare [CURRENT_DATE] style tokens)."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from .config import Settings
from .evaluator import VariableBindings


@dataclass
class SpecialContext:
    session_id: str
    bindings: VariableBindings
    now: datetime
    settings: Settings

    def field(self, *names: str) -> str:
        """First non-empty binding among names, as text."""
        for name in names:
            value = self.bindings.get(name)
            if value not in (None, ""):
                return str(value)
        return ""


SpecialFunction = Callable[[SpecialContext], str]


def current_date(ctx: SpecialContext) -> str:
    return ctx.now.strftime(ctx.settings.date_format)


def current_time(ctx: SpecialContext) -> str:
    return ctx.now.strftime(ctx.settings.time_format)


def calculation_number(ctx: SpecialContext) -> str:
    id_part = ctx.session_id[:6].upper() or "000001"
    return f"{ctx.now.year}-{id_part}"


def full_name(ctx: SpecialContext) -> str:
    joined = " ".join(p for p in (ctx.field("first_name"), ctx.field("last_name")) if p)
    return joined or ctx.field("full_name", "name")


def full_address(ctx: SpecialContext) -> str:
    street = ctx.field("street_address", "address")
    locality = " ".join(p for p in (ctx.field("postcode"), ctx.field("city")) if p)
    return ", ".join(p for p in (street, locality) if p)


BUILTIN_SPECIALS: dict[str, SpecialFunction] = {
    "current_date": current_date,
    "current_time": current_time,
    "calculation_number": calculation_number,
    "full_name": full_name,
    "full_address": full_address,
}

"""Typed template values and their locale-aware rendering.

Values flowing through template resolution come from three places (the
caller, the CRM, the clock) and are kept typed until substitution, where
``format_value`` turns each one into the text that lands in the HTML.
"""

import json
import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from markupsafe import escape

VariableValue = (
    str | int | float | Decimal | bool | date | datetime | list | dict | None
)


@dataclass(frozen=True)
class LocaleFormat:
    """Number, date and wording conventions for one locale."""

    code: str
    thousands_sep: str
    decimal_sep: str
    date_pattern: str
    time_pattern: str
    yes: str
    no: str
    months: tuple[str, ...]


LOCALES: dict[str, LocaleFormat] = {
    "es-MX": LocaleFormat(
        code="es-MX",
        thousands_sep=",",
        decimal_sep=".",
        date_pattern="%d/%m/%Y",
        time_pattern="%H:%M:%S",
        yes="Sí",
        no="No",
        months=(
            "enero", "febrero", "marzo", "abril", "mayo", "junio",
            "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
        ),
    ),
    "es-ES": LocaleFormat(
        code="es-ES",
        thousands_sep=".",
        decimal_sep=",",
        date_pattern="%d/%m/%Y",
        time_pattern="%H:%M:%S",
        yes="Sí",
        no="No",
        months=(
            "enero", "febrero", "marzo", "abril", "mayo", "junio",
            "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
        ),
    ),
    "en-US": LocaleFormat(
        code="en-US",
        thousands_sep=",",
        decimal_sep=".",
        date_pattern="%m/%d/%Y",
        time_pattern="%I:%M:%S %p",
        yes="Yes",
        no="No",
        months=(
            "January", "February", "March", "April", "May", "June",
            "July", "August", "September", "October", "November", "December",
        ),
    ),
}

DEFAULT_LOCALE = "es-MX"


def get_locale(code: str | None) -> LocaleFormat:
    """Locale conventions for ``code``, falling back to es-MX."""
    return LOCALES.get(code or DEFAULT_LOCALE, LOCALES[DEFAULT_LOCALE])


def format_number(value: int | float | Decimal, locale: LocaleFormat) -> str:
    """Group thousands and keep at most three fraction digits."""
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    if isinstance(value, int):
        text = f"{value:,}"
    else:
        text = f"{value:,.3f}".rstrip("0").rstrip(".")
    if locale.thousands_sep == "," and locale.decimal_sep == ".":
        return text
    # Swap through a placeholder so the two separators do not collide
    return (
        text.replace(",", "\x00")
        .replace(".", locale.decimal_sep)
        .replace("\x00", locale.thousands_sep)
    )


def format_date(value: date, locale: LocaleFormat) -> str:
    return value.strftime(locale.date_pattern)


def format_datetime(value: datetime, locale: LocaleFormat) -> str:
    return f"{value.strftime(locale.date_pattern)}, {value.strftime(locale.time_pattern)}"


def month_name(month: int, locale: LocaleFormat) -> str:
    return locale.months[month - 1]


def format_value(value: VariableValue, locale: LocaleFormat) -> str:
    """Render a typed value as plain text.

    bool is checked before the numeric branch since ``True`` is an int,
    and datetime before date for the same reason.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return locale.yes if value else locale.no
    if isinstance(value, (int, float, Decimal)):
        return format_number(value, locale)
    if isinstance(value, datetime):
        return format_datetime(value, locale)
    if isinstance(value, date):
        return format_date(value, locale)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render_value(value: VariableValue, locale: LocaleFormat) -> str:
    """Text for ``value`` as it is inserted into HTML (escaped)."""
    return str(escape(format_value(value, locale)))

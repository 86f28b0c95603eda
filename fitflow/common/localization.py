"""Dates and amounts rendered for people, in the trainer's locale."""

from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from babel import Locale, UnknownLocaleError
from babel.dates import format_skeleton
from babel.numbers import format_currency

from fitflow.common.logging import logger


DEFAULT_LOCALE = "en-US"


def parse_locale(tag: str | None) -> Locale:
    """Babel locale for a BCP 47 tag such as `en-AU`; unknown tags fall back to `en-US`."""

    try:
        return Locale.parse((tag or DEFAULT_LOCALE).replace("_", "-"), sep="-")
    except (UnknownLocaleError, ValueError):
        logger.warning("unknown locale=%s, falling back to %s", tag, DEFAULT_LOCALE)
        return Locale.parse(DEFAULT_LOCALE, sep="-")


def format_short_date(value: date | datetime, locale_tag: str | None, timezone: str | None = None) -> str:
    """Abbreviated month, day and year, e.g. `Mar 1, 2026` for en-US or `1 Mar 2026` for en-AU.

    Aware datetimes are shown on the calendar day of `timezone` (UTC when unset).
    """

    if isinstance(value, datetime):
        value = value.astimezone(ZoneInfo(timezone or "UTC")).date()
    return format_skeleton("yMMMd", value, locale=parse_locale(locale_tag))


def format_local_money(amount: Decimal, currency: str, locale_tag: str | None) -> str:
    return format_currency(amount, currency.upper(), locale=parse_locale(locale_tag))

"""Country and currency specific transaction fee math.

Pure functions over static tables. All amounts are `Decimal`; results are rounded
half-up to the currency's smallest unit.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal


FeeType = Literal["domestic", "international", "european", "nonEuropean"]


class CountryNotSupportedError(Exception):
    def __init__(self, country: str = "") -> None:
        super().__init__(f"Country not supported: {country}" if country else "Country not supported")
        self.country = country


class CurrencyNotSupportedError(Exception):
    def __init__(self, currency: str = "") -> None:
        super().__init__(f"Currency not supported: {currency}" if currency else "Currency not supported")
        self.currency = currency


@dataclass(frozen=True)
class FeeTier:
    percentage_fee: Decimal
    fixed_fee: Decimal
    stripe_fixed_fee: Decimal
    stripe_percentage_fee: Decimal


@dataclass(frozen=True)
class CountryFees:
    currency: str
    domestic: FeeTier
    international: FeeTier
    domestic_is_european: bool = False


@dataclass(frozen=True)
class FeeQuote:
    percentage_fee: Decimal
    fixed_fee: Decimal
    stripe_fixed_fee: Decimal
    stripe_percentage_fee: Decimal
    fee_type: FeeType


@dataclass(frozen=True)
class CurrencyLimits:
    minimum_in_smallest_unit: int
    maximum_in_smallest_unit: int
    smallest_unit_decimals: int


def _tier(percentage: str, fixed: str, stripe_fixed: str, stripe_percentage: str) -> FeeTier:
    # Percentages are written as whole-number percents.
    return FeeTier(
        percentage_fee=Decimal(percentage).scaleb(-2),
        fixed_fee=Decimal(fixed),
        stripe_fixed_fee=Decimal(stripe_fixed),
        stripe_percentage_fee=Decimal(stripe_percentage).scaleb(-2),
    )


# https://stripe.com/docs/currencies#european-credit-cards
EUROPEAN_COUNTRIES = frozenset(
    {
        "AD", "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FO", "FI", "FR", "DE", "GI", "GR", "GL",
        "GG", "VA", "HU", "IS", "IE", "IM", "IL", "IT", "JE", "LV", "LI", "LT", "LU", "MK", "MT", "MC",
        "ME", "NL", "NO", "PL", "PT", "RO", "PM", "SM", "RS", "SK", "SI", "ES", "SJ", "SE", "TR", "GB",
    }
)

_EURO_ZONE_TIERS = dict(
    domestic=_tier("1.95", ".3", ".25", "1.4"),
    international=_tier("3.5", ".3", ".25", "2.9"),
    domestic_is_european=True,
)

COUNTRY_FEES: dict[str, CountryFees] = {
    "AU": CountryFees(
        currency="AUD",
        domestic=_tier("2.4", ".4", ".3", "1.75"),
        international=_tier("3.9", ".4", ".3", "2.9"),
    ),
    "CA": CountryFees(
        currency="CAD",
        domestic=_tier("3.5", ".4", ".3", "2.9"),
        international=_tier("4.5", ".4", ".3", "3.5"),
    ),
    "US": CountryFees(
        currency="USD",
        domestic=_tier("3.5", ".4", ".3", "2.9"),
        international=_tier("4.5", ".4", ".3", "3.9"),
    ),
    "GB": CountryFees(
        currency="GBP",
        domestic=_tier("1.95", ".3", ".2", "1.4"),
        international=_tier("3.5", ".3", ".2", "2.9"),
        domestic_is_european=True,
    ),
    "NZ": CountryFees(
        currency="NZD",
        domestic=_tier("3.5", ".4", ".3", "2.9"),
        international=_tier("3.5", ".4", ".3", "2.9"),
    ),
    "IE": CountryFees(currency="EUR", **_EURO_ZONE_TIERS),
    "DE": CountryFees(currency="EUR", **_EURO_ZONE_TIERS),
    "LU": CountryFees(currency="EUR", **_EURO_ZONE_TIERS),
    "NL": CountryFees(currency="EUR", **_EURO_ZONE_TIERS),
    "SG": CountryFees(
        currency="SGD",
        domestic=_tier("3.9", ".5", ".5", "3.4"),
        international=_tier("3.9", ".5", ".5", "3.4"),
    ),
    "CH": CountryFees(
        currency="CHF",
        domestic=_tier("3.4", ".35", ".3", "2.9"),
        international=_tier("3.4", ".35", ".3", "2.9"),
    ),
    "NO": CountryFees(
        currency="NOK",
        domestic=_tier("2.9", "2.3", "2", "2.4"),
        international=_tier("3.4", "2.3", "2", "2.9"),
    ),
    "DK": CountryFees(
        currency="DKK",
        domestic=_tier("1.9", "1.9", "1.8", "1.4"),
        international=_tier("3.5", "1.9", "1.8", "2.9"),
        domestic_is_european=True,
    ),
    "SE": CountryFees(
        currency="SEK",
        domestic=_tier("1.9", "1.9", "1.8", "1.4"),
        international=_tier("3.5", "1.9", "1.8", "2.9"),
        domestic_is_european=True,
    ),
}

CURRENCY_LIMITS: dict[str, CurrencyLimits] = {
    "USD": CurrencyLimits(50, 99999999, 2),
    "AUD": CurrencyLimits(50, 99999999, 2),
    "BRL": CurrencyLimits(50, 99999999, 2),
    "CAD": CurrencyLimits(50, 99999999, 2),
    "CHF": CurrencyLimits(50, 99999999, 2),
    "DKK": CurrencyLimits(250, 99999999, 2),
    "EUR": CurrencyLimits(50, 99999999, 2),
    "GBP": CurrencyLimits(30, 99999999, 2),
    "HKD": CurrencyLimits(400, 99999999, 2),
    "JPY": CurrencyLimits(50, 99999999, 0),
    "MXN": CurrencyLimits(1000, 99999999, 2),
    "NOK": CurrencyLimits(300, 99999999, 2),
    "NZD": CurrencyLimits(50, 99999999, 2),
    "SEK": CurrencyLimits(300, 99999999, 2),
    "SGD": CurrencyLimits(50, 99999999, 2),
}


def country_currency(country: str) -> str:
    """Canonical charge currency for a supported country."""

    data = COUNTRY_FEES.get(country.upper())
    if data is None:
        raise CountryNotSupportedError(country)
    return data.currency


def currency_limits(currency: str) -> CurrencyLimits:
    limits = CURRENCY_LIMITS.get(currency.upper())
    if limits is None:
        raise CurrencyNotSupportedError(currency)
    return limits


def get_fee(card_country: str, charge_country: str, currency: str) -> FeeQuote:
    """Resolve the fee tier for a card charged in `charge_country`."""

    charge_country = charge_country.upper()
    card_country = card_country.upper()
    currency = currency.upper()
    data = COUNTRY_FEES.get(charge_country)
    if data is None:
        raise CountryNotSupportedError(charge_country)
    if currency != data.currency:
        raise CurrencyNotSupportedError(currency)

    if data.domestic_is_european:
        if card_country in EUROPEAN_COUNTRIES:
            tier, fee_type = data.domestic, "european"
        else:
            tier, fee_type = data.international, "nonEuropean"
    elif card_country == charge_country:
        tier, fee_type = data.domestic, "domestic"
    else:
        tier, fee_type = data.international, "international"

    return FeeQuote(
        percentage_fee=tier.percentage_fee,
        fixed_fee=tier.fixed_fee,
        stripe_fixed_fee=tier.stripe_fixed_fee,
        stripe_percentage_fee=tier.stripe_percentage_fee,
        fee_type=fee_type,
    )


def round_to_currency(amount: Decimal, currency: str) -> Decimal:
    decimals = currency_limits(currency).smallest_unit_decimals
    return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


def calculate_fee(card_country: str, charge_country: str, currency: str, amount: Decimal) -> Decimal:
    """Merchant-facing fee: `amount * percentage + fixed`, rounded to the smallest unit."""

    quote = get_fee(card_country, charge_country, currency)
    return round_to_currency(Decimal(amount) * quote.percentage_fee + quote.fixed_fee, currency)


def calculate_stripe_fee(card_country: str, charge_country: str, currency: str, amount: Decimal) -> Decimal:
    """Processor pass-through fee for the same charge."""

    quote = get_fee(card_country, charge_country, currency)
    return round_to_currency(Decimal(amount) * quote.stripe_percentage_fee + quote.stripe_fixed_fee, currency)


def to_smallest_unit(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to an integer count of the currency's smallest unit."""

    decimals = currency_limits(currency).smallest_unit_decimals
    return int(round_to_currency(Decimal(amount), currency).scaleb(decimals))


def from_smallest_unit(amount: int, currency: str) -> Decimal:
    """Inverse of `to_smallest_unit`: 1234 USD cents is `Decimal("12.34")`."""

    return Decimal(amount).scaleb(-currency_limits(currency).smallest_unit_decimals)


def application_fee_amount(application_fee: Decimal, stripe_fee: Decimal, account_type: str) -> Decimal:
    """Net platform fee for a connected account.

    Standard accounts pay the processor directly, so the processor's own fee is
    subtracted from the platform fee; custom accounts are charged on the platform
    and keep the full fee.
    """

    if account_type == "standard":
        return application_fee - stripe_fee
    return application_fee


_CURRENCY_SYMBOLS = {
    "AUD": "$",
    "CAD": "$",
    "NZD": "$",
    "SGD": "$",
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
}


def format_money(amount: Decimal, currency: str) -> str:
    """Human readable amount for notification text, e.g. `$1,234.50` or `CHF 12.00`."""

    currency = currency.upper()
    decimals = currency_limits(currency).smallest_unit_decimals
    number = f"{round_to_currency(Decimal(amount), currency):,.{decimals}f}"
    symbol = _CURRENCY_SYMBOLS.get(currency)
    return f"{symbol}{number}" if symbol else f"{currency} {number}"

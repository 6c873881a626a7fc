"""Locale service for currency and date formatting.

Single source of truth for how money and dates are rendered in error
messages, reports and notifications. Uses babel.

Configuration (AppConfig, read once at import):
    locale / LOCALE (default: en_AU) - number/date formatting
    currency / CURRENCY (default: derived from the locale territory, AUD for en_AU)

Example:
    >>> from src.services.locale_service import format_amount
    >>> format_amount(Decimal("1234.5"))
    '$1,234.50'
"""

import logging
from datetime import date
from decimal import Decimal

from babel import Locale, UnknownLocaleError
from babel.dates import format_date as babel_format_date
from babel.numbers import (
    format_currency as babel_format_currency,
)
from babel.numbers import (
    format_decimal as babel_format_decimal,
)
from babel.numbers import (
    get_currency_symbol as babel_get_currency_symbol,
)
from babel.numbers import (
    get_territory_currencies,
)

from src.services.config import load_config

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en_AU"
DEFAULT_CURRENCY = "AUD"


def _get_locale(locale_str: str) -> str:
    """Validate the configured locale, falling back to the default."""
    try:
        Locale.parse(locale_str)
        return locale_str
    except (UnknownLocaleError, ValueError) as e:
        logger.warning("Invalid LOCALE '%s': %s. Falling back to '%s'", locale_str, e, DEFAULT_LOCALE)
        return DEFAULT_LOCALE


def _get_currency(locale_str: str, explicit: str | None = None) -> str:
    """The configured currency, else derived from the locale territory."""
    if explicit:
        return explicit.upper()
    try:
        territory = Locale.parse(locale_str).territory
        if territory:
            currencies = get_territory_currencies(territory)
            if currencies:
                return currencies[0]
    except (UnknownLocaleError, ValueError) as e:
        logger.warning("Could not derive currency from locale '%s': %s", locale_str, e)
    return DEFAULT_CURRENCY


# Module-level constants (computed once at import)
_config = load_config()
LOCALE = _get_locale(_config.locale)
CURRENCY = _get_currency(LOCALE, _config.currency)


def get_currency_code() -> str:
    """ISO 4217 currency code (e.g., 'AUD')."""
    return CURRENCY


def get_currency_symbol() -> str:
    """Currency symbol for the current locale (e.g., '$')."""
    return babel_get_currency_symbol(CURRENCY, locale=LOCALE)


def format_amount(amount: Decimal | int | float, include_symbol: bool = True) -> str:
    """Format monetary amount according to locale.

    Args:
        amount: Amount to format (Decimal keeps exact cents)
        include_symbol: Whether to include currency symbol (default True)

    Returns:
        Formatted currency string (e.g., '$1,234.56')
    """
    if include_symbol:
        return babel_format_currency(amount, CURRENCY, locale=LOCALE)
    return babel_format_decimal(amount, format="#,##0.00", locale=LOCALE)


def format_local_date(value: date, format: str = "medium") -> str:
    """Format a date according to locale (e.g., '1 Jul 2024')."""
    return babel_format_date(value, format=format, locale=LOCALE)


def get_locale_info() -> dict:
    """Current locale configuration for debugging/display."""
    return {
        "locale": LOCALE,
        "currency_code": CURRENCY,
        "currency_symbol": get_currency_symbol(),
    }


__all__ = [
    "LOCALE",
    "CURRENCY",
    "get_currency_code",
    "get_currency_symbol",
    "format_amount",
    "format_local_date",
    "get_locale_info",
]

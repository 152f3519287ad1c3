"""
Module for formatting currency values using Babel.

"""
import logging
from typing import List

from babel import Locale, UnknownLocaleError, numbers

CURRENCY_MAP: dict[str, str] = {
    'US': 'USD',
    'GB': 'GBP',
    'DE': 'EUR',
    'FR': 'EUR',
    'BE': 'EUR',
    'IT': 'EUR',
    'ES': 'EUR',
    'JP': 'JPY',
    'CA': 'CAD',
    'AU': 'AUD',
    'IN': 'INR',
    'BR': 'BRL',
    'CN': 'CNY',
    'KR': 'KRW',
    'DK': 'DKK',
    'SE': 'SEK',
    'NO': 'NOK',
    'FI': 'EUR',
    'HU': 'HUF',
    'MX': 'MXN',
    'ZA': 'ZAR',
    'NL': 'EUR',
}

#: Locales accepted by the metadata ``locale`` setting
LOCALE_MAP: List[str] = [
    'en_US',
    'en_GB',
    'en_AU',
    'en_CA',
    'en_IN',
    'de_DE',
    'es_ES',
    'es_MX',
    'fr_FR',
    'hu_HU',
    'it_IT',
    'ja_JP',
    'nl_NL',
    'pt_BR',
    'sv_SE',
]


def get_currency_from_locale(locale: str) -> str:
    """
    Retrieve the default currency code based on the locale's territory.

    Args:
        locale (str): Locale string, e.g. 'fr_FR'.

    Returns:
        str: Currency code such as 'EUR'. Defaults to 'USD' if the territory is unknown.
    """
    parts = locale.split('_')
    if len(parts) < 2:
        return 'USD'
    return CURRENCY_MAP.get(parts[1], 'USD')


def format_currency_value(value: float, locale: str) -> str:
    """
    Format a float as a currency string based on the locale's default currency.

    Args:
        value (float): The numeric value to be formatted.
        locale (str): Locale string, e.g. 'fr_FR'.

    Returns:
        str: The formatted currency string.
    """
    try:
        currency_code = get_currency_from_locale(locale)
        return numbers.format_currency(value, currency=currency_code, locale=Locale.parse(locale))
    except (ValueError, TypeError, UnknownLocaleError) as ex:
        logging.debug(f'Could not format currency {value!r} for locale "{locale}": {ex}')
        return f'{value:.2f}'

from collections import namedtuple
from decimal import Decimal

CurrencyInfo = namedtuple("CurrencyInfo", ["code", "multiplier", "country_code"])

DEFAULT_CURRENCY = CurrencyInfo("USD", Decimal("1"), "US")

# Catalog prices are kept in USD. Checking out from one of these countries
# charges in local currency, scaled by a fixed multiplier. First match wins.
COUNTRY_CURRENCIES = (
    ("rwanda", CurrencyInfo("RWF", Decimal("1000"), "RW")),
    ("kenya", CurrencyInfo("KES", Decimal("130"), "KE")),
    ("uganda", CurrencyInfo("UGX", Decimal("3700"), "UG")),
    ("tanzania", CurrencyInfo("TZS", Decimal("2500"), "TZ")),
    ("burundi", CurrencyInfo("BIF", Decimal("2800"), "BI")),
    ("nigeria", CurrencyInfo("NGN", Decimal("1500"), "NG")),
    ("ghana", CurrencyInfo("GHS", Decimal("12"), "GH")),
    ("south africa", CurrencyInfo("ZAR", Decimal("18"), "ZA")),
    ("malawi", CurrencyInfo("MWK", Decimal("1700"), "MW")),
    ("zambia", CurrencyInfo("ZMW", Decimal("25"), "ZM")),
)


def resolve_currency(location):
    """Map a free-text country or location to the currency to charge in.

    Matching is a case-insensitive substring search, so "Kigali, Rwanda"
    resolves like "Rwanda". Unknown or empty locations fall back to USD.
    """
    if not location:
        return DEFAULT_CURRENCY
    needle = str(location).strip().lower()
    for country, info in COUNTRY_CURRENCIES:
        if country in needle:
            return info
    return DEFAULT_CURRENCY

from decimal import Decimal

DEFAULT_CURRENCY = "USD"

# Stripe sends these amounts in whole units (JPY 1000 means 1000 yen).
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF",
        "CLP",
        "DJF",
        "GNF",
        "JPY",
        "KMF",
        "KRW",
        "MGA",
        "PYG",
        "RWF",
        "UGX",
        "VND",
        "VUV",
        "XAF",
        "XOF",
        "XPF",
    }
)

# Amounts in thousandths.
THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "JOD", "KWD", "OMR", "TND"})


def normalize_currency(code: str | None, default: str = DEFAULT_CURRENCY) -> str:
    normalized = (code or "").strip().upper()
    return normalized or default


def minor_unit_exponent(code: str | None) -> int:
    normalized = normalize_currency(code)
    if normalized in ZERO_DECIMAL_CURRENCIES:
        return 0
    if normalized in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def to_major_units(amount: int, code: str | None) -> Decimal:
    """Convert a provider amount (smallest currency unit) into major units."""
    exponent = minor_unit_exponent(code)
    return Decimal(int(amount)).scaleb(-exponent)


def format_amount(amount: int, code: str | None) -> str:
    exponent = minor_unit_exponent(code)
    if exponent == 0:
        return str(int(amount))
    return f"{to_major_units(amount, code):.{exponent}f}"

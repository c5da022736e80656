"""Money display helpers. Amounts are integers in minor units (cents)."""

CURRENCY_SYMBOLS = {"usd": "$", "eur": "€", "gbp": "£"}


def format_amount(amount: int | None, currency: str = "usd") -> str:
    """Render minor units as a display amount, e.g. ``$12.50``."""
    if amount is None:
        return ""
    symbol = CURRENCY_SYMBOLS.get(currency.lower(), f"{currency.upper()} ")
    return f"{symbol}{amount / 100:.2f}"

"""
Currency helpers for cross-currency matching.
"""

from typing import Dict, List, Optional


def anchor_currency(currency: str, pegged: Dict[str, List[str]]) -> str:
    """Return the anchor a pegged currency trades at par with (or itself)."""
    code = (currency or "").upper()
    for anchor, members in pegged.items():
        if code in members:
            return anchor
    return code


def currencies_equivalent(a: str, b: str, pegged: Dict[str, List[str]]) -> bool:
    """Same currency, or both at a fixed 1:1 parity with the same anchor."""
    return anchor_currency(a, pegged) == anchor_currency(b, pegged)


def get_rate(from_currency: str, to_currency: str, rates: Dict[str, float],
             pegged: Dict[str, List[str]]) -> Optional[float]:
    """
    Look up the rate converting `from_currency` into `to_currency`.

    Tries a direct rate, then the inverse, then a cross rate through USD.
    Returns None when no path exists.
    """
    src = anchor_currency(from_currency, pegged)
    dst = anchor_currency(to_currency, pegged)
    if src == dst:
        return 1.0

    direct = rates.get(f"{src}_{dst}")
    if direct:
        return direct
    inverse = rates.get(f"{dst}_{src}")
    if inverse:
        return 1.0 / inverse

    if "USD" not in (src, dst):
        to_usd = get_rate(src, "USD", rates, {})
        from_usd = get_rate("USD", dst, rates, {})
        if to_usd and from_usd:
            return to_usd * from_usd
    return None

"""Money rounding helpers.

Shared by the ledger, insights and exports so every surface rounds amounts
and percentages the same way.
"""

from decimal import Decimal, ROUND_HALF_UP


def round2(value: float) -> float:
    """Round to two decimals, half away from zero."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

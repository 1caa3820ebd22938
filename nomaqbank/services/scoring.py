from decimal import ROUND_HALF_UP, Decimal


def percentage(correct: int, total: int) -> int:
    """Whole percentage rounded half up; 0 for an empty exam."""
    if total <= 0:
        return 0
    value = Decimal(100 * correct) / Decimal(total)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

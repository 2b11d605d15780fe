"""
Fixed-point amount conversion between ledger decimal conventions.

Ethereum tokens use 18 decimals, Sui coins use 9. Conversion is done in
integer arithmetic only; float formatting of token amounts loses precision
well before 18 decimals.
"""

from .models import FixedPoint

MAX_SCALE = 77  # 10**77 already exceeds uint256


def _check_scales(source_scale: int, destination_scale: int) -> None:
    for scale in (source_scale, destination_scale):
        if not 0 <= scale <= MAX_SCALE:
            raise ValueError(f"Scale out of range: {scale}")


def rescale(value: int, source_scale: int, destination_scale: int) -> int:
    """
    Rescale a raw integer amount from one decimal scale to another.

    Scaling down floors toward zero: sub-unit remainders that the
    destination cannot represent are dropped, never rounded up.

    Examples:
        >>> rescale(1_000_000_000_000_000_000, 18, 9)
        1000000000
        >>> rescale(1_999_999_999, 18, 9)
        1
        >>> rescale(5, 9, 18)
        5000000000
    """
    if value < 0:
        raise ValueError(f"Amount must be non-negative: {value}")
    _check_scales(source_scale, destination_scale)

    if destination_scale >= source_scale:
        return value * 10 ** (destination_scale - source_scale)
    return value // 10 ** (source_scale - destination_scale)


def truncated_remainder(value: int, source_scale: int, destination_scale: int) -> int:
    """
    Raw amount (in source units) lost when rescaling down.

    Always 0 when the destination scale is not smaller than the source.
    """
    if value < 0:
        raise ValueError(f"Amount must be non-negative: {value}")
    _check_scales(source_scale, destination_scale)

    if destination_scale >= source_scale:
        return 0
    return value % 10 ** (source_scale - destination_scale)


def to_destination_precision(amount: FixedPoint, destination_scale: int) -> FixedPoint:
    """Convert a FixedPoint to the destination chain's scale (floor toward zero)."""
    return FixedPoint(
        value=rescale(amount.value, amount.scale, destination_scale),
        scale=destination_scale,
    )

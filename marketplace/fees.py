from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeSplit:
    platform_fee: Decimal
    net_to_provider: Decimal


def compute_split(total: Decimal, fee_rate: Decimal) -> FeeSplit:
    """
    Platform fee declared to the gateway for an order total.

    The fee is rounded to cents with ROUND_HALF_UP (half away from zero for
    the positive totals this is called with). The gateway performs the
    actual split at settlement, so the whole total is reported as net.
    """
    fee = (total * fee_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return FeeSplit(platform_fee=fee, net_to_provider=total)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

from __future__ import annotations

from dataclasses import dataclass

from .config import RiskConfig
from .state import AccountView
from .utils import safe_divide


@dataclass(frozen=True)
class TargetPosition:
    """Leader exposure scaled by the copy ratio; what the follower should hold."""

    coin: str
    size: float
    notional_usd: float
    implied_entry_price: float
    implied_leverage: float


def compute_targets(leader: AccountView, risk: RiskConfig) -> list[TargetPosition]:
    """Scale every leader position by `risk.copy_ratio`.

    Order follows the leader's position order. Implied leverage is relative to
    the leader's account value and is 0 when that value is 0.
    """
    account_value = leader.metrics.account_value_usd
    out: list[TargetPosition] = []
    for pos in leader.positions.values():
        size = pos.size * risk.copy_ratio
        notional = abs(size) * pos.entry_price
        out.append(
            TargetPosition(
                coin=pos.coin,
                size=size,
                notional_usd=notional,
                implied_entry_price=pos.entry_price,
                implied_leverage=safe_divide(notional, account_value, 0.0),
            )
        )
    return out

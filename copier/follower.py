from __future__ import annotations

from dataclasses import dataclass

from .config import RiskConfig
from .leader import TargetPosition
from .state import AccountView, PositionSnapshot
from .utils import safe_divide, sign

DEFAULT_DUST_POSITION_SIZE = 1e-9


@dataclass(frozen=True)
class PositionDelta:
    """Follower-side correction for one coin (positive delta = buy)."""

    coin: str
    current: PositionSnapshot | None
    target_size: float
    delta_size: float
    max_notional_usd: float


def notional_cap(follower: AccountView, risk: RiskConfig) -> float:
    """Per-position notional ceiling: the hard cap or the leverage cap on follower equity."""
    return min(risk.max_notional_usd, risk.max_leverage * follower.metrics.account_value_usd)


def compute_deltas(
    follower: AccountView,
    targets: list[TargetPosition],
    risk: RiskConfig,
    *,
    dust_size: float = DEFAULT_DUST_POSITION_SIZE,
) -> list[PositionDelta]:
    """Deltas that move the follower onto `targets` within the risk caps.

    Follower positions the leader no longer holds get a closing delta unless
    they are dust. Targets come first in the order given, closes last.
    """
    cap = notional_cap(follower, risk)
    deltas: list[PositionDelta] = []
    target_coins: set[str] = set()

    for target in targets:
        target_coins.add(target.coin)
        current = follower.positions.get(target.coin)
        allowed_notional = min(target.notional_usd, cap)
        allowed_size = sign(target.size) * safe_divide(allowed_notional, target.implied_entry_price, 0.0)
        current_size = current.size if current is not None else 0.0
        deltas.append(
            PositionDelta(
                coin=target.coin,
                current=current,
                target_size=allowed_size,
                delta_size=allowed_size - current_size,
                max_notional_usd=allowed_notional,
            )
        )

    for coin, pos in follower.positions.items():
        if coin in target_coins:
            continue
        if abs(pos.size) <= dust_size:
            continue
        deltas.append(
            PositionDelta(
                coin=coin,
                current=pos,
                target_size=0.0,
                delta_size=-pos.size,
                max_notional_usd=0.0,
            )
        )

    return deltas

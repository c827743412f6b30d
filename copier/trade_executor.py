"""Follower synchronization passes.

A pass reads both state stores, computes risk-capped deltas and submits one
IOC order per actionable delta in a single batch. It never writes state: the
resulting fills come back through the follower's fill stream and the
reconciliation poll.
"""

from __future__ import annotations

import logging
import math
import threading
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any, Protocol

from exchange.client import OrderDescriptor, OrderSubmissionError, order_statuses
from exchange.meta import MarketMetadataCache, UnknownMarketError, round_size

from .config import RiskConfig
from .follower import DEFAULT_DUST_POSITION_SIZE, PositionDelta, compute_deltas
from .leader import compute_targets
from .state import AccountStateStore
from .utils import clamp, now_ms, sign

logger = logging.getLogger(__name__)

# Minimum absolute delta that is worth an order.
MIN_ABS_DELTA = 1e-6

# Limit price may not stray outside [0.1x, 10x] of the reference price.
PRICE_CLAMP_LO = 0.1
PRICE_CLAMP_HI = 10.0

# Hyperliquid perp tick rules: 5 significant figures, at most 6 - szDecimals decimals.
PRICE_SIG_FIGS = 5
MAX_PERP_PRICE_DECIMALS = 6


class OrderClient(Protocol):
    def submit_orders(self, orders: list[OrderDescriptor]) -> dict: ...


@dataclass(frozen=True)
class SyncResult:
    orders: list[OrderDescriptor]
    statuses: list[Any] = field(default_factory=list)
    submitted_at_ms: int = 0

    @property
    def rejected(self) -> list[tuple[OrderDescriptor, str]]:
        out = []
        for order, st in zip(self.orders, self.statuses):
            if isinstance(st, dict) and st.get("error"):
                out.append((order, str(st.get("error"))))
        return out


def new_cloid() -> str:
    """Random 16-byte client order id in the 0x-hex form the exchange expects."""
    return "0x" + uuid.uuid4().hex


def reference_price(delta: PositionDelta, mark_price: float | None) -> float:
    """Mark price, else the position's entry price, else 0."""
    if mark_price is not None and math.isfinite(mark_price) and mark_price > 0:
        return float(mark_price)
    if delta.current is not None and delta.current.entry_price > 0:
        return float(delta.current.entry_price)
    return 0.0


def slippage_limit_price(ref_px: float, *, is_buy: bool, slippage_bps: int) -> float:
    slip = float(slippage_bps) / 10_000.0
    px = ref_px * (1.0 + slip if is_buy else 1.0 - slip)
    return clamp(px, ref_px * PRICE_CLAMP_LO, ref_px * PRICE_CLAMP_HI)


def format_price(px: float, sz_decimals: int, *, is_buy: bool) -> str:
    """Snap `px` onto the tick grid: buys round up, sells round down."""
    if not math.isfinite(px) or px <= 0:
        return "0"
    # 12 significant digits drops float noise such as 50249.999999999996.
    d = Decimal(f"{px:.12g}")
    if px >= 10**PRICE_SIG_FIGS:
        # Integer prices are always valid regardless of significant figures.
        tick = Decimal(1)
    else:
        sig_tick = Decimal(1).scaleb(d.adjusted() - (PRICE_SIG_FIGS - 1))
        decimals = max(0, MAX_PERP_PRICE_DECIMALS - int(sz_decimals))
        tick = max(sig_tick, Decimal(1).scaleb(-decimals))
    d = d.quantize(tick, rounding=ROUND_CEILING if is_buy else ROUND_FLOOR)
    return format(d.normalize(), "f")


def format_size(sz: float, sz_decimals: int) -> str:
    return f"{sz:.{int(sz_decimals)}f}"


def is_reduce_only(delta: PositionDelta, *, min_delta: float = MIN_ABS_DELTA) -> bool:
    if delta.current is None:
        return False
    if abs(delta.target_size) <= min_delta:
        return True
    same_direction = sign(delta.current.size) == sign(delta.target_size)
    return same_direction and abs(delta.target_size) < abs(delta.current.size)


class TradeExecutor:
    """Runs synchronization passes; at most one at a time per process."""

    def __init__(
        self,
        *,
        leader: AccountStateStore,
        follower: AccountStateStore,
        metadata: MarketMetadataCache,
        order_client: OrderClient,
        risk: RiskConfig,
        min_order_delta: float = MIN_ABS_DELTA,
        dust_position_size: float = DEFAULT_DUST_POSITION_SIZE,
    ):
        self.leader = leader
        self.follower = follower
        self.metadata = metadata
        self.order_client = order_client
        self.risk = risk
        self.min_order_delta = float(min_order_delta)
        self.dust_position_size = float(dust_position_size)
        self._sync_lock = threading.Lock()

    @property
    def syncing(self) -> bool:
        return self._sync_lock.locked()

    def sync_with_leader(self) -> SyncResult | None:
        """One synchronization pass. Returns None when nothing was submitted.

        A call made while another pass is running is dropped. Raises
        OrderSubmissionError when the batch call fails.
        """
        if not self._sync_lock.acquire(blocking=False):
            logger.debug("trade sync already in progress")
            return None
        try:
            return self._sync_pass()
        finally:
            self._sync_lock.release()

    def _sync_pass(self) -> SyncResult | None:
        self.metadata.ensure_loaded()
        self.metadata.refresh_mark_prices()

        targets = compute_targets(self.leader.view(), self.risk)
        deltas = compute_deltas(self.follower.view(), targets, self.risk, dust_size=self.dust_position_size)
        actionable = [d for d in deltas if abs(d.delta_size) > self.min_order_delta]
        if not actionable:
            logger.debug("follower already synchronized with leader")
            return None

        orders: list[OrderDescriptor] = []
        for delta in actionable:
            try:
                order = self.build_order(delta)
            except UnknownMarketError:
                logger.error(
                    "no market metadata for %s; skipping delta %+g (target %g)",
                    delta.coin,
                    delta.delta_size,
                    delta.target_size,
                )
                continue
            if order is not None:
                orders.append(order)
        if not orders:
            return None

        for o in orders:
            logger.info(
                "sync order %s %s sz=%s px=%s reduce_only=%s cloid=%s",
                o.coin,
                "BUY" if o.is_buy else "SELL",
                o.sz,
                o.limit_px,
                o.reduce_only,
                o.cloid,
            )
        try:
            res = self.order_client.submit_orders(orders)
        except OrderSubmissionError as e:
            logger.error(
                "failed to synchronize follower with leader (%d orders: %s): %s",
                len(orders),
                ", ".join(f"{o.coin} {'+' if o.is_buy else '-'}{o.sz}@{o.limit_px}" for o in orders),
                e,
            )
            raise

        result = SyncResult(orders=orders, statuses=order_statuses(res), submitted_at_ms=now_ms())
        for order, err in result.rejected:
            logger.warning(
                "order rejected: %s %s sz=%s px=%s: %s",
                order.coin,
                "BUY" if order.is_buy else "SELL",
                order.sz,
                order.limit_px,
                err,
            )
        return result

    def build_order(self, delta: PositionDelta) -> OrderDescriptor | None:
        """IOC limit order for `delta`, or None when it rounds to zero size."""
        market = self.metadata.require(delta.coin)
        is_buy = delta.delta_size > 0
        ref_px = reference_price(delta, market.mark_price)
        if ref_px <= 0:
            logger.warning("%s: no mark or entry price; limit price falls back to 0", delta.coin)
        limit_px = slippage_limit_price(ref_px, is_buy=is_buy, slippage_bps=self.risk.max_slippage_bps)

        sz = round_size(abs(delta.delta_size), market.sz_decimals)
        if sz <= 0:
            logger.info(
                "%s: delta %+g rounds to zero at %d decimals; skipped",
                delta.coin,
                delta.delta_size,
                market.sz_decimals,
            )
            return None

        return OrderDescriptor(
            coin=market.coin,
            asset_id=market.asset_id,
            is_buy=is_buy,
            limit_px=format_price(limit_px, market.sz_decimals, is_buy=is_buy),
            sz=format_size(sz, market.sz_decimals),
            reduce_only=is_reduce_only(delta, min_delta=self.min_order_delta),
            cloid=new_cloid(),
        )

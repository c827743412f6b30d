"""Per-identity account state: open positions plus account metrics.

One ``AccountStateStore`` exists per tracked identity (``leader`` and
``follower``). It has exactly two write paths, both driven by ingestion:

- ``apply_fill()``: incremental update from the user-fill stream, monotonic per
  coin on the fill's sequence token;
- ``apply_snapshot()``: wholesale replacement from the reconciliation poll,
  refused when it is older than fills the store has already applied.

Readers get point-in-time copies (``view()``, ``get_positions()``), never the
live dicts, so a reader can't observe a half-applied update.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .utils import now_ms

logger = logging.getLogger(__name__)

ROLES = frozenset({"leader", "follower"})

# Sizes closer to zero than this are treated as flat.
_ZERO_SIZE_EPS = 1e-12


class StateValidationError(ValueError):
    """Malformed fill or snapshot data; the store was not modified."""


class InvariantViolation(RuntimeError):
    """Programmer or upstream invariant broken; the process must not keep trading."""


@dataclass(frozen=True)
class PositionSnapshot:
    coin: str
    size: float
    entry_price: float


@dataclass(frozen=True)
class AccountMetrics:
    account_value_usd: float
    withdrawable_usd: float | None = None


@dataclass(frozen=True)
class AccountView:
    role: str
    positions: Mapping[str, PositionSnapshot]
    metrics: AccountMetrics
    snapshot_ts_ms: int | None
    last_fill_ts_ms: int | None

    def get(self, coin: str) -> PositionSnapshot | None:
        return self.positions.get(coin)


def _finite(name: str, val: Any) -> float:
    try:
        out = float(val)
    except (TypeError, ValueError):
        raise StateValidationError(f"{name} is not a number: {val!r}") from None
    if not math.isfinite(out):
        raise StateValidationError(f"{name} is not finite: {val!r}")
    return out


def _coin(val: Any) -> str:
    coin = str(val or "").strip()
    if not coin:
        raise StateValidationError("coin is empty")
    return coin


def validate_position(pos: PositionSnapshot) -> PositionSnapshot:
    coin = _coin(pos.coin)
    size = _finite(f"{coin} size", pos.size)
    entry_price = _finite(f"{coin} entry_price", pos.entry_price)
    if entry_price < 0:
        raise StateValidationError(f"{coin} entry_price is negative: {entry_price}")
    return PositionSnapshot(coin=coin, size=size, entry_price=entry_price)


def validate_metrics(metrics: AccountMetrics) -> AccountMetrics:
    value = _finite("account_value_usd", metrics.account_value_usd)
    if value < 0:
        # Negative equity means the upstream payload is corrupt; never clamp it.
        raise StateValidationError(f"account_value_usd is negative: {value}")
    withdrawable = None
    if metrics.withdrawable_usd is not None:
        withdrawable = _finite("withdrawable_usd", metrics.withdrawable_usd)
    return AccountMetrics(account_value_usd=value, withdrawable_usd=withdrawable)


class AccountStateStore:
    """Keyed store of positions and metrics for one trading identity."""

    def __init__(self, role: str, *, snapshot_grace_ms: int = 0):
        role = str(role or "").strip().lower()
        if role not in ROLES:
            raise ValueError(f"unknown role: {role!r}")
        if int(snapshot_grace_ms) < 0:
            raise ValueError("snapshot_grace_ms must be >= 0")
        self.role = role
        self.snapshot_grace_ms = int(snapshot_grace_ms)

        self._lock = threading.Lock()
        self._positions: dict[str, PositionSnapshot] = {}
        self._metrics = AccountMetrics(account_value_usd=0.0)
        self._last_sequence: dict[str, Any] = {}
        self._last_fill_ts_ms: dict[str, int] = {}
        self._snapshot_ts_ms: int | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def view(self) -> AccountView:
        with self._lock:
            return AccountView(
                role=self.role,
                positions=MappingProxyType(dict(self._positions)),
                metrics=self._metrics,
                snapshot_ts_ms=self._snapshot_ts_ms,
                last_fill_ts_ms=max(self._last_fill_ts_ms.values()) if self._last_fill_ts_ms else None,
            )

    def get_positions(self) -> Mapping[str, PositionSnapshot]:
        with self._lock:
            return MappingProxyType(dict(self._positions))

    def get_position(self, coin: str) -> PositionSnapshot | None:
        with self._lock:
            return self._positions.get(str(coin or "").strip())

    def get_metrics(self) -> AccountMetrics:
        with self._lock:
            return self._metrics

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def apply_fill(
        self,
        coin: str,
        size_delta: float,
        price: float,
        sequence: Any,
        *,
        ts_ms: int | None = None,
    ) -> bool:
        """Apply one fill incrementally. Returns False when the fill was ignored.

        `sequence` may be any totally ordered token (the stream passes
        ``(time_ms, tid)``). Replays and out-of-order deliveries at or below the
        last applied token for the coin are no-ops.
        """
        coin = _coin(coin)
        size_delta = _finite(f"{coin} fill size", size_delta)
        price = _finite(f"{coin} fill price", price)
        if price < 0:
            raise StateValidationError(f"{coin} fill price is negative: {price}")
        if sequence is None:
            raise StateValidationError(f"{coin} fill has no sequence token")
        explicit_ts = ts_ms is not None
        fill_ts = int(ts_ms) if explicit_ts else now_ms()

        with self._lock:
            last = self._last_sequence.get(coin)
            try:
                stale = last is not None and sequence <= last
            except TypeError:
                raise StateValidationError(
                    f"{coin} sequence token {sequence!r} is not comparable with {last!r}"
                ) from None
            if stale:
                logger.debug("%s fill %s ignored: sequence %r <= last %r", self.role, coin, sequence, last)
                return False
            if explicit_ts and self._snapshot_ts_ms is not None and fill_ts < self._snapshot_ts_ms:
                # Already reflected by the snapshot we replaced state with.
                logger.debug(
                    "%s fill %s ignored: ts %d older than snapshot %d", self.role, coin, fill_ts, self._snapshot_ts_ms
                )
                self._last_sequence[coin] = sequence
                return False

            cur = self._positions.get(coin)
            old_size = cur.size if cur is not None else 0.0
            old_entry = cur.entry_price if cur is not None else 0.0
            new_size = old_size + size_delta

            if abs(new_size) <= _ZERO_SIZE_EPS:
                self._positions.pop(coin, None)
            else:
                if old_size == 0.0 or (old_size > 0) != (new_size > 0):
                    # Fresh open or flip: the old entry no longer applies.
                    entry = price
                elif abs(new_size) > abs(old_size):
                    entry = (abs(old_size) * old_entry + abs(size_delta) * price) / abs(new_size)
                else:
                    entry = old_entry
                self._positions[coin] = PositionSnapshot(coin=coin, size=new_size, entry_price=entry)

            self._last_sequence[coin] = sequence
            prev_ts = self._last_fill_ts_ms.get(coin)
            self._last_fill_ts_ms[coin] = fill_ts if prev_ts is None else max(prev_ts, fill_ts)

        logger.debug("%s fill %s %+g @ %g -> size %g", self.role, coin, size_delta, price, new_size)
        return True

    def apply_snapshot(
        self,
        positions: Iterable[PositionSnapshot],
        metrics: AccountMetrics,
        snapshot_ts_ms: int,
    ) -> bool:
        """Replace all positions and metrics. Returns False when refused as stale."""
        ts = int(_finite("snapshot_ts_ms", snapshot_ts_ms))
        metrics = validate_metrics(metrics)
        new_positions: dict[str, PositionSnapshot] = {}
        for raw in positions:
            pos = validate_position(raw)
            if pos.coin in new_positions:
                raise StateValidationError(f"snapshot lists {pos.coin} twice")
            if abs(pos.size) <= _ZERO_SIZE_EPS:
                continue
            new_positions[pos.coin] = pos

        with self._lock:
            latest_fill = max(self._last_fill_ts_ms.values()) if self._last_fill_ts_ms else None
            if latest_fill is not None and ts < latest_fill - self.snapshot_grace_ms:
                logger.warning(
                    "%s snapshot rejected as stale: snapshot_ts=%d latest_fill_ts=%d grace_ms=%d",
                    self.role,
                    ts,
                    latest_fill,
                    self.snapshot_grace_ms,
                )
                return False
            if self._snapshot_ts_ms is not None and ts < self._snapshot_ts_ms:
                logger.warning(
                    "%s snapshot rejected: snapshot_ts=%d older than applied snapshot %d",
                    self.role,
                    ts,
                    self._snapshot_ts_ms,
                )
                return False

            self._positions = new_positions
            self._metrics = metrics
            self._snapshot_ts_ms = ts

        logger.debug(
            "%s snapshot applied: ts=%d positions=%d account_value=%.2f",
            self.role,
            ts,
            len(new_positions),
            metrics.account_value_usd,
        )
        return True

"""Hyperliquid wire payloads -> account state inputs.

Two payloads feed the state stores:

- ``userFills`` WS items::

    {"coin": "BTC", "px": "50000.0", "sz": "0.1", "side": "B", "time": 1700000000000,
     "tid": 123, "startPosition": "0.0", "dir": "Open Long", ...}

- ``clearinghouseState`` (``Info.user_state``)::

    {"assetPositions": [{"position": {"coin": "BTC", "szi": "-0.5", "entryPx": "50000.0", ...}}],
     "marginSummary": {"accountValue": "1234.5", ...}, "withdrawable": "100.0", "time": 1700000000000}

Malformed payloads raise ``StateValidationError`` so nothing reaches a store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from copier.state import AccountMetrics, PositionSnapshot, StateValidationError


@dataclass(frozen=True)
class FillEvent:
    coin: str
    size_delta: float
    price: float
    sequence: tuple[int, int]
    ts_ms: int


@dataclass(frozen=True)
class AccountSnapshot:
    positions: list[PositionSnapshot]
    metrics: AccountMetrics
    ts_ms: int


def is_perp_coin(coin: str) -> bool:
    # Spot fills use "@<index>" or "BASE/QUOTE" names.
    c = str(coin or "").strip()
    return bool(c) and not c.startswith("@") and "/" not in c


def _num(raw: dict, key: str) -> float:
    try:
        return float(raw[key])
    except KeyError:
        raise StateValidationError(f"missing {key!r} in {str(raw)[:200]}") from None
    except (TypeError, ValueError):
        raise StateValidationError(f"non-numeric {key!r}={raw.get(key)!r}") from None


def _int(raw: dict, key: str) -> int:
    try:
        return int(raw[key])
    except KeyError:
        raise StateValidationError(f"missing {key!r} in {str(raw)[:200]}") from None
    except (TypeError, ValueError):
        raise StateValidationError(f"non-integer {key!r}={raw.get(key)!r}") from None


def parse_fill(raw: Any) -> FillEvent | None:
    """Returns None for fills outside the perp universe (spot)."""
    if not isinstance(raw, dict):
        raise StateValidationError(f"fill is not an object: {raw!r}")
    coin = str(raw.get("coin") or "").strip()
    if not coin:
        raise StateValidationError(f"fill without coin: {str(raw)[:200]}")
    if not is_perp_coin(coin):
        return None

    side = str(raw.get("side") or "").strip().upper()
    if side not in {"B", "A"}:
        raise StateValidationError(f"{coin} fill has unknown side {raw.get('side')!r}")
    sz = _num(raw, "sz")
    if sz < 0:
        raise StateValidationError(f"{coin} fill has negative sz {sz}")
    ts_ms = _int(raw, "time")
    tid = 0 if raw.get("tid") is None else _int(raw, "tid")

    return FillEvent(
        coin=coin,
        size_delta=sz if side == "B" else -sz,
        price=_num(raw, "px"),
        sequence=(ts_ms, tid),
        ts_ms=ts_ms,
    )


def parse_user_state(payload: Any, *, fetched_at_ms: int) -> AccountSnapshot:
    """Parse a clearinghouseState response.

    The snapshot timestamp is the exchange's ``time`` field; when absent, the
    time the request was sent is used, which can only make the snapshot look
    older, never newer.
    """
    if not isinstance(payload, dict):
        raise StateValidationError(f"clearinghouseState is not an object: {str(payload)[:200]}")

    positions: list[PositionSnapshot] = []
    for ap in payload.get("assetPositions") or []:
        pos = (ap or {}).get("position") if isinstance(ap, dict) else None
        if not isinstance(pos, dict):
            raise StateValidationError(f"malformed assetPositions entry: {str(ap)[:200]}")
        coin = str(pos.get("coin") or "").strip()
        if not coin:
            raise StateValidationError(f"position without coin: {str(pos)[:200]}")
        entry_raw = pos.get("entryPx")
        positions.append(
            PositionSnapshot(
                coin=coin,
                size=_num(pos, "szi"),
                entry_price=0.0 if entry_raw is None else _num(pos, "entryPx"),
            )
        )

    margin = payload.get("marginSummary")
    if not isinstance(margin, dict):
        raise StateValidationError("clearinghouseState has no marginSummary")
    withdrawable = payload.get("withdrawable")
    metrics = AccountMetrics(
        account_value_usd=_num(margin, "accountValue"),
        withdrawable_usd=None if withdrawable is None else _num(payload, "withdrawable"),
    )

    ts_raw = payload.get("time")
    ts_ms = int(fetched_at_ms) if ts_raw is None else _int(payload, "time")
    return AccountSnapshot(positions=positions, metrics=metrics, ts_ms=ts_ms)

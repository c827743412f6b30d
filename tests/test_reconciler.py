from __future__ import annotations

import logging
import threading

import pytest

from copier.reconciler import SnapshotReconciler
from copier.state import AccountMetrics, AccountStateStore, PositionSnapshot

LEADER = "0x" + "11" * 20
FOLLOWER = "0x" + "22" * 20


def _state(positions: list[tuple[str, str, str]], account_value="1000.0", ts=5_000) -> dict:
    return {
        "assetPositions": [
            {"type": "oneWay", "position": {"coin": c, "szi": szi, "entryPx": px}} for c, szi, px in positions
        ],
        "marginSummary": {"accountValue": account_value, "totalNtlPos": "0.0"},
        "withdrawable": "100.0",
        "time": ts,
    }


class _FakeSource:
    def __init__(self, states: dict):
        self.states = states
        self.calls: list[str] = []

    def user_state(self, address: str) -> dict:
        self.calls.append(address)
        st = self.states[address]
        if isinstance(st, Exception):
            raise st
        return st


def _reconciler(source, **kwargs):
    leader = AccountStateStore("leader")
    follower = AccountStateStore("follower")
    rec = SnapshotReconciler(source=source, accounts=[(LEADER, leader), (FOLLOWER.upper().replace("0X", "0x"), follower)], **kwargs)
    return rec, leader, follower


def test_run_once_applies_both_snapshots() -> None:
    source = _FakeSource(
        {
            LEADER: _state([("BTC", "10.0", "50000.0")], account_value="500000.0"),
            FOLLOWER: _state([("ETH", "-1.5", "3000.0")], account_value="10000.0"),
        }
    )
    rec, leader, follower = _reconciler(source)

    results = rec.run_once()

    assert results == {"leader": True, "follower": True}
    assert source.calls == [LEADER, FOLLOWER]
    assert leader.get_position("BTC") == PositionSnapshot("BTC", 10.0, 50_000.0)
    assert follower.get_position("ETH").size == pytest.approx(-1.5)
    assert follower.get_metrics() == AccountMetrics(10_000.0, 100.0)
    assert follower.view().snapshot_ts_ms == 5_000
    assert rec.cycles == 1


def test_stale_snapshot_reported_and_not_applied() -> None:
    source = _FakeSource({LEADER: _state([], ts=1_000), FOLLOWER: _state([])})
    rec, leader, _ = _reconciler(source)
    leader.apply_fill("BTC", 1.0, 50_000.0, (2_000, 1), ts_ms=2_000)

    results = rec.run_once()

    assert results["leader"] is False
    assert leader.get_position("BTC").size == pytest.approx(1.0)


def test_fetch_error_is_logged_and_other_accounts_continue(caplog) -> None:
    source = _FakeSource({LEADER: ConnectionError("api timeout"), FOLLOWER: _state([("SOL", "3", "150")])})
    rec, leader, follower = _reconciler(source)

    with caplog.at_level(logging.WARNING):
        results = rec.run_once()

    assert results == {"leader": None, "follower": True}
    assert leader.view().snapshot_ts_ms is None
    assert "SOL" in follower.get_positions()
    assert any("snapshot fetch failed" in rec_.message for rec_ in caplog.records)


def test_malformed_snapshot_rejected_without_mutation(caplog) -> None:
    bad = {"assetPositions": [{"position": {"coin": "BTC", "szi": "oops", "entryPx": "1"}}], "marginSummary": {"accountValue": "1"}}
    negative = _state([], account_value="-5.0")
    source = _FakeSource({LEADER: bad, FOLLOWER: negative})
    rec, leader, follower = _reconciler(source)
    leader.apply_fill("ETH", 1.0, 3_000.0, 1)

    with caplog.at_level(logging.ERROR):
        results = rec.run_once()

    assert results == {"leader": None, "follower": None}
    assert set(leader.get_positions()) == {"ETH"}
    assert follower.view().snapshot_ts_ms is None
    assert sum("rejected as malformed" in r.message for r in caplog.records) == 2


def test_on_cycle_receives_results() -> None:
    seen: list[dict] = []
    source = _FakeSource({LEADER: _state([]), FOLLOWER: _state([])})
    rec, _, _ = _reconciler(source, on_cycle=seen.append)
    rec.run_once()
    assert seen == [{"leader": True, "follower": True}]


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        SnapshotReconciler(source=_FakeSource({}), accounts=[], interval_s=0)


def test_request_refresh_wakes_loop_early() -> None:
    cycles = threading.Semaphore(0)
    source = _FakeSource({LEADER: _state([]), FOLLOWER: _state([])})
    rec, _, _ = _reconciler(source, interval_s=60.0, min_refresh_spacing_s=0.0, on_cycle=lambda _r: cycles.release())

    rec.start()
    try:
        assert cycles.acquire(timeout=2.0)
        rec.request_refresh()
        assert cycles.acquire(timeout=2.0)
        assert rec.cycles == 2
    finally:
        rec.stop(join_timeout_s=2.0)

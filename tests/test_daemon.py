from __future__ import annotations

import logging
import threading

import pytest

import copier.daemon as daemon
from copier.config import CopyConfig, RiskConfig
from copier.state import InvariantViolation
from copier.trade_executor import SyncResult
from exchange.client import OrderSubmissionError

LEADER = "0x" + "11" * 20
FOLLOWER = "0x" + "22" * 20


class _FakeExecutor:
    def __init__(self, outcomes):
        self._outcomes = list(outcomes)
        self.calls = 0

    def sync_with_leader(self):
        self.calls += 1
        out = self._outcomes.pop(0) if self._outcomes else None
        if isinstance(out, BaseException):
            raise out
        return out


def test_run_pass_reports_action() -> None:
    acted: list[SyncResult] = []
    result = SyncResult(orders=[], statuses=[])
    worker = daemon.SyncWorker(_FakeExecutor([result]), on_acted=acted.append)

    assert worker.run_pass("leader_fill") is result
    assert acted == [result]
    assert worker.passes == 1
    assert worker.failures == 0


def test_run_pass_noop_does_not_trigger_refresh() -> None:
    acted: list = []
    worker = daemon.SyncWorker(_FakeExecutor([None]), on_acted=acted.append)
    assert worker.run_pass("reconcile") is None
    assert acted == []


def test_submission_failure_is_counted_and_survived(caplog) -> None:
    worker = daemon.SyncWorker(_FakeExecutor([OrderSubmissionError("bulk order rejected")]))
    with caplog.at_level(logging.ERROR):
        assert worker.run_pass("reconcile") is None
    assert worker.failures == 1
    assert worker.fatal is None
    assert any("sync pass failed" in rec.message for rec in caplog.records)


def test_unexpected_error_is_survived() -> None:
    worker = daemon.SyncWorker(_FakeExecutor([ConnectionError("meta endpoint down")]))
    assert worker.run_pass("leader_fill") is None
    assert worker.failures == 1
    assert worker.fatal is None


def test_invariant_violation_is_fatal() -> None:
    seen: list[BaseException] = []
    err = InvariantViolation("negative size precision: -1")
    worker = daemon.SyncWorker(_FakeExecutor([err]), on_fatal=seen.append)
    worker.run_pass("leader_fill")
    assert worker.fatal is err
    assert seen == [err]


def test_worker_thread_coalesces_triggers() -> None:
    release = threading.Event()
    entered = threading.Event()
    done = threading.Semaphore(0)

    class _SlowExecutor:
        calls = 0

        def sync_with_leader(self):
            _SlowExecutor.calls += 1
            entered.set()
            assert release.wait(timeout=2.0)
            done.release()
            return None

    worker = daemon.SyncWorker(_SlowExecutor())
    worker.start()
    try:
        worker.trigger("leader_fill")
        assert entered.wait(timeout=1.0)
        for _ in range(5):
            worker.trigger("leader_fill")
        worker.trigger("reconcile")
        release.set()
        assert done.acquire(timeout=2.0)
        assert done.acquire(timeout=2.0)
        assert not done.acquire(timeout=0.2)
        assert _SlowExecutor.calls == 2
    finally:
        worker.stop(join_timeout_s=2.0)


def test_worker_thread_stops_after_fatal() -> None:
    fatal = threading.Event()
    worker = daemon.SyncWorker(_FakeExecutor([InvariantViolation("bad")]), on_fatal=lambda _e: fatal.set())
    worker.start()
    worker.trigger("leader_fill")
    assert fatal.wait(timeout=2.0)
    worker._thread.join(timeout=2.0)
    assert not worker._thread.is_alive()


def test_lock_prevents_second_instance(tmp_path) -> None:
    pytest.importorskip("fcntl")
    lock_path = str(tmp_path / "copier.lock")
    first = daemon.acquire_lock_or_exit(lock_path)
    try:
        with pytest.raises(SystemExit):
            daemon.acquire_lock_or_exit(lock_path)
    finally:
        first.close()

    again = daemon.acquire_lock_or_exit(lock_path)
    again.close()


class _FakeClient:
    info = None

    def user_state(self, address):
        return {"assetPositions": [], "marginSummary": {"accountValue": "0"}, "time": 1}


def _cfg(**overrides) -> CopyConfig:
    risk = RiskConfig(copy_ratio=0.1, max_leverage=3.0, max_notional_usd=10_000.0, max_slippage_bps=50)
    return CopyConfig(leader_address=LEADER, risk=risk, lock_path="unused.lock", **overrides)


def test_copy_daemon_wiring() -> None:
    d = daemon.CopyDaemon(_cfg(snapshot_grace_ms=250), client=_FakeClient(), order_client=object(), follower_address=FOLLOWER)

    leader_stream, follower_stream = d.streams
    assert leader_stream.store is d.leader and leader_stream.user == LEADER
    assert follower_stream.store is d.follower and follower_stream.user == FOLLOWER
    assert [addr for addr, _ in d.reconciler.accounts] == [LEADER, FOLLOWER]
    assert d.leader.snapshot_grace_ms == 250

    triggered: list[str] = []
    d.worker.trigger = triggered.append
    leader_stream._on_applied(leader_stream.name)
    assert follower_stream._on_applied is None
    d.reconciler._on_cycle({})
    assert triggered == ["leader_fill", "reconcile"]

    refreshed: list[bool] = []
    d.reconciler.request_refresh = lambda: refreshed.append(True)
    d._on_acted(SyncResult(orders=[]))
    assert refreshed == [True]
    # The follow-up pass waits for the refreshed snapshot.
    assert triggered == ["leader_fill", "reconcile"]

    d._on_fatal(InvariantViolation("x"))
    assert d.shutdown_event.is_set()


def test_run_forever_returns_fatal_exit_code(monkeypatch) -> None:
    d = daemon.CopyDaemon(_cfg(), client=_FakeClient(), order_client=object(), follower_address=FOLLOWER)
    monkeypatch.setattr(d, "start", lambda: d.shutdown_event.set())
    monkeypatch.setattr(d, "stop", lambda: None)

    assert d.run_forever() == 0
    d.worker.fatal = InvariantViolation("bad")
    assert d.run_forever() == daemon.EXIT_FATAL

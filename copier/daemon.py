"""Copier daemon entrypoint.

Usage:
  HL_COPY_CONFIG=copier.yaml python -m copier.daemon
  HL_COPY_DRY_RUN=1 HL_COPY_LEADER_ADDRESS=0x... python -m copier.daemon

Threads:
- one userFills stream per account (leader, follower) writing to its store
- the snapshot reconciler writing full snapshots to both stores
- the sync worker running `TradeExecutor.sync_with_leader()` whenever a
  leader fill lands or a reconcile cycle finishes

SIGINT/SIGTERM stop the streams and the reconciler and let an in-flight pass finish.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from typing import Any

from exchange.client import DryRunOrderClient, HyperliquidClient, OrderSubmissionError, load_live_secrets
from exchange.meta import MarketMetadataCache
from exchange.ws import UserFillStream

from .config import ConfigError, CopyConfig, load_config
from .reconciler import SnapshotReconciler
from .state import AccountStateStore, InvariantViolation
from .trade_executor import SyncResult, TradeExecutor
from .utils import Backoff, env_str

logger = logging.getLogger(__name__)

EXIT_FATAL = 2


def acquire_lock_or_exit(lock_path: str):
    """Prevent multiple copiers from trading the same follower.

    Uses fcntl when available (Linux). Falls back to a simple pid file otherwise.
    """
    lock_file = open(lock_path, "a+", encoding="utf-8")
    try:
        import fcntl
    except ImportError:
        fcntl = None

    if fcntl is not None:
        try:
            fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            lock_file.close()
            raise SystemExit(f"another copier instance holds {lock_path}")

    lock_file.seek(0)
    lock_file.truncate()
    lock_file.write(str(os.getpid()))
    lock_file.flush()
    return lock_file


class SyncWorker:
    """Serializes sync passes onto one thread and coalesces triggers.

    Triggers arriving while a pass runs collapse into a single follow-up pass;
    every pass recomputes from current state so nothing is lost.
    """

    def __init__(self, executor: TradeExecutor, *, on_acted=None, on_fatal=None):
        self.executor = executor
        self._on_acted = on_acted
        self._on_fatal = on_fatal
        self._event = threading.Event()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._reasons: list[str] = []
        self.fatal: BaseException | None = None
        self.passes = 0
        self.failures = 0

    def trigger(self, reason: str) -> None:
        with self._lock:
            if reason not in self._reasons:
                self._reasons.append(reason)
        self._event.set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="sync-worker", daemon=True)
        self._thread.start()

    def stop(self, *, join_timeout_s: float = 30.0) -> None:
        self._stopping.set()
        self._event.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=float(join_timeout_s))

    def _run(self) -> None:
        while True:
            self._event.wait()
            if self._stopping.is_set():
                break
            self._event.clear()
            with self._lock:
                reasons, self._reasons = self._reasons, []
            self.run_pass(",".join(reasons) or "trigger")
            if self.fatal is not None:
                break

    def run_pass(self, reason: str) -> SyncResult | None:
        self.passes += 1
        try:
            result = self.executor.sync_with_leader()
        except OrderSubmissionError as e:
            self.failures += 1
            logger.error("sync pass failed (trigger=%s): %s", reason, e)
            return None
        except InvariantViolation as e:
            self.fatal = e
            logger.critical("invariant violated during sync pass (trigger=%s): %s", reason, e)
            if self._on_fatal is not None:
                self._on_fatal(e)
            return None
        except Exception as e:
            # Metadata/network trouble: the next trigger retries from fresh state.
            self.failures += 1
            logger.warning("sync pass aborted (trigger=%s): %s", reason, e, exc_info=True)
            return None

        if result is not None:
            logger.info(
                "sync pass submitted %d orders (%d rejected), trigger=%s",
                len(result.orders),
                len(result.rejected),
                reason,
            )
            if self._on_acted is not None:
                self._on_acted(result)
        return result


class CopyDaemon:
    """Wires stores, streams, reconciler, executor and sync worker together."""

    def __init__(self, cfg: CopyConfig, *, client: Any, order_client: Any, follower_address: str):
        self.cfg = cfg
        self.leader = AccountStateStore("leader", snapshot_grace_ms=cfg.snapshot_grace_ms)
        self.follower = AccountStateStore("follower", snapshot_grace_ms=cfg.snapshot_grace_ms)
        self.metadata = MarketMetadataCache(
            info=getattr(client, "info", None),
            base_url=cfg.base_url,
            timeout_s=cfg.hl_timeout_s,
            refresh_interval_s=cfg.mark_refresh_interval_s,
        )
        self.executor = TradeExecutor(
            leader=self.leader,
            follower=self.follower,
            metadata=self.metadata,
            order_client=order_client,
            risk=cfg.risk,
            min_order_delta=cfg.min_order_delta,
            dust_position_size=cfg.dust_position_size,
        )
        self.shutdown_event = threading.Event()
        self.worker = SyncWorker(self.executor, on_acted=self._on_acted, on_fatal=self._on_fatal)
        self.reconciler = SnapshotReconciler(
            source=client,
            accounts=[(cfg.leader_address, self.leader), (follower_address, self.follower)],
            interval_s=cfg.reconcile_interval_s,
            min_refresh_spacing_s=cfg.min_refresh_spacing_s,
            on_cycle=lambda _results: self.worker.trigger("reconcile"),
        )
        backoff = Backoff(base_s=cfg.reconnect_base_s, max_s=cfg.reconnect_max_s, jitter_pct=0.25)
        self.streams = [
            UserFillStream(
                user=cfg.leader_address,
                store=self.leader,
                ws_url=cfg.ws_url,
                backoff=backoff,
                ping_interval_s=cfg.ws_ping_interval_s,
                on_applied=lambda _name: self.worker.trigger("leader_fill"),
            ),
            UserFillStream(
                user=follower_address,
                store=self.follower,
                ws_url=cfg.ws_url,
                backoff=backoff,
                ping_interval_s=cfg.ws_ping_interval_s,
            ),
        ]

    def _on_acted(self, _result: SyncResult) -> None:
        """Follower state is refreshed from a snapshot before the follow-up pass.

        No pass is triggered here: the early reconcile cycle applies the fresh
        follower snapshot and its `on_cycle` hook then triggers the next pass.
        """
        self.reconciler.request_refresh()

    def _on_fatal(self, _exc: BaseException) -> None:
        self.shutdown_event.set()

    def start(self) -> None:
        self.worker.start()
        for s in self.streams:
            s.start()
        self.reconciler.start()

    def stop(self) -> None:
        for s in self.streams:
            s.stop()
        self.reconciler.stop()
        self.worker.stop()

    def run_forever(self) -> int:
        self.start()
        try:
            while not self.shutdown_event.wait(1.0):
                pass
        finally:
            self.stop()
        return EXIT_FATAL if self.worker.fatal is not None else 0


def main() -> None:
    logging.basicConfig(
        level=env_str("HL_COPY_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        cfg = load_config()
    except ConfigError as e:
        raise SystemExit(f"invalid configuration: {e}")

    _lock = acquire_lock_or_exit(cfg.lock_path)

    secrets = load_live_secrets(cfg.secrets_path)
    client = HyperliquidClient(
        secret_key=secrets.secret_key,
        main_address=secrets.main_address,
        base_url=cfg.base_url,
        timeout_s=cfg.hl_timeout_s,
    )
    order_client = DryRunOrderClient(client) if cfg.dry_run else client

    daemon = CopyDaemon(cfg, client=client, order_client=order_client, follower_address=secrets.main_address)

    def _handle_signal(signum, _frame):
        logger.info("signal %d received; shutting down", signum)
        daemon.shutdown_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info(
        "copier started: leader=%s follower=%s mode=%s",
        cfg.leader_address,
        secrets.main_address,
        "dry_run" if cfg.dry_run else "live",
    )
    sys.exit(daemon.run_forever())


if __name__ == "__main__":
    main()

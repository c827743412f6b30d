"""Periodic clearinghouse snapshot reconciliation.

The fill streams are incremental and can miss messages (reconnect gaps,
dropped frames). This loop fetches a full snapshot per tracked account on a
fixed interval and hands it to ``AccountStateStore.apply_snapshot()``, which
refuses snapshots older than fills it already applied.

Failures are never fatal here: a fetch error is logged and retried on the
next cycle, a malformed payload is logged and dropped without touching state.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Protocol

from exchange.payloads import parse_user_state

from .state import AccountStateStore, StateValidationError
from .utils import now_ms

logger = logging.getLogger(__name__)


class SnapshotSource(Protocol):
    def user_state(self, address: str) -> dict: ...


class SnapshotReconciler:
    def __init__(
        self,
        *,
        source: SnapshotSource,
        accounts: list[tuple[str, AccountStateStore]],
        interval_s: float = 30.0,
        min_refresh_spacing_s: float = 1.0,
        on_cycle: Callable[[dict[str, bool | None]], Any] | None = None,
    ):
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.source = source
        self.accounts = [(str(addr).strip().lower(), store) for addr, store in accounts]
        self.interval_s = float(interval_s)
        self.min_refresh_spacing_s = float(max(0.0, min_refresh_spacing_s))
        self._on_cycle = on_cycle

        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_cycle_s: float | None = None
        self.cycles = 0

    def reconcile_account(self, address: str, store: AccountStateStore) -> bool | None:
        """Fetch and apply one snapshot. True applied, False stale, None on error."""
        fetched_at_ms = now_ms()
        try:
            payload = self.source.user_state(address)
        except Exception as e:
            logger.warning("%s snapshot fetch failed (%s): %s", store.role, address, e)
            return None
        try:
            snap = parse_user_state(payload, fetched_at_ms=fetched_at_ms)
            return store.apply_snapshot(snap.positions, snap.metrics, snap.ts_ms)
        except StateValidationError as e:
            logger.error("%s snapshot rejected as malformed (%s): %s", store.role, address, e)
            return None

    def run_once(self) -> dict[str, bool | None]:
        results: dict[str, bool | None] = {}
        for address, store in self.accounts:
            results[store.role] = self.reconcile_account(address, store)
        self._last_cycle_s = time.monotonic()
        self.cycles += 1
        if self._on_cycle is not None:
            self._on_cycle(results)
        return results

    def request_refresh(self) -> None:
        """Run the next cycle early (still at least `min_refresh_spacing_s` after the last)."""
        self._wake_event.set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="reconciler", daemon=True)
        self._thread.start()

    def stop(self, *, join_timeout_s: float = 5.0) -> None:
        self._stop_event.set()
        self._wake_event.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=float(join_timeout_s))

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("reconcile cycle failed")

            self._wake_event.wait(self.interval_s)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            last = self._last_cycle_s
            if last is not None:
                left = self.min_refresh_spacing_s - (time.monotonic() - last)
                if left > 0 and self._stop_event.wait(left):
                    break

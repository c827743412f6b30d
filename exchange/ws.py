import enum
import json
import logging
import os
import threading
from typing import Callable

import websocket

from copier.state import AccountStateStore, StateValidationError
from copier.utils import Backoff

from .payloads import parse_fill

logger = logging.getLogger(__name__)

HL_WS_URL = os.getenv("HL_WS_URL", "wss://api.hyperliquid.xyz/ws")
HL_WS_PING_SECS = int(os.getenv("HL_WS_PING_SECS", "50"))


class StreamState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


class UserFillStream:
    """userFills subscription for one account, applied to that account's store.

    Lifecycle: DISCONNECTED -> CONNECTING -> SUBSCRIBED -> DISCONNECTED.
    After a disconnect the run loop waits `backoff.delay(attempt)` before the
    next connect; `stop()` interrupts that wait. Gaps during reconnects are not
    replayed here; the snapshot reconciler covers them.
    """

    def __init__(
        self,
        *,
        user: str,
        store: AccountStateStore,
        ws_url: str | None = None,
        backoff: Backoff | None = None,
        ping_interval_s: float | None = None,
        on_applied: Callable[[str], None] | None = None,
    ):
        self.user = str(user or "").strip().lower()
        if not self.user:
            raise ValueError("user address is required")
        self.store = store
        self.name = store.role
        self._ws_url = ws_url or HL_WS_URL
        self._backoff = backoff or Backoff(base_s=1.0, max_s=30.0, jitter_pct=0.25)
        self._ping_interval_s = float(ping_interval_s if ping_interval_s is not None else HL_WS_PING_SECS)
        self._on_applied = on_applied

        self._lock = threading.RLock()
        self._state = StreamState.DISCONNECTED
        self._ws_app: websocket.WebSocketApp | None = None
        self._thread: threading.Thread | None = None
        self._ping_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._attempt = 0
        self._reconnects = 0
        self._fills_applied = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        with self._lock:
            return self._state

    def _set_state(self, new: StreamState) -> None:
        with self._lock:
            old = self._state
            self._state = new
            if new == StreamState.SUBSCRIBED:
                self._attempt = 0
        if old != new:
            logger.info("%s fill stream %s -> %s", self.name, old.value, new.value)

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name=f"ws-{self.name}", daemon=True)
            self._ping_thread = threading.Thread(target=self._ping_loop, name=f"ws-ping-{self.name}", daemon=True)
            self._thread.start()
            self._ping_thread.start()

    def stop(self, *, join_timeout_s: float = 5.0) -> None:
        self._stop_event.set()
        with self._lock:
            ws_app = self._ws_app
            t = self._thread
            p = self._ping_thread
        if ws_app is not None:
            try:
                ws_app.close()
            except Exception:
                logger.debug("WS close failed during stop()", exc_info=True)
        # Join outside lock to avoid deadlocks.
        for th in (t, p):
            if th is not None and th is not threading.current_thread():
                th.join(timeout=float(join_timeout_s))

    def status(self) -> dict:
        with self._lock:
            return {
                "state": self._state.value,
                "running": bool(self._thread is not None and self._thread.is_alive()),
                "reconnects": self._reconnects,
                "fills_applied": self._fills_applied,
            }

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._set_state(StreamState.CONNECTING)
            ws = websocket.WebSocketApp(
                self._ws_url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
            with self._lock:
                self._ws_app = ws
            try:
                ws.run_forever()
            except Exception as e:
                logger.warning("%s fill stream run_forever raised: %s", self.name, e)
            with self._lock:
                self._ws_app = None
            self._set_state(StreamState.DISCONNECTED)

            if self._stop_event.is_set():
                break
            with self._lock:
                self._attempt += 1
                self._reconnects += 1
                attempt = self._attempt
            delay = self._backoff.delay(attempt)
            logger.info("%s fill stream reconnecting in %.1fs (attempt %d)", self.name, delay, attempt)
            if self._stop_event.wait(delay):
                break

    def _ping_loop(self) -> None:
        while not self._stop_event.wait(self._ping_interval_s):
            with self._lock:
                ws_app = self._ws_app
            if ws_app is None:
                continue
            try:
                ws_app.send(json.dumps({"method": "ping"}))
            except Exception:
                logger.debug("WS ping send failed", exc_info=True)

    # ------------------------------------------------------------------
    # WebSocketApp callbacks
    # ------------------------------------------------------------------

    def subscription(self) -> dict:
        return {"type": "userFills", "user": self.user}

    def _on_open(self, ws) -> None:
        try:
            ws.send(json.dumps({"method": "subscribe", "subscription": self.subscription()}))
        except (TypeError, ValueError, OSError, websocket.WebSocketException) as exc:
            logger.warning("%s userFills subscribe failed: %s", self.name, exc)
            ws.close()

    def _on_message(self, _ws, message: str) -> None:
        try:
            msg = json.loads(message)
        except json.JSONDecodeError as e:
            logger.warning("WS JSON parse error: %s (message truncated: %s)", e, str(message)[:200])
            return
        if not isinstance(msg, dict):
            return

        channel = msg.get("channel")
        if channel == "pong":
            return
        if channel == "subscriptionResponse":
            sub = ((msg.get("data") or {}).get("subscription")) or {}
            if sub.get("type") == "userFills" and str(sub.get("user") or "").lower() == self.user:
                self._set_state(StreamState.SUBSCRIBED)
            return
        if channel == "error":
            logger.warning("%s WS error message: %s", self.name, str(msg.get("data"))[:200])
            return
        if channel != "userFills":
            return

        data = msg.get("data") or {}
        if str(data.get("user") or self.user).lower() != self.user:
            return
        fills = data.get("fills") or []
        if data.get("isSnapshot"):
            # Historical fills sent on subscribe; already reflected in snapshots.
            logger.debug("%s skipped %d historical fills", self.name, len(fills))
            return
        self.handle_fills(fills)

    def _on_error(self, _ws, error) -> None:
        # Keep errors non-fatal; the run loop reconnects.
        logger.warning("%s HL WS error: %s", self.name, error)

    def _on_close(self, _ws, status_code, msg) -> None:
        logger.info("%s HL WS closed: %s %s", self.name, status_code, msg)
        self._set_state(StreamState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Fill application
    # ------------------------------------------------------------------

    def handle_fills(self, fills: list) -> int:
        """Apply a batch of raw fills in sequence order. Returns the number applied."""
        events = []
        for raw in fills if isinstance(fills, list) else []:
            try:
                ev = parse_fill(raw)
            except StateValidationError as e:
                logger.warning("%s dropped malformed fill: %s", self.name, e)
                continue
            if ev is not None:
                events.append(ev)
        events.sort(key=lambda ev: ev.sequence)

        applied = 0
        for ev in events:
            try:
                ok = self.store.apply_fill(ev.coin, ev.size_delta, ev.price, ev.sequence, ts_ms=ev.ts_ms)
            except StateValidationError as e:
                logger.warning("%s fill rejected for %s: %s", self.name, ev.coin, e)
                continue
            if ok:
                applied += 1

        if applied:
            with self._lock:
                self._fills_applied += applied
            if self._on_applied is not None:
                self._on_applied(self.name)
        return applied

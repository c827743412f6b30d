import json
import logging
import os
import re
from collections import deque
from dataclasses import dataclass

from eth_account import Account
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info
from hyperliquid.utils import constants, types

from copier.utils import now_ms

logger = logging.getLogger(__name__)

_HEX_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Dry-run batches kept for inspection; older ones are dropped.
DRY_RUN_HISTORY = 100


class OrderSubmissionError(RuntimeError):
    """The batch order call failed or was rejected as a whole."""


@dataclass(frozen=True)
class OrderDescriptor:
    coin: str
    asset_id: int
    is_buy: bool
    limit_px: str
    sz: str
    reduce_only: bool
    cloid: str
    tif: str = "Ioc"

    def to_request(self) -> dict:
        """SDK `OrderRequest` shape; the SDK resolves `coin` to the asset id itself."""
        return {
            "coin": self.coin,
            "is_buy": bool(self.is_buy),
            "sz": float(self.sz),
            "limit_px": float(self.limit_px),
            "order_type": {"limit": {"tif": self.tif}},
            "reduce_only": bool(self.reduce_only),
            "cloid": types.Cloid.from_str(self.cloid),
        }


def order_statuses(res) -> list:
    try:
        statuses = ((res.get("response") or {}).get("data") or {}).get("statuses") or []
    except AttributeError:
        return []
    return statuses if isinstance(statuses, list) else []


def _is_ok_response(res) -> bool:
    """
    Hyperliquid SDK actions typically return:
      {"status":"ok","response":...}
    or:
      {"status":"err","response":"..."}

    Per-order errors inside an "ok" batch are not a batch failure.
    """
    if isinstance(res, dict) and "status" in res:
        return str(res.get("status") or "").strip().lower() == "ok"
    return bool(res)


@dataclass(frozen=True)
class LiveSecrets:
    secret_key: str
    main_address: str


def load_live_secrets(path: str) -> LiveSecrets:
    path = os.path.expanduser(str(path or "").strip())
    # Refuse to use secrets files that are group/world-readable on Unix.
    st = os.stat(path)
    if os.name != "nt" and (int(st.st_mode) & 0o077) != 0:
        raise ValueError(
            f"Secrets file permissions too open: {path} (expected no group/other permissions; suggested: chmod 600)"
        )

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Secrets file must contain a JSON object, got {type(data).__name__}: {path}")

    secret_key = str(data.get("secret_key") or "").strip()
    main_address = str(data.get("main_address") or "").strip()

    if not secret_key:
        raise ValueError(f"Missing 'secret_key' in {path}")
    if not _HEX_KEY_RE.match(secret_key):
        raise ValueError(
            f"Invalid 'secret_key' format in {path}: expected 64-char hex string (with optional 0x prefix)"
        )
    if not main_address:
        raise ValueError(f"Missing 'main_address' in {path}")
    if not _ADDRESS_RE.match(main_address):
        raise ValueError(
            f"Invalid 'main_address' format in {path}: expected 0x-prefixed 40-char hex string (42 chars total)"
        )

    return LiveSecrets(secret_key=secret_key, main_address=main_address)


class HyperliquidClient:
    """
    Thin wrapper around the Hyperliquid SDK.

    - `Info` (REST, no WS) serves clearinghouse snapshots and market metadata.
    - `Exchange` (signed REST) submits order batches. It is only built when a
      secret key is given; an approved agent key trades for `main_address`.
    """

    def __init__(
        self,
        *,
        secret_key: str | None = None,
        main_address: str | None = None,
        base_url: str | None = None,
        timeout_s: float | None = None,
    ):
        self._base_url = base_url or constants.MAINNET_API_URL
        self.main_address = str(main_address or "").strip().lower() or None
        self.info = Info(self._base_url, skip_ws=True, timeout=timeout_s)
        self._exchange: Exchange | None = None
        if secret_key:
            if not self.main_address:
                raise ValueError("main_address is required when a secret key is given")
            wallet = Account.from_key(secret_key)
            self._exchange = Exchange(
                wallet,
                self._base_url,
                account_address=self.main_address,
                timeout=timeout_s,
            )

    def user_state(self, address: str) -> dict:
        return self.info.user_state(str(address).strip().lower()) or {}

    def submit_orders(self, orders: list[OrderDescriptor]) -> dict:
        """Submit one batch with grouping "na" (orders are independent)."""
        if self._exchange is None:
            raise OrderSubmissionError("no signing key configured; cannot submit orders")
        try:
            res = self._exchange.bulk_orders([o.to_request() for o in orders], grouping="na")
        except Exception as e:
            raise OrderSubmissionError(f"bulk order call failed: {e}") from e
        if not _is_ok_response(res):
            raise OrderSubmissionError(f"bulk order rejected: {res}")
        return res


class DryRunOrderClient:
    """Order sink that logs batches instead of sending them.

    Only the most recent `history` batches are kept; `submitted` counts all of them.
    """

    def __init__(self, inner: HyperliquidClient | None = None, history: int = DRY_RUN_HISTORY):
        self._inner = inner
        self.batches: deque[list[OrderDescriptor]] = deque(maxlen=max(1, int(history)))
        self.submitted = 0

    def user_state(self, address: str) -> dict:
        if self._inner is None:
            raise RuntimeError("dry-run client has no REST backend for user_state")
        return self._inner.user_state(address)

    def submit_orders(self, orders: list[OrderDescriptor]) -> dict:
        self.batches.append(list(orders))
        self.submitted += 1
        for o in orders:
            logger.info(
                "[dry-run] %s %s sz=%s px=%s reduce_only=%s cloid=%s",
                o.coin,
                "BUY" if o.is_buy else "SELL",
                o.sz,
                o.limit_px,
                o.reduce_only,
                o.cloid,
            )
        return {
            "status": "ok",
            "response": {"type": "order", "data": {"statuses": [{"dryRun": now_ms()} for _ in orders]}},
        }

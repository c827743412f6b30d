import dataclasses
import logging
import math
import threading
import time
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation

from hyperliquid.info import Info
from hyperliquid.utils import constants

from copier.state import InvariantViolation

logger = logging.getLogger(__name__)


class UnknownMarketError(KeyError):
    pass


@dataclass(frozen=True)
class MarketMetadata:
    coin: str
    asset_id: int
    sz_decimals: int
    mark_price: float | None = None


class _Flight:
    """One in-flight load shared by every concurrent caller."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.error: BaseException | None = None


def round_size(size: float, sz_decimals: int) -> float:
    """Rounds DOWN to the allowed size decimals."""
    if sz_decimals < 0:
        raise InvariantViolation(f"negative size precision: {sz_decimals}")
    try:
        d = Decimal(str(float(size)))
    except (TypeError, ValueError, InvalidOperation):
        return 0.0
    if not d.is_finite() or d <= 0:
        return 0.0
    # str() keeps the shortest repr, so 0.29 stays 0.29 instead of 0.28999...
    return float(d.quantize(Decimal(1).scaleb(-int(sz_decimals)), rounding=ROUND_DOWN))


class MarketMetadataCache:
    """Perp universe (asset id + size precision) and mark prices.

    - `ensure_loaded()` fetches the universe once; concurrent callers wait on the
      same in-flight request instead of issuing their own.
    - `refresh_mark_prices()` is throttled to `refresh_interval_s`. When it fails,
      the last known prices stay in place.
    """

    def __init__(
        self,
        *,
        info: Info | None = None,
        base_url: str | None = None,
        timeout_s: float | None = 10.0,
        refresh_interval_s: float = 5.0,
    ):
        self._info_obj = info
        self._base_url = base_url or constants.MAINNET_API_URL
        self._timeout_s = timeout_s
        self.refresh_interval_s = float(max(0.0, refresh_interval_s))

        self._lock = threading.Lock()
        self._markets: dict[str, MarketMetadata] = {}
        self._loaded = False
        self._load_flight: _Flight | None = None

        self._mark_prices: dict[str, float] = {}
        self._prices_at_s: float | None = None
        self._refresh_in_progress = False

    def _info(self) -> Info:
        if self._info_obj is None:
            self._info_obj = Info(self._base_url, skip_ws=True, timeout=self._timeout_s)
        return self._info_obj

    # ------------------------------------------------------------------
    # Universe
    # ------------------------------------------------------------------

    def ensure_loaded(self) -> None:
        with self._lock:
            if self._loaded:
                return
            flight = self._load_flight
            owner = flight is None
            if owner:
                flight = self._load_flight = _Flight()

        if not owner:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return

        try:
            markets = self._fetch_universe()
        except BaseException as e:
            flight.error = e
            raise
        else:
            with self._lock:
                self._markets = markets
                self._loaded = True
            logger.info("market metadata loaded: %d perps", len(markets))
        finally:
            with self._lock:
                self._load_flight = None
            flight.done.set()

    def _fetch_universe(self) -> dict[str, MarketMetadata]:
        meta = self._info().meta() or {}
        out: dict[str, MarketMetadata] = {}
        for asset_id, u in enumerate(meta.get("universe") or []):
            try:
                name = str(u["name"]).strip()
                sz_decimals = int(u["szDecimals"])
            except (KeyError, TypeError, ValueError):
                logger.warning("skipping malformed universe entry #%d: %r", asset_id, u)
                continue
            if sz_decimals < 0:
                raise InvariantViolation(f"{name}: negative szDecimals {sz_decimals} from metadata source")
            out[name] = MarketMetadata(coin=name, asset_id=asset_id, sz_decimals=sz_decimals)
        return out

    # ------------------------------------------------------------------
    # Mark prices
    # ------------------------------------------------------------------

    def refresh_mark_prices(self, *, force: bool = False) -> bool:
        """Returns True when prices are fresh after the call."""
        now_s = time.monotonic()
        with self._lock:
            if (
                not force
                and self._prices_at_s is not None
                and (now_s - self._prices_at_s) < self.refresh_interval_s
            ):
                return True
            if self._refresh_in_progress:
                return False
            self._refresh_in_progress = True

        try:
            prices = self._fetch_mark_prices()
        except Exception as e:
            logger.warning("mark price refresh failed; keeping last known prices: %s", e)
            return False
        finally:
            with self._lock:
                self._refresh_in_progress = False

        with self._lock:
            self._mark_prices.update(prices)
            self._prices_at_s = now_s
        return True

    def _fetch_mark_prices(self) -> dict[str, float]:
        # meta_and_asset_ctxs() returns [meta, asset_ctxs]; ctx index matches universe order.
        data = self._info().meta_and_asset_ctxs()
        if not data or len(data) < 2:
            raise ValueError(f"unexpected metaAndAssetCtxs payload: {str(data)[:200]}")
        universe = (data[0] or {}).get("universe") or []
        ctxs = data[1] or []
        out: dict[str, float] = {}
        for u, ctx in zip(universe, ctxs):
            try:
                name = str(u["name"]).strip()
                px = float(ctx.get("markPx"))
            except (KeyError, TypeError, ValueError, AttributeError):
                continue
            if not math.isfinite(px) or px <= 0:
                continue
            out[name] = px
        return out

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, coin: str) -> MarketMetadata | None:
        sym = str(coin or "").strip()
        with self._lock:
            m = self._markets.get(sym)
            if m is None:
                return None
            return dataclasses.replace(m, mark_price=self._mark_prices.get(sym))

    def require(self, coin: str) -> MarketMetadata:
        m = self.get(coin)
        if m is None:
            raise UnknownMarketError(f"no market metadata for {coin!r}")
        return m

    def get_mark_price(self, coin: str) -> float | None:
        with self._lock:
            return self._mark_prices.get(str(coin or "").strip())

    def round_size(self, coin: str, size: float) -> float:
        return round_size(size, self.require(coin).sz_decimals)

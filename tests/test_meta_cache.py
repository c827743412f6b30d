from __future__ import annotations

import logging
import threading
import time

import pytest

import exchange.meta as meta
from copier.state import InvariantViolation


_UNIVERSE = {
    "universe": [
        {"name": "BTC", "szDecimals": 5},
        {"name": "ETH", "szDecimals": 4},
        {"name": "SOL", "szDecimals": 2},
    ]
}


class _FakeInfo:
    def __init__(self, *_args, **_kwargs):
        self.meta_calls = 0
        self.ctx_calls = 0
        self.marks = {"BTC": "50000.0", "ETH": "3000.0", "SOL": "150.5"}

    def meta(self):
        self.meta_calls += 1
        return _UNIVERSE

    def meta_and_asset_ctxs(self):
        self.ctx_calls += 1
        return [_UNIVERSE, [{"markPx": self.marks.get(u["name"])} for u in _UNIVERSE["universe"]]]


def test_ensure_loaded_builds_lookup_from_universe() -> None:
    cache = meta.MarketMetadataCache(info=_FakeInfo())
    cache.ensure_loaded()

    btc = cache.require(" BTC")
    assert btc.asset_id == 0
    assert btc.sz_decimals == 5
    assert cache.require("SOL").asset_id == 2
    assert cache.get("DOGE") is None
    with pytest.raises(meta.UnknownMarketError):
        cache.require("DOGE")


def test_default_info_is_built_lazily(monkeypatch) -> None:
    built: list[tuple] = []

    class _RecordingInfo(_FakeInfo):
        def __init__(self, *args, **kwargs):
            super().__init__()
            built.append((args, kwargs))

    monkeypatch.setattr(meta, "Info", _RecordingInfo)
    cache = meta.MarketMetadataCache(base_url="https://api.hyperliquid-testnet.xyz", timeout_s=3.0)
    assert built == []

    cache.ensure_loaded()
    assert built == [(("https://api.hyperliquid-testnet.xyz",), {"skip_ws": True, "timeout": 3.0})]


def test_ensure_loaded_single_flight() -> None:
    calls_lock = threading.Lock()
    fetch_started = threading.Event()
    allow_finish = threading.Event()
    calls = {"n": 0}

    class _BlockingFakeInfo(_FakeInfo):
        def meta(self):
            with calls_lock:
                calls["n"] += 1
            fetch_started.set()
            assert allow_finish.wait(timeout=1.0)
            return super().meta()

    cache = meta.MarketMetadataCache(info=_BlockingFakeInfo())
    t1 = threading.Thread(target=cache.ensure_loaded)
    t2 = threading.Thread(target=cache.ensure_loaded)
    t1.start()
    assert fetch_started.wait(timeout=1.0)
    t2.start()
    time.sleep(0.05)
    with calls_lock:
        assert calls["n"] == 1

    allow_finish.set()
    t1.join(timeout=1.0)
    t2.join(timeout=1.0)
    assert not t1.is_alive()
    assert not t2.is_alive()
    with calls_lock:
        assert calls["n"] == 1
    assert cache.require("ETH").sz_decimals == 4

    cache.ensure_loaded()
    with calls_lock:
        assert calls["n"] == 1


def test_ensure_loaded_failure_reaches_waiters_and_allows_retry() -> None:
    fetch_started = threading.Event()
    allow_finish = threading.Event()

    class _FailingOnceInfo(_FakeInfo):
        def meta(self):
            self.meta_calls += 1
            if self.meta_calls == 1:
                fetch_started.set()
                assert allow_finish.wait(timeout=1.0)
                raise ConnectionError("metadata endpoint down")
            return _UNIVERSE

    info = _FailingOnceInfo()
    cache = meta.MarketMetadataCache(info=info)
    errors: list[BaseException] = []

    def _worker() -> None:
        try:
            cache.ensure_loaded()
        except ConnectionError as e:
            errors.append(e)

    t1 = threading.Thread(target=_worker)
    t2 = threading.Thread(target=_worker)
    t1.start()
    assert fetch_started.wait(timeout=1.0)
    t2.start()
    time.sleep(0.05)
    allow_finish.set()
    t1.join(timeout=1.0)
    t2.join(timeout=1.0)

    assert len(errors) == 2
    assert cache.get("BTC") is None

    cache.ensure_loaded()
    assert info.meta_calls == 2
    assert cache.require("BTC").asset_id == 0


def test_negative_size_precision_is_fatal() -> None:
    class _BadInfo(_FakeInfo):
        def meta(self):
            return {"universe": [{"name": "BTC", "szDecimals": -1}]}

    cache = meta.MarketMetadataCache(info=_BadInfo())
    with pytest.raises(InvariantViolation):
        cache.ensure_loaded()


def test_malformed_universe_entry_skipped() -> None:
    class _PartialInfo(_FakeInfo):
        def meta(self):
            return {"universe": [{"name": "BTC"}, {"name": "ETH", "szDecimals": 4}]}

    cache = meta.MarketMetadataCache(info=_PartialInfo())
    cache.ensure_loaded()
    assert cache.get("BTC") is None
    # Asset ids follow universe position even when an entry is skipped.
    assert cache.require("ETH").asset_id == 1


def test_mark_prices_merge_into_metadata() -> None:
    cache = meta.MarketMetadataCache(info=_FakeInfo())
    cache.ensure_loaded()
    assert cache.require("BTC").mark_price is None

    assert cache.refresh_mark_prices()
    assert cache.get_mark_price("BTC") == pytest.approx(50_000.0)
    assert cache.require("SOL").mark_price == pytest.approx(150.5)


def test_mark_refresh_is_throttled() -> None:
    info = _FakeInfo()
    cache = meta.MarketMetadataCache(info=info, refresh_interval_s=60.0)
    assert cache.refresh_mark_prices()
    assert cache.refresh_mark_prices()
    assert info.ctx_calls == 1
    assert cache.refresh_mark_prices(force=True)
    assert info.ctx_calls == 2


def test_mark_refresh_failure_keeps_last_prices(caplog) -> None:
    info = _FakeInfo()
    cache = meta.MarketMetadataCache(info=info, refresh_interval_s=0.0)
    assert cache.refresh_mark_prices()

    def _boom():
        raise TimeoutError("ctx endpoint timed out")

    info.meta_and_asset_ctxs = _boom
    with caplog.at_level(logging.WARNING):
        assert cache.refresh_mark_prices() is False

    assert cache.get_mark_price("ETH") == pytest.approx(3000.0)
    assert any("keeping last known prices" in rec.message for rec in caplog.records)


def test_unusable_mark_prices_are_ignored() -> None:
    info = _FakeInfo()
    info.marks = {"BTC": "0", "ETH": None, "SOL": "nan"}
    cache = meta.MarketMetadataCache(info=info)
    assert cache.refresh_mark_prices()
    assert cache.get_mark_price("BTC") is None
    assert cache.get_mark_price("ETH") is None
    assert cache.get_mark_price("SOL") is None


@pytest.mark.parametrize(
    "size, decimals, expected",
    [
        (0.29, 2, 0.29),
        (256.03, 2, 256.03),
        (1.239, 2, 1.23),
        (1.99999, 4, 1.9999),
        (0.00049, 3, 0.0),
        (12.7, 0, 12.0),
        (-1.0, 2, 0.0),
        (float("nan"), 2, 0.0),
    ],
)
def test_round_size_rounds_down(size, decimals, expected) -> None:
    assert meta.round_size(size, decimals) == expected


def test_round_size_never_rounds_up() -> None:
    for i in range(1, 2000):
        size = i * 0.0137
        assert meta.round_size(size, 3) <= size


def test_round_size_rejects_negative_precision() -> None:
    with pytest.raises(InvariantViolation):
        meta.round_size(1.0, -1)


def test_cache_round_size_uses_market_precision() -> None:
    cache = meta.MarketMetadataCache(info=_FakeInfo())
    cache.ensure_loaded()
    assert cache.round_size("SOL", 3.14159) == 3.14
    with pytest.raises(meta.UnknownMarketError):
        cache.round_size("DOGE", 1.0)


def test_market_names_keep_exchange_casing() -> None:
    class _PrefixedInfo(_FakeInfo):
        def meta(self):
            return {"universe": [{"name": "BTC", "szDecimals": 5}, {"name": "kPEPE", "szDecimals": 0}]}

    cache = meta.MarketMetadataCache(info=_PrefixedInfo())
    cache.ensure_loaded()
    assert cache.require("kPEPE").coin == "kPEPE"
    assert cache.require("kPEPE").asset_id == 1
    assert cache.get("KPEPE") is None

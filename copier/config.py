"""Copier configuration.

Resolution order (later wins):
  1. built-in defaults (``DEFAULTS``)
  2. YAML mapping from ``load_config(path)`` or ``HL_COPY_CONFIG``
  3. ``HL_COPY_*`` environment variables

YAML layout::

    leader_address: "0x..."
    risk:
      copy_ratio: 0.1
      max_leverage: 5
      max_notional_usd: 25000
      max_slippage_bps: 50
    reconcile_interval_s: 30
    testnet: false

Every key under ``risk`` and every top-level key can be overridden from the
environment as ``HL_COPY_<KEY>`` (e.g. ``HL_COPY_COPY_RATIO=0.2``,
``HL_COPY_RECONCILE_INTERVAL_S=15``).
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from hyperliquid.utils import constants

from .utils import deep_merge, env_str

logger = logging.getLogger(__name__)

ENV_PREFIX = "HL_COPY_"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

DEFAULTS: dict[str, Any] = {
    "leader_address": "",
    "risk": {
        "copy_ratio": 0.1,
        "max_leverage": 3.0,
        "max_notional_usd": 10_000.0,
        "max_slippage_bps": 50,
    },
    "reconcile_interval_s": 30.0,
    "mark_refresh_interval_s": 5.0,
    "min_order_delta": 1e-6,
    "dust_position_size": 1e-9,
    "snapshot_grace_ms": 0,
    "testnet": False,
    "base_url": "",
    "ws_url": "",
    "ws_ping_interval_s": 50.0,
    "reconnect_base_s": 1.0,
    "reconnect_max_s": 30.0,
    "min_refresh_spacing_s": 1.0,
    "hl_timeout_s": 10.0,
    "secrets_path": "secrets.json",
    "lock_path": "hl_copier.lock",
    "dry_run": False,
}

_FLOAT_KEYS = {
    "reconcile_interval_s",
    "mark_refresh_interval_s",
    "min_order_delta",
    "dust_position_size",
    "ws_ping_interval_s",
    "reconnect_base_s",
    "reconnect_max_s",
    "min_refresh_spacing_s",
    "hl_timeout_s",
}
_INT_KEYS = {"snapshot_grace_ms"}
_BOOL_KEYS = {"testnet", "dry_run"}
_STR_KEYS = {"leader_address", "base_url", "ws_url", "secrets_path", "lock_path"}
_TRUE_STRINGS = {"1", "true", "yes", "y", "on"}
_FALSE_STRINGS = {"", "0", "false", "no", "n", "off"}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class RiskConfig:
    copy_ratio: float
    max_leverage: float
    max_notional_usd: float
    max_slippage_bps: int

    def __post_init__(self) -> None:
        if not (self.copy_ratio > 0):
            raise ConfigError(f"copy_ratio must be > 0, got {self.copy_ratio}")
        if not (self.max_leverage > 0):
            raise ConfigError(f"max_leverage must be > 0, got {self.max_leverage}")
        if not (self.max_notional_usd > 0):
            raise ConfigError(f"max_notional_usd must be > 0, got {self.max_notional_usd}")
        if int(self.max_slippage_bps) < 0:
            raise ConfigError(f"max_slippage_bps must be >= 0, got {self.max_slippage_bps}")
        if self.copy_ratio > 1:
            logger.warning("copy_ratio %.4f > 1: follower will hold more than the leader", self.copy_ratio)


@dataclass(frozen=True)
class CopyConfig:
    leader_address: str
    risk: RiskConfig
    reconcile_interval_s: float = 30.0
    mark_refresh_interval_s: float = 5.0
    min_order_delta: float = 1e-6
    dust_position_size: float = 1e-9
    snapshot_grace_ms: int = 0
    testnet: bool = False
    base_url: str = field(default=constants.MAINNET_API_URL)
    ws_url: str = ""
    ws_ping_interval_s: float = 50.0
    reconnect_base_s: float = 1.0
    reconnect_max_s: float = 30.0
    min_refresh_spacing_s: float = 1.0
    hl_timeout_s: float = 10.0
    secrets_path: str = "secrets.json"
    lock_path: str = "hl_copier.lock"
    dry_run: bool = False

    def __post_init__(self) -> None:
        if not _ADDRESS_RE.match(self.leader_address or ""):
            raise ConfigError(
                f"leader_address must be a 0x-prefixed 40-char hex address, got {self.leader_address!r}"
            )
        if self.reconcile_interval_s <= 0:
            raise ConfigError("reconcile_interval_s must be > 0")
        if self.mark_refresh_interval_s < 0:
            raise ConfigError("mark_refresh_interval_s must be >= 0")
        if self.min_order_delta < 0 or self.dust_position_size < 0:
            raise ConfigError("dust thresholds must be >= 0")
        if self.snapshot_grace_ms < 0:
            raise ConfigError("snapshot_grace_ms must be >= 0")
        if self.reconnect_base_s <= 0 or self.reconnect_max_s < self.reconnect_base_s:
            raise ConfigError("reconnect backoff needs 0 < reconnect_base_s <= reconnect_max_s")


def default_ws_url(base_url: str) -> str:
    """wss://api.hyperliquid.xyz/ws for https://api.hyperliquid.xyz."""
    base = str(base_url or "").rstrip("/")
    if base.startswith("https://"):
        return "wss://" + base[len("https://") :] + "/ws"
    if base.startswith("http://"):
        return "ws://" + base[len("http://") :] + "/ws"
    return base + "/ws"


def _load_yaml(path: str | os.PathLike[str]) -> dict[str, Any]:
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {p}: {e}") from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping, got {type(data).__name__}: {p}")
    return data


def _as_bool(key: str, val: Any) -> bool:
    if isinstance(val, str):
        s = val.strip().lower()
        if s in _TRUE_STRINGS:
            return True
        if s in _FALSE_STRINGS:
            return False
        raise ConfigError(f"{key} must be a boolean, got {val!r}")
    return bool(val)


def _override(target: dict[str, Any], key: str) -> None:
    # Raw string only; _coerce does the conversion and rejects bad values.
    raw = os.getenv(ENV_PREFIX + key.upper())
    if raw is not None:
        target[key] = raw.strip()


def _apply_env(raw: dict[str, Any]) -> None:
    risk = raw.get("risk")
    if not isinstance(risk, dict):
        risk = raw["risk"] = {}
    for key in ("copy_ratio", "max_leverage", "max_notional_usd", "max_slippage_bps"):
        _override(risk, key)
    for key in sorted(_FLOAT_KEYS | _INT_KEYS | _BOOL_KEYS | _STR_KEYS):
        _override(raw, key)


def _coerce(raw: dict[str, Any]) -> CopyConfig:
    risk_raw = raw.get("risk") or {}
    if not isinstance(risk_raw, dict):
        raise ConfigError("risk must be a mapping")
    try:
        risk = RiskConfig(
            copy_ratio=float(risk_raw["copy_ratio"]),
            max_leverage=float(risk_raw["max_leverage"]),
            max_notional_usd=float(risk_raw["max_notional_usd"]),
            max_slippage_bps=int(risk_raw["max_slippage_bps"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(f"invalid risk config: {e}") from e

    testnet = _as_bool("testnet", raw.get("testnet"))
    base_url = str(raw.get("base_url") or "").strip()
    if not base_url:
        base_url = constants.TESTNET_API_URL if testnet else constants.MAINNET_API_URL
    ws_url = str(raw.get("ws_url") or "").strip() or default_ws_url(base_url)

    try:
        kwargs: dict[str, Any] = {k: float(raw[k]) for k in _FLOAT_KEYS}
        kwargs.update({k: int(raw[k]) for k in _INT_KEYS})
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"invalid numeric config value: {e}") from e

    return CopyConfig(
        leader_address=str(raw.get("leader_address") or "").strip().lower(),
        risk=risk,
        testnet=testnet,
        base_url=base_url,
        ws_url=ws_url,
        secrets_path=str(raw.get("secrets_path") or DEFAULTS["secrets_path"]),
        lock_path=str(raw.get("lock_path") or DEFAULTS["lock_path"]),
        dry_run=_as_bool("dry_run", raw.get("dry_run")),
        **kwargs,
    )


def load_config(path: str | os.PathLike[str] | None = None) -> CopyConfig:
    """Build the process-wide config. Raises ConfigError on any invalid value."""
    raw = copy.deepcopy(DEFAULTS)
    cfg_path = path if path is not None else (env_str(ENV_PREFIX + "CONFIG", "").strip() or None)
    if cfg_path:
        deep_merge(raw, _load_yaml(cfg_path))
    _apply_env(raw)
    cfg = _coerce(raw)
    logger.info(
        "config loaded: leader=%s copy_ratio=%g max_leverage=%g max_notional_usd=%g slippage_bps=%d testnet=%s dry_run=%s",
        cfg.leader_address,
        cfg.risk.copy_ratio,
        cfg.risk.max_leverage,
        cfg.risk.max_notional_usd,
        cfg.risk.max_slippage_bps,
        cfg.testnet,
        cfg.dry_run,
    )
    return cfg

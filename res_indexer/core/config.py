"""
Indexer configuration.

All runtime parameters are loaded from a YAML file (see
``parameters_yml/indexer_config.yml``). Keys missing from the file fall back to
``DEFAULT_CONFIG``; the ``contracts`` section is merged key by key.
"""
from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from res_indexer.core.errors import ConfigError

CONFIG_ENV_VAR = "RES_INDEXER_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "parameters_yml/indexer_config.yml"

REQUIRED_CONTRACTS = ("res_token", "property_nft", "kyc_registry")

DEFAULT_CONFIG: Dict[str, Any] = {
    "json_rpc_urls": ["https://rpc-amoy.polygon.technology"],
    "contracts": {
        "res_token": None,
        "property_nft": None,
        "kyc_registry": None,
        "res_matic_pair": None,
        "price_oracle": None,
    },
    "start_block": 0,
    "batch_size": 1000,
    "batch_delay_ms": 500,
    "sync_interval_ms": 30000,
    "catch_up_threshold_blocks": 100,
    "enable_realtime_sync": True,
    "realtime_poll_interval_ms": 5000,
    "max_workers": 8,
    "large_transfer_threshold": 1000,
    "token_decimals": 18,
    "token_symbol": "RES",
    "db_path": "data/res_indexer.db",
    "log_level": "INFO",
    "request_timeout_s": 60.0,
}


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Read the YAML config at ``path`` (or ``$RES_INDEXER_CONFIG_PATH``) merged over the defaults."""
    path = path or os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if not os.path.exists(path):
        return cfg
    with open(path, "r") as fh:
        loaded = yaml.safe_load(fh) or {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Configuration file {path!r} must contain a mapping.")
    contracts = loaded.pop("contracts", None) or {}
    if not isinstance(contracts, dict):
        raise ConfigError("Config field 'contracts' must be a mapping.")
    cfg.update(loaded)
    cfg["contracts"].update(contracts)
    return cfg


@dataclass
class IndexerConfig:
    """Typed view over the merged configuration mapping."""

    json_rpc_urls: List[str] = field(default_factory=lambda: list(DEFAULT_CONFIG["json_rpc_urls"]))
    contracts: Dict[str, Optional[str]] = field(default_factory=lambda: dict(DEFAULT_CONFIG["contracts"]))

    # Scanning
    start_block: int = 0
    batch_size: int = 1000  # blocks per window
    batch_delay_ms: int = 500  # pacing between windows
    max_workers: int = 8

    # Scheduling
    sync_interval_ms: int = 30000
    catch_up_threshold_blocks: int = 100
    enable_realtime_sync: bool = True
    realtime_poll_interval_ms: int = 5000

    # Extraction
    large_transfer_threshold: float = 1000
    token_decimals: int = 18
    token_symbol: str = "RES"

    # Infrastructure
    db_path: str = "data/res_indexer.db"
    log_level: str = "INFO"
    request_timeout_s: float = 60.0

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "IndexerConfig":
        urls = cfg.get("json_rpc_urls")
        if isinstance(urls, str):
            urls = urls.split()
        if not isinstance(urls, list):
            raise ConfigError("Config field 'json_rpc_urls' must be a list.")
        contracts = dict(DEFAULT_CONFIG["contracts"])
        contracts.update(cfg.get("contracts") or {})
        try:
            return cls(
                json_rpc_urls=[str(url).strip() for url in urls if str(url).strip()],
                contracts={role: (str(addr) if addr else None) for role, addr in contracts.items()},
                start_block=int(cfg.get("start_block", 0)),
                batch_size=int(cfg.get("batch_size", 1000)),
                batch_delay_ms=int(cfg.get("batch_delay_ms", 500)),
                max_workers=int(cfg.get("max_workers", 8)),
                sync_interval_ms=int(cfg.get("sync_interval_ms", 30000)),
                catch_up_threshold_blocks=int(cfg.get("catch_up_threshold_blocks", 100)),
                enable_realtime_sync=bool(cfg.get("enable_realtime_sync", True)),
                realtime_poll_interval_ms=int(cfg.get("realtime_poll_interval_ms", 5000)),
                large_transfer_threshold=float(cfg.get("large_transfer_threshold", 1000)),
                token_decimals=int(cfg.get("token_decimals", 18)),
                token_symbol=str(cfg.get("token_symbol", "RES")),
                db_path=str(cfg.get("db_path", "data/res_indexer.db")),
                log_level=str(cfg.get("log_level", "INFO")).upper(),
                request_timeout_s=float(cfg.get("request_timeout_s", 60.0)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid configuration value: {exc}") from exc

    @classmethod
    def load(cls, path: Optional[str] = None) -> "IndexerConfig":
        return cls.from_dict(load_config(path))

    def validate(self) -> "IndexerConfig":
        """Raise ConfigError unless the RPC endpoints and required contracts are set."""
        missing = []
        if not self.json_rpc_urls:
            missing.append("json_rpc_urls")
        missing.extend(f"contracts.{role}" for role in REQUIRED_CONTRACTS if not self.contracts.get(role))
        if missing:
            raise ConfigError(f"Missing required config: {', '.join(missing)}")
        if self.batch_size <= 0:
            raise ConfigError("Config field 'batch_size' must be positive.")
        if self.max_workers <= 0:
            raise ConfigError("Config field 'max_workers' must be positive.")
        if self.start_block < 0:
            raise ConfigError("Config field 'start_block' must be >= 0.")
        return self

    @property
    def batch_delay(self) -> float:
        return self.batch_delay_ms / 1000.0

    @property
    def sync_interval(self) -> float:
        return self.sync_interval_ms / 1000.0

    @property
    def realtime_poll_interval(self) -> float:
        return self.realtime_poll_interval_ms / 1000.0

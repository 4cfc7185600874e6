# FILE: frs/config.py
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict

from .utils import blake2s_hex


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw or default


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path missing.
      - Only accept dict at top-level.
      - Coerce non-scalar values via str() to avoid arbitrary structures.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        else:
            out[str(k)] = str(v)
    return out


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------

# Never echoed into logs or config_hash().
_SECRET_FIELDS = frozenset({"compute_api_key", "private_key"})


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    app_name: str = "FutureRent Settlement"
    version: str = "dev"
    env: str = "dev"
    config_origin: str = "defaults"

    # --- Persistence ------------------------------------------------------

    db_path: str = "frs.db"

    # --- Compute provider -------------------------------------------------

    compute_base_url: str = "https://inco.example.local"
    compute_api_key: str = ""
    compute_program: str = "futureRentPayoutLogic_v1"
    compute_timeout_s: float = 30.0

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_open_s: float = 60.0

    # Orchestrator retry loop
    retry_max_attempts: int = 3
    retry_base_delay_s: float = 0.5

    # --- Ledger -----------------------------------------------------------

    rpc_url: str = "http://127.0.0.1:8545"
    ws_url: str = ""
    private_key: str = ""
    tx_timeout_s: float = 120.0

    payout_contract_address: str = ""
    payout_abi_path: str = "contracts/PayoutManager.json"
    oracle_contract_address: str = ""
    oracle_abi_path: str = "contracts/OracleVerification.json"
    investment_contract_address: str = ""
    investment_abi_path: str = "contracts/InvestmentRegistry.json"

    # --- Metrics / logging ------------------------------------------------

    prometheus_port: int = 9108
    prom_http_enable: bool = True
    log_level: str = "INFO"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    def public_dict(self) -> Dict[str, Any]:
        """Settings with secrets masked; safe for logs and admin output."""
        data = self.model_dump(mode="json")
        for k in _SECRET_FIELDS:
            if data.get(k):
                data[k] = "***"
        return data

    def config_hash(self) -> str:
        """
        Stable digest of the current settings, secrets excluded.

        Safe to embed in logs to tell which config a process ran with.
        """
        data = self.model_dump(mode="json")
        for k in _SECRET_FIELDS:
            data.pop(k, None)
        return blake2s_hex(data, domain="frs:settings")


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by FRS_CONFIG_PATH.
      3. Environment variables (FRS_*), with bounds; out-of-range values
         keep the previous value.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = os.environ.get("FRS_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # enforces extra="forbid"
        origin = "yaml"

    # 2) Environment overrides

    def _bounded(name: str, key: str, parser, lo: float, hi: float) -> None:
        new = parser(name, merged[key])
        if lo <= new <= hi:
            merged[key] = new

    merged["version"] = _env_str("FRS_VERSION", merged["version"])
    merged["env"] = _env_str("FRS_ENV", merged["env"])
    merged["db_path"] = _env_str("FRS_DB_PATH", merged["db_path"])

    # Compute provider (INCO_* names kept for existing deployments)
    merged["compute_base_url"] = _env_str(
        "FRS_COMPUTE_BASE_URL", _env_str("INCO_BASE_URL", merged["compute_base_url"])
    )
    merged["compute_api_key"] = _env_str(
        "FRS_COMPUTE_API_KEY", _env_str("INCO_API_KEY", merged["compute_api_key"])
    )
    merged["compute_program"] = _env_str(
        "FRS_COMPUTE_PROGRAM", _env_str("INCO_PROGRAM", merged["compute_program"])
    )
    _bounded("FRS_COMPUTE_TIMEOUT_S", "compute_timeout_s", _env_float, 0.1, 600.0)

    _bounded("FRS_BREAKER_THRESHOLD", "breaker_failure_threshold", _env_int, 1, 1000)
    _bounded("FRS_BREAKER_OPEN_S", "breaker_open_s", _env_float, 0.0, 3600.0)
    _bounded("FRS_RETRY_MAX_ATTEMPTS", "retry_max_attempts", _env_int, 1, 10)
    _bounded("FRS_RETRY_BASE_DELAY_S", "retry_base_delay_s", _env_float, 0.0, 60.0)

    # Ledger
    merged["rpc_url"] = _env_str("FRS_RPC_URL", _env_str("RPC_URL", merged["rpc_url"]))
    merged["ws_url"] = _env_str("FRS_WS_URL", merged["ws_url"])
    merged["private_key"] = _env_str("FRS_PRIVATE_KEY", _env_str("PRIVATE_KEY", merged["private_key"]))
    _bounded("FRS_TX_TIMEOUT_S", "tx_timeout_s", _env_float, 1.0, 3600.0)

    merged["payout_contract_address"] = _env_str(
        "PAYOUT_CONTRACT_ADDRESS", merged["payout_contract_address"]
    )
    merged["oracle_contract_address"] = _env_str(
        "ORACLE_VERIFICATION_ADDRESS", merged["oracle_contract_address"]
    )
    merged["investment_contract_address"] = _env_str(
        "INVESTMENT_CONTRACT_ADDRESS", merged["investment_contract_address"]
    )
    merged["payout_abi_path"] = _env_str("FRS_PAYOUT_ABI_PATH", merged["payout_abi_path"])
    merged["oracle_abi_path"] = _env_str("FRS_ORACLE_ABI_PATH", merged["oracle_abi_path"])
    merged["investment_abi_path"] = _env_str("FRS_INVESTMENT_ABI_PATH", merged["investment_abi_path"])

    # Metrics / logging
    port = _env_int("FRS_PROM_PORT", merged["prometheus_port"])
    merged["prometheus_port"] = max(0, port)
    merged["prom_http_enable"] = _env_bool("FRS_PROM_HTTP_ENABLE", merged["prom_http_enable"])
    merged["log_level"] = _env_str("FRS_LOG_LEVEL", merged["log_level"]).upper()

    merged["config_origin"] = origin
    return Settings(**merged)


__all__ = ["Settings", "load_settings"]

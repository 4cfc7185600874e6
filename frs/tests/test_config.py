# frs/tests/test_config.py
import pytest
from pydantic import ValidationError as PydanticValidationError

from frs.config import Settings, load_settings

_ENV_KEYS = [
    "FRS_CONFIG_PATH",
    "FRS_DB_PATH",
    "FRS_COMPUTE_BASE_URL",
    "FRS_COMPUTE_API_KEY",
    "FRS_COMPUTE_TIMEOUT_S",
    "FRS_BREAKER_THRESHOLD",
    "FRS_RETRY_MAX_ATTEMPTS",
    "FRS_PROM_PORT",
    "FRS_PROM_HTTP_ENABLE",
    "FRS_LOG_LEVEL",
    "INCO_BASE_URL",
    "INCO_API_KEY",
    "PRIVATE_KEY",
    "PAYOUT_CONTRACT_ADDRESS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for k in _ENV_KEYS:
        monkeypatch.delenv(k, raising=False)


def test_defaults():
    s = load_settings()
    assert s.config_origin == "defaults"
    assert s.compute_program == "futureRentPayoutLogic_v1"
    assert s.compute_timeout_s == 30.0
    assert s.breaker_failure_threshold == 5
    assert s.breaker_open_s == 60.0
    assert s.retry_max_attempts == 3
    assert s.retry_base_delay_s == 0.5


def test_env_overrides_and_legacy_names(monkeypatch):
    monkeypatch.setenv("INCO_BASE_URL", "https://legacy.example")
    monkeypatch.setenv("INCO_API_KEY", "secret-1")
    monkeypatch.setenv("PAYOUT_CONTRACT_ADDRESS", "0x" + "11" * 20)
    monkeypatch.setenv("FRS_DB_PATH", "/tmp/x.db")
    monkeypatch.setenv("FRS_LOG_LEVEL", "debug")
    s = load_settings()
    assert s.compute_base_url == "https://legacy.example"
    assert s.compute_api_key == "secret-1"
    assert s.payout_contract_address == "0x" + "11" * 20
    assert s.db_path == "/tmp/x.db"
    assert s.log_level == "DEBUG"

    monkeypatch.setenv("FRS_COMPUTE_BASE_URL", "https://new.example")
    assert load_settings().compute_base_url == "https://new.example"


def test_env_bounds_keep_previous_value(monkeypatch):
    monkeypatch.setenv("FRS_COMPUTE_TIMEOUT_S", "99999")
    monkeypatch.setenv("FRS_BREAKER_THRESHOLD", "0")
    monkeypatch.setenv("FRS_RETRY_MAX_ATTEMPTS", "not-a-number")
    s = load_settings()
    assert s.compute_timeout_s == 30.0
    assert s.breaker_failure_threshold == 5
    assert s.retry_max_attempts == 3

    monkeypatch.setenv("FRS_RETRY_MAX_ATTEMPTS", "5")
    assert load_settings().retry_max_attempts == 5


def test_yaml_overlay(tmp_path, monkeypatch):
    p = tmp_path / "frs.yaml"
    p.write_text("compute_program: other_v2\nbreaker_open_s: 5\n", encoding="utf-8")
    monkeypatch.setenv("FRS_CONFIG_PATH", str(p))
    s = load_settings()
    assert s.config_origin == "yaml"
    assert s.compute_program == "other_v2"
    assert s.breaker_open_s == 5.0


def test_yaml_unknown_key_rejected(tmp_path, monkeypatch):
    p = tmp_path / "frs.yaml"
    p.write_text("no_such_knob: 1\n", encoding="utf-8")
    monkeypatch.setenv("FRS_CONFIG_PATH", str(p))
    with pytest.raises(PydanticValidationError):
        load_settings()


def test_secrets_masked_and_excluded_from_hash():
    a = Settings(compute_api_key="k1", private_key="pk1")
    b = Settings(compute_api_key="k2", private_key="pk2")
    assert a.public_dict()["compute_api_key"] == "***"
    assert a.public_dict()["private_key"] == "***"
    assert a.config_hash() == b.config_hash()
    assert a.config_hash() != Settings(db_path="other.db").config_hash()

"""Tests for settings loading and secret lookup.

Settings come from the environment through a secrets manager, so the same
code path serves plain variables, ``*_FILE`` mounts and AWS.
"""

from decimal import Decimal

from settlement.config import Settings
from settlement.models import Chain
from settlement.secrets_manager import (
    BaseSecretsManager,
    EnvFileSecretsManager,
    get_default_secrets_manager,
)


class DictSecrets(BaseSecretsManager):
    def __init__(self, values):
        self.values = values

    def get_secret(self, name):
        return self.values.get(name)


def test_env_file_prefers_file(monkeypatch, tmp_path):
    secret = tmp_path / "custodian_key"
    secret.write_text("from-file\n", encoding="utf-8")
    monkeypatch.setenv("CUSTODIAN_API_KEY", "from-env")
    monkeypatch.setenv("CUSTODIAN_API_KEY_FILE", str(secret))
    assert EnvFileSecretsManager().get_secret("CUSTODIAN_API_KEY") == "from-file"


def test_env_file_relative_to_base_path(monkeypatch, tmp_path):
    (tmp_path / "token").write_text("abc", encoding="utf-8")
    monkeypatch.setenv("LEDGER_TOKEN_FILE", "token")
    assert EnvFileSecretsManager(base_path=tmp_path).get_secret("LEDGER_TOKEN") == "abc"


def test_unreadable_file_yields_none(monkeypatch, tmp_path):
    monkeypatch.setenv("LEDGER_TOKEN_FILE", str(tmp_path / "missing"))
    assert EnvFileSecretsManager().get_secret("LEDGER_TOKEN") is None


def test_aws_backend_without_boto3_falls_back(monkeypatch):
    monkeypatch.setenv("SECRETS_BACKEND", "aws")
    monkeypatch.setattr("settlement.secrets_manager.boto3", None)
    assert isinstance(get_default_secrets_manager(), EnvFileSecretsManager)


def test_defaults_without_environment():
    settings = Settings.from_env(DictSecrets({}))
    assert settings == Settings()
    assert settings.dry_run is True
    assert settings.verification.confirmations_for(Chain.ETH) == 12


def test_from_env_reads_overrides():
    settings = Settings.from_env(
        DictSecrets(
            {
                "DRY_RUN": "false",
                "MIN_CONFIRMATIONS_TRON": "25",
                "DEFAULT_CHAIN": "bsc",
                "LIQUIDITY_FEE_PCT": "1.5",
                "TREASURY_ACCOUNT_ID": "usr-treasury-2",
                "BUS_PARTITIONS": "4",
                "CUSTODIAN_API_KEY": "k",
                "STATE_STORE_URI": "sqlite+aiosqlite:///settlement.db",
            }
        )
    )
    assert settings.dry_run is False
    assert settings.verification.confirmations_for(Chain.TRON) == 25
    assert settings.verification.default_chain == Chain.BSC
    assert settings.fees.liquidity_rate_pct == Decimal("1.5")
    assert settings.accounts.treasury == "usr-treasury-2"
    assert settings.bus_partitions == 4
    assert settings.backends.custodian_api_key == "k"
    assert settings.state_store_uri == "sqlite+aiosqlite:///settlement.db"


def test_invalid_values_keep_defaults():
    settings = Settings.from_env(DictSecrets({"BUS_PARTITIONS": "many", "REDIS_PORT": ""}))
    assert settings.bus_partitions == Settings().bus_partitions
    assert settings.redis_port == 6379

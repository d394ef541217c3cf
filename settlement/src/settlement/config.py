"""
Runtime configuration for the settlement workers.

All tunables live in :class:`Settings`, a tree of pydantic models with
production defaults.  :meth:`Settings.from_env` overlays environment
variables (read through the secrets manager, so ``NAME_FILE`` mounts and
AWS Secrets Manager work for credentials as well).

Recognised variables
--------------------

``ASSET_SYMBOL``                  asset ticker used on ledger lines (``SPECIES``)
``DRY_RUN``                       ``true`` wires the paper accounting/custodian doubles
``TREASURY_ACCOUNT_ID``           treasury account identifier
``MARKET_ACCOUNT_ID``             liquidity-pool/market account identifier
``ASSURANCE_ACCOUNT_ID``          account receiving buyer USDT
``OPERATOR_ACCOUNT_ID``           account receiving listing fees
``MARKET_MAKER_ACCOUNT_ID``       account receiving liquidity fees
``SETTLEMENT_LOCKER_ACCOUNT_ID``  custodian locker holding listed units
``MIN_CONFIRMATIONS_TRON|ETH|BSC``  per-chain confirmation minimum
``AMOUNT_TOLERANCE_PCT``          accepted payment shortfall in percent
``MAX_PAYMENT_AGE_SECONDS``       freshness window for payments
``VERIFICATION_CACHE_TTL``        seconds a verification result is cached
``RESERVATION_TTL_SECONDS``       reservation lease length
``LISTING_MIN_AMOUNT``            minimum units per listing
``LISTING_DURATION_SECONDS``      listing lifetime
``TREASURY_UNIT_PRICE``           USDT per unit for treasury issuance
``RETRY_MAX_ATTEMPTS`` / ``RETRY_INITIAL_DELAY`` / ``RETRY_MAX_DELAY``
``BREAKER_FAILURE_RATIO`` / ``BREAKER_COOLDOWN_SECONDS``
``BUS_PARTITIONS`` / ``MAX_REDELIVERIES``
``STATE_STORE_URI``               SQLAlchemy URL; in-memory store when unset
``REDIS_HOST`` / ``REDIS_PORT``   Redis verification cache when set
``RABBITMQ_HOST`` / ``RABBITMQ_PORT`` / ``RABBITMQ_USER`` / ``RABBITMQ_PASSWORD``
``EVENT_STORE_PATH``              JSON Lines audit log when set
``PROMETHEUS_PORT`` / ``LOG_LEVEL``

Backend endpoints and credentials (``TRONGRID_URL``, ``TRONGRID_API_KEY``,
``TRONSCAN_URL``, ``ETHERSCAN_URL``, ``ETHERSCAN_API_KEY``, ``BSCSCAN_URL``,
``BSCSCAN_API_KEY``, ``NOWPAYMENTS_URL``, ``NOWPAYMENTS_API_KEY``,
``LEDGER_URL``, ``LEDGER_TOKEN``, ``CUSTODIAN_URL``, ``CUSTODIAN_API_KEY``,
``CUSTODIAN_API_SECRET``, ``IDENTITY_URL``, ``IDENTITY_API_KEY``) are looked
up through the secrets manager.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable, Dict, Optional, Set, TypeVar

from pydantic import BaseModel, Field

from .models import Chain
from .secrets_manager import BaseSecretsManager, get_default_secrets_manager

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRUTHY = ("1", "true", "yes", "on")


class SystemAccounts(BaseModel):
    """Well-known system account identifiers and their custodian vaults."""

    treasury: str = "usr-treasury-vault-system"
    market: str = "usr-liquidity-pool"
    assurance: str = "assurance-fund"
    operator: str = "marketplace-fees"
    market_maker: str = "usr-market-maker"
    settlement_locker: str = "marketplace-settlement-locker"
    vaults: Dict[str, str] = Field(default_factory=dict)

    def ids(self) -> Set[str]:
        return {
            self.treasury,
            self.market,
            self.assurance,
            self.operator,
            self.market_maker,
            self.settlement_locker,
        }

    def vault_for(self, account_id: str) -> Optional[str]:
        """Vault of a system account; defaults to ``vault-<account>``."""
        if account_id not in self.ids():
            return None
        return self.vaults.get(account_id, f"vault-{account_id}")


class FeeSettings(BaseModel):
    listing_flat: Decimal = Decimal("100.00")
    listing_threshold: int = 5000
    issuance_per_unit: Decimal = Decimal("0.01")
    liquidity_rate_pct: Decimal = Decimal("2.0")


class VerificationSettings(BaseModel):
    min_confirmations: Dict[Chain, int] = Field(
        default_factory=lambda: {Chain.TRON: 19, Chain.ETH: 12, Chain.BSC: 15}
    )
    amount_tolerance_pct: Decimal = Decimal("0.1")
    max_payment_age_seconds: int = 3600
    cache_ttl_seconds: int = 600
    default_chain: Chain = Chain.TRON
    currency: str = "USDT"
    usdt_contracts: Dict[Chain, str] = Field(
        default_factory=lambda: {
            Chain.TRON: "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t",
            Chain.ETH: "0xdac17f958d2ee523a2206206994597c13d831ec7",
            Chain.BSC: "0x55d398326f99059ff775485246999027b3197955",
        }
    )

    def confirmations_for(self, chain: Chain) -> int:
        return self.min_confirmations.get(chain, 12)


class MatchingSettings(BaseModel):
    reservation_ttl_seconds: int = 300
    sweep_interval_seconds: float = 60.0
    listing_min_amount: int = 5000
    listing_duration_seconds: int = 172800
    listing_max_duration_seconds: int = 604800
    treasury_unit_price: Decimal = Decimal("1.00")


class RetrySettings(BaseModel):
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: float = 1.0


class BreakerSettings(BaseModel):
    failure_ratio: float = 0.5
    minimum_calls: int = 5
    window_seconds: float = 60.0
    cooldown_seconds: float = 60.0
    half_open_max_calls: int = 3


class BackendSettings(BaseModel):
    trongrid_url: str = "https://api.trongrid.io"
    trongrid_api_key: Optional[str] = None
    tronscan_url: str = "https://apilist.tronscanapi.com"
    etherscan_url: str = "https://api.etherscan.io/api"
    etherscan_api_key: Optional[str] = None
    bscscan_url: str = "https://api.bscscan.com/api"
    bscscan_api_key: Optional[str] = None
    nowpayments_url: str = "https://api.nowpayments.io/v1"
    nowpayments_api_key: Optional[str] = None
    ledger_url: str = "http://localhost:5000/api/v1"
    ledger_token: Optional[str] = None
    custodian_url: str = "http://localhost:8081"
    custodian_api_key: Optional[str] = None
    custodian_api_secret: Optional[str] = None
    identity_url: Optional[str] = None
    identity_api_key: Optional[str] = None
    request_timeout: float = 30.0


class Settings(BaseModel):
    """Top-level configuration for one worker process."""

    asset_symbol: str = "SPECIES"
    dry_run: bool = True
    accounts: SystemAccounts = Field(default_factory=SystemAccounts)
    fees: FeeSettings = Field(default_factory=FeeSettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    backends: BackendSettings = Field(default_factory=BackendSettings)
    bus_partitions: int = Field(8, ge=1)
    max_redeliveries: int = Field(5, ge=0)
    redelivery_backoff_seconds: float = 0.5
    state_store_uri: Optional[str] = None
    redis_host: Optional[str] = None
    redis_port: int = 6379
    rabbitmq_host: Optional[str] = None
    rabbitmq_port: int = 5672
    rabbitmq_user: Optional[str] = None
    rabbitmq_password: Optional[str] = None
    event_store_path: Optional[str] = None
    prometheus_port: int = 9108
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, secrets: Optional[BaseSecretsManager] = None) -> "Settings":
        """Build settings from the environment, falling back to defaults."""
        secrets = secrets or get_default_secrets_manager()
        base = cls()

        def get(name: str, cast: Callable[[str], T], default: T) -> T:
            raw = secrets.get_secret(name)
            if raw is None or raw == "":
                return default
            try:
                return cast(raw)
            except (TypeError, ValueError, ArithmeticError):
                logger.warning("Ignoring invalid value for %s: %r", name, raw)
                return default

        def flag(raw: str) -> bool:
            return raw.strip().lower() in TRUTHY

        def opt(name: str, default: Optional[str] = None) -> Optional[str]:
            return secrets.get_secret(name) or default

        acc = base.accounts
        accounts = SystemAccounts(
            treasury=get("TREASURY_ACCOUNT_ID", str, acc.treasury),
            market=get("MARKET_ACCOUNT_ID", str, acc.market),
            assurance=get("ASSURANCE_ACCOUNT_ID", str, acc.assurance),
            operator=get("OPERATOR_ACCOUNT_ID", str, acc.operator),
            market_maker=get("MARKET_MAKER_ACCOUNT_ID", str, acc.market_maker),
            settlement_locker=get("SETTLEMENT_LOCKER_ACCOUNT_ID", str, acc.settlement_locker),
        )

        ver = base.verification
        verification = VerificationSettings(
            min_confirmations={
                chain: get(f"MIN_CONFIRMATIONS_{chain.value}", int, ver.confirmations_for(chain))
                for chain in Chain
            },
            amount_tolerance_pct=get("AMOUNT_TOLERANCE_PCT", Decimal, ver.amount_tolerance_pct),
            max_payment_age_seconds=get("MAX_PAYMENT_AGE_SECONDS", int, ver.max_payment_age_seconds),
            cache_ttl_seconds=get("VERIFICATION_CACHE_TTL", int, ver.cache_ttl_seconds),
            default_chain=get("DEFAULT_CHAIN", lambda v: Chain(v.upper()), ver.default_chain),
        )

        mat = base.matching
        matching = MatchingSettings(
            reservation_ttl_seconds=get("RESERVATION_TTL_SECONDS", int, mat.reservation_ttl_seconds),
            sweep_interval_seconds=get("RESERVATION_SWEEP_SECONDS", float, mat.sweep_interval_seconds),
            listing_min_amount=get("LISTING_MIN_AMOUNT", int, mat.listing_min_amount),
            listing_duration_seconds=get("LISTING_DURATION_SECONDS", int, mat.listing_duration_seconds),
            treasury_unit_price=get("TREASURY_UNIT_PRICE", Decimal, mat.treasury_unit_price),
        )

        fee = base.fees
        fees = FeeSettings(
            listing_flat=get("LISTING_FEE_USDT", Decimal, fee.listing_flat),
            listing_threshold=get("LISTING_FEE_THRESHOLD", int, fee.listing_threshold),
            issuance_per_unit=get("ISSUANCE_FEE_PER_UNIT", Decimal, fee.issuance_per_unit),
            liquidity_rate_pct=get("LIQUIDITY_FEE_PCT", Decimal, fee.liquidity_rate_pct),
        )

        ret = base.retry
        retry = RetrySettings(
            max_attempts=get("RETRY_MAX_ATTEMPTS", int, ret.max_attempts),
            initial_delay=get("RETRY_INITIAL_DELAY", float, ret.initial_delay),
            max_delay=get("RETRY_MAX_DELAY", float, ret.max_delay),
        )

        brk = base.breaker
        breaker = BreakerSettings(
            failure_ratio=get("BREAKER_FAILURE_RATIO", float, brk.failure_ratio),
            minimum_calls=get("BREAKER_MINIMUM_CALLS", int, brk.minimum_calls),
            cooldown_seconds=get("BREAKER_COOLDOWN_SECONDS", float, brk.cooldown_seconds),
            half_open_max_calls=get("BREAKER_HALF_OPEN_CALLS", int, brk.half_open_max_calls),
        )

        be = base.backends
        backends = BackendSettings(
            trongrid_url=get("TRONGRID_URL", str, be.trongrid_url),
            trongrid_api_key=opt("TRONGRID_API_KEY"),
            tronscan_url=get("TRONSCAN_URL", str, be.tronscan_url),
            etherscan_url=get("ETHERSCAN_URL", str, be.etherscan_url),
            etherscan_api_key=opt("ETHERSCAN_API_KEY"),
            bscscan_url=get("BSCSCAN_URL", str, be.bscscan_url),
            bscscan_api_key=opt("BSCSCAN_API_KEY"),
            nowpayments_url=get("NOWPAYMENTS_URL", str, be.nowpayments_url),
            nowpayments_api_key=opt("NOWPAYMENTS_API_KEY"),
            ledger_url=get("LEDGER_URL", str, be.ledger_url),
            ledger_token=opt("LEDGER_TOKEN"),
            custodian_url=get("CUSTODIAN_URL", str, be.custodian_url),
            custodian_api_key=opt("CUSTODIAN_API_KEY"),
            custodian_api_secret=opt("CUSTODIAN_API_SECRET"),
            identity_url=opt("IDENTITY_URL"),
            identity_api_key=opt("IDENTITY_API_KEY"),
            request_timeout=get("BACKEND_TIMEOUT_SECONDS", float, be.request_timeout),
        )

        return cls(
            asset_symbol=get("ASSET_SYMBOL", str, base.asset_symbol),
            dry_run=get("DRY_RUN", flag, base.dry_run),
            accounts=accounts,
            fees=fees,
            verification=verification,
            matching=matching,
            retry=retry,
            breaker=breaker,
            backends=backends,
            bus_partitions=get("BUS_PARTITIONS", int, base.bus_partitions),
            max_redeliveries=get("MAX_REDELIVERIES", int, base.max_redeliveries),
            state_store_uri=opt("STATE_STORE_URI"),
            redis_host=opt("REDIS_HOST"),
            redis_port=get("REDIS_PORT", int, base.redis_port),
            rabbitmq_host=opt("RABBITMQ_HOST"),
            rabbitmq_port=get("RABBITMQ_PORT", int, base.rabbitmq_port),
            rabbitmq_user=opt("RABBITMQ_USER"),
            rabbitmq_password=opt("RABBITMQ_PASSWORD"),
            event_store_path=opt("EVENT_STORE_PATH"),
            prometheus_port=get("PROMETHEUS_PORT", int, base.prometheus_port),
            log_level=get("LOG_LEVEL", str, base.log_level),
        )


__all__ = [
    "Settings",
    "SystemAccounts",
    "FeeSettings",
    "VerificationSettings",
    "MatchingSettings",
    "RetrySettings",
    "BreakerSettings",
    "BackendSettings",
]

"""
Identity / vault resolution.

``resolve(account_id)`` returns the :class:`AccountProfile` (vault, status,
role) for a logical account.  System accounts (treasury, market, assurance
...) never hit the network; their vaults and roles come from configuration.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..config import SystemAccounts
from ..errors import FailureReason, NotFoundError
from ..models import AccountProfile, AccountRole, AccountStatus
from .http_client import JsonHttpClient

logger = logging.getLogger(__name__)


def system_profile(accounts: SystemAccounts, account_id: str) -> Optional[AccountProfile]:
    vault = accounts.vault_for(account_id)
    if vault is None:
        return None
    roles = {
        accounts.treasury: AccountRole.TREASURY,
        accounts.market: AccountRole.LIQUIDITY_PROVIDER,
        accounts.assurance: AccountRole.ASSURANCE,
        accounts.operator: AccountRole.OPERATOR,
        accounts.market_maker: AccountRole.MARKET_MAKER,
        accounts.settlement_locker: AccountRole.OPERATOR,
    }
    return AccountProfile(account_id=account_id, vault_id=vault, role=roles[account_id])


class StaticIdentityResolver:
    """Resolver backed by a fixed mapping; unknown accounts get ``vault-<id>``.

    Used in dry-run mode and in tests.  Pass ``strict=True`` to make unknown
    accounts fail with ``account.not_found`` instead.
    """

    def __init__(
        self,
        accounts: Optional[SystemAccounts] = None,
        profiles: Optional[Dict[str, AccountProfile]] = None,
        *,
        strict: bool = False,
    ) -> None:
        self.accounts = accounts or SystemAccounts()
        self.profiles: Dict[str, AccountProfile] = dict(profiles or {})
        self.strict = strict

    def register(self, profile: AccountProfile) -> None:
        self.profiles[profile.account_id] = profile

    async def resolve(self, account_id: str) -> AccountProfile:
        profile = system_profile(self.accounts, account_id) or self.profiles.get(account_id)
        if profile is not None:
            return profile
        if self.strict:
            raise NotFoundError(FailureReason.ACCOUNT_NOT_FOUND, f"unknown account {account_id}")
        return AccountProfile(account_id=account_id, vault_id=f"vault-{account_id}")


class IdentityClient(JsonHttpClient):
    """Resolve accounts through the identity service."""

    not_found_reason = FailureReason.ACCOUNT_NOT_FOUND
    rejected_reason = FailureReason.REQUEST_INVALID

    def __init__(self, base_url: str, api_key: Optional[str] = None, accounts: Optional[SystemAccounts] = None, **kwargs: Any) -> None:
        headers = {"x-api-key": api_key} if api_key else None
        super().__init__("identity", base_url, headers=headers, **kwargs)
        self.accounts = accounts or SystemAccounts()

    async def resolve(self, account_id: str) -> AccountProfile:
        profile = system_profile(self.accounts, account_id)
        if profile is not None:
            return profile
        data = await self.get(f"/accounts/{account_id}")
        status = str(data.get("status", "active")).lower()
        role = str(data.get("role", "trader")).lower()
        try:
            account_role = AccountRole(role)
        except ValueError:
            logger.debug("Unknown role %r for %s; treating as trader", role, account_id)
            account_role = AccountRole.TRADER
        return AccountProfile(
            account_id=account_id,
            vault_id=str(data["vaultId"]),
            status=AccountStatus(status) if status in AccountStatus._value2member_map_ else AccountStatus.SUSPENDED,
            role=account_role,
        )

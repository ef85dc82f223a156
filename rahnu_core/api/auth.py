"""
System wiring and authentication dependencies
"""

from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..access import AccessGuard, Caller, ModuleScope, Role
from ..async_storage import AsyncStorageInterface, create_async_storage
from ..audit import AuditTrail
from ..config import RahnuConfig, get_config
from ..exceptions import AuthenticationError
from ..gold_prices import GoldPriceBook
from ..currency import Currency
from ..loans import LoanManager
from ..savings import GoldSavingsManager
from ..valuation import ValuationCalculator
from ..vault import VaultCustodyProtocol


security = HTTPBearer(auto_error=False)


class RahnuSystem:
    """Ar-Rahnu core with all components initialized"""

    def __init__(
        self,
        config: Optional[RahnuConfig] = None,
        storage: Optional[AsyncStorageInterface] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_async_storage(
            self.config.database_url, self.config.database_pool_size
        )
        timeout = self.config.storage_timeout_seconds

        self.audit_trail = AuditTrail(
            self.storage,
            retry_attempts=self.config.audit_retry_attempts,
            retry_delay_seconds=self.config.audit_retry_delay_seconds,
            timeout_seconds=timeout
        )
        self.price_book = GoldPriceBook(self.storage, self.audit_trail, timeout)
        self.valuation_calculator = ValuationCalculator(self.price_book, self.config)
        self.loan_manager = LoanManager(
            self.storage, self.valuation_calculator, self.audit_trail, self.config, timeout
        )
        self.vault = VaultCustodyProtocol(
            self.storage, self.loan_manager, self.audit_trail, timeout
        )
        self.savings = GoldSavingsManager(
            self.storage, self.price_book, self.audit_trail,
            currency=Currency[self.config.currency],
            update_attempts=self.config.savings_update_attempts,
            timeout_seconds=timeout
        )
        self.access_guard = AccessGuard()

    async def initialize(self) -> None:
        await self.storage.initialize()

    async def close(self) -> None:
        await self.storage.close()


# Global system instance, created on first use
rahnu_system: Optional[RahnuSystem] = None


def get_system() -> RahnuSystem:
    global rahnu_system
    if rahnu_system is None:
        rahnu_system = RahnuSystem()
    return rahnu_system


def set_system(system: Optional[RahnuSystem]) -> None:
    """Replace the global system (tests, embedding)"""
    global rahnu_system
    rahnu_system = system


def get_current_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: RahnuSystem = Depends(get_system)
) -> Caller:
    """Dependency that validates the bearer JWT and returns the calling identity"""
    config = system.config
    if not config.auth_enabled:
        # For tests and local runs when auth is disabled
        return Caller(user_id="test_user", role=Role.ADMIN, scope=ModuleScope.ADMIN)

    if credentials is None:
        raise AuthenticationError()

    try:
        payload = jwt.decode(
            credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError("Invalid token") from e

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")

    try:
        role = Role(payload.get("role"))
        scope = ModuleScope(payload.get("scope"))
    except ValueError as e:
        raise AuthenticationError("Invalid token") from e

    return Caller(
        user_id=user_id,
        role=role,
        scope=scope,
        branch_id=payload.get("branch_id"),
    )

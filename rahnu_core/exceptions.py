"""
Error Taxonomy

Every expected, caller-recoverable failure in the core is a RahnuError carrying
the HTTP status the API layer answers with and a stable message that existing
UI copy depends on.
"""

from typing import Optional


class RahnuError(Exception):
    """Base class for expected domain errors"""

    status_code: int = 400
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# Vault custody

class LoanNotFoundError(RahnuError):
    status_code = 404
    default_message = "Loan not found"


class AlreadyVaultedError(RahnuError):
    status_code = 409
    default_message = "Item already secured in vault for this loan"


class NotInVaultError(RahnuError):
    status_code = 404
    default_message = "Vault item not found or already released"


class DuplicateApproverError(RahnuError):
    status_code = 400
    default_message = "Two different approvers required"


class MissingSignatureError(RahnuError):
    status_code = 400
    default_message = "Both approver signatures are required"


class DuplicateBarcodeError(RahnuError):
    status_code = 409
    default_message = "Barcode already assigned to another vault item"


# Valuation and pricing

class InvalidMarginError(RahnuError):
    status_code = 400
    default_message = "Margin percentage out of range"


class InvalidWeightError(RahnuError):
    status_code = 400
    default_message = "Weight must be greater than zero"


class InvalidPriceError(RahnuError):
    status_code = 400
    default_message = "Gold price must be greater than zero"


class NoActivePriceError(RahnuError):
    status_code = 404

    def __init__(self, karat: str):
        self.karat = karat
        super().__init__(f"No active price found for {karat} karat gold")


class GoldPriceNotFoundError(RahnuError):
    status_code = 404
    default_message = "Gold price record not found"


# Gold savings

class AccountNotFoundError(RahnuError):
    status_code = 404
    default_message = "Account not found"


class AccountInactiveError(RahnuError):
    status_code = 400
    default_message = "Account is not active"


class InsufficientGoldBalanceError(RahnuError):
    status_code = 400
    default_message = "Insufficient gold balance"


class ConcurrentUpdateError(RahnuError):
    status_code = 409
    default_message = "Account was updated concurrently, please retry"


# Infrastructure

class StorageUnavailableError(RahnuError):
    """Persistence failed or timed out; nothing was applied, safe to retry"""
    status_code = 503
    default_message = "Storage temporarily unavailable, please retry"


class StorageTimeoutError(StorageUnavailableError):
    """The call ran out of time and was abandoned; a write was not applied"""
    default_message = "Storage call timed out, please retry"


class AuditWriteError(RahnuError):
    status_code = 503
    default_message = "Audit log could not be written"


# Access

class AuthenticationError(RahnuError):
    status_code = 401
    default_message = "Authentication required"


class AccessDeniedError(RahnuError):
    status_code = 403
    default_message = "Insufficient permissions"

"""Unified exception hierarchy for the coordination engine.

All engine-specific exceptions inherit from CosignerException, enabling:
- Consistent error handling between the coordinator and its collaborators
- User-visible error text without leaking raw provider errors
- Mapping from raw chain / coordination service failures at the boundary

Usage:
    from cosigner.exceptions import (
        CosignerException,
        InsufficientConfirmationsError,
        exception_from_chain_error,
    )

    try:
        tx_hash = await account.execute(operation, signatures)
    except Exception as e:
        raise exception_from_chain_error(e, chain_id=11155111)

All exceptions have:
- error_code: Machine-readable error code (e.g., "INSUFFICIENT_CONFIRMATIONS")
- http_status: Status code to use when the error crosses an HTTP surface
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to response format
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Type

logger = logging.getLogger(__name__)


class CosignerException(Exception):
    """Base exception for all coordination engine errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "COSIGNER_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation & Input Errors
# =============================================================================

class CosignerValidationError(CosignerException):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class InvalidRecipientError(CosignerValidationError):
    """Recipient is not a well-formed account identifier."""

    error_code = "INVALID_RECIPIENT"

    def __init__(self, recipient: Any, details: Optional[dict[str, Any]] = None) -> None:
        details = details or {}
        details["recipient"] = str(recipient)
        super().__init__(
            f"Invalid recipient address: {recipient!r}",
            field="to",
            details=details,
        )


class OperationNotFoundError(CosignerException):
    """No tracked operation for the given hash."""

    error_code = "OPERATION_NOT_FOUND"
    http_status = 404

    def __init__(self, operation_hash: str) -> None:
        super().__init__(
            f"Operation '{operation_hash}' not found",
            details={"operation_hash": operation_hash},
        )


class OperationHashMismatchError(CosignerValidationError):
    """Rebuilt operation does not hash to the stored identifier."""

    error_code = "OPERATION_HASH_MISMATCH"

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            "Stored transaction payload does not match current transaction hash.",
            details={"expected": expected, "actual": actual},
        )


# =============================================================================
# Signing & Gating Errors
# =============================================================================

class NoSignerAvailableError(CosignerException):
    """Runtime policy forbids signing or submitting in this context."""

    error_code = "NO_SIGNER_AVAILABLE"
    http_status = 403

    def __init__(
        self,
        message: str = "No signer available. Connect a wallet first.",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)


class SignatureUnavailableError(CosignerException):
    """Signer returned no usable signature."""

    error_code = "SIGNATURE_UNAVAILABLE"
    http_status = 400


class AlreadyConfirmedError(CosignerException):
    """Signer has already confirmed this operation."""

    error_code = "ALREADY_CONFIRMED"
    http_status = 409

    def __init__(self, operation_hash: str, signer_address: str) -> None:
        super().__init__(
            "Transaction already confirmed by current signer",
            details={"operation_hash": operation_hash, "signer": signer_address},
        )


class AlreadyExecutedError(CosignerException):
    """Operation has already been executed."""

    error_code = "ALREADY_EXECUTED"
    http_status = 409

    def __init__(self, operation_hash: str, tx_hash: Optional[str] = None) -> None:
        details: dict[str, Any] = {"operation_hash": operation_hash}
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__("Transaction is already executed", details=details)


class OperationInFlightError(CosignerException):
    """Another call for the same operation is still running."""

    error_code = "OPERATION_IN_FLIGHT"
    http_status = 409

    def __init__(self, operation_hash: str, action: str) -> None:
        super().__init__(
            f"A {action} for this transaction is already in progress",
            details={"operation_hash": operation_hash, "action": action},
        )


class InsufficientConfirmationsError(CosignerException):
    """Confirmations collected are below the account threshold."""

    error_code = "INSUFFICIENT_CONFIRMATIONS"
    http_status = 409

    def __init__(self, have: int, need: int, operation_hash: Optional[str] = None) -> None:
        self.have = have
        self.need = need
        details: dict[str, Any] = {"have": have, "need": need}
        if operation_hash:
            details["operation_hash"] = operation_hash
        super().__init__(f"Not enough confirmations: {have}/{need}", details=details)


# =============================================================================
# Collaborator Errors
# =============================================================================

class RemoteServiceUnavailableError(CosignerException):
    """Coordination service call failed or is not configured."""

    error_code = "REMOTE_SERVICE_UNAVAILABLE"
    http_status = 503

    def __init__(
        self,
        message: str = "Transaction service temporarily unavailable",
        chain_id: Optional[int] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if chain_id is not None:
            details["chain_id"] = chain_id
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)


class AccountUnavailableError(CosignerException):
    """Reading account state (owners, threshold, nonce) failed."""

    error_code = "ACCOUNT_UNAVAILABLE"
    http_status = 503

    def __init__(
        self,
        message: str = "Account state is temporarily unavailable",
        chain_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if chain_id is not None:
            details["chain_id"] = chain_id
        super().__init__(message, details=details)


class ExecutionRevertedError(CosignerException):
    """On-chain execution failed."""

    error_code = "EXECUTION_REVERTED"
    http_status = 502

    def __init__(
        self,
        message: str,
        chain_id: Optional[int] = None,
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if chain_id is not None:
            details["chain_id"] = chain_id
        if tx_hash:
            details["tx_hash"] = tx_hash
        if reason:
            details["reason"] = reason
        super().__init__(message, details=details)


class PersistenceUnavailableError(CosignerException):
    """Client-side storage could not be read or written (non-fatal)."""

    error_code = "PERSISTENCE_UNAVAILABLE"
    http_status = 503

    def __init__(
        self,
        message: str = "Local storage unavailable",
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details)


class ConfigurationError(CosignerException):
    """Invalid or missing configuration."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


# =============================================================================
# Error Mapping Utilities
# =============================================================================

# Chain error patterns and their corresponding exception types
CHAIN_ERROR_PATTERNS: dict[str, tuple[Type[CosignerException], str]] = {
    "execution reverted": (ExecutionRevertedError, "Transaction execution reverted"),
    "gs013": (ExecutionRevertedError, "Safe transaction failed"),
    "gs020": (ExecutionRevertedError, "Signatures data too short"),
    "gs025": (ExecutionRevertedError, "Invalid owner signature"),
    "gs026": (ExecutionRevertedError, "Invalid owner provided"),
    "insufficient funds": (ExecutionRevertedError, "Insufficient funds for transaction"),
    "nonce too low": (ExecutionRevertedError, "Transaction nonce too low"),
    "user rejected": (NoSignerAvailableError, "Signature request rejected by wallet"),
    "timeout": (ExecutionRevertedError, "Execution request timed out"),
    "timed out": (ExecutionRevertedError, "Execution request timed out"),
    "connection refused": (ExecutionRevertedError, "RPC node connection refused"),
}


def exception_from_chain_error(
    error: BaseException,
    chain_id: Optional[int] = None,
    operation_hash: Optional[str] = None,
) -> CosignerException:
    """Convert a raw chain/RPC failure to the engine's taxonomy.

    Chain primitives return loosely-typed failures (plain exceptions, revert
    strings); everything past this boundary sees a CosignerException.

    Args:
        error: The original exception from the chain call
        chain_id: Optional chain id
        operation_hash: Optional operation hash being executed

    Returns:
        Appropriate CosignerException subclass
    """
    if isinstance(error, CosignerException):
        return error

    error_str = str(error).lower()
    details: dict[str, Any] = {"original_error": str(error)}
    if operation_hash:
        details["operation_hash"] = operation_hash

    for pattern, (exc_class, message) in CHAIN_ERROR_PATTERNS.items():
        if pattern in error_str:
            if exc_class is ExecutionRevertedError:
                return ExecutionRevertedError(
                    message,
                    chain_id=chain_id,
                    reason=str(error),
                    details=details,
                )
            return exc_class(message, details=details)

    return ExecutionRevertedError(
        f"Execution failed: {error}",
        chain_id=chain_id,
        reason=str(error),
        details=details,
    )


def exception_from_account_error(
    error: BaseException,
    action: str,
    chain_id: Optional[int] = None,
) -> CosignerException:
    """Convert a failed account read or signing request to the engine's taxonomy."""
    if isinstance(error, CosignerException):
        return error

    error_str = str(error).lower()
    details: dict[str, Any] = {"original_error": str(error), "action": action}
    if action == "sign":
        if "user rejected" in error_str or "denied" in error_str:
            return NoSignerAvailableError("Signature request rejected by wallet", details=details)
        return SignatureUnavailableError(f"Signing failed: {error}", details=details)
    if "timeout" in error_str or "timed out" in error_str:
        return AccountUnavailableError("Account read timed out", chain_id=chain_id, details=details)
    return AccountUnavailableError(f"Account read failed: {error}", chain_id=chain_id, details=details)


def exception_from_service_error(
    error: BaseException,
    chain_id: Optional[int] = None,
    status_code: Optional[int] = None,
) -> CosignerException:
    """Convert a coordination service failure to the engine's taxonomy."""
    if isinstance(error, CosignerException):
        return error

    error_str = str(error).lower()
    if "timeout" in error_str or "timed out" in error_str:
        message = "Transaction service request timed out"
    elif status_code == 404:
        message = "Transaction not found on transaction service"
    else:
        message = f"Transaction service request failed: {error}"

    return RemoteServiceUnavailableError(
        message,
        chain_id=chain_id,
        status_code=status_code,
        details={"original_error": str(error)},
    )


def to_user_message(error: BaseException, fallback: str = "Unexpected error") -> str:
    """Render an error as the text shown to the user."""
    if isinstance(error, CosignerException):
        return error.message
    text = str(error)
    return text or fallback


# =============================================================================
# Exception Registry
# =============================================================================

EXCEPTION_REGISTRY: dict[str, Type[CosignerException]] = {
    "COSIGNER_ERROR": CosignerException,
    "VALIDATION_ERROR": CosignerValidationError,
    "INVALID_RECIPIENT": InvalidRecipientError,
    "OPERATION_NOT_FOUND": OperationNotFoundError,
    "OPERATION_HASH_MISMATCH": OperationHashMismatchError,
    "NO_SIGNER_AVAILABLE": NoSignerAvailableError,
    "SIGNATURE_UNAVAILABLE": SignatureUnavailableError,
    "ALREADY_CONFIRMED": AlreadyConfirmedError,
    "ALREADY_EXECUTED": AlreadyExecutedError,
    "OPERATION_IN_FLIGHT": OperationInFlightError,
    "INSUFFICIENT_CONFIRMATIONS": InsufficientConfirmationsError,
    "REMOTE_SERVICE_UNAVAILABLE": RemoteServiceUnavailableError,
    "ACCOUNT_UNAVAILABLE": AccountUnavailableError,
    "EXECUTION_REVERTED": ExecutionRevertedError,
    "PERSISTENCE_UNAVAILABLE": PersistenceUnavailableError,
    "CONFIGURATION_ERROR": ConfigurationError,
}


def get_exception_class(error_code: str) -> Type[CosignerException]:
    """Get the exception class for an error code (base class if unknown)."""
    return EXCEPTION_REGISTRY.get(error_code, CosignerException)


def create_exception(
    error_code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
) -> CosignerException:
    """Create a generic exception instance carrying the given error code.

    Subclasses with structured constructors (e.g. InsufficientConfirmationsError)
    are instantiated through the base initializer so that a code and message
    coming from a remote payload can always be materialized.
    """
    exc_class = get_exception_class(error_code)
    exc = CosignerException.__new__(exc_class)
    CosignerException.__init__(exc, message, error_code=error_code, details=details)
    return exc

"""Multisig transaction coordination exports."""

__version__ = "0.1.0"

from .config import CosignerSettings, load_settings
from .coordination_client import CoordinationClientRegistry, CoordinationServiceClient
from .coordinator import LifecycleCoordinator, LifecycleOutcome
from .exceptions import (
    AccountUnavailableError,
    CosignerException,
    CosignerValidationError,
    InvalidRecipientError,
    NoSignerAvailableError,
    InsufficientConfirmationsError,
    RemoteServiceUnavailableError,
    ExecutionRevertedError,
    PersistenceUnavailableError,
)
from .operations import (
    CallType,
    Operation,
    OperationIntent,
    TransactionIntent,
    build_operation,
    compute_operation_hash,
)
from .persistence import (
    InMemoryStorage,
    JsonFileStorage,
    KeyValueStorage,
    PersistedOperation,
    PersistenceAdapter,
)
from .primitives import AccountContract, HostRelay, NormalizedAccount, SimulatedSafeAccount
from .runtime import (
    AppContext,
    RuntimePolicy,
    SignerProvider,
    TxSubmissionPath,
    resolve_runtime_policy,
)
from .store import (
    ConfirmationStore,
    LocalConfirmationStore,
    OperationStatus,
    RemoteConfirmationStore,
    Substrate,
    TrackedOperation,
    effective_confirmations,
)

__all__ = [
    "CosignerSettings",
    "load_settings",
    "CoordinationClientRegistry",
    "CoordinationServiceClient",
    "LifecycleCoordinator",
    "LifecycleOutcome",
    "AccountUnavailableError",
    "CosignerException",
    "CosignerValidationError",
    "InvalidRecipientError",
    "NoSignerAvailableError",
    "InsufficientConfirmationsError",
    "RemoteServiceUnavailableError",
    "ExecutionRevertedError",
    "PersistenceUnavailableError",
    "CallType",
    "Operation",
    "OperationIntent",
    "TransactionIntent",
    "build_operation",
    "compute_operation_hash",
    "InMemoryStorage",
    "JsonFileStorage",
    "KeyValueStorage",
    "PersistedOperation",
    "PersistenceAdapter",
    "AccountContract",
    "HostRelay",
    "NormalizedAccount",
    "SimulatedSafeAccount",
    "AppContext",
    "RuntimePolicy",
    "SignerProvider",
    "TxSubmissionPath",
    "resolve_runtime_policy",
    "ConfirmationStore",
    "LocalConfirmationStore",
    "OperationStatus",
    "RemoteConfirmationStore",
    "Substrate",
    "TrackedOperation",
    "effective_confirmations",
]

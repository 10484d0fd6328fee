"""
Lifecycle coordinator.

Drives an operation through build -> propose -> confirm -> execute for one
account session, on whichever substrate the runtime policy selects:

    host-relay                   -> embedded fast path, executed on return
    remote-coordination-service  -> RemoteConfirmationStore
    direct-to-chain              -> LocalConfirmationStore
    none                         -> read-only

The handle_* methods never raise for lifecycle failures: they return a
LifecycleOutcome and set `last_error` to the user-visible message. Every
mutating step writes through to persistence before returning.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from .config import CosignerSettings, load_settings
from .coordination_client import CoordinationClientRegistry
from .exceptions import (
    AlreadyConfirmedError,
    AlreadyExecutedError,
    ConfigurationError,
    CosignerException,
    NoSignerAvailableError,
    OperationHashMismatchError,
    OperationInFlightError,
    OperationNotFoundError,
    exception_from_chain_error,
    to_user_message,
)
from .logging_utils import CoordinationLogger, OperationType, account_address_var
from .operations import (
    Operation,
    OperationIntent,
    build_add_owner_intent,
    build_change_threshold_intent,
    build_operation,
    build_remove_owner_intent,
    host_calls_for,
    normalize_address,
    origin_for_intent,
    parse_payload,
    parse_recipient,
    parse_value,
)
from .persistence import KeyValueStorage, PersistenceAdapter
from .primitives import AccountContract, HostRelay, NormalizedAccount, SimulatedSafeAccount
from .runtime import AppContext, RuntimePolicy, TxSubmissionPath, resolve_runtime_policy
from .store import (
    ConfirmationStore,
    LocalConfirmationStore,
    OperationStatus,
    RemoteConfirmationStore,
    Substrate,
    TrackedOperation,
)

logger = logging.getLogger(__name__)

REMOTE_SUBSTRATE_LABEL = "Transaction Service"
LOCAL_SUBSTRATE_LABEL = "Local-only"


@dataclass
class LifecycleOutcome:
    """Result of a lifecycle step as shown to the user."""
    ok: bool
    action: str
    operation_hash: Optional[str] = None
    tracked: Optional[TrackedOperation] = None
    message: Optional[str] = None
    error: Optional[CosignerException] = None

    @property
    def status(self) -> Optional[OperationStatus]:
        return self.tracked.status if self.tracked else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "action": self.action,
            "operation_hash": self.operation_hash,
            "status": self.status.value if self.status else None,
            "tracked": self.tracked.to_dict() if self.tracked else None,
            "message": self.message,
            "error": self.error.to_dict() if self.error else None,
        }


class LifecycleCoordinator:
    """
    Coordinates co-signing for one account session.

    Args:
        account: Account contract primitives (with the connected signer)
        policy: Resolved runtime policy for the session
        storage: Key-value storage for persisted operations
        client_registry: Transaction service clients (remote substrate)
        host_relay: Embedding host (host-relay path)
        coordination_logger: Lifecycle logger
    """

    def __init__(
        self,
        account: AccountContract,
        policy: RuntimePolicy,
        storage: Union[KeyValueStorage, PersistenceAdapter],
        client_registry: Optional[CoordinationClientRegistry] = None,
        host_relay: Optional[HostRelay] = None,
        coordination_logger: Optional[CoordinationLogger] = None,
    ):
        self._account = NormalizedAccount.wrap(account)
        self._registry = client_registry
        self._host_relay = host_relay
        self._log = coordination_logger or CoordinationLogger()
        if isinstance(storage, PersistenceAdapter):
            self._persistence = storage
        else:
            self._persistence = PersistenceAdapter(storage)

        self._policy = policy
        self._store: Optional[ConfirmationStore] = self._select_store(policy)
        self._history: Dict[str, TrackedOperation] = {}
        self._in_flight: Set[str] = set()
        self._restored = False
        self.last_error: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        account: AccountContract,
        storage: Union[KeyValueStorage, PersistenceAdapter],
        app_context: Union[AppContext, str] = AppContext.STANDALONE,
        signer_kind: Optional[str] = None,
        rpc_url: Optional[str] = None,
        settings: Optional[CosignerSettings] = None,
        client_registry: Optional[CoordinationClientRegistry] = None,
        host_relay: Optional[HostRelay] = None,
    ) -> "LifecycleCoordinator":
        """Resolve the policy from settings and the session, then build a coordinator."""
        settings = settings or load_settings()
        inner = account.inner if isinstance(account, NormalizedAccount) else account
        if settings.chain_mode == "live" and isinstance(inner, SimulatedSafeAccount):
            raise ConfigurationError(
                "Simulated account cannot be used with chain_mode=live",
                details={"chain_mode": settings.chain_mode},
            )
        registry = client_registry or CoordinationClientRegistry(settings)
        policy = resolve_runtime_policy(
            app_context,
            is_connected=account.signer_address is not None,
            signer_kind=signer_kind,
            remote_service_enabled=settings.tx_service_enabled,
            remote_service_supports_chain=registry.supports(account.chain_id, rpc_url),
        )
        return cls(
            account,
            policy,
            storage,
            client_registry=registry,
            host_relay=host_relay,
            coordination_logger=CoordinationLogger(config=settings.logging_config),
        )

    # ------------------------------------------------------------------
    # Policy and substrate
    # ------------------------------------------------------------------

    def _select_store(self, policy: RuntimePolicy) -> Optional[ConfirmationStore]:
        path = policy.tx_submission_path
        if path == TxSubmissionPath.REMOTE_COORDINATION_SERVICE:
            if self._registry is None:
                raise ConfigurationError(
                    "Transaction service selected but no service client is configured"
                )
            client = self._registry.get(self._account.chain_id)
            return RemoteConfirmationStore(self._account, client, self._log)
        if path == TxSubmissionPath.DIRECT_TO_CHAIN:
            return LocalConfirmationStore(self._account, self._log)
        return None

    @property
    def policy(self) -> RuntimePolicy:
        return self._policy

    def set_policy(self, policy: RuntimePolicy) -> None:
        """Apply a recomputed policy; switching paths re-selects the substrate."""
        if policy == self._policy:
            return
        path_changed = policy.tx_submission_path != self._policy.tx_submission_path
        self._policy = policy
        if path_changed:
            self._store = self._select_store(policy)
            self._history.clear()
            self._restored = False
            logger.info(f"Submission path changed to {policy.tx_submission_path.value}")

    @property
    def substrate(self) -> Optional[Substrate]:
        return self._store.substrate if self._store else None

    def substrate_label(self) -> str:
        if self._policy.uses_remote_service:
            return REMOTE_SUBSTRATE_LABEL
        return LOCAL_SUBSTRATE_LABEL

    def substrate_help_text(self) -> str:
        if self._policy.is_embedded:
            return "Transactions are signed and relayed by the host application."
        if self._policy.uses_remote_service:
            return (
                "Pending transactions are shared through the Safe Transaction Service; "
                "co-signers see each other's confirmations."
            )
        return (
            "Pending transactions are stored on this device only. Confirmation counts "
            "include only signatures collected here."
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def restore(self) -> List[TrackedOperation]:
        """Load persisted operations for the account (once per substrate)."""
        if self._restored:
            return list(self._history.values())

        records = self._persistence.load(self._account.address)
        if not records:
            self._restored = True
            return []
        try:
            threshold: Optional[int] = await self._account.get_threshold()
        except CosignerException as e:
            # Records must load before any write, so fall back to stored thresholds.
            logger.warning(f"Threshold unavailable during restore, using stored values: {e.message}")
            threshold = None
        restored: List[TrackedOperation] = []
        for record in records:
            tracked = TrackedOperation.from_persisted(record, threshold)
            if tracked.substrate == Substrate.REMOTE:
                tracked.needs_rebuild = False
            self._history[tracked.operation_hash] = tracked
            restored.append(tracked)

        if isinstance(self._store, LocalConfirmationStore):
            self._store.restore(t for t in restored if t.substrate == Substrate.LOCAL)
        self._restored = True
        logger.info(f"Restored {len(restored)} operations for {self._account.address}")
        return restored

    def _persist(self) -> None:
        records = [tracked.to_persisted() for tracked in self._history.values()]
        self._persistence.save(self._account.address, records)

    def _remember(self, tracked: TrackedOperation) -> TrackedOperation:
        self._history[tracked.operation_hash] = tracked
        self._persist()
        return tracked

    def clear_history(self) -> None:
        """Delete every tracked operation for the account."""
        self._history.clear()
        if isinstance(self._store, LocalConfirmationStore):
            self._store.clear()
        self._persistence.clear(self._account.address)
        logger.info(f"Cleared operation history for {self._account.address}")

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _in_flight_guard(self, operation_hash: str, action: str):
        key = operation_hash.lower()
        if key in self._in_flight:
            raise OperationInFlightError(operation_hash, action)
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)

    def _require_store(self, for_signing: bool) -> ConfirmationStore:
        if for_signing and not self._policy.can_sign:
            raise NoSignerAvailableError()
        if not self._policy.can_submit or self._store is None:
            raise NoSignerAvailableError()
        return self._store

    async def _run(
        self,
        action: str,
        operation_hash: Optional[str],
        step: Callable[[], Awaitable[TrackedOperation]],
    ) -> LifecycleOutcome:
        self.last_error = None
        token = account_address_var.set(self._account.address)
        try:
            await self.restore()
            tracked = await step()
            return LifecycleOutcome(
                ok=True,
                action=action,
                operation_hash=tracked.operation_hash,
                tracked=tracked,
            )
        except CosignerException as e:
            return self._failed(action, operation_hash, e)
        except Exception as e:
            logger.exception(f"Unexpected failure during {action}")
            return self._failed(
                action,
                operation_hash,
                CosignerException(
                    f"Unexpected error during {action}: {e}",
                    details={"original_error": str(e), "action": action},
                ),
            )
        finally:
            account_address_var.reset(token)

    def _failed(
        self,
        action: str,
        operation_hash: Optional[str],
        error: CosignerException,
    ) -> LifecycleOutcome:
        message = to_user_message(error)
        self.last_error = message
        logger.warning(f"{action} failed for {operation_hash or 'new operation'}: {message}")
        return LifecycleOutcome(
            ok=False,
            action=action,
            operation_hash=operation_hash,
            tracked=self._history.get(operation_hash) if operation_hash else None,
            message=message,
            error=error,
        )

    # ------------------------------------------------------------------
    # Build / propose
    # ------------------------------------------------------------------

    async def handle_build(self, intent: OperationIntent) -> LifecycleOutcome:
        """Build an operation from an intent and propose it.

        Embedded in a host, the call list goes to the host relay and the
        returned identifier is recorded as executed. Otherwise the proposer's
        approval becomes the first confirmation; with a threshold of one the
        operation is executed inline.
        """
        if self._policy.tx_submission_path == TxSubmissionPath.HOST_RELAY:
            return await self._run("build", None, lambda: self._relay(intent))
        return await self._run("build", None, lambda: self._build_and_propose(intent))

    build_and_propose = handle_build

    async def handle_propose(self, intent: OperationIntent) -> LifecycleOutcome:
        """Propose a prepared intent (governance self-calls go through here)."""
        return await self.handle_build(intent)

    async def propose_add_owner(self, owner: str, threshold: int) -> LifecycleOutcome:
        async def step() -> TrackedOperation:
            intent = build_add_owner_intent(self._account.address, owner, threshold)
            return await self._submit_intent(intent)
        return await self._run("add-owner", None, step)

    async def propose_remove_owner(self, owner: str, threshold: int) -> LifecycleOutcome:
        async def step() -> TrackedOperation:
            owners = await self._account.get_owners()
            intent = build_remove_owner_intent(self._account.address, owners, owner, threshold)
            return await self._submit_intent(intent)
        return await self._run("remove-owner", None, step)

    async def propose_change_threshold(self, threshold: int) -> LifecycleOutcome:
        async def step() -> TrackedOperation:
            owners = await self._account.get_owners()
            intent = build_change_threshold_intent(self._account.address, len(owners), threshold)
            return await self._submit_intent(intent)
        return await self._run("change-threshold", None, step)

    async def _submit_intent(self, intent: OperationIntent) -> TrackedOperation:
        if self._policy.tx_submission_path == TxSubmissionPath.HOST_RELAY:
            return await self._relay(intent)
        return await self._build_and_propose(intent)

    async def _relay(self, intent: OperationIntent) -> TrackedOperation:
        if self._host_relay is None:
            raise NoSignerAvailableError("Host relay is not available")
        calls = host_calls_for(intent)
        # Read before relaying: once the host accepts, the result must be recorded.
        threshold = await self._account.get_threshold()
        async with self._log.operation_context(
            OperationType.HOST_RELAY,
            self._account.chain_id,
            calls=len(calls),
        ):
            try:
                identifier = await self._host_relay.send_batch(calls)
            except CosignerException:
                raise
            except Exception as e:
                raise exception_from_chain_error(e, self._account.chain_id) from e
        if not identifier:
            raise exception_from_chain_error(
                RuntimeError("Host relay returned no transaction identifier"),
                self._account.chain_id,
            )
        tracked = TrackedOperation(
            operation_hash=identifier,
            to=calls[0]["to"],
            value=parse_value(calls[0]["value"]),
            payload=parse_payload(calls[0]["data"]),
            substrate=Substrate.LOCAL,
            status=OperationStatus.EXECUTED,
            confirmations=threshold,
            threshold=threshold,
            call_type=intent.call_type,
            intent=intent.intent,
            execution_tx_hash=identifier,
        )
        logger.info(f"Host relay accepted {identifier}")
        return self._remember(tracked)

    async def _build_and_propose(self, intent: OperationIntent) -> TrackedOperation:
        store = self._require_store(for_signing=True)
        async with self._log.operation_context(OperationType.BUILD, self._account.chain_id):
            parse_recipient(intent.to)
            nonce = await self._account.get_nonce()
            operation = build_operation(
                intent, nonce, self._account.address, self._account.chain_id
            )
        operation_hash = operation.operation_hash

        async with self._in_flight_guard(operation_hash, "proposal"):
            async with self._log.operation_context(
                OperationType.PROPOSE,
                self._account.chain_id,
                operation_hash=operation_hash,
            ):
                signature = await self._account.sign(operation)
                await store.propose(operation, signature, origin_for_intent(intent.intent))
            tracked = self._remember(await store.status(operation_hash))

            if tracked.is_ready and tracked.threshold <= 1:
                logger.info(f"Threshold is 1, executing {operation_hash} inline")
                tracked = self._remember(await store.execute(operation_hash))
        return tracked

    # ------------------------------------------------------------------
    # Confirm / execute
    # ------------------------------------------------------------------

    async def _ensure_operation(self, store: ConfirmationStore, operation_hash: str) -> Operation:
        """Signable Operation for a hash, rebuilt from metadata when restored."""
        if isinstance(store, RemoteConfirmationStore):
            return await store.get_operation(operation_hash)

        if not isinstance(store, LocalConfirmationStore):
            raise ConfigurationError(f"Unsupported confirmation store: {type(store).__name__}")
        operation = store.get_operation(operation_hash)
        if operation is not None:
            return operation

        tracked = await store.status(operation_hash)
        nonce = tracked.nonce if tracked.nonce is not None else await self._account.get_nonce()
        operation = build_operation(
            OperationIntent(
                to=tracked.to,
                value=tracked.value,
                payload=tracked.payload,
                call_type=tracked.call_type,
                intent=tracked.intent,
            ),
            nonce,
            self._account.address,
            self._account.chain_id,
        )
        if operation.operation_hash != operation_hash:
            raise OperationHashMismatchError(operation_hash, operation.operation_hash)
        store.attach_operation(operation)
        logger.info(f"Rebuilt restored operation {operation_hash}")
        return operation

    async def handle_confirm(self, operation_hash: str) -> LifecycleOutcome:
        """Add the connected signer's confirmation."""
        operation_hash = operation_hash.lower()

        async def step() -> TrackedOperation:
            store = self._require_store(for_signing=True)
            async with self._in_flight_guard(operation_hash, "confirmation"):
                async with self._log.operation_context(
                    OperationType.CONFIRM,
                    self._account.chain_id,
                    operation_hash=operation_hash,
                ):
                    current = await store.status(operation_hash)
                    if current.is_executed:
                        raise AlreadyExecutedError(operation_hash, current.execution_tx_hash)
                    signer = self._account.signer_address or ""
                    if normalize_address(signer) in current.confirmed_by:
                        raise AlreadyConfirmedError(operation_hash, signer)

                    operation = await self._ensure_operation(store, operation_hash)
                    signature = await self._account.sign(operation)
                    await store.confirm(operation_hash, signature)
                return self._remember(await store.status(operation_hash))

        return await self._run("confirm", operation_hash, step)

    confirm = handle_confirm

    async def handle_execute(self, operation_hash: str) -> LifecycleOutcome:
        """Execute once confirmations reach the threshold."""
        operation_hash = operation_hash.lower()

        async def step() -> TrackedOperation:
            store = self._require_store(for_signing=False)
            async with self._in_flight_guard(operation_hash, "execution"):
                if isinstance(store, LocalConfirmationStore):
                    current = await store.status(operation_hash)
                    if not current.is_executed:
                        await self._ensure_operation(store, operation_hash)
                return self._remember(await store.execute(operation_hash))

        return await self._run("execute", operation_hash, step)

    execute = handle_execute

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def status(self, operation_hash: str) -> TrackedOperation:
        operation_hash = operation_hash.lower()
        await self.restore()
        if self._store is not None:
            try:
                return await self._store.status(operation_hash)
            except OperationNotFoundError:
                if operation_hash not in self._history:
                    raise
        tracked = self._history.get(operation_hash)
        if tracked is None:
            raise OperationNotFoundError(operation_hash)
        return tracked

    async def list_pending(self) -> List[TrackedOperation]:
        """Not-yet-executed operations; remote failures propagate."""
        await self.restore()
        if self._store is None:
            return [t for t in self._history.values() if not t.is_executed]
        return await self._store.list_pending()

    async def list_executed(self) -> List[TrackedOperation]:
        await self.restore()
        executed = [t for t in self._history.values() if t.is_executed]
        return sorted(executed, key=lambda t: t.submitted_at, reverse=True)

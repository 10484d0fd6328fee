"""
Confirmation store.

Tracks proposed operations and the confirmations collected for them, on one
of two substrates:
- remote: the transaction service holds the shared queue; every read
  re-fetches, so confirmations added by other co-signers are visible
- local: confirmations this client witnessed, kept in memory and persisted
  as metadata; counts are a lower bound of the real on-chain approvals

Execution is gated: the current status is read immediately before the chain
primitive is invoked, and the primitive is never called below threshold.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .coordination_client import CoordinationServiceClient
from .exceptions import (
    AlreadyConfirmedError,
    AlreadyExecutedError,
    CosignerException,
    InsufficientConfirmationsError,
    NoSignerAvailableError,
    OperationHashMismatchError,
    OperationNotFoundError,
    RemoteServiceUnavailableError,
    SignatureUnavailableError,
    exception_from_chain_error,
    exception_from_service_error,
)
from .logging_utils import CoordinationLogger, OperationType
from .operations import (
    CallType,
    Operation,
    TransactionIntent,
    ZERO_ADDRESS,
    intent_from_origin,
    normalize_address,
    normalize_address_list,
    parse_payload,
    parse_transaction_intent,
)
from .persistence import PersistedOperation
from .primitives import AccountContract, NormalizedAccount

logger = logging.getLogger(__name__)


class Substrate(str, Enum):
    """Where confirmations are tracked."""
    REMOTE = "remote"
    LOCAL = "local"


class OperationStatus(str, Enum):
    """Lifecycle status of a tracked operation."""
    PENDING = "pending"
    READY = "ready"
    EXECUTED = "executed"


@dataclass
class Confirmation:
    """A signer's approval of an operation. Re-confirming overwrites."""
    operation_hash: str
    signer_address: str
    signature: bytes = field(repr=False)
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def effective_confirmations(explicit_count: int, signers: Iterable[str]) -> int:
    """Confirmation count used for quorum.

    The larger of a recorded count and the number of distinct known signers,
    so neither an older count-only record nor a signer list can undercount.
    """
    return max(explicit_count, len(set(normalize_address_list(list(signers)))))


def derive_status(executed: bool, confirmations: int, threshold: int) -> OperationStatus:
    if executed:
        return OperationStatus.EXECUTED
    if confirmations >= threshold:
        return OperationStatus.READY
    return OperationStatus.PENDING


@dataclass
class TrackedOperation:
    """An operation known to the store, with its confirmation state."""
    operation_hash: str
    to: str
    value: int
    payload: bytes
    substrate: Substrate
    status: OperationStatus
    confirmations: int
    threshold: int
    call_type: CallType = CallType.DIRECT
    nonce: Optional[int] = None
    intent: TransactionIntent = TransactionIntent.TRANSFER
    confirmed_by: List[str] = field(default_factory=list)
    execution_tx_hash: Optional[str] = None
    needs_rebuild: bool = False
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_executed(self) -> bool:
        return self.status == OperationStatus.EXECUTED

    @property
    def is_ready(self) -> bool:
        return self.status == OperationStatus.READY

    def refresh_status(self) -> None:
        self.status = derive_status(self.is_executed, self.confirmations, self.threshold)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_hash": self.operation_hash,
            "to": self.to,
            "value": str(self.value),
            "payload": "0x" + self.payload.hex(),
            "call_type": int(self.call_type),
            "nonce": self.nonce,
            "intent": self.intent.value,
            "substrate": self.substrate.value,
            "status": self.status.value,
            "confirmations": self.confirmations,
            "threshold": self.threshold,
            "confirmed_by": list(self.confirmed_by),
            "execution_tx_hash": self.execution_tx_hash,
            "needs_rebuild": self.needs_rebuild,
            "submitted_at": self.submitted_at.isoformat(),
        }

    def to_persisted(self) -> PersistedOperation:
        # Ready is derived from counts on load, so only executed is stored.
        return PersistedOperation(
            operation_hash=self.operation_hash,
            to=self.to,
            value=str(self.value),
            payload="0x" + self.payload.hex(),
            call_type=int(self.call_type),
            nonce=self.nonce,
            intent=self.intent.value,
            status="executed" if self.is_executed else "pending",
            confirmations=self.confirmations,
            confirmed_by=list(self.confirmed_by),
            threshold=self.threshold,
            execution_tx_hash=self.execution_tx_hash,
            substrate=self.substrate.value,
            submitted_at=self.submitted_at.isoformat(),
        )

    @classmethod
    def from_persisted(
        cls,
        record: PersistedOperation,
        threshold: Optional[int] = None,
    ) -> "TrackedOperation":
        """Restore from storage. The signable Operation is not restored."""
        threshold = threshold or record.threshold or 1
        executed = record.status == "executed"
        try:
            submitted_at = datetime.fromisoformat(record.submitted_at)
        except (TypeError, ValueError):
            submitted_at = datetime.now(timezone.utc)
        try:
            substrate = Substrate(record.substrate)
        except ValueError:
            substrate = Substrate.LOCAL
        try:
            call_type = CallType(record.call_type)
        except ValueError:
            call_type = CallType.DIRECT
        try:
            value = int(record.value)
        except (TypeError, ValueError):
            value = 0
        confirmations = effective_confirmations(record.confirmations, record.confirmed_by)
        return cls(
            operation_hash=record.operation_hash,
            to=record.to,
            value=value,
            payload=parse_payload(record.payload),
            substrate=substrate,
            status=derive_status(executed, confirmations, threshold),
            confirmations=confirmations,
            threshold=threshold,
            call_type=call_type,
            nonce=record.nonce,
            intent=parse_transaction_intent(record.intent),
            confirmed_by=list(record.confirmed_by),
            execution_tx_hash=record.execution_tx_hash,
            needs_rebuild=not executed,
            submitted_at=submitted_at,
        )


class ConfirmationStore(ABC):
    """Strategy interface for the two confirmation substrates."""

    substrate: Substrate

    def __init__(
        self,
        account: AccountContract,
        coordination_logger: Optional[CoordinationLogger] = None,
    ):
        self._account = NormalizedAccount.wrap(account)
        self._log = coordination_logger or CoordinationLogger()
        self._execution_lock = asyncio.Lock()

    @property
    def account(self) -> AccountContract:
        return self._account

    def _require_signer(self) -> str:
        signer = self._account.signer_address
        if not signer:
            raise NoSignerAvailableError()
        return signer

    @abstractmethod
    async def propose(
        self,
        operation: Operation,
        sender_signature: bytes,
        origin: Optional[str] = None,
    ) -> str:
        """Record a new operation with the proposer's approval; returns its hash."""

    @abstractmethod
    async def confirm(self, operation_hash: str, signature: bytes) -> None:
        """Record the connected signer's approval."""

    @abstractmethod
    async def status(self, operation_hash: str) -> TrackedOperation:
        """Current confirmation state of an operation."""

    @abstractmethod
    async def list_pending(self) -> List[TrackedOperation]:
        """Operations of the account that are not executed yet."""

    @abstractmethod
    async def _submit(self, tracked: TrackedOperation) -> str:
        """Invoke the execution primitive; returns the chain tx hash."""

    @abstractmethod
    def _mark_executed(self, tracked: TrackedOperation, tx_hash: str) -> TrackedOperation:
        ...

    async def execute(self, operation_hash: str) -> TrackedOperation:
        """Gated execution.

        Raises:
            AlreadyExecutedError: the operation was executed before
            InsufficientConfirmationsError: confirmations are below threshold;
                the primitive is not called
            ExecutionRevertedError: the primitive failed; state is unchanged
        """
        async with self._execution_lock:
            async with self._log.operation_context(
                OperationType.EXECUTE,
                self._account.chain_id,
                operation_hash=operation_hash,
                substrate=self.substrate.value,
            ):
                tracked = await self.status(operation_hash)
                if tracked.is_executed:
                    raise AlreadyExecutedError(operation_hash, tracked.execution_tx_hash)
                if tracked.confirmations < tracked.threshold:
                    raise InsufficientConfirmationsError(
                        tracked.confirmations, tracked.threshold, operation_hash
                    )

                self._require_signer()
                try:
                    tx_hash = await self._submit(tracked)
                except Exception as e:
                    error = exception_from_chain_error(
                        e, chain_id=self._account.chain_id, operation_hash=operation_hash
                    )
                    logger.error(f"Execution of {operation_hash} failed: {error.message}")
                    if error is e:
                        raise
                    raise error from e

                executed = self._mark_executed(tracked, tx_hash)
                self._log.log_execution_submitted(
                    operation_hash=operation_hash,
                    account_address=self._account.address,
                    chain_id=self._account.chain_id,
                    to_address=executed.to,
                    value=executed.value,
                    tx_hash=tx_hash,
                    confirmations=executed.confirmations,
                    threshold=executed.threshold,
                    substrate=self.substrate.value,
                )
                return executed


# =============================================================================
# Local substrate
# =============================================================================

class LocalConfirmationStore(ConfirmationStore):
    """Confirmations witnessed by this client.

    Signatures are held in memory only. Operations restored from storage carry
    their confirming signers but no signatures; the account's own approval
    records cover them at execution time.
    """

    substrate = Substrate.LOCAL

    def __init__(
        self,
        account: AccountContract,
        coordination_logger: Optional[CoordinationLogger] = None,
    ):
        super().__init__(account, coordination_logger)
        self._tracked: Dict[str, TrackedOperation] = {}
        self._operations: Dict[str, Operation] = {}
        self._confirmations: Dict[str, Dict[str, Confirmation]] = {}

    def restore(self, operations: Iterable[TrackedOperation]) -> None:
        """Load previously persisted operations (without signable data)."""
        for tracked in operations:
            self._tracked.setdefault(tracked.operation_hash, tracked)

    def attach_operation(self, operation: Operation) -> None:
        """Provide the signable Operation for a tracked hash (after a rebuild)."""
        operation_hash = operation.operation_hash
        if operation_hash not in self._tracked:
            raise OperationNotFoundError(operation_hash)
        self._operations[operation_hash] = operation
        self._tracked[operation_hash].needs_rebuild = False

    def get_operation(self, operation_hash: str) -> Optional[Operation]:
        return self._operations.get(operation_hash)

    def clear(self) -> None:
        self._tracked.clear()
        self._operations.clear()
        self._confirmations.clear()

    def _get(self, operation_hash: str) -> TrackedOperation:
        tracked = self._tracked.get(operation_hash)
        if tracked is None:
            raise OperationNotFoundError(operation_hash)
        return tracked

    def _record(self, operation_hash: str, signer: str, signature: bytes) -> None:
        if not signature:
            raise SignatureUnavailableError("Signer returned an empty signature")
        self._confirmations.setdefault(operation_hash, {})[normalize_address(signer)] = Confirmation(
            operation_hash=operation_hash,
            signer_address=signer,
            signature=signature,
        )

    async def propose(
        self,
        operation: Operation,
        sender_signature: bytes,
        origin: Optional[str] = None,
    ) -> str:
        signer = self._require_signer()
        operation_hash = operation.operation_hash
        if operation_hash in self._tracked:
            logger.info(f"Operation {operation_hash} already tracked, keeping existing record")
            self._operations.setdefault(operation_hash, operation)
            return operation_hash

        self._record(operation_hash, signer, sender_signature)
        threshold = await self._account.get_threshold()
        confirmed_by = [normalize_address(signer)]
        confirmations = effective_confirmations(0, confirmed_by)
        self._operations[operation_hash] = operation
        self._tracked[operation_hash] = TrackedOperation(
            operation_hash=operation_hash,
            to=operation.to,
            value=operation.value,
            payload=operation.payload,
            substrate=self.substrate,
            status=derive_status(False, confirmations, threshold),
            confirmations=confirmations,
            threshold=threshold,
            call_type=operation.call_type,
            nonce=operation.nonce,
            intent=operation.intent,
            confirmed_by=confirmed_by,
        )
        logger.info(f"Tracked {operation_hash} locally ({confirmations}/{threshold})")
        return operation_hash

    async def confirm(self, operation_hash: str, signature: bytes) -> None:
        signer = self._require_signer()
        tracked = self._get(operation_hash)
        if tracked.is_executed:
            raise AlreadyExecutedError(operation_hash, tracked.execution_tx_hash)
        key = normalize_address(signer)
        if key in tracked.confirmed_by:
            raise AlreadyConfirmedError(operation_hash, signer)

        self._record(operation_hash, signer, signature)
        tracked.confirmed_by.append(key)
        tracked.confirmations = effective_confirmations(tracked.confirmations, tracked.confirmed_by)
        tracked.threshold = await self._account.get_threshold()
        tracked.refresh_status()
        logger.info(
            f"Confirmation recorded for {operation_hash} by {signer} "
            f"({tracked.confirmations}/{tracked.threshold})"
        )

    async def status(self, operation_hash: str) -> TrackedOperation:
        tracked = self._get(operation_hash)
        if not tracked.is_executed:
            tracked.threshold = await self._account.get_threshold()
            tracked.refresh_status()
        return replace(tracked, confirmed_by=list(tracked.confirmed_by))

    async def list_pending(self) -> List[TrackedOperation]:
        pending = []
        for operation_hash, tracked in self._tracked.items():
            if not tracked.is_executed:
                pending.append(await self.status(operation_hash))
        return pending

    async def _submit(self, tracked: TrackedOperation) -> str:
        operation = self._operations.get(tracked.operation_hash)
        if operation is None:
            raise OperationNotFoundError(tracked.operation_hash)
        signatures = {
            conf.signer_address: conf.signature
            for conf in self._confirmations.get(tracked.operation_hash, {}).values()
        }
        return await self._account.execute(operation, signatures)

    def _mark_executed(self, tracked: TrackedOperation, tx_hash: str) -> TrackedOperation:
        current = self._get(tracked.operation_hash)
        current.status = OperationStatus.EXECUTED
        current.execution_tx_hash = tx_hash
        return replace(current, confirmed_by=list(current.confirmed_by))


# =============================================================================
# Remote substrate
# =============================================================================

def _int_field(data: Mapping[str, Any], key: str, default: int = 0) -> int:
    value = data.get(key)
    if value is None or value == "":
        return default
    return int(value)


def operation_from_remote(
    data: Mapping[str, Any],
    account_address: str,
    chain_id: int,
) -> Operation:
    """Rebuild the signable Operation from a service record, verifying its hash."""
    operation = Operation(
        account_address=account_address,
        chain_id=chain_id,
        to=data["to"],
        value=_int_field(data, "value"),
        payload=parse_payload(data.get("data")),
        call_type=CallType(_int_field(data, "operation")),
        nonce=_int_field(data, "nonce"),
        safe_tx_gas=_int_field(data, "safeTxGas"),
        base_gas=_int_field(data, "baseGas"),
        gas_price=_int_field(data, "gasPrice"),
        gas_token=data.get("gasToken") or ZERO_ADDRESS,
        refund_receiver=data.get("refundReceiver") or ZERO_ADDRESS,
        intent=intent_from_origin(data.get("origin")),
    )
    expected = str(data.get("safeTxHash") or "").lower()
    if expected and operation.operation_hash != expected:
        raise OperationHashMismatchError(expected, operation.operation_hash)
    return operation


def tracked_from_remote(data: Mapping[str, Any], default_threshold: int) -> TrackedOperation:
    """Map a service record to a TrackedOperation."""
    confirmations = data.get("confirmations") or []
    owners = [c.get("owner") for c in confirmations if isinstance(c, dict) and c.get("owner")]
    confirmed_by = normalize_address_list(owners)
    count = effective_confirmations(0, confirmed_by)
    threshold = _int_field(data, "confirmationsRequired", default_threshold) or default_threshold
    tx_hash = data.get("transactionHash")
    executed = bool(data.get("isExecuted")) and bool(tx_hash)
    submitted = data.get("submissionDate")
    try:
        submitted_at = datetime.fromisoformat(str(submitted).replace("Z", "+00:00"))
    except ValueError:
        submitted_at = datetime.now(timezone.utc)
    return TrackedOperation(
        operation_hash=str(data["safeTxHash"]).lower(),
        to=data["to"],
        value=_int_field(data, "value"),
        payload=parse_payload(data.get("data")),
        substrate=Substrate.REMOTE,
        status=derive_status(executed, count, threshold),
        confirmations=count,
        threshold=threshold,
        call_type=CallType(_int_field(data, "operation")),
        nonce=_int_field(data, "nonce"),
        intent=intent_from_origin(data.get("origin")),
        confirmed_by=confirmed_by,
        execution_tx_hash=tx_hash if executed else None,
        submitted_at=submitted_at,
    )


class RemoteConfirmationStore(ConfirmationStore):
    """Shared pending queue on the transaction service."""

    substrate = Substrate.REMOTE

    def __init__(
        self,
        account: AccountContract,
        client: CoordinationServiceClient,
        coordination_logger: Optional[CoordinationLogger] = None,
    ):
        super().__init__(account, coordination_logger)
        self._client = client
        # Proposals and executions submitted here, until the service indexes them
        self._proposed: Dict[str, TrackedOperation] = {}
        self._executed: Dict[str, str] = {}

    async def _call(self, description: str, coro):
        async with self._log.operation_context(
            OperationType.SERVICE_CALL,
            self._account.chain_id,
            call=description,
        ):
            try:
                return await coro
            except CosignerException:
                raise
            except Exception as e:
                raise exception_from_service_error(e, chain_id=self._account.chain_id) from e

    def _apply_overlay(self, tracked: TrackedOperation) -> TrackedOperation:
        tx_hash = self._executed.get(tracked.operation_hash)
        if tx_hash and not tracked.is_executed:
            tracked.status = OperationStatus.EXECUTED
            tracked.execution_tx_hash = tx_hash
        return tracked

    async def propose(
        self,
        operation: Operation,
        sender_signature: bytes,
        origin: Optional[str] = None,
    ) -> str:
        sender = self._require_signer()
        if not sender_signature:
            raise SignatureUnavailableError("Signer returned an empty signature")
        operation_hash = await self._call(
            "propose",
            self._client.propose(
                self._account.address,
                operation,
                sender,
                sender_signature,
                origin,
            ),
        )
        threshold = await self._account.get_threshold()
        confirmed_by = [normalize_address(sender)]
        self._proposed[operation_hash] = TrackedOperation(
            operation_hash=operation_hash,
            to=operation.to,
            value=operation.value,
            payload=operation.payload,
            substrate=self.substrate,
            status=derive_status(False, 1, threshold),
            confirmations=1,
            threshold=threshold,
            call_type=operation.call_type,
            nonce=operation.nonce,
            intent=operation.intent,
            confirmed_by=confirmed_by,
        )
        return operation_hash

    async def confirm(self, operation_hash: str, signature: bytes) -> None:
        signer = self._require_signer()
        tracked = await self.status(operation_hash)
        if tracked.is_executed:
            raise AlreadyExecutedError(operation_hash, tracked.execution_tx_hash)
        if normalize_address(signer) in tracked.confirmed_by:
            raise AlreadyConfirmedError(operation_hash, signer)
        if not signature:
            raise SignatureUnavailableError("Signer returned an empty signature")
        await self._call("confirm", self._client.confirm(operation_hash, signature))

    async def _fetch(self, operation_hash: str) -> Dict[str, Any]:
        return await self._call("get_operation", self._client.get_operation(operation_hash))

    async def status(self, operation_hash: str) -> TrackedOperation:
        try:
            data = await self._fetch(operation_hash)
        except OperationNotFoundError:
            proposed = self._proposed.get(operation_hash)
            if proposed is None:
                raise
            logger.debug(f"{operation_hash} not indexed by the service yet")
            return self._apply_overlay(replace(proposed, confirmed_by=list(proposed.confirmed_by)))
        self._proposed.pop(operation_hash, None)
        default_threshold = await self._account.get_threshold()
        try:
            tracked = tracked_from_remote(data, default_threshold)
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteServiceUnavailableError(
                f"Malformed operation record from transaction service: {e}",
                chain_id=self._account.chain_id,
            ) from e
        return self._apply_overlay(tracked)

    async def list_pending(self) -> List[TrackedOperation]:
        items = await self._call(
            "list_pending", self._client.list_pending(self._account.address)
        )
        default_threshold = await self._account.get_threshold()
        pending = []
        for item in items:
            try:
                tracked = self._apply_overlay(tracked_from_remote(item, default_threshold))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed service record: {e}")
                continue
            if not tracked.is_executed:
                pending.append(tracked)
        return pending

    async def get_operation(self, operation_hash: str) -> Operation:
        data = await self._fetch(operation_hash)
        return operation_from_remote(data, self._account.address, self._account.chain_id)

    async def _submit(self, tracked: TrackedOperation) -> str:
        data = await self._fetch(tracked.operation_hash)
        operation = operation_from_remote(data, self._account.address, self._account.chain_id)
        signatures: Dict[str, bytes] = {}
        for conf in data.get("confirmations") or []:
            owner = conf.get("owner") if isinstance(conf, dict) else None
            signature = conf.get("signature") if isinstance(conf, dict) else None
            if owner and signature:
                signatures[owner] = parse_payload(signature)
        return await self._account.execute(operation, signatures)

    def _mark_executed(self, tracked: TrackedOperation, tx_hash: str) -> TrackedOperation:
        self._executed[tracked.operation_hash] = tx_hash
        return replace(
            tracked,
            status=OperationStatus.EXECUTED,
            execution_tx_hash=tx_hash,
            confirmed_by=list(tracked.confirmed_by),
        )

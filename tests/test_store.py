"""Tests for the confirmation store (local and remote substrates)."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from cosigner.exceptions import (
    AlreadyConfirmedError,
    AlreadyExecutedError,
    ExecutionRevertedError,
    InsufficientConfirmationsError,
    NoSignerAvailableError,
    OperationHashMismatchError,
    OperationNotFoundError,
    RemoteServiceUnavailableError,
)
from cosigner.operations import OperationIntent, build_operation, origin_for_intent, TransactionIntent
from cosigner.persistence import PersistedOperation
from cosigner.store import (
    LocalConfirmationStore,
    OperationStatus,
    RemoteConfirmationStore,
    Substrate,
    TrackedOperation,
    derive_status,
    effective_confirmations,
)

from conftest import CHAIN_ID, OWNER_1, OWNER_2, OWNER_3, RECIPIENT, SAFE_ADDRESS


async def _propose(store, account, value=1000):
    nonce = await account.get_nonce()
    operation = build_operation(OperationIntent(to=RECIPIENT, value=value), nonce, SAFE_ADDRESS, CHAIN_ID)
    signature = await account.sign(operation)
    operation_hash = await store.propose(operation, signature, origin_for_intent(TransactionIntent.TRANSFER))
    return operation, operation_hash


async def _confirm_as(store, account, owner, operation):
    account.use_signer(owner)
    signature = await account.sign(operation)
    await store.confirm(operation.operation_hash, signature)


# ============ Quorum ============


class TestEffectiveConfirmations:
    @pytest.mark.parametrize(
        "count,signers,expected",
        [
            (0, [], 0),
            (2, [], 2),
            (0, [OWNER_1, OWNER_2], 2),
            (1, [OWNER_1, OWNER_2], 2),
            (3, [OWNER_1], 3),
            (0, [OWNER_1, OWNER_1.lower()], 1),
        ],
    )
    def test_max_of_count_and_signers(self, count, signers, expected):
        assert effective_confirmations(count, signers) == expected

    def test_below_threshold_never_ready(self):
        for threshold in range(1, 6):
            assert derive_status(False, threshold - 1, threshold) == OperationStatus.PENDING
            assert derive_status(False, threshold, threshold) == OperationStatus.READY

    def test_executed_wins(self):
        assert derive_status(True, 0, 2) == OperationStatus.EXECUTED


class TestTrackedOperationRestore:
    def test_count_without_identity_counts(self):
        record = PersistedOperation.from_dict(
            {"id": "0x" + "cd" * 32, "to": RECIPIENT, "value": "1", "data": "0x", "confirmations": 2, "status": "signed"}
        )
        tracked = TrackedOperation.from_persisted(record, threshold=2)
        assert tracked.confirmations == 2
        assert tracked.status == OperationStatus.READY
        assert tracked.needs_rebuild is True

    def test_executed_record(self):
        record = PersistedOperation.from_dict(
            {
                "operation_hash": "0x" + "cd" * 32,
                "to": RECIPIENT,
                "value": "1",
                "payload": "0x",
                "status": "executed",
                "execution_tx_hash": "0x" + "ee" * 32,
            }
        )
        tracked = TrackedOperation.from_persisted(record, threshold=2)
        assert tracked.is_executed
        assert tracked.needs_rebuild is False

    def test_persisted_form_has_no_signatures(self):
        record = PersistedOperation.from_dict(
            {"operation_hash": "0x" + "cd" * 32, "to": RECIPIENT, "value": "1", "payload": "0x"}
        )
        tracked = TrackedOperation.from_persisted(record, threshold=1)
        assert "signature" not in tracked.to_persisted().to_dict()


# ============ Local substrate ============


class TestLocalConfirmationStore:
    @pytest.mark.asyncio
    async def test_propose_counts_proposer(self, account):
        store = LocalConfirmationStore(account)
        _, operation_hash = await _propose(store, account)
        tracked = await store.status(operation_hash)
        assert tracked.substrate == Substrate.LOCAL
        assert tracked.confirmations == 1
        assert tracked.threshold == 2
        assert tracked.status == OperationStatus.PENDING
        assert tracked.confirmed_by == [OWNER_1.lower()]

    @pytest.mark.asyncio
    async def test_confirm_reaches_ready(self, account):
        store = LocalConfirmationStore(account)
        operation, operation_hash = await _propose(store, account)
        await _confirm_as(store, account, OWNER_2, operation)
        tracked = await store.status(operation_hash)
        assert tracked.confirmations == 2
        assert tracked.is_ready

    @pytest.mark.asyncio
    async def test_duplicate_confirm_rejected(self, account):
        store = LocalConfirmationStore(account)
        operation, _ = await _propose(store, account)
        with pytest.raises(AlreadyConfirmedError):
            await _confirm_as(store, account, OWNER_1, operation)

    @pytest.mark.asyncio
    async def test_gated_execute_below_threshold(self, account):
        store = LocalConfirmationStore(account)
        _, operation_hash = await _propose(store, account)
        account.execute = AsyncMock(return_value="0x" + "11" * 32)

        with pytest.raises(InsufficientConfirmationsError) as exc_info:
            await store.execute(operation_hash)

        assert exc_info.value.have == 1
        assert exc_info.value.need == 2
        account.execute.assert_not_called()
        assert (await store.status(operation_hash)).status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_threshold_minus_one_never_ready(self, make_account):
        account = make_account(owners=[OWNER_1, OWNER_2, OWNER_3], threshold=3)
        store = LocalConfirmationStore(account)
        operation, operation_hash = await _propose(store, account)
        await _confirm_as(store, account, OWNER_2, operation)
        tracked = await store.status(operation_hash)
        assert tracked.confirmations == 2
        assert not tracked.is_ready
        with pytest.raises(InsufficientConfirmationsError):
            await store.execute(operation_hash)
        assert account.executed_operations == []

    @pytest.mark.asyncio
    async def test_execute_once(self, account):
        store = LocalConfirmationStore(account)
        operation, operation_hash = await _propose(store, account)
        await _confirm_as(store, account, OWNER_2, operation)

        executed = await store.execute(operation_hash)
        assert executed.status == OperationStatus.EXECUTED
        assert executed.execution_tx_hash.startswith("0x")

        with pytest.raises(AlreadyExecutedError):
            await store.execute(operation_hash)
        assert len(account.executed_operations) == 1
        assert await account.get_nonce() == 1

    @pytest.mark.asyncio
    async def test_confirm_after_execute_rejected(self, make_account):
        account = make_account(owners=[OWNER_1, OWNER_2, OWNER_3], threshold=2)
        store = LocalConfirmationStore(account)
        operation, operation_hash = await _propose(store, account)
        await _confirm_as(store, account, OWNER_2, operation)
        await store.execute(operation_hash)
        with pytest.raises(AlreadyExecutedError):
            await _confirm_as(store, account, OWNER_3, operation)

    @pytest.mark.asyncio
    async def test_revert_leaves_state(self, account):
        store = LocalConfirmationStore(account)
        operation, operation_hash = await _propose(store, account)
        await _confirm_as(store, account, OWNER_2, operation)
        account.execute = AsyncMock(side_effect=RuntimeError("execution reverted: GS013"))

        with pytest.raises(ExecutionRevertedError):
            await store.execute(operation_hash)

        tracked = await store.status(operation_hash)
        assert tracked.is_ready
        assert tracked.execution_tx_hash is None

    @pytest.mark.asyncio
    async def test_no_signer(self, account):
        store = LocalConfirmationStore(account)
        account.use_signer(None)
        operation = build_operation(OperationIntent(to=RECIPIENT), 0, SAFE_ADDRESS, CHAIN_ID)
        with pytest.raises(NoSignerAvailableError):
            await store.propose(operation, b"\x01")

    @pytest.mark.asyncio
    async def test_unknown_hash(self, account):
        store = LocalConfirmationStore(account)
        with pytest.raises(OperationNotFoundError):
            await store.status("0x" + "00" * 32)

    @pytest.mark.asyncio
    async def test_list_pending_excludes_executed(self, account):
        store = LocalConfirmationStore(account)
        operation, operation_hash = await _propose(store, account, value=1)
        await _confirm_as(store, account, OWNER_2, operation)
        await store.execute(operation_hash)

        account.use_signer(OWNER_1)
        _, pending_hash = await _propose(store, account, value=2)
        pending = await store.list_pending()
        assert [t.operation_hash for t in pending] == [pending_hash]

    @pytest.mark.asyncio
    async def test_restored_operation_needs_attach(self, account):
        store = LocalConfirmationStore(account)
        operation = build_operation(OperationIntent(to=RECIPIENT, value=5), 0, SAFE_ADDRESS, CHAIN_ID)
        record = PersistedOperation(
            operation_hash=operation.operation_hash,
            to=RECIPIENT,
            value="5",
            payload="0x",
            nonce=0,
            confirmations=2,
            confirmed_by=[OWNER_1.lower(), OWNER_2.lower()],
        )
        store.restore([TrackedOperation.from_persisted(record, threshold=2)])

        with pytest.raises(OperationNotFoundError):
            await store.execute(operation.operation_hash)

        store.attach_operation(operation)
        assert (await store.status(operation.operation_hash)).needs_rebuild is False


# ============ Remote substrate ============


class TestRemoteConfirmationStore:
    @pytest.mark.asyncio
    async def test_propose_and_refetch(self, account, registry, service):
        store = RemoteConfirmationStore(account, registry.get(CHAIN_ID))
        _, operation_hash = await _propose(store, account)

        assert operation_hash in service.transactions
        assert service.transactions[operation_hash]["origin"] == "intent:transfer"
        tracked = await store.status(operation_hash)
        assert tracked.substrate == Substrate.REMOTE
        assert tracked.confirmations == 1
        assert tracked.status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_sees_other_signers_confirmations(self, account, registry, service):
        store = RemoteConfirmationStore(account, registry.get(CHAIN_ID))
        operation, operation_hash = await _propose(store, account)

        # Another co-signer confirms directly on the service
        service.transactions[operation_hash]["confirmations"].append(
            {"owner": OWNER_2, "signature": "0x" + account._signature_for(OWNER_2, operation_hash).hex()}
        )
        tracked = await store.status(operation_hash)
        assert tracked.confirmations == 2
        assert tracked.is_ready

    @pytest.mark.asyncio
    async def test_confirm_and_execute(self, account, registry, service):
        store = RemoteConfirmationStore(account, registry.get(CHAIN_ID))
        operation, operation_hash = await _propose(store, account)
        await _confirm_as(store, account, OWNER_2, operation)

        executed = await store.execute(operation_hash)
        assert executed.is_executed
        assert executed.execution_tx_hash

        # The service has not indexed the execution yet
        assert service.transactions[operation_hash]["isExecuted"] is False
        assert (await store.status(operation_hash)).is_executed
        assert await store.list_pending() == []
        with pytest.raises(AlreadyExecutedError):
            await store.execute(operation_hash)
        assert len(account.executed_operations) == 1

    @pytest.mark.asyncio
    async def test_duplicate_confirm_rejected(self, account, registry):
        store = RemoteConfirmationStore(account, registry.get(CHAIN_ID))
        operation, _ = await _propose(store, account)
        with pytest.raises(AlreadyConfirmedError):
            await _confirm_as(store, account, OWNER_1, operation)

    @pytest.mark.asyncio
    async def test_gated_execute_below_threshold(self, account, registry):
        store = RemoteConfirmationStore(account, registry.get(CHAIN_ID))
        _, operation_hash = await _propose(store, account)
        account.execute = AsyncMock()

        with pytest.raises(InsufficientConfirmationsError) as exc_info:
            await store.execute(operation_hash)
        assert (exc_info.value.have, exc_info.value.need) == (1, 2)
        account.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_service_failure_is_not_zero_confirmations(self, account, registry, service):
        store = RemoteConfirmationStore(account, registry.get(CHAIN_ID))
        _, operation_hash = await _propose(store, account)
        service.fail_with = 503

        with pytest.raises(RemoteServiceUnavailableError):
            await store.status(operation_hash)
        with pytest.raises(RemoteServiceUnavailableError):
            await store.list_pending()

    @pytest.mark.asyncio
    async def test_tampered_payload_rejected(self, account, registry, service):
        store = RemoteConfirmationStore(account, registry.get(CHAIN_ID))
        operation, operation_hash = await _propose(store, account)
        await _confirm_as(store, account, OWNER_2, operation)
        service.transactions[operation_hash]["value"] = "999999"

        with pytest.raises(OperationHashMismatchError):
            await store.execute(operation_hash)
        assert account.executed_operations == []

    @pytest.mark.asyncio
    async def test_list_pending(self, account, registry):
        store = RemoteConfirmationStore(account, registry.get(CHAIN_ID))
        _, first = await _propose(store, account, value=1)
        _, second = await _propose(store, account, value=2)
        pending = await store.list_pending()
        assert {t.operation_hash for t in pending} == {first, second}

"""Ports for the external collaborators the engine drives.

- AccountContract: the Safe account (read accessors, sign, execute)
- HostRelay: the embedding host, which signs and relays on its own

SimulatedSafeAccount implements AccountContract in-process for development
and the simulated chain mode.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Dict, List, Mapping, Optional, Sequence, Set, TypeVar

from web3 import Web3

from .exceptions import (
    CosignerException,
    CosignerValidationError,
    NoSignerAvailableError,
    exception_from_account_error,
    exception_from_chain_error,
)
from .operations import Operation, normalize_address

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AccountContract(ABC):
    """Shared smart-contract account primitives."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Account address."""

    @property
    @abstractmethod
    def chain_id(self) -> int:
        """Chain the account lives on."""

    @property
    @abstractmethod
    def signer_address(self) -> Optional[str]:
        """Address of the connected signer, None when nobody is connected."""

    @abstractmethod
    async def get_owners(self) -> List[str]:
        ...

    @abstractmethod
    async def get_threshold(self) -> int:
        ...

    @abstractmethod
    async def get_nonce(self) -> int:
        ...

    @abstractmethod
    async def sign(self, operation: Operation) -> bytes:
        """Sign an operation with the connected signer."""

    @abstractmethod
    async def execute(self, operation: Operation, signatures: Mapping[str, bytes]) -> str:
        """Submit an operation with collected signatures; returns the tx hash."""


class HostRelay(ABC):
    """Embedding host that proposes, signs and executes in one call."""

    @abstractmethod
    async def send_batch(self, calls: Sequence[Mapping[str, str]]) -> str:
        """Send a call list ({to, value, data}); returns the host's identifier."""


class NormalizedAccount(AccountContract):
    """Wraps an AccountContract so its failures arrive as CosignerExceptions.

    Reads raise AccountUnavailableError, signing raises SignatureUnavailableError
    (NoSignerAvailableError when the wallet rejects), execution goes through
    exception_from_chain_error.
    """

    def __init__(self, inner: AccountContract):
        self._inner = inner

    @classmethod
    def wrap(cls, account: AccountContract) -> "NormalizedAccount":
        if isinstance(account, NormalizedAccount):
            return account
        return cls(account)

    @property
    def inner(self) -> AccountContract:
        return self._inner

    @property
    def address(self) -> str:
        return self._inner.address

    @property
    def chain_id(self) -> int:
        return self._inner.chain_id

    @property
    def signer_address(self) -> Optional[str]:
        return self._inner.signer_address

    async def _call(self, action: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except CosignerException:
            raise
        except Exception as e:
            if action == "execute":
                raise exception_from_chain_error(e, chain_id=self.chain_id) from e
            raise exception_from_account_error(e, action, chain_id=self.chain_id) from e

    async def get_owners(self) -> List[str]:
        return await self._call("get_owners", self._inner.get_owners())

    async def get_threshold(self) -> int:
        return await self._call("get_threshold", self._inner.get_threshold())

    async def get_nonce(self) -> int:
        return await self._call("get_nonce", self._inner.get_nonce())

    async def sign(self, operation: Operation) -> bytes:
        return await self._call("sign", self._inner.sign(operation))

    async def execute(self, operation: Operation, signatures: Mapping[str, bytes]) -> str:
        return await self._call("execute", self._inner.execute(operation, signatures))


class SimulatedSafeAccount(AccountContract):
    """In-process Safe for development.

    Signing records an on-account approval for the signer (the equivalent of
    approveHash), so execution succeeds for approvals made in an earlier
    session as long as enough distinct owners approved.
    """

    def __init__(
        self,
        address: str,
        chain_id: int,
        owners: Sequence[str],
        threshold: int,
        nonce: int = 0,
        signer_address: Optional[str] = None,
    ):
        if not owners:
            raise CosignerValidationError("Account requires at least one owner", field="owners")
        if threshold < 1 or threshold > len(owners):
            raise CosignerValidationError(
                f"Threshold must be between 1 and {len(owners)}", field="threshold"
            )
        self._address = Web3.to_checksum_address(address)
        self._chain_id = chain_id
        self._owners = [Web3.to_checksum_address(o) for o in owners]
        self._threshold = threshold
        self._nonce = nonce
        self._approvals: Dict[str, Set[str]] = {}
        self._signer: Optional[str] = None
        self.executed_operations: List[Operation] = []
        if signer_address:
            self.use_signer(signer_address)

    @property
    def address(self) -> str:
        return self._address

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def signer_address(self) -> Optional[str]:
        return self._signer

    def use_signer(self, owner: Optional[str]) -> None:
        """Switch the connected signer (None disconnects)."""
        if owner is None:
            self._signer = None
            return
        if normalize_address(owner) not in {normalize_address(o) for o in self._owners}:
            raise CosignerValidationError(f"{owner} is not an owner", field="signer")
        self._signer = Web3.to_checksum_address(owner)

    async def get_owners(self) -> List[str]:
        return list(self._owners)

    async def get_threshold(self) -> int:
        return self._threshold

    async def get_nonce(self) -> int:
        return self._nonce

    def _signature_for(self, signer: str, operation_hash: str) -> bytes:
        hash_bytes = bytes.fromhex(operation_hash.removeprefix("0x"))
        signer_bytes = bytes.fromhex(signer[2:])
        r = Web3.keccak(signer_bytes + hash_bytes)
        s = Web3.keccak(hash_bytes + signer_bytes)
        return bytes(r) + bytes(s) + b"\x01"

    async def sign(self, operation: Operation) -> bytes:
        if self._signer is None:
            raise NoSignerAvailableError()
        operation_hash = operation.operation_hash
        self._approvals.setdefault(operation_hash, set()).add(normalize_address(self._signer))
        return self._signature_for(self._signer, operation_hash)

    async def execute(self, operation: Operation, signatures: Mapping[str, bytes]) -> str:
        if self._signer is None:
            raise NoSignerAvailableError()
        if operation.nonce != self._nonce:
            raise RuntimeError(f"execution reverted: GS025 invalid nonce {operation.nonce}")

        operation_hash = operation.operation_hash
        owners = {normalize_address(o): o for o in self._owners}
        approved = set(self._approvals.get(operation_hash, set()))
        for signer, signature in signatures.items():
            key = normalize_address(signer)
            if key in owners and signature == self._signature_for(owners[key], operation_hash):
                approved.add(key)

        if len(approved) < self._threshold:
            raise RuntimeError("execution reverted: GS020 signatures data too short")

        self._nonce += 1
        self.executed_operations.append(operation)
        tx_hash = Web3.keccak(
            bytes.fromhex(operation_hash.removeprefix("0x")) + self._nonce.to_bytes(32, "big")
        )
        logger.info(f"Simulated execution of {operation_hash} at nonce {operation.nonce}")
        return "0x" + tx_hash.hex().removeprefix("0x")

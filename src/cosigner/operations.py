"""Safe operation builder.

Turns a simple intent (recipient, value, payload, call type) into a canonical
unsigned Safe operation and its content-derived identifier. The identifier is
the Safe's EIP-712 SafeTx hash, so it matches what the account contract and
the transaction service compute for the same transaction.

References:
- https://github.com/safe-global/safe-smart-account (Safe.getTransactionHash)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Sequence, Union

from eth_abi import encode
from web3 import Web3

from .exceptions import CosignerValidationError, InvalidRecipientError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
SENTINEL_OWNERS = "0x0000000000000000000000000000000000000001"

DOMAIN_SEPARATOR_TYPEHASH = Web3.keccak(
    text="EIP712Domain(uint256 chainId,address verifyingContract)"
)
SAFE_TX_TYPEHASH = Web3.keccak(
    text=(
        "SafeTx(address to,uint256 value,bytes data,uint8 operation,"
        "uint256 safeTxGas,uint256 baseGas,uint256 gasPrice,address gasToken,"
        "address refundReceiver,uint256 nonce)"
    )
)

INTENT_ORIGIN_PREFIX = "intent:"
MAX_UINT256 = 2**256 - 1


class CallType(IntEnum):
    """Safe operation type."""
    DIRECT = 0  # Call
    DELEGATED = 1  # DelegateCall


class TransactionIntent(str, Enum):
    """What an operation is for, carried alongside it for display."""
    TRANSFER = "transfer"
    ADD_OWNER = "governance:add-owner"
    REMOVE_OWNER = "governance:remove-owner"
    CHANGE_THRESHOLD = "governance:change-threshold"


def parse_transaction_intent(value: Optional[str]) -> TransactionIntent:
    """Parse an intent tag; unknown or empty values fall back to transfer."""
    if not value:
        return TransactionIntent.TRANSFER
    try:
        return TransactionIntent(value)
    except ValueError:
        return TransactionIntent.TRANSFER


def origin_for_intent(intent: TransactionIntent) -> str:
    return f"{INTENT_ORIGIN_PREFIX}{intent.value}"


def intent_from_origin(origin: Optional[str]) -> TransactionIntent:
    if not origin or not origin.startswith(INTENT_ORIGIN_PREFIX):
        return TransactionIntent.TRANSFER
    return parse_transaction_intent(origin[len(INTENT_ORIGIN_PREFIX):])


@dataclass(frozen=True)
class OperationIntent:
    """What the user asked for, before validation."""
    to: Any
    value: Any = None
    payload: Any = None
    call_type: CallType = CallType.DIRECT
    intent: TransactionIntent = TransactionIntent.TRANSFER


@dataclass(frozen=True)
class Operation:
    """Canonical unsigned Safe operation. Immutable once built."""
    account_address: str
    chain_id: int
    to: str
    value: int
    payload: bytes
    call_type: CallType
    nonce: int
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: str = ZERO_ADDRESS
    refund_receiver: str = ZERO_ADDRESS
    intent: TransactionIntent = field(default=TransactionIntent.TRANSFER, compare=False)

    @property
    def operation_hash(self) -> str:
        return compute_operation_hash(self)

    @property
    def payload_hex(self) -> str:
        return "0x" + self.payload.hex()

    def to_service_payload(self) -> Dict[str, Any]:
        """Transaction data in the shape the transaction service expects."""
        return {
            "to": self.to,
            "value": str(self.value),
            "data": self.payload_hex if self.payload else None,
            "operation": int(self.call_type),
            "safeTxGas": str(self.safe_tx_gas),
            "baseGas": str(self.base_gas),
            "gasPrice": str(self.gas_price),
            "gasToken": self.gas_token,
            "refundReceiver": self.refund_receiver,
            "nonce": self.nonce,
        }


def compute_operation_hash(operation: Operation) -> str:
    """EIP-712 SafeTx hash over all operation fields, account and chain."""
    domain_separator = Web3.keccak(
        encode(
            ["bytes32", "uint256", "address"],
            [
                DOMAIN_SEPARATOR_TYPEHASH,
                operation.chain_id,
                Web3.to_checksum_address(operation.account_address),
            ],
        )
    )
    struct_hash = Web3.keccak(
        encode(
            [
                "bytes32",
                "address",
                "uint256",
                "bytes32",
                "uint8",
                "uint256",
                "uint256",
                "uint256",
                "address",
                "address",
                "uint256",
            ],
            [
                SAFE_TX_TYPEHASH,
                Web3.to_checksum_address(operation.to),
                operation.value,
                Web3.keccak(operation.payload),
                int(operation.call_type),
                operation.safe_tx_gas,
                operation.base_gas,
                operation.gas_price,
                Web3.to_checksum_address(operation.gas_token),
                Web3.to_checksum_address(operation.refund_receiver),
                operation.nonce,
            ],
        )
    )
    digest = Web3.keccak(b"\x19\x01" + domain_separator + struct_hash)
    return "0x" + digest.hex().removeprefix("0x")


# ============ Field parsing ============

def normalize_address(address: str) -> str:
    return address.lower()


def normalize_address_list(addresses: Sequence[str]) -> List[str]:
    """Lower-case and de-duplicate, keeping first-seen order."""
    seen: Dict[str, None] = {}
    for address in addresses:
        seen.setdefault(normalize_address(address), None)
    return list(seen)


def parse_recipient(to: Any) -> str:
    """Validate a recipient and return it checksummed."""
    if not isinstance(to, str) or not Web3.is_address(to):
        raise InvalidRecipientError(to)
    return Web3.to_checksum_address(to)


def parse_value(value: Any) -> int:
    """Parse a non-negative integer amount in the smallest native unit."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise CosignerValidationError(f"Invalid value: {value!r}", field="value")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdecimal():
        parsed = int(value.strip())
    else:
        raise CosignerValidationError(f"Invalid value: {value!r}", field="value")
    if parsed < 0:
        raise CosignerValidationError("Value must be non-negative", field="value")
    if parsed > MAX_UINT256:
        raise CosignerValidationError("Value exceeds uint256 range", field="value")
    return parsed


def parse_payload(payload: Union[bytes, str, None]) -> bytes:
    """Parse call data given as bytes or a 0x-prefixed hex string."""
    if payload is None or payload == "" or payload == "0x":
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        text = payload[2:] if payload.startswith(("0x", "0X")) else payload
        try:
            return bytes.fromhex(text)
        except ValueError:
            raise CosignerValidationError(f"Invalid payload hex: {payload!r}", field="payload")
    raise CosignerValidationError(f"Invalid payload: {payload!r}", field="payload")


def parse_ether(value: str) -> int:
    """Convert a decimal native amount (e.g. "0.1") to wei."""
    try:
        amount = Decimal(value.strip() if value else "0")
    except (InvalidOperation, AttributeError):
        raise CosignerValidationError(f"Invalid amount: {value!r}", field="value")
    if not amount.is_finite() or amount < 0:
        raise CosignerValidationError("Amount must be non-negative", field="value")
    wei = amount * Decimal(10) ** 18
    if wei != wei.to_integral_value():
        raise CosignerValidationError(f"Too many decimals: {value!r}", field="value")
    if wei > MAX_UINT256:
        raise CosignerValidationError("Amount exceeds uint256 range", field="value")
    return int(Web3.to_wei(amount, "ether"))


def format_ether(value: Union[int, str]) -> str:
    """Format a wei amount for display; unparseable values pass through."""
    try:
        return str(Web3.from_wei(int(value), "ether"))
    except (TypeError, ValueError):
        return str(value)


# ============ Builder ============

def build_operation(
    intent: OperationIntent,
    nonce: int,
    account_address: str,
    chain_id: int,
) -> Operation:
    """Build a canonical Operation from an intent.

    The nonce comes from the account's current sequence, never from the user.
    Same intent + same nonce + same account/chain always yields the same
    operation hash.

    Raises:
        InvalidRecipientError: `to` is not a well-formed address
        CosignerValidationError: value or payload cannot be parsed
    """
    if nonce < 0:
        raise CosignerValidationError("Nonce must be non-negative", field="nonce")
    return Operation(
        account_address=Web3.to_checksum_address(account_address),
        chain_id=int(chain_id),
        to=parse_recipient(intent.to),
        value=parse_value(intent.value),
        payload=parse_payload(intent.payload),
        call_type=CallType(intent.call_type),
        nonce=nonce,
        intent=intent.intent,
    )


def host_calls_for(intent: OperationIntent) -> List[Dict[str, str]]:
    """Validated call list for a host relay batch."""
    return [
        {
            "to": parse_recipient(intent.to),
            "value": str(parse_value(intent.value)),
            "data": "0x" + parse_payload(intent.payload).hex(),
        }
    ]


# ============ Governance intents ============

def _selector(signature: str) -> bytes:
    return Web3.keccak(text=signature)[:4]


def build_add_owner_intent(account_address: str, owner: str, threshold: int) -> OperationIntent:
    """Self-call adding an owner and setting the threshold."""
    owner = parse_recipient(owner)
    if threshold < 1:
        raise CosignerValidationError("Threshold must be at least 1", field="threshold")
    payload = _selector("addOwnerWithThreshold(address,uint256)") + encode(
        ["address", "uint256"], [owner, threshold]
    )
    return OperationIntent(
        to=account_address,
        payload=payload,
        intent=TransactionIntent.ADD_OWNER,
    )


def build_remove_owner_intent(
    account_address: str,
    owners: Sequence[str],
    owner: str,
    threshold: int,
) -> OperationIntent:
    """Self-call removing an owner.

    Safe keeps owners in a linked list, so the call needs the owner preceding
    the removed one (the sentinel for the head of the list).
    """
    owner = parse_recipient(owner)
    normalized = [normalize_address(o) for o in owners]
    if normalize_address(owner) not in normalized:
        raise CosignerValidationError(f"{owner} is not an owner", field="owner")
    if threshold < 1 or threshold > len(normalized) - 1:
        raise CosignerValidationError(
            f"Threshold must be between 1 and {len(normalized) - 1}", field="threshold"
        )
    index = normalized.index(normalize_address(owner))
    prev_owner = SENTINEL_OWNERS if index == 0 else Web3.to_checksum_address(owners[index - 1])
    payload = _selector("removeOwner(address,address,uint256)") + encode(
        ["address", "address", "uint256"], [prev_owner, owner, threshold]
    )
    return OperationIntent(
        to=account_address,
        payload=payload,
        intent=TransactionIntent.REMOVE_OWNER,
    )


def build_change_threshold_intent(
    account_address: str,
    owner_count: int,
    threshold: int,
) -> OperationIntent:
    """Self-call changing the confirmation threshold."""
    if threshold < 1 or threshold > owner_count:
        raise CosignerValidationError(
            f"Threshold must be between 1 and {owner_count}", field="threshold"
        )
    payload = _selector("changeThreshold(uint256)") + encode(["uint256"], [threshold])
    return OperationIntent(
        to=account_address,
        payload=payload,
        intent=TransactionIntent.CHANGE_THRESHOLD,
    )

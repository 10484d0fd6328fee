"""
Pytest configuration for cosigner tests.
"""
from __future__ import annotations

import json
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("COSIGNER_ENVIRONMENT", "dev")
os.environ.setdefault("COSIGNER_CHAIN_MODE", "simulated")

from cosigner.config import CosignerSettings  # noqa: E402
from cosigner.coordination_client import CoordinationClientRegistry  # noqa: E402
from cosigner.persistence import InMemoryStorage  # noqa: E402
from cosigner.primitives import SimulatedSafeAccount  # noqa: E402
from cosigner.runtime import AppContext, resolve_runtime_policy  # noqa: E402

# Foundry default accounts
OWNER_1 = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
OWNER_2 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
OWNER_3 = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
SAFE_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
RECIPIENT = "0x1234567890123456789012345678901234567890"
CHAIN_ID = 11155111


@pytest.fixture
def owners():
    return [OWNER_1, OWNER_2]


@pytest.fixture
def safe_address():
    return SAFE_ADDRESS


@pytest.fixture
def recipient():
    return RECIPIENT


@pytest.fixture
def make_account():
    """Factory for simulated Safe accounts."""
    def _make(owners=None, threshold=2, signer=OWNER_1, nonce=0, chain_id=CHAIN_ID):
        return SimulatedSafeAccount(
            address=SAFE_ADDRESS,
            chain_id=chain_id,
            owners=owners or [OWNER_1, OWNER_2],
            threshold=threshold,
            nonce=nonce,
            signer_address=signer,
        )
    return _make


@pytest.fixture
def account(make_account):
    """2-of-2 simulated Safe with the first owner connected."""
    return make_account()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def local_policy():
    """Standalone, connected, no transaction service."""
    return resolve_runtime_policy(AppContext.STANDALONE, is_connected=True, signer_kind="dev-wallet")


@pytest.fixture
def remote_policy():
    return resolve_runtime_policy(
        AppContext.STANDALONE,
        is_connected=True,
        signer_kind="injected",
        remote_service_enabled=True,
        remote_service_supports_chain=True,
    )


@pytest.fixture
def embedded_policy():
    return resolve_runtime_policy(AppContext.EMBEDDED_HOST, is_connected=False)


class FakeSafeTransactionService:
    """In-memory Safe Transaction Service behind an httpx.MockTransport.

    Confirmation owners are recovered by matching signatures against the
    simulated account's signing scheme.
    """

    SAFE_TXS = re.compile(r"/api/v1/safes/(0x[0-9a-fA-F]{40})/multisig-transactions/")
    TX = re.compile(r"/api/v1/multisig-transactions/(0x[0-9a-fA-F]{64})/")
    CONFIRMATIONS = re.compile(r"/api/v1/multisig-transactions/(0x[0-9a-fA-F]{64})/confirmations/")

    def __init__(self, account: SimulatedSafeAccount, threshold: int = 2):
        self.account = account
        self.threshold = threshold
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.fail_with: Optional[int] = None

    def _owner_for(self, signature: str, operation_hash: str) -> Optional[str]:
        raw = bytes.fromhex(signature[2:])
        for owner in self.account._owners:
            if self.account._signature_for(owner, operation_hash) == raw:
                return owner
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"detail": "unavailable"})

        path = request.url.path
        match = self.CONFIRMATIONS.fullmatch(path)
        if match and request.method == "POST":
            tx = self.transactions.get(match.group(1).lower())
            if tx is None:
                return httpx.Response(404, json={"detail": "Not found."})
            signature = json.loads(request.content)["signature"]
            owner = self._owner_for(signature, tx["safeTxHash"])
            if owner is None:
                return httpx.Response(422, json={"detail": "Invalid signature"})
            tx["confirmations"].append(
                {"owner": owner, "signature": signature, "submissionDate": "2026-01-01T00:00:00Z"}
            )
            return httpx.Response(201)

        match = self.TX.fullmatch(path)
        if match and request.method == "GET":
            tx = self.transactions.get(match.group(1).lower())
            if tx is None:
                return httpx.Response(404, json={"detail": "Not found."})
            return httpx.Response(200, json=tx)

        match = self.SAFE_TXS.fullmatch(path)
        if match and request.method == "POST":
            body = json.loads(request.content)
            operation_hash = body["contractTransactionHash"].lower()
            self.transactions[operation_hash] = {
                "safe": match.group(1),
                "to": body["to"],
                "value": body["value"],
                "data": body["data"],
                "operation": body["operation"],
                "safeTxGas": body["safeTxGas"],
                "baseGas": body["baseGas"],
                "gasPrice": body["gasPrice"],
                "gasToken": body["gasToken"],
                "refundReceiver": body["refundReceiver"],
                "nonce": body["nonce"],
                "safeTxHash": operation_hash,
                "origin": body.get("origin"),
                "isExecuted": False,
                "transactionHash": None,
                "confirmationsRequired": self.threshold,
                "submissionDate": "2026-01-01T00:00:00Z",
                "confirmations": [
                    {
                        "owner": body["sender"],
                        "signature": body["signature"],
                        "submissionDate": "2026-01-01T00:00:00Z",
                    }
                ],
            }
            return httpx.Response(201)
        if match and request.method == "GET":
            safe = match.group(1).lower()
            results = [
                tx for tx in self.transactions.values()
                if tx["safe"].lower() == safe and not tx["isExecuted"]
            ]
            return httpx.Response(200, json={"count": len(results), "results": results})

        return httpx.Response(404, json={"detail": "Not found."})


@pytest.fixture
def settings():
    return CosignerSettings(tx_service_urls={CHAIN_ID: "https://tx-service.test"})


@pytest.fixture
def service(account):
    return FakeSafeTransactionService(account)


@pytest.fixture
def registry(settings, service):
    return CoordinationClientRegistry(
        settings,
        transport=httpx.MockTransport(service.handler),
        backoff_seconds=0,
    )

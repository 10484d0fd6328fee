"""Tests for the transaction service client."""
from __future__ import annotations

import json

import httpx
import pytest

from cosigner.config import CosignerSettings
from cosigner.coordination_client import CoordinationClientRegistry, CoordinationServiceClient
from cosigner.exceptions import OperationNotFoundError, RemoteServiceUnavailableError
from cosigner.operations import OperationIntent, build_operation

from conftest import CHAIN_ID, OWNER_1, RECIPIENT, SAFE_ADDRESS

BASE_URL = "https://tx-service.test"
HASH = "0x" + "ab" * 32


def _client(handler, max_retries=3):
    return CoordinationServiceClient(
        BASE_URL,
        CHAIN_ID,
        max_retries=max_retries,
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
    )


class TestRequests:
    @pytest.mark.asyncio
    async def test_propose_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201)

        operation = build_operation(OperationIntent(to=RECIPIENT, value=42), 3, SAFE_ADDRESS, CHAIN_ID)
        async with _client(handler) as client:
            result = await client.propose(
                SAFE_ADDRESS.lower(), operation, OWNER_1.lower(), b"\x01\x02", "intent:transfer"
            )

        assert result == operation.operation_hash
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == f"/api/v1/safes/{SAFE_ADDRESS}/multisig-transactions/"
        body = json.loads(request.content)
        assert body["contractTransactionHash"] == operation.operation_hash
        assert body["sender"] == OWNER_1
        assert body["signature"] == "0x0102"
        assert body["origin"] == "intent:transfer"
        assert body["value"] == "42"
        assert body["nonce"] == 3

    @pytest.mark.asyncio
    async def test_get_operation(self):
        def handler(request):
            assert request.url.path == f"/api/v1/multisig-transactions/{HASH}/"
            return httpx.Response(200, json={"safeTxHash": HASH})

        async with _client(handler) as client:
            assert await client.get_operation(HASH) == {"safeTxHash": HASH}

    @pytest.mark.asyncio
    async def test_get_operation_not_found(self):
        async with _client(lambda request: httpx.Response(404, json={"detail": "Not found."})) as client:
            with pytest.raises(OperationNotFoundError):
                await client.get_operation(HASH)

    @pytest.mark.asyncio
    async def test_confirm(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201)

        async with _client(handler) as client:
            await client.confirm(HASH, b"\xff")

        assert seen[0].url.path == f"/api/v1/multisig-transactions/{HASH}/confirmations/"
        assert json.loads(seen[0].content) == {"signature": "0xff"}

    @pytest.mark.asyncio
    async def test_list_pending(self):
        def handler(request):
            assert request.url.params["executed"] == "false"
            return httpx.Response(200, json={"count": 2, "results": [{"safeTxHash": HASH}, "junk"]})

        async with _client(handler) as client:
            assert await client.list_pending(SAFE_ADDRESS) == [{"safeTxHash": HASH}]


class TestRetries:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"safeTxHash": HASH})

        async with _client(handler) as client:
            assert await client.get_operation(HASH) == {"safeTxHash": HASH}
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(502)

        async with _client(handler, max_retries=2) as client:
            with pytest.raises(RemoteServiceUnavailableError) as exc_info:
                await client.get_operation(HASH)
        assert len(attempts) == 2
        assert exc_info.value.details["status_code"] == 502

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        async with _client(handler) as client:
            with pytest.raises(RemoteServiceUnavailableError) as exc_info:
                await client.list_pending(SAFE_ADDRESS)
        assert exc_info.value.message == "Transaction service request timed out"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(422, json={"detail": "bad signature"})

        async with _client(handler) as client:
            with pytest.raises(RemoteServiceUnavailableError):
                await client.confirm(HASH, b"\x01")
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        async with _client(lambda request: httpx.Response(200, content=b"<html>")) as client:
            with pytest.raises(RemoteServiceUnavailableError):
                await client.get_operation(HASH)


class TestRegistry:
    def test_created_once_per_chain(self):
        registry = CoordinationClientRegistry(CosignerSettings())
        assert registry.get(11155111) is registry.get(11155111)
        assert registry.get(1) is not registry.get(11155111)

    def test_unsupported_chain(self):
        registry = CoordinationClientRegistry(CosignerSettings())
        assert not registry.supports(31337)
        with pytest.raises(RemoteServiceUnavailableError):
            registry.get(31337)

    def test_disabled_service(self):
        registry = CoordinationClientRegistry(CosignerSettings(tx_service_enabled=False))
        assert not registry.supports(1)

    def test_clear(self):
        registry = CoordinationClientRegistry(CosignerSettings())
        client = registry.get(100)
        registry.clear()
        assert registry.get(100) is not client

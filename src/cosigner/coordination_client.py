"""
Safe Transaction Service client.

The service holds the shared pending queue for an account: proposals, their
confirmations and execution state, visible to every co-signer.

Usage:
    registry = CoordinationClientRegistry(settings)
    client = registry.get(11155111)
    await client.propose(account, operation, sender, signature, origin)
    remote = await client.get_operation(operation.operation_hash)
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from web3 import Web3

from .config import CosignerSettings, load_settings
from .exceptions import (
    OperationNotFoundError,
    RemoteServiceUnavailableError,
    exception_from_service_error,
)
from .operations import Operation

logger = logging.getLogger(__name__)

USER_AGENT = "cosigner/0.1.0"
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class CoordinationServiceClient:
    """
    Async client for one chain's transaction service.

    Args:
        base_url: Service base URL (without /api)
        chain_id: Chain served by this instance
        timeout: Request timeout in seconds
        max_retries: Attempts per request for timeouts and retryable statuses
        backoff_seconds: Base delay of the exponential backoff
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    DEFAULT_TIMEOUT = 30.0
    DEFAULT_MAX_RETRIES = 3

    def __init__(
        self,
        base_url: str,
        chain_id: int,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Service base URL is required")
        self._base_url = base_url.rstrip("/")
        self._chain_id = chain_id
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._backoff_seconds = backoff_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                },
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        operation_hash: Optional[str] = None,
    ) -> Any:
        """Make an HTTP request with retry logic.

        Every failure leaves this method as RemoteServiceUnavailableError,
        except a 404 on a lookup by operation hash (OperationNotFoundError).
        """
        client = await self._get_client()

        for attempt in range(self._max_retries):
            last_attempt = attempt >= self._max_retries - 1
            try:
                response = await client.request(
                    method=method,
                    url=path,
                    params=params,
                    json=json,
                )
            except httpx.TimeoutException as e:
                if not last_attempt:
                    await asyncio.sleep(self._backoff_seconds * 2 ** attempt)
                    continue
                raise exception_from_service_error(e, chain_id=self._chain_id) from e
            except httpx.RequestError as e:
                if not last_attempt:
                    await asyncio.sleep(self._backoff_seconds * 2 ** attempt)
                    continue
                raise exception_from_service_error(e, chain_id=self._chain_id) from e

            if response.status_code in RETRYABLE_STATUS and not last_attempt:
                logger.debug(
                    f"{method} {path} returned {response.status_code}, retrying "
                    f"({attempt + 1}/{self._max_retries})"
                )
                await asyncio.sleep(self._backoff_seconds * 2 ** attempt)
                continue

            if response.status_code == 404 and operation_hash:
                raise OperationNotFoundError(operation_hash)

            if response.status_code >= 400:
                raise exception_from_service_error(
                    RuntimeError(f"HTTP {response.status_code}: {response.text[:200]}"),
                    chain_id=self._chain_id,
                    status_code=response.status_code,
                )

            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise RemoteServiceUnavailableError(
                    "Transaction service returned an invalid response",
                    chain_id=self._chain_id,
                    status_code=response.status_code,
                ) from e

        raise RemoteServiceUnavailableError(chain_id=self._chain_id)

    async def propose(
        self,
        account_address: str,
        operation: Operation,
        sender: str,
        signature: bytes,
        origin: Optional[str] = None,
    ) -> str:
        """Publish an operation with the proposer's signature; returns its hash."""
        operation_hash = operation.operation_hash
        body = operation.to_service_payload()
        body.update(
            {
                "contractTransactionHash": operation_hash,
                "sender": Web3.to_checksum_address(sender),
                "signature": "0x" + signature.hex(),
                "origin": origin,
            }
        )
        address = Web3.to_checksum_address(account_address)
        await self._request(
            "POST",
            f"/api/v1/safes/{address}/multisig-transactions/",
            json=body,
        )
        logger.debug(f"Proposed {operation_hash} for {address} on chain {self._chain_id}")
        return operation_hash

    async def get_operation(self, operation_hash: str) -> Dict[str, Any]:
        """Fetch the current state of an operation, including confirmations."""
        data = await self._request(
            "GET",
            f"/api/v1/multisig-transactions/{operation_hash}/",
            operation_hash=operation_hash,
        )
        if not isinstance(data, dict):
            raise RemoteServiceUnavailableError(
                "Transaction service returned an invalid response",
                chain_id=self._chain_id,
            )
        return data

    async def confirm(self, operation_hash: str, signature: bytes) -> None:
        """Add a signer's confirmation to a proposed operation."""
        await self._request(
            "POST",
            f"/api/v1/multisig-transactions/{operation_hash}/confirmations/",
            json={"signature": "0x" + signature.hex()},
            operation_hash=operation_hash,
        )

    async def list_pending(self, account_address: str) -> List[Dict[str, Any]]:
        """Not-yet-executed operations for an account, newest first."""
        address = Web3.to_checksum_address(account_address)
        data = await self._request(
            "GET",
            f"/api/v1/safes/{address}/multisig-transactions/",
            params={"executed": "false", "ordering": "-nonce"},
        )
        if isinstance(data, dict):
            results = data.get("results", [])
        elif isinstance(data, list):
            results = data
        else:
            results = []
        return [item for item in results if isinstance(item, dict)]

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "CoordinationServiceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class CoordinationClientRegistry:
    """Per-chain service clients, created on first use."""

    def __init__(
        self,
        settings: Optional[CosignerSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_seconds: float = 1.0,
    ):
        self._settings = settings or load_settings()
        self._transport = transport
        self._backoff_seconds = backoff_seconds
        self._clients: Dict[int, CoordinationServiceClient] = {}

    def supports(self, chain_id: Optional[int], rpc_url: Optional[str] = None) -> bool:
        return (
            self._settings.tx_service_enabled
            and self._settings.remote_service_supports_chain(chain_id, rpc_url)
        )

    def get(self, chain_id: int) -> CoordinationServiceClient:
        client = self._clients.get(chain_id)
        if client is not None:
            return client

        base_url = self._settings.get_tx_service_url(chain_id)
        if not base_url:
            raise RemoteServiceUnavailableError(
                f"Transaction service is not configured for chain {chain_id}",
                chain_id=chain_id,
            )
        client = CoordinationServiceClient(
            base_url,
            chain_id,
            timeout=self._settings.service_timeout_seconds,
            max_retries=self._settings.service_max_retries,
            backoff_seconds=self._backoff_seconds,
            transport=self._transport,
        )
        self._clients[chain_id] = client
        return client

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

    def clear(self) -> None:
        """Forget cached clients without closing them."""
        self._clients.clear()

"""Runtime policy decision engine.

Classifies the current session (embedding context, wallet connection, signer
kind, transaction service availability) into the signing and submission
capabilities that are legal right now. Pure and cheap: callers recompute it on
every context change or poll.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

DEV_WALLET_CONNECTOR_ID = "dev-wallet"


class AppContext(str, Enum):
    """Where the engine is running."""
    STANDALONE = "standalone"
    EMBEDDED_HOST = "embedded-host"


class SignerProvider(str, Enum):
    """Which signing path is active."""
    NONE = "none"
    LOCAL_DEV_SIGNER = "local-dev-signer"
    EXTERNAL_WALLET = "external-wallet"


class TxSubmissionPath(str, Enum):
    """How operations reach the chain."""
    NONE = "none"
    HOST_RELAY = "host-relay"
    DIRECT_TO_CHAIN = "direct-to-chain"
    REMOTE_COORDINATION_SERVICE = "remote-coordination-service"


@dataclass(frozen=True)
class RuntimePolicy:
    """Resolved capability set for the current session."""
    app_context: AppContext
    signer_provider: SignerProvider
    tx_submission_path: TxSubmissionPath
    can_sign: bool
    can_submit: bool

    @property
    def uses_remote_service(self) -> bool:
        return self.tx_submission_path == TxSubmissionPath.REMOTE_COORDINATION_SERVICE

    @property
    def is_embedded(self) -> bool:
        return self.app_context == AppContext.EMBEDDED_HOST

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in data.items()
        }


def signer_provider_for(signer_kind: Optional[str]) -> SignerProvider:
    """Map a wallet connector id to the signing path it provides."""
    if signer_kind == DEV_WALLET_CONNECTOR_ID:
        return SignerProvider.LOCAL_DEV_SIGNER
    return SignerProvider.EXTERNAL_WALLET


def resolve_runtime_policy(
    app_context: AppContext | str,
    is_connected: bool,
    signer_kind: Optional[str] = None,
    remote_service_enabled: bool = False,
    remote_service_supports_chain: bool = False,
) -> RuntimePolicy:
    """Resolve the runtime policy for a session.

    Embedded in a host, signing and relay are delegated to the host regardless
    of the other inputs. Standalone without a connection is read-only.
    Standalone with a connection signs with the active signer and submits
    through the transaction service only when it is enabled and serves the
    current chain.
    """
    app_context = AppContext(app_context)

    if app_context == AppContext.EMBEDDED_HOST:
        return RuntimePolicy(
            app_context=app_context,
            signer_provider=SignerProvider.NONE,
            tx_submission_path=TxSubmissionPath.HOST_RELAY,
            can_sign=False,
            can_submit=True,
        )

    if not is_connected:
        return RuntimePolicy(
            app_context=app_context,
            signer_provider=SignerProvider.NONE,
            tx_submission_path=TxSubmissionPath.NONE,
            can_sign=False,
            can_submit=False,
        )

    if remote_service_enabled and remote_service_supports_chain:
        path = TxSubmissionPath.REMOTE_COORDINATION_SERVICE
    else:
        path = TxSubmissionPath.DIRECT_TO_CHAIN

    return RuntimePolicy(
        app_context=app_context,
        signer_provider=signer_provider_for(signer_kind),
        tx_submission_path=path,
        can_sign=True,
        can_submit=True,
    )

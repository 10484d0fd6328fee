"""
Logging utilities for multisig lifecycle operations.

Features:
- Structured logging for build / propose / confirm / execute steps
- Timed operation contexts
- Execution audit trail
- Account address masking
- JSON log formatting with account correlation
"""
from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import LoggingConfig

logger = logging.getLogger(__name__)

account_address_var: ContextVar[Optional[str]] = ContextVar("account_address", default=None)


class OperationType(str, Enum):
    """Types of lifecycle operations."""
    BUILD = "build"
    PROPOSE = "propose"
    CONFIRM = "confirm"
    EXECUTE = "execute"
    HOST_RELAY = "host_relay"
    SERVICE_CALL = "service_call"


@dataclass
class OperationContext:
    """Context for a lifecycle operation."""
    operation_id: str
    operation_type: OperationType
    chain_id: Optional[int]
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (
            (self.completed_at - self.started_at).total_seconds() * 1000
        )
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "chain_id": self.chain_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class ExecutionLog:
    """Audit entry for an executed operation."""
    operation_hash: str
    account_address: str
    chain_id: Optional[int]
    to_address: str
    value: int
    tx_hash: str
    confirmations: int
    threshold: int
    substrate: str
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self, mask_addresses: bool = False) -> Dict[str, Any]:
        account = mask_address(self.account_address) if mask_addresses else self.account_address
        to_addr = mask_address(self.to_address) if mask_addresses else self.to_address
        return {
            "operation_hash": self.operation_hash,
            "account_address": account,
            "chain_id": self.chain_id,
            "to_address": to_addr,
            "value": str(self.value),
            "tx_hash": self.tx_hash,
            "confirmations": self.confirmations,
            "threshold": self.threshold,
            "substrate": self.substrate,
            "executed_at": self.executed_at.isoformat(),
        }


def mask_address(address: str) -> str:
    """Mask middle portion of address for privacy."""
    if len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


class CoordinationLogger:
    """
    Logger for multisig lifecycle operations.

    Provides structured logging with:
    - Operation context tracking
    - Execution audit trail
    - Per-operation timing
    """

    def __init__(
        self,
        name: str = "cosigner",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._config = config or LoggingConfig()
        self._operation_counter = 0

        self._executions: List[ExecutionLog] = []
        self._max_history = 1000

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        timestamp = int(time.time() * 1000)
        return f"op_{timestamp}_{self._operation_counter}"

    def _get_level(self, level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        chain_id: Optional[int] = None,
        **metadata,
    ):
        """
        Context manager for tracking an operation.

        Usage:
            async with log.operation_context(OperationType.CONFIRM, 1) as ctx:
                ...
                ctx.metadata["operation_hash"] = operation_hash
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            chain_id=chain_id,
            metadata=metadata,
        )

        self._logger.debug(
            f"Starting {operation_type.value} on chain {chain_id}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)

        except Exception as e:
            ctx.complete(success=False, error=str(e))
            raise

        finally:
            if ctx.success:
                level_name = (
                    self._config.service_call_level
                    if operation_type == OperationType.SERVICE_CALL
                    else self._config.operation_level
                )
            else:
                level_name = self._config.error_level
            self._logger.log(
                self._get_level(level_name),
                f"Completed {operation_type.value} on chain {chain_id} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_execution_submitted(
        self,
        operation_hash: str,
        account_address: str,
        chain_id: Optional[int],
        to_address: str,
        value: int,
        tx_hash: str,
        confirmations: int,
        threshold: int,
        substrate: str,
    ) -> ExecutionLog:
        """Log an executed operation and keep it for the audit trail."""
        entry = ExecutionLog(
            operation_hash=operation_hash,
            account_address=account_address,
            chain_id=chain_id,
            to_address=to_address,
            value=value,
            tx_hash=tx_hash,
            confirmations=confirmations,
            threshold=threshold,
            substrate=substrate,
        )

        self._executions.append(entry)
        if len(self._executions) > self._max_history:
            self._executions = self._executions[-self._max_history:]

        self._logger.log(
            self._get_level(self._config.operation_level),
            f"Operation executed: {operation_hash} -> {tx_hash} "
            f"({confirmations}/{threshold} confirmations)",
            extra={"execution": entry.to_dict(self._config.mask_addresses)},
        )

        if self._config.audit_log_enabled:
            self._write_audit_log("operation_executed", entry.to_dict())
        return entry

    def _write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        audit_entry = {
            "event_type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }
        self._logger.info(
            f"AUDIT: {event_type}",
            extra={"audit": audit_entry},
        )

    def get_execution_history(self) -> List[Dict[str, Any]]:
        return [entry.to_dict(self._config.mask_addresses) for entry in self._executions]


# =============================================================================
# Process-wide logging setup
# =============================================================================

class AccountContextFilter(logging.Filter):
    """Logging filter that adds the active account address to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.account_address = account_address_var.get()
        return True


_STANDARD_RECORD_KEYS = frozenset((
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "account_address",
))


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        account = getattr(record, "account_address", None)
        if account:
            log_data["account_address"] = account

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_KEYS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
) -> None:
    """
    Configure logging for the process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or plain text (False)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(account_address)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(AccountContextFilter())
    root_logger.addHandler(console_handler)

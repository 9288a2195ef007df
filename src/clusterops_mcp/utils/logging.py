# ABOUTME: Structured logging with correlation IDs for the clusterops MCP server
# ABOUTME: Configures structlog and records an audit trail of lifecycle operations

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
CORRELATION IDs
=============================================================================

A single deploy_cluster call touches three systems: the Kubernetes API (cluster
spec, profile, bundles), git (clone, commit, push) and ArgoCD (existence check,
registration). Each step logs on its own. The correlation ID ties them
together:

    {"correlation_id": "a1b2c3", "event": "Resolved cluster spec", "step": "resolve"}
    {"correlation_id": "a1b2c3", "event": "Manifest tree deployed", "commit": "9f1e..."}
    {"correlation_id": "a1b2c3", "event": "Registered root descriptor", "step": "register"}

The ID lives in a ContextVar, so concurrent tool calls never see each other's
ID. Blocking git and Kubernetes calls run through asyncio.to_thread, which
copies the context, so their logs carry the ID as well.

=============================================================================
AUDIT LOG
=============================================================================

Every tool call leaves one audit entry: what was attempted, on which cluster
or profile, and whether it succeeded, was blocked or failed. Entries go to a
JSON-lines file (MCP_AUDIT_LOG) or to structlog.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate a new one.

    Code running outside a tool call (startup, lifespan) still gets an ID so
    its logs are correlatable.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set correlation ID for the current context.

    Called at the start of each tool. An empty string makes the next
    get_correlation_id() generate a fresh ID.
    """
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor adding ``correlation_id`` to every event."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    Pipeline: contextvars -> level -> ISO timestamp -> correlation ID ->
    renderer (JSON lines, or colored console output for development).

    Args:
        level: "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL"
        json_output: Emit JSON lines instead of console output.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        # MCP stdio transport owns stdout; logs must not corrupt it
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit logger for tool calls.

    Each entry records:
    - timestamp: When it happened (UTC ISO 8601)
    - correlation_id: Request identifier
    - action: Tool name ("deploy_cluster", "update_cluster", ...)
    - target: Cluster or profile name
    - result: "success", "preview", "blocked" or "error"
    - details: Additional context (commit, error message, ...)

    EXAMPLE:
    --------
    {"timestamp": "2026-01-15T10:30:00+00:00", "correlation_id": "abc123",
     "action": "update_cluster", "target": "prod-east", "result": "error",
     "details": {"error": "invariant violation (provider_type): ..."}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Args:
            log_path: JSON-lines file to append to, or None for structlog.
        """
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log a write operation.

        Typical results: "success", "unchanged" (tree already up to date),
        "preview" (descriptor rendered, nothing registered).
        """
        self.log(action, target, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Log an operation a safety check refused."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        self.log(action, target, "error", {"error": error})

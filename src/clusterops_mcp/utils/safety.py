# ABOUTME: Safety utilities for the clusterops MCP server
# ABOUTME: Read-only mode, rate limiting and confirmation for profile deletion

"""Safety checks applied before any tool touches git, ArgoCD or the API server."""

from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from clusterops_mcp.config import SecuritySettings

logger = structlog.get_logger(__name__)

PROFILE_DELETE_IMPACT = (
    "The profile will be PERMANENTLY DELETED. Clusters using it keep their "
    "current manifest tree until their next update."
)


@dataclass
class ConfirmationRequired:
    """Response asking the caller to confirm a deletion by repeating its target."""

    operation: str
    target: str
    impact: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        detail_lines = [f"  {key}: {value}" for key, value in self.details.items()]
        sections = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            f"Target: {self.target}\nImpact: {self.impact}",
        ]
        if detail_lines:
            sections.append("Details:\n" + "\n".join(detail_lines))
        sections.append(f"To proceed, set confirm=true AND confirm_name='{self.target}'")
        return "\n\n".join(sections)


@dataclass
class OperationBlocked:
    """A tool call refused by a security setting."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        return "\n".join(
            [
                f"OPERATION BLOCKED: {self.operation}",
                f"Reason: {self.reason}",
                f"Setting: {self.setting}",
                f"To enable: Set {self.setting}=false in server configuration",
            ]
        )


class RateLimiter:
    """Sliding-window rate limiter keyed by operation."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: defaultdict[str, deque[float]] = defaultdict(deque)

    def check(self, key: str) -> bool:
        """Record a call under ``key``; False when the window is already full."""
        now = time.monotonic()
        calls = self._calls[key]
        while calls and now - calls[0] >= self._window:
            calls.popleft()

        if len(calls) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(calls))
            return False
        calls.append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._calls.clear()
        else:
            self._calls.pop(key, None)


class SafetyGuard:
    """
    Gatekeeper for tool calls.

    Reads (get_cluster, list_managed_clusters) are only rate limited.
    Writes (deploy_cluster, update_cluster, delete_profile, previews included,
    since a preview still pushes the manifest tree) are blocked entirely while
    MCP_READ_ONLY is true. Deleting a profile also needs an explicit
    confirmation naming the profile.
    """

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    def _rate_limited(self, kind: str, operation: str) -> OperationBlocked | None:
        if self._rate_limiter.check(f"{kind}:{operation}"):
            return None
        return OperationBlocked(operation, "Rate limit exceeded", "MCP_RATE_LIMIT_CALLS")

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        return self._rate_limited("read", operation)

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        """None if allowed; read-only mode wins over the rate limit."""
        if self._settings.read_only:
            return OperationBlocked(
                operation, "Server is running in read-only mode", "MCP_READ_ONLY"
            )
        return self._rate_limited("write", operation)

    def check_delete_operation(
        self,
        operation: str,
        target: str,
        confirmed: bool = False,
        confirm_name: str | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """Write check plus explicit confirmation that names the target."""
        blocked = self.check_write_operation(operation)
        if blocked is not None:
            return blocked
        if confirmed and confirm_name == target:
            return None
        return ConfirmationRequired(operation, target, PROFILE_DELETE_IMPACT)

# ABOUTME: ArgoCD API client wrapper with retry logic and error handling
# ABOUTME: Reads, creates and replaces root descriptor Applications over REST

"""
ArgoCD API client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module is the delivery-engine side of the cluster lifecycle. Root
descriptors are ArgoCD Applications, and this client is the only code that
reads or writes them:

    GET  /api/v1/applications?selector=...   - List managed clusters
    GET  /api/v1/applications/{name}         - Read a root descriptor
    POST /api/v1/applications                - Register a new descriptor
    PUT  /api/v1/applications/{name}         - Replace an existing descriptor

Authentication is via Bearer token in the Authorization header:
    Authorization: Bearer <token>

Errors come back as JSON:
    {"message": "error description", "error": "additional details"}

=============================================================================
RETRIES AND IDEMPOTENCY
=============================================================================

Timeouts are retried with exponential backoff (tenacity). That is safe for
the write calls too: ArgoCD treats a create or replace with identical content
as a no-op, and a replace carries the record's resourceVersion, so a retried
PUT can never overwrite somebody else's newer record.

=============================================================================
SECRET MASKING
=============================================================================

Responses shown to an operator are masked (tokens, passwords, keys). Reads
that feed back into a write, such as fetching the descriptor an update is
derived from, are NOT masked: writing a masked value back would corrupt the
record.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from clusterops_mcp.config import ArgocdInstance

logger = structlog.get_logger(__name__)

# =============================================================================
# SECRET PATTERNS
# =============================================================================

MASK = "***MASKED***"

# key: value / key=value pairs, then bearer tokens
SECRET_PATTERNS = [
    (re.compile(rf"({key}[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}}]+", re.I), rf"\1{MASK}")
    for key in ("token", "password", "secret", r"api[_-]?key")
] + [(re.compile(r"(bearer\s+)[^\s\"']+", re.I), rf"\1{MASK}")]

SENSITIVE_KEYS = frozenset(
    {"token", "password", "secret", "api_key", "apikey", "api-key", "key"}
    | {"authorization", "auth", "credential", "credentials"}
)


def mask_sensitive(data: Any) -> Any:
    """
    Return a copy of ``data`` with secrets replaced.

    Dict entries whose key is in SENSITIVE_KEYS lose their value entirely,
    strings are scrubbed with SECRET_PATTERNS, lists and dicts are walked.
    """
    if isinstance(data, dict):
        return {
            k: MASK if k.lower() in SENSITIVE_KEYS else mask_sensitive(v) for k, v in data.items()
        }
    if isinstance(data, list):
        return [mask_sensitive(item) for item in data]
    if isinstance(data, str):
        for pattern, replacement in SECRET_PATTERNS:
            data = pattern.sub(replacement, data)
    return data


class ArgocdError(Exception):
    """
    Structured ArgoCD API error.

    Keeps the HTTP status so callers can tell "not found" (404) and
    "somebody else wrote first" (409) apart from everything else.
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        suffix = f" - {self.details}" if self.details else ""
        return f"ArgoCD API error ({self.code}): {self.message}{suffix}"

    @classmethod
    def from_response(cls, response: httpx.Response) -> ArgocdError:
        """Build from an error response: {"message": ..., "error": ...} or plain text."""
        body = response.text
        try:
            payload = response.json()
        except ValueError:
            return cls(response.status_code, f"HTTP {response.status_code}", body[:200] or None)
        if not isinstance(payload, dict):
            payload = {}
        return cls(
            response.status_code,
            payload.get("message", f"HTTP {response.status_code}"),
            payload.get("error"),
        )


@dataclass
class Application:
    """
    Status view of an ArgoCD Application.

    The lifecycle code works on RootDescriptor; this flattened view is what
    operators see when they ask how a managed cluster is doing.
    """

    name: str
    namespace: str
    project: str
    repo_url: str
    path: str
    target_revision: str
    sync_status: str
    health_status: str
    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None
    operation_state: dict[str, Any] | None = None
    conditions: list[dict[str, Any]] | None = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> Application:
        metadata = data.get("metadata", {})
        spec = data.get("spec", {})
        status = data.get("status", {})
        source = spec.get("source", {})

        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", "argocd"),
            project=spec.get("project", "default"),
            repo_url=source.get("repoURL", ""),
            path=source.get("path", ""),
            target_revision=source.get("targetRevision", "HEAD"),
            sync_status=status.get("sync", {}).get("status", "Unknown"),
            health_status=status.get("health", {}).get("status", "Unknown"),
            labels=metadata.get("labels"),
            annotations=metadata.get("annotations"),
            operation_state=status.get("operationState"),
            conditions=status.get("conditions"),
        )


class ArgocdClient:
    """
    Async ArgoCD API client with retry logic.

    ALWAYS use the context manager pattern:
        async with ArgocdClient(instance) as client:
            app = await client.get_application_manifest("prod")

    The client retries on timeout with exponential backoff:
    - Attempt 1: Immediate
    - Attempt 2: Wait 1 second
    - Attempt 3: Wait 2 seconds
    - Give up: Raise the exception
    """

    def __init__(
        self,
        instance: ArgocdInstance,
        timeout: float = 30.0,
        mask_secrets: bool = True,
    ) -> None:
        """
        Initialize ArgoCD client.

        Args:
            instance: ArgoCD instance configuration (URL, token, etc.)
            timeout: HTTP request timeout in seconds.
            mask_secrets: Whether to mask sensitive data in display responses.
        """
        self._instance = instance
        self._timeout = timeout
        self._mask_secrets = mask_secrets
        self._client: httpx.AsyncClient | None = None

    @property
    def instance_name(self) -> str:
        return self._instance.name

    async def __aenter__(self) -> ArgocdClient:
        self._client = httpx.AsyncClient(
            base_url=f"{self._instance.url}/api/v1",
            headers={
                "Authorization": f"Bearer {self._instance.token.get_secret_value()}",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            verify=not self._instance.insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _mask_response(self, data: Any) -> Any:
        return mask_sensitive(data) if self._mask_secrets else data

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        mask: bool = True,
    ) -> dict[str, Any]:
        """
        Make HTTP request to ArgoCD API.

        Args:
            method: HTTP method ("GET", "POST", "PUT")
            path: API path (e.g., "/applications", "/applications/prod")
            params: URL query parameters (optional)
            json_data: JSON request body (optional)
            mask: Mask secrets in the response. Must be False when the
                  response is written back to ArgoCD.

        Returns:
            API response as dictionary

        Raises:
            ArgocdError: On API error (4xx, 5xx)
            httpx.TimeoutException: On request timeout (after retries)
            RuntimeError: If client not initialized (forgot async with)
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(method=method, path=path, instance=self._instance.name)
        log.debug("Making ArgoCD API request")

        response = await self._client.request(
            method,
            path,
            params=params,
            json=json_data,
        )

        if response.is_error:
            log.warning("ArgoCD API error", status=response.status_code, body=response.text[:200])
            raise ArgocdError.from_response(response)

        result = response.json() if response.content else {}
        if mask:
            result = self._mask_response(result)
        return result if isinstance(result, dict) else {}

    # =========================================================================
    # READS
    # =========================================================================

    async def list_applications(self, selector: str | None = None) -> list[Application]:
        """
        List ArgoCD applications.

        ArgoCD API: GET /api/v1/applications

        Args:
            selector: Kubernetes label selector, e.g. "managed-by=clusterops"
        """
        params = {"selector": selector} if selector else None
        data = await self._request("GET", "/applications", params=params)
        items = data.get("items") or []
        return [Application.from_api_response(item) for item in items]

    async def get_application(self, name: str) -> Application:
        """
        Get the status view of an application.

        Raises:
            ArgocdError: If application not found (404)
        """
        data = await self._request("GET", f"/applications/{name}")
        return Application.from_api_response(data)

    async def get_application_manifest(self, name: str) -> dict[str, Any]:
        """
        Get the full, unmasked Application resource.

        Used to derive a new descriptor from an existing one; the result keeps
        metadata.resourceVersion for optimistic concurrency.

        Raises:
            ArgocdError: If application not found (404)
        """
        return await self._request("GET", f"/applications/{name}", mask=False)

    # =========================================================================
    # WRITES
    # =========================================================================

    async def create_application(
        self,
        application: dict[str, Any],
        upsert: bool = False,
    ) -> dict[str, Any]:
        """
        Register a new Application.

        ArgoCD API: POST /api/v1/applications

        With upsert=False ArgoCD rejects a create whose name is taken by an
        Application with different content, and accepts an identical one.
        """
        params = {"upsert": str(upsert).lower(), "validate": "true"}
        return await self._request(
            "POST", "/applications", params=params, json_data=application, mask=False
        )

    async def update_application(self, application: dict[str, Any]) -> dict[str, Any]:
        """
        Replace an existing Application wholesale.

        ArgoCD API: PUT /api/v1/applications/{name}

        When metadata.resourceVersion is set and the live record has moved
        on, ArgoCD answers 409 Conflict.
        """
        name = application["metadata"]["name"]
        return await self._request(
            "PUT",
            f"/applications/{name}",
            params={"validate": "true"},
            json_data=application,
            mask=False,
        )

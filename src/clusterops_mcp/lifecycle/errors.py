# ABOUTME: Error taxonomy for the cluster descriptor lifecycle
# ABOUTME: Not-found, invariant, transport, conflict and configuration errors

"""
Errors raised by the cluster descriptor lifecycle.

Every error derives from LifecycleError so the tool layer can catch one type
and turn it into a readable message. The subclasses map onto four kinds:

    NotFound            ClusterSpecNotFoundError, ProfileNotFoundError,
                        BundleNotFoundError, DescriptorNotFoundError
    InvariantViolation  tag, repo, path or cluster name changed on update
    Transport           GitUnavailableError, EngineError, RegistrationError
    Conflict            WriteConflictError, ConcurrentModificationError
    Configuration       ConfigurationError, ClusterExistsError

Invariant violations are never downgraded to warnings. They protect the
identity of a running cluster.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from clusterops_mcp.lifecycle.manager import LifecycleResult


class LifecycleError(Exception):
    """Base class for all lifecycle failures."""

    kind = "error"


# =============================================================================
# NOT FOUND
# =============================================================================


class NotFoundError(LifecycleError):
    """A named record does not exist."""

    kind = "not_found"
    resource = "resource"

    def __init__(self, name: str, namespace: str | None = None) -> None:
        self.name = name
        self.namespace = namespace
        where = f" in namespace '{namespace}'" if namespace else ""
        super().__init__(f"{self.resource} '{name}' not found{where}")


class ClusterSpecNotFoundError(NotFoundError):
    resource = "cluster spec"


class ProfileNotFoundError(NotFoundError):
    resource = "profile"


class BundleNotFoundError(NotFoundError):
    resource = "bundle"


class DescriptorNotFoundError(NotFoundError):
    resource = "root descriptor"


# =============================================================================
# IDENTITY
# =============================================================================


class MalformedPathError(LifecycleError):
    """A manifest path does not have the form <base>/<cluster>."""

    kind = "invalid"

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"malformed manifest path '{path}': expected <base path>/<cluster name>")


class AmbiguousTagError(LifecycleError):
    """The provider/cloud/type classification cannot be resolved to one tag."""

    kind = "invalid"


class InvariantViolation(LifecycleError):
    """An update would change the identity of an existing cluster.

    ``field`` names the attribute that triggered the rejection so the caller
    knows exactly what to fix.
    """

    kind = "invariant_violation"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"invariant violation ({field}): {message}")


# =============================================================================
# TRANSPORT AND CONFLICTS
# =============================================================================


class TransportError(LifecycleError):
    """Git or the delivery engine could not be reached or refused the call."""

    kind = "transport"


class GitUnavailableError(TransportError):
    pass


class EngineError(TransportError):
    """The delivery engine could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RegistrationError(EngineError):
    """The delivery engine rejected or failed a create/update call.

    ``result`` carries the status of the operation at the time of failure.
    The manifest tree has already been written when this is raised, so
    rerunning the same operation only repeats the registration.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        result: LifecycleResult | None = None,
    ) -> None:
        self.result = result
        super().__init__(message, status_code)


class WriteConflictError(LifecycleError):
    """A concurrent writer changed the target first."""

    kind = "conflict"

    def __init__(self, message: str, result: LifecycleResult | None = None) -> None:
        self.result = result
        super().__init__(message)


class ConcurrentModificationError(WriteConflictError):
    """The root descriptor changed since it was read (resourceVersion mismatch)."""


class ProfileRenderError(LifecycleError):
    kind = "render"


# =============================================================================
# CALLER INPUT
# =============================================================================


class ConfigurationError(LifecycleError):
    """Caller input is inconsistent; rejected before any side effect."""

    kind = "configuration"


class ClusterExistsError(ConfigurationError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"cluster '{name}' already has a root descriptor")

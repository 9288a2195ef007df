# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Exposes cluster deploy/update/inspection and profile deletion as MCP tools

"""Clusterops MCP Server - git-backed lifecycle for ArgoCD-managed clusters."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field, field_validator, model_validator

from clusterops_mcp.config import ServerSettings, load_settings
from clusterops_mcp.lifecycle.deployer import ManifestTreeDeployer
from clusterops_mcp.lifecycle.descriptor import (
    CLUSTER_TYPE_VALUE,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    TYPE_LABEL,
    RepoCoordinates,
)
from clusterops_mcp.lifecycle.errors import (
    InvariantViolation,
    LifecycleError,
    WriteConflictError,
)
from clusterops_mcp.lifecycle.manager import LifecycleManager
from clusterops_mcp.utils.client import ArgocdClient, ArgocdError
from clusterops_mcp.utils.kube import KubeConfigStore
from clusterops_mcp.utils.logging import AuditLogger, configure_logging, set_correlation_id
from clusterops_mcp.utils.safety import ConfirmationRequired, SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from clusterops_mcp.lifecycle.descriptor import RootDescriptor
    from clusterops_mcp.lifecycle.manager import LifecycleResult

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

DNS1123_LABEL = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"
MANAGED_CLUSTER_SELECTOR = (
    f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE},{TYPE_LABEL}={CLUSTER_TYPE_VALUE}"
)

# Global state (initialized in lifespan)
_settings: ServerSettings | None = None
_clients: dict[str, ArgocdClient] = {}
_managers: dict[str, LifecycleManager] = {}
_store: KubeConfigStore | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Load config, connect to ArgoCD and the API server, build one manager per instance."""
    global _settings, _store, _safety_guard, _audit_logger

    logger.info("Starting clusterops MCP server")

    _settings = load_settings()
    configure_logging(level=_settings.log_level)
    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)
    _store = KubeConfigStore.from_settings(_settings)

    deployer = ManifestTreeDeployer(
        workdir=_settings.git.workdir,
        author_name=_settings.git.author_name,
        author_email=_settings.git.author_email,
        argocd_namespace=_settings.argocd_namespace,
    )

    for instance in _settings.all_instances:
        client = ArgocdClient(instance=instance, mask_secrets=_settings.security.mask_secrets)
        await client.__aenter__()
        _clients[instance.name] = client
        _managers[instance.name] = LifecycleManager(
            client,
            _store,
            deployer,
            argocd_namespace=_settings.argocd_namespace,
            management_endpoint=_settings.management_cluster_url,
        )
        logger.info("Connected to ArgoCD instance", instance=instance.name, url=instance.url)

    yield {"settings": _settings, "clients": _clients, "managers": _managers}

    for name, client in _clients.items():
        await client.__aexit__(None, None, None)
        logger.info("Disconnected from ArgoCD instance", instance=name)
    _clients.clear()
    _managers.clear()

    logger.info("Clusterops MCP server stopped")


mcp = FastMCP("clusterops-mcp", lifespan=lifespan)


def get_client(instance: str = "primary") -> ArgocdClient:
    """Get ArgoCD client for specified instance."""
    if instance not in _clients:
        available = list(_clients.keys())
        raise ValueError(f"Unknown instance '{instance}'. Available: {available}")
    return _clients[instance]


def get_manager(instance: str = "primary") -> LifecycleManager:
    """Get the lifecycle manager bound to an ArgoCD instance."""
    if instance not in _managers:
        available = list(_managers.keys())
        raise ValueError(f"Unknown instance '{instance}'. Available: {available}")
    return _managers[instance]


def get_store() -> KubeConfigStore:
    if not _store:
        raise RuntimeError("Server not initialized")
    return _store


def get_settings() -> ServerSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_safety_guard() -> SafetyGuard:
    """Get safety guard for permission checking."""
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording operations."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


# =============================================================================
# RESPONSE FORMATTING
# =============================================================================


def format_lifecycle_error(action: str, target: str, error: LifecycleError) -> str:
    """Turn a lifecycle failure into a message an operator can act on."""
    if isinstance(error, InvariantViolation):
        return (
            f"UPDATE REJECTED: {target}\n"
            f"Field: {error.field}\n"
            f"Reason: {error.message}\n\n"
            "Nothing was written. An existing cluster keeps its provider type, "
            "repository, manifest path and name."
        )

    lines = [f"{action} failed for '{target}': {error}"]
    result = getattr(error, "result", None)
    if result is not None and result.tree_deployed:
        lines.extend(
            [
                "",
                f"Manifest tree is deployed at commit {result.commit or 'unknown'}; "
                "ArgoCD was not updated.",
                f"Run {action} again with the same arguments to finish.",
            ]
        )
    elif isinstance(error, WriteConflictError):
        lines.extend(["", "Another change landed first. Retry the operation."])
    return "\n".join(lines)


def format_descriptor(descriptor: RootDescriptor) -> list[str]:
    lines = [
        f"Cluster: {descriptor.name}",
        f"Provider type: {descriptor.provider_type or 'none'}",
        f"Cluster spec: {descriptor.cluster_spec_name or 'none'}",
        f"Profile: {descriptor.profile_name or 'none'}",
        "",
        "Source:",
        f"  Repository: {descriptor.repo_url}",
        f"  Branch: {descriptor.branch}",
        f"  Path: {descriptor.path}",
        "",
        f"Management endpoint: {descriptor.management_endpoint}",
    ]
    if descriptor.values:
        lines.extend(["", "Values:"])
        lines.extend(f"  {key}: {value}" for key, value in descriptor.values)
    return lines


def format_result(verb: str, result: LifecycleResult) -> str:
    lines = [f"Cluster '{result.descriptor.name}' {verb}.", ""]
    lines.append(
        f"Manifest tree: {'new commit' if result.tree_changed else 'unchanged'} "
        f"({result.commit or 'unknown'})"
    )
    lines.append(f"Registered in ArgoCD: {result.engine_registered}")
    lines.append("")
    lines.extend(format_descriptor(result.descriptor))
    return "\n".join(lines)


# =============================================================================
# READ OPERATIONS
# =============================================================================


class GetClusterParams(BaseModel):
    """Parameters for get_cluster tool."""

    cluster_name: str = Field(description="Managed cluster name")
    instance: str = Field(default="primary", description="ArgoCD instance name")


@mcp.tool()
async def get_cluster(params: GetClusterParams, ctx: MCPContext) -> str:
    """
    Show a managed cluster: its root descriptor and its ArgoCD status.

    Includes provider type, cluster spec, profile, repository coordinates
    and sync/health status of the root application.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_cluster")
    if blocked:
        get_audit_logger().log_blocked("get_cluster", params.cluster_name, blocked.reason)
        return blocked.format_message()

    try:
        descriptor = await get_manager(params.instance).fetch_descriptor(params.cluster_name)
        app = await get_client(params.instance).get_application(params.cluster_name)
    except LifecycleError as e:
        get_audit_logger().log_error("get_cluster", params.cluster_name, str(e))
        return format_lifecycle_error("get_cluster", params.cluster_name, e)
    except ArgocdError as e:
        get_audit_logger().log_error("get_cluster", params.cluster_name, str(e))
        return str(e)

    get_audit_logger().log_read("get_cluster", params.cluster_name)

    lines = format_descriptor(descriptor)
    lines.extend(
        [
            "",
            "Status:",
            f"  Sync: {app.sync_status}",
            f"  Health: {app.health_status}",
        ]
    )
    if app.conditions:
        lines.extend(["", "Conditions:"])
        for cond in app.conditions:
            lines.append(f"  - [{cond.get('type')}] {cond.get('message', 'N/A')}")
    return "\n".join(lines)


class ListManagedClustersParams(BaseModel):
    """Parameters for list_managed_clusters tool."""

    instance: str = Field(default="primary", description="ArgoCD instance name")


@mcp.tool()
async def list_managed_clusters(params: ListManagedClustersParams, ctx: MCPContext) -> str:
    """
    List clusters managed through root descriptors.

    Only ArgoCD applications labelled as cluster root descriptors are shown.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("list_managed_clusters")
    if blocked:
        get_audit_logger().log_blocked("list_managed_clusters", "all", blocked.reason)
        return blocked.format_message()

    try:
        apps = await get_client(params.instance).list_applications(
            selector=MANAGED_CLUSTER_SELECTOR
        )
    except ArgocdError as e:
        get_audit_logger().log_error("list_managed_clusters", "all", str(e))
        return str(e)

    get_audit_logger().log_read("list_managed_clusters", "all")

    if not apps:
        return "No managed clusters found."

    lines = [f"Found {len(apps)} managed cluster(s):", ""]
    for app in apps:
        health_marker = "[OK]" if app.health_status == "Healthy" else "[!]"
        sync_marker = "[OK]" if app.sync_status == "Synced" else "[!]"
        lines.append(
            f"- {app.name} path={app.path}@{app.target_revision} "
            f"health={app.health_status} {health_marker} "
            f"sync={app.sync_status} {sync_marker}"
        )
    return "\n".join(lines)


# =============================================================================
# WRITE OPERATIONS
# =============================================================================


class DeployClusterParams(BaseModel):
    """Parameters for deploy_cluster tool."""

    cluster_name: str = Field(description="Name of the new cluster", pattern=DNS1123_LABEL)
    cluster_spec: str | None = Field(
        default=None, description="Cluster spec defining provider, cloud, type and sizing"
    )
    profile: str | None = Field(
        default=None, description="Configuration profile to apply (requires cluster_spec)"
    )
    repo_url: str | None = Field(default=None, description="Git repository for the manifest tree")
    repo_alias: str | None = Field(
        default=None, description="Configured repository alias (instead of repo_url)"
    )
    repo_branch: str | None = Field(default=None, description="Git branch (default from settings)")
    repo_base_path: str | None = Field(
        default=None, description="Directory cluster trees live under (default from settings)"
    )
    output_yaml: bool = Field(
        default=False,
        description="Write the manifest tree but return the root descriptor YAML instead of "
        "registering it with ArgoCD",
    )
    instance: str = Field(default="primary", description="ArgoCD instance name")

    @field_validator("repo_base_path")
    @classmethod
    def check_base_path(cls, v: str | None) -> str | None:
        if v is not None and not all(v.strip("/").split("/")):
            raise ValueError("repo_base_path must name a directory, e.g. 'clusters'")
        return v

    @model_validator(mode="after")
    def check_repo(self) -> DeployClusterParams:
        if self.repo_url and self.repo_alias:
            raise ValueError("repo_url and repo_alias are mutually exclusive")
        if self.profile and not self.cluster_spec:
            raise ValueError("profile requires cluster_spec")
        return self


@mcp.tool()
async def deploy_cluster(params: DeployClusterParams, ctx: MCPContext) -> str:
    """
    Create a managed cluster.

    Writes the cluster's manifest tree to <base path>/<cluster name> in the
    git repository, then registers the root descriptor with ArgoCD. Running
    the same call again after a failure resumes where it stopped.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_write_operation("deploy_cluster")
    if blocked:
        get_audit_logger().log_blocked("deploy_cluster", params.cluster_name, blocked.reason)
        return blocked.format_message()

    git = get_settings().git
    try:
        repo = RepoCoordinates(
            repo_url=git.resolve_repo_url(params.repo_url, params.repo_alias),
            branch=params.repo_branch or git.default_branch,
            base_path=(params.repo_base_path or git.default_base_path).strip("/"),
        )
        manager = get_manager(params.instance)
    except ValueError as e:
        get_audit_logger().log_error("deploy_cluster", params.cluster_name, str(e))
        return str(e)

    await ctx.report_progress(0, 2, f"Deploying manifest tree for {params.cluster_name}")

    try:
        result = await manager.create(
            params.cluster_name,
            repo,
            cluster_spec_name=params.cluster_spec,
            profile_name=params.profile,
            register=not params.output_yaml,
        )
    except LifecycleError as e:
        get_audit_logger().log_error("deploy_cluster", params.cluster_name, str(e))
        return format_lifecycle_error("deploy_cluster", params.cluster_name, e)

    await ctx.report_progress(2, 2, "Complete")

    details = {"commit": result.commit, "tree_changed": result.tree_changed}
    if params.output_yaml:
        get_audit_logger().log_write("deploy_cluster", params.cluster_name, "preview", details)
        return result.descriptor.to_yaml()

    get_audit_logger().log_write("deploy_cluster", params.cluster_name, "success", details)
    return format_result("deployed", result)


class UpdateClusterParams(BaseModel):
    """Parameters for update_cluster tool."""

    cluster_name: str = Field(description="Existing cluster name", pattern=DNS1123_LABEL)
    cluster_spec: str = Field(description="Cluster spec to rebuild the cluster from")
    profile: str | None = Field(default=None, description="Profile to apply, or none to clear it")
    output_yaml: bool = Field(
        default=False,
        description="Write the manifest tree but return the root descriptor YAML instead of "
        "updating ArgoCD",
    )
    instance: str = Field(default="primary", description="ArgoCD instance name")


@mcp.tool()
async def update_cluster(params: UpdateClusterParams, ctx: MCPContext) -> str:
    """
    Rebuild an existing cluster from a cluster spec and profile.

    The cluster's provider type, repository, manifest path and name must not
    change; the update is rejected (naming the field) if they would.
    Sizing values and the profile may change freely.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_write_operation("update_cluster")
    if blocked:
        get_audit_logger().log_blocked("update_cluster", params.cluster_name, blocked.reason)
        return blocked.format_message()

    try:
        manager = get_manager(params.instance)
    except ValueError as e:
        get_audit_logger().log_error("update_cluster", params.cluster_name, str(e))
        return str(e)

    await ctx.report_progress(0, 3, f"Reading root descriptor of {params.cluster_name}")

    try:
        existing = await manager.fetch_descriptor(params.cluster_name)
        await ctx.report_progress(1, 3, "Deploying manifest tree")
        result = await manager.update(
            existing,
            params.cluster_name,
            params.cluster_spec,
            profile_name=params.profile,
            update_in_engine=not params.output_yaml,
        )
    except LifecycleError as e:
        get_audit_logger().log_error("update_cluster", params.cluster_name, str(e))
        return format_lifecycle_error("update_cluster", params.cluster_name, e)

    await ctx.report_progress(3, 3, "Complete")

    details = {"commit": result.commit, "tree_changed": result.tree_changed}
    if params.output_yaml:
        get_audit_logger().log_write("update_cluster", params.cluster_name, "preview", details)
        return result.descriptor.to_yaml()

    get_audit_logger().log_write("update_cluster", params.cluster_name, "success", details)
    return format_result("updated", result)


class DeleteProfileParams(BaseModel):
    """Parameters for delete_profile tool."""

    name: str = Field(description="Profile name")
    confirm: bool = Field(default=False, description="Confirm deletion")
    confirm_name: str | None = Field(
        default=None, description="Type the profile name to confirm deletion"
    )


@mcp.tool()
async def delete_profile(params: DeleteProfileParams, ctx: MCPContext) -> str:
    """
    Delete a configuration profile.

    Deletes the profile resource, or the legacy ConfigMap profile when no
    resource exists. Requires confirm=true and confirm_name matching the
    profile name.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    check = get_safety_guard().check_delete_operation(
        "delete_profile",
        params.name,
        confirmed=params.confirm,
        confirm_name=params.confirm_name,
    )
    if check:
        if isinstance(check, ConfirmationRequired):
            get_audit_logger().log_blocked(
                "delete_profile", params.name, "confirmation required"
            )
        else:
            get_audit_logger().log_blocked("delete_profile", params.name, check.reason)
        return check.format_message()

    try:
        legacy = await get_store().delete_profile(params.name)
    except LifecycleError as e:
        get_audit_logger().log_error("delete_profile", params.name, str(e))
        return format_lifecycle_error("delete_profile", params.name, e)

    get_audit_logger().log_write("delete_profile", params.name, "deleted", {"legacy": legacy})
    kind = "legacy profile" if legacy else "profile"
    return f"Deleted {kind} '{params.name}'."


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("clusterops://instances")
async def get_instances_resource() -> str:
    """Configured ArgoCD instances and lifecycle defaults."""
    settings = get_settings()
    instances = settings.all_instances

    lines = []
    if instances:
        lines.extend(["Configured ArgoCD Instances:", ""])
        lines.extend(f"- {inst.name}: {inst.url}" for inst in instances)
    else:
        lines.append("No ArgoCD instances configured")

    git = settings.git
    lines.extend(
        [
            "",
            f"Descriptor namespace: {settings.argocd_namespace}",
            f"Management namespace: {settings.management_namespace}",
            f"Default branch: {git.default_branch}",
            f"Default base path: {git.default_base_path}",
        ]
    )
    if git.repo_aliases:
        lines.extend(["", "Repository aliases:"])
        for alias, url in sorted(git.repo_aliases.items()):
            marker = " (default)" if alias == git.default_alias else ""
            lines.append(f"- {alias}: {url}{marker}")
    return "\n".join(lines)


@mcp.resource("clusterops://security")
async def get_security_resource() -> str:
    """Get current security settings."""
    sec = get_settings().security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Audit log: {sec.audit_log or 'structured log'}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the clusterops MCP server."""
    configure_logging(level="INFO")
    logger.info("Clusterops MCP server starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()

# ABOUTME: Configuration management for the clusterops MCP server
# ABOUTME: Handles environment variables, security modes, git defaults and ArgoCD instances

"""
Settings for the clusterops server, loaded with pydantic-settings.

Everything comes from the environment (or an env file named by
CLUSTEROPS_ENV_FILE) and is validated once at startup, so a bad URL or an
unknown repository alias fails before any tool runs.

=============================================================================
SETTINGS CLASSES
=============================================================================

1. ArgocdInstance: one ArgoCD server (url, token, name, insecure)

2. SecuritySettings: the MCP_* switches
   - Read-only mode, audit log, secret masking, rate limiting

3. GitSettings: Where manifest trees are written (CLUSTEROPS_GIT_* prefix)
   - Default branch and base path, commit author, repository aliases

4. ServerSettings: Main configuration container
   - Primary ArgoCD instance plus any extra instances
   - Management namespace and management cluster URL
   - Contains SecuritySettings and GitSettings as nested objects

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Primary ArgoCD instance:
    ARGOCD_URL          -> Primary server URL
    ARGOCD_TOKEN        -> API authentication token
    ARGOCD_INSECURE     -> Skip TLS certificate verification

Lifecycle (CLUSTEROPS_ prefix):
    CLUSTEROPS_ARGOCD_NAMESPACE        -> Namespace root descriptors live in
    CLUSTEROPS_MANAGEMENT_NAMESPACE    -> Namespace of cluster specs and profiles
    CLUSTEROPS_MANAGEMENT_CLUSTER_URL  -> API URL workload clusters call home to
    CLUSTEROPS_KUBECONFIG / CLUSTEROPS_KUBE_CONTEXT

Git (CLUSTEROPS_GIT_ prefix):
    CLUSTEROPS_GIT_DEFAULT_BRANCH      -> Branch when none is given (default: main)
    CLUSTEROPS_GIT_DEFAULT_BASE_PATH   -> Base path when none is given (default: clusters)
    CLUSTEROPS_GIT_REPO_ALIASES        -> JSON object alias -> repository URL
    CLUSTEROPS_GIT_DEFAULT_ALIAS       -> Alias used when neither URL nor alias is given

Security settings (MCP_ prefix):
    MCP_READ_ONLY           -> Block all write operations (default: true)
    MCP_AUDIT_LOG           -> Path to audit log file
    MCP_MASK_SECRETS        -> Mask sensitive data in output (default: true)
    MCP_RATE_LIMIT_CALLS    -> Max API calls per window (default: 100)
    MCP_RATE_LIMIT_WINDOW   -> Rate limit window in seconds (default: 60)
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# ARGOCD INSTANCE CONFIGURATION
# =============================================================================


class ArgocdInstance(BaseModel):
    """
    Configuration for a single ArgoCD instance.

    Each instance has its own management namespace view and its own set of
    root descriptors, so the server builds one lifecycle manager per instance.

    USAGE EXAMPLE:
    --------------
        instance = ArgocdInstance(
            url="https://argocd.example.com",
            token=SecretStr("my-api-token"),
            name="production",
        )
    """

    model_config = {"extra": "ignore"}

    url: str = Field(description="ArgoCD server URL")
    token: SecretStr = Field(description="ArgoCD API token")
    name: str = Field(default="default", description="Instance identifier")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Ensure URL has a scheme (https by default) and no trailing slash."""
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Security-related configuration.

    Layer 1: MCP_READ_ONLY=true (default)
        - Blocks deploy_cluster, update_cluster and delete_profile
        - Previews (output_yaml) are blocked too, since they push the manifest tree
        - get_cluster and list_managed_clusters still work

    Layer 2: Rate limiting (MCP_RATE_LIMIT_*)
        - Prevents runaway loops from hammering ArgoCD, git and the API server
    """

    model_config = SettingsConfigDict(env_prefix="MCP_")

    read_only: bool = Field(
        default=True,
        description="Block all write operations when true",
    )

    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )
    # One JSON object per line. When None, audit events go to structlog.

    mask_secrets: bool = Field(
        default=True,
        description="Mask sensitive values in output",
    )

    rate_limit_calls: int = Field(
        default=100,
        description="Maximum API calls per window",
    )

    rate_limit_window: int = Field(
        default=60,
        description="Rate limit window in seconds",
    )


# =============================================================================
# GIT SETTINGS
# =============================================================================


class GitSettings(BaseSettings):
    """
    Where and how manifest trees are written.

    REPOSITORY ALIASES:
    -------------------
    Operators rarely want to paste a full repository URL. Aliases map short
    names to URLs:

        CLUSTEROPS_GIT_REPO_ALIASES='{"fleet": "https://git.example.com/fleet.git"}'
        CLUSTEROPS_GIT_DEFAULT_ALIAS=fleet

    A deploy without repo_url or repo_alias uses the default alias.
    """

    model_config = SettingsConfigDict(env_prefix="CLUSTEROPS_GIT_")

    default_branch: str = Field(default="main", description="Branch manifest trees are pushed to")
    default_base_path: str = Field(
        default="clusters", description="Directory cluster trees are created under"
    )
    workdir: Path | None = Field(
        default=None, description="Parent directory for temporary clones"
    )
    author_name: str = Field(default="clusterops", description="Commit author name")
    author_email: str = Field(default="clusterops@localhost", description="Commit author email")
    repo_aliases: dict[str, str] = Field(
        default_factory=dict, description="Repository alias -> URL"
    )
    default_alias: str | None = Field(default=None, description="Alias used when none is given")

    @field_validator("default_base_path")
    @classmethod
    def validate_base_path(cls, v: str) -> str:
        v = v.strip("/")
        if not v:
            raise ValueError("base path must not be empty")
        return v

    @model_validator(mode="after")
    def validate_default_alias(self) -> GitSettings:
        if self.default_alias and self.default_alias not in self.repo_aliases:
            raise ValueError(f"default alias '{self.default_alias}' is not a known repo alias")
        return self

    def resolve_repo_url(self, repo_url: str | None = None, alias: str | None = None) -> str:
        """
        Turn an explicit URL or an alias into a repository URL.

        Raises:
            ValueError: both given, unknown alias, or nothing to resolve.
        """
        if repo_url and alias:
            raise ValueError("repo_url and repo_alias are mutually exclusive")
        if repo_url:
            return repo_url
        alias = alias or self.default_alias
        if not alias:
            raise ValueError("no repository given and no default repo alias configured")
        if alias not in self.repo_aliases:
            raise ValueError(f"unknown repo alias '{alias}'")
        return self.repo_aliases[alias]


# =============================================================================
# MAIN SERVER SETTINGS
# =============================================================================


class ServerSettings(BaseSettings):
    """
    Main server configuration.

    USAGE:
    ------
        settings = load_settings()
        print(settings.argocd_url)
        print(settings.git.default_branch)
        print(settings.security.read_only)
    """

    model_config = SettingsConfigDict(
        env_prefix="CLUSTEROPS_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # PRIMARY ARGOCD INSTANCE (from environment)
    # -------------------------------------------------------------------------

    argocd_url: str = Field(
        default="",
        validation_alias="ARGOCD_URL",
        description="Primary ArgoCD server URL",
    )

    argocd_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ARGOCD_TOKEN",
        description="Primary ArgoCD API token",
    )

    argocd_insecure: bool = Field(
        default=False,
        validation_alias="ARGOCD_INSECURE",
        description="Skip TLS verification for primary instance",
    )

    additional_instances: list[ArgocdInstance] = Field(
        default_factory=list,
        description="Additional ArgoCD instances",
    )

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    argocd_namespace: str = Field(
        default="argocd",
        description="Namespace root descriptors are registered in",
    )

    management_namespace: str = Field(
        default="clusterops",
        description="Namespace holding cluster specs, profiles and bundles",
    )

    management_cluster_url: str = Field(
        default="",
        description="Management cluster API URL passed to workload clusters",
    )
    # Empty means the in-cluster API server, https://kubernetes.default.svc

    kubeconfig: Path | None = Field(default=None, description="Path to kubeconfig file")
    kube_context: str | None = Field(default=None, description="Kubeconfig context to use")

    # -------------------------------------------------------------------------
    # SERVER METADATA
    # -------------------------------------------------------------------------

    server_name: str = Field(default="clusterops-mcp", description="MCP server name")
    server_version: str = Field(default="0.1.0", description="MCP server version")

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    # -------------------------------------------------------------------------
    # NESTED SETTINGS
    # -------------------------------------------------------------------------

    security: SecuritySettings = Field(default_factory=SecuritySettings)
    git: GitSettings = Field(default_factory=GitSettings)

    # -------------------------------------------------------------------------
    # COMPUTED PROPERTIES
    # -------------------------------------------------------------------------

    @property
    def primary_instance(self) -> ArgocdInstance | None:
        """Primary ArgoCD instance, or None when ARGOCD_URL is not set."""
        if not self.argocd_url:
            return None
        return ArgocdInstance(
            url=self.argocd_url,
            token=self.argocd_token,
            name="primary",
            insecure=self.argocd_insecure,
        )

    @property
    def all_instances(self) -> list[ArgocdInstance]:
        instances = []
        if self.primary_instance:
            instances.append(self.primary_instance)
        instances.extend(self.additional_instances)
        return instances

    def get_instance(self, name: str = "primary") -> ArgocdInstance | None:
        for instance in self.all_instances:
            if instance.name == name:
                return instance
        return None


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ServerSettings:
    """
    Load settings from environment with validation.

    If CLUSTEROPS_ENV_FILE is set, additional variables are read from that
    file. Useful for local development:

        ARGOCD_URL=https://localhost:8443
        ARGOCD_TOKEN=my-dev-token
        ARGOCD_INSECURE=true
        MCP_READ_ONLY=false

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ServerSettings(
        _env_file=os.environ.get("CLUSTEROPS_ENV_FILE"),
    )

# ABOUTME: Pytest fixtures and configuration for clusterops MCP server tests
# ABOUTME: Provides settings, ArgoCD payloads, an in-memory config store and mocks

from __future__ import annotations

import copy
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from clusterops_mcp.config import ArgocdInstance, GitSettings, SecuritySettings, ServerSettings
from clusterops_mcp.lifecycle.deployer import DeployResult, ManifestTreeDeployer
from clusterops_mcp.lifecycle.errors import ClusterSpecNotFoundError, ProfileNotFoundError
from clusterops_mcp.lifecycle.identity import ClusterSpec
from clusterops_mcp.utils.client import Application, ArgocdClient, ArgocdError
from clusterops_mcp.utils.kube import Bundle, Profile
from clusterops_mcp.utils.safety import SafetyGuard

FLEET_REPO = "https://git.example.com/fleet.git"


class InMemoryConfigStore:
    """Cluster specs and profiles held in dicts, with the store's error behavior."""

    def __init__(
        self,
        cluster_specs: dict[str, ClusterSpec] | None = None,
        profiles: dict[str, Profile] | None = None,
    ) -> None:
        self.cluster_specs = cluster_specs or {}
        self.profiles = profiles or {}
        self.calls: list[tuple[str, str]] = []

    async def get_cluster_spec(self, name: str) -> ClusterSpec:
        self.calls.append(("cluster_spec", name))
        if name not in self.cluster_specs:
            raise ClusterSpecNotFoundError(name, "clusterops")
        return self.cluster_specs[name]

    async def get_profile(self, name: str) -> Profile:
        self.calls.append(("profile", name))
        if name not in self.profiles:
            raise ProfileNotFoundError(name, "clusterops")
        return self.profiles[name]


@pytest.fixture
def mock_argocd_instance() -> ArgocdInstance:
    """Create a mock ArgoCD instance configuration."""
    return ArgocdInstance(
        url="https://argocd.example.com",
        token=SecretStr("test-token"),
        name="test",
        insecure=True,
    )


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings with writes enabled."""
    return SecuritySettings(
        read_only=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def git_settings() -> GitSettings:
    return GitSettings(
        repo_aliases={"fleet": FLEET_REPO, "lab": "https://git.example.com/lab.git"},
        default_alias="fleet",
    )


@pytest.fixture
def mock_server_settings(
    mock_argocd_instance: ArgocdInstance,
    mock_security_settings: SecuritySettings,
    git_settings: GitSettings,
) -> ServerSettings:
    """Create mock server settings."""
    return ServerSettings(
        argocd_url=mock_argocd_instance.url,
        argocd_token=mock_argocd_instance.token,
        argocd_insecure=mock_argocd_instance.insecure,
        management_cluster_url="https://mgmt.example.com:6443",
        security=mock_security_settings,
        git=git_settings,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


# =============================================================================
# DOMAIN FIXTURES
# =============================================================================


@pytest.fixture
def eks_spec() -> ClusterSpec:
    return ClusterSpec.from_config_map_data(
        "eks-small",
        {
            "apiProvider": "capi",
            "cloudProvider": "aws",
            "type": "eks",
            "kubernetesVersion": "1.29",
            "region": "us-west-2",
            "nodeCount": "3",
        },
    )


@pytest.fixture
def config_store(eks_spec: ClusterSpec) -> InMemoryConfigStore:
    """Store with EKS and kubeadm cluster specs and one static profile."""
    return InMemoryConfigStore(
        cluster_specs={
            "eks-small": eks_spec,
            "eks-large": ClusterSpec.from_config_map_data(
                "eks-large",
                {
                    "apiProvider": "capi",
                    "cloudProvider": "aws",
                    "type": "eks",
                    "kubernetesVersion": "1.29",
                    "region": "us-west-2",
                    "nodeCount": "10",
                },
            ),
            "kubeadm-small": ClusterSpec.from_config_map_data(
                "kubeadm-small",
                {"apiProvider": "capi", "cloudProvider": "aws", "type": "kubeadm"},
            ),
            "untyped": ClusterSpec.from_config_map_data(
                "untyped", {"apiProvider": "capi", "cloudProvider": "aws"}
            ),
        },
        profiles={
            "baseline": Profile(
                name="baseline",
                description="Monitoring and policy",
                bundles=(Bundle(name="monitoring", data=b"kind: Namespace\n"),),
            ),
        },
    )


@pytest.fixture
def root_application_json() -> dict[str, Any]:
    """ArgoCD Application as returned for an existing capi-aws-eks cluster."""
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {
            "name": "prod-east",
            "namespace": "argocd",
            "resourceVersion": "4711",
            "labels": {"managed-by": "clusterops", "clusterops-type": "cluster"},
            "annotations": {
                "clusterops.io/cluster-spec": "eks-small",
                "clusterops.io/profile": "",
            },
        },
        "spec": {
            "project": "default",
            "source": {
                "repoURL": FLEET_REPO,
                "targetRevision": "main",
                "path": "clusters/prod-east",
                "helm": {
                    "parameters": [
                        {"name": "global.clusterName", "value": "prod-east"},
                        {"name": "global.kubeconfigSecretKeyName", "value": "value"},
                        {
                            "name": "global.managementClusterUrl",
                            "value": "https://mgmt.example.com:6443",
                        },
                        {"name": "global.kubernetesVersion", "value": "1.29"},
                        {"name": "global.region", "value": "us-west-2"},
                        {"name": "global.nodeCount", "value": "3"},
                        {"name": "tags.capi-aws-eks", "value": "true"},
                    ]
                },
            },
            "destination": {"server": "https://kubernetes.default.svc", "namespace": "default"},
        },
        "status": {"sync": {"status": "Synced"}, "health": {"status": "Healthy"}},
    }


@pytest.fixture
def sample_application(root_application_json: dict[str, Any]) -> Application:
    return Application.from_api_response(root_application_json)


def _echo_with_version(version: str):
    async def echo(application: dict[str, Any], *args: Any, **kwargs: Any) -> dict[str, Any]:
        data = copy.deepcopy(application)
        data["metadata"]["resourceVersion"] = version
        return data

    return echo


@pytest.fixture
def mock_argocd_client(
    mock_argocd_instance: ArgocdInstance,
    root_application_json: dict[str, Any],
    sample_application: Application,
) -> AsyncMock:
    """ArgoCD client where prod-east exists and writes echo with a new resourceVersion."""
    client = AsyncMock(spec=ArgocdClient)
    client._instance = mock_argocd_instance

    async def get_application(name: str) -> Application:
        if name != "prod-east":
            raise ArgocdError(404, f"applications.argoproj.io \"{name}\" not found")
        return sample_application

    async def get_application_manifest(name: str) -> dict[str, Any]:
        if name != "prod-east":
            raise ArgocdError(404, f"applications.argoproj.io \"{name}\" not found")
        return copy.deepcopy(root_application_json)

    client.get_application.side_effect = get_application
    client.get_application_manifest.side_effect = get_application_manifest
    client.list_applications.return_value = [sample_application]
    client.create_application.side_effect = _echo_with_version("1")
    client.update_application.side_effect = _echo_with_version("4712")
    return client


@pytest.fixture
def mock_deployer() -> AsyncMock:
    deployer = AsyncMock(spec=ManifestTreeDeployer)
    deployer.deploy.return_value = DeployResult(commit="c0ffee", changed=True)
    return deployer


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx

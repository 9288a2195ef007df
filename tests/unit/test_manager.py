# ABOUTME: Unit tests for the lifecycle manager
# ABOUTME: Tests Create, Update invariants, registration failures and per-cluster locking

import asyncio
import dataclasses
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from clusterops_mcp.lifecycle import manager as manager_module
from clusterops_mcp.lifecycle.deployer import DeployResult
from clusterops_mcp.lifecycle.descriptor import RepoCoordinates, RootDescriptor
from clusterops_mcp.lifecycle.errors import (
    AmbiguousTagError,
    ClusterExistsError,
    ClusterSpecNotFoundError,
    ConcurrentModificationError,
    ConfigurationError,
    DescriptorNotFoundError,
    EngineError,
    GitUnavailableError,
    InvariantViolation,
    MalformedPathError,
    ProfileNotFoundError,
    RegistrationError,
)
from clusterops_mcp.lifecycle.identity import ClusterProviderType
from clusterops_mcp.lifecycle.manager import ClusterLocks, LifecycleManager, LifecycleResult
from clusterops_mcp.utils.client import ArgocdClient, ArgocdError

ARGOCD_API = "https://argocd.example.com/api/v1"
REPO = "https://git.example.com/fleet.git"
MGMT = "https://mgmt.example.com:6443"


@pytest.fixture
def manager(mock_argocd_client, config_store, mock_deployer) -> LifecycleManager:
    return LifecycleManager(
        mock_argocd_client,
        config_store,
        mock_deployer,
        argocd_namespace="argocd",
        management_endpoint=MGMT,
    )


@pytest.fixture
def existing(root_application_json: dict[str, Any]) -> RootDescriptor:
    return RootDescriptor.from_application(root_application_json)


@pytest.mark.unit
class TestFetchDescriptor:
    async def test_reads_unmasked_record(self, manager, mock_argocd_client):
        descriptor = await manager.fetch_descriptor("prod-east")

        mock_argocd_client.get_application_manifest.assert_awaited_once_with("prod-east")
        assert descriptor.provider_type == ClusterProviderType("capi", "aws", "eks")
        assert descriptor.resource_version == "4711"

    async def test_missing(self, manager):
        with pytest.raises(DescriptorNotFoundError, match="root descriptor 'ghost' not found"):
            await manager.fetch_descriptor("ghost")

    async def test_engine_failure(self, manager, mock_argocd_client):
        mock_argocd_client.get_application_manifest.side_effect = ArgocdError(500, "boom")

        with pytest.raises(EngineError) as exc_info:
            await manager.fetch_descriptor("prod-east")

        assert exc_info.value.status_code == 500

    async def test_transport_failure(self, manager, mock_argocd_client):
        mock_argocd_client.get_application_manifest.side_effect = httpx.ConnectError("refused")

        with pytest.raises(EngineError, match="refused"):
            await manager.fetch_descriptor("prod-east")

    @respx.mock
    async def test_timeout_through_real_client(
        self, mock_argocd_instance, config_store, mock_deployer, monkeypatch
    ):
        monkeypatch.setattr(ArgocdClient._request.retry, "sleep", _no_sleep)
        respx.get(f"{ARGOCD_API}/applications/prod-east").mock(
            side_effect=httpx.ConnectTimeout("timed out")
        )

        async with ArgocdClient(mock_argocd_instance) as client:
            manager = LifecycleManager(client, config_store, mock_deployer)
            with pytest.raises(EngineError, match="timed out"):
                await manager.fetch_descriptor("prod-east")


@pytest.mark.unit
class TestUpdate:
    """Update protocol: invariants first, then tree, then engine."""

    async def test_scenario_same_type_succeeds(
        self, manager, existing, mock_argocd_client, mock_deployer
    ):
        result = await manager.update(existing, "prod-east", "eks-large")

        assert result.descriptor.repo_url == existing.repo_url
        assert result.descriptor.path == existing.path
        assert result.descriptor.branch == existing.branch
        assert result.descriptor.provider_type == existing.provider_type
        assert ("nodeCount", "10") in result.descriptor.values
        mock_argocd_client.update_application.assert_awaited_once()
        mock_argocd_client.create_application.assert_not_awaited()
        assert result.tree_deployed
        assert result.engine_registered
        assert result.commit == "c0ffee"

    async def test_update_carries_resource_version(self, manager, existing, mock_argocd_client):
        result = await manager.update(existing, "prod-east", "eks-large")

        sent = mock_argocd_client.update_application.await_args.args[0]
        assert sent["metadata"]["resourceVersion"] == "4711"
        # The registered descriptor reflects the engine's new version
        assert result.descriptor.resource_version == "4712"

    async def test_repo_coordinates_come_from_existing(self, manager, existing, mock_deployer):
        await manager.update(existing, "prod-east", "eks-large", profile_name="baseline")

        repo, cluster_name, provider_type, profile = mock_deployer.deploy.await_args.args
        assert repo == RepoCoordinates(REPO, "main", "clusters")
        assert cluster_name == "prod-east"
        assert provider_type.tag == "capi-aws-eks"
        assert profile.name == "baseline"

    async def test_scenario_type_change_rejected(
        self, manager, existing, mock_argocd_client, mock_deployer
    ):
        with pytest.raises(InvariantViolation) as exc_info:
            await manager.update(existing, "prod-east", "kubeadm-small")

        assert exc_info.value.field == "provider_type"
        assert "cannot change" in str(exc_info.value)
        mock_deployer.deploy.assert_not_awaited()
        mock_argocd_client.update_application.assert_not_awaited()

    async def test_existing_without_type_rejected(
        self, manager, existing, mock_deployer
    ):
        untagged = dataclasses.replace(existing, provider_type=None)

        with pytest.raises(InvariantViolation) as exc_info:
            await manager.update(untagged, "prod-east", "eks-small")

        assert exc_info.value.field == "provider_type"
        mock_deployer.deploy.assert_not_awaited()

    async def test_scenario_cluster_name_mismatch_rejected(
        self, manager, existing, mock_argocd_client, mock_deployer
    ):
        with pytest.raises(InvariantViolation) as exc_info:
            await manager.update(existing, "staging", "eks-small")

        assert exc_info.value.field == "cluster_name"
        assert "prod-east" in exc_info.value.message
        mock_deployer.deploy.assert_not_awaited()
        mock_argocd_client.update_application.assert_not_awaited()

    async def test_malformed_existing_path(self, manager, existing, mock_deployer):
        broken = dataclasses.replace(existing, path="prod-east")

        with pytest.raises(MalformedPathError):
            await manager.update(broken, "prod-east", "eks-small")

        mock_deployer.deploy.assert_not_awaited()

    async def test_repo_drift_detected_before_write(
        self, manager, existing, mock_argocd_client, mock_deployer
    ):
        real_build = manager_module.build_root_descriptor

        def drifting_build(*args: Any, **kwargs: Any) -> RootDescriptor:
            return dataclasses.replace(real_build(*args, **kwargs), repo_url="https://evil/x.git")

        with patch.object(manager_module, "build_root_descriptor", drifting_build):
            with pytest.raises(InvariantViolation) as exc_info:
                await manager.update(existing, "prod-east", "eks-small")

        assert exc_info.value.field == "repo_url"
        mock_deployer.deploy.assert_not_awaited()
        mock_argocd_client.update_application.assert_not_awaited()

    async def test_path_drift_detected_before_write(self, manager, existing, mock_deployer):
        real_build = manager_module.build_root_descriptor

        def drifting_build(*args: Any, **kwargs: Any) -> RootDescriptor:
            return dataclasses.replace(real_build(*args, **kwargs), path="clusters/other")

        with patch.object(manager_module, "build_root_descriptor", drifting_build):
            with pytest.raises(InvariantViolation) as exc_info:
                await manager.update(existing, "prod-east", "eks-small")

        assert exc_info.value.field == "path"
        mock_deployer.deploy.assert_not_awaited()

    async def test_missing_cluster_spec(self, manager, existing, mock_deployer):
        with pytest.raises(ClusterSpecNotFoundError):
            await manager.update(existing, "prod-east", "nope")

        mock_deployer.deploy.assert_not_awaited()

    async def test_unresolvable_cluster_spec(self, manager, existing, mock_deployer):
        with pytest.raises(AmbiguousTagError):
            await manager.update(existing, "prod-east", "untyped")

        mock_deployer.deploy.assert_not_awaited()

    async def test_missing_profile(self, manager, existing, mock_deployer):
        with pytest.raises(ProfileNotFoundError):
            await manager.update(existing, "prod-east", "eks-small", profile_name="nope")

        mock_deployer.deploy.assert_not_awaited()

    async def test_without_engine_update(
        self, manager, existing, mock_argocd_client, mock_deployer
    ):
        result = await manager.update(existing, "prod-east", "eks-small", update_in_engine=False)

        mock_deployer.deploy.assert_awaited_once()
        mock_argocd_client.update_application.assert_not_awaited()
        assert result.tree_deployed
        assert not result.engine_registered
        assert result.descriptor.resource_version == "4711"

    async def test_git_failure_leaves_engine_untouched(
        self, manager, existing, mock_argocd_client, mock_deployer
    ):
        mock_deployer.deploy.side_effect = GitUnavailableError("clone failed")

        with pytest.raises(GitUnavailableError):
            await manager.update(existing, "prod-east", "eks-small")

        mock_argocd_client.update_application.assert_not_awaited()

    async def test_registration_failure_reports_partial_result(
        self, manager, existing, mock_argocd_client
    ):
        mock_argocd_client.update_application.side_effect = ArgocdError(403, "permission denied")

        with pytest.raises(RegistrationError) as exc_info:
            await manager.update(existing, "prod-east", "eks-small")

        error = exc_info.value
        assert error.status_code == 403
        assert error.result is not None
        assert error.result.tree_deployed
        assert not error.result.engine_registered
        assert error.result.commit == "c0ffee"

    async def test_registration_transport_failure(self, manager, existing, mock_argocd_client):
        mock_argocd_client.update_application.side_effect = httpx.ReadTimeout("timed out")

        with pytest.raises(RegistrationError) as exc_info:
            await manager.update(existing, "prod-east", "eks-small")

        assert exc_info.value.status_code is None
        assert exc_info.value.result.tree_deployed

    @respx.mock
    async def test_registration_timeout_through_real_client(
        self, mock_argocd_instance, config_store, mock_deployer, existing, monkeypatch
    ):
        monkeypatch.setattr(ArgocdClient._request.retry, "sleep", _no_sleep)
        route = respx.put(f"{ARGOCD_API}/applications/prod-east").mock(
            side_effect=httpx.ReadTimeout("timed out")
        )

        async with ArgocdClient(mock_argocd_instance) as client:
            manager = LifecycleManager(client, config_store, mock_deployer)
            with pytest.raises(RegistrationError) as exc_info:
                await manager.update(existing, "prod-east", "eks-small")

        assert route.call_count == 3
        assert exc_info.value.result.tree_deployed
        assert not exc_info.value.result.engine_registered

    async def test_stale_record_conflict(self, manager, existing, mock_argocd_client):
        mock_argocd_client.update_application.side_effect = ArgocdError(409, "object modified")

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await manager.update(existing, "prod-east", "eks-small")

        assert exc_info.value.result.tree_deployed

    async def test_rerun_after_failure_resumes(
        self, manager, existing, mock_argocd_client, mock_deployer
    ):
        mock_argocd_client.update_application.side_effect = [
            ArgocdError(503, "unavailable"),
            {"metadata": {"name": "prod-east", "resourceVersion": "4712"}},
        ]

        with pytest.raises(RegistrationError):
            await manager.update(existing, "prod-east", "eks-small")

        mock_deployer.deploy.return_value = DeployResult(commit="c0ffee", changed=False)
        result = await manager.update(existing, "prod-east", "eks-small")

        assert result.engine_registered
        assert not result.tree_changed
        assert mock_argocd_client.update_application.await_count == 2


@pytest.mark.unit
class TestCreate:
    async def test_create_registers_new_descriptor(
        self, manager, mock_argocd_client, mock_deployer
    ):
        repo = RepoCoordinates(REPO, "main", "clusters")

        result = await manager.create("dev-west", repo, cluster_spec_name="eks-small")

        assert result == LifecycleResult(
            descriptor=result.descriptor,
            tree_deployed=True,
            tree_changed=True,
            commit="c0ffee",
            engine_registered=True,
        )
        assert result.descriptor.path == "clusters/dev-west"
        assert result.descriptor.management_endpoint == MGMT
        assert result.descriptor.resource_version == "1"
        sent = mock_argocd_client.create_application.await_args.args[0]
        assert "resourceVersion" not in sent["metadata"]
        assert {"name": "tags.capi-aws-eks", "value": "true"} in sent["spec"]["source"]["helm"][
            "parameters"
        ]
        mock_deployer.deploy.assert_awaited_once()

    async def test_create_without_cluster_spec(self, manager, mock_deployer):
        result = await manager.create("bare", RepoCoordinates(REPO))

        assert result.descriptor.provider_type is None
        _, _, provider_type, profile = mock_deployer.deploy.await_args.args
        assert provider_type is None
        assert profile is None

    async def test_profile_requires_cluster_spec(self, manager, mock_argocd_client, mock_deployer):
        with pytest.raises(ConfigurationError, match="do not support profiles"):
            await manager.create("bare", RepoCoordinates(REPO), profile_name="baseline")

        mock_argocd_client.get_application.assert_not_awaited()
        mock_deployer.deploy.assert_not_awaited()

    @pytest.mark.parametrize("base_path", ["", "/", "infra//clusters"])
    async def test_unusable_base_path_rejected_up_front(
        self, manager, mock_argocd_client, mock_deployer, base_path
    ):
        repo = RepoCoordinates(REPO, "main", base_path)

        with pytest.raises(ConfigurationError, match="cannot hold cluster 'dev-west'"):
            await manager.create("dev-west", repo, cluster_spec_name="eks-small")

        mock_argocd_client.get_application.assert_not_awaited()
        mock_deployer.deploy.assert_not_awaited()
        mock_argocd_client.create_application.assert_not_awaited()

    async def test_nested_base_path_round_trips_into_update(
        self, manager, mock_argocd_client, mock_deployer
    ):
        repo = RepoCoordinates(REPO, "main", "infra/clusters")

        created = await manager.create("dev-west", repo, cluster_spec_name="eks-small")
        updated = await manager.update(created.descriptor, "dev-west", "eks-small")

        assert updated.descriptor.path == "infra/clusters/dev-west"
        assert mock_argocd_client.update_application.await_count == 1

    async def test_existing_cluster_rejected(self, manager, mock_deployer):
        with pytest.raises(ClusterExistsError, match="prod-east"):
            await manager.create("prod-east", RepoCoordinates(REPO), cluster_spec_name="eks-small")

        mock_deployer.deploy.assert_not_awaited()

    async def test_existence_check_failure(self, manager, mock_argocd_client, mock_deployer):
        mock_argocd_client.get_application.side_effect = ArgocdError(500, "boom")

        with pytest.raises(EngineError):
            await manager.create("dev-west", RepoCoordinates(REPO), cluster_spec_name="eks-small")

        mock_deployer.deploy.assert_not_awaited()

    async def test_preview_does_not_register(self, manager, mock_argocd_client, mock_deployer):
        result = await manager.create(
            "dev-west", RepoCoordinates(REPO), cluster_spec_name="eks-small", register=False
        )

        mock_deployer.deploy.assert_awaited_once()
        mock_argocd_client.create_application.assert_not_awaited()
        assert not result.engine_registered

    async def test_create_race_maps_to_exists(self, manager, mock_argocd_client):
        mock_argocd_client.create_application.side_effect = ArgocdError(409, "exists")

        with pytest.raises(ClusterExistsError):
            await manager.create("dev-west", RepoCoordinates(REPO), cluster_spec_name="eks-small")

    async def test_create_registration_failure(self, manager, mock_argocd_client):
        mock_argocd_client.create_application.side_effect = ArgocdError(400, "invalid spec")

        with pytest.raises(RegistrationError) as exc_info:
            await manager.create("dev-west", RepoCoordinates(REPO), cluster_spec_name="eks-small")

        assert exc_info.value.status_code == 400
        assert exc_info.value.result.tree_deployed


@pytest.mark.unit
class TestClusterLocks:
    async def test_held_only_for_its_cluster(self):
        locks = ClusterLocks()

        async with locks.hold("a"):
            assert locks.locked("a")
            assert not locks.locked("b")

        assert not locks.locked("a")

    async def test_released_locks_are_dropped(self):
        locks = ClusterLocks()

        for name in ("a", "b", "c"):
            async with locks.hold(name):
                assert locks.active() == 1

        assert locks.active() == 0

    async def test_lock_kept_while_someone_waits(self):
        locks = ClusterLocks()
        order: list[str] = []

        async def worker(tag: str) -> None:
            async with locks.hold("a"):
                order.append(tag)
                await asyncio.sleep(0)
                assert locks.active() == 1

        await asyncio.gather(worker("first"), worker("second"))

        assert order == ["first", "second"]
        assert locks.active() == 0

    async def test_dropped_after_failure(self):
        locks = ClusterLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("a"):
                raise RuntimeError("boom")

        assert locks.active() == 0

    async def test_operations_on_one_cluster_are_serialized(
        self, mock_argocd_client, config_store, existing
    ):
        running = 0
        overlap = False

        async def slow_deploy(*args: Any) -> DeployResult:
            nonlocal running, overlap
            running += 1
            overlap = overlap or running > 1
            await asyncio.sleep(0.01)
            running -= 1
            return DeployResult(commit="c0ffee", changed=False)

        deployer = AsyncMock()
        deployer.deploy.side_effect = slow_deploy
        manager = LifecycleManager(mock_argocd_client, config_store, deployer)

        await asyncio.gather(
            manager.update(existing, "prod-east", "eks-small"),
            manager.update(existing, "prod-east", "eks-large"),
        )

        assert not overlap
        assert deployer.deploy.await_count == 2
        assert manager._locks.active() == 0


async def _no_sleep(_seconds: float) -> None:
    return None

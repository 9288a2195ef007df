# ABOUTME: Lifecycle manager orchestrating cluster Create and Update
# ABOUTME: Enforces identity invariants, deploys the tree, then registers with ArgoCD

"""
Lifecycle manager.

=============================================================================
ONE PROTOCOL, TWO VARIANTS
=============================================================================

Create and Update run the same sequence:

    resolve inputs -> build descriptor -> [check invariants] -> deploy tree
                   -> register with ArgoCD (optional)

Update adds the invariant checks. An existing cluster must keep its
provider/cloud/type, its repository, its manifest path and its name. Any
change there describes a DIFFERENT cluster, and the update is rejected with an
InvariantViolation naming the offending field.

=============================================================================
ORDER OF SIDE EFFECTS
=============================================================================

There is no transaction spanning git and ArgoCD. The tree is written first
and the descriptor registered second:

    step fails before deploy   -> nothing changed
    deploy fails               -> git unchanged (push is atomic), ArgoCD unchanged
    registration fails         -> tree already matches the intended state;
                                  RegistrationError.result says so

Both steps are idempotent. Running the same Create or Update again redeploys
nothing (no new commit) and retries only the registration.

=============================================================================
CONCURRENCY
=============================================================================

Two operations on the same cluster must not interleave. Inside one process a
per-cluster asyncio.Lock serializes them. Across processes the update carries
the resourceVersion of the record it was derived from, and ArgoCD refuses a
stale replace with 409 Conflict (ConcurrentModificationError).
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx
import structlog

from clusterops_mcp.lifecycle.descriptor import (
    DEFAULT_ARGOCD_NAMESPACE,
    RepoCoordinates,
    RootDescriptor,
    build_root_descriptor,
)
from clusterops_mcp.lifecycle.errors import (
    ClusterExistsError,
    ConcurrentModificationError,
    ConfigurationError,
    DescriptorNotFoundError,
    EngineError,
    InvariantViolation,
    MalformedPathError,
    RegistrationError,
)
from clusterops_mcp.lifecycle.identity import decompose_path, resolve_cluster_spec
from clusterops_mcp.utils.client import ArgocdError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from clusterops_mcp.lifecycle.deployer import ManifestTreeDeployer
    from clusterops_mcp.lifecycle.identity import ClusterProviderType, ClusterSpec
    from clusterops_mcp.utils.client import ArgocdClient
    from clusterops_mcp.utils.kube import Profile

logger = structlog.get_logger(__name__)


class ConfigStore(Protocol):
    async def get_cluster_spec(self, name: str) -> ClusterSpec: ...

    async def get_profile(self, name: str) -> Profile: ...


@dataclass(frozen=True)
class LifecycleResult:
    """
    Outcome of a Create or Update.

    - descriptor: The descriptor built (and, if registered, as accepted by ArgoCD)
    - tree_deployed: The manifest tree in git matches the descriptor
    - tree_changed: The deploy produced a new commit
    - commit: Commit the tree is at after the deploy
    - engine_registered: ArgoCD holds this descriptor
    """

    descriptor: RootDescriptor
    tree_deployed: bool = False
    tree_changed: bool = False
    commit: str | None = None
    engine_registered: bool = False


class ClusterLocks:
    """
    One asyncio.Lock per cluster name.

    A lock exists only while some operation holds or waits for it, so the
    table is bounded by the number of clusters being worked on right now.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter[str] = Counter()

    @asynccontextmanager
    async def hold(self, cluster_name: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(cluster_name, asyncio.Lock())
        self._users[cluster_name] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[cluster_name] -= 1
            if not self._users[cluster_name]:
                del self._users[cluster_name]
                del self._locks[cluster_name]

    def active(self) -> int:
        return len(self._locks)

    def locked(self, cluster_name: str) -> bool:
        lock = self._locks.get(cluster_name)
        return lock is not None and lock.locked()


class LifecycleManager:
    """Creates and updates managed clusters."""

    def __init__(
        self,
        engine: ArgocdClient,
        store: ConfigStore,
        deployer: ManifestTreeDeployer,
        *,
        argocd_namespace: str = DEFAULT_ARGOCD_NAMESPACE,
        management_endpoint: str | None = None,
        locks: ClusterLocks | None = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._deployer = deployer
        self._argocd_namespace = argocd_namespace
        self._management_endpoint = management_endpoint
        self._locks = locks or ClusterLocks()

    # =========================================================================
    # READ
    # =========================================================================

    async def fetch_descriptor(self, cluster_name: str) -> RootDescriptor:
        """
        Read the live root descriptor of a cluster.

        Raises:
            DescriptorNotFoundError: ArgoCD has no Application with that name.
            EngineError: ArgoCD could not be reached or failed.
        """
        try:
            data = await self._engine.get_application_manifest(cluster_name)
        except ArgocdError as e:
            if e.code == 404:
                raise DescriptorNotFoundError(cluster_name, self._argocd_namespace) from e
            raise EngineError(
                f"failed to read root descriptor '{cluster_name}': {e}", e.code
            ) from e
        except httpx.HTTPError as e:
            raise EngineError(f"failed to read root descriptor '{cluster_name}': {e}") from e
        return RootDescriptor.from_application(data)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(
        self,
        cluster_name: str,
        repo: RepoCoordinates,
        cluster_spec_name: str | None = None,
        profile_name: str | None = None,
        register: bool = True,
    ) -> LifecycleResult:
        """
        Create a managed cluster.

        Args:
            cluster_name: Name of the new cluster
            repo: Repository, branch and base path for the manifest tree
            cluster_spec_name: Cluster spec to build from. Clusters of newer
                               generations are created without one.
            profile_name: Profile to apply. Requires a cluster spec.
            register: Register the descriptor with ArgoCD. When False the
                      descriptor is only returned, for preview.

        Raises:
            ConfigurationError: profile without cluster spec, or a base path that
                does not give a <base path>/<cluster name> manifest path
            ClusterExistsError: the cluster already has a root descriptor
            ClusterSpecNotFoundError / ProfileNotFoundError / AmbiguousTagError
            GitUnavailableError / ProfileRenderError / WriteConflictError
            RegistrationError: the tree is deployed but ArgoCD rejected the descriptor
        """
        if profile_name and not cluster_spec_name:
            raise ConfigurationError(
                "clusters without a cluster spec do not support profiles; "
                "pass a cluster spec or drop the profile"
            )
        try:
            decompose_path(repo.manifest_path(cluster_name))
        except MalformedPathError as e:
            raise ConfigurationError(
                f"base path '{repo.base_path}' cannot hold cluster '{cluster_name}': {e}"
            ) from e

        log = logger.bind(cluster=cluster_name, operation="create")
        async with self._locks.hold(cluster_name):
            await self._ensure_absent(cluster_name)

            provider_type: ClusterProviderType | None = None
            values: tuple[tuple[str, str], ...] = ()
            if cluster_spec_name:
                spec, provider_type = await resolve_cluster_spec(self._store, cluster_spec_name)
                values = spec.values
                log.info("Resolved cluster spec", step="resolve", tag=provider_type.tag)
            profile = await self._store.get_profile(profile_name) if profile_name else None

            descriptor = build_root_descriptor(
                cluster_name,
                repo.repo_url,
                repo.branch,
                repo.base_path,
                None,
                provider_type,
                profile_name,
                self._management_endpoint,
                namespace=self._argocd_namespace,
                cluster_spec_name=cluster_spec_name,
                values=values,
            )
            log.info("Built root descriptor", step="build", path=descriptor.path)

            result = await self._deploy(descriptor, repo, provider_type, profile, log)
            if not register:
                log.info("Descriptor not registered, returning for preview", step="register")
                return result
            return await self._register(result, create=True, log=log)

    # =========================================================================
    # UPDATE
    # =========================================================================

    async def update(
        self,
        existing: RootDescriptor,
        cluster_name: str,
        cluster_spec_name: str,
        profile_name: str | None = None,
        update_in_engine: bool = True,
    ) -> LifecycleResult:
        """
        Re-derive the descriptor of an existing cluster.

        Repo URL and branch are always taken from ``existing``, never from the
        caller, so they cannot silently change.

        Raises:
            ClusterSpecNotFoundError / AmbiguousTagError: step 1
            InvariantViolation: provider_type (step 2), cluster_name (step 3),
                                repo_url or path (step 6)
            MalformedPathError: existing path has no <base>/<cluster> form
            ProfileNotFoundError
            GitUnavailableError / ProfileRenderError / WriteConflictError: step 7
            RegistrationError / ConcurrentModificationError: step 8
        """
        log = logger.bind(cluster=cluster_name, operation="update")
        async with self._locks.hold(cluster_name):
            # 1. provider type of the requested cluster spec
            spec, provider_type = await resolve_cluster_spec(self._store, cluster_spec_name)
            log.info("Resolved cluster spec", step="resolve", tag=provider_type.tag)

            # 2. it must be the one the cluster was created with
            if existing.provider_type != provider_type:
                current = existing.provider_type.tag if existing.provider_type else "none"
                raise InvariantViolation(
                    "provider_type",
                    "the api provider, cloud provider, or cluster type cannot change "
                    f"(descriptor has '{current}', cluster spec '{cluster_spec_name}' "
                    f"resolves to '{provider_type.tag}')",
                )

            # 3. the existing path must belong to this cluster
            base_path, path_cluster_name = decompose_path(existing.path)
            if path_cluster_name != cluster_name:
                raise InvariantViolation(
                    "cluster_name",
                    f"unexpected cluster name '{path_cluster_name}' extracted from "
                    f"manifest path '{existing.path}', expected '{cluster_name}'",
                )

            # 4. coordinates come from the existing record only
            repo = RepoCoordinates(existing.repo_url, existing.branch, base_path)
            profile = await self._store.get_profile(profile_name) if profile_name else None

            # 5. fresh descriptor
            descriptor = build_root_descriptor(
                cluster_name,
                repo.repo_url,
                repo.branch,
                repo.base_path,
                existing.path,
                provider_type,
                profile_name,
                self._management_endpoint,
                namespace=existing.namespace,
                cluster_spec_name=cluster_spec_name,
                values=spec.values,
                resource_version=existing.resource_version,
            )
            log.info("Built root descriptor", step="build", path=descriptor.path)

            # 6. independent check that construction kept the git reference
            if descriptor.repo_url != existing.repo_url:
                raise InvariantViolation(
                    "repo_url",
                    f"git repo reference cannot change ('{existing.repo_url}' -> "
                    f"'{descriptor.repo_url}')",
                )
            if descriptor.path != existing.path:
                raise InvariantViolation(
                    "path",
                    f"git repo path cannot change ('{existing.path}' -> '{descriptor.path}')",
                )

            # 7. tree before registration
            result = await self._deploy(descriptor, repo, provider_type, profile, log)

            # 8. replace the engine record
            if not update_in_engine:
                log.info("Descriptor not registered, returning for preview", step="register")
                return result
            return await self._register(result, create=False, log=log)

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _ensure_absent(self, cluster_name: str) -> None:
        try:
            await self._engine.get_application(cluster_name)
        except ArgocdError as e:
            if e.code == 404:
                return
            raise EngineError(f"failed to check for cluster '{cluster_name}': {e}", e.code) from e
        except httpx.HTTPError as e:
            raise EngineError(f"failed to check for cluster '{cluster_name}': {e}") from e
        raise ClusterExistsError(cluster_name)

    async def _deploy(
        self,
        descriptor: RootDescriptor,
        repo: RepoCoordinates,
        provider_type: ClusterProviderType | None,
        profile: Profile | None,
        log: Any,
    ) -> LifecycleResult:
        deployed = await self._deployer.deploy(repo, descriptor.name, provider_type, profile)
        log.info(
            "Deployed manifest tree",
            step="deploy",
            changed=deployed.changed,
            commit=deployed.commit,
        )
        return LifecycleResult(
            descriptor=descriptor,
            tree_deployed=True,
            tree_changed=deployed.changed,
            commit=deployed.commit,
        )

    async def _register(self, result: LifecycleResult, create: bool, log: Any) -> LifecycleResult:
        descriptor = result.descriptor
        verb = "create" if create else "update"
        try:
            if create:
                data = await self._engine.create_application(descriptor.to_application())
            else:
                data = await self._engine.update_application(descriptor.to_application())
        except ArgocdError as e:
            log.warning("Registration failed", step="register", status=e.code, error=e.message)
            if e.code == 409:
                if create:
                    raise ClusterExistsError(descriptor.name) from e
                raise ConcurrentModificationError(
                    f"root descriptor '{descriptor.name}' changed since it was read; "
                    "fetch it again and retry the update",
                    result=result,
                ) from e
            raise RegistrationError(
                f"failed to {verb} root descriptor '{descriptor.name}' in ArgoCD: {e}",
                e.code,
                result,
            ) from e
        except httpx.HTTPError as e:
            log.warning("Registration failed", step="register", error=str(e))
            raise RegistrationError(
                f"failed to {verb} root descriptor '{descriptor.name}' in ArgoCD: {e}",
                None,
                result,
            ) from e

        resource_version = (data.get("metadata") or {}).get("resourceVersion")
        registered = dataclasses.replace(
            descriptor, resource_version=resource_version or descriptor.resource_version
        )
        log.info("Registered root descriptor", step="register", resource_version=resource_version)
        return dataclasses.replace(result, descriptor=registered, engine_registered=True)

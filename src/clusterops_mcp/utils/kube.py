# ABOUTME: Kubernetes-backed store for cluster specs, profiles and bundles
# ABOUTME: Reads configuration records from the management namespace

"""
Configuration store backed by the Kubernetes API.

Records live in the management namespace:

    ConfigMap  clusterops-type=clusterspec    cluster specs
    Profile    core.clusterops.io/v1          profiles (custom resource)
    ConfigMap  clusterops-type=profile        legacy profiles
    Secret     clusterops-type=config-bundle  bundles referenced by profiles

The official kubernetes client is synchronous, so every call runs in a worker
thread through asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from clusterops_mcp.lifecycle.errors import (
    BundleNotFoundError,
    ClusterSpecNotFoundError,
    ProfileNotFoundError,
    TransportError,
)
from clusterops_mcp.lifecycle.identity import ClusterSpec

if TYPE_CHECKING:
    from clusterops_mcp.config import ServerSettings

logger = structlog.get_logger(__name__)

PROFILE_GROUP = "core.clusterops.io"
PROFILE_VERSION = "v1"
PROFILE_PLURAL = "profiles"

TYPE_LABEL = "clusterops-type"
BUNDLE_TYPE_LABEL = "bundle-type"
CLUSTER_SPEC_TYPE = "clusterspec"
PROFILE_TYPE = "profile"
BUNDLE_TYPE = "config-bundle"


@dataclass(frozen=True)
class Bundle:
    """A unit of configuration applied to a cluster.

    Static bundles carry their manifests inline; dynamic bundles point at a
    path in another git repository.
    """

    name: str
    data: bytes | None = None
    repo_url: str = ""
    repo_path: str = ""
    repo_revision: str = "HEAD"

    @property
    def is_dynamic(self) -> bool:
        return bool(self.repo_url)


@dataclass(frozen=True)
class Profile:
    name: str
    description: str = ""
    tags: tuple[str, ...] = ()
    bundles: tuple[Bundle, ...] = field(default_factory=tuple)
    repo_url: str = ""
    repo_path: str = ""
    repo_revision: str = "HEAD"
    legacy: bool = False

    @property
    def is_dynamic(self) -> bool:
        return bool(self.repo_url)


def _split_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _decode(value: str | None) -> str:
    return base64.b64decode(value).decode() if value else ""


class KubeConfigStore:
    """Reads cluster specs and profiles from the management namespace."""

    def __init__(self, namespace: str, api_client: client.ApiClient | None = None) -> None:
        self._namespace = namespace
        self._core = client.CoreV1Api(api_client)
        self._custom = client.CustomObjectsApi(api_client)

    @classmethod
    def from_settings(cls, settings: ServerSettings) -> KubeConfigStore:
        """Build a store from kubeconfig, falling back to in-cluster config."""
        try:
            api_client = config.new_client_from_config(
                config_file=str(settings.kubeconfig) if settings.kubeconfig else None,
                context=settings.kube_context,
            )
            logger.info("Loaded kubeconfig", context=settings.kube_context or "current")
        except config.ConfigException:
            config.load_incluster_config()
            api_client = client.ApiClient()
            logger.info("Loaded in-cluster Kubernetes config")
        return cls(settings.management_namespace, api_client)

    @property
    def namespace(self) -> str:
        return self._namespace

    # -------------------------------------------------------------------------
    # CLUSTER SPECS
    # -------------------------------------------------------------------------

    async def get_cluster_spec(self, name: str) -> ClusterSpec:
        cm = await self._call(
            self._core.read_namespaced_config_map,
            name,
            self._namespace,
            not_found=ClusterSpecNotFoundError(name, self._namespace),
        )
        labels = cm.metadata.labels or {}
        if labels.get(TYPE_LABEL) != CLUSTER_SPEC_TYPE:
            raise ClusterSpecNotFoundError(name, self._namespace)
        return ClusterSpec.from_config_map_data(name, cm.data)

    # -------------------------------------------------------------------------
    # PROFILES
    # -------------------------------------------------------------------------

    async def get_profile(self, name: str) -> Profile:
        """Load a profile and its bundles.

        Looks for the custom resource first and falls back to a legacy
        ConfigMap profile.
        """
        try:
            obj = await self._call(
                self._custom.get_namespaced_custom_object,
                PROFILE_GROUP,
                PROFILE_VERSION,
                self._namespace,
                PROFILE_PLURAL,
                name,
                not_found=ProfileNotFoundError(name, self._namespace),
            )
        except ProfileNotFoundError:
            logger.debug("Profile resource not found, trying legacy profile", profile=name)
            return await self._get_legacy_profile(name)

        spec: dict[str, Any] = obj.get("spec") or {}
        bundles = await self._get_bundles(spec.get("bundles") or [])
        return Profile(
            name=name,
            description=spec.get("description", ""),
            tags=tuple(spec.get("tags") or ()),
            bundles=bundles,
            repo_url=spec.get("repoUrl", ""),
            repo_path=spec.get("repoPath", ""),
            repo_revision=spec.get("repoRevision") or "HEAD",
        )

    async def _get_legacy_profile(self, name: str) -> Profile:
        cm = await self._read_legacy_profile(name)
        data = cm.data or {}
        bundles = await self._get_bundles(_split_list(data.get("bundles")))
        return Profile(
            name=name,
            description=data.get("description", ""),
            tags=_split_list(data.get("tags")),
            bundles=bundles,
            repo_url=data.get("repo-url", ""),
            repo_path=data.get("repo-path", ""),
            repo_revision=data.get("repo-branch") or "HEAD",
            legacy=True,
        )

    async def _get_bundles(self, names: Any) -> tuple[Bundle, ...]:
        bundles = []
        for bundle_name in names:
            secret = await self._call(
                self._core.read_namespaced_secret,
                bundle_name,
                self._namespace,
                not_found=BundleNotFoundError(bundle_name, self._namespace),
            )
            if (secret.metadata.labels or {}).get(TYPE_LABEL) != BUNDLE_TYPE:
                raise BundleNotFoundError(bundle_name, self._namespace)
            data = secret.data or {}
            if data.get("data"):
                bundles.append(Bundle(name=bundle_name, data=base64.b64decode(data["data"])))
            else:
                bundles.append(
                    Bundle(
                        name=bundle_name,
                        repo_url=_decode(data.get("repo-url")),
                        repo_path=_decode(data.get("repo-path")),
                        repo_revision=_decode(data.get("repo-revision")) or "HEAD",
                    )
                )
        return tuple(bundles)

    async def delete_profile(self, name: str) -> bool:
        """
        Delete a profile.

        Returns:
            True if a legacy ConfigMap profile was deleted, False if the
            custom resource was.

        Raises:
            ProfileNotFoundError: neither form of the profile exists.
        """
        try:
            await self._call(
                self._custom.delete_namespaced_custom_object,
                PROFILE_GROUP,
                PROFILE_VERSION,
                self._namespace,
                PROFILE_PLURAL,
                name,
                not_found=ProfileNotFoundError(name, self._namespace),
            )
            logger.info("Deleted profile", profile=name)
            return False
        except ProfileNotFoundError:
            logger.info("Profile resource not found, assuming legacy profile", profile=name)

        await self._read_legacy_profile(name)
        await self._call(
            self._core.delete_namespaced_config_map,
            name,
            self._namespace,
            not_found=ProfileNotFoundError(name, self._namespace),
        )
        logger.info("Deleted legacy profile", profile=name)
        return True

    async def _read_legacy_profile(self, name: str) -> Any:
        cm = await self._call(
            self._core.read_namespaced_config_map,
            name,
            self._namespace,
            not_found=ProfileNotFoundError(name, self._namespace),
        )
        if (cm.metadata.labels or {}).get(TYPE_LABEL) != PROFILE_TYPE:
            raise ProfileNotFoundError(name, self._namespace)
        return cm

    # -------------------------------------------------------------------------
    # TRANSPORT
    # -------------------------------------------------------------------------

    async def _call(self, func: Any, *args: Any, not_found: Exception) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except ApiException as e:
            if e.status == 404:
                raise not_found from e
            logger.warning("Kubernetes API error", status=e.status, reason=e.reason)
            raise TransportError(f"Kubernetes API error ({e.status}): {e.reason}") from e
        except Urllib3HTTPError as e:
            logger.warning("Kubernetes API unreachable", error=str(e))
            raise TransportError(f"Kubernetes API unreachable: {e}") from e

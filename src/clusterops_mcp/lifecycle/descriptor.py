# ABOUTME: Root descriptor model and builder for managed clusters
# ABOUTME: Pure construction plus conversion to and from ArgoCD Application JSON

"""
Root descriptor builder.

=============================================================================
WHAT IS A ROOT DESCRIPTOR?
=============================================================================

Every managed cluster has exactly one ArgoCD Application, the root
descriptor, that points at the cluster's manifest tree in git:

    apiVersion: argoproj.io/v1alpha1
    kind: Application
    metadata:
      name: prod                        <- cluster name
      namespace: argocd
    spec:
      source:
        repoURL: https://git.example.com/fleet.git
        targetRevision: main
        path: clusters/prod             <- <base path>/<cluster name>
        helm:
          parameters:
            - {name: global.clusterName, value: prod}
            ...
            - {name: tags.capi-aws-eks, value: "true"}   <- provider type

ArgoCD renders the tree as a helm chart. The ``tags.<tag>`` parameter switches
on the subchart for the cluster's provider/cloud/type.

=============================================================================
WHY A DATACLASS INSTEAD OF THE RAW JSON?
=============================================================================

Inside this package the provider type is a first class field
(ClusterProviderType). The flag list is generated only in
``to_application()`` and parsed only in ``from_application()``. Internal
logic such as the update invariants compares typed values, never strings
pulled out of a parameter list.

The builder is a pure function. Identical inputs always give an equal
descriptor; nothing here touches git or ArgoCD.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from clusterops_mcp.lifecycle.errors import AmbiguousTagError
from clusterops_mcp.lifecycle.identity import CLUSTER_SPEC_VALUE_KEYS, ClusterProviderType

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = structlog.get_logger(__name__)

IN_CLUSTER_SERVER = "https://kubernetes.default.svc"
DEFAULT_ARGOCD_NAMESPACE = "argocd"
DEFAULT_PROJECT = "default"
KUBECONFIG_SECRET_KEY_NAME = "value"
RESOURCES_FINALIZER = "resources-finalizer.argocd.argoproj.io"

MANAGED_BY_LABEL = "managed-by"
MANAGED_BY_VALUE = "clusterops"
TYPE_LABEL = "clusterops-type"
CLUSTER_TYPE_VALUE = "cluster"
CLUSTER_SPEC_ANNOTATION = "clusterops.io/cluster-spec"
PROFILE_ANNOTATION = "clusterops.io/profile"

TAG_PARAM_PREFIX = "tags."
GLOBAL_PARAM_PREFIX = "global."


@dataclass(frozen=True)
class RepoCoordinates:
    """Where a cluster's manifest tree lives: repo URL, branch and base path."""

    repo_url: str
    branch: str = "main"
    base_path: str = "clusters"

    def manifest_path(self, cluster_name: str) -> str:
        return posixpath.join(self.base_path, cluster_name)


@dataclass(frozen=True)
class HelmParameter:
    name: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "value": self.value}


@dataclass(frozen=True)
class RootDescriptor:
    """
    The record registered with ArgoCD for one managed cluster.

    Descriptors are never patched. Every Create/Update builds a complete new
    one from current inputs and replaces the old record wholesale.

    FIELDS:
    -------
    - name: Cluster name, also the Application name
    - namespace: ArgoCD namespace the Application lives in
    - repo_url / branch / path: Source of the manifest tree
    - provider_type: Provider/cloud/type classification (None for clusters
      created without a cluster spec)
    - cluster_spec_name / profile_name: Configuration the tree was built from
    - management_endpoint: API server URL the cluster calls home to
    - values: Cluster spec values, passed to the chart as global.<key>
    - resource_version: Optimistic concurrency token from ArgoCD. Set only on
      descriptors read from, or derived from, a live record.
    """

    name: str
    namespace: str
    repo_url: str
    branch: str
    path: str
    provider_type: ClusterProviderType | None = None
    cluster_spec_name: str = ""
    profile_name: str = ""
    management_endpoint: str = IN_CLUSTER_SERVER
    values: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    destination_server: str = IN_CLUSTER_SERVER
    destination_namespace: str = "default"
    resource_version: str | None = None

    def helm_parameters(self) -> list[HelmParameter]:
        """Serialize identity and values into ArgoCD helm parameters."""
        params = [
            HelmParameter(f"{GLOBAL_PARAM_PREFIX}clusterName", self.name),
            HelmParameter(
                f"{GLOBAL_PARAM_PREFIX}kubeconfigSecretKeyName", KUBECONFIG_SECRET_KEY_NAME
            ),
            HelmParameter(f"{GLOBAL_PARAM_PREFIX}managementClusterUrl", self.management_endpoint),
        ]
        if self.profile_name:
            params.append(HelmParameter(f"{GLOBAL_PARAM_PREFIX}profileName", self.profile_name))
        params.extend(HelmParameter(f"{GLOBAL_PARAM_PREFIX}{k}", v) for k, v in self.values)
        if self.provider_type is not None:
            params.append(HelmParameter(f"{TAG_PARAM_PREFIX}{self.provider_type.tag}", "true"))
        return params

    def to_application(self) -> dict[str, Any]:
        """Render as an ArgoCD Application resource."""
        metadata: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE, TYPE_LABEL: CLUSTER_TYPE_VALUE},
            "annotations": {
                CLUSTER_SPEC_ANNOTATION: self.cluster_spec_name,
                PROFILE_ANNOTATION: self.profile_name,
            },
            "finalizers": [RESOURCES_FINALIZER],
        }
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": "argoproj.io/v1alpha1",
            "kind": "Application",
            "metadata": metadata,
            "spec": {
                "project": DEFAULT_PROJECT,
                "source": {
                    "repoURL": self.repo_url,
                    "targetRevision": self.branch,
                    "path": self.path,
                    "helm": {"parameters": [p.to_dict() for p in self.helm_parameters()]},
                },
                "destination": {
                    "server": self.destination_server,
                    "namespace": self.destination_namespace,
                },
                "syncPolicy": {
                    "automated": {"prune": True},
                    "syncOptions": ["Prune=true"],
                },
            },
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_application(), sort_keys=False)

    @classmethod
    def from_application(cls, data: dict[str, Any]) -> RootDescriptor:
        """
        Parse an ArgoCD Application back into a descriptor.

        The provider type is recovered from the ``tags.<tag>`` parameters set
        to "true". Tags that do not parse as a provider type are ignored; more
        than one valid provider tag raises AmbiguousTagError.
        """
        metadata = data.get("metadata", {})
        spec = data.get("spec", {})
        source = spec.get("source", {})
        destination = spec.get("destination", {})
        annotations = metadata.get("annotations") or {}
        params = _parse_parameters((source.get("helm") or {}).get("parameters") or [])

        globals_ = {
            p.name[len(GLOBAL_PARAM_PREFIX) :]: p.value
            for p in params
            if p.name.startswith(GLOBAL_PARAM_PREFIX)
        }
        provider_types = _provider_types_from_tags(metadata.get("name", ""), params)
        if len(provider_types) > 1:
            raise AmbiguousTagError(
                f"descriptor '{metadata.get('name', '')}' enables more than one provider tag: "
                f"{', '.join(sorted(t.tag for t in provider_types))}"
            )

        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", DEFAULT_ARGOCD_NAMESPACE),
            repo_url=source.get("repoURL", ""),
            branch=source.get("targetRevision", "HEAD"),
            path=source.get("path", ""),
            provider_type=provider_types[0] if provider_types else None,
            cluster_spec_name=annotations.get(CLUSTER_SPEC_ANNOTATION, ""),
            profile_name=annotations.get(PROFILE_ANNOTATION, globals_.get("profileName", "")),
            management_endpoint=globals_.get("managementClusterUrl", IN_CLUSTER_SERVER),
            values=tuple((k, globals_[k]) for k in CLUSTER_SPEC_VALUE_KEYS if k in globals_),
            destination_server=destination.get("server", IN_CLUSTER_SERVER),
            destination_namespace=destination.get("namespace", "default"),
            resource_version=metadata.get("resourceVersion"),
        )


def _parse_parameters(raw: Iterable[dict[str, Any]]) -> list[HelmParameter]:
    return [HelmParameter(str(p.get("name", "")), str(p.get("value", ""))) for p in raw]


def _provider_types_from_tags(
    name: str, params: list[HelmParameter]
) -> list[ClusterProviderType]:
    found: list[ClusterProviderType] = []
    for param in params:
        if not param.name.startswith(TAG_PARAM_PREFIX) or param.value != "true":
            continue
        tag = param.name[len(TAG_PARAM_PREFIX) :]
        try:
            provider_type = ClusterProviderType.from_tag(tag)
        except AmbiguousTagError:
            logger.debug("Ignoring non-provider tag", descriptor=name, tag=tag)
            continue
        if provider_type not in found:
            found.append(provider_type)
    return found


def build_root_descriptor(
    cluster_name: str,
    repo_url: str,
    branch: str,
    base_path: str,
    manifest_path: str | None,
    provider_type: ClusterProviderType | None,
    profile_name: str | None,
    management_endpoint: str | None,
    *,
    namespace: str = DEFAULT_ARGOCD_NAMESPACE,
    cluster_spec_name: str | None = None,
    values: Iterable[tuple[str, str]] = (),
    resource_version: str | None = None,
) -> RootDescriptor:
    """
    Build a complete root descriptor from current inputs.

    Args:
        cluster_name: Cluster and Application name
        repo_url: Git repository holding the manifest tree
        branch: Branch ArgoCD tracks
        base_path: Directory the cluster's tree lives under
        manifest_path: Full tree path. Derived as base_path/cluster_name when empty.
        provider_type: Provider/cloud/type classification, or None
        profile_name: Configuration profile applied to the tree, or None
        management_endpoint: Management cluster API URL. Defaults to the
                             in-cluster API server.
        namespace: ArgoCD namespace
        cluster_spec_name: Cluster spec the descriptor was built from
        values: Cluster spec values passed to the chart
        resource_version: Concurrency token to carry onto the new record

    Returns:
        A new RootDescriptor. Equal inputs give equal descriptors.
    """
    return RootDescriptor(
        name=cluster_name,
        namespace=namespace,
        repo_url=repo_url,
        branch=branch,
        path=manifest_path or posixpath.join(base_path, cluster_name),
        provider_type=provider_type,
        cluster_spec_name=cluster_spec_name or "",
        profile_name=profile_name or "",
        management_endpoint=management_endpoint or IN_CLUSTER_SERVER,
        values=tuple(values),
        resource_version=resource_version,
    )

# ABOUTME: Identity resolution for managed clusters
# ABOUTME: Path decomposition, provider/cloud/type classification and tag lookup

"""
Identity resolver.

=============================================================================
WHAT IS A CLUSTER'S IDENTITY?
=============================================================================

Two things identify a managed cluster and must never change once it exists:

1. WHERE its manifests live: the manifest path ``<base path>/<cluster name>``
   inside the git repository. The last segment IS the cluster name.

2. WHAT kind of cluster it is: the API provider (Cluster API, Crossplane),
   the cloud provider and the cluster type. Together they form the tag, for
   example ``capi-aws-eks``. The tag selects which subchart renders the
   cluster, so changing it would swap the cluster out from under itself.

Both are derived here, from references only. Nothing in this module talks to
git or to the delivery engine; ``resolve_tag`` reads a cluster spec through
whatever store it is given.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from clusterops_mcp.lifecycle.errors import AmbiguousTagError, MalformedPathError

if TYPE_CHECKING:
    from collections.abc import Mapping

VALID_API_PROVIDERS = frozenset({"capi", "xplane"})
VALID_CLOUD_PROVIDERS = frozenset({"aws"})
VALID_CLUSTER_TYPES = frozenset({"kubeadm", "eks"})
UNSUPPORTED_COMBINATIONS = frozenset({("xplane", "kubeadm")})

# Cluster spec keys passed through to the cluster chart as global.<key>.
# Order is the order the parameters appear on the descriptor.
CLUSTER_SPEC_VALUE_KEYS = (
    "kubernetesVersion",
    "region",
    "podCidrBlock",
    "nodeType",
    "nodeCount",
    "masterNodeCount",
    "sshKeyName",
    "clusterAutoscalerEnabled",
    "clusterAutoscalerMinNodes",
    "clusterAutoscalerMaxNodes",
)


@dataclass(frozen=True)
class ClusterProviderType:
    """Provider/cloud/type classification of a cluster.

    Carried explicitly on every descriptor. The ``tags.<tag>=true`` helm
    parameter is only a wire encoding of this value.
    """

    api_provider: str
    cloud_provider: str
    cluster_type: str

    def __post_init__(self) -> None:
        problems = []
        if self.api_provider not in VALID_API_PROVIDERS:
            problems.append(f"api provider '{self.api_provider}'")
        if self.cloud_provider not in VALID_CLOUD_PROVIDERS:
            problems.append(f"cloud provider '{self.cloud_provider}'")
        if self.cluster_type not in VALID_CLUSTER_TYPES:
            problems.append(f"cluster type '{self.cluster_type}'")
        if problems:
            raise AmbiguousTagError(f"unsupported {', '.join(problems)}")
        if (self.api_provider, self.cluster_type) in UNSUPPORTED_COMBINATIONS:
            raise AmbiguousTagError(
                f"cluster type '{self.cluster_type}' is not supported "
                f"by api provider '{self.api_provider}'"
            )

    @property
    def tag(self) -> str:
        return f"{self.api_provider}-{self.cloud_provider}-{self.cluster_type}"

    @classmethod
    def from_tag(cls, tag: str) -> ClusterProviderType:
        parts = tag.split("-")
        if len(parts) != 3 or not all(parts):
            raise AmbiguousTagError(f"tag '{tag}' is not of the form <api>-<cloud>-<type>")
        return cls(*parts)

    def __str__(self) -> str:
        return self.tag


@dataclass(frozen=True)
class ClusterSpec:
    """A cluster spec configuration record.

    ``values`` holds the optional sizing and version keys, in the order of
    CLUSTER_SPEC_VALUE_KEYS, empty values dropped.
    """

    name: str
    api_provider: str = ""
    cloud_provider: str = ""
    cluster_type: str = ""
    description: str = ""
    values: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @classmethod
    def from_config_map_data(cls, name: str, data: Mapping[str, str] | None) -> ClusterSpec:
        data = data or {}
        return cls(
            name=name,
            api_provider=data.get("apiProvider", ""),
            cloud_provider=data.get("cloudProvider", ""),
            cluster_type=data.get("type", ""),
            description=data.get("description", ""),
            values=tuple((key, data[key]) for key in CLUSTER_SPEC_VALUE_KEYS if data.get(key)),
        )

    @property
    def provider_type(self) -> ClusterProviderType:
        """Resolve the classification, raising AmbiguousTagError when incomplete."""
        missing = [
            key
            for key, value in (
                ("apiProvider", self.api_provider),
                ("cloudProvider", self.cloud_provider),
                ("type", self.cluster_type),
            )
            if not value
        ]
        if missing:
            raise AmbiguousTagError(
                f"cluster spec '{self.name}' does not set {', '.join(missing)}"
            )
        return ClusterProviderType(self.api_provider, self.cloud_provider, self.cluster_type)


class ClusterSpecSource(Protocol):
    async def get_cluster_spec(self, name: str) -> ClusterSpec: ...


def decompose_path(path: str) -> tuple[str, str]:
    """
    Split a manifest path into (base path, cluster name).

        >>> decompose_path("clusters/prod-east")
        ('clusters', 'prod-east')
        >>> decompose_path("infra/clusters/prod-east/")
        ('infra/clusters', 'prod-east')

    Raises:
        MalformedPathError: fewer than two segments, or an empty segment.
    """
    segments = path.rstrip("/").split("/")
    if len(segments) < 2 or not all(segments):
        raise MalformedPathError(path)
    return "/".join(segments[:-1]), segments[-1]


async def resolve_cluster_spec(
    store: ClusterSpecSource, cluster_spec_name: str
) -> tuple[ClusterSpec, ClusterProviderType]:
    """Load a cluster spec together with the provider type it encodes.

    Raises:
        ClusterSpecNotFoundError: from the store, when the record is absent.
        AmbiguousTagError: when the record does not name one valid classification.
    """
    spec = await store.get_cluster_spec(cluster_spec_name)
    return spec, spec.provider_type


async def resolve_tag(store: ClusterSpecSource, cluster_spec_name: str) -> ClusterProviderType:
    """Resolve the provider type encoded by a cluster spec."""
    _, provider_type = await resolve_cluster_spec(store, cluster_spec_name)
    return provider_type

# ABOUTME: Cluster descriptor lifecycle package
# ABOUTME: Identity resolution, descriptor building, tree deployment, Create/Update

"""
Cluster descriptor lifecycle.

Modules:
    - identity.py: Provider type, cluster specs, manifest path decomposition
    - descriptor.py: Root descriptor model and pure builder
    - deployer.py: Writes a cluster's manifest tree into git
    - manager.py: Create and Update, with the identity invariants
    - errors.py: Error taxonomy shared by all of the above
"""

from clusterops_mcp.lifecycle.descriptor import (
    RepoCoordinates,
    RootDescriptor,
    build_root_descriptor,
)
from clusterops_mcp.lifecycle.identity import (
    ClusterProviderType,
    ClusterSpec,
    decompose_path,
    resolve_tag,
)
from clusterops_mcp.lifecycle.manager import ClusterLocks, LifecycleManager, LifecycleResult

__all__ = [
    "ClusterLocks",
    "ClusterProviderType",
    "ClusterSpec",
    "LifecycleManager",
    "LifecycleResult",
    "RepoCoordinates",
    "RootDescriptor",
    "build_root_descriptor",
    "decompose_path",
    "resolve_tag",
]

# ABOUTME: Clusterops MCP Server package initialization
# ABOUTME: Exposes version information

"""
Clusterops MCP Server - git-backed cluster lifecycle for ArgoCD via MCP.

=============================================================================
WHAT DOES THIS PACKAGE DO?
=============================================================================

Every managed Kubernetes cluster is represented by two things:

1. A MANIFEST TREE in git, at <base path>/<cluster name>, holding a Helm
   chart that depends on the chart for the cluster's provider type
   (for example capi-aws-eks) plus the cluster's profile bundles.

2. A ROOT DESCRIPTOR: an ArgoCD Application pointing at that tree, with
   Helm parameters carrying the cluster's name, sizing values and exactly
   one provider tag flag.

Creating a cluster writes the tree, then registers the descriptor. Updating
one rebuilds both from a cluster spec and profile while refusing to change
the cluster's identity: its provider type, repository, manifest path and name.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

clusterops_mcp/
├── __init__.py          <- Package entry point
├── config.py            <- Configuration management (env vars, settings)
├── server.py            <- MCP server with all tools defined
├── lifecycle/
│   ├── identity.py      <- Provider type, cluster specs, path decomposition
│   ├── descriptor.py    <- Root descriptor model and builder
│   ├── deployer.py      <- Manifest tree rendering and git push
│   ├── manager.py       <- Create and Update
│   └── errors.py        <- Error taxonomy
└── utils/
    ├── client.py        <- HTTP client for ArgoCD REST API
    ├── kube.py          <- Cluster specs, profiles and bundles from Kubernetes
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Read-only mode, rate limiting, confirmations
"""

__version__ = "0.1.0"

__all__ = ["__version__"]

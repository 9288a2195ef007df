# ABOUTME: Utilities package initialization for the clusterops MCP server
# ABOUTME: Contains the ArgoCD client, Kubernetes store, safety and logging

"""
Clusterops MCP Utilities Package

Shared utilities:
    - client.py: ArgoCD API client wrapper with retry logic
    - kube.py: Kubernetes-backed store for cluster specs and profiles
    - safety.py: Read-only mode and rate limiting
    - logging.py: Structured logging with correlation IDs
"""

# ABOUTME: Manifest tree deployer writing a cluster's desired state to git
# ABOUTME: Renders the base chart and profile overlays, commits only on change

"""
Manifest tree deployer.

For a cluster ``prod`` under base path ``clusters`` the deployer owns the
directory ``clusters/prod`` in the target repository:

    clusters/prod/
    ├── mgmt/
    │   ├── Chart.yaml              <- depends on the provider type base chart
    │   ├── values.yaml
    │   └── templates/
    │       ├── profile-<name>.yaml <- Application for a dynamic profile
    │       ├── bundle-<name>.yaml  <- Application per dynamic bundle
    │       └── workload.yaml       <- Application for the workload/ directory
    └── workload/
        └── <bundle>.yaml           <- inline manifests of static bundles

Every deploy replaces the whole directory with a fresh rendering, then
commits and pushes only if git sees a difference. Deploying the same inputs
twice therefore leaves a single commit.
"""

from __future__ import annotations

import asyncio
import posixpath
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from git import Actor, GitCommandError, Repo

from clusterops_mcp.lifecycle.errors import (
    GitUnavailableError,
    ProfileRenderError,
    WriteConflictError,
)

if TYPE_CHECKING:
    from clusterops_mcp.lifecycle.descriptor import RepoCoordinates
    from clusterops_mcp.lifecycle.identity import ClusterProviderType
    from clusterops_mcp.utils.kube import Profile

logger = structlog.get_logger(__name__)

CHART_VERSION = "0.1.0"
PUSH_CONFLICT_MARKERS = ("non-fast-forward", "fetch first", "stale info")


@dataclass(frozen=True)
class DeployResult:
    commit: str
    changed: bool


def _dump(data: dict[str, Any]) -> bytes:
    return yaml.safe_dump(data, sort_keys=False).encode()


def _child_application(
    name: str,
    namespace: str,
    cluster_name: str,
    repo_url: str,
    path: str,
    revision: str,
) -> dict[str, Any]:
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {"managed-by": "clusterops", "clusterops-cluster": cluster_name},
        },
        "spec": {
            "project": "default",
            "source": {"repoURL": repo_url, "path": path, "targetRevision": revision},
            "destination": {"name": cluster_name, "namespace": "default"},
            "syncPolicy": {"automated": {"prune": True}},
        },
    }


def render_tree(
    repo: RepoCoordinates,
    cluster_name: str,
    provider_type: ClusterProviderType | None,
    profile: Profile | None,
    *,
    argocd_namespace: str = "argocd",
    base_charts_path: str = "base",
) -> dict[str, bytes]:
    """
    Render the files of a cluster's manifest tree.

    Returns:
        Mapping of path relative to the cluster directory -> file content.
        Rendering is deterministic.

    Raises:
        ProfileRenderError: a static bundle does not hold valid YAML.
    """
    cluster_dir = repo.manifest_path(cluster_name)
    files: dict[str, bytes] = {}

    chart: dict[str, Any] = {
        "apiVersion": "v2",
        "name": cluster_name,
        "description": f"Management chart for cluster {cluster_name}",
        "type": "application",
        "version": CHART_VERSION,
    }
    values: dict[str, Any] = {"global": {"clusterName": cluster_name}}
    if provider_type is not None:
        chart_dir = posixpath.join(base_charts_path, provider_type.tag)
        chart["dependencies"] = [
            {
                "name": provider_type.tag,
                "version": CHART_VERSION,
                "repository": "file://"
                + posixpath.relpath(chart_dir, posixpath.join(cluster_dir, "mgmt")),
                "tags": [provider_type.tag],
            }
        ]
        values["tags"] = {provider_type.tag: True}
    if profile is not None:
        values["global"]["profileName"] = profile.name
    files["mgmt/Chart.yaml"] = _dump(chart)
    files["mgmt/values.yaml"] = _dump(values)

    if profile is None:
        return files

    if profile.is_dynamic:
        files[f"mgmt/templates/profile-{profile.name}.yaml"] = _dump(
            _child_application(
                f"{cluster_name}-profile-{profile.name}",
                argocd_namespace,
                cluster_name,
                profile.repo_url,
                profile.repo_path,
                profile.repo_revision,
            )
        )

    static_bundles = []
    for bundle in profile.bundles:
        if bundle.is_dynamic:
            files[f"mgmt/templates/bundle-{bundle.name}.yaml"] = _dump(
                _child_application(
                    f"{cluster_name}-{bundle.name}",
                    argocd_namespace,
                    cluster_name,
                    bundle.repo_url,
                    bundle.repo_path,
                    bundle.repo_revision,
                )
            )
            continue
        content = bundle.data or b""
        try:
            list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            raise ProfileRenderError(
                f"bundle '{bundle.name}' of profile '{profile.name}' is not valid YAML: {e}"
            ) from e
        files[f"workload/{bundle.name}.yaml"] = content
        static_bundles.append(bundle.name)

    if static_bundles:
        files["mgmt/templates/workload.yaml"] = _dump(
            _child_application(
                f"{cluster_name}-workload",
                argocd_namespace,
                cluster_name,
                repo.repo_url,
                posixpath.join(cluster_dir, "workload"),
                repo.branch,
            )
        )
    return files


class ManifestTreeDeployer:
    """Writes cluster manifest trees into git repositories.

    Each deploy works in a fresh temporary clone, so concurrent deploys of
    different clusters do not share a working tree. Deploys of the same
    cluster must be serialized by the caller.
    """

    def __init__(
        self,
        workdir: Path | None = None,
        author_name: str = "clusterops",
        author_email: str = "clusterops@localhost",
        argocd_namespace: str = "argocd",
        base_charts_path: str = "base",
    ) -> None:
        self._workdir = workdir
        self._author = Actor(author_name, author_email)
        self._argocd_namespace = argocd_namespace
        self._base_charts_path = base_charts_path

    async def deploy(
        self,
        repo: RepoCoordinates,
        cluster_name: str,
        provider_type: ClusterProviderType | None,
        profile: Profile | None,
    ) -> DeployResult:
        """
        Write or overwrite the manifest tree for a cluster.

        Raises:
            GitUnavailableError: the repository or branch cannot be cloned or pushed.
            ProfileRenderError: the profile cannot be rendered.
            WriteConflictError: the push was rejected because the branch moved.
        """
        files = render_tree(
            repo,
            cluster_name,
            provider_type,
            profile,
            argocd_namespace=self._argocd_namespace,
            base_charts_path=self._base_charts_path,
        )
        return await asyncio.to_thread(self._write_tree, repo, cluster_name, files)

    def _write_tree(
        self, repo: RepoCoordinates, cluster_name: str, files: dict[str, bytes]
    ) -> DeployResult:
        log = logger.bind(cluster=cluster_name, repo=repo.repo_url, branch=repo.branch)
        rel_dir = repo.manifest_path(cluster_name)

        with tempfile.TemporaryDirectory(dir=self._workdir, prefix=f"{cluster_name}-") as tmp:
            try:
                git_repo = Repo.clone_from(repo.repo_url, tmp, branch=repo.branch, depth=1)
            except GitCommandError as e:
                stderr = (e.stderr or "").strip()
                raise GitUnavailableError(
                    f"failed to clone {repo.repo_url} (branch {repo.branch}): {stderr}"
                ) from e

            with git_repo:
                cluster_dir = Path(tmp, rel_dir)
                if cluster_dir.exists():
                    shutil.rmtree(cluster_dir)
                for rel_path, content in files.items():
                    target = cluster_dir / rel_path
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(content)

                git_repo.git.add("--all", "--", rel_dir)
                if not git_repo.git.status("--porcelain", "--", rel_dir):
                    log.info("Manifest tree unchanged, nothing to commit")
                    return DeployResult(commit=git_repo.head.commit.hexsha, changed=False)

                commit = git_repo.index.commit(
                    f"Deploy manifest tree for cluster {cluster_name}",
                    author=self._author,
                    committer=self._author,
                )
                try:
                    git_repo.git.push("origin", f"HEAD:refs/heads/{repo.branch}")
                except GitCommandError as e:
                    stderr = (e.stderr or "").strip()
                    if any(marker in stderr for marker in PUSH_CONFLICT_MARKERS):
                        raise WriteConflictError(
                            f"push to {repo.branch} rejected, branch moved concurrently: {stderr}"
                        ) from e
                    raise GitUnavailableError(f"failed to push to {repo.repo_url}: {stderr}") from e

                log.info("Manifest tree deployed", commit=commit.hexsha, files=len(files))
                return DeployResult(commit=commit.hexsha, changed=True)

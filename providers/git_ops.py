"""
Provider: Git — writes generated files into the target repository, commits
them on a branch and optionally pushes.
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

import config
from providers.base import CapabilityProvider

log = logging.getLogger(__name__)

_GITHUB_REMOTE_RE = re.compile(r"github\.com[:/](?P<slug>[^/]+/[^/]+?)(?:\.git)?/?$")


class GitCommandError(RuntimeError):
    pass


class GitProvider(CapabilityProvider):
    name = "git"

    def __init__(self, repo_path: str | Path | None = None, push: bool = False):
        self.repo_path = Path(repo_path or config.TARGET_REPO_PATH)
        self.push = push

    async def initialize(self) -> None:
        output = await self._run_blocking(_git, self.repo_path, "rev-parse", "--is-inside-work-tree")
        if output.strip() != "true":
            log.warning("%s is not a git work tree; commits will fail", self.repo_path)
        log.info("Provider %s initialized (repo=%s)", self.name, self.repo_path)

    async def commit_changes(self, change: dict, *, token=None) -> dict:
        return await self._run_blocking(
            self._commit,
            change.get("message") or "Automated commit",
            change.get("files") or [],
            change.get("branch") or config.DEFAULT_BRANCH,
        )

    def _commit(self, message: str, files: list, branch: str) -> dict:
        repo = str(self.repo_path)
        log.info("Committing to %s: %s", branch, message)
        self._checkout(branch)

        written = [self._write(f) for f in files if isinstance(f, dict) and f.get("path")]
        paths = written or [p for p in files if isinstance(p, str)]
        if paths:
            _git(repo, "add", "--", *paths, check=True)
        else:
            _git(repo, "add", "-A", check=True)

        if not _has_staged_changes(repo):
            log.info("Nothing to commit")
            return {"status": "nothing_to_commit", "commit_id": None, "url": None,
                    "branch": branch, "message": message, "files": paths}

        _git(repo, "commit", "-m", message, check=True)
        sha = _git(repo, "rev-parse", "HEAD", check=True).strip()
        if self.push:
            _git(repo, "push", "-u", "origin", branch, check=True)
        return {
            "status": "committed",
            "commit_id": sha,
            "url": self._commit_url(sha),
            "branch": branch,
            "message": message,
            "files": paths,
            "pushed": self.push,
        }

    def _checkout(self, branch: str) -> None:
        repo = str(self.repo_path)
        # symbolic-ref also resolves an unborn branch in a fresh repository
        current = _git(repo, "symbolic-ref", "--short", "-q", "HEAD").strip()
        if current == branch:
            return
        exists = _git(repo, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}").strip()
        if exists:
            _git(repo, "checkout", branch, check=True)
        else:
            _git(repo, "checkout", "-b", branch, check=True)

    def _write(self, spec: dict) -> str:
        root = self.repo_path.resolve()
        target = (root / spec["path"]).resolve()
        if root != target and root not in target.parents:
            raise ValueError(f"Refusing to write outside the repository: {spec['path']}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(spec.get("content", ""))
        return str(target.relative_to(root))

    def _commit_url(self, sha: str) -> str | None:
        remote = _git(str(self.repo_path), "remote", "get-url", "origin").strip()
        match = _GITHUB_REMOTE_RE.search(remote)
        if not match:
            return None
        return f"https://github.com/{match.group('slug')}/commit/{sha}"


def _git(repo_path: str | Path, *args: str, check: bool = False) -> str:
    """Run a git command in the target repo."""
    result = subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        cwd=str(repo_path),
        timeout=30,
    )
    if result.returncode != 0:
        if check:
            raise GitCommandError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
        log.debug("git %s exited %d: %s", " ".join(args), result.returncode, result.stderr.strip())
        return ""
    return result.stdout


def _has_staged_changes(repo_path: str | Path) -> bool:
    """True when the index differs from HEAD; untracked files are ignored."""
    result = subprocess.run(
        ["git", "diff", "--cached", "--quiet"],
        capture_output=True,
        cwd=str(repo_path),
        timeout=30,
    )
    if result.returncode not in (0, 1):
        raise GitCommandError(f"git diff --cached failed: {result.stderr.decode(errors='replace').strip()}")
    return result.returncode == 1

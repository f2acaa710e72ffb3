"""
Provider: Pytest Runner — runs the target repository's test suite and reports
pass/fail counts.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
from pathlib import Path

import config
from providers.base import CapabilityProvider

log = logging.getLogger(__name__)

_PASSED_RE = re.compile(r"(\d+)\s+passed")
_FAILED_RE = re.compile(r"(\d+)\s+failed")
_ERRORS_RE = re.compile(r"(\d+)\s+errors?\b")
_SKIPPED_RE = re.compile(r"(\d+)\s+skipped")


class PytestRunner(CapabilityProvider):
    name = "tester"

    def __init__(self, repo_path: str | Path | None = None, timeout_sec: int | None = None):
        self.repo_path = Path(repo_path or config.TARGET_REPO_PATH)
        self.timeout_sec = timeout_sec or config.TEST_TIMEOUT_SEC

    async def run_tests(self, parameters: dict | None = None, *, token=None) -> dict:
        """
        Run pytest against ``parameters["test_files"]`` (or the whole repo).

        Returns:
            {"passed": int, "failed": int, "errors": int, "skipped": int,
             "total": int, "exit_code": int, "failures": [...], "output": "..."}
        """
        parameters = parameters or {}
        targets = list(parameters.get("test_files") or parameters.get("testFiles") or [])
        repo = Path(parameters.get("repo_path") or self.repo_path)
        return await self._run_blocking(self._run, repo, targets, parameters.get("markers"))

    def _run(self, repo: Path, targets: list[str], markers: str | None) -> dict:
        cmd = [sys.executable, "-m", "pytest", "-q", "--tb=short", "--no-header", *targets]
        if markers:
            cmd += ["-m", markers]
        log.info("Running tests in %s: %s", repo, " ".join(targets) or "(all)")
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout_sec,
                cwd=str(repo),
                env=_build_env(repo),
            )
        except subprocess.TimeoutExpired:
            log.error("Test run timed out after %ds", self.timeout_sec)
            raise TimeoutError(f"Test execution timed out after {self.timeout_sec}s") from None

        output = proc.stdout + proc.stderr
        counts = parse_pytest_output(output)
        log.info("Tests: %d passed, %d failed (exit=%d)",
                 counts["passed"], counts["failed"], proc.returncode)
        return {**counts, "exit_code": proc.returncode, "output": output[-5000:]}


def _build_env(repo: Path) -> dict:
    """Environment for the subprocess, using the repo's .venv when present."""
    env = os.environ.copy()
    venv = repo / ".venv"
    if venv.exists():
        env["VIRTUAL_ENV"] = str(venv)
        env["PATH"] = f"{venv / 'bin'}{os.pathsep}{env.get('PATH', '')}"
    env["PYTHONDONTWRITEBYTECODE"] = "1"
    return env


def parse_pytest_output(output: str) -> dict:
    """Pull counts from pytest's summary line and collect FAILED/ERROR lines."""
    counts = {"passed": 0, "failed": 0, "errors": 0, "skipped": 0}
    failures = []
    for line in output.splitlines():
        stripped = line.strip()
        lowered = stripped.lower()
        if stripped.startswith(("FAILED ", "ERROR ")):
            failures.append(stripped)
            continue
        if not any(word in lowered for word in (" passed", " failed", " error", " skipped")):
            continue
        for key, pattern in (("passed", _PASSED_RE), ("failed", _FAILED_RE),
                             ("errors", _ERRORS_RE), ("skipped", _SKIPPED_RE)):
            match = pattern.search(lowered)
            if match:
                counts[key] = int(match.group(1))
    counts["total"] = counts["passed"] + counts["failed"] + counts["errors"]
    counts["failures"] = failures
    return counts

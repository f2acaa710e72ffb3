"""
Repo scanner — reads a target repository into LLM-sized context for the
planner provider's analyze and generate_code operations.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

import config

log = logging.getLogger(__name__)

SKIP_DIRS = {
    ".git", ".venv", "venv", "__pycache__", "node_modules", ".mypy_cache",
    ".pytest_cache", "site", ".tox", "dist", "build", "egg-info",
}

_WORD_RE = re.compile(r"[a-z][a-z0-9_]{2,}")
_STOPWORDS = {"the", "and", "for", "with", "add", "new", "that", "this", "from", "into", "make"}


def scan_repo(repo_path: Path | str) -> dict:
    """
    Scan a repository and return its file list, readable contents and stats.

    Returns:
        {
            "tree": ["relative/path", ...],
            "files": {"relative/path": {"content": "...", "lines": int, "ext": ".py"}},
            "stats": {"total_files": int, "analyzable_files": int, "total_lines": int, "languages": {...}}
        }
    """
    repo_path = Path(repo_path)
    if not repo_path.is_dir():
        raise ValueError(f"Repository path does not exist: {repo_path}")

    tree: list[str] = []
    files: dict[str, dict] = {}
    languages: dict[str, int] = {}
    total_lines = 0

    for path in sorted(repo_path.rglob("*")):
        rel_parts = path.relative_to(repo_path).parts
        if any(part in SKIP_DIRS or part.endswith(".egg-info") for part in rel_parts):
            continue
        if not path.is_file():
            continue

        rel = "/".join(rel_parts)
        tree.append(rel)
        ext = path.suffix.lower()
        if ext not in config.ANALYZABLE_EXTENSIONS:
            continue
        try:
            content = path.read_text(errors="replace")
        except OSError as e:
            log.warning("Could not read %s: %s", rel, e)
            continue
        if len(content) > config.MAX_FILE_SIZE:
            content = content[:config.MAX_FILE_SIZE] + "\n... [TRUNCATED]"
        lines = content.count("\n") + 1
        total_lines += lines
        files[rel] = {"content": content, "lines": lines, "ext": ext}
        languages[ext] = languages.get(ext, 0) + lines

    log.info("Scanned %s: %d files, %d readable, %d lines",
             repo_path.name, len(tree), len(files), total_lines)
    return {
        "tree": tree,
        "files": files,
        "stats": {
            "total_files": len(tree),
            "analyzable_files": len(files),
            "total_lines": total_lines,
            "languages": languages,
        },
    }


def keywords(text: str) -> set[str]:
    return {w for w in _WORD_RE.findall(text.lower()) if w not in _STOPWORDS}


def relevant_files(files: dict[str, dict], instruction: str, limit: int = 10) -> list[str]:
    """Paths ranked by how many instruction keywords appear in the path, then the content."""
    words = keywords(instruction)
    if not words:
        return []
    scored = []
    for rel, info in files.items():
        path_hits = sum(1 for w in words if w in rel.lower())
        body_hits = sum(1 for w in words if w in info["content"].lower())
        if path_hits or body_hits:
            scored.append((path_hits * 3 + body_hits, rel))
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [rel for _, rel in scored[:limit]]


def build_context(repo_path: Path | str, instruction: str = "", max_chars: int | None = None) -> str:
    """Markdown context for a prompt: file tree, then relevant file contents within budget."""
    max_chars = max_chars or config.MAX_CONTEXT_CHARS
    scan = scan_repo(repo_path)
    files = scan["files"]

    ordered = relevant_files(files, instruction)
    ordered += sorted((rel for rel in files if rel not in ordered), key=lambda rel: files[rel]["lines"])

    tree = "\n".join(scan["tree"][:500])
    parts = [f"## Repository Files\n```\n{tree}\n```\n"]
    total = len(parts[0])
    included = 0
    for rel in ordered:
        info = files[rel]
        entry = f"### {rel}\n```{info['ext'].lstrip('.')}\n{info['content']}\n```\n"
        if total + len(entry) > max_chars:
            parts.append(f"... [{len(ordered) - included} more files omitted]\n")
            break
        parts.append(entry)
        total += len(entry)
        included += 1
    return "\n".join(parts)

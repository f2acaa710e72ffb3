"""
Provider: LLM Planner — plans workflows, analyzes requirements and generates
code with the OpenAI chat API.

The OpenAI SDK is synchronous, so every call runs on the default thread pool.
"""

from __future__ import annotations

import logging
import re

from providers.base import CapabilityProvider
from utils import llm
from utils.repo_scanner import build_context

log = logging.getLogger(__name__)

_CODE_BLOCK_RE = re.compile(r"```([\w+-]+)?[ \t]*\n(.*?)```", re.DOTALL)
_FILENAME_RE = re.compile(r"^\s*(?://|#|<!--|--)\s*(?:filename|file|path):\s*(\S+)", re.IGNORECASE | re.MULTILINE)

EXTENSIONS = {
    "python": ".py", "py": ".py",
    "javascript": ".js", "js": ".js",
    "typescript": ".ts", "ts": ".ts",
    "html": ".html", "css": ".css", "json": ".json",
    "yaml": ".yml", "yml": ".yml", "toml": ".toml",
    "bash": ".sh", "sh": ".sh", "shell": ".sh",
    "sql": ".sql", "go": ".go", "java": ".java", "rust": ".rs",
    "markdown": ".md", "md": ".md",
}

PLAN_SYSTEM = (
    "You are a DevOps automation expert. Turn development instructions into "
    "executable workflow plans. You MUST respond with a single valid JSON object."
)

ANALYZE_SYSTEM = (
    "You are an expert software architect. Analyze the development requirement and "
    "respond with JSON containing: requirements (list), architecture (string), "
    "dependencies (list), challenges (list), complexity (low|medium|high), "
    "testing_strategy (string), deployment_notes (string)."
)

GENERATE_SYSTEM = (
    "You are an expert developer. Write clean, production-ready code with error "
    "handling. Put every file in its own fenced code block and make the first line "
    "of each block a comment of the form `# filename: relative/path.ext` "
    "(use the comment syntax of the language)."
)


def extract_code_blocks(text: str) -> list[dict]:
    """Split a model response into ``[{"path", "content", "language"}]``."""
    files = []
    used: set[str] = set()
    for index, match in enumerate(_CODE_BLOCK_RE.finditer(text), start=1):
        language = (match.group(1) or "text").lower()
        code = match.group(2).strip()
        if not code:
            continue
        path = infer_filename(language, code, index)
        if path in used:
            stem, dot, ext = path.rpartition(".")
            path = f"{stem}_{index}.{ext}" if dot else f"{path}_{index}"
        used.add(path)
        files.append({"path": path, "content": code + "\n", "language": language})
    return files


def infer_filename(language: str, code: str, index: int = 1) -> str:
    match = _FILENAME_RE.search(code)
    if match:
        path = match.group(1).strip()
        return path[2:] if path.startswith("./") else path
    ext = EXTENSIONS.get(language.lower(), ".txt")
    return f"generated_code{ext}" if index == 1 else f"generated_code_{index}{ext}"


class LLMPlanner(CapabilityProvider):
    name = "planner"

    def __init__(self, model: str | None = None, temperature: float | None = None):
        self.model = model
        self.temperature = temperature

    async def initialize(self) -> None:
        if not llm.is_configured():
            log.warning("OPENAI_API_KEY is not set; planner calls will fail")
        log.info("Provider %s initialized (model=%s)", self.name, self.model or "default")

    async def generate_plan(self, prompt: str, options: dict | None = None) -> str:
        """Return the raw plan text; normalization happens in the engine."""
        log.info("Generating workflow plan")
        return await self._run_blocking(
            llm.chat, PLAN_SYSTEM, prompt,
            model=self.model, json_mode=True, temperature=0.2, max_tokens=3000,
        )

    async def analyze(self, instruction: str, parameters: dict | None = None, *, token=None) -> dict:
        parameters = parameters or {}
        user = f'Analyze this development requirement:\n"{instruction}"'
        if parameters.get("repo_path"):
            context = await self._run_blocking(build_context, parameters["repo_path"], instruction)
            user += f"\n\n{context}"
        log.info("Analyzing requirements: %s", instruction[:80])
        analysis = await self._run_blocking(
            llm.chat_json, ANALYZE_SYSTEM, user,
            model=self.model, temperature=0.3, max_tokens=2000,
        )
        if "error" in analysis and "raw" in analysis:
            return {"analysis": analysis["raw"], "instruction": instruction}
        return analysis

    async def generate_code(self, instruction: str, parameters: dict | None = None, *, token=None) -> dict:
        parameters = parameters or {}
        user = f'Generate code for this instruction:\n"{instruction}"'
        if parameters.get("context"):
            user += f"\n\nAdditional context:\n{parameters['context']}"
        if parameters.get("repo_path"):
            context = await self._run_blocking(build_context, parameters["repo_path"], instruction)
            user += f"\n\n{context}"
        log.info("Generating code: %s", instruction[:80])
        response = await self._run_blocking(
            llm.chat, GENERATE_SYSTEM, user,
            model=self.model, temperature=self.temperature, max_tokens=4000,
        )
        files = extract_code_blocks(response)
        log.info("Generated %d files", len(files))
        return {"instruction": instruction, "files": files, "generated_code": response}

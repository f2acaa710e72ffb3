"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# Paths
PROJECT_ROOT = Path(__file__).parent
TARGET_REPO_PATH = Path(os.getenv("TARGET_REPO_PATH", "."))
# Empty disables the per-workflow JSON run log
RUN_LOG_DIR = os.getenv("RUN_LOG_DIR", "")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1")
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))

# Providers
PLANNER_PROVIDER = os.getenv("PLANNER_PROVIDER", "planner")
DEFAULT_BRANCH = os.getenv("DEFAULT_BRANCH", "main")
MONITORING_DASHBOARD_URL = os.getenv("MONITORING_DASHBOARD_URL", "")
TEST_TIMEOUT_SEC = int(os.getenv("TEST_TIMEOUT_SEC", "120"))

# Plans
DEFAULT_STEP_TIMEOUT_MS = int(os.getenv("DEFAULT_STEP_TIMEOUT_MS", "60000"))
DEFAULT_RETRY_LIMIT = int(os.getenv("DEFAULT_RETRY_LIMIT", "2"))
DEFAULT_ESTIMATED_DURATION_SEC = int(os.getenv("DEFAULT_ESTIMATED_DURATION_SEC", "300"))

# Executor: retry_limit on steps is only acted on when this is enabled
HONOR_RETRY_LIMIT = _flag("HONOR_RETRY_LIMIT")
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "1.0"))  # seconds

# Task queue
QUEUE_MAX_CONCURRENT = int(os.getenv("QUEUE_MAX_CONCURRENT", "3"))
QUEUE_POLL_INTERVAL = float(os.getenv("QUEUE_POLL_INTERVAL", "0.1"))  # seconds
QUEUE_HISTORY_SIZE = int(os.getenv("QUEUE_HISTORY_SIZE", "100"))

# File extensions worth sending to the LLM as repository context
ANALYZABLE_EXTENSIONS = {
    ".py", ".js", ".ts", ".jsx", ".tsx", ".md", ".yml", ".yaml",
    ".json", ".toml", ".cfg", ".ini", ".txt", ".sh", ".html", ".css",
}

# Max file size to send to LLM (characters)
MAX_FILE_SIZE = 8_000

# Max total context characters to send in a single LLM call (~4 chars per token)
MAX_CONTEXT_CHARS = 60_000

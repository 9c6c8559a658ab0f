"""Configuration loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _require(name: str) -> str:
    val = os.getenv(name)
    if not val:
        raise RuntimeError(f"Required environment variable {name} is not set")
    return val


def _list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# Paths
DATA_DIR: Path = Path(os.getenv("DATA_DIR", "./data"))

# API keys
GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
GITHUB_TOKEN: str = os.getenv("GITHUB_TOKEN", "")
ASSEMBLYAI_API_KEY: str = os.getenv("ASSEMBLYAI_API_KEY", "")

# Models
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "gemini-embedding-001")
EMBEDDING_DIMS: int = int(os.getenv("EMBEDDING_DIMS", "768"))

# Version-control host
GITHUB_API_URL: str = os.getenv("GITHUB_API_URL", "https://api.github.com")
FETCH_CONCURRENCY: int = int(os.getenv("FETCH_CONCURRENCY", "5"))
COMMIT_WINDOW: int = int(os.getenv("COMMIT_WINDOW", "10"))
MAX_FILE_BYTES: int = int(os.getenv("MAX_FILE_BYTES", "200000"))

# Dependency dirs, build output, lockfiles and environment files
DEFAULT_IGNORE_PATTERNS: list[str] = [
    "node_modules", "vendor", ".venv", "__pycache__", ".git",
    "dist", "build", ".next", "out", "coverage",
    "package-lock.json", "yarn.lock", "pnpm-lock.yaml", "poetry.lock",
    "Cargo.lock", "*.lock",
    ".env", ".env.*",
]
IGNORE_PATTERNS: list[str] = _list("IGNORE_PATTERNS", DEFAULT_IGNORE_PATTERNS)

# Summaries and retrieval
SUMMARY_MAX_CHARS: int = int(os.getenv("SUMMARY_MAX_CHARS", "10000"))
DIFF_MAX_CHARS: int = int(os.getenv("DIFF_MAX_CHARS", "30000"))
CONTEXT_MAX_CHARS: int = int(os.getenv("CONTEXT_MAX_CHARS", "60000"))
RETRIEVAL_TOP_K: int = int(os.getenv("RETRIEVAL_TOP_K", "10"))
SIMILARITY_THRESHOLD: float = float(os.getenv("SIMILARITY_THRESHOLD", "0.5"))

# Jobs
STAGE_TIMEOUT_SECS: float = float(os.getenv("STAGE_TIMEOUT_SECS", "60"))
WORKER_THREADS: int = int(os.getenv("WORKER_THREADS", "4"))
POLL_INTERVAL_SECS: float = float(os.getenv("POLL_INTERVAL_SECS", "0.5"))
NOTIFY_SWEEP_INTERVAL_SECS: float = float(os.getenv("NOTIFY_SWEEP_INTERVAL_SECS", "120"))

# Meetings
ASSEMBLYAI_API_URL: str = os.getenv("ASSEMBLYAI_API_URL", "https://api.assemblyai.com")
TRANSCRIBE_POLL_SECS: float = float(os.getenv("TRANSCRIBE_POLL_SECS", "3"))
TRANSCRIBE_MAX_WAIT_SECS: float = float(os.getenv("TRANSCRIBE_MAX_WAIT_SECS", "900"))

# Notifications
SMTP_HOST: str = os.getenv("SMTP_HOST", "")
SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER: str = os.getenv("SMTP_USER", "")
SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
NOTIFY_EMAIL_TO: str = os.getenv("NOTIFY_EMAIL_TO", "")
NOTIFY_EMAIL_FROM: str = os.getenv("NOTIFY_EMAIL_FROM", "gitwhisper@localhost")

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "8000"))
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Derived paths
SQLITE_PATH: Path = Path(os.getenv("SQLITE_PATH", str(DATA_DIR / "gitwhisper.db")))
LANCEDB_PATH: Path = Path(os.getenv("LANCEDB_PATH", str(DATA_DIR / "lancedb")))


def require_gemini_key() -> str:
    """Return GEMINI_API_KEY, raising if it is not configured."""
    return GEMINI_API_KEY or _require("GEMINI_API_KEY")

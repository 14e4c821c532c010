import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from prwarden_core.errors import ConfigError

DEFAULT_CONFIG: dict = {
    "model": "anthropic",
    "target_branches": ["main", "master", "develop"],
    # fnmatch patterns or directory names to skip (e.g. "migrations/", "*.min.js")
    "exclude": ["*.md", "*.txt", "*.json", "package-lock.json", "yarn.lock", "*.log"],
    "max_files_to_analyze": 20,
    "max_file_changes": 100_000,
    "max_diff_chars": 8000,
    "review_draft_prs": False,
    "bot_login": None,  # e.g. "prwarden[bot]"; events from this login never trigger a review
    "batch_limit": 60,
    # Report each review as a GitHub check run on the head commit (needs checks:write).
    "check_runs": True,
    "check_run_name": "AI Code Review",
    "max_concurrent_reviews": 3,
    "concurrency_wait_seconds": 60,
    "concurrency_poll_seconds": 1,
    "debounce_seconds": 90,
    "stale_entry_seconds": 900,
    "reaper_interval_seconds": 300,
    "shutdown_timeout_seconds": 30,
    "line_window": 10,
    "prefer_after": True,
}

_LIST_KEYS = ("target_branches", "exclude")


def load_config(config_path: str = ".prwarden.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .prwarden.yml in the current directory
      3. CLI argument overrides
    """
    config = {**DEFAULT_CONFIG}
    for key in _LIST_KEYS:
        config[key] = list(DEFAULT_CONFIG[key])

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Resolve credentials from environment variables
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")
    config["webhook_secret"] = os.environ.get("PRWARDEN_WEBHOOK_SECRET")

    return config


def validate_config(config: dict) -> None:
    """Raise ConfigError when the selected provider cannot be constructed."""
    model = config.get("model")
    if model not in ("anthropic", "openai"):
        raise ConfigError(f"Unknown model provider: {model!r}. Choose 'anthropic' or 'openai'.")
    if model == "anthropic" and not config.get("anthropic_api_key"):
        raise ConfigError("ANTHROPIC_API_KEY environment variable is not set.")
    if model == "openai" and not config.get("openai_api_key"):
        raise ConfigError("OPENAI_API_KEY environment variable is not set.")


@dataclass(frozen=True)
class CoordinatorSettings:
    target_branches: tuple[str, ...] = ("main", "master", "develop")
    review_draft_prs: bool = False
    max_concurrent_reviews: int = 3
    concurrency_wait_seconds: float = 60.0
    concurrency_poll_seconds: float = 1.0
    debounce_seconds: float = 90.0
    stale_entry_seconds: float = 900.0
    shutdown_timeout_seconds: float = 30.0
    line_window: int = 10
    prefer_after: bool = True
    check_runs: bool = True

    @classmethod
    def from_config(cls, config: dict) -> "CoordinatorSettings":
        return cls(
            target_branches=tuple(config.get("target_branches") or ()),
            review_draft_prs=bool(config.get("review_draft_prs", False)),
            max_concurrent_reviews=int(config.get("max_concurrent_reviews", 3)),
            concurrency_wait_seconds=float(config.get("concurrency_wait_seconds", 60)),
            concurrency_poll_seconds=float(config.get("concurrency_poll_seconds", 1)),
            debounce_seconds=float(config.get("debounce_seconds", 90)),
            stale_entry_seconds=float(config.get("stale_entry_seconds", 900)),
            shutdown_timeout_seconds=float(config.get("shutdown_timeout_seconds", 30)),
            line_window=int(config.get("line_window", 10)),
            prefer_after=bool(config.get("prefer_after", True)),
            check_runs=bool(config.get("check_runs", True)),
        )

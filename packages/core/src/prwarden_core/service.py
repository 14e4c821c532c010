"""Assembly of a ReviewCoordinator from a loaded configuration dict."""

from __future__ import annotations

import logging

from github import GithubException

from prwarden_core.config import CoordinatorSettings, validate_config
from prwarden_core.coordinator import ReviewCoordinator
from prwarden_core.gh.client import GitHubClient
from prwarden_core.gh.pull_request import get_authenticated_login
from prwarden_core.gh.shadow import ShadowGitHubClient
from prwarden_core.providers.anthropic import AnthropicAnalyzer
from prwarden_core.providers.base import BaseAnalyzer
from prwarden_core.providers.openai import OpenAIAnalyzer

logger = logging.getLogger(__name__)


def get_analyzer(config: dict) -> BaseAnalyzer:
    validate_config(config)
    max_diff_chars = int(config.get("max_diff_chars", 8000))
    if config["model"] == "anthropic":
        return AnthropicAnalyzer(api_key=config["anthropic_api_key"], max_diff_chars=max_diff_chars)
    return OpenAIAnalyzer(api_key=config["openai_api_key"], max_diff_chars=max_diff_chars)


def resolve_bot_login(config: dict) -> str | None:
    """Return the login our comments are posted under.

    Uses ``bot_login`` from the config when set, otherwise asks GitHub who the
    token belongs to and records the answer in the config.
    """
    if config.get("bot_login"):
        return config["bot_login"]
    token = config.get("github_token")
    if not token:
        return None
    try:
        login = get_authenticated_login(token)
    except GithubException as e:
        # Installation tokens cannot read /user; their events arrive as Bot senders.
        logger.warning("Could not resolve the login for GITHUB_TOKEN (%s). Set bot_login in .prwarden.yml.", e)
        return None
    logger.info("Reviewing as %s", login)
    config["bot_login"] = login
    return login


def build_coordinator(config: dict, shadow: bool = False) -> ReviewCoordinator:
    client_cls = ShadowGitHubClient if shadow else GitHubClient
    analyzer = get_analyzer(config)
    return ReviewCoordinator(
        source_control=client_cls(config.get("github_token"), config),
        analyzer=analyzer,
        settings=CoordinatorSettings.from_config(config),
        bot_login=resolve_bot_login(config),
    )

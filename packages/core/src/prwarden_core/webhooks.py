"""Translation of GitHub webhook deliveries into coordinator trigger events."""

from __future__ import annotations

import hashlib
import hmac
import logging

from prwarden_core.errors import WebhookSignatureError
from prwarden_core.models import (
    ManualReviewRequested,
    PRTriggered,
    PullRequestRef,
    ReviewCommentCreated,
    ReviewSubmitted,
    TriggerEvent,
)

logger = logging.getLogger(__name__)

MANUAL_REVIEW_COMMAND = "/ai-review"


def verify_signature(body: bytes, signature: str | None, secret: str) -> None:
    """Verify the ``X-Hub-Signature-256`` header of a delivery.

    Raises WebhookSignatureError when the header is missing, malformed or wrong.
    """
    if not signature:
        raise WebhookSignatureError("Missing X-Hub-Signature-256 header")
    if not signature.startswith("sha256="):
        raise WebhookSignatureError("Invalid signature format, expected sha256= prefix")

    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature, expected):
        raise WebhookSignatureError("GitHub webhook signature verification failed")


def _ref(payload: dict, number: int) -> PullRequestRef:
    repo = payload["repository"]
    return PullRequestRef(owner=repo["owner"]["login"], repo=repo["name"], number=int(number))


def _is_bot(payload: dict, bot_login: str | None, any_bot: bool) -> bool:
    sender = payload.get("sender") or {}
    if bot_login and sender.get("login") == bot_login:
        return True
    return any_bot and sender.get("type") == "Bot"


def parse_event(event_name: str, payload: dict, bot_login: str | None = None) -> TriggerEvent | None:
    """Return the trigger event for a delivery, or None when it is not one we act on.

    Malformed payloads are logged and ignored rather than raised, so one bad
    delivery never surfaces as a server error.
    """
    try:
        return _parse(event_name, payload, bot_login)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Ignoring malformed %s payload: %s", event_name, e)
        return None


def _parse(event_name: str, payload: dict, bot_login: str | None) -> TriggerEvent | None:
    action = payload.get("action", "")

    if event_name == "pull_request":
        pr = payload["pull_request"]
        return PRTriggered(
            ref=_ref(payload, pr["number"]),
            action=action,
            draft=bool(pr.get("draft", False)),
            base_branch=pr["base"]["ref"],
            head_sha=pr["head"]["sha"],
            is_bot=_is_bot(payload, bot_login, any_bot=False),
        )

    if event_name == "pull_request_review":
        if action != "submitted":
            return None
        return ReviewSubmitted(
            ref=_ref(payload, payload["pull_request"]["number"]),
            is_bot=_is_bot(payload, bot_login, any_bot=True),
        )

    if event_name == "pull_request_review_comment":
        if action != "created":
            return None
        return ReviewCommentCreated(
            ref=_ref(payload, payload["pull_request"]["number"]),
            is_bot=_is_bot(payload, bot_login, any_bot=True),
        )

    if event_name == "issue_comment":
        issue = payload["issue"]
        if action != "created" or not issue.get("pull_request"):
            return None
        body = (payload["comment"].get("body") or "").strip()
        if not body.startswith(MANUAL_REVIEW_COMMAND):
            return None
        return ManualReviewRequested(
            ref=_ref(payload, issue["number"]),
            is_bot=_is_bot(payload, bot_login, any_bot=True),
        )

    if event_name == "ping":
        logger.info("Webhook ping received")
    else:
        logger.debug("Ignoring unsupported event: %s", event_name)
    return None

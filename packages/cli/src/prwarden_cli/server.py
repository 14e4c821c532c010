"""FastAPI webhook receiver."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Header, HTTPException, Request

from prwarden_core.coordinator import ReviewCoordinator
from prwarden_core.errors import WebhookSignatureError
from prwarden_core.webhooks import parse_event, verify_signature

logger = logging.getLogger(__name__)


def create_app(coordinator: ReviewCoordinator, config: dict) -> FastAPI:
    secret = config.get("webhook_secret")
    bot_login = config.get("bot_login")
    reaper_interval = float(config.get("reaper_interval_seconds", 300))
    shutdown_timeout = float(config.get("shutdown_timeout_seconds", 30))

    if not secret:
        logger.warning("PRWARDEN_WEBHOOK_SECRET is not set. Webhook signatures will NOT be verified!")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting webhook receiver")
        reaper = asyncio.create_task(coordinator.run_reaper(reaper_interval))
        yield
        logger.info("Shutting down webhook receiver")
        reaper.cancel()
        with suppress(asyncio.CancelledError):
            await reaper
        await coordinator.shutdown(shutdown_timeout)
        logger.info("Shutdown complete")

    app = FastAPI(title="prwarden", description="AI pull request review webhook receiver", lifespan=lifespan)
    app.state.coordinator = coordinator

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/status")
    async def status():
        return coordinator.status()

    @app.post("/webhook", status_code=202)
    async def webhook(
        request: Request,
        x_github_event: str | None = Header(default=None),
        x_github_delivery: str | None = Header(default=None),
        x_hub_signature_256: str | None = Header(default=None),
    ):
        if not x_github_event:
            raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")

        body = await request.body()
        if secret:
            try:
                verify_signature(body, x_hub_signature_256, secret)
            except WebhookSignatureError as e:
                logger.warning("Rejected delivery %s: %s", x_github_delivery, e)
                raise HTTPException(status_code=401, detail=str(e))

        try:
            payload = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        logger.info("Received %s delivery %s (action: %s)", x_github_event, x_github_delivery, payload.get("action"))

        accepted = False
        event = parse_event(x_github_event, payload, bot_login)
        if event is not None:
            try:
                accepted = coordinator.handle_event(event) is not None
            except Exception:
                logger.exception("Failed to dispatch %s delivery %s", x_github_event, x_github_delivery)

        return {"event": x_github_event, "delivery": x_github_delivery, "accepted": accepted}

    return app

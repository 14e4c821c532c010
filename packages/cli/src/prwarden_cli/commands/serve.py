"""serve command: run the webhook receiver."""

from __future__ import annotations

import click
import uvicorn

from prwarden_core.errors import ConfigError


@click.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True, help="Interface to bind.")
@click.option("--port", default=3000, show_default=True, type=int, help="Port to listen on.", envvar="PORT")
@click.option(
    "--model",
    type=click.Choice(["anthropic", "openai"]),
    default=None,
    help="AI model provider. Overrides config file.",
)
@click.pass_context
def serve_cmd(ctx, host: str, port: int, model: str | None):
    """Receive GitHub webhooks and review pull requests as they change.

    \b
    Required environment variables:
      GITHUB_TOKEN              GitHub token used to read PRs and post comments
      ANTHROPIC_API_KEY         Required when using --model anthropic
      OPENAI_API_KEY            Required when using --model openai
      PRWARDEN_WEBHOOK_SECRET   Webhook secret (strongly recommended)
    """
    from prwarden_cli.server import create_app
    from prwarden_core.service import build_coordinator, resolve_bot_login

    config = ctx.obj["config"]
    if model is not None:
        config["model"] = model
    if not config.get("github_token"):
        raise click.UsageError("No GitHub token found. Set GITHUB_TOKEN.")

    # Our own reviews come back as webhook deliveries; they must be recognised as ours.
    config["bot_login"] = resolve_bot_login(config)

    try:
        coordinator = build_coordinator(config)
    except ConfigError as e:
        raise click.UsageError(str(e))

    app = create_app(coordinator, config)
    uvicorn.run(app, host=host, port=port, log_config=None)

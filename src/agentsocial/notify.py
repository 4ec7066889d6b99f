"""Agent-side notifier: ``agentsocial notify "message"``.

Every agent process is started with ``AGENTSOCIAL_APP_ID`` and
``AGENTSOCIAL_CHAT_ID`` in its environment. A script or tool the agent
runs can call this command to post into the conversation that started it,
without going through the bot process.

The bot token is the ``app_secret`` of the matching app in the settings
file, falling back to ``AGENTSOCIAL_SLACK_BOT_TOKEN``.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Mapping

import structlog

from agentsocial.config import Settings, load_app_configs, settings
from agentsocial.core.errors import ConfigError

logger = structlog.get_logger()

APP_ID_ENV = "AGENTSOCIAL_APP_ID"
CHAT_ID_ENV = "AGENTSOCIAL_CHAT_ID"


def resolve_target(env: Mapping[str, str] | None = None) -> tuple[str, str]:
    """(app id, conversation id) from the agent's environment."""
    env = os.environ if env is None else env
    app_id = env.get(APP_ID_ENV, "").strip()
    chat_id = env.get(CHAT_ID_ENV, "").strip()
    if not app_id or not chat_id:
        raise ConfigError(
            f"{APP_ID_ENV} and {CHAT_ID_ENV} must be set; "
            "notify is meant to run inside an agent process"
        )
    return app_id, chat_id


def resolve_token(app_id: str, config: Settings | None = None) -> str:
    config = config or settings
    for app in load_app_configs(config.settings_file):
        if app.app_id == app_id and app.app_secret:
            return app.app_secret
    if config.slack_bot_token:
        return config.slack_bot_token
    raise ConfigError(f"No bot token for app {app_id!r}")


async def send_notification(
    message: str,
    *,
    env: Mapping[str, str] | None = None,
    config: Settings | None = None,
    client: Any = None,
) -> bool:
    """Post ``message`` to the conversation named by the environment.

    Raises ConfigError when the target or the token cannot be resolved.
    Returns False when Slack rejected the post.
    """
    from agentsocial.slack.surface import SlackSurface

    message = message.strip()
    if not message:
        raise ConfigError("Notification message is empty")

    app_id, chat_id = resolve_target(env)
    if client is None:
        from slack_sdk.web.async_client import AsyncWebClient

        client = AsyncWebClient(token=resolve_token(app_id, config))

    delivered = await SlackSurface(client).send_proactive(app_id, chat_id, message)
    logger.info("notification_sent" if delivered else "notification_failed", app_id=app_id, chat_id=chat_id)
    return delivered


def run_notify(
    message: str,
    env: Mapping[str, str] | None = None,
    config: Settings | None = None,
    client: Any = None,
) -> int:
    """Exit code for the ``notify`` subcommand."""
    try:
        delivered = asyncio.run(send_notification(message, env=env, config=config, client=client))
    except ConfigError as e:
        logger.error("notify_failed", error=str(e))
        return 1
    return 0 if delivered else 1

"""AgentSocial application entry point: Slack Bolt + FastAPI.

Architecture:
- Slack Bolt (Socket Mode) receives mentions, DMs and card actions
- CommandEngine runs the plan → approve → execute workflow per command
- FastAPI serves /health and /status; its lifespan owns engine shutdown,
  so stopping the server kills any live agent process
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException

from agentsocial.config import AppConfig, Settings, load_app_configs, settings
from agentsocial.core.errors import ConfigError
from agentsocial.core.executor import create_executor
from agentsocial.core.idempotency import IdempotencyGuard
from agentsocial.core.lifecycle import CommandEngine
from agentsocial.platforms.base import PresentationSurface

logger = structlog.get_logger()


def configure_logging(config: Settings | None = None) -> None:
    config = config or settings
    level = logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if config.env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def build_engine(
    app_config: AppConfig,
    surface: PresentationSurface,
    config: Settings | None = None,
) -> CommandEngine:
    """Wire executor, queue and guard for one bot identity."""
    config = config or settings
    project_root = app_config.project_path or config.project_path or Path.cwd()
    executor = create_executor(app_config.agent_type, config)
    return CommandEngine(
        tenant_id=app_config.app_id,
        executor=executor,
        surface=surface,
        project_root=Path(project_root),
        sandbox=app_config.sandbox,
        guard=IdempotencyGuard(config.dedup_capacity),
        lifecycle_capacity=config.lifecycle_capacity,
        max_message_chars=config.max_message_chars,
        truncated_message_chars=config.truncated_message_chars,
    )


def select_app_config(configs: list[AppConfig]) -> AppConfig:
    """First Slack app in the settings file, or a default identity."""
    for cfg in configs:
        if cfg.platform == "slack":
            return cfg
    if configs:
        logger.warning(
            "no_slack_app_configured",
            platforms=sorted({c.platform for c in configs}),
        )
    return AppConfig(app_id="agentsocial", agent_type=settings.agent_type)


# ═══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════════


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("app_starting", env=settings.env)
    yield
    engine: CommandEngine | None = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.shutdown()
    logger.info("app_stopped")


api = FastAPI(title="AgentSocial", lifespan=lifespan)


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@api.get("/status")
async def status() -> dict[str, Any]:
    engine: CommandEngine | None = getattr(api.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="engine not started")
    return engine.status()


# ═══════════════════════════════════════════════════════════════════════════════
# SOCKET MODE RUNNER
# ═══════════════════════════════════════════════════════════════════════════════


async def _run(host: str, port: int) -> int:
    import uvicorn
    from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
    from slack_bolt.async_app import AsyncApp
    from slack_sdk.web.async_client import AsyncWebClient

    from agentsocial.slack.handlers import register_handlers
    from agentsocial.slack.surface import SlackSurface

    try:
        app_config = select_app_config(load_app_configs())
    except ConfigError as e:
        logger.error("settings_invalid", error=str(e))
        return 1

    web_client = AsyncWebClient(token=settings.slack_bot_token)
    bolt = AsyncApp(
        client=web_client,
        signing_secret=settings.slack_signing_secret,
        process_before_response=False,
    )
    engine = build_engine(app_config, SlackSurface(web_client, agent_name=app_config.agent_type))

    version = await engine.executor.agent_version()
    if version is None:
        logger.error(
            "agent_not_installed",
            agent_bin=settings.agent_bin,
            hint=f"Install the agent CLI and run '{settings.agent_bin}' once to log in",
        )
        return 1
    logger.info("agent_found", agent_bin=settings.agent_bin, version=version[:40])

    register_handlers(bolt, engine)
    api.state.engine = engine
    engine.prewarm()

    handler = AsyncSocketModeHandler(bolt, settings.slack_app_token)
    await handler.connect_async()
    logger.info("bot_online", app_id=app_config.app_id, project=str(engine.project_root))

    server = uvicorn.Server(uvicorn.Config(api, host=host, port=port, log_level=settings.log_level.lower()))
    try:
        await server.serve()
    finally:
        await handler.close_async()
    return 0


def main(argv: list[str] | None = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Run the AgentSocial Slack bot")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address for /health and /status")
    parser.add_argument("--port", type=int, default=8787, help="Port for /health and /status")
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("serve", help="Run the bot (default)")
    notify = commands.add_parser("notify", help="Post a message to the chat that started this agent")
    notify.add_argument("message", help="Text to post")
    args = parser.parse_args(argv)

    configure_logging()
    if args.command == "notify":
        from agentsocial.notify import run_notify

        return run_notify(args.message)

    try:
        return asyncio.run(_run(args.host, args.port))
    except KeyboardInterrupt:
        logger.info("shutting_down", reason="keyboard_interrupt")
        return 0


if __name__ == "__main__":
    sys.exit(main())

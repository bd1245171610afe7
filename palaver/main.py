"""palaver entry point.

Initializes all components and starts the server:
  Settings -> TelemetrySink -> Transport -> ToolRegistry -> ClientPool -> App -> Uvicorn

Components live inside the Starlette lifespan so they share uvicorn's
event loop.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from starlette.applications import Starlette

from palaver.api.rest import create_app
from palaver.config import Settings
from palaver.core.pool import ClientPool
from palaver.events import TelemetryEvent, TelemetrySink
from palaver.tools.builtin import register_builtin_tools
from palaver.tools.registry import ToolRegistry
from palaver.transport.anthropic import AnthropicTransport

logger = logging.getLogger(__name__)


async def _log_telemetry(event: TelemetryEvent) -> None:
    logger.debug("telemetry %s session=%s %s", event.type, event.session_id, event.data)


def create_components(settings: Settings) -> dict[str, Any]:
    """Build all components in dependency order. Nothing is started yet."""
    telemetry = TelemetrySink(enabled=settings.telemetry_enabled)
    telemetry.on("*", _log_telemetry)

    transport = AnthropicTransport(settings)

    registry = ToolRegistry()
    register_builtin_tools(registry, settings)

    pool = ClientPool(settings, transport, registry, telemetry=telemetry)
    return {
        "telemetry": telemetry,
        "transport": transport,
        "registry": registry,
        "pool": pool,
    }


async def start_components(components: dict[str, Any]) -> None:
    await components["telemetry"].start()
    await components["transport"].start()
    await components["pool"].start()


async def shutdown_components(components: dict[str, Any]) -> None:
    """Stop components in reverse order, logging failures."""
    for key in ("pool", "transport", "telemetry"):
        component = components.get(key)
        if component is None:
            continue
        try:
            if key == "transport":
                await component.close()
            else:
                await component.stop()
        except Exception:
            logger.warning("Shutdown of %s failed", key)


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app with a lifespan owning the components."""
    components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await start_components(components)
        app.state.components = components
        logger.info(
            "palaver started: model=%s role=%s approval=%s workspace=%s",
            settings.model,
            settings.role,
            settings.approval_mode,
            settings.workspace_dir,
        )
        yield
        await shutdown_components(components)

    return create_app(components["pool"], settings, lifespan=lifespan)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting palaver on %s:%d", settings.host, settings.port)
    logger.info("Models: %s (default=%s, lite=%s, fallback=%s)",
                settings.model, settings.default_model, settings.lite_model, settings.fallback_model)
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set -- /chat endpoints will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()

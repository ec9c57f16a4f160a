"""FastAPI application that rolls dice."""

from __future__ import annotations

import logging
import random

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from .config import AppConfig
from .telemetry.metrics import get_metrics
from .telemetry.tracing import get_current_span, traced

logger = logging.getLogger(__name__)


@traced("roll")
def roll_die(player: str | None = None) -> int:
    """Roll a six-sided die, recording the result on the span, a counter and the log."""
    value = random.randint(1, 6)
    get_current_span().set_attribute("roll.value", value)
    get_metrics().record_roll(value)
    if player:
        logger.info("%s is rolling the dice", player, extra={"result": value})
    else:
        logger.info("Anonymous player is rolling the dice", extra={"result": value})
    return value


def create_root_app(config: AppConfig | None = None) -> FastAPI:
    config = config or AppConfig()
    app = FastAPI(
        title=config.telemetry.service_name,
        version=config.telemetry.service_version,
    )

    @app.get("/rolldice/", response_class=PlainTextResponse)
    async def rolldice() -> str:
        return f"{roll_die()}\n"

    @app.get("/rolldice/{player}", response_class=PlainTextResponse)
    async def rolldice_for_player(player: str) -> str:
        return f"{roll_die(player)}\n"

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    # Server spans and http.server.* metrics, with http.route set from the
    # route template rather than the raw path.
    FastAPIInstrumentor.instrument_app(app, excluded_urls="healthz")
    return app

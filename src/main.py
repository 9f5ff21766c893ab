"""Entry point for the fleet membership and call-admission control plane."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.routes import router as api_router
from config.settings import Settings, get_settings
from control.plane import ControlPlane

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = []
    for sink in settings.log_sinks:
        if sink == "console":
            handlers.append(logging.StreamHandler())
        elif sink == "file":
            settings.log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))
        else:
            raise ValueError(f"Unsupported log destination: {sink}")

    logging.basicConfig(
        level=settings.log_level,
        format=LOG_FORMAT,
        handlers=handlers or [logging.StreamHandler()],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    plane = ControlPlane.build(get_settings())
    await plane.start()
    app.state.control_plane = plane
    try:
        yield
    finally:
        await plane.stop()


settings = get_settings()
configure_logging(settings)

app = FastAPI(
    title="Fleet Control Plane",
    description="Gossip-based fleet membership, load-aware placement and PSTN call admission.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")

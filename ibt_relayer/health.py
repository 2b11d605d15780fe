"""
Liveness probe for the relayer process.

GET /health always reports "healthy" while the process serves requests;
per-direction counters are informational.
"""

from typing import TYPE_CHECKING, Any, Optional

from fastapi import FastAPI
from pydantic import BaseModel, Field

from . import __version__

if TYPE_CHECKING:
    from .relayer import RelayerService


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Relayer version")
    directions: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Per-direction watcher counters",
    )


def create_app(service: Optional["RelayerService"] = None) -> FastAPI:
    """Build the probe app, optionally reporting a running service."""
    app = FastAPI(
        title="IBT Bridge Relayer",
        description="Liveness probe",
        version=__version__,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            version=__version__,
            directions=service.stats() if service else {},
        )

    return app

"""Shared Pydantic models: service responses and the backend result envelope."""

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Standard health check response."""

    status: str = "healthy"
    service: str
    version: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
    status_code: int = 500


class ResultEnvelope(BaseModel):
    """``{ok, error, ...}`` wrapper the quiz backend puts around every body."""

    model_config = ConfigDict(extra="allow")

    ok: bool = True
    error: str | None = None

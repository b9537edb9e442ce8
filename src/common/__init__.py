"""Common shared utilities for the quiz recommendation services."""

from common.config import Settings
from common.logging import setup_logging
from common.models import ErrorResponse, HealthResponse, ResultEnvelope

__all__ = ["Settings", "setup_logging", "HealthResponse", "ErrorResponse", "ResultEnvelope"]

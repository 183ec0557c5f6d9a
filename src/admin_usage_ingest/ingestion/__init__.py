"""Ingestion pipeline for provider admin usage APIs."""

from .schemas import IngestionTelemetry, IngestionWindow, UsageEvent
from .service import IngestionService

__all__ = ["IngestionService", "IngestionTelemetry", "IngestionWindow", "UsageEvent"]

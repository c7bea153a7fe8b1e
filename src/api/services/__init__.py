"""Read-side services for the API."""

from src.api.services.history_service import HistoryService

__all__ = ["HistoryService"]

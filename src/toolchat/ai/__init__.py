"""AI client, generation sessions and tool wiring."""

from .client import AIClient, AIStreamEvent, Availability, ClientSettings

__all__ = ["AIClient", "AIStreamEvent", "Availability", "ClientSettings"]

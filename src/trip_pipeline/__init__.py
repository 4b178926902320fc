"""Trip Pipeline Service: multi-agent travel itinerary generation."""

__version__ = "1.0.0"

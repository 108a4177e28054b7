"""Configuration management module for TravelWatch."""

from travelwatch.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]

"""Configuration package."""
from agent_graph.config.settings import get_settings, reset_settings, Settings

__all__ = ["get_settings", "reset_settings", "Settings"]

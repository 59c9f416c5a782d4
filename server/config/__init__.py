"""
Deep Search Server Configuration Module
Manages all configuration for the search answer pipeline
"""

from .settings import settings, get_settings
from .logging_config import setup_logging

__all__ = ["settings", "get_settings", "setup_logging"]

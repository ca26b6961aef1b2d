"""Environment-driven settings for the data source layer."""

from .app import AppSettings, get_settings


__all__ = ["AppSettings", "get_settings"]

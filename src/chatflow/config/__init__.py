"""Configuration module for Chatflow."""

from chatflow.config.loader import SettingsLoader
from chatflow.config.settings import (
    EngineSettings,
    FlowSettings,
    LoggingSettings,
    PersistenceSettings,
    RuntimeSettings,
    ScriptSettings,
)

__all__ = [
    "SettingsLoader",
    "RuntimeSettings",
    "EngineSettings",
    "FlowSettings",
    "LoggingSettings",
    "PersistenceSettings",
    "ScriptSettings",
]

"""Infrastructure layer for Conductor."""

from conductor.infrastructure.config import Config, ConfigManager
from conductor.infrastructure.credentials import (
    KeyringCredentialResolver,
    StaticCredentialResolver,
    validate_api_key,
)
from conductor.infrastructure.database import Database
from conductor.infrastructure.event_log import DatabaseEventSink
from conductor.infrastructure.logger import get_logger, setup_logging

__all__ = [
    "Config",
    "ConfigManager",
    "Database",
    "DatabaseEventSink",
    "KeyringCredentialResolver",
    "StaticCredentialResolver",
    "get_logger",
    "setup_logging",
    "validate_api_key",
]

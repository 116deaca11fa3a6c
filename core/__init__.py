"""
Core utilities and configuration for the activity metrics sync.

Modules:
    config: Application configuration and environment variable management
    database: Engine and session factory construction
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration
    timeutils: UTC timestamp helpers

Usage:
    from core.config import settings
    from core.database import create_db_engine, create_session_factory
    from core.exceptions import TransportError, AuthenticationError
    from core.logging import setup_logging
"""

__all__ = [
    "settings",
    "create_db_engine",
    "create_session_factory",
    "setup_logging",
    # Exceptions
    "ETLException",
    "ConfigError",
    "TransportError",
    "ExtractionError",
    "APIExtractionError",
    "AuthenticationError",
    "RateLimitError",
    "TransformationError",
    "ValidationError",
    "IngestionError",
    "StoreError",
    "RetryableError",
    "NonRetryableError",
]

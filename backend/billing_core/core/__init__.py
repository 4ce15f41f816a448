"""
Core module exports.
"""

from .config import Config, get_config, load_config, Environment
from .exceptions import (
    AppException,
    AuthenticationError,
    ConfigurationError,
    DatabaseError,
    MethodNotSupportedError,
    NotFoundError,
    ProviderError,
    ProviderFetchError,
    ProviderRequestError,
    StateConflictError,
    SubscriptionError,
    ValidationError,
    VerificationError,
)
from .logging_config import setup_logging, get_logger
from .results import OutcomeKind, ProviderOutcome, call_provider

__all__ = [
    # Config
    "Config",
    "get_config",
    "load_config",
    "Environment",

    # Exceptions
    "AppException",
    "AuthenticationError",
    "ConfigurationError",
    "DatabaseError",
    "MethodNotSupportedError",
    "NotFoundError",
    "ProviderError",
    "ProviderFetchError",
    "ProviderRequestError",
    "StateConflictError",
    "SubscriptionError",
    "ValidationError",
    "VerificationError",

    # Logging
    "setup_logging",
    "get_logger",

    # Provider outcomes
    "OutcomeKind",
    "ProviderOutcome",
    "call_provider",
]

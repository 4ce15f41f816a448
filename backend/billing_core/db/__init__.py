"""
Database package: engine/session management, models and repositories.
"""

from .base import Base
from .session import create_engine_from_config, create_session_factory, init_models

__all__ = [
    "Base",
    "create_engine_from_config",
    "create_session_factory",
    "init_models",
]

"""
ADT Tools Configuration Package.

This package contains the centralized configuration for the ADT workflow server.
"""

from config.manager import EnvironmentManager, env_manager
from config.types import (
    RepositoryInfo,
    AdtConnectionConfig,
)

# Re-export the singleton instance for easy access
env = env_manager

__all__ = [
    "EnvironmentManager",
    "env_manager",
    "env",
    "RepositoryInfo",
    "AdtConnectionConfig",
]

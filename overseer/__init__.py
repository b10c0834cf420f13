"""Cron-scheduled command execution across local and SSH targets."""

from .errors import ConfigurationError, OverseerError
from .service import Overseer

__all__ = ["ConfigurationError", "Overseer", "OverseerError"]
__version__ = "0.1.0"

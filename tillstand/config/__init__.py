"""Configuration management."""
from tillstand.config.loader import ConfigLoader
from tillstand.core.errors import ConfigValidationError

__all__ = ['ConfigLoader', 'ConfigValidationError']

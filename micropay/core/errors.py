"""Configuration error definitions."""


class ConfigurationError(RuntimeError):
    """Raised when configuration values are invalid or missing."""

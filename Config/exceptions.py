# Config/exceptions.py
"""
Custom exceptions for configuration validation.
These provide clear, actionable error messages when config is invalid.
"""

from typing import Optional, Any


class ConfigError(Exception):
    """Base exception for all configuration errors."""
    pass


class ConfigValidationError(ConfigError):
    """Raised when a config value fails validation."""

    def __init__(self, key: str, value: Any, reason: str, suggestion: Optional[str] = None):
        self.key = key
        self.value = value
        self.reason = reason
        self.suggestion = suggestion

        msg = f"Invalid config: {key}={value!r}\n  Reason: {reason}"
        if suggestion:
            msg += f"\n  Suggestion: {suggestion}"
        super().__init__(msg)


class ConfigRangeError(ConfigValidationError):
    """Raised when a numeric value is outside allowed range."""

    def __init__(self, key: str, value: Any, min_val: Optional[float], max_val: Optional[float]):
        bounds = []
        if min_val is not None:
            bounds.append(f">= {min_val}")
        if max_val is not None:
            bounds.append(f"<= {max_val}")

        suggestion = None
        if min_val is not None and value < min_val:
            suggestion = f"Try setting {key}={min_val} or higher"
        elif max_val is not None and value > max_val:
            suggestion = f"Try setting {key}={max_val} or lower"

        super().__init__(key, value, f"Value must be {' and '.join(bounds)}", suggestion)


class ConfigTypeError(ConfigValidationError):
    """Raised when a value has the wrong type."""

    def __init__(self, key: str, value: Any, expected_type: type):
        reason = f"Expected {expected_type.__name__}, got {type(value).__name__}"
        super().__init__(key, value, reason)


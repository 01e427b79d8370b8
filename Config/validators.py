# Config/validators.py
"""
Configuration validation for the fuel ledger.

Checks the tunable allocation constants in Config/constants_allocation.py:
- Type correctness
- Range constraints
- Volume-rule sanity (min <= max for each destination/product)

Usage:
    from Config.validators import validate_all_config

    validate_all_config()  # Raises ConfigError if invalid

    result = validate_all_config(raise_on_error=False)
    for key, msg in result.warnings:
        ...
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Optional, List, Tuple

from .exceptions import ConfigError, ConfigRangeError
from .constants_allocation import PERMIT_TOUCH_MAX


# ============================================================================
# Validation Rule System
# ============================================================================

class ValidationRule:
    """Base class for validation rules."""

    def __init__(self, key: str, description: str):
        self.key = key
        self.description = description

    def validate(self, value: Any) -> Optional[str]:
        """
        Validate a value.

        Returns:
            None if valid
            Error message string if invalid
        """
        raise NotImplementedError


class TypeRule(ValidationRule):
    """Validates value is correct type."""

    def __init__(self, key: str, expected_type: type, description: str = ""):
        super().__init__(key, description or f"Must be {expected_type.__name__}")
        self.expected_type = expected_type

    def validate(self, value: Any) -> Optional[str]:
        if self.expected_type in (int, Decimal):
            if isinstance(value, bool) or not isinstance(value, (int, Decimal)):
                return f"Expected numeric type, got {type(value).__name__}"
        elif not isinstance(value, self.expected_type):
            return f"Expected {self.expected_type.__name__}, got {type(value).__name__}"
        return None


class RangeRule(ValidationRule):
    """Validates numeric value is within an inclusive range."""

    def __init__(self, key: str, min_val=None, max_val=None, description: str = ""):
        self.min_val = min_val
        self.max_val = max_val
        if not description:
            parts = []
            if min_val is not None:
                parts.append(f">= {min_val}")
            if max_val is not None:
                parts.append(f"<= {max_val}")
            description = " and ".join(parts) if parts else "no range constraint"
        super().__init__(key, description)

    def validate(self, value: Any) -> Optional[str]:
        try:
            num = Decimal(str(value))
        except (ArithmeticError, TypeError, ValueError):
            return f"Cannot convert to number: {value!r}"

        if self.min_val is not None and num < Decimal(str(self.min_val)):
            return f"Must be >= {self.min_val}, got {num}"
        if self.max_val is not None and num > Decimal(str(self.max_val)):
            return f"Must be <= {self.max_val}, got {num}"
        return None


# ============================================================================
# Allocation Constants Validation Rules
# ============================================================================

ALLOCATION_RULES = [
    TypeRule("PERMIT_TOUCH_QUANTITY", Decimal, "Litres drawn from the selected permit entry"),
    RangeRule("PERMIT_TOUCH_QUANTITY", min_val=0, max_val=PERMIT_TOUCH_MAX),

    TypeRule("UNDO_WINDOW_SECONDS", int, "Seconds an allocation stays undoable"),
    RangeRule("UNDO_WINDOW_SECONDS", min_val=0, max_val=86400, description="0s-1 day"),

    TypeRule("SYNC_INTERVAL_SECONDS", int, "Reconciliation loop period"),
    RangeRule("SYNC_INTERVAL_SECONDS", min_val=10, max_val=86400, description="10s-1 day"),
]


# ============================================================================
# Validation Engine
# ============================================================================

class ValidationResult:
    """Result of validation check."""

    def __init__(self):
        self.errors: List[Tuple[str, str]] = []  # (key, error_message)
        self.warnings: List[Tuple[str, str]] = []  # (key, warning_message)

    def add_error(self, key: str, message: str):
        self.errors.append((key, message))

    def add_warning(self, key: str, message: str):
        self.warnings.append((key, message))

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def __bool__(self) -> bool:
        return self.is_valid

    def format_report(self, include_warnings: bool = True) -> str:
        """Format validation result as human-readable report."""
        lines = []

        if self.errors:
            lines.append("VALIDATION ERRORS:")
            for key, msg in self.errors:
                lines.append(f"  ❌ {key}: {msg}")

        if include_warnings and self.warnings:
            if lines:
                lines.append("")
            lines.append("VALIDATION WARNINGS:")
            for key, msg in self.warnings:
                lines.append(f"  ⚠️  {key}: {msg}")

        if not self.errors and not self.warnings:
            lines.append("✅ All validation checks passed!")

        return "\n".join(lines)


def validate_config_dict(config: dict, rules: List[ValidationRule]) -> ValidationResult:
    """
    Validate a config dictionary against a set of rules.

    Args:
        config: Dictionary of config values
        rules: List of validation rules

    Returns:
        ValidationResult with errors/warnings
    """
    result = ValidationResult()

    for rule in rules:
        if rule.key not in config:
            result.add_warning(rule.key, "Not found in config (using default)")
            continue

        error = rule.validate(config[rule.key])
        if error:
            result.add_error(rule.key, error)

    return result


def validate_volume_rules(rules: dict) -> ValidationResult:
    """Every (destination, product) window must be positive with min <= max."""
    result = ValidationResult()
    for destination, products in rules.items():
        for product, (low, high) in products.items():
            key = f"DESTINATION_VOLUME_RULES[{destination}][{product}]"
            if low <= 0:
                result.add_error(key, f"Minimum must be positive, got {low}")
            if low > high:
                result.add_error(key, f"Minimum {low} exceeds maximum {high}")
    return result


def validate_allocation_constants() -> ValidationResult:
    """Validate Config.constants_allocation."""
    from Config import constants_allocation as ca

    config = {
        "PERMIT_TOUCH_QUANTITY": ca.PERMIT_TOUCH_QUANTITY,
        "UNDO_WINDOW_SECONDS": ca.UNDO_WINDOW_SECONDS,
        "SYNC_INTERVAL_SECONDS": ca.SYNC_INTERVAL_SECONDS,
    }
    result = validate_config_dict(config, ALLOCATION_RULES)

    volume_result = validate_volume_rules(ca.DESTINATION_VOLUME_RULES)
    result.errors.extend(volume_result.errors)
    result.warnings.extend(volume_result.warnings)
    return result


def require_in_range(key: str, value, min_val=None, max_val=None):
    """Raise ConfigRangeError when a single runtime setting is out of bounds."""
    if (min_val is not None and value < min_val) or (max_val is not None and value > max_val):
        raise ConfigRangeError(key, value, min_val, max_val)
    return value


def validate_all_config(raise_on_error: bool = True) -> Optional[ValidationResult]:
    """
    Validate all configuration.

    Args:
        raise_on_error: If True, raise ConfigError on validation failure

    Returns:
        ValidationResult if raise_on_error=False
        None if raise_on_error=True (raises on error instead)

    Raises:
        ConfigError: If validation fails and raise_on_error=True
    """
    result = validate_allocation_constants()

    if not result.is_valid and raise_on_error:
        raise ConfigError(f"Config validation failed:\n{result.format_report(include_warnings=False)}")

    return result if not raise_on_error else None

"""
Utils Package

Provides utility modules for:
- validation_errors: Structured HTTP error bodies for the API layer
"""

from .validation_errors import (
    ErrorResponse,
    raise_missing_parameter,
    raise_invalid_parameter,
    raise_validation_error,
    raise_not_found,
    raise_conflict,
    validate_date_range,
)

__all__ = [
    'ErrorResponse',
    'raise_missing_parameter',
    'raise_invalid_parameter',
    'raise_validation_error',
    'raise_not_found',
    'raise_conflict',
    'validate_date_range',
]

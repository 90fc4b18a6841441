"""
Structured Error Response Utilities

Standardized error bodies for the reconciliation API so clients can tell
bad input, missing records and rejected operations apart.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter" | "validation_error" | "not_found" | "conflict",
    "parameter": "start_date",
    "message": "start_date is required"
}
"""

from datetime import date
from typing import Optional, Any

from fastapi import HTTPException, status


class ErrorResponse:
    """Structured error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        """
        Create a missing parameter error response.

        Args:
            parameter: Name of the missing parameter
            message: Optional custom message

        Returns:
            Structured error dict
        """
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error response.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)

        Returns:
            Structured error dict
        """
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]
        return response

    @staticmethod
    def validation_error(message: str, details: Optional[dict] = None) -> dict:
        response = {
            "error": "validation_error",
            "parameter": None,
            "message": message
        }
        if details:
            response["details"] = details
        return response

    @staticmethod
    def not_found(resource: str, identifier: str) -> dict:
        return {
            "error": "not_found",
            "resource": resource,
            "identifier": identifier,
            "message": f"{resource} {identifier} not found"
        }

    @staticmethod
    def conflict(message: str) -> dict:
        return {
            "error": "conflict",
            "parameter": None,
            "message": message
        }


def raise_missing_parameter(parameter: str, message: Optional[str] = None):
    """
    Raise HTTPException with structured missing parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ErrorResponse.missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    """
    Raise HTTPException with structured invalid parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ErrorResponse.invalid_parameter(parameter, message, value)
    )


def raise_validation_error(message: str, details: Optional[dict] = None):
    """
    Raise HTTPException with structured validation error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ErrorResponse.validation_error(message, details)
    )


def raise_not_found(resource: str, identifier: str):
    """Raise HTTPException 404 naming the missing resource."""
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=ErrorResponse.not_found(resource, identifier)
    )


def raise_conflict(message: str):
    """Raise HTTPException 409 for an operation rejected without changes."""
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=ErrorResponse.conflict(message)
    )


def validate_date_range(start_date: Optional[date], end_date: Optional[date]):
    """
    Validate a required inclusive date range.

    Args:
        start_date: First day of the range
        end_date: Last day of the range

    Returns:
        (start_date, end_date)

    Raises:
        HTTPException with structured error if either bound is missing
        or start_date is after end_date
    """
    if start_date is None:
        raise_missing_parameter("start_date")
    if end_date is None:
        raise_missing_parameter("end_date")
    if start_date > end_date:
        raise_invalid_parameter(
            "start_date",
            "start_date must be on or before end_date",
            start_date.isoformat()
        )
    return start_date, end_date

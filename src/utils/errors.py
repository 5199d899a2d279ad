"""
Error handling for the project assistant
Provides the typed exceptions raised by the command pipeline and a
centralized converter into response-ready dictionaries
"""

import logging
import traceback
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """Error codes for different types of errors"""
    AUTHORIZATION_ERROR = "AUTH_002"
    VALIDATION_ERROR = "VAL_001"
    NOT_FOUND_ERROR = "VAL_404"
    CONFIGURATION_ERROR = "CONFIG_001"
    UPSTREAM_ERROR = "LLM_001"
    UNKNOWN_ERROR = "UNKNOWN_001"


class ProjectManagementError(Exception):
    """Base exception for the project assistant"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary"""
        return {
            'error_code': self.error_code.value,
            'message': self.message,
            'details': self.details
        }


class AuthorizationError(ProjectManagementError):
    """Caller is not allowed to perform the operation"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.AUTHORIZATION_ERROR, details)


class ValidationError(ProjectManagementError):
    """Missing or invalid required field"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details)


class NotFoundError(ProjectManagementError):
    """Referenced record does not exist in the project"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.NOT_FOUND_ERROR, details)


class ConfigurationError(ProjectManagementError):
    """Configuration related errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR, details)


class UpstreamError(ProjectManagementError):
    """External completion call failed or returned malformed data"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.UPSTREAM_ERROR, details)


def error_handler(error: Exception) -> Dict[str, Any]:
    """
    Centralized error handler that converts exceptions to standardized format

    Args:
        error: Exception to handle

    Returns:
        Dictionary with error information
    """
    if isinstance(error, ProjectManagementError):
        return {
            'error': True,
            'error_code': error.error_code.value,
            'message': error.message,
            'details': error.details,
            'type': error.__class__.__name__
        }
    return {
        'error': True,
        'error_code': ErrorCode.UNKNOWN_ERROR.value,
        'message': str(error),
        'details': {
            'traceback': traceback.format_exc()
        },
        'type': error.__class__.__name__
    }


def log_error(error: Exception, context: Optional[Dict[str, Any]] = None):
    """Log error with context information"""
    error_info = error_handler(error)
    if context:
        error_info['context'] = context

    logger.error(
        f"❌ {error_info['type']} [{error_info['error_code']}]: {error_info['message']}"
        + (f" | context={context}" if context else "")
    )

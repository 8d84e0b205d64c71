"""
Fiscalismia - Core Module

Contains configuration, logging, security, middleware and error handling.
"""

from .errors import ErrorResponse, FiscalismiaError, setup_error_handlers
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware, get_request_id
from .security import AuthContext, get_current_user

__all__ = [
    # Security
    "AuthContext",
    "get_current_user",
    # Middleware
    "RequestLoggingMiddleware",
    "RateLimitMiddleware",
    "get_request_id",
    # Errors
    "ErrorResponse",
    "FiscalismiaError",
    "setup_error_handlers",
]

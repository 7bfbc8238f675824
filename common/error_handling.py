"""
Error taxonomy for the transaction pipeline and the ops API error response
"""
from typing import Optional, Dict, Any
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import logging
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float

class ErrorCodes:
    """Standard error codes"""
    # Pipeline
    DECODE_ERROR = "DECODE_ERROR"
    PERSIST_ERROR = "PERSIST_ERROR"
    HISTORY_STORE_ERROR = "HISTORY_STORE_ERROR"

    # System Errors
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

class ServiceError(Exception):
    """Custom exception for service-level errors"""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class DecodeError(ServiceError):
    """Payload could not be turned into a Transaction"""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.DECODE_ERROR, message, original_error)

class PersistError(ServiceError):
    """Storage rejected or could not accept the transaction"""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.PERSIST_ERROR, message, original_error)

class HistoryStoreError(ServiceError):
    """Recent-history backing store unavailable"""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.HISTORY_STORE_ERROR, message, original_error)

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    context: Dict[str, Any] = None,
) -> JSONResponse:
    """Create standardized error response"""
    error_response = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, context=context),
        timestamp=time.time(),
    )
    return JSONResponse(status_code=status_code, content=error_response.model_dump())

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""

    status_code_map = {
        ErrorCodes.SERVICE_UNAVAILABLE: 503,
        ErrorCodes.HISTORY_STORE_ERROR: 503,
        ErrorCodes.PERSIST_ERROR: 503,
        ErrorCodes.DECODE_ERROR: 400,
    }

    status_code = status_code_map.get(exc.code, 500)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    context = None
    if exc.original_error:
        context = {"cause": type(exc.original_error).__name__}

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        context=context,
    )

def add_error_handlers(app):
    """Add error handlers to FastAPI app"""
    app.add_exception_handler(ServiceError, service_exception_handler)

"""
Global Exception Handling

Error taxonomy for the upload pipeline, the circuit breaker guarding
external providers, and FastAPI handlers that turn pipeline errors into
structured JSON responses.
"""

import traceback
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from photo_pipeline.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class PipelineBaseException(Exception):
    """Base exception for the upload pipeline."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        """Stable error kind recorded on job records."""
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "stage": self.stage}


class ValidationReason(str, Enum):
    """Why an upload was rejected at intake."""
    UNSUPPORTED_TYPE = "UnsupportedType"
    TOO_LARGE = "TooLarge"
    TOO_SMALL = "TooSmall"
    CORRUPT_IMAGE = "CorruptImage"
    DIMENSIONS_TOO_SMALL = "DimensionsTooSmall"


class ValidationError(PipelineBaseException):
    """Raised when an uploaded file fails intake validation."""

    def __init__(self, message: str, reason: ValidationReason, **kwargs):
        super().__init__(message, code=400, **kwargs)
        self.reason = reason
        self.details["reason"] = reason.value

    @property
    def kind(self) -> str:
        return f"ValidationError.{self.reason.value}"


class StorageError(PipelineBaseException):
    """Raised when storage operations fail."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        if path:
            self.details["path"] = path


class QuotaExceededError(PipelineBaseException):
    """Raised when an owner has no remaining upload quota."""

    def __init__(self, message: str, remaining: int = 0, **kwargs):
        super().__init__(message, code=403, **kwargs)
        self.details["remaining"] = remaining


class QuotaCheckError(PipelineBaseException):
    """Raised when the quota gate cannot be consulted."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=503, **kwargs)


class ExternalAPIError(PipelineBaseException):
    """Raised when an external provider call fails."""

    def __init__(self, message: str, service: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.details["service"] = service
        self.details["http_status"] = http_status


class AIServiceError(ExternalAPIError):
    """Raised by the vision provider. Never fails a job."""

    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, service="vision", http_status=http_status, **kwargs)


class BackgroundRemovalError(ExternalAPIError):
    """Raised by the background removal provider. Never fails a job."""

    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, service="background_removal", http_status=http_status, **kwargs)


class ThumbnailError(PipelineBaseException):
    """A single size class could not be derived or stored."""

    def __init__(self, message: str, size_class: str, **kwargs):
        super().__init__(message, code=500, **kwargs)
        self.details["size_class"] = size_class


class CleanupError(PipelineBaseException):
    """Raised when deleting a failed job's objects fails. Logged only."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class PersistenceError(PipelineBaseException):
    """Raised when the job record cannot be written."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class JobCancelledError(PipelineBaseException):
    """Raised between stages once the batch has been cancelled."""

    def __init__(self, message: str = "Batch was cancelled", **kwargs):
        super().__init__(message, code=409, **kwargs)


class InvalidTransitionError(PipelineBaseException):
    """Raised when a job is moved out of the linear stage order."""

    def __init__(self, current: str, requested: str, **kwargs):
        super().__init__(
            f"Cannot move job from '{current}' to '{requested}'",
            code=500,
            **kwargs
        )
        self.details["current"] = current
        self.details["requested"] = requested


class CircuitBreakerOpenError(PipelineBaseException):
    """Raised when circuit breaker is open."""

    def __init__(self, service: str, **kwargs):
        super().__init__(
            f"Service '{service}' is temporarily unavailable (circuit breaker open)",
            code=503,
            **kwargs
        )
        self.details["service"] = service


class JobNotFoundError(PipelineBaseException):
    """Raised when a status lookup does not match any job."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}", code=404, job_id=job_id)


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for graceful failure handling.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        if self._state == "OPEN" and self._last_failure_time:
            elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
            if elapsed >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._half_open_calls = 0
        return self._state

    def can_execute(self) -> bool:
        """Check if request can proceed."""
        state = self.state

        if state == "CLOSED":
            return True
        if state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls
        return False

    def record_success(self):
        """Record a successful call."""
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info("circuit_breaker_closed", circuit=self.name)
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[Exception] = None):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = datetime.now(timezone.utc)

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_reopened",
                circuit=self.name,
                error=str(error) if error else None
            )
        elif self._failure_count >= self.failure_threshold:
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=str(error) if error else None
            )


# Global circuit breakers for external services
circuit_breakers: Dict[str, CircuitBreaker] = {
    "vision": CircuitBreaker("vision", failure_threshold=3, recovery_timeout=120),
    "background_removal": CircuitBreaker("background_removal", failure_threshold=3, recovery_timeout=60),
}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get or create a circuit breaker for a service."""
    if name not in circuit_breakers:
        circuit_breakers[name] = CircuitBreaker(name)
    return circuit_breakers[name]


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(PipelineBaseException)
    async def pipeline_exception_handler(request: Request, exc: PipelineBaseException):
        logger.error(
            "pipeline_exception",
            error=exc.message,
            kind=exc.kind,
            code=exc.code,
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "kind": exc.kind,
                "job_id": exc.job_id,
                "code": exc.code,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "job_id": job_id_var.get(),
                "code": 500,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )

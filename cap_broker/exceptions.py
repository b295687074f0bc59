"""Custom exception classes for the CAP service broker."""

from typing import Optional, Dict, Any, Tuple
from enum import Enum


class ErrorKind(str, Enum):
    """Top-level failure taxonomy used to pick the HTTP response."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    OPERATION_IN_PROGRESS = "operation_in_progress"
    ASYNC_REQUIRED = "async_required"
    REQUIRES_APP = "requires_app"
    UPSTREAM = "upstream"
    STORAGE = "storage"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    """Error codes for different types of failures."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"

    # Service Broker errors
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    INSTANCE_ALREADY_EXISTS = "INSTANCE_ALREADY_EXISTS"
    INSTANCE_GONE = "INSTANCE_GONE"
    INSTANCE_CONFLICT = "INSTANCE_CONFLICT"
    BINDING_NOT_FOUND = "BINDING_NOT_FOUND"
    BINDING_ALREADY_EXISTS = "BINDING_ALREADY_EXISTS"
    BINDING_GONE = "BINDING_GONE"
    BINDING_CONFLICT = "BINDING_CONFLICT"
    OPERATION_NOT_FOUND = "OPERATION_NOT_FOUND"
    OPERATION_IN_PROGRESS = "OPERATION_IN_PROGRESS"
    ASYNC_REQUIRED = "ASYNC_REQUIRED"
    REQUIRES_APP = "REQUIRES_APP"
    UNSUPPORTED_API_VERSION = "UNSUPPORTED_API_VERSION"

    # Upstream errors
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    UPSTREAM_BAD_REQUEST = "UPSTREAM_BAD_REQUEST"
    UPSTREAM_AUTH_FAILED = "UPSTREAM_AUTH_FAILED"
    UPSTREAM_RESOURCE_GONE = "UPSTREAM_RESOURCE_GONE"
    UPSTREAM_CONFLICT = "UPSTREAM_CONFLICT"
    UPSTREAM_UNPROCESSABLE = "UPSTREAM_UNPROCESSABLE"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"

    # Storage errors
    STORAGE_CONNECTION_ERROR = "STORAGE_CONNECTION_ERROR"
    STORAGE_OPERATION_FAILED = "STORAGE_OPERATION_FAILED"


class BrokerError(Exception):
    """Base exception class for the service broker.

    Every subclass carries a ``kind`` from :class:`ErrorKind` and the HTTP
    status it is reported with, so callers branch on the kind rather than
    probing attributes.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    http_status: int = 500
    osb_error: Optional[str] = None

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        http_status: Optional[int] = None
    ):
        """Initialize the exception.

        Args:
            message: Human-readable error message, safe to return to callers
            error_code: Specific error code for the failure
            details: Additional context about the error (logged, not returned)
            cause: The underlying exception that caused this error
            http_status: Overrides the class default status
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause
        if http_status is not None:
            self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        result = {
            'kind': self.kind.value,
            'error': self.error_code.value,
            'message': self.message,
            'details': self.details
        }

        if self.cause:
            result['cause'] = str(self.cause)

        return result

    def to_osb_dict(self) -> Dict[str, Any]:
        """Render the OSB error body: a description plus an OSB error code when one applies."""
        body = {'description': self.message}
        if self.osb_error:
            body['error'] = self.osb_error
        return body

    def __str__(self) -> str:
        """String representation of the exception."""
        base_str = f"{self.error_code.value}: {self.message}"

        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            base_str += f" ({details_str})"

        if self.cause:
            base_str += f" [caused by: {self.cause}]"

        return base_str


class ValidationError(BrokerError):
    """Malformed or missing request fields."""

    kind = ErrorKind.VALIDATION
    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[Any] = None):
        details = {}
        if field:
            details['field'] = field
        if value is not None:
            details['value'] = str(value)

        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            details=details
        )


class ConfigurationError(BrokerError):
    """Exception for configuration-related errors."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, config_key: Optional[str] = None):
        details = {}
        if config_key:
            details['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=ErrorCode.CONFIGURATION_ERROR,
            details=details
        )


class AuthenticationError(BrokerError):
    """Exception for authentication failures."""

    kind = ErrorKind.AUTHENTICATION
    http_status = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTHENTICATION_FAILED
        )


class NotFoundError(BrokerError):
    """A referenced entity does not exist."""

    kind = ErrorKind.NOT_FOUND
    http_status = 404


class GoneError(NotFoundError):
    """A deleted or never-created entity targeted by an idempotent delete."""

    http_status = 410


class InstanceNotFoundError(NotFoundError):
    """Exception for when a service instance is not found."""

    def __init__(self, instance_id: str):
        super().__init__(
            message=f"Service instance '{instance_id}' not found",
            error_code=ErrorCode.INSTANCE_NOT_FOUND,
            details={'instance_id': instance_id}
        )


class BindingNotFoundError(NotFoundError):
    """Exception for when a service binding is not found."""

    def __init__(self, binding_id: str):
        super().__init__(
            message=f"Service binding '{binding_id}' not found",
            error_code=ErrorCode.BINDING_NOT_FOUND,
            details={'binding_id': binding_id}
        )


class OperationNotFoundError(NotFoundError):
    """Exception for when an operation is not found."""

    def __init__(self, operation_id: str):
        super().__init__(
            message=f"Operation '{operation_id}' not found",
            error_code=ErrorCode.OPERATION_NOT_FOUND,
            details={'operation_id': operation_id}
        )


class ConflictError(BrokerError):
    """An entity already exists with divergent attributes."""

    kind = ErrorKind.CONFLICT
    http_status = 409


class AlreadyExistsError(ConflictError):
    """Raised by stores when a create targets a taken key."""

    def __init__(self, entity: str, entity_id: str, error_code: ErrorCode):
        super().__init__(
            message=f"{entity} '{entity_id}' already exists",
            error_code=error_code,
            details={'entity': entity, 'id': entity_id}
        )


class OperationInProgressError(BrokerError):
    """Another operation for the same instance has not finished."""

    kind = ErrorKind.OPERATION_IN_PROGRESS
    http_status = 422
    osb_error = "ConcurrencyError"

    def __init__(self, instance_id: str):
        super().__init__(
            message="Another operation for this service instance is in progress",
            error_code=ErrorCode.OPERATION_IN_PROGRESS,
            details={'instance_id': instance_id}
        )


class AsyncRequiredError(BrokerError):
    """The broker only operates asynchronously and the client did not opt in."""

    kind = ErrorKind.ASYNC_REQUIRED
    http_status = 422
    osb_error = "AsyncRequired"

    def __init__(self):
        super().__init__(
            message="This service plan requires client support for asynchronous service operations.",
            error_code=ErrorCode.ASYNC_REQUIRED
        )


class RequiresAppError(BrokerError):
    """Binding requested without the contact identity this service binds to."""

    kind = ErrorKind.REQUIRES_APP
    http_status = 422
    osb_error = "RequiresApp"

    def __init__(self, message: str = "This service requires an email parameter for creating a contact user"):
        super().__init__(
            message=message,
            error_code=ErrorCode.REQUIRES_APP
        )


class UnsupportedAPIVersionError(BrokerError):
    """Missing or unsupported X-Broker-API-Version header."""

    kind = ErrorKind.VALIDATION
    http_status = 412

    def __init__(self, version: Optional[str], supported: Tuple[str, ...]):
        super().__init__(
            message=(
                f"Unsupported X-Broker-API-Version '{version or ''}'; "
                f"supported versions: {', '.join(supported)}"
            ),
            error_code=ErrorCode.UNSUPPORTED_API_VERSION,
            details={'version': version}
        )


# Upstream status -> (broker status, error code, default description)
UPSTREAM_STATUS_MAP = {
    400: (400, ErrorCode.UPSTREAM_BAD_REQUEST, "Invalid request to upstream provisioning service"),
    401: (502, ErrorCode.UPSTREAM_AUTH_FAILED, "Authentication failed with upstream provisioning service"),
    403: (502, ErrorCode.UPSTREAM_AUTH_FAILED, "Access denied by upstream provisioning service"),
    404: (410, ErrorCode.UPSTREAM_RESOURCE_GONE, "Resource not found in upstream provisioning service"),
    409: (409, ErrorCode.UPSTREAM_CONFLICT, "Conflict in upstream provisioning service"),
    422: (422, ErrorCode.UPSTREAM_UNPROCESSABLE, "Invalid parameters for upstream provisioning service"),
}

# Upstream statuses whose own message may be passed through to the caller
UPSTREAM_PASSTHROUGH = {400, 409, 422}


class UpstreamError(BrokerError):
    """Normalized failure of the upstream provisioning API."""

    kind = ErrorKind.UPSTREAM
    http_status = 502

    def __init__(
        self,
        message: str,
        http_status: int = 502,
        error_code: ErrorCode = ErrorCode.UPSTREAM_ERROR,
        upstream_status: Optional[int] = None,
        operation: Optional[str] = None,
        cause: Optional[Exception] = None
    ):
        details = {}
        if upstream_status is not None:
            details['upstream_status'] = upstream_status
        if operation:
            details['operation'] = operation

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            cause=cause,
            http_status=http_status
        )
        self.upstream_status = upstream_status

    @classmethod
    def no_response(cls, operation: Optional[str] = None, cause: Optional[Exception] = None) -> 'UpstreamError':
        """Map a network-level failure (no HTTP response at all)."""
        return cls(
            "Unable to connect to upstream provisioning service",
            http_status=502,
            error_code=ErrorCode.UPSTREAM_UNAVAILABLE,
            operation=operation,
            cause=cause
        )

    @classmethod
    def from_status(
        cls,
        status: int,
        upstream_message: Optional[str] = None,
        operation: Optional[str] = None
    ) -> 'UpstreamError':
        """Map an upstream HTTP status to the broker's status and description."""
        mapped_status, error_code, description = UPSTREAM_STATUS_MAP.get(
            status,
            (502, ErrorCode.UPSTREAM_ERROR, "Upstream provisioning service error")
        )
        if status in UPSTREAM_PASSTHROUGH and upstream_message:
            description = upstream_message

        return cls(
            description,
            http_status=mapped_status,
            error_code=error_code,
            upstream_status=status,
            operation=operation
        )


class StorageError(BrokerError):
    """Exception for storage-related errors."""

    kind = ErrorKind.STORAGE
    http_status = 503

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        status: Optional[int] = None,
        transient: bool = False,
        cause: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details['operation'] = operation
        if status is not None:
            details['status'] = status

        super().__init__(
            message=message,
            error_code=ErrorCode.STORAGE_CONNECTION_ERROR if transient else ErrorCode.STORAGE_OPERATION_FAILED,
            details=details,
            cause=cause
        )
        self.status = status
        self.transient = transient


def format_error_response(error: Exception) -> Dict[str, Any]:
    """Format an exception into an OSB error body without leaking internals."""
    if isinstance(error, BrokerError):
        return error.to_osb_dict()
    return {'description': 'Internal server error'}

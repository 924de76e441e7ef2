"""Error handling framework for the uploader.

Provides the exception taxonomy used by every pipeline stage and the
upload coordinator, plus decorators for standardized error handling.

Blocking errors (no identification match, missing language/identity at
upload time, missing credentials) must be surfaced per file with a
manual-resolution path. Non-blocking errors (unreadable file, network
trouble) degrade the file to partial data and are retried first.
"""

import inspect
import logging
from functools import wraps

logger = logging.getLogger(__name__)


# Custom Exception Hierarchy
class UploaderError(Exception):
    """Base exception for all uploader-specific errors."""

    kind = "error"
    blocking = False


class FileReadError(UploaderError):
    """A local file could not be read.

    Raised on I/O errors, permission problems, vanished files, and when a
    read is cancelled mid-way.
    """

    kind = "io"


class HashCancelled(FileReadError):
    """Hash computation was cancelled before it finished reading the file."""

    kind = "cancelled"


class NetworkError(UploaderError):
    """A remote call failed at the transport level.

    Raised on timeouts, connection failures and transient server errors
    (5xx, 429). Eligible for automatic retry.
    """

    kind = "network"


class NotFoundError(UploaderError):
    """Identification produced no usable match.

    Blocks upload readiness until the user selects a movie manually.
    """

    kind = "not_found"
    blocking = True


class ValidationError(UploaderError):
    """An upload candidate is missing required data.

    Raised when language or movie identity is absent at upload time.
    """

    kind = "validation"
    blocking = True


class ServerRejection(UploaderError):
    """The remote service explicitly refused a request.

    Recorded per candidate during upload; never aborts a batch.
    """

    kind = "rejected"


class ConfigurationError(UploaderError):
    """Configuration validation failed.

    Raised when a required credential or endpoint is missing.
    """

    kind = "configuration"
    blocking = True


class CacheError(UploaderError):
    """Cache store operation failed.

    Raised when the persistent cache cannot be read or written.
    """

    kind = "cache"


# Error Handling Decorator
def handle_errors(
    *,
    error_types: tuple[type[Exception], ...],
    default_message: str,
    log_level: str = "error",
    reraise: bool = True,
    wrap_as: type[UploaderError] | None = None,
):
    """Decorator for standardized error handling.

    Args:
        error_types: Tuple of exception types to catch
        default_message: Message to log when error occurs
        log_level: Logging level (error, warning, info, debug)
        reraise: Whether to re-raise the exception after logging
        wrap_as: Optionally wrap the caught exception in an UploaderError subclass

    Example:
        @handle_errors(
            error_types=(OSError,),
            default_message="Could not read subtitle",
            wrap_as=FileReadError
        )
        async def read_subtitle():
            # ... operation ...
    """

    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except error_types as e:
                if wrap_as and isinstance(e, wrap_as):
                    raise
                log_func = getattr(logger, log_level)
                log_func(
                    f"{default_message}: {e}",
                    exc_info=(log_level == "error"),
                )
                if wrap_as:
                    raise wrap_as(f"{default_message}: {e}") from e
                if reraise:
                    raise
                return None

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except error_types as e:
                if wrap_as and isinstance(e, wrap_as):
                    raise
                log_func = getattr(logger, log_level)
                log_func(
                    f"{default_message}: {e}",
                    exc_info=(log_level == "error"),
                )
                if wrap_as:
                    raise wrap_as(f"{default_message}: {e}") from e
                if reraise:
                    raise
                return None

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


# Context Manager for Error Handling
class error_context:
    """Context manager for error handling in specific code blocks.

    Example:
        with error_context(
            error_types=(FileNotFoundError, PermissionError),
            default_message="Failed to read file",
            wrap_as=FileReadError
        ):
            # ... code that might raise errors ...
    """

    def __init__(
        self,
        *,
        error_types: tuple[type[Exception], ...],
        default_message: str,
        log_level: str = "error",
        wrap_as: type[UploaderError] | None = None,
    ):
        self.error_types = error_types
        self.default_message = default_message
        self.log_level = log_level
        self.wrap_as = wrap_as

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and issubclass(exc_type, self.error_types):
            if self.wrap_as and isinstance(exc_val, self.wrap_as):
                return False
            log_func = getattr(logger, self.log_level)
            log_func(
                f"{self.default_message}: {exc_val}",
                exc_info=(self.log_level == "error"),
            )
            if self.wrap_as:
                raise self.wrap_as(f"{self.default_message}: {exc_val}") from exc_val
            return False
        return False


def describe_error(error: BaseException) -> dict:
    """Serializable summary of an error for per-file state and broadcasts."""
    if isinstance(error, UploaderError):
        return {"kind": error.kind, "message": str(error), "blocking": error.blocking}
    return {"kind": "error", "message": str(error) or type(error).__name__, "blocking": False}

"""Custom exception hierarchy."""

class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class APIClientError(AppError):
    """Raised when a call to the AI service fails."""
    pass


class APITimeoutError(APIClientError):
    """Raised when a call to the AI service times out."""
    pass


class DatabaseError(AppError):
    """Raised when a database operation fails."""
    pass


class ValidationError(AppError):
    """Raised when input validation fails."""
    pass


class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass


class NotFoundError(AppError):
    """Raised when an owned resource does not exist."""

    def __init__(self, resource: str, original_error: Exception = None):
        super().__init__(f"{resource} not found", original_error)
        self.resource = resource


class ForbiddenError(AppError):
    """Raised when a resource belongs to another organization."""
    pass


class ConflictError(AppError):
    """Raised when a write would violate a uniqueness rule."""
    pass


class StorageError(AppError):
    """Raised when the blob storage backend fails for reasons other than a missing file."""
    pass

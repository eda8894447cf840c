"""Service-layer exceptions translated to HTTP errors by the API server."""

from typing import List, Optional


class ServiceError(Exception):
    """Base class for dashboard service errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ServiceError):
    pass


class ValidationFailedError(ServiceError):
    """Payload rejected by validation; carries every failing message"""

    def __init__(self, errors: List[str], message: Optional[str] = None):
        super().__init__(message or f"Datos inválidos: {', '.join(errors)}")
        self.errors = list(errors)


class AuthenticationError(ServiceError):
    pass


class RateLimitExceededError(ServiceError):
    """Too many login attempts within the window"""

    def __init__(self, remaining_attempts: int):
        super().__init__(
            f"Demasiados intentos de login. Intentos restantes: {remaining_attempts}"
        )
        self.remaining_attempts = remaining_attempts

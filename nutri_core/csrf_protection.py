"""
CSRF (Cross-Site Request Forgery) Protection Module

Synchronizer token pattern for the dashboard API:
- One random token issued per login session
- Token echoed back by the client in the X-CSRF-Token header
- Constant-time validation on every state-changing request

Author: jetgause
Created: 2026-10-18
"""

import hmac
import logging
import secrets
import threading
from typing import Dict, Optional

from fastapi import HTTPException, Request, status

from nutri_core.security import audit_logger


logger = logging.getLogger(__name__)

CSRF_TOKEN_BYTES = 32
CSRF_HEADER_NAME = "X-CSRF-Token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


def generate_csrf_token() -> str:
    """
    Generate an opaque anti-forgery token.

    Returns:
        64 lowercase hexadecimal characters (32 bytes from the OS CSPRNG)
    """
    return secrets.token_bytes(CSRF_TOKEN_BYTES).hex()


class CSRFTokenStore:
    """In-memory session -> token mapping."""

    def __init__(self):
        self._tokens: Dict[str, str] = {}
        self._lock = threading.Lock()

    def issue(self, session_id: str) -> str:
        """
        Generate and store a fresh token for a session.

        Any previous token of the session is replaced.
        """
        token = generate_csrf_token()
        self.store(session_id, token)
        return token

    def store(self, session_id: str, token: str) -> None:
        with self._lock:
            self._tokens[session_id] = token

    def get(self, session_id: str) -> Optional[str]:
        return self._tokens.get(session_id)

    def validate(self, session_id: str, token: Optional[str]) -> bool:
        """
        Validate a token for a session.

        Args:
            session_id: Session the token was issued for
            token: Token presented by the client

        Returns:
            True if it matches the stored token, False otherwise
        """
        stored_token = self._tokens.get(session_id)
        if not stored_token or not token:
            return False

        is_valid = hmac.compare_digest(stored_token, token)
        if not is_valid:
            audit_logger.log_security_violation(
                'CSRF_TOKEN_INVALID',
                {'session_id': session_id}
            )
        return is_valid

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._tokens.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._tokens)


def require_csrf_token(request: Request, session_id: str, store: CSRFTokenStore) -> None:
    """
    Reject a state-changing request whose CSRF header does not match.

    Raises:
        HTTPException: 403 when the header is missing or wrong
    """
    if request.method.upper() in SAFE_METHODS:
        return

    token = request.headers.get(CSRF_HEADER_NAME)
    if not store.validate(session_id, token):
        logger.warning(f"CSRF validation failed for {request.method} {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token CSRF inválido o ausente"
        )


__all__ = [
    'CSRF_HEADER_NAME',
    'CSRFTokenStore',
    'generate_csrf_token',
    'require_csrf_token',
]

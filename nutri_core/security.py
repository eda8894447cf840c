"""
Nutri Core Security Utilities
=============================

Security helpers shared by the login flow and the patient forms:
- Input sanitization (markup / script injection removal)
- HTML escaping
- Email and RUT validation, RUT formatting
- Aggregate validation of patient (cliente) payloads
- Sliding-window rate limiting for login attempts
- Audit logging

Author: jetgause
Created: 2026-10-18
"""

import re
import html
import json
import time
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional


# ============================================================================
# CONFIGURATION
# ============================================================================

class SecurityConfig:
    """Security configuration constants"""

    # Rate Limiting (login)
    LOGIN_MAX_ATTEMPTS = 5
    LOGIN_WINDOW_MS = 15 * 60 * 1000

    # Field limits
    EMAIL_MAX_LENGTH = 100
    NAME_MIN_LENGTH = 2
    RUT_FORMAT_MIN_LENGTH = 8


# ============================================================================
# AUDIT LOGGING
# ============================================================================

class AuditLogger:
    """Audit logging for security events"""

    def __init__(self, name: str = 'nutri_security_audit'):
        self.logger = logging.getLogger(name)

    def log_event(self, event_type: str, details: Dict[str, Any],
                  severity: str = 'INFO', user_id: Optional[str] = None):
        """Log a security event"""
        log_data = {
            'timestamp': datetime.utcnow().isoformat(),
            'event_type': event_type,
            'user_id': user_id,
            'details': details,
            'severity': severity
        }

        log_message = json.dumps(log_data, default=str)

        if severity == 'CRITICAL':
            self.logger.critical(log_message)
        elif severity == 'ERROR':
            self.logger.error(log_message)
        elif severity == 'WARNING':
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

    def log_authentication(self, user_id: str, success: bool, ip_address: Optional[str] = None):
        """Log authentication attempt"""
        self.log_event(
            'AUTHENTICATION',
            {
                'success': success,
                'ip_address': ip_address
            },
            severity='WARNING' if not success else 'INFO',
            user_id=user_id
        )

    def log_security_violation(self, violation_type: str, details: Dict[str, Any],
                               user_id: Optional[str] = None):
        """Log security violation"""
        self.log_event(
            'SECURITY_VIOLATION',
            {
                'violation_type': violation_type,
                **details
            },
            severity='ERROR',
            user_id=user_id
        )


# Global audit logger instance
audit_logger = AuditLogger()


# ============================================================================
# INPUT SANITIZATION
# ============================================================================

ANGLE_BRACKETS_PATTERN = re.compile(r'[<>]')
JAVASCRIPT_PROTOCOL_PATTERN = re.compile(r'javascript:', re.IGNORECASE)
EVENT_HANDLER_PATTERN = re.compile(r'on\w+=', re.IGNORECASE | re.ASCII)

_STRIP_PATTERNS = (
    ANGLE_BRACKETS_PATTERN,
    JAVASCRIPT_PROTOCOL_PATTERN,
    EVENT_HANDLER_PATTERN,
)


def sanitize_string(value: str) -> str:
    """
    Remove characters and patterns that enable markup or script injection.

    Angle brackets, ``javascript:`` and ``on<event>=`` handlers are removed
    until none are left, then surrounding whitespace is trimmed.

    Args:
        value: Free text coming from a form field

    Returns:
        Cleaned string ('' for empty input)
    """
    if not value:
        return ''

    cleaned = value
    while True:
        previous = cleaned
        for pattern in _STRIP_PATTERNS:
            cleaned = pattern.sub('', cleaned)
        # a removal can splice together a new match ("jajavascript:vascript:")
        if cleaned == previous:
            break

    return cleaned.strip()


def sanitize_input(value: Any) -> Any:
    """
    Recursively sanitize every string reachable inside ``value``.

    Lists and tuples keep their type, order and length; mappings keep all
    their keys. Numbers, booleans and None are returned unchanged.
    """
    if isinstance(value, str):
        return sanitize_string(value)

    if isinstance(value, list):
        return [sanitize_input(item) for item in value]

    if isinstance(value, tuple):
        return tuple(sanitize_input(item) for item in value)

    if isinstance(value, Mapping):
        return {key: sanitize_input(item) for key, item in value.items()}

    return value


def escape_html(text: Any) -> str:
    """Escape & < > " ' so the result renders as plain text content"""
    if text is None:
        return ''
    if not isinstance(text, str):
        text = str(text)
    return html.escape(text, quote=True)


# ============================================================================
# FIELD VALIDATION
# ============================================================================

EMAIL_PATTERN = re.compile(r'[^\s@]+@[^\s@]+\.[^\s@]+')
RUT_PATTERN = re.compile(r'[0-9]{1,2}\.?[0-9]{3}\.?[0-9]{3}-[0-9kK]')
RUT_SEPARATORS_PATTERN = re.compile(r'[.\-\s]')
PHONE_PATTERN = re.compile(r'\+?[0-9\s\-()]{8,15}')


def validate_email(email: Any) -> bool:
    """Validate email format and length (max 100 characters)"""
    if not isinstance(email, str):
        return False
    return (
        EMAIL_PATTERN.fullmatch(email) is not None
        and len(email) <= SecurityConfig.EMAIL_MAX_LENGTH
    )


def compute_rut_verifier(body: str) -> str:
    """
    Compute the modulo-11 verifier character for a RUT body.

    Weights 2..7 are applied cyclically from the rightmost digit leftward.
    Remainder 0 gives '0', remainder 1 gives 'k', otherwise 11 - remainder.
    """
    total = 0
    multiplier = 2
    for digit in reversed(body):
        total += int(digit) * multiplier
        multiplier = 2 if multiplier == 7 else multiplier + 1

    remainder = total % 11
    if remainder == 0:
        return '0'
    if remainder == 1:
        return 'k'
    return str(11 - remainder)


def validate_rut(rut: Any) -> bool:
    """
    Validate a Chilean RUT: canonical format plus verifier digit.

    Accepts ``12345678-5`` and ``12.345.678-5``; the verifier may be
    ``k`` or ``K``.
    """
    if not isinstance(rut, str) or not RUT_PATTERN.fullmatch(rut):
        return False

    cleaned = rut.replace('.', '').replace('-', '')
    body = cleaned[:-1]
    verifier = cleaned[-1].lower()

    return verifier == compute_rut_verifier(body)


def clean_rut(rut: Any) -> str:
    """Strip dots, hyphens and whitespace from a RUT"""
    if not isinstance(rut, str):
        return ''
    return RUT_SEPARATORS_PATTERN.sub('', rut)


def format_rut(rut: Any) -> str:
    """
    Format a RUT as ``NN.NNN.NNN-V``.

    Values shorter than 8 characters once cleaned are returned cleaned but
    otherwise unchanged.
    """
    cleaned = clean_rut(rut)
    if len(cleaned) < SecurityConfig.RUT_FORMAT_MIN_LENGTH:
        return cleaned

    body = cleaned[:-1]
    verifier = cleaned[-1]

    groups = []
    while body:
        groups.insert(0, body[-3:])
        body = body[:-3]

    return '.'.join(groups) + '-' + verifier


@dataclass
class ValidationResult:
    """Outcome of an aggregate validation"""
    is_valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'isValid': self.is_valid, 'errors': list(self.errors)}


def _has_min_length(value: Any, min_length: int) -> bool:
    return isinstance(value, str) and len(value.strip()) >= min_length


def validate_cliente_data(data: Mapping[str, Any]) -> ValidationResult:
    """
    Validate a patient (cliente) payload.

    Every rule is evaluated; all failing messages are collected in order.

    Args:
        data: Mapping with nombre, apellido, rut and optional correo/telefono

    Returns:
        ValidationResult with is_valid True iff no rule failed
    """
    errors: List[str] = []

    if not _has_min_length(data.get('nombre'), SecurityConfig.NAME_MIN_LENGTH):
        errors.append('El nombre debe tener al menos 2 caracteres')

    if not _has_min_length(data.get('apellido'), SecurityConfig.NAME_MIN_LENGTH):
        errors.append('El apellido debe tener al menos 2 caracteres')

    rut = data.get('rut')
    if not rut or not validate_rut(rut):
        errors.append('El RUT no es válido')

    correo = data.get('correo')
    if correo and not validate_email(correo):
        errors.append('El email no es válido')

    telefono = data.get('telefono')
    if telefono and not (isinstance(telefono, str) and PHONE_PATTERN.fullmatch(telefono)):
        errors.append('El teléfono no es válido')

    return ValidationResult(is_valid=not errors, errors=errors)


# ============================================================================
# RATE LIMITING
# ============================================================================

def _epoch_millis() -> int:
    return int(time.time() * 1000)


class ClientRateLimiter:
    """
    Sliding-window attempt counter keyed by client identifier.

    Only attempts within the trailing ``window_ms`` count toward
    ``max_attempts``; older timestamps are dropped when the identifier is
    next read.
    """

    def __init__(self, max_attempts: int = SecurityConfig.LOGIN_MAX_ATTEMPTS,
                 window_ms: int = SecurityConfig.LOGIN_WINDOW_MS,
                 clock: Optional[Callable[[], int]] = None):
        self.max_attempts = max_attempts
        self.window_ms = window_ms
        self.clock = clock or _epoch_millis
        self.attempts: Dict[str, List[int]] = {}
        self._lock = threading.Lock()

    def _recent_attempts(self, identifier: str, now: int) -> List[int]:
        return [
            attempt for attempt in self.attempts.get(identifier, [])
            if now - attempt < self.window_ms
        ]

    def is_allowed(self, identifier: str) -> bool:
        """Record an attempt for identifier if it is still under the limit"""
        with self._lock:
            now = self.clock()
            recent = self._recent_attempts(identifier, now)

            if len(recent) >= self.max_attempts:
                audit_logger.log_security_violation(
                    'RATE_LIMIT_EXCEEDED',
                    {'identifier': identifier, 'limit': self.max_attempts}
                )
                return False

            recent.append(now)
            self.attempts[identifier] = recent
            return True

    def get_remaining_attempts(self, identifier: str) -> int:
        """Get remaining attempts for identifier without recording one"""
        now = self.clock()
        recent = self._recent_attempts(identifier, now)
        return max(0, self.max_attempts - len(recent))

    def reset(self, identifier: str):
        """Forget every attempt recorded for identifier"""
        with self._lock:
            self.attempts.pop(identifier, None)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    'SecurityConfig',
    'AuditLogger',
    'audit_logger',
    'sanitize_string',
    'sanitize_input',
    'escape_html',
    'validate_email',
    'compute_rut_verifier',
    'validate_rut',
    'clean_rut',
    'format_rut',
    'ValidationResult',
    'validate_cliente_data',
    'ClientRateLimiter',
]

"""
Nutri Core Module
=================

Security utilities and practice data services for the nutritionist dashboard.

Author: jetgause
Version: 1.0.0
"""

__version__ = "1.0.0"
__all__ = [
    "security",
    "csrf_protection",
    "session_timeout",
    "ClientRateLimiter",
    "SessionTimeoutMonitor",
    "generate_csrf_token",
]

from nutri_core import security, csrf_protection, session_timeout
from nutri_core.security import ClientRateLimiter
from nutri_core.csrf_protection import generate_csrf_token
from nutri_core.session_timeout import SessionTimeoutMonitor

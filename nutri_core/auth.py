"""
Nutri Core Authentication

Login for nutritionists by email or RUT:
- bcrypt password hashing
- JWT access tokens (python-jose)
- Login attempt rate limiting
- Per-session CSRF token and inactivity monitor

Author: jetgause
Created: 2026-10-18
"""

import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from nutri_core.csrf_protection import CSRFTokenStore
from nutri_core.database import Login, Nutricionista, Rol
from nutri_core.exceptions import (
    AuthenticationError,
    RateLimitExceededError,
    ValidationFailedError,
)
from nutri_core.models import TokenData
from nutri_core.security import (
    ClientRateLimiter,
    audit_logger,
    format_rut,
    sanitize_input,
    validate_email,
)
from nutri_core.session_timeout import SessionTimeoutRegistry


logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24


# ========================
# Passwords
# ========================

class PasswordManager:
    """Password hashing and verification using bcrypt"""

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password using bcrypt"""
        salt = bcrypt.gensalt()
        hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
        return hashed.decode('utf-8')

    @staticmethod
    def verify_password(plain_password: str, hashed_password: str) -> bool:
        """Verify a password against its hash"""
        try:
            return bcrypt.checkpw(
                plain_password.encode('utf-8'),
                hashed_password.encode('utf-8')
            )
        except ValueError:
            # malformed stored hash or a password bcrypt refuses (> 72 bytes)
            return False


password_manager = PasswordManager()


# ========================
# JWT Token Management
# ========================

class TokenManager:
    """JWT token creation and validation"""

    def __init__(self, secret_key: str, algorithm: str = ALGORITHM,
                 expire_hours: float = ACCESS_TOKEN_EXPIRE_HOURS):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_hours = expire_hours

    def create_access_token(self, data: Dict[str, Any],
                            expires_delta: Optional[timedelta] = None) -> str:
        """Create JWT access token"""
        to_encode = data.copy()
        expire = datetime.utcnow() + (expires_delta or timedelta(hours=self.expire_hours))
        to_encode.update({
            "exp": expire,
            "iat": datetime.utcnow(),
        })
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def decode_token(self, token: str) -> TokenData:
        """Decode and validate JWT token"""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            raise AuthenticationError(f"Token inválido: {e}")

        user_id = payload.get("sub")
        session_id = payload.get("sid")
        if user_id is None or session_id is None:
            raise AuthenticationError("Token inválido")

        return TokenData(
            user_id=int(user_id),
            session_id=session_id,
            rut=payload.get("rut"),
            email=payload.get("email"),
            role=payload.get("role"),
        )


# ========================
# Login orchestration
# ========================

@dataclass
class LoginResult:
    token: str
    csrf_token: str
    session_id: str
    user: Dict[str, Any]


def find_nutricionista(session: Session, username: str) -> Optional[Nutricionista]:
    """Look up a nutritionist by email or RUT (raw or formatted)"""
    candidates = {username, format_rut(username)}
    stmt = select(Nutricionista).where(
        or_(Nutricionista.correo == username, Nutricionista.rut.in_(candidates))
    )
    return session.execute(stmt).scalars().first()


def authenticate(session: Session, username: str, password: str) -> Optional[Nutricionista]:
    """Return the nutritionist if the password matches its stored bcrypt hash"""
    nutricionista = find_nutricionista(session, username)
    if nutricionista is None or nutricionista.login is None:
        return None

    if not password_manager.verify_password(password, nutricionista.login.contrasena_hash):
        return None

    return nutricionista


class AuthService:
    """Ties together credentials, rate limiting, CSRF tokens and idle timeouts."""

    def __init__(self, token_manager: TokenManager, rate_limiter: ClientRateLimiter,
                 csrf_store: CSRFTokenStore, timeouts: SessionTimeoutRegistry):
        self.token_manager = token_manager
        self.rate_limiter = rate_limiter
        self.csrf_store = csrf_store
        self.timeouts = timeouts

    @staticmethod
    def rate_limit_key(username: str) -> str:
        return f"email_{username}"

    def login(self, session: Session, username: str, password: str,
              ip_address: Optional[str] = None) -> LoginResult:
        """
        Authenticate a nutritionist and open a dashboard session.

        Raises:
            ValidationFailedError: username looks like an email but is malformed
            RateLimitExceededError: too many attempts for this username
            AuthenticationError: unknown user or wrong password
        """
        username = username.strip()
        if '@' in username and not validate_email(username):
            raise ValidationFailedError(['Formato de email inválido'], 'Formato de email inválido')

        client_id = self.rate_limit_key(username)
        if not self.rate_limiter.is_allowed(client_id):
            remaining = self.rate_limiter.get_remaining_attempts(client_id)
            raise RateLimitExceededError(remaining)

        sanitized_username = sanitize_input(username)
        nutricionista = authenticate(session, sanitized_username, password)
        if nutricionista is None:
            audit_logger.log_authentication(sanitized_username, False, ip_address)
            raise AuthenticationError("Credenciales inválidas")

        self.rate_limiter.reset(client_id)
        nutricionista.login.ultimo_acceso = datetime.utcnow()
        audit_logger.log_authentication(str(nutricionista.id_nutri), True, ip_address)

        session_id = uuid.uuid4().hex
        csrf_token = self.csrf_store.issue(session_id)
        self.timeouts.open(session_id, on_logout=lambda: self.csrf_store.remove(session_id))

        role = nutricionista.login.rol or Rol.NUTRICIONISTA.value
        token = self.token_manager.create_access_token({
            "sub": str(nutricionista.id_nutri),
            "sid": session_id,
            "rut": nutricionista.rut,
            "email": nutricionista.correo,
            "role": role,
            "nombre": nutricionista.nombre,
            "apellido": nutricionista.apellido,
        })

        logger.info(f"Nutricionista {nutricionista.id_nutri} logged in")
        return LoginResult(
            token=token,
            csrf_token=csrf_token,
            session_id=session_id,
            user={
                "id": nutricionista.id_nutri,
                "username": nutricionista.rut,
                "email": nutricionista.correo,
                "nombre": nutricionista.nombre,
                "apellido": nutricionista.apellido,
                "role": role,
            },
        )

    def logout(self, session_id: str) -> None:
        """End a session: stop its idle monitor and drop its CSRF token"""
        self.timeouts.close(session_id)
        self.csrf_store.remove(session_id)
        logger.info(f"Session {session_id[:8]} logged out")

    def is_session_active(self, session_id: str) -> bool:
        return self.timeouts.is_active(session_id)


def create_nutricionista(session: Session, nombre: str, apellido: str, rut: str,
                         correo: str, password: str,
                         rol: Rol = Rol.NUTRICIONISTA, **extra) -> Nutricionista:
    """Register a nutritionist together with its hashed credentials"""
    nutricionista = Nutricionista(
        nombre=nombre,
        apellido=apellido,
        rut=format_rut(rut),
        correo=correo,
        **extra
    )
    nutricionista.login = Login(
        contrasena_hash=password_manager.hash_password(password),
        rol=rol.value,
    )
    session.add(nutricionista)
    session.flush()
    return nutricionista

import os
import sys
from dotenv import load_dotenv

load_dotenv()


def _abort(title, *lines):
    """Print a configuration error banner and stop the process."""
    print("=" * 70)
    print(f"CRITICAL ERROR: {title}")
    print("=" * 70)
    for line in lines:
        print(line)
    print("\n" + "=" * 70)
    sys.exit(1)


# Detect environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"

# API Configuration (the dashboard frontend expects port 3001)
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "3001"))

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///dashboard_nutricion.db")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR") or None

# Authentication
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_HOURS = float(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", "24"))

# Session inactivity timeout
SESSION_TIMEOUT_MINUTES = float(os.getenv("SESSION_TIMEOUT_MINUTES", "30"))

# Login rate limiting: 5 attempts per 15 minutes
LOGIN_MAX_ATTEMPTS = int(os.getenv("LOGIN_MAX_ATTEMPTS", "5"))
LOGIN_WINDOW_MS = int(os.getenv("LOGIN_WINDOW_MS", str(15 * 60 * 1000)))

# Security - JWT signing key
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    _abort(
        "SECRET_KEY environment variable is required!",
        "\nGenerate a key:",
        '  python3 -c "import secrets; print(secrets.token_urlsafe(32))"',
        "Then add it to your .env file: SECRET_KEY=<generated-key>",
    )

WEAK_KEYS = [
    "tu_clave_secreta_aqui",
    "your-secret-key-change-in-production",
    "change-this-in-production",
    "secret",
    "password",
    "secret-key",
    "test",
    "admin"
]

if SECRET_KEY.lower() in WEAK_KEYS:
    _abort("SECRET_KEY is using a default/weak value!",
           "\nThis key is publicly known and INSECURE!")

if len(SECRET_KEY) < 32:
    _abort("SECRET_KEY is too short!",
           f"\nCurrent length: {len(SECRET_KEY)} characters",
           "Required length: 32+ characters")

# CORS: the Vite dev server of the dashboard by default
ALLOWED_ORIGINS_STR = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://127.0.0.1:5173"
)
ALLOWED_ORIGINS = [origin.strip() for origin in ALLOWED_ORIGINS_STR.split(",") if origin.strip()]

if "*" in ALLOWED_ORIGINS:
    if IS_PRODUCTION:
        _abort("Wildcard CORS (*) not allowed in production!",
               "\nSet specific origins in your .env file:",
               "  ALLOWED_ORIGINS=https://yourdomain.com")
    else:
        print("\n⚠️  WARNING: Wildcard CORS (*) detected in development mode")
        print("   This should NOT be used in production!\n")

"""
Nutri Dashboard - FastAPI Server
REST layer for the nutritionist dashboard: login, patient roster, patient detail,
measurements, consultations and dashboard statistics
"""

from fastapi import FastAPI, HTTPException, Depends, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime
import uvicorn
import logging

# Import internal modules
import config
from nutri_core import __version__
from nutri_core.auth import AuthService, TokenManager
from nutri_core.csrf_protection import CSRFTokenStore, require_csrf_token
from nutri_core.database import DatabaseConfig, DatabaseManager, Nutricionista, Progreso
from nutri_core.exceptions import (
    AuthenticationError,
    NotFoundError,
    RateLimitExceededError,
    ServiceError,
    ValidationFailedError,
)
from nutri_core.logging_monitoring import setup_logging
from nutri_core.models import (
    ClienteCreate,
    ClientePage,
    ClienteUpdate,
    ConsultaCreate,
    KeepAliveResponse,
    LoginRequest,
    LoginResponse,
    MedidaCreate,
    TokenData,
    UserOut,
)
from nutri_core.security import ClientRateLimiter
from nutri_core.services import (
    ClientesService,
    ConsultasService,
    DashboardService,
    MedidasService,
    filter_clientes,
    paginate,
)
from nutri_core.session_timeout import SessionTimeoutRegistry

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


# DEPENDENCIES
def get_db(request: Request):
    """Database session for one request (commit on success, rollback on error)"""
    with request.app.state.db.get_session() as session:
        yield session


def get_current_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> TokenData:
    """
    Authenticate the bearer token, check the session is still alive,
    register activity and enforce CSRF on state-changing requests.
    """
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Token de acceso requerido")

    auth_service: AuthService = request.app.state.auth_service
    try:
        token_data = auth_service.token_manager.decode_token(credentials.credentials)
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)

    if not auth_service.timeouts.touch(token_data.session_id):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Sesión expirada por inactividad")

    require_csrf_token(request, token_data.session_id, auth_service.csrf_store)
    return token_data


# ERROR HANDLERS
def _service_error_response(status_code: int, error: ServiceError) -> JSONResponse:
    body: Dict[str, Any] = {"error": error.message}
    if isinstance(error, ValidationFailedError):
        body["errors"] = error.errors
    if isinstance(error, RateLimitExceededError):
        body["remaining_attempts"] = error.remaining_attempts
    return JSONResponse(status_code=status_code, content=body)


def register_error_handlers(app: FastAPI):
    status_codes = {
        NotFoundError: status.HTTP_404_NOT_FOUND,
        ValidationFailedError: status.HTTP_422_UNPROCESSABLE_ENTITY,
        AuthenticationError: status.HTTP_401_UNAUTHORIZED,
        RateLimitExceededError: status.HTTP_429_TOO_MANY_REQUESTS,
    }

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        code = status_codes.get(type(exc), status.HTTP_400_BAD_REQUEST)
        return _service_error_response(code, exc)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Error interno del servidor"})


def create_app(
    database_url: Optional[str] = None,
    secret_key: Optional[str] = None,
    session_timeout_minutes: Optional[float] = None,
    scheduler: Optional[Any] = None,
    clock: Optional[Callable[[], int]] = None,
) -> FastAPI:
    """Composition root: builds the app and the single instances it shares"""
    app = FastAPI(
        title="Nutri Dashboard API",
        description="Practice management API for nutritionists",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    db = DatabaseManager(DatabaseConfig(database_url or config.DATABASE_URL))
    db.initialize()

    timeout_minutes = session_timeout_minutes or config.SESSION_TIMEOUT_MINUTES
    app.state.db = db
    app.state.session_timeout_minutes = timeout_minutes
    app.state.auth_service = AuthService(
        token_manager=TokenManager(
            secret_key or config.SECRET_KEY,
            algorithm=config.JWT_ALGORITHM,
            expire_hours=config.ACCESS_TOKEN_EXPIRE_HOURS,
        ),
        rate_limiter=ClientRateLimiter(
            max_attempts=config.LOGIN_MAX_ATTEMPTS,
            window_ms=config.LOGIN_WINDOW_MS,
            clock=clock,
        ),
        csrf_store=CSRFTokenStore(),
        timeouts=SessionTimeoutRegistry(timeout_minutes, scheduler=scheduler),
    )

    register_error_handlers(app)
    register_routes(app)
    return app


def register_routes(app: FastAPI):

    # AUTH
    @app.post("/api/login", response_model=LoginResponse)
    def login(body: LoginRequest, request: Request, db=Depends(get_db)):
        """Log in with email or RUT"""
        ip_address = request.client.host if request.client else None
        result = request.app.state.auth_service.login(db, body.username, body.password, ip_address)
        return LoginResponse(
            token=result.token,
            csrf_token=result.csrf_token,
            session_timeout_minutes=request.app.state.session_timeout_minutes,
            user=UserOut(**result.user),
        )

    @app.post("/api/logout")
    def logout(request: Request, current: TokenData = Depends(get_current_session)):
        request.app.state.auth_service.logout(current.session_id)
        return {"success": True}

    @app.post("/api/session/keepalive", response_model=KeepAliveResponse)
    def keep_alive(request: Request, current: TokenData = Depends(get_current_session)):
        """Answer the inactivity warning with 'continue'"""
        timeouts = request.app.state.auth_service.timeouts
        active = timeouts.keep_alive(current.session_id)
        monitor = timeouts.get(current.session_id)
        remaining = monitor.remaining_seconds() if monitor else 0.0
        return KeepAliveResponse(active=active, remaining_seconds=remaining)

    @app.get("/api/user")
    def get_user(current: TokenData = Depends(get_current_session), db=Depends(get_db)):
        nutricionista = db.get(Nutricionista, current.user_id)
        if nutricionista is None:
            raise NotFoundError("Usuario no encontrado")
        return nutricionista.to_dict()

    # PATIENTS
    @app.get("/api/clientes", response_model=ClientePage)
    def list_clientes(
        search: str = Query("", max_length=100),
        progreso: Optional[Progreso] = None,
        page: int = Query(1, ge=1),
        per_page: int = Query(10, ge=1, le=100),
        current: TokenData = Depends(get_current_session),
        db=Depends(get_db),
    ):
        """Roster with search, progress filter and pagination"""
        clientes = [c.to_dict() for c in ClientesService(db).list_clientes(current.user_id)]
        filtered = filter_clientes(clientes, search, progreso.value if progreso else "")
        return paginate(filtered, page, per_page).to_dict()

    @app.post("/api/clientes", status_code=status.HTTP_201_CREATED)
    def create_cliente(body: ClienteCreate, current: TokenData = Depends(get_current_session),
                       db=Depends(get_db)):
        cliente = ClientesService(db).create_cliente(body.model_dump(exclude_unset=True), current.user_id)
        return cliente.to_dict()

    @app.get("/api/clientes/{id_cliente}")
    def get_cliente(id_cliente: int, current: TokenData = Depends(get_current_session),
                    db=Depends(get_db)):
        return ClientesService(db).get_cliente(id_cliente, current.user_id).to_dict()

    @app.put("/api/clientes/{id_cliente}")
    def update_cliente(id_cliente: int, body: ClienteUpdate,
                       current: TokenData = Depends(get_current_session), db=Depends(get_db)):
        cliente = ClientesService(db).update_cliente(
            id_cliente, body.model_dump(exclude_unset=True), current.user_id
        )
        return cliente.to_dict()

    @app.delete("/api/clientes/{id_cliente}")
    def delete_cliente(id_cliente: int, current: TokenData = Depends(get_current_session),
                       db=Depends(get_db)):
        return ClientesService(db).delete_cliente(id_cliente, current.user_id).to_dict()

    # MEASUREMENTS / VISITS
    @app.get("/api/clientes/{id_cliente}/medidas")
    def list_medidas(id_cliente: int, current: TokenData = Depends(get_current_session),
                     db=Depends(get_db)) -> List[Dict[str, Any]]:
        ClientesService(db).get_cliente(id_cliente, current.user_id)
        return [m.to_dict() for m in MedidasService(db).list_medidas(id_cliente)]

    @app.post("/api/clientes/{id_cliente}/medidas", status_code=status.HTTP_201_CREATED)
    def create_medida(id_cliente: int, body: MedidaCreate,
                      current: TokenData = Depends(get_current_session), db=Depends(get_db)):
        ClientesService(db).get_cliente(id_cliente, current.user_id)
        medida = MedidasService(db).create_medida(id_cliente, body.model_dump(exclude_unset=True))
        return medida.to_dict()

    @app.get("/api/clientes/{id_cliente}/consultas")
    def list_consultas(id_cliente: int, current: TokenData = Depends(get_current_session),
                       db=Depends(get_db)) -> List[Dict[str, Any]]:
        ClientesService(db).get_cliente(id_cliente, current.user_id)
        return [c.to_dict() for c in ConsultasService(db).list_consultas(id_cliente)]

    @app.post("/api/clientes/{id_cliente}/consultas", status_code=status.HTTP_201_CREATED)
    def create_consulta(id_cliente: int, body: ConsultaCreate,
                        current: TokenData = Depends(get_current_session), db=Depends(get_db)):
        ClientesService(db).get_cliente(id_cliente, current.user_id)
        consulta = ConsultasService(db).create_consulta(id_cliente, body.model_dump(exclude_unset=True))
        return consulta.to_dict()

    # DASHBOARD
    @app.get("/api/dashboard")
    def dashboard(current: TokenData = Depends(get_current_session), db=Depends(get_db)):
        return DashboardService(db).get_estadisticas_generales()

    @app.get("/api/dashboard/progreso")
    def dashboard_progreso(current: TokenData = Depends(get_current_session), db=Depends(get_db)):
        return DashboardService(db).get_estadisticas_progreso()

    # HEALTH
    @app.get("/api/test")
    def test_connection(request: Request):
        """Database connectivity check"""
        try:
            request.app.state.db.ping()
        except Exception as e:
            logger.error(f"Database connectivity check failed: {e}")
            return JSONResponse(status_code=500,
                                content={"error": "Error de conexión a la base de datos"})
        return {"message": "Conexión a la base de datos exitosa"}

    @app.get("/health")
    def health_check():
        """Health check endpoint with security status."""
        security_checks = {
            "secret_key_configured": len(config.SECRET_KEY) >= 32,
            "cors_secure": "*" not in config.ALLOWED_ORIGINS,
            "api_localhost_bound": config.API_HOST in ["127.0.0.1", "localhost"],
        }
        all_secure = all(security_checks.values())

        return {
            "status": "healthy" if all_secure else "degraded",
            "timestamp": datetime.now().isoformat(),
            "version": __version__,
            "environment": config.ENVIRONMENT,
            "security": {
                "status": "secure" if all_secure else "warnings",
                "checks": security_checks
            }
        }


setup_logging(config.LOG_LEVEL, config.LOG_DIR)
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "api_server:app",
        host=config.API_HOST,
        port=config.API_PORT,
        log_level=config.LOG_LEVEL.lower()
    )

"""
Nutri Core Database Module
==========================

Relational store for the nutrition practice dashboard.

Features:
- SQLAlchemy ORM models mirroring the practice schema
  (nutricionista, login, cliente, medidas, consulta, plannutricional)
- Soft delete of patients through the ``inactividad`` flag
- Connection pooling with SQLite-friendly defaults
- Session context manager with automatic commit / rollback
- Query logging for security monitoring

Author: jetgause
Created: 2026-10-18
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterator

from sqlalchemy import (
    create_engine,
    event,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool


logger = logging.getLogger(__name__)

# Security logger for audit trail
security_logger = logging.getLogger('security.database')

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class Progreso(str, Enum):
    """Patient progress levels"""
    PENDIENTE = "Pendiente"
    REGULAR = "Regular"
    BUENO = "Bueno"
    EXCELENTE = "Excelente"


class Rol(str, Enum):
    """Login roles"""
    NUTRICIONISTA = "Nutricionista"
    ADMINISTRADOR = "Administrador"


# ============================================================================
# DATABASE MODELS
# ============================================================================

class SerializableMixin:
    """Column-wise dict conversion for API responses"""

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(value, (datetime, date)):
                value = value.isoformat()
            result[column.name] = value
        return result


class Nutricionista(SerializableMixin, Base):
    """Nutritionist owning a roster of patients."""
    __tablename__ = 'nutricionista'

    id_nutri = Column(Integer, primary_key=True, autoincrement=True)
    nombre = Column(String(100), nullable=False)
    apellido = Column(String(100), nullable=False)
    rut = Column(String(20), unique=True, nullable=False, index=True)
    correo = Column(String(100), unique=True, nullable=False, index=True)
    telefono = Column(String(20), nullable=True)
    especialidad = Column(String(100), nullable=True)

    login = relationship('Login', back_populates='nutricionista', uselist=False)
    clientes = relationship('Cliente', back_populates='nutricionista', lazy='dynamic')

    def __repr__(self):
        return f"<Nutricionista(id={self.id_nutri}, rut='{self.rut}')>"


class Login(SerializableMixin, Base):
    """Credentials of a nutritionist (bcrypt hash only)."""
    __tablename__ = 'login'

    id_login = Column(Integer, primary_key=True, autoincrement=True)
    id_nutri = Column(Integer, ForeignKey('nutricionista.id_nutri'), nullable=False, unique=True)
    contrasena_hash = Column(String(255), nullable=False)
    rol = Column(String(20), default=Rol.NUTRICIONISTA.value, nullable=False)
    ultimo_acceso = Column(DateTime, nullable=True)
    fecha_creacion = Column(DateTime, default=datetime.utcnow, nullable=False)

    nutricionista = relationship('Nutricionista', back_populates='login')

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.pop('contrasena_hash', None)
        return data


class PlanNutricional(SerializableMixin, Base):
    __tablename__ = 'plannutricional'

    id_plan = Column(Integer, primary_key=True, autoincrement=True)
    nombre = Column(String(100), nullable=False)
    descripcion = Column(Text, nullable=True)
    calorias_diarias = Column(Integer, nullable=True)
    duracion_semanas = Column(Integer, nullable=True)
    fecha_creacion = Column(DateTime, default=datetime.utcnow)
    activo = Column(Boolean, default=True, nullable=False)


class Cliente(SerializableMixin, Base):
    """
    Patient record with soft delete support.
    """
    __tablename__ = 'cliente'

    id_cliente = Column(Integer, primary_key=True, autoincrement=True)
    id_nutri = Column(Integer, ForeignKey('nutricionista.id_nutri'), nullable=False, index=True)
    nombre = Column(String(100), nullable=False)
    apellido = Column(String(100), nullable=False)
    rut = Column(String(20), nullable=False, index=True)
    correo = Column(String(100), nullable=True)
    telefono = Column(String(20), nullable=True)
    fecha_nacimiento = Column(Date, nullable=True)
    genero = Column(String(20), nullable=True)
    altura = Column(Float, nullable=True)
    peso = Column(Float, nullable=True)
    peso_objetivo = Column(Float, nullable=True)
    alergias = Column(JSON, default=list)
    condiciones_medicas = Column(JSON, default=list)
    tratamientos = Column(JSON, default=list)
    objetivos = Column(Text, nullable=True)
    id_plan = Column(Integer, ForeignKey('plannutricional.id_plan'), nullable=True)
    progreso = Column(String(20), default=Progreso.PENDIENTE.value, nullable=False)
    ultimavisita = Column(DateTime, nullable=True)

    # Soft delete support
    inactividad = Column(Boolean, default=False, nullable=False, index=True)

    nutricionista = relationship('Nutricionista', back_populates='clientes')
    medidas = relationship('Medidas', back_populates='cliente', lazy='dynamic')
    consultas = relationship('Consulta', back_populates='cliente', lazy='dynamic')

    __table_args__ = (
        Index('idx_cliente_nutri_inactividad', 'id_nutri', 'inactividad'),
    )

    def soft_delete(self):
        """Mark the patient inactive"""
        self.inactividad = True
        security_logger.info(f"Cliente {self.id_cliente} soft deleted")

    def __repr__(self):
        return f"<Cliente(id={self.id_cliente}, rut='{self.rut}', progreso='{self.progreso}')>"


class Medidas(SerializableMixin, Base):
    """Anthropometric measurements of a patient."""
    __tablename__ = 'medidas'

    id_medidas = Column(Integer, primary_key=True, autoincrement=True)
    id_cliente = Column(Integer, ForeignKey('cliente.id_cliente'), nullable=False, index=True)
    peso = Column(Float, nullable=True)
    altura = Column(Float, nullable=True)
    edad = Column(Integer, nullable=True)
    imc = Column(Float, nullable=True)
    porcentaje_grasa = Column(Float, nullable=True)
    masa_muscular = Column(Float, nullable=True)
    cintura = Column(Float, nullable=True)
    cadera = Column(Float, nullable=True)
    brazo = Column(Float, nullable=True)
    fecha = Column(DateTime, default=datetime.utcnow, nullable=False)

    cliente = relationship('Cliente', back_populates='medidas')


class Consulta(SerializableMixin, Base):
    """Consultation (visit) of a patient."""
    __tablename__ = 'consulta'

    id_consulta = Column(Integer, primary_key=True, autoincrement=True)
    id_cliente = Column(Integer, ForeignKey('cliente.id_cliente'), nullable=False, index=True)
    fecha = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    observaciones = Column(Text, nullable=True)
    peso_actual = Column(Float, nullable=True)
    presion_arterial = Column(String(20), nullable=True)
    estado_animo = Column(String(50), nullable=True)
    sintomas = Column(Text, nullable=True)
    proxima_cita = Column(DateTime, nullable=True)

    cliente = relationship('Cliente', back_populates='consultas')


# ============================================================================
# DATABASE CONNECTION AND POOLING
# ============================================================================

class DatabaseConfig:
    """Database configuration with secure defaults"""

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
        pool_recycle: int = 3600,
        echo: bool = False,
    ):
        self.database_url = database_url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool_timeout = pool_timeout
        self.pool_recycle = pool_recycle
        self.echo = echo

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith('sqlite')


class DatabaseManager:
    """
    Database manager with connection pooling and transaction management.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine = None
        self.session_factory = None
        self._initialized = False

    def _create_engine(self):
        if self.config.is_sqlite:
            # one shared connection so in-memory databases survive across sessions
            return create_engine(
                self.config.database_url,
                poolclass=StaticPool,
                connect_args={'check_same_thread': False},
                echo=self.config.echo,
            )

        return create_engine(
            self.config.database_url,
            poolclass=QueuePool,
            pool_size=self.config.pool_size,
            max_overflow=self.config.max_overflow,
            pool_timeout=self.config.pool_timeout,
            pool_recycle=self.config.pool_recycle,
            echo=self.config.echo,
        )

    def initialize(self):
        """Initialize database engine, session factory and tables"""
        if self._initialized:
            logger.warning("DatabaseManager already initialized")
            return

        try:
            self.engine = self._create_engine()
            self.session_factory = sessionmaker(
                bind=self.engine,
                expire_on_commit=False,
            )
            Base.metadata.create_all(self.engine)
            self._setup_event_listeners()

            self._initialized = True
            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def _setup_event_listeners(self):
        """Set up SQLAlchemy event listeners for query logging"""

        @event.listens_for(self.engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            security_logger.debug(f"Query: {statement}")

        @event.listens_for(self.engine, "handle_error")
        def handle_error(exception_context):
            security_logger.error(
                f"Database error: {exception_context.original_exception}"
            )

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        Context manager for database sessions with automatic rollback.

        Usage:
            with db_manager.get_session() as session:
                cliente = session.get(Cliente, 1)
        """
        if not self._initialized:
            raise RuntimeError("DatabaseManager not initialized. Call initialize() first.")

        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Session rollback due to error: {e}")
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        """Run a trivial query to check connectivity"""
        from sqlalchemy import text

        with self.get_session() as session:
            session.execute(text("SELECT 1"))
        return True

    def close(self):
        """Close database connections"""
        if self.engine:
            self.engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False

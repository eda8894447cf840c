"""
Request / response schemas for the dashboard API.

Field names follow the practice database columns so payloads map 1:1 onto
the ORM models in ``nutri_core.database``.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from nutri_core.database import Progreso


# ========================
# Authentication
# ========================

class LoginRequest(BaseModel):
    """Login request model (username is an email or a RUT)"""
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=128)


class UserOut(BaseModel):
    """Authenticated nutritionist"""
    id: int
    username: str
    email: str
    nombre: str
    apellido: str
    role: str


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    csrf_token: str
    session_timeout_minutes: float
    user: UserOut


class TokenData(BaseModel):
    """JWT payload data"""
    user_id: int
    session_id: str
    rut: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


class KeepAliveResponse(BaseModel):
    active: bool
    remaining_seconds: float


# ========================
# Patients
# ========================

class ClienteBase(BaseModel):
    nombre: Optional[str] = None
    apellido: Optional[str] = None
    rut: Optional[str] = None
    correo: Optional[str] = None
    telefono: Optional[str] = None
    fecha_nacimiento: Optional[date] = None
    genero: Optional[str] = None
    altura: Optional[float] = Field(None, gt=0, lt=300)
    peso: Optional[float] = Field(None, gt=0, lt=500)
    peso_objetivo: Optional[float] = Field(None, gt=0, lt=500)
    alergias: Optional[List[str]] = None
    condiciones_medicas: Optional[List[str]] = None
    tratamientos: Optional[List[str]] = None
    objetivos: Optional[str] = None
    id_plan: Optional[int] = None
    progreso: Optional[Progreso] = None


class ClienteCreate(ClienteBase):
    """New patient, as submitted by the multi-step creation form"""
    pass


class ClienteUpdate(ClienteBase):
    ultimavisita: Optional[datetime] = None


class ClientePage(BaseModel):
    items: List[Dict[str, Any]]
    page: int
    per_page: int
    total: int
    total_pages: int


# ========================
# Measurements and visits
# ========================

class MedidaCreate(BaseModel):
    peso: Optional[float] = Field(None, gt=0)
    altura: Optional[float] = Field(None, gt=0)
    edad: Optional[int] = Field(None, ge=0, le=130)
    porcentaje_grasa: Optional[float] = Field(None, ge=0, le=100)
    masa_muscular: Optional[float] = Field(None, ge=0)
    cintura: Optional[float] = Field(None, gt=0)
    cadera: Optional[float] = Field(None, gt=0)
    brazo: Optional[float] = Field(None, gt=0)
    fecha: Optional[datetime] = None


class ConsultaCreate(BaseModel):
    fecha: Optional[datetime] = None
    observaciones: Optional[str] = None
    peso_actual: Optional[float] = Field(None, gt=0)
    presion_arterial: Optional[str] = None
    estado_animo: Optional[str] = None
    sintomas: Optional[str] = None
    proxima_cita: Optional[datetime] = None

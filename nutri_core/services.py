"""
Nutri Core Services
===================

Data access for the dashboard views:
- Patient (cliente) roster: list, detail, create, update, soft delete
- Roster search, progress filter and pagination
- Measurements (medidas) with BMI calculation
- Consultations (consultas)
- Dashboard statistics

Every write goes through validation and sanitization from
``nutri_core.security`` before it reaches the database.

Author: jetgause
Created: 2026-10-18
"""

import math
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from nutri_core.database import (
    Cliente,
    Consulta,
    Medidas,
    PlanNutricional,
    Progreso,
)
from nutri_core.exceptions import NotFoundError, ValidationFailedError
from nutri_core.security import (
    format_rut,
    sanitize_input,
    validate_cliente_data,
)


logger = logging.getLogger(__name__)

DEFAULT_PER_PAGE = 10
RECENT_PATIENTS_LIMIT = 8
WEEKS_OF_PROGRESS = 4

# Columns a client may never write directly
PROTECTED_CLIENTE_FIELDS = {'id_cliente', 'id_nutri', 'inactividad'}


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _field(record: Any, name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


# ============================================================================
# ROSTER SEARCH / FILTER / PAGINATION
# ============================================================================

@dataclass
class Page:
    """One page of a filtered roster"""
    items: List[Any] = field(default_factory=list)
    page: int = 1
    per_page: int = DEFAULT_PER_PAGE
    total: int = 0
    total_pages: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'items': self.items,
            'page': self.page,
            'per_page': self.per_page,
            'total': self.total,
            'total_pages': self.total_pages,
        }


def filter_clientes(clientes: Sequence[Any], search: str = "", progreso: str = "") -> List[Any]:
    """
    Filter a roster the way the patients table does.

    Name, surname and email match case-insensitively; the RUT matches as a
    plain substring. Inactive patients are always excluded.
    """
    term = (search or "").strip()
    lowered = term.lower()
    progreso = _plain(progreso) or ""

    def matches(cliente: Any) -> bool:
        if _field(cliente, 'inactividad'):
            return False
        if progreso and _field(cliente, 'progreso') != progreso:
            return False
        if not term:
            return True

        correo = _field(cliente, 'correo') or ""
        return (
            lowered in (_field(cliente, 'nombre') or "").lower()
            or lowered in (_field(cliente, 'apellido') or "").lower()
            or term in (_field(cliente, 'rut') or "")
            or lowered in correo.lower()
        )

    return [cliente for cliente in clientes if matches(cliente)]


def paginate(items: Sequence[Any], page: int = 1, per_page: int = DEFAULT_PER_PAGE) -> Page:
    """Slice ``items`` into a page; out-of-range page numbers are clamped."""
    per_page = max(1, per_page)
    total = len(items)
    total_pages = math.ceil(total / per_page)
    page = min(max(1, page), max(1, total_pages))

    start = (page - 1) * per_page
    return Page(
        items=list(items[start:start + per_page]),
        page=page,
        per_page=per_page,
        total=total,
        total_pages=total_pages,
    )


# ============================================================================
# PATIENTS
# ============================================================================

class ClientesService:
    """Patient roster of one nutritionist"""

    def __init__(self, session: Session):
        self.session = session

    def list_clientes(self, nutri_id: int) -> List[Cliente]:
        """Active patients, most recently visited first"""
        stmt = (
            select(Cliente)
            .where(Cliente.id_nutri == nutri_id, Cliente.inactividad.is_(False))
            .order_by(Cliente.ultimavisita.desc().nulls_last(), Cliente.id_cliente.desc())
        )
        return list(self.session.execute(stmt).scalars())

    def get_cliente(self, id_cliente: int, nutri_id: Optional[int] = None) -> Cliente:
        cliente = self.session.get(Cliente, id_cliente)
        if cliente is None or cliente.inactividad:
            raise NotFoundError("Cliente no encontrado")
        if nutri_id is not None and cliente.id_nutri != nutri_id:
            raise NotFoundError("Cliente no encontrado")
        return cliente

    def create_cliente(self, data: Dict[str, Any], nutri_id: int) -> Cliente:
        """
        Sanitize, validate and insert a new patient.

        Raises:
            ValidationFailedError: with every failing rule message
        """
        sanitized = sanitize_input({key: _plain(value) for key, value in data.items()})

        # rules apply to what will be stored, not to the raw markup
        validation = validate_cliente_data(sanitized)
        if not validation.is_valid:
            raise ValidationFailedError(validation.errors)

        cliente = Cliente(
            nombre=sanitized['nombre'],
            apellido=sanitized['apellido'],
            rut=format_rut(sanitized['rut']),
            correo=sanitized.get('correo') or None,
            telefono=sanitized.get('telefono') or None,
            fecha_nacimiento=sanitized.get('fecha_nacimiento'),
            genero=sanitized.get('genero'),
            altura=sanitized.get('altura'),
            peso=sanitized.get('peso'),
            peso_objetivo=sanitized.get('peso_objetivo'),
            alergias=sanitized.get('alergias') or [],
            condiciones_medicas=sanitized.get('condiciones_medicas') or [],
            tratamientos=sanitized.get('tratamientos') or [],
            objetivos=sanitized.get('objetivos'),
            id_plan=sanitized.get('id_plan'),
            id_nutri=nutri_id,
            inactividad=False,
            progreso=sanitized.get('progreso') or Progreso.PENDIENTE.value,
        )
        self.session.add(cliente)
        self.session.flush()

        logger.info(f"Cliente {cliente.id_cliente} created by nutricionista {nutri_id}")
        return cliente

    def update_cliente(self, id_cliente: int, data: Dict[str, Any], nutri_id: int) -> Cliente:
        """Apply a partial update; the merged record must still validate."""
        cliente = self.get_cliente(id_cliente, nutri_id)

        changes = {
            key: _plain(value) for key, value in sanitize_input(data).items()
            if key not in PROTECTED_CLIENTE_FIELDS and key in Cliente.__table__.columns
        }

        merged = cliente.to_dict()
        merged.update(changes)
        validation = validate_cliente_data(merged)
        if not validation.is_valid:
            raise ValidationFailedError(validation.errors)

        if 'rut' in changes:
            changes['rut'] = format_rut(changes['rut'])

        for key, value in changes.items():
            setattr(cliente, key, value)
        self.session.flush()
        return cliente

    def delete_cliente(self, id_cliente: int, nutri_id: int) -> Cliente:
        """Soft delete: the patient is only marked inactive"""
        cliente = self.get_cliente(id_cliente, nutri_id)
        cliente.soft_delete()
        self.session.flush()
        return cliente


# ============================================================================
# MEASUREMENTS AND VISITS
# ============================================================================

def calculate_imc(peso: Optional[float], altura_cm: Optional[float]) -> Optional[float]:
    """Body mass index from weight (kg) and height (cm), two decimals"""
    if not peso or not altura_cm:
        return None
    altura_m = altura_cm / 100
    return round(peso / (altura_m * altura_m), 2)


class MedidasService:

    def __init__(self, session: Session):
        self.session = session

    def list_medidas(self, id_cliente: int) -> List[Medidas]:
        stmt = (
            select(Medidas)
            .where(Medidas.id_cliente == id_cliente)
            .order_by(Medidas.fecha.desc())
        )
        return list(self.session.execute(stmt).scalars())

    def create_medida(self, id_cliente: int, data: Dict[str, Any]) -> Medidas:
        values = dict(data)
        values['fecha'] = values.get('fecha') or datetime.utcnow()

        imc = calculate_imc(values.get('peso'), values.get('altura'))
        if imc is not None:
            values['imc'] = imc

        medida = Medidas(id_cliente=id_cliente, **values)
        self.session.add(medida)
        self.session.flush()
        return medida


class ConsultasService:

    def __init__(self, session: Session):
        self.session = session

    def list_consultas(self, id_cliente: int) -> List[Consulta]:
        stmt = (
            select(Consulta)
            .where(Consulta.id_cliente == id_cliente)
            .order_by(Consulta.fecha.desc())
        )
        return list(self.session.execute(stmt).scalars())

    def create_consulta(self, id_cliente: int, data: Dict[str, Any]) -> Consulta:
        """Record a visit and move the patient's last-visit date forward"""
        values = sanitize_input(dict(data))
        values['fecha'] = values.get('fecha') or datetime.utcnow()

        consulta = Consulta(id_cliente=id_cliente, **values)
        self.session.add(consulta)

        cliente = self.session.get(Cliente, id_cliente)
        if cliente is not None and (cliente.ultimavisita is None or cliente.ultimavisita < consulta.fecha):
            cliente.ultimavisita = consulta.fecha

        self.session.flush()
        return consulta


# ============================================================================
# DASHBOARD
# ============================================================================

class DashboardService:
    """Practice-wide statistics for the dashboard home page"""

    def __init__(self, session: Session):
        self.session = session

    def _count(self, stmt) -> int:
        return self.session.execute(stmt).scalar() or 0

    def get_estadisticas_generales(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        inicio_mes = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        total_pacientes = self._count(
            select(func.count(Cliente.id_cliente)).where(Cliente.inactividad.is_(False))
        )
        consultas_mensuales = self._count(
            select(func.count(Consulta.id_consulta)).where(Consulta.fecha >= inicio_mes)
        )
        pacientes_excelentes = self._count(
            select(func.count(Cliente.id_cliente)).where(
                Cliente.inactividad.is_(False),
                Cliente.progreso == Progreso.EXCELENTE.value,
            )
        )
        planes_activos = self._count(select(func.count(PlanNutricional.id_plan)))

        recientes_stmt = (
            select(Cliente, PlanNutricional.nombre)
            .outerjoin(PlanNutricional, Cliente.id_plan == PlanNutricional.id_plan)
            .where(Cliente.inactividad.is_(False))
            .order_by(Cliente.id_cliente.desc())
            .limit(RECENT_PATIENTS_LIMIT)
        )
        pacientes_recientes = [
            {
                'id_cliente': cliente.id_cliente,
                'nombre': cliente.nombre,
                'apellido': cliente.apellido,
                'progreso': cliente.progreso,
                'ultimavisita': cliente.ultimavisita.isoformat() if cliente.ultimavisita else None,
                'plan': plan_nombre or 'Plan general',
            }
            for cliente, plan_nombre in self.session.execute(recientes_stmt)
        ]

        tasa_exito = (
            math.floor(pacientes_excelentes / total_pacientes * 100 + 0.5)
            if total_pacientes else 0
        )

        return {
            'totalPacientes': total_pacientes,
            'consultasMensuales': consultas_mensuales,
            'tasaExito': tasa_exito,
            'planesActivos': planes_activos,
            'pacientesRecientes': pacientes_recientes,
            'progresoPorSemana': self.get_progreso_semanal(now),
        }

    def get_estadisticas_progreso(self) -> Dict[str, int]:
        """Number of active patients per progress level"""
        stats = {progreso.value.lower(): 0 for progreso in Progreso}
        stmt = (
            select(Cliente.progreso, func.count(Cliente.id_cliente))
            .where(Cliente.inactividad.is_(False))
            .group_by(Cliente.progreso)
        )
        for progreso, count in self.session.execute(stmt):
            key = (progreso or '').lower()
            if key in stats:
                stats[key] += count
        return stats

    def get_progreso_semanal(self, now: Optional[datetime] = None) -> List[int]:
        """Consultations per week over the last four weeks, oldest first"""
        now = now or datetime.utcnow()
        progreso = []
        for weeks_ago in range(WEEKS_OF_PROGRESS - 1, -1, -1):
            fecha_inicio = now - timedelta(days=(weeks_ago + 1) * 7)
            fecha_fin = now - timedelta(days=weeks_ago * 7)
            progreso.append(self._count(
                select(func.count(Consulta.id_consulta)).where(
                    Consulta.fecha >= fecha_inicio,
                    Consulta.fecha < fecha_fin,
                )
            ))
        return progreso

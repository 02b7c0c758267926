"""Domain models for delivery routes."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RouteStatus(str, Enum):
    """Lifecycle status for a route."""

    PENDIENTE = "pendiente"
    INICIADA = "iniciada"
    PAUSADA = "pausada"
    FINALIZADA = "finalizada"
    CANCELADA = "cancelada"


ACTIVE_ROUTE_STATUSES = frozenset({RouteStatus.PENDIENTE, RouteStatus.INICIADA, RouteStatus.PAUSADA})
TERMINAL_ROUTE_STATUSES = frozenset({RouteStatus.FINALIZADA, RouteStatus.CANCELADA})


class Route(BaseModel):
    """Persisted route record."""

    id: str
    numero_ruta: str
    empresa_reparto: str
    conductor: Optional[str] = None
    nombre_conductor: Optional[str] = None
    es_chofer_externo: bool = False
    patente: Optional[str] = None
    despachos: List[str] = Field(default_factory=list)
    asignado_por: str
    asignado_el: datetime = Field(default_factory=_utcnow)
    fecha_inicio: Optional[datetime] = None
    fecha_finalizacion: Optional[datetime] = None
    tiempo_transcurrido: Optional[int] = None
    estado: RouteStatus = RouteStatus.PENDIENTE
    documento_externo: Optional[str] = None
    conciliada: bool = False
    cancelado_por: Optional[str] = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.estado in ACTIVE_ROUTE_STATUSES


class RouteCreateRequest(BaseModel):
    """Staff request binding a batch of available dispatches to a new route."""

    empresa_reparto: str
    conductor: Optional[str] = None
    despachos: List[str] = Field(default_factory=list)
    es_chofer_externo: bool = False


class RouteStartRequest(BaseModel):
    """Driver request to start a route."""

    patente: Optional[str] = None
    nombre_conductor: Optional[str] = None


class ReconcileRequest(BaseModel):
    """Staff reconciliation of an external-carrier route."""

    liberar: List[str] = Field(default_factory=list)
    finalizar: bool = False
    documento_externo: Optional[str] = None


class RouteCancelResult(BaseModel):
    """Outcome of a route cancellation."""

    ruta: Route
    despachos_liberados: int


class ReconcileResult(BaseModel):
    """Outcome of a reconciliation run."""

    ruta: Route
    despachos_liberados: List[str] = Field(default_factory=list)
    despachos_documentados: List[str] = Field(default_factory=list)
    despachos_entregados: List[str] = Field(default_factory=list)
    finalizada: bool = False

"""Domain models for delivery dispatches and their evidence records."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchStatus(str, Enum):
    """Lifecycle status for a dispatch."""

    PENDIENTE = "pendiente"
    ASIGNADO = "asignado"
    ENTREGADO = "entregado"
    NO_ENTREGADO = "no_entregado"
    CANCELADO = "cancelado"


TERMINAL_DISPATCH_STATUSES = frozenset(
    {DispatchStatus.ENTREGADO, DispatchStatus.NO_ENTREGADO, DispatchStatus.CANCELADO}
)


class NonDeliveryReason(str, Enum):
    """Closed set of reasons a driver may report for a failed delivery."""

    CLIENTE_AUSENTE = "Cliente ausente"
    DIRECCION_INCORRECTA = "Dirección incorrecta"
    SIN_ACCESO = "Sin acceso / cerrado"
    RECHAZADO = "Rechazado por cliente"
    HORARIO = "Horario no coincide"
    OTRO = "Otro"


class DeliveryMode(str, Enum):
    """How a delivery was confirmed."""

    CHOFER = "chofer"
    MESON = "meson"
    CONCILIACION = "conciliacion"


class DeliveryEvidence(BaseModel):
    """Receiver data captured when a dispatch is delivered."""

    receptor_rut: Optional[str] = None
    receptor_nombre: Optional[str] = None
    receptor_apellido: Optional[str] = None
    foto_entrega: Optional[str] = None
    firma_entrega: Optional[str] = None
    documento_externo: Optional[str] = None
    fecha_entrega: Optional[datetime] = None
    modalidad: DeliveryMode = DeliveryMode.CHOFER
    registrado_por: Optional[str] = None


class NonDeliveryEvidence(BaseModel):
    """Reason and photo captured when a delivery attempt fails."""

    motivo: NonDeliveryReason
    observacion: str = ""
    foto_evidencia: str
    fecha_no_entrega: datetime = Field(default_factory=_utcnow)
    registrado_por: Optional[str] = None


class Dispatch(BaseModel):
    """Persisted dispatch record."""

    id: str
    folio_num: int
    card_code: str
    card_name: str
    doc_date: Optional[str] = None
    create_ts: Optional[int] = None
    comments: str = ""
    ship_to_code: Optional[str] = None
    address2: str
    estado: DispatchStatus = DispatchStatus.PENDIENTE
    empresa_reparto: Optional[str] = None
    ruta_asignada: Optional[str] = None
    entrega: Optional[DeliveryEvidence] = None
    no_entrega: Optional[NonDeliveryEvidence] = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_available(self) -> bool:
        return self.estado == DispatchStatus.PENDIENTE and not self.ruta_asignada

    @property
    def is_terminal(self) -> bool:
        return self.estado in TERMINAL_DISPATCH_STATUSES


class DispatchCreateRequest(BaseModel):
    """Order-sync payload registering a new dispatch."""

    folio_num: int = Field(ge=1)
    card_code: str = Field(min_length=1)
    card_name: str = Field(min_length=1)
    doc_date: Optional[str] = None
    create_ts: Optional[int] = None
    comments: str = ""
    ship_to_code: Optional[str] = None
    address2: str = Field(min_length=1)


class DeliverRequest(BaseModel):
    """Driver confirmation of a delivery."""

    receptor_rut: Optional[str] = None
    receptor_nombre: Optional[str] = None
    receptor_apellido: Optional[str] = None
    foto_entrega: Optional[str] = None
    firma_entrega: Optional[str] = None


class NotDeliveredRequest(BaseModel):
    """Driver report of a failed delivery."""

    motivo: str
    observacion: Optional[str] = None
    foto_evidencia: Optional[str] = None


class CounterDeliveryRequest(BaseModel):
    """Warehouse counter pickup confirmed by staff."""

    receptor_rut: Optional[str] = None
    receptor_nombre: Optional[str] = None
    receptor_apellido: Optional[str] = None
    foto_entrega: Optional[str] = None
    firma_entrega: Optional[str] = None


class DeliveryDataPatch(BaseModel):
    """Receiver data completed by staff after an external carrier reports it."""

    receptor_rut: Optional[str] = None
    receptor_nombre: Optional[str] = None
    receptor_apellido: Optional[str] = None
    foto_entrega: Optional[str] = None
    firma_entrega: Optional[str] = None
    documento_externo: Optional[str] = None


class DispatchListResponse(BaseModel):
    """Dispatch listing with status counts."""

    items: List[Dict[str, Any]]
    count: int
    counts_by_status: Dict[str, int] = Field(default_factory=dict)

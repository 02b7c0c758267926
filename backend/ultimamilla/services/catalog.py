"""Reason codes and state display metadata shared by every presentation layer."""
from __future__ import annotations

from typing import Any, Dict, List

from ultimamilla.models.despachos import DispatchStatus, NonDeliveryReason, TERMINAL_DISPATCH_STATUSES
from ultimamilla.models.rutas import RouteStatus, TERMINAL_ROUTE_STATUSES

DISPATCH_STATUS_DISPLAY: Dict[DispatchStatus, Dict[str, str]] = {
    DispatchStatus.PENDIENTE: {"label": "Disponible", "color": "green"},
    DispatchStatus.ASIGNADO: {"label": "Asignado", "color": "blue"},
    DispatchStatus.ENTREGADO: {"label": "Entregado", "color": "purple"},
    DispatchStatus.NO_ENTREGADO: {"label": "No entregado", "color": "orange"},
    DispatchStatus.CANCELADO: {"label": "Cancelado", "color": "red"},
}

ROUTE_STATUS_DISPLAY: Dict[RouteStatus, Dict[str, str]] = {
    RouteStatus.PENDIENTE: {"label": "Pendiente", "color": "yellow"},
    RouteStatus.INICIADA: {"label": "Iniciada", "color": "blue"},
    RouteStatus.PAUSADA: {"label": "Pausada", "color": "orange"},
    RouteStatus.FINALIZADA: {"label": "Finalizada", "color": "green"},
    RouteStatus.CANCELADA: {"label": "Cancelada", "color": "red"},
}

DEFAULT_DISPLAY = {"label": "Desconocido", "color": "gray"}


def non_delivery_reasons() -> List[str]:
    return [reason.value for reason in NonDeliveryReason]


def parse_non_delivery_reason(value: str | None) -> NonDeliveryReason | None:
    text = (value or "").strip()
    for reason in NonDeliveryReason:
        if reason.value.lower() == text.lower():
            return reason
    return None


def dispatch_status_display(status: str) -> Dict[str, str]:
    try:
        return DISPATCH_STATUS_DISPLAY[DispatchStatus(status)]
    except ValueError:
        return DEFAULT_DISPLAY


def route_status_display(status: str) -> Dict[str, str]:
    try:
        return ROUTE_STATUS_DISPLAY[RouteStatus(status)]
    except ValueError:
        return DEFAULT_DISPLAY


def catalog_snapshot() -> Dict[str, Any]:
    return {
        "motivos_no_entrega": non_delivery_reasons(),
        "estados_despacho": [
            {
                "value": status.value,
                "terminal": status in TERMINAL_DISPATCH_STATUSES,
                **DISPATCH_STATUS_DISPLAY[status],
            }
            for status in DispatchStatus
        ],
        "estados_ruta": [
            {
                "value": status.value,
                "terminal": status in TERMINAL_ROUTE_STATUSES,
                **ROUTE_STATUS_DISPLAY[status],
            }
            for status in RouteStatus
        ],
    }

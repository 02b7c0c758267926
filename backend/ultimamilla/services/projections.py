"""Read-side views that resolve plain ids into populated objects."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from ultimamilla.models.despachos import Dispatch, DispatchStatus
from ultimamilla.models.empresas import CarrierCompany
from ultimamilla.models.rutas import ACTIVE_ROUTE_STATUSES, Route
from ultimamilla.services.carrier_store import CarrierStore
from ultimamilla.services.catalog import dispatch_status_display, route_status_display
from ultimamilla.services.dispatch_store import DispatchStore
from ultimamilla.services.route_store import RouteStore
from ultimamilla.services.state_store import StateStore, state_store


def _minutes_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start is None or end is None:
        return None
    return max(0, int((end - start).total_seconds() // 60))


def route_progress(route: Route, dispatches: List[Dispatch]) -> Dict[str, Any]:
    """Delivery counts and time metrics for the dispatches bound to ``route``."""
    bound = [dispatch for dispatch in dispatches if dispatch.ruta_asignada == route.id]
    total = len(bound)
    delivered = [dispatch for dispatch in bound if dispatch.estado == DispatchStatus.ENTREGADO]
    not_delivered = sum(1 for dispatch in bound if dispatch.estado == DispatchStatus.NO_ENTREGADO)
    pending = sum(1 for dispatch in bound if dispatch.estado == DispatchStatus.ASIGNADO)

    delivery_times = sorted(
        dispatch.entrega.fecha_entrega
        for dispatch in delivered
        if dispatch.entrega and dispatch.entrega.fecha_entrega
    )
    first_delivery = delivery_times[0] if delivery_times else None
    duration = _minutes_between(route.fecha_inicio, route.fecha_finalizacion)
    average = None
    if route.fecha_inicio and delivery_times:
        average = _minutes_between(route.fecha_inicio, delivery_times[-1]) // len(delivery_times)

    return {
        "total": total,
        "entregados": len(delivered),
        "no_entregados": not_delivered,
        "pendientes": pending,
        "porcentaje": round(len(delivered) * 100 / total) if total else 0,
        "minutos_preparacion": _minutes_between(route.asignado_el, route.fecha_inicio),
        "minutos_primera_entrega": _minutes_between(route.fecha_inicio, first_delivery),
        "minutos_duracion_total": duration,
        "minutos_promedio_entrega": average,
    }


class Projections:
    def __init__(self, state: StateStore) -> None:
        self._state = state
        self._dispatches = DispatchStore(state)
        self._routes = RouteStore(state)
        self._carriers = CarrierStore(state)

    def _carrier_summary(self, carrier: Optional[CarrierCompany]) -> Optional[Dict[str, Any]]:
        if carrier is None:
            return None
        return {
            "id": carrier.id,
            "rut": carrier.rut,
            "razon_social": carrier.razon_social,
            "slug": carrier.slug,
            "flota_propia": self._carriers.is_own_fleet(carrier),
        }

    @staticmethod
    def _route_summary(route: Optional[Route]) -> Optional[Dict[str, Any]]:
        if route is None:
            return None
        return {
            "id": route.id,
            "numero_ruta": route.numero_ruta,
            "estado": route.estado.value,
            "conductor": route.conductor,
            "nombre_conductor": route.nombre_conductor,
            "patente": route.patente,
        }

    def dispatch_view(self, dispatch_id: str) -> Dict[str, Any]:
        with self._state.transaction():
            dispatch = self._dispatches.require(dispatch_id)
            route = self._routes.get(dispatch.ruta_asignada) if dispatch.ruta_asignada else None
            carrier = self._carriers.get(dispatch.empresa_reparto) if dispatch.empresa_reparto else None
        return {
            **dispatch.model_dump(mode="json"),
            "estado_display": dispatch_status_display(dispatch.estado.value),
            "ruta": self._route_summary(route),
            "empresa": self._carrier_summary(carrier),
        }

    def route_view(self, route_id: str) -> Dict[str, Any]:
        """Route, carrier and dispatches read as one consistent snapshot."""
        with self._state.transaction():
            route = self._routes.require(route_id)
            dispatches = list(self._dispatches.get_many(route.despachos).values())
            carrier = self._carriers.get(route.empresa_reparto)
        return {
            **route.model_dump(mode="json"),
            "estado_display": route_status_display(route.estado.value),
            "empresa": self._carrier_summary(carrier),
            "despachos_detalle": [
                {
                    **dispatch.model_dump(mode="json"),
                    "vinculado": dispatch.ruta_asignada == route.id,
                    "estado_display": dispatch_status_display(dispatch.estado.value),
                }
                for dispatch in dispatches
            ],
            "progreso": route_progress(route, dispatches),
        }

    def route_list(self, routes: List[Route]) -> List[Dict[str, Any]]:
        carriers = {carrier.id: carrier for carrier in self._carriers.list()}
        items: List[Dict[str, Any]] = []
        for route in routes:
            dispatches = list(self._dispatches.get_many(route.despachos).values())
            items.append(
                {
                    **route.model_dump(mode="json"),
                    "estado_display": route_status_display(route.estado.value),
                    "empresa": self._carrier_summary(carriers.get(route.empresa_reparto)),
                    "progreso": route_progress(route, dispatches),
                }
            )
        return items

    def board(self) -> Dict[str, Any]:
        with self._state.transaction():
            active = [
                route
                for route in self._routes.list()
                if route.estado in ACTIVE_ROUTE_STATUSES
            ]
            return {
                "despachos_por_estado": self._dispatches.counts_by_status(),
                "rutas_por_estado": self._routes.counts_by_status(),
                "disponibles": len(self._dispatches.list(disponibles=True)),
                "rutas_activas": self.route_list(active),
            }


projections = Projections(state_store)

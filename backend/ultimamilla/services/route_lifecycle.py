"""Route lifecycle controller.

Routes move ``pendiente -> iniciada -> finalizada`` on the driver flow, can be
paused and resumed while on the road, and may be canceled from any
non-terminal state. Every transition that touches dispatches does so through
:class:`DispatchStateMachine` inside the same transaction as the route write,
so a reader never observes a route and its dispatches out of step.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ultimamilla.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from ultimamilla.core.logging import logger
from ultimamilla.core.validators import is_valid_plate, normalize_plate
from ultimamilla.models.despachos import Dispatch, DispatchStatus
from ultimamilla.models.rutas import Route, RouteCancelResult, RouteStatus
from ultimamilla.services.carrier_store import CarrierStore
from ultimamilla.services.dispatch_machine import DispatchStateMachine
from ultimamilla.services.dispatch_store import DispatchStore
from ultimamilla.services.route_store import RouteStore
from ultimamilla.services.state_store import StateStore, state_store, utc_now


class RouteLifecycle:
    """Create, start, pause, resume, finish and cancel delivery routes."""

    ALLOWED_TRANSITIONS: Dict[RouteStatus, set] = {
        RouteStatus.PENDIENTE: {RouteStatus.INICIADA, RouteStatus.CANCELADA, RouteStatus.FINALIZADA},
        RouteStatus.INICIADA: {RouteStatus.PAUSADA, RouteStatus.FINALIZADA, RouteStatus.CANCELADA},
        RouteStatus.PAUSADA: {RouteStatus.INICIADA, RouteStatus.CANCELADA, RouteStatus.FINALIZADA},
        RouteStatus.FINALIZADA: set(),
        RouteStatus.CANCELADA: set(),
    }

    def __init__(self, state: StateStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._state = state
        self._clock = clock or utc_now
        self._routes = RouteStore(state)
        self._dispatches = DispatchStore(state)
        self._carriers = CarrierStore(state)
        self._machine = DispatchStateMachine(state, clock=self._clock)

    @staticmethod
    def _require_state(route: Route, allowed: Iterable[RouteStatus], operation: str) -> None:
        allowed = set(allowed)
        if route.estado not in allowed:
            raise InvalidStateError(
                f"No se puede {operation} la ruta {route.numero_ruta} en estado '{route.estado.value}'",
                {
                    "route_id": route.id,
                    "estado": route.estado.value,
                    "permitidos": sorted(status.value for status in allowed),
                },
            )

    def _record(self, route: Route, event_type: str, actor: str, details: Optional[dict] = None) -> None:
        self._state.record_event("route", route.id, event_type, actor, details or {})

    def bound_dispatches(self, route: Route) -> List[Dispatch]:
        """Dispatches of ``route`` that still reference it, in route order."""
        return [
            dispatch
            for dispatch in self._dispatches.get_many(route.despachos).values()
            if dispatch.ruta_asignada == route.id
        ]

    def is_operator(self, route: Route, actor_id: str) -> bool:
        """True when ``actor_id`` drives ``route`` or owns the carrier account running it."""
        if route.conductor and route.conductor == actor_id:
            return True
        carrier = self._carriers.get(route.empresa_reparto)
        return bool(carrier and carrier.usuario_cuenta and carrier.usuario_cuenta == actor_id.lower())

    def _elapsed_minutes(self, route: Route, finished_at: datetime) -> int:
        return max(0, int((finished_at - route.asignado_el).total_seconds() // 60))

    def create(
        self,
        carrier_id: str,
        driver_id: Optional[str],
        dispatch_ids: List[str],
        created_by: str,
        es_chofer_externo: bool = False,
    ) -> Route:
        with self._state.transaction():
            carrier = self._carriers.require(carrier_id)
            ids = [item.strip() for item in dict.fromkeys(dispatch_ids or []) if item and item.strip()]
            if not ids:
                raise ValidationError("Debe seleccionar al menos un despacho", {"despachos": []})

            found = self._dispatches.get_many(ids)
            missing = [dispatch_id for dispatch_id in ids if dispatch_id not in found]
            if missing:
                raise NotFoundError("Despachos no encontrados", {"despachos": missing})
            unavailable = [dispatch for dispatch in found.values() if not dispatch.is_available]
            if unavailable:
                raise ConflictError(
                    "Algunos despachos no están disponibles",
                    {
                        "despachos": [dispatch.id for dispatch in unavailable],
                        "estados": {dispatch.id: dispatch.estado.value for dispatch in unavailable},
                    },
                )

            driver = (driver_id or "").strip() or None
            own_fleet = self._carriers.is_own_fleet(carrier)
            if own_fleet and not driver:
                raise ValidationError(
                    "Debe seleccionar un chofer para la flota propia",
                    {"empresa_reparto": carrier.id},
                )
            external_driver = es_chofer_externo or not own_fleet

            now = self._clock()
            route = Route(
                id=self._routes.next_route_id(),
                numero_ruta=self._routes.next_route_number(now),
                empresa_reparto=carrier.id,
                conductor=driver,
                es_chofer_externo=external_driver,
                despachos=ids,
                asignado_por=created_by,
                asignado_el=now,
                created_at=now,
                updated_at=now,
            )
            self._routes.insert(route)
            for dispatch_id in ids:
                self._machine.assign(found[dispatch_id], route, created_by)
            self._record(
                route,
                "route_created",
                created_by,
                {
                    "numero_ruta": route.numero_ruta,
                    "empresa_reparto": carrier.id,
                    "conductor": driver,
                    "despachos": ids,
                },
            )
        logger.info(
            "Route created",
            route_id=route.id,
            numero_ruta=route.numero_ruta,
            dispatches=len(ids),
            actor=created_by,
        )
        return route

    def start(
        self,
        route_id: str,
        patente: Optional[str],
        actor: str,
        nombre_conductor: Optional[str] = None,
    ) -> Route:
        with self._state.transaction():
            route = self._routes.require(route_id)
            self._require_state(route, {RouteStatus.PENDIENTE}, "iniciar")
            if not (patente or "").strip():
                raise ValidationError("La patente es obligatoria", {"faltantes": ["patente"]})
            if not is_valid_plate(patente):
                raise ValidationError("Formato de patente inválido (AB1234 o ABCD12)", {"patente": patente})
            name = " ".join((nombre_conductor or "").split()) or route.nombre_conductor
            if route.es_chofer_externo and not name:
                raise ValidationError(
                    "El nombre del conductor externo es obligatorio",
                    {"faltantes": ["nombre_conductor"]},
                )

            route.estado = RouteStatus.INICIADA
            route.fecha_inicio = self._clock()
            route.patente = normalize_plate(patente)
            route.nombre_conductor = name
            saved = self._routes.save(route)
            self._record(saved, "route_started", actor, {"patente": saved.patente, "nombre_conductor": name})
        logger.info("Route started", route_id=route_id, patente=saved.patente, actor=actor)
        return saved

    def pause(self, route_id: str, actor: str) -> Route:
        with self._state.transaction():
            route = self._routes.require(route_id)
            self._require_state(route, {RouteStatus.INICIADA}, "pausar")
            route.estado = RouteStatus.PAUSADA
            saved = self._routes.save(route)
            self._record(saved, "route_paused", actor)
        logger.info("Route paused", route_id=route_id, actor=actor)
        return saved

    def resume(self, route_id: str, actor: str) -> Route:
        with self._state.transaction():
            route = self._routes.require(route_id)
            self._require_state(route, {RouteStatus.PAUSADA}, "reanudar")
            route.estado = RouteStatus.INICIADA
            saved = self._routes.save(route)
            self._record(saved, "route_resumed", actor)
        logger.info("Route resumed", route_id=route_id, actor=actor)
        return saved

    def finish(self, route_id: str, actor: str) -> Route:
        with self._state.transaction():
            route = self._routes.require(route_id)
            self._require_state(route, {RouteStatus.INICIADA}, "finalizar")
            pending = [dispatch.id for dispatch in self.bound_dispatches(route) if not dispatch.is_terminal]
            if pending:
                raise PreconditionError(
                    f"La ruta {route.numero_ruta} tiene despachos sin gestionar",
                    {"route_id": route.id, "pendientes": pending},
                )
            saved = self.close(route, actor)
        logger.info(
            "Route finished",
            route_id=route_id,
            tiempo_transcurrido=saved.tiempo_transcurrido,
            actor=actor,
        )
        return saved

    def close(self, route: Route, actor: str, conciliada: bool = False) -> Route:
        """Stamp ``route`` as finished; caller owns the transaction and preconditions."""
        self._require_state(
            route,
            {status for status, targets in self.ALLOWED_TRANSITIONS.items() if RouteStatus.FINALIZADA in targets},
            "finalizar",
        )
        finished_at = self._clock()
        route.estado = RouteStatus.FINALIZADA
        route.fecha_finalizacion = finished_at
        route.tiempo_transcurrido = self._elapsed_minutes(route, finished_at)
        route.conciliada = route.conciliada or conciliada
        saved = self._routes.save(route)
        self._record(
            saved,
            "route_finished",
            actor,
            {"tiempo_transcurrido": saved.tiempo_transcurrido, "conciliada": saved.conciliada},
        )
        return saved

    def cancel(self, route_id: str, actor: str) -> RouteCancelResult:
        """Cancel a route and return every undelivered dispatch to the pool."""
        with self._state.transaction():
            route = self._routes.require(route_id)
            self._require_state(
                route,
                {status for status, targets in self.ALLOWED_TRANSITIONS.items() if RouteStatus.CANCELADA in targets},
                "cancelar",
            )
            released: List[str] = []
            for dispatch in self.bound_dispatches(route):
                if dispatch.estado in (DispatchStatus.ENTREGADO, DispatchStatus.CANCELADO):
                    continue
                if self._machine.release_loaded(dispatch, actor, reason="route_canceled") is not None:
                    released.append(dispatch.id)
            route.estado = RouteStatus.CANCELADA
            route.cancelado_por = actor
            saved = self._routes.save(route)
            self._record(saved, "route_canceled", actor, {"despachos_liberados": released})
        logger.info("Route canceled", route_id=route_id, released=len(released), actor=actor)
        return RouteCancelResult(ruta=saved, despachos_liberados=len(released))


route_lifecycle = RouteLifecycle(state_store)

"""Reconciliation of external-carrier routes against out-of-band reports."""
from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from ultimamilla.core.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError
from ultimamilla.core.logging import logger
from ultimamilla.models.rutas import ReconcileResult, RouteStatus
from ultimamilla.services.carrier_store import CarrierStore
from ultimamilla.services.dispatch_machine import DispatchStateMachine
from ultimamilla.services.dispatch_store import DispatchStore
from ultimamilla.services.route_lifecycle import RouteLifecycle
from ultimamilla.services.route_store import RouteStore
from ultimamilla.services.state_store import StateStore, state_store, utc_now


class ReconciliationService:
    """Bulk release and relaxed finish for routes run by external carriers.

    External carriers report outcomes by phone, mail or portal instead of the
    driver app, so finishing here does not require every dispatch to be
    terminal. Repeating a call with the same input leaves the same state.
    """

    def __init__(self, state: StateStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._state = state
        clock = clock or utc_now
        self._routes = RouteStore(state)
        self._dispatches = DispatchStore(state)
        self._carriers = CarrierStore(state)
        self._machine = DispatchStateMachine(state, clock=clock)
        self._lifecycle = RouteLifecycle(state, clock=clock)

    def reconcile(
        self,
        route_id: str,
        dispatch_ids_to_release: List[str],
        finalize_route: bool,
        actor: str,
        documento_externo: Optional[str] = None,
    ) -> ReconcileResult:
        document = " ".join((documento_externo or "").split()) or None
        with self._state.transaction():
            route = self._routes.require(route_id)
            carrier = self._carriers.require(route.empresa_reparto)
            if self._carriers.is_own_fleet(carrier):
                raise ForbiddenError(
                    "La conciliación solo aplica a rutas de empresas externas",
                    {"route_id": route.id, "empresa_reparto": carrier.id},
                )
            if route.estado == RouteStatus.CANCELADA:
                raise InvalidStateError(
                    f"La ruta {route.numero_ruta} está cancelada",
                    {"route_id": route.id, "estado": route.estado.value},
                )

            ids = [item.strip() for item in dict.fromkeys(dispatch_ids_to_release or []) if item and item.strip()]
            found = self._dispatches.get_many(ids)
            missing = [dispatch_id for dispatch_id in ids if dispatch_id not in found]
            if missing:
                raise NotFoundError("Despachos no encontrados", {"despachos": missing})
            foreign = [
                dispatch.id
                for dispatch in found.values()
                if dispatch.ruta_asignada and dispatch.ruta_asignada != route.id
            ]
            if foreign:
                raise ConflictError(
                    f"Algunos despachos pertenecen a otra ruta distinta de {route.numero_ruta}",
                    {"despachos": foreign},
                )

            released: List[str] = []
            for dispatch_id in ids:
                if self._machine.release_loaded(found[dispatch_id], actor, reason="reconciliation") is not None:
                    released.append(dispatch_id)

            documented: List[str] = []
            delivered: List[str] = []
            finalized = False
            if finalize_route:
                for dispatch in self._lifecycle.bound_dispatches(route):
                    _, changes = self._machine.apply_external_document(dispatch, document, actor)
                    if "entregado" in changes:
                        delivered.append(dispatch.id)
                    if "documentado" in changes:
                        documented.append(dispatch.id)
                if route.estado != RouteStatus.FINALIZADA:
                    if document and not route.documento_externo:
                        route.documento_externo = document
                    route = self._lifecycle.close(route, actor, conciliada=True)
                    finalized = True
                elif document and not route.documento_externo:
                    route.documento_externo = document
                    route = self._routes.save(route)

            self._state.record_event(
                "route",
                route.id,
                "route_reconciled",
                actor,
                {
                    "despachos_liberados": released,
                    "despachos_documentados": documented,
                    "despachos_entregados": delivered,
                    "finalizada": finalized,
                    "documento_externo": document,
                },
            )
        logger.info(
            "Route reconciled",
            route_id=route_id,
            released=len(released),
            documented=len(documented),
            finalized=finalized,
            actor=actor,
        )
        return ReconcileResult(
            ruta=route,
            despachos_liberados=released,
            despachos_documentados=documented,
            despachos_entregados=delivered,
            finalizada=finalized,
        )


reconciliation_service = ReconciliationService(state_store)

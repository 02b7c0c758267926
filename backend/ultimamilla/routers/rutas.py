"""API routes for the route lifecycle and external-carrier reconciliation."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from ultimamilla.core.auth import ActorContext, get_actor_context, require_roles
from ultimamilla.core.errors import DomainError, ForbiddenError, to_http_exception
from ultimamilla.core.logging import logger
from ultimamilla.models.rutas import ReconcileRequest, RouteCreateRequest, RouteStartRequest, RouteStatus
from ultimamilla.services.carrier_store import CarrierStore
from ultimamilla.services.projections import projections
from ultimamilla.services.reconciliation import reconciliation_service
from ultimamilla.services.route_lifecycle import route_lifecycle
from ultimamilla.services.route_store import RouteStore
from ultimamilla.services.state_store import state_store

router = APIRouter(prefix="/rutas", tags=["rutas"])

route_store = RouteStore(state_store)
carrier_store = CarrierStore(state_store)
STAFF_ROLES = ("admin", "adminBodega", "subBodega")


def _idempotency_lookup(operation: str, key: str | None):
    if not key:
        return None
    return state_store.get_idempotent(f"{operation}:{key.strip()}")


def _idempotency_store(operation: str, key: str | None, response: dict):
    if not key:
        return
    state_store.set_idempotent(f"{operation}:{key.strip()}", response)


def _ensure_operator(context: ActorContext, route_id: str) -> None:
    if context.has_any(*STAFF_ROLES):
        return
    route = route_store.require(route_id)
    if not route_lifecycle.is_operator(route, context.actor_id):
        raise ForbiddenError(
            f"La ruta {route.numero_ruta} no está asignada al usuario",
            {"route_id": route_id, "actor": context.actor_id},
        )


@router.get("")
def list_routes(
    estado: Optional[RouteStatus] = Query(default=None),
    conductor: Optional[str] = Query(default=None),
    empresa_reparto: Optional[str] = Query(default=None),
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
):
    routes = route_store.list(estado=estado, conductor=conductor, empresa_reparto=empresa_reparto)
    items = projections.route_list(routes)
    return {"items": items, "count": len(items), "counts_by_status": route_store.counts_by_status()}


@router.get("/tablero")
def get_board(context: ActorContext = Depends(require_roles(*STAFF_ROLES))):
    return projections.board()


@router.get("/mis-rutas")
def list_my_routes(
    estado: Optional[RouteStatus] = Query(default=None),
    context: ActorContext = Depends(get_actor_context),
):
    """Routes the caller drives or runs through its carrier account."""
    account = carrier_store.find_by_account(context.actor_id)
    routes = route_store.list_for_actor(context.actor_id, [account.id] if account else [])
    if estado is not None:
        routes = [route for route in routes if route.estado == estado]
    items = projections.route_list(routes)
    return {"items": items, "count": len(items)}


@router.post("", status_code=201)
def create_route(
    request: RouteCreateRequest,
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    try:
        # lookup, creation and key storage commit together
        with state_store.transaction():
            cached = _idempotency_lookup("create_route", idempotency_key)
            if cached:
                return cached
            route = route_lifecycle.create(
                request.empresa_reparto,
                request.conductor,
                request.despachos,
                created_by=context.actor_id,
                es_chofer_externo=request.es_chofer_externo,
            )
            response = route.model_dump(mode="json")
            _idempotency_store("create_route", idempotency_key, response)
        return response
    except DomainError as exc:
        logger.warning("Route creation rejected", empresa_reparto=request.empresa_reparto, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.get("/{route_id}")
def get_route(route_id: str, context: ActorContext = Depends(get_actor_context)):
    try:
        _ensure_operator(context, route_id)
        return projections.route_view(route_id)
    except DomainError as exc:
        raise to_http_exception(exc)


@router.get("/{route_id}/timeline")
def get_route_timeline(
    route_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
):
    try:
        route_store.require(route_id)
    except DomainError as exc:
        raise to_http_exception(exc)
    events = state_store.list_timeline("route", route_id, limit=limit)
    return {"route_id": route_id, "events": events, "count": len(events)}


@router.post("/{route_id}/iniciar")
def start_route(
    route_id: str,
    request: RouteStartRequest,
    context: ActorContext = Depends(require_roles("chofer", *STAFF_ROLES)),
):
    try:
        _ensure_operator(context, route_id)
        route = route_lifecycle.start(
            route_id,
            request.patente,
            actor=context.actor_id,
            nombre_conductor=request.nombre_conductor,
        )
        return route.model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Route start rejected", route_id=route_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.post("/{route_id}/pausar")
def pause_route(route_id: str, context: ActorContext = Depends(require_roles("chofer", *STAFF_ROLES))):
    try:
        _ensure_operator(context, route_id)
        return route_lifecycle.pause(route_id, actor=context.actor_id).model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Route pause rejected", route_id=route_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.post("/{route_id}/reanudar")
def resume_route(route_id: str, context: ActorContext = Depends(require_roles("chofer", *STAFF_ROLES))):
    try:
        _ensure_operator(context, route_id)
        return route_lifecycle.resume(route_id, actor=context.actor_id).model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Route resume rejected", route_id=route_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.post("/{route_id}/finalizar")
def finish_route(route_id: str, context: ActorContext = Depends(require_roles("chofer", *STAFF_ROLES))):
    try:
        _ensure_operator(context, route_id)
        return route_lifecycle.finish(route_id, actor=context.actor_id).model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Route finish rejected", route_id=route_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.post("/{route_id}/cancelar")
def cancel_route(route_id: str, context: ActorContext = Depends(require_roles(*STAFF_ROLES))):
    try:
        return route_lifecycle.cancel(route_id, actor=context.actor_id).model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Route cancellation rejected", route_id=route_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.post("/{route_id}/conciliar")
def reconcile_route(
    route_id: str,
    request: ReconcileRequest,
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
):
    try:
        result = reconciliation_service.reconcile(
            route_id,
            request.liberar,
            request.finalizar,
            actor=context.actor_id,
            documento_externo=request.documento_externo,
        )
        return result.model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Route reconciliation rejected", route_id=route_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)

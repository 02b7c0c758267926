"""API routes for dispatches: order sync entry, driver confirmation and staff corrections."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ultimamilla.core.auth import ActorContext, get_actor_context, require_roles
from ultimamilla.core.errors import DomainError, ForbiddenError, to_http_exception
from ultimamilla.core.logging import logger
from ultimamilla.models.despachos import (
    CounterDeliveryRequest,
    DeliverRequest,
    DeliveryDataPatch,
    DispatchCreateRequest,
    DispatchListResponse,
    DispatchStatus,
    NotDeliveredRequest,
)
from ultimamilla.services.dispatch_machine import dispatch_machine
from ultimamilla.services.dispatch_store import DispatchStore
from ultimamilla.services.projections import projections
from ultimamilla.services.route_lifecycle import route_lifecycle
from ultimamilla.services.route_store import RouteStore
from ultimamilla.services.state_store import state_store

router = APIRouter(prefix="/despachos", tags=["despachos"])

dispatch_store = DispatchStore(state_store)
route_store = RouteStore(state_store)
STAFF_ROLES = ("admin", "adminBodega", "subBodega")


def _ensure_operator(context: ActorContext, dispatch_id: str) -> None:
    """Drivers may only confirm dispatches of routes they operate."""
    if context.has_any(*STAFF_ROLES):
        return
    dispatch = dispatch_store.require(dispatch_id)
    route = route_store.get(dispatch.ruta_asignada) if dispatch.ruta_asignada else None
    if route is None or not route_lifecycle.is_operator(route, context.actor_id):
        raise ForbiddenError(
            "El despacho no pertenece a una ruta del conductor",
            {"dispatch_id": dispatch_id, "actor": context.actor_id},
        )


@router.get("", response_model=DispatchListResponse)
def list_dispatches(
    estado: Optional[DispatchStatus] = Query(default=None),
    disponibles: bool = Query(default=False),
    ruta: Optional[str] = Query(default=None),
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
):
    items = dispatch_store.list(estado=estado, ruta_asignada=ruta, disponibles=disponibles)
    return DispatchListResponse(
        items=[item.model_dump(mode="json") for item in items],
        count=len(items),
        counts_by_status=dispatch_store.counts_by_status(),
    )


@router.post("", status_code=201)
def create_dispatch(
    request: DispatchCreateRequest,
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
):
    try:
        dispatch = dispatch_store.create(request, actor=context.actor_id)
        logger.info("Dispatch registered", dispatch_id=dispatch.id, folio_num=dispatch.folio_num)
        return dispatch.model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Dispatch registration rejected", folio_num=request.folio_num, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.get("/{dispatch_id}")
def get_dispatch(dispatch_id: str, context: ActorContext = Depends(get_actor_context)):
    try:
        _ensure_operator(context, dispatch_id)
        return projections.dispatch_view(dispatch_id)
    except DomainError as exc:
        raise to_http_exception(exc)


@router.get("/{dispatch_id}/timeline")
def get_dispatch_timeline(
    dispatch_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
):
    try:
        dispatch_store.require(dispatch_id)
    except DomainError as exc:
        raise to_http_exception(exc)
    events = state_store.list_timeline("dispatch", dispatch_id, limit=limit)
    return {"dispatch_id": dispatch_id, "events": events, "count": len(events)}


@router.post("/{dispatch_id}/entregar-chofer")
def deliver_dispatch(
    dispatch_id: str,
    request: DeliverRequest,
    context: ActorContext = Depends(require_roles("chofer", *STAFF_ROLES)),
):
    try:
        _ensure_operator(context, dispatch_id)
        dispatch = dispatch_machine.mark_delivered(dispatch_id, request, actor=context.actor_id)
        return dispatch.model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Delivery rejected", dispatch_id=dispatch_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.post("/{dispatch_id}/no-entregado-chofer")
def report_not_delivered(
    dispatch_id: str,
    request: NotDeliveredRequest,
    context: ActorContext = Depends(require_roles("chofer", *STAFF_ROLES)),
):
    try:
        _ensure_operator(context, dispatch_id)
        dispatch = dispatch_machine.mark_not_delivered(
            dispatch_id,
            request.motivo,
            request.foto_evidencia,
            actor=context.actor_id,
            observacion=request.observacion,
        )
        return dispatch.model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Non-delivery report rejected", dispatch_id=dispatch_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.post("/{dispatch_id}/entregar-meson")
def deliver_at_counter(
    dispatch_id: str,
    request: CounterDeliveryRequest,
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
):
    try:
        dispatch = dispatch_machine.deliver_at_counter(dispatch_id, request, actor=context.actor_id)
        return dispatch.model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Counter delivery rejected", dispatch_id=dispatch_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.patch("/{dispatch_id}/datos-entrega")
def update_delivery_data(
    dispatch_id: str,
    request: DeliveryDataPatch,
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
):
    try:
        dispatch = dispatch_machine.update_delivery_data(dispatch_id, request, actor=context.actor_id)
        return dispatch.model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Delivery data update rejected", dispatch_id=dispatch_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.post("/{dispatch_id}/liberar")
def release_dispatch(dispatch_id: str, context: ActorContext = Depends(require_roles(*STAFF_ROLES))):
    try:
        released = dispatch_machine.release(dispatch_id, actor=context.actor_id)
        return {"liberado": released, "despacho": dispatch_store.require(dispatch_id).model_dump(mode="json")}
    except DomainError as exc:
        logger.warning("Dispatch release rejected", dispatch_id=dispatch_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.post("/{dispatch_id}/cancelar")
def cancel_dispatch(dispatch_id: str, context: ActorContext = Depends(require_roles(*STAFF_ROLES))):
    try:
        dispatch = dispatch_machine.cancel(dispatch_id, actor=context.actor_id)
        return dispatch.model_dump(mode="json")
    except DomainError as exc:
        logger.warning("Dispatch cancellation rejected", dispatch_id=dispatch_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)

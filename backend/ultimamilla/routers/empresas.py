"""API routes for carrier companies (empresas de reparto)."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ultimamilla.core.auth import ActorContext, require_roles
from ultimamilla.core.errors import DomainError, to_http_exception
from ultimamilla.core.logging import logger
from ultimamilla.models.empresas import CarrierCreateRequest, CarrierUpdateRequest
from ultimamilla.services.carrier_store import CarrierStore
from ultimamilla.services.state_store import state_store

router = APIRouter(prefix="/empresas", tags=["empresas"])

carrier_store = CarrierStore(state_store)
STAFF_ROLES = ("admin", "adminBodega", "subBodega")


def _present(carrier):
    return {**carrier.model_dump(mode="json"), "es_flota_propia": carrier_store.is_own_fleet(carrier)}


@router.get("")
def list_carriers(context: ActorContext = Depends(require_roles(*STAFF_ROLES))):
    items = [_present(carrier) for carrier in carrier_store.list()]
    return {"items": items, "count": len(items)}


@router.get("/{carrier_id}")
def get_carrier(carrier_id: str, context: ActorContext = Depends(require_roles(*STAFF_ROLES))):
    try:
        return _present(carrier_store.require(carrier_id))
    except DomainError as exc:
        raise to_http_exception(exc)


@router.post("", status_code=201)
def create_carrier(
    request: CarrierCreateRequest,
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
):
    try:
        return _present(carrier_store.create(request, actor=context.actor_id))
    except DomainError as exc:
        logger.warning("Carrier creation rejected", rut=request.rut, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.patch("/{carrier_id}")
def update_carrier(
    carrier_id: str,
    request: CarrierUpdateRequest,
    context: ActorContext = Depends(require_roles(*STAFF_ROLES)),
):
    try:
        return _present(carrier_store.update(carrier_id, request, actor=context.actor_id))
    except DomainError as exc:
        logger.warning("Carrier update rejected", carrier_id=carrier_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)


@router.delete("/{carrier_id}")
def delete_carrier(carrier_id: str, context: ActorContext = Depends(require_roles(*STAFF_ROLES))):
    try:
        carrier = carrier_store.delete(carrier_id, actor=context.actor_id)
        return {"status": "deleted", "carrier_id": carrier.id}
    except DomainError as exc:
        logger.warning("Carrier deletion rejected", carrier_id=carrier_id, kind=exc.kind, error=exc.message)
        raise to_http_exception(exc)

"""Dispatch state machine: delivery evidence, non-delivery, release and cancellation."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from ultimamilla.core.errors import InvalidStateError, NotFoundError, ValidationError
from ultimamilla.models.despachos import (
    CounterDeliveryRequest,
    DeliverRequest,
    DeliveryDataPatch,
    DeliveryMode,
    DispatchStatus,
    NonDeliveryReason,
)

PHOTO = "data:image/jpeg;base64,/9j/4AAQSkZJRg=="


def test_mark_delivered_stores_evidence_and_timestamp(own_route, machine, clock, evidence):
    route, (a, _, _) = own_route

    delivered = machine.mark_delivered(a.id, evidence, actor="chofer1")

    assert delivered.estado == DispatchStatus.ENTREGADO
    assert delivered.ruta_asignada == route.id
    assert delivered.entrega.receptor_rut == "12.345.678-5"
    assert delivered.entrega.receptor_nombre == "Juan"
    assert delivered.entrega.receptor_apellido == "Pérez"
    assert delivered.entrega.foto_entrega == PHOTO
    assert delivered.entrega.fecha_entrega == clock.now
    assert delivered.entrega.modalidad == DeliveryMode.CHOFER
    assert delivered.entrega.registrado_por == "chofer1"
    assert delivered.version == a.version + 2


def test_mark_delivered_lists_missing_fields(own_route, machine):
    _, (a, _, _) = own_route

    with pytest.raises(ValidationError) as excinfo:
        machine.mark_delivered(a.id, DeliverRequest(receptor_rut="12345678-5", foto_entrega=PHOTO), actor="chofer1")

    assert excinfo.value.details["faltantes"] == ["receptor_nombre", "receptor_apellido"]


def test_mark_delivered_requires_photo(own_route, machine, evidence):
    _, (a, _, _) = own_route

    with pytest.raises(ValidationError):
        machine.mark_delivered(a.id, evidence.model_copy(update={"foto_entrega": "  "}), actor="chofer1")


def test_mark_delivered_rejects_bad_rut_check_digit(own_route, machine, evidence):
    _, (a, _, _) = own_route

    with pytest.raises(ValidationError) as excinfo:
        machine.mark_delivered(a.id, evidence.model_copy(update={"receptor_rut": "12345678-9"}), actor="chofer1")

    assert excinfo.value.kind == "validation"


def test_mark_delivered_unknown_dispatch(machine, evidence):
    with pytest.raises(NotFoundError):
        machine.mark_delivered("DSP-999999", evidence, actor="chofer1")


def test_mark_delivered_requires_assigned_state(make_dispatches, machine, evidence):
    (pending,) = make_dispatches(1)

    with pytest.raises(InvalidStateError) as excinfo:
        machine.mark_delivered(pending.id, evidence, actor="chofer1")

    assert excinfo.value.details["estado"] == "pendiente"


def test_concurrent_deliveries_have_exactly_one_winner(own_route, machine, evidence):
    _, (a, _, _) = own_route

    def _deliver(_):
        try:
            machine.mark_delivered(a.id, evidence, actor="chofer1")
            return "ok"
        except InvalidStateError:
            return "stale"

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(_deliver, range(2)))

    assert sorted(outcomes) == ["ok", "stale"]


def test_mark_not_delivered_accepts_reason_case_insensitively(own_route, machine, clock):
    _, (_, b, _) = own_route

    failed = machine.mark_not_delivered(
        b.id,
        "cliente ausente",
        PHOTO,
        actor="chofer1",
        observacion="  Nadie en casa  ",
    )

    assert failed.estado == DispatchStatus.NO_ENTREGADO
    assert failed.no_entrega.motivo == NonDeliveryReason.CLIENTE_AUSENTE
    assert failed.no_entrega.observacion == "Nadie en casa"
    assert failed.no_entrega.fecha_no_entrega == clock.now


def test_mark_not_delivered_rejects_unknown_reason(own_route, machine):
    _, (_, b, _) = own_route

    with pytest.raises(ValidationError) as excinfo:
        machine.mark_not_delivered(b.id, "Llovió", PHOTO, actor="chofer1")

    assert "Otro" in excinfo.value.details["permitidos"]


def test_mark_not_delivered_requires_photo(own_route, machine):
    _, (_, b, _) = own_route

    with pytest.raises(ValidationError):
        machine.mark_not_delivered(b.id, "Otro", None, actor="chofer1")


def test_release_is_idempotent_on_available_dispatch(make_dispatches, machine, dispatches):
    (pending,) = make_dispatches(1)

    assert machine.release(pending.id, actor="bodega") is False
    assert machine.release(pending.id, actor="bodega") is False

    current = dispatches.require(pending.id)
    assert current.estado == DispatchStatus.PENDIENTE
    assert current.ruta_asignada is None
    assert current.version == pending.version


def test_release_unbinds_and_keeps_evidence(own_route, machine, dispatches):
    _, (_, b, _) = own_route
    machine.mark_not_delivered(b.id, "Dirección incorrecta", PHOTO, actor="chofer1")

    assert machine.release(b.id, actor="bodega") is True

    current = dispatches.require(b.id)
    assert current.estado == DispatchStatus.PENDIENTE
    assert current.ruta_asignada is None
    assert current.empresa_reparto is None
    assert current.no_entrega.motivo == NonDeliveryReason.DIRECCION_INCORRECTA
    assert current.is_available


def test_release_of_canceled_dispatch_is_rejected(make_dispatches, machine):
    (pending,) = make_dispatches(1)
    machine.cancel(pending.id, actor="bodega")

    with pytest.raises(InvalidStateError):
        machine.release(pending.id, actor="bodega")


def test_cancel_is_terminal(own_route, machine, evidence):
    _, (a, b, _) = own_route
    canceled = machine.cancel(b.id, actor="bodega")
    assert canceled.estado == DispatchStatus.CANCELADO

    machine.mark_delivered(a.id, evidence, actor="chofer1")
    with pytest.raises(InvalidStateError):
        machine.cancel(a.id, actor="bodega")
    with pytest.raises(InvalidStateError):
        machine.cancel(b.id, actor="bodega")


def test_deliver_at_counter_for_available_dispatch(make_dispatches, machine):
    (pending,) = make_dispatches(1)

    delivered = machine.deliver_at_counter(
        pending.id,
        CounterDeliveryRequest(receptor_rut="12.345.678-5", receptor_nombre="Ana", receptor_apellido="Soto"),
        actor="bodega",
    )

    assert delivered.estado == DispatchStatus.ENTREGADO
    assert delivered.ruta_asignada is None
    assert delivered.entrega.modalidad == DeliveryMode.MESON
    assert delivered.entrega.foto_entrega is None


def test_deliver_at_counter_rejects_assigned_dispatch(own_route, machine):
    _, (a, _, _) = own_route

    with pytest.raises(InvalidStateError):
        machine.deliver_at_counter(
            a.id,
            CounterDeliveryRequest(receptor_rut="12345678-5", receptor_nombre="Ana", receptor_apellido="Soto"),
            actor="bodega",
        )


def test_update_delivery_data_only_changes_given_fields(own_route, machine, evidence):
    _, (a, _, _) = own_route
    machine.mark_delivered(a.id, evidence, actor="chofer1")

    updated = machine.update_delivery_data(
        a.id,
        DeliveryDataPatch(receptor_nombre="Juan Carlos", documento_externo="GD-778"),
        actor="bodega",
    )

    assert updated.entrega.receptor_nombre == "Juan Carlos"
    assert updated.entrega.receptor_apellido == "Pérez"
    assert updated.entrega.receptor_rut == "12.345.678-5"
    assert updated.entrega.documento_externo == "GD-778"


def test_update_delivery_data_requires_delivered_state(own_route, machine):
    _, (a, _, _) = own_route

    with pytest.raises(InvalidStateError):
        machine.update_delivery_data(a.id, DeliveryDataPatch(receptor_nombre="X"), actor="bodega")


def test_update_delivery_data_rejects_empty_patch(own_route, machine, evidence):
    _, (a, _, _) = own_route
    machine.mark_delivered(a.id, evidence, actor="chofer1")

    with pytest.raises(ValidationError):
        machine.update_delivery_data(a.id, DeliveryDataPatch(), actor="bodega")


def test_transitions_are_audited_with_actor(own_route, machine, state, evidence):
    _, (a, _, _) = own_route
    machine.mark_delivered(a.id, evidence, actor="chofer1")

    events = state.list_timeline("dispatch", a.id)
    assert [event["event_type"] for event in events] == [
        "dispatch_delivered",
        "dispatch_assigned",
        "dispatch_created",
    ]
    assert events[0]["actor"] == "chofer1"


def test_redelivery_after_release_starts_from_fresh_evidence(
    own_route, own_carrier, lifecycle, machine, state, evidence
):
    _, (a, _, _) = own_route
    machine.mark_delivered(a.id, evidence, actor="chofer1")
    machine.update_delivery_data(a.id, DeliveryDataPatch(documento_externo="GD-1"), actor="bodega")
    machine.release(a.id, actor="bodega")
    lifecycle.create(own_carrier.id, "chofer2", [a.id], created_by="bodega")

    second = DeliverRequest(
        receptor_rut="96756430-3",
        receptor_nombre="Ana",
        receptor_apellido="Soto",
        foto_entrega=PHOTO,
    )
    delivered = machine.mark_delivered(a.id, second, actor="chofer2")

    assert delivered.entrega.documento_externo is None
    assert delivered.entrega.receptor_nombre == "Ana"
    assert delivered.entrega.registrado_por == "chofer2"
    event = state.list_timeline("dispatch", a.id)[0]
    assert event["event_type"] == "dispatch_delivered"
    assert event["details"]["entrega_anterior"]["documento_externo"] == "GD-1"

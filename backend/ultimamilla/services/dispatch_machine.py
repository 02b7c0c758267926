"""Dispatch state machine: delivery, non-delivery, release and cancellation."""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional

from ultimamilla.core.config import get_settings
from ultimamilla.core.errors import InvalidStateError, ValidationError
from ultimamilla.core.logging import logger
from ultimamilla.core.validators import format_rut, is_valid_rut
from ultimamilla.models.despachos import (
    CounterDeliveryRequest,
    DeliverRequest,
    DeliveryDataPatch,
    DeliveryEvidence,
    DeliveryMode,
    Dispatch,
    DispatchStatus,
    NonDeliveryEvidence,
)
from ultimamilla.models.rutas import Route
from ultimamilla.services.catalog import non_delivery_reasons, parse_non_delivery_reason
from ultimamilla.services.dispatch_store import DispatchStore
from ultimamilla.services.state_store import StateStore, state_store, utc_now


def _clean(value: Optional[str]) -> str:
    return " ".join(str(value or "").split()).strip()


def _evidence_snapshot(dispatch: Dispatch) -> Optional[dict]:
    """Delivery evidence of an earlier route, kept for the timeline when superseded."""
    if dispatch.entrega is None:
        return None
    return dispatch.entrega.model_dump(mode="json")


class DispatchStateMachine:
    """Enforces dispatch transitions and stores delivery evidence."""

    ALLOWED_TRANSITIONS: Dict[DispatchStatus, set] = {
        DispatchStatus.PENDIENTE: {
            DispatchStatus.ASIGNADO,
            DispatchStatus.CANCELADO,
            DispatchStatus.ENTREGADO,
        },
        DispatchStatus.ASIGNADO: {
            DispatchStatus.ENTREGADO,
            DispatchStatus.NO_ENTREGADO,
            DispatchStatus.CANCELADO,
            DispatchStatus.PENDIENTE,
        },
        DispatchStatus.ENTREGADO: {DispatchStatus.PENDIENTE},
        DispatchStatus.NO_ENTREGADO: {DispatchStatus.PENDIENTE},
        DispatchStatus.CANCELADO: set(),
    }

    def __init__(self, state: StateStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._state = state
        self._dispatches = DispatchStore(state)
        self._clock = clock or utc_now
        self._validate_rut = get_settings().validate_receiver_rut

    @classmethod
    def _require_transition(cls, dispatch: Dispatch, target: DispatchStatus, operation: str) -> None:
        allowed = {
            status for status, targets in cls.ALLOWED_TRANSITIONS.items() if target in targets
        }
        cls._require_state(dispatch, allowed, operation)

    @staticmethod
    def _require_state(dispatch: Dispatch, allowed: set, operation: str) -> None:
        if dispatch.estado not in allowed:
            raise InvalidStateError(
                f"No se puede {operation} el despacho {dispatch.folio_num} en estado '{dispatch.estado.value}'",
                {
                    "dispatch_id": dispatch.id,
                    "estado": dispatch.estado.value,
                    "permitidos": sorted(status.value for status in allowed),
                },
            )

    def _receiver_fields(self, rut: Optional[str], nombre: Optional[str], apellido: Optional[str]) -> Dict[str, str]:
        fields = {
            "receptor_rut": _clean(rut),
            "receptor_nombre": _clean(nombre),
            "receptor_apellido": _clean(apellido),
        }
        missing = [name for name, value in fields.items() if not value]
        if missing:
            raise ValidationError("Faltan datos del receptor", {"faltantes": missing})
        if self._validate_rut and not is_valid_rut(fields["receptor_rut"]):
            raise ValidationError("RUT del receptor inválido", {"receptor_rut": fields["receptor_rut"]})
        fields["receptor_rut"] = format_rut(fields["receptor_rut"])
        return fields

    def _record(self, dispatch: Dispatch, event_type: str, actor: str, details: Optional[dict] = None) -> None:
        self._state.record_event("dispatch", dispatch.id, event_type, actor, details or {})

    def assign(self, dispatch: Dispatch, route: Route, actor: str) -> Dispatch:
        """Bind an available dispatch to ``route``; caller owns the transaction."""
        if not dispatch.is_available:
            raise InvalidStateError(
                f"El despacho {dispatch.folio_num} no está disponible",
                {"dispatch_id": dispatch.id, "estado": dispatch.estado.value, "ruta_asignada": dispatch.ruta_asignada},
            )
        dispatch.estado = DispatchStatus.ASIGNADO
        dispatch.ruta_asignada = route.id
        dispatch.empresa_reparto = route.empresa_reparto
        saved = self._dispatches.save(dispatch)
        self._record(saved, "dispatch_assigned", actor, {"route_id": route.id, "numero_ruta": route.numero_ruta})
        return saved

    def mark_delivered(self, dispatch_id: str, evidence: DeliverRequest, actor: str) -> Dispatch:
        with self._state.transaction():
            dispatch = self._dispatches.require(dispatch_id)
            receiver = self._receiver_fields(
                evidence.receptor_rut,
                evidence.receptor_nombre,
                evidence.receptor_apellido,
            )
            if not (evidence.foto_entrega or "").strip():
                raise ValidationError("La foto de entrega es obligatoria", {"faltantes": ["foto_entrega"]})
            self._require_state(dispatch, {DispatchStatus.ASIGNADO}, "entregar")
            previous = _evidence_snapshot(dispatch)

            dispatch.estado = DispatchStatus.ENTREGADO
            dispatch.entrega = DeliveryEvidence(
                **receiver,
                foto_entrega=evidence.foto_entrega,
                firma_entrega=evidence.firma_entrega or None,
                fecha_entrega=self._clock(),
                modalidad=DeliveryMode.CHOFER,
                registrado_por=actor,
            )
            saved = self._dispatches.save(dispatch)
            self._record(
                saved,
                "dispatch_delivered",
                actor,
                {
                    "route_id": saved.ruta_asignada,
                    "receptor_rut": receiver["receptor_rut"],
                    "entrega_anterior": previous,
                },
            )
        logger.info("Dispatch delivered", dispatch_id=dispatch_id, route_id=saved.ruta_asignada, actor=actor)
        return saved

    def mark_not_delivered(
        self,
        dispatch_id: str,
        motivo: str,
        foto_evidencia: Optional[str],
        actor: str,
        observacion: Optional[str] = None,
    ) -> Dispatch:
        with self._state.transaction():
            dispatch = self._dispatches.require(dispatch_id)
            reason = parse_non_delivery_reason(motivo)
            if reason is None:
                raise ValidationError(
                    f"Motivo de no entrega inválido: '{motivo}'",
                    {"motivo": motivo, "permitidos": non_delivery_reasons()},
                )
            if not (foto_evidencia or "").strip():
                raise ValidationError("La foto de evidencia es obligatoria", {"faltantes": ["foto_evidencia"]})
            self._require_state(dispatch, {DispatchStatus.ASIGNADO}, "marcar como no entregado")

            dispatch.estado = DispatchStatus.NO_ENTREGADO
            dispatch.no_entrega = NonDeliveryEvidence(
                motivo=reason,
                observacion=(observacion or "").strip(),
                foto_evidencia=foto_evidencia,
                fecha_no_entrega=self._clock(),
                registrado_por=actor,
            )
            saved = self._dispatches.save(dispatch)
            self._record(saved, "dispatch_not_delivered", actor, {"route_id": saved.ruta_asignada, "motivo": reason.value})
        logger.info("Dispatch not delivered", dispatch_id=dispatch_id, motivo=reason.value, actor=actor)
        return saved

    def release_loaded(self, dispatch: Dispatch, actor: str, reason: str = "manual") -> Optional[Dispatch]:
        """Return ``dispatch`` to the available pool; ``None`` when it already is."""
        if dispatch.is_available:
            return None
        self._require_transition(dispatch, DispatchStatus.PENDIENTE, "liberar")
        previous = {
            "estado": dispatch.estado.value,
            "route_id": dispatch.ruta_asignada,
            "empresa_reparto": dispatch.empresa_reparto,
        }
        dispatch.estado = DispatchStatus.PENDIENTE
        dispatch.ruta_asignada = None
        dispatch.empresa_reparto = None
        saved = self._dispatches.save(dispatch)
        self._record(saved, "dispatch_released", actor, {**previous, "reason": reason})
        return saved

    def release(self, dispatch_id: str, actor: str, reason: str = "manual") -> bool:
        """Idempotent release; returns whether the dispatch actually changed."""
        with self._state.transaction():
            dispatch = self._dispatches.require(dispatch_id)
            released = self.release_loaded(dispatch, actor, reason)
        if released is not None:
            logger.info("Dispatch released", dispatch_id=dispatch_id, reason=reason, actor=actor)
        return released is not None

    def cancel(self, dispatch_id: str, actor: str) -> Dispatch:
        with self._state.transaction():
            dispatch = self._dispatches.require(dispatch_id)
            self._require_transition(dispatch, DispatchStatus.CANCELADO, "cancelar")
            previous = dispatch.estado.value
            dispatch.estado = DispatchStatus.CANCELADO
            saved = self._dispatches.save(dispatch)
            self._record(saved, "dispatch_canceled", actor, {"from_status": previous, "route_id": saved.ruta_asignada})
        logger.info("Dispatch canceled", dispatch_id=dispatch_id, actor=actor)
        return saved

    def deliver_at_counter(self, dispatch_id: str, evidence: CounterDeliveryRequest, actor: str) -> Dispatch:
        """Customer pickup at the warehouse counter for an available dispatch."""
        with self._state.transaction():
            dispatch = self._dispatches.require(dispatch_id)
            receiver = self._receiver_fields(
                evidence.receptor_rut,
                evidence.receptor_nombre,
                evidence.receptor_apellido,
            )
            self._require_state(dispatch, {DispatchStatus.PENDIENTE}, "entregar en mesón")
            previous = _evidence_snapshot(dispatch)

            dispatch.estado = DispatchStatus.ENTREGADO
            dispatch.entrega = DeliveryEvidence(
                **receiver,
                foto_entrega=evidence.foto_entrega or None,
                firma_entrega=evidence.firma_entrega or None,
                fecha_entrega=self._clock(),
                modalidad=DeliveryMode.MESON,
                registrado_por=actor,
            )
            saved = self._dispatches.save(dispatch)
            self._record(
                saved,
                "dispatch_delivered_counter",
                actor,
                {"receptor_rut": receiver["receptor_rut"], "entrega_anterior": previous},
            )
        logger.info("Dispatch delivered at counter", dispatch_id=dispatch_id, actor=actor)
        return saved

    def update_delivery_data(self, dispatch_id: str, patch: DeliveryDataPatch, actor: str) -> Dispatch:
        """Complete receiver data of a delivered dispatch."""
        with self._state.transaction():
            dispatch = self._dispatches.require(dispatch_id)
            self._require_state(dispatch, {DispatchStatus.ENTREGADO}, "actualizar datos de entrega de")
            changes = {key: value for key, value in patch.model_dump(exclude_none=True).items()}
            for key in ("receptor_nombre", "receptor_apellido", "documento_externo"):
                if key in changes:
                    changes[key] = _clean(changes[key])
            if "receptor_rut" in changes:
                rut = _clean(changes["receptor_rut"])
                if self._validate_rut and not is_valid_rut(rut):
                    raise ValidationError("RUT del receptor inválido", {"receptor_rut": rut})
                changes["receptor_rut"] = format_rut(rut)
            if not changes:
                raise ValidationError("No hay datos de entrega para actualizar")
            current = dispatch.entrega or DeliveryEvidence(fecha_entrega=self._clock())
            dispatch.entrega = current.model_copy(update=changes)
            saved = self._dispatches.save(dispatch)
            self._record(saved, "dispatch_delivery_data_updated", actor, {"fields": sorted(changes)})
        return saved

    def apply_external_document(
        self,
        dispatch: Dispatch,
        documento_externo: Optional[str],
        actor: str,
    ) -> tuple[Dispatch, List[str]]:
        """Close a still-bound dispatch of a reconciled route; caller owns the transaction.

        Returns the saved dispatch and the list of changes applied
        (``"documentado"`` and/or ``"entregado"``).
        """
        changes: List[str] = []
        document = _clean(documento_externo) or None
        entrega = dispatch.entrega
        previous = None
        if dispatch.estado == DispatchStatus.ASIGNADO:
            dispatch.estado = DispatchStatus.ENTREGADO
            previous = _evidence_snapshot(dispatch)
            entrega = DeliveryEvidence(
                fecha_entrega=self._clock(),
                modalidad=DeliveryMode.CONCILIACION,
                registrado_por=actor,
            )
            changes.append("entregado")
        if document and dispatch.estado == DispatchStatus.ENTREGADO:
            if entrega is None or not entrega.documento_externo:
                entrega = (entrega or DeliveryEvidence()).model_copy(update={"documento_externo": document})
                changes.append("documentado")
        if not changes:
            return dispatch, changes
        dispatch.entrega = entrega
        saved = self._dispatches.save(dispatch)
        self._record(
            saved,
            "dispatch_reconciled",
            actor,
            {
                "route_id": saved.ruta_asignada,
                "changes": changes,
                "documento_externo": document,
                "entrega_anterior": previous,
            },
        )
        return saved, changes


dispatch_machine = DispatchStateMachine(state_store)

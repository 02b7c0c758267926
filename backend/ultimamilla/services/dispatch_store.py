"""Dispatch entity store."""
from __future__ import annotations

import json
from collections import Counter
from typing import Dict, Iterable, List, Optional

from ultimamilla.core.errors import ConflictError, NotFoundError
from ultimamilla.models.despachos import Dispatch, DispatchCreateRequest, DispatchStatus
from ultimamilla.services.state_store import StateStore, json_dumps, utc_now


class DispatchStore:
    """Reads and versioned writes of dispatch documents."""

    def __init__(self, state: StateStore) -> None:
        self._state = state

    @staticmethod
    def _from_row(row) -> Dispatch:
        return Dispatch.model_validate(json.loads(row["data_json"]))

    def create(self, request: DispatchCreateRequest, actor: str) -> Dispatch:
        with self._state.transaction():
            existing = self._state.fetchone(
                "SELECT dispatch_id FROM dispatches WHERE folio_num = ?",
                (request.folio_num,),
            )
            if existing:
                raise ConflictError(
                    f"Folio {request.folio_num} ya está registrado",
                    {"folio_num": request.folio_num, "dispatch_id": existing["dispatch_id"]},
                )
            dispatch = Dispatch(
                id=f"DSP-{self._state.next_sequence('dispatch'):06d}",
                **request.model_dump(),
            )
            row = dispatch.model_dump(mode="json")
            self._state.execute(
                """
                INSERT INTO dispatches (
                    dispatch_id, folio_num, estado, ruta_asignada, empresa_reparto,
                    version, created_at, updated_at, data_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    dispatch.id,
                    dispatch.folio_num,
                    dispatch.estado.value,
                    dispatch.ruta_asignada,
                    dispatch.empresa_reparto,
                    dispatch.version,
                    row["created_at"],
                    row["updated_at"],
                    json_dumps(row),
                ),
            )
            self._state.record_event(
                "dispatch",
                dispatch.id,
                "dispatch_created",
                actor,
                {"folio_num": dispatch.folio_num},
            )
        return dispatch

    def get(self, dispatch_id: str) -> Optional[Dispatch]:
        row = self._state.fetchone(
            "SELECT data_json FROM dispatches WHERE dispatch_id = ?",
            (dispatch_id,),
        )
        if not row:
            return None
        return self._from_row(row)

    def require(self, dispatch_id: str) -> Dispatch:
        dispatch = self.get(dispatch_id)
        if dispatch is None:
            raise NotFoundError(f"Despacho {dispatch_id} no encontrado", {"dispatch_id": dispatch_id})
        return dispatch

    def get_many(self, dispatch_ids: Iterable[str]) -> Dict[str, Dispatch]:
        ids = [dispatch_id for dispatch_id in dict.fromkeys(dispatch_ids) if dispatch_id]
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = self._state.fetchall(
            f"SELECT data_json FROM dispatches WHERE dispatch_id IN ({placeholders})",
            ids,
        )
        found = {dispatch.id: dispatch for dispatch in (self._from_row(row) for row in rows)}
        return {dispatch_id: found[dispatch_id] for dispatch_id in ids if dispatch_id in found}

    def save(self, dispatch: Dispatch) -> Dispatch:
        """Persist ``dispatch`` if nobody changed it since it was read."""
        updated = dispatch.model_copy(update={"version": dispatch.version + 1, "updated_at": utc_now()})
        row = updated.model_dump(mode="json")
        cursor = self._state.execute(
            """
            UPDATE dispatches
            SET estado = ?, ruta_asignada = ?, empresa_reparto = ?, version = ?, updated_at = ?, data_json = ?
            WHERE dispatch_id = ? AND version = ?
            """,
            (
                updated.estado.value,
                updated.ruta_asignada,
                updated.empresa_reparto,
                updated.version,
                row["updated_at"],
                json_dumps(row),
                dispatch.id,
                dispatch.version,
            ),
        )
        if cursor.rowcount != 1:
            raise ConflictError(
                f"Despacho {dispatch.id} fue modificado por otra operación",
                {"dispatch_id": dispatch.id, "expected_version": dispatch.version},
            )
        return updated

    def list(
        self,
        estado: Optional[DispatchStatus] = None,
        ruta_asignada: Optional[str] = None,
        disponibles: bool = False,
    ) -> List[Dispatch]:
        clauses: List[str] = []
        params: List[str] = []
        if disponibles:
            clauses.append("estado = ? AND ruta_asignada IS NULL")
            params.append(DispatchStatus.PENDIENTE.value)
        elif estado is not None:
            clauses.append("estado = ?")
            params.append(DispatchStatus(estado).value)
        if ruta_asignada:
            clauses.append("ruta_asignada = ?")
            params.append(ruta_asignada)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._state.fetchall(
            f"SELECT data_json FROM dispatches {where} ORDER BY created_at DESC, dispatch_id DESC",
            params,
        )
        return [self._from_row(row) for row in rows]

    def counts_by_status(self) -> Dict[str, int]:
        rows = self._state.fetchall("SELECT estado FROM dispatches")
        counts = Counter(row["estado"] for row in rows)
        return {status.value: counts.get(status.value, 0) for status in DispatchStatus}

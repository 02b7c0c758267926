"""Route entity store and per-month route numbering."""
from __future__ import annotations

import json
from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from ultimamilla.core.config import get_settings
from ultimamilla.core.errors import ConflictError, NotFoundError
from ultimamilla.models.rutas import Route, RouteStatus
from ultimamilla.services.state_store import StateStore, json_dumps, utc_now


class RouteStore:
    """Reads and versioned writes of route documents."""

    def __init__(self, state: StateStore) -> None:
        self._state = state
        settings = get_settings()
        self._prefix = settings.route_number_prefix or "R"
        self._timezone = ZoneInfo(settings.route_number_timezone or "UTC")

    @staticmethod
    def _from_row(row) -> Route:
        return Route.model_validate(json.loads(row["data_json"]))

    def route_number_period(self, now: datetime) -> str:
        local = now.astimezone(self._timezone)
        return f"{local.year % 100:02d}{local.month:02d}"

    def next_route_number(self, now: datetime) -> str:
        """Reserve the next `R<YY><MM><NNNN>` number for the month of ``now``."""
        period = self.route_number_period(now)
        sequence = self._state.next_sequence(f"route_number:{period}")
        return f"{self._prefix}{period}{sequence:04d}"

    def next_route_id(self) -> str:
        return f"RTA-{self._state.next_sequence('route'):06d}"

    def insert(self, route: Route) -> Route:
        row = route.model_dump(mode="json")
        self._state.execute(
            """
            INSERT INTO routes (
                route_id, numero_ruta, estado, empresa_reparto, conductor,
                version, created_at, updated_at, data_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                route.id,
                route.numero_ruta,
                route.estado.value,
                route.empresa_reparto,
                route.conductor,
                route.version,
                row["created_at"],
                row["updated_at"],
                json_dumps(row),
            ),
        )
        return route

    def get(self, route_id: str) -> Optional[Route]:
        row = self._state.fetchone(
            "SELECT data_json FROM routes WHERE route_id = ?",
            (route_id,),
        )
        if not row:
            return None
        return self._from_row(row)

    def require(self, route_id: str) -> Route:
        route = self.get(route_id)
        if route is None:
            raise NotFoundError(f"Ruta {route_id} no encontrada", {"route_id": route_id})
        return route

    def get_by_number(self, numero_ruta: str) -> Optional[Route]:
        row = self._state.fetchone(
            "SELECT data_json FROM routes WHERE numero_ruta = ?",
            (numero_ruta,),
        )
        if not row:
            return None
        return self._from_row(row)

    def save(self, route: Route) -> Route:
        """Persist ``route`` if nobody changed it since it was read."""
        updated = route.model_copy(update={"version": route.version + 1, "updated_at": utc_now()})
        row = updated.model_dump(mode="json")
        cursor = self._state.execute(
            """
            UPDATE routes
            SET estado = ?, conductor = ?, version = ?, updated_at = ?, data_json = ?
            WHERE route_id = ? AND version = ?
            """,
            (
                updated.estado.value,
                updated.conductor,
                updated.version,
                row["updated_at"],
                json_dumps(row),
                route.id,
                route.version,
            ),
        )
        if cursor.rowcount != 1:
            raise ConflictError(
                f"Ruta {route.numero_ruta} fue modificada por otra operación",
                {"route_id": route.id, "expected_version": route.version},
            )
        return updated

    def list(
        self,
        estado: Optional[RouteStatus] = None,
        conductor: Optional[str] = None,
        empresa_reparto: Optional[str] = None,
    ) -> List[Route]:
        clauses: List[str] = []
        params: List[str] = []
        if estado is not None:
            clauses.append("estado = ?")
            params.append(RouteStatus(estado).value)
        if conductor:
            clauses.append("conductor = ?")
            params.append(conductor)
        if empresa_reparto:
            clauses.append("empresa_reparto = ?")
            params.append(empresa_reparto)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._state.fetchall(
            f"SELECT data_json FROM routes {where} ORDER BY created_at DESC, route_id DESC",
            params,
        )
        return [self._from_row(row) for row in rows]

    def list_for_actor(self, actor_id: str, carrier_ids: Iterable[str] = ()) -> List[Route]:
        """Routes driven by ``actor_id`` or owned by a carrier whose account it is."""
        carriers = [carrier_id for carrier_id in carrier_ids if carrier_id]
        clauses = ["conductor = ?"]
        params: List[str] = [actor_id]
        if carriers:
            clauses.append(f"empresa_reparto IN ({','.join('?' for _ in carriers)})")
            params.extend(carriers)
        rows = self._state.fetchall(
            f"SELECT data_json FROM routes WHERE {' OR '.join(clauses)} ORDER BY created_at DESC, route_id DESC",
            params,
        )
        return [self._from_row(row) for row in rows]

    def references_carrier(self, carrier_id: str) -> bool:
        row = self._state.fetchone(
            "SELECT COUNT(*) AS c FROM routes WHERE empresa_reparto = ?",
            (carrier_id,),
        )
        return bool(row and int(row["c"]) > 0)

    def counts_by_status(self) -> Dict[str, int]:
        rows = self._state.fetchall("SELECT estado FROM routes")
        counts = Counter(row["estado"] for row in rows)
        return {status.value: counts.get(status.value, 0) for status in RouteStatus}

"""Carrier company store and own-fleet classification."""
from __future__ import annotations

import json
import sqlite3
from typing import List, Optional

from ultimamilla.core.config import get_settings
from ultimamilla.core.errors import ConflictError, NotFoundError, ValidationError
from ultimamilla.core.logging import logger
from ultimamilla.core.validators import clean_rut, format_rut, is_valid_rut, slugify_carrier
from ultimamilla.models.empresas import CarrierCompany, CarrierCreateRequest, CarrierUpdateRequest
from ultimamilla.services.route_store import RouteStore
from ultimamilla.services.state_store import StateStore, json_dumps, utc_now


class CarrierStore:
    """CRUD for carrier companies plus own-fleet detection."""

    def __init__(self, state: StateStore) -> None:
        self._state = state
        self._routes = RouteStore(state)
        settings = get_settings()
        self._own_rut = clean_rut(settings.own_fleet_rut)
        self._own_name = (settings.own_fleet_name or "").strip().lower()

    @staticmethod
    def _from_row(row) -> CarrierCompany:
        return CarrierCompany.model_validate(json.loads(row["data_json"]))

    def is_own_fleet(self, carrier: CarrierCompany) -> bool:
        if carrier.flota_propia is not None:
            return carrier.flota_propia
        if self._own_rut and clean_rut(carrier.rut) == self._own_rut:
            return True
        if self._own_name and self._own_name in carrier.razon_social.lower():
            return True
        return False

    @staticmethod
    def _normalized_account(value: Optional[str]) -> Optional[str]:
        account = (value or "").strip().lower()
        return account or None

    def _validated_rut(self, value: str) -> str:
        if not is_valid_rut(value):
            raise ValidationError("RUT inválido. Formato: XX.XXX.XXX-X", {"rut": value})
        return format_rut(value)

    def _unique_slug(self, base: str, exclude_id: Optional[str] = None) -> Optional[str]:
        if not base:
            return None
        rows = self._state.fetchall("SELECT carrier_id, slug FROM carriers WHERE slug IS NOT NULL")
        used = {row["slug"] for row in rows if row["carrier_id"] != exclude_id}
        candidate = base
        suffix = 2
        while candidate in used:
            candidate = f"{base}{suffix}"
            suffix += 1
        return candidate

    def _write(self, carrier: CarrierCompany, insert: bool, expected_version: int = 0) -> None:
        row = carrier.model_dump(mode="json")
        params = (
            carrier.rut,
            carrier.usuario_cuenta,
            carrier.slug,
            carrier.version,
            row["updated_at"],
            json_dumps(row),
        )
        try:
            if insert:
                self._state.execute(
                    """
                    INSERT INTO carriers (carrier_id, rut, usuario_cuenta, slug, version, updated_at, data_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (carrier.id, *params),
                )
                return
            cursor = self._state.execute(
                """
                UPDATE carriers
                SET rut = ?, usuario_cuenta = ?, slug = ?, version = ?, updated_at = ?, data_json = ?
                WHERE carrier_id = ? AND version = ?
                """,
                (*params, carrier.id, expected_version),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                "El RUT, usuario o slug ya está registrado",
                {"rut": carrier.rut, "usuario_cuenta": carrier.usuario_cuenta, "slug": carrier.slug},
            ) from exc
        if cursor.rowcount != 1:
            raise ConflictError(
                f"Empresa {carrier.id} fue modificada por otra operación",
                {"carrier_id": carrier.id, "expected_version": expected_version},
            )

    def create(self, request: CarrierCreateRequest, actor: str) -> CarrierCompany:
        with self._state.transaction():
            carrier = CarrierCompany(
                id=f"EMP-{self._state.next_sequence('carrier'):04d}",
                rut=self._validated_rut(request.rut),
                razon_social=request.razon_social.strip(),
                usuario_cuenta=self._normalized_account(request.usuario_cuenta),
                contacto=request.contacto.strip(),
                slug=self._unique_slug(slugify_carrier(request.slug or request.razon_social)),
                flota_propia=request.flota_propia,
            )
            self._write(carrier, insert=True)
            self._state.record_event(
                "carrier",
                carrier.id,
                "carrier_created",
                actor,
                {"rut": carrier.rut, "razon_social": carrier.razon_social},
            )
        logger.info("Carrier created", carrier_id=carrier.id, rut=carrier.rut, actor=actor)
        return carrier

    def update(self, carrier_id: str, request: CarrierUpdateRequest, actor: str) -> CarrierCompany:
        with self._state.transaction():
            existing = self.require(carrier_id)
            patch = request.model_dump(exclude_unset=True)
            if "rut" in patch and patch["rut"] is not None:
                patch["rut"] = self._validated_rut(patch["rut"])
            if "usuario_cuenta" in patch:
                patch["usuario_cuenta"] = self._normalized_account(patch["usuario_cuenta"])
            if patch.get("slug"):
                patch["slug"] = self._unique_slug(slugify_carrier(patch["slug"]), exclude_id=carrier_id)
            for required in ("rut", "razon_social", "contacto"):
                if required in patch and not patch[required]:
                    raise ValidationError(f"El campo {required} es obligatorio", {"field": required})
            updated = existing.model_copy(
                update={**patch, "version": existing.version + 1, "updated_at": utc_now()}
            )
            self._write(updated, insert=False, expected_version=existing.version)
            self._state.record_event(
                "carrier",
                carrier_id,
                "carrier_updated",
                actor,
                {"fields": sorted(patch.keys())},
            )
        return updated

    def delete(self, carrier_id: str, actor: str) -> CarrierCompany:
        with self._state.transaction():
            carrier = self.require(carrier_id)
            if self._routes.references_carrier(carrier_id):
                raise ConflictError(
                    f"La empresa {carrier.razon_social} tiene rutas asociadas",
                    {"carrier_id": carrier_id},
                )
            self._state.execute("DELETE FROM carriers WHERE carrier_id = ?", (carrier_id,))
            self._state.record_event("carrier", carrier_id, "carrier_deleted", actor, {"rut": carrier.rut})
        logger.info("Carrier deleted", carrier_id=carrier_id, actor=actor)
        return carrier

    def backfill_slugs(self, actor: str, force: bool = False) -> List[CarrierCompany]:
        """Assign slugs to carriers missing one (every carrier when ``force``)."""
        changed: List[CarrierCompany] = []
        with self._state.transaction():
            carriers = sorted(self.list(), key=lambda item: item.created_at)
            if force:
                self._state.execute("UPDATE carriers SET slug = NULL")
            for carrier in carriers:
                if carrier.slug and not force:
                    continue
                slug = self._unique_slug(slugify_carrier(carrier.razon_social), exclude_id=carrier.id)
                if not slug and not force:
                    continue
                updated = carrier.model_copy(
                    update={"slug": slug, "version": carrier.version + 1, "updated_at": utc_now()}
                )
                self._write(updated, insert=False, expected_version=carrier.version)
                changed.append(updated)
            if changed:
                self._state.record_event(
                    "carrier",
                    "*",
                    "carrier_slugs_backfilled",
                    actor,
                    {"carrier_ids": [carrier.id for carrier in changed], "force": force},
                )
        return changed

    def get(self, carrier_id: str) -> Optional[CarrierCompany]:
        row = self._state.fetchone(
            "SELECT data_json FROM carriers WHERE carrier_id = ?",
            (carrier_id,),
        )
        if not row:
            return None
        return self._from_row(row)

    def require(self, carrier_id: str) -> CarrierCompany:
        carrier = self.get(carrier_id)
        if carrier is None:
            raise NotFoundError(f"Empresa {carrier_id} no encontrada", {"carrier_id": carrier_id})
        return carrier

    def find_by_account(self, usuario_cuenta: str) -> Optional[CarrierCompany]:
        account = self._normalized_account(usuario_cuenta)
        if not account:
            return None
        row = self._state.fetchone(
            "SELECT data_json FROM carriers WHERE usuario_cuenta = ?",
            (account,),
        )
        if not row:
            return None
        return self._from_row(row)

    def list(self) -> List[CarrierCompany]:
        rows = self._state.fetchall("SELECT data_json FROM carriers ORDER BY updated_at DESC, carrier_id")
        return [self._from_row(row) for row in rows]

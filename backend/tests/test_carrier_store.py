"""Carrier company store, own-fleet classification and the carrier scripts."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

from ultimamilla.core.errors import ConflictError, NotFoundError, ValidationError
from ultimamilla.models.empresas import CarrierCreateRequest, CarrierUpdateRequest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "scripts"))

import seed_empresas  # noqa: E402


def _request(rut: str, name: str, **extra) -> CarrierCreateRequest:
    return CarrierCreateRequest(rut=rut, razon_social=name, contacto="600 600 6000", **extra)


def test_create_formats_rut_and_generates_slug(carriers):
    carrier = carriers.create(_request("967564303", "Chilexpress S.A.", usuario_cuenta=" ChileXpress "), actor="admin")

    assert carrier.id == "EMP-0001"
    assert carrier.rut == "96.756.430-3"
    assert carrier.slug == "chilexpress"
    assert carrier.usuario_cuenta == "chilexpress"
    assert carriers.find_by_account("CHILEXPRESS").id == carrier.id


def test_slugs_stay_unique(carriers):
    first = carriers.create(_request("78.281.000-6", "Starken S.A."), actor="admin")
    second = carriers.create(_request("76.123.456-0", "Starken Ltda."), actor="admin")

    assert (first.slug, second.slug) == ("starken", "starken2")


def test_invalid_and_duplicate_rut(carriers):
    with pytest.raises(ValidationError):
        carriers.create(_request("78.281.000-1", "Starken S.A."), actor="admin")

    carriers.create(_request("78.281.000-6", "Starken S.A."), actor="admin")
    with pytest.raises(ConflictError):
        carriers.create(_request("78281000-6", "Starken Duplicado"), actor="admin")


def test_own_fleet_detection(carriers, own_carrier, external_carrier):
    assert carriers.is_own_fleet(own_carrier)
    assert not carriers.is_own_fleet(external_carrier)

    overridden = carriers.update(own_carrier.id, CarrierUpdateRequest(flota_propia=False), actor="admin")
    assert not carriers.is_own_fleet(overridden)


def test_update_only_touches_given_fields(carriers, external_carrier):
    updated = carriers.update(external_carrier.id, CarrierUpdateRequest(contacto="+56 2 2000 0000"), actor="admin")

    assert updated.contacto == "+56 2 2000 0000"
    assert updated.razon_social == external_carrier.razon_social
    assert updated.version == external_carrier.version + 1

    with pytest.raises(ValidationError):
        carriers.update(external_carrier.id, CarrierUpdateRequest(razon_social=""), actor="admin")


def test_delete_is_refused_while_routes_reference_carrier(carriers, external_route, external_carrier, own_carrier):
    with pytest.raises(ConflictError):
        carriers.delete(external_carrier.id, actor="admin")

    carriers.delete(own_carrier.id, actor="admin")
    with pytest.raises(NotFoundError):
        carriers.require(own_carrier.id)


def test_backfill_fills_missing_slugs(carriers, state):
    carrier = carriers.create(_request("61.979.440-0", "Correos de Chile"), actor="admin")
    state.execute("UPDATE carriers SET slug = NULL WHERE carrier_id = ?", (carrier.id,))
    state.execute(
        "UPDATE carriers SET data_json = json_set(data_json, '$.slug', NULL) WHERE carrier_id = ?",
        (carrier.id,),
    )

    changed = carriers.backfill_slugs(actor="backfill")

    assert [item.slug for item in changed] == ["correoschile"]
    assert carriers.require(carrier.id).slug == "correoschile"
    assert carriers.backfill_slugs(actor="backfill") == []
    assert len(carriers.backfill_slugs(actor="backfill", force=True)) == 1


def test_seed_script_is_idempotent(state, carriers):
    created = seed_empresas.seed(state)
    assert len(created) == len(seed_empresas.CARRIERS)
    assert seed_empresas.seed(state) == []

    own = [carrier.razon_social for carrier in carriers.list() if carriers.is_own_fleet(carrier)]
    assert own == ["Vivipra Transportes Ltda."]

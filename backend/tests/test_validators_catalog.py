"""RUT, plate and slug helpers plus the shared catalog."""
from __future__ import annotations

import pytest

from ultimamilla.core.validators import (
    clean_rut,
    format_rut,
    is_valid_plate,
    is_valid_rut,
    normalize_plate,
    rut_check_digit,
    slugify_carrier,
)
from ultimamilla.models.despachos import NonDeliveryReason
from ultimamilla.services.catalog import (
    catalog_snapshot,
    dispatch_status_display,
    non_delivery_reasons,
    parse_non_delivery_reason,
    route_status_display,
)


@pytest.mark.parametrize(
    "body,digit",
    [("12345678", "5"), ("96756430", "3"), ("61979440", "0"), ("77234567", "4")],
)
def test_rut_check_digit(body, digit):
    assert rut_check_digit(body) == digit


def test_rut_validation_accepts_common_spellings():
    assert is_valid_rut("12345678-5")
    assert is_valid_rut("12.345.678-5")
    assert is_valid_rut(" 123456785 ")
    assert not is_valid_rut("12345678-4")
    assert not is_valid_rut("")
    assert not is_valid_rut("ABC-5")


def test_rut_formatting():
    assert clean_rut("12.345.678-k") == "12345678K"
    assert format_rut("123456785") == "12.345.678-5"
    assert format_rut("9.756.430-3") == "9.756.430-3"


def test_plate_formats():
    assert normalize_plate(" ab-12 34 ") == "AB1234"
    assert is_valid_plate("AB1234")
    assert is_valid_plate("bcdf12")
    assert not is_valid_plate("ABC123")
    assert not is_valid_plate(None)


def test_carrier_slugs_drop_legal_suffixes_and_accents():
    assert slugify_carrier("Chilexpress S.A.") == "chilexpress"
    assert slugify_carrier("PDQ Courrier Express Ltda.") == "pdqcourrierexpress"
    assert slugify_carrier("Compañía de Logística Ñuñoa SpA") == "logisticanunoa"
    assert slugify_carrier("S.A.") == ""


def test_non_delivery_reasons_are_a_closed_set():
    assert non_delivery_reasons() == [
        "Cliente ausente",
        "Dirección incorrecta",
        "Sin acceso / cerrado",
        "Rechazado por cliente",
        "Horario no coincide",
        "Otro",
    ]
    assert parse_non_delivery_reason("  RECHAZADO POR CLIENTE ") == NonDeliveryReason.RECHAZADO
    assert parse_non_delivery_reason("otra cosa") is None
    assert parse_non_delivery_reason(None) is None


def test_display_metadata_falls_back_for_unknown_states():
    assert dispatch_status_display("entregado")["label"] == "Entregado"
    assert route_status_display("pausada")["color"] == "orange"
    assert route_status_display("desconocida") == {"label": "Desconocido", "color": "gray"}


def test_catalog_snapshot_covers_every_state():
    snapshot = catalog_snapshot()

    assert [item["value"] for item in snapshot["estados_despacho"]] == [
        "pendiente",
        "asignado",
        "entregado",
        "no_entregado",
        "cancelado",
    ]
    terminal_routes = {item["value"] for item in snapshot["estados_ruta"] if item["terminal"]}
    assert terminal_routes == {"finalizada", "cancelada"}
    assert len(snapshot["motivos_no_entrega"]) == 6

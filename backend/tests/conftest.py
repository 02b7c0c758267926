"""Shared fixtures for the dispatch/route core tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from itertools import count
import os
import sys
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_ultimamilla"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DB_PATH"] = str(TMP / "api.db")
os.environ["AUTH_ENABLED"] = "false"
os.environ["DEFAULT_ACTOR"] = "tester"
os.environ["DEFAULT_ROLES"] = "admin"
os.environ["OWN_FLEET_RUT"] = ""
os.environ["OWN_FLEET_NAME"] = "vivipra"
os.environ["ROUTE_NUMBER_TIMEZONE"] = "America/Santiago"
os.environ["VALIDATE_RECEIVER_RUT"] = "true"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from ultimamilla.models.despachos import DeliverRequest, DispatchCreateRequest  # noqa: E402
from ultimamilla.models.empresas import CarrierCreateRequest  # noqa: E402
from ultimamilla.services.carrier_store import CarrierStore  # noqa: E402
from ultimamilla.services.dispatch_machine import DispatchStateMachine  # noqa: E402
from ultimamilla.services.dispatch_store import DispatchStore  # noqa: E402
from ultimamilla.services.reconciliation import ReconciliationService  # noqa: E402
from ultimamilla.services.route_lifecycle import RouteLifecycle  # noqa: E402
from ultimamilla.services.route_store import RouteStore  # noqa: E402
from ultimamilla.services.state_store import StateStore  # noqa: E402


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now = self.now + timedelta(minutes=minutes)


@pytest.fixture
def clock() -> FakeClock:
    # 12:00 in Santiago, mid-month
    return FakeClock(datetime(2026, 3, 15, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def state(tmp_path) -> StateStore:
    return StateStore(db_path=str(tmp_path / "ultimamilla.db"))


@pytest.fixture
def carriers(state) -> CarrierStore:
    return CarrierStore(state)


@pytest.fixture
def dispatches(state) -> DispatchStore:
    return DispatchStore(state)


@pytest.fixture
def routes(state) -> RouteStore:
    return RouteStore(state)


@pytest.fixture
def machine(state, clock) -> DispatchStateMachine:
    return DispatchStateMachine(state, clock=clock)


@pytest.fixture
def lifecycle(state, clock) -> RouteLifecycle:
    return RouteLifecycle(state, clock=clock)


@pytest.fixture
def reconciliation(state, clock) -> ReconciliationService:
    return ReconciliationService(state, clock=clock)


@pytest.fixture
def own_carrier(carriers):
    return carriers.create(
        CarrierCreateRequest(
            rut="76.987.654-5",
            razon_social="Vivipra Transportes Ltda.",
            contacto="+56 2 2345 6789",
        ),
        actor="admin",
    )


@pytest.fixture
def external_carrier(carriers):
    return carriers.create(
        CarrierCreateRequest(
            rut="96.756.430-3",
            razon_social="Chilexpress S.A.",
            contacto="600 600 6000",
            usuario_cuenta="Chilexpress",
        ),
        actor="admin",
    )


@pytest.fixture
def make_dispatches(dispatches):
    folios = count(1001)

    def _make(total: int = 1):
        created = []
        for _ in range(total):
            folio = next(folios)
            created.append(
                dispatches.create(
                    DispatchCreateRequest(
                        folio_num=folio,
                        card_code=f"C{folio}",
                        card_name=f"Cliente {folio}",
                        address2=f"Av. Providencia {folio}, Santiago",
                        comments="Entregar en recepción",
                    ),
                    actor="sync",
                )
            )
        return created

    return _make


@pytest.fixture
def own_route(lifecycle, own_carrier, make_dispatches):
    """A pending own-fleet route over three fresh dispatches A, B and C."""
    batch = make_dispatches(3)
    route = lifecycle.create(own_carrier.id, "chofer1", [item.id for item in batch], created_by="bodega")
    return route, batch


@pytest.fixture
def external_route(lifecycle, external_carrier, make_dispatches):
    batch = make_dispatches(3)
    route = lifecycle.create(external_carrier.id, None, [item.id for item in batch], created_by="bodega")
    return route, batch


@pytest.fixture
def evidence():
    return DeliverRequest(
        receptor_rut="12345678-5",
        receptor_nombre="Juan",
        receptor_apellido="Pérez",
        foto_entrega="data:image/jpeg;base64,/9j/4AAQSkZJRg==",
    )

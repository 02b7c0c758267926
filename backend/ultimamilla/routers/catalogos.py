"""Reason codes and state display metadata for presentation layers."""
from fastapi import APIRouter

from ultimamilla.services.catalog import catalog_snapshot

router = APIRouter(prefix="/catalogos", tags=["catalogos"])


@router.get("")
def get_catalogs():
    return catalog_snapshot()

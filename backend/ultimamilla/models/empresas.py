"""Domain models for carrier companies (empresas de reparto)."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CarrierCompany(BaseModel):
    """Persisted carrier company."""

    id: str
    rut: str
    razon_social: str
    usuario_cuenta: Optional[str] = None
    contacto: str
    slug: Optional[str] = None
    # None defers to the configured own-fleet RUT/name
    flota_propia: Optional[bool] = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class CarrierCreateRequest(BaseModel):
    """Payload to register a carrier company."""

    rut: str = Field(min_length=2)
    razon_social: str = Field(min_length=1)
    usuario_cuenta: Optional[str] = None
    contacto: str = Field(min_length=1)
    slug: Optional[str] = None
    flota_propia: Optional[bool] = None


class CarrierUpdateRequest(BaseModel):
    """Patch fields for an existing carrier company."""

    rut: Optional[str] = None
    razon_social: Optional[str] = None
    usuario_cuenta: Optional[str] = None
    contacto: Optional[str] = None
    slug: Optional[str] = None
    flota_propia: Optional[bool] = None

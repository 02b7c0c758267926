"""Última Milla - dispatch and route tracking API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from ultimamilla.core.config import get_settings
from ultimamilla.core.logging import configure_logging, logger
from ultimamilla.routers import catalogos, despachos, empresas, rutas
from ultimamilla.services.state_store import state_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "Ultima Milla API starting",
        version="0.1.0",
        db_path=str(state_store.db_path),
        auth_enabled=settings.auth_enabled,
    )
    yield
    logger.info("Ultima Milla API shutting down")


app = FastAPI(
    title="Última Milla API",
    description="Last-mile dispatch tracking - routes, deliveries and external carrier reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(empresas.router)
app.include_router(despachos.router)
app.include_router(rutas.router)
app.include_router(catalogos.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Última Milla API",
        "version": "0.1.0",
        "endpoints": {
            "empresas": "/empresas",
            "despachos": "/despachos",
            "rutas": "/rutas",
            "catalogos": "/catalogos",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

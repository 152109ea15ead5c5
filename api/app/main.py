"""Application FastAPI — point d'entrée du backend API."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from compta_obra.config.loader import load_config
from compta_obra.context import build_context

from .routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Charge la configuration YAML et construit le contexte au démarrage."""
    config_dir = Path(os.getenv("CONFIG_DIR", "./config"))
    config = load_config(config_dir)
    application.state.context = build_context(config, database_path=os.getenv("DATABASE_PATH"))
    logger.info("Configuration chargée depuis %s", config_dir)
    yield
    application.state.context.close()


app = FastAPI(
    title="compta-obra API",
    description="API REST : taux de change historiques, synthèse fiscale et plans de paiement.",
    lifespan=lifespan,
)

# CORS
cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)

app.include_router(router)

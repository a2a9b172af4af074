import logging
import math
import os
from typing import Any, Dict

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vaults_backend import app_context
from vaults_backend.app.provisioning.repository import ensure_provisioning_schema
from vaults_backend.app.routes.provisioning import router as provisioning_router
from vaults_backend.app.services.provisioning import get_provisioning_config
from vaults_backend.sweeps import (
    get_sweep_metrics,
    shutdown_sweep_scheduler,
    start_sweep_scheduler,
)


load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("provisioning_api")


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "vaults_db"),
    user=os.getenv("DB_USER", "vaults_user"),
    password=os.getenv("DB_PASSWORD", "vaults_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Vaults Provisioning API")

# Vite proxy origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(provisioning_router)


@app.on_event("startup")
def _startup_provisioning() -> None:
    config = get_provisioning_config()
    if config.storage_backend == "postgres":
        ensure_provisioning_schema()
    if config.sweeper_enabled:
        start_sweep_scheduler(config.sweep_interval_seconds)
    logger.info(
        "Provisioning API started gateway=%s storage=%s sweeper=%s",
        config.gateway_name,
        config.storage_backend,
        config.sweeper_enabled,
    )


@app.on_event("shutdown")
def _shutdown_sweep_scheduler() -> None:
    shutdown_sweep_scheduler()


@app.get("/api/healthz")
def healthz():
    return {"ok": True}

@app.get("/api/metrics/provisioning-sweeps")
def read_provisioning_sweep_metrics() -> Dict[str, Any]:
    return get_sweep_metrics()

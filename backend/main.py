import logging
import math
import os
from pathlib import Path

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

try:
    from backend import app_context
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    import app_context  # type: ignore[no-redef]


load_dotenv()

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
    dbname=os.getenv("DB_NAME", "billing_db"),
    user=os.getenv("DB_USER", "billing_user"),
    password=os.getenv("DB_PASSWORD", "billing_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if origin.strip()]
APPLY_BILLING_SCHEMA = os.getenv("BILLING_APPLY_SCHEMA", "0").lower() in {"1", "true", "yes"}
BILLING_SCHEMA_PATH = Path(__file__).resolve().parent / "app" / "billing" / "schema.sql"

logger = logging.getLogger("billing")


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

from backend.app.routes.billing import router as billing_router

app = FastAPI(title="Billing Reconciliation API")

# Vite proxy origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)


def apply_billing_schema() -> None:
    """Create the billing tables when they do not exist yet."""

    ddl = BILLING_SCHEMA_PATH.read_text(encoding="utf-8")
    conn = get_conn()
    try:
        with conn.cursor() as cur:
            cur.execute(ddl)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    logger.info("Billing schema applied from %s", BILLING_SCHEMA_PATH)


@app.on_event("startup")
def setup_billing_schema() -> None:
    if APPLY_BILLING_SCHEMA:
        apply_billing_schema()


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}

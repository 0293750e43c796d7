"""
Cigarro Payments API
FastAPI application for on-demand UPI payment verification via the payments inbox.
"""

import logging
import os
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from app.routers import payments
from app.db import supabase_admin
from app.services.audit_log import LOG_TABLE

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Cigarro Payments API",
    description="On-demand payment verification against bank and UPI confirmation emails",
    version="0.1.0",
)

# Storefront origins; CORS_ORIGINS adds to these
_DEFAULT_ORIGINS = [
    "https://cigarro.in",
    "https://www.cigarro.in",
    "http://localhost:3000",
]


def get_cors_origins() -> List[str]:
    """
    Build the list of allowed CORS origins.

    Always includes the production storefront and the local dev server.
    Additional origins are read from the CORS_ORIGINS environment variable
    as a comma-separated list, e.g.:
        CORS_ORIGINS=https://preview.cigarro.in,http://localhost:5173

    Duplicates are removed while preserving order.
    """
    extra_origins: List[str] = []
    cors_env = os.getenv("CORS_ORIGINS", "").strip()
    if cors_env:
        extra_origins = [o.strip() for o in cors_env.split(",") if o.strip()]

    seen: set = set()
    origins: List[str] = []
    for origin in _DEFAULT_ORIGINS + extra_origins:
        if origin not in seen:
            seen.add(origin)
            origins.append(origin)

    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(payments.router, prefix="/api/payments", tags=["payments"])


@app.on_event("shutdown")
async def close_payment_verifier() -> None:
    """Close the shared Gmail HTTP client if a verifier was ever built."""
    verifier = getattr(app.state, "payment_verifier", None)
    if verifier is not None:
        await verifier.aclose()
        app.state.payment_verifier = None


@app.get("/")
async def root():
    return {"message": "Cigarro Payments API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    """
    Test the Supabase database connection.

    Selects one id from payment_verification_logs with the service client.
    Returns 503 on failure.
    """
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Database client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        supabase_admin.table(LOG_TABLE).select("id").limit(1).execute()
        return {"status": "ok", "database": "reachable"}
    except Exception as exc:
        logger.error(f"Database health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Database connection failed: {str(exc)}",
        )

#!/usr/bin/env python3
"""
Oracle Agent Server

HTTP API for the dashboard: lists oracles, triggers manual updates, reports
wallet balances and controls the background scheduler.
"""

import sys
import os
import logging
from datetime import datetime, timezone
from typing import Literal, Optional

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from src.oracle.agent import OracleAgent
from src.oracle.errors import (
    AuthorizationError,
    InsufficientFundsError,
    NonceConflictError,
    NotFoundError,
    OracleError,
    PendingTransactionError,
    ValidationError,
)
from src.utils.config import Settings

logger = logging.getLogger(__name__)


# Request Models
class DeriveAddressRequest(BaseModel):
    oracle_id: str = Field(alias="oracleId")


class ValidateApiRequest(BaseModel):
    api_endpoint: str = Field(alias="apiEndpoint")
    data_path: Optional[str] = Field(default=None, alias="dataPath")


class SchedulerActionRequest(BaseModel):
    action: Literal["start", "stop"]


def error_response(exc: Exception) -> JSONResponse:
    """Map an oracle error to ``{"success": false, "error": ...}`` with a fitting status code."""
    if isinstance(exc, PendingTransactionError):
        status, message = 409, f"Transaction already pending for this oracle. Please wait and try again. ({exc.message})"
    elif isinstance(exc, NonceConflictError):
        status, message = 409, f"Update may already have been processed. Please refresh and check the value. ({exc.message})"
    elif isinstance(exc, InsufficientFundsError):
        status, message = 402, exc.message
    elif isinstance(exc, NotFoundError):
        status, message = 404, exc.message
    elif isinstance(exc, AuthorizationError):
        status, message = 403, f"{exc.message}. Create a new oracle with a different id."
    elif isinstance(exc, ValidationError):
        status, message = 400, exc.message
    elif isinstance(exc, OracleError):
        status, message = 502, exc.message
    else:
        logger.exception("Unexpected error", exc_info=exc)
        status, message = 500, str(exc)
    return JSONResponse(status_code=status, content={"success": False, "error": message})


def create_app(agent: Optional[OracleAgent] = None, settings: Optional[Settings] = None,
               start_scheduler: bool = True) -> FastAPI:
    app = FastAPI(
        title="API Oracle Agent",
        description="Keeps API-backed on-chain oracles up to date",
        version="0.1.0",
    )
    app.state.agent = agent

    def current_agent() -> OracleAgent:
        if app.state.agent is None:
            raise RuntimeError("Agent not initialized")
        return app.state.agent

    @app.on_event("startup")
    async def startup_event():
        """Build the agent, migrate stored configs and start the scheduler."""
        if app.state.agent is None:
            app.state.agent = OracleAgent(settings or Settings.from_env())
        migrated = app.state.agent.migrate_configs()
        if migrated:
            logger.info("Migrated legacy configs: %s", ", ".join(migrated))
        if start_scheduler:
            app.state.agent.start_scheduler()
        logger.info("✅ Oracle agent server ready")

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.agent is not None:
            await app.state.agent.close()

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/oracles")
    async def list_oracles():
        try:
            oracles = await current_agent().list_oracles()
        except Exception as exc:
            return error_response(exc)
        return {"success": True, "oracles": oracles}

    @app.get("/api/oracles/due")
    async def oracles_due():
        try:
            due = await current_agent().get_oracles_due_for_update()
        except Exception as exc:
            return error_response(exc)
        return {"success": True, "oracles": [config.to_record() for config in due]}

    @app.post("/api/oracles/derive-address")
    async def derive_address(request: DeriveAddressRequest):
        try:
            address = await current_agent().derive_wallet_address(request.oracle_id)
        except Exception as exc:
            return error_response(exc)
        return {"success": True, "oracleId": request.oracle_id, "address": address}

    @app.post("/api/oracles/validate-api")
    async def validate_api(request: ValidateApiRequest):
        result = await current_agent().probe_data_source(request.api_endpoint, request.data_path)
        if not result["success"]:
            return JSONResponse(status_code=400, content=result)
        return result

    @app.post("/api/oracles/{oracle_id}/update")
    async def update_oracle(oracle_id: str):
        try:
            result = await current_agent().update_oracle(oracle_id)
        except Exception as exc:
            return error_response(exc)
        return {"success": True, **result.to_dict()}

    @app.get("/api/oracles/{oracle_id}/value")
    async def oracle_value(oracle_id: str):
        try:
            value = await current_agent().get_oracle_value(oracle_id)
        except Exception as exc:
            return error_response(exc)
        return {"success": True, **value}

    @app.get("/api/oracles/{oracle_id}/balance")
    async def oracle_balance(oracle_id: str):
        try:
            info = await current_agent().get_wallet_info(oracle_id)
        except Exception as exc:
            return error_response(exc)
        return {"success": True, **info}

    @app.get("/api/scheduler/status")
    async def scheduler_status():
        return {"success": True, **current_agent().get_scheduler_status()}

    @app.post("/api/scheduler/status")
    async def scheduler_control(request: SchedulerActionRequest):
        agent_ = current_agent()
        if request.action == "start":
            changed = agent_.start_scheduler()
        else:
            changed = await agent_.stop_scheduler()
        return {"success": True, "changed": changed, **agent_.get_scheduler_status()}

    return app


def main():
    """Run the oracle agent server."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    settings = Settings.from_env()

    logger.info("🚀 Starting oracle agent server on %s:%s", settings.host, settings.port)
    logger.info("📖 API docs available at http://localhost:%s/docs", settings.port)

    uvicorn.run(
        create_app(settings=settings),
        host=settings.host,
        port=settings.port,
        log_level="info"
    )


if __name__ == "__main__":
    main()

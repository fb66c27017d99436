"""IDAM Simulator - OAuth2 / OpenID Connect identity provider for integration tests.

This server runs next to the services under test. It handles:
- Pin issuance and pin redemption (/pin)
- OpenID Connect authorize/token/userinfo plus discovery and JWKS (/o/*)
- Legacy OAuth2 authorize/token/details (/oauth2/*, /details)
- User lookups and search (/api/v1/users)
- Test-data seeding (/testing-support/accounts)

All state is held in memory by a single IdentityStore created in create_app();
nothing survives a restart.
"""
import json
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Config, load_config
from simulator import middleware
from simulator.codes import CodeGenerator
from simulator.endpoints import router as simulator_router
from simulator.issuer import TokenIssuer
from simulator.keys import load_signing_key
from simulator.service import SimulatorService
from simulator.stores import IdentityStore

# Load environment: .env (local override) if present
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)

VERSION = "1.0.0"

logger = logging.getLogger(__name__)


def build_service(config: Config, store: Optional[IdentityStore] = None) -> SimulatorService:
    """Wire store, code generator and token issuer into a SimulatorService."""
    store = store if store is not None else IdentityStore()
    key = load_signing_key(config.signing_key_file, config.signing_key_id)
    codes = CodeGenerator(store, code_ttl=config.auth_code_ttl, pin_ttl=config.pin_ttl)
    issuer = TokenIssuer(
        store,
        key,
        config.issuer,
        access_ttl=config.access_token_ttl,
        refresh_ttl=config.refresh_token_ttl,
    )
    return SimulatorService(store, codes, issuer)


def load_seed_file(service: SimulatorService, path: str) -> int:
    """Pre-load accounts from a JSON list of account objects."""
    with open(Path(path), "r") as f:
        accounts = json.load(f)
    if not isinstance(accounts, list):
        raise ValueError(f"Seed file {path} must contain a JSON list")
    created = service.seed_accounts(accounts)
    logger.info(f"[SEED] Loaded {created} account(s) from {path}")
    return created


def create_app(config: Optional[Config] = None, service: Optional[SimulatorService] = None) -> FastAPI:
    """Build the FastAPI application around one SimulatorService."""
    config = config or load_config()
    service = service or build_service(config)
    if config.seed_file:
        load_seed_file(service, config.seed_file)

    app = FastAPI(
        title="IDAM Simulator",
        description="In-memory OAuth2 / OpenID Connect identity provider for integration testing",
        version=VERSION,
    )
    app.state.service = service
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    middleware.install(app)
    app.include_router(simulator_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "UP"}

    logger.info(f"[STARTUP] Issuer: {config.issuer}")
    return app


def run(config: Config) -> None:
    """Configure logging and serve the simulator with uvicorn."""
    import uvicorn
    from logging_config import setup_logging

    setup_logging(json_logs=config.json_logs, level=config.log_level)
    app = create_app(config)
    logger.info(f"[STARTUP] Starting IDAM simulator on {config.host}:{config.port}")
    uvicorn.run(app, host=config.host, port=config.port, log_config=None)


# ============== Main Entry Point ==============

if __name__ == "__main__":
    run(load_config())

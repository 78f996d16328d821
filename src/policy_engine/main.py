"""Entry point for the monetary policy engine service.

Wires the engine from AppSettings and serves the HTTP API with uvicorn.
The API and the engine share one asyncio event loop; FastAPI's lifespan
opens and closes the SQLite database when that backend is selected.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. PolicyDatabase (sqlite backend only)
4. ConfigStore + TransactionLog + UsageStore (in-memory or SQLite)
5. AccountStore (in-memory reference store)
6. LimitLedger (rolling limit windows)
7. PolicyFacade (rates, fees, card policy, exchange processor)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from policy_engine.accounts import InMemoryAccountStore
from policy_engine.config import AppSettings
from policy_engine.data.database import PolicyDatabase
from policy_engine.data.memory import (
    InMemoryConfigStore,
    InMemoryTransactionLog,
    InMemoryUsageStore,
)
from policy_engine.data.sqlite_store import (
    SqliteConfigStore,
    SqliteTransactionLog,
    SqliteUsageStore,
)
from policy_engine.facade import PolicyFacade
from policy_engine.limits.ledger import LimitLedger
from policy_engine.logging import get_logger, setup_logging


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build the engine's dependency graph from settings.

    Note: Does NOT connect the database -- that happens in the lifespan
    (API mode) or run() (API disabled).

    Returns:
        Dict mapping component names to instances.
    """
    database: PolicyDatabase | None = None
    if settings.storage.backend == "sqlite":
        database = PolicyDatabase(settings.storage.db_path)
        config_store = SqliteConfigStore(database)
        transaction_log = SqliteTransactionLog(database)
        usage_store = SqliteUsageStore(database)
    else:
        config_store = InMemoryConfigStore()
        transaction_log = InMemoryTransactionLog()
        usage_store = InMemoryUsageStore()

    accounts = InMemoryAccountStore()
    ledger = LimitLedger(settings.ledger, usage_store=usage_store)
    facade = PolicyFacade(
        config_store=config_store,
        transaction_log=transaction_log,
        accounts=accounts,
        settings=settings.policy,
        ledger=ledger,
    )

    return {
        "database": database,
        "config_store": config_store,
        "transaction_log": transaction_log,
        "usage_store": usage_store,
        "accounts": accounts,
        "ledger": ledger,
        "facade": facade,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open storage on startup, expose the facade, close storage on shutdown."""
    logger = get_logger("policy_engine.main")
    settings = app.state.settings
    components = app.state.components

    database = components["database"]
    if database is not None:
        await database.connect()

    app.state.facade = components["facade"]
    app.state.accounts = components["accounts"]

    logger.info(
        "lifespan_started",
        backend=settings.storage.backend,
        config_version=await components["config_store"].version(),
    )

    yield

    held = components["ledger"].held_reservations()
    if held:
        logger.critical("shutdown_with_held_reservations", count=len(held))

    if database is not None:
        await database.close()

    logger.info("policy_engine_stopped")


async def run() -> None:
    """Run the policy engine.

    When the API is enabled (API_ENABLED=true, the default) the engine is
    served over HTTP. Otherwise storage is opened, checked and closed, which
    validates configuration and schema without serving traffic.
    """
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level)
    logger = get_logger("policy_engine.main")

    # 3-7. Build all components
    components = _build_components(settings)

    if settings.api.enabled:
        from policy_engine.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_api",
            host=settings.api.host,
            port=settings.api.port,
            backend=settings.storage.backend,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        database = components["database"]
        try:
            if database is not None:
                await database.connect()
            logger.info(
                "storage_checked",
                backend=settings.storage.backend,
                config_version=await components["config_store"].version(),
            )
        finally:
            if database is not None:
                await database.close()


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated

from dishka import FromComponent
from dishka.integrations.fastapi import inject, setup_dishka
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.container import container
from core.environment.config import Settings
from core.exception_handler import http_exception_handler, custom_exception_handler
from core.exceptions import BaseCustomException
from monitoring.cycle import CollectionCycle
from monitoring.router import router as monitoring_router
from monitoring.scheduler import BalanceScheduler

VERSION = "1.0.0"


def log_startup_summary(settings: Settings, logger: logging.Logger) -> None:
    """
    Log the monitoring configuration.

    Parameters
    ----------
    settings : Settings
        Application settings
    logger : logging.Logger
        Logger instance
    """
    logger.info(f"Server time: {datetime.now().astimezone():%Y-%m-%d %H:%M:%S %Z}")
    logger.info(
        f"Check interval: {settings.interval_secs}s, "
        f"active RPC connections: {settings.active_transport_count}, "
        f"data dir: {settings.data_dir}"
    )
    for network in settings.networks:
        logger.info(
            f"Network {network.name} (chain id {network.chain_id}): "
            f"{len(network.rpc_nodes)} RPC nodes, {len(network.addresses)} addresses, "
            f"{len(network.tokens)} tokens"
        )
        for address in network.addresses:
            threshold = f" (low balance alert < {address.min_balance} {network.native_symbol})" if address.min_balance is not None else ""
            logger.info(f"   - {address.alias}{threshold}")
        for token in network.tokens:
            threshold = f" (low balance alert < {token.min_balance})" if token.min_balance is not None else ""
            logger.info(f"   - token {token.alias}{threshold}")

    logger.info(
        f"Alerts: balance change {'enabled' if settings.alerts.balance_change else 'disabled'}, "
        f"low balance {'enabled' if settings.alerts.low_balance else 'disabled'}"
    )
    report = settings.daily_report
    if report is not None and report.enabled:
        logger.info(f"Daily report at {report.time} ({report.timezone or 'local time'})")
    else:
        logger.info("Daily report disabled")
    logger.info(f"Telegram notifications: {'enabled' if settings.telegram else 'disabled'}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = await container.get(Settings, component="environment")
    logger = await container.get(logging.Logger, component="logger")
    log_startup_summary(settings, logger)

    scheduler = await container.get(BalanceScheduler, component="monitoring")
    scheduler.start()

    yield

    await scheduler.shutdown()
    await container.close()


app = FastAPI(
    title="Balance Watcher",
    version=VERSION,
    description="Multi-network on-chain balance monitoring with throttled alerts",
    lifespan=lifespan,
)

setup_dishka(container, app)

app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(BaseCustomException, custom_exception_handler)
app.add_exception_handler(Exception, custom_exception_handler)

app.include_router(monitoring_router)


@app.get("/")
async def root():
    """
    Root endpoint.

    Returns
    -------
    dict
        Application information
    """
    return {
        "name": "Balance Watcher",
        "version": VERSION,
        "endpoints": {
            "balances": "/api/balances",
            "alerts": "/api/alerts",
            "report": "/api/report",
            "transports": "/api/transports/{network}",
            "docs": "/docs"
        }
    }


@app.get("/health")
@inject
async def health(
    cycle: Annotated[CollectionCycle, FromComponent("monitoring")]
):
    """
    Health check endpoint.

    Returns
    -------
    dict
        Health status and time of the last completed cycle
    """
    return {
        "status": "healthy",
        "version": VERSION,
        "last_cycle": cycle.last_run.isoformat() if cycle.last_run else None
    }


if __name__ == "__main__":
    import uvicorn

    settings = Settings()
    uvicorn.run("main:app", host=settings.api_host, port=settings.api_port)

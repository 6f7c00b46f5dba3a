# startup routine of the standalone app. These are the steps that need
# to be taken by external apps importing the gateway.

import importlib

from loguru import logger

from ..core.db import Database
from ..core.migrations import migrate_databases
from ..core.settings import settings
from ..gateway import migrations as gateway_migrations
from ..wallet import migrations as wallet_migrations
from .crud import GatewayCrudSqlite
from .gateway import Gateway

logger.debug("Enviroment Settings:")
for key, value in settings.model_dump().items():
    if key in ["cron_key"]:
        value = "********" if value is not None else None

    if key == "gateway_database" and value and value.startswith("postgres://"):
        value = "postgres://********"

    logger.debug(f"{key}: {value}")

wallets_module = importlib.import_module("cashupay.wallet")

if not settings.gateway_wallet_backend:
    raise Exception("No wallet backend is set.")
wallet_backend = getattr(wallets_module, settings.gateway_wallet_backend)
if settings.gateway_wallet_backend == "FakeWallet":
    logger.warning("Using FakeWallet, payments are simulated.")

gateway = Gateway(
    db=Database("cashupay", settings.gateway_database),
    wallet_backend=wallet_backend,
    crud=GatewayCrudSqlite(),
)


def get_gateway() -> Gateway:
    return gateway


async def start_gateway():
    await migrate_databases(gateway.db, wallet_migrations)
    await migrate_databases(gateway.db, gateway_migrations)
    await gateway.startup_gateway()
    logger.info("Gateway started.")


async def shutdown_gateway():
    await gateway.shutdown_gateway()
    logger.info("Gateway shutdown.")
    logger.remove()

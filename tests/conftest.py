import os
import shutil
from pathlib import Path
from typing import List

import pytest
import pytest_asyncio

from cashupay.core.base import Store
from cashupay.core.db import Database
from cashupay.core.migrations import migrate_databases
from cashupay.core.settings import settings
from cashupay.gateway import migrations as gateway_migrations
from cashupay.gateway.crud import GatewayCrudSqlite
from cashupay.gateway.donation import DonationSink
from cashupay.gateway.gateway import Gateway
from cashupay.wallet import migrations as wallet_migrations
from cashupay.wallet.fake import FakeWallet

MINT_URL = "http://fakemint.test"
BACKUP_MINT_URL = "http://backupmint.test"
GATEWAY_URL = "http://gateway.test"
START_TIME = 1_700_000_000

settings.debug = True
settings.log_level = "TRACE"
settings.cashupay_dir = "./test_data/"
settings.gateway_url = GATEWAY_URL
settings.gateway_wallet_backend = "FakeWallet"
assert (
    settings.gateway_test_database != settings.gateway_database
), "Test database is the same as the main database"
settings.gateway_database = settings.gateway_test_database
settings.cron_key = None
settings.donation_percent = 1.0
settings.fakewallet_input_fee_ppk = 0
settings.db_connection_pool = True

assert "test" in settings.cashupay_dir
shutil.rmtree(settings.cashupay_dir, ignore_errors=True)
Path(settings.cashupay_dir).mkdir(parents=True, exist_ok=True)


class FakeClock:
    def __init__(self, now: int = START_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class RecordingDonationSink(DonationSink):
    """Keeps donated tokens instead of posting them."""

    def __init__(self):
        super().__init__(url="http://donations.test")
        self.tokens: List[str] = []

    async def post(self, token: str) -> bool:
        self.tokens.append(token)
        return True


@pytest.fixture(autouse=True)
def fake_mints():
    FakeWallet.reset()
    yield FakeWallet.mints
    FakeWallet.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture(scope="function")
async def db():
    db_file = os.path.join(settings.gateway_database, "cashupay.sqlite3")
    for path in (db_file, db_file + "-wal", db_file + "-shm"):
        if os.path.exists(path):
            os.remove(path)
    db = Database("cashupay", settings.gateway_database)
    await migrate_databases(db, wallet_migrations)
    await migrate_databases(db, gateway_migrations)
    yield db
    await db.engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def gateway(db: Database, clock: FakeClock):
    gateway = Gateway(
        db=db,
        wallet_backend=FakeWallet,
        crud=GatewayCrudSqlite(),
        donation_sink=RecordingDonationSink(),
        clock=clock,
        base_url=GATEWAY_URL,
    )
    yield gateway
    for task in list(gateway.background_tasks):
        task.cancel()


@pytest_asyncio.fixture(scope="function")
async def store(gateway: Gateway) -> Store:
    return await gateway.create_store(
        name="Test store",
        mint_url=MINT_URL,
        seed_phrase="test seed phrase",
        api_key="test_api_key",
    )


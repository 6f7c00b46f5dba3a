import asyncio
from typing import Callable, Optional, Set, Type

from loguru import logger

from ..core.db import Database
from ..core.helpers import Clock
from ..core.settings import settings
from ..wallet.base import WalletBackend
from ..wallet.mint_client import MintClient
from .crud import GatewayCrud, GatewayCrudSqlite
from .donation import DonationSink
from .rates import BitcoinUnitRates, RateProvider
from .tasks import GatewayTasks, SyncCooldown
from .wallets import WalletRegistry
from .webhooks import WebhookSender


class Gateway(GatewayTasks):
    """Payment gateway for all stores, backed by the stores' Cashu wallets."""

    def __init__(
        self,
        *,
        db: Database,
        wallet_backend: Type[WalletBackend],
        crud: GatewayCrud = GatewayCrudSqlite(),
        rates: Optional[RateProvider] = None,
        mint_client: Optional[Callable[[str], MintClient]] = None,
        donation_sink: Optional[DonationSink] = None,
        clock: Optional[Callable[[], int]] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self.db = db
        self.crud = crud
        self.clock = clock or Clock()
        self.base_url = base_url if base_url is not None else settings.gateway_url
        self.wallets = WalletRegistry(db=db, backend=wallet_backend, clock=self.clock)
        self.mint_client = mint_client or wallet_backend.mint_client_class
        self.rates = rates or BitcoinUnitRates()
        self.donation_sink = donation_sink or DonationSink()
        self.webhooks = WebhookSender(
            db=db, crud=crud, clock=self.clock, base_url=self.base_url
        )
        self.cooldown = SyncCooldown(db=db, crud=crud, clock=self.clock)
        self.background_tasks: Set[asyncio.Task] = set()

    # ------- STARTUP -------

    async def startup_gateway(self) -> None:
        logger.info(f"Using {self.wallets.backend.__name__} wallet backend")
        logger.info(f"Data dir: {settings.cashupay_dir}")
        # proofs left PENDING by a previous run
        settled = await self.cleanup_pending_proofs()
        if settled:
            logger.info(f"Settled {settled} pending proofs from a previous run")

    async def shutdown_gateway(self) -> None:
        logger.debug("Shutting down background tasks")
        for task in list(self.background_tasks):
            task.cancel()
        logger.debug("Disconnecting from database")
        await self.db.engine.dispose()

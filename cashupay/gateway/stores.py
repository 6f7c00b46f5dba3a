import secrets
from typing import List, Optional

from loguru import logger

from ..core.base import Store, StoreMint, Webhook
from ..core.errors import (
    StoreNotConfiguredError,
    StoreNotFoundError,
    ValidationError,
)
from ..core.helpers import random_hex
from ..wallet.base import WalletBackend
from ..wallet.storage import WalletStorage
from .failover import get_store_mint_urls
from .protocols import SupportsClock, SupportsDb, SupportsWallets

INTERNAL_KEY = "internal_key"


class GatewayStores(SupportsDb, SupportsClock, SupportsWallets):
    # ------- stores -------

    async def create_store(
        self,
        *,
        name: str,
        mint_url: Optional[str] = None,
        mint_unit: str = "sat",
        seed_phrase: Optional[str] = None,
        **kwargs,
    ) -> Store:
        store = Store(
            id=random_hex(16),
            name=name,
            mint_url=mint_url.rstrip("/") if mint_url else None,
            mint_unit=mint_unit,
            seed_phrase=seed_phrase,
            created_at=self.clock(),
            **kwargs,
        )
        await self.crud.store_store(store=store, db=self.db)
        logger.info(f"Created store {store.id} ({store.name})")
        return store

    async def update_store(self, store: Store) -> Store:
        await self.get_store(store.id)
        await self.crud.update_store(store=store, db=self.db)
        # cached wallets may point to a mint or seed that changed
        self.wallets.invalidate(store.id)
        return store

    async def get_store(self, store_id: str) -> Store:
        store = await self.crud.get_store(store_id=store_id, db=self.db)
        if not store:
            raise StoreNotFoundError(f"store {store_id} not found")
        store.backup_mints = await self.crud.get_store_mints(
            store_id=store_id, db=self.db
        )
        return store

    async def get_configured_store(self, store_id: str) -> Store:
        store = await self.get_store(store_id)
        if not store.configured:
            raise StoreNotConfiguredError(f"store {store_id} has no mint or seed configured")
        return store

    async def get_configured_stores(self) -> List[Store]:
        stores = []
        for store in await self.crud.get_stores(db=self.db):
            if store.configured:
                store.backup_mints = await self.crud.get_store_mints(
                    store_id=store.id, db=self.db
                )
                stores.append(store)
        return stores

    # ------- backup mints -------

    async def add_backup_mint(
        self, store_id: str, mint_url: str, unit: Optional[str] = None, priority: int = 100
    ) -> StoreMint:
        store = await self.get_store(store_id)
        mint_url = mint_url.rstrip("/")
        if mint_url in get_store_mint_urls(store) or any(
            m.mint_url.rstrip("/") == mint_url for m in store.backup_mints
        ):
            raise ValidationError(f"mint {mint_url} is already configured for this store")
        store_mint = StoreMint(
            store_id=store_id,
            mint_url=mint_url,
            unit=unit or store.mint_unit,
            priority=priority,
        )
        await self.crud.store_store_mint(store_mint=store_mint, db=self.db)
        return store_mint

    async def update_backup_mint(self, store_mint: StoreMint) -> None:
        await self.crud.update_store_mint(store_mint=store_mint, db=self.db)

    async def remove_backup_mint(self, store_id: str, mint_id: int) -> None:
        await self.crud.delete_store_mint(store_id=store_id, mint_id=mint_id, db=self.db)
        self.wallets.invalidate(store_id)

    async def check_mint_connection(self, mint_url: str) -> bool:
        try:
            await self.mint_client(mint_url).get_info()
            return True
        except Exception as e:
            logger.debug(f"Mint {mint_url} not reachable: {e}")
            return False

    # ------- webhooks -------

    async def add_webhook(
        self,
        store_id: str,
        url: str,
        secret: Optional[str] = None,
        events: Optional[List[str]] = None,
    ) -> Webhook:
        await self.get_store(store_id)
        webhook = Webhook(
            id=random_hex(16),
            store_id=store_id,
            url=url,
            secret=secret or secrets.token_hex(32),
            events=events or [],
        )
        await self.crud.store_webhook(webhook=webhook, db=self.db)
        return webhook

    # ------- wallets -------

    async def get_wallet(
        self, store: Store, mint_url: Optional[str] = None
    ) -> WalletBackend:
        if not store.configured:
            raise StoreNotConfiguredError()
        return await self.wallets.get(store, mint_url or store.mint_url, store.mint_unit)

    def get_storage(self, store: Store, mint_url: Optional[str] = None) -> WalletStorage:
        if not store.mint_url:
            raise StoreNotConfiguredError()
        return self.wallets.storage(store, mint_url or store.mint_url, store.mint_unit)

    # ------- config -------

    async def get_internal_key(self) -> str:
        """Key for internally triggered background runs, created on first use."""
        key = await self.crud.get_config(key=INTERNAL_KEY, db=self.db)
        if not key:
            key = secrets.token_hex(16)
            await self.crud.set_config(
                key=INTERNAL_KEY, value=key, timestamp=self.clock(), db=self.db
            )
        return key

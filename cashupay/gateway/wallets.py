import asyncio
from typing import Callable, Dict, Tuple, Type

from loguru import logger

from ..core.base import Store
from ..core.db import Database
from ..core.errors import StoreNotConfiguredError
from ..wallet.base import WalletBackend
from ..wallet.storage import WalletStorage

WalletKey = Tuple[str, str, str]


class WalletRegistry:
    """Loaded wallets of all stores, one per (store, mint, unit).

    A wallet is loaded lazily on first use, loading contacts the mint. The
    storage of a wallet is available without loading it.
    """

    def __init__(
        self,
        *,
        db: Database,
        backend: Type[WalletBackend],
        clock: Callable[[], int],
    ):
        self.db = db
        self.backend = backend
        self.clock = clock
        self.wallets: Dict[WalletKey, WalletBackend] = {}
        self.locks: Dict[WalletKey, asyncio.Lock] = {}

    @staticmethod
    def key(store: Store, mint_url: str, unit: str) -> WalletKey:
        return (store.id, mint_url.rstrip("/"), unit)

    def storage(self, store: Store, mint_url: str, unit: str) -> WalletStorage:
        store_id, mint_url, unit = self.key(store, mint_url, unit)
        return WalletStorage(
            db=self.db,
            store_id=store_id,
            mint_url=mint_url,
            unit=unit,
            clock=self.clock,
        )

    async def get(self, store: Store, mint_url: str, unit: str) -> WalletBackend:
        if not store.seed_phrase:
            raise StoreNotConfiguredError()
        key = self.key(store, mint_url, unit)
        if key in self.wallets:
            return self.wallets[key]
        lock = self.locks.setdefault(key, asyncio.Lock())
        async with lock:
            # another task may have loaded it while we waited
            if key in self.wallets:
                return self.wallets[key]
            wallet = self.backend(
                mint_url=key[1],
                unit=unit,
                seed=store.seed_phrase,
                storage=self.storage(store, mint_url, unit),
            )
            await wallet.load_mint()
            logger.debug(f"Loaded wallet for store {store.id} at {key[1]} ({unit})")
            self.wallets[key] = wallet
        return wallet

    def invalidate(self, store_id: str) -> None:
        for key in [k for k in self.wallets if k[0] == store_id]:
            del self.wallets[key]

import pytest

from cashupay.core.base import Store
from cashupay.core.errors import (
    StoreNotConfiguredError,
    StoreNotFoundError,
    UnsupportedCurrencyError,
)
from cashupay.gateway.failover import get_store_mint_urls
from cashupay.gateway.gateway import Gateway
from cashupay.gateway.rates import BitcoinUnitRates, FallbackRates, RateProvider
from cashupay.wallet.fake import FakeWallet
from tests.conftest import BACKUP_MINT_URL, MINT_URL
from tests.helpers import assert_err


@pytest.mark.asyncio
async def test_create_and_get_store(gateway: Gateway, store: Store):
    loaded = await gateway.get_store(store.id)
    assert loaded.name == "Test store"
    assert loaded.mint_url == MINT_URL
    assert loaded.configured
    assert loaded.api_key == "test_api_key"

    await assert_err(gateway.get_store("nope"), "store nope not found")
    with pytest.raises(StoreNotFoundError):
        await gateway.get_store("nope")


@pytest.mark.asyncio
async def test_unconfigured_store(gateway: Gateway):
    store = await gateway.create_store(name="No mint yet")
    assert not store.configured
    with pytest.raises(StoreNotConfiguredError):
        await gateway.get_configured_store(store.id)
    with pytest.raises(StoreNotConfiguredError):
        await gateway.create(store.id, 100)
    assert store.id not in [s.id for s in await gateway.get_configured_stores()]


@pytest.mark.asyncio
async def test_update_store_drops_cached_wallets(gateway: Gateway, store: Store):
    wallet = await gateway.get_wallet(store)
    assert await gateway.get_wallet(store) is wallet

    store.seed_phrase = "another seed"
    await gateway.update_store(store)
    assert await gateway.get_wallet(store) is not wallet
    assert (await gateway.get_store(store.id)).seed_phrase == "another seed"


@pytest.mark.asyncio
async def test_backup_mints(gateway: Gateway, store: Store):
    backup = await gateway.add_backup_mint(store.id, BACKUP_MINT_URL + "/", priority=5)
    assert backup.unit == store.mint_unit
    await assert_err(
        gateway.add_backup_mint(store.id, BACKUP_MINT_URL), "already configured"
    )
    await assert_err(gateway.add_backup_mint(store.id, MINT_URL), "already configured")

    loaded = await gateway.get_store(store.id)
    assert get_store_mint_urls(loaded) == [MINT_URL, BACKUP_MINT_URL]

    mint_id = loaded.backup_mints[0].id
    assert mint_id is not None
    await gateway.remove_backup_mint(store.id, mint_id)
    assert get_store_mint_urls(await gateway.get_store(store.id)) == [MINT_URL]


@pytest.mark.asyncio
async def test_check_mint_connection(gateway: Gateway):
    assert await gateway.check_mint_connection(MINT_URL)
    FakeWallet.mint_for(MINT_URL).offline = True
    assert not await gateway.check_mint_connection(MINT_URL)


@pytest.mark.asyncio
async def test_bitcoin_unit_rates():
    rates = BitcoinUnitRates()
    assert await rates.to_mint_unit(1000, "SAT", "sat") == (1000, None)
    assert await rates.to_mint_unit("0.5", "sat", "sat") == (1, None)
    assert await rates.to_mint_unit("0.00000001", "BTC", "msat") == (1000, None)
    assert await rates.to_sats(1500, "msat") == 2
    with pytest.raises(UnsupportedCurrencyError):
        await rates.to_mint_unit(10, "EUR", "sat")


class FixedRates(RateProvider):
    async def to_mint_unit(self, amount, currency, unit):
        return int(float(amount) * 2000), 2000.0

    async def to_sats(self, amount, unit):
        return amount


@pytest.mark.asyncio
async def test_fallback_rates():
    rates = FallbackRates([BitcoinUnitRates(), FixedRates()])
    assert await rates.to_mint_unit(1000, "sat", "sat") == (1000, None)
    assert await rates.to_mint_unit(2, "EUR", "sat") == (4000, 2000.0)

    with pytest.raises(UnsupportedCurrencyError):
        await FallbackRates([BitcoinUnitRates()]).to_mint_unit(2, "EUR", "sat")
    with pytest.raises(ValueError):
        FallbackRates([])

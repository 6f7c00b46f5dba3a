import pytest

from cashupay.core.base import InvoiceStatus, Store
from cashupay.core.settings import settings
from cashupay.gateway.gateway import Gateway
from cashupay.gateway.tasks import EXTERNAL, INTERNAL
from cashupay.wallet.fake import FakeWallet
from tests.conftest import MINT_URL, FakeClock
from tests.helpers import fund_store

TASKS = [
    "expire_invoices",
    "poll_quotes",
    "auto_melt",
    "cleanup_pending_proofs",
    "recover_orphaned",
    "expire_old_invoices",
    "cleanup_invoices",
    "cleanup_webhooks",
]


@pytest.mark.asyncio
async def test_run_background_tasks(gateway: Gateway, store: Store, clock: FakeClock):
    invoice = await gateway.create(store.id, 1000)
    FakeWallet.pay_quote(MINT_URL, invoice.quote_id)

    report = await gateway.run_background_tasks(EXTERNAL)
    assert report.timestamp == clock()
    assert list(report.tasks) == TASKS
    assert all(status == "success" for status in report.tasks.values())

    settled = await gateway.get_invoice(invoice.id)
    assert settled and settled.status == InvoiceStatus.settled


@pytest.mark.asyncio
async def test_internal_run_skips_auto_melt(gateway: Gateway, store: Store):
    report = await gateway.run_background_tasks(INTERNAL)
    assert report.tasks["auto_melt"] == "skipped"
    assert report.tasks["poll_quotes"] == "success"


@pytest.mark.asyncio
async def test_failing_task_does_not_stop_the_run(
    gateway: Gateway, store: Store, monkeypatch
):
    async def broken():
        raise RuntimeError("boom")

    monkeypatch.setattr(gateway, "mark_expired_invoices", broken)
    report = await gateway.run_background_tasks()
    assert report.tasks["expire_invoices"] == "error: boom"
    assert report.tasks["cleanup_webhooks"] == "success"


@pytest.mark.asyncio
async def test_cleanup_pending_proofs(gateway: Gateway, store: Store):
    spent, returned = await fund_store(gateway, store, [1, 2])
    await gateway.mark_proofs_pending(store, [spent.secret, returned.secret])
    FakeWallet.mint_for(MINT_URL).spent.add(spent.Y)
    other = await gateway.create_store(name="not configured")
    assert not other.configured

    assert await gateway.cleanup_pending_proofs() == 2
    assert await gateway.get_balance(store) == returned.amount


@pytest.mark.asyncio
async def test_trigger_background_tasks_cooldown(
    gateway: Gateway, store: Store, clock: FakeClock
):
    assert await gateway.cooldown.should_sync()
    task = await gateway.trigger_background_tasks()
    assert task is not None
    report = await task
    assert report.tasks["auto_melt"] == "skipped"

    # within the cooldown nothing is started
    clock.advance(settings.background_sync_cooldown)
    assert await gateway.trigger_background_tasks() is None
    assert await gateway.cooldown.time_since_last_sync() == settings.background_sync_cooldown

    clock.advance(1)
    task = await gateway.trigger_background_tasks()
    assert task is not None
    await task


@pytest.mark.asyncio
async def test_cron_key(gateway: Gateway, monkeypatch):
    internal_key = await gateway.get_internal_key()
    assert internal_key == await gateway.get_internal_key()
    assert await gateway.verify_internal_key(internal_key)
    assert not await gateway.verify_internal_key("wrong")

    # without a configured key the internal one is accepted
    assert await gateway.verify_cron_key(internal_key)

    monkeypatch.setattr(settings, "cron_key", "cron_secret")
    assert await gateway.verify_cron_key("cron_secret")
    assert not await gateway.verify_cron_key(internal_key)

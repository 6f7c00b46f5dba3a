import json

import pytest
import respx
from httpx import Response

from cashupay.core.base import InvoiceStatus, MintQuoteState, ProofState, Store
from cashupay.core.errors import (
    AllMintsUnreachableError,
    NetworkUnreachableError,
    StoreNotFoundError,
)
from cashupay.gateway.gateway import Gateway
from cashupay.wallet.fake import FakeWallet
from tests.conftest import BACKUP_MINT_URL, MINT_URL, FakeClock
from tests.helpers import assert_err, pay_and_poll

WEBHOOK_URL = "http://merchant.test/webhook"


@pytest.mark.asyncio
async def test_create_invoice(gateway: Gateway, store: Store, clock: FakeClock):
    invoice = await gateway.create(store.id, 1000, metadata={"orderId": "42"})
    assert invoice.id.startswith("inv_")
    assert invoice.status == InvoiceStatus.new
    assert invoice.amount_sats == 1000
    assert invoice.currency == "SAT"
    assert invoice.mint_url == MINT_URL
    assert invoice.quote_id and invoice.bolt11
    assert invoice.expiration_time > clock()

    stored = await gateway.get_invoice(invoice.id)
    assert stored
    assert stored.metadata == {"orderId": "42"}
    assert stored.quote_id == invoice.quote_id


@pytest.mark.asyncio
async def test_create_invoice_in_btc(gateway: Gateway, store: Store):
    invoice = await gateway.create(store.id, "0.00001", currency="btc")
    assert invoice.amount_sats == 1000
    assert invoice.amount == "0.00001"
    assert invoice.currency == "BTC"


@pytest.mark.asyncio
async def test_create_invoice_invalid_amount(gateway: Gateway, store: Store):
    await assert_err(gateway.create(store.id, 0), "amount must be positive")
    await assert_err(gateway.create(store.id, 10, currency="usd"), "Cannot convert USD")


@pytest.mark.asyncio
async def test_create_invoice_unknown_store(gateway: Gateway):
    await assert_err(gateway.create("nope", 1000), "store nope not found")
    with pytest.raises(StoreNotFoundError):
        await gateway.create("nope", 1000)


@pytest.mark.asyncio
async def test_create_invoice_falls_back_to_backup_mint(
    gateway: Gateway, store: Store
):
    await gateway.add_backup_mint(store.id, BACKUP_MINT_URL)
    FakeWallet.mint_for(MINT_URL).offline = True
    invoice = await gateway.create(store.id, 1000)
    assert invoice.mint_url == BACKUP_MINT_URL

    # paid at the backup mint, settled from there
    await pay_and_poll(gateway, invoice.id)
    invoice = await gateway.get_invoice(invoice.id)
    assert invoice and invoice.status == InvoiceStatus.settled
    assert await gateway.get_balance(store, BACKUP_MINT_URL) == 1000
    assert await gateway.get_balance(store) == 0


@pytest.mark.asyncio
async def test_create_invoice_all_mints_down(gateway: Gateway, store: Store):
    await gateway.add_backup_mint(store.id, BACKUP_MINT_URL)
    FakeWallet.mint_for(MINT_URL).offline = True
    FakeWallet.mint_for(BACKUP_MINT_URL).offline = True
    await assert_err(gateway.create(store.id, 1000), "Connection refused")
    with pytest.raises(AllMintsUnreachableError):
        await gateway.create(store.id, 1000)
    assert await gateway.get_invoices(store.id) == []


@respx.mock
@pytest.mark.asyncio
async def test_pay_and_settle(gateway: Gateway, store: Store):
    route = respx.post(WEBHOOK_URL).mock(return_value=Response(200))
    await gateway.add_webhook(store.id, WEBHOOK_URL, events=["InvoiceSettled"])

    invoice = await gateway.create(store.id, 1000)
    await pay_and_poll(gateway, invoice.id)

    settled = await gateway.get_invoice(invoice.id)
    assert settled and settled.status == InvoiceStatus.settled
    assert await gateway.get_balance(store) == 1000
    proofs = await gateway.get_storage(store).get_proofs_by_quote_id(invoice.quote_id)
    assert sum(p.amount for p in proofs) == 1000
    assert route.call_count == 1

    # polling again changes nothing
    result = await gateway.poll_pending_quotes(min_interval=0)
    assert result.checked == 0
    assert await gateway.get_balance(store) == 1000
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_unpaid_invoice_stays_new(gateway: Gateway, store: Store):
    invoice = await gateway.create(store.id, 1000)
    result = await gateway.poll_pending_quotes()
    assert result.checked == 1
    assert result.settled == 0
    stored = await gateway.get_invoice(invoice.id)
    assert stored and stored.status == InvoiceStatus.new
    assert stored.last_polled_at is not None


@pytest.mark.asyncio
async def test_settle_only_once(gateway: Gateway, store: Store):
    invoice = await gateway.create(store.id, 1000)
    FakeWallet.pay_quote(MINT_URL, invoice.quote_id)
    first = await gateway.get_invoice(invoice.id)
    second = await gateway.get_invoice(invoice.id)
    assert first and second

    assert await gateway.mint_and_store_tokens(first)
    # the second caller holds a stale copy and loses the claim
    assert not await gateway.mint_and_store_tokens(second)
    assert await gateway.get_balance(store) == 1000


@pytest.mark.asyncio
async def test_mark_expired_invoices(gateway: Gateway, store: Store, clock: FakeClock):
    invoice = await gateway.create(store.id, 1000)
    assert await gateway.mark_expired_invoices() == 0

    clock.advance(invoice.expiration_time - clock() + 1)
    assert await gateway.mark_expired_invoices() == 1
    expired = await gateway.get_invoice(invoice.id)
    assert expired and expired.status == InvoiceStatus.expired

    # expired invoices are no longer polled
    FakeWallet.pay_quote(MINT_URL, invoice.quote_id)
    result = await gateway.poll_pending_quotes()
    assert result.checked == 0
    assert await gateway.get_balance(store) == 0


@pytest.mark.asyncio
async def test_poll_order_and_interval(gateway: Gateway, store: Store, clock: FakeClock):
    invoices = []
    for _ in range(3):
        invoices.append(await gateway.create(store.id, 100))
        clock.advance(1)

    result = await gateway.poll_pending_quotes(batch_limit=2)
    assert result.checked == 2
    polled = [await gateway.get_invoice(i.id) for i in invoices]
    assert [i.last_polled_at is not None for i in polled if i] == [True, True, False]

    # the never polled invoice goes first, the others wait for the interval
    clock.advance(1)
    result = await gateway.poll_pending_quotes(min_interval=30, batch_limit=2)
    assert result.checked == 1

    clock.advance(31)
    result = await gateway.poll_pending_quotes(min_interval=30, batch_limit=5)
    assert result.checked == 3


@pytest.mark.asyncio
async def test_poll_counts_errors(gateway: Gateway, store: Store):
    await gateway.create(store.id, 100)
    FakeWallet.mint_for(MINT_URL).offline = True
    result = await gateway.poll_pending_quotes()
    assert result.checked == 1
    assert result.errors == 1


@pytest.mark.asyncio
async def test_poll_single_quote(gateway: Gateway, store: Store, clock: FakeClock):
    invoice = await gateway.create(store.id, 1000)
    FakeWallet.pay_quote(MINT_URL, invoice.quote_id)
    refreshed = await gateway.poll_single_quote(invoice.id)
    assert refreshed and refreshed.status == InvoiceStatus.settled

    assert await gateway.poll_single_quote("inv_unknown") is None


@pytest.mark.asyncio
async def test_poll_single_quote_respects_interval(
    gateway: Gateway, store: Store, clock: FakeClock
):
    invoice = await gateway.create(store.id, 1000)
    await gateway.poll_single_quote(invoice.id)
    FakeWallet.pay_quote(MINT_URL, invoice.quote_id)

    # polled a moment ago
    refreshed = await gateway.poll_single_quote(invoice.id)
    assert refreshed and refreshed.status == InvoiceStatus.new

    clock.advance(60)
    refreshed = await gateway.poll_single_quote(invoice.id)
    assert refreshed and refreshed.status == InvoiceStatus.settled


@respx.mock
@pytest.mark.asyncio
async def test_poll_single_quote_expires(gateway: Gateway, store: Store, clock: FakeClock):
    route = respx.post(WEBHOOK_URL).mock(return_value=Response(200))
    await gateway.add_webhook(store.id, WEBHOOK_URL, events=["InvoiceExpired"])
    invoice = await gateway.create(store.id, 1000)
    clock.advance(invoice.expiration_time - clock() + 1)
    refreshed = await gateway.poll_single_quote(invoice.id)
    assert refreshed and refreshed.status == InvoiceStatus.expired
    assert route.call_count == 1
    assert json.loads(route.calls.last.request.content)["type"] == "InvoiceExpired"

    await gateway.poll_single_quote(invoice.id)
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_poll_single_quote_mint_down(gateway: Gateway, store: Store):
    invoice = await gateway.create(store.id, 1000)
    FakeWallet.mint_for(MINT_URL).offline = True
    refreshed = await gateway.poll_single_quote(invoice.id)
    assert refreshed and refreshed.status == InvoiceStatus.new


@pytest.mark.asyncio
async def test_poll_single_quote_unexpected_error(
    gateway: Gateway, store: Store, monkeypatch
):
    invoice = await gateway.create(store.id, 1000)

    async def broken_check(self, quote_id):
        raise RuntimeError("backend bug")

    monkeypatch.setattr(FakeWallet, "check_mint_quote", broken_check)
    refreshed = await gateway.poll_single_quote(invoice.id)
    assert refreshed and refreshed.status == InvoiceStatus.new
    assert refreshed.last_polled_at is not None


def fail_first_mint(monkeypatch):
    """Lets the next `FakeWallet.mint` call fail like a dropped connection."""
    original_mint = FakeWallet.mint
    calls = []

    async def flaky_mint(self, quote_id, amount):
        calls.append(quote_id)
        if len(calls) == 1:
            raise NetworkUnreachableError(f"{self.url}: connection reset")
        return await original_mint(self, quote_id, amount)

    monkeypatch.setattr(FakeWallet, "mint", flaky_mint)
    return calls


@pytest.mark.asyncio
async def test_failed_mint_is_retried_by_recovery(
    gateway: Gateway, store: Store, clock: FakeClock, monkeypatch
):
    calls = fail_first_mint(monkeypatch)
    invoice = await gateway.create(store.id, 1000)
    FakeWallet.pay_quote(MINT_URL, invoice.quote_id)

    result = await gateway.poll_pending_quotes()
    assert result.errors == 1
    stored = await gateway.get_invoice(invoice.id)
    assert stored and stored.status == InvoiceStatus.processing
    assert await gateway.get_balance(store) == 0

    # the quote is still paid at the mint
    assert FakeWallet.mint_for(MINT_URL).mint_quotes[invoice.quote_id].paid

    # an invoice that just entered Processing is left alone
    assert await gateway.recover_orphaned_invoices() == []
    assert len(calls) == 1

    clock.advance(61)
    assert await gateway.recover_orphaned_invoices() == [invoice.id]
    settled = await gateway.get_invoice(invoice.id)
    assert settled and settled.status == InvoiceStatus.settled
    assert await gateway.get_balance(store) == 1000
    assert len(calls) == 2

    assert await gateway.recover_orphaned_invoices() == []
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_failed_mint_is_retried_by_single_poll(
    gateway: Gateway, store: Store, clock: FakeClock, monkeypatch
):
    fail_first_mint(monkeypatch)
    invoice = await gateway.create(store.id, 1000)
    FakeWallet.pay_quote(MINT_URL, invoice.quote_id)

    refreshed = await gateway.poll_single_quote(invoice.id)
    assert refreshed and refreshed.status == InvoiceStatus.processing

    clock.advance(61)
    refreshed = await gateway.poll_single_quote(invoice.id)
    assert refreshed and refreshed.status == InvoiceStatus.settled
    assert await gateway.get_balance(store) == 1000


async def _orphan(gateway: Gateway, store: Store, mint: bool = True):
    """Claims an invoice and mints its proofs without settling it."""
    invoice = await gateway.create(store.id, 1000)
    FakeWallet.pay_quote(MINT_URL, invoice.quote_id)
    assert await gateway.crud.update_invoice_status(
        invoice_id=invoice.id,
        from_statuses=[InvoiceStatus.new],
        status=InvoiceStatus.processing,
        timestamp=gateway.clock(),
        db=gateway.db,
    )
    if mint:
        wallet = await gateway.get_wallet(store)
        await wallet.mint(invoice.quote_id, invoice.amount_sats)
    return invoice


@respx.mock
@pytest.mark.asyncio
async def test_recover_orphaned_invoice(gateway: Gateway, store: Store, clock: FakeClock):
    route = respx.post(WEBHOOK_URL).mock(return_value=Response(200))
    await gateway.add_webhook(store.id, WEBHOOK_URL, events=["InvoiceSettled"])
    invoice = await _orphan(gateway, store)
    mint = FakeWallet.mint_for(MINT_URL)

    # too young
    assert await gateway.recover_orphaned_invoices(min_age=60) == []

    clock.advance(61)
    requests_before = mint.request_count
    assert await gateway.recover_orphaned_invoices(min_age=60) == [invoice.id]
    recovered = await gateway.get_invoice(invoice.id)
    assert recovered and recovered.status == InvoiceStatus.settled
    assert await gateway.get_balance(store) == 1000
    # local proofs are enough, the mint is not asked
    assert mint.request_count == requests_before

    # second run finds nothing
    assert await gateway.recover_orphaned_invoices(min_age=60) == []
    assert await gateway.get_balance(store) == 1000
    assert route.call_count == 1
    payload = json.loads(route.calls.last.request.content)
    assert payload["type"] == "InvoiceSettled"
    assert payload["invoiceId"] == invoice.id


@pytest.mark.asyncio
async def test_issued_orphan_without_proofs_is_not_settled(
    gateway: Gateway, store: Store, clock: FakeClock
):
    invoice = await _orphan(gateway, store, mint=False)
    # minted into storage we no longer have
    FakeWallet.mint_for(MINT_URL).mint_quotes[invoice.quote_id].state = (
        MintQuoteState.issued
    )
    clock.advance(61)
    assert await gateway.recover_orphaned_invoices(min_age=60) == []
    stored = await gateway.get_invoice(invoice.id)
    assert stored and stored.status == InvoiceStatus.processing


@pytest.mark.asyncio
async def test_paid_orphan_without_proofs_is_minted(
    gateway: Gateway, store: Store, clock: FakeClock
):
    invoice = await _orphan(gateway, store, mint=False)
    clock.advance(61)
    assert await gateway.recover_orphaned_invoices(min_age=60) == [invoice.id]
    stored = await gateway.get_invoice(invoice.id)
    assert stored and stored.status == InvoiceStatus.settled
    assert await gateway.get_balance(store) == 1000


@pytest.mark.asyncio
async def test_poll_completes_issued_quote(gateway: Gateway, store: Store):
    invoice = await gateway.create(store.id, 1000)
    FakeWallet.pay_quote(MINT_URL, invoice.quote_id)
    # minted by someone else with our wallet, e.g. a crashed earlier run
    wallet = await gateway.get_wallet(store)
    await wallet.mint(invoice.quote_id, invoice.amount_sats)

    stored = await gateway.get_invoice(invoice.id)
    assert stored
    assert await gateway._check_quote(stored)
    settled = await gateway.get_invoice(invoice.id)
    assert settled and settled.status == InvoiceStatus.settled


@pytest.mark.asyncio
async def test_expire_and_cleanup_old_invoices(
    gateway: Gateway, store: Store, clock: FakeClock
):
    old = await gateway.create(store.id, 100)
    paid = await gateway.create(store.id, 100)
    FakeWallet.pay_quote(MINT_URL, paid.quote_id)
    await gateway.poll_pending_quotes()

    clock.advance(31 * 24 * 60 * 60)
    assert await gateway.expire_old_invoices(days=30) == 1
    stored = await gateway.get_invoice(old.id)
    assert stored and stored.status == InvoiceStatus.expired

    clock.advance(60 * 24 * 60 * 60)
    assert await gateway.cleanup_old_invoices(days=90) == 2
    assert await gateway.get_invoices(store.id) == []
    # the proofs of settled invoices stay
    proofs = await gateway.get_unspent_proofs(store)
    assert all(p.state == ProofState.unspent for p in proofs)
    assert await gateway.get_balance(store) == 100


@pytest.mark.asyncio
async def test_get_invoices_filter(gateway: Gateway, store: Store):
    first = await gateway.create(store.id, 100)
    await gateway.create(store.id, 200)
    await pay_and_poll(gateway, first.id)

    settled = await gateway.get_invoices(store.id, status=InvoiceStatus.settled)
    assert [i.id for i in settled] == [first.id]
    assert len(await gateway.get_invoices(store.id)) == 2
    assert len(await gateway.get_invoices(store.id, limit=1)) == 1


@pytest.mark.asyncio
async def test_format_for_api(gateway: Gateway, store: Store):
    invoice = await gateway.create(store.id, 1000, checkout={"redirectURL": "http://shop"})
    data = gateway.format_for_api(invoice)
    assert data["id"] == invoice.id
    assert data["status"] == "New"
    assert data["checkoutLink"].endswith(f"/i/{invoice.id}")
    assert data["checkout"]["redirectURL"] == "http://shop"
    method = data["checkout"]["paymentMethods"]["BTC-LightningNetwork"]
    assert method["destination"] == invoice.bolt11
    assert method["paymentLink"] == f"lightning:{invoice.bolt11}"

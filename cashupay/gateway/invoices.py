from typing import Any, Dict, List, Optional, Union

from loguru import logger

from ..core.base import Invoice, InvoiceStatus, MintQuote, Proof, WebhookEventType
from ..core.errors import ValidationError
from ..core.helpers import generate_invoice_id
from ..core.settings import settings
from .failover import get_store_mint_urls, try_in_order
from .models import PollResult, format_invoice_for_api
from .proofs import GatewayProofs
from .protocols import SupportsRates
from .webhooks import GatewayNotifications

DAY = 24 * 60 * 60


class GatewayInvoices(GatewayProofs, GatewayNotifications, SupportsRates):
    base_url: str

    async def create(
        self,
        store_id: str,
        amount: Union[str, int, float],
        currency: str = "sat",
        metadata: Optional[Dict[str, Any]] = None,
        checkout: Optional[Dict[str, Any]] = None,
    ) -> Invoice:
        """Creates an invoice for `amount` and asks a mint of the store for a quote.

        The store's mints are tried in order. The first one that hands out a
        quote is remembered on the invoice and used for minting later.
        """
        store = await self.get_configured_store(store_id)
        amount_in_unit, rate = await self.rates.to_mint_unit(
            amount, currency, store.mint_unit
        )
        if amount_in_unit <= 0:
            raise ValidationError("amount must be positive")

        async def request_quote(mint_url: str) -> MintQuote:
            wallet = await self.get_wallet(store, mint_url)
            return await wallet.request_mint_quote(amount_in_unit)

        mint_url, quote = await try_in_order(get_store_mint_urls(store), request_quote)
        logger.trace(f"Got mint quote {quote.quote} from {mint_url}")

        now = self.clock()
        invoice = Invoice(
            id=generate_invoice_id(),
            store_id=store.id,
            amount=str(amount),
            currency=currency.upper(),
            amount_sats=amount_in_unit,
            unit=store.mint_unit,
            exchange_rate=rate,
            quote_id=quote.quote,
            mint_url=mint_url,
            bolt11=quote.request,
            metadata=metadata or {},
            checkout_config=checkout or {},
            created_at=now,
            expiration_time=quote.expiry or now + settings.invoice_expiration,
        )
        async with self.unit_of_work() as (conn, queue):
            await self.crud.store_invoice(invoice=invoice, db=self.db, conn=conn)
            queue.queue(WebhookEventType.invoice_created, invoice)
        logger.info(
            f"Created invoice {invoice.id} for {invoice.amount_sats} {invoice.unit}"
            f" at {mint_url}"
        )
        return invoice

    # ------- polling -------

    async def mark_expired_invoices(self) -> int:
        """Expires New invoices past their expiration time without asking a mint."""
        expired = await self.crud.expire_invoices(expired_before=self.clock(), db=self.db)
        if expired:
            logger.debug(f"Marked {expired} invoices as expired")
        return expired

    async def poll_pending_quotes(
        self, min_interval: Optional[int] = None, batch_limit: Optional[int] = None
    ) -> PollResult:
        """Checks the quotes of a bounded batch of New invoices at their mints.

        Invoices that were never polled come first, then the ones polled
        longest ago. Invoices polled within `min_interval` seconds are skipped.
        """
        min_interval = (
            settings.invoice_poll_min_interval if min_interval is None else min_interval
        )
        batch_limit = settings.invoice_poll_batch_limit if batch_limit is None else batch_limit
        invoices = await self.crud.get_invoices_to_poll(
            now=self.clock(), min_interval=min_interval, limit=batch_limit, db=self.db
        )
        result = PollResult()
        for invoice in invoices:
            result.checked += 1
            try:
                if await self._check_quote(invoice):
                    result.settled += 1
            except Exception as e:
                result.errors += 1
                logger.error(f"Error polling invoice {invoice.id}: {e}")
        if result.checked:
            logger.debug(
                f"Polled {result.checked} quotes: {result.settled} settled,"
                f" {result.errors} errors"
            )
        return result

    async def poll_single_quote(self, invoice_id: str) -> Optional[Invoice]:
        """Refreshes one invoice, used while a payer is waiting for it.

        Returns the invoice as stored after the check.
        """
        invoice = await self.get_invoice(invoice_id)
        if not invoice or not invoice.quote_id:
            return invoice
        if invoice.status not in (InvoiceStatus.new, InvoiceStatus.processing):
            return invoice

        now = self.clock()
        if invoice.status == InvoiceStatus.new and invoice.expiration_time < now:
            await self._expire(invoice)
            return await self.get_invoice(invoice_id)
        if (
            invoice.last_polled_at is not None
            and now - invoice.last_polled_at < settings.invoice_poll_min_interval
        ):
            return invoice

        try:
            await self._check_quote(invoice)
        except Exception as e:
            logger.warning(f"Error polling invoice {invoice.id}: {e}")
        return await self.get_invoice(invoice_id)

    async def _expire(self, invoice: Invoice) -> bool:
        async with self.unit_of_work() as (conn, queue):
            expired = await self.crud.update_invoice_status(
                invoice_id=invoice.id,
                from_statuses=[InvoiceStatus.new],
                status=InvoiceStatus.expired,
                timestamp=self.clock(),
                db=self.db,
                conn=conn,
            )
            if not expired:
                return False
            invoice.status = InvoiceStatus.expired
            queue.queue(WebhookEventType.invoice_expired, invoice)
        logger.debug(f"Invoice {invoice.id} expired")
        return True

    async def _check_quote(self, invoice: Invoice) -> bool:
        assert invoice.quote_id, "invoice has no quote"
        # stamp first so that a hanging mint does not get asked again right away
        now = self.clock()
        await self.crud.update_invoice_polled(
            invoice_id=invoice.id, timestamp=now, db=self.db
        )
        invoice.last_polled_at = now

        store = await self.get_configured_store(invoice.store_id)
        wallet = await self.get_wallet(store, invoice.mint_url)
        quote = await wallet.check_mint_quote(invoice.quote_id)
        logger.trace(f"Quote {quote.quote} of invoice {invoice.id}: {quote.state}")
        if quote.issued:
            return await self.complete_issued_invoice(invoice)
        if not quote.paid:
            return False
        if invoice.status == InvoiceStatus.new:
            return await self.mint_and_store_tokens(invoice)
        if invoice.status == InvoiceStatus.processing and self._mint_stalled(invoice):
            return await self._retry_mint(invoice)
        return False

    def _mint_stalled(self, invoice: Invoice) -> bool:
        # younger Processing invoices may still have a mint request in flight
        since = invoice.processing_at or invoice.created_at
        return self.clock() - since > settings.invoice_orphan_age

    # ------- settlement -------

    async def mint_and_store_tokens(self, invoice: Invoice) -> bool:
        """Mints the tokens of a paid quote and settles the invoice.

        The invoice is moved to Processing and committed before the mint is
        asked for signatures. Of two concurrent callers only one gets past
        that step. If we crash after minting, the invoice stays Processing
        until `recover_orphaned_invoices` finds its proofs. If minting itself
        fails, the quote stays paid and recovery mints again.
        """
        now = self.clock()
        claimed = await self.crud.update_invoice_status(
            invoice_id=invoice.id,
            from_statuses=[InvoiceStatus.new],
            status=InvoiceStatus.processing,
            timestamp=now,
            db=self.db,
        )
        if not claimed:
            logger.debug(f"Invoice {invoice.id} is already being processed")
            return False
        invoice.status = InvoiceStatus.processing
        invoice.processing_at = now
        return await self._mint_claimed(invoice)

    async def _mint_claimed(self, invoice: Invoice) -> bool:
        assert invoice.quote_id
        store = await self.get_configured_store(invoice.store_id)
        wallet = await self.get_wallet(store, invoice.mint_url)
        proofs = await wallet.mint(invoice.quote_id, invoice.amount_sats)
        logger.debug(f"Minted {len(proofs)} proofs for invoice {invoice.id}")
        return await self._settle(invoice)

    async def _retry_mint(self, invoice: Invoice) -> bool:
        logger.warning(
            f"Quote {invoice.quote_id} of invoice {invoice.id} is paid but was"
            " never minted, minting again"
        )
        return await self._mint_claimed(invoice)

    async def _local_proofs(self, invoice: Invoice) -> List[Proof]:
        assert invoice.quote_id
        store = await self.get_store(invoice.store_id)
        return await self.get_storage(store, invoice.mint_url).get_proofs_by_quote_id(
            invoice.quote_id
        )

    async def complete_issued_invoice(self, invoice: Invoice) -> bool:
        """Settles an invoice whose quote the mint reports as issued.

        Only possible when the proofs of the quote are in our storage.
        """
        if not await self._local_proofs(invoice):
            logger.error(
                f"Quote {invoice.quote_id} was issued but we have no proofs for"
                f" invoice {invoice.id}"
            )
            return False
        return await self._settle(invoice)

    async def _settle(self, invoice: Invoice) -> bool:
        async with self.unit_of_work() as (conn, queue):
            settled = await self.crud.update_invoice_status(
                invoice_id=invoice.id,
                from_statuses=[InvoiceStatus.new, InvoiceStatus.processing],
                status=InvoiceStatus.settled,
                timestamp=self.clock(),
                db=self.db,
                conn=conn,
            )
            if not settled:
                logger.debug(f"Invoice {invoice.id} was settled elsewhere")
                return False
            invoice.status = InvoiceStatus.settled
            queue.queue(WebhookEventType.invoice_received_payment, invoice)
            queue.queue(WebhookEventType.invoice_settled, invoice)
        logger.info(f"Invoice {invoice.id} settled")
        return True

    # ------- maintenance -------

    async def recover_orphaned_invoices(self, min_age: Optional[int] = None) -> List[str]:
        """Settles invoices stuck in Processing.

        If the proofs of the quote are in our storage the invoice settles
        without asking the mint. Otherwise the mint is asked: a quote that is
        still paid was never minted and gets minted now. Returns the ids of
        the recovered invoices. Running it twice settles nothing the second
        time.
        """
        min_age = settings.invoice_orphan_age if min_age is None else min_age
        invoices = await self.crud.get_processing_invoices(
            processing_before=self.clock() - min_age, db=self.db
        )
        recovered = []
        for invoice in invoices:
            try:
                if invoice.quote_id and await self._recover(invoice):
                    recovered.append(invoice.id)
                    logger.info(f"Recovered orphaned invoice {invoice.id}")
            except Exception as e:
                logger.error(f"Error recovering invoice {invoice.id}: {e}")
        return recovered

    async def _recover(self, invoice: Invoice) -> bool:
        assert invoice.quote_id
        if await self._local_proofs(invoice):
            return await self._settle(invoice)
        store = await self.get_configured_store(invoice.store_id)
        wallet = await self.get_wallet(store, invoice.mint_url)
        quote = await wallet.check_mint_quote(invoice.quote_id)
        if quote.paid:
            return await self._retry_mint(invoice)
        if quote.issued:
            logger.error(
                f"Quote {invoice.quote_id} was issued but we have no proofs for"
                f" invoice {invoice.id}"
            )
        return False

    async def expire_old_invoices(self, days: Optional[int] = None) -> int:
        days = settings.invoice_max_age_days if days is None else days
        return await self.crud.expire_invoices(
            created_before=self.clock() - days * DAY, db=self.db
        )

    async def cleanup_old_invoices(self, days: Optional[int] = None) -> int:
        days = settings.invoice_retention_days if days is None else days
        deleted = await self.crud.delete_invoices(
            created_before=self.clock() - days * DAY,
            statuses=[InvoiceStatus.settled, InvoiceStatus.expired, InvoiceStatus.invalid],
            db=self.db,
        )
        if deleted:
            logger.debug(f"Deleted {deleted} old invoices")
        return deleted

    # ------- queries -------

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        return await self.crud.get_invoice(invoice_id=invoice_id, db=self.db)

    async def get_invoices(
        self,
        store_id: str,
        status: Optional[InvoiceStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Invoice]:
        return await self.crud.get_invoices(
            store_id=store_id, status=status, limit=limit, offset=offset, db=self.db
        )

    def format_for_api(self, invoice: Invoice) -> Dict[str, Any]:
        return format_invoice_for_api(invoice, self.base_url)

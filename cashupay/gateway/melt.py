from typing import List, Optional

from loguru import logger

from ..core.base import MeltQuote, Store
from ..core.errors import (
    BalanceTooLowError,
    CashuPayError,
    InvalidDestinationError,
    MeltError,
    MeltPendingError,
    ProofsAlreadySpentError,
    ProtocolError,
)
from ..core.helpers import calculate_donation, fee_buffer, select_proofs, sum_proofs
from ..core.settings import settings
from ..wallet.base import WalletBackend
from .lnurl import handle_lnurl, is_bolt11
from .models import AutoMeltResult, MeltResponse
from .proofs import GatewayProofs
from .protocols import SupportsRates

AUTO_MELT_COMMENT = "CashuPayServer auto-withdrawal"


class GatewayMelt(GatewayProofs, SupportsRates):
    async def melt_to_bolt11(self, store_id: str, bolt11: str) -> MeltResponse:
        if not is_bolt11(bolt11):
            raise InvalidDestinationError("Not a BOLT-11 invoice")
        store = await self.get_configured_store(store_id)
        wallet = await self.get_wallet(store)
        quote = await wallet.request_melt_quote(bolt11.strip())
        return await self._melt(store, wallet, quote)

    async def melt_to_address(
        self,
        store_id: str,
        address: str,
        amount_sats: int,
        comment: Optional[str] = None,
    ) -> MeltResponse:
        """Pays `amount_sats` to a Lightning address or LNURL.

        The amount is always in sats, also for stores with a fiat mint. The
        mint quotes what that costs in its own unit.
        """
        bolt11 = await handle_lnurl(address, amount_sats, comment)
        return await self.melt_to_bolt11(store_id, bolt11)

    async def _melt(
        self, store: Store, wallet: WalletBackend, quote: MeltQuote
    ) -> MeltResponse:
        total = quote.amount + quote.fee_reserve
        proofs = await self.get_unspent_proofs(store)
        balance = sum_proofs(proofs)
        if balance < total:
            raise BalanceTooLowError(
                f"Insufficient balance. Have: {balance} {store.mint_unit},"
                f" need: {total} {store.mint_unit}"
            )
        selected = select_proofs(proofs, total)
        fee = wallet.calculate_fee(selected)
        if sum_proofs(selected) < total + fee:
            selected = select_proofs(proofs, total + fee)
            if not selected:
                raise BalanceTooLowError(
                    f"Insufficient balance for {total} {store.mint_unit} plus input fees"
                )

        secrets = [p.secret for p in selected]
        await self.mark_proofs_pending(store, secrets)
        operation_id = await wallet.storage.begin_operation(
            "melt", selected, settings.pending_operation_ttl, quote_id=quote.quote
        )
        # if the mint cannot be reached the proofs stay PENDING until it answers
        try:
            result = await wallet.melt(quote, selected)
        except ProofsAlreadySpentError:
            await self.mark_proofs_unspent(store, secrets)
            await self.sync_proof_states(store)
            await wallet.storage.finish_operation(operation_id)
            raise
        except ProtocolError:
            await self.mark_proofs_unspent(store, secrets)
            await wallet.storage.finish_operation(operation_id)
            raise

        if result.pending:
            raise MeltPendingError(
                "Lightning payment pending - proofs marked as pending for recovery"
            )
        await wallet.storage.finish_operation(operation_id)
        if not result.paid:
            await self.mark_proofs_unspent(store, secrets)
            raise MeltError(result.error_message or "Lightning payment failed")

        fee_paid = sum_proofs(selected) - quote.amount - sum_proofs(result.change)
        logger.info(
            f"Store {store.id} paid {quote.amount} {store.mint_unit}"
            f" (fee {fee_paid}) via {wallet.url}"
        )
        return MeltResponse(
            amount=quote.amount, fee_paid=fee_paid, preimage=result.preimage
        )

    async def check_auto_melt(self) -> List[AutoMeltResult]:
        """Pays out the balance of every store above its auto-melt threshold.

        Works from the local balance, so an unreachable mint only fails the
        payout itself. The donation is sent after a successful payout.
        """
        results = []
        for store in await self.get_configured_stores():
            if not store.auto_melt_enabled or not store.auto_melt_address:
                continue
            try:
                result = await self._auto_melt_store(store)
            except CashuPayError as e:
                logger.error(f"Auto-melt failed for store {store.id}: {e}")
                result = AutoMeltResult(store_id=store.id, error=str(e))
            if result:
                results.append(result)
        return results

    async def _auto_melt_store(self, store: Store) -> Optional[AutoMeltResult]:
        assert store.auto_melt_address
        balance = await self.get_balance(store)
        if balance < store.auto_melt_threshold:
            return None

        donation = calculate_donation(balance, settings.donation_percent)
        amount_mint_unit = balance - donation
        if amount_mint_unit < 1:
            return None
        amount_sats = await self.rates.to_sats(amount_mint_unit, store.mint_unit)
        # the mint charges its lightning fee on top of the invoice
        amount_sats -= fee_buffer(
            amount_sats,
            settings.auto_melt_fee_buffer_percent,
            settings.auto_melt_fee_buffer_min,
            settings.auto_melt_fee_buffer_max,
        )
        if amount_sats < 1:
            return None

        await self.melt_to_address(
            store.id, store.auto_melt_address, amount_sats, AUTO_MELT_COMMENT
        )
        donated = await self.send_to_donation_sink(store, donation) if donation else 0
        logger.info(
            f"Auto-melt: sent {amount_sats} sats from store {store.name}"
            f" to {store.auto_melt_address}"
        )
        return AutoMeltResult(
            store_id=store.id,
            amount=amount_sats,
            amount_mint_unit=amount_mint_unit,
            donated=donated,
            success=True,
        )

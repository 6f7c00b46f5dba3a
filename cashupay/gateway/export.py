from typing import List, Optional

from loguru import logger

from ..core.base import Proof, Store
from ..core.errors import (
    BalanceTooLowError,
    NetworkUnreachableError,
    ProofsAlreadySpentError,
    ValidationError,
)
from ..core.helpers import (
    amount_split,
    calculate_donation,
    calculate_max_withdrawal,
    select_exact_proofs,
    select_proofs,
    sum_proofs,
)
from ..core.settings import settings
from ..wallet.base import take_amounts
from ..wallet.token import serialize_proofs
from .models import ExportInfo, ExportResult
from .proofs import GatewayProofs


class GatewayExport(GatewayProofs):
    async def export_token(
        self,
        store_id: str,
        amount: int,
        donation_percent: Optional[float] = None,
        force_amount: Optional[int] = None,
    ) -> ExportResult:
        """Takes `amount` out of the store's balance as a Cashu token.

        If the local proofs add up to the amount exactly, the token is built
        without contacting the mint. Otherwise the mint swaps the proofs into
        the right denominations. When the mint is down and there is no exact
        match, the caller gets a `change_needed` result with the closest
        amount we can give, and has to confirm it via `force_amount`.
        """
        if amount <= 0:
            raise ValidationError("amount must be positive")
        store = await self.get_configured_store(store_id)
        percent = settings.donation_percent if donation_percent is None else donation_percent

        # a mint that is down here is handled below, the proofs just stay PENDING
        await self.check_pending_proofs(store)

        proofs = await self.get_unspent_proofs(store)
        balance = sum_proofs(proofs)
        if balance < amount:
            raise BalanceTooLowError(
                f"Insufficient balance. Have: {balance} {store.mint_unit},"
                f" need: {amount} {store.mint_unit}"
            )

        selected = select_proofs(proofs, amount)
        exact = (
            selected
            if sum_proofs(selected) == amount
            else select_exact_proofs(proofs, amount)
        )
        if exact:
            logger.debug(f"Exact match for {amount}, exporting without the mint")
            return await self._export_offline(store, proofs, exact, percent)

        try:
            return await self._export_with_swap(store, proofs, amount, percent)
        except NetworkUnreachableError as e:
            logger.warning(f"Mint unreachable during export: {e}")
            available = sum_proofs(selected)
            if force_amount != available:
                return ExportResult(
                    status="change_needed",
                    requested=amount,
                    available=available,
                    mint_unreachable=True,
                    message=(
                        f"The mint is unreachable and {amount} cannot be paid exactly."
                        f" Closest available amount is {available}."
                    ),
                )
            return await self._export_offline(
                store, proofs, selected, percent, mint_unreachable=True
            )
        except ProofsAlreadySpentError as e:
            logger.warning(f"Mint reports proofs as spent, resyncing: {e}")
            await self.sync_proof_states(store)
            return ExportResult(
                status="retry",
                sync=True,
                message="Some proofs were already spent. Balance was synced, please retry.",
            )

    async def _export_offline(
        self,
        store: Store,
        proofs: List[Proof],
        selected: List[Proof],
        percent: float,
        mint_unreachable: bool = False,
    ) -> ExportResult:
        assert store.mint_url
        amount = sum_proofs(selected)
        secrets = [p.secret for p in selected]
        await self.mark_proofs_pending(store, secrets)
        token = serialize_proofs(selected, store.mint_url, store.mint_unit)

        # without the mint a donation needs an exact match as well
        donated = 0
        donation = calculate_donation(amount, percent)
        if donation:
            remaining = [p for p in proofs if p.secret not in secrets]
            donation_proofs = select_exact_proofs(remaining, donation)
            if donation_proofs:
                donated = await self.post_donation(store, donation_proofs)

        return ExportResult(
            status="ok",
            token=token,
            amount=amount,
            secrets=secrets,
            mint_used=False,
            offline_export=True,
            mint_unreachable=mint_unreachable,
            donated=donated,
        )

    async def _export_with_swap(
        self, store: Store, proofs: List[Proof], amount: int, percent: float
    ) -> ExportResult:
        wallet = await self.get_wallet(store)
        proofs = await self.verify_proof_states(wallet, proofs)
        balance = sum_proofs(proofs)
        fee = wallet.calculate_fee(proofs)
        donation = calculate_donation(amount, percent)

        if donation and balance >= amount + donation + fee:
            # one swap for send, donation and change
            send_amounts = amount_split(amount)
            donation_amounts = amount_split(donation)
            keep_amount = balance - amount - donation - fee
            new_proofs = await wallet.swap(
                proofs, send_amounts + donation_amounts + amount_split(keep_amount)
            )
            send, rest = take_amounts(new_proofs, send_amounts)
            donation_proofs, _ = take_amounts(rest, donation_amounts)
        elif balance >= amount + fee:
            _, send = await wallet.split(proofs, amount)
            donation_proofs = []
        else:
            raise BalanceTooLowError(
                f"Insufficient balance. Have: {balance} {store.mint_unit},"
                f" need: {amount + fee} {store.mint_unit} including fees"
            )

        secrets = [p.secret for p in send]
        await self.mark_proofs_pending(store, secrets)
        donated = await self.post_donation(store, donation_proofs)
        return ExportResult(
            status="ok",
            token=wallet.serialize_token(send),
            amount=amount,
            secrets=secrets,
            mint_used=True,
            donated=donated,
        )

    async def export_info(self, store_id: str) -> ExportInfo:
        store = await self.get_configured_store(store_id)
        proofs = await self.get_unspent_proofs(store)
        balance = sum_proofs(proofs)
        fee, mint_unreachable = 0, False
        try:
            wallet = await self.get_wallet(store)
            fee = wallet.calculate_fee(proofs)
        except NetworkUnreachableError as e:
            logger.debug(f"Mint unreachable, showing offline balance: {e}")
            mint_unreachable = True
        max_export = max(0, balance - fee)
        return ExportInfo(
            balance=balance,
            fee=fee,
            max_export=max_export,
            max_export_with_donation=calculate_max_withdrawal(
                max_export, settings.donation_percent
            ),
            donation_percent=settings.donation_percent,
            mint_unreachable=mint_unreachable,
        )

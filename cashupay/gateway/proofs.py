from typing import Dict, List, Optional

from loguru import logger

from ..core.base import Proof, ProofState, Store
from ..core.errors import NetworkUnreachableError, ProtocolError
from ..core.helpers import sum_proofs
from ..wallet import crud as wallet_crud
from ..wallet.base import WalletBackend
from ..wallet.token import serialize_proofs
from .failover import get_store_mint_urls
from .models import PendingProofsCheck
from .protocols import SupportsDonations
from .stores import GatewayStores


class GatewayProofs(GatewayStores, SupportsDonations):
    """Local proof ledger of the stores and its reconciliation with the mints.

    The local state is the source of truth for balances. Reading it never
    contacts a mint, only the explicit checks below do.
    """

    # ------- balance -------

    async def get_balance(self, store: Store, mint_url: Optional[str] = None) -> int:
        if not store.mint_url:
            return 0
        return await self.get_storage(store, mint_url).get_balance()

    async def get_unspent_proofs(
        self, store: Store, mint_url: Optional[str] = None
    ) -> List[Proof]:
        if not store.mint_url:
            return []
        return await self.get_storage(store, mint_url).get_proofs(ProofState.unspent)

    async def get_pending_proofs(
        self, store: Store, mint_url: Optional[str] = None
    ) -> List[Proof]:
        if not store.mint_url:
            return []
        return await self.get_storage(store, mint_url).get_proofs(ProofState.pending)

    # ------- state changes -------

    async def mark_proofs_spent(self, store: Store, secrets: List[str]) -> int:
        return await self._mark_proofs(store, secrets, ProofState.spent)

    async def mark_proofs_pending(self, store: Store, secrets: List[str]) -> int:
        return await self._mark_proofs(store, secrets, ProofState.pending)

    async def mark_proofs_unspent(self, store: Store, secrets: List[str]) -> int:
        return await self._mark_proofs(store, secrets, ProofState.unspent)

    async def _mark_proofs(
        self, store: Store, secrets: List[str], state: ProofState
    ) -> int:
        if not secrets or not store.mint_url:
            return 0
        return await self.get_storage(store).update_proofs_state(secrets, state)

    # ------- reconciliation -------

    async def check_pending_proofs(self, store: Store) -> PendingProofsCheck:
        """Asks the mints about our PENDING proofs and settles their local state.

        Proofs the mint reports as SPENT become SPENT, proofs it reports as
        UNSPENT are returned to the balance, proofs still PENDING at the mint
        are left alone. A mint that cannot be reached is reported in the
        result and its proofs stay PENDING.
        """
        return await self._reconcile(store, ProofState.pending, get_store_mint_urls(store))

    async def sync_proof_states(
        self, store: Store, mint_url: Optional[str] = None
    ) -> PendingProofsCheck:
        """Same as `check_pending_proofs` for the UNSPENT proofs of one mint.

        Used after a mint rejected our proofs as already spent.
        """
        mint_urls = [mint_url or store.mint_url] if store.mint_url else []
        return await self._reconcile(store, ProofState.unspent, mint_urls)

    async def _reconcile(
        self, store: Store, state: ProofState, mint_urls: List[str]
    ) -> PendingProofsCheck:
        result = PendingProofsCheck()
        for mint_url in mint_urls:
            proofs = await self.get_storage(store, mint_url).get_proofs(state)
            if not proofs:
                continue
            result.checked += len(proofs)
            by_Y: Dict[str, Proof] = {p.Y: p for p in proofs}
            try:
                states = await self.mint_client(mint_url).check_state(list(by_Y))
            except (NetworkUnreachableError, ProtocolError) as e:
                logger.warning(f"Could not check proof states at {mint_url}: {e}")
                result.error = str(e)
                continue

            spent, unspent = [], []
            for s in states:
                proof = by_Y.get(s.Y)
                if not proof:
                    continue
                if s.state == ProofState.spent:
                    spent.append(proof.secret)
                elif s.state == ProofState.unspent:
                    unspent.append(proof.secret)

            storage = self.get_storage(store, mint_url)
            if spent:
                await storage.update_proofs_state(spent, ProofState.spent)
                result.spent += len(spent)
            if unspent and state != ProofState.unspent:
                await storage.update_proofs_state(unspent, ProofState.unspent)
                result.recovered += len(unspent)

        if result.checked:
            logger.debug(
                f"Checked {result.checked} {state} proofs of store {store.id}:"
                f" {result.spent} spent, {result.recovered} recovered"
            )
        return result

    async def verify_proof_states(
        self, wallet: WalletBackend, proofs: List[Proof]
    ) -> List[Proof]:
        """Returns the proofs the mint still considers unspent.

        Proofs the mint reports as SPENT are marked SPENT locally, PENDING ones
        are left out without changing them.
        """
        states = await wallet.check_proof_state(proofs)
        spent = [p.secret for p, s in zip(proofs, states) if s == ProofState.spent]
        if spent:
            logger.warning(f"{len(spent)} proofs were already spent at {wallet.url}")
            await wallet.storage.update_proofs_state(spent, ProofState.spent)
        return [p for p, s in zip(proofs, states) if s == ProofState.unspent]

    async def clean_expired_pending_operations(self) -> int:
        deleted = await wallet_crud.delete_expired_pending_operations(
            timestamp=self.clock(), db=self.db
        )
        if deleted:
            logger.debug(f"Deleted {deleted} expired pending operations")
        return deleted

    # ------- donations -------

    async def post_donation(self, store: Store, proofs: List[Proof]) -> int:
        """Hands `proofs` to the donation sink. They count as spent right away."""
        if not proofs:
            return 0
        await self.mark_proofs_spent(store, [p.secret for p in proofs])
        assert store.mint_url
        await self.donation_sink.post(
            serialize_proofs(proofs, store.mint_url, store.mint_unit)
        )
        amount = sum_proofs(proofs)
        logger.info(f"Store {store.id} donated {amount} {store.mint_unit}")
        return amount

    async def send_to_donation_sink(self, store: Store, amount: int) -> int:
        """Splits `amount` off the store's balance and donates it.

        Returns the donated amount, 0 if the balance does not allow it.
        """
        if amount < 1:
            return 0
        wallet = await self.get_wallet(store)
        proofs = await self.verify_proof_states(
            wallet, await self.get_unspent_proofs(store)
        )
        fee = wallet.calculate_fee(proofs)
        if sum_proofs(proofs) < amount + fee or fee > amount:
            logger.warning(f"Store {store.id}: balance too low to donate {amount}")
            return 0
        _, send = await wallet.split(proofs, amount)
        return await self.post_donation(store, send)

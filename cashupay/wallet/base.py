from abc import ABC, abstractmethod
from typing import List, Optional, Tuple, Type

from pydantic import BaseModel

from ..core.base import MeltQuote, MeltQuoteState, MintQuote, Proof, ProofState
from ..core.errors import BalanceTooLowError, InternalInconsistencyError
from ..core.helpers import amount_split, sum_proofs
from .mint_client import MintClient
from .storage import WalletStorage
from .token import serialize_proofs


class MeltResult(BaseModel):
    state: MeltQuoteState
    preimage: Optional[str] = None
    fee_paid: int = 0
    change: List[Proof] = []
    error_message: Optional[str] = None

    @property
    def paid(self) -> bool:
        return self.state == MeltQuoteState.paid

    @property
    def pending(self) -> bool:
        return self.state == MeltQuoteState.pending

    @property
    def failed(self) -> bool:
        return self.state == MeltQuoteState.unpaid


def take_amounts(proofs: List[Proof], amounts: List[int]) -> Tuple[List[Proof], List[Proof]]:
    """Picks one proof per requested amount out of `proofs`.

    Returns the picked proofs and the rest.
    """
    rest = list(proofs)
    picked: List[Proof] = []
    for amount in amounts:
        match = next((p for p in rest if p.amount == amount), None)
        if match is None:
            raise InternalInconsistencyError(
                f"swap did not return a proof of amount {amount}"
            )
        rest.remove(match)
        picked.append(match)
    return picked, rest


class WalletBackend(ABC):
    """Cashu wallet bound to one store, mint and unit.

    Implementations talk to the mint and keep `storage` up to date: minted and
    swapped proofs are stored as UNSPENT, swapped inputs become SPENT and a
    paid melt turns its inputs SPENT and stores the change.
    """

    # raw client for the mint endpoints this backend does not cover
    mint_client_class: Type[MintClient] = MintClient

    def __init__(self, *, mint_url: str, unit: str, seed: str, storage: WalletStorage):
        self.url = mint_url
        self.unit = unit
        self.seed = seed
        self.storage = storage

    @abstractmethod
    async def load_mint(self) -> None:
        pass

    @abstractmethod
    async def request_mint_quote(self, amount: int) -> MintQuote:
        pass

    @abstractmethod
    async def check_mint_quote(self, quote_id: str) -> MintQuote:
        pass

    @abstractmethod
    async def mint(self, quote_id: str, amount: int) -> List[Proof]:
        pass

    @abstractmethod
    async def request_melt_quote(self, request: str) -> MeltQuote:
        pass

    @abstractmethod
    async def melt(self, quote: MeltQuote, proofs: List[Proof]) -> MeltResult:
        pass

    @abstractmethod
    async def swap(self, proofs: List[Proof], amounts: List[int]) -> List[Proof]:
        """Exchanges `proofs` for new proofs of exactly `amounts`."""
        pass

    @abstractmethod
    async def check_proof_state(self, proofs: List[Proof]) -> List[ProofState]:
        pass

    @abstractmethod
    def calculate_fee(self, proofs: List[Proof]) -> int:
        pass

    async def split(
        self, proofs: List[Proof], amount: int
    ) -> Tuple[List[Proof], List[Proof]]:
        """Swaps `proofs` into a part worth `amount` and change.

        Returns (keep, send).
        """
        fee = self.calculate_fee(proofs)
        keep_amount = sum_proofs(proofs) - amount - fee
        if keep_amount < 0:
            raise BalanceTooLowError()
        send_amounts = amount_split(amount)
        new_proofs = await self.swap(proofs, send_amounts + amount_split(keep_amount))
        send, keep = take_amounts(new_proofs, send_amounts)
        return keep, send

    def serialize_token(self, proofs: List[Proof], memo: Optional[str] = None) -> str:
        return serialize_proofs(proofs, self.url, self.unit, memo)

import hashlib
import math
from datetime import datetime
from os import urandom
from typing import Dict, List, Optional, Set

from bolt11 import (
    Bolt11,
    Feature,
    Features,
    FeatureState,
    MilliSatoshi,
    TagChar,
    Tags,
    decode,
    encode,
)
from loguru import logger

from ..core.base import (
    MeltQuote,
    MeltQuoteState,
    MintQuote,
    MintQuoteState,
    Proof,
    ProofState,
    ProofStateResult,
)
from ..core.errors import (
    InvalidDestinationError,
    NetworkUnreachableError,
    ProofsAlreadySpentError,
    ProtocolError,
)
from ..core.helpers import amount_split, random_hex, sum_proofs
from ..core.settings import settings
from .base import MeltResult, WalletBackend
from .mint_client import MintClient


class FakeMint:
    """In-memory state of one simulated mint."""

    def __init__(self, url: str):
        self.url = url
        self.keyset_id = settings.fakewallet_keyset_id
        self.input_fee_ppk = settings.fakewallet_input_fee_ppk
        self.offline = False
        self.melt_state = MeltQuoteState.paid
        self.mint_quotes: Dict[str, MintQuote] = {}
        self.melt_quotes: Dict[str, MeltQuote] = {}
        self.spent: Set[str] = set()
        self.pending: Set[str] = set()
        self.request_count = 0

    def contact(self) -> None:
        self.request_count += 1
        if self.offline:
            raise NetworkUnreachableError(f"{self.url}: [Errno 111] Connection refused")

    def new_proofs(self, amounts: List[int]) -> List[Proof]:
        return [
            Proof(
                id=self.keyset_id,
                amount=amount,
                secret=urandom(32).hex(),
                C="02" + urandom(32).hex(),
            )
            for amount in amounts
        ]

    def assert_unspent(self, proofs: List[Proof]) -> None:
        for p in proofs:
            if p.Y in self.spent or p.Y in self.pending:
                raise ProofsAlreadySpentError(
                    f"Mint Error: Token already spent. (Code: {ProofsAlreadySpentError.code})"
                )

    def state_of(self, Y: str) -> ProofState:
        if Y in self.spent:
            return ProofState.spent
        if Y in self.pending:
            return ProofState.pending
        return ProofState.unspent


class FakeMintClient(MintClient):
    """Answers raw mint requests from the `FakeMint` registered for the URL."""

    def __init__(
        self,
        url: str,
        timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ):
        super().__init__(url, timeout=timeout, connect_timeout=connect_timeout)
        self.fake_mint = FakeWallet.mint_for(self.url)

    async def get_info(self):
        self.fake_mint.contact()
        return {"name": "FakeMint", "version": "fake/0.0.0"}

    async def check_state(self, Ys: List[str]) -> List[ProofStateResult]:
        self.fake_mint.contact()
        return [ProofStateResult(Y=Y, state=self.fake_mint.state_of(Y)) for Y in Ys]


class FakeWallet(WalletBackend):
    """Wallet against a simulated mint, for development and tests.

    All FakeWallet instances pointing to the same URL share one `FakeMint`.
    """

    mints: Dict[str, FakeMint] = {}
    secret: str = "FAKEWALLET SECRET"
    privkey: str = hashlib.pbkdf2_hmac(
        "sha256",
        secret.encode(),
        b"FakeWallet",
        2048,
        32,
    ).hex()

    supported_units = {"sat", "msat"}
    mint_client_class = FakeMintClient

    @classmethod
    def mint_for(cls, url: str) -> FakeMint:
        url = url.rstrip("/")
        if url not in cls.mints:
            cls.mints[url] = FakeMint(url)
        return cls.mints[url]

    @classmethod
    def reset(cls) -> None:
        cls.mints.clear()

    @classmethod
    def create_invoice(cls, amount_msat: int, memo: str = "") -> str:
        tags = Tags()
        tags.add(
            TagChar.features,
            Features.from_feature_list(
                {Feature.payment_secret: FeatureState.supported}
            ),
        )
        tags.add(TagChar.description, memo)
        tags.add(TagChar.expire_time, settings.fakewallet_quote_expiry)
        payment_secret = urandom(32).hex()
        tags.add(TagChar.payment_secret, payment_secret)
        tags.add(
            TagChar.payment_hash, hashlib.sha256(payment_secret.encode()).hexdigest()
        )
        bolt11 = Bolt11(
            currency="bc",
            amount_msat=MilliSatoshi(amount_msat),
            date=int(datetime.now().timestamp()),
            tags=tags,
        )
        return encode(bolt11, cls.privkey)

    @classmethod
    def pay_quote(cls, url: str, quote_id: str) -> None:
        quote = cls.mint_for(url).mint_quotes[quote_id]
        if quote.state == MintQuoteState.unpaid:
            quote.state = MintQuoteState.paid

    @property
    def fake_mint(self) -> FakeMint:
        return self.mint_for(self.url)

    def _to_msat(self, amount: int) -> int:
        return amount * 1000 if self.unit == "sat" else amount

    def _from_msat(self, amount_msat: int) -> int:
        return math.ceil(amount_msat / 1000) if self.unit == "sat" else amount_msat

    async def load_mint(self) -> None:
        if self.unit not in self.supported_units:
            raise ProtocolError(f"Unit {self.unit} not supported by {self.url}")
        self.fake_mint.contact()

    async def request_mint_quote(self, amount: int) -> MintQuote:
        self.fake_mint.contact()
        quote = MintQuote(
            quote=random_hex(16),
            request=self.create_invoice(self._to_msat(amount)),
            amount=amount,
            unit=self.unit,
            state=MintQuoteState.unpaid,
            expiry=self.storage.clock() + settings.fakewallet_quote_expiry,
        )
        self.fake_mint.mint_quotes[quote.quote] = quote
        logger.trace(f"FakeWallet: mint quote {quote.quote} for {amount} {self.unit}")
        return quote.model_copy()

    async def check_mint_quote(self, quote_id: str) -> MintQuote:
        self.fake_mint.contact()
        quote = self.fake_mint.mint_quotes.get(quote_id)
        if not quote:
            raise ProtocolError("quote not found", code=20007)
        return quote.model_copy()

    async def mint(self, quote_id: str, amount: int) -> List[Proof]:
        self.fake_mint.contact()
        quote = self.fake_mint.mint_quotes.get(quote_id)
        if not quote:
            raise ProtocolError("quote not found", code=20007)
        if quote.state == MintQuoteState.issued:
            raise ProtocolError("quote already issued", code=20002)
        if quote.state != MintQuoteState.paid:
            raise ProtocolError("quote not paid", code=20001)
        quote.state = MintQuoteState.issued
        proofs = self.fake_mint.new_proofs(amount_split(amount))
        await self.storage.store_proofs(proofs, quote_id=quote_id)
        return proofs

    async def request_melt_quote(self, request: str) -> MeltQuote:
        self.fake_mint.contact()
        try:
            invoice = decode(request)
        except Exception as e:
            raise InvalidDestinationError(f"Invalid bolt11 invoice: {e}")
        if not invoice.amount_msat:
            raise InvalidDestinationError("Invoice has no amount")
        amount = self._from_msat(int(invoice.amount_msat))
        quote = MeltQuote(
            quote=random_hex(16),
            request=request,
            amount=amount,
            fee_reserve=max(2, math.ceil(amount * 0.01)),
            unit=self.unit,
            expiry=self.storage.clock() + settings.fakewallet_quote_expiry,
        )
        self.fake_mint.melt_quotes[quote.quote] = quote
        return quote.model_copy()

    async def melt(self, quote: MeltQuote, proofs: List[Proof]) -> MeltResult:
        self.fake_mint.contact()
        self.fake_mint.assert_unspent(proofs)
        fee = self.calculate_fee(proofs)
        if sum_proofs(proofs) < quote.amount + quote.fee_reserve + fee:
            raise ProtocolError("not enough inputs provided for melt", code=11005)
        secrets = [p.secret for p in proofs]
        state = self.fake_mint.melt_state
        if state == MeltQuoteState.pending:
            self.fake_mint.pending.update(p.Y for p in proofs)
            return MeltResult(state=state)
        if state == MeltQuoteState.unpaid:
            await self.storage.update_proofs_state(secrets, ProofState.unspent)
            return MeltResult(state=state, error_message="payment failed")

        self.fake_mint.spent.update(p.Y for p in proofs)
        change_amount = sum_proofs(proofs) - quote.amount - fee
        change = self.fake_mint.new_proofs(amount_split(change_amount))
        await self.storage.update_proofs_state(secrets, ProofState.spent)
        await self.storage.store_proofs(change)
        return MeltResult(state=state, preimage="0" * 64, fee_paid=fee, change=change)

    async def swap(self, proofs: List[Proof], amounts: List[int]) -> List[Proof]:
        self.fake_mint.contact()
        self.fake_mint.assert_unspent(proofs)
        fee = self.calculate_fee(proofs)
        if sum(amounts) != sum_proofs(proofs) - fee:
            raise ProtocolError(
                f"inputs ({sum_proofs(proofs)}) - fees ({fee}) vs outputs"
                f" ({sum(amounts)}) are not balanced.",
                code=11002,
            )
        self.fake_mint.spent.update(p.Y for p in proofs)
        new_proofs = self.fake_mint.new_proofs(amounts)
        await self.storage.update_proofs_state(
            [p.secret for p in proofs], ProofState.spent
        )
        await self.storage.store_proofs(new_proofs)
        return new_proofs

    async def check_proof_state(self, proofs: List[Proof]) -> List[ProofState]:
        self.fake_mint.contact()
        return [self.fake_mint.state_of(p.Y) for p in proofs]

    def calculate_fee(self, proofs: List[Proof]) -> int:
        return (len(proofs) * self.fake_mint.input_fee_ppk + 999) // 1000

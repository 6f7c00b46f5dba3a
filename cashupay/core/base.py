import json
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .crypto import secret_to_y
from .errors import InvalidTransitionError


class ProofState(Enum):
    unspent = "UNSPENT"
    pending = "PENDING"
    spent = "SPENT"

    def __str__(self):
        return self.name


class Proof(BaseModel):
    """
    Value token
    """

    id: str = ""  # keyset id
    amount: int = 0
    secret: str = ""
    C: str = ""  # signature on secret, unblinded by wallet
    state: ProofState = ProofState.unspent
    quote_id: Optional[str] = None  # mint quote this proof was issued for
    created_at: Optional[int] = None

    @property
    def Y(self) -> str:
        return secret_to_y(self.secret)

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        return cls(
            id=row["id"],
            amount=row["amount"],
            secret=row["secret"],
            C=row["c"],
            state=ProofState(row["state"]),
            quote_id=row["quote_id"],
            created_at=row["created_at"],
        )

    def to_dict(self):
        return dict(id=self.id, amount=self.amount, secret=self.secret, C=self.C)


class ProofStateResult(BaseModel):
    Y: str
    state: ProofState
    witness: Optional[str] = None


class MintQuoteState(Enum):
    unpaid = "UNPAID"
    paid = "PAID"
    pending = "PENDING"
    issued = "ISSUED"

    def __str__(self):
        return self.name


class MintQuote(BaseModel):
    quote: str
    request: str
    amount: int
    unit: str
    state: MintQuoteState = MintQuoteState.unpaid
    expiry: Optional[int] = None

    @property
    def paid(self) -> bool:
        return self.state == MintQuoteState.paid

    @property
    def issued(self) -> bool:
        return self.state == MintQuoteState.issued


class MeltQuoteState(Enum):
    unpaid = "UNPAID"
    pending = "PENDING"
    paid = "PAID"

    def __str__(self):
        return self.name


class MeltQuote(BaseModel):
    quote: str
    request: str
    amount: int
    fee_reserve: int
    unit: str
    state: MeltQuoteState = MeltQuoteState.unpaid
    expiry: Optional[int] = None
    payment_preimage: Optional[str] = None


class InvoiceStatus(Enum):
    new = "New"
    processing = "Processing"
    settled = "Settled"
    expired = "Expired"
    invalid = "Invalid"

    def __str__(self):
        return self.value

    @property
    def terminal(self) -> bool:
        return self in (InvoiceStatus.settled, InvoiceStatus.expired, InvoiceStatus.invalid)

    def can_transition_to(self, other: "InvoiceStatus") -> bool:
        return other in INVOICE_TRANSITIONS[self]


INVOICE_TRANSITIONS: Dict[InvoiceStatus, List[InvoiceStatus]] = {
    InvoiceStatus.new: [
        InvoiceStatus.processing,
        InvoiceStatus.expired,
        InvoiceStatus.settled,
    ],
    InvoiceStatus.processing: [InvoiceStatus.settled],
    InvoiceStatus.settled: [],
    InvoiceStatus.expired: [],
    InvoiceStatus.invalid: [],
}


class Invoice(BaseModel):
    id: str
    store_id: str
    status: InvoiceStatus = InvoiceStatus.new
    additional_status: str = "None"
    amount: str
    currency: str
    amount_sats: int  # amount in the mint unit
    unit: str = "sat"
    exchange_rate: Optional[float] = None
    quote_id: Optional[str] = None
    mint_url: Optional[str] = None
    bolt11: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    checkout_config: Dict[str, Any] = Field(default_factory=dict)
    created_at: int
    expiration_time: int
    processing_at: Optional[int] = None
    last_polled_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        return cls(
            id=row["id"],
            store_id=row["store_id"],
            status=InvoiceStatus(row["status"]),
            additional_status=row["additional_status"] or "None",
            amount=row["amount"],
            currency=row["currency"],
            amount_sats=row["amount_sats"],
            unit=row["unit"],
            exchange_rate=row["exchange_rate"],
            quote_id=row["quote_id"],
            mint_url=row["mint_url"],
            bolt11=row["bolt11"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            checkout_config=(
                json.loads(row["checkout_config"]) if row["checkout_config"] else {}
            ),
            created_at=row["created_at"],
            expiration_time=row["expiration_time"],
            processing_at=row["processing_at"],
            last_polled_at=row["last_polled_at"],
        )

    def __setattr__(self, name, value):
        if name == "status" and value != self.status:
            if not self.status.can_transition_to(value):
                raise InvalidTransitionError(
                    f"Cannot change status of invoice {self.id} from {self.status} to {value}."
                )
        super().__setattr__(name, value)


class StoreMint(BaseModel):
    id: Optional[int] = None
    store_id: str
    mint_url: str
    unit: str = "sat"
    priority: int = 100
    enabled: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        return cls(
            id=row["id"],
            store_id=row["store_id"],
            mint_url=row["mint_url"],
            unit=row["unit"],
            priority=row["priority"],
            enabled=bool(row["enabled"]),
        )


class Store(BaseModel):
    id: str
    name: str
    mint_url: Optional[str] = None
    mint_unit: str = "sat"
    seed_phrase: Optional[str] = None
    exchange_fee_percent: float = 0.0
    auto_melt_enabled: bool = False
    auto_melt_address: Optional[str] = None
    auto_melt_threshold: int = 2000
    api_key: Optional[str] = None
    created_at: Optional[int] = None
    backup_mints: List[StoreMint] = Field(default_factory=list)

    @property
    def configured(self) -> bool:
        return bool(self.mint_url and self.seed_phrase)

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        return cls(
            id=row["id"],
            name=row["name"],
            mint_url=row["mint_url"],
            mint_unit=row["mint_unit"] or "sat",
            seed_phrase=row["seed_phrase"],
            exchange_fee_percent=row["exchange_fee_percent"] or 0.0,
            auto_melt_enabled=bool(row["auto_melt_enabled"]),
            auto_melt_address=row["auto_melt_address"],
            auto_melt_threshold=row["auto_melt_threshold"],
            api_key=row["api_key"],
            created_at=row["created_at"],
        )


class WebhookEventType(Enum):
    invoice_created = "InvoiceCreated"
    invoice_received_payment = "InvoiceReceivedPayment"
    invoice_processing = "InvoiceProcessing"
    invoice_settled = "InvoiceSettled"
    invoice_expired = "InvoiceExpired"
    invoice_invalid = "InvoiceInvalid"

    def __str__(self):
        return self.value

    @property
    def includes_metadata(self) -> bool:
        return self in (
            WebhookEventType.invoice_created,
            WebhookEventType.invoice_received_payment,
            WebhookEventType.invoice_settled,
        )


class Webhook(BaseModel):
    id: str
    store_id: str
    url: str
    secret: str
    events: List[str] = Field(default_factory=list)  # empty: all events
    enabled: bool = True

    def subscribed_to(self, event: WebhookEventType) -> bool:
        return not self.events or event.value in self.events

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        return cls(
            id=row["id"],
            store_id=row["store_id"],
            url=row["url"],
            secret=row["secret"],
            events=json.loads(row["events"]) if row["events"] else [],
            enabled=bool(row["enabled"]),
        )


class WebhookDelivery(BaseModel):
    id: str
    webhook_id: str
    invoice_id: Optional[str] = None
    event_type: str
    payload: str
    status_code: Optional[int] = None
    response: Optional[str] = None
    created_at: int

    @property
    def success(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        return cls(**{k: row[k] for k in cls.model_fields})

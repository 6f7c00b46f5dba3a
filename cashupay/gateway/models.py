from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..core.base import Invoice


class CreateInvoiceRequest(BaseModel):
    amount: Union[str, int, float]
    currency: str = "sat"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    checkout: Dict[str, Any] = Field(default_factory=dict)


class CronResponse(BaseModel):
    timestamp: int
    tasks: Dict[str, str]


class PendingProofsCheck(BaseModel):
    checked: int = 0
    spent: int = 0
    recovered: int = 0
    error: Optional[str] = None


class PollResult(BaseModel):
    checked: int = 0
    settled: int = 0
    errors: int = 0


class ExportResult(BaseModel):
    status: str  # ok, change_needed or retry
    token: Optional[str] = None
    amount: int = 0
    secrets: List[str] = []
    mint_used: bool = False
    offline_export: bool = False
    mint_unreachable: bool = False
    donated: int = 0
    requested: Optional[int] = None
    available: Optional[int] = None
    sync: bool = False
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class ExportInfo(BaseModel):
    balance: int
    fee: int
    max_export: int
    max_export_with_donation: int
    donation_percent: float
    mint_unreachable: bool = False


class MeltResponse(BaseModel):
    amount: int
    fee_paid: int
    preimage: Optional[str] = None
    donated: int = 0


class AutoMeltResult(BaseModel):
    store_id: str
    amount: int = 0  # sats paid out
    amount_mint_unit: int = 0
    donated: int = 0
    success: bool = False
    error: Optional[str] = None


def format_invoice_for_api(invoice: Invoice, base_url: str = "") -> Dict[str, Any]:
    """BTCPay Greenfield shaped representation of an invoice."""
    checkout_link = f"{base_url.rstrip('/')}/i/{invoice.id}"
    payment_link = f"lightning:{invoice.bolt11}" if invoice.bolt11 else None
    return {
        "id": invoice.id,
        "storeId": invoice.store_id,
        "amount": invoice.amount,
        "currency": invoice.currency,
        "type": "Standard",
        "checkoutLink": checkout_link,
        "status": invoice.status.value,
        "additionalStatus": invoice.additional_status,
        "createdTime": invoice.created_at,
        "expirationTime": invoice.expiration_time,
        "monitoringExpiration": invoice.expiration_time,
        "archived": False,
        "metadata": invoice.metadata,
        "checkout": {
            "paymentMethods": {
                "BTC-LightningNetwork": {
                    "paymentLink": payment_link,
                    "destination": invoice.bolt11,
                }
            },
            "redirectURL": invoice.checkout_config.get("redirectURL"),
        },
        "amountInMintUnit": invoice.amount_sats,
        "mintUnit": invoice.unit,
        "exchangeRate": invoice.exchange_rate,
    }

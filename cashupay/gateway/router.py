import hmac
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from loguru import logger

from ..core.base import InvoiceStatus, Store
from ..core.errors import ValidationError
from .gateway import Gateway
from .models import CreateInvoiceRequest, CronResponse
from .startup import get_gateway
from .tasks import EXTERNAL, INTERNAL

router: APIRouter = APIRouter()


async def authorized_store(
    store_id: str,
    authorization: Optional[str] = Header(default=None),
    gateway: Gateway = Depends(get_gateway),
) -> Store:
    """Store of the request, authorized with `Authorization: token <api key>`."""
    scheme, _, api_key = (authorization or "").partition(" ")
    store = await gateway.get_store(store_id)
    if (
        scheme.lower() != "token"
        or not store.api_key
        or not hmac.compare_digest(store.api_key.encode(), api_key.strip().encode())
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return store


@router.api_route(
    "/cron",
    methods=["GET", "POST"],
    name="Run background tasks",
    summary="Poll quotes, recover invoices and clean up",
    response_model=CronResponse,
)
async def cron(
    key: str = Query(default=""),
    internal: Optional[str] = Query(default=None),
    gateway: Gateway = Depends(get_gateway),
) -> CronResponse:
    logger.trace("> GET /cron")
    if internal == "1":
        if not await gateway.verify_internal_key(key):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid internal key")
        trigger = INTERNAL
    else:
        if not await gateway.verify_cron_key(key):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid cron key")
        trigger = EXTERNAL
    response = await gateway.run_background_tasks(trigger)
    logger.trace(f"< GET /cron: {response}")
    return response


@router.post(
    "/api/v1/stores/{store_id}/invoices",
    name="Create invoice",
    summary="Create a new invoice payable over Lightning",
)
async def create_invoice(
    payload: CreateInvoiceRequest,
    store: Store = Depends(authorized_store),
    gateway: Gateway = Depends(get_gateway),
) -> Dict[str, Any]:
    logger.trace(f"> POST /api/v1/stores/{store.id}/invoices: {payload}")
    invoice = await gateway.create(
        store.id,
        payload.amount,
        currency=payload.currency,
        metadata=payload.metadata,
        checkout=payload.checkout,
    )
    return gateway.format_for_api(invoice)


@router.get(
    "/api/v1/stores/{store_id}/invoices",
    name="List invoices",
    summary="Invoices of a store, newest first",
)
async def get_invoices(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=50, ge=1, le=500),
    store: Store = Depends(authorized_store),
    gateway: Gateway = Depends(get_gateway),
) -> List[Dict[str, Any]]:
    logger.trace(f"> GET /api/v1/stores/{store.id}/invoices")
    invoice_status = None
    if status_filter:
        try:
            invoice_status = InvoiceStatus(status_filter)
        except ValueError:
            raise ValidationError(f"Unknown invoice status {status_filter}")
    invoices = await gateway.get_invoices(
        store.id, status=invoice_status, limit=take, offset=skip
    )
    return [gateway.format_for_api(invoice) for invoice in invoices]


@router.get(
    "/api/v1/stores/{store_id}/invoices/{invoice_id}",
    name="Get invoice",
    summary="Current state of an invoice, checks the mint for payment",
)
async def get_invoice(
    invoice_id: str,
    store: Store = Depends(authorized_store),
    gateway: Gateway = Depends(get_gateway),
) -> Dict[str, Any]:
    logger.trace(f"> GET /api/v1/stores/{store.id}/invoices/{invoice_id}")
    invoice = await gateway.get_invoice(invoice_id)
    if not invoice or invoice.store_id != store.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    invoice = await gateway.poll_single_quote(invoice_id) or invoice
    await gateway.trigger_background_tasks()
    return gateway.format_for_api(invoice)

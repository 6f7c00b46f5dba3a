from typing import List, Union

from cashupay.core.base import Proof, Store
from cashupay.core.errors import CashuPayError
from cashupay.gateway.gateway import Gateway
from cashupay.wallet.fake import FakeWallet
from tests.conftest import MINT_URL


async def assert_err(f, msg: Union[str, CashuPayError]):
    """Compute f() and expect an error message 'msg'."""
    try:
        await f
    except Exception as exc:
        error_message: str = str(exc.args[0])
        if isinstance(msg, CashuPayError):
            if msg.detail not in error_message:
                raise Exception(
                    f"CashuPayError. Expected error: {msg.detail}, got: {error_message}"
                )
            return
        if msg not in error_message:
            raise Exception(f"Expected error: {msg}, got: {error_message}")
        return
    raise Exception(f"Expected error: {msg}, got no error")


async def fund_store(
    gateway: Gateway, store: Store, amounts: List[int], mint_url: str = MINT_URL
) -> List[Proof]:
    """Puts freshly issued proofs of `amounts` into the store's wallet."""
    proofs = FakeWallet.mint_for(mint_url).new_proofs(amounts)
    await gateway.get_storage(store, mint_url).store_proofs(proofs)
    return proofs


async def pay_and_poll(gateway: Gateway, invoice_id: str) -> None:
    """Marks the invoice's quote as paid at the fake mint and lets the poller find it."""
    invoice = await gateway.get_invoice(invoice_id)
    assert invoice and invoice.quote_id and invoice.mint_url
    FakeWallet.pay_quote(invoice.mint_url, invoice.quote_id)
    await gateway.poll_pending_quotes()

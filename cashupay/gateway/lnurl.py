import re
from typing import Any, Dict, Optional

import bech32
import httpx
from loguru import logger

from ..core.errors import InvalidDestinationError, NetworkUnreachableError
from ..core.settings import settings

LIGHTNING_ADDRESS = re.compile(r"^[a-z0-9._+-]+@[a-z0-9.-]+\.[a-z]{2,}$", re.IGNORECASE)
BOLT11 = re.compile(r"^ln(bc|tb|tbs|bcrt)[0-9]", re.IGNORECASE)


async def get_lnurl_response(url: str) -> Dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=settings.mint_timeout) as client:
            r = await client.get(url, follow_redirects=True)
            r.raise_for_status()
            return r.json()
    except httpx.HTTPStatusError as e:
        raise InvalidDestinationError(f"LNURL endpoint returned {e.response.status_code}")
    except httpx.HTTPError as e:
        raise NetworkUnreachableError(f"{url}: {e}")
    except ValueError:
        raise InvalidDestinationError(f"Invalid JSON from LNURL endpoint {url}")


def decode_lnurl(lnurl: str) -> Optional[str]:
    hrp, data = bech32.bech32_decode(lnurl.lower())
    if not hrp or hrp != "lnurl":
        return None
    if data is None:
        return None
    decoded_data = bech32.convertbits(data, 5, 8, False)
    if decoded_data is None:
        return None
    return bytes(decoded_data).decode("utf-8")


def is_lightning_address(address: str) -> bool:
    return bool(LIGHTNING_ADDRESS.match(address.strip()))


def is_bolt11(request: str) -> bool:
    return bool(BOLT11.match(request.strip()))


def resolve_lightning_address(address: str) -> Optional[str]:
    if not is_lightning_address(address):
        return None
    user, domain = address.strip().split("@")
    return f"https://{domain}/.well-known/lnurlp/{user}"


async def handle_lnurl(
    lnurl: str, amount: int, comment: Optional[str] = None
) -> str:
    """
    Resolves LNURL or Lightning Address to a bolt11 invoice for `amount` sats.
    """
    url = None
    if lnurl.lower().startswith("lnurl"):
        url = decode_lnurl(lnurl)
    elif "@" in lnurl:
        url = resolve_lightning_address(lnurl)
    if not url:
        raise InvalidDestinationError(f"Invalid Lightning address or LNURL: {lnurl}")

    data = await get_lnurl_response(url)
    if data.get("tag") != "payRequest":
        raise InvalidDestinationError("Invalid LNURL tag. Only payRequest is supported.")

    min_sendable = data.get("minSendable")
    max_sendable = data.get("maxSendable")
    callback = data.get("callback")
    if not min_sendable or not max_sendable or not callback:
        raise InvalidDestinationError("Invalid LNURL response.")

    amount_msat = amount * 1000
    if amount_msat < min_sendable or amount_msat > max_sendable:
        raise InvalidDestinationError(
            f"Amount {amount} sats is out of range"
            f" [{int(min_sendable / 1000)}, {int(max_sendable / 1000)}] sats."
        )

    params: Dict[str, Any] = {"amount": amount_msat}
    if comment and data.get("commentAllowed"):
        params["comment"] = comment[: int(data["commentAllowed"])]
    separator = "&" if "?" in callback else "?"
    callback_url = f"{callback}{separator}{httpx.QueryParams(params)}"

    invoice_data = await get_lnurl_response(callback_url)
    if invoice_data.get("status") == "ERROR":
        raise InvalidDestinationError(
            f"Error from LNURL service: {invoice_data.get('reason')}"
        )
    pr = invoice_data.get("pr")
    if not pr:
        raise InvalidDestinationError("No payment request in LNURL response.")
    logger.trace(f"Got invoice for {amount} sats from {url}")
    return pr

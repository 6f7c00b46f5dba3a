import json
from typing import Any, Dict, List, Optional

import httpx
from httpx import Response
from loguru import logger

from ..core.base import ProofStateResult
from ..core.errors import (
    MintTimeoutError,
    NetworkUnreachableError,
    ProofsAlreadySpentError,
    ProtocolError,
)
from ..core.settings import settings

PROTOCOL_ERRORS = {ProofsAlreadySpentError.code: ProofsAlreadySpentError}


def raise_on_error_request(resp: Response) -> None:
    """Raises a typed error if the response from the mint contains an error.

    A structured `{"detail", "code"}` body becomes a `ProtocolError` (or the
    subclass registered for its code). A 5xx without a body means the mint is
    not really there, a 4xx without a body is still a rejection.
    """
    try:
        resp_dict = resp.json()
    except json.JSONDecodeError:
        resp_dict = None
    if isinstance(resp_dict, dict) and "detail" in resp_dict:
        logger.trace(f"Error from mint: {resp_dict}")
        code = resp_dict.get("code") or ProtocolError.code
        error_cls = PROTOCOL_ERRORS.get(code, ProtocolError)
        raise error_cls(f"Mint Error: {resp_dict['detail']} (Code: {code})", code=code)
    if resp.status_code >= 500:
        raise NetworkUnreachableError(
            f"Mint returned {resp.status_code} for {resp.request.url}"
        )
    if resp.status_code >= 400:
        raise ProtocolError(f"Mint returned {resp.status_code} for {resp.request.url}")


class MintClient:
    """Raw HTTP access to the few mint endpoints the wallet library does not expose."""

    def __init__(
        self,
        url: str,
        timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ):
        self.url = url.rstrip("/")
        self.timeout = httpx.Timeout(
            timeout or settings.mint_timeout,
            connect=connect_timeout or settings.mint_connect_timeout,
        )

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.url,
                timeout=self.timeout,
                headers={"Client-version": settings.version},
            ) as client:
                resp = await client.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            raise MintTimeoutError(f"{self.url}{path}: {e.__class__.__name__}")
        except httpx.TransportError as e:
            raise NetworkUnreachableError(f"{self.url}{path}: {e}")
        raise_on_error_request(resp)
        try:
            return resp.json()
        except json.JSONDecodeError:
            raise ProtocolError(f"Invalid JSON from mint {self.url}{path}")

    async def get_info(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/info")

    async def check_state(self, Ys: List[str]) -> List[ProofStateResult]:
        """Asks the mint for the state of the proofs identified by `Ys`."""
        if not Ys:
            return []
        resp = await self._request("POST", "/v1/checkstate", {"Ys": Ys})
        states = resp.get("states") if isinstance(resp, dict) else None
        if states is None or len(states) != len(Ys):
            raise ProtocolError(f"Invalid checkstate response from {self.url}")
        # older mints omit Y, the answer is positional then
        return [
            ProofStateResult(
                Y=s.get("Y") or Y, state=s["state"], witness=s.get("witness")
            )
            for s, Y in zip(states, Ys)
        ]

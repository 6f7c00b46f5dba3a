import base64
import json
from itertools import groupby
from typing import Any, Dict, List, Optional

import cbor2

from ..core.base import Proof
from ..core.helpers import is_hex_keyset_id


def serialize_token_v3(
    proofs: List[Proof], mint_url: str, unit: str, memo: Optional[str] = None
) -> str:
    """
    Serializes proofs as "cashuA<json_urlsafe_base64>".
    """
    token: Dict[str, Any] = dict(
        token=[dict(mint=mint_url, proofs=[p.to_dict() for p in proofs])]
    )
    if memo:
        token["memo"] = memo
    token["unit"] = unit
    serialized = base64.urlsafe_b64encode(
        json.dumps(token, separators=(",", ":")).encode()
    ).decode()
    return "cashuA" + serialized.rstrip("=")


def serialize_token_v4(
    proofs: List[Proof], mint_url: str, unit: str, memo: Optional[str] = None
) -> str:
    """
    Serializes proofs as "cashuB<cbor_urlsafe_base64>". Keyset ids must be hex.
    """
    by_keyset = groupby(sorted(proofs, key=lambda p: p.id), key=lambda p: p.id)
    token: Dict[str, Any] = dict(
        t=[
            dict(
                i=bytes.fromhex(keyset_id),
                p=[
                    dict(a=p.amount, s=p.secret, c=bytes.fromhex(p.C))
                    for p in keyset_proofs
                ],
            )
            for keyset_id, keyset_proofs in by_keyset
        ]
    )
    if memo:
        token["d"] = memo
    token["m"] = mint_url
    token["u"] = unit
    serialized = base64.urlsafe_b64encode(cbor2.dumps(token)).decode()
    return "cashuB" + serialized.rstrip("=")


def serialize_proofs(
    proofs: List[Proof], mint_url: str, unit: str, memo: Optional[str] = None
) -> str:
    # legacy base64 keyset ids cannot be encoded as bytes in a v4 token
    if all(is_hex_keyset_id(p.id) for p in proofs):
        return serialize_token_v4(proofs, mint_url, unit, memo)
    return serialize_token_v3(proofs, mint_url, unit, memo)


def deserialize_token(token: str) -> Dict[str, Any]:
    """Decodes a cashuA or cashuB token into {mint, unit, proofs}."""
    prefix, payload = token[:6], token[6:]
    payload += "=" * (-len(payload) % 4)
    if prefix == "cashuA":
        data = json.loads(base64.urlsafe_b64decode(payload))
        return dict(
            mint=data["token"][0]["mint"],
            unit=data.get("unit") or "sat",
            proofs=[Proof(**p) for t in data["token"] for p in t["proofs"]],
        )
    if prefix == "cashuB":
        data = cbor2.loads(base64.urlsafe_b64decode(payload))
        return dict(
            mint=data["m"],
            unit=data["u"],
            proofs=[
                Proof(id=t["i"].hex(), amount=p["a"], secret=p["s"], C=p["c"].hex())
                for t in data["t"]
                for p in t["p"]
            ],
        )
    raise ValueError(f"Token prefix not valid: {prefix}")

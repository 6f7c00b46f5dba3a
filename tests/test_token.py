import pytest

from cashupay.core.base import Proof
from cashupay.wallet.token import (
    deserialize_token,
    serialize_proofs,
    serialize_token_v3,
)

MINT = "http://fakemint.test"
C = "02" + "ab" * 32


def test_serialize_hex_keysets_as_v4():
    proofs = [
        Proof(id="009a1f293253e41e", amount=2, secret="a", C=C),
        Proof(id="009a1f293253e41e", amount=8, secret="b", C=C),
        Proof(id="00ad268c4d1f5826", amount=1, secret="c", C=C),
    ]
    token = serialize_proofs(proofs, MINT, "sat", memo="thanks")
    assert token.startswith("cashuB")
    assert "=" not in token

    decoded = deserialize_token(token)
    assert decoded["mint"] == MINT
    assert decoded["unit"] == "sat"
    assert sorted(p.secret for p in decoded["proofs"]) == ["a", "b", "c"]
    assert sum(p.amount for p in decoded["proofs"]) == 11
    assert {p.id for p in decoded["proofs"]} == {"009a1f293253e41e", "00ad268c4d1f5826"}
    assert all(p.C == C for p in decoded["proofs"])


def test_serialize_legacy_keysets_as_v3():
    proofs = [
        Proof(id="I2yN+iRYfkzT", amount=4, secret="a", C=C),
        Proof(id="009a1f293253e41e", amount=1, secret="b", C=C),
    ]
    token = serialize_proofs(proofs, MINT, "usd")
    assert token.startswith("cashuA")

    decoded = deserialize_token(token)
    assert decoded["mint"] == MINT
    assert decoded["unit"] == "usd"
    assert [p.id for p in decoded["proofs"]] == ["I2yN+iRYfkzT", "009a1f293253e41e"]


def test_v3_token_carries_memo():
    proofs = [Proof(id="I2yN+iRYfkzT", amount=4, secret="a", C=C)]
    token = serialize_token_v3(proofs, MINT, "sat", memo="hello")
    assert deserialize_token(token)["proofs"][0].amount == 4


def test_deserialize_invalid_prefix():
    with pytest.raises(ValueError, match="prefix"):
        deserialize_token("cashuXabc")

import hashlib

from coincurve import PublicKey

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"


def hash_to_curve(message: bytes) -> PublicKey:
    """Generates a secp256k1 point from a message.

    The point is generated by hashing the message with a domain separator and
    then iteratively trying to compute a point from the hash. An increasing
    uint32 counter (byte order little endian) is appended to the hash until a
    point is found that lies on the secp256k1 curve.

    The chance of finding a valid point is 50% for every iteration. The
    maximum number of iterations is 2**16.
    """
    msg_to_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    counter = 0
    while counter < 2**16:
        _hash = hashlib.sha256(msg_to_hash + counter.to_bytes(4, "little")).digest()
        try:
            # will error if point does not lie on curve
            return PublicKey(b"\x02" + _hash)
        except ValueError:
            counter += 1
    # it is very unlikely that we reach this point
    raise ValueError("No valid point found")


def secret_to_y(secret: str) -> str:
    """Hex encoded compressed point the mint indexes a proof by."""
    return hash_to_curve(secret.encode("utf-8")).format(compressed=True).hex()

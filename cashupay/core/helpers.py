import math
import secrets
import time
from typing import Dict, List, Optional, Tuple, Union

from loguru import logger

from .base import Proof


class Clock:
    """Wall clock in unix seconds. Replaced by a fake clock in tests."""

    def __call__(self) -> int:
        return int(time.time())


def sum_proofs(proofs: List[Proof]) -> int:
    return sum([p.amount for p in proofs])


def amount_summary(proofs: List[Proof]) -> str:
    amounts_we_have = [
        (amount, len([p for p in proofs if p.amount == amount]))
        for amount in sorted(set([p.amount for p in proofs]))
    ]
    return ", ".join([f"{amount}: {count}" for amount, count in amounts_we_have])


def amount_split(amount: int) -> List[int]:
    """Canonical power-of-two denominations of an amount, smallest first.

    13 becomes [1, 4, 8].
    """
    bits_amt = bin(amount)[::-1][:-2]
    return [2**i for i, bit in enumerate(bits_amt) if bit == "1"]


def select_proofs(proofs: List[Proof], amount: Union[int, float]) -> List[Proof]:
    """Greedy coin selection.

    Takes the largest proof not exceeding the remaining amount and recurses on
    the rest. If that falls short, the smallest single proof bigger than the
    amount is returned instead. An empty list means the proofs cannot cover
    the amount.
    """
    if sum_proofs(proofs) < amount:
        return []

    sorted_proofs = sorted(proofs, key=lambda p: p.amount)
    next_bigger = next((p for p in sorted_proofs if p.amount > amount), None)
    smaller_proofs = sorted(
        [p for p in sorted_proofs if p.amount <= amount],
        key=lambda p: p.amount,
        reverse=True,
    )

    if not smaller_proofs:
        return [next_bigger] if next_bigger else []

    selected = [smaller_proofs[0]]
    remainder = amount - smaller_proofs[0].amount
    if remainder > 0:
        selected += select_proofs(smaller_proofs[1:], remainder)

    if sum_proofs(selected) < amount and next_bigger:
        logger.trace("select_proofs: falling back to next bigger proof")
        return [next_bigger]

    logger.trace(
        f"select_proofs: {amount_summary(selected)} (sum: {sum_proofs(selected)})"
        f" for {amount}"
    )
    return selected


def select_exact_proofs(
    proofs: List[Proof], amount: int, max_sums: int = 20_000
) -> Optional[List[Proof]]:
    """Proofs adding up to exactly `amount`, or None.

    Covers what greedy selection misses, e.g. 6 out of [5, 3, 3]. The search
    keeps one way to reach each partial sum and gives up after `max_sums`
    distinct sums.
    """
    if amount <= 0 or sum_proofs(proofs) < amount:
        return None
    candidates = sorted(
        (p for p in proofs if p.amount <= amount), key=lambda p: p.amount, reverse=True
    )
    # partial sum -> (previous partial sum, index of the proof added)
    reached: Dict[int, Tuple[int, int]] = {0: (0, -1)}
    for i, proof in enumerate(candidates):
        for total in list(reached):
            new_total = total + proof.amount
            if new_total > amount or new_total in reached:
                continue
            reached[new_total] = (total, i)
            if new_total == amount:
                selected = []
                while new_total:
                    new_total, index = reached[new_total]
                    selected.append(candidates[index])
                return selected
            if len(reached) >= max_sums:
                logger.trace(f"select_exact_proofs: gave up on {amount}")
                return None
    return None


def calculate_donation(amount: int, percent: float) -> int:
    """Donation for an amount: at least 1, at most 10% of the amount."""
    if percent <= 0 or amount <= 0:
        return 0
    donation = max(1, math.floor(amount * percent / 100))
    return min(donation, math.floor(amount * 0.10))


def calculate_max_withdrawal(balance: int, percent: float) -> int:
    if percent <= 0:
        return balance
    return math.floor(balance / (1 + percent / 100))


def fee_buffer(amount: int, percent: float, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, math.ceil(amount * percent / 100)))


def random_hex(n_bytes: int = 12) -> str:
    return secrets.token_hex(n_bytes)


def generate_invoice_id() -> str:
    return f"inv_{random_hex(12)}"


def is_hex_keyset_id(keyset_id: Optional[str]) -> bool:
    if not keyset_id:
        return False
    try:
        bytes.fromhex(keyset_id)
        return True
    except ValueError:
        return False

import math
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from loguru import logger

from ..core.errors import CashuPayError, UnsupportedCurrencyError

Number = Union[int, float, Decimal, str]

# value of one unit in millisatoshi
MSAT_PER_UNIT = {
    "msat": Decimal(1),
    "sat": Decimal(1000),
    "btc": Decimal(100_000_000_000),
}


class RateProvider(ABC):
    @abstractmethod
    async def to_mint_unit(
        self, amount: Number, currency: str, unit: str
    ) -> Tuple[int, Optional[float]]:
        """Converts an amount in `currency` to the mint's `unit`.

        Returns the converted amount (rounded up) and the exchange rate used,
        or None when the conversion did not need a market price.
        """

    @abstractmethod
    async def to_sats(self, amount: int, unit: str) -> int:
        pass


class BitcoinUnitRates(RateProvider):
    """Converts between bitcoin denominations. Fiat is not supported."""

    async def to_mint_unit(
        self, amount: Number, currency: str, unit: str
    ) -> Tuple[int, Optional[float]]:
        currency, unit = currency.lower(), unit.lower()
        if currency not in MSAT_PER_UNIT or unit not in MSAT_PER_UNIT:
            raise UnsupportedCurrencyError(
                f"Cannot convert {currency.upper()} to {unit} without a price provider"
            )
        msat = Decimal(str(amount)) * MSAT_PER_UNIT[currency]
        return math.ceil(msat / MSAT_PER_UNIT[unit]), None

    async def to_sats(self, amount: int, unit: str) -> int:
        converted, _ = await self.to_mint_unit(amount, unit, "sat")
        return converted


class FallbackRates(RateProvider):
    """Asks each provider in turn until one answers."""

    def __init__(self, providers: List[RateProvider]):
        if not providers:
            raise ValueError("No rate providers given")
        self.providers = providers

    async def to_mint_unit(
        self, amount: Number, currency: str, unit: str
    ) -> Tuple[int, Optional[float]]:
        last_error: Optional[Exception] = None
        for provider in self.providers:
            try:
                return await provider.to_mint_unit(amount, currency, unit)
            except (CashuPayError, OSError) as e:
                logger.warning(f"Rate provider {provider.__class__.__name__} failed: {e}")
                last_error = e
        assert last_error
        raise last_error

    async def to_sats(self, amount: int, unit: str) -> int:
        last_error: Optional[Exception] = None
        for provider in self.providers:
            try:
                return await provider.to_sats(amount, unit)
            except (CashuPayError, OSError) as e:
                logger.warning(f"Rate provider {provider.__class__.__name__} failed: {e}")
                last_error = e
        assert last_error
        raise last_error

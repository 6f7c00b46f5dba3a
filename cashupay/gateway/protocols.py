from typing import Callable, Protocol

from ..core.db import Database
from ..wallet.mint_client import MintClient
from .crud import GatewayCrud
from .donation import DonationSink
from .rates import RateProvider
from .wallets import WalletRegistry
from .webhooks import WebhookSender


class SupportsDb(Protocol):
    db: Database
    crud: GatewayCrud


class SupportsClock(Protocol):
    clock: Callable[[], int]


class SupportsWallets(Protocol):
    wallets: WalletRegistry
    mint_client: Callable[[str], MintClient]


class SupportsWebhooks(Protocol):
    webhooks: WebhookSender


class SupportsRates(Protocol):
    rates: RateProvider


class SupportsDonations(Protocol):
    donation_sink: DonationSink

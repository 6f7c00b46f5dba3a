from .base import WalletBackend
from .fake import FakeWallet

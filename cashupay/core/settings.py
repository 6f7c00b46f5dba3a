import os
import sys
from pathlib import Path
from typing import Optional

from environs import Env  # type: ignore
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

env = Env()

VERSION = "0.1.0"


def find_env_file():
    # env file: default to current dir, else home dir
    env_file = os.path.join(os.getcwd(), ".env")
    if not os.path.isfile(env_file):
        env_file = os.path.join(str(Path.home()), ".cashupay", ".env")
    if os.path.isfile(env_file):
        env.read_env(env_file, recurse=False, override=True)
    else:
        env_file = ""
    return env_file


class CashuPaySettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=find_env_file() or None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=False,
    )

    env_file: Optional[str] = Field(default=None)
    version: str = Field(default=VERSION)


class EnvSettings(CashuPaySettings):
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)
    log_rotation: str = Field(default="10 MB")
    cashupay_dir: str = Field(default=os.path.join(str(Path.home()), ".cashupay"))
    db_connection_pool: bool = Field(default=True)
    db_lock_timeout: float = Field(default=5.0)


class GatewaySettings(CashuPaySettings):
    gateway_listen_host: str = Field(default="127.0.0.1")
    gateway_listen_port: int = Field(default=3340)
    gateway_url: str = Field(default="http://127.0.0.1:3340")

    gateway_database: str = Field(default="data/cashupay")
    gateway_test_database: str = Field(default="test_data/test_cashupay")
    gateway_wallet_backend: str = Field(default="FakeWallet")

    cron_key: Optional[str] = Field(default=None)


class InvoiceSettings(CashuPaySettings):
    invoice_expiration: int = Field(default=900, gt=0)
    invoice_poll_min_interval: int = Field(default=30, ge=0)
    invoice_poll_batch_limit: int = Field(default=10, gt=0)
    invoice_orphan_age: int = Field(default=60, ge=0)
    invoice_max_age_days: int = Field(default=30, gt=0)
    invoice_retention_days: int = Field(default=90, gt=0)


class BackgroundSettings(CashuPaySettings):
    background_sync_cooldown: int = Field(
        default=300,
        ge=0,
        title="Sync cooldown",
        description="Minimum seconds between opportunistic background runs.",
    )
    pending_operation_ttl: int = Field(default=3600, gt=0)


class MintClientSettings(CashuPaySettings):
    mint_connect_timeout: float = Field(default=5.0)
    mint_timeout: float = Field(default=15.0)


class WebhookSettings(CashuPaySettings):
    webhook_timeout: float = Field(default=10.0)
    webhook_user_agent: str = Field(default="CashuPayServer/1.0")
    webhook_delivery_retention: int = Field(default=1000, gt=0)
    webhook_response_max_length: int = Field(default=1000, gt=0)


class DonationSettings(CashuPaySettings):
    donation_percent: float = Field(default=1.0, ge=0)
    donation_sink_url: str = Field(
        default="https://cypherpunk.today/donation-sink/donation-sink.php"
    )
    donation_connect_timeout: float = Field(default=3.0)
    donation_timeout: float = Field(default=5.0)


class AutoMeltSettings(CashuPaySettings):
    auto_melt_default_threshold: int = Field(default=2000, gt=0)
    auto_melt_fee_buffer_percent: float = Field(default=1.0, ge=0)
    auto_melt_fee_buffer_min: int = Field(default=2, ge=0)
    auto_melt_fee_buffer_max: int = Field(default=100, ge=0)


class FakeWalletSettings(CashuPaySettings):
    fakewallet_input_fee_ppk: int = Field(default=0, ge=0)
    fakewallet_keyset_id: str = Field(default="009a1f293253e41e")
    fakewallet_quote_expiry: int = Field(default=3600, gt=0)


class Settings(
    EnvSettings,
    GatewaySettings,
    InvoiceSettings,
    BackgroundSettings,
    MintClientSettings,
    WebhookSettings,
    DonationSettings,
    AutoMeltSettings,
    FakeWalletSettings,
):
    pass


settings = Settings()


def startup_settings_tasks():
    # set env_file (this does not affect the settings module, it's just for reading)
    settings.env_file = find_env_file()

    if not settings.debug:
        # set traceback limit
        sys.tracebacklimit = 0

    # replace ~ with home directory in cashupay_dir
    settings.cashupay_dir = settings.cashupay_dir.replace("~", str(Path.home()))


startup_settings_tasks()

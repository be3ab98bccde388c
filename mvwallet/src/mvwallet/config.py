"""
Configuration management for the signer.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mvcore.constants import MULTISIG_SCAN_WINDOW, SINGLE_SIG_SCAN_WINDOW
from mvcore.models import NetworkType


class WalletSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MV_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: NetworkType = NetworkType.MAINNET

    single_sig_scan_window: int = Field(default=SINGLE_SIG_SCAN_WINDOW, ge=1)
    multisig_scan_window: int = Field(default=MULTISIG_SCAN_WINDOW, ge=1)

    qr_density: Literal["low", "medium", "high"] = "medium"

    # declared_first: declared path, alternate paths, then scan window
    signing_order: Literal["declared_first", "scan_first"] = "declared_first"
    alternate_account_range: int = Field(default=10, ge=1)

    log_level: str = "INFO"


def get_settings() -> WalletSettings:
    return WalletSettings()

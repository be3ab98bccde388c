"""
mvwallet - Offline signing core for an air-gapped Bitcoin wallet

Derives keys, recognizes wallet-owned scripts, parses/signs/finalizes PSBTs
and moves them over QR codes. Never touches the network.
"""

__version__ = "0.3.0"

from mvcore.crypto import CryptoError
from mvwallet.psbt.models import (
    InsufficientSignaturesError,
    MalformedProposalError,
    ProposalStateError,
)
from mvwallet.qr.errors import QRFormatError
from mvwallet.wallet.bip32 import DerivationError, HDKey
from mvwallet.wallet.bip39 import MnemonicError
from mvwallet.wallet.descriptor import DescriptorError
from mvwallet.wallet.ownership import OwnershipMismatchError
from mvwallet.wallet.session import WalletSession

__all__ = [
    "CryptoError",
    "DerivationError",
    "DescriptorError",
    "HDKey",
    "InsufficientSignaturesError",
    "MalformedProposalError",
    "MnemonicError",
    "OwnershipMismatchError",
    "ProposalStateError",
    "QRFormatError",
    "WalletSession",
]

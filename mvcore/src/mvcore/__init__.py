"""
mvcore - Core library for the air-gapped signer

Provides key-free primitives shared by the wallet: hashing, address encodings,
network and script-type enums.
"""

__version__ = "0.3.0"

from mvcore.bech32 import decode_segwit_address, encode_segwit_address
from mvcore.constants import (
    CHANGE_BRANCH,
    HARDENED,
    MULTISIG_SCAN_WINDOW,
    RECEIVE_BRANCH,
    SINGLE_SIG_SCAN_WINDOW,
)
from mvcore.crypto import (
    CryptoError,
    base58check_decode,
    base58check_encode,
    bitcoin_message_hash,
    hash160,
    hash256,
    tagged_hash,
)
from mvcore.descriptor_checksum import add_checksum, descriptor_checksum, strip_checksum
from mvcore.models import (
    MultisigScriptType,
    NetworkType,
    OutputClassification,
    OutputKind,
    ScriptType,
)

__all__ = [
    "CHANGE_BRANCH",
    "CryptoError",
    "HARDENED",
    "MULTISIG_SCAN_WINDOW",
    "MultisigScriptType",
    "NetworkType",
    "OutputClassification",
    "OutputKind",
    "RECEIVE_BRANCH",
    "SINGLE_SIG_SCAN_WINDOW",
    "ScriptType",
    "add_checksum",
    "base58check_decode",
    "base58check_encode",
    "bitcoin_message_hash",
    "decode_segwit_address",
    "descriptor_checksum",
    "encode_segwit_address",
    "hash160",
    "hash256",
    "strip_checksum",
    "tagged_hash",
]

"""
SeedQR export and import for 12 and 24 word mnemonics.

Standard SeedQR is the concatenation of every word's BIP39 index as four
decimal digits (48 or 96 digits). Compact SeedQR is the raw entropy, 16 or 32
bytes, without the checksum bits.
"""

from __future__ import annotations

from mvwallet.qr.errors import QRFormatError
from mvwallet.wallet.bip39 import (
    MnemonicError,
    entropy_to_mnemonic,
    indexes_to_mnemonic,
    mnemonic_to_entropy,
    mnemonic_to_indexes,
)

SEEDQR_WORD_COUNTS = (12, 24)


def _check_word_count(count: int) -> None:
    if count not in SEEDQR_WORD_COUNTS:
        raise QRFormatError(f"SeedQR supports 12 or 24 words, got {count}")


def encode_standard(mnemonic: str | list[str]) -> str:
    indexes = mnemonic_to_indexes(mnemonic)
    _check_word_count(len(indexes))
    return "".join(f"{i:04d}" for i in indexes)


def decode_standard(digits: str) -> str:
    digits = digits.strip()
    if not digits.isdigit() or len(digits) % 4:
        raise QRFormatError("Standard SeedQR must be groups of four digits")
    _check_word_count(len(digits) // 4)
    indexes = [int(digits[i : i + 4]) for i in range(0, len(digits), 4)]
    if any(i >= 2048 for i in indexes):
        raise QRFormatError("SeedQR word index out of range")
    try:
        return indexes_to_mnemonic(indexes)
    except MnemonicError as e:
        raise QRFormatError(f"Invalid SeedQR mnemonic: {e}") from e


def encode_compact(mnemonic: str | list[str]) -> bytes:
    entropy = mnemonic_to_entropy(mnemonic)
    _check_word_count(len(entropy) * 3 // 4)
    return entropy


def decode_compact(data: bytes) -> str:
    if len(data) not in (16, 32):
        raise QRFormatError(f"Compact SeedQR must be 16 or 32 bytes, got {len(data)}")
    return entropy_to_mnemonic(bytes(data))


def decode_seedqr(content: str | bytes) -> str:
    """Decode either SeedQR form, telling them apart by payload type."""
    if isinstance(content, (bytes, bytearray)):
        return decode_compact(bytes(content))
    return decode_standard(content)

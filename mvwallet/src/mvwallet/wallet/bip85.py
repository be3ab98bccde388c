"""
BIP85 deterministic entropy from a master key.

Each application derives a hardened path under m/83696968', then takes
HMAC-SHA512(key="bip-entropy-from-k", msg=child private key) as entropy.
"""

from __future__ import annotations

import base64
import hashlib
import hmac

from coincurve import PrivateKey
from loguru import logger

from mvcore.constants import (
    BIP85_APP_BIP39,
    BIP85_APP_HEX,
    BIP85_APP_PASSWORD_BASE64,
    BIP85_APP_XPRV,
    BIP85_ENGLISH,
    BIP85_HMAC_KEY,
    BIP85_PASSWORD_DEFAULT_LENGTH,
    BIP85_PASSWORD_MAX_LENGTH,
    BIP85_PASSWORD_MIN_LENGTH,
    BIP85_PURPOSE,
)
from mvwallet.wallet.bip32 import DerivationError, HDKey
from mvwallet.wallet.bip39 import entropy_to_mnemonic

MNEMONIC_ENTROPY_BYTES = {12: 16, 18: 24, 24: 32}


def bip85_entropy(master: HDKey, path: str) -> bytes:
    """Derive the 64 bytes of application entropy at a fully hardened path."""
    if not master.is_private:
        raise DerivationError("BIP85 requires a private master key")
    child = master.derive(path)
    return hmac.new(BIP85_HMAC_KEY, child.get_private_key_bytes(), hashlib.sha512).digest()


def _check_index(index: int) -> None:
    if index < 0 or index >= 2**31:
        raise DerivationError(f"BIP85 index out of range: {index}")


def mnemonic_path(words: int, index: int) -> str:
    return f"m/{BIP85_PURPOSE}'/{BIP85_APP_BIP39}'/{BIP85_ENGLISH}'/{words}'/{index}'"


def derive_mnemonic(master: HDKey, words: int = 12, index: int = 0) -> str:
    """Child BIP39 mnemonic of 12, 18 or 24 words."""
    if words not in MNEMONIC_ENTROPY_BYTES:
        raise DerivationError(f"Unsupported BIP85 word count: {words}")
    _check_index(index)

    logger.debug(f"Deriving BIP85 {words}-word mnemonic at index {index}")
    entropy = bip85_entropy(master, mnemonic_path(words, index))
    return entropy_to_mnemonic(entropy[: MNEMONIC_ENTROPY_BYTES[words]])


def password_path(length: int, index: int) -> str:
    return f"m/{BIP85_PURPOSE}'/{BIP85_APP_PASSWORD_BASE64}'/{length}'/{index}'"


def derive_password(
    master: HDKey, length: int = BIP85_PASSWORD_DEFAULT_LENGTH, index: int = 0
) -> str:
    """
    Base64 password of the requested length.

    If the truncated text contains neither "+" nor "/", a "!" is appended so the
    password passes naive symbol requirements.
    """
    if not BIP85_PASSWORD_MIN_LENGTH <= length <= BIP85_PASSWORD_MAX_LENGTH:
        raise DerivationError(
            f"Password length must be {BIP85_PASSWORD_MIN_LENGTH}-{BIP85_PASSWORD_MAX_LENGTH}"
        )
    _check_index(index)

    entropy = bip85_entropy(master, password_path(length, index))
    password = base64.b64encode(entropy).decode("ascii")[:length]
    if "+" not in password and "/" not in password:
        password += "!"
    return password


def derive_hex(master: HDKey, num_bytes: int = 32, index: int = 0) -> str:
    if not 16 <= num_bytes <= 64:
        raise DerivationError("Hex entropy length must be 16-64 bytes")
    _check_index(index)

    path = f"m/{BIP85_PURPOSE}'/{BIP85_APP_HEX}'/{num_bytes}'/{index}'"
    return bip85_entropy(master, path)[:num_bytes].hex()


def derive_xprv(master: HDKey, index: int = 0) -> HDKey:
    """Child master key: chain code is the first half of the entropy, key the second."""
    _check_index(index)

    entropy = bip85_entropy(master, f"m/{BIP85_PURPOSE}'/{BIP85_APP_XPRV}'/{index}'")
    try:
        private_key = PrivateKey(entropy[32:])
    except ValueError as e:
        raise DerivationError("BIP85 xprv entropy is not a valid key") from e
    return HDKey(entropy[:32], private_key=private_key)

"""
BIP39 mnemonic handling on top of python-mnemonic.
"""

from __future__ import annotations

from mnemonic import Mnemonic

VALID_WORD_COUNTS = (12, 15, 18, 21, 24)

_english = Mnemonic("english")


class MnemonicError(ValueError):
    pass


def normalize_mnemonic(words: str | list[str]) -> str:
    if isinstance(words, list):
        words = " ".join(words)
    return " ".join(words.lower().split())


def wordlist() -> list[str]:
    return list(_english.wordlist)


def validate_mnemonic(words: str | list[str]) -> str:
    """Return the normalized mnemonic, raising MnemonicError if it is invalid."""
    phrase = normalize_mnemonic(words)
    count = len(phrase.split())
    if count not in VALID_WORD_COUNTS:
        raise MnemonicError(f"Mnemonic must have 12-24 words, got {count}")
    unknown = [w for w in phrase.split() if w not in _english.wordlist]
    if unknown:
        raise MnemonicError(f"{len(unknown)} word(s) not in the BIP39 wordlist")
    if not _english.check(phrase):
        raise MnemonicError("Mnemonic checksum mismatch")
    return phrase


def entropy_to_mnemonic(entropy: bytes) -> str:
    if len(entropy) not in (16, 20, 24, 28, 32):
        raise MnemonicError(f"Entropy must be 16-32 bytes in steps of 4, got {len(entropy)}")
    return _english.to_mnemonic(bytes(entropy))


def mnemonic_to_entropy(words: str | list[str]) -> bytes:
    return bytes(_english.to_entropy(validate_mnemonic(words)))


def mnemonic_to_indexes(words: str | list[str]) -> list[int]:
    phrase = validate_mnemonic(words)
    return [_english.wordlist.index(w) for w in phrase.split()]


def indexes_to_mnemonic(indexes: list[int]) -> str:
    try:
        phrase = " ".join(_english.wordlist[i] for i in indexes)
    except IndexError as e:
        raise MnemonicError("Word index out of range") from e
    return validate_mnemonic(phrase)


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytearray:
    """
    Convert BIP39 mnemonic to seed.

    PBKDF2-HMAC-SHA512, 2048 rounds, salt "mnemonic" + passphrase. The seed is
    returned as a bytearray so it can be scrubbed after use.
    """
    phrase = validate_mnemonic(mnemonic)
    return bytearray(Mnemonic.to_seed(phrase, passphrase))


def scrub(buffer: bytearray) -> None:
    """Overwrite a secret buffer in place."""
    for i in range(len(buffer)):
        buffer[i] = 0

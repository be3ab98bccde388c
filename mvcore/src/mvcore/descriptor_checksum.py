"""
Output descriptor checksums (BIP380).
"""

from __future__ import annotations

from mvcore.crypto import CryptoError

INPUT_CHARSET = (
    "0123456789()[],'/*abcdefgh@:$%{}"
    "IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~"
    "ijklmnopqrstuvwxyzABCDEFGH`#\"\\ "
)
CHECKSUM_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

GENERATOR = [0xF5DEE51989, 0xA9FDCA3312, 0x1BAB10E32D, 0x3706B1677A, 0x644D626FFD]


def descsum_polymod(symbols: list[int]) -> int:
    chk = 1
    for value in symbols:
        top = chk >> 35
        chk = (chk & 0x7FFFFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= GENERATOR[i] if ((top >> i) & 1) else 0
    return chk


def descsum_expand(descriptor: str) -> list[int]:
    groups: list[int] = []
    symbols: list[int] = []
    for c in descriptor:
        v = INPUT_CHARSET.find(c)
        if v < 0:
            raise CryptoError(f"Invalid descriptor character: {c!r}")
        symbols.append(v & 31)
        groups.append(v >> 5)
        if len(groups) == 3:
            symbols.append(groups[0] * 9 + groups[1] * 3 + groups[2])
            groups = []
    if len(groups) == 1:
        symbols.append(groups[0])
    elif len(groups) == 2:
        symbols.append(groups[0] * 3 + groups[1])
    return symbols


def descriptor_checksum(descriptor: str) -> str:
    symbols = descsum_expand(descriptor) + [0] * 8
    checksum = descsum_polymod(symbols) ^ 1
    return "".join(CHECKSUM_CHARSET[(checksum >> (5 * (7 - i))) & 31] for i in range(8))


def add_checksum(descriptor: str) -> str:
    return f"{strip_checksum(descriptor)}#{descriptor_checksum(strip_checksum(descriptor))}"


def strip_checksum(descriptor: str) -> str:
    """Remove a trailing '#checksum', verifying it if present."""
    if "#" not in descriptor:
        return descriptor
    body, _, checksum = descriptor.rpartition("#")
    if descriptor_checksum(body) != checksum:
        raise CryptoError("Descriptor checksum mismatch")
    return body

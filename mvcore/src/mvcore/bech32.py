"""
Bech32 and bech32m encoding (BIP173, BIP350) and segwit address helpers.
"""

from __future__ import annotations

from mvcore.crypto import CryptoError

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3


def bech32_polymod(values: list[int]) -> int:
    """Bech32 checksum polymod"""
    gen = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ v
        for i in range(5):
            chk ^= gen[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def bech32_create_checksum(hrp: str, data: list[int], const: int = BECH32_CONST) -> list[int]:
    values = bech32_hrp_expand(hrp) + data
    polymod = bech32_polymod(values + [0, 0, 0, 0, 0, 0]) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def bech32_encode(hrp: str, data: list[int], const: int = BECH32_CONST) -> str:
    combined = data + bech32_create_checksum(hrp, data, const)
    return hrp + "1" + "".join([CHARSET[d] for d in combined])


def bech32_decode(text: str) -> tuple[str, list[int], int]:
    """
    Decode a bech32 or bech32m string.

    Returns:
        (hrp, data without checksum, checksum constant)
    """
    if text.lower() != text and text.upper() != text:
        raise CryptoError("Mixed case bech32 string")
    text = text.lower()

    pos = text.rfind("1")
    if pos < 1 or pos + 7 > len(text) or len(text) > 90:
        raise CryptoError("Invalid bech32 separator position or length")

    hrp = text[:pos]
    if any(ord(c) < 33 or ord(c) > 126 for c in hrp):
        raise CryptoError("Invalid bech32 human-readable part")

    data = []
    for c in text[pos + 1 :]:
        index = CHARSET.find(c)
        if index < 0:
            raise CryptoError(f"Invalid bech32 character: {c!r}")
        data.append(index)

    const = bech32_polymod(bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        raise CryptoError("Bech32 checksum mismatch")

    return hrp, data[:-6], const


def convertbits(data: bytes | list[int], frombits: int, tobits: int, pad: bool = True) -> list[int]:
    """Convert between bit groups"""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or value >> frombits:
            raise CryptoError("Invalid value in bit conversion")
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise CryptoError("Invalid bits")

    return ret


def encode_segwit_address(hrp: str, witness_version: int, program: bytes) -> str:
    """Version 0 programs use bech32, later versions bech32m."""
    const = BECH32_CONST if witness_version == 0 else BECH32M_CONST
    return bech32_encode(hrp, [witness_version] + convertbits(program, 8, 5), const)


def decode_segwit_address(hrp: str, address: str) -> tuple[int, bytes]:
    """
    Decode a segwit address for the expected human-readable part.

    Returns:
        (witness version, witness program)
    """
    got_hrp, data, const = bech32_decode(address)
    if got_hrp != hrp:
        raise CryptoError(f"Address prefix {got_hrp!r} does not match network {hrp!r}")
    if not data:
        raise CryptoError("Empty segwit data")

    version = data[0]
    if version > 16:
        raise CryptoError(f"Invalid witness version: {version}")

    program = bytes(convertbits(data[1:], 5, 8, pad=False))
    if len(program) < 2 or len(program) > 40:
        raise CryptoError(f"Invalid witness program length: {len(program)}")
    if version == 0 and len(program) not in (20, 32):
        raise CryptoError(f"Invalid v0 witness program length: {len(program)}")

    expected = BECH32_CONST if version == 0 else BECH32M_CONST
    if const != expected:
        raise CryptoError("Wrong checksum variant for witness version")

    return version, program

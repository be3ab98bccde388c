"""
Cryptographic primitives shared by the signing core.

Hashing, base58/base58check, compact-size integers and the secp256k1 helpers
needed for taproot output keys. Nothing in this module ever sees a seed.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey, PublicKey

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

MESSAGE_MAGIC = b"Bitcoin Signed Message:\n"


class CryptoError(Exception):
    pass


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    """SHA256(SHA256(data))"""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def hmac_sha512(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.sha512).digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data)"""
    tag_hash = hashlib.sha256(tag.encode("utf-8")).digest()
    return hashlib.sha256(tag_hash + tag_hash + data).digest()


def base58_encode(data: bytes) -> str:
    num = int.from_bytes(data, "big")

    result = ""
    while num > 0:
        num, remainder = divmod(num, 58)
        result = BASE58_ALPHABET[remainder] + result

    for byte in data:
        if byte == 0:
            result = BASE58_ALPHABET[0] + result
        else:
            break

    return result


def base58_decode(text: str) -> bytes:
    num = 0
    for char in text:
        index = BASE58_ALPHABET.find(char)
        if index < 0:
            raise CryptoError(f"Invalid base58 character: {char!r}")
        num = num * 58 + index

    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""

    leading = 0
    for char in text:
        if char == BASE58_ALPHABET[0]:
            leading += 1
        else:
            break

    return b"\x00" * leading + body


def base58check_encode(payload: bytes) -> str:
    return base58_encode(payload + hash256(payload)[:4])


def base58check_decode(text: str) -> bytes:
    raw = base58_decode(text)
    if len(raw) < 4:
        raise CryptoError("Base58check string too short")
    payload, checksum = raw[:-4], raw[-4:]
    if hash256(payload)[:4] != checksum:
        raise CryptoError("Base58check checksum mismatch")
    return payload


def encode_varint(value: int) -> bytes:
    if value < 0:
        raise CryptoError("Compact size cannot be negative")
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read a compact-size integer, returning (value, new_offset)."""
    if offset >= len(data):
        raise CryptoError("Unexpected end of data reading compact size")

    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset

    width = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + width > len(data):
        raise CryptoError("Unexpected end of data reading compact size")
    value = int.from_bytes(data[offset : offset + width], "little")
    return value, offset + width


def push_data(data: bytes) -> bytes:
    """Minimal script push of a data element."""
    length = len(data)
    if length < 0x4C:
        return bytes([length]) + data
    if length <= 0xFF:
        return b"\x4c" + bytes([length]) + data
    if length <= 0xFFFF:
        return b"\x4d" + length.to_bytes(2, "little") + data
    return b"\x4e" + length.to_bytes(4, "little") + data


def bitcoin_message_hash(message: str) -> bytes:
    """
    Hash a message using Bitcoin's message signing format.

    Format: SHA256(SHA256("\\x18Bitcoin Signed Message:\\n" + varint(len) + message))
    """
    msg_bytes = message.encode("utf-8")
    full_msg = encode_varint(len(MESSAGE_MAGIC)) + MESSAGE_MAGIC
    full_msg += encode_varint(len(msg_bytes)) + msg_bytes
    return hash256(full_msg)


def xonly(pubkey: bytes) -> bytes:
    """Drop the parity byte of a compressed public key."""
    if len(pubkey) == 32:
        return pubkey
    if len(pubkey) != 33:
        raise CryptoError(f"Invalid public key length: {len(pubkey)}")
    return pubkey[1:]


def taproot_tweak(internal_key: bytes, merkle_root: bytes | None = None) -> bytes:
    """TapTweak scalar for an x-only internal key."""
    data = xonly(internal_key) + (merkle_root or b"")
    tweak = tagged_hash("TapTweak", data)
    if int.from_bytes(tweak, "big") >= SECP256K1_N:
        raise CryptoError("Taproot tweak out of range")
    return tweak


def taproot_output_key(internal_key: bytes, merkle_root: bytes | None = None) -> bytes:
    """
    Compute the x-only output key Q = P + t*G for a BIP341 output.

    P is lifted to the point with even Y, as x-only keys always are.
    """
    point = PublicKey(b"\x02" + xonly(internal_key))
    tweaked = point.add(taproot_tweak(internal_key, merkle_root))
    return tweaked.format(compressed=True)[1:]


def taproot_tweak_private_key(secret: bytes, merkle_root: bytes | None = None) -> bytes:
    """Tweak a private key so it signs for the BIP341 output key."""
    pubkey = PrivateKey(secret).public_key.format(compressed=True)
    d = int.from_bytes(secret, "big")
    if pubkey[0] == 0x03:
        d = SECP256K1_N - d
    t = int.from_bytes(taproot_tweak(pubkey, merkle_root), "big")
    tweaked = (d + t) % SECP256K1_N
    if tweaked == 0:
        raise CryptoError("Tweaked private key is zero")
    return tweaked.to_bytes(32, "big")

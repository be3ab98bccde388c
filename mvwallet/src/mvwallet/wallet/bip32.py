"""
BIP32 HD key derivation.

Nodes are immutable: derivation always returns a new HDKey. A node holds either
a private key (and its public key) or only a public key; hardened children can
only be derived from private nodes. Extended keys serialize with BIP32 and
SLIP-132 version bytes.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey, PublicKey

from mvcore.constants import EXTENDED_KEY_VERSIONS, HARDENED, VERSION_TO_PREFIX
from mvcore.crypto import (
    SECP256K1_N,
    CryptoError,
    base58check_decode,
    base58check_encode,
    hash160,
)


class DerivationError(ValueError):
    pass


def parse_path(path: str) -> list[int]:
    """
    Parse path notation (e.g. "m/84'/0'/0'/0/0") into child indexes.

    Hardened elements may be marked with ', h or H. The leading "m" is optional.
    """
    parts = [p for p in path.strip().split("/") if p]
    if parts and parts[0] in ("m", "M"):
        parts = parts[1:]

    indexes = []
    for part in parts:
        hardened = part[-1] in ("'", "h", "H")
        index_str = part[:-1] if hardened else part
        if not index_str.isdigit():
            raise DerivationError(f"Invalid path element: {part!r}")
        index = int(index_str)
        if index >= HARDENED:
            raise DerivationError(f"Path element out of range: {part!r}")
        indexes.append(index + HARDENED if hardened else index)
    return indexes


def format_path(indexes: list[int] | tuple[int, ...]) -> str:
    parts = ["m"]
    for index in indexes:
        if index >= HARDENED:
            parts.append(f"{index - HARDENED}'")
        else:
            parts.append(str(index))
    return "/".join(parts)


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 derivation.
    """

    def __init__(
        self,
        chain_code: bytes,
        private_key: PrivateKey | None = None,
        public_key: PublicKey | None = None,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_index: int = 0,
    ):
        if private_key is None and public_key is None:
            raise DerivationError("HDKey needs private or public key material")
        self._private_key = private_key
        self._public_key = public_key if public_key is not None else private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_index = child_index

    @property
    def private_key(self) -> PrivateKey:
        """Return the coincurve PrivateKey instance."""
        if self._private_key is None:
            raise DerivationError("Public-only node has no private key")
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @property
    def is_private(self) -> bool:
        return self._private_key is not None

    @property
    def fingerprint(self) -> bytes:
        """First four bytes of HASH160 of the compressed public key."""
        return hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(cls, seed: bytes | bytearray) -> HDKey:
        """Create master HD key from seed"""
        if not 16 <= len(seed) <= 64:
            raise DerivationError(f"Seed must be 16-64 bytes, got {len(seed)}")

        hmac_result = hmac.new(b"Bitcoin seed", bytes(seed), hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        key_int = int.from_bytes(key_bytes, "big")
        if key_int == 0 or key_int >= SECP256K1_N:
            raise DerivationError("Seed produces an invalid master key")

        return cls(chain_code, private_key=PrivateKey(key_bytes), depth=0)

    @classmethod
    def from_extended_key(cls, encoded: str) -> HDKey:
        """Parse an xprv/xpub (or SLIP-132 variant) string."""
        try:
            raw = base58check_decode(encoded.strip())
        except CryptoError as e:
            raise DerivationError(f"Invalid extended key encoding: {e}") from e

        if len(raw) != 78:
            raise DerivationError(f"Extended key must be 78 bytes, got {len(raw)}")

        version = int.from_bytes(raw[0:4], "big")
        prefix = VERSION_TO_PREFIX.get(version)
        if prefix is None:
            raise DerivationError(f"Unknown extended key version: {version:#010x}")

        depth = raw[4]
        parent_fingerprint = raw[5:9]
        child_index = int.from_bytes(raw[9:13], "big")
        chain_code = raw[13:45]
        key_data = raw[45:78]

        if depth == 0 and (parent_fingerprint != b"\x00" * 4 or child_index != 0):
            raise DerivationError("Master key with non-zero parent fingerprint or index")

        _, is_private = EXTENDED_KEY_VERSIONS[prefix]
        try:
            if is_private:
                if key_data[0] != 0:
                    raise DerivationError("Private key data must start with 0x00")
                key_int = int.from_bytes(key_data[1:], "big")
                if key_int == 0 or key_int >= SECP256K1_N:
                    raise DerivationError("Private key out of range")
                return cls(
                    chain_code,
                    private_key=PrivateKey(key_data[1:]),
                    depth=depth,
                    parent_fingerprint=parent_fingerprint,
                    child_index=child_index,
                )
            return cls(
                chain_code,
                public_key=PublicKey(key_data),
                depth=depth,
                parent_fingerprint=parent_fingerprint,
                child_index=child_index,
            )
        except ValueError as e:
            if isinstance(e, DerivationError):
                raise
            raise DerivationError(f"Invalid key material: {e}") from e

    def derive(self, path: str | list[int]) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' indicates hardened derivation
        """
        indexes = parse_path(path) if isinstance(path, str) else path
        key = self
        for index in indexes:
            key = key.derive_child(index)
        return key

    def derive_child(self, index: int, hardened: bool = False) -> HDKey:
        """
        Derive a single child.

        Invalid child keys are reported as DerivationError; the caller decides
        whether to move on to another index.
        """
        if hardened and index < HARDENED:
            index += HARDENED
        if index < 0 or index > 0xFFFFFFFF:
            raise DerivationError(f"Child index out of range: {index}")

        if index >= HARDENED:
            if not self.is_private:
                raise DerivationError("Cannot derive hardened child from public-only key")
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        offset_int = int.from_bytes(key_offset, "big")
        if offset_int >= SECP256K1_N:
            raise DerivationError(f"Invalid child key at index {index}")

        if self.is_private:
            parent_key_int = int.from_bytes(self._private_key.secret, "big")
            child_key_int = (parent_key_int + offset_int) % SECP256K1_N
            if child_key_int == 0:
                raise DerivationError(f"Invalid child key at index {index}")
            return HDKey(
                child_chain,
                private_key=PrivateKey(child_key_int.to_bytes(32, "big")),
                depth=self.depth + 1,
                parent_fingerprint=self.fingerprint,
                child_index=index,
            )

        try:
            child_public = self._public_key.add(key_offset)
        except ValueError as e:
            raise DerivationError(f"Invalid child key at index {index}") from e
        return HDKey(
            child_chain,
            public_key=child_public,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_index=index,
        )

    def neuter(self) -> HDKey:
        """Return the public-only version of this node."""
        return HDKey(
            self.chain_code,
            public_key=self._public_key,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_index=self.child_index,
        )

    def serialize(self, prefix: str | None = None) -> str:
        """
        Serialize as an extended key.

        Args:
            prefix: Version prefix such as "xpub", "zpub" or "tprv". Defaults to
                "xprv" for private nodes and "xpub" for public nodes.
        """
        if prefix is None:
            prefix = "xprv" if self.is_private else "xpub"
        if prefix not in EXTENDED_KEY_VERSIONS:
            raise DerivationError(f"Unknown extended key prefix: {prefix}")

        version, is_private = EXTENDED_KEY_VERSIONS[prefix]
        if is_private:
            key_data = b"\x00" + self.private_key.secret
        else:
            key_data = self.get_public_key_bytes()

        payload = (
            version.to_bytes(4, "big")
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_index.to_bytes(4, "big")
            + self.chain_code
            + key_data
        )
        return base58check_encode(payload)

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        return self.private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)

    def sign(self, message: bytes) -> bytes:
        """Sign a message with this key (uses SHA256 hashing)."""
        return self.private_key.sign(message)

    def __repr__(self) -> str:
        kind = "private" if self.is_private else "public"
        return f"HDKey({kind}, depth={self.depth}, fingerprint={self.fingerprint.hex()})"

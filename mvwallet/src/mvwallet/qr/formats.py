"""
QR transport formats as tagged variants.

Each variant carries its own encode/decode pair; callers pick one explicitly
for input and for output. The registry maps the names used on the command line
and in settings to variants.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Literal

from mvcore.constants import BBQR_FRAME_CHARS, DEFAULT_QR_DENSITY, UR_FRAGMENT_LENGTHS
from mvwallet.qr import bbqr, seedqr
from mvwallet.qr.errors import QRFormatError
from mvwallet.qr.ur import (
    UR,
    UR_TYPE_BYTES,
    UR_TYPE_CRYPTO_PSBT,
    UR_TYPE_PSBT,
    decode_ur,
    encode_ur,
)

Density = Literal["low", "medium", "high"]
ContentKind = Literal["psbt", "transaction"]


def _check_density(density: str) -> None:
    if density not in UR_FRAGMENT_LENGTHS:
        raise ValueError(f"Unknown QR density: {density}")


@dataclass(frozen=True)
class URFormat:
    """Fountain-coded UR frames; legacy ``crypto-psbt`` or modern ``psbt``."""

    name: str
    psbt_type: str

    def encode(
        self,
        payload: bytes,
        content: ContentKind = "psbt",
        density: Density = DEFAULT_QR_DENSITY,
        extra_parts: int = 0,
    ) -> list[str]:
        _check_density(density)
        min_len, max_len = UR_FRAGMENT_LENGTHS[density]
        ur_type = self.psbt_type if content == "psbt" else UR_TYPE_BYTES
        frames = encode_ur(UR.from_bytes(ur_type, payload), max_len, min_len, extra_parts)
        # uppercase keeps the frames in the QR alphanumeric mode
        return [f.upper() for f in frames]

    def decode(self, frames: list[str]) -> bytes:
        return decode_ur(frames).to_bytes()


@dataclass(frozen=True)
class BBQrFormat:
    name: str
    encoding: str = bbqr.ENCODING_ZLIB

    def encode(
        self,
        payload: bytes,
        content: ContentKind = "psbt",
        density: Density = DEFAULT_QR_DENSITY,
    ) -> list[str]:
        _check_density(density)
        file_type = bbqr.FILE_TYPE_PSBT if content == "psbt" else bbqr.FILE_TYPE_TRANSACTION
        return bbqr.encode_bbqr(payload, file_type, BBQR_FRAME_CHARS[density], self.encoding)

    def decode(self, frames: list[str]) -> bytes:
        return bbqr.decode_bbqr(frames)[1]


@dataclass(frozen=True)
class PlainFormat:
    """A single frame of base64 (PSBT) or hex (raw transaction) text."""

    name: str

    def encode(
        self,
        payload: bytes,
        content: ContentKind = "psbt",
        density: Density = DEFAULT_QR_DENSITY,
    ) -> list[str]:
        if content == "psbt":
            return [base64.b64encode(payload).decode("ascii")]
        return [payload.hex()]

    def decode(self, frames: list[str]) -> bytes:
        if len(frames) != 1:
            raise QRFormatError("Plain format carries exactly one frame")
        text = frames[0].strip()
        try:
            return bytes.fromhex(text)
        except ValueError:
            pass
        try:
            return base64.b64decode(text, validate=True)
        except ValueError as e:
            raise QRFormatError("Plain frame is neither hex nor base64") from e


@dataclass(frozen=True)
class SeedQRFormat:
    """Seed material only; never carries transactions."""

    name: str
    compact: bool = False

    def encode(self, mnemonic: str) -> str | bytes:
        if self.compact:
            return seedqr.encode_compact(mnemonic)
        return seedqr.encode_standard(mnemonic)

    def decode(self, content: str | bytes) -> str:
        if self.compact:
            if isinstance(content, str):
                raise QRFormatError("Compact SeedQR is binary")
            return seedqr.decode_compact(content)
        if not isinstance(content, str):
            raise QRFormatError("Standard SeedQR is a digit string")
        return seedqr.decode_standard(content)


TransportFormat = URFormat | BBQrFormat | PlainFormat

UR_LEGACY = URFormat("ur-legacy", UR_TYPE_CRYPTO_PSBT)
UR_MODERN = URFormat("ur-modern", UR_TYPE_PSBT)
BBQR = BBQrFormat("bbqr")
PLAIN = PlainFormat("plain")
SEEDQR_STANDARD = SeedQRFormat("seedqr")
SEEDQR_COMPACT = SeedQRFormat("seedqr-compact", compact=True)

TRANSPORT_FORMATS: dict[str, TransportFormat] = {
    f.name: f for f in (UR_LEGACY, UR_MODERN, BBQR, PLAIN)
}
SEED_FORMATS: dict[str, SeedQRFormat] = {f.name: f for f in (SEEDQR_STANDARD, SEEDQR_COMPACT)}


def get_transport_format(name: str) -> TransportFormat:
    try:
        return TRANSPORT_FORMATS[name]
    except KeyError:
        raise ValueError(
            f"Unknown QR format: {name} (choose from {', '.join(TRANSPORT_FORMATS)})"
        ) from None

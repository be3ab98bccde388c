"""
BBQr ("Better Bitcoin QR") framing.

Every frame starts with an 8 character header::

    B$ <encoding> <file type> <total:2 base36> <index:2 base36>

followed by a chunk of the encoded payload. Chunks are spread evenly over the
minimum number of frames, and every chunk but the last decodes to a whole
number of bytes.
"""

from __future__ import annotations

import base64
import math
import zlib
from dataclasses import dataclass

from loguru import logger

from mvwallet.qr.errors import QRFormatError

HEADER = "B$"
HEADER_LEN = 8
MAX_FRAMES = 1295  # "ZZ" in base36

ENCODING_HEX = "H"
ENCODING_BASE32 = "2"
ENCODING_ZLIB = "Z"
ENCODINGS = (ENCODING_HEX, ENCODING_BASE32, ENCODING_ZLIB)

FILE_TYPE_PSBT = "P"
FILE_TYPE_TRANSACTION = "T"
FILE_TYPE_JSON = "J"
FILE_TYPE_UNICODE = "U"
FILE_TYPE_BINARY = "B"
FILE_TYPE_CBOR = "C"
FILE_TYPES = (
    FILE_TYPE_PSBT,
    FILE_TYPE_TRANSACTION,
    FILE_TYPE_JSON,
    FILE_TYPE_UNICODE,
    FILE_TYPE_BINARY,
    FILE_TYPE_CBOR,
)

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def int_to_base36(value: int) -> str:
    if not 0 <= value <= MAX_FRAMES:
        raise ValueError(f"Value out of BBQr range: {value}")
    return _BASE36[value // 36] + _BASE36[value % 36]


def base36_to_int(text: str) -> int:
    try:
        return int(text, 36)
    except ValueError as e:
        raise QRFormatError(f"Invalid base36 value: {text}") from e


def _b32encode(data: bytes) -> str:
    return base64.b32encode(data).decode("ascii").rstrip("=")


def _b32decode(text: str) -> bytes:
    text = text.upper()
    try:
        return base64.b32decode(text + "=" * (-len(text) % 8))
    except ValueError as e:
        raise QRFormatError(f"Invalid base32 chunk: {e}") from e


def _compress(data: bytes) -> bytes:
    compressor = zlib.compressobj(zlib.Z_BEST_COMPRESSION, zlib.DEFLATED, -10)
    return compressor.compress(data) + compressor.flush()


def _decompress(data: bytes) -> bytes:
    try:
        return zlib.decompress(data, wbits=-10)
    except zlib.error as e:
        raise QRFormatError(f"Invalid compressed BBQr payload: {e}") from e


def _encode_chunk(chunk: bytes, encoding: str) -> str:
    if encoding == ENCODING_HEX:
        return chunk.hex().upper()
    return _b32encode(chunk)


def encode_bbqr(
    data: bytes,
    file_type: str = FILE_TYPE_PSBT,
    max_chars: int = 700,
    encoding: str = ENCODING_ZLIB,
) -> list[str]:
    """
    Split data into BBQr frames of at most max_chars characters.

    With the Z encoding the payload is raw-deflated (10 bit window); if that
    does not shrink it, plain base32 is used instead.
    """
    if file_type not in FILE_TYPES:
        raise ValueError(f"Unknown BBQr file type: {file_type}")
    if encoding not in ENCODINGS:
        raise ValueError(f"Unknown BBQr encoding: {encoding}")
    if not data:
        raise ValueError("Cannot encode an empty payload")

    payload = data
    if encoding == ENCODING_ZLIB:
        compressed = _compress(data)
        if len(compressed) < len(data):
            payload = compressed
        else:
            encoding = ENCODING_BASE32

    data_chars = max_chars - HEADER_LEN
    if encoding == ENCODING_HEX:
        # 2 characters per byte
        alignment = 1
        max_bytes = data_chars // 2
    else:
        # 8 base32 characters per 5 bytes
        alignment = 5
        max_bytes = (data_chars // 8) * 5
    if max_bytes < alignment:
        raise ValueError(f"Frame capacity too small: {max_chars}")

    count = max(1, math.ceil(len(payload) / max_bytes))
    if count > MAX_FRAMES:
        raise ValueError(f"Payload needs {count} frames, more than BBQr allows")

    per_frame = math.ceil(len(payload) / count)
    per_frame = math.ceil(per_frame / alignment) * alignment
    count = math.ceil(len(payload) / per_frame)

    frames = []
    for index in range(count):
        chunk = payload[index * per_frame : (index + 1) * per_frame]
        header = f"{HEADER}{encoding}{file_type}{int_to_base36(count)}{int_to_base36(index)}"
        frames.append(header + _encode_chunk(chunk, encoding))
    logger.debug(f"BBQr: {len(data)} bytes in {count} frames ({encoding}{file_type})")
    return frames


@dataclass(frozen=True)
class BBQrFrame:
    encoding: str
    file_type: str
    total: int
    index: int
    chunk: str


def parse_bbqr_frame(text: str) -> BBQrFrame:
    text = text.strip()
    if not text.startswith(HEADER) or len(text) < HEADER_LEN:
        raise QRFormatError("Not a BBQr frame")
    encoding = text[2].upper()
    file_type = text[3].upper()
    if encoding not in ENCODINGS:
        raise QRFormatError(f"Unknown BBQr encoding: {encoding}")
    if file_type not in FILE_TYPES:
        raise QRFormatError(f"Unknown BBQr file type: {file_type}")
    total = base36_to_int(text[4:6])
    index = base36_to_int(text[6:8])
    if total < 1 or index >= total:
        raise QRFormatError(f"Invalid BBQr frame position {index} of {total}")
    return BBQrFrame(encoding, file_type, total, index, text[HEADER_LEN:])


def decode_chunk(frame: BBQrFrame) -> bytes:
    """
    Decode one frame's chunk on its own.

    Chunks are cut on byte boundaries (5 bytes for base32), so each one decodes
    independently. Z chunks are returned still compressed.
    """
    if frame.encoding == ENCODING_HEX:
        try:
            return bytes.fromhex(frame.chunk)
        except ValueError as e:
            raise QRFormatError(f"Invalid hex chunk: {e}") from e
    if frame.index < frame.total - 1 and len(frame.chunk) % 8:
        raise QRFormatError(f"Base32 chunk {frame.index} is not 8 character aligned")
    return _b32decode(frame.chunk)


def join_bbqr(frames: list[BBQrFrame]) -> tuple[str, bytes]:
    """
    Reassemble a complete, consistent frame set into (file type, bytes).

    Raises:
        QRFormatError: On missing frames, mixed headers or bad chunk data
    """
    if not frames:
        raise QRFormatError("No BBQr frames")
    first = frames[0]
    by_index = {}
    for frame in frames:
        if (frame.encoding, frame.file_type, frame.total) != (
            first.encoding,
            first.file_type,
            first.total,
        ):
            raise QRFormatError("BBQr frames from different payloads")
        by_index[frame.index] = frame
    if sorted(by_index) != list(range(first.total)):
        raise QRFormatError(f"Missing BBQr frames: have {len(by_index)} of {first.total}")

    raw = b"".join(decode_chunk(by_index[i]) for i in range(first.total))
    if first.encoding == ENCODING_ZLIB:
        raw = _decompress(raw)
    return first.file_type, raw


def decode_bbqr(frames: list[str]) -> tuple[str, bytes]:
    return join_bbqr([parse_bbqr_frame(f) for f in frames])

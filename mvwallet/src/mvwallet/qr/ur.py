"""
Uniform Resources (BC-UR v2) framing.

Single part:  ur:<type>/<minimal bytewords of CBOR message>
Multi part:   ur:<type>/<seq_num>-<seq_len>/<minimal bytewords of CBOR part>

Binary payloads (PSBTs, raw transactions) travel as a CBOR byte string.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import cbor2
from loguru import logger

from mvwallet.qr import bytewords
from mvwallet.qr.errors import QRFormatError
from mvwallet.qr.fountain import FountainDecoder, FountainEncoder, FountainPart

UR_TYPE_CRYPTO_PSBT = "crypto-psbt"
UR_TYPE_PSBT = "psbt"
UR_TYPE_BYTES = "bytes"

_TYPE_RE = re.compile(r"^[a-z0-9-]+$")
_SEQ_RE = re.compile(r"^(\d+)-(\d+)$")


@dataclass(frozen=True)
class UR:
    type: str
    cbor: bytes

    def __post_init__(self):
        if not _TYPE_RE.match(self.type):
            raise QRFormatError(f"Invalid UR type: {self.type}")

    @classmethod
    def from_bytes(cls, ur_type: str, payload: bytes) -> UR:
        return cls(ur_type, cbor2.dumps(payload))

    def to_bytes(self) -> bytes:
        try:
            payload = cbor2.loads(self.cbor)
        except (cbor2.CBORDecodeError, ValueError) as e:
            raise QRFormatError(f"Invalid UR CBOR: {e}") from e
        if not isinstance(payload, bytes):
            raise QRFormatError(f"UR {self.type} does not carry a byte string")
        return payload


class UREncoder:
    def __init__(self, ur: UR, max_fragment_len: int, min_fragment_len: int = 10):
        self.ur = ur
        self.fountain = FountainEncoder(ur.cbor, max_fragment_len, min_fragment_len)

    @property
    def is_single_part(self) -> bool:
        return self.fountain.is_single_part

    @property
    def seq_len(self) -> int:
        return self.fountain.seq_len

    def next_part(self) -> str:
        if self.is_single_part:
            return f"ur:{self.ur.type}/{bytewords.encode(self.ur.cbor)}"
        part = self.fountain.next_part()
        body = bytewords.encode(part.to_cbor())
        return f"ur:{self.ur.type}/{part.seq_num}-{part.seq_len}/{body}"


def encode_ur(
    ur: UR, max_fragment_len: int, min_fragment_len: int = 10, extra_parts: int = 0
) -> list[str]:
    """
    Frames for a UR: one frame when it fits, otherwise seq_len pure fragments
    followed by extra_parts mixed parts.
    """
    encoder = UREncoder(ur, max_fragment_len, min_fragment_len)
    if encoder.is_single_part:
        return [encoder.next_part()]
    return [encoder.next_part() for _ in range(encoder.seq_len + extra_parts)]


@dataclass(frozen=True)
class ParsedURFrame:
    type: str
    seq_num: int | None
    seq_len: int | None
    body: str

    @property
    def is_single(self) -> bool:
        return self.seq_num is None


def parse_ur_frame(text: str) -> ParsedURFrame:
    lowered = text.strip().lower()
    if not lowered.startswith("ur:"):
        raise QRFormatError("Not a UR frame")
    components = lowered[3:].split("/")
    if len(components) == 2:
        ur_type, body = components
        seq_num = seq_len = None
    elif len(components) == 3:
        ur_type, seq, body = components
        match = _SEQ_RE.match(seq)
        if match is None:
            raise QRFormatError(f"Invalid UR sequence component: {seq}")
        seq_num, seq_len = int(match.group(1)), int(match.group(2))
        if seq_num < 1 or seq_len < 1:
            raise QRFormatError(f"Invalid UR sequence component: {seq}")
    else:
        raise QRFormatError("Invalid UR path")
    if not _TYPE_RE.match(ur_type) or not body:
        raise QRFormatError("Invalid UR frame")
    return ParsedURFrame(ur_type, seq_num, seq_len, body)


class URDecoder:
    """Collects UR frames of one type until the message is complete."""

    def __init__(self):
        self.ur_type: str | None = None
        self.fountain = FountainDecoder()
        self.seen_sequence: set[int] = set()
        self.result: UR | None = None

    def is_complete(self) -> bool:
        return self.result is not None

    @property
    def expected_part_count(self) -> int:
        return self.fountain.expected_part_count

    @property
    def estimated_progress(self) -> float:
        return 1.0 if self.is_complete() else self.fountain.estimated_progress

    def receive_part(self, text: str) -> bool:
        """
        Feed one frame. Returns False for duplicates and frames arriving after
        completion.

        Raises:
            QRFormatError: For malformed frames, a type change, or a part from
                a different message
        """
        if self.is_complete():
            return False
        frame = parse_ur_frame(text)
        if self.ur_type is not None and frame.type != self.ur_type:
            raise QRFormatError(f"UR type changed from {self.ur_type} to {frame.type}")

        if frame.is_single:
            cbor = bytewords.decode(frame.body)
            self.ur_type = frame.type
            self.result = UR(frame.type, cbor)
            return True

        if frame.seq_num in self.seen_sequence:
            return False
        part = FountainPart.from_cbor(bytewords.decode(frame.body))
        if part.seq_num != frame.seq_num or part.seq_len != frame.seq_len:
            raise QRFormatError("UR sequence header disagrees with its body")

        self.fountain.receive_part(part)
        self.ur_type = frame.type
        self.seen_sequence.add(frame.seq_num)
        if self.fountain.is_complete():
            self.result = UR(frame.type, self.fountain.result)
            logger.debug(f"UR {frame.type} complete after {len(self.seen_sequence)} parts")
        return True


def decode_ur(frames: list[str]) -> UR:
    decoder = URDecoder()
    for frame in frames:
        decoder.receive_part(frame)
        if decoder.is_complete():
            return decoder.result
    raise QRFormatError("Not enough UR parts to rebuild the message")

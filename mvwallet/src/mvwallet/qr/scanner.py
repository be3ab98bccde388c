"""
Frame accumulator for animated and single QR scans.

The camera loop feeds decoded QR text into ``process_frame`` one frame at a
time. The first recognized frame locks the format; for chunked formats it also
locks the declared frame count, and a later frame declaring a different count
is an error rather than a silent restart.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger

from mvwallet.psbt.models import MalformedProposalError
from mvwallet.psbt.parser import decode_psbt_text
from mvwallet.qr import bbqr
from mvwallet.qr.errors import QRFormatError
from mvwallet.qr.ur import UR_TYPE_BYTES, UR_TYPE_CRYPTO_PSBT, UR_TYPE_PSBT, URDecoder

FORMAT_UR = "ur"
FORMAT_BBQR = "bbqr"
FORMAT_SIMPLE = "simple"
FORMAT_SINGLE = "single"

_SIMPLE_RE = re.compile(r"^p(\d+)/(\d+) (.+)$", re.DOTALL)

_UR_CONTENT = {
    UR_TYPE_CRYPTO_PSBT: "psbt",
    UR_TYPE_PSBT: "psbt",
    UR_TYPE_BYTES: "bytes",
}
_BBQR_CONTENT = {
    bbqr.FILE_TYPE_PSBT: "psbt",
    bbqr.FILE_TYPE_TRANSACTION: "transaction",
    bbqr.FILE_TYPE_JSON: "json",
    bbqr.FILE_TYPE_UNICODE: "text",
    bbqr.FILE_TYPE_BINARY: "bytes",
    bbqr.FILE_TYPE_CBOR: "cbor",
}


@dataclass(frozen=True)
class ScanResult:
    format: str
    content_type: str
    data: bytes


def detect_format(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith(bbqr.HEADER):
        return FORMAT_BBQR
    if stripped.lower().startswith("ur:"):
        return FORMAT_UR
    if _SIMPLE_RE.match(stripped):
        return FORMAT_SIMPLE
    return FORMAT_SINGLE


class FrameAccumulator:
    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.format: str | None = None
        self.total: int | None = None
        self.frames: dict[int, object] = {}
        self.ur_decoder: URDecoder | None = None
        self.result: ScanResult | None = None

    def is_complete(self) -> bool:
        return self.result is not None

    def get_result(self) -> ScanResult | None:
        return self.result

    @property
    def received_count(self) -> int:
        if self.format == FORMAT_UR and self.ur_decoder is not None:
            return len(self.ur_decoder.seen_sequence)
        return len(self.frames)

    def _drop_frames(self) -> None:
        # any frame of the set may be the bad one
        logger.warning(f"Discarding {len(self.frames)} frames that did not reassemble")
        self.frames = {}

    def _lock(self, fmt: str, total: int | None = None) -> None:
        if self.format is not None and self.format != fmt:
            raise QRFormatError(f"Frame format {fmt} mixed into a {self.format} scan")
        if total is not None and self.total is not None and total != self.total:
            raise QRFormatError(f"Frame declares {total} parts, scan locked to {self.total}")
        self.format = fmt
        if total is not None:
            self.total = total

    def process_frame(self, text: str) -> int | None:
        """
        Feed one scanned frame and return progress in percent.

        Returns None for unrecognized, duplicate, or late frames.

        Raises:
            QRFormatError: For a frame that conflicts with the locked format or
                frame count, or whose content is corrupt. The bad frame is
                dropped and the scan continues; a complete set that fails to
                reassemble is discarded, keeping the locked format and count.
        """
        if self.is_complete():
            logger.debug("Ignoring frame after scan completed")
            return None

        fmt = detect_format(text)
        if fmt == FORMAT_UR:
            return self._process_ur(text)
        if fmt == FORMAT_BBQR:
            return self._process_bbqr(text)
        if fmt == FORMAT_SIMPLE:
            return self._process_simple(text)
        return self._process_single(text)

    def _process_ur(self, text: str) -> int | None:
        self._lock(FORMAT_UR)
        if self.ur_decoder is None:
            self.ur_decoder = URDecoder()
        if not self.ur_decoder.receive_part(text):
            return None
        if self.ur_decoder.is_complete():
            ur = self.ur_decoder.result
            content = _UR_CONTENT.get(ur.type)
            if content is None:
                raise QRFormatError(f"Unsupported UR type: {ur.type}")
            self.result = ScanResult(FORMAT_UR, content, ur.to_bytes())
            return 100
        self.total = self.ur_decoder.expected_part_count
        return int(self.ur_decoder.estimated_progress * 100)

    def _process_bbqr(self, text: str) -> int | None:
        frame = bbqr.parse_bbqr_frame(text)
        if self.frames:
            first = next(iter(self.frames.values()))
            if (frame.encoding, frame.file_type) != (first.encoding, first.file_type):
                raise QRFormatError("BBQr frame from a different payload")
        self._lock(FORMAT_BBQR, frame.total)
        if frame.index in self.frames:
            return None
        bbqr.decode_chunk(frame)
        self.frames[frame.index] = frame
        logger.debug(f"BBQr frame {frame.index + 1}/{frame.total}")
        if len(self.frames) == frame.total:
            try:
                file_type, data = bbqr.join_bbqr(list(self.frames.values()))
            except QRFormatError:
                self._drop_frames()
                raise
            self.result = ScanResult(FORMAT_BBQR, _BBQR_CONTENT[file_type], data)
            return 100
        return len(self.frames) * 100 // frame.total

    def _process_simple(self, text: str) -> int | None:
        match = _SIMPLE_RE.match(text.strip())
        part, total = int(match.group(1)), int(match.group(2))
        if total < 1 or not 1 <= part <= total:
            raise QRFormatError(f"Invalid frame position {part}/{total}")
        self._lock(FORMAT_SIMPLE, total)
        if part in self.frames:
            return None
        self.frames[part] = match.group(3)
        if len(self.frames) == total:
            joined = "".join(self.frames[i] for i in range(1, total + 1))
            try:
                data = decode_psbt_text(joined)
            except MalformedProposalError as e:
                self._drop_frames()
                raise QRFormatError(f"Reassembled frames are not a PSBT: {e}") from e
            self.result = ScanResult(FORMAT_SIMPLE, "psbt", data)
            return 100
        return len(self.frames) * 100 // total

    def _process_single(self, text: str) -> int | None:
        if self.format is not None:
            # stray code in the middle of an animated scan
            return None
        try:
            data = decode_psbt_text(text)
        except MalformedProposalError:
            logger.debug("Unrecognized QR frame")
            return None
        self._lock(FORMAT_SINGLE, 1)
        self.result = ScanResult(FORMAT_SINGLE, "psbt", data)
        return 100

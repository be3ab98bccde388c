"""
QR transport codecs.

Available formats:
- UR (BC-UR v2): fountain-coded frames, ``ur:crypto-psbt`` (legacy) and
  ``ur:psbt`` (modern), ``ur:bytes`` for raw transactions
- BBQr: chunked frames with an 8 character ``B$`` header
- SeedQR: standard digit strings and compact entropy bytes, seeds only
"""

from mvwallet.qr.errors import QRFormatError
from mvwallet.qr.formats import (
    BBQR,
    PLAIN,
    SEEDQR_COMPACT,
    SEEDQR_STANDARD,
    UR_LEGACY,
    UR_MODERN,
    BBQrFormat,
    PlainFormat,
    SeedQRFormat,
    TransportFormat,
    URFormat,
    get_transport_format,
)
from mvwallet.qr.scanner import FrameAccumulator, ScanResult

__all__ = [
    "BBQR",
    "BBQrFormat",
    "FrameAccumulator",
    "PLAIN",
    "PlainFormat",
    "QRFormatError",
    "SEEDQR_COMPACT",
    "SEEDQR_STANDARD",
    "ScanResult",
    "SeedQRFormat",
    "TransportFormat",
    "UR_LEGACY",
    "UR_MODERN",
    "URFormat",
    "get_transport_format",
]

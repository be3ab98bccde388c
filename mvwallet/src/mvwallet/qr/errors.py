"""
QR transport errors.
"""


class QRFormatError(Exception):
    """Unrecognized, corrupt or inconsistent QR frame."""

    pass

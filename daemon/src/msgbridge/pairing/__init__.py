"""Pairing module for msgbridge.

Provides QR code rendering of pairing payloads for viewers and the CLI.
"""

from .qr_codec import DATA_URL_PREFIX, QrCodec, decode_data_url

__all__ = [
    "DATA_URL_PREFIX",
    "QrCodec",
    "decode_data_url",
]

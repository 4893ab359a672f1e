"""QR code encoding for pairing payloads.

The messaging endpoint hands out a short-lived pairing string while a new
device is being linked. Viewers render it as a scannable image; the CLI
prints it to the terminal or saves a PNG.
"""

import base64
import io

import qrcode
from qrcode.main import QRCode

DATA_URL_PREFIX = "data:image/png;base64,"


class QrCodec:
    """Encode pairing payloads as QR images."""

    def __init__(self, box_size: int = 10, border: int = 4):
        """Initialize codec.

        Args:
            box_size: Pixels per QR module.
            border: Quiet zone width in modules.
        """
        self.box_size = box_size
        self.border = border

    def _create_qr(self, payload: str) -> QRCode:
        """Create QR code object.

        Returns:
            QRCode instance with payload data.
        """
        qr = qrcode.QRCode(
            version=None,  # Auto-size
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=self.box_size,
            border=self.border,
        )
        qr.add_data(payload)
        qr.make(fit=True)
        return qr

    def to_png_bytes(self, payload: str) -> bytes:
        """Render the payload as PNG bytes."""
        qr = self._create_qr(payload)
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()

    def encode(self, payload: str) -> str:
        """Encode a raw payload as a PNG data URL.

        Args:
            payload: Raw pairing payload.

        Returns:
            String of the form "data:image/png;base64,...".
        """
        png = self.to_png_bytes(payload)
        return DATA_URL_PREFIX + base64.b64encode(png).decode("ascii")

    def to_terminal(self, payload: str) -> str:
        """Generate ASCII art for terminal display."""
        qr = self._create_qr(payload)

        output = io.StringIO()
        qr.print_ascii(out=output, invert=True)
        return output.getvalue()

    def to_png(self, payload: str, path: str) -> None:
        """Save QR code as PNG file."""
        with open(path, "wb") as f:
            f.write(self.to_png_bytes(payload))


def decode_data_url(data_url: str) -> bytes:
    """Extract PNG bytes from a data URL produced by QrCodec.encode.

    Raises:
        ValueError: If the string is not a PNG data URL.
    """
    if not data_url.startswith(DATA_URL_PREFIX):
        raise ValueError("Not a PNG data URL")
    return base64.b64decode(data_url[len(DATA_URL_PREFIX):])

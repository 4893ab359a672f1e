"""Tests for QR code encoding."""

import base64
import io

import pytest

from msgbridge.pairing import DATA_URL_PREFIX, QrCodec, decode_data_url

PAYLOAD = "2@Xr3pq7L1AbCdEfGh,9yM3cD0nQeK2vV8sWzP4tR6uYo=,hT1gFjN5bLqS0aZx=,kP8wE2rU4iO6="


def decode_qr(png: bytes) -> str:
    """Read a QR image back with OpenCV."""
    cv2 = pytest.importorskip("cv2")
    np = pytest.importorskip("numpy")
    from PIL import Image

    image = np.array(Image.open(io.BytesIO(png)).convert("L"))
    text, points, _ = cv2.QRCodeDetector().detectAndDecode(image)
    assert points is not None, "no QR code found"
    return text


class TestEncode:
    """Tests for data URL encoding."""

    def test_encode_returns_png_data_url(self):
        data_url = QrCodec().encode(PAYLOAD)

        assert data_url.startswith(DATA_URL_PREFIX)
        png = base64.b64decode(data_url[len(DATA_URL_PREFIX):])
        assert png[:8] == b"\x89PNG\r\n\x1a\n"

    def test_encoded_image_scans_back_to_payload(self):
        """The image decodes to exactly the raw payload."""
        png = decode_data_url(QrCodec().encode(PAYLOAD))

        assert decode_qr(png) == PAYLOAD

    def test_encoding_is_deterministic(self):
        codec = QrCodec()

        assert codec.encode(PAYLOAD) == codec.encode(PAYLOAD)

    def test_decode_data_url_rejects_other_formats(self):
        with pytest.raises(ValueError):
            decode_data_url("data:image/gif;base64,R0lGOD")


class TestTerminalAndFile:
    """Tests for CLI renderings."""

    def test_to_terminal_returns_block_art(self):
        art = QrCodec().to_terminal(PAYLOAD)

        assert art.count("\n") > 10
        assert "█" in art or "▀" in art or "▄" in art

    def test_to_png_writes_file(self, tmp_path):
        output = tmp_path / "qr.png"

        QrCodec().to_png(PAYLOAD, str(output))

        assert decode_qr(output.read_bytes()) == PAYLOAD

"""Rendering of signed admission payloads as QR images."""

import base64
from io import BytesIO

import qrcode
import qrcode.image.svg
from qrcode.constants import ERROR_CORRECT_M


def _build(data: str) -> qrcode.QRCode:
    qr = qrcode.QRCode(version=None, error_correction=ERROR_CORRECT_M, box_size=10, border=2)
    qr.add_data(data)
    qr.make(fit=True)
    return qr


def render_qr_png(qr_signature: str) -> bytes:
    img = _build(qr_signature).make_image(fill_color="black", back_color="white")
    buffered = BytesIO()
    img.save(buffered, format="PNG")
    return buffered.getvalue()


def render_qr_png_data_url(qr_signature: str) -> str:
    encoded = base64.b64encode(render_qr_png(qr_signature)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def render_qr_svg(qr_signature: str) -> str:
    img = _build(qr_signature).make_image(image_factory=qrcode.image.svg.SvgPathImage)
    buffered = BytesIO()
    img.save(buffered)
    return buffered.getvalue().decode("utf-8")

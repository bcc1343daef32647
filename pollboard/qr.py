"""
QR code helpers for poll sharing and magic-link login.
"""

from __future__ import annotations

import base64
from io import BytesIO
from typing import Optional
from urllib.parse import quote

import qrcode
from PIL import Image

from pollboard.config import get_settings

QR_WIDTH = 300
QR_BORDER = 2


def generate_poll_url(poll_id: str, base_url: Optional[str] = None) -> str:
    base_url = base_url or get_settings().app_url
    return f"{base_url.rstrip('/')}/polls/{poll_id}"


def generate_magic_link_url(token: str, base_url: Optional[str] = None) -> str:
    base_url = base_url or get_settings().app_url
    return f"{base_url.rstrip('/')}/auth/magic-link?token={quote(token)}"


def generate_login_url(email: str, base_url: Optional[str] = None) -> str:
    base_url = base_url or get_settings().app_url
    return f"{base_url.rstrip('/')}/login?email={quote(email, safe='')}"


def generate_qr_png(url: str, width: int = QR_WIDTH) -> bytes:
    """Render `url` as a square black-on-white PNG `width` pixels wide."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=QR_BORDER,
    )
    qr.add_data(url)
    qr.make(fit=True)
    # Pick the largest whole box size that fits, then scale to the exact width.
    qr.box_size = max(1, width // (qr.modules_count + 2 * QR_BORDER))
    image = qr.make_image(fill_color="black", back_color="white").get_image()
    if image.size != (width, width):
        image = image.resize((width, width), Image.NEAREST)

    buf = BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def qr_data_url(url: str) -> str:
    encoded = base64.b64encode(generate_qr_png(url)).decode("ascii")
    return f"data:image/png;base64,{encoded}"

"""QR payload rendering for dashboards."""

from __future__ import annotations

import base64
import io
from functools import lru_cache

import qrcode
from qrcode.image.svg import SvgPathImage


@lru_cache(maxsize=8)
def qr_data_url(payload: str) -> str:
    """Render a QR payload as an SVG ``data:`` URL an ``<img>`` tag can show."""
    image = qrcode.make(payload, image_factory=SvgPathImage, border=2)
    buffer = io.BytesIO()
    image.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"

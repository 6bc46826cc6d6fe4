"""Verification links and the QR codes that carry them."""

from __future__ import annotations

import base64
import io
from urllib.parse import urlsplit

import qrcode
from qrcode.constants import ERROR_CORRECT_H

from aumai_docseal.errors import ValidationError


def build_verification_url(base_url: str, document_id: str) -> str:
    """Return ``<base_url>/verify/<document_id>``."""
    return f"{base_url.rstrip('/')}/verify/{document_id}"


def build_share_url(base_url: str, access_token: str) -> str:
    return f"{base_url.rstrip('/')}/shared/{access_token}"


def render_qr_data_url(data: str) -> str:
    """Encode *data* as a PNG QR code and return it as a ``data:`` URL."""
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECT_H,
        box_size=8,
        border=1,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def document_id_from_qr(qr_data: str) -> str:
    """Extract the document identifier from a scanned verification URL.

    The identifier is the final path segment of an absolute URL.

    Raises:
        ValidationError: if *qr_data* is empty, not an absolute URL, or has
            no trailing path segment.
    """
    if not qr_data or not qr_data.strip():
        raise ValidationError("QR code data is required")
    try:
        parts = urlsplit(qr_data.strip())
    except ValueError as exc:
        raise ValidationError("Invalid QR code data") from exc
    if not parts.scheme or not parts.netloc:
        raise ValidationError("Invalid QR code data")
    document_id = parts.path.split("/")[-1]
    if not document_id:
        raise ValidationError("Invalid QR code data: no document identifier")
    return document_id


__all__ = [
    "build_share_url",
    "build_verification_url",
    "document_id_from_qr",
    "render_qr_data_url",
]

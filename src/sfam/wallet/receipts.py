"""Top-up receipt uploads.

Receipts are stored under ``<upload_dir>/receipts/<user_id>/<uuid>.<ext>``;
the database keeps the path relative to the receipts root.
"""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path

from sfam.config import get_settings
from sfam.wallet.service import TopupError

ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".heic", ".pdf"}
ALLOWED_MIME_TYPES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/heic",
    "application/pdf",
}


def receipts_root() -> Path:
    return Path(get_settings().upload_dir) / "receipts"


async def save_receipt(user_id: int, filename: str, content: bytes, content_type: str | None = None) -> str:
    """Validate and persist a receipt; returns the stored relative path.

    Raises:
        TopupError: If the file is empty, too large or of a disallowed type.
    """
    max_bytes = get_settings().receipt_max_bytes
    if not content:
        msg = "Receipt file is empty"
        raise TopupError(msg)
    if len(content) > max_bytes:
        msg = f"Receipt too large (max {max_bytes // 1024 // 1024}MB)"
        raise TopupError(msg)

    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        msg = f"File type not allowed: {ext or 'none'!r}"
        raise TopupError(msg)
    if content_type and content_type not in ALLOWED_MIME_TYPES:
        msg = f"MIME type not allowed: {content_type!r}"
        raise TopupError(msg)

    relative = f"{user_id}/{uuid.uuid4()}{ext}"
    dest = receipts_root() / relative
    await asyncio.to_thread(dest.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(dest.write_bytes, content)
    return relative


def delete_receipt(relative_path: str) -> bool:
    """Remove a stored receipt; used when the database insert fails."""
    path = receipts_root() / relative_path
    if path.is_file():
        path.unlink()
        return True
    return False

"""Attachment uploads for direct messages.

Files land under ``<upload_dir>/<storage_path>`` where ``storage_path`` is the
``dm-media/...`` key that messages later reference.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from sfam.config import get_settings
from sfam.dm.shared import DMError, build_media_storage_path


def media_type_for(content_type: str | None) -> str:
    if content_type and content_type.startswith("image/"):
        return "image"
    if content_type and content_type.startswith("audio/"):
        return "audio"
    return "file"


async def save_media(user_id: int, filename: str, content: bytes) -> str:
    """Persist an upload and return its ``dm-media/`` storage path."""
    max_bytes = get_settings().dm_media_max_bytes
    if not content:
        msg = "Attachment is empty"
        raise DMError(msg)
    if len(content) > max_bytes:
        msg = f"Attachment too large (max {max_bytes // 1024 // 1024}MB)"
        raise DMError(msg)

    storage_path = build_media_storage_path(user_id, Path(filename).suffix.lower())
    dest = Path(get_settings().upload_dir) / storage_path
    await asyncio.to_thread(dest.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(dest.write_bytes, content)
    return storage_path

"""Pure direct-message helpers shared by the service, router and websocket layers."""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass

from sfam.db.models import DMParticipant

THREAD_CHANNEL_PREFIX = "dm:thread"
MEDIA_PREFIX = "dm-media/"
MEDIA_TYPES = {"image", "audio", "file"}
MESSAGE_TYPES = {"text", "system"}
PREVIEW_MAX_LENGTH = 240

_RANDOM_ALPHABET = string.ascii_lowercase + string.digits


class DMError(ValueError):
    """Invalid direct-message request (HTTP 400)."""


class DMForbidden(PermissionError):
    """Viewer may not act on the thread (HTTP 403)."""


@dataclass(frozen=True)
class AttachmentInput:
    storage_path: str
    media_type: str
    mime_type: str | None = None
    file_size: int | None = None
    duration_seconds: int | None = None


def order_participants(a: int, b: int) -> tuple[int, int]:
    return (a, b) if a < b else (b, a)


def can_user_interact_with_thread(participant: DMParticipant | None) -> bool:
    return participant is not None and participant.status != "blocked"


def thread_channel_name(thread_id: int) -> str:
    return f"{THREAD_CHANNEL_PREFIX}:{thread_id}"


def build_media_storage_path(user_id: int, extension: str | None = None) -> str:
    """``dm-media/<user>/<millis>-<random>.<ext>``; missing extensions become ``bin``."""
    ext = (extension or "").lstrip(".") or "bin"
    random_part = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(8))
    return f"{MEDIA_PREFIX}{user_id}/{int(time.time() * 1000)}-{random_part}.{ext}"


def validate_attachments(attachments: list[AttachmentInput]) -> None:
    for attachment in attachments:
        if not attachment.storage_path.startswith(MEDIA_PREFIX) or attachment.media_type not in MEDIA_TYPES:
            msg = "Attachments must reference the dm-media bucket with valid media types"
            raise DMError(msg)


def build_preview(content: str | None, message_type: str, attachments: list[AttachmentInput]) -> str:
    """Conversation-list preview for the newest message."""
    if message_type == "system":
        return "[system]"
    if content:
        return content[:PREVIEW_MAX_LENGTH]
    if any(a.media_type == "image" for a in attachments):
        return "[image]"
    return "[attachment]"

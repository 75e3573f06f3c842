"""Attachment storage and inlining.

Uploaded files live in the upload directory under a generated storage
key and are served back under the public upload base URL. Before a
conversation is sent upstream, each attachment is turned into either an
image reference or a block of text the model can read.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from chatrelay.errors import AttachmentUnavailableError
from chatrelay.schemas.chat import AttachmentPayload

logger = logging.getLogger(__name__)

DEFAULT_TEXT_LIMIT = 50_000

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class InlineImage:
    """Image part: a data URL or a remote URL."""

    url: str


@dataclass(frozen=True)
class InlineText:
    """Text part appended to the message content."""

    text: str


InlineContent = InlineImage | InlineText


def sanitize_file_name(name: str) -> str:
    """Replace anything outside ``[A-Za-z0-9._-]`` with a dash."""
    cleaned = _UNSAFE_CHARS.sub("-", name).strip("-")
    return cleaned or "file"


def storage_key_from_url(url: str) -> str | None:
    """Last path segment of an upload URL, without its query string."""
    segment = url.rsplit("/", 1)[-1].split("?", 1)[0].strip()
    return segment or None


def new_storage_key(file_name: str) -> str:
    """Generate ``<uuid>.<ext>`` for an uploaded file, keeping its extension."""
    suffix = PurePosixPath(sanitize_file_name(file_name)).suffix.lstrip(".")
    return f"{uuid.uuid4()}.{suffix or 'bin'}"


def truncate_text(text: str, limit: int = DEFAULT_TEXT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n\n[Text truncated: first {limit} of {len(text)} characters]"


def extract_pdf_text(data: bytes) -> str:
    """Extract the text of every page of a PDF document.

    Raises:
        PdfReadError: If the document cannot be parsed.
    """
    reader = PdfReader(io.BytesIO(data))
    return "\n".join(page.extract_text() or "" for page in reader.pages)


class AttachmentLoader:
    """Reads stored attachments and converts them into inline content.

    Args:
        upload_dir: Directory holding uploaded files.
        text_limit: Maximum number of characters of text inlined per file.
    """

    def __init__(self, upload_dir: Path | str, text_limit: int = DEFAULT_TEXT_LIMIT) -> None:
        self._upload_dir = Path(upload_dir)
        self._text_limit = text_limit

    @property
    def upload_dir(self) -> Path:
        return self._upload_dir

    def path_for(self, storage_key: str) -> Path:
        # Keys never address anything outside the upload directory
        return self._upload_dir / PurePosixPath(storage_key).name

    async def save_upload(self, file_name: str, data: bytes) -> str:
        """Write an uploaded file and return its storage key."""
        key = new_storage_key(file_name)
        self._upload_dir.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(self.path_for(key).write_bytes, data)
        logger.info("Stored upload %s as %s (%d bytes)", file_name, key, len(data))
        return key

    async def resolve(self, attachment: AttachmentPayload) -> InlineContent:
        """Convert one attachment into an image reference or text.

        Raises:
            AttachmentUnavailableError: If the stored file cannot be read
                or a PDF cannot be parsed.
        """
        is_image = attachment.mime_type.startswith("image/")
        key = attachment.storage_key or storage_key_from_url(attachment.url)

        if key is None:
            if is_image:
                return InlineImage(url=attachment.url)
            return InlineText(
                text=f"Attached file: {attachment.file_name} ({attachment.mime_type}).\n{attachment.url}"
            )

        try:
            data = await asyncio.to_thread(self.path_for(key).read_bytes)
        except OSError as e:
            raise AttachmentUnavailableError(
                f"Attachment {attachment.file_name!r} could not be read: {e}"
            ) from e

        if is_image:
            encoded = base64.b64encode(data).decode("ascii")
            return InlineImage(url=f"data:{attachment.mime_type};base64,{encoded}")

        if attachment.mime_type == "application/pdf":
            try:
                text = await asyncio.to_thread(extract_pdf_text, data)
            except PdfReadError as e:
                raise AttachmentUnavailableError(
                    f"PDF {attachment.file_name!r} could not be parsed: {e}"
                ) from e
            return InlineText(text=truncate_text(text, self._text_limit))

        try:
            return InlineText(text=truncate_text(data.decode("utf-8"), self._text_limit))
        except UnicodeDecodeError:
            encoded = base64.b64encode(data).decode("ascii")
            return InlineText(text=f"Attached file (base64) {attachment.file_name}:\n{encoded}")

"""
Inbound attachments: resolving them from the client and saving them under
the state directory so the agent can read them.

Attachment payloads arrive as mappings. Inline attachments carry their
bytes in ``content``; remote attachments carry a URL and are downloaded and
decrypted by the client (``MessagingClient.download_attachment``).
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Callable, Awaitable, Sequence

from .session import SavedMedia

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "attachment"

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]+')


@dataclass(frozen=True)
class Attachment:
    """Decoded attachment bytes."""
    content: bytes
    mime_type: Optional[str] = None
    filename: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        content = data['content']
        if isinstance(content, str):
            content = content.encode('utf-8')
        return cls(
            content=bytes(content),
            mime_type=data.get('mimeType'),
            filename=data.get('filename'),
        )


AttachmentFetcher = Callable[[Dict[str, Any]], Awaitable[Attachment]]


def is_inline(entry: Dict[str, Any]) -> bool:
    return entry.get('content') is not None


def safe_filename(name: Optional[str]) -> str:
    base = Path(name or DEFAULT_FILENAME).name
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned or DEFAULT_FILENAME


class MediaStore:
    """
    Writes inbound attachments to ``<state>/media/inbound``.

    Files are owner-only and get a random prefix, so two senders using the
    same filename never overwrite each other.
    """

    def __init__(self, state_dir: Path):
        self.directory = Path(state_dir) / "media" / "inbound"

    def _write(self, attachment: Attachment) -> SavedMedia:
        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        path = self.directory / f"{uuid.uuid4().hex[:12]}-{safe_filename(attachment.filename)}"
        path.write_bytes(attachment.content)
        path.chmod(0o600)
        return SavedMedia(path=str(path), content_type=attachment.mime_type)

    async def save(self, attachment: Attachment) -> SavedMedia:
        return await asyncio.to_thread(self._write, attachment)

    async def save_all(
        self,
        entries: Sequence[Dict[str, Any]],
        fetch: AttachmentFetcher,
        account_id: str = "default",
    ) -> Tuple[List[str], List[SavedMedia]]:
        """
        Resolve and save every entry. Entries that fail are logged and
        skipped; returns the display filenames and saved files of the rest.
        """
        filenames: List[str] = []
        saved: List[SavedMedia] = []
        for entry in entries:
            try:
                attachment = await fetch(entry)
                media = await self.save(attachment)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                kind = "inline" if is_inline(entry) else "remote"
                logger.error(f"[{account_id}] Failed to save {kind} attachment: {e}")
                continue
            saved.append(media)
            filenames.append(attachment.filename or entry.get('filename') or DEFAULT_FILENAME)
        return filenames, saved


def client_fetcher(client) -> AttachmentFetcher:
    """Fetcher that decodes inline entries and downloads remote ones through ``client``."""
    async def fetch(entry: Dict[str, Any]) -> Attachment:
        if is_inline(entry):
            return Attachment.from_dict(entry)
        return await client.download_attachment(entry)
    return fetch

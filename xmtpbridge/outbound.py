"""
Outbound delivery: text chunking and sending through a running client.
"""

import logging
from typing import List, Optional

from .config import ResolvedAccount
from .errors import DeliveryError
from .transport import ClientRegistry, Conversation

logger = logging.getLogger(__name__)

AGENT_NOT_AVAILABLE = "XMTP agent not available"


def _split_at(text: str, limit: int) -> int:
    """Best break position within ``limit``: paragraph, line, then word."""
    window = text[:limit + 1]
    for separator in ("\n\n", "\n", " "):
        index = window.rfind(separator, 0, limit + 1)
        if index > 0:
            return index
    return limit


def chunk_text(text: str, limit: int) -> List[str]:
    """
    Split ``text`` into chunks of at most ``limit`` characters, preferring
    paragraph, then line, then word boundaries. Whitespace at the breaks is
    dropped; empty chunks are never produced.
    """
    if limit <= 0:
        raise ValueError("chunk limit must be positive")
    chunks = []
    remaining = text.strip()
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        cut = _split_at(remaining, limit)
        chunk = remaining[:cut].rstrip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[cut:].lstrip()
    return chunks


async def resolve_conversation(
    registry: ClientRegistry,
    account_id: str,
    conversation_id: str,
    kind: str = "final",
) -> Conversation:
    client = registry.get(account_id)
    if client is None:
        raise DeliveryError(AGENT_NOT_AVAILABLE, kind=kind)
    conversation = await client.get_conversation(conversation_id)
    if conversation is None:
        raise DeliveryError(f"Conversation not found: {conversation_id[:12]}...", kind=kind)
    return conversation


async def deliver_reply(
    registry: ClientRegistry,
    account: ResolvedAccount,
    conversation_id: str,
    text: Optional[str],
    kind: str = "final",
) -> int:
    """
    Send a reply to a conversation in chunks of ``account.text_chunk_limit``.
    Returns the number of chunks sent; the first failing chunk raises.
    """
    if not text or not text.strip():
        return 0

    conversation = await resolve_conversation(registry, account.account_id, conversation_id, kind)
    sent = 0
    for chunk in chunk_text(text, account.text_chunk_limit):
        try:
            await conversation.send_text(chunk)
        except Exception as e:
            logger.error(f"[{account.account_id}] Failed to send message: {e}")
            raise DeliveryError(f"Send failed after {sent} chunk(s): {e}", kind=kind) from e
        sent += 1
    return sent


async def send_text(
    registry: ClientRegistry,
    account: ResolvedAccount,
    to: str,
    text: str,
) -> dict:
    """Outbound send to a conversation id, or to an address via a new DM."""
    client = registry.get(account.account_id)
    if client is None:
        raise DeliveryError(
            f"XMTP agent not running for account {account.account_id}. Is the gateway started?"
        )
    conversation = await client.get_conversation(to)
    if conversation is None and to.startswith("0x"):
        conversation = await client.create_dm(to)
    if conversation is None:
        raise DeliveryError(f"Conversation not found: {to[:12]}...")

    message_ids = []
    for chunk in chunk_text(text, account.text_chunk_limit):
        message_ids.append(await conversation.send_text(chunk))
    return {'channel': 'xmtp', 'to': to, 'messageIds': message_ids}

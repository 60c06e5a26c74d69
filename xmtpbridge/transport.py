"""
Transport seam for the XMTP client.

The protocol client (connection, encryption, conversation storage) is an
external SDK. This module declares the small surface the bridge relies on,
the factory signature used to build clients, and the per-process registry
of running clients.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Callable, Dict, Awaitable, Any, List

from .identity import ensure_hex_prefix, resolve_db_path
from .media import Attachment

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 10.0


class Conversation(ABC):
    """A DM or group conversation handle."""

    id: str

    @abstractmethod
    async def send_text(self, text: str) -> Optional[str]:
        """Send a text message; returns the message id when known."""


class MessagingClient(ABC):
    """Running XMTP agent for one identity."""

    address: Optional[str] = None

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def create_dm(self, address: str) -> Conversation:
        ...

    @abstractmethod
    async def download_attachment(self, remote: Dict[str, Any]) -> Attachment:
        """Download and decrypt a remote attachment."""

    @abstractmethod
    def on_event(self, kind: str, handler: Callable[[Dict[str, Any]], Awaitable[None]]) -> None:
        """
        Register a handler for ``text``, ``reaction`` or ``attachment``
        events. Handlers receive a mapping with ``sender``,
        ``conversationId``, ``isDirect``, ``messageId`` and the kind-specific
        payload (``content``, ``reaction`` or ``attachments``).
        """


@dataclass(frozen=True)
class ClientOptions:
    """Everything a factory needs to open a client."""
    wallet_key: str
    db_encryption_key: str
    env: str
    db_path: Path


ClientFactory = Callable[[ClientOptions], Awaitable[MessagingClient]]


def build_client_options(
    wallet_key: str,
    db_encryption_key: str,
    env: str,
    account_id: str,
    state_dir: Path,
) -> ClientOptions:
    return ClientOptions(
        wallet_key=ensure_hex_prefix(wallet_key),
        db_encryption_key=ensure_hex_prefix(db_encryption_key),
        env=env,
        db_path=resolve_db_path(state_dir, env, account_id, wallet_key),
    )


async def run_temporary_client(
    factory: ClientFactory,
    options: ClientOptions,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> Optional[str]:
    """
    Open a client, start it and tear it down again.

    Used as a liveness probe; returns the address the network reports.
    Raises whatever the client raised, or asyncio.TimeoutError.
    """
    client = await asyncio.wait_for(factory(options), timeout=timeout)
    try:
        await asyncio.wait_for(client.start(), timeout=timeout)
        return client.address
    finally:
        try:
            await client.stop()
        except Exception as e:
            logger.warning(f"Error stopping temporary client: {e}")


class ClientRegistry:
    """Running clients keyed by account id. One instance per gateway process."""

    def __init__(self):
        self._clients: Dict[str, MessagingClient] = {}

    def set(self, account_id: str, client: Optional[MessagingClient]) -> None:
        if client is None:
            self._clients.pop(account_id, None)
        else:
            self._clients[account_id] = client

    def get(self, account_id: str) -> Optional[MessagingClient]:
        return self._clients.get(account_id)

    def account_ids(self) -> List[str]:
        return list(self._clients)

    def __contains__(self, account_id: str) -> bool:
        return account_id in self._clients

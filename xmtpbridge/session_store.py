"""
Session metadata store.
Persists the last inbound activity of each session so envelopes can show
the time elapsed since the previous message.
"""

import os
import json
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Dict, Any, AsyncIterator

from .errors import RoutingError

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class SessionStore:
    """
    JSON file of session entries keyed by session key:

        {"version": 1, "sessions": {"<sessionKey>": {"updatedAt": <ms>, ...}}}

    Writes for one session key are serialized; ``updatedAt`` only moves
    forward, so the event with the latest receipt time wins. A session's lock
    is dropped once nothing holds or waits on it.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._file_lock = asyncio.Lock()

    @asynccontextmanager
    async def _session_lock(self, session_key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_key, asyncio.Lock())
        self._lock_users[session_key] = self._lock_users.get(session_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_key] -= 1
            if not self._lock_users[session_key]:
                del self._lock_users[session_key]
                del self._locks[session_key]

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {'version': STORE_VERSION, 'sessions': {}}
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RoutingError(f"Session store {self.path} unreadable: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get('sessions'), dict):
            raise RoutingError(f"Session store {self.path} has an unexpected shape")
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + f".{os.getpid()}.tmp")
            with open(tmp_path, 'w') as f:
                json.dump(data, f, indent=2)
            tmp_path.chmod(0o600)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise RoutingError(f"Session store {self.path} not writable: {e}") from e

    def get(self, session_key: str) -> Optional[Dict[str, Any]]:
        """Session entry or None. Raises RoutingError if the store is unreadable."""
        return self._load()['sessions'].get(session_key)

    def read_updated_at(self, session_key: str) -> Optional[int]:
        """
        Last activity timestamp (epoch ms) for a session.
        Degrades to None when the store is missing or unreadable.
        """
        try:
            entry = self.get(session_key)
        except RoutingError as e:
            logger.warning(f"Session timestamp unavailable: {e}")
            return None
        if not entry:
            return None
        updated_at = entry.get('updatedAt')
        return int(updated_at) if isinstance(updated_at, (int, float)) else None

    def _apply_inbound(self, ctx) -> bool:
        data = self._load()
        sessions = data['sessions']
        entry = dict(sessions.get(ctx.session_key) or {})

        previous = entry.get('updatedAt')
        if isinstance(previous, (int, float)) and previous > ctx.timestamp:
            logger.debug(f"Skipped stale session update for {ctx.session_key}")
            return False

        entry.update({
            'updatedAt': ctx.timestamp,
            'channel': ctx.provider,
            'accountId': ctx.account_id,
            'chatType': ctx.chat_type,
            'lastFrom': ctx.from_,
            'lastTo': ctx.to,
            'lastMessageId': ctx.message_sid,
        })
        entry.setdefault('createdAt', ctx.timestamp)
        sessions[ctx.session_key] = entry
        self._save(data)
        return True

    async def record_inbound(self, ctx) -> bool:
        """
        Record an inbound context against its session key.

        Returns False when a newer event has already been recorded for the
        session. Raises RoutingError if the store cannot be written.
        """
        async with self._session_lock(ctx.session_key):
            async with self._file_lock:
                return await asyncio.to_thread(self._apply_inbound, ctx)

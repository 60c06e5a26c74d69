"""
Pairing store: operator-approved senders and pending pairing requests.

A sender that DMs an account under the ``pairing`` policy gets a one-time
code; the operator approves the code and the sender's address moves to the
approved list.
"""

import json
import os
import asyncio
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

from nacl.utils import random

logger = logging.getLogger(__name__)

# No 0/O/1/I so codes survive being read aloud.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
MAX_PENDING_REQUESTS = 50


def generate_pairing_code(length: int = CODE_LENGTH) -> str:
    return ''.join(CODE_ALPHABET[b % len(CODE_ALPHABET)] for b in random(length))


def build_pairing_reply(channel: str, id_line: str, code: str) -> str:
    """Text sent back to a sender that is not paired yet."""
    return (
        "This agent only answers approved contacts.\n"
        f"{id_line}\n"
        f"Pairing code: {code}\n"
        f"Ask the operator to approve it with: pairing approve {channel} {code}"
    )


class PairingStore:
    """
    JSON-file backed pairing state, one file per channel:

        <state_dir>/credentials/<channel>-pairing.json
    """

    def __init__(self, state_dir: Path):
        self.dir = Path(state_dir) / "credentials"
        self._lock = asyncio.Lock()

    def _path(self, channel: str) -> Path:
        return self.dir / f"{channel}-pairing.json"

    def _load(self, channel: str) -> Dict[str, Any]:
        path = self._path(channel)
        if not path.exists():
            return {'version': 1, 'allowFrom': [], 'requests': []}
        with open(path, 'r') as f:
            data = json.load(f)
        data.setdefault('allowFrom', [])
        data.setdefault('requests', [])
        return data

    def _save(self, channel: str, data: Dict[str, Any]) -> None:
        path = self._path(channel)
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2)
        tmp_path.chmod(0o600)
        os.replace(tmp_path, path)

    async def read_allow_from(self, channel: str) -> List[str]:
        """Approved sender ids for ``channel``."""
        async with self._lock:
            return list(self._load(channel)['allowFrom'])

    async def upsert_pairing_request(
        self,
        channel: str,
        sender_id: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, bool]:
        """
        Return the pending code for ``sender_id``, creating one if needed.
        The boolean is True when the request was created by this call.
        """
        async with self._lock:
            data = self._load(channel)
            key = sender_id.lower()
            for request in data['requests']:
                if request['id'].lower() == key:
                    request['lastSeenAt'] = datetime.now(timezone.utc).isoformat()
                    self._save(channel, data)
                    return request['code'], False

            now = datetime.now(timezone.utc).isoformat()
            code = generate_pairing_code()
            data['requests'].append({
                'id': sender_id,
                'code': code,
                'createdAt': now,
                'lastSeenAt': now,
                'meta': meta or {},
            })
            # Oldest pending requests go first once the queue is full.
            data['requests'] = data['requests'][-MAX_PENDING_REQUESTS:]
            self._save(channel, data)
            logger.info(f"Pairing request created for {sender_id[:12]} on {channel}")
            return code, True

    async def approve(self, channel: str, code: str) -> Optional[str]:
        """Approve a pending request by code. Returns the approved id."""
        async with self._lock:
            data = self._load(channel)
            code = code.strip().upper()
            for request in data['requests']:
                if request['code'] == code:
                    data['requests'].remove(request)
                    if request['id'] not in data['allowFrom']:
                        data['allowFrom'].append(request['id'])
                    self._save(channel, data)
                    logger.info(f"Pairing approved for {request['id'][:12]} on {channel}")
                    return request['id']
            return None

    async def list_requests(self, channel: str) -> List[Dict[str, Any]]:
        async with self._lock:
            return list(self._load(channel)['requests'])

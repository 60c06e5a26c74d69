"""
Session routing: maps (channel, account, peer) to an agent and session key.

Routing is a pure function of its inputs and the static ``agents.bindings``
list of the configuration; no mutable routing table is consulted.

Binding format::

    {"agentId": "support",
     "match": {"channel": "xmtp", "accountId": "default",
               "peer": {"kind": "group", "id": "<conversation id>"}}}
"""

import logging
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from .config import CHANNEL_ID, DEFAULT_AGENT_ID
from .session import Peer, SessionRoute
from .session_store import SessionStore

logger = logging.getLogger(__name__)

# Higher wins; ties keep config order.
_SPECIFICITY = {"peer": 3, "account": 2, "channel": 1}


def normalize_agent_id(agent_id: Optional[str]) -> str:
    value = (agent_id or "").strip().lower()
    return value or DEFAULT_AGENT_ID


def build_session_key(agent_id: str, channel: str, account_id: str, peer: Peer) -> str:
    return f"agent:{agent_id}:{channel}:{account_id}:{peer.kind.value}:{peer.id.strip().lower()}"


def _match_binding(
    binding: Dict[str, Any],
    channel: str,
    account_id: str,
    peer: Peer,
) -> Optional[str]:
    """Return the match level of ``binding`` or None if it does not apply."""
    match = binding.get('match') or {}
    if (match.get('channel') or channel) != channel:
        return None

    bound_account = match.get('accountId')
    if bound_account not in (None, "*", account_id):
        return None

    bound_peer = match.get('peer')
    if bound_peer:
        if bound_peer.get('kind') != peer.kind.value:
            return None
        if str(bound_peer.get('id', '')).lower() != peer.id.lower():
            return None
        return "peer"

    if bound_account not in (None, "*"):
        return "account"
    return "channel"


def resolve_route(
    cfg: Dict[str, Any],
    account_id: str,
    peer: Peer,
    channel: str = CHANNEL_ID,
) -> SessionRoute:
    """Resolve the agent and session key for an inbound peer."""
    agents = cfg.get('agents') or {}
    candidates: List[Tuple[int, int, str, str]] = []
    for index, binding in enumerate(agents.get('bindings') or []):
        level = _match_binding(binding, channel, account_id, peer)
        if level and binding.get('agentId'):
            candidates.append((-_SPECIFICITY[level], index, level, binding['agentId']))

    if candidates:
        _, _, matched_by, agent_id = min(candidates)
    else:
        matched_by, agent_id = "default", agents.get('default')

    agent_id = normalize_agent_id(agent_id)
    return SessionRoute(
        agent_id=agent_id,
        session_key=build_session_key(agent_id, channel, account_id, peer),
        account_id=account_id,
        channel=channel,
        peer=peer,
        matched_by=matched_by,
    )


def resolve_store_path(template: Optional[str], agent_id: str, state_dir: Path) -> Path:
    """Session store file for an agent; ``{agentId}`` in ``template`` is expanded."""
    if template:
        return Path(template.replace("{agentId}", agent_id)).expanduser()
    return Path(state_dir) / "agents" / agent_id / "sessions" / "sessions.json"


class SessionRouter:
    """
    Resolves routes and reads session activity for display.

    One ``SessionStore`` is kept per store file so that per-session write
    locks are shared by every event that lands in the same store.
    """

    def __init__(self, state_dir: Path, channel: str = CHANNEL_ID):
        self.state_dir = Path(state_dir)
        self.channel = channel
        self._stores: Dict[Path, SessionStore] = {}

    def resolve_route(self, cfg: Dict[str, Any], account_id: str, peer: Peer) -> SessionRoute:
        return resolve_route(cfg, account_id, peer, channel=self.channel)

    def store_for(self, cfg: Dict[str, Any], route: SessionRoute) -> SessionStore:
        template = (cfg.get('session') or {}).get('store')
        path = resolve_store_path(template, route.agent_id, self.state_dir)
        store = self._stores.get(path)
        if store is None:
            store = self._stores[path] = SessionStore(path)
        return store

    def previous_activity_timestamp(
        self,
        cfg: Dict[str, Any],
        route: SessionRoute,
    ) -> Optional[int]:
        """Last activity of the session in epoch ms, or None. Display only."""
        return self.store_for(cfg, route).read_updated_at(route.session_key)

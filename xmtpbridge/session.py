"""
Inbound event and session route types.
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple
from enum import Enum


def now_ms() -> int:
    return int(time.time() * 1000)


class PeerKind(Enum):
    DIRECT = "direct"
    GROUP = "group"


@dataclass(frozen=True)
class SavedMedia:
    """An inbound attachment written to local storage."""
    path: str
    content_type: Optional[str] = None


class ReactionAction(Enum):
    ADDED = "added"
    REMOVED = "removed"

    @classmethod
    def from_wire(cls, value) -> "ReactionAction":
        """The XMTP reaction codec uses 1 for added and 2 for removed."""
        if value in (2, "2", "removed"):
            return cls.REMOVED
        return cls.ADDED


@dataclass(frozen=True)
class InboundEvent:
    """One inbound message as handed over by the XMTP client."""
    sender: str
    conversation_id: str
    content: str
    is_direct: bool
    message_id: Optional[str] = None
    received_at: int = field(default_factory=now_ms)
    media: Tuple[SavedMedia, ...] = ()

    @property
    def peer_kind(self) -> PeerKind:
        return PeerKind.DIRECT if self.is_direct else PeerKind.GROUP

    @classmethod
    def from_reaction(
        cls,
        sender: str,
        conversation_id: str,
        emoji: str,
        action,
        reference: str,
        is_direct: bool,
        message_id: Optional[str] = None,
    ) -> "InboundEvent":
        """Render a reaction as descriptive text for the agent."""
        label = ReactionAction.from_wire(action).value
        return cls(
            sender=sender,
            conversation_id=conversation_id,
            content=f"[Reaction: {emoji} {label} to message {reference}]",
            is_direct=is_direct,
            message_id=message_id,
        )

    @classmethod
    def from_attachments(
        cls,
        sender: str,
        conversation_id: str,
        filenames: Sequence[str],
        media: Sequence[SavedMedia],
        is_direct: bool,
        message_id: Optional[str] = None,
    ) -> "InboundEvent":
        """
        ``[Attachment: a.png]`` for one file, ``[Attachments: a.png, b.pdf]``
        for several. ``media`` holds the saved copies.
        """
        if len(filenames) == 1:
            content = f"[Attachment: {filenames[0]}]"
        else:
            content = f"[Attachments: {', '.join(filenames)}]"
        return cls(
            sender=sender,
            conversation_id=conversation_id,
            content=content,
            is_direct=is_direct,
            message_id=message_id,
            media=tuple(media),
        )


@dataclass(frozen=True)
class Peer:
    kind: PeerKind
    id: str


@dataclass(frozen=True)
class SessionRoute:
    """Where an inbound event is delivered: which agent, which session."""
    agent_id: str
    session_key: str
    account_id: str
    channel: str
    peer: Peer
    matched_by: str = "default"

"""
Envelope formatting: wraps raw message content in a human-readable header
and builds the canonical inbound context handed to the reply framework.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple

from .config import CHANNEL_ID
from .session import InboundEvent, SessionRoute, now_ms

CHANNEL_LABEL = "XMTP"
DISPLAY_ID_LENGTH = 12


def display_id(value: str) -> str:
    return value[:DISPLAY_ID_LENGTH]


@dataclass(frozen=True)
class EnvelopeOptions:
    include_timestamp: bool = True
    include_elapsed: bool = True

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "EnvelopeOptions":
        data = cfg.get('envelope') or {}
        return cls(
            include_timestamp=data.get('timestamp', True),
            include_elapsed=data.get('elapsed', True),
        )


def format_elapsed(elapsed_ms: int) -> str:
    """Compact elapsed time: 45s, 5m, 3h, 2d."""
    seconds = max(0, elapsed_ms // 1000)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 48:
        return f"{hours}h"
    return f"{hours // 24}d"


def format_agent_envelope(
    channel: str,
    from_: str,
    timestamp: int,
    body: str,
    previous_timestamp: Optional[int] = None,
    options: Optional[EnvelopeOptions] = None,
) -> str:
    """
    ``[XMTP 0x1234567890 +5m Sun 2026-10-18 12:00 UTC] body``

    The elapsed part only appears when a previous timestamp is known.
    """
    options = options or EnvelopeOptions()
    parts = [channel, from_]
    if options.include_elapsed and previous_timestamp is not None:
        parts.append("+" + format_elapsed(timestamp - previous_timestamp))
    if options.include_timestamp:
        dt = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
        parts.append(dt.strftime("%a %Y-%m-%d %H:%M UTC"))
    header = " ".join(p for p in parts if p)
    return f"[{header}] {body}"


@dataclass(frozen=True)
class InboundContext:
    """
    Canonical inbound record. Built once per event and passed unchanged
    through recording and reply dispatch.
    """
    body: str
    raw_body: str
    command_body: str
    from_: str
    to: str
    session_key: str
    account_id: str
    agent_id: str
    chat_type: str
    conversation_label: str
    sender_id: str
    provider: str
    surface: str
    message_sid: Optional[str]
    originating_channel: str
    originating_to: str
    timestamp: int
    previous_timestamp: Optional[int] = None
    media_paths: Tuple[str, ...] = ()
    media_types: Tuple[Optional[str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Framework key names. Media keys only appear for attachments."""
        data = {
            'Body': self.body,
            'RawBody': self.raw_body,
            'CommandBody': self.command_body,
            'From': self.from_,
            'To': self.to,
            'SessionKey': self.session_key,
            'AccountId': self.account_id,
            'AgentId': self.agent_id,
            'ChatType': self.chat_type,
            'ConversationLabel': self.conversation_label,
            'SenderId': self.sender_id,
            'Provider': self.provider,
            'Surface': self.surface,
            'MessageSid': self.message_sid,
            'OriginatingChannel': self.originating_channel,
            'OriginatingTo': self.originating_to,
            'Timestamp': self.timestamp,
            'PreviousTimestamp': self.previous_timestamp,
        }
        if self.media_paths:
            data.update({
                'MediaPath': self.media_paths[0],
                'MediaType': self.media_types[0],
                'MediaPaths': list(self.media_paths),
                'MediaTypes': list(self.media_types),
            })
        return data


def format_inbound_context(
    event: InboundEvent,
    route: SessionRoute,
    previous_timestamp: Optional[int],
    now: Optional[int] = None,
    options: Optional[EnvelopeOptions] = None,
) -> InboundContext:
    timestamp = now if now is not None else now_ms()
    body = format_agent_envelope(
        channel=CHANNEL_LABEL,
        from_=display_id(event.sender),
        timestamp=timestamp,
        body=event.content,
        previous_timestamp=previous_timestamp,
        options=options,
    )
    conversation_target = f"{CHANNEL_ID}:{event.conversation_id}"
    return InboundContext(
        body=body,
        raw_body=event.content,
        command_body=event.content,
        from_=f"{CHANNEL_ID}:{event.sender}",
        to=conversation_target,
        session_key=route.session_key,
        account_id=route.account_id,
        agent_id=route.agent_id,
        chat_type=event.peer_kind.value,
        conversation_label=display_id(event.conversation_id),
        sender_id=event.sender,
        provider=CHANNEL_ID,
        surface=CHANNEL_ID,
        message_sid=event.message_id,
        originating_channel=CHANNEL_ID,
        originating_to=conversation_target,
        timestamp=timestamp,
        previous_timestamp=previous_timestamp,
        media_paths=tuple(m.path for m in event.media),
        media_types=tuple(m.content_type for m in event.media),
    )

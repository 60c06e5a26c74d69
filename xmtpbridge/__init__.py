"""
xmtpbridge - XMTP channel adapter for OpenClaw agents

Bridges the XMTP end-to-end encrypted messaging network to an agent reply
framework: per-account access control, session routing, envelope
formatting, reply dispatch and the identity setup flow.

Usage:
    from xmtpbridge import XmtpBridge

    bridge = XmtpBridge(client_factory=create_client, generate=agent_reply)
    await bridge.start()

    # Provision an identity
    await bridge.methods.call("xmtp.setup", {"env": "dev"})
    await bridge.methods.call("xmtp.setup.complete")
"""

__version__ = "0.1.0"

from .client import XmtpBridge
from .config import ConfigStore, ResolvedAccount, resolve_account
from .identity import IdentityManager, IdentityMaterial, key_fingerprint
from .access import AccessGate, evaluate_dm_access, is_group_allowed
from .routing import SessionRouter, resolve_route
from .envelope import InboundContext, format_inbound_context
from .dispatch import ReplyDispatcher, ReplyPayload
from .pipeline import InboundPipeline
from .media import Attachment, MediaStore
from .setup_flow import SetupController, SetupState
from .gateway import GatewayMethods, SetupHttpServer
from .session import InboundEvent, Peer, PeerKind
from .transport import MessagingClient, Conversation, ClientOptions, ClientRegistry
from .errors import (
    XmtpBridgeError,
    ConfigurationError,
    AccessDeniedError,
    RoutingError,
    DeliveryError,
    SetupConflictError,
    SetupStateError,
    IdentityGenerationError,
    WritabilityError,
)

__all__ = [
    # Core
    "XmtpBridge",
    # Config
    "ConfigStore",
    "ResolvedAccount",
    "resolve_account",
    # Identity
    "IdentityManager",
    "IdentityMaterial",
    "key_fingerprint",
    # Access
    "AccessGate",
    "evaluate_dm_access",
    "is_group_allowed",
    # Routing and envelopes
    "SessionRouter",
    "resolve_route",
    "InboundContext",
    "format_inbound_context",
    # Dispatch
    "ReplyDispatcher",
    "ReplyPayload",
    "InboundPipeline",
    "Attachment",
    "MediaStore",
    # Setup
    "SetupController",
    "SetupState",
    "GatewayMethods",
    "SetupHttpServer",
    # Types
    "InboundEvent",
    "Peer",
    "PeerKind",
    "MessagingClient",
    "Conversation",
    "ClientOptions",
    "ClientRegistry",
    # Errors
    "XmtpBridgeError",
    "ConfigurationError",
    "AccessDeniedError",
    "RoutingError",
    "DeliveryError",
    "SetupConflictError",
    "SetupStateError",
    "IdentityGenerationError",
    "WritabilityError",
]

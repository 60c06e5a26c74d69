"""
Inbound access control for XMTP accounts.

Policy evaluation is pure (``evaluate_dm_access`` / ``is_group_allowed``);
``AccessGate`` adds the pairing-store lookup and the pairing reply side
effect. An explicit reject always wins and an unknown policy value fails
closed.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Iterable, Callable, Awaitable, Protocol, List, Tuple, Dict, Any

from .config import CHANNEL_ID, ResolvedAccount
from .errors import AccessDeniedError
from .pairing import build_pairing_reply

logger = logging.getLogger(__name__)

WILDCARD = "*"
ADDRESS_PREFIX = "xmtp:"


def normalize_address(raw: str) -> str:
    """Trim and strip an optional ``xmtp:`` target prefix."""
    value = str(raw).strip()
    if value.lower().startswith(ADDRESS_PREFIX):
        value = value[len(ADDRESS_PREFIX):].strip()
    return value


def _contains_address(entries: Iterable[str], sender: str) -> bool:
    target = normalize_address(sender).lower()
    if not target:
        return False
    return any(normalize_address(entry).lower() == target for entry in entries)


def is_group_allowed(account: ResolvedAccount, conversation_id: str) -> bool:
    policy = account.group_policy or "open"
    if policy == "open":
        return True
    if policy == "allowlist":
        return WILDCARD in account.groups or conversation_id in account.groups
    return False


@dataclass(frozen=True)
class DmAccessDecision:
    """Outcome of a DM policy check. ``reason`` is set on rejection."""
    allowed: bool
    reason: Optional[str] = None
    dm_policy: Optional[str] = None

    @classmethod
    def allow(cls, dm_policy: str) -> "DmAccessDecision":
        return cls(True, None, dm_policy)

    @classmethod
    def reject(cls, reason: str, dm_policy: str) -> "DmAccessDecision":
        return cls(False, reason, dm_policy)


def evaluate_dm_access(
    account: ResolvedAccount,
    sender: str,
    paired: Iterable[str] = (),
    conversation_id: Optional[str] = None,
) -> DmAccessDecision:
    """
    Evaluate the DM policy for ``sender``.

    - disabled: reject
    - open: admit
    - allowlist: admit iff sender is in ``allow_from`` (or it holds ``*``)
    - pairing: admit iff sender is in ``allow_from``, in ``paired`` (the
      pairing store), is the owner address, or writes from the owner
      conversation
    """
    policy = account.dm_policy or "pairing"

    if policy == "disabled":
        return DmAccessDecision.reject("disabled", policy)
    if policy == "open":
        return DmAccessDecision.allow(policy)

    if policy == "allowlist":
        if WILDCARD in account.allow_from or _contains_address(account.allow_from, sender):
            return DmAccessDecision.allow(policy)
        return DmAccessDecision.reject("blocked", policy)

    if policy == "pairing":
        if account.owner_address and _contains_address([account.owner_address], sender):
            return DmAccessDecision.allow(policy)
        if (
            account.owner_conversation_id
            and conversation_id
            and conversation_id == account.owner_conversation_id
        ):
            return DmAccessDecision.allow(policy)
        combined = list(account.allow_from) + list(paired)
        if WILDCARD in combined or _contains_address(combined, sender):
            return DmAccessDecision.allow(policy)
        return DmAccessDecision.reject("pairing", policy)

    logger.warning(f"[{account.account_id}] Unknown dmPolicy {policy!r}; rejecting")
    return DmAccessDecision.reject("blocked", policy)


class PairingStoreProtocol(Protocol):
    async def read_allow_from(self, channel: str) -> List[str]: ...

    async def upsert_pairing_request(
        self, channel: str, sender_id: str, meta: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, bool]: ...


ReplySender = Callable[[ResolvedAccount, str, str], Awaitable[None]]


class AccessGate:
    """
    Admits or rejects inbound events for an account.

    ``pairing_store`` is only consulted for the ``pairing`` DM policy.
    ``reply_sender(account, conversation_id, text)`` delivers pairing codes.
    """

    def __init__(
        self,
        pairing_store: Optional[PairingStoreProtocol] = None,
        reply_sender: Optional[ReplySender] = None,
        channel: str = CHANNEL_ID,
    ):
        self.pairing_store = pairing_store
        self.reply_sender = reply_sender
        self.channel = channel

    async def _paired_entries(self, account: ResolvedAccount) -> List[str]:
        if self.pairing_store is None:
            return []
        try:
            return await self.pairing_store.read_allow_from(self.channel)
        except Exception as e:
            # Unreadable pairing state admits nobody extra.
            logger.error(f"[{account.account_id}] Failed reading pairing store: {e}")
            return []

    async def check(self, account: ResolvedAccount, event) -> DmAccessDecision:
        """Policy decision for an inbound event, without side effects."""
        if not event.is_direct:
            if is_group_allowed(account, event.conversation_id):
                return DmAccessDecision.allow(account.group_policy)
            return DmAccessDecision.reject("group", account.group_policy)

        paired: List[str] = []
        if account.dm_policy == "pairing":
            paired = await self._paired_entries(account)
        return evaluate_dm_access(
            account, event.sender, paired, conversation_id=event.conversation_id,
        )

    async def admit(self, account: ResolvedAccount, event) -> bool:
        return (await self.check(account, event)).allowed

    async def require(self, account: ResolvedAccount, event) -> DmAccessDecision:
        """Like ``check`` but raises AccessDeniedError on rejection."""
        decision = await self.check(account, event)
        if not decision.allowed:
            raise AccessDeniedError(
                f"[{account.account_id}] {event.sender[:12]} rejected ({decision.reason})"
            )
        return decision

    async def enforce(self, account: ResolvedAccount, event, label: str = "message") -> bool:
        """
        ``admit`` plus side effects: drop logging and, under the pairing
        policy, a pairing code reply to first-time senders.
        """
        decision = await self.check(account, event)
        if decision.allowed:
            return True

        sender = event.sender[:12]
        if decision.reason == "group":
            if account.debug:
                logger.info(
                    f"[{account.account_id}] Dropped {label} from disallowed "
                    f"conversation {event.conversation_id[:12]}"
                )
        elif decision.reason == "pairing":
            await self._send_pairing_code(account, event)
        elif account.debug:
            logger.info(
                f"[{account.account_id}] Dropped {label} from {sender} "
                f"(dmPolicy={decision.dm_policy})"
            )
        return False

    async def _send_pairing_code(self, account: ResolvedAccount, event) -> None:
        if self.pairing_store is None:
            if account.debug:
                logger.info(
                    f"[{account.account_id}] Dropped DM from {event.sender[:12]} "
                    "(pairing required, no pairing store)"
                )
            return
        try:
            code, created = await self.pairing_store.upsert_pairing_request(
                self.channel, event.sender, {'address': event.sender},
            )
            if not created or self.reply_sender is None:
                return
            reply = build_pairing_reply(
                self.channel, f"Your address: {event.sender}", code,
            )
            await self.reply_sender(account, event.conversation_id, reply)
        except Exception as e:
            logger.error(
                f"[{account.account_id}] Pairing reply failed for {event.sender[:12]}: {e}"
            )

"""
Tests for the inbound access gate.
"""

import pytest
from unittest.mock import AsyncMock

from xmtpbridge.access import (
    AccessGate,
    evaluate_dm_access,
    is_group_allowed,
    normalize_address,
)
from xmtpbridge.config import ResolvedAccount
from xmtpbridge.errors import AccessDeniedError
from xmtpbridge.pairing import PairingStore
from xmtpbridge.session import InboundEvent


def make_account(**kwargs):
    return ResolvedAccount(account_id="default", **kwargs)


def dm(sender, conversation_id="conv-dm"):
    return InboundEvent(sender=sender, conversation_id=conversation_id, content="hi", is_direct=True)


def group_message(conversation_id, sender="0xabc"):
    return InboundEvent(sender=sender, conversation_id=conversation_id, content="hi", is_direct=False)


class TestNormalizeAddress:
    def test_strips_prefix_and_whitespace(self):
        assert normalize_address("  xmtp:0xABC ") == "0xABC"
        assert normalize_address("XMTP:0xabc") == "0xabc"
        assert normalize_address("0xabc") == "0xabc"


class TestDmPolicy:
    """Tests for the pure DM policy evaluation."""

    def test_disabled_rejects(self):
        decision = evaluate_dm_access(make_account(dm_policy="disabled"), "0xabc")
        assert not decision.allowed
        assert decision.reason == "disabled"

    def test_open_admits_anyone(self):
        assert evaluate_dm_access(make_account(dm_policy="open"), "0xanyone").allowed

    def test_allowlist_membership_is_case_insensitive(self):
        account = make_account(dm_policy="allowlist", allow_from=("0xABC",))
        assert evaluate_dm_access(account, "0xabc").allowed
        assert evaluate_dm_access(account, "xmtp:0xAbC").allowed
        assert not evaluate_dm_access(account, "0xdef").allowed

    def test_empty_allowlist_rejects_everyone(self):
        account = make_account(dm_policy="allowlist")
        decision = evaluate_dm_access(account, "0xabc")
        assert not decision.allowed
        assert decision.reason == "blocked"

    def test_allowlist_wildcard(self):
        account = make_account(dm_policy="allowlist", allow_from=("*",))
        assert evaluate_dm_access(account, "0xanyone").allowed

    def test_allowlist_ignores_paired_entries(self):
        account = make_account(dm_policy="allowlist")
        assert not evaluate_dm_access(account, "0xabc", paired=["0xabc"]).allowed

    def test_pairing_admits_paired_sender(self):
        account = make_account(dm_policy="pairing")
        assert evaluate_dm_access(account, "0xABC", paired=["0xabc"]).allowed
        decision = evaluate_dm_access(account, "0xdef", paired=["0xabc"])
        assert not decision.allowed
        assert decision.reason == "pairing"

    def test_pairing_admits_config_allow_from(self):
        account = make_account(dm_policy="pairing", allow_from=("0xabc",))
        assert evaluate_dm_access(account, "0xabc").allowed

    def test_pairing_admits_owner(self):
        account = make_account(dm_policy="pairing", owner_address="0xOwner")
        assert evaluate_dm_access(account, "0xowner").allowed

    def test_pairing_admits_owner_conversation(self):
        account = make_account(dm_policy="pairing", owner_conversation_id="conv-owner")
        assert evaluate_dm_access(account, "0xstranger", conversation_id="conv-owner").allowed
        assert not evaluate_dm_access(account, "0xstranger", conversation_id="conv-other").allowed

    def test_unknown_policy_fails_closed(self):
        account = make_account(dm_policy="everyone")
        assert not evaluate_dm_access(account, "0xabc").allowed


class TestGroupPolicy:
    """Tests for group conversation policy."""

    def test_open_by_default(self):
        assert is_group_allowed(make_account(), "any")

    def test_disabled(self):
        assert not is_group_allowed(make_account(group_policy="disabled"), "any")

    def test_allowlist(self):
        account = make_account(group_policy="allowlist", groups=("g1",))
        assert is_group_allowed(account, "g1")
        assert not is_group_allowed(account, "g2")

    def test_allowlist_wildcard_admits_every_conversation(self):
        account = make_account(group_policy="allowlist", groups=("*",))
        for conversation_id in ("g1", "g2", "0" * 64):
            assert is_group_allowed(account, conversation_id)


class TestAccessGate:
    """Tests for the gate with pairing store and reply side effects."""

    @pytest.mark.asyncio
    async def test_group_event_uses_group_policy(self):
        gate = AccessGate()
        account = make_account(dm_policy="disabled", group_policy="open")
        assert await gate.admit(account, group_message("g1"))
        decision = await gate.check(make_account(group_policy="disabled"), group_message("g1"))
        assert decision.reason == "group"

    @pytest.mark.asyncio
    async def test_direct_event_uses_dm_policy(self):
        gate = AccessGate()
        account = make_account(dm_policy="disabled", group_policy="open")
        assert not await gate.admit(account, dm("0xabc"))

    @pytest.mark.asyncio
    async def test_pairing_store_entries_admit(self, tmp_path):
        store = PairingStore(tmp_path)
        code, _ = await store.upsert_pairing_request("xmtp", "0xabc")
        await store.approve("xmtp", code)
        gate = AccessGate(pairing_store=store)
        assert await gate.admit(make_account(dm_policy="pairing"), dm("0xABC"))

    @pytest.mark.asyncio
    async def test_pairing_store_not_read_for_other_policies(self):
        store = AsyncMock()
        gate = AccessGate(pairing_store=store)
        await gate.admit(make_account(dm_policy="allowlist"), dm("0xabc"))
        store.read_allow_from.assert_not_called()

    @pytest.mark.asyncio
    async def test_unreadable_pairing_store_admits_nobody_extra(self):
        store = AsyncMock()
        store.read_allow_from.side_effect = OSError("disk gone")
        gate = AccessGate(pairing_store=store)
        assert not await gate.admit(make_account(dm_policy="pairing"), dm("0xabc"))

    @pytest.mark.asyncio
    async def test_enforce_sends_pairing_code_once(self, tmp_path):
        store = PairingStore(tmp_path)
        reply_sender = AsyncMock()
        gate = AccessGate(pairing_store=store, reply_sender=reply_sender)
        account = make_account(dm_policy="pairing")

        assert not await gate.enforce(account, dm("0xabc", "conv-1"))
        assert not await gate.enforce(account, dm("0xabc", "conv-1"))

        reply_sender.assert_awaited_once()
        sent_account, conversation_id, text = reply_sender.await_args.args
        assert sent_account is account
        assert conversation_id == "conv-1"
        requests = await store.list_requests("xmtp")
        assert requests[0]['code'] in text
        assert "0xabc" in text

    @pytest.mark.asyncio
    async def test_enforce_survives_reply_failure(self, tmp_path):
        reply_sender = AsyncMock(side_effect=RuntimeError("agent not available"))
        gate = AccessGate(pairing_store=PairingStore(tmp_path), reply_sender=reply_sender)
        assert not await gate.enforce(make_account(dm_policy="pairing"), dm("0xabc"))

    @pytest.mark.asyncio
    async def test_enforce_admits_without_side_effects(self):
        reply_sender = AsyncMock()
        gate = AccessGate(pairing_store=AsyncMock(), reply_sender=reply_sender)
        assert await gate.enforce(make_account(dm_policy="open"), dm("0xabc"))
        reply_sender.assert_not_called()

    @pytest.mark.asyncio
    async def test_require_raises_on_rejection(self):
        gate = AccessGate()
        with pytest.raises(AccessDeniedError):
            await gate.require(make_account(dm_policy="disabled"), dm("0xabc"))
        decision = await gate.require(make_account(dm_policy="open"), dm("0xabc"))
        assert decision.allowed

"""
Tests for configuration loading, validation and account resolution.
"""

import json
import stat

import pytest

from xmtpbridge.config import (
    ConfigStore,
    ResolvedAccount,
    ensure_configured,
    list_account_ids,
    list_enabled_accounts,
    resolve_account,
    resolve_config_path,
    resolve_default_account_id,
    resolve_state_dir,
    update_account_section,
    validate_config,
)
from xmtpbridge.errors import ConfigurationError

from conftest import TEST_WALLET_KEY, TEST_ADDRESS, write_config


class TestConfigStore:
    """Tests for the JSON config file."""

    def test_missing_file_loads_empty(self, tmp_path):
        assert ConfigStore(tmp_path / "none.json").load() == {}

    def test_write_and_load(self, tmp_path):
        store = ConfigStore(tmp_path / "cfg" / "openclaw.json")
        cfg = {'channels': {'xmtp': {'env': "dev", 'dmPolicy': "open"}}}
        store.write(cfg)
        assert store.load() == cfg
        assert stat.S_IMODE(store.path.stat().st_mode) == 0o600

    def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / "openclaw.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            ConfigStore(path).load()

    def test_schema_violation_raises(self, tmp_path):
        path = write_config(tmp_path / "openclaw.json", {
            'channels': {'xmtp': {'dmPolicy': "everyone", 'textChunkLimit': 0}},
        })
        with pytest.raises(ConfigurationError) as exc:
            ConfigStore(path).load()
        assert "dmPolicy" in str(exc.value)
        assert "textChunkLimit" in str(exc.value)

    def test_write_validates(self, tmp_path):
        store = ConfigStore(tmp_path / "openclaw.json")
        with pytest.raises(ConfigurationError):
            store.write({'channels': {'xmtp': {'env': "staging"}}})
        assert not store.path.exists()

    def test_validate_accepts_full_surface(self):
        validate_config({
            'channels': {'xmtp': {
                'name': "Support",
                'enabled': True,
                'walletKey': TEST_WALLET_KEY,
                'dbEncryptionKey': "ab" * 32,
                'env': "production",
                'debug': False,
                'dmPolicy': "allowlist",
                'allowFrom': ["0xabc", 42],
                'groupPolicy': "allowlist",
                'groups': ["*"],
                'textChunkLimit': 2000,
                'publicAddress': TEST_ADDRESS,
                'ownerAddress': "0xowner",
                'ownerConversationId': "conv-1",
            }},
            'session': {'store': "/tmp/{agentId}.json"},
            'envelope': {'timestamp': True, 'elapsed': False},
            'agents': {'default': "main", 'bindings': []},
        })


class TestStatePaths:
    """Tests for state and config path resolution."""

    def test_state_dir_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("OPENCLAW_STATE_DIR", str(tmp_path))
        assert resolve_state_dir() == tmp_path

    def test_state_dir_default(self, monkeypatch):
        monkeypatch.delenv("OPENCLAW_STATE_DIR", raising=False)
        assert resolve_state_dir().name == ".openclaw"

    def test_config_path_defaults_under_state(self, monkeypatch, tmp_path):
        monkeypatch.delenv("OPENCLAW_CONFIG_PATH", raising=False)
        assert resolve_config_path(tmp_path) == tmp_path / "openclaw.json"


class TestResolveAccount:
    """Tests for account snapshots."""

    def test_defaults(self):
        account = resolve_account({})
        assert account.account_id == "default"
        assert account.dm_policy == "pairing"
        assert account.group_policy == "open"
        assert account.env == "production"
        assert account.text_chunk_limit == 4000
        assert not account.configured

    def test_configured_iff_wallet_key(self):
        cfg = {'channels': {'xmtp': {'walletKey': TEST_WALLET_KEY}}}
        account = resolve_account(cfg)
        assert account.configured
        assert account.public_address == TEST_ADDRESS

        cfg = {'channels': {'xmtp': {'dbEncryptionKey': "ab" * 32}}}
        assert not resolve_account(cfg).configured

    def test_invalid_wallet_key(self):
        cfg = {'channels': {'xmtp': {'walletKey': "0xnothex"}}}
        with pytest.raises(ConfigurationError):
            resolve_account(cfg)

    def test_account_entry_overrides_top_level(self):
        cfg = {'channels': {'xmtp': {
            'dmPolicy': "open",
            'env': "dev",
            'accounts': {'ops': {'dmPolicy': "allowlist", 'allowFrom': ["0xabc"]}},
        }}}
        account = resolve_account(cfg, "ops")
        assert account.dm_policy == "allowlist"
        assert account.allow_from == ("0xabc",)
        assert account.env == "dev"

    def test_snapshot_is_immutable(self):
        account = resolve_account({})
        with pytest.raises(Exception):
            account.dm_policy = "open"

    def test_account_ids(self):
        assert list_account_ids({}) == ["default"]
        cfg = {'channels': {'xmtp': {'accounts': {'b': {}, 'a': {}}}}}
        assert list_account_ids(cfg) == ["b", "a"]
        assert resolve_default_account_id(cfg) == "b"

    def test_enabled_accounts(self):
        cfg = {'channels': {'xmtp': {'accounts': {
            'a': {'enabled': False},
            'b': {},
        }}}}
        assert [a.account_id for a in list_enabled_accounts(cfg)] == ["b"]

    def test_describe_has_no_secrets(self):
        cfg = {'channels': {'xmtp': {'walletKey': TEST_WALLET_KEY, 'dbEncryptionKey': "ab" * 32}}}
        summary = json.dumps(resolve_account(cfg).describe())
        assert TEST_WALLET_KEY[2:] not in summary
        assert "ab" * 32 not in summary


class TestUpdateAccountSection:
    """Tests for config updates."""

    def test_default_account_writes_top_level(self):
        cfg = {'other': 1}
        updated = update_account_section(cfg, "default", {'env': "dev"})
        assert updated == {'other': 1, 'channels': {'xmtp': {'env': "dev"}}}
        assert cfg == {'other': 1}

    def test_named_account_updated_in_place(self):
        cfg = {'channels': {'xmtp': {'env': "dev", 'accounts': {'ops': {'name': "Ops"}}}}}
        updated = update_account_section(cfg, "ops", {'walletKey': "0x1"})
        assert updated['channels']['xmtp']['accounts']['ops'] == {'name': "Ops", 'walletKey': "0x1"}
        assert 'walletKey' not in updated['channels']['xmtp']


class TestEnsureConfigured:
    def test_missing_keys(self):
        with pytest.raises(ConfigurationError):
            ensure_configured(ResolvedAccount(account_id="default", wallet_key=TEST_WALLET_KEY))

    def test_complete(self):
        ensure_configured(ResolvedAccount(
            account_id="default", wallet_key=TEST_WALLET_KEY, db_encryption_key="ab" * 32,
        ))

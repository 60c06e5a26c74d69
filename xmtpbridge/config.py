"""
Configuration management for the XMTP channel.

The persisted configuration is a plain JSON mapping shared with the host
agent framework. The XMTP section lives under ``channels.xmtp``; per-account
overrides live under ``channels.xmtp.accounts.<accountId>`` and are merged
over the top-level section on every resolution.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any, Tuple

from jsonschema import Draft7Validator

from .errors import ConfigurationError
from .identity import wallet_address_from_private_key

CHANNEL_ID = "xmtp"
DEFAULT_ACCOUNT_ID = "default"
DEFAULT_TEXT_CHUNK_LIMIT = 4000
DEFAULT_AGENT_ID = "main"

DM_POLICIES = ("pairing", "allowlist", "open", "disabled")
GROUP_POLICIES = ("open", "disabled", "allowlist")
XMTP_ENVS = ("production", "dev")

STATE_DIR_ENV = "OPENCLAW_STATE_DIR"
CONFIG_PATH_ENV = "OPENCLAW_CONFIG_PATH"

_ACCOUNT_PROPERTIES = {
    "name": {"type": "string"},
    "enabled": {"type": "boolean"},
    "walletKey": {"type": "string"},
    "dbEncryptionKey": {"type": "string"},
    "env": {"type": "string", "enum": list(XMTP_ENVS)},
    "debug": {"type": "boolean"},
    "dmPolicy": {"type": "string", "enum": list(DM_POLICIES)},
    "allowFrom": {
        "type": "array",
        "items": {"type": ["string", "number"]},
    },
    "groupPolicy": {"type": "string", "enum": list(GROUP_POLICIES)},
    "groups": {"type": "array", "items": {"type": "string"}},
    "textChunkLimit": {"type": "integer", "minimum": 1},
    "publicAddress": {"type": "string"},
    "ownerAddress": {"type": "string"},
    "ownerConversationId": {"type": "string"},
}

CHANNEL_CONFIG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "XMTP channel configuration",
    "type": "object",
    "properties": {
        "channels": {
            "type": "object",
            "properties": {
                CHANNEL_ID: {
                    "type": "object",
                    "properties": {
                        **_ACCOUNT_PROPERTIES,
                        "accounts": {
                            "type": "object",
                            "additionalProperties": {
                                "type": "object",
                                "properties": _ACCOUNT_PROPERTIES,
                            },
                        },
                    },
                },
            },
        },
        "session": {
            "type": "object",
            "properties": {"store": {"type": "string"}},
        },
        "envelope": {
            "type": "object",
            "properties": {
                "timestamp": {"type": "boolean"},
                "elapsed": {"type": "boolean"},
            },
        },
        "agents": {
            "type": "object",
            "properties": {
                "default": {"type": "string"},
                "bindings": {"type": "array", "items": {"type": "object"}},
            },
        },
    },
}

_validator = Draft7Validator(CHANNEL_CONFIG_SCHEMA)


def resolve_state_dir() -> Path:
    """State root for secrets, session stores and local XMTP databases."""
    override = os.environ.get(STATE_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".openclaw"


def resolve_config_path(state_dir: Optional[Path] = None) -> Path:
    override = os.environ.get(CONFIG_PATH_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return (state_dir or resolve_state_dir()) / "openclaw.json"


def validate_config(cfg: Dict[str, Any]) -> None:
    """Raise ConfigurationError listing every schema violation."""
    errors = sorted(_validator.iter_errors(cfg), key=lambda e: list(e.path))
    if errors:
        details = "; ".join(
            f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}"
            for e in errors
        )
        raise ConfigurationError(f"Invalid configuration: {details}")


class ConfigStore:
    """
    JSON-file backed configuration.

    Every ``load()`` reads the file again so that callers always resolve
    accounts from the latest committed state.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else resolve_config_path()

    def load(self) -> Dict[str, Any]:
        """Load and validate the configuration mapping."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Config file {self.path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {self.path} must contain a JSON object")
        validate_config(data)
        return data

    def write(self, cfg: Dict[str, Any]) -> None:
        """Validate and atomically replace the configuration file."""
        validate_config(cfg)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, 'w') as f:
            json.dump(cfg, f, indent=2)
        tmp_path.chmod(0o600)
        os.replace(tmp_path, self.path)


@dataclass(frozen=True)
class ResolvedAccount:
    """Immutable snapshot of one XMTP account, resolved from config."""
    account_id: str
    enabled: bool = True
    name: Optional[str] = None
    wallet_key: str = ""
    db_encryption_key: str = ""
    env: str = "production"
    debug: bool = False
    dm_policy: str = "pairing"
    allow_from: Tuple[str, ...] = ()
    group_policy: str = "open"
    groups: Tuple[str, ...] = ()
    owner_address: Optional[str] = None
    owner_conversation_id: Optional[str] = None
    public_address: str = ""
    text_chunk_limit: int = DEFAULT_TEXT_CHUNK_LIMIT
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def configured(self) -> bool:
        return bool(self.wallet_key)

    @classmethod
    def from_dict(cls, account_id: str, data: dict) -> "ResolvedAccount":
        """
        Build an account from a merged config section.

        Missing policy fields take their defaults (pairing for DMs, open for
        groups). Unknown values are kept as-is and rejected by the access gate.
        """
        wallet_key = (data.get('walletKey') or "").strip()
        public_address = (data.get('publicAddress') or "").strip()
        if not public_address and wallet_key:
            try:
                public_address = wallet_address_from_private_key(wallet_key)
            except ValueError as e:
                raise ConfigurationError(
                    f"[{account_id}] walletKey is not a valid private key: {e}"
                ) from e

        name = (data.get('name') or "").strip() or None
        owner_address = (data.get('ownerAddress') or "").strip() or None
        owner_conversation_id = (data.get('ownerConversationId') or "").strip() or None

        return cls(
            account_id=account_id,
            enabled=data.get('enabled') is not False,
            name=name,
            wallet_key=wallet_key,
            db_encryption_key=(data.get('dbEncryptionKey') or "").strip(),
            env="dev" if data.get('env') == "dev" else "production",
            debug=bool(data.get('debug', False)),
            dm_policy=data.get('dmPolicy') or "pairing",
            allow_from=tuple(
                str(v).strip() for v in data.get('allowFrom', []) if str(v).strip()
            ),
            group_policy=data.get('groupPolicy') or "open",
            groups=tuple(data.get('groups', [])),
            owner_address=owner_address,
            owner_conversation_id=owner_conversation_id,
            public_address=public_address,
            text_chunk_limit=int(data.get('textChunkLimit') or DEFAULT_TEXT_CHUNK_LIMIT),
            raw=dict(data),
        )

    def describe(self) -> dict:
        """Public, secret-free summary of the account."""
        return {
            'accountId': self.account_id,
            'name': self.name,
            'enabled': self.enabled,
            'configured': self.configured,
            'env': self.env,
            'publicAddress': self.public_address or None,
            'ownerAddress': self.owner_address,
        }


def normalize_account_id(account_id: Optional[str]) -> str:
    value = (account_id or "").strip().lower()
    return value or DEFAULT_ACCOUNT_ID


def get_channel_section(cfg: Dict[str, Any]) -> Dict[str, Any]:
    return (cfg.get('channels') or {}).get(CHANNEL_ID) or {}


def list_account_ids(cfg: Dict[str, Any]) -> List[str]:
    accounts = get_channel_section(cfg).get('accounts')
    if isinstance(accounts, dict) and accounts:
        return list(accounts.keys())
    return [DEFAULT_ACCOUNT_ID]


def resolve_default_account_id(cfg: Dict[str, Any]) -> str:
    ids = list_account_ids(cfg)
    if DEFAULT_ACCOUNT_ID in ids:
        return DEFAULT_ACCOUNT_ID
    return ids[0] if ids else DEFAULT_ACCOUNT_ID


def _account_base(cfg: Dict[str, Any], account_id: str) -> Dict[str, Any]:
    section = get_channel_section(cfg)
    accounts = section.get('accounts')
    base = {k: v for k, v in section.items() if k != 'accounts'}
    if isinstance(accounts, dict) and account_id in accounts:
        base.update(accounts[account_id] or {})
    return base


def resolve_account(cfg: Dict[str, Any], account_id: Optional[str] = None) -> ResolvedAccount:
    """Resolve a fresh account snapshot from a configuration mapping."""
    account_id = normalize_account_id(account_id)
    return ResolvedAccount.from_dict(account_id, _account_base(cfg, account_id))


def list_enabled_accounts(cfg: Dict[str, Any]) -> List[ResolvedAccount]:
    accounts = [resolve_account(cfg, account_id) for account_id in list_account_ids(cfg)]
    return [account for account in accounts if account.enabled]


def update_channel_section(cfg: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``cfg`` with ``update`` merged into ``channels.xmtp``."""
    channels = dict(cfg.get('channels') or {})
    channels[CHANNEL_ID] = {**(channels.get(CHANNEL_ID) or {}), **update}
    return {**cfg, 'channels': channels}


def update_account_section(
    cfg: Dict[str, Any],
    account_id: str,
    update: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Merge ``update`` into the section that owns ``account_id``.

    Accounts declared under ``accounts`` are updated in place; anything else
    (including the default account) writes to the top-level section.
    """
    section = get_channel_section(cfg)
    accounts = section.get('accounts')
    if isinstance(accounts, dict) and account_id in accounts:
        next_accounts = dict(accounts)
        next_accounts[account_id] = {**(accounts[account_id] or {}), **update}
        return update_channel_section(cfg, {'accounts': next_accounts})
    return update_channel_section(cfg, update)


def ensure_configured(account: ResolvedAccount) -> None:
    """Raise if the account cannot start a client."""
    if not account.wallet_key or not account.db_encryption_key:
        raise ConfigurationError(
            f"[{account.account_id}] XMTP not configured: walletKey and "
            "dbEncryptionKey required. Run the XMTP setup to provision them."
        )

"""
Identity management for XMTP accounts.
Handles wallet key generation, address derivation, key fingerprints and
the reuse-or-generate decision for persisted key material.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, Any

from eth_account import Account
from nacl.utils import random

from .env_file import write_env_vars, XMTP_ENV_KEYS
from .errors import WritabilityError

logger = logging.getLogger(__name__)

DB_FILE_NAME = "xmtp.db3"
ENCRYPTION_KEY_BYTES = 32


def strip_hex_prefix(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


def ensure_hex_prefix(value: str) -> str:
    """Return ``value`` with the ``0x`` prefix the XMTP client expects."""
    return value if value[:2].lower() == "0x" else f"0x{value}"


def generate_wallet_key() -> str:
    """Generate a new secp256k1 private key as 0x-prefixed hex."""
    account = Account.create()
    return "0x" + bytes(account.key).hex()


def generate_encryption_key_hex() -> str:
    """Generate a random 32-byte database encryption key, hex-encoded."""
    return random(ENCRYPTION_KEY_BYTES).hex()


def wallet_address_from_private_key(wallet_key: str) -> str:
    """
    Derive the checksummed Ethereum address for a private key.
    Accepts the key with or without the ``0x`` prefix.
    """
    return Account.from_key(ensure_hex_prefix(wallet_key.strip())).address


def key_fingerprint(wallet_key: str) -> str:
    """
    Short deterministic tag of a wallet key, used only to namespace storage.

    fingerprint = lower(hex(key))[:8], after stripping an optional ``0x``.
    Rotating the key therefore always lands in a fresh database directory.
    """
    return strip_hex_prefix(wallet_key.strip()).lower()[:8]


def resolve_db_path(
    state_dir: Path,
    env: str,
    account_id: str,
    wallet_key: str,
) -> Path:
    """
    Deterministic database file for an account and key:

        <state_dir>/xmtp/<env>/<account_id>/<fingerprint>/xmtp.db3
    """
    return (
        Path(state_dir) / "xmtp" / env / account_id
        / key_fingerprint(wallet_key) / DB_FILE_NAME
    )


def ensure_db_path_writable(db_path: Path) -> None:
    """Create the database directory and verify it accepts writes."""
    directory = Path(db_path).parent
    probe = directory / f".probe-{os.getpid()}"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        probe.write_text("")
        probe.unlink()
    except OSError as e:
        raise WritabilityError(f"XMTP database directory is not writable: {directory} ({e})") from e


@dataclass(frozen=True)
class IdentityMaterial:
    """Effective key material for one account."""
    wallet_key: str
    db_encryption_key: str
    public_address: str
    generated_wallet_key: bool = False
    generated_encryption_key: bool = False

    @property
    def reused(self) -> bool:
        return not (self.generated_wallet_key or self.generated_encryption_key)

    def to_env_vars(self, env: str) -> Dict[str, str]:
        wallet_var, db_key_var, env_var = XMTP_ENV_KEYS
        return {
            wallet_var: self.wallet_key,
            db_key_var: self.db_encryption_key,
            env_var: env,
        }


class IdentityManager:
    """
    Decides whether to reuse or generate key material for an account.

    Precedence, never discarding a committed wallet key:
      - walletKey and dbEncryptionKey present: reuse both
      - walletKey only: reuse it, generate a new dbEncryptionKey
      - no walletKey: generate a full identity; a lone dbEncryptionKey
        cannot resume the previous installation and is dropped
    """

    def __init__(self, account_id: str = "default"):
        self.account_id = account_id

    def resolve(self, fragment: Dict[str, Any]) -> IdentityMaterial:
        wallet_key = (fragment.get('walletKey') or "").strip()
        db_key = (fragment.get('dbEncryptionKey') or "").strip()

        if wallet_key and db_key:
            return IdentityMaterial(
                wallet_key=wallet_key,
                db_encryption_key=db_key,
                public_address=wallet_address_from_private_key(wallet_key),
            )

        if wallet_key:
            logger.info(f"[{self.account_id}] reusing walletKey, generating dbEncryptionKey")
            return IdentityMaterial(
                wallet_key=wallet_key,
                db_encryption_key=generate_encryption_key_hex(),
                public_address=wallet_address_from_private_key(wallet_key),
                generated_encryption_key=True,
            )

        if db_key:
            logger.warning(
                f"[{self.account_id}] dbEncryptionKey present without walletKey; "
                "generating a new identity and discarding the old encryption key. "
                "Any local database encrypted with it can no longer be opened."
            )

        wallet_key = generate_wallet_key()
        logger.info(f"[{self.account_id}] generated new XMTP identity")
        return IdentityMaterial(
            wallet_key=wallet_key,
            db_encryption_key=generate_encryption_key_hex(),
            public_address=wallet_address_from_private_key(wallet_key),
            generated_wallet_key=True,
            generated_encryption_key=True,
        )

    def persist(self, material: IdentityMaterial, env: str, secrets_path: Path) -> Path:
        """Write key material to a secrets file readable only by the owner."""
        try:
            write_env_vars(secrets_path, material.to_env_vars(env))
        except OSError as e:
            raise WritabilityError(f"Cannot write XMTP secrets to {secrets_path}: {e}") from e
        return secrets_path

    def provision(
        self,
        fragment: Dict[str, Any],
        env: str,
        secrets_path: Path,
    ) -> IdentityMaterial:
        """Resolve key material and write it to ``secrets_path``."""
        material = self.resolve(fragment)
        self.persist(material, env, secrets_path)
        return material


def default_secrets_path(state_dir: Path) -> Path:
    return Path(state_dir) / ".env"


"""
Tests for XMTP identity handling: key generation, fingerprints, database
paths and the reuse-or-generate decision.
"""

import logging
import stat
from unittest.mock import patch

import pytest

from xmtpbridge.identity import (
    IdentityManager,
    ensure_db_path_writable,
    generate_encryption_key_hex,
    generate_wallet_key,
    key_fingerprint,
    resolve_db_path,
    wallet_address_from_private_key,
)
from xmtpbridge.env_file import read_env_vars
from xmtpbridge.errors import WritabilityError

from conftest import TEST_WALLET_KEY, TEST_ADDRESS


class TestKeyGeneration:
    """Tests for key and address helpers."""

    def test_wallet_key_format(self):
        key = generate_wallet_key()
        assert key.startswith("0x")
        assert len(key) == 66
        int(key[2:], 16)

    def test_wallet_keys_are_unique(self):
        assert generate_wallet_key() != generate_wallet_key()

    def test_encryption_key_is_32_bytes_hex(self):
        key = generate_encryption_key_hex()
        assert len(key) == 64
        assert bytes.fromhex(key)

    def test_known_address(self):
        assert wallet_address_from_private_key(TEST_WALLET_KEY) == TEST_ADDRESS

    def test_address_without_prefix(self):
        assert wallet_address_from_private_key(TEST_WALLET_KEY[2:]) == TEST_ADDRESS

    def test_invalid_key_raises(self):
        with pytest.raises(ValueError):
            wallet_address_from_private_key("0x1234")


class TestFingerprint:
    """Tests for key fingerprints used in database paths."""

    def test_deterministic(self):
        assert key_fingerprint(TEST_WALLET_KEY) == key_fingerprint(TEST_WALLET_KEY)

    def test_prefix_and_case_insensitive(self):
        assert key_fingerprint(TEST_WALLET_KEY) == "ac0974be"
        assert key_fingerprint(TEST_WALLET_KEY[2:].upper()) == "ac0974be"

    def test_distinct_keys_distinct_fingerprints(self):
        fingerprints = {key_fingerprint(generate_wallet_key()) for _ in range(20)}
        assert len(fingerprints) == 20


class TestDbPath:
    """Tests for database path resolution and the writability probe."""

    def test_layout(self, tmp_path):
        path = resolve_db_path(tmp_path, "dev", "default", TEST_WALLET_KEY)
        assert path == tmp_path / "xmtp" / "dev" / "default" / "ac0974be" / "xmtp.db3"

    def test_rotated_key_gets_new_directory(self, tmp_path):
        first = resolve_db_path(tmp_path, "production", "default", TEST_WALLET_KEY)
        second = resolve_db_path(tmp_path, "production", "default", generate_wallet_key())
        assert first.parent != second.parent

    def test_writable_probe_creates_directory(self, tmp_path):
        path = resolve_db_path(tmp_path, "dev", "default", TEST_WALLET_KEY)
        ensure_db_path_writable(path)
        assert path.parent.is_dir()
        assert list(path.parent.iterdir()) == []

    def test_unwritable_location_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(WritabilityError):
            ensure_db_path_writable(blocker / "xmtp" / "xmtp.db3")


class TestIdentityManager:
    """Tests for the reuse-or-generate precedence."""

    def test_reuses_both_keys_without_generating(self):
        manager = IdentityManager()
        fragment = {'walletKey': TEST_WALLET_KEY, 'dbEncryptionKey': "ab" * 32}
        with patch("xmtpbridge.identity.generate_wallet_key") as gen_wallet, \
                patch("xmtpbridge.identity.generate_encryption_key_hex") as gen_db:
            material = manager.resolve(fragment)
        gen_wallet.assert_not_called()
        gen_db.assert_not_called()
        assert material.reused
        assert material.wallet_key == TEST_WALLET_KEY
        assert material.db_encryption_key == "ab" * 32
        assert material.public_address == TEST_ADDRESS

    def test_resolution_is_idempotent(self):
        manager = IdentityManager()
        fragment = {'walletKey': TEST_WALLET_KEY, 'dbEncryptionKey': "cd" * 32}
        assert manager.resolve(fragment) == manager.resolve(fragment)

    def test_wallet_only_generates_encryption_key(self):
        with patch(
            "xmtpbridge.identity.generate_encryption_key_hex", return_value="ef" * 32,
        ) as gen_db:
            material = IdentityManager().resolve({'walletKey': TEST_WALLET_KEY})
        gen_db.assert_called_once()
        assert material.wallet_key == TEST_WALLET_KEY
        assert material.db_encryption_key == "ef" * 32
        assert material.public_address == TEST_ADDRESS
        assert not material.generated_wallet_key
        assert material.generated_encryption_key

    def test_no_keys_generates_full_identity(self):
        material = IdentityManager().resolve({})
        assert material.generated_wallet_key
        assert material.generated_encryption_key
        assert material.public_address == wallet_address_from_private_key(material.wallet_key)

    def test_lone_encryption_key_is_discarded_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="xmtpbridge.identity"):
            material = IdentityManager("ops").resolve({'dbEncryptionKey': "aa" * 32})
        assert material.generated_wallet_key
        assert material.db_encryption_key != "aa" * 32
        assert any("without walletKey" in r.getMessage() for r in caplog.records)

    def test_blank_values_count_as_missing(self):
        material = IdentityManager().resolve({'walletKey': "  ", 'dbEncryptionKey': ""})
        assert material.generated_wallet_key

    def test_provision_writes_secrets_file(self, tmp_path):
        secrets = tmp_path / "secrets" / ".env"
        material = IdentityManager().provision(
            {'walletKey': TEST_WALLET_KEY}, "dev", secrets,
        )
        values = read_env_vars(secrets)
        assert values == {
            'XMTP_WALLET_KEY': TEST_WALLET_KEY,
            'XMTP_DB_ENCRYPTION_KEY': material.db_encryption_key,
            'XMTP_ENV': "dev",
        }
        assert stat.S_IMODE(secrets.stat().st_mode) == 0o600

    def test_provision_unwritable_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        with pytest.raises(WritabilityError):
            IdentityManager().provision({}, "dev", blocker / ".env")

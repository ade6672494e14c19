"""
Tests for the GitHub token store: encryption, fallbacks and migration.
"""

import pytest

from proxy_tray.credentials import CredentialStore, UnavailableCipher


class FakeCipher:
    """Reversible stand-in for DPAPI."""

    def __init__(self, available=True, fail_encrypt=False):
        self.available = available
        self.fail_encrypt = fail_encrypt

    def is_available(self):
        return self.available

    def encrypt(self, plaintext):
        if self.fail_encrypt:
            raise RuntimeError("encrypt failed")
        return b"ENC:" + plaintext[::-1].encode("utf-8")

    def decrypt(self, blob):
        assert blob.startswith(b"ENC:")
        return blob[4:].decode("utf-8")[::-1]


@pytest.fixture
def dirs(tmp_path):
    return tmp_path / "app", tmp_path / "legacy"


def make_store(dirs, cipher=None):
    token_dir, legacy_dir = dirs
    return CredentialStore(cipher or FakeCipher(), token_dir=token_dir, legacy_dir=legacy_dir)


class TestWriteAndRead:
    def test_round_trip_encrypted(self, dirs):
        store = make_store(dirs)
        store.write("gho_abc")

        assert store.encrypted_path.exists()
        assert not store.token_path.exists()
        assert b"gho_abc" not in store.encrypted_path.read_bytes()
        assert store.read() == "gho_abc"

    def test_round_trip_without_cipher(self, dirs):
        store = make_store(dirs, UnavailableCipher())
        store.write("gho_plain")

        assert store.token_path.read_text(encoding="utf-8") == "gho_plain"
        assert not store.encrypted_path.exists()
        assert store.read() == "gho_plain"

    def test_encrypt_failure_falls_back_to_plaintext(self, dirs):
        store = make_store(dirs, FakeCipher(fail_encrypt=True))
        store.write("gho_fallback")

        assert store.token_path.read_text(encoding="utf-8") == "gho_fallback"
        assert not store.encrypted_path.exists()

    def test_write_replaces_plaintext_copy(self, dirs):
        store = make_store(dirs)
        store.token_path.parent.mkdir(parents=True)
        store.token_path.write_text("old", encoding="utf-8")

        store.write("new")

        assert not store.token_path.exists()
        assert store.read() == "new"

    def test_missing_token_reads_empty(self, dirs):
        assert make_store(dirs).read() == ""

    def test_plaintext_is_stripped(self, dirs):
        store = make_store(dirs, UnavailableCipher())
        store.token_path.parent.mkdir(parents=True)
        store.token_path.write_text("  gho_x\n", encoding="utf-8")
        assert store.read() == "gho_x"


class TestMigration:
    def test_plaintext_is_encrypted_on_read(self, dirs):
        store = make_store(dirs)
        store.token_path.parent.mkdir(parents=True)
        store.token_path.write_text("gho_migrate", encoding="utf-8")

        assert store.read_with_migration() == "gho_migrate"
        assert store.encrypted_path.exists()
        assert not store.token_path.exists()
        assert store.read_with_migration() == "gho_migrate"

    def test_legacy_plaintext_moves_to_current_location(self, dirs):
        store = make_store(dirs)
        store.legacy_path.parent.mkdir(parents=True)
        store.legacy_path.write_text("gho_legacy", encoding="utf-8")

        assert store.read() == "gho_legacy"
        assert store.encrypted_path.exists()
        assert not store.legacy_path.exists()

    def test_legacy_encrypted_moves_to_current_location(self, dirs):
        cipher = FakeCipher()
        store = make_store(dirs, cipher)
        store.legacy_encrypted_path.parent.mkdir(parents=True)
        store.legacy_encrypted_path.write_bytes(cipher.encrypt("gho_old_enc"))

        assert store.read() == "gho_old_enc"
        assert not store.legacy_encrypted_path.exists()
        assert store.read() == "gho_old_enc"

    def test_legacy_plaintext_without_cipher(self, dirs):
        store = make_store(dirs, UnavailableCipher())
        store.legacy_path.parent.mkdir(parents=True)
        store.legacy_path.write_text("gho_l", encoding="utf-8")

        assert store.read() == "gho_l"
        assert store.token_path.read_text(encoding="utf-8") == "gho_l"
        assert not store.legacy_path.exists()

    def test_current_location_wins_over_legacy(self, dirs):
        store = make_store(dirs)
        store.write("gho_current")
        store.legacy_path.parent.mkdir(parents=True)
        store.legacy_path.write_text("gho_legacy", encoding="utf-8")

        assert store.read() == "gho_current"
        assert store.legacy_path.exists()


class TestEncryptedButUnavailable:
    def test_prefers_plaintext_sibling(self, dirs):
        store = make_store(dirs, UnavailableCipher())
        store.token_path.parent.mkdir(parents=True)
        store.encrypted_path.write_bytes(b"opaque")
        store.token_path.write_text("gho_sibling", encoding="utf-8")

        assert store.read() == "gho_sibling"

    def test_without_sibling_reads_empty(self, dirs):
        store = make_store(dirs, UnavailableCipher())
        store.token_path.parent.mkdir(parents=True)
        store.encrypted_path.write_bytes(b"opaque")

        assert store.read() == ""
        assert store.encrypted_path.exists()

    def test_undecryptable_blob_reads_empty(self, dirs):
        class BrokenCipher(FakeCipher):
            def decrypt(self, blob):
                raise ValueError("bad blob")

        store = make_store(dirs, BrokenCipher())
        store.token_path.parent.mkdir(parents=True)
        store.encrypted_path.write_bytes(b"garbage")

        assert store.read() == ""


class TestDeleteAndStatus:
    def test_delete_removes_all_copies(self, dirs):
        store = make_store(dirs)
        store.write("gho_a")
        store.token_path.write_text("stale", encoding="utf-8")
        store.legacy_path.parent.mkdir(parents=True)
        store.legacy_path.write_text("x", encoding="utf-8")
        store.legacy_encrypted_path.write_bytes(b"y")

        store.delete()

        for path in (
            store.encrypted_path,
            store.token_path,
            store.legacy_path,
            store.legacy_encrypted_path,
        ):
            assert not path.exists()
        assert store.read() == ""

    def test_delete_with_nothing_stored(self, dirs):
        make_store(dirs).delete()

    def test_status(self, dirs):
        store = make_store(dirs)
        status = store.status()
        assert status["has_token"] is False
        assert status["message"] == "GitHub token not found"
        assert status["token_path"] == str(store.token_path)

        store.write("gho_s")
        status = store.status()
        assert status["has_token"] is True
        assert status["message"] == "GitHub token exists"

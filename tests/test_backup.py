"""
Tests for backup.py - password-protected backup bundles
"""
import json

import pytest

from utils.backup import compress_data, decompress_data, encrypt_backup, restore_backup
from utils.errors import CryptoError, CryptoErrorKind

# Low iteration count keeps the suite fast; production uses DEFAULT_KDF_ITERATIONS
ITERATIONS = 1000

DATA = {
    "crew": [{"employee_id": "AA12345", "name": "Captain Sarah Johnson"}],
    "flight": "AA100",
    "notes": "Départ retardé ✈",
}


class TestBackup:

    def test_restore_returns_original_data(self):
        bundle = encrypt_backup(DATA, "Backup-Pass1!", iterations=ITERATIONS)
        assert restore_backup(bundle, "Backup-Pass1!") == DATA

    def test_bundle_layout(self):
        bundle = json.loads(encrypt_backup(DATA, "Backup-Pass1!", iterations=ITERATIONS))

        assert bundle["kdf"] == "pbkdf2-sha256"
        assert bundle["iterations"] == ITERATIONS
        assert {"salt", "payload", "version"} <= set(bundle)
        assert "Captain" not in json.dumps(bundle)

    def test_restore_accepts_parsed_bundle(self):
        bundle = json.loads(encrypt_backup(DATA, "Backup-Pass1!", iterations=ITERATIONS))
        assert restore_backup(bundle, "Backup-Pass1!") == DATA

    def test_wrong_password(self):
        bundle = encrypt_backup(DATA, "Backup-Pass1!", iterations=ITERATIONS)

        with pytest.raises(CryptoError) as exc:
            restore_backup(bundle, "Other-Pass1!")

        assert exc.value.kind is CryptoErrorKind.BACKUP_RESTORE_FAILED

    def test_tampered_payload(self):
        bundle = json.loads(encrypt_backup(DATA, "Backup-Pass1!", iterations=ITERATIONS))
        bundle["iterations"] = ITERATIONS + 1

        with pytest.raises(CryptoError) as exc:
            restore_backup(bundle, "Backup-Pass1!")

        assert exc.value.kind is CryptoErrorKind.BACKUP_RESTORE_FAILED

    @pytest.mark.parametrize("bundle", ["not json", "{}", '{"kdf": "scrypt"}', b"\x00\x01"])
    def test_corrupted_bundles(self, bundle):
        with pytest.raises(CryptoError) as exc:
            restore_backup(bundle, "Backup-Pass1!")

        assert exc.value.status_code == 400

    def test_non_serializable_data(self):
        with pytest.raises(TypeError):
            encrypt_backup({"when": object()}, "Backup-Pass1!", iterations=ITERATIONS)


class TestCompression:

    def test_compression_round_trip(self):
        data = b"crew manifest " * 200
        compressed = compress_data(data)

        assert len(compressed) < len(data)
        assert decompress_data(compressed) == data

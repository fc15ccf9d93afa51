"""
Tests for the encrypted backup codec (moosh_core.backup).

Covers:
  - encrypt / decrypt round trip and the bundle layout
  - wrong password and tampered fields -> one generic DecryptionFailed
  - password policy checked before any randomness is drawn
  - structural validation of malformed bundles
  - key derivation from the parameters stored in the bundle
  - import-data validation and defaults
  - pre-validation report
"""

import base64
import copy
import json
import unittest

import pytest

from conftest import ABANDON, PASSWORD, CountingRNG, fast_config, fixed_clock, make_record
from moosh_core.backup import (
    BackupCodec,
    canonical_json,
    clean_record,
    validate_bundle,
    validate_import_data,
)
from moosh_core.config import BackupConfig
from moosh_core.errors import (
    DecryptionFailed,
    InvalidParameter,
    PolicyViolation,
    StructuralError,
    ValidationError,
)

RECORD = make_record()


def _codec(rng=None, **overrides):
    return BackupCodec(fast_config(**overrides), rng=rng or CountingRNG(), clock=fixed_clock)


def _flip(b64: str) -> str:
    raw = bytearray(base64.b64decode(b64))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


class TestRoundTrip(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.codec = _codec()
        cls.bundle = cls.codec.encrypt_sync(RECORD, PASSWORD)

    def test_decrypt_restores_record(self):
        out = self.codec.decrypt_sync(self.bundle, PASSWORD)
        self.assertEqual(out["walletId"], RECORD["walletId"])
        self.assertEqual(out["name"], "Main")
        self.assertEqual(out["mnemonic"], ABANDON)
        self.assertEqual(out["network"], "MAINNET")
        self.assertEqual(out["addresses"], RECORD["addresses"])
        self.assertEqual(out["privateKeys"], RECORD["privateKeys"])
        self.assertEqual(out["createdAt"], RECORD["createdAt"])

    def test_import_forces_type_and_stamps_time(self):
        out = self.codec.decrypt_sync(self.bundle, PASSWORD)
        self.assertEqual(out["type"], "imported")
        self.assertEqual(out["importedAt"], "2023-11-14T22:13:20.123Z")

    def test_bundle_layout(self):
        b = self.bundle
        self.assertEqual(list(b), ["version", "algorithm", "keyDerivation", "encryption", "metadata"])
        self.assertEqual(b["version"], "1.0")
        self.assertEqual(b["algorithm"], "AES-256-GCM")
        kdf = b["keyDerivation"]
        self.assertEqual(kdf["method"], "scrypt")
        self.assertEqual(kdf["keyLength"], 32)
        self.assertEqual((kdf["N"], kdf["r"], kdf["p"]), (1024, 8, 1))
        self.assertEqual(len(base64.b64decode(kdf["salt"])), 32)
        enc = b["encryption"]
        self.assertEqual(len(base64.b64decode(enc["iv"])), 16)
        self.assertEqual(len(base64.b64decode(enc["authTag"])), 16)
        self.assertEqual(b["metadata"], {"encrypted": True, "timestamp": "2023-11-14T22:13:20.123Z"})

    def test_bundle_is_json_serialisable(self):
        again = json.loads(json.dumps(self.bundle))
        self.assertEqual(self.codec.decrypt_sync(again, PASSWORD)["walletId"], RECORD["walletId"])

    def test_raw_plaintext_is_compact_clean_json(self):
        text = self.codec.decrypt_raw_sync(self.bundle, PASSWORD)
        self.assertEqual(text, canonical_json(clean_record(RECORD)))
        self.assertNotIn(": ", text)

    def test_fresh_salt_and_iv_per_call(self):
        other = self.codec.encrypt_sync(RECORD, PASSWORD)
        self.assertNotEqual(other["keyDerivation"]["salt"], self.bundle["keyDerivation"]["salt"])
        self.assertNotEqual(other["encryption"]["data"], self.bundle["encryption"]["data"])


class TestDecryptionFailures(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.codec = _codec()
        cls.bundle = cls.codec.encrypt_sync(RECORD, PASSWORD)

    def _assert_generic_failure(self, bundle, password=PASSWORD):
        with self.assertRaises(DecryptionFailed) as ctx:
            self.codec.decrypt_sync(bundle, password)
        self.assertEqual(str(ctx.exception), "Failed to decrypt wallet data. Please check your password.")

    def test_wrong_password(self):
        self._assert_generic_failure(self.bundle, "wrong password!!")

    def test_tampered_ciphertext(self):
        b = copy.deepcopy(self.bundle)
        b["encryption"]["data"] = _flip(b["encryption"]["data"])
        self._assert_generic_failure(b)

    def test_tampered_tag(self):
        b = copy.deepcopy(self.bundle)
        b["encryption"]["authTag"] = _flip(b["encryption"]["authTag"])
        self._assert_generic_failure(b)

    def test_tampered_iv(self):
        b = copy.deepcopy(self.bundle)
        b["encryption"]["iv"] = _flip(b["encryption"]["iv"])
        self._assert_generic_failure(b)

    def test_tampered_salt(self):
        b = copy.deepcopy(self.bundle)
        b["keyDerivation"]["salt"] = _flip(b["keyDerivation"]["salt"])
        self._assert_generic_failure(b)

    def test_error_message_has_no_secrets(self):
        try:
            self.codec.decrypt_sync(self.bundle, "wrong password!!")
        except DecryptionFailed as exc:
            self.assertNotIn("wrong password", str(exc))
            self.assertNotIn("abandon", str(exc))


class TestPasswordPolicy(unittest.TestCase):

    def test_short_password_rejected_before_rng(self):
        rng = CountingRNG()
        codec = _codec(rng)
        with self.assertRaises(PolicyViolation):
            codec.encrypt_sync(RECORD, "short")
        self.assertEqual(rng.calls, [])

    def test_eleven_chars_rejected_twelve_accepted(self):
        rng = CountingRNG()
        codec = _codec(rng)
        with self.assertRaises(PolicyViolation):
            codec.encrypt_sync(RECORD, "x" * 11)
        codec.encrypt_sync(RECORD, "x" * 12)
        self.assertEqual(rng.calls, [32, 16])

    def test_non_string_password(self):
        with self.assertRaises(PolicyViolation):
            _codec().encrypt_sync(RECORD, None)

    def test_configurable_minimum(self):
        with self.assertRaises(PolicyViolation):
            _codec(min_password_length=20).encrypt_sync(RECORD, "x" * 19)
        _codec(min_password_length=20).encrypt_sync(RECORD, "x" * 20)

    def test_lone_surrogate_password(self):
        rng = CountingRNG()
        with self.assertRaises(InvalidParameter):
            _codec(rng).encrypt_sync(RECORD, PASSWORD + "\ud800")
        self.assertEqual(rng.calls, [])

    def test_lone_surrogate_password_on_decrypt(self):
        bundle = _codec().encrypt_sync(RECORD, PASSWORD)
        with self.assertRaises(InvalidParameter):
            _codec().decrypt_sync(bundle, "\ud800" * 12)

    def test_lone_surrogate_in_record(self):
        with self.assertRaises(ValidationError):
            _codec().encrypt_sync(dict(RECORD, name="bad \udc80"), PASSWORD)


class TestStructuralValidation(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.bundle = _codec().encrypt_sync(RECORD, PASSWORD)

    def _mutated(self, fn):
        b = copy.deepcopy(self.bundle)
        fn(b)
        return b

    def _assert_structural(self, bundle):
        with self.assertRaises(StructuralError):
            validate_bundle(bundle)
        with self.assertRaises(StructuralError):
            _codec().decrypt_sync(bundle, PASSWORD)

    def test_not_a_dict(self):
        self._assert_structural("not a bundle")
        self._assert_structural(None)

    def test_unsupported_version(self):
        self._assert_structural(self._mutated(lambda b: b.update(version="2.0")))

    def test_unsupported_algorithm(self):
        self._assert_structural(self._mutated(lambda b: b.update(algorithm="AES-128-CBC")))

    def test_missing_sections(self):
        self._assert_structural(self._mutated(lambda b: b.pop("keyDerivation")))
        self._assert_structural(self._mutated(lambda b: b.pop("encryption")))

    def test_missing_fields(self):
        self._assert_structural(self._mutated(lambda b: b["keyDerivation"].pop("salt")))
        self._assert_structural(self._mutated(lambda b: b["encryption"].pop("iv")))
        self._assert_structural(self._mutated(lambda b: b["encryption"].pop("authTag")))
        self._assert_structural(self._mutated(lambda b: b["encryption"].pop("data")))

    def test_wrong_kdf_method(self):
        self._assert_structural(self._mutated(lambda b: b["keyDerivation"].update(method="pbkdf2")))

    def test_bad_base64(self):
        self._assert_structural(self._mutated(lambda b: b["encryption"].update(data="!!not base64!!")))

    def test_bad_tag_length(self):
        self._assert_structural(
            self._mutated(lambda b: b["encryption"].update(authTag=base64.b64encode(b"short").decode()))
        )

    def test_scrypt_bounds(self):
        for n in (1000, 0, -2, 2 ** 21, True, "16384"):
            self._assert_structural(self._mutated(lambda b, n=n: b["keyDerivation"].update(N=n)))
        self._assert_structural(self._mutated(lambda b: b["keyDerivation"].update(r=0)))
        self._assert_structural(self._mutated(lambda b: b["keyDerivation"].update(p=10_000)))
        self._assert_structural(self._mutated(lambda b: b["keyDerivation"].update(p=5)))
        self._assert_structural(self._mutated(lambda b: b["keyDerivation"].update(keyLength=16)))

    def test_scrypt_memory_cost_capped(self):
        # 128 * N * r bytes: 1 GiB and 4 GiB are refused, 256 MiB is the ceiling
        for n, r in ((1 << 20, 8), (1 << 20, 32), (1 << 17, 32)):
            self._assert_structural(
                self._mutated(lambda b, n=n, r=r: b["keyDerivation"].update(N=n, r=r))
            )
        validate_bundle(self._mutated(lambda b: b["keyDerivation"].update(N=1 << 18, r=8)))
        validate_bundle(self._mutated(lambda b: b["keyDerivation"].update(N=1 << 15, r=8, p=4)))

    def test_valid_bundle_passes(self):
        validate_bundle(self.bundle)


class TestStoredParameters(unittest.TestCase):

    def test_decrypt_uses_bundle_parameters(self):
        bundle = _codec(scrypt_n=1024).encrypt_sync(RECORD, PASSWORD)
        reader = _codec(scrypt_n=4096, scrypt_r=4)
        self.assertEqual(reader.decrypt_sync(bundle, PASSWORD)["walletId"], RECORD["walletId"])

    def test_missing_parameters_fall_back_to_defaults(self):
        codec = BackupCodec(BackupConfig(), rng=CountingRNG(), clock=fixed_clock)
        bundle = codec.encrypt_sync(RECORD, PASSWORD)
        self.assertEqual(bundle["keyDerivation"]["N"], 32768)
        for key in ("N", "r", "p"):
            del bundle["keyDerivation"][key]
        self.assertEqual(_codec().decrypt_sync(bundle, PASSWORD)["walletId"], RECORD["walletId"])


class TestCleanRecord(unittest.TestCase):

    def test_drops_unknown_fields(self):
        rec = dict(RECORD, sessionId="abc", apiToken="t", cachedBalance=5)
        cleaned = clean_record(rec)
        self.assertNotIn("sessionId", cleaned)
        self.assertNotIn("apiToken", cleaned)
        self.assertEqual(list(cleaned), list(clean_record(RECORD)))

    def test_absent_fields_omitted_defaults_filled(self):
        cleaned = clean_record({"walletId": "w", "mnemonic": ABANDON})
        self.assertEqual(cleaned, {"walletId": "w", "mnemonic": ABANDON,
                                   "network": "MAINNET", "type": "standard"})

    def test_string_payload_encrypted_verbatim(self):
        codec = _codec()
        bundle = codec.encrypt_sync('{"hello":"wörld"}', PASSWORD)
        self.assertEqual(codec.decrypt_raw_sync(bundle, PASSWORD), '{"hello":"wörld"}')

    def test_non_json_payload_fails_validation(self):
        codec = _codec()
        bundle = codec.encrypt_sync("plain text", PASSWORD)
        with self.assertRaises(ValidationError):
            codec.decrypt_sync(bundle, PASSWORD)

    def test_canonical_json_keeps_unicode(self):
        self.assertEqual(canonical_json({"a": "ü", "b": [1, 2]}), '{"a":"ü","b":[1,2]}')


class TestImportValidation(unittest.TestCase):

    def test_missing_required_fields(self):
        for field in ("walletId", "mnemonic", "addresses"):
            data = dict(RECORD)
            del data[field]
            with self.assertRaises(ValidationError):
                validate_import_data(data, 0.0)

    def test_invalid_mnemonic(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_import_data(dict(RECORD, mnemonic="abandon " * 12), 0.0)
        self.assertNotIn("abandon", str(ctx.exception))

    def test_addresses_need_bitcoin_or_spark(self):
        with self.assertRaises(ValidationError):
            validate_import_data(dict(RECORD, addresses={"ethereum": "0x1"}), 0.0)
        out = validate_import_data(dict(RECORD, addresses={"spark": "sp1p..."}), 0.0)
        self.assertEqual(out["addresses"], {"spark": "sp1p..."})

    def test_defaults(self):
        data = {"walletId": "w", "mnemonic": ABANDON.split(), "addresses": {"bitcoin": {}, "spark": "x"}}
        out = validate_import_data(data, 1_700_000_000.5)
        self.assertEqual(out["name"], "Imported Wallet 1700000000500")
        self.assertEqual(out["network"], "MAINNET")
        self.assertEqual(out["mnemonic"], ABANDON)
        self.assertEqual(out["createdAt"], "2023-11-14T22:13:20.500Z")
        self.assertEqual(out["importedAt"], out["createdAt"])
        self.assertEqual(out["type"], "imported")

    def test_not_an_object(self):
        with self.assertRaises(ValidationError):
            validate_import_data(["a"], 0.0)


class TestPreValidate(unittest.TestCase):

    def test_valid(self):
        report = BackupCodec.pre_validate(_codec().encrypt_sync(RECORD, PASSWORD))
        self.assertEqual(report, {"isValid": True, "format": "encrypted", "version": "1.0",
                                  "encrypted": True, "errors": []})

    def test_unencrypted(self):
        report = BackupCodec.pre_validate(RECORD)
        self.assertFalse(report["isValid"])
        self.assertFalse(report["encrypted"])
        self.assertEqual(report["errors"], ["File does not appear to be encrypted"])

    def test_broken_bundle_reports_error(self):
        bundle = _codec().encrypt_sync(RECORD, PASSWORD)
        del bundle["encryption"]
        report = BackupCodec.pre_validate(bundle)
        self.assertFalse(report["isValid"])
        self.assertTrue(report["encrypted"])
        self.assertEqual(len(report["errors"]), 1)


class TestAsync:

    @pytest.mark.asyncio
    async def test_async_round_trip(self, codec):
        bundle = await codec.encrypt(RECORD, PASSWORD)
        out = await codec.decrypt(bundle, PASSWORD)
        assert out["walletId"] == RECORD["walletId"]
        assert await codec.decrypt_raw(bundle, PASSWORD) == canonical_json(clean_record(RECORD))

    @pytest.mark.asyncio
    async def test_async_policy_before_rng(self, codec, rng):
        with pytest.raises(PolicyViolation):
            await codec.encrypt(RECORD, "tiny")
        assert rng.calls == []

    @pytest.mark.asyncio
    async def test_async_wrong_password(self, codec):
        bundle = await codec.encrypt(RECORD, PASSWORD)
        with pytest.raises(DecryptionFailed):
            await codec.decrypt(bundle, "another password")

    @pytest.mark.asyncio
    async def test_async_structural_error(self, codec):
        with pytest.raises(StructuralError):
            await codec.decrypt({"version": "9"}, PASSWORD)

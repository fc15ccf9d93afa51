"""
Encrypted wallet backups.

A backup is a self-describing JSON bundle:

    {
      "version": "1.0",
      "algorithm": "AES-256-GCM",
      "keyDerivation": {"method": "scrypt", "salt": <b64>, "keyLength": 32,
                        "N": 32768, "r": 8, "p": 1},
      "encryption": {"iv": <b64>, "authTag": <b64>, "data": <b64>},
      "metadata": {"encrypted": true, "timestamp": <ISO-8601>}
    }

The key is scrypt(password, salt) using the parameters stored *in the
bundle*, so raising the default cost later never strands old backups.
The plaintext is the compact JSON of the cleaned wallet record; the
field names and base64 encodings are the durable interchange format and
must not change.

Decryption failures are reported as one generic ``DecryptionFailed``
whether the password was wrong or the ciphertext was altered.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import functools
import json
import logging
import os
from concurrent.futures import Executor
from typing import Any, Callable, Mapping

from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt

from moosh_core.config import BackupConfig
from moosh_core.errors import (
    DecryptionFailed,
    InvalidParameter,
    PolicyViolation,
    StructuralError,
    ValidationError,
)
from moosh_core.mnemonic import normalize_mnemonic, validate_mnemonic
from moosh_core.timestamps import Clock, epoch_ms, iso_timestamp, system_clock
from moosh_core.wallet import WalletRecord

logger = logging.getLogger("moosh_backup")

BUNDLE_VERSION = "1.0"
SUPPORTED_VERSIONS = ("1.0",)
ALGORITHM = "AES-256-GCM"
KDF_METHOD = "scrypt"

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32

# Fallbacks for bundles that omit their cost parameters.
DEFAULT_SCRYPT_N = 32768
DEFAULT_SCRYPT_R = 8
DEFAULT_SCRYPT_P = 1

# Upper bounds accepted from a bundle.  scrypt needs 128 * N * r bytes of
# memory per derivation; the default costs 32 MiB.
MAX_SCRYPT_N = 1 << 20
MAX_SCRYPT_R = 32
MAX_SCRYPT_P = 4
MAX_SCRYPT_MEMORY = 256 * 1024 * 1024

PORTABLE_FIELDS = (
    "walletId", "name", "mnemonic", "network",
    "addresses", "privateKeys", "createdAt", "type",
)

REQUIRED_IMPORT_FIELDS = ("walletId", "mnemonic", "addresses")


# ===================================================================
#  Helpers
# ===================================================================

def canonical_json(obj: Any) -> str:
    """Compact JSON, insertion order, non-ASCII kept (JSON.stringify)."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def clean_record(record: WalletRecord | Mapping[str, Any]) -> dict:
    """
    Keep only the portable wallet fields.

    Session ids, cache timestamps, API tokens and anything else the caller
    attached are dropped.  Absent keys stay absent.
    """
    data = record.to_dict() if isinstance(record, WalletRecord) else dict(record)
    cleaned: dict[str, Any] = {}
    for key in PORTABLE_FIELDS:
        if key == "network":
            cleaned[key] = data.get(key) or "MAINNET"
        elif key == "type":
            cleaned[key] = data.get(key) or "standard"
        elif key in data:
            cleaned[key] = data[key]
    return cleaned


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: Any, name: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise StructuralError(f"Invalid encryption parameters: {name}")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise StructuralError(f"Invalid base64 in {name}") from None


def _positive_int(value: Any, name: str, upper: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= upper:
        raise StructuralError(f"Invalid key derivation parameter: {name}")
    return value


def _password_bytes(password: str) -> bytes:
    try:
        return password.encode("utf-8")
    except UnicodeEncodeError:
        raise InvalidParameter("Password must be valid Unicode text") from None


def derive_key(password: str, salt: bytes, n: int, r: int, p: int,
               key_length: int = KEY_LENGTH) -> bytes:
    """scrypt(password, salt) -> symmetric key."""
    return scrypt(_password_bytes(password), salt, key_len=key_length, N=n, r=r, p=p)


def validate_bundle(bundle: Any) -> None:
    """
    Structural check of an encrypted bundle.

    Raises ``StructuralError`` on anything that should never reach the
    cipher: unknown version or algorithm, missing or undecodable fields,
    or key-derivation parameters outside sane bounds.
    """
    if not isinstance(bundle, Mapping):
        raise StructuralError("Encrypted bundle must be a JSON object")
    if bundle.get("version") not in SUPPORTED_VERSIONS:
        raise StructuralError(f"Unsupported version: {bundle.get('version')!r}")
    if bundle.get("algorithm") != ALGORITHM:
        raise StructuralError(f"Unsupported algorithm: {bundle.get('algorithm')!r}")
    for section in ("keyDerivation", "encryption"):
        if not isinstance(bundle.get(section), Mapping) or not bundle[section]:
            raise StructuralError(f"Missing encryption field: {section}")

    kdf = bundle["keyDerivation"]
    if not kdf.get("salt") or not kdf.get("method"):
        raise StructuralError("Invalid key derivation parameters")
    if kdf["method"] != KDF_METHOD:
        raise StructuralError(f"Unsupported key derivation method: {kdf['method']!r}")
    n = _positive_int(kdf.get("N", DEFAULT_SCRYPT_N), "N", MAX_SCRYPT_N)
    if n < 2 or n & (n - 1):
        raise StructuralError("Invalid key derivation parameter: N")
    r = _positive_int(kdf.get("r", DEFAULT_SCRYPT_R), "r", MAX_SCRYPT_R)
    if 128 * n * r > MAX_SCRYPT_MEMORY:
        raise StructuralError("Invalid key derivation parameters: memory cost too high")
    _positive_int(kdf.get("p", DEFAULT_SCRYPT_P), "p", MAX_SCRYPT_P)
    if kdf.get("keyLength", KEY_LENGTH) != KEY_LENGTH:
        raise StructuralError("Invalid key derivation parameter: keyLength")
    _b64decode(kdf["salt"], "salt")

    enc = bundle["encryption"]
    if not enc.get("iv") or not enc.get("authTag") or not enc.get("data"):
        raise StructuralError("Invalid encryption parameters")
    _b64decode(enc["iv"], "iv")
    if len(_b64decode(enc["authTag"], "authTag")) != TAG_LENGTH:
        raise StructuralError("Invalid encryption parameters: authTag")
    _b64decode(enc["data"], "data")


def validate_import_data(data: Any, now: float) -> dict:
    """
    Semantic validation of a decrypted wallet record.

    Fills defaults for optional fields and stamps ``importedAt``; the
    result always has ``type == "imported"``.
    """
    if not isinstance(data, Mapping):
        raise ValidationError("Invalid wallet data: expected an object")
    for name in REQUIRED_IMPORT_FIELDS:
        if not data.get(name):
            raise ValidationError(f"Invalid wallet data: missing required field: {name}")

    raw_mnemonic = data["mnemonic"]
    if not isinstance(raw_mnemonic, (str, list, tuple)):
        raise ValidationError("Invalid wallet data: invalid mnemonic phrase")
    mnemonic = normalize_mnemonic(raw_mnemonic)
    if not validate_mnemonic(mnemonic):
        raise ValidationError("Invalid wallet data: invalid mnemonic phrase")

    addresses = data["addresses"]
    if not isinstance(addresses, Mapping) or not (addresses.get("bitcoin") or addresses.get("spark")):
        raise ValidationError("Invalid wallet data: no valid addresses found in wallet data")

    now_iso = iso_timestamp(now)
    return {
        "walletId": data["walletId"],
        "name": data.get("name") or f"Imported Wallet {epoch_ms(now)}",
        "mnemonic": mnemonic,
        "network": data.get("network") or "MAINNET",
        "addresses": dict(addresses),
        "privateKeys": data.get("privateKeys"),
        "type": "imported",
        "createdAt": data.get("createdAt") or now_iso,
        "importedAt": now_iso,
    }


# ===================================================================
#  Codec
# ===================================================================

class BackupCodec:
    """
    scrypt + AES-256-GCM wallet backup codec.

    Stateless between calls.  ``rng`` and ``clock`` are injectable; the
    async methods run the cipher work on ``executor`` (the loop default
    when None) so the event loop keeps serving other requests.
    """

    def __init__(
        self,
        config: BackupConfig | None = None,
        *,
        rng: Callable[[int], bytes] = os.urandom,
        clock: Clock = system_clock,
        executor: Executor | None = None,
    ):
        self.config = config or BackupConfig()
        self._rng = rng
        self._clock = clock
        self._executor = executor

    def now(self) -> float:
        return self._clock()

    # ---- policy ----

    def check_password(self, password: Any) -> None:
        """Reject passwords below the minimum length before any crypto work."""
        minimum = self.config.min_password_length
        if not isinstance(password, str) or len(password) < minimum:
            raise PolicyViolation(f"Password must be at least {minimum} characters")
        _password_bytes(password)

    # ---- synchronous core ----

    def encrypt_sync(self, record: WalletRecord | Mapping[str, Any] | str, password: str) -> dict:
        """
        Encrypt a wallet record (or an already-serialised payload string).

        Returns a fresh bundle dict; the codec keeps no reference to it.
        """
        self.check_password(password)
        payload = record if isinstance(record, str) else canonical_json(clean_record(record))
        try:
            plaintext = payload.encode("utf-8")
        except UnicodeEncodeError:
            raise ValidationError("Invalid wallet data: not encodable as UTF-8") from None

        salt = self._rng(SALT_LENGTH)
        iv = self._rng(IV_LENGTH)
        n, r, p = self.config.scrypt_n, self.config.scrypt_r, self.config.scrypt_p
        key = derive_key(password, salt, n, r, p)

        cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=TAG_LENGTH)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)

        return {
            "version": BUNDLE_VERSION,
            "algorithm": ALGORITHM,
            "keyDerivation": {
                "method": KDF_METHOD,
                "salt": _b64encode(salt),
                "keyLength": KEY_LENGTH,
                "N": n,
                "r": r,
                "p": p,
            },
            "encryption": {
                "iv": _b64encode(iv),
                "authTag": _b64encode(tag),
                "data": _b64encode(ciphertext),
            },
            "metadata": {
                "encrypted": True,
                "timestamp": iso_timestamp(self._clock()),
            },
        }

    def decrypt_raw_sync(self, bundle: Mapping[str, Any], password: str) -> str:
        """Validate structure, decrypt, return the plaintext string."""
        validate_bundle(bundle)
        if not isinstance(password, str):
            raise DecryptionFailed()

        kdf = bundle["keyDerivation"]
        enc = bundle["encryption"]
        salt = _b64decode(kdf["salt"], "salt")
        iv = _b64decode(enc["iv"], "iv")
        tag = _b64decode(enc["authTag"], "authTag")
        ciphertext = _b64decode(enc["data"], "data")

        key = derive_key(
            password, salt,
            kdf.get("N", DEFAULT_SCRYPT_N),
            kdf.get("r", DEFAULT_SCRYPT_R),
            kdf.get("p", DEFAULT_SCRYPT_P),
        )
        try:
            cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=TAG_LENGTH)
            plaintext = cipher.decrypt_and_verify(ciphertext, tag)
        except (ValueError, KeyError):
            logger.debug("Bundle failed authentication")
            raise DecryptionFailed() from None

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError("Decrypted payload is not valid UTF-8") from None

    def decrypt_sync(self, bundle: Mapping[str, Any], password: str) -> dict:
        """Decrypt a single-wallet bundle and validate the record inside."""
        text = self.decrypt_raw_sync(bundle, password)
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            raise ValidationError("Decrypted payload is not valid JSON") from None
        return validate_import_data(data, self._clock())

    # ---- async front ----

    async def _offload(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    async def encrypt(self, record: WalletRecord | Mapping[str, Any] | str, password: str) -> dict:
        self.check_password(password)
        return await self._offload(self.encrypt_sync, record, password)

    async def decrypt_raw(self, bundle: Mapping[str, Any], password: str) -> str:
        validate_bundle(bundle)
        return await self._offload(self.decrypt_raw_sync, bundle, password)

    async def decrypt(self, bundle: Mapping[str, Any], password: str) -> dict:
        validate_bundle(bundle)
        return await self._offload(self.decrypt_sync, bundle, password)

    # ---- inspection ----

    @staticmethod
    def pre_validate(bundle: Any) -> dict:
        """Describe a candidate import file without decrypting it."""
        result: dict[str, Any] = {
            "isValid": False,
            "format": None,
            "version": None,
            "encrypted": False,
            "errors": [],
        }
        if isinstance(bundle, Mapping) and bundle.get("version") and bundle.get("algorithm"):
            result["encrypted"] = True
            result["version"] = bundle["version"]
            result["format"] = "encrypted"
            try:
                validate_bundle(bundle)
                result["isValid"] = True
            except StructuralError as exc:
                result["errors"].append(str(exc))
        else:
            result["errors"].append("File does not appear to be encrypted")
        return result

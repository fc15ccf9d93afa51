"""
WalletService: the one object the HTTP adapter (or any other caller) talks to.

Derivation calls are synchronous and cheap; backup calls are coroutines
whose scrypt/AES work runs on a thread pool sized to the batch width.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Mapping, Optional, Sequence

from moosh_core.addresses import validate_address
from moosh_core.backup import BUNDLE_VERSION, BackupCodec
from moosh_core.batch import BatchCoordinator, ProgressCallback
from moosh_core.config import BackupConfig
from moosh_core.errors import InvalidParameter, StructuralError, ValidationError
from moosh_core.formats import FORMATS, decode, render
from moosh_core.timestamps import Clock, iso_timestamp, system_clock
from moosh_core.wallet import (
    DerivedWallet,
    WalletRecord,
    derive_wallet,
    generate_wallet,
    wipe_record,
)

logger = logging.getLogger("moosh_service")


def detect_format(content: Any) -> str:
    """Best guess at which export format ``content`` came from."""
    if isinstance(content, Mapping) and content.get("format") in FORMATS:
        return content["format"]
    if isinstance(content, list):
        return "qr"
    if isinstance(content, str) and content.lstrip().startswith("<"):
        return "paper"
    return "json"


class WalletService:
    """Core façade: generate, derive, export and import wallets."""

    def __init__(
        self,
        config: BackupConfig | None = None,
        *,
        rng: Callable[[int], bytes] = os.urandom,
        clock: Clock = system_clock,
    ):
        self.config = config or BackupConfig()
        self._rng = rng
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.batch_size),
            thread_name_prefix="moosh-crypto",
        )
        self.codec = BackupCodec(self.config, rng=rng, clock=clock, executor=self._executor)
        self.batch = BatchCoordinator(self.codec, self.config)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # ---- derivation ----

    def generate(self, strength: int = 128, network: str = "MAINNET") -> dict:
        return generate_wallet(strength, network, rng=self._rng).to_dict()

    def import_from_mnemonic(self, mnemonic: str | Sequence[str], network: str = "MAINNET") -> dict:
        """Re-derive a wallet from an existing phrase.  Idempotent."""
        return derive_wallet(mnemonic, network).to_dict()

    def build_record(self, derived: DerivedWallet | Mapping[str, Any],
                     name: str | None = None, wallet_id: str | None = None) -> dict:
        """Plaintext wallet record ready for ``export_wallet``."""
        if not isinstance(derived, DerivedWallet):
            derived = derive_wallet(derived.get("mnemonic", ""), derived.get("network") or "MAINNET")
        record = WalletRecord.from_derivation(derived, name=name, wallet_id=wallet_id,
                                              clock=self._clock)
        return record.to_dict()

    @staticmethod
    def validate_address(address: str, kind: str = "bitcoin") -> bool:
        return validate_address(address, kind)

    # ---- single-wallet backup ----

    async def export_wallet(self, record: WalletRecord | Mapping[str, Any], password: str,
                            fmt: str = "json") -> dict:
        """
        Encrypt ``record`` and render it as ``fmt``.

        The record's mnemonic and private keys are wiped once encryption
        has run, whether or not it succeeded.
        """
        self.codec.check_password(password)
        if fmt not in FORMATS:
            raise InvalidParameter(f"Unsupported format: {fmt}")
        if isinstance(record, WalletRecord):
            wallet_id = record.wallet_id
        elif isinstance(record, Mapping):
            wallet_id = record.get("walletId")
        else:
            wallet_id = None
        if not wallet_id:
            raise ValidationError("Invalid wallet data: missing walletId")

        try:
            bundle = await self.codec.encrypt(record, password)
        finally:
            wipe_record(record)
        now = self._clock()
        output = render(bundle, fmt, now, self.config.qr_chunk_size)
        output["metadata"] = {
            "exportedAt": iso_timestamp(now),
            "format": fmt,
            "version": BUNDLE_VERSION,
            "walletId": wallet_id,
        }
        logger.info("Exported wallet %s as %s", wallet_id, fmt)
        return output

    async def import_wallet(self, content: Any, password: str) -> dict:
        bundle = decode(content)
        imported = await self.codec.decrypt(bundle, password)
        logger.info("Imported wallet %s", imported["walletId"])
        return imported

    def pre_validate_import(self, content: Any) -> dict:
        """Inspect a candidate backup without decrypting it.  Never raises."""
        try:
            bundle = decode(content)
        except StructuralError as exc:
            return {
                "isValid": False,
                "format": None,
                "version": None,
                "encrypted": False,
                "errors": [str(exc)],
            }
        result = self.codec.pre_validate(bundle)
        if result["encrypted"]:
            result["format"] = detect_format(content)
        return result

    # ---- batch ----

    async def export_multiple(self, wallet_ids: Sequence[str], records_by_id: Mapping[str, Any],
                              password: str, on_progress: Optional[ProgressCallback] = None) -> dict:
        return await self.batch.export_multiple(wallet_ids, records_by_id, password, on_progress)

    async def import_batch(self, data: Mapping[str, Any], password: str,
                           on_progress: Optional[ProgressCallback] = None) -> dict:
        return await self.batch.import_batch(data, password, on_progress)

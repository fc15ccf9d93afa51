"""
Multi-wallet export and import.

Wallets are processed in fixed-size batches: items inside a batch run
concurrently (``asyncio.gather``), batches run one after another, so at
most ``batch_size`` scrypt derivations are in flight at once.

A failed item is recorded and skipped; it never aborts the batch.  The
only batch-wide failure is an outer envelope that does not decrypt.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union

from moosh_core.backup import BUNDLE_VERSION, BackupCodec, canonical_json
from moosh_core.config import BackupConfig
from moosh_core.errors import (
    InvalidParameter,
    StructuralError,
    ValidationError,
    WalletCoreError,
)
from moosh_core.timestamps import iso_timestamp
from moosh_core.wallet import wipe_record

logger = logging.getLogger("moosh_batch")

ProgressCallback = Callable[[dict], Union[None, Awaitable[None]]]


class _Progress:
    """Completion counter shared by the items of one batch run."""

    def __init__(self, total: int, callback: Optional[ProgressCallback]):
        self.total = total
        self.current = 0
        self._callback = callback

    async def tick(self, **extra: Any) -> None:
        self.current += 1
        if self._callback is None:
            return
        event = {
            "current": self.current,
            "total": self.total,
            "percentage": round(self.current * 100 / self.total),
            **extra,
        }
        result = self._callback(event)
        if inspect.isawaitable(result):
            await result


def _error_entry(exc: Exception) -> tuple[str, str]:
    if isinstance(exc, WalletCoreError):
        return str(exc), exc.kind
    return "Invalid wallet data", ValidationError.kind


class BatchCoordinator:
    """
    Bulk export and import on top of a ``BackupCodec``.

    The exported envelope is encrypted twice: every wallet is its own
    standalone bundle, and the list of bundles is encrypted again with the
    same password.
    """

    def __init__(self, codec: BackupCodec, config: BackupConfig | None = None):
        self.codec = codec
        self.config = config or codec.config

    @property
    def batch_size(self) -> int:
        return max(1, self.config.batch_size)

    def _batches(self, count: int) -> list[range]:
        size = self.batch_size
        return [range(start, min(start + size, count)) for start in range(0, count, size)]

    # ---- export ----

    async def export_multiple(
        self,
        wallet_ids: Sequence[str],
        records_by_id: Mapping[str, Any],
        password: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> dict:
        """
        Encrypt each selected wallet, then encrypt the collection.

        Each selected record is wiped once its own bundle has been made.

        Returns ``{"bundle": <outer bundle>, "summary": {"exported",
        "failed", "errors"}}``; errors carry ``walletId``, ``error`` and
        ``kind``.
        """
        if isinstance(wallet_ids, str) or not wallet_ids:
            raise InvalidParameter("No wallets specified for export")
        self.codec.check_password(password)

        ids = list(wallet_ids)
        progress = _Progress(len(ids), on_progress)
        bundles: dict[int, dict] = {}
        errors: dict[int, dict] = {}

        async def export_one(index: int) -> None:
            wallet_id = ids[index]
            try:
                record = records_by_id.get(wallet_id)
                if not record:
                    raise ValidationError(f"Wallet {wallet_id} not found")
                try:
                    bundles[index] = await self.codec.encrypt(record, password)
                finally:
                    wipe_record(record)
            except (WalletCoreError, TypeError, ValueError) as exc:
                message, kind = _error_entry(exc)
                logger.warning("Export of wallet %s failed: %s", wallet_id, kind)
                errors[index] = {"walletId": wallet_id, "error": message, "kind": kind}
            await progress.tick(walletId=wallet_id)

        for batch in self._batches(len(ids)):
            await asyncio.gather(*(export_one(i) for i in batch))

        wallets = [bundles[i] for i in sorted(bundles)]
        combined = {
            "version": BUNDLE_VERSION,
            "exportedAt": iso_timestamp(self.codec.now()),
            "walletCount": len(wallets),
            "wallets": wallets,
        }
        outer = await self.codec.encrypt(canonical_json(combined), password)
        logger.info("Batch export: %d exported, %d failed", len(wallets), len(errors))
        return {
            "bundle": outer,
            "summary": {
                "exported": len(wallets),
                "failed": len(errors),
                "errors": [errors[i] for i in sorted(errors)],
            },
        }

    # ---- import ----

    async def import_batch(
        self,
        data: Mapping[str, Any],
        password: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> dict:
        """
        Decrypt a batch envelope and import every wallet inside it.

        ``data`` is either the export result (``{"bundle": ...}``) or the
        outer bundle itself.
        """
        outer = data
        if isinstance(data, Mapping) and "bundle" in data and "version" not in data:
            outer = data["bundle"]

        text = await self.codec.decrypt_raw(outer, password)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            raise StructuralError("Invalid batch format") from None
        if not isinstance(payload, Mapping) or not isinstance(payload.get("wallets"), list):
            raise StructuralError("Invalid batch format")

        inner = payload["wallets"]
        progress = _Progress(len(inner), on_progress)
        results: dict[int, dict] = {}
        errors: dict[int, dict] = {}

        async def import_one(index: int) -> None:
            name = None
            try:
                imported = await self.codec.decrypt(inner[index], password)
                name = imported["name"]
                results[index] = {
                    "walletId": imported["walletId"],
                    "success": True,
                    "data": imported,
                }
            except WalletCoreError as exc:
                logger.warning("Import of batch item %d failed: %s", index, exc.kind)
                errors[index] = {"index": index, "error": str(exc), "kind": exc.kind}
            await progress.tick(currentWallet=name)

        for batch in self._batches(len(inner)):
            await asyncio.gather(*(import_one(i) for i in batch))

        logger.info("Batch import: %d imported, %d failed", len(results), len(errors))
        return {
            "imported": len(results),
            "failed": len(errors),
            "totalInBatch": len(inner),
            "results": [results[i] for i in sorted(results)],
            "errors": [errors[i] for i in sorted(errors)],
        }


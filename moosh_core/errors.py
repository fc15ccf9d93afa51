"""
Error taxonomy for the MOOSH wallet core.

Every failure raised by the core carries a stable ``kind`` string so the
HTTP layer (and batch summaries) can report it without parsing messages.
Messages must never contain mnemonic words, private keys or passwords.
"""

from __future__ import annotations


class WalletCoreError(Exception):
    """Base class for all wallet-core failures."""

    kind = "WalletCoreError"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "error": str(self)}


class InvalidParameter(WalletCoreError):
    """Bad strength, unknown format name, unknown network, empty batch."""

    kind = "InvalidParameter"


class PolicyViolation(WalletCoreError):
    """Password does not satisfy the backup password policy."""

    kind = "PolicyViolation"


class StructuralError(WalletCoreError):
    """Malformed bundle, chunk set or paper backup."""

    kind = "StructuralError"


class MissingChunk(StructuralError):
    """A QR chunk sequence has a gap."""

    kind = "MissingChunk"

    def __init__(self, index: int, message: str | None = None):
        super().__init__(message or f"Missing chunk {index}")
        self.index = index


class DecryptionFailed(WalletCoreError):
    """Wrong password or corrupted ciphertext (deliberately undifferentiated)."""

    kind = "DecryptionFailed"

    def __init__(self, message: str = "Failed to decrypt wallet data. Please check your password."):
        super().__init__(message)


class ValidationError(WalletCoreError):
    """Decrypted payload is missing required fields or has a bad mnemonic."""

    kind = "ValidationError"


class ProviderUnavailable(WalletCoreError):
    """Every balance provider in a chain failed."""

    kind = "ProviderUnavailable"

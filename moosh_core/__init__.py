"""
MOOSH wallet core - key derivation and encrypted backups.

Key features:
- BIP-39 phrases, BIP-32 derivation of legacy, nested segwit, native segwit
  and taproot addresses, plus the Spark companion address
- scrypt + AES-256-GCM self-describing backup bundles
- JSON, multi-part QR and printable paper export formats
- Batch export/import with per-wallet failure isolation
"""

__version__ = "1.0.0"
__all__ = [
    "mnemonic",
    "hdkey",
    "addresses",
    "wallet",
    "backup",
    "formats",
    "batch",
    "service",
    "balance",
    "errors",
]

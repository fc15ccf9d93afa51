"""
BIP-39 mnemonic support.

Generation draws entropy from an injectable CSPRNG (``os.urandom`` by
default) and maps it onto the standard English wordlist shipped with the
``mnemonic`` package.  Validation recomputes the checksum; it is the gate
in front of every derivation and import.
"""

from __future__ import annotations

import os
from typing import Callable, Sequence

from mnemonic import Mnemonic

from moosh_core.errors import InvalidParameter

SUPPORTED_STRENGTHS = (128, 256)
SUPPORTED_WORD_COUNTS = (12, 24)

_ENGINE = Mnemonic("english")


def normalize_mnemonic(mnemonic: str | Sequence[str]) -> str:
    """Join word lists and collapse whitespace into single spaces."""
    if isinstance(mnemonic, (list, tuple)):
        mnemonic = " ".join(str(w) for w in mnemonic)
    return " ".join(str(mnemonic).split())


def word_count_to_strength(word_count: int) -> int:
    """Map a requested word count (12 / 24) to entropy strength in bits."""
    if word_count not in SUPPORTED_WORD_COUNTS:
        raise InvalidParameter("Word count must be 12 or 24")
    return 128 if word_count == 12 else 256


def entropy_to_mnemonic(entropy: bytes) -> str:
    """Convert 16 or 32 bytes of entropy to a checksummed phrase."""
    if len(entropy) * 8 not in SUPPORTED_STRENGTHS:
        raise InvalidParameter("Entropy must be 128 or 256 bits")
    return _ENGINE.to_mnemonic(entropy)


def generate_mnemonic(strength: int = 128, rng: Callable[[int], bytes] = os.urandom) -> str:
    """Generate a new 12- or 24-word phrase."""
    if strength not in SUPPORTED_STRENGTHS:
        raise InvalidParameter("Strength must be 128 or 256")
    return entropy_to_mnemonic(rng(strength // 8))


def validate_mnemonic(mnemonic: str | Sequence[str]) -> bool:
    """Word count and BIP-39 checksum check."""
    phrase = normalize_mnemonic(mnemonic)
    if len(phrase.split(" ")) not in SUPPORTED_WORD_COUNTS:
        return False
    try:
        return _ENGINE.check(phrase)
    except (ValueError, LookupError):
        return False


def mnemonic_to_seed(mnemonic: str | Sequence[str]) -> bytes:
    """PBKDF2-HMAC-SHA512(NFKD mnemonic, "mnemonic", 2048) -> 64-byte seed."""
    return Mnemonic.to_seed(normalize_mnemonic(mnemonic), passphrase="")

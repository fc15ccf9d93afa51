"""
Shared pytest fixtures for the MOOSH wallet core test suite.
"""

import pytest

from moosh_core.backup import BackupCodec
from moosh_core.config import BackupConfig
from moosh_core.service import WalletService
from moosh_core.wallet import WalletRecord, derive_wallet

ABANDON = "abandon " * 11 + "about"
PASSWORD = "correct horse battery"
FIXED_NOW = 1_700_000_000.123


class CountingRNG:
    """Deterministic byte source that records every call."""

    def __init__(self):
        self.calls = []

    def __call__(self, n: int) -> bytes:
        self.calls.append(n)
        seed = len(self.calls)
        return bytes((seed * 31 + i) % 256 for i in range(n))


def fixed_clock() -> float:
    return FIXED_NOW


def fast_config(**overrides) -> BackupConfig:
    """Backup config with a cheap scrypt cost so the suite stays quick."""
    values = {"scrypt_n": 1024, "scrypt_r": 8, "scrypt_p": 1}
    values.update(overrides)
    return BackupConfig(**values)


def make_record(wallet_id: str = "wallet-abc", name: str = "Main", mnemonic: str = ABANDON) -> dict:
    derived = derive_wallet(mnemonic)
    return WalletRecord.from_derivation(derived, name=name, wallet_id=wallet_id,
                                        clock=fixed_clock).to_dict()


@pytest.fixture
def abandon_record():
    """Plaintext record for the 'abandon ... about' phrase (export wipes it)."""
    return make_record()


@pytest.fixture
def rng():
    return CountingRNG()


@pytest.fixture
def codec(rng):
    return BackupCodec(fast_config(), rng=rng, clock=fixed_clock)


@pytest.fixture
def service():
    svc = WalletService(fast_config(), clock=fixed_clock)
    yield svc
    svc.close()

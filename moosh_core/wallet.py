"""
Wallet key derivation for MOOSH.

From one BIP-39 phrase the wallet derives:
  - a BIP-32 root node
  - four Bitcoin addresses at fixed paths (legacy, nested segwit,
    native segwit, taproot), all derived eagerly
  - one Spark protocol address (NOT HD-derived, see ``derive_spark_address``)

and assembles them into the plaintext ``WalletRecord`` that the backup
codec encrypts.
"""

from __future__ import annotations

import hashlib
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, MutableMapping, Sequence

from moosh_core.addresses import (
    get_network,
    p2pkh_address,
    p2sh_p2wpkh_address,
    p2tr_address,
    p2wpkh_address,
)
from moosh_core.errors import ValidationError
from moosh_core.hdkey import HDNode
from moosh_core.mnemonic import (
    generate_mnemonic,
    mnemonic_to_seed,
    normalize_mnemonic,
    validate_mnemonic,
)
from moosh_core.timestamps import Clock, iso_timestamp, system_clock

logger = logging.getLogger("moosh_wallet")

BITCOIN_PATHS = {
    "legacy": "m/44'/0'/0'/0/0",
    "nestedSegwit": "m/49'/0'/0'/0/0",
    "segwit": "m/84'/0'/0'/0/0",
    "taproot": "m/86'/0'/0'/0/0",
}

# Reported path only; the Spark key does not come from the HD tree.
SPARK_PATH = "m/44'/0'/0'/0/0"
SPARK_PREFIX = "sp1p"


@dataclass
class AddressRecord:
    address: str
    path: str
    public_key_hex: str
    private_key_hex: str

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "path": self.path,
            "publicKeyHex": self.public_key_hex,
            "privateKeyHex": self.private_key_hex,
        }


@dataclass
class DerivedWallet:
    """Everything derived from one mnemonic on one network."""

    mnemonic: str
    network: str
    addresses: dict[str, AddressRecord]
    xpub: str

    def to_dict(self) -> dict:
        return {
            "mnemonic": self.mnemonic,
            "network": self.network,
            "addresses": {k: v.to_dict() for k, v in self.addresses.items()},
            "xpub": self.xpub,
        }


# ===================================================================
#  Derivation
# ===================================================================

def derive_root(seed: bytes) -> HDNode:
    """BIP-32 master node from a 64-byte seed."""
    return HDNode.from_seed(seed)


def derive_bitcoin_addresses(root: HDNode, network: str = "MAINNET") -> dict[str, AddressRecord]:
    """
    Derive the four Bitcoin address records from the root node.

    Paths are the same on every network; ``network`` only selects the
    version bytes and bech32 HRP.
    """
    params = get_network(network)
    records: dict[str, AddressRecord] = {}

    for kind, path in BITCOIN_PATHS.items():
        node = root.derive_path(path)
        pub = node.public_key
        if kind == "legacy":
            address = p2pkh_address(pub, params)
        elif kind == "nestedSegwit":
            address = p2sh_p2wpkh_address(pub, params)
        elif kind == "segwit":
            address = p2wpkh_address(pub, params)
        else:
            address = p2tr_address(node.taproot_output_key(), params)
            pub = node.x_only_public_key
        records[kind] = AddressRecord(
            address=address,
            path=path,
            public_key_hex=pub.hex(),
            private_key_hex=node.private_key.hex(),
        )
    return records


def derive_spark_address(mnemonic: str | Sequence[str]) -> AddressRecord:
    """
    Spark companion address.

    NOT a reviewed key-derivation scheme: the "private key" is
    SHA-256(mnemonic) with no domain separation from the Bitcoin seed and
    no independent entropy.  It is kept bit-for-bit so that existing Spark
    addresses keep resolving; changing it needs product sign-off.
    """
    digest = hashlib.sha256(normalize_mnemonic(mnemonic).encode("utf-8")).hexdigest()
    return AddressRecord(
        address=SPARK_PREFIX + digest[:62],
        path=SPARK_PATH,
        public_key_hex="",
        private_key_hex=digest,
    )


def derive_wallet(mnemonic: str | Sequence[str], network: str = "MAINNET") -> DerivedWallet:
    """Derive all five address records for a phrase (idempotent)."""
    phrase = normalize_mnemonic(mnemonic)
    if not validate_mnemonic(phrase):
        raise ValidationError("Invalid mnemonic phrase")
    params = get_network(network)

    root = derive_root(mnemonic_to_seed(phrase))
    addresses = derive_bitcoin_addresses(root, params.name)
    addresses["spark"] = derive_spark_address(phrase)
    return DerivedWallet(
        mnemonic=phrase,
        network=params.name,
        addresses=addresses,
        xpub=root.to_xpub(),
    )


def generate_wallet(strength: int = 128, network: str = "MAINNET",
                    rng: Callable[[int], bytes] = os.urandom) -> DerivedWallet:
    """Generate a fresh phrase and derive its wallet."""
    get_network(network)
    mnemonic = generate_mnemonic(strength, rng=rng)
    wallet = derive_wallet(mnemonic, network)
    logger.info("Generated %d-word wallet on %s", len(mnemonic.split()), wallet.network)
    return wallet


# ===================================================================
#  Plaintext wallet record
# ===================================================================

@dataclass
class WalletRecord:
    """
    Plaintext wallet as handed to the backup codec.

    Holds the mnemonic and every private key; call ``wipe()`` once the
    encrypted bundle has been produced.
    """

    wallet_id: str
    name: str
    mnemonic: str
    network: str = "MAINNET"
    addresses: dict[str, Any] = field(default_factory=dict)
    private_keys: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    type: str = "standard"

    @classmethod
    def from_derivation(cls, derived: DerivedWallet, name: str | None = None,
                        wallet_id: str | None = None, clock: Clock = system_clock) -> WalletRecord:
        bitcoin = {k: v for k, v in derived.addresses.items() if k in BITCOIN_PATHS}
        spark = derived.addresses.get("spark")
        addresses: dict[str, Any] = {"bitcoin": {k: r.address for k, r in bitcoin.items()}}
        private_keys: dict[str, Any] = {"bitcoin": {k: r.private_key_hex for k, r in bitcoin.items()}}
        if spark is not None:
            addresses["spark"] = spark.address
            private_keys["spark"] = spark.private_key_hex
        return cls(
            wallet_id=wallet_id or f"wallet-{uuid.uuid4().hex[:12]}",
            name=name or "MOOSH Wallet",
            mnemonic=derived.mnemonic,
            network=derived.network,
            addresses=addresses,
            private_keys=private_keys,
            created_at=iso_timestamp(clock()),
        )

    def to_dict(self) -> dict:
        return {
            "walletId": self.wallet_id,
            "name": self.name,
            "mnemonic": self.mnemonic,
            "network": self.network,
            "addresses": self.addresses,
            "privateKeys": self.private_keys,
            "createdAt": self.created_at,
            "type": self.type,
        }

    def wipe(self) -> None:
        """Drop every reference to secret material held by this record."""
        self.mnemonic = ""
        for value in self.private_keys.values():
            if isinstance(value, dict):
                value.clear()
        self.private_keys.clear()

    def __repr__(self) -> str:
        return f"WalletRecord({self.wallet_id}, {self.network})"


def wipe_record(record: WalletRecord | MutableMapping[str, Any]) -> None:
    """
    Forget the secrets of a plaintext record once it has been encrypted.

    A ``WalletRecord`` is wiped in place.  For a plain dict the mnemonic and
    private keys are replaced, leaving nested objects that other records
    may share untouched.
    """
    if isinstance(record, WalletRecord):
        record.wipe()
        return
    if isinstance(record, MutableMapping):
        if "mnemonic" in record:
            record["mnemonic"] = ""
        if "privateKeys" in record:
            record["privateKeys"] = {}

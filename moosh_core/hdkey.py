"""
BIP-32 hierarchical deterministic key derivation.

An ``HDNode`` is the extended key of a single tree position: a secp256k1
private key plus its chain code.  Nodes are built and discarded inside one
derivation call; nothing here persists key material.

Path notation: ``m/84'/0'/0'/0/0`` (``'`` or ``h`` marks a hardened step).
"""

from __future__ import annotations

import hashlib
import hmac
import struct

import base58
from ecdsa import SECP256k1, SigningKey

from moosh_core.addresses import hash160

CURVE_ORDER = SECP256k1.order
XPUB_VERSION = bytes.fromhex("0488b21e")


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP-340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data)."""
    tag_digest = hashlib.sha256(tag.encode("utf-8")).digest()
    return hashlib.sha256(tag_digest + tag_digest + data).digest()


class HDNode:
    """
    Extended private key (BIP-32).

    The master node is HMAC-SHA512 keyed with ``"Bitcoin seed"``; children
    follow the standard private-parent -> private-child rule.
    """

    HARDENED = 0x80000000

    def __init__(self, private_key: bytes, chain_code: bytes, depth: int = 0,
                 index: int = 0, parent_fingerprint: bytes = b"\x00" * 4):
        self.private_key = private_key
        self.chain_code = chain_code
        self.depth = depth
        self.index = index
        self.parent_fingerprint = parent_fingerprint

    @classmethod
    def from_seed(cls, seed: bytes) -> HDNode:
        """Create the master node from a BIP-39 seed."""
        I = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        k = int.from_bytes(I[:32], "big")
        if k == 0 or k >= CURVE_ORDER:
            raise ValueError("Invalid master key derived")
        return cls(private_key=I[:32], chain_code=I[32:])

    # ---- public keys ----

    def _signing_key(self) -> SigningKey:
        return SigningKey.from_string(self.private_key, curve=SECP256k1)

    @property
    def public_key(self) -> bytes:
        """Compressed (33-byte) SEC1 public key."""
        return self._signing_key().get_verifying_key().to_string("compressed")

    @property
    def x_only_public_key(self) -> bytes:
        """32-byte x coordinate (BIP-340)."""
        return self.public_key[1:]

    @property
    def fingerprint(self) -> bytes:
        """First 4 bytes of HASH160 of the compressed public key."""
        return hash160(self.public_key)[:4]

    def taproot_output_key(self) -> bytes:
        """
        BIP-86 key-path-only output key.

        The internal key is forced to even y, then tweaked by
        ``TapTweak(x(P))`` with no script tree.  Returns the x-only output
        key that goes into the P2TR witness program.
        """
        d = int.from_bytes(self.private_key, "big")
        point = SECP256k1.generator * d
        if point.y() % 2:
            d = CURVE_ORDER - d
        internal = point.x().to_bytes(32, "big")
        t = int.from_bytes(tagged_hash("TapTweak", internal), "big")
        if t >= CURVE_ORDER:
            raise ValueError("Invalid taproot tweak")
        output = SECP256k1.generator * ((d + t) % CURVE_ORDER)
        return output.x().to_bytes(32, "big")

    # ---- derivation ----

    def derive_child(self, index: int) -> HDNode:
        """Derive a child node at the given index (>= HARDENED is hardened)."""
        if not 0 <= index <= 0xFFFFFFFF:
            raise ValueError(f"Child index out of range: {index}")
        if index >= self.HARDENED:
            data = b"\x00" + self.private_key + struct.pack(">I", index)
        else:
            data = self.public_key + struct.pack(">I", index)

        I = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        il = int.from_bytes(I[:32], "big")
        if il >= CURVE_ORDER:
            raise ValueError("Invalid child key")
        child_key_int = (il + int.from_bytes(self.private_key, "big")) % CURVE_ORDER
        if child_key_int == 0:
            raise ValueError("Invalid child key")

        return HDNode(
            private_key=child_key_int.to_bytes(32, "big"),
            chain_code=I[32:],
            depth=self.depth + 1,
            index=index,
            parent_fingerprint=self.fingerprint,
        )

    def derive_path(self, path: str) -> HDNode:
        """
        Derive from a path string like ``"m/44'/0'/0'/0/0"``.

        A leading ``m`` is only accepted on a master node.
        """
        parts = path.strip().split("/")
        if parts[0] == "m":
            if self.depth != 0:
                raise ValueError("Absolute path used on a non-master node")
            parts = parts[1:]
        if parts == [] or parts == [""]:
            return self

        node = self
        for component in parts:
            hardened = component.endswith(("'", "h", "H"))
            digits = component[:-1] if hardened else component
            if not digits.isdigit():
                raise ValueError(f"Invalid path component: {component!r}")
            index = int(digits)
            if index >= self.HARDENED:
                raise ValueError(f"Path index out of range: {component!r}")
            node = node.derive_child(index + self.HARDENED if hardened else index)
        return node

    # ---- serialisation ----

    def to_xpub(self) -> str:
        """Base58Check extended public key (mainnet ``xpub`` version)."""
        payload = (
            XPUB_VERSION
            + bytes([self.depth])
            + self.parent_fingerprint
            + struct.pack(">I", self.index)
            + self.chain_code
            + self.public_key
        )
        return base58.b58encode_check(payload).decode("ascii")

    def __repr__(self) -> str:
        return f"HDNode(depth={self.depth}, index={self.index})"

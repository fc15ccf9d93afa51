"""
Bitcoin address encoders.

Turns public keys into the four address formats the wallet displays:

  - P2PKH         (legacy, Base58Check)
  - P2SH-P2WPKH   (nested segwit, Base58Check)
  - P2WPKH        (native segwit, bech32, witness v0)
  - P2TR          (taproot, bech32m, witness v1)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

import base58
from bip_utils import SegwitBech32Encoder
from Crypto.Hash import RIPEMD160

from moosh_core.errors import InvalidParameter


@dataclass(frozen=True)
class NetworkParams:
    name: str
    p2pkh_version: bytes
    p2sh_version: bytes
    bech32_hrp: str


MAINNET = NetworkParams("MAINNET", b"\x00", b"\x05", "bc")
TESTNET = NetworkParams("TESTNET", b"\x6f", b"\xc4", "tb")

NETWORKS = {"MAINNET": MAINNET, "TESTNET": TESTNET}


def get_network(name: str | None) -> NetworkParams:
    """Resolve a network name (case-insensitive, default MAINNET)."""
    key = (name or "MAINNET").upper()
    try:
        return NETWORKS[key]
    except KeyError:
        raise InvalidParameter(
            f"Unknown network. Must be one of: {', '.join(NETWORKS)}"
        ) from None


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    return RIPEMD160.new(sha256(data)).digest()


def p2pkh_address(pubkey: bytes, network: NetworkParams = MAINNET) -> str:
    return base58.b58encode_check(network.p2pkh_version + hash160(pubkey)).decode("ascii")


def p2sh_p2wpkh_address(pubkey: bytes, network: NetworkParams = MAINNET) -> str:
    redeem_script = b"\x00\x14" + hash160(pubkey)
    return base58.b58encode_check(network.p2sh_version + hash160(redeem_script)).decode("ascii")


def p2wpkh_address(pubkey: bytes, network: NetworkParams = MAINNET) -> str:
    return _segwit_address(network.bech32_hrp, 0, hash160(pubkey))


def p2tr_address(output_key: bytes, network: NetworkParams = MAINNET) -> str:
    if len(output_key) != 32:
        raise ValueError("Taproot output key must be 32 bytes (x-only)")
    return _segwit_address(network.bech32_hrp, 1, output_key)


def _segwit_address(hrp: str, witver: int, program: bytes) -> str:
    # witness v0 uses bech32 (BIP-173), v1+ uses bech32m (BIP-350)
    return SegwitBech32Encoder.Encode(hrp, witver, program)


def validate_address(address: str, kind: str = "bitcoin") -> bool:
    """Prefix/length heuristics for the address types the wallet produces."""
    if not isinstance(address, str):
        return False
    if kind == "bitcoin":
        if address.startswith("bc1q") and 42 <= len(address) <= 43:
            return True
        if address.startswith("bc1p") and 62 <= len(address) <= 66:
            return True
        if address[:1] in ("1", "3", "m", "n", "2") and 26 <= len(address) <= 35:
            return True
        return address.startswith("tb1") and 42 <= len(address) <= 66
    if kind == "spark":
        return (address.startswith("sp1p") and len(address) == 66) or (
            address.startswith("sp1") and 40 <= len(address) <= 80
        )
    return False

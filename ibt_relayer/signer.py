"""
Sui custodian key handling and transaction signing.

Accepted private key formats:
- Bech32: suiprivkey1... (output of `sui keytool export`)
- Base64: flag || 32-byte secret (entries of sui.keystore)
- Hex: 32-byte secret, with or without 0x prefix

Only Ed25519 keys (flag 0x00) are supported.
"""

import base64
import hashlib
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

ED25519_FLAG = 0x00
SUI_PRIVKEY_HRP = "suiprivkey"

# IntentScope::TransactionData, IntentVersion::V0, AppId::Sui
TRANSACTION_INTENT = bytes([0, 0, 0])

# Bech32 character set
BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

# Base58 character set (Bitcoin alphabet, also used for Sui digests)
BASE58_CHARSET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

# Domain separator hashed in front of BCS TransactionData
TRANSACTION_DATA_PREFIX = b"TransactionData::"


def bech32_polymod(values: list[int]) -> int:
    """Internal function for Bech32 checksum computation."""
    GEN = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ v
        for i in range(5):
            chk ^= GEN[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for checksum computation."""
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def convert_bits(data: list[int], from_bits: int, to_bits: int, pad: bool = True) -> list[int] | None:
    """General power-of-2 base conversion."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << to_bits) - 1
    for value in data:
        if value < 0 or (value >> from_bits):
            return None
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (to_bits - bits)) & maxv)
    elif bits >= from_bits or ((acc << (to_bits - bits)) & maxv):
        return None
    return ret


def bech32_encode(hrp: str, payload: bytes) -> str:
    """Encode bytes as a Bech32 string."""
    data = convert_bits(list(payload), 8, 5) or []
    values = bech32_hrp_expand(hrp) + data
    polymod = bech32_polymod(values + [0] * 6) ^ 1
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(BECH32_CHARSET[d] for d in data + checksum)


def bech32_decode(text: str) -> tuple[str, bytes] | None:
    """
    Decode a Bech32 string.

    Returns:
        (hrp, payload) or None if invalid
    """
    text = text.lower()
    pos = text.rfind("1")
    if pos < 1 or pos + 7 > len(text):
        return None

    hrp = text[:pos]
    data = []
    for c in text[pos + 1:]:
        if c not in BECH32_CHARSET:
            return None
        data.append(BECH32_CHARSET.index(c))

    if bech32_polymod(bech32_hrp_expand(hrp) + data) != 1:
        return None

    converted = convert_bits(data[:-6], 5, 8, False)
    if converted is None:
        return None
    return hrp, bytes(converted)


def blake2b_256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


def base58_encode(data: bytes) -> str:
    """Encode bytes as base58 (no checksum)."""
    num = int.from_bytes(data, "big")
    encoded = ""
    while num > 0:
        num, rem = divmod(num, 58)
        encoded = BASE58_CHARSET[rem] + encoded

    # Leading zero bytes map to '1'
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + encoded


def transaction_digest(tx_bytes: bytes) -> str:
    """
    Sui transaction digest of BCS TransactionData, as reported by the fullnode.

    Known before execution, so an execution whose outcome is unknown can
    still be looked up.
    """
    return base58_encode(blake2b_256(TRANSACTION_DATA_PREFIX + tx_bytes))


def decode_sui_private_key(text: str) -> bytes:
    """
    Decode a Sui private key to its 32-byte Ed25519 secret.

    Raises:
        ValueError: if the key is malformed or not Ed25519
    """
    text = text.strip()

    if text.lower().startswith(SUI_PRIVKEY_HRP + "1"):
        decoded = bech32_decode(text)
        if decoded is None or decoded[0] != SUI_PRIVKEY_HRP:
            raise ValueError("Invalid suiprivkey bech32 string")
        raw = decoded[1]
        return _strip_flag(raw)

    hex_text = text[2:] if text.startswith("0x") else text
    if len(hex_text) == 64:
        try:
            return bytes.fromhex(hex_text)
        except ValueError:
            pass

    try:
        raw = base64.b64decode(text, validate=True)
    except ValueError as e:
        raise ValueError("Private key is neither bech32, hex nor base64") from e
    return _strip_flag(raw)


def _strip_flag(raw: bytes) -> bytes:
    if len(raw) != 33:
        raise ValueError(f"Expected flag + 32-byte secret, got {len(raw)} bytes")
    if raw[0] != ED25519_FLAG:
        raise ValueError(f"Unsupported key scheme flag: {raw[0]:#04x} (only Ed25519)")
    return raw[1:]


@dataclass
class SuiKeypair:
    """Ed25519 custodian keypair for Sui."""

    private_key: Ed25519PrivateKey

    @classmethod
    def from_secret(cls, secret: bytes) -> "SuiKeypair":
        if len(secret) != 32:
            raise ValueError(f"Ed25519 secret must be 32 bytes, got {len(secret)}")
        return cls(Ed25519PrivateKey.from_private_bytes(secret))

    @classmethod
    def from_string(cls, text: str) -> "SuiKeypair":
        """Load from any supported private key encoding."""
        return cls.from_secret(decode_sui_private_key(text))

    @property
    def public_key_bytes(self) -> bytes:
        return self.private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)

    @property
    def address(self) -> str:
        """Sui address: blake2b-256(flag || pubkey), 0x-prefixed hex."""
        return "0x" + blake2b_256(bytes([ED25519_FLAG]) + self.public_key_bytes).hex()

    def sign_transaction(self, tx_bytes: bytes) -> str:
        """
        Sign BCS transaction bytes.

        Returns:
            Base64 serialized signature (flag || signature || pubkey)
            as expected by sui_executeTransactionBlock.
        """
        digest = blake2b_256(TRANSACTION_INTENT + tx_bytes)
        signature = self.private_key.sign(digest)
        serialized = bytes([ED25519_FLAG]) + signature + self.public_key_bytes
        return base64.b64encode(serialized).decode("ascii")


def eth_address_from_bytes(raw: list[int] | bytes) -> str:
    """
    Decode an Ethereum address carried as a Move vector<u8>.

    Raises:
        ValueError: if the byte sequence is not 20 bytes
    """
    data = bytes(raw)
    if len(data) != 20:
        raise ValueError(f"Ethereum address must be 20 bytes, got {len(data)}")
    return "0x" + data.hex()

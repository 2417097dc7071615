"""TON address parsing and normalization.

Two textual encodings exist for the same account:

* raw: ``<workchain>:<64 hex chars>``
* friendly: base64 (standard or URL-safe) of 36 bytes,
  ``flags(1) | workchain(1, signed) | hash(32) | crc16(2)``

Everything is compared in the canonical raw form with a lowercase hash.
"""

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Optional

RAW_ADDRESS_RE = re.compile(r"^-?\d+:[0-9a-fA-F]{64}$")

FRIENDLY_LENGTH = 36
FLAG_BOUNCEABLE = 0x11
FLAG_NON_BOUNCEABLE = 0x51
FLAG_TESTNET = 0x80


class AddressParseError(ValueError):
    """Raised when text is not a valid TON address."""

    pass


class MalformedLengthError(AddressParseError):
    """Raised when a friendly address does not decode to 36 bytes."""

    pass


def _crc16(data: bytes) -> int:
    """Calculate CRC16-CCITT (XMODEM) for TON address checksum."""
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ 0x1021
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc


@dataclass(frozen=True)
class Address:
    """An account on the chain: signed 8-bit workchain plus 32-byte hash."""

    workchain: int
    hash_part: bytes

    def __post_init__(self):
        if not -128 <= self.workchain <= 127:
            raise AddressParseError(f"Workchain out of range: {self.workchain}")
        if len(self.hash_part) != 32:
            raise AddressParseError(f"Account hash must be 32 bytes, got {len(self.hash_part)}")

    def to_raw(self) -> str:
        return f"{self.workchain}:{self.hash_part.hex()}"

    def to_friendly(
        self,
        bounceable: bool = True,
        testnet: bool = False,
        url_safe: bool = True,
    ) -> str:
        """Encode as a 48-character friendly address."""
        flags = FLAG_BOUNCEABLE if bounceable else FLAG_NON_BOUNCEABLE
        if testnet:
            flags |= FLAG_TESTNET
        body = bytes([flags, self.workchain & 0xFF]) + self.hash_part
        data = body + _crc16(body).to_bytes(2, "big")
        if url_safe:
            return base64.urlsafe_b64encode(data).decode()
        return base64.b64encode(data).decode()

    def __str__(self) -> str:
        return self.to_raw()


def parse_address(text: str, verify_checksum: bool = False) -> Address:
    """Parse a raw or friendly address.

    Args:
        text: Address text in either encoding
        verify_checksum: Reject friendly addresses whose crc16 does not match.
            Off by default; the flags byte is never interpreted.

    Raises:
        AddressParseError: text is not an address
        MalformedLengthError: friendly text decodes to the wrong length
    """
    if not isinstance(text, str):
        raise AddressParseError(f"Address must be a string, got {type(text).__name__}")
    text = text.strip()
    if not text:
        raise AddressParseError("Empty address")

    if RAW_ADDRESS_RE.match(text):
        workchain_text, hash_hex = text.split(":", 1)
        return Address(int(workchain_text), bytes.fromhex(hash_hex))

    if ":" in text:
        raise AddressParseError(f"Malformed raw address: {text}")

    candidate = text.replace("-", "+").replace("_", "/")
    candidate += "=" * (-len(candidate) % 4)
    try:
        data = base64.b64decode(candidate, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AddressParseError(f"Invalid base64 address: {text}") from e

    if len(data) != FRIENDLY_LENGTH:
        raise MalformedLengthError(
            f"Friendly address must decode to {FRIENDLY_LENGTH} bytes, got {len(data)}"
        )

    if verify_checksum:
        expected = _crc16(data[:34]).to_bytes(2, "big")
        if data[34:] != expected:
            raise AddressParseError(f"Checksum mismatch for address {text}")

    workchain = int.from_bytes(data[1:2], "big", signed=True)
    return Address(workchain, data[2:34])


def normalize(text: str) -> str:
    """Canonical raw form ``workchain:lowercase-hex`` of any address encoding."""
    return parse_address(text).to_raw()


def try_normalize(text: Optional[str]) -> Optional[str]:
    """Like normalize, but None for missing or unparseable input."""
    if not text:
        return None
    try:
        return normalize(text)
    except AddressParseError:
        return None


def addresses_equal(a: Optional[str], b: Optional[str]) -> bool:
    """True when both parse and denote the same account."""
    left = try_normalize(a)
    right = try_normalize(b)
    return left is not None and left == right

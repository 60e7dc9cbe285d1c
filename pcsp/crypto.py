"""
crypto.py - the bespoke block cipher used by devices, plus key material.

Why this exists:
- Devices encrypt with textbook RSA (no OAEP) on integers they build
  themselves, so the server has to do the integer math by hand. Python's int
  is the big-number library: pow() for modular exponentiation, divmod() for
  the checksum split, int.from_bytes()/to_bytes() for byte conversion.
- Key generation and PEM parsing still go through `cryptography`, so the key
  pair itself is a normal RSA key.

Block layout (random_bits=64, checksum modulus M=8191 by default):

    Q = (int(chunk) << random_bits) | random
    D = Q * M + (Q mod M)
    C = pow(D, e, n)             -> base64(C) on its own line

The receiver recovers D with the private exponent, splits it with
divmod(D, M) and requires remainder == quotient mod M. This mirrors what
deployed devices send, even though it checks the quotient's residue rather
than an independent checksum.
"""

import base64
import binascii
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import ConfigurationFailure, ProtocolViolation

RANDOM_BIT_COUNT = 64
CHECKSUM_MODULUS = 8191
PEM_MARKER = b"-----BEGIN"

PathLike = Union[str, os.PathLike]


# -----------------------------
# Base64 / integer helpers
# -----------------------------

def b64_encode(data: bytes) -> str:
    """Standard Base64 with '=' padding."""
    return base64.b64encode(data).decode("ascii")


def b64_decode(data: str) -> bytes:
    """Standard Base64; missing '=' padding is tolerated."""
    data = data.strip()
    pad_len = (-len(data)) % 4
    return base64.b64decode(data + "=" * pad_len, validate=True)


def int_to_bytes(value: int) -> bytes:
    """Canonical big-endian bytes: no leading zero bytes, 0 -> b""."""
    return value.to_bytes((value.bit_length() + 7) // 8, "big")


def bytes_to_int(data: bytes) -> int:
    return int.from_bytes(data, "big")


def parse_hex_byte_string(text: str) -> int:
    """Parse a string of hex digit pairs (big-endian) into an int."""
    try:
        return bytes_to_int(bytes.fromhex(text))
    except ValueError as exc:
        raise ConfigurationFailure(f"invalid hex byte string {text[:16]!r}") from exc


def format_hex_byte_string(value: int) -> str:
    return int_to_bytes(value).hex()


# -------------
# Key material
# -------------

@dataclass(frozen=True)
class DecryptionKey:
    """Server side: RSA modulus n and private exponent d."""
    modulus: int
    exponent: int


@dataclass(frozen=True)
class EncryptionKey:
    """Device side: RSA modulus n and public exponent e."""
    modulus: int
    exponent: int


def block_size(modulus: int, random_bits: int = RANDOM_BIT_COUNT,
               checksum_modulus: int = CHECKSUM_MODULUS) -> int:
    """
    Largest plaintext chunk (bytes) whose sealed value stays below modulus.
    """
    return (modulus.bit_length() - 1 - random_bits - checksum_modulus.bit_length()) // 8


def check_key(modulus: int, random_bits: int = RANDOM_BIT_COUNT,
              checksum_modulus: int = CHECKSUM_MODULUS) -> None:
    """Reject moduli too small to carry even one plaintext byte per block."""
    if block_size(modulus, random_bits, checksum_modulus) < 1:
        raise ConfigurationFailure(
            f"modulus of {modulus.bit_length()} bits is too small for "
            f"{random_bits} random bits and checksum modulus {checksum_modulus}"
        )


def parse_key_text(text: str) -> Tuple[int, int]:
    """'<modulus hex> <exponent hex>' -> (modulus, exponent)."""
    fields = text.split()
    if len(fields) < 2:
        raise ConfigurationFailure("expected '<modulus> <exponent>' as hex byte strings")
    return parse_hex_byte_string(fields[0]), parse_hex_byte_string(fields[1])


def _load_pem(data: bytes, private: bool) -> Tuple[int, int]:
    """Pull (n, d) or (n, e) out of a PEM key via `cryptography`."""
    first_line = data.lstrip().split(b"\n", 1)[0]
    try:
        if b"PUBLIC KEY" in first_line and not private:
            key = serialization.load_pem_public_key(data)
        else:
            key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ConfigurationFailure(f"invalid PEM key: {exc}") from exc

    if isinstance(key, rsa.RSAPrivateKey):
        numbers = key.private_numbers()
        if private:
            return numbers.public_numbers.n, numbers.d
        return numbers.public_numbers.n, numbers.public_numbers.e
    if isinstance(key, rsa.RSAPublicKey) and not private:
        numbers = key.public_numbers()
        return numbers.n, numbers.e
    raise ConfigurationFailure("key must be an RSA key")


def _read_key_file(path: PathLike, private: bool) -> Optional[Tuple[int, int]]:
    try:
        data = Path(path).read_bytes()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ConfigurationFailure(f"can't read {path}: {exc.strerror}") from exc

    if data.lstrip().startswith(PEM_MARKER):
        modulus, exponent = _load_pem(data, private)
    else:
        try:
            text = data.decode("ascii")
        except UnicodeDecodeError as exc:
            raise ConfigurationFailure("key file is not ASCII") from exc
        modulus, exponent = parse_key_text(text)
    check_key(modulus)
    return modulus, exponent


def load_decryption_key(path: PathLike) -> Optional[DecryptionKey]:
    """
    Load the server key from `path`. Returns None when the file doesn't
    exist (the server then runs without decryption). Raises
    ConfigurationFailure when the file exists but can't be used.
    """
    numbers = _read_key_file(path, private=True)
    return DecryptionKey(*numbers) if numbers else None


def load_encryption_key(path: PathLike) -> Optional[EncryptionKey]:
    """Device-side counterpart of load_decryption_key()."""
    numbers = _read_key_file(path, private=False)
    return EncryptionKey(*numbers) if numbers else None


def generate_keypair(key_size: int = 2048) -> Tuple[DecryptionKey, EncryptionKey]:
    """Fresh RSA key pair (public exponent 65537), split into our two halves."""
    priv = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    numbers = priv.private_numbers()
    n = numbers.public_numbers.n
    return DecryptionKey(n, numbers.d), EncryptionKey(n, numbers.public_numbers.e)


def export_key_text(key: Union[DecryptionKey, EncryptionKey]) -> str:
    """Inverse of parse_key_text()."""
    return f"{format_hex_byte_string(key.modulus)} {format_hex_byte_string(key.exponent)}\n"


# ---------------------------
# Sealing & unsealing blocks
# ---------------------------

def seal_block(chunk: bytes, key: EncryptionKey,
               random_bits: int = RANDOM_BIT_COUNT,
               checksum_modulus: int = CHECKSUM_MODULUS,
               randbits: Callable[[int], int] = secrets.randbits) -> str:
    """
    Encrypt one plaintext chunk into a Base64 block (without the newline).

    The chunk must fit block_size() and must not start with a NUL byte: the
    canonical byte conversion on the receiving side drops leading zeros.
    """
    if len(chunk) > block_size(key.modulus, random_bits, checksum_modulus):
        raise ValueError("chunk too large for key")
    if chunk.startswith(b"\x00"):
        raise ValueError("chunk can't start with a NUL byte")
    quotient = (bytes_to_int(chunk) << random_bits) | randbits(random_bits)
    value = quotient * checksum_modulus + quotient % checksum_modulus
    return b64_encode(int_to_bytes(pow(value, key.exponent, key.modulus)))


def unseal_block(block: str, key: DecryptionKey,
                 random_bits: int = RANDOM_BIT_COUNT,
                 checksum_modulus: int = CHECKSUM_MODULUS) -> bytes:
    """Decrypt and verify one Base64 block. Raises ProtocolViolation."""
    try:
        cipher = bytes_to_int(b64_decode(block))
    except (binascii.Error, ValueError) as exc:
        raise ProtocolViolation("invalid base64 block") from exc
    value = pow(cipher, key.exponent, key.modulus)
    quotient, checksum = divmod(value, checksum_modulus)
    if checksum != quotient % checksum_modulus:
        raise ProtocolViolation("checksum doesn't match")
    return int_to_bytes(quotient >> random_bits)

"""
Cryptographic Primitives for Conversation Encryption

This module provides the stateless operations the key exchange and the
message cipher are built on: X25519 key agreement, Ed25519 signing,
ChaCha20-Poly1305 authenticated encryption and the per-message key
derivation. Everything here works on raw bytes; base64 only appears at the
edges through the b64 helpers.
"""

import os
import hmac
import base64
import binascii
import hashlib
from typing import NamedTuple, Optional, Tuple, Union
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .errors import AuthenticationTagError, ValidationError


KEY_SIZE = 32
SIGNATURE_SIZE = 64
NONCE_SIZE = 12
TAG_SIZE = 16

MESSAGE_KEY_LABEL = b"message_key_"
# crypto_generichash keyed with an all-zero 32-byte key
_MESSAGE_KEY_HASH_KEY = b"\x00" * KEY_SIZE


class KeyPair(NamedTuple):
    """Raw public/secret key halves"""
    public_key: bytes
    secret_key: bytes


def _raw_public(public_key: Union[X25519PublicKey, Ed25519PublicKey]) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def generate_key_agreement_keypair() -> KeyPair:
    """
    Generate a Curve25519 keypair for key agreement.

    Returns:
        KeyPair with 32-byte public and secret halves
    """
    private_key = X25519PrivateKey.generate()
    return KeyPair(_raw_public(private_key.public_key()), private_key.private_bytes_raw())


def generate_signing_keypair() -> KeyPair:
    """
    Generate an Ed25519 keypair for signatures.

    Returns:
        KeyPair with the 32-byte public key and the 32-byte secret seed
    """
    private_key = Ed25519PrivateKey.generate()
    return KeyPair(_raw_public(private_key.public_key()), private_key.private_bytes_raw())


def derive_shared_secret(my_secret_key: bytes, their_public_key: bytes) -> bytes:
    """
    Perform X25519 key agreement.

    The first argument must be our own secret key and the second the peer's
    public key. derive_shared_secret(a.secret, b.public) equals
    derive_shared_secret(b.secret, a.public).

    Args:
        my_secret_key: Our 32-byte X25519 secret key
        their_public_key: Peer's 32-byte X25519 public key

    Returns:
        32-byte shared secret

    Raises:
        ValidationError: If a key has the wrong size or the peer key is degenerate
    """
    if len(my_secret_key) != KEY_SIZE or len(their_public_key) != KEY_SIZE:
        raise ValidationError("Key agreement keys must be 32 bytes")

    private_key = X25519PrivateKey.from_private_bytes(my_secret_key)
    public_key = X25519PublicKey.from_public_bytes(their_public_key)
    try:
        return private_key.exchange(public_key)
    except ValueError as e:
        # low-order point, agreement output is all zeros
        raise ValidationError(f"Key agreement failed: {e}") from e


def validate_agreement_public_key(public_key: bytes):
    """
    Check that an X25519 public key can take part in key agreement.

    Raises:
        ValidationError: If the key has the wrong size or is a low-order point
    """
    derive_shared_secret(X25519PrivateKey.generate().private_bytes_raw(), public_key)


def encrypt(plaintext: bytes, key: bytes, nonce: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """
    Encrypt with ChaCha20-Poly1305.

    Args:
        plaintext: Data to encrypt
        key: 32-byte symmetric key
        nonce: 12-byte nonce, generated at random when omitted

    Returns:
        Tuple of (ciphertext + 16-byte tag, nonce)
    """
    if len(key) != KEY_SIZE:
        raise ValidationError("Encryption key must be 32 bytes")
    if nonce is None:
        nonce = os.urandom(NONCE_SIZE)
    elif len(nonce) != NONCE_SIZE:
        raise ValidationError("Nonce must be 12 bytes")

    ciphertext = ChaCha20Poly1305(key).encrypt(nonce, plaintext, None)
    return ciphertext, nonce


def decrypt(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """
    Decrypt with ChaCha20-Poly1305.

    Args:
        ciphertext: Encrypted data followed by the 16-byte tag
        key: 32-byte symmetric key
        nonce: The 12-byte nonce used for encryption

    Returns:
        Decrypted plaintext

    Raises:
        AuthenticationTagError: If the tag does not verify
    """
    if len(key) != KEY_SIZE:
        raise ValidationError("Decryption key must be 32 bytes")
    if len(nonce) != NONCE_SIZE:
        raise ValidationError("Nonce must be 12 bytes")
    if len(ciphertext) < TAG_SIZE:
        raise AuthenticationTagError("Ciphertext too short")

    try:
        return ChaCha20Poly1305(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise AuthenticationTagError("Authentication tag mismatch") from e


def sign(message: bytes, secret_key: bytes) -> bytes:
    """
    Sign a message with Ed25519.

    Args:
        message: Data to sign
        secret_key: 32-byte Ed25519 secret seed

    Returns:
        64-byte signature followed by the message itself
    """
    if len(secret_key) != KEY_SIZE:
        raise ValidationError("Signing key must be 32 bytes")
    signature = Ed25519PrivateKey.from_private_bytes(secret_key).sign(message)
    return signature + message


def verify(blob: bytes, public_key: bytes) -> Optional[bytes]:
    """
    Verify a signed blob produced by sign().

    Args:
        blob: signature + message
        public_key: 32-byte Ed25519 public key

    Returns:
        The embedded message, or None if the blob does not verify
    """
    if len(blob) < SIGNATURE_SIZE or len(public_key) != KEY_SIZE:
        return None

    signature, message = blob[:SIGNATURE_SIZE], blob[SIGNATURE_SIZE:]
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return None
    return message


def derive_message_key(root_secret: bytes, sequence_number: int) -> bytes:
    """
    Derive the symmetric key for one message.

    key = BLAKE2b-256(root || "message_key_" || decimal(n) || n & 0xff)

    Args:
        root_secret: Conversation shared secret
        sequence_number: Sender's sequence number for the message

    Returns:
        32-byte message key
    """
    if sequence_number < 0:
        raise ValidationError("Sequence number must not be negative")

    data = (
        root_secret
        + MESSAGE_KEY_LABEL
        + str(sequence_number).encode("ascii")
        + bytes([sequence_number & 0xFF])
    )
    return hashlib.blake2b(data, digest_size=KEY_SIZE, key=_MESSAGE_KEY_HASH_KEY).digest()


def key_fingerprint(*public_keys: bytes) -> bytes:
    """Non-secret commitment to a set of public keys, in the given order"""
    digest = hashlib.blake2b(digest_size=KEY_SIZE, person=b"e2ee-handshake")
    for key in public_keys:
        digest.update(key)
    return digest.digest()


def b64encode(data: bytes) -> str:
    """Encode bytes for the wire"""
    return base64.b64encode(data).decode("ascii")


def b64decode(value: Union[str, bytes], name: str = "value") -> bytes:
    """
    Strictly decode a base64 field.

    Raises:
        ValidationError: If the value is not valid base64
    """
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise ValidationError(f"{name} is not valid base64") from e


def decode_key(value: Union[str, bytes], name: str = "key") -> bytes:
    """Decode a base64 key and check it is exactly 32 bytes"""
    key = b64decode(value, name)
    if len(key) != KEY_SIZE:
        raise ValidationError(f"{name} must decode to {KEY_SIZE} bytes")
    return key


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)

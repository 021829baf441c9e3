"""
End-to-end encryption core for two-party conversations.

Implements:
- X25519 key agreement, Ed25519 signatures, ChaCha20-Poly1305 encryption
- A signed per-conversation key exchange
- Per-message keys derived from the shared secret and a sequence number
"""

from .errors import (
    CryptoError,
    ValidationError,
    SignatureError,
    ProtocolStateError,
    AuthenticationTagError,
    NotFoundError,
    StaleStateError
)
from .models import (
    KeyExchangeStatus,
    ConversationKeyState,
    ParticipantKeyEntry,
    UserKeyRecord,
    EncryptedMessage,
    DecryptedMessage
)
from .store import KeyStateStore, InMemoryKeyStore
from .keyring import Keyring, LocalKeyring
from .key_exchange import KeyExchangeProtocol, handshake_payload
from .message_cipher import MessageCipher, message_payload

__all__ = [
    'CryptoError',
    'ValidationError',
    'SignatureError',
    'ProtocolStateError',
    'AuthenticationTagError',
    'NotFoundError',
    'StaleStateError',
    'KeyExchangeStatus',
    'ConversationKeyState',
    'ParticipantKeyEntry',
    'UserKeyRecord',
    'EncryptedMessage',
    'DecryptedMessage',
    'KeyStateStore',
    'InMemoryKeyStore',
    'Keyring',
    'LocalKeyring',
    'KeyExchangeProtocol',
    'handshake_payload',
    'MessageCipher',
    'message_payload'
]

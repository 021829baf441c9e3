"""
Records and transient values exchanged by the key exchange and the message cipher.

Binary fields are kept as base64 strings, the same representation used by
the persisted records and the wire payloads.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Dict, List, Optional
from dataclasses import dataclass, field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class KeyExchangeStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ParticipantKeyEntry:
    """
    Public material one participant contributed to a conversation.

    Attributes:
        public_key: X25519 public key (base64)
        signing_key: Ed25519 public key (base64)
        sequence_number: Last sequence number this participant sent
    """
    public_key: str
    signing_key: str
    sequence_number: int = 0

    def to_dict(self) -> Dict:
        return {
            'publicKey': self.public_key,
            'signingKey': self.signing_key,
            'sequenceNumber': self.sequence_number
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ParticipantKeyEntry':
        return cls(
            public_key=data['publicKey'],
            signing_key=data['signingKey'],
            sequence_number=int(data.get('sequenceNumber', 0))
        )


@dataclass
class UserKeyRecord:
    """Public keys registered for a user. sequence_number is advisory only."""
    user_id: str
    public_key: str
    signing_key: str
    sequence_number: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ConversationKeyState:
    """
    Key-exchange state of one two-party conversation.

    Attributes:
        conversation_id: Conversation this state belongs to
        status: Handshake status
        participant_keys: user id -> ParticipantKeyEntry, at most two entries
        initiator_id: First participant to submit keys
        responder_id: Second participant to submit keys
        key_fingerprint: Commitment to both public keys, set iff completed.
            It is stored where the record keeps its sharedSecret column but
            is not secret; the real shared secret only exists on clients.
        version: Incremented by the store on every successful save
    """
    conversation_id: str
    status: KeyExchangeStatus = KeyExchangeStatus.PENDING
    participant_keys: Dict[str, ParticipantKeyEntry] = field(default_factory=dict)
    initiator_id: Optional[str] = None
    responder_id: Optional[str] = None
    key_fingerprint: Optional[str] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def participant_ids(self) -> List[str]:
        return [uid for uid in (self.initiator_id, self.responder_id) if uid is not None]

    @property
    def is_completed(self) -> bool:
        return self.status == KeyExchangeStatus.COMPLETED

    def peer_of(self, user_id: str) -> Optional[str]:
        """Return the other participant's id, if both slots are filled"""
        if user_id == self.initiator_id:
            return self.responder_id
        if user_id == self.responder_id:
            return self.initiator_id
        return None

    def to_dict(self) -> Dict:
        return {
            'conversationId': self.conversation_id,
            'status': self.status.value,
            'participantKeys': {uid: entry.to_dict() for uid, entry in self.participant_keys.items()},
            'initiatorId': self.initiator_id,
            'responderId': self.responder_id,
            'sharedSecret': self.key_fingerprint,
            'version': self.version,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ConversationKeyState':
        return cls(
            conversation_id=data['conversationId'],
            status=KeyExchangeStatus(data['status']),
            participant_keys={
                uid: ParticipantKeyEntry.from_dict(entry)
                for uid, entry in (data.get('participantKeys') or {}).items()
            },
            initiator_id=data.get('initiatorId'),
            responder_id=data.get('responderId'),
            key_fingerprint=data.get('sharedSecret'),
            version=data.get('version', 0),
            created_at=_parse_time(data['createdAt']) if data.get('createdAt') else utcnow(),
            updated_at=_parse_time(data['updatedAt']) if data.get('updatedAt') else utcnow()
        )


@dataclass
class EncryptedMessage:
    """
    A message as produced by MessageCipher.encrypt_message.

    Attributes:
        ciphertext: ChaCha20-Poly1305 output including tag (base64)
        nonce: 12-byte nonce (base64)
        sequence_number: Sender's sequence number used for key derivation
        signature: Ed25519 signed blob over the canonical payload (base64)
        sender_id: Sending participant
        timestamp: Encryption time
        conversation_id: Conversation the message belongs to
    """
    ciphertext: str
    nonce: str
    sequence_number: int
    signature: str
    sender_id: str
    timestamp: datetime = field(default_factory=utcnow)
    conversation_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'conversationId': self.conversation_id,
            'ciphertext': self.ciphertext,
            'nonce': self.nonce,
            'sequenceNumber': self.sequence_number,
            'signature': self.signature,
            'senderId': self.sender_id,
            'timestamp': self.timestamp.isoformat(),
            'isEncrypted': True
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EncryptedMessage':
        return cls(
            ciphertext=data['ciphertext'],
            nonce=data['nonce'],
            sequence_number=int(data['sequenceNumber']),
            signature=data['signature'],
            sender_id=data['senderId'],
            timestamp=_parse_time(data['timestamp']) if data.get('timestamp') else utcnow(),
            conversation_id=data.get('conversationId')
        )


@dataclass
class DecryptedMessage:
    content: str
    sender_id: str
    timestamp: datetime
    sequence_number: int
    is_valid: bool


@dataclass
class HandshakeResult:
    """Outcome of an initiate/complete call. Never carries secret material."""
    success: bool
    message: str
    status: KeyExchangeStatus

    def to_dict(self) -> Dict:
        return {'success': self.success, 'message': self.message, 'status': self.status.value}


@dataclass
class ExchangeStatus:
    status: KeyExchangeStatus
    participant_count: int
    participant_ids: List[str]

    def to_dict(self) -> Dict:
        return {
            'status': self.status.value,
            'participantCount': self.participant_count,
            'participants': list(self.participant_ids)
        }


@dataclass
class EncryptionStatus:
    is_encrypted: bool
    key_exchange_status: KeyExchangeStatus
    participant_count: int

    def to_dict(self) -> Dict:
        return {
            'isEncrypted': self.is_encrypted,
            'keyExchangeStatus': self.key_exchange_status.value,
            'participantCount': self.participant_count
        }


@dataclass
class GeneratedUserKeys:
    """Both key pairs of a user, base64. The secret halves go to the client only."""
    public_key: str
    signing_key: str
    secret_key: str
    signing_secret_key: str

    def to_dict(self) -> Dict:
        return {
            'publicKey': self.public_key,
            'signingKey': self.signing_key,
            'secretKey': self.secret_key,
            'signingSecretKey': self.signing_secret_key
        }

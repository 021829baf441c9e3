"""
Per-message encryption for conversations with a completed key exchange.

Every message is encrypted under its own key, derived from the conversation
root secret and the sender's next sequence number, and the ciphertext is
signed with the sender's Ed25519 key. The root secret is the X25519
agreement between a locally held secret key and the peer's public key.
"""

import logging
from typing import Optional

from .errors import AuthenticationTagError, NotFoundError, ProtocolStateError, ValidationError
from .key_exchange import KeyExchangeProtocol
from .keyring import Keyring, LocalKeyring
from .models import ConversationKeyState, DecryptedMessage, EncryptedMessage, EncryptionStatus, KeyExchangeStatus, utcnow
from .primitives import (
    b64decode,
    b64encode,
    constant_time_compare,
    decode_key,
    decrypt,
    derive_message_key,
    derive_shared_secret,
    encrypt,
    sign,
    verify,
)

logger = logging.getLogger(__name__)


def message_payload(conversation_id: str, ciphertext: str, nonce: str, sequence_number: int) -> str:
    """Canonical string signed for every encrypted message"""
    return f"{conversation_id}:{ciphertext}:{nonce}:{sequence_number}"


class MessageCipher:
    """
    Encrypts, decrypts and checks conversation messages.

    Sequence numbers are reserved through the key exchange, so concurrent
    encrypt calls from one sender never share a number, whichever cipher
    or process they run in.
    """

    def __init__(self, key_exchange: KeyExchangeProtocol, keyring: Optional[Keyring] = None):
        """
        Args:
            key_exchange: Source of conversation key state
            keyring: Local X25519 secret keys; empty when only validating
        """
        self.key_exchange = key_exchange
        self.keyring = keyring if keyring is not None else LocalKeyring()

    async def _completed_state(self, conversation_id: str) -> ConversationKeyState:
        state = await self.key_exchange.get_conversation_keys(conversation_id)
        if state is None or not state.is_completed:
            raise ProtocolStateError("Key exchange not completed for this conversation")
        return state

    def _root_secret(self, state: ConversationKeyState, prefer: Optional[str] = None) -> bytes:
        """
        Compute the conversation shared secret from a local secret key.

        Raises:
            NotFoundError: If the keyring holds no secret for either participant
        """
        candidates = state.participant_ids
        if prefer in candidates:
            candidates = [prefer] + [uid for uid in candidates if uid != prefer]

        for user_id in candidates:
            peer_id = state.peer_of(user_id)
            secret = self.keyring.secret_for(state.participant_keys[user_id].public_key)
            if secret is None or peer_id is None:
                continue
            peer_public = b64decode(state.participant_keys[peer_id].public_key, "publicKey")
            return derive_shared_secret(secret, peer_public)

        raise NotFoundError("No local secret key for this conversation")

    @staticmethod
    def _signature_valid(conversation_id: str, message, signing_key: str) -> bool:
        try:
            blob = b64decode(message.signature, "signature")
            public_key = b64decode(signing_key, "signingKey")
        except ValidationError:
            return False

        expected = message_payload(
            conversation_id, message.ciphertext, message.nonce, message.sequence_number
        ).encode("utf-8")
        verified = verify(blob, public_key)
        return verified is not None and constant_time_compare(verified, expected)

    @staticmethod
    def _invalid(message: EncryptedMessage) -> DecryptedMessage:
        return DecryptedMessage(
            content="",
            sender_id=message.sender_id,
            timestamp=message.timestamp,
            sequence_number=message.sequence_number,
            is_valid=False
        )

    async def encrypt_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        signing_secret_key: str,
    ) -> EncryptedMessage:
        """
        Encrypt and sign a message with the sender's next sequence number.

        Args:
            conversation_id: Conversation to send in
            sender_id: Sending participant
            content: Plaintext message
            signing_secret_key: Sender's Ed25519 secret seed (base64)

        Returns:
            EncryptedMessage ready for the transport

        Raises:
            ProtocolStateError: Key exchange not completed
            NotFoundError: Sender is not a participant or no local secret key
        """
        signing_secret = decode_key(signing_secret_key, "signingSecretKey")

        state = await self._completed_state(conversation_id)
        if sender_id not in state.participant_keys:
            raise NotFoundError("Sender is not a participant of this conversation")
        # resolved before reserving, so a missing local secret burns no number
        root_secret = self._root_secret(state, prefer=sender_id)

        new_sequence = await self.key_exchange.next_sequence(conversation_id, sender_id)
        message_key = derive_message_key(root_secret, new_sequence)

        ciphertext, nonce = encrypt(content.encode("utf-8"), message_key)
        ciphertext_b64, nonce_b64 = b64encode(ciphertext), b64encode(nonce)

        payload = message_payload(conversation_id, ciphertext_b64, nonce_b64, new_sequence)
        signature = b64encode(sign(payload.encode("utf-8"), signing_secret))

        logger.info("Message encrypted for conversation %s, sequence %d", conversation_id, new_sequence)

        return EncryptedMessage(
            ciphertext=ciphertext_b64,
            nonce=nonce_b64,
            sequence_number=new_sequence,
            signature=signature,
            sender_id=sender_id,
            timestamp=utcnow(),
            conversation_id=conversation_id
        )

    async def decrypt_message(self, conversation_id: str, message: EncryptedMessage) -> DecryptedMessage:
        """
        Verify and decrypt a message.

        A forged signature or a failed integrity check yields
        is_valid=False with empty content instead of an exception.

        Raises:
            ProtocolStateError: Key exchange not completed
            NotFoundError: Unknown sender or no local secret key
        """
        state = await self._completed_state(conversation_id)

        sender_keys = state.participant_keys.get(message.sender_id)
        if sender_keys is None:
            raise NotFoundError("Sender keys not found")

        if not self._signature_valid(conversation_id, message, sender_keys.signing_key):
            logger.warning("Invalid signature for message from %s", message.sender_id)
            return self._invalid(message)

        root_secret = self._root_secret(state)
        try:
            message_key = derive_message_key(root_secret, message.sequence_number)
            plaintext = decrypt(
                b64decode(message.ciphertext, "ciphertext"),
                message_key,
                b64decode(message.nonce, "nonce")
            )
            content = plaintext.decode("utf-8")
        except (AuthenticationTagError, ValidationError, UnicodeDecodeError) as e:
            logger.warning(
                "Could not decrypt message %d from %s: %s",
                message.sequence_number, message.sender_id, e
            )
            return self._invalid(message)

        logger.info(
            "Message decrypted for conversation %s, sequence %d",
            conversation_id, message.sequence_number
        )

        return DecryptedMessage(
            content=content,
            sender_id=message.sender_id,
            timestamp=message.timestamp,
            sequence_number=message.sequence_number,
            is_valid=True
        )

    async def validate_encrypted_message(self, conversation_id: str, payload, sender_id: str) -> bool:
        """
        Cheap check before a message is accepted for storage or fan-out:
        the exchange is completed, the sender participates and the
        signature covers the payload.

        Args:
            conversation_id: Conversation the message is posted to
            payload: Object with conversation_id, ciphertext, nonce,
                sequence_number and signature attributes
            sender_id: Authenticated sender

        Returns:
            True if the message may be accepted
        """
        state = await self.key_exchange.get_conversation_keys(conversation_id)
        if state is None or not state.is_completed:
            return False

        sender_keys = state.participant_keys.get(sender_id)
        if sender_keys is None:
            return False

        if getattr(payload, "conversation_id", None) not in (None, conversation_id):
            return False

        return self._signature_valid(conversation_id, payload, sender_keys.signing_key)

    async def get_encryption_status(self, conversation_id: str) -> EncryptionStatus:
        status = await self.key_exchange.get_status(conversation_id)
        return EncryptionStatus(
            is_encrypted=status.status == KeyExchangeStatus.COMPLETED,
            key_exchange_status=status.status,
            participant_count=status.participant_count
        )

"""
Authenticated two-party key exchange, one state machine per conversation.

Each participant submits its X25519 public key and Ed25519 signing key
together with a signature over "conversationId:publicKey:signingKey". Once
both participants have submitted, the exchange is completed. Only public
keys ever pass through here: every client computes the shared secret
locally from its own secret key and the peer's public key, and the stored
state keeps a non-secret fingerprint of the two public keys instead.

    NotStarted -> Pending -> Completed
                     \\           \\
                      +-> Failed <-+
"""

import asyncio
import logging
import weakref
from typing import Callable, Optional, TypeVar

from .errors import NotFoundError, ProtocolStateError, SignatureError, StaleStateError, ValidationError
from .models import (
    ConversationKeyState,
    ExchangeStatus,
    GeneratedUserKeys,
    HandshakeResult,
    KeyExchangeStatus,
    ParticipantKeyEntry,
    UserKeyRecord,
)
from .primitives import (
    b64decode,
    b64encode,
    constant_time_compare,
    decode_key,
    generate_key_agreement_keypair,
    generate_signing_keypair,
    key_fingerprint,
    validate_agreement_public_key,
    verify,
)
from .store import KeyStateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PARTICIPANTS = 2


def handshake_payload(conversation_id: str, public_key: str, signing_key: str) -> str:
    """Canonical string a participant signs when submitting its keys"""
    return f"{conversation_id}:{public_key}:{signing_key}"


class KeyExchangeProtocol:
    """
    Runs the per-conversation handshake on top of a KeyStateStore.

    Read-modify-write cycles hold a per-conversation lock and are committed
    with the store's compare-and-swap, retried up to max_retries times when
    another process wins the race.
    """

    def __init__(self, store: KeyStateStore, max_retries: int = 5):
        """
        Args:
            store: Persistence backend for key state
            max_retries: Attempts per update before giving up on contention
        """
        self.store = store
        self.max_retries = max_retries
        # entries vanish once no coroutine holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    async def _update(
        self,
        conversation_id: str,
        mutate: Callable[[ConversationKeyState], T],
        create: bool = False,
    ) -> T:
        """
        Load, mutate and conditionally save a conversation state.

        Args:
            conversation_id: Conversation to update
            mutate: Applied to a fresh copy of the state on every attempt
            create: Start from an empty Pending state when none exists

        Returns:
            Whatever mutate returned on the attempt that was saved
        """
        async with self._lock_for(conversation_id):
            for attempt in range(1, self.max_retries + 1):
                state = await self.store.get_conversation(conversation_id)
                if state is None:
                    if not create:
                        raise NotFoundError("Key exchange not initiated")
                    state = ConversationKeyState(conversation_id=conversation_id)

                outcome = mutate(state)
                try:
                    await self.store.save_conversation(state)
                    return outcome
                except StaleStateError:
                    logger.debug(
                        "Concurrent update of conversation %s, retrying (attempt %d)",
                        conversation_id, attempt
                    )

        raise ProtocolStateError(
            f"Conversation {conversation_id} is being updated concurrently, try again"
        )

    @staticmethod
    def _verify_submission(conversation_id: str, public_key: str, signing_key: str, signature: str):
        """
        Check a handshake submission.

        Raises:
            ValidationError: If a key or the signature is not well formed, or the
                public key is a low-order point
            SignatureError: If the signature does not cover the canonical string
        """
        if not conversation_id:
            raise ValidationError("conversationId is required")
        validate_agreement_public_key(decode_key(public_key, "publicKey"))
        signing_key_bytes = decode_key(signing_key, "signingKey")
        blob = b64decode(signature, "signature")

        expected = handshake_payload(conversation_id, public_key, signing_key).encode("utf-8")
        verified = verify(blob, signing_key_bytes)
        if verified is None or not constant_time_compare(verified, expected):
            raise SignatureError("Invalid signature")

    @staticmethod
    def _apply_submission(
        state: ConversationKeyState,
        user_id: str,
        public_key: str,
        signing_key: str,
    ) -> Optional[str]:
        """
        Upsert a participant into the two slots.

        Returns:
            A failure reason if the submission moved the state to Failed
        """
        entry = state.participant_keys.get(user_id)
        if entry is None and len(state.participant_keys) >= MAX_PARTICIPANTS:
            raise ProtocolStateError("Conversation already has two participants")

        for other_id, other in state.participant_keys.items():
            if other_id == user_id:
                continue
            if other.public_key == public_key or other.signing_key == signing_key:
                state.status = KeyExchangeStatus.FAILED
                state.key_fingerprint = None
                return f"{user_id} submitted the same keys as {other_id}"

        if entry is None:
            state.participant_keys[user_id] = ParticipantKeyEntry(public_key, signing_key)
            if state.initiator_id is None:
                state.initiator_id = user_id
            else:
                state.responder_id = user_id
        else:
            # the counter survives re-submission of keys
            entry.public_key = public_key
            entry.signing_key = signing_key

        if state.is_completed:
            state.key_fingerprint = _fingerprint(state)
        return None

    async def _remember_user_keys(self, user_id: str, public_key: str, signing_key: str):
        if await self.store.get_user_keys(user_id) is not None:
            return
        try:
            await self.store.save_user_keys(UserKeyRecord(user_id, public_key, signing_key))
        except StaleStateError:
            # a concurrent submission by the same user registered them first
            logger.debug("Keys for user %s already registered", user_id)

    async def initiate(
        self,
        user_id: str,
        conversation_id: str,
        public_key: str,
        signing_key: str,
        signature: str,
    ) -> HandshakeResult:
        """
        Submit the first (or a replacement) set of keys for a conversation.

        A Failed conversation starts over from an empty Pending state.

        Raises:
            ValidationError: Malformed input, or the submission reflects the peer's keys
            SignatureError: Signature does not verify
            ProtocolStateError: Two other participants are already registered
        """
        self._verify_submission(conversation_id, public_key, signing_key, signature)

        def mutate(state: ConversationKeyState) -> Optional[str]:
            if state.status == KeyExchangeStatus.FAILED:
                state.status = KeyExchangeStatus.PENDING
                state.participant_keys = {}
                state.initiator_id = state.responder_id = None
                state.key_fingerprint = None
            return self._apply_submission(state, user_id, public_key, signing_key)

        failure = await self._update(conversation_id, mutate, create=True)
        if failure:
            logger.warning("Key exchange for conversation %s failed: %s", conversation_id, failure)
            raise ValidationError(failure)

        await self._remember_user_keys(user_id, public_key, signing_key)
        logger.info("Key exchange initiated for conversation %s by user %s", conversation_id, user_id)

        return HandshakeResult(
            success=True,
            message="Key exchange initiated successfully",
            status=KeyExchangeStatus.PENDING
        )

    async def complete(
        self,
        user_id: str,
        conversation_id: str,
        public_key: str,
        signing_key: str,
        signature: str,
    ) -> HandshakeResult:
        """
        Submit keys for an initiated conversation and finish the exchange
        once both participants are present.

        Raises:
            ValidationError: Malformed input, or the submission reflects the peer's keys
            SignatureError: Signature does not verify
            NotFoundError: No initiate was ever made for the conversation
            ProtocolStateError: The exchange failed or is full
        """
        self._verify_submission(conversation_id, public_key, signing_key, signature)

        def mutate(state: ConversationKeyState):
            if state.status == KeyExchangeStatus.FAILED:
                raise ProtocolStateError("Key exchange failed, initiate it again")

            was_completed = state.is_completed
            failure = self._apply_submission(state, user_id, public_key, signing_key)
            just_completed = False
            if failure is None and not was_completed and len(state.participant_keys) == MAX_PARTICIPANTS:
                state.status = KeyExchangeStatus.COMPLETED
                state.key_fingerprint = _fingerprint(state)
                just_completed = True
            return failure, just_completed, state.is_completed

        failure, just_completed, completed = await self._update(conversation_id, mutate)
        if failure:
            logger.warning("Key exchange for conversation %s failed: %s", conversation_id, failure)
            raise ValidationError(failure)

        await self._remember_user_keys(user_id, public_key, signing_key)

        if completed:
            if just_completed:
                logger.info("Key exchange completed for conversation %s", conversation_id)
            return HandshakeResult(
                success=True,
                message="Key exchange completed successfully",
                status=KeyExchangeStatus.COMPLETED
            )

        return HandshakeResult(
            success=True,
            message="Key exchange in progress, waiting for other participant",
            status=KeyExchangeStatus.PENDING
        )

    async def get_status(self, conversation_id: str) -> ExchangeStatus:
        """Status of the exchange; Pending with no participants when none exists"""
        state = await self.store.get_conversation(conversation_id)
        if state is None:
            return ExchangeStatus(KeyExchangeStatus.PENDING, 0, [])

        participants = state.participant_ids
        return ExchangeStatus(state.status, len(participants), participants)

    async def get_conversation_keys(self, conversation_id: str) -> Optional[ConversationKeyState]:
        return await self.store.get_conversation(conversation_id)

    async def get_peer_keys(self, conversation_id: str, user_id: str) -> ParticipantKeyEntry:
        """
        Public keys of the other participant, used by a client to compute
        the shared secret.

        Raises:
            NotFoundError: Unknown conversation or user_id is not a participant
            ProtocolStateError: The other participant has not joined yet
        """
        state = await self.store.get_conversation(conversation_id)
        if state is None or user_id not in state.participant_keys:
            raise NotFoundError("Conversation keys not found")

        peer_id = state.peer_of(user_id)
        if peer_id is None:
            raise ProtocolStateError("Waiting for the other participant")
        return state.participant_keys[peer_id]

    async def update_participant_sequence(self, conversation_id: str, user_id: str, sequence_number: int):
        """
        Overwrite a participant's sequence counter.

        Raises:
            NotFoundError: Unknown conversation or participant
        """
        def mutate(state: ConversationKeyState):
            entry = state.participant_keys.get(user_id)
            if entry is None:
                raise NotFoundError("Conversation keys not found")
            entry.sequence_number = sequence_number

        await self._update(conversation_id, mutate)

    async def next_sequence(self, conversation_id: str, user_id: str) -> int:
        """
        Reserve the next sequence number of a participant.

        The increment is committed through the store's compare-and-swap, so
        concurrent senders (in this process or another) never get the same
        number and the numbers handed out have no gaps.

        Raises:
            NotFoundError: Unknown conversation or participant
            ProtocolStateError: Key exchange not completed
        """
        def mutate(state: ConversationKeyState) -> int:
            if not state.is_completed:
                raise ProtocolStateError("Key exchange not completed for this conversation")
            entry = state.participant_keys.get(user_id)
            if entry is None:
                raise NotFoundError("Sender is not a participant of this conversation")
            entry.sequence_number += 1
            return entry.sequence_number

        return await self._update(conversation_id, mutate)

    async def generate_user_keys(self, user_id: str) -> GeneratedUserKeys:
        """
        Generate both key pairs for a user and register the public halves.

        The secret halves are returned to the caller and never stored.
        """
        agreement = generate_key_agreement_keypair()
        signing = generate_signing_keypair()

        keys = GeneratedUserKeys(
            public_key=b64encode(agreement.public_key),
            signing_key=b64encode(signing.public_key),
            secret_key=b64encode(agreement.secret_key),
            signing_secret_key=b64encode(signing.secret_key)
        )

        existing = await self.store.get_user_keys(user_id)
        record = existing or UserKeyRecord(user_id, keys.public_key, keys.signing_key)
        record.public_key = keys.public_key
        record.signing_key = keys.signing_key
        await self.store.save_user_keys(record)

        logger.info("Generated new key pairs for user %s", user_id)
        return keys

    async def get_user_keys(self, user_id: str) -> Optional[UserKeyRecord]:
        return await self.store.get_user_keys(user_id)


def _fingerprint(state: ConversationKeyState) -> str:
    initiator = state.participant_keys[state.initiator_id]
    responder = state.participant_keys[state.responder_id]
    return b64encode(key_fingerprint(
        b64decode(initiator.public_key),
        b64decode(responder.public_key)
    ))

"""Shared fixtures: participants with fresh key pairs and a protocol over an in-memory store."""

import asyncio
import pytest

from e2ee.key_exchange import KeyExchangeProtocol, handshake_payload
from e2ee.keyring import LocalKeyring
from e2ee.primitives import b64encode, generate_key_agreement_keypair, generate_signing_keypair, sign
from e2ee.store import InMemoryKeyStore


class YieldingStore(InMemoryKeyStore):
    """In-memory store that suspends on every access, so concurrent callers interleave"""

    async def get_conversation(self, conversation_id):
        await asyncio.sleep(0)
        return await super().get_conversation(conversation_id)

    async def save_conversation(self, state):
        await asyncio.sleep(0)
        return await super().save_conversation(state)

    async def get_user_keys(self, user_id):
        await asyncio.sleep(0)
        return await super().get_user_keys(user_id)


class Participant:
    """A client with its own key pairs and keyring"""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.agreement = generate_key_agreement_keypair()
        self.signing = generate_signing_keypair()
        self.keyring = LocalKeyring()
        self.keyring.add(self.agreement.public_key, self.agreement.secret_key)

    @property
    def public_key(self) -> str:
        return b64encode(self.agreement.public_key)

    @property
    def signing_key(self) -> str:
        return b64encode(self.signing.public_key)

    @property
    def signing_secret_key(self) -> str:
        return b64encode(self.signing.secret_key)

    def submission(self, conversation_id: str, public_key: str = None, signing_key: str = None) -> dict:
        """Keyword arguments for initiate/complete, signed with our signing key"""
        public_key = public_key or self.public_key
        signing_key = signing_key or self.signing_key
        payload = handshake_payload(conversation_id, public_key, signing_key).encode("utf-8")
        return {
            'user_id': self.user_id,
            'conversation_id': conversation_id,
            'public_key': public_key,
            'signing_key': signing_key,
            'signature': b64encode(sign(payload, self.signing.secret_key))
        }

    def request_body(self, conversation_id: str) -> dict:
        """The same submission as an HTTP body"""
        data = self.submission(conversation_id)
        return {
            'conversationId': data['conversation_id'],
            'publicKey': data['public_key'],
            'signingKey': data['signing_key'],
            'signature': data['signature']
        }


@pytest.fixture
def alice():
    return Participant("alice")


@pytest.fixture
def bob():
    return Participant("bob")


@pytest.fixture
def carol():
    return Participant("carol")


@pytest.fixture
def store():
    return InMemoryKeyStore()


@pytest.fixture
def key_exchange(store):
    return KeyExchangeProtocol(store)


@pytest.fixture
def make_participant():
    return Participant


@pytest.fixture
def yielding_store():
    return YieldingStore()

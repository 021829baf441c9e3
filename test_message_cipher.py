"""
Tests for per-message encryption on top of a completed key exchange.
"""

import asyncio
from dataclasses import replace
import pytest
import pytest_asyncio

from e2ee.errors import NotFoundError, ProtocolStateError
from e2ee.key_exchange import KeyExchangeProtocol
from e2ee.keyring import LocalKeyring
from e2ee.message_cipher import MessageCipher, message_payload
from e2ee.models import KeyExchangeStatus
from e2ee.primitives import (
    b64decode,
    b64encode,
    derive_message_key,
    derive_shared_secret,
    encrypt,
    generate_signing_keypair,
    sign,
)


@pytest_asyncio.fixture
async def conversation(key_exchange, alice, bob):
    """c1 with a completed key exchange between alice and bob"""
    await key_exchange.initiate(**alice.submission("c1"))
    await key_exchange.complete(**bob.submission("c1"))
    return "c1"


@pytest.fixture
def alice_cipher(key_exchange, alice):
    return MessageCipher(key_exchange, alice.keyring)


@pytest.fixture
def bob_cipher(key_exchange, bob):
    return MessageCipher(key_exchange, bob.keyring)


@pytest.mark.asyncio
async def test_end_to_end(store):
    """Alice and Bob generate keys, complete the handshake and exchange a message"""
    protocol = KeyExchangeProtocol(store)

    clients = {}
    for user_id in ("alice", "bob"):
        keys = await protocol.generate_user_keys(user_id)
        keyring = LocalKeyring()
        keyring.add(keys.public_key, b64decode(keys.secret_key))
        clients[user_id] = (keys, MessageCipher(protocol, keyring))

    for user_id, step in (("alice", protocol.initiate), ("bob", protocol.complete)):
        keys = clients[user_id][0]
        payload = f"c1:{keys.public_key}:{keys.signing_key}".encode()
        await step(
            user_id, "c1", keys.public_key, keys.signing_key,
            b64encode(sign(payload, b64decode(keys.signing_secret_key)))
        )

    alice_keys, alice_cipher = clients["alice"]
    _, bob_cipher = clients["bob"]

    encrypted = await alice_cipher.encrypt_message("c1", "alice", "hi", alice_keys.signing_secret_key)
    assert encrypted.sequence_number == 1
    assert encrypted.sender_id == "alice"

    decrypted = await bob_cipher.decrypt_message("c1", encrypted)
    assert decrypted.content == "hi"
    assert decrypted.is_valid
    assert decrypted.sender_id == "alice"
    assert decrypted.sequence_number == 1


@pytest.mark.asyncio
async def test_both_directions(conversation, alice, bob, alice_cipher, bob_cipher):
    to_bob = await alice_cipher.encrypt_message(conversation, "alice", "hello bob", alice.signing_secret_key)
    to_alice = await bob_cipher.encrypt_message(conversation, "bob", "hello alice ✓", bob.signing_secret_key)

    assert (await bob_cipher.decrypt_message(conversation, to_bob)).content == "hello bob"
    assert (await alice_cipher.decrypt_message(conversation, to_alice)).content == "hello alice ✓"
    # a sender can read back its own messages
    assert (await alice_cipher.decrypt_message(conversation, to_bob)).content == "hello bob"


@pytest.mark.asyncio
async def test_ciphertext_uses_derived_message_key(conversation, alice, bob, alice_cipher):
    encrypted = await alice_cipher.encrypt_message(conversation, "alice", "secret", alice.signing_secret_key)

    root = derive_shared_secret(bob.agreement.secret_key, alice.agreement.public_key)
    key = derive_message_key(root, 1)
    expected, _ = encrypt(b"secret", key, b64decode(encrypted.nonce))

    assert b64decode(encrypted.ciphertext) == expected


@pytest.mark.asyncio
async def test_sequence_numbers_increment_per_sender(conversation, key_exchange, alice, bob, alice_cipher, bob_cipher):
    first = await alice_cipher.encrypt_message(conversation, "alice", "one", alice.signing_secret_key)
    second = await alice_cipher.encrypt_message(conversation, "alice", "two", alice.signing_secret_key)
    reply = await bob_cipher.encrypt_message(conversation, "bob", "three", bob.signing_secret_key)

    assert (first.sequence_number, second.sequence_number) == (1, 2)
    assert reply.sequence_number == 1

    state = await key_exchange.get_conversation_keys(conversation)
    assert state.participant_keys["alice"].sequence_number == 2
    assert state.participant_keys["bob"].sequence_number == 1


@pytest_asyncio.fixture
async def yielding_exchange(yielding_store, alice, bob):
    """Completed exchange for c1 on a store that suspends on every access"""
    protocol = KeyExchangeProtocol(yielding_store, max_retries=50)
    await protocol.initiate(**alice.submission("c1"))
    await protocol.complete(**bob.submission("c1"))
    return protocol


@pytest.mark.asyncio
async def test_concurrent_encrypts_get_distinct_sequences(yielding_exchange, alice, bob):
    alice_cipher = MessageCipher(yielding_exchange, alice.keyring)
    bob_cipher = MessageCipher(yielding_exchange, bob.keyring)

    messages = await asyncio.gather(*[
        alice_cipher.encrypt_message("c1", "alice", f"message {i}", alice.signing_secret_key)
        for i in range(25)
    ])

    assert sorted(m.sequence_number for m in messages) == list(range(1, 26))

    for message in messages:
        decrypted = await bob_cipher.decrypt_message("c1", message)
        assert decrypted.is_valid
        assert decrypted.content.startswith("message ")


@pytest.mark.asyncio
async def test_two_ciphers_for_one_sender_share_the_counter(yielding_exchange, alice):
    ciphers = [MessageCipher(yielding_exchange, alice.keyring) for _ in range(2)]

    messages = await asyncio.gather(*[
        cipher.encrypt_message("c1", "alice", "hi", alice.signing_secret_key)
        for _ in range(10)
        for cipher in ciphers
    ])

    assert sorted(m.sequence_number for m in messages) == list(range(1, 21))


@pytest.mark.asyncio
async def test_senders_in_two_processes_share_the_counter(yielding_store, yielding_exchange, alice, bob):
    other_process = KeyExchangeProtocol(yielding_store, max_retries=50)
    ciphers = [
        MessageCipher(yielding_exchange, alice.keyring),
        MessageCipher(other_process, alice.keyring),
    ]

    messages = await asyncio.gather(*[
        cipher.encrypt_message("c1", "alice", "hi", alice.signing_secret_key)
        for _ in range(10)
        for cipher in ciphers
    ])

    assert sorted(m.sequence_number for m in messages) == list(range(1, 21))
    state = await yielding_store.get_conversation("c1")
    assert state.participant_keys["alice"].sequence_number == 20

    bob_cipher = MessageCipher(other_process, bob.keyring)
    for message in messages:
        assert (await bob_cipher.decrypt_message("c1", message)).is_valid


@pytest.mark.asyncio
async def test_missing_secret_does_not_consume_a_sequence(conversation, key_exchange, alice, alice_cipher):
    with pytest.raises(NotFoundError):
        await MessageCipher(key_exchange).encrypt_message(conversation, "alice", "hi", alice.signing_secret_key)

    encrypted = await alice_cipher.encrypt_message(conversation, "alice", "hi", alice.signing_secret_key)
    assert encrypted.sequence_number == 1


@pytest.mark.asyncio
async def test_encrypt_requires_completed_exchange(key_exchange, alice, alice_cipher):
    with pytest.raises(ProtocolStateError):
        await alice_cipher.encrypt_message("c1", "alice", "hi", alice.signing_secret_key)

    await key_exchange.initiate(**alice.submission("c1"))
    with pytest.raises(ProtocolStateError):
        await alice_cipher.encrypt_message("c1", "alice", "hi", alice.signing_secret_key)


@pytest.mark.asyncio
async def test_encrypt_requires_participant(conversation, carol, key_exchange):
    cipher = MessageCipher(key_exchange, carol.keyring)
    with pytest.raises(NotFoundError):
        await cipher.encrypt_message(conversation, "carol", "hi", carol.signing_secret_key)


@pytest.mark.asyncio
async def test_encrypt_requires_local_secret(conversation, alice, key_exchange):
    cipher = MessageCipher(key_exchange)
    with pytest.raises(NotFoundError):
        await cipher.encrypt_message(conversation, "alice", "hi", alice.signing_secret_key)


@pytest.mark.asyncio
async def test_forged_signature_is_invalid(conversation, alice, alice_cipher, bob_cipher):
    encrypted = await alice_cipher.encrypt_message(conversation, "alice", "hi", alice.signing_secret_key)

    impostor = generate_signing_keypair()
    payload = message_payload(conversation, encrypted.ciphertext, encrypted.nonce, encrypted.sequence_number)
    forged = replace(encrypted, signature=b64encode(sign(payload.encode(), impostor.secret_key)))

    decrypted = await bob_cipher.decrypt_message(conversation, forged)
    assert decrypted.is_valid is False
    assert decrypted.content == ""
    assert decrypted.sender_id == "alice"

    garbage = replace(encrypted, signature="not base64!")
    assert (await bob_cipher.decrypt_message(conversation, garbage)).is_valid is False


@pytest.mark.asyncio
async def test_signature_covers_sequence_number(conversation, alice, alice_cipher, bob_cipher):
    encrypted = await alice_cipher.encrypt_message(conversation, "alice", "hi", alice.signing_secret_key)

    shifted = replace(encrypted, sequence_number=encrypted.sequence_number + 1)
    assert (await bob_cipher.decrypt_message(conversation, shifted)).is_valid is False


@pytest.mark.asyncio
async def test_tampered_ciphertext_is_invalid(conversation, alice, alice_cipher, bob_cipher):
    """A correctly signed but corrupted ciphertext fails the AEAD check"""
    encrypted = await alice_cipher.encrypt_message(conversation, "alice", "hi", alice.signing_secret_key)

    raw = bytearray(b64decode(encrypted.ciphertext))
    raw[0] ^= 0x01
    ciphertext = b64encode(bytes(raw))
    payload = message_payload(conversation, ciphertext, encrypted.nonce, encrypted.sequence_number)
    tampered = replace(
        encrypted,
        ciphertext=ciphertext,
        signature=b64encode(sign(payload.encode(), alice.signing.secret_key))
    )

    decrypted = await bob_cipher.decrypt_message(conversation, tampered)
    assert decrypted.is_valid is False
    assert decrypted.content == ""


@pytest.mark.asyncio
async def test_decrypt_errors_raise(conversation, alice, alice_cipher, bob_cipher):
    encrypted = await alice_cipher.encrypt_message(conversation, "alice", "hi", alice.signing_secret_key)

    with pytest.raises(NotFoundError):
        await bob_cipher.decrypt_message(conversation, replace(encrypted, sender_id="mallory"))

    with pytest.raises(ProtocolStateError):
        await bob_cipher.decrypt_message("other", encrypted)


@pytest.mark.asyncio
async def test_replayed_message_still_decrypts(conversation, alice, alice_cipher, bob_cipher):
    # no replay window on decrypt
    encrypted = await alice_cipher.encrypt_message(conversation, "alice", "hi", alice.signing_secret_key)

    assert (await bob_cipher.decrypt_message(conversation, encrypted)).is_valid
    assert (await bob_cipher.decrypt_message(conversation, encrypted)).is_valid


@pytest.mark.asyncio
async def test_validate_encrypted_message(conversation, key_exchange, alice, alice_cipher):
    validator = MessageCipher(key_exchange)
    encrypted = await alice_cipher.encrypt_message(conversation, "alice", "hi", alice.signing_secret_key)

    assert await validator.validate_encrypted_message(conversation, encrypted, "alice")
    assert not await validator.validate_encrypted_message(conversation, encrypted, "bob")
    assert not await validator.validate_encrypted_message(conversation, encrypted, "mallory")
    assert not await validator.validate_encrypted_message("other", encrypted, "alice")
    assert not await validator.validate_encrypted_message(
        conversation, replace(encrypted, nonce=b64encode(b"\x00" * 12)), "alice"
    )


@pytest.mark.asyncio
async def test_validate_rejects_other_conversation_payload(key_exchange, alice, bob, alice_cipher):
    for conversation_id in ("c1", "c2"):
        await key_exchange.initiate(**alice.submission(conversation_id))
        await key_exchange.complete(**bob.submission(conversation_id))

    encrypted = await alice_cipher.encrypt_message("c1", "alice", "hi", alice.signing_secret_key)
    assert not await alice_cipher.validate_encrypted_message("c2", encrypted, "alice")


@pytest.mark.asyncio
async def test_encryption_status(key_exchange, alice, bob, alice_cipher):
    status = await alice_cipher.get_encryption_status("c1")
    assert not status.is_encrypted
    assert status.key_exchange_status == KeyExchangeStatus.PENDING
    assert status.participant_count == 0

    await key_exchange.initiate(**alice.submission("c1"))
    status = await alice_cipher.get_encryption_status("c1")
    assert not status.is_encrypted
    assert status.participant_count == 1

    await key_exchange.complete(**bob.submission("c1"))
    status = await alice_cipher.get_encryption_status("c1")
    assert status.is_encrypted
    assert status.key_exchange_status == KeyExchangeStatus.COMPLETED
    assert status.participant_count == 2

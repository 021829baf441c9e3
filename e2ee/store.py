"""
Persistence interface for user and conversation key state.

The key exchange only talks to a KeyStateStore. Conversation updates are
compare-and-swap on ConversationKeyState.version so that writers in other
processes cannot silently overwrite each other.
"""

import copy
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional

from .errors import StaleStateError
from .models import ConversationKeyState, UserKeyRecord, utcnow


class KeyStateStore(ABC):
    """Storage backend for UserKeyRecord and ConversationKeyState"""

    @abstractmethod
    async def get_user_keys(self, user_id: str) -> Optional[UserKeyRecord]:
        ...

    @abstractmethod
    async def save_user_keys(self, record: UserKeyRecord) -> UserKeyRecord:
        """Insert or replace the public keys of a user"""
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[ConversationKeyState]:
        ...

    @abstractmethod
    async def save_conversation(self, state: ConversationKeyState) -> ConversationKeyState:
        """
        Conditionally persist a conversation state.

        A state with version 0 is inserted; otherwise the stored row must
        still carry state.version. On success the new version is written
        back to state.

        Raises:
            StaleStateError: If another writer got there first
        """
        ...


class InMemoryKeyStore(KeyStateStore):
    """Dict-backed store for tests and single-process deployments"""

    def __init__(self):
        self._users: Dict[str, UserKeyRecord] = {}
        self._conversations: Dict[str, ConversationKeyState] = {}
        self._lock = asyncio.Lock()

    async def get_user_keys(self, user_id: str) -> Optional[UserKeyRecord]:
        record = self._users.get(user_id)
        return copy.deepcopy(record) if record else None

    async def save_user_keys(self, record: UserKeyRecord) -> UserKeyRecord:
        async with self._lock:
            existing = self._users.get(record.user_id)
            if existing:
                record.created_at = existing.created_at
            record.updated_at = utcnow()
            self._users[record.user_id] = copy.deepcopy(record)
        return record

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationKeyState]:
        state = self._conversations.get(conversation_id)
        return copy.deepcopy(state) if state else None

    async def save_conversation(self, state: ConversationKeyState) -> ConversationKeyState:
        async with self._lock:
            current = self._conversations.get(state.conversation_id)
            current_version = current.version if current else 0
            if current_version != state.version:
                raise StaleStateError(
                    f"Conversation {state.conversation_id} changed "
                    f"(expected version {state.version}, found {current_version})"
                )

            state.version += 1
            state.updated_at = utcnow()
            self._conversations[state.conversation_id] = copy.deepcopy(state)
        return state

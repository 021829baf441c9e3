"""
Database models and the SQL-backed key state store.

Uses SQLAlchemy (async) with SQLite by default. Only public keys, sequence
counters and handshake status are stored; secret keys never reach the server.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from e2ee.errors import StaleStateError
from e2ee.models import ConversationKeyState, KeyExchangeStatus, ParticipantKeyEntry, UserKeyRecord
from e2ee.store import KeyStateStore

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UserKeys(Base):
    """Public keys registered for a user"""
    __tablename__ = "user_keys"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column("userId", String(255), unique=True, index=True, nullable=False)
    public_key = Column("publicKey", Text, nullable=False)  # X25519 public key (base64)
    signing_key = Column("signingKey", Text, nullable=False)  # Ed25519 public key (base64)
    sequence_number = Column("sequenceNumber", Integer, default=0, nullable=False)
    created_at = Column("createdAt", DateTime(timezone=True), default=_now)
    updated_at = Column("updatedAt", DateTime(timezone=True), default=_now, onupdate=_now)

    def to_record(self) -> UserKeyRecord:
        return UserKeyRecord(
            user_id=self.user_id,
            public_key=self.public_key,
            signing_key=self.signing_key,
            sequence_number=self.sequence_number or 0,
            created_at=self.created_at,
            updated_at=self.updated_at
        )


class ConversationKeys(Base):
    """Key-exchange state of a conversation"""
    __tablename__ = "conversation_keys"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column("conversationId", String(255), unique=True, index=True, nullable=False)
    status = Column(String(50), default=KeyExchangeStatus.PENDING.value, nullable=False)
    participant_keys = Column("participantKeys", JSON, nullable=False, default=dict)
    initiator_id = Column("initiatorId", String(255), nullable=True)
    responder_id = Column("responderId", String(255), nullable=True)
    # holds the public-key fingerprint, never an actual shared secret
    key_fingerprint = Column("sharedSecret", Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column("createdAt", DateTime(timezone=True), default=_now)
    updated_at = Column("updatedAt", DateTime(timezone=True), default=_now)

    def to_state(self) -> ConversationKeyState:
        return ConversationKeyState(
            conversation_id=self.conversation_id,
            status=KeyExchangeStatus(self.status),
            participant_keys={
                uid: ParticipantKeyEntry.from_dict(entry)
                for uid, entry in (self.participant_keys or {}).items()
            },
            initiator_id=self.initiator_id,
            responder_id=self.responder_id,
            key_fingerprint=self.key_fingerprint,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at
        )


class SQLKeyStore(KeyStateStore):
    """KeyStateStore over an async SQLAlchemy engine"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./e2ee.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def get_user_keys(self, user_id: str) -> Optional[UserKeyRecord]:
        async with self.async_session() as session:
            result = await session.execute(select(UserKeys).where(UserKeys.user_id == user_id))
            row = result.scalar_one_or_none()
            return row.to_record() if row else None

    async def save_user_keys(self, record: UserKeyRecord) -> UserKeyRecord:
        async with self.async_session() as session:
            result = await session.execute(select(UserKeys).where(UserKeys.user_id == record.user_id))
            row = result.scalar_one_or_none()

            if row:
                row.public_key = record.public_key
                row.signing_key = record.signing_key
                row.sequence_number = record.sequence_number
                row.updated_at = _now()
            else:
                row = UserKeys(
                    user_id=record.user_id,
                    public_key=record.public_key,
                    signing_key=record.signing_key,
                    sequence_number=record.sequence_number
                )
                session.add(row)

            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise StaleStateError(f"Keys for user {record.user_id} were created concurrently") from e

            record.created_at = row.created_at
            record.updated_at = row.updated_at
        return record

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationKeyState]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ConversationKeys).where(ConversationKeys.conversation_id == conversation_id)
            )
            row = result.scalar_one_or_none()
            return row.to_state() if row else None

    async def save_conversation(self, state: ConversationKeyState) -> ConversationKeyState:
        now = _now()
        values = {
            'status': state.status.value,
            'participant_keys': {uid: entry.to_dict() for uid, entry in state.participant_keys.items()},
            'initiator_id': state.initiator_id,
            'responder_id': state.responder_id,
            'key_fingerprint': state.key_fingerprint,
            'version': state.version + 1,
            'updated_at': now
        }

        async with self.async_session() as session:
            if state.version == 0:
                session.add(ConversationKeys(
                    conversation_id=state.conversation_id,
                    created_at=state.created_at,
                    **values
                ))
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise StaleStateError(
                        f"Conversation {state.conversation_id} was created concurrently"
                    ) from e
            else:
                result = await session.execute(
                    update(ConversationKeys)
                    .where(
                        ConversationKeys.conversation_id == state.conversation_id,
                        ConversationKeys.version == state.version
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise StaleStateError(
                        f"Conversation {state.conversation_id} changed since version {state.version}"
                    )
                await session.commit()

        state.version += 1
        state.updated_at = now
        return state

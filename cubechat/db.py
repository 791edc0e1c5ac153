"""SQLAlchemy models and the durable conversation store.

Uses SQLAlchemy 2.0 style with Mapped and mapped_column. SQLite is the
default backend; any SQLAlchemy URL works.
"""

import json
import logging
import threading
from typing import Any
import uuid

from sqlalchemy import (
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from .store import ConversationSummary, Message, utc_now_iso

logger = logging.getLogger(__name__)

# Attempts when another writer took the same sequence number
_SEQUENCE_ATTEMPTS = 3


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class ConversationRow(Base):
    """Conversation owned by one user."""

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    messages: Mapped[list["MessageRow"]] = relationship(
        "MessageRow",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="MessageRow.sequence",
    )

    def __repr__(self) -> str:
        return f"<ConversationRow(id={self.id!r}, title={self.title!r})>"


class MessageRow(Base):
    """One persisted message; ``sequence`` orders messages within a conversation."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_messages_conversation_seq"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[str] = mapped_column(String(50), nullable=False)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    conversation: Mapped["ConversationRow"] = relationship(
        "ConversationRow", back_populates="messages"
    )

    def to_message(self) -> Message:
        metadata: dict[str, Any] | None = None
        if self.metadata_json:
            try:
                loaded = json.loads(self.metadata_json)
            except json.JSONDecodeError:
                logger.warning("Corrupt metadata on message %s", self.id)
            else:
                metadata = loaded if isinstance(loaded, dict) else None
        return Message(
            role=self.role, content=self.content, timestamp=self.timestamp, metadata=metadata
        )


class SQLConversationStore:
    """ConversationStore backed by SQLAlchemy. One session per call."""

    def __init__(self, database_url: str = "sqlite:///./cubechat.db") -> None:
        kwargs: dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
                # Share the single in-memory database across threads
                kwargs["poolclass"] = StaticPool
        self._engine = create_engine(database_url, **kwargs)
        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._write_lock = threading.Lock()

    def _session(self) -> Session:
        return self._sessions()

    def create_conversation(self, user_id: str, title: str | None = None) -> str:
        with self._session() as db:
            row = ConversationRow(id=generate_uuid(), user_id=user_id, title=title)
            db.add(row)
            db.commit()
            return row.id

    def add_message(self, conversation_id: str, message: Message) -> None:
        """Append a message. Sequence numbers are unique per conversation.

        Writers in this process are serialized; a writer in another process
        that claims the same sequence makes the insert fail and retry.
        """
        with self._write_lock:
            for attempt in range(_SEQUENCE_ATTEMPTS):
                try:
                    self._insert_message(conversation_id, message)
                    return
                except IntegrityError:
                    if attempt == _SEQUENCE_ATTEMPTS - 1:
                        raise
                    logger.warning(
                        "Sequence conflict on %s (attempt %d/%d)",
                        conversation_id,
                        attempt + 1,
                        _SEQUENCE_ATTEMPTS,
                    )

    def _insert_message(self, conversation_id: str, message: Message) -> None:
        with self._session() as db:
            if db.get(ConversationRow, conversation_id) is None:
                raise KeyError(f"Conversation not found: {conversation_id}")
            max_seq = db.scalar(
                select(func.max(MessageRow.sequence)).where(
                    MessageRow.conversation_id == conversation_id
                )
            )
            db.add(
                MessageRow(
                    id=generate_uuid(),
                    conversation_id=conversation_id,
                    role=message.role,
                    content=message.content,
                    timestamp=message.timestamp,
                    metadata_json=(
                        json.dumps(message.metadata) if message.metadata is not None else None
                    ),
                    sequence=(max_seq or 0) + 1,
                )
            )
            db.commit()

    def list_messages(self, conversation_id: str, user_id: str) -> list[Message] | None:
        with self._session() as db:
            owner = db.scalar(
                select(ConversationRow.id).where(
                    ConversationRow.id == conversation_id, ConversationRow.user_id == user_id
                )
            )
            if owner is None:
                return None
            rows = db.scalars(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.sequence)
            ).all()
            return [row.to_message() for row in rows]

    def list_conversations(self, user_id: str) -> list[ConversationSummary]:
        with self._session() as db:
            conversations = db.scalars(
                select(ConversationRow)
                .where(ConversationRow.user_id == user_id)
                .order_by(ConversationRow.created_at.desc())
            ).all()
            out: list[ConversationSummary] = []
            for convo in conversations:
                last = db.scalars(
                    select(MessageRow)
                    .where(MessageRow.conversation_id == convo.id)
                    .order_by(MessageRow.sequence.desc())
                    .limit(1)
                ).first()
                out.append(
                    ConversationSummary(
                        id=convo.id,
                        title=convo.title,
                        created_at=convo.created_at,
                        last_message=last.content if last else None,
                        last_timestamp=last.timestamp if last else None,
                    )
                )
            return out

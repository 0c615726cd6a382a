"""SQLAlchemy models."""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Boolean,
    ForeignKey,
    Index,
    Table,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import JSON

Base = declarative_base()

INBOX_LABEL = "INBOX"
UNREAD_LABEL = "UNREAD"
SENT_LABEL = "SENT"
SPAM_LABEL = "SPAM"
DRAFT_LABEL = "DRAFT"


message_labels = Table(
    "message_labels",
    Base.metadata,
    Column("message_id", String, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True),
    Column("label_id", String, ForeignKey("labels.id", ondelete="CASCADE"), primary_key=True),
)


class Account(Base):
    """The signed-in mailbox. Holds the history cursor."""
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=False, index=True)
    history_id = Column(String, nullable=True)  # only moves forward, see account.advance_history_id
    aliases = Column(JSON, nullable=True)  # list of normalized send-as addresses
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Person(Base):
    __tablename__ = "persons"

    email = Column(String, primary_key=True)  # normalized
    display_name = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Label(Base):
    __tablename__ = "labels"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    label_type = Column(String, nullable=True)  # system, user


class Conversation(Base):
    """Participant-grouped conversation. Rollup columns are derived from messages."""
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    participant_hash = Column(String(64), nullable=True, index=True)
    conversation_type = Column(String, default="one_to_one")  # one_to_one, group
    display_name = Column(String, nullable=True)
    archived_at = Column(DateTime, nullable=True)
    pinned = Column(Boolean, default=False, nullable=False)
    muted = Column(Boolean, default=False, nullable=False)

    # Rollups
    has_inbox = Column(Boolean, default=False, nullable=False)
    inbox_unread_count = Column(Integer, default=0, nullable=False)
    snippet = Column(Text, nullable=True)
    last_message_date = Column(DateTime, nullable=True, index=True)
    latest_inbox_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    messages = relationship("Message", back_populates="conversation")
    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_conversations_active_hash", "participant_hash", "archived_at"),
    )

    @property
    def participant_emails(self) -> list[str]:
        return sorted(p.person_email for p in self.participants)


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    person_email = Column(String, ForeignKey("persons.email"), nullable=False, index=True)

    conversation = relationship("Conversation", back_populates="participants")
    person = relationship("Person")

    __table_args__ = (
        UniqueConstraint("conversation_id", "person_email", name="uq_conversation_participant"),
    )


class Message(Base):
    """A remote message mirrored locally. The remote id is the primary key."""
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    thread_id = Column(String, nullable=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True, index=True)
    internal_date = Column(DateTime, nullable=True, index=True)
    subject = Column(String, nullable=True)
    snippet = Column(Text, nullable=True)
    cleaned_snippet = Column(Text, nullable=True)
    sender_email = Column(String, nullable=True)
    sender_name = Column(String, nullable=True)
    is_unread = Column(Boolean, default=False, nullable=False)
    is_from_me = Column(Boolean, default=False, nullable=False)
    is_newsletter = Column(Boolean, default=False, nullable=False)
    has_attachments = Column(Boolean, default=False, nullable=False)
    # Set when a local, not-yet-synced edit happens (mark read, archive, ...)
    local_modified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    conversation = relationship("Conversation", back_populates="messages")
    labels = relationship("Label", secondary=message_labels)
    participants = relationship("MessageParticipant", back_populates="message", cascade="all, delete-orphan")
    attachments = relationship("Attachment", back_populates="message", cascade="all, delete-orphan")

    @property
    def label_ids(self) -> set[str]:
        return {label.id for label in self.labels}

    @property
    def in_inbox(self) -> bool:
        return INBOX_LABEL in self.label_ids


class MessageParticipant(Base):
    __tablename__ = "message_participants"

    id = Column(Integer, primary_key=True)
    message_id = Column(String, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    person_email = Column(String, ForeignKey("persons.email"), nullable=False, index=True)
    kind = Column(String, nullable=False)  # from, to, cc, bcc

    message = relationship("Message", back_populates="participants")
    person = relationship("Person")


class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True)
    message_id = Column(String, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    attachment_id = Column(String, nullable=False)
    filename = Column(String, nullable=True)
    mime_type = Column(String, nullable=True)
    size = Column(Integer, nullable=True)
    state = Column(String, default="queued")  # queued, downloaded, failed

    message = relationship("Message", back_populates="attachments")


class AbandonedSyncMessage(Base):
    """A message id the sync gave up on so the cursor could advance."""
    __tablename__ = "abandoned_sync_messages"

    message_id = Column(String, primary_key=True)
    reason = Column(Text, nullable=True)
    abandoned_at = Column(DateTime, default=datetime.utcnow)
    retry_count = Column(Integer, default=0, nullable=False)


class SyncMetadata(Base):
    """Key-value store for persisted sync bookkeeping (failure counters, flags, timestamps)."""
    __tablename__ = "sync_metadata"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SyncState(Base):
    """Persisted progress of the current/last sync pass (read by sync-status and SSE)."""
    __tablename__ = "sync_state"

    id = Column(Integer, primary_key=True, index=True)
    status = Column(String, default="idle")  # idle, syncing, cancelled, failed
    mode = Column(String, nullable=True)
    progress = Column(Integer, default=0, nullable=True)  # percent, 0..100
    message = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)
    processed = Column(Integer, default=0, nullable=True)
    failed = Column(Integer, default=0, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

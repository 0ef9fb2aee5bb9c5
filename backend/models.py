# models.py — Database models for KanbanFlow
# - UUID string primary keys everywhere
# - Boards own lists, lists own cards, cards own comments
# - Owner/collaborator membership with invitations
# - Append-only activity log per board

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

INVITATION_TTL_DAYS = 7


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(dt):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def invitation_expiry():
    return utcnow() + timedelta(days=INVITATION_TTL_DAYS)


# ============================================================
# ENUMS
# ============================================================

class CollaboratorRole(str, PyEnum):
    COLLABORATOR = "collaborator"


class InvitationStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


class AuditAction(str, PyEnum):
    BOARD_CREATED = "board_created"
    BOARD_UPDATED = "board_updated"
    BOARD_DELETED = "board_deleted"
    LIST_CREATED = "list_created"
    LIST_UPDATED = "list_updated"
    LIST_DELETED = "list_deleted"
    CARD_CREATED = "card_created"
    CARD_UPDATED = "card_updated"
    CARD_MOVED = "card_moved"
    CARD_DELETED = "card_deleted"
    COMMENT_ADDED = "comment_added"
    USER_INVITED = "user_invited"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_REJECTED = "invitation_rejected"


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String(100), nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    avatar = Column(String, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# BOARDS
# ============================================================

class Board(Base):
    __tablename__ = "boards"

    id = Column(String, primary_key=True, default=new_uuid)
    title = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    color = Column(String(7), nullable=False, default="#3B82F6")
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class BoardCollaborator(Base):
    __tablename__ = "board_collaborators"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(SQLEnum(CollaboratorRole), nullable=False, default=CollaboratorRole.COLLABORATOR)
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("board_id", "user_id", name="uq_board_collaborator"),
    )


class BoardList(Base):
    __tablename__ = "lists"

    id = Column(String, primary_key=True, default=new_uuid)
    title = Column(String(100), nullable=False)
    board_id = Column(String, ForeignKey("boards.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_lists_board_position", "board_id", "position"),
    )


class Card(Base):
    __tablename__ = "cards"

    id = Column(String, primary_key=True, default=new_uuid)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    list_id = Column(String, ForeignKey("lists.id"), nullable=False, index=True)
    board_id = Column(String, ForeignKey("boards.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    labels = Column(JSON, default=list)
    assignee_id = Column(String, ForeignKey("users.id"), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    created_by_id = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_cards_list_position", "list_id", "position"),
    )


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String, primary_key=True, default=new_uuid)
    content = Column(Text, nullable=False)
    card_id = Column(String, ForeignKey("cards.id"), nullable=False, index=True)
    author_id = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# INVITATIONS & ACTIVITY
# ============================================================

class Invitation(Base):
    __tablename__ = "invitations"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id"), nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    role = Column(SQLEnum(CollaboratorRole), nullable=False, default=CollaboratorRole.COLLABORATOR)
    token = Column(String(64), unique=True, nullable=False, index=True)
    status = Column(SQLEnum(InvitationStatus), nullable=False, default=InvitationStatus.PENDING)
    invited_by_id = Column(String, ForeignKey("users.id"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, default=invitation_expiry)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_invitations_board_email", "board_id", "email"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    board_id = Column(String, ForeignKey("boards.id"), nullable=False, index=True)
    details = Column(String(500), nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_audit_board_timestamp", "board_id", "timestamp"),
    )

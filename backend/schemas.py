# schemas.py — Request/response models (camelCase on the wire)
from datetime import datetime
from typing import Optional, List, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from models import new_uuid

HEX_COLOR = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InputModel(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


def _blank_to_none(v):
    # "", 0, False and null all clear optional references
    return v or None


# ============================================================
# AUTH
# ============================================================

class SignupRequest(InputModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class LoginRequest(InputModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class UserPublic(CamelModel):
    id: str
    name: str
    email: str
    avatar: str = ""
    created_at: Optional[str] = None


class AuthResponse(CamelModel):
    user: UserPublic
    token: str


# ============================================================
# BOARDS
# ============================================================

class BoardCreate(InputModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    color: str = Field("#3B82F6", pattern=HEX_COLOR)


class BoardUpdate(InputModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)


class Label(InputModel):
    id: str = Field(default_factory=new_uuid)
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field("#6366F1", pattern=HEX_COLOR)


class ListCreate(InputModel):
    title: str = Field(..., min_length=1, max_length=100)
    position: Optional[int] = Field(None, ge=0)


class ListUpdate(InputModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    position: Optional[int] = Field(None, ge=0)


class CardCreate(InputModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    list_id: str
    position: Optional[int] = Field(None, ge=0)
    labels: List[Label] = Field(default_factory=list)
    assignee: Optional[str] = None
    due_date: Optional[datetime] = None

    @field_validator("assignee", "due_date", mode="before")
    @classmethod
    def clear_refs(cls, v):
        return _blank_to_none(v)


class CardUpdate(InputModel):
    """Partial update: only fields present in the payload are applied."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    labels: Optional[List[Label]] = None
    assignee: Optional[str] = None
    due_date: Optional[datetime] = None

    @field_validator("assignee", "due_date", mode="before")
    @classmethod
    def clear_refs(cls, v):
        return _blank_to_none(v)


class CardMove(InputModel):
    list_id: str
    position: int = Field(..., ge=0)


class CommentCreate(InputModel):
    content: str = Field(..., min_length=1, max_length=5000)


class InviteCreate(InputModel):
    email: EmailStr
    role: Literal["collaborator"] = "collaborator"

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


# ============================================================
# RESPONSES
# ============================================================

class CollaboratorOut(CamelModel):
    user: UserPublic
    role: str
    joined_at: Optional[str] = None


class CommentOut(CamelModel):
    id: str
    content: str
    card_id: str
    author: Optional[UserPublic] = None
    created_at: Optional[str] = None


class LabelOut(CamelModel):
    id: str
    name: str
    color: str


class CardOut(CamelModel):
    id: str
    title: str
    description: Optional[str] = None
    list_id: str
    board_id: str
    position: int
    labels: List[LabelOut] = []
    assignee: Optional[UserPublic] = None
    due_date: Optional[str] = None
    created_by: Optional[UserPublic] = None
    comments: List[CommentOut] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ListOut(CamelModel):
    id: str
    title: str
    board_id: str
    position: int
    cards: List[CardOut] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class BoardOut(CamelModel):
    id: str
    title: str
    description: Optional[str] = None
    color: str
    owner: Optional[UserPublic] = None
    collaborators: List[CollaboratorOut] = []
    lists: List[ListOut] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class InvitationOut(CamelModel):
    id: str
    board_id: str
    board_title: Optional[str] = None
    board_color: Optional[str] = None
    email: str
    role: str
    status: str
    invited_by: Optional[UserPublic] = None
    expires_at: Optional[str] = None
    created_at: Optional[str] = None


class AuditLogOut(CamelModel):
    id: str
    action: str
    board_id: str
    user: Optional[UserPublic] = None
    details: Optional[str] = None
    timestamp: Optional[str] = None


class MessageOut(CamelModel):
    message: str


class AcceptOut(CamelModel):
    message: str
    board_id: str


def wire(model: BaseModel) -> dict:
    """JSON-ready camelCase dict, identical to what the REST layer returns."""
    return model.model_dump(mode="json", by_alias=True)

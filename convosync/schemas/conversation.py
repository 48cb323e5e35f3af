from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from convosync.utils.time import ensure_aware


class LastMessage(BaseModel):

    model_config = ConfigDict(extra="ignore")

    id: str
    sender_id: str
    content: Optional[str] = None
    media_kind: Optional[str] = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class Participant(BaseModel):

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    conversation_id: str
    user_id: str
    role: Literal["admin", "member"] = "member"
    joined_at: datetime
    last_read_at: datetime
    muted: bool = False
    pinned: bool = False

    @field_validator("joined_at", "last_read_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Participant":
        return cls.model_validate(row)


class Conversation(BaseModel):

    model_config = ConfigDict(extra="ignore")

    id: str
    kind: Literal["direct", "group"]
    participant_ids: List[str]
    created_by: Optional[str] = None
    title: Optional[str] = None
    avatar_url: Optional[str] = None
    direct_key: Optional[str] = None
    last_activity_at: datetime
    last_message: Optional[LastMessage] = None

    @field_validator("last_activity_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Conversation":
        return cls.model_validate(row)

    @property
    def is_group(self) -> bool:
        return self.kind == "group"

    def other_participants(self, user_id: str) -> List[str]:
        return [p for p in self.participant_ids if p != user_id]


class ConversationSummary(BaseModel):
    """One row of the conversation list as seen by a single viewer."""

    conversation: Conversation
    membership: Participant
    unread_count: int = 0
    typing_user_ids: List[str] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.conversation.id

    @property
    def last_activity_at(self) -> datetime:
        return self.conversation.last_activity_at

    @property
    def last_message(self) -> Optional[LastMessage]:
        return self.conversation.last_message

    @property
    def pinned(self) -> bool:
        return self.membership.pinned

    @property
    def muted(self) -> bool:
        return self.membership.muted

    @property
    def is_typing(self) -> bool:
        return bool(self.typing_user_ids)

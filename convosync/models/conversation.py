from datetime import datetime
from typing import List, Literal, Optional, TypedDict


ConversationKind = Literal["direct", "group"]


class LastMessageSnapshot(TypedDict, total=False):
    id: str
    sender_id: str
    content: Optional[str]
    media_kind: Optional[str]
    created_at: datetime


class ConversationDocument(TypedDict, total=False):
    id: str
    kind: ConversationKind
    participant_ids: List[str]
    created_by: str
    title: Optional[str]
    avatar_url: Optional[str]
    # sorted "a:b" pair for direct conversations, unique in the backend
    direct_key: Optional[str]
    created_at: datetime
    last_activity_at: datetime
    # denormalized cache, repaired on full load
    last_message: Optional[LastMessageSnapshot]

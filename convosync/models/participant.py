from datetime import datetime
from typing import Literal, TypedDict


ParticipantRole = Literal["admin", "member"]


class ParticipantDocument(TypedDict, total=False):
    id: str
    conversation_id: str
    user_id: str
    role: ParticipantRole
    joined_at: datetime
    # read watermark
    last_read_at: datetime
    muted: bool
    pinned: bool

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utc_now_iso() -> str:
    """Timezone-aware UTC timestamp, ISO 8601 with millisecond precision."""
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class Sender(str, Enum):
    """Who wrote a message: the account owner (`user`) or the contact (`them`)."""

    USER = "user"
    THEM = "them"


class Message(BaseModel):
    """A single conversation entry. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    sender: Sender
    text: str
    timestamp: str = Field(default_factory=utc_now_iso)


class ConversationMetadata(BaseModel):
    """
    Bookkeeping stored next to the active segment.

    Fields
    - total_messages: every message ever appended (active + all archive segments).
    - archived: number of archive segments; segment indexes are 0..archived-1.
    - last_update: timestamp of the latest append.

    Serialized with the camelCase keys used on disk
    (``totalMessages``, ``archived``, ``lastUpdate``).
    """

    model_config = ConfigDict(populate_by_name=True)

    total_messages: int = Field(default=0, ge=0, alias="totalMessages")
    archived: int = Field(default=0, ge=0)
    last_update: str = Field(default_factory=utc_now_iso, alias="lastUpdate")


class Conversation(BaseModel):
    """Active segment (oldest first, newest last) plus metadata."""

    messages: List[Message] = Field(default_factory=list)
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)

    @classmethod
    def empty(cls) -> "Conversation":
        """Skeleton returned for contacts with no stored history."""
        return cls()

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class SenderStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    count: int = 0
    avg_length: int = Field(default=0, alias="avgLength")
    first_message: Optional[str] = Field(default=None, alias="firstMessage")
    last_message: Optional[str] = Field(default=None, alias="lastMessage")


class ConversationStats(BaseModel):
    """Counts and timing over the full history of one conversation.

    Besides the per-sender breakdown, serialized stats carry the flat
    ``fromUser``, ``fromThem`` and ``avgLength: {user, them}`` keys that
    export consumers read.
    """

    model_config = ConfigDict(populate_by_name=True)

    total: int = 0
    active: int = 0
    archived: int = 0
    user: SenderStats = Field(default_factory=SenderStats)
    them: SenderStats = Field(default_factory=SenderStats)
    first_message: Optional[str] = Field(default=None, alias="firstMessage")
    last_message: Optional[str] = Field(default=None, alias="lastMessage")

    @computed_field(alias="fromUser")
    @property
    def from_user(self) -> int:
        return self.user.count

    @computed_field(alias="fromThem")
    @property
    def from_them(self) -> int:
        return self.them.count

    @computed_field(alias="avgLength")
    @property
    def avg_length(self) -> Dict[str, int]:
        return {"user": self.user.avg_length, "them": self.them.avg_length}


class ExportDocument(BaseModel):
    """Single-file export: ``{contactLabel, exportedAt, stats, messages[]}``."""

    model_config = ConfigDict(populate_by_name=True)

    contact_label: str = Field(alias="contactLabel")
    exported_at: str = Field(default_factory=utc_now_iso, alias="exportedAt")
    stats: ConversationStats
    messages: List[Message]

"""Schemas for incremental mail sync and rule processing.

Covers the full lifecycle:
  cursor read -> IMAP fetch (UID > watermark) -> rule pipeline -> cursor advance
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

# --- Config ---


class RuleActionType(StrEnum):
    """What a matched rule does to a message."""

    ARCHIVE = "archive"
    LABEL = "label"
    MARK_READ = "mark_read"
    DRAFT_REPLY = "draft_reply"
    CALL_AGENT = "call_agent"


class RuleAction(BaseModel):
    action_type: RuleActionType
    label: str | None = None  # folder for LABEL
    instructions: str = ""  # extra guidance for DRAFT_REPLY


class Rule(BaseModel):
    """A static automation rule. All non-empty conditions must match."""

    name: str
    enabled: bool = True
    from_contains: str | None = None
    subject_contains: str | None = None
    body_contains: str | None = None
    actions: list[RuleAction] = Field(default_factory=list)


class MailAccountConfig(BaseModel):
    """Configuration for a single IMAP mailbox."""

    id: str
    name: str
    server: str
    email: str
    password: str
    folders: dict[str, str] = Field(
        default_factory=lambda: {"inbox": "INBOX", "archive": "Archive"}
    )  # logical name -> IMAP folder path
    is_gmail: bool = False
    port: int = 993
    ssl: bool = True
    has_ai_access: bool = True
    rules: list[Rule] = Field(default_factory=list)


# --- Message data ---


class FetchedMessage(BaseModel):
    """One unseen message, with enough header/body data for rule evaluation."""

    uid: int
    account_email: str
    message_id: str = ""
    thread_id: str = ""
    from_address: str
    from_name: str = ""
    to: list[str] = Field(default_factory=list)
    subject: str
    date: datetime
    flags: list[str] = Field(default_factory=list)
    body_text: str = ""
    body_html: str = ""

    @property
    def snippet(self) -> str:
        return (self.body_text or "")[:100]


# --- Cursor ---


class SyncCursor(BaseModel):
    """Per-mailbox watermark: the highest UID already handled."""

    mailbox: str
    last_seen_uid: int = 0
    updated_at: datetime | None = None


class WatermarkPolicy(StrEnum):
    """How far the watermark advances after a batch.

    MAX_SEEN advances past every fetched message, failed ones included
    (at-most-once). CONTIGUOUS_SUCCESS stops before the first failure so it
    is fetched again next pass (at-least-once).
    """

    MAX_SEEN = "max_seen"
    CONTIGUOUS_SUCCESS = "contiguous_success"


# --- Pipeline contract ---


class ProcessOutcome(StrEnum):
    PROCESSED = "processed"
    SKIPPED = "skipped"


class HistoryItem(BaseModel):
    message_id: str
    pre_fetched_message: FetchedMessage | None = None


# --- Results ---


class MessagePreview(BaseModel):
    id: str
    subject: str
    from_address: str


class SyncResult(BaseModel):
    """Outcome of one sync pass over one mailbox."""

    mailbox: str
    fetched: int = 0
    processed: int = 0
    failed: int = 0
    previous_watermark: int = 0
    new_watermark: int = 0
    no_new_messages: bool = False
    previews: list[MessagePreview] = Field(default_factory=list)


class SyncSummary(BaseModel):
    """Response of a user-triggered "sync now"."""

    success: bool = True
    message: str
    count: int = 0
    processed: int = 0
    last_uid: int = 0
    messages: list[MessagePreview] = Field(default_factory=list)

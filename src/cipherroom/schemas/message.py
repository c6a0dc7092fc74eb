"""Message row Pydantic schemas."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MessagePayload(BaseModel):
    """Structured side data stored next to a message's content.

    ``iv`` carries the base64 nonce of encrypted content. Any other keys
    (attached file metadata, for instance) are kept verbatim and never
    encrypted.
    """

    iv: str | None = None

    model_config = ConfigDict(extra="allow")


class MessageRow(BaseModel):
    """Message as stored by the backend."""

    message_id: str | None = None
    channel_id: str
    sender_id: str | None = None
    content: str
    is_encrypted: bool = False
    payload: MessagePayload = Field(default_factory=MessagePayload)

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def _check_nonce_presence(self) -> MessageRow:
        if not self.is_encrypted and self.payload.iv is not None:
            raise ValueError("Plaintext messages must not carry a nonce")
        return self

    def to_record(self) -> dict[str, Any]:
        """Return the row fields the message store persists."""
        return {
            "content": self.content,
            "is_encrypted": self.is_encrypted,
            "payload": self.payload.model_dump(exclude_none=True),
        }


class MessageStatus(str, Enum):
    """How a loaded message can be shown on this device."""

    PLAINTEXT = "plaintext"
    DECRYPTED = "decrypted"
    UNDECRYPTABLE = "undecryptable"


class DecryptedMessage(BaseModel):
    """Result of loading one message for display."""

    message_id: str | None
    channel_id: str
    sender_id: str | None = None
    text: str | None
    status: MessageStatus
    payload: MessagePayload = Field(default_factory=MessagePayload)

    @property
    def readable(self) -> bool:
        """Return True if ``text`` holds the message's real content."""
        return self.status is not MessageStatus.UNDECRYPTABLE

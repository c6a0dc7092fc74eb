"""SQLAlchemy models for channels and their key grants."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from cipherroom.db.session import Base


class Channel(Base):
    """Channel metadata relevant to encryption."""

    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    encryption_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Set once the creation-time provisioning decision has been taken.
    encryption_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ChannelKeyGrant(Base):
    """A channel key wrapped for one member."""

    __tablename__ = "channel_keys"

    channel_id: Mapped[str] = mapped_column(
        Text, ForeignKey("channels.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(Text, primary_key=True)
    # Base64 RSA-OAEP blob; useless without the member's private key.
    encrypted_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

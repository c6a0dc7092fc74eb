"""SQLAlchemy model for user directory records."""

from sqlalchemy import Text
from sqlalchemy.orm import Mapped, mapped_column

from cipherroom.db.session import Base


class Profile(Base):
    """Directory entry for a user; holds the published identity public key."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    # JWK JSON string. Private key material is never stored here.
    public_key: Mapped[str | None] = mapped_column(Text, nullable=True)

# src/cipherroom/models/__init__.py
"""SQLAlchemy models for the CipherRoom reference backend."""

from .channel import Channel, ChannelKeyGrant
from .message import Message
from .profile import Profile

__all__ = [
    "Channel", "ChannelKeyGrant",
    "Message",
    "Profile",
]

"""Pydantic models for the device registry."""

from enum import Enum

from pydantic import BaseModel, Field


class PersistenceState(str, Enum):
    """What the next flush must do with a record."""
    NEW = "new"
    MODIFIED = "modified"
    UNMODIFIED = "unmodified"
    PENDING_DELETE = "pending_delete"


class DeviceRecord(BaseModel):
    """A device the user has logged in to. The id is its public key."""
    id: str
    lan_address: str = ""
    name: str = ""
    bearer_token: str = Field(default="", repr=False)
    session_cookie: str = Field(default="", repr=False)
    state: PersistenceState = PersistenceState.NEW


# Fields written to durable storage
PERSISTED_FIELDS = ("id", "lan_address", "name", "bearer_token", "session_cookie")

# Fields that set_field() may change
MUTABLE_FIELDS = ("name", "session_cookie", "lan_address")

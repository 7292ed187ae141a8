"""Pydantic models for connection routing."""

from enum import Enum

from pydantic import BaseModel


class RoutePath(str, Enum):
    LAN = "lan"
    RELAY = "relay"


class ConnectMode(str, Enum):
    SWITCH = "switch"
    REVALIDATE = "revalidate"  # only for the active device


class RoutingDecision(BaseModel):
    """Where the UI should load the device from, and what to install first."""
    device_id: str
    path: RoutePath
    origin: str
    session_cookie: str
    cookies: dict[str, str] = {}  # name -> value, to set on `origin`
    proxy: str | None = None  # HTTP proxy for the relay path


class ConnectResult(BaseModel):
    """Outcome of a connect call. navigate=False means stay where you are."""
    decision: RoutingDecision
    navigate: bool
    message: str = ""

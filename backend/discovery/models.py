"""Pydantic models for LAN discovery."""

from enum import Enum

from pydantic import BaseModel, Field


class DeviceIdentity(BaseModel):
    """The JSON payload a device returns from its ping endpoint."""
    greeting: str
    hostname: str = ""
    public_key: str = Field(default="", alias="publicKey")
    time: int | None = None

    model_config = {"populate_by_name": True}


class CandidateDevice(BaseModel):
    """A device found by a scan. Never persisted."""
    address: str
    hostname: str
    public_key: str  # claimed, not verified


class ScanStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    DONE = "done"
    ERROR = "error"


class ScanState(BaseModel):
    """Progress of the current (or last) LAN scan."""
    status: ScanStatus = ScanStatus.IDLE
    self_address: str = ""
    scanned: int = 0
    candidates: list[CandidateDevice] = []
    error: str | None = None

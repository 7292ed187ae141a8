"""
Error taxonomy for Cyclops Link.

Transient network failures are absorbed where they happen and drive the
LAN -> relay fallback. Only terminal conditions are raised to the caller.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class CyclopsLinkError(Exception):
    """Base exception for all Cyclops Link errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert to FastAPI HTTPException."""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        )


class DiscoveryError(CyclopsLinkError):
    """No local network address, or a scan worker failed."""

    def __init__(self, message: str = "LAN discovery failed", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="DISCOVERY_ERROR",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class IdentityError(CyclopsLinkError):
    """A public key, challenge or proof has the wrong shape."""

    def __init__(self, message: str = "Invalid identity material", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="IDENTITY_ERROR",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class SessionError(CyclopsLinkError):
    """The session cookie was rejected. Triggers renewal."""

    def __init__(self, message: str = "Session expired", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="SESSION_ERROR",
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )


class CredentialError(CyclopsLinkError):
    """The device rejected our bearer token. Terminal for that device."""

    def __init__(self, message: str = "Device rejected stored credentials", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="CREDENTIAL_ERROR",
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )


class ConnectivityError(CyclopsLinkError):
    """Neither the LAN nor the relay path reaches the device."""

    def __init__(self, message: str = "Device is unreachable", details: Optional[Dict] = None):
        super().__init__(
            message=message,
            code="CONNECTIVITY_ERROR",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )


class UnknownDeviceError(CyclopsLinkError):
    """No registered device has the requested id."""

    def __init__(self, device_id: str):
        super().__init__(
            message=f"Unknown device {device_id}",
            code="UNKNOWN_DEVICE",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"device_id": device_id},
        )


class InvalidModeError(CyclopsLinkError):
    """Revalidate was requested for a device that is not the active one."""

    def __init__(self, message: str = "Revalidate only applies to the active device"):
        super().__init__(
            message=message,
            code="INVALID_MODE",
            status_code=status.HTTP_409_CONFLICT,
        )

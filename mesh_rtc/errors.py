"""Exceptions raised by mesh-rtc."""


class MeshRTCError(Exception):
    """Base class for mesh-rtc errors."""

    pass


class ProtocolError(MeshRTCError):
    """Raised when a signaling message is malformed or arrives out of role."""

    pass


class MediaAcquisitionError(MeshRTCError):
    """Raised when local media cannot be acquired.

    Attributes:
        reason: Short machine-readable cause (e.g. "permission-denied", "no-device").
    """

    def __init__(self, message: str, reason: str = "unavailable"):
        super().__init__(message)
        self.reason = reason


class DeviceError(MeshRTCError):
    """Raised when a replacement track cannot be produced for a device.

    Attributes:
        kind: Media kind that was requested ("audio" or "video").
        device_id: Device the replacement was requested from.
    """

    def __init__(self, message: str, kind: str, device_id: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.device_id = device_id

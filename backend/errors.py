"""Error types shared by the presence and transfer layers."""


class PeerDropError(Exception):
    pass


class ConnectivityError(PeerDropError):
    """Raised when a socket cannot be opened or a connect attempt times out."""

    def __init__(self, endpoint: str, reason: str):
        super().__init__(f"{endpoint}: {reason}")
        self.endpoint = endpoint
        self.reason = reason


class ValidationError(PeerDropError):
    """Raised for malformed announcements and handshake payloads."""


class PeerChannelError(PeerDropError):
    """Raised when a peer channel errors or closes mid-transfer."""


class StorageError(PeerDropError):
    """Raised when a file cannot be read or written."""


class PeerBusyError(PeerDropError):
    """Raised when a transfer is requested for a peer that already has one in flight."""

class DHCPError(Exception):
    """Base class for DHCP server errors."""


class MalformedPacketError(DHCPError):
    """Datagram could not be decoded as a DHCP message."""


class OptionDecodeError(MalformedPacketError):
    """Option payload does not match what its code requires."""

    def __init__(self, code: int, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"Option {code}: {reason}")


class PersistenceError(DHCPError):
    """Lease storage kept failing after all retries."""


class FatalNetworkError(DHCPError):
    """Socket failed outside of a normal shutdown."""

from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum, unique
from ipaddress import IPv4Address
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from leasekeeper.services.dhcp.message import DHCPMessage
    from leasekeeper.services.dhcp.options import DHCPOption

MAGIC_COOKIE = bytes((0x63, 0x82, 0x53, 0x63))
ANY_ADDRESS = IPv4Address("0.0.0.0")
BROADCAST_ADDRESS = IPv4Address("255.255.255.255")
BROADCAST_FLAG = 0x8000
INFINITE_DURATION = 0xFFFFFFFF
MIN_PACKET_SIZE_FLOOR = 312
DEFAULT_MIN_PACKET_SIZE = 576
EXPIRED_GRACE_SECONDS = 86400
EXPIRED_REUSE_AFTER_SECONDS = 60


@unique
class DHCPOpcode(IntEnum):
    """BOOTP operation"""

    BOOTREQUEST = 1
    BOOTREPLY = 2


@unique
class DHCPMessageType(IntEnum):
    """DHCP message type, option 53"""

    DISCOVER = 1
    OFFER = 2
    REQUEST = 3
    DECLINE = 4
    ACK = 5
    NAK = 6
    RELEASE = 7
    INFORM = 8

    def __str__(self):
        return self.name


@unique
class DHCPOptionCode(IntEnum):
    """Named DHCP option codes (RFC 2132 and friends)."""

    ERROR = -1
    PAD = 0
    SUBNET_MASK = 1
    TIME_OFFSET = 2
    ROUTER = 3
    TIME_SERVER = 4
    NAME_SERVER = 5
    DOMAIN_NAME_SERVER = 6
    LOG_SERVER = 7
    HOST_NAME = 12
    BOOT_FILE_SIZE = 13
    DOMAIN_NAME = 15
    INTERFACE_MTU = 26
    BROADCAST_ADDRESS = 28
    STATIC_ROUTE = 33
    NTP_SERVERS = 42
    VENDOR_SPECIFIC = 43
    NETBIOS_NAME_SERVER = 44
    REQUESTED_IP = 50
    LEASE_TIME = 51
    OPTION_OVERLOAD = 52
    MESSAGE_TYPE = 53
    SERVER_IDENTIFIER = 54
    PARAMETER_REQUEST_LIST = 55
    MESSAGE = 56
    MAX_MESSAGE_SIZE = 57
    RENEWAL_TIME = 58
    REBINDING_TIME = 59
    VENDOR_CLASS_IDENTIFIER = 60
    CLIENT_IDENTIFIER = 61
    TFTP_SERVER_NAME = 66
    BOOTFILE_NAME = 67
    USER_CLASS = 77
    CLIENT_FQDN = 81
    RELAY_AGENT_INFORMATION = 82
    CLIENT_SYSTEM = 93
    CLIENT_NDI = 94
    UUID_GUID = 97
    AUTO_CONFIGURE = 116
    CLASSLESS_STATIC_ROUTE = 121
    MS_CLASSLESS_STATIC_ROUTE = 249
    END = 255

    def __str__(self):
        return self.name


@unique
class ClientState(str, Enum):
    """Lease record state"""

    RELEASED = "released"
    OFFERED = "offered"
    BOUND = "bound"
    EXPIRED = "expired"

    def __str__(self):
        return self.value


def format_mac(hardware_address: bytes) -> str:
    """aa:bb:cc:dd:ee:ff"""
    return ":".join(f"{_byte:02x}" for _byte in hardware_address)


@dataclass(frozen=True)
class ExtraOption:
    """Configured option appended to replies.

    Attributes:
        option: Option sent as is.
        force: Send even when the client did not ask for it.
    """

    option: "DHCPOption"
    force: bool = False


@dataclass
class DHCPConfig:
    """
    DHCP pool and server configuration
    """

    server_ip: IPv4Address
    subnet_mask: IPv4Address
    ip_pool_start: IPv4Address
    ip_pool_end: IPv4Address
    offer_expiration: float = 30
    lease_time: float = 86400
    renewal_time_ratio: float = 0.5
    rebinding_time_ratio: float = 0.875
    min_packet_size: int = DEFAULT_MIN_PACKET_SIZE
    server_port: int = 67
    client_port: int = 68
    extra_options: list[ExtraOption] = field(default_factory=list)

    def __post_init__(self):
        self.server_ip = IPv4Address(self.server_ip)
        self.subnet_mask = IPv4Address(self.subnet_mask)
        self.ip_pool_start = IPv4Address(self.ip_pool_start)
        self.ip_pool_end = IPv4Address(self.ip_pool_end)
        self.min_packet_size = max(int(self.min_packet_size), MIN_PACKET_SIZE_FLOOR)
        if self.ip_pool_start > self.ip_pool_end:
            raise ValueError("Pool start must not be above pool end.")

    def is_in_subnet(self, ip: IPv4Address) -> bool:
        """Same network as the server address"""
        _mask = int(self.subnet_mask)
        return ip != ANY_ADDRESS and (int(ip) & _mask) == (int(self.server_ip) & _mask)

    def is_host_address(self, ip: IPv4Address) -> bool:
        """In the subnet and neither its network nor its broadcast address."""
        _host_bits = ~int(self.subnet_mask) & 0xFFFFFFFF
        return self.is_in_subnet(ip) and 0 < (int(ip) & _host_bits) < _host_bits

    def is_in_pool(self, ip: IPv4Address) -> bool:
        return self.ip_pool_start <= ip <= self.ip_pool_end

    def pool(self):
        """Pool addresses, ascending."""
        for _host in range(int(self.ip_pool_start), int(self.ip_pool_end) + 1):
            yield IPv4Address(_host)


@dataclass(frozen=True)
class LeaseRecord:
    """
    Per-client lease entry, owned by the LeaseTable.

    Records are immutable; changes are made with `dataclasses.replace`
    and written back through `LeaseTable.replace`.

    Attributes:
        identity (bytes): Client identifier option data, else the hardware address.
        hardware_address (bytes): chaddr as sent by the client.
        hostname (str): Host name option, if any.
        ip_address (IPv4Address): Allocated address, 0.0.0.0 when none.
        state (ClientState): Current state.
        state_started (float): Epoch seconds the state was entered.
        state_duration (float): Seconds the state lasts, INFINITE_DURATION for never.
    """

    identity: bytes
    hardware_address: bytes = b""
    hostname: str = ""
    ip_address: IPv4Address = ANY_ADDRESS
    state: ClientState = ClientState.RELEASED
    state_started: float = 0.0
    state_duration: float = 0.0

    def __post_init__(self):
        if self.state_duration < 0 or self.state_duration >= INFINITE_DURATION:
            object.__setattr__(self, "state_duration", INFINITE_DURATION)

    @property
    def is_infinite(self) -> bool:
        return self.state_duration >= INFINITE_DURATION

    @property
    def state_end(self) -> float:
        """Epoch seconds the state ends, inf for never."""
        if self.is_infinite:
            return float("inf")
        return self.state_started + self.state_duration

    @property
    def mac(self) -> str:
        return format_mac(self.hardware_address)

    def transition(self, state: ClientState, now: float, duration: float, **changes: Any) -> "LeaseRecord":
        """Copy of the record in a new state stamped at now."""
        return replace(self, state=state, state_started=now, state_duration=duration, **changes)

    @classmethod
    def from_message(cls, message: "DHCPMessage") -> "LeaseRecord":
        """Fresh record for the client that sent message."""
        return cls(
            identity=message.client_identity,
            hardware_address=message.chaddr,
            hostname=message.hostname or "",
        )


@dataclass(frozen=True)
class OutboundReply:
    """Encoded-to-be reply and where it goes"""

    message: "DHCPMessage"
    address: tuple[str, int]

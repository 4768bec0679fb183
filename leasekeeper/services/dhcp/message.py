from dataclasses import dataclass, field
from ipaddress import IPv4Address
from typing import Optional

from scapy.layers.dhcp import BOOTP

from leasekeeper.services.dhcp.errors import MalformedPacketError
from leasekeeper.services.dhcp.models import (
    ANY_ADDRESS,
    BROADCAST_FLAG,
    DEFAULT_MIN_PACKET_SIZE,
    MAGIC_COOKIE,
    MIN_PACKET_SIZE_FLOOR,
    DHCPMessageType,
    DHCPOpcode,
    DHCPOptionCode,
    format_mac,
)
from leasekeeper.services.dhcp.options import DHCPOption, decode_option, encode_option

# BOOTP fixed header: op .. file
HEADER_SIZE = 236
OPTIONS_OFFSET = HEADER_SIZE + len(MAGIC_COOKIE)
CHADDR_SIZE = 16
SNAME_OFFSET = 44
SNAME_SIZE = 64
FILE_SIZE = 128

OVERLOAD_FILE = 1
OVERLOAD_SNAME = 2
OVERLOAD_BOTH = 3


def _read_zstring(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def _write_zstring(value: str, size: int) -> bytes:
    """Truncated to size - 1 bytes, always NUL terminated."""
    return value.encode("utf-8")[: size - 1].ljust(size, b"\x00")


def _find_overload(area: bytes) -> int:
    """Overload value in area, 0 when absent.

    Walks TLVs skipping Pad, stops at End or a length running past the area.
    """
    _index = 0
    while _index < len(area):
        _code = area[_index]
        if _code == DHCPOptionCode.PAD:
            _index += 1
            continue
        if _code == DHCPOptionCode.END or _index + 1 >= len(area):
            break
        _length = area[_index + 1]
        if _index + 2 + _length > len(area):
            break
        if _code == DHCPOptionCode.OPTION_OVERLOAD:
            if _length != 1:
                raise MalformedPacketError(f"Invalid option overload length {_length}.")
            return area[_index + 2]
        _index += 2 + _length
    return 0


def _read_options(area: bytes, base_offset: int) -> list[DHCPOption]:
    """Decode TLVs until End or the end of area, dropping Pad."""
    _options = []
    _index = 0
    while _index < len(area):
        _code = area[_index]
        if _code == DHCPOptionCode.PAD:
            _index += 1
            continue
        if _code == DHCPOptionCode.END:
            break
        if _index + 1 >= len(area):
            raise MalformedPacketError(f"Option {_code} missing length at offset {base_offset + _index}.")
        _length = area[_index + 1]
        _start = _index + 2
        if _start + _length > len(area):
            raise MalformedPacketError(
                f"Option {_code} truncated at offset {base_offset + _index}: "
                f"needs {_length} bytes, {len(area) - _start} left."
            )
        _options.append(decode_option(_code, area[_start:_start + _length]))
        _index = _start + _length
    return _options


@dataclass
class DHCPMessage:
    """
    DHCP/BOOTP message

    Attributes:
        op (DHCPOpcode): BOOTREQUEST from clients, BOOTREPLY from servers.
        htype (int): Hardware type, 1 for ethernet.
        hops (int): Relay hop count.
        xid (int): Transaction id chosen by the client.
        secs (int): Seconds since the client started.
        broadcast (bool): Client asks for broadcast replies.
        ciaddr (IPv4Address): Client IP, set when the client is BOUND, RENEWING or REBINDING.
        yiaddr (IPv4Address): 'Your' IP, the address handed out.
        siaddr (IPv4Address): Next server IP.
        giaddr (IPv4Address): Relay agent IP.
        chaddr (bytes): Client hardware address, up to 16 bytes.
        sname (str): Server host name.
        file (str): Boot file name.
        options (list[DHCPOption]): Options in wire order, Pad and End excluded.
    """

    op: DHCPOpcode = DHCPOpcode.BOOTREQUEST
    htype: int = 1
    hops: int = 0
    xid: int = 0
    secs: int = 0
    broadcast: bool = False
    ciaddr: IPv4Address = ANY_ADDRESS
    yiaddr: IPv4Address = ANY_ADDRESS
    siaddr: IPv4Address = ANY_ADDRESS
    giaddr: IPv4Address = ANY_ADDRESS
    chaddr: bytes = b""
    sname: str = ""
    file: str = ""
    options: list[DHCPOption] = field(default_factory=list)

    @classmethod
    def decode(cls, data: bytes) -> "DHCPMessage":
        """Parse a datagram.

        Raises:
            MalformedPacketError: truncated header, bad magic cookie, bad hlen or bad option.
        """
        if len(data) < HEADER_SIZE:
            raise MalformedPacketError(f"Packet too short: {len(data)} bytes.")

        for _position, _expected in enumerate(MAGIC_COOKIE):
            _offset = HEADER_SIZE + _position
            if _offset >= len(data):
                raise MalformedPacketError(f"Magic cookie truncated at offset {_offset}.")
            if data[_offset] != _expected:
                raise MalformedPacketError(
                    f"Invalid magic cookie byte 0x{data[_offset]:02X} at offset {_offset}, "
                    f"expected 0x{_expected:02X}."
                )

        _header = BOOTP(bytes(data[:HEADER_SIZE]))
        _hlen = _header.hlen
        _sname = bytes(_header.sname)
        _file = bytes(_header.file)

        try:
            _op = DHCPOpcode(_header.op)
        except ValueError as err:
            raise MalformedPacketError(f"Unknown op {_header.op}.") from err
        if _hlen > CHADDR_SIZE:
            raise MalformedPacketError(f"Invalid hlen {_hlen}.")

        _area = data[OPTIONS_OFFSET:]
        _overload = _find_overload(_area)
        _options = _read_options(_area, OPTIONS_OFFSET)

        if _overload in (OVERLOAD_SNAME, OVERLOAD_BOTH):
            _options.extend(_read_options(_sname, SNAME_OFFSET))
            _server_name = ""
        else:
            _server_name = _read_zstring(_sname)
        if _overload in (OVERLOAD_FILE, OVERLOAD_BOTH):
            _options.extend(_read_options(_file, SNAME_OFFSET + SNAME_SIZE))
            _boot_file = ""
        else:
            _boot_file = _read_zstring(_file)

        return cls(
            op=_op,
            htype=_header.htype,
            hops=_header.hops,
            xid=_header.xid,
            secs=_header.secs,
            broadcast=bool(int(_header.flags) & BROADCAST_FLAG),
            ciaddr=IPv4Address(_header.ciaddr),
            yiaddr=IPv4Address(_header.yiaddr),
            siaddr=IPv4Address(_header.siaddr),
            giaddr=IPv4Address(_header.giaddr),
            chaddr=bytes(_header.chaddr)[:_hlen],
            sname=_server_name,
            file=_boot_file,
            options=_options,
        )

    def encode(self, min_size: int = DEFAULT_MIN_PACKET_SIZE) -> bytes:
        """Wire form, zero padded to at least min_size (never below 312)."""
        _chaddr = bytes(self.chaddr[:CHADDR_SIZE])
        _header = BOOTP(
            op=int(self.op),
            htype=self.htype,
            hlen=len(_chaddr),
            hops=self.hops,
            xid=self.xid,
            secs=self.secs,
            flags=BROADCAST_FLAG if self.broadcast else 0,
            ciaddr=str(self.ciaddr),
            yiaddr=str(self.yiaddr),
            siaddr=str(self.siaddr),
            giaddr=str(self.giaddr),
            chaddr=_chaddr.ljust(CHADDR_SIZE, b"\x00"),
            sname=_write_zstring(self.sname, SNAME_SIZE),
            file=_write_zstring(self.file, FILE_SIZE),
        )
        _packet = bytearray(bytes(_header))
        _packet += MAGIC_COOKIE
        for _option in self.options:
            _packet += encode_option(_option)
        _packet.append(DHCPOptionCode.END)

        _min_size = max(min_size, MIN_PACKET_SIZE_FLOOR)
        if len(_packet) < _min_size:
            _packet += bytes(_min_size - len(_packet))
        return bytes(_packet)

    @classmethod
    def reply_to(cls, request: "DHCPMessage") -> "DHCPMessage":
        """Reply skeleton: client fields copied, addresses left at 0.0.0.0."""
        return cls(
            op=DHCPOpcode.BOOTREPLY,
            htype=request.htype,
            xid=request.xid,
            broadcast=request.broadcast,
            giaddr=request.giaddr,
            chaddr=request.chaddr,
        )

    def get_option(self, code: int) -> Optional[DHCPOption]:
        for _option in self.options:
            if _option.code == code:
                return _option
        return None

    def add_option(self, option: DHCPOption) -> "DHCPMessage":
        self.options.append(option)
        return self

    def has_option(self, code: int) -> bool:
        return self.get_option(code) is not None

    @property
    def message_type(self) -> Optional[DHCPMessageType]:
        _option = self.get_option(DHCPOptionCode.MESSAGE_TYPE)
        if _option is None or not isinstance(_option.value, DHCPMessageType):
            return None
        return _option.value

    def set_message_type(self, message_type: DHCPMessageType) -> "DHCPMessage":
        """Replace option 53, or append it when missing."""
        _option = DHCPOption(DHCPOptionCode.MESSAGE_TYPE, DHCPMessageType(message_type))
        for _index, _existing in enumerate(self.options):
            if _existing.code == DHCPOptionCode.MESSAGE_TYPE:
                self.options[_index] = _option
                return self
        self.options.append(_option)
        return self

    def is_requested_parameter(self, code: int) -> bool:
        _option = self.get_option(DHCPOptionCode.PARAMETER_REQUEST_LIST)
        return _option is not None and code in _option.value

    @property
    def requested_ip(self) -> Optional[IPv4Address]:
        _option = self.get_option(DHCPOptionCode.REQUESTED_IP)
        return _option.value if _option else None

    @property
    def server_identifier(self) -> Optional[IPv4Address]:
        _option = self.get_option(DHCPOptionCode.SERVER_IDENTIFIER)
        return _option.value if _option else None

    @property
    def hostname(self) -> Optional[str]:
        _option = self.get_option(DHCPOptionCode.HOST_NAME)
        return _option.value if _option else None

    @property
    def client_identity(self) -> bytes:
        """Client identifier data if sent, else the hardware address."""
        _option = self.get_option(DHCPOptionCode.CLIENT_IDENTIFIER)
        if _option is not None:
            return bytes(_option.value.data)
        return bytes(self.chaddr)

    @property
    def mac(self) -> str:
        return format_mac(self.chaddr)

    def __str__(self):
        return (
            f"{self.message_type or self.op.name} XID={self.xid:#010x} MAC={self.mac} "
            f"ciaddr={self.ciaddr} yiaddr={self.yiaddr} giaddr={self.giaddr}"
        )

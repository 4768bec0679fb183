"""DHCP option codec registry.

Every option is a `DHCPOption(code, value)`. How the value is read from and
written to the wire is decided by `OPTION_CODECS`, a table keyed by option
code. Codes missing from the table are kept as raw bytes.
"""

from dataclasses import dataclass
from ipaddress import IPv4Address
from struct import error as StructError
from struct import pack, unpack
from typing import Any, Callable, NamedTuple

from leasekeeper.services.dhcp.errors import OptionDecodeError
from leasekeeper.services.dhcp.models import INFINITE_DURATION, DHCPMessageType, DHCPOptionCode

FIXED_LENGTH_CODES = frozenset((DHCPOptionCode.PAD, DHCPOptionCode.END))
MAX_OPTION_PAYLOAD = 255


class ClientIdentifier(NamedTuple):
    """Option 61 payload"""

    hardware_type: int
    data: bytes


@dataclass(frozen=True)
class DHCPOption:
    """Single option, value type depends on the code."""

    code: int
    value: Any = None

    @property
    def name(self) -> str:
        return option_name(self.code)

    def encode(self) -> bytes:
        return encode_option(self)


@dataclass(frozen=True)
class OptionCodec:
    """Wire strategy for one option code.

    Attributes:
        decode: payload bytes -> value, raises ValueError on bad payload.
        encode: value -> payload bytes.
        coerce: config value (str, int, list) -> value.
    """

    decode: Callable[[bytes], Any]
    encode: Callable[[Any], bytes]
    coerce: Callable[[Any], Any]


def _expect_length(raw: bytes, size: int):
    if len(raw) != size:
        raise ValueError(f"expected {size} bytes, got {len(raw)}")


def _decode_ip(raw: bytes) -> IPv4Address:
    _expect_length(raw, 4)
    return IPv4Address(raw)


def _encode_ip(value: IPv4Address) -> bytes:
    return IPv4Address(value).packed


def _coerce_ip(value: Any) -> IPv4Address:
    return IPv4Address(value if isinstance(value, int) else str(value))


def _decode_ip_list(raw: bytes) -> list[IPv4Address]:
    if not raw or len(raw) % 4:
        raise ValueError(f"length {len(raw)} is not a positive multiple of 4")
    return [IPv4Address(raw[_i:_i + 4]) for _i in range(0, len(raw), 4)]


def _encode_ip_list(value: list[IPv4Address]) -> bytes:
    return b"".join(IPv4Address(_ip).packed for _ip in value)


def _coerce_ip_list(value: Any) -> list[IPv4Address]:
    if isinstance(value, (list, tuple)):
        return [_coerce_ip(_ip) for _ip in value]
    return [_coerce_ip(value)]


def _fixed_int(size: int, fmt: str):
    def _decode(raw: bytes) -> int:
        _expect_length(raw, size)
        return unpack(fmt, raw)[0]

    def _encode(value: int) -> bytes:
        return pack(fmt, int(value))

    return _decode, _encode


_decode_u8, _encode_u8 = _fixed_int(1, "!B")
_decode_u16, _encode_u16 = _fixed_int(2, "!H")
_decode_u32, _encode_u32 = _fixed_int(4, "!I")
_decode_i32, _encode_i32 = _fixed_int(4, "!i")


def _encode_seconds(value: int) -> bytes:
    """Durations beyond the wire range become infinite."""
    return pack("!I", min(max(int(value), 0), INFINITE_DURATION))


def _coerce_seconds(value: Any) -> int:
    return min(max(int(value), 0), INFINITE_DURATION)


def _decode_message_type(raw: bytes) -> DHCPMessageType | int:
    _value = _decode_u8(raw)
    try:
        return DHCPMessageType(_value)
    except ValueError:
        return _value


def _coerce_message_type(value: Any) -> DHCPMessageType:
    if isinstance(value, str):
        return DHCPMessageType[value.strip().upper()]
    return DHCPMessageType(int(value))


def _decode_overload(raw: bytes) -> int:
    _value = _decode_u8(raw)
    if _value not in (1, 2, 3):
        raise ValueError(f"overload value {_value} not in 1..3")
    return _value


def _decode_string(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def _encode_string(value: str) -> bytes:
    return str(value).encode("utf-8")


def _decode_code_list(raw: bytes) -> list[int]:
    return list(raw)


def _encode_code_list(value: list[int]) -> bytes:
    return bytes(int(_code) for _code in value)


def _coerce_code_list(value: Any) -> list[int]:
    return [int(_code) for _code in value]


def _decode_client_identifier(raw: bytes) -> ClientIdentifier:
    if len(raw) < 2:
        raise ValueError(f"expected at least 2 bytes, got {len(raw)}")
    return ClientIdentifier(hardware_type=raw[0], data=bytes(raw[1:]))


def _encode_client_identifier(value: ClientIdentifier) -> bytes:
    return bytes((value.hardware_type,)) + bytes(value.data)


def _coerce_client_identifier(value: Any) -> ClientIdentifier:
    if isinstance(value, ClientIdentifier):
        return value
    _raw = _coerce_blob(value)
    return _decode_client_identifier(_raw)


def _decode_blob(raw: bytes) -> bytes:
    return bytes(raw)


def _encode_blob(value: bytes) -> bytes:
    return bytes(value)


def _coerce_blob(value: Any) -> bytes:
    """Hex strings ("01:aa:bb" or "01aabb") or raw bytes."""
    if isinstance(value, str):
        return bytes.fromhex(value.replace(":", "").replace(" ", ""))
    return bytes(value)


_IP = OptionCodec(_decode_ip, _encode_ip, _coerce_ip)
_IP_LIST = OptionCodec(_decode_ip_list, _encode_ip_list, _coerce_ip_list)
_SECONDS = OptionCodec(_decode_u32, _encode_seconds, _coerce_seconds)
_U16 = OptionCodec(_decode_u16, _encode_u16, int)
_STRING = OptionCodec(_decode_string, _encode_string, str)
_BLOB = OptionCodec(_decode_blob, _encode_blob, _coerce_blob)

OPTION_CODECS: dict[int, OptionCodec] = {
    DHCPOptionCode.SUBNET_MASK: _IP,
    DHCPOptionCode.TIME_OFFSET: OptionCodec(_decode_i32, _encode_i32, int),
    DHCPOptionCode.ROUTER: _IP_LIST,
    DHCPOptionCode.TIME_SERVER: _IP_LIST,
    DHCPOptionCode.NAME_SERVER: _IP_LIST,
    DHCPOptionCode.DOMAIN_NAME_SERVER: _IP_LIST,
    DHCPOptionCode.LOG_SERVER: _IP_LIST,
    DHCPOptionCode.HOST_NAME: _STRING,
    DHCPOptionCode.DOMAIN_NAME: _STRING,
    DHCPOptionCode.INTERFACE_MTU: _U16,
    DHCPOptionCode.BROADCAST_ADDRESS: _IP,
    DHCPOptionCode.NTP_SERVERS: _IP_LIST,
    DHCPOptionCode.VENDOR_SPECIFIC: _BLOB,
    DHCPOptionCode.NETBIOS_NAME_SERVER: _IP_LIST,
    DHCPOptionCode.REQUESTED_IP: _IP,
    DHCPOptionCode.LEASE_TIME: _SECONDS,
    DHCPOptionCode.OPTION_OVERLOAD: OptionCodec(_decode_overload, _encode_u8, int),
    DHCPOptionCode.MESSAGE_TYPE: OptionCodec(_decode_message_type, _encode_u8, _coerce_message_type),
    DHCPOptionCode.SERVER_IDENTIFIER: _IP,
    DHCPOptionCode.PARAMETER_REQUEST_LIST: OptionCodec(_decode_code_list, _encode_code_list, _coerce_code_list),
    DHCPOptionCode.MESSAGE: _STRING,
    DHCPOptionCode.MAX_MESSAGE_SIZE: _U16,
    DHCPOptionCode.RENEWAL_TIME: _SECONDS,
    DHCPOptionCode.REBINDING_TIME: _SECONDS,
    DHCPOptionCode.VENDOR_CLASS_IDENTIFIER: _BLOB,
    DHCPOptionCode.CLIENT_IDENTIFIER: OptionCodec(
        _decode_client_identifier, _encode_client_identifier, _coerce_client_identifier
    ),
    DHCPOptionCode.TFTP_SERVER_NAME: _STRING,
    DHCPOptionCode.BOOTFILE_NAME: _STRING,
    DHCPOptionCode.CLIENT_FQDN: _BLOB,
}


def option_name(code: int) -> str:
    try:
        return DHCPOptionCode(code).name
    except ValueError:
        return f"OPTION_{code}"


def get_codec(code: int) -> OptionCodec:
    """Codec for code, raw bytes for anything unknown."""
    return OPTION_CODECS.get(code, _BLOB)


def decode_option(code: int, raw: bytes) -> DHCPOption:
    """Decode one option payload.

    Raises:
        OptionDecodeError: payload does not fit the code (e.g. a 3 byte server identifier).
    """
    if code in FIXED_LENGTH_CODES:
        return DHCPOption(code=code)
    try:
        return DHCPOption(code=code, value=get_codec(code).decode(bytes(raw)))
    except (ValueError, StructError) as err:
        raise OptionDecodeError(code, str(err)) from err


def encode_option(option: DHCPOption) -> bytes:
    """Wire form `[code][len][payload]`, a single byte for Pad and End."""
    if option.code in FIXED_LENGTH_CODES:
        return bytes((option.code,))
    _payload = get_codec(option.code).encode(option.value)
    if len(_payload) > MAX_OPTION_PAYLOAD:
        raise ValueError(f"{option_name(option.code)} payload too long: {len(_payload)} bytes.")
    return bytes((option.code, len(_payload))) + _payload


def build_option(code: int, value: Any) -> DHCPOption:
    """Option from a config style value, e.g. build_option(6, ["1.1.1.1", "8.8.8.8"])."""
    if code in FIXED_LENGTH_CODES:
        raise ValueError("Pad and End carry no value.")
    try:
        return DHCPOption(code=code, value=get_codec(code).coerce(value))
    except (KeyError, TypeError) as err:
        raise ValueError(f"Invalid value for {option_name(code)}: {value!r}") from err

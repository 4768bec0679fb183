from ipaddress import IPv4Address

from leasekeeper.services.dhcp.message import DHCPMessage
from leasekeeper.services.dhcp.models import (
    ANY_ADDRESS,
    INFINITE_DURATION,
    DHCPConfig,
    DHCPMessageType,
    DHCPOptionCode,
)
from leasekeeper.services.dhcp.options import DHCPOption


class DHCPResponseFactory:
    """
    Factory class to generate DHCP reply messages.

    Usage:
        1. Initialize the factory once with the server configuration using `init()`.
        2. Call `build()` with the DHCP message type, the request and the granted IP.

    Notes:
        - Must call `init()` before `build()`, otherwise RuntimeError is raised.
        - NAK carries only the message type and server identifier.
        - OFFER and ACK carry the lease times (not for INFORM), the server identifier,
          the subnet mask when requested, then each configured extra option that is
          forced or requested and not already present.
    """

    _config: DHCPConfig | None = None

    @classmethod
    def init(cls, dhcp_config: DHCPConfig):
        cls._config = dhcp_config

    @classmethod
    def build(
        cls,
        dhcp_type: DHCPMessageType,
        request: DHCPMessage,
        your_ip: IPv4Address = ANY_ADDRESS,
        inform: bool = False,
    ) -> DHCPMessage:
        if cls._config is None:
            raise RuntimeError("Init first")

        _reply = DHCPMessage.reply_to(request).set_message_type(dhcp_type)
        _reply.add_option(DHCPOption(DHCPOptionCode.SERVER_IDENTIFIER, cls._config.server_ip))
        if dhcp_type == DHCPMessageType.NAK:
            return _reply

        if dhcp_type == DHCPMessageType.ACK:
            _reply.ciaddr = request.ciaddr
        if not inform:
            _reply.yiaddr = your_ip
            cls._add_lease_times(_reply)
        if request.is_requested_parameter(DHCPOptionCode.SUBNET_MASK):
            _reply.add_option(DHCPOption(DHCPOptionCode.SUBNET_MASK, cls._config.subnet_mask))

        for _extra in cls._config.extra_options:
            _code = _extra.option.code
            if _reply.has_option(_code):
                continue
            if _extra.force or request.is_requested_parameter(_code):
                _reply.add_option(_extra.option)

        return _reply

    @classmethod
    def _add_lease_times(cls, reply: DHCPMessage):
        _lease_time = min(int(cls._config.lease_time), INFINITE_DURATION)
        reply.add_option(DHCPOption(DHCPOptionCode.LEASE_TIME, _lease_time))
        if _lease_time >= INFINITE_DURATION:
            return
        reply.add_option(DHCPOption(DHCPOptionCode.RENEWAL_TIME, int(_lease_time * cls._config.renewal_time_ratio)))
        reply.add_option(
            DHCPOption(DHCPOptionCode.REBINDING_TIME, int(_lease_time * cls._config.rebinding_time_ratio))
        )

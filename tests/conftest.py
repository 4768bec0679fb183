import logging
from ipaddress import IPv4Address

import pytest

from leasekeeper.services.dhcp.allocation import IPAllocator
from leasekeeper.services.dhcp.lease_table import LeaseTable
from leasekeeper.services.dhcp.message import DHCPMessage
from leasekeeper.services.dhcp.message_handler import DHCPMessageHandler
from leasekeeper.services.dhcp.metrics import DHCPStats
from leasekeeper.services.dhcp.models import (
    DHCPConfig,
    DHCPMessageType,
    DHCPOpcode,
    DHCPOptionCode,
    ExtraOption,
)
from leasekeeper.services.dhcp.options import DHCPOption, build_option

MAC_A = bytes.fromhex("aabbccddee01")
MAC_B = bytes.fromhex("aabbccddee02")
SERVER_IP = IPv4Address("10.0.0.1")


class FakeClock:
    """Callable clock for time based transitions."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def logger():
    return logging.getLogger("DHCP-TEST")


@pytest.fixture
def dhcp_config():
    return DHCPConfig(
        server_ip=SERVER_IP,
        subnet_mask=IPv4Address("255.255.255.0"),
        ip_pool_start=IPv4Address("10.0.0.10"),
        ip_pool_end=IPv4Address("10.0.0.20"),
        offer_expiration=30,
        lease_time=86400,
        extra_options=[
            ExtraOption(option=build_option(DHCPOptionCode.ROUTER, "10.0.0.1"), force=True),
            ExtraOption(option=build_option(DHCPOptionCode.DOMAIN_NAME_SERVER, ["1.1.1.1"]), force=False),
        ],
    )


@pytest.fixture
def mutations():
    """Counts LeaseTable mutation callbacks."""
    return []


@pytest.fixture
def lease_table(mutations):
    return LeaseTable(on_mutation=lambda: mutations.append(1))


@pytest.fixture
def allocator(lease_table, dhcp_config, logger, clock):
    return IPAllocator(lease_table, dhcp_config, logger, clock)


@pytest.fixture
def handler(lease_table, allocator, dhcp_config, logger, clock):
    DHCPStats.clear()
    DHCPMessageHandler.init(
        logger=logger,
        lease_table=lease_table,
        allocator=allocator,
        dhcp_config=dhcp_config,
        clock=clock,
    )
    return DHCPMessageHandler


@pytest.fixture
def make_message():
    """Factory for client requests."""

    def _make(
        message_type: DHCPMessageType,
        mac: bytes = MAC_A,
        xid: int = 0x1234ABCD,
        requested_ip: str | None = None,
        server_id: str | None = None,
        ciaddr: str = "0.0.0.0",
        giaddr: str = "0.0.0.0",
        params: tuple[int, ...] = (),
        hostname: str | None = None,
    ) -> DHCPMessage:
        _message = DHCPMessage(
            op=DHCPOpcode.BOOTREQUEST,
            xid=xid,
            ciaddr=IPv4Address(ciaddr),
            giaddr=IPv4Address(giaddr),
            chaddr=mac,
        ).set_message_type(message_type)
        if requested_ip is not None:
            _message.add_option(DHCPOption(DHCPOptionCode.REQUESTED_IP, IPv4Address(requested_ip)))
        if server_id is not None:
            _message.add_option(DHCPOption(DHCPOptionCode.SERVER_IDENTIFIER, IPv4Address(server_id)))
        if hostname is not None:
            _message.add_option(DHCPOption(DHCPOptionCode.HOST_NAME, hostname))
        if params:
            _message.add_option(DHCPOption(DHCPOptionCode.PARAMETER_REQUEST_LIST, list(params)))
        return _message

    return _make

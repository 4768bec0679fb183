from ipaddress import IPv4Address

from leasekeeper.services.dhcp.message import DHCPMessage
from leasekeeper.services.dhcp.metrics import DHCPStats
from leasekeeper.services.dhcp.models import (
    ANY_ADDRESS,
    ClientState,
    DHCPMessageType,
    DHCPOpcode,
    DHCPOptionCode,
    LeaseRecord,
)
from leasekeeper.services.dhcp.options import ClientIdentifier, DHCPOption

MAC_A = bytes.fromhex("aabbccddee01")
MAC_B = bytes.fromhex("aabbccddee02")
SERVER = "10.0.0.1"
BROADCAST = ("255.255.255.255", 68)


def _options(message: DHCPMessage) -> dict:
    return {_option.code: _option.value for _option in message.options}


def _discover_and_request(handler, make_message, mac=MAC_A):
    _offer = handler.handle_message(make_message(DHCPMessageType.DISCOVER, mac=mac))[0].message
    return handler.handle_message(
        make_message(DHCPMessageType.REQUEST, mac=mac, requested_ip=str(_offer.yiaddr), server_id=SERVER)
    )


def test_discover_then_request(handler, lease_table, make_message, dhcp_config):
    _replies = handler.handle_message(make_message(DHCPMessageType.DISCOVER, xid=0x11))

    assert len(_replies) == 1, "Exactly one OFFER expected."
    _offer = _replies[0]
    assert _offer.message.message_type is DHCPMessageType.OFFER
    assert _offer.message.xid == 0x11, "OFFER must carry the DISCOVER xid."
    assert _offer.message.yiaddr == IPv4Address("10.0.0.10")
    assert _offer.address == BROADCAST
    assert lease_table.get(MAC_A).state is ClientState.OFFERED
    assert len(lease_table) == 1

    _replies = handler.handle_message(
        make_message(DHCPMessageType.REQUEST, xid=0x12, requested_ip="10.0.0.10", server_id=SERVER)
    )

    assert len(_replies) == 1
    _ack = _replies[0].message
    assert _ack.message_type is DHCPMessageType.ACK
    assert _ack.yiaddr == IPv4Address("10.0.0.10")
    _record = lease_table.get(MAC_A)
    assert _record.state is ClientState.BOUND
    assert _record.state_duration == dhcp_config.lease_time


def test_offer_options(handler, make_message):
    _offer = handler.handle_message(
        make_message(
            DHCPMessageType.DISCOVER,
            params=(DHCPOptionCode.SUBNET_MASK, DHCPOptionCode.DOMAIN_NAME_SERVER),
        )
    )[0].message
    _values = _options(_offer)

    assert _offer.options[0].code == DHCPOptionCode.MESSAGE_TYPE
    assert _values[DHCPOptionCode.SERVER_IDENTIFIER] == IPv4Address(SERVER)
    assert _values[DHCPOptionCode.LEASE_TIME] == 86400
    assert _values[DHCPOptionCode.RENEWAL_TIME] == 43200
    assert _values[DHCPOptionCode.REBINDING_TIME] == 75600
    assert _values[DHCPOptionCode.SUBNET_MASK] == IPv4Address("255.255.255.0")
    assert _values[DHCPOptionCode.ROUTER] == [IPv4Address(SERVER)], "Forced option missing."
    assert _values[DHCPOptionCode.DOMAIN_NAME_SERVER] == [IPv4Address("1.1.1.1")], "Requested option missing."


def test_unrequested_options_left_out(handler, make_message):
    _values = _options(handler.handle_message(make_message(DHCPMessageType.DISCOVER))[0].message)

    assert DHCPOptionCode.SUBNET_MASK not in _values
    assert DHCPOptionCode.DOMAIN_NAME_SERVER not in _values
    assert DHCPOptionCode.ROUTER in _values, "Forced options are always sent."


def test_discover_repeated_keeps_offer(handler, lease_table, make_message, clock):
    _first = handler.handle_message(make_message(DHCPMessageType.DISCOVER))[0].message
    clock.advance(10)
    _second = handler.handle_message(make_message(DHCPMessageType.DISCOVER))[0].message

    assert _first.yiaddr == _second.yiaddr, "Retransmitted DISCOVER must get the same address."
    assert lease_table.get(MAC_A).state_started == clock.now, "Offer timer restarts."


def test_discover_pool_exhausted(handler, dhcp_config, make_message, lease_table):
    dhcp_config.ip_pool_end = IPv4Address("10.0.0.10")
    handler.handle_message(make_message(DHCPMessageType.DISCOVER, mac=MAC_A))

    assert handler.handle_message(make_message(DHCPMessageType.DISCOVER, mac=MAC_B)) == []
    assert lease_table.get(MAC_B) is None, "No record without an address."
    assert DHCPStats.get("pool_exhausted") == 1


def test_request_for_other_server(handler, lease_table, make_message):
    handler.handle_message(make_message(DHCPMessageType.DISCOVER))

    _replies = handler.handle_message(
        make_message(DHCPMessageType.REQUEST, requested_ip="10.0.0.10", server_id="10.0.0.254")
    )

    assert _replies == [], "No reply when the client chose another server."
    assert lease_table.get(MAC_A) is None, "Record must be dropped."


def test_selecting_wrong_ip_is_nak_only(handler, lease_table, make_message):
    handler.handle_message(make_message(DHCPMessageType.DISCOVER))

    _replies = handler.handle_message(
        make_message(DHCPMessageType.REQUEST, requested_ip="10.0.0.15", server_id=SERVER)
    )

    assert [_r.message.message_type for _r in _replies] == [DHCPMessageType.NAK], "NAK and ACK are exclusive."
    _nak = _replies[0].message
    assert _nak.yiaddr == ANY_ADDRESS
    assert set(_options(_nak)) == {DHCPOptionCode.MESSAGE_TYPE, DHCPOptionCode.SERVER_IDENTIFIER}
    assert _replies[0].address == BROADCAST
    assert lease_table.get(MAC_A).state is ClientState.OFFERED, "NAK must not bind."


def test_selecting_without_offer(handler, lease_table, make_message):
    _discover_and_request(handler, make_message)

    _replies = handler.handle_message(
        make_message(DHCPMessageType.REQUEST, requested_ip="10.0.0.10", server_id=SERVER)
    )
    assert [_r.message.message_type for _r in _replies] == [DHCPMessageType.NAK]


def test_request_from_unknown_client_ignored(handler, lease_table, make_message):
    assert handler.handle_message(
        make_message(DHCPMessageType.REQUEST, requested_ip="10.0.0.10", server_id=SERVER)
    ) == []
    assert handler.handle_message(make_message(DHCPMessageType.REQUEST, ciaddr="10.0.0.10")) == []
    assert len(lease_table) == 0


def test_init_reboot(handler, lease_table, make_message, clock):
    _discover_and_request(handler, make_message)
    clock.advance(100)

    _replies = handler.handle_message(make_message(DHCPMessageType.REQUEST, requested_ip="10.0.0.10"))

    assert [_r.message.message_type for _r in _replies] == [DHCPMessageType.ACK]
    assert lease_table.get(MAC_A).state_started == clock.now, "Lease must be refreshed."


def test_init_reboot_from_expired(handler, lease_table, make_message, clock):
    _discover_and_request(handler, make_message)
    _record = lease_table.get(MAC_A)
    lease_table.replace(_record.transition(ClientState.EXPIRED, clock.now, 86400))

    _replies = handler.handle_message(make_message(DHCPMessageType.REQUEST, requested_ip="10.0.0.10"))

    assert [_r.message.message_type for _r in _replies] == [DHCPMessageType.ACK]
    assert lease_table.get(MAC_A).state is ClientState.BOUND


def test_init_reboot_expired_address_taken(handler, lease_table, make_message, clock):
    _discover_and_request(handler, make_message)
    _record = lease_table.get(MAC_A)
    lease_table.replace(_record.transition(ClientState.EXPIRED, clock.now, 86400))
    lease_table.add(
        LeaseRecord(
            identity=MAC_B,
            hardware_address=MAC_B,
            ip_address=IPv4Address("10.0.0.10"),
            state=ClientState.BOUND,
            state_started=clock.now,
            state_duration=86400,
        )
    )

    _replies = handler.handle_message(make_message(DHCPMessageType.REQUEST, requested_ip="10.0.0.10"))

    assert [_r.message.message_type for _r in _replies] == [DHCPMessageType.NAK]
    assert lease_table.get(MAC_A) is None, "Record must be dropped."
    assert lease_table.get(MAC_B).state is ClientState.BOUND


def test_init_reboot_wrong_ip(handler, lease_table, make_message):
    _discover_and_request(handler, make_message)

    _replies = handler.handle_message(make_message(DHCPMessageType.REQUEST, requested_ip="10.0.0.11"))

    assert [_r.message.message_type for _r in _replies] == [DHCPMessageType.NAK]
    assert lease_table.get(MAC_A) is None, "Record must be dropped."


def test_init_reboot_outside_subnet(handler, lease_table, make_message):
    _discover_and_request(handler, make_message)

    _replies = handler.handle_message(make_message(DHCPMessageType.REQUEST, requested_ip="192.168.1.10"))

    assert [_r.message.message_type for _r in _replies] == [DHCPMessageType.NAK]
    assert lease_table.get(MAC_A) is None

    # Even without a record
    _replies = handler.handle_message(make_message(DHCPMessageType.REQUEST, mac=MAC_B, requested_ip="192.168.1.10"))
    assert [_r.message.message_type for _r in _replies] == [DHCPMessageType.NAK]


def test_renewing(handler, lease_table, make_message, clock):
    _discover_and_request(handler, make_message)
    clock.advance(40000)

    _replies = handler.handle_message(make_message(DHCPMessageType.REQUEST, ciaddr="10.0.0.10"))

    assert len(_replies) == 1
    assert _replies[0].message.message_type is DHCPMessageType.ACK
    assert _replies[0].message.ciaddr == IPv4Address("10.0.0.10")
    assert _replies[0].address == ("10.0.0.10", 68), "Renewals are answered by unicast."
    assert lease_table.get(MAC_A).state_started == clock.now


def test_rebinding_expired_lease(handler, lease_table, make_message, clock):
    _discover_and_request(handler, make_message)
    _record = lease_table.get(MAC_A)
    lease_table.replace(_record.transition(ClientState.EXPIRED, clock.now, 86400))

    _replies = handler.handle_message(make_message(DHCPMessageType.REQUEST, ciaddr="10.0.0.10"))

    assert [_r.message.message_type for _r in _replies] == [DHCPMessageType.ACK]
    assert lease_table.get(MAC_A).state is ClientState.BOUND


def test_rebinding_lost_address(handler, lease_table, make_message, clock):
    _discover_and_request(handler, make_message)
    _record = lease_table.get(MAC_A)
    lease_table.clear()
    lease_table.add(
        LeaseRecord(
            identity=MAC_B,
            hardware_address=MAC_B,
            ip_address=IPv4Address("10.0.0.10"),
            state=ClientState.BOUND,
            state_started=clock.now,
            state_duration=86400,
        )
    )
    lease_table.add(_record.transition(ClientState.EXPIRED, clock.now, 86400))

    assert handler.handle_message(make_message(DHCPMessageType.REQUEST, ciaddr="10.0.0.10")) == [], (
        "Address now held by another client."
    )


def test_release_and_reuse(handler, lease_table, make_message, allocator, dhcp_config):
    _discover_and_request(handler, make_message)

    assert handler.handle_message(make_message(DHCPMessageType.RELEASE, ciaddr="10.0.0.10")) == []
    _record = lease_table.get(MAC_A)
    assert _record.state is ClientState.RELEASED
    assert _record.ip_address == IPv4Address("10.0.0.10")

    _client_b = LeaseRecord(identity=MAC_B)
    assert allocator.is_free(IPv4Address("10.0.0.10"), client=_client_b), "Released address is available again."

    dhcp_config.ip_pool_end = IPv4Address("10.0.0.10")
    _offer = handler.handle_message(make_message(DHCPMessageType.DISCOVER, mac=MAC_B))[0].message
    assert _offer.yiaddr == IPv4Address("10.0.0.10")
    assert lease_table.get(MAC_A).ip_address == ANY_ADDRESS


def test_release_other_ip_forgets_address(handler, lease_table, make_message):
    _discover_and_request(handler, make_message)

    handler.handle_message(make_message(DHCPMessageType.RELEASE, ciaddr="10.0.0.99"))

    assert lease_table.get(MAC_A).state is ClientState.RELEASED
    assert lease_table.get(MAC_A).ip_address == ANY_ADDRESS


def test_released_client_gets_same_address_back(handler, make_message):
    _discover_and_request(handler, make_message)
    _discover_and_request(handler, make_message, mac=MAC_B)
    handler.handle_message(make_message(DHCPMessageType.RELEASE, ciaddr="10.0.0.10"))

    _offer = handler.handle_message(make_message(DHCPMessageType.DISCOVER))[0].message
    assert _offer.yiaddr == IPv4Address("10.0.0.10")


def test_decline(handler, lease_table, allocator, make_message):
    handler.handle_message(make_message(DHCPMessageType.DISCOVER))

    _replies = handler.handle_message(
        make_message(DHCPMessageType.DECLINE, requested_ip="10.0.0.10", server_id=SERVER)
    )

    assert _replies == []
    assert lease_table.get(MAC_A) is None
    assert allocator.is_declined(IPv4Address("10.0.0.10"))

    _offer = handler.handle_message(make_message(DHCPMessageType.DISCOVER))[0].message
    assert _offer.yiaddr == IPv4Address("10.0.0.11"), "Declined address must not be offered again."


def test_decline_unknown_client_for_other_server(handler, allocator, make_message):
    handler.handle_message(make_message(DHCPMessageType.DECLINE, requested_ip="10.0.0.10", server_id="10.0.0.254"))

    assert not allocator.is_declined(IPv4Address("10.0.0.10"))


def test_inform(handler, lease_table, make_message):
    _replies = handler.handle_message(
        make_message(DHCPMessageType.INFORM, ciaddr="10.0.0.50", params=(DHCPOptionCode.SUBNET_MASK,))
    )

    assert len(_replies) == 1
    _ack = _replies[0].message
    assert _ack.message_type is DHCPMessageType.ACK
    assert _ack.yiaddr == ANY_ADDRESS
    assert _ack.ciaddr == IPv4Address("10.0.0.50")
    assert DHCPOptionCode.LEASE_TIME not in _options(_ack)
    assert DHCPOptionCode.SUBNET_MASK in _options(_ack)
    assert _replies[0].address == ("10.0.0.50", 68)
    assert len(lease_table) == 0, "INFORM does not create leases."


def test_relay_replies(handler, make_message):
    _replies = handler.handle_message(make_message(DHCPMessageType.DISCOVER, giaddr="10.0.5.1"))

    assert _replies[0].address == ("10.0.5.1", 67)
    assert _replies[0].message.giaddr == IPv4Address("10.0.5.1")


def test_replies_are_ignored(handler, make_message, lease_table):
    _message = make_message(DHCPMessageType.DISCOVER)
    _message.op = DHCPOpcode.BOOTREPLY

    assert handler.handle_message(_message) == []
    assert len(lease_table) == 0


def test_untyped_message_ignored(handler, lease_table):
    assert handler.handle_message(DHCPMessage(chaddr=MAC_A)) == []
    assert len(lease_table) == 0


def test_client_identifier_is_the_key(handler, lease_table, make_message):
    _message = make_message(DHCPMessageType.DISCOVER)
    _message.add_option(DHCPOption(DHCPOptionCode.CLIENT_IDENTIFIER, ClientIdentifier(1, b"client-one")))
    handler.handle_message(_message)

    assert lease_table.get(b"client-one") is not None
    assert lease_table.get(MAC_A) is None


def test_hostname_is_recorded(handler, lease_table, make_message):
    handler.handle_message(make_message(DHCPMessageType.DISCOVER, hostname="laptop"))

    assert lease_table.get(MAC_A).hostname == "laptop"


def test_every_mutation_requests_save(handler, make_message, mutations):
    _discover_and_request(handler, make_message)

    assert len(mutations) >= 2, "Offer and bind must both signal."

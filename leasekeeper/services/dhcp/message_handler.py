from ipaddress import IPv4Address
from logging import Logger
from threading import RLock
from time import time
from typing import Callable

from leasekeeper.libs.libs import is_init, measure_latency_decorator
from leasekeeper.services.dhcp.allocation import IPAllocator
from leasekeeper.services.dhcp.lease_table import LeaseTable
from leasekeeper.services.dhcp.message import DHCPMessage
from leasekeeper.services.dhcp.metrics import DHCPStats, dhcp_metrics
from leasekeeper.services.dhcp.models import (
    ANY_ADDRESS,
    BROADCAST_ADDRESS,
    ClientState,
    DHCPConfig,
    DHCPMessageType,
    DHCPOpcode,
    LeaseRecord,
    OutboundReply,
)
from leasekeeper.services.dhcp.response_factory import DHCPResponseFactory


class DHCPMessageHandler:
    """
    DHCP lease state machine.

    `handle_message` evaluates one decoded request under the lease table lock and
    returns the replies to send; it never touches the network, so the lock is
    released before anything goes out.

    Requests:
        DISCOVER: allocate and offer an address (the same one again for a pending offer).
        REQUEST:
            SELECTING   - server identifier present, must match this server and the offer.
            INIT-REBOOT - requested IP, no server identifier, must match the held lease.
            RENEWING / REBINDING - ciaddr set, lease is refreshed while still valid.
        DECLINE: forget the client, never offer the address again.
        RELEASE: mark the lease released.
        INFORM: configuration only, no address.
    """

    _lock = RLock()
    initialized: bool = False
    logger: Logger

    @classmethod
    def init(
        cls,
        logger: Logger,
        lease_table: LeaseTable,
        allocator: IPAllocator,
        dhcp_config: DHCPConfig,
        clock: Callable[[], float] = time,
    ):
        with cls._lock:
            cls.logger = logger
            cls._lease_table = lease_table
            cls._allocator = allocator
            cls._config = dhcp_config
            cls._clock = clock
            DHCPResponseFactory.init(dhcp_config)
            cls.initialized = True

    @classmethod
    @is_init
    @measure_latency_decorator(metrics=dhcp_metrics)
    def handle_message(cls, message: DHCPMessage) -> list[OutboundReply]:
        """Run one request through the state machine, return the replies to send."""
        if message.op != DHCPOpcode.BOOTREQUEST:
            DHCPStats.increment("dropped_not_request")
            return []

        _type = message.message_type
        DHCPStats.increment(f"received_{str(_type).lower()}" if _type else "received_untyped")

        try:
            with cls._lease_table.lock:
                match _type:
                    case DHCPMessageType.DISCOVER:
                        _replies = cls._handle_discover(message)
                    case DHCPMessageType.REQUEST:
                        _replies = cls._handle_request(message)
                    case DHCPMessageType.DECLINE:
                        _replies = cls._handle_decline(message)
                    case DHCPMessageType.RELEASE:
                        _replies = cls._handle_release(message)
                    case DHCPMessageType.INFORM:
                        _replies = cls._handle_inform(message)
                    case _:
                        cls.logger.debug("Unhandled message type %s from %s.", _type, message.mac)
                        _replies = []
        except Exception as err:
            cls.logger.exception("Failed handling %s: %s", message, err)
            DHCPStats.increment("failed")
            return []

        for _reply in _replies:
            DHCPStats.increment(f"sent_{str(_reply.message.message_type).lower()}")
        return _replies

    @classmethod
    def _handle_discover(cls, message: DHCPMessage) -> list[OutboundReply]:
        cls.logger.debug("DISCOVER XID=%s, MAC=%s.", hex(message.xid), message.mac)
        _identity = message.client_identity
        _record = cls._lease_table.get(_identity)

        if _record is not None and _record.state == ClientState.OFFERED and _record.ip_address != ANY_ADDRESS:
            _ip = _record.ip_address
        else:
            _ip = cls._allocator.allocate(_record or LeaseRecord.from_message(message), message)
            if _ip == ANY_ADDRESS:
                DHCPStats.increment("pool_exhausted")
                return []

        # allocation may have reclaimed this client's own released address
        _known = cls._lease_table.get(_identity)
        _base = _known or LeaseRecord.from_message(message)
        _store = cls._lease_table.replace if _known is not None else cls._lease_table.add
        _store(
            _base.transition(
                ClientState.OFFERED,
                cls._clock(),
                cls._config.offer_expiration,
                ip_address=_ip,
                hardware_address=message.chaddr,
                hostname=message.hostname or _base.hostname,
            )
        )
        cls.logger.debug("OFFER XID=%s, IP=%s, MAC=%s.", hex(message.xid), _ip, message.mac)
        return [cls._reply(DHCPMessageType.OFFER, message, _ip)]

    @classmethod
    def _handle_request(cls, message: DHCPMessage) -> list[OutboundReply]:
        _record = cls._lease_table.get(message.client_identity)
        _server_id = message.server_identifier
        _requested = message.requested_ip

        if _server_id is not None:
            return cls._handle_request_selecting(message, _record, _server_id, _requested)
        if _requested is not None:
            return cls._handle_request_init_reboot(message, _record, _requested)
        if message.ciaddr != ANY_ADDRESS:
            return cls._handle_request_renew_rebind(message, _record)

        cls.logger.debug("REQUEST XID=%s, MAC=%s without address, ignored.", hex(message.xid), message.mac)
        return []

    @classmethod
    def _handle_request_selecting(
        cls,
        message: DHCPMessage,
        record: LeaseRecord | None,
        server_id: IPv4Address,
        requested: IPv4Address | None,
    ) -> list[OutboundReply]:
        cls.logger.debug("REQUEST(SELECTING) XID=%s, MAC=%s, IP=%s.", hex(message.xid), message.mac, requested)

        if server_id != cls._config.server_ip:
            if record is not None:
                cls._lease_table.remove(record.identity)
                cls.logger.debug("%s chose server %s, offer withdrawn.", message.mac, server_id)
            return []

        if record is None:
            cls.logger.debug("REQUEST from unknown client %s, ignored.", message.mac)
            return []

        if record.state != ClientState.OFFERED or requested != record.ip_address:
            return [cls._nak(message, f"offer is {record.state} {record.ip_address}, requested {requested}")]

        return [cls._bind(message, record)]

    @classmethod
    def _handle_request_init_reboot(
        cls,
        message: DHCPMessage,
        record: LeaseRecord | None,
        requested: IPv4Address,
    ) -> list[OutboundReply]:
        cls.logger.debug("REQUEST(INIT-REBOOT) XID=%s, MAC=%s, IP=%s.", hex(message.xid), message.mac, requested)

        if not cls._config.is_in_subnet(requested):
            if record is not None:
                cls._lease_table.remove(record.identity)
            return [cls._nak(message, f"{requested} is not on this network")]

        if record is None:
            cls.logger.debug("REQUEST from unknown client %s, ignored.", message.mac)
            return []

        if (
            record.state in (ClientState.BOUND, ClientState.EXPIRED)
            and requested == record.ip_address
            and cls._allocator.is_free(requested, use_released=False, client=record)
        ):
            return [cls._bind(message, record)]

        cls._lease_table.remove(record.identity)
        return [cls._nak(message, f"lease is {record.state} {record.ip_address}, requested {requested}")]

    @classmethod
    def _handle_request_renew_rebind(cls, message: DHCPMessage, record: LeaseRecord | None) -> list[OutboundReply]:
        cls.logger.debug("REQUEST(RENEW/REBIND) XID=%s, MAC=%s, IP=%s.", hex(message.xid), message.mac, message.ciaddr)

        if record is None:
            cls.logger.debug("REQUEST from unknown client %s, ignored.", message.mac)
            return []

        if record.state == ClientState.BOUND and message.ciaddr == record.ip_address:
            return [cls._bind(message, record)]

        if cls._allocator.is_free(record.ip_address, use_released=False, client=record):
            return [cls._bind(message, record)]

        cls.logger.debug("Lease of %s no longer valid, REQUEST ignored.", message.mac)
        return []

    @classmethod
    def _handle_decline(cls, message: DHCPMessage) -> list[OutboundReply]:
        _record = cls._lease_table.get(message.client_identity)
        if _record is None and message.server_identifier != cls._config.server_ip:
            cls.logger.debug("DECLINE from unknown client %s, ignored.", message.mac)
            return []

        _declined = message.requested_ip
        if _declined is None:
            _declined = message.ciaddr if message.ciaddr != ANY_ADDRESS else getattr(_record, "ip_address", ANY_ADDRESS)

        cls.logger.warning("DECLINE XID=%s, MAC=%s, IP=%s.", hex(message.xid), message.mac, _declined)
        if _record is not None:
            cls._lease_table.remove(_record.identity)
        cls._allocator.mark_declined(_declined)
        return []

    @classmethod
    def _handle_release(cls, message: DHCPMessage) -> list[OutboundReply]:
        _record = cls._lease_table.get(message.client_identity)
        if _record is None:
            cls.logger.debug("RELEASE from unknown client %s, ignored.", message.mac)
            return []

        _changes = {} if message.ciaddr == _record.ip_address else {"ip_address": ANY_ADDRESS}
        cls._lease_table.replace(
            _record.transition(ClientState.RELEASED, cls._clock(), _record.state_duration, **_changes)
        )
        cls.logger.info("RELEASE XID=%s, MAC=%s, IP=%s.", hex(message.xid), message.mac, message.ciaddr)
        return []

    @classmethod
    def _handle_inform(cls, message: DHCPMessage) -> list[OutboundReply]:
        cls.logger.debug("INFORM XID=%s, MAC=%s, IP=%s.", hex(message.xid), message.mac, message.ciaddr)
        _reply = DHCPResponseFactory.build(DHCPMessageType.ACK, message, inform=True)
        if message.ciaddr != ANY_ADDRESS:
            return [OutboundReply(_reply, (str(message.ciaddr), cls._config.client_port))]
        return [OutboundReply(_reply, cls._reply_address(message))]

    @classmethod
    def _bind(cls, message: DHCPMessage, record: LeaseRecord) -> OutboundReply:
        _bound = record.transition(
            ClientState.BOUND,
            cls._clock(),
            cls._config.lease_time,
            hostname=message.hostname or record.hostname,
        )
        cls._lease_table.replace(_bound)
        cls.logger.info("ACK XID=%s, IP=%s, MAC=%s.", hex(message.xid), _bound.ip_address, message.mac)
        return cls._reply(DHCPMessageType.ACK, message, _bound.ip_address)

    @classmethod
    def _nak(cls, message: DHCPMessage, reason: str) -> OutboundReply:
        cls.logger.warning("NAK XID=%s, MAC=%s: %s.", hex(message.xid), message.mac, reason)
        _reply = DHCPResponseFactory.build(DHCPMessageType.NAK, message)
        if message.giaddr != ANY_ADDRESS:
            return OutboundReply(_reply, (str(message.giaddr), cls._config.server_port))
        return OutboundReply(_reply, (str(BROADCAST_ADDRESS), cls._config.client_port))

    @classmethod
    def _reply(cls, dhcp_type: DHCPMessageType, message: DHCPMessage, your_ip: IPv4Address) -> OutboundReply:
        return OutboundReply(DHCPResponseFactory.build(dhcp_type, message, your_ip), cls._reply_address(message))

    @classmethod
    def _reply_address(cls, message: DHCPMessage) -> tuple[str, int]:
        """Relay agent, else the client's own address, else broadcast."""
        if message.giaddr != ANY_ADDRESS:
            return str(message.giaddr), cls._config.server_port
        if message.ciaddr != ANY_ADDRESS:
            return str(message.ciaddr), cls._config.client_port
        return str(BROADCAST_ADDRESS), cls._config.client_port

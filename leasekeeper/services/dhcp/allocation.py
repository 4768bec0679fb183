from dataclasses import replace
from ipaddress import IPv4Address
from logging import Logger
from threading import RLock
from time import time
from typing import Callable, Optional

from leasekeeper.services.dhcp.message import DHCPMessage
from leasekeeper.services.dhcp.lease_table import LeaseTable
from leasekeeper.services.dhcp.models import (
    ANY_ADDRESS,
    EXPIRED_REUSE_AFTER_SECONDS,
    ClientState,
    DHCPConfig,
    LeaseRecord,
)


class IPAllocator:
    """
    Picks addresses from the pool for clients.

    Allocation order:
        1. The client's own recorded address, if it is not an offer and still free for it.
        2. The requested IP option, if free for the client.
        3. First free pool address, ignoring released leases.
        4. First free pool address, reclaiming released leases.
        5. 0.0.0.0, nothing available.

    Callers hold `lease_table.lock` across `allocate` and the table update that
    follows, so the free check and the claim are atomic.
    """

    def __init__(
        self,
        lease_table: LeaseTable,
        dhcp_config: DHCPConfig,
        logger: Logger,
        clock: Callable[[], float] = time,
    ):
        self._lease_table = lease_table
        self._config = dhcp_config
        self._clock = clock
        self.logger = logger
        self._declined_lock = RLock()
        self._declined: set[IPv4Address] = set()

    def mark_declined(self, ip: IPv4Address):
        """Address is in use by someone unknown, never offer it again."""
        if ip == ANY_ADDRESS:
            return
        with self._declined_lock:
            self._declined.add(IPv4Address(ip))
        self.logger.warning("IP %s declined, excluded until restart.", ip)

    def is_declined(self, ip: IPv4Address) -> bool:
        with self._declined_lock:
            return ip in self._declined

    def clear_declined(self):
        with self._declined_lock:
            self._declined.clear()

    def is_free(
        self,
        ip: IPv4Address,
        use_released: bool = True,
        client: Optional[LeaseRecord] = None,
    ) -> bool:
        """Can ip be handed to client.

        Never free while another client has it Offered or Bound. Otherwise the
        first record holding ip decides: free if it is the client's own
        non-offered record, an Expired record older than a minute, or a Released
        record when use_released is set. Reclaiming an Expired or Released record
        resets its address to 0.0.0.0.
        """
        if not self._config.is_host_address(ip):
            return False
        if ip == self._config.server_ip:
            return False
        if self.is_declined(ip):
            return False

        with self._lease_table.lock:
            _holders = self._lease_table.find_by_ip(ip)
            for _record in _holders:
                if _record.state in (ClientState.OFFERED, ClientState.BOUND) and not self._is_own(_record, client):
                    return False

            for _record in _holders:
                if self._is_own(_record, client) and _record.state != ClientState.OFFERED:
                    return True
                if (
                    _record.state == ClientState.EXPIRED
                    and self._clock() - _record.state_started > EXPIRED_REUSE_AFTER_SECONDS
                ):
                    self._reclaim(_record)
                    return True
                if use_released and _record.state == ClientState.RELEASED:
                    self._reclaim(_record)
                    return True
                return False

        return True

    @staticmethod
    def _is_own(record: LeaseRecord, client: Optional[LeaseRecord]) -> bool:
        return client is not None and record.identity == client.identity

    def _reclaim(self, record: LeaseRecord):
        self._lease_table.replace(replace(record, ip_address=ANY_ADDRESS))
        self.logger.debug("Reclaimed %s IP %s from %s.", record.state, record.ip_address, record.mac)

    def allocate(self, client: LeaseRecord, request: DHCPMessage) -> IPv4Address:
        """Address for client, 0.0.0.0 when the pool is exhausted."""
        with self._lease_table.lock:
            _known = self._lease_table.get(client.identity)
            if (
                _known is not None
                and _known.state != ClientState.OFFERED
                and self.is_free(_known.ip_address, client=_known)
            ):
                return _known.ip_address

            _requested = request.requested_ip
            if _requested is not None and self.is_free(_requested, use_released=True, client=client):
                return _requested

            for _use_released in (False, True):
                for _ip in self._config.pool():
                    if self.is_free(_ip, use_released=_use_released):
                        return _ip

        self.logger.warning("IP pool exhausted, nothing for %s.", client.mac)
        return ANY_ADDRESS

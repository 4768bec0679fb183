from queue import Empty, Queue
from select import select
from socket import AF_INET, SO_BROADCAST, SO_REUSEADDR, SOCK_DGRAM, SOL_SOCKET, socket
from threading import Event, RLock, Thread, current_thread
from time import time
from typing import Callable, Optional

from leasekeeper.config.config import config
from leasekeeper.services.dhcp.allocation import IPAllocator
from leasekeeper.services.dhcp.db_leases import LeaseStorage
from leasekeeper.services.dhcp.db_persistence import DbPersistenceService
from leasekeeper.services.dhcp.errors import FatalNetworkError, MalformedPacketError
from leasekeeper.services.dhcp.lease_sweeper import LeaseSweeper
from leasekeeper.services.dhcp.lease_table import LeaseTable
from leasekeeper.services.dhcp.message import DHCPMessage
from leasekeeper.services.dhcp.message_handler import DHCPMessageHandler
from leasekeeper.services.dhcp.metrics import DHCPStats
from leasekeeper.services.dhcp.models import DHCPConfig, OutboundReply
from leasekeeper.services.dhcp.utils import build_dhcp_config
from leasekeeper.services.logger.logger import MainLogger

DHCP_CONFIG = config.get("dhcp")
HOST = DHCP_CONFIG.get("host")
PORT = int(DHCP_CONFIG.get("port"))
MSG_SIZE = int(DHCP_CONFIG.get("msg_size"))

TIMEOUTS = DHCP_CONFIG.get("timeouts")
SOCKET_SELECT_TIMEOUT = float(TIMEOUTS.get("socket_select"))
QUEUE_GET_TIMEOUT = float(TIMEOUTS.get("queue_get"))
WORKER_JOIN_TIMEOUT = float(TIMEOUTS.get("worker_join"))

dhcp_logger = MainLogger.get_logger(service_name="DHCP", log_level="debug")


class DHCPServer:
    """
    DHCP server: UDP endpoint, receive loop, send worker and lifecycle of the lease services.

    Responsibilities:
        - Receive datagrams one at a time and run them through DHCPMessageHandler.
        - Send replies from a separate worker so sends never block receiving.
        - Load leases on start, save them on change (DbPersistenceService),
          expire them every second (LeaseSweeper).
        - On a socket or persistence failure stop everything and call `on_fatal`.

    Usage:
        DHCPServer.init(on_fatal=lambda reason: shutdown_event.set())
        DHCPServer.start()
        ...
        DHCPServer.stop()
    """

    _lock = RLock()
    _socket_lock = RLock()
    _initialised = False
    _running = False
    _workers: dict[str, Thread] = {}
    _stop_event = Event()
    _socket: socket | None = None

    @classmethod
    def init(
        cls,
        dhcp_config: Optional[DHCPConfig] = None,
        storage: Optional[LeaseStorage] = None,
        on_fatal: Optional[Callable[[str], None]] = None,
        host: str = HOST,
        port: int = PORT,
        msg_size: int = MSG_SIZE,
        clock: Callable[[], float] = time,
    ):
        with cls._lock:
            if cls._running:
                raise RuntimeError("Already running")

            cls._config = dhcp_config or build_dhcp_config(DHCP_CONFIG)
            cls._host = host
            cls._port = port
            cls._msg_size = msg_size
            cls._on_fatal = on_fatal
            cls._send_queue: Queue[OutboundReply] = Queue()
            cls._workers = {}

            cls._lease_table = LeaseTable(on_mutation=DbPersistenceService.request_save)
            cls._allocator = IPAllocator(cls._lease_table, cls._config, dhcp_logger, clock)
            DHCPMessageHandler.init(
                logger=dhcp_logger,
                lease_table=cls._lease_table,
                allocator=cls._allocator,
                dhcp_config=cls._config,
                clock=clock,
            )
            LeaseSweeper.init(
                logger=dhcp_logger,
                lease_table=cls._lease_table,
                offer_expiration=cls._config.offer_expiration,
                clock=clock,
            )
            DbPersistenceService.init(
                logger=dhcp_logger,
                storage=storage or LeaseStorage(),
                lease_table=cls._lease_table,
                on_fatal=cls._on_persistence_failure,
            )
            cls._initialised = True
            dhcp_logger.debug(
                "%s initialized, server %s, pool %s-%s.",
                cls.__name__,
                cls._config.server_ip,
                cls._config.ip_pool_start,
                cls._config.ip_pool_end,
            )

    @classmethod
    def start(cls):
        """Bind, load leases and start all workers."""
        if not cls._initialised:
            raise RuntimeError("Init first")

        with cls._lock:
            if cls._running:
                raise RuntimeError("Already running")

            _socket = socket(AF_INET, SOCK_DGRAM)
            try:
                _socket.setsockopt(SOL_SOCKET, SO_REUSEADDR, 1)
                _socket.setsockopt(SOL_SOCKET, SO_BROADCAST, 1)
                _socket.bind((cls._host, cls._port))
                _socket.setblocking(False)
                DbPersistenceService.load()
            except Exception:
                _socket.close()
                raise
            cls._socket = _socket

            _dropped = cls._drop_leases_outside_pool()
            DbPersistenceService.start()
            if _dropped:
                DbPersistenceService.request_save()
            LeaseSweeper.start()

            cls._stop_event.clear()
            cls._running = True
            for _name, _target in (
                ("dhcp-traffic-listener", cls._traffic_listener),
                ("dhcp-sender", cls._sender),
            ):
                _worker = Thread(target=_target, name=_name, daemon=True)
                _worker.start()
                cls._workers[_name] = _worker

            dhcp_logger.info("Started %s on %s:%s.", cls.__name__, cls._host, cls.get_port())

    @classmethod
    def stop(cls, worker_join_timeout: float = WORKER_JOIN_TIMEOUT):
        """Stop workers, close the socket and clear the in-memory table."""
        with cls._lock:
            if not cls._running:
                raise RuntimeError("Not running")
            cls._running = False
            cls._stop_event.set()

            with cls._socket_lock:
                if cls._socket is not None:
                    cls._socket.close()
                    cls._socket = None

            for _name, _worker in cls._workers.items():
                if _worker is current_thread():
                    continue
                _worker.join(timeout=worker_join_timeout)
                if _worker.is_alive():
                    dhcp_logger.warning("%s didnt respect timeout.", _name)
            cls._workers = {}

            LeaseSweeper.stop()
            DbPersistenceService.stop()
            cls._lease_table.clear()
            cls._allocator.clear_declined()
            while not cls._send_queue.empty():
                cls._send_queue.get_nowait()

            dhcp_logger.info("%s stopped.", cls.__name__)

    @classmethod
    def is_running(cls) -> bool:
        return cls._running

    @classmethod
    def get_port(cls) -> Optional[int]:
        """Bound port, useful when started on port 0."""
        with cls._socket_lock:
            if cls._socket is None:
                return None
            return cls._socket.getsockname()[1]

    @classmethod
    def get_lease_table(cls) -> LeaseTable:
        return cls._lease_table

    @classmethod
    def process_datagram(cls, data: bytes, addr: tuple[str, int]) -> list[OutboundReply]:
        """Decode and handle one datagram, queue the replies for sending."""
        DHCPStats.increment("received_total")
        try:
            _message = DHCPMessage.decode(data)
        except MalformedPacketError as err:
            DHCPStats.increment("received_malformed")
            dhcp_logger.debug("Dropped malformed datagram from %s: %s", addr, err)
            return []

        _replies = DHCPMessageHandler.handle_message(_message)
        for _reply in _replies:
            cls._send_queue.put(_reply)
        return _replies

    @classmethod
    def _drop_leases_outside_pool(cls) -> int:
        _dropped = 0
        with cls._lease_table.lock:
            for _record in cls._lease_table.records():
                if not cls._config.is_in_pool(_record.ip_address):
                    cls._lease_table.remove(_record.identity)
                    _dropped += 1
        if _dropped:
            dhcp_logger.info("Dropped %s stored leases outside the pool.", _dropped)
        return _dropped

    @classmethod
    def _traffic_listener(cls, timeout: float = SOCKET_SELECT_TIMEOUT):
        """Receive datagrams and handle them serially."""
        _socket = cls._socket
        while not cls._stop_event.is_set():
            try:
                if _socket in select([_socket], [], [], timeout)[0]:
                    _data, _addr = _socket.recvfrom(cls._msg_size)
                    cls.process_datagram(_data, _addr)
            except (OSError, ValueError) as err:
                if cls._stop_event.is_set():
                    break
                cls._fatal(FatalNetworkError(f"DHCP socket failed: {err}"))
                break

    @classmethod
    def _sender(cls, timeout: float = QUEUE_GET_TIMEOUT):
        while not cls._stop_event.is_set():
            try:
                _reply: OutboundReply = cls._send_queue.get(timeout=timeout)
            except Empty:
                continue

            try:
                _payload = _reply.message.encode(cls._config.min_packet_size)
                with cls._socket_lock:
                    if cls._socket is None:
                        break
                    cls._socket.sendto(_payload, _reply.address)
                dhcp_logger.debug("Sent %s to %s:%s.", _reply.message.message_type, *_reply.address)
            except (OSError, ValueError) as err:
                DHCPStats.increment("send_failed")
                dhcp_logger.error("Failed sending %s to %s: %s.", _reply.message.message_type, _reply.address, err)

    @classmethod
    def _on_persistence_failure(cls, err: Exception):
        cls._fatal(err)

    @classmethod
    def _fatal(cls, err: Exception):
        """Stop the server and tell the owner."""
        dhcp_logger.critical("Fatal error, stopping %s: %s", cls.__name__, err)
        try:
            with cls._lock:
                if cls._running:
                    cls.stop()
        finally:
            if cls._on_fatal is not None:
                cls._on_fatal(str(err))

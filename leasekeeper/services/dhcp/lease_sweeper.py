from logging import Logger
from threading import Event, RLock, Thread, current_thread
from time import time
from typing import Callable, Optional

from leasekeeper.config.config import config
from leasekeeper.libs.libs import is_init, is_running
from leasekeeper.services.dhcp.lease_table import LeaseTable
from leasekeeper.services.dhcp.models import EXPIRED_GRACE_SECONDS, ClientState

TIMEOUTS = config.get("dhcp").get("timeouts")
SWEEP_INTERVAL = float(TIMEOUTS.get("sweep_interval"))
WORKER_JOIN_TIMEOUT = float(TIMEOUTS.get("worker_join"))
OFFER_EXPIRATION = float(config.get("dhcp").get("offer_expiration_seconds"))


class LeaseSweeper:
    """
    Periodic expiry of lease records.

    Every `interval` seconds, under the table lock:
        - Offered records older than the offer expiration are dropped.
        - Expired records past their end are dropped.
        - Bound records past their end become Expired for a one day grace window.
    """

    _lock = RLock()
    _stop_event = Event()
    _worker: Thread | None = None
    initialized: bool = False
    running: bool = False
    logger: Logger

    @classmethod
    def init(
        cls,
        logger: Logger,
        lease_table: LeaseTable,
        offer_expiration: float = OFFER_EXPIRATION,
        interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time,
    ):
        with cls._lock:
            if cls.running:
                raise RuntimeError("Already running")
            cls.logger = logger
            cls._lease_table = lease_table
            cls._offer_expiration = offer_expiration
            cls._interval = interval
            cls._clock = clock
            cls._worker = None
            cls.initialized = True

    @classmethod
    @is_init
    def start(cls):
        with cls._lock:
            if cls.running or cls._worker is not None:
                raise RuntimeError("Already running")
            cls._stop_event.clear()
            cls.running = True
            cls._worker = Thread(target=cls._work, name="lease-sweeper", daemon=True)
            cls._worker.start()
            cls.logger.debug("%s started.", cls.__name__)

    @classmethod
    @is_init
    @is_running
    def stop(cls):
        with cls._lock:
            cls.running = False
            cls._stop_event.set()
            _worker = cls._worker
            cls._worker = None
        if _worker is not None and _worker is not current_thread():
            _worker.join(timeout=WORKER_JOIN_TIMEOUT)
            if _worker.is_alive():
                cls.logger.warning("%s didnt respect timeout.", cls.__name__)
        cls.logger.debug("%s stopped.", cls.__name__)

    @classmethod
    @is_init
    def sweep(cls, now: Optional[float] = None) -> dict[str, int]:
        """One pass over the table, returns how many records were dropped / expired."""
        _now = cls._clock() if now is None else now
        _result = {"offers_dropped": 0, "expired_dropped": 0, "bound_expired": 0}

        with cls._lease_table.lock:
            for _record in cls._lease_table.records():
                match _record.state:
                    case ClientState.OFFERED if _now - _record.state_started > cls._offer_expiration:
                        cls._lease_table.remove(_record.identity)
                        _result["offers_dropped"] += 1
                        cls.logger.debug("Offer of %s to %s expired.", _record.ip_address, _record.mac)

                    case ClientState.EXPIRED if _now > _record.state_end:
                        cls._lease_table.remove(_record.identity)
                        _result["expired_dropped"] += 1
                        cls.logger.debug("Dropped expired lease %s of %s.", _record.ip_address, _record.mac)

                    case ClientState.BOUND if _now > _record.state_end:
                        cls._lease_table.replace(
                            _record.transition(ClientState.EXPIRED, _now, EXPIRED_GRACE_SECONDS)
                        )
                        _result["bound_expired"] += 1
                        cls.logger.info("Lease %s of %s expired.", _record.ip_address, _record.mac)

        return _result

    @classmethod
    def _work(cls):
        while not cls._stop_event.wait(cls._interval):
            try:
                cls.sweep()
            except Exception as err:
                cls.logger.exception("Lease sweep failed: %s", err)

from logging import Logger
from random import uniform
from sqlite3 import Error as SqliteError
from threading import Event, RLock, Thread, current_thread
from time import sleep
from typing import Callable, Optional

from leasekeeper.config.config import config
from leasekeeper.libs.libs import is_init, is_running
from leasekeeper.services.dhcp.db_leases import LeaseStorage
from leasekeeper.services.dhcp.errors import PersistenceError
from leasekeeper.services.dhcp.lease_table import LeaseTable
from leasekeeper.services.dhcp.models import LeaseRecord

PERSISTENCE_CONFIG = config.get("database").get("persistence")
RETRIES = int(PERSISTENCE_CONFIG.get("retries"))
RETRY_DELAY_MIN = float(PERSISTENCE_CONFIG.get("retry_delay_min"))
RETRY_DELAY_MAX = float(PERSISTENCE_CONFIG.get("retry_delay_max"))
TIMEOUTS = config.get("dhcp").get("timeouts")
WORKER_JOIN_TIMEOUT = float(TIMEOUTS.get("worker_join"))
WAKE_TIMEOUT = float(TIMEOUTS.get("queue_get"))


class DbPersistenceService:
    """
    Background worker writing the lease table to LeaseStorage whenever it changes.

    Responsibilities:
        - `request_save()` is the table's mutation callback: it only flags work
          and returns, the write happens on the worker thread.
        - Saves and loads share one lock, a save never overlaps a load.
        - Each save or load is tried `retries` times with a random
          `retry_delay_min`..`retry_delay_max` second pause between attempts.
        - When all attempts fail the `on_fatal` callback is called with the error.

    Usage:
        1. `DbPersistenceService.init(logger, storage, lease_table, on_fatal)`.
        2. `DbPersistenceService.load()` to fill the table.
        3. `DbPersistenceService.start()` to begin saving on change.
        4. `DbPersistenceService.stop()` writes any pending change and joins the worker.

    Raises:
        RuntimeError if `start` or `stop` is called without initialization, or if misuse occurs.
    """

    _lock = RLock()
    _io_lock = RLock()
    _stop_event = Event()
    _dirty = Event()
    _worker: Thread | None = None
    initialized: bool = False
    running: bool = False
    logger: Logger

    @classmethod
    def init(
        cls,
        logger: Logger,
        storage: LeaseStorage,
        lease_table: LeaseTable,
        on_fatal: Optional[Callable[[Exception], None]] = None,
        retries: int = RETRIES,
        retry_delay_min: float = RETRY_DELAY_MIN,
        retry_delay_max: float = RETRY_DELAY_MAX,
    ):
        with cls._lock:
            if cls.running:
                raise RuntimeError("Already running")
            cls.logger = logger
            cls._storage = storage
            cls._lease_table = lease_table
            cls._on_fatal = on_fatal
            cls._retries = max(1, int(retries))
            cls._retry_delay = (float(retry_delay_min), float(retry_delay_max))
            cls._worker = None
            cls._dirty.clear()
            cls.initialized = True
            cls.logger.debug("%s initialized.", cls.__name__)

    @classmethod
    @is_init
    def start(cls):
        with cls._lock:
            if cls.running or cls._worker is not None:
                raise RuntimeError("Already running")
            cls._stop_event.clear()
            cls.running = True
            cls._worker = Thread(target=cls._work, name="lease-persistence", daemon=True)
            cls._worker.start()
            cls.logger.debug("%s started.", cls.__name__)

    @classmethod
    @is_init
    @is_running
    def stop(cls):
        """Stop the worker, then write a pending change if there is one."""
        with cls._lock:
            cls.running = False
            cls._stop_event.set()
            _worker = cls._worker
            cls._worker = None
        if _worker is not None and _worker is not current_thread():
            _worker.join(timeout=WORKER_JOIN_TIMEOUT)
            if _worker.is_alive():
                cls.logger.warning("%s didnt respect timeout.", cls.__name__)
        if cls._dirty.is_set() and _worker is not current_thread():
            cls._dirty.clear()
            try:
                cls.save()
            except PersistenceError as err:
                cls.logger.error("Final lease save failed: %s.", err)
        cls.logger.debug("%s stopped.", cls.__name__)

    @classmethod
    def request_save(cls):
        """Flag the table as changed; ignored while not running (e.g. during load or after stop)."""
        if cls.running:
            cls._dirty.set()

    @classmethod
    def _with_retries(cls, action: str, func: Callable):
        _last_error: Exception | None = None
        for _attempt in range(1, cls._retries + 1):
            try:
                return func()
            except (OSError, SqliteError) as err:
                _last_error = err
                cls.logger.warning("Lease %s attempt %s/%s failed: %s.", action, _attempt, cls._retries, err)
                if _attempt < cls._retries:
                    sleep(uniform(*cls._retry_delay))
        raise PersistenceError(f"Lease {action} failed after {cls._retries} attempts: {_last_error}") from _last_error

    @classmethod
    @is_init
    def save(cls):
        """Write a snapshot of the table. Raises PersistenceError when all attempts fail."""
        with cls._io_lock:
            _snapshot = cls._lease_table.records()
            cls._with_retries("save", lambda: cls._storage.save_all(_snapshot))
            cls.logger.debug("Saved %s leases.", len(_snapshot))

    @classmethod
    @is_init
    def load(cls) -> list[LeaseRecord]:
        """Read persisted records into the table. Raises PersistenceError when all attempts fail."""
        with cls._io_lock:
            _records = cls._with_retries("load", cls._storage.load_all)
            cls._lease_table.load(_records)
            cls.logger.info("Loaded %s leases.", len(_records))
            return _records

    @classmethod
    def _work(cls):
        while not cls._stop_event.is_set():
            if not cls._dirty.wait(timeout=WAKE_TIMEOUT):
                continue
            if cls._stop_event.is_set():
                break
            cls._dirty.clear()
            try:
                cls.save()
            except PersistenceError as err:
                cls.logger.critical("%s", err)
                if cls._on_fatal is not None:
                    cls._on_fatal(err)
                return

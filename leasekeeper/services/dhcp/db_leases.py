from contextlib import closing
from ipaddress import IPv4Address
from pathlib import Path
from sqlite3 import Connection, connect

from leasekeeper.config.config import config
from leasekeeper.services.dhcp.errors import PersistenceError
from leasekeeper.services.dhcp.models import ClientState, LeaseRecord

PATHS = config.get("paths")
ROOT_PATH = Path(PATHS.get("root"))
DB_PATH = ROOT_PATH / PATHS.get("database")
DB_CONFIG = config.get("database")
DB_LEASES_FULLPATH = DB_PATH / DB_CONFIG.get("leases").get("path")
DB_TIMEOUT = 1.0

LEASES_SCHEMA = """
    CREATE TABLE IF NOT EXISTS leases (
        identity TEXT PRIMARY KEY,
        hardware_address TEXT NOT NULL,
        hostname TEXT NOT NULL,
        ip_address TEXT NOT NULL,
        state TEXT NOT NULL,
        state_started REAL NOT NULL,
        state_duration REAL NOT NULL
    )
    """


class LeaseStorage:
    """
    Lease snapshot in a sqlite file.

    Each `save_all` rewrites the whole table in one transaction, so a reader
    sees either the previous or the new snapshot. Errors (sqlite3.Error,
    OSError) propagate; retrying is up to DbPersistenceService. A row that
    does not decode raises PersistenceError.
    """

    def __init__(self, path: Path = DB_LEASES_FULLPATH):
        self.path = Path(path)

    def _connect(self) -> Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _conn = connect(self.path, timeout=DB_TIMEOUT)
        _conn.execute(LEASES_SCHEMA)
        return _conn

    def save_all(self, records: list[LeaseRecord]):
        _rows = [
            (
                _record.identity.hex(),
                _record.hardware_address.hex(),
                _record.hostname,
                str(_record.ip_address),
                _record.state.value,
                _record.state_started,
                _record.state_duration,
            )
            for _record in records
        ]
        with closing(self._connect()) as _conn:
            with _conn:
                _conn.execute("DELETE FROM leases")
                _conn.executemany(
                    """
                    INSERT INTO
                    leases (identity, hardware_address, hostname, ip_address, state, state_started, state_duration)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    _rows,
                )

    def load_all(self) -> list[LeaseRecord]:
        if not self.path.exists():
            return []
        with closing(self._connect()) as _conn:
            _rows = _conn.execute(
                """
                SELECT identity, hardware_address, hostname, ip_address, state, state_started, state_duration
                FROM leases
                ORDER BY rowid
                """
            ).fetchall()
        return [self._decode_row(_row) for _row in _rows]

    @staticmethod
    def _decode_row(row: tuple) -> LeaseRecord:
        _identity, _hardware_address, _hostname, _ip, _state, _started, _duration = row
        try:
            return LeaseRecord(
                identity=bytes.fromhex(_identity),
                hardware_address=bytes.fromhex(_hardware_address),
                hostname=_hostname,
                ip_address=IPv4Address(_ip),
                state=ClientState(_state),
                state_started=float(_started),
                state_duration=float(_duration),
            )
        except (ValueError, TypeError) as err:
            raise PersistenceError(f"Corrupt lease row {row}: {err}") from err

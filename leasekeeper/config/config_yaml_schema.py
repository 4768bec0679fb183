from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress


class Meta(BaseModel):
    name: str
    version: str
    date: str


class Paths(BaseModel):
    root: str
    database: str
    logs: str


class ExtraOption(BaseModel):
    code: int = Field(..., ge=1, le=254)
    value: Any
    force: bool = False


class DHCPTimeouts(BaseModel):
    socket_select: float
    sweep_interval: float
    queue_get: float
    worker_join: float


class DHCP(BaseModel):
    interface: Optional[str] = None
    host: str
    port: int = Field(..., ge=0, le=65535)
    client_port: int = Field(..., ge=0, le=65535)
    server_ip: Optional[IPvAnyAddress] = None
    subnet_mask: IPvAnyAddress
    ip_pool_start: IPvAnyAddress
    ip_pool_end: IPvAnyAddress
    offer_expiration_seconds: int = Field(..., ge=0)
    lease_time_seconds: int = Field(..., ge=0)
    renewal_time_ratio: float = Field(..., gt=0, lt=1)
    rebinding_time_ratio: float = Field(..., gt=0, lt=1)
    min_packet_size: int
    msg_size: int
    extra_options: List[ExtraOption] = []
    timeouts: DHCPTimeouts


class LeasesDb(BaseModel):
    path: str


class Persistence(BaseModel):
    retries: int = Field(..., ge=1)
    retry_delay_min: float = Field(..., ge=0)
    retry_delay_max: float = Field(..., ge=0)


class Database(BaseModel):
    leases: LeasesDb
    persistence: Persistence


class LoggingFormatter(BaseModel):
    format: str
    datefmt: str


class LoggingHandler(BaseModel):
    model_config = ConfigDict(extra="allow")

    class_: str = Field(..., alias="class")
    level: str
    formatter: str
    filename: Optional[str] = None
    maxBytes: Optional[int] = None
    backupCount: Optional[int] = None
    encoding: Optional[str] = None
    mode: Optional[str] = None


class Logging(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: int
    formatters: Dict[str, LoggingFormatter]
    handlers: Dict[str, LoggingHandler]
    root: Dict[str, List[str] | str]


class ConfigSchema(BaseModel):
    meta: Meta
    paths: Paths
    dhcp: DHCP
    database: Database
    logging: Logging

from ipaddress import IPv4Address
from typing import Optional

from scapy.arch import get_if_addr, get_if_list

from leasekeeper.services.dhcp.models import ANY_ADDRESS, DHCPConfig, ExtraOption
from leasekeeper.services.dhcp.options import build_option


def is_net_interface_valid(iface: str) -> bool:
    """is_net_interface_valid"""
    return iface in get_if_list()


def resolve_server_ip(host: str, server_ip: Optional[str] = None, interface: Optional[str] = None) -> IPv4Address:
    """Address announced as server identifier.

    Explicit server_ip first, then a specific bind address, then the
    interface address.

    Raises:
        ValueError: Nothing usable configured.
    """
    if server_ip:
        return IPv4Address(str(server_ip))
    if host and IPv4Address(host) != ANY_ADDRESS:
        return IPv4Address(host)
    if interface:
        if not is_net_interface_valid(interface):
            raise ValueError(f"Unknown network interface {interface}.")
        _address = IPv4Address(get_if_addr(interface))
        if _address != ANY_ADDRESS:
            return _address
    raise ValueError("Cannot determine server IP, set dhcp.server_ip or dhcp.interface.")


def build_extra_options(entries: list[dict]) -> list[ExtraOption]:
    """[{code, value, force}] from config into ExtraOption list."""
    return [
        ExtraOption(option=build_option(int(_entry["code"]), _entry["value"]), force=bool(_entry.get("force", False)))
        for _entry in entries or []
    ]


def build_dhcp_config(dhcp_conf: dict) -> DHCPConfig:
    """DHCPConfig from the `dhcp` config section."""
    return DHCPConfig(
        server_ip=resolve_server_ip(
            host=dhcp_conf.get("host"),
            server_ip=dhcp_conf.get("server_ip"),
            interface=dhcp_conf.get("interface"),
        ),
        subnet_mask=IPv4Address(dhcp_conf.get("subnet_mask")),
        ip_pool_start=IPv4Address(dhcp_conf.get("ip_pool_start")),
        ip_pool_end=IPv4Address(dhcp_conf.get("ip_pool_end")),
        offer_expiration=float(dhcp_conf.get("offer_expiration_seconds")),
        lease_time=float(dhcp_conf.get("lease_time_seconds")),
        renewal_time_ratio=float(dhcp_conf.get("renewal_time_ratio")),
        rebinding_time_ratio=float(dhcp_conf.get("rebinding_time_ratio")),
        min_packet_size=int(dhcp_conf.get("min_packet_size")),
        server_port=int(dhcp_conf.get("port")),
        client_port=int(dhcp_conf.get("client_port")),
        extra_options=build_extra_options(dhcp_conf.get("extra_options")),
    )

import sys
from logging import Logger
from signal import SIGINT, SIGQUIT, SIGTERM, signal
from threading import Event

from leasekeeper.services.dhcp.dhcp import DHCPServer
from leasekeeper.services.dhcp.errors import DHCPError
from leasekeeper.services.dhcp.metrics import DHCPStats, dhcp_metrics
from leasekeeper.services.logger.logger import MainLogger

logger: Logger = MainLogger.get_logger(service_name="MAIN")
shutdown_event = Event()
exit_code = 0


def shutdown_handler(signum: int, frame):
    """SIGINT / SIGTERM / SIGQUIT: leave the main wait."""
    logger.debug("Received %s.", signum)
    shutdown_event.set()


def fatal_handler(reason: str):
    """Called by DHCPServer after it stopped itself."""
    global exit_code
    logger.critical("DHCP server failed: %s.", reason)
    exit_code = 1
    shutdown_event.set()


def register_shutdowns():
    for _signal in (SIGINT, SIGTERM, SIGQUIT):
        signal(_signal, shutdown_handler)


def main() -> int:
    register_shutdowns()

    try:
        DHCPServer.init(on_fatal=fatal_handler)
        DHCPServer.start()
    except (OSError, ValueError, DHCPError) as err:
        logger.critical("Cannot start DHCP server: %s.", err)
        return 1

    shutdown_event.wait()
    logger.info("Stopping.")

    if DHCPServer.is_running():
        DHCPServer.stop()

    logger.info("Messages: %s.", DHCPStats.get_stats())
    logger.info("Handler latency ms: %s.", dhcp_metrics.get_stats())
    return exit_code


if __name__ == "__main__":
    sys.exit(main())

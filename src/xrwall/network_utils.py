"""Network helpers for the relay startup banner and free-port lookup."""

import logging
import socket

import psutil

logger = logging.getLogger(__name__)

# Interface name prefixes that are never reachable from a headset on the LAN
VIRTUAL_INTERFACE_PREFIXES = (
    "bridge",
    "docker",
    "veth",
    "vmnet",
    "vboxnet",
    "virbr",
    "tun",
    "tap",
    "utun",
    "vnic",
    "ppp",
)


def get_local_ip_addresses() -> list[str]:
    """
    Get the IPv4 addresses of physical interfaces that headsets can connect to.

    Loopback, link-local (169.254.x.x) and virtual interfaces are skipped.

    Example:
        >>> get_local_ip_addresses()
        ['192.168.1.100']
    """
    ip_addresses = []
    try:
        for interface_name, interface_addresses in psutil.net_if_addrs().items():
            if interface_name.lower().startswith(VIRTUAL_INTERFACE_PREFIXES):
                continue
            for address in interface_addresses:
                if address.family != socket.AF_INET:
                    continue
                ip = address.address
                if ip.startswith("127.") or ip.startswith("169.254."):
                    continue
                ip_addresses.append(ip)
    except Exception as e:
        logger.warning(f"Failed to get local IP addresses: {e}")

    return ip_addresses


def relay_urls(port: int) -> list[str]:
    """Connect URLs a client on the LAN could use for a relay on ``port``."""
    hosts = get_local_ip_addresses() or ["localhost"]
    return [f"tcp://{host}:{port}" for host in hosts]


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


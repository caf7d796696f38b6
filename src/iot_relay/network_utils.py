"""Network utility functions for the IoT Relay Server."""

import logging
import socket

import psutil

logger = logging.getLogger(__name__)

# Virtual/bridge interface prefixes that external devices cannot usually reach
VIRTUAL_PREFIXES = (
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
    Get the IPv4 addresses of physical network interfaces.

    Loopback and APIPA (169.254.x.x) addresses are skipped so that the list
    only holds addresses devices on the LAN are likely to reach.

    Example:
        >>> get_local_ip_addresses()
        ['192.168.1.100', '10.0.0.50']
    """
    ip_addresses = []
    try:
        for interface_name, interface_addresses in psutil.net_if_addrs().items():
            if interface_name.lower().startswith(VIRTUAL_PREFIXES):
                continue

            for address in interface_addresses:
                if address.family == socket.AF_INET:
                    ip = address.address
                    if ip != "127.0.0.1" and not ip.startswith("169.254."):
                        ip_addresses.append(ip)
    except Exception as e:
        logger.warning(f"Failed to get local IP addresses: {e}")

    return ip_addresses


def connection_urls(ip: str, port: int) -> dict[str, str]:
    """Return the dashboard, device and API URLs for one address."""
    return {
        "dashboard": f"ws://{ip}:{port}/?type=web",
        "device": f"ws://{ip}:{port}/?type=device&deviceId=<id>",
        "api": f"http://{ip}:{port}/api/health",
    }


def is_port_available(host: str, port: int) -> bool:
    """Return True if a TCP listener could bind ``host:port`` right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True

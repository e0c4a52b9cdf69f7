"""
Utilities for finding and checking availability of host ports.
"""
import socket
from typing import Optional

_SOCKET_TYPES = {
    'tcp': socket.SOCK_STREAM,
    'udp': socket.SOCK_DGRAM,
}


def get_free_port(protocol: str = 'tcp') -> int:
    """
    Asks the OS for a currently unused port.
    """
    with socket.socket(socket.AF_INET, _SOCKET_TYPES[protocol]) as s:
        s.bind(('', 0))
        return s.getsockname()[1]


def is_port_free(port: int, protocol: str = 'tcp', host_ip: Optional[str] = None) -> bool:
    """
    Checks whether a port can be bound on the given interface (all interfaces by default).
    """
    with socket.socket(socket.AF_INET, _SOCKET_TYPES[protocol]) as s:
        try:
            s.bind((host_ip or '', port))
            return True
        except OSError:
            return False

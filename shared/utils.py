from __future__ import annotations
from typing import Optional, Tuple

# ========================================
#           INPUT VALIDATION HELPERS
# ========================================
"""
Helpers the config loader and the CLIs call to decide whether a bind address
or peer address is usable before a socket is opened.
"""

def is_port(value: object) -> bool:
    """
    True for integers in 1..65535. Booleans are rejected even though they are ints.
    """
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= 65535

def parse_hostport(s: str) -> Optional[Tuple[str, int]]:
    """
    Split 'host:port' into (host, port), or None if it is not well formed.
    """
    if ':' not in s:
        return None
    host, port_s = s.rsplit(':', 1)
    if not host or not port_s.isdigit():
        return None
    port = int(port_s)
    if not is_port(port):
        return None
    return host, port

def format_endpoint(host: str, port: int) -> str:
    return f"{host}:{port}"

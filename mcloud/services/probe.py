from __future__ import annotations

import os
import shutil
import socket

from mcloud.utils import is_ip_address


class HostProbe:
    """Read-only checks against the local host used before any side effect."""

    def tool_available(self, tool: str) -> bool:
        return shutil.which(tool) is not None

    def port_available(self, host: str, port: int) -> bool:
        family = socket.AF_INET6 if is_ip_address(host) and ":" in host else socket.AF_INET
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind(("", port))
            except OSError:
                return False
        return True

    def device_exists(self, path: str) -> bool:
        return os.path.exists(path)

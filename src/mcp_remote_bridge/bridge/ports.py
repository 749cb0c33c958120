"""Callback port allocation."""

import logging
import socket

from .errors import NoPortAvailable

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_PORT = 3334
DEFAULT_MAX_ATTEMPTS = 10
CALLBACK_HOST = "127.0.0.1"
MAX_PORT = 65535


class PortAllocator:
    """Find a free local TCP port by transiently binding candidates.

    A bind failure is not fatal: another process may hold the port, so the
    allocator simply moves on to the next one.
    """

    def __init__(self, host: str = CALLBACK_HOST):
        self.host = host

    def _is_port_available(self, port: int) -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.host, port))
            sock.listen(1)
            return True
        except OSError as e:
            logger.debug(f"Port {port} unavailable: {e}")
            return False
        finally:
            sock.close()

    def allocate(
        self,
        preferred_port: int = DEFAULT_CALLBACK_PORT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> int:
        """Return the first free port in ``preferred_port .. preferred_port+max_attempts-1``.

        Raises:
            NoPortAvailable: If every candidate is taken
        """
        tried = []
        for offset in range(max_attempts):
            port = preferred_port + offset
            if port > MAX_PORT:
                break
            tried.append(port)
            if self._is_port_available(port):
                logger.info(f"Allocated callback port {port}")
                return port

        raise NoPortAvailable(
            message=f"No free callback port in {tried[0]}-{tried[-1]}"
            if tried
            else f"No valid callback port at {preferred_port}",
            data={"tried": tried},
        )

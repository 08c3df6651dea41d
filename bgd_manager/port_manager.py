"""
Port allocation for blue/green slots.

Resolves the proxy HTTP and TLS ports and the host ports of both slots,
guaranteeing that no two roles share a port.
"""

import logging
import shutil
import socket
import subprocess
from typing import Dict, Iterable, List, Optional, Set

from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.models import PortAssignment

logger = logging.getLogger(__name__)

# Listing tools differ by host; each prints the local address in column 4.
LISTING_COMMANDS: List[List[str]] = [
    ["ss", "-Htln"],
    ["netstat", "-tln"],
]


class PortManager:
    """Finds free TCP ports and resolves collisions between roles."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        probe_timeout: float = 0.5,
        max_attempts: int = 100,
    ):
        """
        Initialize port manager.

        Args:
            host: Address probed for listeners
            probe_timeout: Connect timeout in seconds
            max_attempts: Default number of ports probed when skipping forward
        """
        self.host = host
        self.probe_timeout = probe_timeout
        self.max_attempts = max_attempts

    def is_available(self, port: int) -> bool:
        """
        Check whether nothing is listening on a port.

        A successful connect means the port is taken. When the connect is
        refused, OS listing tools are consulted for listeners bound to other
        interfaces.

        Args:
            port: TCP port to check

        Returns:
            True if the port looks free
        """
        if self._connect_probe(port):
            logger.debug(f"Port {port} accepted a connection, in use")
            return False

        listed = self._listed_by_os_tools(port)
        if listed:
            logger.debug(f"Port {port} is listed as listening, in use")
            return False
        return True

    def _connect_probe(self, port: int) -> bool:
        """True if something accepts TCP connections on the port."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(self.probe_timeout)
            try:
                return sock.connect_ex((self.host, port)) == 0
            except OSError:
                return False

    def _listed_by_os_tools(self, port: int) -> Optional[bool]:
        """
        Ask ss, netstat or lsof whether the port has a listener.

        Returns:
            True/False from the first tool that works, None if none is available
        """
        for command in LISTING_COMMANDS:
            if shutil.which(command[0]) is None:
                continue
            try:
                result = subprocess.run(command, capture_output=True, text=True, timeout=5)
            except (subprocess.TimeoutExpired, OSError) as e:
                logger.debug(f"{command[0]} failed: {e}")
                continue
            if result.returncode != 0:
                continue
            return port_in_listing(result.stdout, port)

        if shutil.which("lsof"):
            try:
                result = subprocess.run(
                    ["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"],
                    capture_output=True,
                    text=True,
                    timeout=5,
                )
                return bool(result.stdout.strip())
            except (subprocess.TimeoutExpired, OSError) as e:
                logger.debug(f"lsof failed: {e}")

        return None

    def find_available(
        self,
        start_port: int,
        max_attempts: Optional[int] = None,
        exclude: Optional[Set[int]] = None,
    ) -> int:
        """
        Probe upward from start_port for a free port.

        Args:
            start_port: First port to try
            max_attempts: Number of ports to try
            exclude: Ports already claimed by other roles

        Returns:
            First free port

        Raises:
            BGDError: port_conflict if no port in the window is free
        """
        attempts = max_attempts or self.max_attempts
        exclude = exclude or set()

        for port in range(start_port, min(start_port + attempts, 65536)):
            if port in exclude:
                continue
            if self.is_available(port):
                if port != start_port:
                    logger.info(f"Port {start_port} unavailable, using {port}")
                return port

        raise BGDError(
            ErrorCode.PORT_CONFLICT,
            f"No available port in {start_port}-{start_port + attempts - 1}",
            suggestion="Free a port in the range or choose a different starting port.",
        )

    def allocate_all(
        self,
        requested: Dict[str, int],
        auto_assign: bool = False,
        keep: Iterable[str] = (),
    ) -> PortAssignment:
        """
        Resolve every role to a distinct port.

        Args:
            requested: Role -> preferred port (proxy_http, proxy_tls, blue, green, ...)
            auto_assign: Skip forward past busy or duplicate ports instead of failing
            keep: Roles whose port is already held by a running component of this
                application and must not move

        Returns:
            PortAssignment with pairwise distinct ports

        Raises:
            BGDError: invalid_parameter for out-of-range ports, port_conflict for
                duplicates (without auto_assign) or exhausted probing
        """
        for role, port in requested.items():
            if not isinstance(port, int) or not 1 <= port <= 65535:
                raise BGDError(
                    ErrorCode.INVALID_PARAMETER,
                    f"Port for {role} must be between 1 and 65535, got {port}",
                )

        keep_roles = set(keep)

        if not auto_assign:
            self.check_distinct(requested)
            for role, port in requested.items():
                if role not in keep_roles and not self.is_available(port):
                    logger.warning(f"Port {port} for {role} appears to be in use")
            return PortAssignment(ports=dict(requested))

        assigned: Dict[str, int] = {}
        taken: Set[int] = set()

        fixed = {role: port for role, port in requested.items() if role in keep_roles}
        self.check_distinct(fixed)
        for role, port in fixed.items():
            assigned[role] = port
            taken.add(port)

        for role, port in requested.items():
            if role in keep_roles:
                continue
            if port not in taken and self.is_available(port):
                chosen = port
            else:
                chosen = self.find_available(port + 1, exclude=taken)
                logger.info(f"Auto-assigned port {chosen} to {role} (requested {port})")
            assigned[role] = chosen
            taken.add(chosen)

        ordered = {role: assigned[role] for role in requested}
        self.check_distinct(ordered)
        return PortAssignment(ports=ordered)

    @staticmethod
    def check_distinct(ports: Dict[str, int]) -> None:
        """Raise port_conflict if two roles share a port."""
        owners: Dict[int, str] = {}
        for role, port in ports.items():
            if port in owners:
                raise BGDError(
                    ErrorCode.PORT_CONFLICT,
                    f"Port {port} is assigned to both {owners[port]} and {role}",
                    details={"port": port, "roles": [owners[port], role]},
                )
            owners[port] = role


def port_in_listing(output: str, port: int) -> bool:
    """True if any line of ss/netstat output has a local address ending in :port."""
    suffix = f":{port}"
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 4:
            continue
        if fields[3].endswith(suffix):
            return True
    return False

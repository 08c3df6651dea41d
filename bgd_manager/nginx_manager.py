"""
Reverse proxy configuration for blue/green slots.

Renders nginx configuration from a RoutingSpec, swaps it into place
atomically and reloads the proxy container.
"""

import logging
import os
import re
import shutil
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from bgd_manager.docker_runtime import DockerRuntime
from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.logging_config import log_nginx_operation
from bgd_manager.models import TOTAL_WEIGHT, Route, RoutingMode, RoutingSpec, Slot
from bgd_manager.nginx_config import (
    Block,
    Comment,
    ConfigFile,
    Directive,
    NginxSyntaxError,
    parse_config,
    validate_structure,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "nginx.conf"
CONTAINER_CONFIG_PATH = f"/etc/bgd/{CONFIG_FILENAME}"
PROXY_HEALTH_PATH = "/nginx-health"

_ROUTING_HEADER = re.compile(
    r"^# routing: mode=(?P<mode>single|dual)"
    r"(?: target=(?P<target>blue|green))?"
    r"(?: blue=(?P<blue>\d+) green=(?P<green>\d+))?",
    re.MULTILINE,
)


def upstream_name(app_name: str, route: Route) -> str:
    return re.sub(r"[^A-Za-z0-9_]", "_", f"{app_name}_{route.key}")


class NginxManager:
    """Generates and applies the proxy configuration of one application."""

    def __init__(
        self,
        app_name: str,
        config_dir: Path,
        container_name: str,
        runtime: Optional[DockerRuntime] = None,
        upstream_host: str = "127.0.0.1",
        image: str = "nginx:stable-alpine",
        settle_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        keep_backups: int = 5,
    ):
        """
        Initialize nginx manager.

        Args:
            app_name: Application name, prefixed to upstream names
            config_dir: Directory holding nginx.conf (mounted into the proxy)
            container_name: Proxy container name
            runtime: Container runtime adapter
            upstream_host: Host the slot ports are published on
            image: Proxy image used when the container has to be created
            settle_seconds: Wait after a container restart
            sleep: Sleep function
            keep_backups: Number of timestamped backups kept
        """
        self.app_name = app_name
        self.config_dir = Path(config_dir)
        self.config_path = self.config_dir / CONFIG_FILENAME
        self.backup_dir = self.config_dir / "backups"
        self.container_name = container_name
        self.runtime = runtime or DockerRuntime()
        self.upstream_host = upstream_host
        self.image = image
        self.settle_seconds = settle_seconds
        self.sleep = sleep
        self.keep_backups = keep_backups

    # Rendering

    def render_single(self, app_name: str, target_slot: Slot, routing_spec: RoutingSpec) -> str:
        """Render a configuration sending every route to one slot."""
        spec = routing_spec.single(target_slot)
        return self._render(app_name, spec)

    def render_dual(
        self, app_name: str, weight_blue: int, weight_green: int, routing_spec: RoutingSpec
    ) -> str:
        """
        Render a configuration splitting every route between both slots.

        Raises:
            BGDError: invalid_parameter if the weights are negative or do not
                sum to the fixed total
        """
        try:
            spec = routing_spec.dual(weight_blue, weight_green)
        except ValueError as e:
            raise BGDError(ErrorCode.INVALID_PARAMETER, f"Invalid traffic weights: {e}")
        return self._render(app_name, spec)

    def render(self, routing_spec: RoutingSpec) -> str:
        """Render whatever mode the routing spec carries."""
        return self._render(self.app_name, routing_spec)

    def _render(self, app_name: str, spec: RoutingSpec) -> str:
        config = self.build_config(app_name, spec)
        text = config.render()
        try:
            validate_structure(parse_config(text))
        except NginxSyntaxError as e:
            raise BGDError(
                ErrorCode.INVALID_PARAMETER, f"Generated proxy configuration is invalid: {e}"
            )
        return text

    def build_config(self, app_name: str, spec: RoutingSpec) -> ConfigFile:
        """Build the configuration tree for a routing spec."""
        config = ConfigFile()
        config.add(
            Comment(f"Generated by bgd-manager for {app_name} at {datetime.now().isoformat()}"),
            Comment(_routing_header(spec)),
            Directive("worker_processes", ["auto"]),
            Block("events").add(Directive("worker_connections", [1024])),
        )

        http = Block("http").add(
            Directive("include", ["/etc/nginx/mime.types"]),
            Directive("default_type", ["application/octet-stream"]),
            Directive("sendfile", ["on"]),
            Directive("tcp_nopush", ["on"]),
            Directive("tcp_nodelay", ["on"]),
            Directive("keepalive_timeout", [65]),
            Directive("client_max_body_size", ["10M"]),
            Directive("access_log", ["/var/log/nginx/access.log"]),
            Directive("error_log", ["/var/log/nginx/error.log"]),
        )

        routes = list(spec.routes())
        for route in routes:
            http.add(self._upstream(app_name, spec, route))

        default_route = routes[0]
        path_routes = [r for r in routes if r.kind == "path"]
        subdomain_routes = [r for r in routes if r.kind == "subdomain"]

        http.add(
            *self._servers(
                app_name,
                spec,
                server_names=spec.server_names,
                locations=path_routes + [default_route],
            )
        )
        for route in subdomain_routes:
            http.add(
                *self._servers(
                    app_name,
                    spec,
                    server_names=[f"{route.match}.{spec.domain}"],
                    locations=[Route(key=route.key, kind="default", match="/", target=route.target)],
                    upstream_key=route,
                )
            )

        config.add(http)
        return config

    def _upstream(self, app_name: str, spec: RoutingSpec, route: Route) -> Block:
        upstream = Block("upstream", [upstream_name(app_name, route)])
        if spec.mode == RoutingMode.SINGLE:
            slot = spec.target_slot
            _, port = spec.backend(slot, route)
            upstream.add(Directive("server", [f"{self.upstream_host}:{port}"], comment=slot.value))
            return upstream

        for slot in (Slot.BLUE, Slot.GREEN):
            _, port = spec.backend(slot, route)
            weight = spec.weight_for(slot)
            if weight > 0:
                args = [f"{self.upstream_host}:{port}", f"weight={weight}"]
            else:
                # nginx rejects weight=0; a down server keeps both backends declared
                args = [f"{self.upstream_host}:{port}", "down"]
            upstream.add(Directive("server", args, comment=f"{slot.value} weight={weight}"))
        return upstream

    def _servers(
        self,
        app_name: str,
        spec: RoutingSpec,
        server_names: List[str],
        locations: List[Route],
        upstream_key: Optional[Route] = None,
    ) -> List[Block]:
        ports = spec.ports
        body: List = []
        for route in locations:
            upstream_route = upstream_key if upstream_key is not None else route
            body.append(self._location(app_name, spec, route, upstream_route))

        health = Block("location", ["=", PROXY_HEALTH_PATH]).add(
            Directive("access_log", ["off"]),
            Directive("default_type", ["text/plain"]),
            Directive("return", [200, "healthy"]),
        )

        http_server = Block("server").add(
            Directive("listen", [ports.proxy_http]),
            Directive("server_name", server_names),
            health,
        )
        if not spec.ssl:
            http_server.add(*body)
            return [http_server]

        http_server.add(
            Block("location", ["/"]).add(Directive("return", [301, "https://$host$request_uri"]))
        )
        tls_server = Block("server").add(
            Directive("listen", [ports.proxy_tls, "ssl"]),
            Directive("server_name", server_names),
            Directive("ssl_certificate", [spec.ssl_certificate]),
            Directive("ssl_certificate_key", [spec.ssl_certificate_key]),
            Directive("ssl_protocols", ["TLSv1.2", "TLSv1.3"]),
            Directive("ssl_prefer_server_ciphers", ["on"]),
            Directive("ssl_session_cache", ["shared:SSL:10m"]),
            Block("location", ["=", PROXY_HEALTH_PATH]).add(
                Directive("access_log", ["off"]),
                Directive("default_type", ["text/plain"]),
                Directive("return", [200, "healthy"]),
            ),
            *body,
        )
        return [http_server, tls_server]

    def _location(
        self, app_name: str, spec: RoutingSpec, route: Route, upstream_route: Route
    ) -> Block:
        location = Block("location", [route.match]).add(
            Directive("proxy_pass", [f"http://{upstream_name(app_name, upstream_route)}"]),
            Directive("proxy_http_version", ["1.1"]),
            Directive("proxy_set_header", ["Host", "$host"]),
            Directive("proxy_set_header", ["X-Real-IP", "$remote_addr"]),
            Directive("proxy_set_header", ["X-Forwarded-For", "$proxy_add_x_forwarded_for"]),
            Directive("proxy_set_header", ["X-Forwarded-Proto", "$scheme"]),
            Directive("proxy_set_header", ["Connection", ""]),
            Directive("proxy_next_upstream", ["error", "timeout", "http_502", "http_503"]),
            Directive("proxy_connect_timeout", ["5s"]),
            Directive("proxy_read_timeout", ["60s"]),
        )
        if spec.mode == RoutingMode.SINGLE:
            location.add(
                Directive("add_header", ["X-Deployment-Slot", spec.target_slot.value, "always"])
            )
        return location

    # Applying

    def write_config(self, text: str) -> Optional[Path]:
        """
        Atomically replace nginx.conf with new content.

        A directory at the config path is a stale artifact (left by a bind
        mount of a missing file) and is removed first.

        Returns:
            Path of the backup of the previous config, if one existed
        """
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            if self.config_path.is_dir():
                logger.warning(f"Removing directory occupying {self.config_path}")
                shutil.rmtree(self.config_path)

            backup = self._create_backup()

            fd, tmp_name = tempfile.mkstemp(
                prefix=".nginx.", suffix=".tmp", dir=str(self.config_dir)
            )
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(text)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp_name, 0o644)
                os.replace(tmp_name, self.config_path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except PermissionError as e:
            log_nginx_operation("write", False, error=str(e))
            raise BGDError(
                ErrorCode.PERMISSION_DENIED, f"Cannot write {self.config_path}: {e}"
            )

        log_nginx_operation(
            "write", True, details={"path": str(self.config_path), "bytes": len(text)}
        )
        return backup

    def _create_backup(self) -> Optional[Path]:
        if not self.config_path.is_file():
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup = self.backup_dir / f"nginx.conf.{timestamp}"
        shutil.copy2(self.config_path, backup)

        backups = sorted(self.backup_dir.glob("nginx.conf.*"), reverse=True)
        for old in backups[self.keep_backups :]:
            old.unlink()
        return backup

    def _restore_backup(self, backup: Optional[Path]) -> None:
        if backup is None or not backup.exists():
            return
        os.replace(shutil.copy2(backup, self.config_dir / ".restore.tmp"), self.config_path)
        logger.warning(f"Restored proxy configuration from {backup.name}")

    def ensure_proxy(self, extra_mounts: Tuple[str, ...] = ()) -> bool:
        """
        Start the proxy container if needed.

        Returns:
            True if the container had to be started
        """
        state = self.runtime.proxy_state(self.container_name)
        if state == "running":
            return False
        self.runtime.start_proxy(
            self.container_name,
            self.image,
            self.config_dir,
            CONFIG_FILENAME,
            self.app_name,
            extra_mounts=extra_mounts,
        )
        log_nginx_operation("start", True, details={"container": self.container_name})
        return True

    def reload(self) -> str:
        """
        Validate the live file inside the proxy, then reload it.

        Falls back to restarting the container when reload fails.

        Returns:
            "reloaded" or "restarted"

        Raises:
            BGDError: If the proxy rejects the configuration or cannot be restarted
        """
        code, output = self.runtime.proxy_exec(
            self.container_name, ["nginx", "-t", "-c", CONTAINER_CONFIG_PATH]
        )
        if code != 0:
            log_nginx_operation("validate", False, error=output.strip())
            raise BGDError(
                ErrorCode.INVALID_PARAMETER,
                f"Proxy rejected configuration: {output.strip()}",
                suggestion=f"Inspect {self.config_path} and the nginx error log.",
            )
        log_nginx_operation("validate", True)

        code, output = self.runtime.proxy_exec(
            self.container_name, ["nginx", "-c", CONTAINER_CONFIG_PATH, "-s", "reload"]
        )
        if code == 0:
            log_nginx_operation("reload", True, details={"container": self.container_name})
            return "reloaded"

        logger.warning(f"Nginx reload failed ({code}): {output.strip()}, restarting container")
        log_nginx_operation("reload", False, error=output.strip())
        self.runtime.restart_container(self.container_name)
        self.sleep(self.settle_seconds)
        log_nginx_operation("restart", True, details={"container": self.container_name})
        return "restarted"

    def apply(self, routing_spec: RoutingSpec, extra_mounts: Tuple[str, ...] = ()) -> str:
        """
        Render, swap into place and reload.

        The previous configuration is restored if the proxy rejects the new one.

        Returns:
            The rendered configuration text
        """
        text = self.render(routing_spec)
        backup = self.write_config(text)

        if self.ensure_proxy(extra_mounts):
            return text

        try:
            self.reload()
        except BGDError:
            self._restore_backup(backup)
            raise
        return text

    # Inspection

    def read_live(self) -> Optional[str]:
        if not self.config_path.is_file():
            return None
        return self.config_path.read_text()

    def live_routing(self) -> Optional[Tuple[RoutingMode, Optional[Slot], Tuple[int, int]]]:
        """
        Routing state recorded in the live config header.

        Returns:
            (mode, single target or None, (blue weight, green weight)), or None
            if there is no readable config
        """
        text = self.read_live()
        if not text:
            return None
        match = _ROUTING_HEADER.search(text)
        if not match:
            return None
        mode = RoutingMode(match.group("mode"))
        if mode == RoutingMode.SINGLE and match.group("target"):
            target = Slot(match.group("target"))
            weights = (TOTAL_WEIGHT, 0) if target == Slot.BLUE else (0, TOTAL_WEIGHT)
            return mode, target, weights
        if mode == RoutingMode.DUAL and match.group("blue") is not None:
            return mode, None, (int(match.group("blue")), int(match.group("green")))
        return None


def _routing_header(spec: RoutingSpec) -> str:
    if spec.mode == RoutingMode.SINGLE:
        return f"routing: mode=single target={spec.target_slot.value}"
    return f"routing: mode=dual blue={spec.weight_blue} green={spec.weight_green}"

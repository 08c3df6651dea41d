"""
Health verification for deployment slots.

Polls an HTTP endpoint with bounded retries and optional exponential
backoff, and checks the container-reported health of every service in a
slot.
"""

import logging
import re
import time
from typing import Callable, Optional

import httpx

from bgd_manager.docker_runtime import PROXY_SERVICES, DockerRuntime
from bgd_manager.models import (
    HealthCheckPolicy,
    HealthResult,
    ServiceHealth,
    Slot,
    SlotHealthReport,
)

logger = logging.getLogger(__name__)

_HEALTHY_SIGNAL = re.compile(
    r'^\s*"?healthy"?\s*$'
    r'|"status"\s*:\s*"(healthy|ok|up|pass)"'
    r'|"healthy"\s*:\s*true',
    re.IGNORECASE,
)


def is_healthy_response(status_code: int, body: str) -> bool:
    """
    A response is healthy if its status is 2xx or the body affirms it: a bare
    `healthy`, a JSON status of healthy/ok/up/pass or `"healthy": true`.
    """
    if 200 <= status_code < 300:
        return True
    return bool(_HEALTHY_SIGNAL.search(body or ""))


class HealthChecker:
    """Polls endpoints and container health with bounded retries."""

    def __init__(
        self,
        runtime: Optional[DockerRuntime] = None,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_log_lines: int = 100,
    ):
        self.runtime = runtime
        self.http_client = http_client
        self.sleep = sleep
        self.max_log_lines = max_log_lines

    def check(
        self,
        endpoint: str,
        retries: int = 12,
        delay: float = 5.0,
        timeout: float = 5.0,
        backoff: bool = False,
        app_name: Optional[str] = None,
        slot: Optional[Slot] = None,
    ) -> HealthResult:
        """
        Poll an endpoint until it reports healthy or retries run out.

        Args:
            endpoint: Full URL to probe
            retries: Maximum number of probes (at least 1)
            delay: Seconds between probes
            timeout: Per-request timeout
            backoff: Sleep delay * 2**attempt instead of a fixed delay
            app_name: Application whose slot logs are collected on failure
            slot: Slot whose logs are collected on failure

        Returns:
            HealthResult; never healthy unless a probe passed
        """
        policy = HealthCheckPolicy(
            endpoint_path=endpoint, retries=retries, delay=delay, timeout=timeout, backoff=backoff
        )
        return self.check_policy(endpoint, policy, app_name=app_name, slot=slot)

    def check_policy(
        self,
        url: str,
        policy: HealthCheckPolicy,
        app_name: Optional[str] = None,
        slot: Optional[Slot] = None,
    ) -> HealthResult:
        result = HealthResult(healthy=False, endpoint=url)

        for attempt in range(policy.retries):
            result.attempts = attempt + 1
            try:
                response = self._get(url, policy.timeout)
                result.last_status = response.status_code
                result.last_error = None
                if is_healthy_response(response.status_code, response.text):
                    result.healthy = True
                    logger.info(f"Health check passed for {url} (attempt {attempt + 1})")
                    return result
                logger.debug(f"Health check {url} returned {response.status_code}")
            except httpx.HTTPError as e:
                result.last_error = f"{type(e).__name__}: {e}"
                logger.debug(f"Health check {url} failed: {result.last_error}")

            if attempt < policy.retries - 1:
                wait = policy.sleep_before(attempt)
                logger.info(
                    f"Health check attempt {attempt + 1}/{policy.retries} failed, "
                    f"retrying in {wait:g}s"
                )
                self.sleep(wait)

        logger.error(
            f"Health check failed for {url} after {policy.retries} attempts "
            f"(last status: {result.last_status}, last error: {result.last_error})"
        )
        if app_name and slot is not None:
            result.logs = self.collect_logs(app_name, slot)
        return result

    def _get(self, url: str, timeout: float) -> httpx.Response:
        if self.http_client is not None:
            return self.http_client.get(url, timeout=timeout)
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            return client.get(url)

    def collect_logs(self, app_name: str, slot: Slot, lines: Optional[int] = None) -> str:
        """Trailing log lines of a slot, for diagnostics. Never raises."""
        if self.runtime is None:
            return ""
        tail = lines or self.max_log_lines
        try:
            logs = self.runtime.container_logs(app_name, slot, tail=tail)
        except Exception as e:
            logger.warning(f"Could not collect logs for {app_name}-{slot.value}: {e}")
            return ""
        if logs:
            logger.error(f"Last {tail} log lines of {app_name}-{slot.value}:\n{logs}")
        return logs

    def service_report(self, app_name: str, slot: Slot) -> SlotHealthReport:
        """Snapshot of every non-proxy service in a slot."""
        report = SlotHealthReport(slot=slot.value)
        for info in self.runtime.slot_containers(app_name, slot):
            if info.service in PROXY_SERVICES:
                continue
            if info.health:
                healthy = info.health == "healthy"
            else:
                healthy = info.running
            report.services.append(
                ServiceHealth(
                    service=info.service,
                    container=info.name,
                    state=info.state,
                    health=info.health,
                    healthy=healthy,
                )
            )
        return report

    def verify_all_services(
        self,
        app_name: str,
        slot: Slot,
        retries: int = 1,
        delay: float = 0.0,
    ) -> SlotHealthReport:
        """
        Require every service in a slot to be healthy, or running when it
        defines no health probe.

        Services still starting get up to `retries` snapshots, so the result
        waits for the slowest service within that budget.

        Returns:
            The last report; report.healthy is True only if all services pass
        """
        report = SlotHealthReport(slot=slot.value)
        for attempt in range(max(retries, 1)):
            report = self.service_report(app_name, slot)
            if report.healthy:
                logger.info(f"All {len(report.services)} services healthy in {slot.value}")
                return report
            if attempt < retries - 1:
                self.sleep(delay)

        if not report.services:
            logger.error(f"No services found in {app_name}-{slot.value}")
        else:
            logger.error(f"Unhealthy services in {slot.value}: {report.breakdown()}")
        return report

"""
Utility functions for deployment operations.

Pure functions for weight schedules, route parsing and identifiers.
"""

import re
from datetime import datetime, timezone
from typing import Dict, List, Tuple

from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.models import TOTAL_WEIGHT, RouteTarget, Slot

# (current share, target share); each step hands the target more traffic
SHIFT_STEPS: Tuple[Tuple[int, int], ...] = ((9, 1), (5, 5), (1, 9))

_APP_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_VERSION_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


def weights_for(target: Slot, target_share: int) -> Tuple[int, int]:
    """(blue weight, green weight) giving target_share to the target slot."""
    if not 0 <= target_share <= TOTAL_WEIGHT:
        raise ValueError(f"Target share must be between 0 and {TOTAL_WEIGHT}")
    if target == Slot.BLUE:
        return target_share, TOTAL_WEIGHT - target_share
    return TOTAL_WEIGHT - target_share, target_share


def initial_weights(target: Slot) -> Tuple[int, int]:
    """Current active slot takes everything, target nothing."""
    return weights_for(target, 0)


def shift_schedule(target: Slot) -> List[Tuple[int, int]]:
    """(blue, green) weights for each traffic shift step toward target."""
    return [weights_for(target, target_share) for _, target_share in SHIFT_STEPS]


def parse_routes(value: str, flag: str = "--paths") -> Dict[str, RouteTarget]:
    """
    Parse 'name:service:port,...' into a route map.

    Args:
        value: Comma-separated route list; empty yields no routes
        flag: Flag name used in error messages

    Raises:
        BGDError: invalid_parameter on malformed entries
    """
    routes: Dict[str, RouteTarget] = {}
    if not value or not value.strip():
        return routes

    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        parts = item.split(":")
        if len(parts) != 3:
            raise BGDError(
                ErrorCode.INVALID_PARAMETER,
                f"Invalid {flag} entry '{item}', expected name:service:port",
            )
        name, service, port = (p.strip() for p in parts)
        try:
            target = RouteTarget(service=service, port=int(port))
        except ValueError as e:
            raise BGDError(ErrorCode.INVALID_PARAMETER, f"Invalid {flag} entry '{item}': {e}")
        if name in routes:
            raise BGDError(ErrorCode.INVALID_PARAMETER, f"Duplicate {flag} entry '{name}'")
        routes[name] = target
    return routes


def normalize_path(name: str) -> str:
    return name if name.startswith("/") else f"/{name}"


def validate_app_name(app_name: str) -> str:
    if not app_name:
        raise BGDError(ErrorCode.MISSING_PARAMETER, "Application name is required (--app-name)")
    if not _APP_NAME_RE.match(app_name):
        raise BGDError(
            ErrorCode.INVALID_PARAMETER,
            f"Invalid application name '{app_name}'",
            suggestion="Use lowercase letters, digits, '-' and '_' (docker project name rules).",
        )
    return app_name


def validate_version(version: str) -> str:
    if not version:
        raise BGDError(ErrorCode.MISSING_PARAMETER, "Version is required")
    if not _VERSION_RE.match(version):
        raise BGDError(ErrorCode.INVALID_PARAMETER, f"Invalid version tag '{version}'")
    return version


def generate_deployment_id(app_name: str, version: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    return f"{app_name}-{version}-{stamp}"

"""
Tests for the error taxonomy.
"""

import httpx
import pytest
from docker.errors import DockerException

from bgd_manager.errors import DEFAULT_SUGGESTIONS, BGDError, ErrorCode, from_exception


class TestBGDError:
    """Tests for BGDError."""

    def test_taxonomy_is_closed(self):
        assert {c.value for c in ErrorCode} == {
            "missing_parameter",
            "invalid_parameter",
            "port_conflict",
            "environment_start_failed",
            "health_check_failed",
            "database_error",
            "docker_error",
            "network_error",
            "file_not_found",
            "permission_denied",
            "unknown",
        }

    def test_every_code_has_a_suggestion(self):
        for code in ErrorCode:
            assert DEFAULT_SUGGESTIONS[code]

    def test_default_suggestion_used(self):
        error = BGDError(ErrorCode.PORT_CONFLICT, "Port 8081 is taken")
        assert error.suggestion == DEFAULT_SUGGESTIONS[ErrorCode.PORT_CONFLICT]

    def test_custom_suggestion_wins(self):
        error = BGDError(ErrorCode.UNKNOWN, "boom", suggestion="Try again")
        assert error.suggestion == "Try again"

    def test_str_includes_code(self):
        assert str(BGDError(ErrorCode.DOCKER_ERROR, "daemon down")) == "[docker_error] daemon down"

    def test_to_dict(self):
        error = BGDError(ErrorCode.DATABASE_ERROR, "migration failed", details={"exit": 1})
        data = error.to_dict()
        assert data["code"] == "database_error"
        assert data["message"] == "migration failed"
        assert data["details"] == {"exit": 1}
        assert data["suggestion"]


class TestFromException:
    """Tests for translating lower-layer exceptions."""

    @pytest.mark.parametrize(
        "exc, code",
        [
            (FileNotFoundError("missing.yml"), ErrorCode.FILE_NOT_FOUND),
            (PermissionError("denied"), ErrorCode.PERMISSION_DENIED),
            (DockerException("no daemon"), ErrorCode.DOCKER_ERROR),
            (httpx.ConnectError("refused"), ErrorCode.NETWORK_ERROR),
            (RuntimeError("what"), ErrorCode.UNKNOWN),
        ],
    )
    def test_maps_to_code(self, exc, code):
        assert from_exception(exc).code == code

    def test_context_prefix(self):
        error = from_exception(RuntimeError("what"), "Deployment failed")
        assert error.message == "Deployment failed: what"

    def test_bgd_error_passes_through(self):
        original = BGDError(ErrorCode.PORT_CONFLICT, "taken")
        assert from_exception(original) is original

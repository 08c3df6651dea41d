"""
Tests for the container runtime adapter.
"""

import subprocess
from unittest.mock import MagicMock, Mock, patch

import pytest
from docker.errors import APIError, DockerException, NotFound

import bgd_manager.docker_runtime as runtime_module
from bgd_manager.docker_runtime import (
    DockerRuntime,
    get_compose_command,
    project_name,
    reset_compose_command_cache,
)
from bgd_manager.errors import BGDError, ErrorCode
from bgd_manager.models import Slot


@pytest.fixture(autouse=True)
def reset_cache():
    """Reset the compose command cache before each test."""
    reset_compose_command_cache()
    yield
    reset_compose_command_cache()


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestGetComposeCommand:
    """Tests for compose command detection."""

    def test_detects_compose_v2(self):
        with patch("subprocess.run", return_value=MagicMock(returncode=0)) as mock_run:
            assert get_compose_command() == ["docker", "compose"]
            mock_run.assert_called_once_with(
                ["docker", "compose", "version"], capture_output=True, timeout=5
            )

    def test_falls_back_to_compose_v1(self):
        with patch("subprocess.run", return_value=MagicMock(returncode=1)):
            with patch("shutil.which", return_value="/usr/bin/docker-compose"):
                assert get_compose_command() == ["docker-compose"]

    def test_handles_missing_docker_binary(self):
        with patch("subprocess.run", side_effect=FileNotFoundError()):
            with patch("shutil.which", return_value="/usr/bin/docker-compose"):
                assert get_compose_command() == ["docker-compose"]

    def test_raises_when_neither_available(self):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd=[], timeout=5)):
            with patch("shutil.which", return_value=None):
                with pytest.raises(BGDError) as exc_info:
                    get_compose_command()
        assert exc_info.value.code == ErrorCode.DOCKER_ERROR
        assert "timed out" in exc_info.value.message

    def test_result_is_cached(self):
        with patch("subprocess.run", return_value=MagicMock(returncode=0)) as mock_run:
            get_compose_command()
            get_compose_command()
            assert mock_run.call_count == 1
        assert runtime_module._compose_command == ["docker", "compose"]


class TestCompose:
    """Tests for compose operations."""

    @pytest.fixture(autouse=True)
    def compose_v2(self):
        with patch.object(runtime_module, "get_compose_command", return_value=["docker", "compose"]):
            yield

    @pytest.fixture
    def compose_file(self, tmp_path):
        path = tmp_path / "docker-compose.yml"
        path.write_text("services: {}\n")
        return path

    def test_project_name(self):
        assert project_name("shop", Slot.GREEN) == "shop-green"

    def test_compose_up_command(self, tmp_path, compose_file):
        env_file = tmp_path / ".env.green"
        with patch("subprocess.run", return_value=completed()) as mock_run:
            DockerRuntime(workdir=tmp_path).compose_up("shop", Slot.GREEN, [compose_file], env_file)
        cmd = mock_run.call_args[0][0]
        assert cmd == [
            "docker",
            "compose",
            "-p",
            "shop-green",
            "--env-file",
            str(env_file),
            "-f",
            str(compose_file),
            "up",
            "-d",
        ]
        assert mock_run.call_args[1]["cwd"] == str(tmp_path)

    def test_compose_up_missing_file(self, tmp_path):
        with pytest.raises(BGDError) as exc_info:
            DockerRuntime().compose_up("shop", Slot.BLUE, [tmp_path / "nope.yml"], tmp_path / ".env")
        assert exc_info.value.code == ErrorCode.FILE_NOT_FOUND

    def test_compose_up_failure(self, tmp_path, compose_file):
        with patch("subprocess.run", return_value=completed(1, stderr="pull access denied")):
            with pytest.raises(BGDError) as exc_info:
                DockerRuntime().compose_up("shop", Slot.BLUE, [compose_file], tmp_path / ".env")
        assert exc_info.value.code == ErrorCode.ENVIRONMENT_START_FAILED
        assert "pull access denied" in exc_info.value.message

    def test_compose_up_timeout(self, tmp_path, compose_file):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd=[], timeout=1)):
            with pytest.raises(BGDError) as exc_info:
                DockerRuntime().compose_up("shop", Slot.BLUE, [compose_file], tmp_path / ".env", timeout=1)
        assert exc_info.value.code == ErrorCode.ENVIRONMENT_START_FAILED

    def test_compose_down_skips_missing_files(self, tmp_path, compose_file):
        with patch("subprocess.run", return_value=completed()) as mock_run:
            DockerRuntime().compose_down(
                "shop", Slot.BLUE, [compose_file, tmp_path / "gone.yml"], tmp_path / ".env.gone"
            )
        cmd = mock_run.call_args[0][0]
        assert "--env-file" not in cmd
        assert str(tmp_path / "gone.yml") not in cmd
        assert cmd[-2:] == ["down", "--remove-orphans"]

    def test_compose_exec_timeout_propagates(self, tmp_path, compose_file):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd=[], timeout=5)):
            with pytest.raises(subprocess.TimeoutExpired):
                DockerRuntime().compose_exec(
                    "shop", Slot.BLUE, [compose_file], tmp_path / ".env", "app", "npm run migrate", timeout=5
                )


class TestDockerSdk:
    """Tests for docker SDK probes."""

    def container(self, name, service, status="running", health=None, labels=None):
        c = Mock()
        c.name = name
        c.status = status
        c.labels = {"com.docker.compose.service": service, **(labels or {})}
        c.attrs = {"State": {"Health": {"Status": health}} if health else {}}
        return c

    def test_client_from_env(self, mock_docker_client):
        assert DockerRuntime().client is mock_docker_client

    def test_client_unreachable(self):
        with patch("docker.from_env", side_effect=DockerException("no daemon")):
            with pytest.raises(BGDError) as exc_info:
                DockerRuntime().client
        assert exc_info.value.code == ErrorCode.DOCKER_ERROR

    def test_slot_containers(self, mock_docker_client):
        mock_docker_client.containers.list.return_value = [
            self.container("shop-green-app-1", "app", health="healthy", labels={"bgd.version": "1.2.0"}),
            self.container("shop-green-worker-1", "worker", status="exited"),
        ]
        runtime = DockerRuntime()
        infos = runtime.slot_containers("shop", Slot.GREEN)

        mock_docker_client.containers.list.assert_called_once_with(
            all=True, filters={"label": "com.docker.compose.project=shop-green"}
        )
        assert [(i.service, i.state, i.health) for i in infos] == [
            ("app", "running", "healthy"),
            ("worker", "exited", None),
        ]
        assert runtime.is_slot_running("shop", Slot.GREEN)
        assert runtime.slot_version("shop", Slot.GREEN) == "1.2.0"

    def test_ensure_network_exists(self, mock_docker_client):
        mock_docker_client.networks.list.return_value = [Mock()]
        DockerRuntime().ensure_network("shop-network", "shop")
        mock_docker_client.networks.create.assert_not_called()

    def test_ensure_network_race_is_success(self, mock_docker_client):
        mock_docker_client.networks.list.return_value = []
        mock_docker_client.networks.create.side_effect = APIError("network already exists")
        DockerRuntime().ensure_network("shop-network", "shop")

    def test_remove_absent_container(self, mock_docker_client):
        mock_docker_client.containers.get.side_effect = NotFound("gone")
        assert DockerRuntime().remove_container("shop-nginx")

    def test_proxy_state(self, mock_docker_client):
        mock_docker_client.containers.get.side_effect = NotFound("gone")
        assert DockerRuntime().proxy_state("shop-nginx") is None

    def test_start_proxy_uses_host_network(self, mock_docker_client, tmp_path):
        mock_docker_client.containers.get.side_effect = NotFound("gone")
        DockerRuntime().start_proxy("shop-nginx", "nginx:stable-alpine", tmp_path, "nginx.conf", "shop")
        kwargs = mock_docker_client.containers.run.call_args[1]
        assert kwargs["network_mode"] == "host"
        assert kwargs["volumes"] == {str(tmp_path): {"bind": "/etc/bgd", "mode": "ro"}}
        assert kwargs["command"][:3] == ["nginx", "-c", "/etc/bgd/nginx.conf"]

    def test_proxy_exec_decodes_output(self, mock_docker_client):
        mock_docker_client.containers.get.return_value.exec_run.return_value = Mock(
            exit_code=1, output=b"nginx: [emerg] bad"
        )
        assert DockerRuntime().proxy_exec("shop-nginx", ["nginx", "-t"]) == (1, "nginx: [emerg] bad")

    def test_prune(self, mock_docker_client):
        mock_docker_client.images.prune.return_value = {"ImagesDeleted": [{"Deleted": "sha"}]}
        mock_docker_client.volumes.prune.return_value = {"VolumesDeleted": None}
        mock_docker_client.networks.prune.return_value = {}
        summary = DockerRuntime().prune("shop", 24)
        assert summary == {"images": 1, "volumes": 0, "networks": 0}
        mock_docker_client.images.prune.assert_called_once_with(
            filters={"dangling": True, "until": "24h"}
        )

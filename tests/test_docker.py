"""Tests for the docker CLI wrappers."""

import json
import subprocess

import pytest

from hr_agent.integrations import docker as docker_mod
from hr_agent.integrations.docker import DockerError, DockerRuntime


class FakeRun:
    """Records docker invocations and replays canned results."""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.stdout = ""
        self.error: Exception | None = None

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        if self.error:
            raise self.error
        return subprocess.CompletedProcess(cmd, 0, stdout=self.stdout, stderr="")


@pytest.fixture
def fake_run(monkeypatch):
    fake = FakeRun()
    monkeypatch.setattr(docker_mod.subprocess, "run", fake)
    return fake


@pytest.fixture
def docker():
    return DockerRuntime("hr-agent/coding-agent:latest", network="hr-agent")


class TestRunDocker:
    def test_returns_stripped_stdout(self, fake_run):
        fake_run.stdout = "abc123\n"
        assert docker_mod.run_docker(["ps"]) == "abc123"
        assert fake_run.calls == [["docker", "ps"]]

    def test_command_failure(self, fake_run):
        fake_run.error = subprocess.CalledProcessError(1, ["docker"], stderr="daemon down\n")
        with pytest.raises(DockerError, match="daemon down"):
            docker_mod.run_docker(["ps"])

    def test_timeout(self, fake_run):
        fake_run.error = subprocess.TimeoutExpired(["docker"], 5)
        with pytest.raises(DockerError, match="timed out"):
            docker_mod.run_docker(["ps"], timeout=5)

    def test_missing_executable(self, fake_run):
        fake_run.error = FileNotFoundError("docker")
        with pytest.raises(DockerError, match="not found"):
            docker_mod.run_docker(["ps"])


class TestDockerRuntime:
    def test_list_containers_filters_prefix(self, docker, fake_run):
        fake_run.stdout = "\n".join([
            json.dumps({"ID": "a1", "Names": "hra_1", "State": "running", "Status": "Up 2 minutes"}),
            json.dumps({"ID": "b2", "Names": "other_hra_2", "State": "exited"}),
            json.dumps({"ID": "c3", "Names": "hra_3", "State": "Exited"}),
        ])
        containers = docker.list_containers()
        assert [(c.id, c.name, c.state) for c in containers] == [
            ("a1", "hra_1", "running"),
            ("c3", "hra_3", "exited"),
        ]
        assert containers[0].running
        assert "name=hra_" in fake_run.calls[0]

    def test_create_container(self, docker, fake_run):
        fake_run.stdout = "f00d\n"
        assert docker.create_container("hra_4", source_ref="main") == "f00d"
        cmd = fake_run.calls[0]
        assert cmd[:5] == ["docker", "run", "-d", "--name", "hra_4"]
        assert "--network" in cmd
        assert "SOURCE_REF=main" in cmd
        assert cmd[-1] == "hr-agent/coding-agent:latest"

    def test_inspect_container(self, docker, fake_run):
        fake_run.stdout = json.dumps([{"Id": "f00d", "Name": "/hra_4", "State": {"Status": "running"}}])
        info = docker.inspect_container("hra_4")
        assert info.id == "f00d"
        assert info.name == "hra_4"
        assert info.running

    def test_inspect_missing_container(self, docker, fake_run):
        fake_run.error = subprocess.CalledProcessError(1, ["docker"], stderr="No such container: hra_9")
        assert docker.inspect_container("hra_9") is None

    def test_delete_missing_container_is_ignored(self, docker, fake_run):
        fake_run.error = subprocess.CalledProcessError(1, ["docker"], stderr="No such container: hra_9")
        docker.delete_container("hra_9")
        assert fake_run.calls == [["docker", "rm", "-f", "-v", "hra_9"]]

    def test_delete_other_failures_raise(self, docker, fake_run):
        fake_run.error = subprocess.CalledProcessError(1, ["docker"], stderr="permission denied")
        with pytest.raises(DockerError):
            docker.delete_container("hra_9")

    def test_start_and_stop(self, docker, fake_run):
        docker.stop_container("hra_4")
        docker.start_container("hra_4")
        assert fake_run.calls == [["docker", "stop", "hra_4"], ["docker", "start", "hra_4"]]

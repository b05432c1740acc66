"""
Shared fixtures: a fake Docker API, settings and a temp workspace under tmp_path.
"""
import io

import pytest

from fakes import ALPINE_FILES, FakeAPIClient
from kiln.config import Settings
from kiln.MANAGERS.cleanup_registry import CleanupRegistry
from kiln.MODELS.run_context import RunContext
from kiln.REGISTRY.registry_auth import DockerConfig
from kiln.UTILS.docker_util import DockerUtil
from kiln.UTILS.temp_dir import TempWorkspace


@pytest.fixture
def api():
    fake = FakeAPIClient()
    fake.add_image("alpine:latest", files=ALPINE_FILES)
    return fake


@pytest.fixture
def util(api):
    return DockerUtil(api=api, cgroup_content="", docker_host="")


@pytest.fixture
def settings(tmp_path):
    return Settings(host_arch="amd64", temp_dir=str(tmp_path / "kiln-tmp"), stop_timeout=1)


@pytest.fixture
def workspace(tmp_path):
    return TempWorkspace(base_dir=str(tmp_path / "kiln-tmp"))


@pytest.fixture
def docker_config(tmp_path):
    return DockerConfig(config_path=str(tmp_path / "docker-config.json"))


@pytest.fixture
def registry():
    found = CleanupRegistry()
    # keep pytest's own signal handlers
    found._installed = True
    return found


@pytest.fixture
def run_ctx():
    return RunContext(stdout=io.StringIO(), stderr=io.StringIO(), current_os="linux")

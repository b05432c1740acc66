# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for running scripts on the host.
"""
import os

import pytest

from kiln.errors import CommandFailedError
from kiln.RUNNERS.host_runner import HostCommandRunner


@pytest.fixture
def runner(tmp_path):
    return HostCommandRunner(temp_dir=str(tmp_path))


class TestHostCommandRunner:
    """Tests for HostCommandRunner."""

    def test_output_and_env(self, runner, tmp_path):
        """Test that output is captured and the env file is removed."""
        result = runner.exec_command_and_log("test", "export COLOR=blue; echo out; echo err >&2",
                                             env=["SHAPE=round"])
        assert "out\n" in result.output
        assert "err\n" in result.output
        assert "COLOR=blue" in result.env
        assert "SHAPE=round" in result.env
        assert result.pid > 0
        assert os.listdir(tmp_path) == []

    def test_failure(self, runner):
        with pytest.raises(CommandFailedError) as exc_info:
            runner.exec_command_and_log("test", "exit 4")
        assert exc_info.value.exit_code == 4
        assert exc_info.value.command == "exit 4"

    def test_exec_command(self, runner, tmp_path):
        assert runner.exec_command("pwd", work_dir=str(tmp_path)).strip() == str(tmp_path)

    def test_exec_command_failure(self, runner):
        with pytest.raises(CommandFailedError):
            runner.exec_command("false")

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
Execution of step scripts on the host system, capturing output and the environment
the script leaves behind.
"""
import os
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from typing import IO, List, Optional

from ..errors import CommandFailedError
from ..logger import logger
from ..PARSERS.env_parser import EnvParser


@dataclass
class HostExecResult:
    pid: int = 0
    exit_code: int = 0
    env: List[str] = field(default_factory=list)
    output: str = ""


class HostCommandRunner:
    """
    Runs shell scripts through ``sh -c``, one process per script.
    """
    def __init__(self, shell: str = "sh", temp_dir: str = "/tmp"):
        """
        Initializes the host runner.

        Args:
            shell (str): Shell executing the scripts.
            temp_dir (str): Directory receiving the environment dump of each script.
        """
        self.shell = shell
        self.temp_dir = temp_dir

    def _prepare_command(self, script: str, env_file: str) -> List[str]:
        return [self.shell, "-c", f'trap "env > {env_file}" EXIT; {script}']

    def _environment(self, env: Optional[List[str]]) -> Optional[dict]:
        if not env:
            return None
        merged = dict(os.environ)
        merged.update(EnvParser.to_map(env))
        return merged

    def exec_command_and_log(self, subject: str, script: str, work_dir: Optional[str] = None,
                             env: Optional[List[str]] = None) -> HostExecResult:
        """
        Runs a script, logging every output line under ``subject``.

        Args:
            subject (str): Name the output lines are logged with.
            script (str): Shell script to run.
            work_dir (Optional[str]): Directory to start the script in.
            env (Optional[List[str]]): ``KEY=VALUE`` entries added to the host environment.

        Returns:
            HostExecResult: Pid, exit code, captured output and the resulting environment.
        """
        env_file = os.path.join(self.temp_dir, f"{uuid.uuid4()}.env")
        if work_dir and not os.path.exists(work_dir):
            os.makedirs(work_dir, exist_ok=True)

        logger.debug("Executing script on host", subject=subject, script=script)
        process = subprocess.Popen(
            self._prepare_command(script, env_file),
            env=self._environment(env),
            cwd=work_dir or None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            shell=False,
        )
        captured: List[str] = []
        lock = threading.Lock()
        readers = [
            threading.Thread(target=self._drain, args=(process.stdout, subject, False, captured, lock)),
            threading.Thread(target=self._drain, args=(process.stderr, subject, True, captured, lock)),
        ]
        for reader in readers:
            reader.start()
        exit_code = process.wait()
        for reader in readers:
            reader.join()

        result = HostExecResult(pid=process.pid, exit_code=exit_code, output="".join(captured))
        if os.path.exists(env_file):
            with open(env_file, "r") as f:
                result.env = EnvParser.parse_env_output(f.read())
            os.remove(env_file)
        if exit_code != 0:
            raise CommandFailedError(script, exit_code)
        return result

    @staticmethod
    def _drain(stream: IO[str], subject: str, is_err: bool, captured: List[str], lock: threading.Lock) -> None:
        for line in iter(stream.readline, ""):
            with lock:
                captured.append(line)
            if is_err:
                logger.warning(f"ERR: {line.rstrip()}", subject=subject)
            else:
                logger.info(line.rstrip(), subject=subject)
        stream.close()

    def exec_command(self, script: str, work_dir: Optional[str] = None) -> str:
        """Runs a script and returns its combined output."""
        completed = subprocess.run(
            [self.shell, "-c", script],
            cwd=work_dir or None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            shell=False,
        )
        if completed.returncode != 0:
            raise CommandFailedError(script, completed.returncode)
        return completed.stdout

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
Registry credentials from the user's Docker configuration.
Reads ~/.docker/config.json, resolves per-registry auth (including credential helpers)
and can materialize a standalone config.json for injection into containers.
"""

import base64
import json
import os
from typing import Dict, List, Optional

from docker import auth as docker_auth

from ..logger import logger
from .image_reference import ImageReference


def default_config_path() -> str:
    return os.path.join(os.path.expanduser("~"), ".docker", "config.json")


class DockerConfig:
    """
    The Docker client configuration of the current user.

    Args:
        config_path: Location of config.json. Defaults to ~/.docker/config.json.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or default_config_path()
        self._auth_config: Optional[docker_auth.AuthConfig] = None

    def exists(self) -> bool:
        return os.path.isfile(self.config_path)

    @property
    def auth_config(self) -> docker_auth.AuthConfig:
        if self._auth_config is None:
            self._auth_config = docker_auth.load_config(config_path=self.config_path)
        return self._auth_config

    def resolve_auth(self, reference: str) -> Optional[Dict[str, str]]:
        """
        Credentials for the registry hosting ``reference``.

        Returns:
            An auth dict (username, password, serveraddress) or None when nothing is configured.
        """
        registry, _ = docker_auth.resolve_repository_name(ImageReference.parse(reference).repository_name)
        return self.auth_config.resolve_authconfig(registry)

    def auth_header(self, reference: str) -> Optional[str]:
        """Value of the X-Registry-Auth header for ``reference``."""
        resolved = self.resolve_auth(reference)
        if not resolved:
            return None
        header = docker_auth.encode_header(resolved)
        return header.decode("ascii") if isinstance(header, bytes) else header

    def resolve_all(self) -> Dict[str, Dict[str, str]]:
        """Credentials of every registry, including those kept by credential helpers."""
        return self.auth_config.get_all_credentials()

    def dump_to_file(self, directory: str) -> str:
        """
        Writes a config.json containing resolved credentials only, without helper references.

        Args:
            directory: Directory receiving the file.

        Returns:
            Path of the written file.
        """
        auths: Dict[str, Dict[str, str]] = {}
        for registry, creds in self.resolve_all().items():
            creds = creds or {}
            username = creds.get("Username") or creds.get("username")
            if not username:
                continue
            password = creds.get("Password") or creds.get("password") or ""
            token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
            auths[registry] = {"auth": token}
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, "config.json")
        with open(path, "w") as f:
            json.dump({"auths": auths}, f, indent=2)
        logger.debug("Dumped Docker credentials", path=path, registries=sorted(auths))
        return path


def auth_configs_for(config: DockerConfig, references: List[str]) -> Dict[str, Dict[str, str]]:
    """Resolved auth keyed by registry for each reference that has credentials."""
    result = {}
    for reference in references:
        resolved = config.resolve_auth(reference)
        if resolved:
            registry, _ = docker_auth.resolve_repository_name(ImageReference.parse(reference).repository_name)
            result[registry] = resolved
    return result

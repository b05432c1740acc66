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
Image reference parsing and handling.
Parses Docker image references like 'nginx:latest' or 'registry.local:5000/team/app:1.2'.
"""

from typing import Optional, Tuple
from dataclasses import dataclass


def split_name_tag(reference: str) -> Tuple[str, str]:
    """
    Splits a reference into its name and tag without normalizing the registry.

    Examples:
        - alpine -> ('alpine', 'latest')
        - localhost:5000/app:v1 -> ('localhost:5000/app', 'v1')
        - app@sha256:abc -> ('app', 'latest')
    """
    if "@" in reference:
        reference = reference.split("@", 1)[0]
    last_colon = reference.rfind(":")
    if last_colon != -1 and "/" not in reference[last_colon + 1:]:
        return reference[:last_colon], reference[last_colon + 1:]
    return reference, ImageReference.DEFAULT_TAG


@dataclass
class ImageReference:
    """
    Parsed Docker image reference.

    Examples:
        - nginx -> docker.io/library/nginx:latest
        - myuser/myimage:v1 -> docker.io/myuser/myimage:v1
        - gcr.io/project/image@sha256:abc123... -> gcr.io/project/image@sha256:abc123...
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse a Docker image reference string.

        Args:
            reference: Image reference string (e.g., 'nginx:latest', 'myuser/myimage:v1')

        Returns:
            Parsed ImageReference object.
        """
        if not reference:
            raise ValueError("Empty image reference")

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)

        tag = None
        name, parsed_tag = split_name_tag(reference)
        if name != reference:
            reference, tag = name, parsed_tag

        parts = reference.split("/")
        first_part = parts[0]
        if len(parts) > 1 and ("." in first_part or ":" in first_part or first_part == "localhost"):
            registry = first_part
            repository = "/".join(parts[1:])
        else:
            registry = cls.DEFAULT_REGISTRY
            repository = reference if len(parts) > 1 else f"library/{reference}"

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        if self.tag:
            return f"{name}:{self.tag}"
        return name

    @property
    def short_name(self) -> str:
        """Name as users type it: without the default registry and the 'library/' prefix."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[8:]
        if self.digest:
            return f"{repo}@{self.digest}"
        if self.tag:
            return f"{repo}:{self.tag}"
        return repo

    @property
    def repository_name(self) -> str:
        """Repository without tag or digest, as passed to pull and push calls."""
        if self.registry != self.DEFAULT_REGISTRY:
            return f"{self.registry}/{self.repository}"
        if self.repository.startswith("library/"):
            return self.repository[8:]
        return self.repository

    def __str__(self) -> str:
        return self.short_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"

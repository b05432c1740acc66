"""
Builds and pushes images from a Dockerfile, reusing images built from an identical
configuration.
"""
import hashlib
import json
import os
from typing import Dict, List, Optional

from ..errors import BuildError, PushError
from ..logger import logger
from ..MODELS.labels import LABEL_BUILD_CONFIG_HASH
from ..MODELS.response_message import ResponseMessage, TagDigest
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..PROTOCOL.message_reader import MessageReader, reusing_image_reader
from ..REGISTRY.image_reference import split_name_tag
from ..REGISTRY.registry_auth import DockerConfig
from ..UTILS.concurrency import ReadWriteLock
from ..UTILS.docker_util import DockerUtil


class Dockerfile:
    """
    A Dockerfile build record.

    :param file_path: Path of the Dockerfile.
    :param tags: Tags applied to the built image; the first one is passed to the build.
    :param context_path: Build context; the Dockerfile's directory when empty.
    :param util: Docker helpers; a client from the environment when omitted.
    """
    def __init__(self, file_path: str, tags: Optional[List[str]] = None, context_path: str = "",
                 args: Optional[Dict[str, str]] = None, labels: Optional[Dict[str, str]] = None,
                 util: Optional[DockerUtil] = None, docker_config: Optional[DockerConfig] = None):
        self.file_path = file_path
        self.context_path = context_path
        self.tags: List[str] = list(tags or [])
        self.args: Dict[str, str] = dict(args or {})
        self.labels: Dict[str, str] = dict(labels or {})
        self.disable_no_cache = False
        self.reuse_images_with_same_cfg = False
        self.disable_pull = False
        self.skip_hash_label = False
        self.id = ""
        self.tag_digests: Dict[str, TagDigest] = {}
        self._digests_lock = ReadWriteLock()
        self._util = util
        self.docker_config = docker_config or DockerConfig()
        self.parser = DockerfileParser()

    @property
    def util(self) -> DockerUtil:
        if self._util is None:
            self._util = DockerUtil()
        return self._util

    def is_valid(self) -> bool:
        return self.parser.is_valid(self.file_path)

    def calc_config_hash(self) -> str:
        """md5 over the Dockerfile content, context path, args, tags and labels."""
        with open(self.file_path, "rb") as f:
            content = f.read()
        payload = json.dumps(
            [content.decode("utf-8", errors="replace"), self.context_path, self.args, self.tags, self.labels],
            sort_keys=True,
        )
        return hashlib.md5(payload.encode("utf-8")).hexdigest()

    def _build_paths(self):
        if not self.context_path:
            return os.path.dirname(os.path.abspath(self.file_path)), os.path.basename(self.file_path)
        if os.path.isabs(self.file_path):
            relative = os.path.relpath(self.file_path, self.context_path)
            if relative.startswith(".."):
                raise BuildError(f"specified Dockerfile '{self.file_path}' is not within context path '{self.context_path}'")
            return self.context_path, relative
        return self.context_path, self.file_path

    def build(self) -> MessageReader:
        """
        Starts the build and returns a reader over its output.

        :return: A MessageReader completing after the build stream ends.
        """
        config_hash = self.calc_config_hash()
        if self.reuse_images_with_same_cfg:
            for image in self.util.find_images_by_label(LABEL_BUILD_CONFIG_HASH, config_hash):
                self.id = image["Id"]
                logger.info("Reusing Docker image", image=self.id, dockerfile=self.file_path)
                return reusing_image_reader(self.id)

        labels = dict(self.labels)
        if not self.skip_hash_label:
            labels[LABEL_BUILD_CONFIG_HASH] = config_hash
        context_path, dockerfile = self._build_paths()
        # fails early on a Dockerfile without FROM
        self.parser.parse_from(self.file_path)

        logger.debug("Building image", dockerfile=self.file_path, context=context_path, tags=self.tags)
        chunks = self.util.api.build(
            path=context_path,
            dockerfile=dockerfile,
            tag=self.tags[0] if self.tags else None,
            nocache=not self.disable_no_cache,
            pull=not self.disable_pull,
            rm=True,
            forcerm=True,
            buildargs=self.args or None,
            labels=labels,
            decode=False,
        )
        reader = MessageReader(expected_eofs=1)
        reader.feed_in_background(chunks, on_message=lambda message: self._process_message(message, ""))
        return reader

    def push(self) -> MessageReader:
        """
        Pushes every tag concurrently into one reader completing after all pushes ended.
        """
        if not self.tags:
            raise PushError("no tags provided, hence could not push image")
        reader = MessageReader(expected_eofs=len(self.tags))
        for full_tag in self.tags:
            name, tag = split_name_tag(full_tag)
            chunks = self.util.api.push(
                name, tag=tag, stream=True, decode=False, auth_config=self.docker_config.resolve_auth(full_tag),
            )
            reader.feed_in_background(chunks, on_message=lambda message, t=full_tag: self._process_message(message, t))
        return reader

    def _process_message(self, message: ResponseMessage, full_tag: str) -> None:
        aux = message.aux
        if aux is None:
            return
        if aux.id:
            self.id = aux.id
            self._apply_extra_tags()
        elif aux.tag and aux.digest:
            with self._digests_lock.write_locked():
                self.tag_digests[full_tag] = TagDigest(tag=aux.tag, digest=aux.digest, size=aux.size)

    def _apply_extra_tags(self) -> None:
        for full_tag in self.tags[1:]:
            name, tag = split_name_tag(full_tag)
            self.util.api.tag(self.id, name, tag)

    def get_tag_digest(self, full_tag: str) -> Optional[TagDigest]:
        with self._digests_lock.read_locked():
            return self.tag_digests.get(full_tag)

    def build_and_wait(self, output=None) -> str:
        """Runs the build to completion and returns the image id."""
        try:
            self.build().listen(output=output)
        except Exception as e:
            raise BuildError(f"failed to build image from {self.file_path}: {e}") from e
        return self.id

    def push_and_wait(self, output=None) -> Dict[str, TagDigest]:
        try:
            self.push().listen(output=output)
        except Exception as e:
            raise PushError(f"failed to push {', '.join(self.tags)}: {e}") from e
        with self._digests_lock.read_locked():
            return dict(self.tag_digests)

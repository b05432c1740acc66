"""
Builders for the derived build image: the base image plus the preparation every
container of a session needs (symlink cleanup under volume targets, user provisioning,
package installs and, for the add approach, the volume contents themselves).
"""
import os
import shutil
import uuid
from typing import Dict, List, Optional

from jinja2 import Template

from ..errors import InvalidVolumeError
from ..logger import logger
from ..MANAGERS.volume_manager import VolumeStrategy, strategy_for
from ..MODELS.labels import LABEL_CONFIG_HASH, LABEL_RUN_ID
from ..MODELS.run_context import RunContext
from ..MODELS.volume import Volume, VolumeApproach
from ..REGISTRY.image_reference import split_name_tag
from ..UTILS.docker_util import DockerUtil
from ..UTILS.streams import PrefixWriter
from ..UTILS.temp_dir import TempWorkspace
from .dockerfile import Dockerfile

DERIVED_DOCKERFILE_TEMPLATE = """FROM {{ reference }}
USER root
RUN set -e; \\
{% for bind in binds %}
[ -L "{{ bind.cont_path }}" ] && [ -e "{{ bind.cont_path }}" ] && rm -f {{ bind.cont_path }} || true; \\
{% if bind.parent_dir %}
mkdir -p "{{ bind.parent_dir }}" || true; \\
{% endif %}
{% endfor %}
{% for path in mount_paths %}
[ -L "{{ path }}" ] && [ -e "{{ path }}" ] && rm -f {{ path }} || true; \\
{% endfor %}
{% for command in build_commands %}
{{ command }}; \\
{% endfor %}
echo OK;
{% for entry in added %}
ADD {{ entry.source }} {{ entry.cont_path }}
{% if chown_user %}
RUN chown -R {{ verbose }} {{ chown_user }}:{{ chown_user }} {{ entry.cont_path }} || true
{% endif %}
{% endfor %}
"""


class DerivedImageBuilder:
    """
    Renders and builds the per-session image on top of a base image.

    :param util: Docker helpers used for the label lookup and the build.
    :param workspace: Process temp workspace hosting the build context.
    :param run_id: Run identifier, part of the tag and of the labels.
    :param reference: Base image reference.
    :param config_hash: Session config hash; images labeled with it are reused.
    :param strategy: Handler of the session's volume approach.
    :param disable_cache: Always build, never reuse.
    """
    def __init__(self, util: DockerUtil, workspace: TempWorkspace, run_id: str, reference: str,
                 config_hash: str, strategy: Optional[VolumeStrategy] = None, disable_cache: bool = False):
        self.util = util
        self.workspace = workspace
        self.run_id = run_id
        self.reference = reference
        self.config_hash = config_hash
        self.strategy = strategy or strategy_for(VolumeApproach.BIND)
        self.disable_cache = disable_cache
        self.template = Template(DERIVED_DOCKERFILE_TEMPLATE, trim_blocks=True, lstrip_blocks=True)

    def derived_tag(self) -> str:
        name, tag = split_name_tag(self.reference)
        return f"ab-{name}-{self.run_id}:{tag}".lower()

    def find_existing(self) -> str:
        """Id of an image already built for the same config hash, or an empty string."""
        for image in self.util.find_images_by_label(LABEL_CONFIG_HASH, self.config_hash):
            return image["Id"]
        return ""

    def render(self, run_ctx: RunContext, binds: List[Volume], mounts: List[Volume],
               build_commands: List[str], added: Optional[List[Dict[str, str]]] = None) -> str:
        """
        Renders the Dockerfile text.

        :param binds: Host volumes of the session.
        :param mounts: Named volumes of the session.
        :param build_commands: Shell commands run as root while building.
        :param added: ``{"source", "cont_path"}`` entries emitted as ADD instructions.
        :return: The Dockerfile content.
        """
        bind_entries = [
            {"cont_path": volume.cont_path, "parent_dir": self.strategy.bind_parent_dir(volume)} for volume in binds
        ]
        chown_user = run_ctx.user if run_ctx.user not in ("", "root") else ""
        return self.template.render(
            reference=self.reference,
            binds=bind_entries,
            mount_paths=[volume.cont_path for volume in mounts],
            build_commands=build_commands,
            added=added or [],
            chown_user=chown_user,
            verbose=run_ctx.verbose_flag("-v"),
        )

    def stage_volumes(self, run_ctx: RunContext, context_dir: str, binds: List[Volume]) -> List[Dict[str, str]]:
        """
        Copies bind volume contents into ``<context>/tmp`` so the image can ADD them.
        """
        staging_dir = os.path.join(context_dir, "tmp")
        os.makedirs(staging_dir, exist_ok=True)
        added = []
        for volume in binds:
            if not os.path.exists(volume.host_path):
                raise InvalidVolumeError(f"path {volume.host_path} does not exist on the host")
            target = os.path.join(staging_dir, uuid.uuid4().hex[:10])
            if os.path.isdir(volume.host_path):
                shutil.copytree(volume.host_path, target, symlinks=True)
            else:
                shutil.copy2(volume.host_path, target)
            run_ctx.debug_log("Staged volume for image", host_path=volume.host_path, staged=target)
            added.append({"source": os.path.relpath(target, context_dir), "cont_path": volume.cont_path})
        return added

    def build(self, run_ctx: RunContext, binds: List[Volume], mounts: List[Volume],
              build_commands: List[str], extra_labels: Optional[Dict[str, str]] = None) -> str:
        """
        Returns the id of the derived image, reusing a cached one unless caching is disabled.
        """
        image_id = self.find_existing()
        if image_id and not self.disable_cache:
            run_ctx.debug_log("Reusing existing image with the same hash", image=image_id)
            return image_id
        if self.disable_cache:
            run_ctx.debug_log("Use of cached build image is disabled")

        context_dir = self.workspace.mkdtemp(prefix=self.run_id)
        try:
            added = self.strategy.image_additions(self, run_ctx, context_dir, binds)
            content = self.render(run_ctx, binds, mounts, build_commands, added)
            run_ctx.debug_log("Derived Dockerfile", content=content)
            dockerfile_path = os.path.join(context_dir, "Dockerfile")
            with open(dockerfile_path, "w") as f:
                f.write(content)

            tag = self.derived_tag()
            logger.debug("Building derived image", tag=tag, base=self.reference)
            labels = {LABEL_RUN_ID: self.run_id, LABEL_CONFIG_HASH: self.config_hash}
            labels.update(extra_labels or {})
            dockerfile = Dockerfile(dockerfile_path, tags=[tag], context_path=context_dir, labels=labels, util=self.util)
            dockerfile.disable_no_cache = not self.disable_cache
            dockerfile.reuse_images_with_same_cfg = not self.disable_cache
            dockerfile.disable_pull = True
            output = PrefixWriter(run_ctx.stdout, run_ctx.prefix) if run_ctx.is_debug() else None
            return dockerfile.build_and_wait(output=output)
        finally:
            shutil.rmtree(context_dir, ignore_errors=True)

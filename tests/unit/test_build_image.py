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
Unit tests for the derived build image.
"""
import os

import pytest

from kiln.BUILDERS.build_image import DerivedImageBuilder
from kiln.errors import InvalidVolumeError
from kiln.MANAGERS.volume_manager import strategy_for
from kiln.MODELS.labels import LABEL_CONFIG_HASH, LABEL_RUN_ID
from kiln.MODELS.volume import Volume, VolumeApproach


def _builder(util, workspace, config_hash="hash-1", approach=VolumeApproach.BIND, disable_cache=False):
    return DerivedImageBuilder(util, workspace, "t1", "alpine:latest", config_hash,
                               strategy=strategy_for(approach), disable_cache=disable_cache)


class TestRender:
    """Tests for the derived Dockerfile text."""

    def test_render_base(self, util, workspace, run_ctx):
        """Test the fixed parts and symlink cleanup of bind targets."""
        content = _builder(util, workspace).render(
            run_ctx, [Volume.parse("/src:/app")], [Volume(name="cache", cont_path="/cache")], ["apk add git"])
        lines = content.splitlines()
        assert lines[0] == "FROM alpine:latest"
        assert lines[1] == "USER root"
        assert '[ -L "/app" ] && [ -e "/app" ] && rm -f /app || true; \\' in lines
        assert '[ -L "/cache" ] && [ -e "/cache" ] && rm -f /cache || true; \\' in lines
        assert "apk add git; \\" in lines
        assert lines[-1] == "echo OK;"

    def test_render_external_file_parent(self, util, workspace, run_ctx, tmp_path):
        """Test that file binds of the external approach get their parent directory."""
        host_file = tmp_path / "settings.xml"
        host_file.write_text("<settings/>")
        builder = _builder(util, workspace, approach=VolumeApproach.EXTERNAL)
        content = builder.render(run_ctx, [Volume(host_path=str(host_file), cont_path="/root/.m2/settings.xml")],
                                 [], [])
        assert 'mkdir -p "/root/.m2" || true; \\' in content

    def test_render_added_with_chown(self, util, workspace, run_ctx):
        """Test ADD instructions and ownership for a non-root user."""
        run_ctx.user = "builder"
        content = _builder(util, workspace).render(run_ctx, [], [], [],
                                                   [{"source": "tmp/abc", "cont_path": "/data"}])
        assert "ADD tmp/abc /data" in content
        assert "RUN chown -R  builder:builder /data || true" in content

    def test_derived_tag(self, util, workspace):
        assert _builder(util, workspace).derived_tag() == "ab-alpine-t1:latest"


class TestBuild:
    """Tests for DerivedImageBuilder.build."""

    def test_build_labels(self, api, util, workspace, run_ctx):
        """Test that the derived image carries run id and config hash."""
        image_id = _builder(util, workspace).build(run_ctx, [], [], [])
        labels = api.images_store[image_id].labels
        assert labels[LABEL_RUN_ID] == "t1"
        assert labels[LABEL_CONFIG_HASH] == "hash-1"
        assert api.tags["ab-alpine-t1:latest"] == image_id

    def test_cached_image_reused(self, api, util, workspace, run_ctx):
        """Test that the same hash does not build again."""
        first = _builder(util, workspace).build(run_ctx, [], [], [])
        second = _builder(util, workspace).build(run_ctx, [], [], [])
        assert first == second
        assert len(api.calls_of("build")) == 1

    def test_disable_cache_rebuilds(self, api, util, workspace, run_ctx):
        _builder(util, workspace).build(run_ctx, [], [], [])
        _builder(util, workspace, disable_cache=True).build(run_ctx, [], [], [])
        assert len(api.calls_of("build")) == 2

    def test_changed_hash_rebuilds(self, api, util, workspace, run_ctx):
        first = _builder(util, workspace, config_hash="hash-1").build(run_ctx, [], [], [])
        second = _builder(util, workspace, config_hash="hash-2").build(run_ctx, [], [], [])
        assert first != second
        assert len(api.calls_of("build")) == 2

    def test_add_approach_bakes_volumes(self, api, util, workspace, run_ctx, tmp_path):
        """Test that the add approach puts volume contents into the image."""
        source = tmp_path / "project"
        source.mkdir()
        (source / "main.c").write_text("int main;")
        image_id = _builder(util, workspace, approach=VolumeApproach.ADD).build(
            run_ctx, [Volume(host_path=str(source), cont_path="/src")], [], [])
        assert api.images_store[image_id].files["/src/main.c"] == b"int main;"
        assert "ADD tmp/" in api.built_dockerfiles[0]

    def test_add_missing_host_path(self, util, workspace, run_ctx, tmp_path):
        with pytest.raises(InvalidVolumeError):
            _builder(util, workspace, approach=VolumeApproach.ADD).build(
                run_ctx, [Volume(host_path=str(tmp_path / "absent"), cont_path="/src")], [], [])

    def test_context_removed(self, util, workspace, run_ctx):
        """Test that the temporary build context is deleted afterwards."""
        _builder(util, workspace).build(run_ctx, [], [], [])
        assert os.listdir(workspace.path) == []

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
Unit tests for root filesystem staging.
"""
import io
import os
import stat
import tarfile

import pytest
from conftest import make_layer
from d2w.exceptions import StagingError
from d2w.ISOLATION.rootfs_stager import DEVICE_NODES, RootfsStager, StagedRoot
from d2w.MODELS.container_spec import VolumeMount
from d2w.MODELS.runtime_settings import RuntimeSettings


@pytest.fixture
def stager(tmp_path):
    staging = tmp_path / "staging"
    staging.mkdir()
    return RootfsStager(RuntimeSettings(staging_dir=str(staging)))


class TestStagedRoot:
    """Tests for StagedRoot."""

    def test_cleanup_is_idempotent(self):
        root = StagedRoot("abc")
        path = root.path
        assert path.is_dir()
        root.cleanup()
        root.cleanup()
        assert root.closed
        assert not path.exists()

    def test_context_manager_removes_tree(self):
        with StagedRoot("abc") as root:
            path = root.path
        assert not path.exists()

    def test_resolve_strips_absolute_prefix(self):
        with StagedRoot("abc") as root:
            assert root.resolve("/etc/hostname") == root.path.resolve() / "etc" / "hostname"

    def test_resolve_rejects_traversal(self):
        with StagedRoot("abc") as root:
            with pytest.raises(StagingError):
                root.resolve("../../etc/passwd")

    def test_resolve_rejects_symlink_escape(self, tmp_path):
        with StagedRoot("abc") as root:
            os.symlink(str(tmp_path), root.path / "escape")
            with pytest.raises(StagingError):
                root.resolve("/escape/file")


class TestRootfsStager:
    """Tests for RootfsStager."""

    def test_create_layout(self, stager, make_spec):
        spec = make_spec()
        with stager.create(spec) as root:
            for d in ("bin", "etc", "tmp", "usr/local", "var/log", "dev/pts"):
                assert (root.path / d).is_dir()
            for name in DEVICE_NODES:
                assert (root.path / "dev" / name).is_file()

    def test_hostname_file_is_exact(self, stager, make_spec):
        spec = make_spec()
        with stager.create(spec) as root:
            assert (root.path / "etc" / "hostname").read_text() == spec.id

    def test_hostname_file_for_short_id(self, stager, make_spec):
        spec = make_spec().model_copy(update={"id": "abc", "hostname": "abc"})
        with stager.create(spec) as root:
            assert (root.path / "etc" / "hostname").read_text() == "abc"
            assert "127.0.1.1\tabc\n" in (root.path / "etc" / "hosts").read_text()

    def test_resolv_conf(self, stager, make_spec):
        with stager.create(make_spec()) as root:
            content = (root.path / "etc" / "resolv.conf").read_text()
        assert content == "nameserver 8.8.8.8\nnameserver 8.8.4.4\n"

    def test_root_under_staging_dir(self, stager, make_spec):
        with stager.create(make_spec()) as root:
            assert str(root.path).startswith(stager.settings.staging_dir)

    def test_layers_applied_in_order(self, stager, make_spec, tmp_path):
        first = make_layer(tmp_path, "0.tar.gz", {"app/config": b"one", "app/keep": b"keep"})
        second = make_layer(tmp_path, "1.tar.gz", {"app/config": b"two"})
        spec = make_spec()
        with stager.create(spec) as root:
            stager.apply_layer(root, first)
            stager.apply_layer(root, second)
            assert (root.path / "app" / "config").read_bytes() == b"two"
            assert (root.path / "app" / "keep").read_bytes() == b"keep"
            assert root.layers == [first, second]

    def test_whiteout_removes_lower_file(self, stager, make_spec, tmp_path):
        lower = make_layer(tmp_path, "0.tar.gz", {"app/a": b"a", "app/b": b"b"})
        upper = make_layer(tmp_path, "1.tar.gz", {"app/.wh.a": b""})
        with stager.create(make_spec()) as root:
            stager.apply_layer(root, lower)
            stager.apply_layer(root, upper)
            assert not (root.path / "app" / "a").exists()
            assert not (root.path / "app" / ".wh.a").exists()
            assert (root.path / "app" / "b").exists()

    def test_opaque_whiteout_empties_directory(self, stager, make_spec, tmp_path):
        lower = make_layer(tmp_path, "0.tar.gz", {"data/x": b"x", "data/sub/y": b"y"})
        upper = make_layer(tmp_path, "1.tar.gz", {"data/.wh..wh..opq": b"", "data/z": b"z"})
        with stager.create(make_spec()) as root:
            stager.apply_layer(root, lower)
            stager.apply_layer(root, upper)
            assert sorted(p.name for p in (root.path / "data").iterdir()) == ["z"]

    def test_unsafe_members_skipped(self, stager, make_spec, tmp_path):
        archive = make_layer(tmp_path, "evil.tar", {"../outside": b"x", "ok": b"ok"})
        with stager.create(make_spec()) as root:
            stager.apply_layer(root, archive)
            assert (root.path / "ok").exists()
        assert not (tmp_path / "outside").exists()

    def test_plain_tar_layer(self, stager, make_spec, tmp_path):
        path = tmp_path / "plain.tar"
        with tarfile.open(path, "w") as tar:
            info = tarfile.TarInfo("hello.txt")
            info.size = 2
            tar.addfile(info, io.BytesIO(b"hi"))
        with stager.create(make_spec()) as root:
            stager.apply_layer(root, str(path))
            assert (root.path / "hello.txt").read_bytes() == b"hi"

    def test_corrupt_layer(self, stager, make_spec, tmp_path):
        archive = tmp_path / "corrupt.tar.gz"
        archive.write_bytes(b"\x1f\x8bnot really gzip")
        with stager.create(make_spec()) as root:
            with pytest.raises(StagingError):
                stager.apply_layer(root, str(archive))
            assert root.layers == []

    def test_missing_layer(self, stager, make_spec, tmp_path):
        with stager.create(make_spec()) as root:
            with pytest.raises(StagingError):
                stager.apply_layer(root, str(tmp_path / "missing.tar.gz"))

    def test_mount_directory_volume(self, stager, make_spec, tmp_path):
        source = tmp_path / "data"
        source.mkdir()
        (source / "file.txt").write_text("content")
        with stager.create(make_spec()) as root:
            target = stager.mount_volume(root, str(source), "/mnt/data")
            assert (target / "file.txt").read_text() == "content"
            (target / "file.txt").write_text("changed")
        assert (source / "file.txt").read_text() == "content"

    def test_mount_file_volume_read_only(self, stager, make_spec, tmp_path):
        source = tmp_path / "app.conf"
        source.write_text("x=1")
        with stager.create(make_spec()) as root:
            target = stager.mount_volume(root, str(source), "/etc/app.conf", read_only=True)
            assert target.read_text() == "x=1"
            assert not target.stat().st_mode & stat.S_IWUSR

    def test_mount_missing_source(self, stager, make_spec, tmp_path):
        with stager.create(make_spec()) as root:
            with pytest.raises(StagingError):
                stager.mount_volume(root, str(tmp_path / "nope"), "/data")

    def test_stage_applies_layers_and_volumes(self, stager, make_image, tmp_path):
        from d2w.MODELS.container_spec import ContainerSpec

        layer = make_layer(tmp_path, "0.tar.gz", {"app/bin": b"binary"})
        source = tmp_path / "vol"
        source.mkdir()
        (source / "v.txt").write_text("v")
        spec = ContainerSpec.build(
            make_image(layers=[layer]),
            volumes=[VolumeMount(host_path=str(source), container_path="/vol")],
        )
        with stager.stage(spec) as root:
            path = root.path
            assert (path / "app" / "bin").read_bytes() == b"binary"
            assert (path / "vol" / "v.txt").read_text() == "v"
        assert not path.exists()

    def test_stage_cleans_up_on_failure(self, stager, make_image, tmp_path):
        from d2w.MODELS.container_spec import ContainerSpec

        bad = tmp_path / "bad.tar.gz"
        bad.write_bytes(b"garbage")
        spec = ContainerSpec.build(make_image(layers=[str(bad)]))
        with pytest.raises(StagingError):
            with stager.stage(spec):
                pass
        assert os.listdir(stager.settings.staging_dir) == []

import io
import tarfile

import pytest
from conftest import make_layer
from d2w.exceptions import StagingError
from d2w.ISOLATION.rootfs_stager import RootfsStager
from d2w.MODELS.container_spec import ContainerSpec
from d2w.PARSERS.descriptor_parser import DescriptorParser
from d2w.RUNNERS.capability_context import CapabilityContext
from d2w.MANAGERS.network_manager import NetworkManager

def test_volume_target_traversal(tmp_path, make_spec):
    """
    A volume target must not be able to escape the staged root.
    """
    source = tmp_path / "secret"
    source.write_text("x")
    stager = RootfsStager()
    with stager.create(make_spec()) as root:
        with pytest.raises(StagingError):
            stager.mount_volume(root, str(source), "/../../../tmp/pwned")

def test_layer_symlink_cannot_redirect_volume(tmp_path, make_spec):
    """
    A symlink planted by a layer must not redirect a later volume copy to the host.
    """
    outside = tmp_path / "outside"
    outside.mkdir()
    archive = tmp_path / "link.tar"
    with tarfile.open(archive, "w") as tar:
        info = tarfile.TarInfo("data")
        info.type = tarfile.SYMTYPE
        info.linkname = str(outside)
        tar.addfile(info)

    source = tmp_path / "vol"
    source.mkdir()
    (source / "f").write_text("x")

    stager = RootfsStager()
    with stager.create(make_spec()) as root:
        try:
            stager.apply_layer(root, str(archive))
        except StagingError:
            pass
        with pytest.raises(StagingError):
            stager.mount_volume(root, str(source), "/data/f")
    assert list(outside.iterdir()) == []

def test_layer_absolute_member_skipped(tmp_path, make_spec):
    """
    Absolute member names in a layer are never written to the host.
    """
    target = tmp_path / "abs_target"
    archive = tmp_path / "abs.tar"
    with tarfile.open(archive, "w") as tar:
        info = tarfile.TarInfo(str(target))
        info.size = 1
        tar.addfile(info, io.BytesIO(b"x"))

    stager = RootfsStager()
    with stager.create(make_spec()) as root:
        stager.apply_layer(root, str(archive))
    assert not target.exists()

def test_whiteout_cannot_delete_outside_root(tmp_path, make_spec):
    """
    A whiteout naming a parent directory reference is ignored.
    """
    victim = tmp_path / "victim"
    victim.write_text("keep")
    archive = make_layer(tmp_path, "wh.tar.gz", {"../.wh.victim": b""})
    stager = RootfsStager()
    with stager.create(make_spec()) as root:
        stager.apply_layer(root, archive)
    assert victim.read_text() == "keep"

def test_workdir_traversal(make_spec):
    """
    A working directory outside the root is rejected before the sandbox is built.
    """
    spec = make_spec(workdir="/../../etc")
    with RootfsStager().create(spec) as root, NetworkManager().acquire(spec) as lease:
        with pytest.raises(StagingError):
            CapabilityContext.build(spec, root, lease)

def test_host_environment_not_leaked(monkeypatch, make_image):
    """
    The host process environment never reaches the container.
    """
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "hunter2")
    spec = ContainerSpec.build(make_image())
    assert "AWS_SECRET_ACCESS_KEY" not in spec.env

def test_path_traversal_parse():
    """
    A missing descriptor raises rather than silently producing an image.
    """
    parser = DescriptorParser(context={})
    with pytest.raises(FileNotFoundError):
        parser.parse("non_existent_file_12345.yaml")

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
Root filesystem staging for sandboxed containers.
Builds an ephemeral directory tree per run, applies image layers and copies
volumes into it. The sandbox only ever sees this tree through one directory
capability, so nothing here needs chroot, mounts or root privileges.
"""

import os
import shutil
import stat
import tarfile
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from jinja2 import Template
from loguru import logger

from ..exceptions import StagingError
from ..MODELS.container_spec import ContainerSpec
from ..MODELS.runtime_settings import RuntimeSettings

BASE_DIRECTORIES = [
    "bin", "boot", "dev", "etc", "home", "lib", "lib64",
    "media", "mnt", "opt", "proc", "root", "run", "sbin",
    "srv", "sys", "tmp", "usr", "var",
]
USR_DIRECTORIES = ["bin", "sbin", "lib", "lib64", "local", "share", "include"]
VAR_DIRECTORIES = ["log", "cache", "lib", "run", "tmp"]

DEVICE_NODES = ["null", "zero", "random", "urandom", "tty", "console"]

# Plausible content for well-known paths; none of it reflects the host.
SYNTHETIC_FILES = {
    "proc/cpuinfo": (
        "processor\t: 0\n"
        "vendor_id\t: WASM\n"
        "model name\t: WASM Container Runtime\n"
    ),
    "proc/meminfo": (
        "MemTotal:        8388608 kB\n"
        "MemFree:         4194304 kB\n"
    ),
    "etc/resolv.conf": (
        "{% for ns in nameservers %}nameserver {{ ns }}\n{% endfor %}"
    ),
    "etc/hostname": "{{ hostname }}",
    "etc/hosts": (
        "127.0.0.1\tlocalhost\n"
        "::1\tlocalhost\n"
        "127.0.1.1\t{{ hostname }}\n"
    ),
    "etc/passwd": (
        "root:x:0:0:root:/root:/bin/sh\n"
        "nobody:x:65534:65534:nobody:/:/sbin/nologin\n"
    ),
    "etc/group": (
        "root:x:0:\n"
        "nobody:x:65534:\n"
    ),
}

NAMESERVERS = ["8.8.8.8", "8.8.4.4"]


class StagedRoot:
    """
    An ephemeral root filesystem owned by one execution.
    The directory is removed when the handle's scope ends.
    """

    def __init__(self, container_id: str, base_dir: Optional[str] = None):
        """
        Allocate a fresh, empty directory.

        Args:
            container_id: Owner of the tree.
            base_dir: Parent directory for the tree; system temp dir if None.
        """
        self.container_id = container_id
        self.layers: List[str] = []
        self._tmp = tempfile.TemporaryDirectory(
            prefix=f"d2w-{container_id[:12]}-", dir=base_dir
        )
        self.path = Path(self._tmp.name)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def resolve(self, container_path: str) -> Path:
        """
        Map a container path to a host path inside this root.

        The absolute prefix is stripped and the result must stay inside the
        root, following any symlinks already present in the tree.

        Raises:
            StagingError: If the path escapes the root.
        """
        relative = str(container_path).lstrip("/\\")
        candidate = (self.path / relative).resolve()
        root = self.path.resolve()
        if candidate != root and root not in candidate.parents:
            raise StagingError(
                f"Path {container_path} escapes the root of container {self.container_id}"
            )
        return candidate

    def cleanup(self) -> None:
        """Remove the tree. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._tmp.cleanup()
        logger.debug("Removed staged root for container {}", self.container_id)

    def __enter__(self) -> "StagedRoot":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def __repr__(self) -> str:
        return f"StagedRoot({self.container_id!r}, {str(self.path)!r}, layers={len(self.layers)})"


class RootfsStager:
    """
    Builds staged roots: directory skeleton, synthetic system files,
    image layers and volume copies.
    """

    def __init__(self, settings: Optional[RuntimeSettings] = None):
        """
        Initialize the stager.

        Args:
            settings: Runtime settings (staging_dir is used as the parent dir).
        """
        self.settings = settings or RuntimeSettings()
        self._templates = {
            name: Template(body, keep_trailing_newline=True)
            for name, body in SYNTHETIC_FILES.items()
        }

    def create(self, spec: ContainerSpec) -> StagedRoot:
        """
        Allocate a root for the container and populate its base tree.

        Args:
            spec: The container being staged.

        Returns:
            The new staged root.

        Raises:
            StagingError: If the tree cannot be created.
        """
        logger.info("Setting up filesystem for container: {}", spec.id)
        try:
            root = StagedRoot(spec.id, base_dir=self.settings.staging_dir)
        except OSError as e:
            raise StagingError(f"Cannot allocate root for container {spec.id}: {e}") from e

        try:
            self._create_base_directories(root.path)
            self._write_synthetic_files(root.path, spec.container_hostname)
            self.create_device_nodes(root)
        except OSError as e:
            root.cleanup()
            raise StagingError(f"Failed to prepare rootfs for container {spec.id}: {e}") from e
        return root

    @contextmanager
    def stage(self, spec: ContainerSpec) -> Iterator[StagedRoot]:
        """
        Create a root, apply every image layer in order and copy every volume.
        The root is removed when the block exits, or immediately if staging fails.
        """
        root = self.create(spec)
        with root:
            for layer in spec.image.layers:
                self.apply_layer(root, layer.path)
            for volume in spec.volumes:
                self.mount_volume(root, volume.host_path, volume.container_path,
                                  read_only=volume.read_only)
            yield root

    def _create_base_directories(self, rootfs: Path) -> None:
        for d in BASE_DIRECTORIES:
            (rootfs / d).mkdir(parents=True, exist_ok=True)
        for d in USR_DIRECTORIES:
            (rootfs / "usr" / d).mkdir(parents=True, exist_ok=True)
        for d in VAR_DIRECTORIES:
            (rootfs / "var" / d).mkdir(parents=True, exist_ok=True)

    def _write_synthetic_files(self, rootfs: Path, hostname: str) -> None:
        for name, template in self._templates.items():
            content = template.render(hostname=hostname, nameservers=NAMESERVERS)
            (rootfs / name).write_text(content)

    def create_device_nodes(self, root: StagedRoot) -> None:
        """
        Create empty placeholders for the conventional device paths.
        They only make the paths exist; the sandbox has no device access.
        """
        dev_path = root.path / "dev"
        dev_path.mkdir(exist_ok=True)
        for name in DEVICE_NODES:
            node = dev_path / name
            if not node.exists():
                node.touch()
        (dev_path / "pts").mkdir(exist_ok=True)

    def apply_layer(self, root: StagedRoot, archive: str) -> None:
        """
        Extract one layer archive (gzip or plain tar) on top of the root.
        Layers must be applied in ascending order.

        Args:
            root: Target root.
            archive: Path to the layer archive.

        Raises:
            StagingError: If the archive is missing or corrupt.
        """
        logger.debug("Extracting layer {} into container {}", archive, root.container_id)
        try:
            with tarfile.open(archive, mode="r:*") as tar:
                for member in tar:
                    self._extract_member(tar, member, root)
        except (tarfile.TarError, OSError, EOFError) as e:
            raise StagingError(f"Failed to apply layer {archive}: {e}") from e
        root.layers.append(str(archive))

    def _extract_member(self, tar: tarfile.TarFile, member: tarfile.TarInfo, root: StagedRoot) -> None:
        name = member.name
        # Skip absolute paths and parent directory references
        if name.startswith("/") or ".." in Path(name).parts:
            logger.warning("Skipping unsafe layer entry {}", name)
            return
        if member.isdev() or member.isfifo():
            return
        if ".wh." in Path(name).name:
            self._handle_whiteout(root, name)
            return
        tar.extract(member, root.path, set_attrs=False, filter="tar")

    def _handle_whiteout(self, root: StagedRoot, whiteout_path: str) -> None:
        """Handle a whiteout entry (marks a path from a lower layer as deleted)."""
        parent, _, filename = whiteout_path.rpartition("/")

        if filename == ".wh..wh..opq":
            # Opaque whiteout: empty the directory
            dir_path = root.resolve(parent)
            if dir_path.is_dir():
                for item in dir_path.iterdir():
                    if item.is_dir() and not item.is_symlink():
                        shutil.rmtree(item)
                    else:
                        item.unlink()
        elif filename.startswith(".wh."):
            target = root.resolve(parent) / filename[4:]
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()

    def mount_volume(self, root: StagedRoot, host_path: str, container_path: str,
                     read_only: bool = False) -> Path:
        """
        Copy a host file or directory into the root. Nothing is linked, so the
        container never writes through to the host.

        Args:
            root: Target root.
            host_path: Source on the host.
            container_path: Destination inside the container.
            read_only: Drop write permission bits on the copy.

        Returns:
            The host path of the copy.

        Raises:
            StagingError: If the source is missing, the target escapes the root
                          or the copy fails.
        """
        source = Path(host_path)
        if not source.exists():
            raise StagingError(f"Volume source {host_path} does not exist")

        target = root.resolve(container_path)
        logger.info("Mapping volume: {} -> {}", host_path, container_path)
        try:
            if source.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                shutil.copytree(source, target, dirs_exist_ok=True, symlinks=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
            if read_only:
                self._make_read_only(target)
        except (OSError, shutil.Error) as e:
            raise StagingError(f"Failed to copy volume {host_path} -> {container_path}: {e}") from e
        return target

    @staticmethod
    def _make_read_only(target: Path) -> None:
        write_bits = stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH
        paths = [target]
        if target.is_dir():
            paths.extend(target.rglob("*"))
        for path in paths:
            if path.is_symlink():
                continue
            mode = path.stat().st_mode
            os.chmod(path, mode & ~write_bits)

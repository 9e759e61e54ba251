"""
The set of capabilities granted to one sandboxed program.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from loguru import logger
from wasmtime import WasiConfig

from ..exceptions import StagingError
from ..ISOLATION.rootfs_stager import StagedRoot
from ..MANAGERS.network_manager import NetworkLease
from ..MODELS.container_spec import ContainerSpec

GUEST_ROOT = "/"


@dataclass
class CapabilityContext:
    """
    Everything the sandbox may reach: stdio, argv, env, outbound network and
    exactly one preopened directory. Anything else is unreachable.
    """

    argv: List[str]
    env: Dict[str, str]
    preopen_dir: Path
    guest_dir: str = GUEST_ROOT
    inherit_stdio: bool = True
    allow_network: bool = True
    labels: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(cls, spec: ContainerSpec, root: StagedRoot, lease: NetworkLease) -> "CapabilityContext":
        """
        Derive the grant from a spec, its staged root and its network lease.

        The directory capability is the staged root, or the working directory
        inside it when one is set (created if missing).
        """
        env = dict(spec.env)
        env["CONTAINER_IP"] = str(lease.address)
        env["HOSTNAME"] = lease.hostname

        workdir = spec.effective_workdir
        if workdir:
            preopen = root.resolve(workdir)
            try:
                preopen.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StagingError(f"Cannot create working directory {workdir}: {e}") from e
        else:
            preopen = root.path

        return cls(
            argv=spec.argv,
            env=env,
            preopen_dir=preopen,
            labels={"container": spec.id, "image": spec.image_name},
        )

    def to_wasi_config(self) -> WasiConfig:
        """Translate the grant into a WASI configuration."""
        config = WasiConfig()
        config.argv = list(self.argv)
        config.env = list(self.env.items())
        if self.inherit_stdio:
            config.inherit_stdin()
            config.inherit_stdout()
            config.inherit_stderr()
        config.preopen_dir(str(self.preopen_dir), self.guest_dir)
        if self.allow_network:
            # wasmtime's preview1 WASI has no socket toggle; outbound access is
            # whatever the module reaches through its imports.
            logger.debug("Outbound network granted to container {}", self.labels.get("container"))
        return config

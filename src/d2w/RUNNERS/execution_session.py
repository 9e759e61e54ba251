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
Container execution inside a wasmtime sandbox.
Stages the root, leases network resources, builds the capability grant,
compiles and runs the module, and records the outcome.
"""
import asyncio
import threading
from ipaddress import IPv4Address
from typing import Dict, List, Optional

from loguru import logger
from wasmtime import (
    Config,
    Engine,
    ExitTrap,
    Func,
    Linker,
    Module,
    Store,
    Trap,
    WasmtimeError,
)

from ..exceptions import (
    CompileError,
    InvalidTransitionError,
    SandboxCancelled,
    SandboxTrap,
)
from ..ISOLATION.rootfs_stager import RootfsStager
from ..MANAGERS.container_registry import ContainerRegistry
from ..MANAGERS.network_manager import NetworkManager
from ..MODELS.container_record import ContainerRecord, ContainerStatus
from ..MODELS.container_spec import ContainerSpec
from ..MODELS.runtime_settings import RuntimeSettings
from .cancellation import CancellationToken
from .capability_context import CapabilityContext
from .host_bridge import HostBridge


class ExecutionSession:
    """
    Runs containers as sandboxed wasm programs and tracks their lifecycle.

    Shared state (network tables, container records) is injected so several
    sessions or callers can share it; every run gets its own engine, store,
    staged root and network lease.
    """

    def __init__(
        self,
        network_manager: Optional[NetworkManager] = None,
        registry: Optional[ContainerRegistry] = None,
        stager: Optional[RootfsStager] = None,
        settings: Optional[RuntimeSettings] = None,
    ):
        """
        Initializes the session.

        :param network_manager: Network tables; a fresh manager if None.
        :param registry: Container records; a fresh registry if None.
        :param stager: Root filesystem stager; a fresh stager if None.
        :param settings: Runtime settings; defaults if None.
        """
        self.settings = settings or RuntimeSettings()
        self.network_manager = network_manager or NetworkManager(self.settings)
        self.registry = registry or ContainerRegistry()
        self.stager = stager or RootfsStager(self.settings)
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    async def run(self, spec: ContainerSpec) -> ContainerRecord:
        """
        Runs a container to completion.

        :param spec: The container to run.
        :return: The final record ('exited', or 'stopped' if stop() was called).
        :raises StagingError, NetworkError, CompileError, SandboxTrap: On failure;
                the record is left in 'failed'.
        :raises asyncio.CancelledError: If the awaiting task is cancelled; the
                sandbox is interrupted first and the record is left in 'stopped'.
        """
        logger.info("Starting container: {}", spec.id)
        self.registry.register(spec)
        token = CancellationToken()
        with self._lock:
            self._tokens[spec.id] = token

        try:
            await self._execute(spec, token)
        except asyncio.CancelledError:
            # Sandbox already interrupted and joined by _execute
            self.stop(spec.id)
            raise
        except Exception as e:
            if token.cancelled:
                logger.info("Container {} stopped: {}", spec.id, e)
                return self.registry.get(spec.id)
            self._record_outcome(
                spec.id,
                ContainerStatus.FAILED,
                error=str(e),
                exit_code=getattr(e, "exit_code", None),
            )
            logger.error("Container {} failed: {}", spec.id, e)
            raise
        finally:
            with self._lock:
                self._tokens.pop(spec.id, None)

        if token.cancelled:
            logger.info("Container {} stopped", spec.id)
            return self.registry.get(spec.id)
        record = self._record_outcome(spec.id, ContainerStatus.EXITED, exit_code=0)
        logger.info("Container {} exited successfully", spec.id)
        return record

    async def _execute(self, spec: ContainerSpec, token: CancellationToken) -> None:
        with self.stager.stage(spec) as root:
            with self.network_manager.acquire(spec) as lease:
                context = CapabilityContext.build(spec, root, lease)

                engine = self._create_engine()
                token.bind(engine)
                module = self._compile(engine, spec)

                store = Store(engine)
                store.set_wasi(context.to_wasi_config())
                store.set_epoch_deadline(1)

                linker = Linker(engine)
                linker.define_wasi()
                HostBridge(spec.id, token).install(linker)
                entry = self._instantiate(linker, store, module, spec)

                if token.cancelled:
                    raise SandboxCancelled(f"Container {spec.id} was stopped before it started")
                self.registry.transition(spec.id, ContainerStatus.RUNNING)
                logger.debug("Invoking {} of container {} with argv {}",
                             self.settings.entry_point, spec.id, context.argv)
                worker = asyncio.ensure_future(
                    asyncio.to_thread(self._invoke, spec, store, entry, token)
                )
                try:
                    await asyncio.shield(worker)
                except asyncio.CancelledError:
                    token.cancel()
                    await self._join(spec, worker)
                    raise

    @staticmethod
    async def _join(spec: ContainerSpec, worker: asyncio.Future) -> None:
        """Wait for an interrupted sandbox call to return before its resources go away."""
        logger.info("Interrupting container {}", spec.id)
        while not worker.done():
            try:
                await asyncio.shield(worker)
            except asyncio.CancelledError:
                continue
            except Exception:
                break
        if not worker.cancelled() and worker.exception() is not None:
            logger.debug("Container {} interrupted: {}", spec.id, worker.exception())

    @staticmethod
    def _create_engine() -> Engine:
        config = Config()
        config.epoch_interruption = True
        return Engine(config)

    def _compile(self, engine: Engine, spec: ContainerSpec) -> Module:
        logger.debug("Compiling WASM module for container {}", spec.id)
        payload = spec.image.read_payload()
        try:
            return Module(engine, payload)
        except WasmtimeError as e:
            raise CompileError(f"Invalid WASM module in image {spec.image_name}: {e}") from e

    def _instantiate(self, linker: Linker, store: Store, module: Module, spec: ContainerSpec) -> Func:
        try:
            instance = linker.instantiate(store, module)
        except Trap as e:
            raise SandboxTrap(f"Container {spec.id} trapped during instantiation: {e}") from e
        except WasmtimeError as e:
            raise CompileError(f"Cannot link module of image {spec.image_name}: {e}") from e

        try:
            entry = instance.exports(store)[self.settings.entry_point]
        except KeyError:
            entry = None
        if not isinstance(entry, Func):
            raise CompileError(
                f"Module of image {spec.image_name} exports no function {self.settings.entry_point}"
            )
        return entry

    @staticmethod
    def _invoke(spec: ContainerSpec, store: Store, entry: Func, token: CancellationToken) -> None:
        try:
            entry(store)
        except ExitTrap as e:
            if e.code != 0:
                raise SandboxTrap(f"Container {spec.id} exited with status {e.code}",
                                  exit_code=e.code) from e
        except SandboxCancelled:
            raise
        except (Trap, WasmtimeError) as e:
            if token.cancelled:
                raise SandboxCancelled(f"Container {spec.id} was interrupted: {e}") from e
            raise SandboxTrap(f"Container {spec.id} trapped: {e}") from e

    def _record_outcome(self, container_id: str, status: ContainerStatus, **fields) -> Optional[ContainerRecord]:
        try:
            return self.registry.transition(container_id, status, **fields)
        except InvalidTransitionError as e:
            # A concurrent stop() already settled the record
            logger.debug("{}", e)
            return self.registry.get(container_id)

    def list(self, include_all: bool = False) -> List[ContainerRecord]:
        """
        Lists containers.

        :param include_all: Include containers that are not running.
        """
        return self.registry.list(include_all)

    def lookup(self, container_id: str) -> Optional[IPv4Address]:
        """Returns the container's address, or None if it holds none."""
        return self.network_manager.lookup(container_id)

    def stop(self, container_id: str) -> None:
        """
        Stops a container: releases its network resources at once and asks the
        sandbox to stop at its next epoch check or bridge call.
        Unknown or already finished containers are a no-op.
        """
        record = self.registry.get(container_id)
        if record is None or record.status.is_terminal or record.status == ContainerStatus.STOPPING:
            self.network_manager.release(container_id)
            return

        try:
            self.registry.transition(container_id, ContainerStatus.STOPPING)
        except InvalidTransitionError as e:
            logger.debug("{}", e)
            self.network_manager.release(container_id)
            return

        with self._lock:
            token = self._tokens.get(container_id)
        if token is not None:
            token.cancel()
        self.network_manager.release(container_id)
        self.registry.transition(container_id, ContainerStatus.STOPPED)
        logger.info("Container {} stopped", container_id)

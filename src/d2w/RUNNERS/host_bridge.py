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
Host functions importable by sandboxed programs.

Both live in the "env" import module:

    (import "env" "container_log" (func (param i32 i32)))
    (import "env" "get_container_info" (func (result i32)))

container_log reads a UTF-8 message from the caller's exported "memory".
Every (offset, length) pair is checked against the memory size at the time of
the call; a bad pair or bad encoding rejects that call only.
"""
from typing import List, Optional

from loguru import logger
from wasmtime import Caller, FuncType, Linker, Memory, ValType

from ..exceptions import BridgeCallError, SandboxCancelled
from .cancellation import CancellationToken

BRIDGE_MODULE = "env"
LOG_FUNCTION = "container_log"
INFO_FUNCTION = "get_container_info"

# Returned by get_container_info
CAPABILITY_CODE = 42


class HostBridge:
    """
    Host side of the bridge for one container.
    """

    def __init__(self, container_id: str, token: Optional[CancellationToken] = None):
        """
        Args:
            container_id: Container whose log lines are emitted.
            token: Checked on every call; a cancelled token traps the caller.
        """
        self.container_id = container_id
        self.token = token
        self.messages: List[str] = []
        self.rejected: List[BridgeCallError] = []
        self._log = logger.bind(container=container_id)

    def install(self, linker: Linker) -> None:
        """Define both bridge functions on the linker."""
        linker.define_func(
            BRIDGE_MODULE, LOG_FUNCTION,
            FuncType([ValType.i32(), ValType.i32()], []),
            self.container_log,
            access_caller=True,
        )
        linker.define_func(
            BRIDGE_MODULE, INFO_FUNCTION,
            FuncType([], [ValType.i32()]),
            self.get_container_info,
        )

    def container_log(self, caller: Caller, offset: int, length: int) -> None:
        self._check_cancelled()
        try:
            memory = self._exported_memory(caller)
            message = self.read_message(caller, memory, offset, length)
        except BridgeCallError as e:
            self.rejected.append(e)
            self._log.warning("[{}] rejected {} call: {}", self.container_id, LOG_FUNCTION, e)
            return
        self.messages.append(message)
        self._log.info("[{}]: {}", self.container_id, message)

    def get_container_info(self) -> int:
        self._check_cancelled()
        return CAPABILITY_CODE

    @staticmethod
    def read_message(store, memory: Memory, offset: int, length: int) -> str:
        """
        Read and decode a message from sandbox memory.

        Args:
            store: Store or caller owning the memory.
            memory: The sandbox's linear memory.
            offset: Start of the message.
            length: Length in bytes.

        Raises:
            BridgeCallError: If the range is outside the memory or not UTF-8.
        """
        size = memory.data_len(store)
        if offset < 0 or length < 0 or offset + length > size:
            raise BridgeCallError(
                f"invalid memory access: offset={offset} length={length} memory_size={size}"
            )
        data = memory.read(store, offset, offset + length)
        try:
            return bytes(data).decode("utf-8")
        except UnicodeDecodeError as e:
            raise BridgeCallError(f"invalid UTF-8 in log message: {e}") from e

    @staticmethod
    def _exported_memory(caller: Caller) -> Memory:
        memory = caller.get("memory")
        if not isinstance(memory, Memory):
            raise BridgeCallError("sandbox does not export a linear memory named 'memory'")
        return memory

    def _check_cancelled(self) -> None:
        if self.token is not None and self.token.cancelled:
            raise SandboxCancelled(f"Container {self.container_id} was stopped")

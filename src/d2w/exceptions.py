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
Error types raised by the runtime.

Lower layers raise these typed failures; the execution session cleans up
whatever it already acquired and lets them propagate to the caller.
"""
from typing import Optional


class D2WError(Exception):
    """Base class for all runtime errors."""


class StagingError(D2WError):
    """Root filesystem could not be created, populated or mounted into."""


class NetworkError(D2WError):
    """Address allocation or port forward setup failed."""


class PortConflictError(NetworkError):
    """The host port is already registered as a forward."""

    def __init__(self, host_port: int, owner: str):
        super().__init__(f"Host port {host_port} is already forwarded to container {owner}")
        self.host_port = host_port
        self.owner = owner


class PortBindError(NetworkError):
    """The host refused to bind the requested port."""


class CompileError(D2WError):
    """The wasm payload is missing, malformed or cannot be linked."""


class SandboxTrap(D2WError):
    """The sandboxed program trapped or exited with a non-zero status."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class SandboxCancelled(SandboxTrap):
    """The sandboxed program was interrupted after a stop request."""


class BridgeCallError(D2WError):
    """A host bridge call passed an invalid memory range or payload."""


class InvalidTransitionError(D2WError):
    """A container record was asked to move to a status it cannot reach."""

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
Virtual network management for containers: per-container addresses on
host-local bridge networks and host-side port forwards.
"""
import heapq
import ipaddress
import socket
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from loguru import logger

from ..exceptions import NetworkError, PortBindError, PortConflictError
from ..MODELS.container_spec import ContainerSpec, Protocol
from ..MODELS.runtime_settings import RuntimeSettings

# Offset 0 is the network address, offset 1 the gateway.
FIRST_CONTAINER_OFFSET = 2


@dataclass
class VirtualNetwork:
    """A bridge network with its address reservations."""

    name: str
    subnet: ipaddress.IPv4Network
    gateway: ipaddress.IPv4Address
    members: Dict[str, int] = field(default_factory=dict)  # container_id -> offset
    _next_offset: int = FIRST_CONTAINER_OFFSET
    _free_offsets: List[int] = field(default_factory=list)

    @classmethod
    def from_subnet(cls, name: str, subnet: str) -> "VirtualNetwork":
        try:
            network = ipaddress.IPv4Network(subnet, strict=False)
        except ValueError as e:
            raise NetworkError(f"Invalid subnet {subnet}: {e}") from e
        if network.num_addresses < 4:
            raise NetworkError(f"Subnet {subnet} is too small for containers")
        return cls(name=name, subnet=network, gateway=network.network_address + 1)

    @property
    def containers(self) -> List[str]:
        return list(self.members)

    def address_of(self, container_id: str) -> Optional[ipaddress.IPv4Address]:
        offset = self.members.get(container_id)
        if offset is None:
            return None
        return self.subnet.network_address + offset

    def reserve(self, container_id: str) -> ipaddress.IPv4Address:
        """Reserve an address, reusing the lowest released offset first."""
        if container_id in self.members:
            return self.address_of(container_id)
        if self._free_offsets:
            offset = heapq.heappop(self._free_offsets)
        else:
            # Last address is the broadcast address
            if self._next_offset >= self.subnet.num_addresses - 1:
                raise NetworkError(f"Network {self.name} has no free addresses")
            offset = self._next_offset
            self._next_offset += 1
        self.members[container_id] = offset
        return self.subnet.network_address + offset

    def free(self, container_id: str) -> bool:
        offset = self.members.pop(container_id, None)
        if offset is None:
            return False
        heapq.heappush(self._free_offsets, offset)
        return True


@dataclass
class PortForward:
    """A host port mapped to a container port."""

    host_port: int
    container_id: str
    container_port: int
    protocol: Protocol
    listener: Optional[socket.socket] = None

    def close(self) -> None:
        if self.listener is not None:
            self.listener.close()
            self.listener = None


class NetworkLease:
    """
    The network resources held by one container for the length of one run.
    Released at most once, also when used as a context manager.
    """

    def __init__(self, manager: "NetworkManager", container_id: str, network: str,
                 address: ipaddress.IPv4Address, hostname: str,
                 forwards: Optional[List[PortForward]] = None):
        self._manager = manager
        self.container_id = container_id
        self.network = network
        self.address = address
        self.hostname = hostname
        self.forwards = forwards or []
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._manager.release(self.container_id)

    def __enter__(self) -> "NetworkLease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class NetworkManager:
    """
    Manages virtual networks, container addresses and host port forwards.
    All tables are guarded by one lock held only for single mutations.
    """

    def __init__(self, settings: Optional[RuntimeSettings] = None):
        """
        Initializes the network manager with the default bridge network.

        :param settings: Runtime settings (default network, subnet, bind host).
        """
        self.settings = settings or RuntimeSettings()
        self.default_network = self.settings.network
        self.networks: Dict[str, VirtualNetwork] = {
            self.default_network: VirtualNetwork.from_subnet(self.default_network, self.settings.subnet)
        }
        self.port_forwards: Dict[int, PortForward] = {}  # host_port -> forward
        self._lock = threading.Lock()

    def create_network(self, name: str, subnet: str) -> VirtualNetwork:
        """
        Creates a new bridge network.

        :raises NetworkError: If the name is taken or the subnet is invalid.
        """
        network = VirtualNetwork.from_subnet(name, subnet)
        with self._lock:
            if name in self.networks:
                raise NetworkError(f"Network {name} already exists")
            self.networks[name] = network
        logger.info("Created network: {} with subnet: {}", name, network.subnet)
        return network

    def remove_network(self, name: str) -> bool:
        """
        Removes an empty, non-default network.

        :return: False if the network does not exist.
        :raises NetworkError: For the default network or a network with members.
        """
        with self._lock:
            network = self.networks.get(name)
            if network is None:
                return False
            if name == self.default_network:
                raise NetworkError(f"Cannot remove default network {name}")
            if network.members:
                raise NetworkError(f"Network {name} still has {len(network.members)} containers")
            del self.networks[name]
        logger.info("Removed network: {}", name)
        return True

    def list_networks(self) -> List[VirtualNetwork]:
        with self._lock:
            return list(self.networks.values())

    def allocate(self, container_id: str, network: Optional[str] = None) -> ipaddress.IPv4Address:
        """
        Allocates an address for a container on a network.

        The first container gets base+2 (base+1 is the gateway). Addresses stay
        fixed until released; released addresses are reused lowest first.

        :raises NetworkError: If the network is unknown or exhausted.
        """
        name = network or self.default_network
        with self._lock:
            net = self.networks.get(name)
            if net is None:
                raise NetworkError(f"Network {name} does not exist")
            address = net.reserve(container_id)
        logger.debug("Allocated {} on {} for container {}", address, name, container_id)
        return address

    def lookup(self, container_id: str) -> Optional[ipaddress.IPv4Address]:
        """
        Returns the container's address on the first network it belongs to.
        """
        with self._lock:
            for net in self.networks.values():
                address = net.address_of(container_id)
                if address is not None:
                    return address
        return None

    def bind_forward(self,
                     host_port: int,
                     container_id: str,
                     container_port: int,
                     protocol: Union[Protocol, str] = Protocol.TCP) -> PortForward:
        """
        Binds a host port and registers it as a forward to the container.

        TCP keeps a listening socket for the life of the forward. UDP binds only
        to check that the port is free. Port 0 binds an ephemeral port and
        registers the port actually bound.

        :raises NetworkError: For an unsupported protocol.
        :raises PortConflictError: If the host port is already forwarded.
        :raises PortBindError: If the host refuses the bind.
        """
        if not isinstance(protocol, Protocol):
            protocol = Protocol.parse(str(protocol))

        self._check_conflict(host_port)
        listener = self._bind_socket(protocol, host_port)
        bound_port = host_port or listener.getsockname()[1]
        if protocol is Protocol.UDP:
            listener.close()
            listener = None

        forward = PortForward(
            host_port=bound_port,
            container_id=container_id,
            container_port=container_port,
            protocol=protocol,
            listener=listener,
        )
        with self._lock:
            existing = self.port_forwards.get(bound_port)
            if existing is not None:
                forward.close()
                raise PortConflictError(bound_port, existing.container_id)
            self.port_forwards[bound_port] = forward
        logger.info("{} port forward established: {} -> {}:{}",
                    protocol.value.upper(), bound_port, container_id, container_port)
        return forward

    def _check_conflict(self, host_port: int) -> None:
        if not host_port:
            return
        with self._lock:
            existing = self.port_forwards.get(host_port)
        if existing is not None:
            raise PortConflictError(host_port, existing.container_id)

    def _bind_socket(self, protocol: Protocol, host_port: int) -> socket.socket:
        if protocol is Protocol.TCP:
            sock_type = socket.SOCK_STREAM
        elif protocol is Protocol.UDP:
            sock_type = socket.SOCK_DGRAM
        else:
            raise NetworkError(f"Unsupported protocol: {protocol}")

        sock = socket.socket(socket.AF_INET, sock_type)
        try:
            if protocol is Protocol.TCP:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.settings.bind_host, host_port))
            if protocol is Protocol.TCP:
                sock.listen()
        except OSError as e:
            sock.close()
            raise PortBindError(
                f"Port {host_port}/{protocol.value} is not available: {e}"
            ) from e
        return sock

    def forwards_for(self, container_id: str) -> List[PortForward]:
        with self._lock:
            return [f for f in self.port_forwards.values() if f.container_id == container_id]

    def acquire(self, spec: ContainerSpec, network: Optional[str] = None) -> NetworkLease:
        """
        Allocates an address and binds every declared port of the container.
        On any failure everything already acquired for it is released.

        :param spec: The container.
        :param network: Network to join; the default network if None.
        :return: A lease to release when the run ends.
        """
        logger.debug("Setting up network for container: {}", spec.id)
        name = network or self.default_network
        try:
            address = self.allocate(spec.id, name)
            forwards = [
                self.bind_forward(p.host_port, spec.id, p.container_port, p.protocol)
                for p in spec.ports
            ]
        except NetworkError:
            self.release(spec.id)
            raise
        return NetworkLease(self, spec.id, name, address, spec.container_hostname, forwards)

    def release(self, container_id: str) -> None:
        """
        Removes every forward and address owned by the container.
        Unknown ids are a no-op, so this is safe to call repeatedly.
        """
        with self._lock:
            ports = [p for p, f in self.port_forwards.items() if f.container_id == container_id]
            forwards = [self.port_forwards.pop(p) for p in ports]
            freed = [net.name for net in self.networks.values() if net.free(container_id)]

        for forward in forwards:
            forward.close()
            logger.debug("Removed port forward for port: {}", forward.host_port)
        if forwards or freed:
            logger.info("Cleaned up network for container: {}", container_id)

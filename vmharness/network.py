"""Isolated multicast network segments shared between emulator instances."""

from __future__ import annotations

import errno
import os
import socket
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .errors import NetworkError
from .logging_utils import log_event

DEFAULT_MULTICAST_GROUP = "230.0.0.1"
DEFAULT_NIC_MODEL = "e1000"
MAC_PREFIX = "52:55:00:d1"
_PORT_RANGE_START = 20000
_PORT_RANGE_END = 60000
_PORTS_PER_PROCESS = 16
# Two octets of the MAC address identify the network and the attachment.
_MAX_ID = 0xFF


def _default_base_port() -> int:
    """Spread concurrent test processes across the port range by pid."""

    slots = (_PORT_RANGE_END - _PORT_RANGE_START) // _PORTS_PER_PROCESS
    return _PORT_RANGE_START + (os.getpid() % slots) * _PORTS_PER_PROCESS


def _udp_port_available(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.bind(("0.0.0.0", port))
        except OSError as exc:
            if exc.errno in (errno.EADDRINUSE, errno.EACCES):
                return False
            raise
    return True


@dataclass(frozen=True)
class Endpoint:
    """One instance's attachment to a :class:`VirtualNetwork`."""

    network_id: int
    index: int
    name: str
    mac: str
    group: str
    port: int

    @property
    def netdev_id(self) -> str:
        return f"vmnet{self.network_id}"

    def qemu_args(self, nic_model: str = DEFAULT_NIC_MODEL) -> List[str]:
        """Return the emulator arguments joining this endpoint's segment."""

        return [
            "-netdev",
            f"socket,id={self.netdev_id},mcast={self.group}:{self.port},localaddr=127.0.0.1",
            "-device",
            f"{nic_model},netdev={self.netdev_id},mac={self.mac}",
        ]


class VirtualNetwork:
    """A link-layer segment backed by a dedicated multicast port.

    Instances attached to the same network see each other's frames; networks
    with different ports never do.
    """

    def __init__(self, network_id: int, port: int, *, group: str = DEFAULT_MULTICAST_GROUP) -> None:
        if not 0 < network_id <= _MAX_ID:
            raise ValueError(f"network id must be between 1 and {_MAX_ID}")
        self.network_id = network_id
        self.port = port
        self.group = group
        self._lock = threading.Lock()
        self._endpoints: Dict[str, Endpoint] = {}
        self._departed: Set[str] = set()
        self._next_index = 1
        self._closed = False

    def __repr__(self) -> str:
        return f"VirtualNetwork(id={self.network_id}, port={self.port}, closed={self._closed})"

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def endpoints(self) -> Tuple[Endpoint, ...]:
        with self._lock:
            return tuple(self._endpoints.values())

    def attach(self, name: str) -> Endpoint:
        """Join ``name`` to the network and return its distinct endpoint."""

        with self._lock:
            if self._closed:
                raise NetworkError(f"network {self.network_id} has already been torn down")
            if name in self._endpoints:
                raise NetworkError(f"{name!r} is already attached to network {self.network_id}")
            if name in self._departed:
                raise NetworkError(f"{name!r} detached from network {self.network_id} and cannot rejoin")
            if self._next_index > _MAX_ID:
                raise NetworkError(f"network {self.network_id} has no free endpoint slots")
            index = self._next_index
            self._next_index += 1
            endpoint = Endpoint(
                network_id=self.network_id,
                index=index,
                name=name,
                mac=f"{MAC_PREFIX}:{self.network_id:02x}:{index:02x}",
                group=self.group,
                port=self.port,
            )
            self._endpoints[name] = endpoint
        log_event(
            "vmharness.network.attach",
            network=self.network_id,
            instance=name,
            mac=endpoint.mac,
            port=self.port,
        )
        return endpoint

    def detach(self, endpoint: Endpoint) -> None:
        with self._lock:
            removed = self._endpoints.pop(endpoint.name, None)
            if removed is None:
                return
            self._departed.add(endpoint.name)
        log_event("vmharness.network.detach", network=self.network_id, instance=endpoint.name)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            remaining = list(self._endpoints)
        log_event("vmharness.network.close", network=self.network_id, attached=remaining)


class NetworkRegistry:
    """Lifecycle-scoped allocator of :class:`VirtualNetwork` segments.

    Create one per test run and close it when the run is over; it hands out
    distinct multicast ports so that networks from the same run, and from
    concurrent runs, stay isolated.
    """

    def __init__(
        self,
        base_port: Optional[int] = None,
        *,
        group: str = DEFAULT_MULTICAST_GROUP,
        probe_ports: bool = True,
    ) -> None:
        self.base_port = _default_base_port() if base_port is None else base_port
        self.group = group
        self._probe_ports = probe_ports
        self._lock = threading.Lock()
        self._networks: List[VirtualNetwork] = []
        self._next_port = self.base_port
        self._closed = False

    def __enter__(self) -> "NetworkRegistry":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def networks(self) -> Tuple[VirtualNetwork, ...]:
        with self._lock:
            return tuple(self._networks)

    def _allocate_port(self) -> int:
        while self._next_port < 65536:
            port = self._next_port
            self._next_port += 1
            if not self._probe_ports or _udp_port_available(port):
                return port
        raise NetworkError(f"no free multicast ports at or above {self.base_port}")

    def new_network(self) -> VirtualNetwork:
        with self._lock:
            if self._closed:
                raise NetworkError("network registry has been closed")
            network_id = len(self._networks) + 1
            if network_id > _MAX_ID:
                raise NetworkError("network registry exhausted its network ids")
            network = VirtualNetwork(network_id, self._allocate_port(), group=self.group)
            self._networks.append(network)
        log_event("vmharness.network.create", network=network.network_id, port=network.port)
        return network

    def close(self) -> None:
        with self._lock:
            self._closed = True
            networks = list(self._networks)
        for network in networks:
            network.close()


__all__ = [
    "DEFAULT_MULTICAST_GROUP",
    "DEFAULT_NIC_MODEL",
    "Endpoint",
    "NetworkRegistry",
    "VirtualNetwork",
]

"""Shared fixtures: an in-memory hypervisor that records every call."""

import asyncio
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Set, Tuple

import pytest

from libvirt_reconciler.config import Config
from libvirt_reconciler.exceptions import HypervisorOperationError, ResourceNotFoundError
from libvirt_reconciler.reconciler import Reconciler


MUTATING_CALLS = {
    "define_network", "undefine_network", "start_network", "stop_network", "set_network_autostart",
    "define_pool", "undefine_pool", "start_pool", "stop_pool", "set_pool_autostart",
    "create_volume", "delete_volume", "resize_volume",
    "define_domain", "undefine_domain", "start_domain", "stop_domain",
}


def _name_of(document: str) -> str:
    return ET.fromstring(document).find("name").text


class FakeHypervisor:
    """Implements the hypervisor client interface over dictionaries."""

    def __init__(self):
        self.networks: Dict[str, dict] = {}
        self.pools: Dict[str, dict] = {}
        self.domains: Dict[str, dict] = {}
        self.calls: List[Tuple] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.delay = 0.0
        # Domains whose guests never react to a graceful shutdown
        self.ignore_shutdown: Set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0

    # Test helpers

    def fail(self, method: str, name: str, error: Optional[Exception] = None) -> None:
        """Make ``method`` raise for ``name`` (``pool/volume`` for volume calls)."""
        self.failures[(method, name)] = error or HypervisorOperationError(f"{method} {name} failed")

    def add_network(self, document: str, active: bool = True, autostart: bool = True) -> None:
        self.networks[_name_of(document)] = {"xml": document, "active": active, "autostart": autostart}

    def add_pool(self, document: str, active: bool = True, autostart: bool = True) -> None:
        self.pools[_name_of(document)] = {
            "xml": document, "active": active, "autostart": autostart, "volumes": {},
        }

    def add_volume(self, pool: str, name: str, capacity: int, fmt: str = "qcow2") -> None:
        self.pools[pool]["volumes"][name] = {"capacity": capacity, "format": fmt}

    def add_domain(self, document: str, active: bool = False) -> None:
        self.domains[_name_of(document)] = {"xml": document, "active": active}

    def mutations(self) -> List[Tuple]:
        return [call for call in self.calls if call[0] in MUTATING_CALLS]

    def called(self, method: str) -> List[Tuple]:
        return [call for call in self.calls if call[0] == method]

    async def _enter(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        key = (method, "/".join(arg for arg in args if isinstance(arg, str)))
        if method in MUTATING_CALLS and self.delay:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                await asyncio.sleep(self.delay)
            finally:
                self.in_flight -= 1
        if key in self.failures:
            raise self.failures[key]

    @staticmethod
    def _lookup(table: Dict[str, dict], name: str, label: str) -> dict:
        if name not in table:
            raise ResourceNotFoundError(f"{label} {name} not found")
        return table[name]

    # Networks

    async def list_networks(self) -> List[str]:
        await self._enter("list_networks")
        return sorted(self.networks)

    async def get_network_definition(self, name: str) -> str:
        await self._enter("get_network_definition", name)
        return self._lookup(self.networks, name, "Network")["xml"]

    async def define_network(self, document: str) -> None:
        name = _name_of(document)
        await self._enter("define_network", name)
        entry = self.networks.setdefault(name, {"active": False, "autostart": False})
        entry["xml"] = document

    async def undefine_network(self, name: str) -> None:
        await self._enter("undefine_network", name)
        self._lookup(self.networks, name, "Network")
        del self.networks[name]

    async def start_network(self, name: str) -> None:
        await self._enter("start_network", name)
        self._lookup(self.networks, name, "Network")["active"] = True

    async def stop_network(self, name: str) -> None:
        await self._enter("stop_network", name)
        self._lookup(self.networks, name, "Network")["active"] = False

    async def is_network_active(self, name: str) -> bool:
        await self._enter("is_network_active", name)
        return self._lookup(self.networks, name, "Network")["active"]

    async def is_network_autostart(self, name: str) -> bool:
        await self._enter("is_network_autostart", name)
        return self._lookup(self.networks, name, "Network")["autostart"]

    async def set_network_autostart(self, name: str, autostart: bool) -> None:
        await self._enter("set_network_autostart", name, autostart)
        self._lookup(self.networks, name, "Network")["autostart"] = autostart

    # Pools

    async def list_pools(self) -> List[str]:
        await self._enter("list_pools")
        return sorted(self.pools)

    async def get_pool_definition(self, name: str) -> str:
        await self._enter("get_pool_definition", name)
        return self._lookup(self.pools, name, "Pool")["xml"]

    async def define_pool(self, document: str) -> None:
        name = _name_of(document)
        await self._enter("define_pool", name)
        entry = self.pools.setdefault(name, {"active": False, "autostart": False, "volumes": {}})
        entry["xml"] = document

    async def undefine_pool(self, name: str) -> None:
        await self._enter("undefine_pool", name)
        self._lookup(self.pools, name, "Pool")
        del self.pools[name]

    async def start_pool(self, name: str) -> None:
        await self._enter("start_pool", name)
        self._lookup(self.pools, name, "Pool")["active"] = True

    async def stop_pool(self, name: str) -> None:
        await self._enter("stop_pool", name)
        self._lookup(self.pools, name, "Pool")["active"] = False

    async def is_pool_active(self, name: str) -> bool:
        await self._enter("is_pool_active", name)
        return self._lookup(self.pools, name, "Pool")["active"]

    async def is_pool_autostart(self, name: str) -> bool:
        await self._enter("is_pool_autostart", name)
        return self._lookup(self.pools, name, "Pool")["autostart"]

    async def set_pool_autostart(self, name: str, autostart: bool) -> None:
        await self._enter("set_pool_autostart", name, autostart)
        self._lookup(self.pools, name, "Pool")["autostart"] = autostart

    # Volumes

    def _active_pool(self, pool: str) -> dict:
        entry = self._lookup(self.pools, pool, "Pool")
        if not entry["active"]:
            raise HypervisorOperationError(f"storage pool '{pool}' is not active")
        return entry

    async def list_volumes(self, pool: str) -> List[str]:
        await self._enter("list_volumes", pool)
        return sorted(self._active_pool(pool)["volumes"])

    async def get_volume_definition(self, pool: str, name: str) -> str:
        await self._enter("get_volume_definition", pool, name)
        volume = self._lookup(self._active_pool(pool)["volumes"], name, "Volume")
        return (
            f"<volume type='file'><name>{name}</name>"
            f"<capacity unit='bytes'>{volume['capacity']}</capacity>"
            f"<allocation unit='bytes'>196608</allocation>"
            f"<target><path>/pools/{pool}/{name}</path><format type='{volume['format']}'/></target>"
            f"</volume>"
        )

    async def create_volume(self, pool: str, document: str) -> None:
        await self._enter("create_volume", pool, _name_of(document))
        root = ET.fromstring(document)
        self._active_pool(pool)["volumes"][root.find("name").text] = {
            "capacity": int(root.find("capacity").text),
            "format": root.find("./target/format").get("type"),
        }

    async def delete_volume(self, pool: str, name: str) -> None:
        await self._enter("delete_volume", pool, name)
        volumes = self._active_pool(pool)["volumes"]
        self._lookup(volumes, name, "Volume")
        del volumes[name]

    async def resize_volume(self, pool: str, name: str, capacity_bytes: int) -> None:
        await self._enter("resize_volume", pool, name, capacity_bytes)
        self._lookup(self._active_pool(pool)["volumes"], name, "Volume")["capacity"] = capacity_bytes

    # Domains

    async def list_domains(self) -> List[str]:
        await self._enter("list_domains")
        return sorted(self.domains)

    async def get_domain_definition(self, name: str) -> str:
        await self._enter("get_domain_definition", name)
        return self._lookup(self.domains, name, "Domain")["xml"]

    async def define_domain(self, document: str) -> None:
        name = _name_of(document)
        await self._enter("define_domain", name)
        entry = self.domains.setdefault(name, {"active": False})
        entry["xml"] = document

    async def undefine_domain(self, name: str) -> None:
        await self._enter("undefine_domain", name)
        self._lookup(self.domains, name, "Domain")
        del self.domains[name]

    async def start_domain(self, name: str) -> None:
        await self._enter("start_domain", name)
        self._lookup(self.domains, name, "Domain")["active"] = True

    async def stop_domain(self, name: str, force: bool = False) -> None:
        await self._enter("stop_domain", *((name, True) if force else (name,)))
        entry = self._lookup(self.domains, name, "Domain")
        if force or name not in self.ignore_shutdown:
            entry["active"] = False

    async def is_domain_active(self, name: str) -> bool:
        await self._enter("is_domain_active", name)
        return self._lookup(self.domains, name, "Domain")["active"]


@pytest.fixture
def fake():
    """An empty in-memory hypervisor."""
    return FakeHypervisor()


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def reconciler(fake, config):
    return Reconciler(fake, config)

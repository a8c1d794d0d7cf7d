"""
Hypervisor client interface consumed by the reconciler.

The reconciler never talks to libvirt directly; it drives an object with the
methods below. ``LibvirtClient`` implements them over libvirt-python, and the
test suite implements them in memory. Documents are libvirt XML strings.

Errors are reported by raising ``ReconcilerError`` subclasses
(``HypervisorOperationError``, ``ResourceNotFoundError``, ...).
"""

from typing import List

from typing_extensions import Protocol, runtime_checkable


@runtime_checkable
class HypervisorClient(Protocol):
    """Management API used to read and change live hypervisor state."""

    # Networks

    async def list_networks(self) -> List[str]:
        """Names of all persistent networks, active or not."""
        ...

    async def get_network_definition(self, name: str) -> str:
        ...

    async def define_network(self, document: str) -> None:
        """Create or replace a persistent network definition."""
        ...

    async def undefine_network(self, name: str) -> None:
        """Stop (if active) and remove a network definition."""
        ...

    async def start_network(self, name: str) -> None:
        ...

    async def stop_network(self, name: str) -> None:
        ...

    async def is_network_active(self, name: str) -> bool:
        ...

    async def is_network_autostart(self, name: str) -> bool:
        ...

    async def set_network_autostart(self, name: str, autostart: bool) -> None:
        ...

    # Storage pools

    async def list_pools(self) -> List[str]:
        ...

    async def get_pool_definition(self, name: str) -> str:
        ...

    async def define_pool(self, document: str) -> None:
        """Create or replace a persistent pool definition."""
        ...

    async def undefine_pool(self, name: str) -> None:
        """Stop (if active) and remove a pool definition. Volumes stay on disk."""
        ...

    async def start_pool(self, name: str) -> None:
        """Start a pool, building its target first if it does not exist."""
        ...

    async def stop_pool(self, name: str) -> None:
        """Deactivate a pool. Its volumes stay on disk."""
        ...

    async def is_pool_active(self, name: str) -> bool:
        ...

    async def is_pool_autostart(self, name: str) -> bool:
        ...

    async def set_pool_autostart(self, name: str, autostart: bool) -> None:
        ...

    # Volumes, scoped to an active pool

    async def list_volumes(self, pool: str) -> List[str]:
        ...

    async def get_volume_definition(self, pool: str, name: str) -> str:
        ...

    async def create_volume(self, pool: str, document: str) -> None:
        ...

    async def delete_volume(self, pool: str, name: str) -> None:
        ...

    async def resize_volume(self, pool: str, name: str, capacity_bytes: int) -> None:
        """Grow a volume in place."""
        ...

    # Domains

    async def list_domains(self) -> List[str]:
        """Names of all persistent domains, running or not."""
        ...

    async def get_domain_definition(self, name: str) -> str:
        """The persistent (inactive) definition of a domain."""
        ...

    async def define_domain(self, document: str) -> None:
        ...

    async def undefine_domain(self, name: str) -> None:
        """Remove a domain definition. Never deletes disks, NVRAM or TPM state."""
        ...

    async def start_domain(self, name: str) -> None:
        ...

    async def stop_domain(self, name: str, force: bool = False) -> None:
        """Request a graceful shutdown, or power the domain off with ``force``."""
        ...

    async def is_domain_active(self, name: str) -> bool:
        ...

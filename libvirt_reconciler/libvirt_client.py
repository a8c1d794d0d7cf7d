"""
Libvirt client implementing the hypervisor interface over libvirt-python.

This module provides the concrete ``HypervisorClient`` used by the reconciler,
with proper error handling, connection management and read-only protection.
libvirt-python calls block, so every call runs in the event loop's default
executor; the libvirt connection itself is thread-safe.
"""

import asyncio
import functools
from typing import Callable, List, Optional, Tuple

import libvirt
from libvirt import libvirtError

from .config import Config
from .exceptions import (
    HypervisorConnectionError,
    HypervisorOperationError,
    HypervisorPermissionError,
    ResourceNotFoundError,
)
from .logging import get_logger


logger = get_logger(__name__)


class LibvirtClient:
    """
    Hypervisor client backed by a libvirt connection.

    This client provides:
    - Connection management with a bounded connect timeout
    - Translation of libvirt errors into reconciler exceptions
    - Refusal of mutating calls on read-only connections
    - Undefine semantics that never delete disks, NVRAM or TPM state
    """

    def __init__(self, config: Config):
        """Initialize libvirt client with configuration."""
        self.config = config
        self._connection: Optional[libvirt.virConnect] = None
        self._lock = asyncio.Lock()

        # Set up libvirt error handler to prevent default stderr output
        libvirt.registerErrorHandler(self._libvirt_error_handler, None)

    def _libvirt_error_handler(self, ctx, err):
        """Custom libvirt error handler."""
        logger.debug(f"Libvirt error: {err}")

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()

    async def connect(self) -> None:
        """Establish connection to libvirt."""
        async with self._lock:
            if self._connection is not None:
                return

            uri = self.config.libvirt.uri
            opener = libvirt.openReadOnly if self.config.libvirt.readonly else libvirt.open
            loop = asyncio.get_running_loop()
            try:
                self._connection = await asyncio.wait_for(
                    loop.run_in_executor(None, opener, uri),
                    timeout=self.config.libvirt.timeout,
                )
            except asyncio.TimeoutError:
                logger.error(f"Timed out connecting to libvirt: {uri}")
                raise HypervisorConnectionError(f"Timed out connecting to libvirt: {uri}")
            except libvirtError as e:
                logger.error(f"Failed to connect to libvirt: {e}")
                raise HypervisorConnectionError(f"Failed to connect to libvirt: {e}")

            logger.info(f"Connected to libvirt: {uri}")

    async def disconnect(self) -> None:
        """Close connection to libvirt."""
        async with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info("Disconnected from libvirt")
                except libvirtError as e:
                    logger.warning(f"Error closing libvirt connection: {e}")
                finally:
                    self._connection = None

    def _ensure_connected(self) -> libvirt.virConnect:
        """Ensure we have an active connection."""
        if self._connection is None:
            raise HypervisorConnectionError("Not connected to libvirt")

        try:
            self._connection.getVersion()
            return self._connection
        except libvirtError:
            self._connection = None
            raise HypervisorConnectionError("Libvirt connection lost")

    def _check_write_allowed(self, operation: str) -> None:
        """Refuse mutating operations on a read-only connection."""
        if self.config.libvirt.readonly:
            raise HypervisorPermissionError(f"Operation not allowed on read-only connection: {operation}")

    async def _invoke(
        self,
        action: str,
        func: Callable,
        *args,
        missing: Optional[Tuple[int, str]] = None,
    ):
        """Run a blocking libvirt call in the executor and translate its errors."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args))
        except libvirtError as e:
            if missing is not None and e.get_error_code() == missing[0]:
                raise ResourceNotFoundError(f"{missing[1]} not found", details={"action": action})
            logger.error(f"Failed to {action}: {e}")
            raise HypervisorOperationError(f"Failed to {action}: {e}", details={"action": action})

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    def _network_missing(self, name: str) -> Tuple[int, str]:
        return libvirt.VIR_ERR_NO_NETWORK, f"Network {name}"

    async def list_networks(self) -> List[str]:
        """List persistent networks."""
        conn = self._ensure_connected()

        def _list():
            flags = libvirt.VIR_CONNECT_LIST_NETWORKS_PERSISTENT
            return sorted(net.name() for net in conn.listAllNetworks(flags))

        names = await self._invoke("list networks", _list)
        logger.debug(f"Listed {len(names)} networks")
        return names

    async def get_network_definition(self, name: str) -> str:
        conn = self._ensure_connected()

        def _xml():
            network = conn.networkLookupByName(name)
            return network.XMLDesc(libvirt.VIR_NETWORK_XML_INACTIVE)

        return await self._invoke(f"read network {name}", _xml, missing=self._network_missing(name))

    async def define_network(self, document: str) -> None:
        self._check_write_allowed("network.define")
        conn = self._ensure_connected()
        network = await self._invoke("define network", conn.networkDefineXML, document)
        logger.info(f"Defined network: {network.name()}")

    async def undefine_network(self, name: str) -> None:
        self._check_write_allowed("network.undefine")
        conn = self._ensure_connected()

        def _undefine():
            network = conn.networkLookupByName(name)
            if network.isActive():
                network.destroy()
            network.undefine()

        await self._invoke(f"undefine network {name}", _undefine, missing=self._network_missing(name))
        logger.info(f"Undefined network: {name}")

    async def start_network(self, name: str) -> None:
        self._check_write_allowed("network.start")
        conn = self._ensure_connected()

        def _start():
            conn.networkLookupByName(name).create()

        await self._invoke(f"start network {name}", _start, missing=self._network_missing(name))
        logger.info(f"Started network: {name}")

    async def stop_network(self, name: str) -> None:
        self._check_write_allowed("network.stop")
        conn = self._ensure_connected()

        def _stop():
            conn.networkLookupByName(name).destroy()

        await self._invoke(f"stop network {name}", _stop, missing=self._network_missing(name))
        logger.info(f"Stopped network: {name}")

    async def is_network_active(self, name: str) -> bool:
        conn = self._ensure_connected()

        def _active():
            return bool(conn.networkLookupByName(name).isActive())

        return await self._invoke(f"query network {name}", _active, missing=self._network_missing(name))

    async def is_network_autostart(self, name: str) -> bool:
        conn = self._ensure_connected()

        def _autostart():
            return bool(conn.networkLookupByName(name).autostart())

        return await self._invoke(f"query network {name}", _autostart, missing=self._network_missing(name))

    async def set_network_autostart(self, name: str, autostart: bool) -> None:
        self._check_write_allowed("network.autostart")
        conn = self._ensure_connected()

        def _autostart():
            network = conn.networkLookupByName(name)
            if bool(network.autostart()) != autostart:
                network.setAutostart(1 if autostart else 0)

        await self._invoke(f"set autostart on network {name}", _autostart, missing=self._network_missing(name))

    # ------------------------------------------------------------------
    # Storage pools
    # ------------------------------------------------------------------

    def _pool_missing(self, name: str) -> Tuple[int, str]:
        return libvirt.VIR_ERR_NO_STORAGE_POOL, f"Storage pool {name}"

    async def list_pools(self) -> List[str]:
        """List persistent storage pools."""
        conn = self._ensure_connected()

        def _list():
            flags = libvirt.VIR_CONNECT_LIST_STORAGE_POOLS_PERSISTENT
            return sorted(pool.name() for pool in conn.listAllStoragePools(flags))

        names = await self._invoke("list storage pools", _list)
        logger.debug(f"Listed {len(names)} storage pools")
        return names

    async def get_pool_definition(self, name: str) -> str:
        conn = self._ensure_connected()

        def _xml():
            pool = conn.storagePoolLookupByName(name)
            return pool.XMLDesc(libvirt.VIR_STORAGE_XML_INACTIVE)

        return await self._invoke(f"read storage pool {name}", _xml, missing=self._pool_missing(name))

    async def define_pool(self, document: str) -> None:
        self._check_write_allowed("pool.define")
        conn = self._ensure_connected()
        pool = await self._invoke("define storage pool", conn.storagePoolDefineXML, document, 0)
        logger.info(f"Defined storage pool: {pool.name()}")

    async def undefine_pool(self, name: str) -> None:
        self._check_write_allowed("pool.undefine")
        conn = self._ensure_connected()

        def _undefine():
            pool = conn.storagePoolLookupByName(name)
            # destroy() only deactivates; the target and its volumes stay on disk
            if pool.isActive():
                pool.destroy()
            pool.undefine()

        await self._invoke(f"undefine storage pool {name}", _undefine, missing=self._pool_missing(name))
        logger.info(f"Undefined storage pool: {name}")

    async def start_pool(self, name: str) -> None:
        self._check_write_allowed("pool.start")
        conn = self._ensure_connected()

        def _start():
            pool = conn.storagePoolLookupByName(name)
            pool.create(libvirt.VIR_STORAGE_POOL_CREATE_WITH_BUILD)

        await self._invoke(f"start storage pool {name}", _start, missing=self._pool_missing(name))
        logger.info(f"Started storage pool: {name}")

    async def stop_pool(self, name: str) -> None:
        self._check_write_allowed("pool.stop")
        conn = self._ensure_connected()

        def _stop():
            conn.storagePoolLookupByName(name).destroy()

        await self._invoke(f"stop storage pool {name}", _stop, missing=self._pool_missing(name))
        logger.info(f"Stopped storage pool: {name}")

    async def is_pool_active(self, name: str) -> bool:
        conn = self._ensure_connected()

        def _active():
            return bool(conn.storagePoolLookupByName(name).isActive())

        return await self._invoke(f"query storage pool {name}", _active, missing=self._pool_missing(name))

    async def is_pool_autostart(self, name: str) -> bool:
        conn = self._ensure_connected()

        def _autostart():
            return bool(conn.storagePoolLookupByName(name).autostart())

        return await self._invoke(f"query storage pool {name}", _autostart, missing=self._pool_missing(name))

    async def set_pool_autostart(self, name: str, autostart: bool) -> None:
        self._check_write_allowed("pool.autostart")
        conn = self._ensure_connected()

        def _autostart():
            pool = conn.storagePoolLookupByName(name)
            if bool(pool.autostart()) != autostart:
                pool.setAutostart(1 if autostart else 0)

        await self._invoke(f"set autostart on storage pool {name}", _autostart, missing=self._pool_missing(name))

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    def _volume_missing(self, pool: str, name: str) -> Tuple[int, str]:
        return libvirt.VIR_ERR_NO_STORAGE_VOL, f"Volume {pool}/{name}"

    async def list_volumes(self, pool: str) -> List[str]:
        conn = self._ensure_connected()

        def _list():
            pool_obj = conn.storagePoolLookupByName(pool)
            # Pick up volumes created outside libvirt since the pool started
            pool_obj.refresh(0)
            return sorted(pool_obj.listVolumes())

        return await self._invoke(f"list volumes in {pool}", _list, missing=self._pool_missing(pool))

    async def get_volume_definition(self, pool: str, name: str) -> str:
        conn = self._ensure_connected()

        def _xml():
            volume = conn.storagePoolLookupByName(pool).storageVolLookupByName(name)
            return volume.XMLDesc(0)

        return await self._invoke(
            f"read volume {pool}/{name}", _xml, missing=self._volume_missing(pool, name)
        )

    async def create_volume(self, pool: str, document: str) -> None:
        self._check_write_allowed("volume.create")
        conn = self._ensure_connected()

        def _create():
            return conn.storagePoolLookupByName(pool).createXML(document, 0)

        volume = await self._invoke(f"create volume in {pool}", _create, missing=self._pool_missing(pool))
        logger.info(f"Created volume: {pool}/{volume.name()}")

    async def delete_volume(self, pool: str, name: str) -> None:
        self._check_write_allowed("volume.delete")
        conn = self._ensure_connected()

        def _delete():
            conn.storagePoolLookupByName(pool).storageVolLookupByName(name).delete(0)

        await self._invoke(f"delete volume {pool}/{name}", _delete, missing=self._volume_missing(pool, name))
        logger.info(f"Deleted volume: {pool}/{name}")

    async def resize_volume(self, pool: str, name: str, capacity_bytes: int) -> None:
        self._check_write_allowed("volume.resize")
        conn = self._ensure_connected()

        def _resize():
            conn.storagePoolLookupByName(pool).storageVolLookupByName(name).resize(capacity_bytes, 0)

        await self._invoke(f"resize volume {pool}/{name}", _resize, missing=self._volume_missing(pool, name))
        logger.info(f"Resized volume {pool}/{name} to {capacity_bytes} bytes")

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    def _domain_missing(self, name: str) -> Tuple[int, str]:
        return libvirt.VIR_ERR_NO_DOMAIN, f"Domain {name}"

    async def list_domains(self) -> List[str]:
        """List persistent domains; transient ones are not ours to manage."""
        conn = self._ensure_connected()

        def _list():
            flags = libvirt.VIR_CONNECT_LIST_DOMAINS_PERSISTENT
            return sorted(domain.name() for domain in conn.listAllDomains(flags))

        names = await self._invoke("list domains", _list)
        logger.debug(f"Listed {len(names)} domains")
        return names

    async def get_domain_definition(self, name: str) -> str:
        conn = self._ensure_connected()

        def _xml():
            return conn.lookupByName(name).XMLDesc(libvirt.VIR_DOMAIN_XML_INACTIVE)

        return await self._invoke(f"read domain {name}", _xml, missing=self._domain_missing(name))

    async def define_domain(self, document: str) -> None:
        self._check_write_allowed("domain.define")
        conn = self._ensure_connected()
        domain = await self._invoke("define domain", conn.defineXML, document)
        logger.info(f"Defined persistent domain: {domain.name()}")

    async def undefine_domain(self, name: str) -> None:
        """Undefine a domain, keeping its disks, NVRAM and TPM state."""
        self._check_write_allowed("domain.undefine")
        conn = self._ensure_connected()

        flags = libvirt.VIR_DOMAIN_UNDEFINE_KEEP_NVRAM
        # Available from libvirt 8.9
        flags |= getattr(libvirt, "VIR_DOMAIN_UNDEFINE_KEEP_TPM", 0)

        def _undefine():
            conn.lookupByName(name).undefineFlags(flags)

        await self._invoke(f"undefine domain {name}", _undefine, missing=self._domain_missing(name))
        logger.info(f"Undefined domain: {name}")

    async def start_domain(self, name: str) -> None:
        self._check_write_allowed("domain.start")
        conn = self._ensure_connected()

        def _start():
            conn.lookupByName(name).create()

        await self._invoke(f"start domain {name}", _start, missing=self._domain_missing(name))
        logger.info(f"Started domain: {name}")

    async def stop_domain(self, name: str, force: bool = False) -> None:
        self._check_write_allowed("domain.stop")
        conn = self._ensure_connected()

        def _stop():
            domain = conn.lookupByName(name)
            if force:
                domain.destroy()
            else:
                domain.shutdown()

        await self._invoke(f"stop domain {name}", _stop, missing=self._domain_missing(name))
        if force:
            logger.warning(f"Forcefully stopped domain: {name}")
        else:
            logger.info(f"Gracefully stopping domain: {name}")

    async def is_domain_active(self, name: str) -> bool:
        conn = self._ensure_connected()

        def _active():
            return bool(conn.lookupByName(name).isActive())

        return await self._invoke(f"query domain {name}", _active, missing=self._domain_missing(name))

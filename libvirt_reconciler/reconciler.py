"""
Reconciliation engine for libvirt-reconciler.

``Reconciler.apply`` brings a hypervisor in line with a desired state in a
single asynchronous pass:

1. networks and pools (with their volumes) are created or updated
   concurrently, bounded by ``reconcile.max_workers``;
2. once all of them have finished, domains are created or updated;
3. domains no longer declared are undefined, then networks and pools no
   longer declared are removed.

Live state is read fresh on every pass. A failure is recorded against the
resource it happened on and the pass continues; domains that reference a
failed network, pool or volume are not attempted. Nothing is rolled back.
"""

import asyncio
import xml.etree.ElementTree as ET
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .config import Config
from .exceptions import ReconcilerError, UnsupportedChangeError
from .hypervisor import HypervisorClient
from .logging import LogContext, get_logger, log_async_performance
from .models import (
    DesiredState,
    DomainSpec,
    ErrorKind,
    NetworkSpec,
    Outcome,
    ReconcileReport,
    ResourceKind,
    ResourceResult,
    StoragePoolSpec,
    Unmanaged,
    VolumeEntry,
)
from .validation import ensure_valid
from .xml_templates import (
    documents_match,
    domain_references,
    interface_entries,
    render_domain,
    render_network,
    render_pool,
    render_volume,
    volume_capacity,
    volume_format,
)


logger = get_logger(__name__)

ResourceKey = Tuple[ResourceKind, str]


class _Operation:
    """Tracks the step a resource task is on, for failure reporting."""

    def __init__(self):
        self.current = "read"


class _Pass:
    """State shared by every task of one apply."""

    def __init__(self, max_workers: int, dry_run: bool, cancel_event: Optional[asyncio.Event]):
        self.semaphore = asyncio.Semaphore(max_workers)
        self.dry_run = dry_run
        self.cancel_event = cancel_event
        self.results: List[ResourceResult] = []
        self.failed: Set[ResourceKey] = set()
        self.active_pools: Set[str] = set()
        self._locks: Dict[ResourceKey, asyncio.Lock] = {}

    def lock(self, kind: ResourceKind, name: str) -> asyncio.Lock:
        return self._locks.setdefault((kind, name), asyncio.Lock())

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def record(self, result: ResourceResult) -> ResourceResult:
        self.results.append(result)
        if result.outcome == Outcome.FAILED:
            self.failed.add((result.kind, result.name))
        return result

    def outcome_of(self, kind: ResourceKind, name: str) -> Optional[Outcome]:
        for result in self.results:
            if result.kind == kind and result.name == name:
                return result.outcome
        return None


def _failure(
    kind: ResourceKind,
    name: str,
    operation: str,
    reason: str,
    error_kind: ErrorKind = ErrorKind.OPERATIONAL,
) -> ResourceResult:
    return ResourceResult(
        kind=kind,
        name=name,
        outcome=Outcome.FAILED,
        operation=operation,
        reason=reason,
        error_kind=error_kind,
    )


class Reconciler:
    """Applies desired states through a hypervisor client."""

    def __init__(self, client: HypervisorClient, config: Optional[Config] = None):
        self.client = client
        self.config = config or Config()

    @log_async_performance(threshold_ms=60000.0)
    async def apply(
        self,
        desired: DesiredState,
        dry_run: Optional[bool] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReconcileReport:
        """
        Reconcile live state with ``desired`` and report what happened.

        Raises ``TopologyValidationError`` before touching the hypervisor if
        ``desired`` is invalid. With ``dry_run`` (or a read-only connection)
        live state is read but never changed.
        """
        ensure_valid(desired)

        if dry_run is None:
            dry_run = self.config.reconcile.dry_run
        if self.config.libvirt.readonly and not dry_run:
            logger.info("Read-only connection: switching to dry run")
            dry_run = True

        state = _Pass(self.config.reconcile.max_workers, dry_run, cancel_event)
        logger.info(f"Starting reconcile pass{' (dry run)' if dry_run else ''}")

        # Barrier: no domain work starts before every network and pool is settled
        stale_networks, stale_pools = await asyncio.gather(
            self._reconcile_networks(state, desired),
            self._reconcile_pools(state, desired),
        )

        stale_domains = await self._reconcile_domains(state, desired)

        await asyncio.gather(*[
            self._guarded(state, ResourceKind.DOMAIN, name, self._delete_domain_work(state, name))
            for name in stale_domains
        ])
        await self._delete_unreferenced(state, stale_networks, stale_pools)

        report = ReconcileReport(results=state.results, dry_run=dry_run)
        logger.info(
            f"Reconcile pass finished: {report.counts()}"
            f"{' (dry run)' if dry_run else ''}"
        )
        return report

    # ------------------------------------------------------------------
    # Task plumbing
    # ------------------------------------------------------------------

    async def _guarded(
        self,
        state: _Pass,
        kind: ResourceKind,
        name: str,
        work: Callable[[_Operation], Awaitable[ResourceResult]],
    ) -> ResourceResult:
        """Run one resource's work under the worker limit and its lock."""
        if state.cancelled:
            return state.record(ResourceResult(kind=kind, name=name, outcome=Outcome.CANCELLED))

        async with state.semaphore:
            if state.cancelled:
                return state.record(ResourceResult(kind=kind, name=name, outcome=Outcome.CANCELLED))

            async with state.lock(kind, name):
                op = _Operation()
                with LogContext(kind=kind.value, resource=name) as log:
                    try:
                        result = await work(op)
                    except UnsupportedChangeError as e:
                        log.error(f"{kind.value} {name}: {e.message}")
                        result = _failure(kind, name, op.current, e.message, ErrorKind.UNSUPPORTED_CHANGE)
                    except ReconcilerError as e:
                        log.error(f"{kind.value} {name}: {op.current} failed: {e.message}")
                        result = _failure(kind, name, op.current, e.message)
                    except ET.ParseError as e:
                        log.error(f"{kind.value} {name}: unreadable live definition: {e}")
                        result = _failure(kind, name, op.current, f"Unreadable live definition: {e}")
                    else:
                        if result.outcome != Outcome.UNCHANGED:
                            log.info(f"{kind.value} {name}: {result.outcome.value}")
                return state.record(result)

    async def _mutate(self, state: _Pass, op: _Operation, operation: str, call, *args) -> None:
        """Issue a mutating client call, or only note it during a dry run."""
        op.current = operation
        if state.dry_run:
            logger.debug(f"Dry run: skipping {operation}")
            return
        await call(*args)

    async def _list_live(self, state: _Pass, kind: ResourceKind, lister, declared: List[str]) -> Optional[Set[str]]:
        """List live names of a kind; on failure every declared resource fails."""
        try:
            return set(await lister())
        except ReconcilerError as e:
            logger.error(f"Failed to list {kind.value}s: {e.message}")
            for name in declared:
                state.record(_failure(kind, name, "list", e.message))
            return None

    async def _skip_unmanaged(self, state: _Pass, kind: ResourceKind, lister) -> None:
        try:
            names = await lister()
        except ReconcilerError as e:
            logger.warning(f"Could not list unmanaged {kind.value}s: {e.message}")
            return
        for name in names:
            state.record(ResourceResult(kind=kind, name=name, outcome=Outcome.SKIPPED_UNMANAGED))

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    async def _reconcile_networks(self, state: _Pass, desired: DesiredState) -> List[str]:
        if isinstance(desired.networks, Unmanaged):
            await self._skip_unmanaged(state, ResourceKind.NETWORK, self.client.list_networks)
            return []

        specs = desired.managed_networks()
        live = await self._list_live(state, ResourceKind.NETWORK, self.client.list_networks, [s.name for s in specs])
        if live is None:
            return []

        await asyncio.gather(*[
            self._guarded(
                state, ResourceKind.NETWORK, spec.name,
                self._network_work(state, spec, spec.name in live),
            )
            for spec in specs
        ])
        return sorted(live - {spec.name for spec in specs})

    def _network_work(self, state: _Pass, spec: NetworkSpec, exists: bool):
        async def work(op: _Operation) -> ResourceResult:
            return await self._sync_started(
                state, op, ResourceKind.NETWORK, spec.name, render_network(spec), exists,
                spec.active, spec.autostart,
                get=self.client.get_network_definition,
                define=self.client.define_network,
                is_active=self.client.is_network_active,
                start=self.client.start_network,
                stop=self.client.stop_network,
                is_autostart=self.client.is_network_autostart,
                set_autostart=self.client.set_network_autostart,
            )
        return work

    async def _sync_started(
        self,
        state: _Pass,
        op: _Operation,
        kind: ResourceKind,
        name: str,
        document: str,
        exists: bool,
        active: bool,
        autostart: bool,
        get,
        define,
        is_active,
        start,
        stop,
        is_autostart,
        set_autostart,
    ) -> ResourceResult:
        """Define, start and set autostart on a network or pool as needed."""
        details = []
        created = not exists
        changed = created

        if exists:
            op.current = "read"
            changed = not documents_match(document, await get(name))
        if changed:
            await self._mutate(state, op, "define", define, document)
            if exists:
                details.append("definition changed")

        running = False
        current_autostart = False
        if exists:
            op.current = "read"
            running = await is_active(name)
            current_autostart = await is_autostart(name)
        was_running = running

        # A running network or pool only picks up a new definition on restart
        if running and (changed or not active):
            await self._mutate(state, op, "stop", stop, name)
            running = False
            if active:
                details.append("restarted")
            else:
                details.append("stopped")
        if active and not running:
            await self._mutate(state, op, "start", start, name)
            running = True
            if exists and "restarted" not in details:
                details.append("started")

        if current_autostart != autostart:
            await self._mutate(state, op, "autostart", set_autostart, name, autostart)
            if exists:
                details.append("autostart enabled" if autostart else "autostart disabled")

        # During a dry run only a pool that was already running can be read
        if kind == ResourceKind.POOL and running and (was_running or not state.dry_run):
            state.active_pools.add(name)

        if created:
            outcome = Outcome.CREATED
        elif details:
            outcome = Outcome.UPDATED
        else:
            outcome = Outcome.UNCHANGED
        return ResourceResult(kind=kind, name=name, outcome=outcome, details=details)

    # ------------------------------------------------------------------
    # Pools and volumes
    # ------------------------------------------------------------------

    async def _reconcile_pools(self, state: _Pass, desired: DesiredState) -> List[str]:
        if isinstance(desired.pools, Unmanaged):
            await self._skip_unmanaged(state, ResourceKind.POOL, self.client.list_pools)
            return []

        specs = desired.managed_pools()
        live = await self._list_live(state, ResourceKind.POOL, self.client.list_pools, [s.name for s in specs])
        if live is None:
            for spec in specs:
                self._record_volumes(state, spec, ErrorKind.DEPENDENCY_FAILED, f"pool {spec.name} failed")
            return []

        await asyncio.gather(*[self._pool_task(state, spec, spec.name in live) for spec in specs])
        return sorted(live - {spec.name for spec in specs})

    async def _pool_task(self, state: _Pass, spec: StoragePoolSpec, exists: bool) -> None:
        pool_result = await self._guarded(
            state, ResourceKind.POOL, spec.name,
            self._pool_work(state, spec, exists),
        )
        if pool_result.outcome == Outcome.FAILED:
            self._record_volumes(state, spec, ErrorKind.DEPENDENCY_FAILED, f"pool {spec.name} failed")
            return
        if pool_result.outcome == Outcome.CANCELLED:
            for entry in spec.volumes:
                state.record(ResourceResult(
                    kind=ResourceKind.VOLUME, name=f"{spec.name}/{entry.name}", outcome=Outcome.CANCELLED,
                ))
            return
        if not spec.volumes:
            return

        # Volumes run one after another so the pool's worker slot is never nested
        if spec.name in state.active_pools:
            try:
                live = set(await self.client.list_volumes(spec.name))
            except ReconcilerError as e:
                logger.error(f"Failed to list volumes in {spec.name}: {e.message}")
                self._record_volumes(state, spec, ErrorKind.OPERATIONAL, e.message, operation="list")
                return
        else:
            # Pool is only started in this (dry) run: nothing in it is known yet
            live = set()

        for entry in spec.volumes:
            await self._guarded(
                state, ResourceKind.VOLUME, f"{spec.name}/{entry.name}",
                self._volume_work(state, spec.name, entry, entry.name in live),
            )

    def _record_volumes(
        self,
        state: _Pass,
        spec: StoragePoolSpec,
        error_kind: ErrorKind,
        reason: str,
        operation: str = "read",
    ) -> None:
        for entry in spec.volumes:
            state.record(_failure(ResourceKind.VOLUME, f"{spec.name}/{entry.name}", operation, reason, error_kind))

    def _pool_work(self, state: _Pass, spec: StoragePoolSpec, exists: bool):
        async def work(op: _Operation) -> ResourceResult:
            return await self._sync_started(
                state, op, ResourceKind.POOL, spec.name, render_pool(spec), exists,
                spec.active, spec.autostart,
                get=self.client.get_pool_definition,
                define=self.client.define_pool,
                is_active=self.client.is_pool_active,
                start=self.client.start_pool,
                stop=self.client.stop_pool,
                is_autostart=self.client.is_pool_autostart,
                set_autostart=self.client.set_pool_autostart,
            )
        return work

    def _volume_work(self, state: _Pass, pool: str, entry: VolumeEntry, exists: bool):
        key = f"{pool}/{entry.name}"

        async def work(op: _Operation) -> ResourceResult:
            if not entry.present:
                if not exists:
                    return ResourceResult(kind=ResourceKind.VOLUME, name=key, outcome=Outcome.UNCHANGED)
                await self._mutate(state, op, "delete", self.client.delete_volume, pool, entry.name)
                return ResourceResult(kind=ResourceKind.VOLUME, name=key, outcome=Outcome.DELETED)

            spec = entry.volume
            if not exists:
                await self._mutate(state, op, "create", self.client.create_volume, pool, render_volume(spec))
                return ResourceResult(kind=ResourceKind.VOLUME, name=key, outcome=Outcome.CREATED)

            op.current = "read"
            live = await self.client.get_volume_definition(pool, entry.name)

            live_format = volume_format(live)
            if live_format is not None and live_format != spec.format:
                raise UnsupportedChangeError(
                    f"Volume format is {live_format}, declared {spec.format}; volumes are never converted"
                )

            desired_bytes = spec.capacity.to_bytes()
            live_bytes = volume_capacity(live)
            if live_bytes is None or live_bytes == desired_bytes:
                return ResourceResult(kind=ResourceKind.VOLUME, name=key, outcome=Outcome.UNCHANGED)
            if desired_bytes < live_bytes:
                raise UnsupportedChangeError(
                    f"Volume is {live_bytes} bytes, declared {desired_bytes}; volumes are never shrunk"
                )

            await self._mutate(state, op, "resize", self.client.resize_volume, pool, entry.name, desired_bytes)
            return ResourceResult(
                kind=ResourceKind.VOLUME, name=key, outcome=Outcome.UPDATED,
                details=[f"grown from {live_bytes} to {desired_bytes} bytes"],
            )

        return work

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    async def _reconcile_domains(self, state: _Pass, desired: DesiredState) -> List[str]:
        if isinstance(desired.domains, Unmanaged):
            await self._skip_unmanaged(state, ResourceKind.DOMAIN, self.client.list_domains)
            return []

        specs = desired.managed_domains()
        live = await self._list_live(state, ResourceKind.DOMAIN, self.client.list_domains, [s.name for s in specs])
        if live is None:
            return []

        await asyncio.gather(*[self._domain_task(state, spec, spec.name in live) for spec in specs])
        return sorted(live - {spec.name for spec in specs})

    def _failed_dependencies(self, state: _Pass, spec: DomainSpec) -> List[str]:
        failed = []
        for interface in spec.interfaces:
            if (ResourceKind.NETWORK, interface.network) in state.failed:
                failed.append(f"network {interface.network}")
        for disk in spec.disks:
            if (ResourceKind.POOL, disk.pool) in state.failed:
                failed.append(f"pool {disk.pool}")
            elif (ResourceKind.VOLUME, f"{disk.pool}/{disk.volume}") in state.failed:
                failed.append(f"volume {disk.pool}/{disk.volume}")
        # dict.fromkeys keeps the first occurrence order
        return list(dict.fromkeys(failed))

    async def _domain_task(self, state: _Pass, spec: DomainSpec, exists: bool) -> None:
        blocked = self._failed_dependencies(state, spec)
        if blocked:
            reason = f"Dependencies failed: {', '.join(blocked)}"
            logger.warning(f"domain {spec.name}: {reason}")
            state.record(_failure(
                ResourceKind.DOMAIN, spec.name, "create" if not exists else "update",
                reason, ErrorKind.DEPENDENCY_FAILED,
            ))
            return

        await self._guarded(state, ResourceKind.DOMAIN, spec.name, self._domain_work(state, spec, exists))

    def _domain_work(self, state: _Pass, spec: DomainSpec, exists: bool):
        async def work(op: _Operation) -> ResourceResult:
            document = render_domain(spec)
            details = []
            outcome = Outcome.UNCHANGED

            if not exists:
                await self._mutate(state, op, "define", self.client.define_domain, document)
                outcome = Outcome.CREATED
            else:
                op.current = "read"
                live = await self.client.get_domain_definition(spec.name)
                if not documents_match(document, live):
                    details.append(_describe_domain_change(document, live))
                    await self._mutate(state, op, "define", self.client.define_domain, document)
                    outcome = Outcome.UPDATED

            running = False
            if exists and (spec.active is not None or spec.restart or outcome == Outcome.UPDATED):
                op.current = "read"
                running = await self.client.is_domain_active(spec.name)

            if spec.active is True and not running:
                await self._mutate(state, op, "start", self.client.start_domain, spec.name)
                details.append("started")
            elif spec.active is False and running:
                await self._mutate(state, op, "stop", self.client.stop_domain, spec.name)
                details.append("shutdown requested")
            elif running and _wants_restart(spec, outcome):
                details.append(await self._restart_domain(state, op, spec.name))
            elif running and outcome == Outcome.UPDATED:
                details.append("changes apply at next boot")

            if outcome == Outcome.UNCHANGED and details:
                outcome = Outcome.UPDATED
            return ResourceResult(kind=ResourceKind.DOMAIN, name=spec.name, outcome=outcome, details=details)

        return work

    async def _restart_domain(self, state: _Pass, op: _Operation, name: str) -> str:
        """Shut a running domain down, powering it off after the timeout, then start it."""
        await self._mutate(state, op, "stop", self.client.stop_domain, name)
        detail = "restarted"
        if not state.dry_run and not await self._wait_for_shutdown(name):
            logger.warning(f"domain {name}: no shutdown after {self.config.reconcile.shutdown_timeout}s, powering off")
            await self._mutate(state, op, "stop", self.client.stop_domain, name, True)
            detail = "restarted (forced off)"
        await self._mutate(state, op, "start", self.client.start_domain, name)
        return detail

    async def _wait_for_shutdown(self, name: str) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.reconcile.shutdown_timeout
        while await self.client.is_domain_active(name):
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0, remaining))
        return True

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def _delete_domain_work(self, state: _Pass, name: str):
        async def work(op: _Operation) -> ResourceResult:
            details = []
            op.current = "read"
            if await self.client.is_domain_active(name):
                details.append("still running until shut down")
            await self._mutate(state, op, "undefine", self.client.undefine_domain, name)
            return ResourceResult(kind=ResourceKind.DOMAIN, name=name, outcome=Outcome.DELETED, details=details)
        return work

    async def _delete_unreferenced(self, state: _Pass, networks: List[str], pools: List[str]) -> None:
        """Remove stale networks and pools that no remaining domain uses."""
        if not networks and not pools:
            return

        if state.cancelled:
            for name in networks:
                state.record(ResourceResult(kind=ResourceKind.NETWORK, name=name, outcome=Outcome.CANCELLED))
            for name in pools:
                state.record(ResourceResult(kind=ResourceKind.POOL, name=name, outcome=Outcome.CANCELLED))
            return

        try:
            network_users, pool_users = await self._live_references(state)
        except ReconcilerError as e:
            logger.error(f"Could not read domain references: {e.message}")
            for name in networks:
                state.record(_failure(ResourceKind.NETWORK, name, "check-references", e.message))
            for name in pools:
                state.record(_failure(ResourceKind.POOL, name, "check-references", e.message))
            return

        tasks = []
        for name in networks:
            tasks.append(self._delete_task(
                state, ResourceKind.NETWORK, name, network_users.get(name, set()),
                self.client.undefine_network,
            ))
        for name in pools:
            tasks.append(self._delete_task(
                state, ResourceKind.POOL, name, pool_users.get(name, set()),
                self.client.undefine_pool,
            ))
        await asyncio.gather(*tasks)

    async def _delete_task(self, state: _Pass, kind: ResourceKind, name: str, users: Set[str], undefine) -> None:
        if users:
            reason = f"Still referenced by domain(s): {', '.join(sorted(users))}"
            logger.warning(f"{kind.value} {name}: {reason}")
            state.record(_failure(kind, name, "undefine", reason, ErrorKind.IN_USE))
            return

        async def work(op: _Operation) -> ResourceResult:
            await self._mutate(state, op, "undefine", undefine, name)
            return ResourceResult(kind=kind, name=name, outcome=Outcome.DELETED)

        await self._guarded(state, kind, name, work)

    async def _live_references(self, state: _Pass) -> Tuple[Dict[str, Set[str]], Dict[str, Set[str]]]:
        """Map network and pool names to the live domains that use them."""
        network_users: Dict[str, Set[str]] = {}
        pool_users: Dict[str, Set[str]] = {}

        for domain in await self.client.list_domains():
            # During a dry run, domains reported deleted are still defined
            if state.outcome_of(ResourceKind.DOMAIN, domain) == Outcome.DELETED:
                continue
            try:
                networks, pools = domain_references(await self.client.get_domain_definition(domain))
            except ET.ParseError as e:
                raise ReconcilerError(f"Unreadable definition of domain {domain}: {e}")
            for network in networks:
                network_users.setdefault(network, set()).add(domain)
            for pool in pools:
                pool_users.setdefault(pool, set()).add(domain)

        return network_users, pool_users


def _wants_restart(spec: DomainSpec, outcome: Outcome) -> bool:
    if spec.restart is None:
        return spec.active is True and outcome == Outcome.UPDATED
    return spec.restart


def _describe_domain_change(desired: str, live: str) -> str:
    """Summarize a domain update; appending interfaces is reported as additive."""
    try:
        desired_interfaces = interface_entries(desired)
        live_interfaces = interface_entries(live)
    except ET.ParseError:
        return "definition changed"

    if desired_interfaces == live_interfaces:
        return "definition changed"
    if len(desired_interfaces) > len(live_interfaces) and desired_interfaces[:len(live_interfaces)] == live_interfaces:
        appended = ", ".join(network or "?" for network, _, _ in desired_interfaces[len(live_interfaces):])
        return f"appended interfaces: {appended}"
    return "interfaces changed"

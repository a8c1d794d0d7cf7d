"""
Validation of a desired state before anything is applied.

``validate`` is pure: it inspects the submission only, never the hypervisor,
and reports every issue it finds rather than stopping at the first.
"""

from collections import Counter
from ipaddress import IPv4Address
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Tuple

from .exceptions import TopologyValidationError
from .logging import get_logger
from .models import (
    DesiredState,
    DomainSpec,
    NetworkSpec,
    ResourceKind,
    StoragePoolSpec,
    Unmanaged,
    ValidationIssue,
)


logger = get_logger(__name__)


class _Collector:
    def __init__(self):
        self.issues: List[ValidationIssue] = []

    def add(self, kind: ResourceKind, name: str, code: str, message: str) -> None:
        self.issues.append(ValidationIssue(kind=kind, name=name, code=code, message=message))


def validate(desired: DesiredState) -> List[ValidationIssue]:
    """Return every validation issue in ``desired``; an empty list means valid."""
    issues = _Collector()

    networks = desired.managed_networks()
    pools = desired.managed_pools()
    domains = desired.managed_domains()

    _check_unique_names(issues, ResourceKind.NETWORK, [n.name for n in networks])
    _check_unique_names(issues, ResourceKind.POOL, [p.name for p in pools])
    _check_unique_names(issues, ResourceKind.DOMAIN, [d.name for d in domains])

    for network in networks:
        _check_network(issues, network)
    for bridge, count in Counter(n.bridge for n in networks).items():
        if count > 1:
            owners = sorted(n.name for n in networks if n.bridge == bridge)
            for owner in owners:
                issues.add(
                    ResourceKind.NETWORK, owner, "duplicate-bridge",
                    f"bridge {bridge} is also used by {', '.join(o for o in owners if o != owner)}",
                )

    for pool in pools:
        _check_pool(issues, pool)

    network_index = {n.name: n for n in networks}
    pool_index = {p.name: p for p in pools}
    for domain in domains:
        _check_domain(issues, desired, domain, network_index, pool_index)

    _check_static_addresses(issues, domains, network_index)

    if issues.issues:
        logger.debug(f"Desired state has {len(issues.issues)} validation issue(s)")
    return issues.issues


def ensure_valid(desired: DesiredState) -> None:
    """Raise ``TopologyValidationError`` carrying every issue if ``desired`` is invalid."""
    issues = validate(desired)
    if issues:
        for issue in issues:
            logger.error(f"Validation failed: {issue}")
        raise TopologyValidationError(issues)


def _check_unique_names(issues: _Collector, kind: ResourceKind, names: List[str]) -> None:
    for name, count in sorted(Counter(names).items()):
        if count > 1:
            issues.add(kind, name, "duplicate-name", f"declared {count} times")


def _check_network(issues: _Collector, network: NetworkSpec) -> None:
    dhcp = network.dhcp
    if dhcp is None:
        return

    if dhcp.start > dhcp.end:
        issues.add(
            ResourceKind.NETWORK, network.name, "invalid-dhcp-range",
            f"DHCP range starts at {dhcp.start} after its end {dhcp.end}",
        )
    subnet = network.subnet
    for bound in (dhcp.start, dhcp.end):
        if bound not in subnet:
            issues.add(
                ResourceKind.NETWORK, network.name, "dhcp-outside-subnet",
                f"DHCP address {bound} is outside {subnet}",
            )
    if dhcp.contains(network.gateway):
        issues.add(
            ResourceKind.NETWORK, network.name, "gateway-in-dhcp-range",
            f"gateway {network.gateway} lies inside the DHCP range",
        )


def _check_pool(issues: _Collector, pool: StoragePoolSpec) -> None:
    for name, count in sorted(Counter(entry.name for entry in pool.volumes).items()):
        if count > 1:
            issues.add(
                ResourceKind.VOLUME, f"{pool.name}/{name}", "duplicate-name",
                f"listed {count} times in pool {pool.name}",
            )
    if not pool.active and pool.volumes:
        issues.add(
            ResourceKind.POOL, pool.name, "inactive-pool-volumes",
            "volumes can only be managed in an active pool",
        )


def _reference_resolves(state, name: str, index: Dict) -> bool:
    if isinstance(state, Unmanaged):
        return name in state.assume_present
    return name in index


def _check_domain(
    issues: _Collector,
    desired: DesiredState,
    domain: DomainSpec,
    networks: Dict[str, NetworkSpec],
    pools: Dict[str, StoragePoolSpec],
) -> None:
    for interface in domain.interfaces:
        if not _reference_resolves(desired.networks, interface.network, networks):
            issues.add(
                ResourceKind.DOMAIN, domain.name, "unresolved-network",
                f"interface references unknown network {interface.network}",
            )

    for disk in domain.disks:
        if not _reference_resolves(desired.pools, disk.pool, pools):
            issues.add(
                ResourceKind.DOMAIN, domain.name, "unresolved-pool",
                f"disk references unknown pool {disk.pool}",
            )
            continue
        pool = pools.get(disk.pool)
        if pool is None:
            # Unmanaged pool: its volumes are not known here
            continue
        entry = pool.volume_entry(disk.volume)
        if entry is None:
            issues.add(
                ResourceKind.DOMAIN, domain.name, "unresolved-volume",
                f"disk references unknown volume {disk.pool}/{disk.volume}",
            )
        elif not entry.present:
            issues.add(
                ResourceKind.DOMAIN, domain.name, "volume-marked-absent",
                f"disk references volume {disk.pool}/{disk.volume} which is marked for deletion",
            )

    for (pool_name, volume_name), count in Counter((d.pool, d.volume) for d in domain.disks).items():
        if count > 1:
            issues.add(
                ResourceKind.DOMAIN, domain.name, "duplicate-disk",
                f"volume {pool_name}/{volume_name} is attached {count} times",
            )

    for tag, count in sorted(Counter(s.mount_tag for s in domain.shares).items()):
        if count > 1:
            issues.add(
                ResourceKind.DOMAIN, domain.name, "duplicate-mount-tag",
                f"mount tag {tag} is used {count} times",
            )
    for share in domain.shares:
        if not PurePosixPath(share.host_path).is_absolute():
            issues.add(
                ResourceKind.DOMAIN, domain.name, "relative-share-path",
                f"share {share.mount_tag} has relative host path {share.host_path}",
            )


def _check_static_addresses(
    issues: _Collector,
    domains: List[DomainSpec],
    networks: Dict[str, NetworkSpec],
) -> None:
    claimed: Dict[Tuple[str, IPv4Address], str] = {}

    for domain in domains:
        for interface in domain.interfaces:
            address = interface.static_address
            if address is None:
                continue

            owner: Optional[str] = claimed.get((interface.network, address))
            if owner is not None:
                other = "another of its interfaces" if owner == domain.name else owner
                issues.add(
                    ResourceKind.DOMAIN, domain.name, "duplicate-static-address",
                    f"static address {address} on {interface.network} is also used by {other}",
                )
            claimed.setdefault((interface.network, address), domain.name)

            network = networks.get(interface.network)
            if network is None:
                continue
            if address not in network.subnet:
                issues.add(
                    ResourceKind.DOMAIN, domain.name, "static-address-outside-subnet",
                    f"static address {address} is outside {network.subnet} of {network.name}",
                )
            elif address == network.gateway:
                issues.add(
                    ResourceKind.DOMAIN, domain.name, "static-address-is-gateway",
                    f"static address {address} is the gateway of {network.name}",
                )
            if network.dhcp is not None and network.dhcp.contains(address):
                issues.add(
                    ResourceKind.DOMAIN, domain.name, "static-address-in-dhcp-range",
                    f"static address {address} overlaps the DHCP range of {network.name}",
                )

"""
Data models for libvirt-reconciler.

This module defines the Pydantic models for the declared topology (networks,
storage pools and volumes, domains), the per-kind desired state handed to the
reconciler, and the structured report it returns.
"""

import re
import uuid
from enum import Enum
from ipaddress import IPv4Address, IPv4Network
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing_extensions import Annotated


# Namespace for identifiers derived from resource names when none is declared.
_IDENTIFIER_NAMESPACE = uuid.UUID("6f1c2e0a-3b8d-4c57-9a41-0d9e7b52c3f8")

_MAC_PATTERN = re.compile(r"^([0-9a-f]{2}:){5}[0-9a-f]{2}$")
_QUANTITY_PATTERN = re.compile(r"^\s*(\d+)\s*([A-Za-z]*)\s*$")


class ResourceKind(str, Enum):
    """Kinds of libvirt resources managed by the reconciler."""

    NETWORK = "network"
    POOL = "pool"
    VOLUME = "volume"
    DOMAIN = "domain"


def stable_identifier(kind: ResourceKind, name: str) -> uuid.UUID:
    """Derive a deterministic UUID for a resource that declares none."""
    return uuid.uuid5(_IDENTIFIER_NAMESPACE, f"{kind.value}/{name}")


class SpecModel(BaseModel):
    """Base for topology specs: immutable once built, unknown keys rejected."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class SizeUnit(str, Enum):
    """Units accepted for memory and capacity quantities."""

    BYTES = "bytes"
    KIB = "KiB"
    MIB = "MiB"
    GIB = "GiB"
    TIB = "TiB"
    KB = "KB"
    MB = "MB"
    GB = "GB"
    TB = "TB"


_UNIT_FACTORS = {
    SizeUnit.BYTES: 1,
    SizeUnit.KIB: 1024,
    SizeUnit.MIB: 1024 ** 2,
    SizeUnit.GIB: 1024 ** 3,
    SizeUnit.TIB: 1024 ** 4,
    SizeUnit.KB: 1000,
    SizeUnit.MB: 1000 ** 2,
    SizeUnit.GB: 1000 ** 3,
    SizeUnit.TB: 1000 ** 4,
}


class Quantity(SpecModel):
    """A size with a unit, e.g. ``{count: 60, unit: GiB}`` or ``"60GiB"``."""

    count: int = Field(ge=0, description="Number of units")
    unit: SizeUnit = Field(default=SizeUnit.GIB, description="Unit of the count")

    @model_validator(mode="before")
    @classmethod
    def parse_shorthand(cls, value):
        if isinstance(value, str):
            match = _QUANTITY_PATTERN.match(value)
            if not match:
                raise ValueError(f"Invalid quantity: {value!r}")
            count, unit = match.groups()
            return {"count": int(count), "unit": unit or SizeUnit.BYTES.value}
        return value

    def to_bytes(self) -> int:
        return self.count * _UNIT_FACTORS[self.unit]

    def to_kib(self) -> int:
        # Rounded up so a non-aligned size never shrinks.
        return -(-self.to_bytes() // 1024)

    def __str__(self) -> str:
        return f"{self.count} {self.unit.value}"


# ---------------------------------------------------------------------------
# Networks
# ---------------------------------------------------------------------------


class ForwardMode(str, Enum):
    """Virtual network forwarding modes."""

    NAT = "nat"
    ROUTE = "route"
    ISOLATED = "isolated"


class DhcpRange(SpecModel):
    """Address range served by the network's DHCP server."""

    start: IPv4Address
    end: IPv4Address

    def contains(self, address: IPv4Address) -> bool:
        return self.start <= address <= self.end


class NetworkSpec(SpecModel):
    """Declared virtual network."""

    name: str = Field(min_length=1, description="Network name (unique key)")
    identifier: Optional[uuid.UUID] = Field(default=None, description="Network UUID")
    forward: ForwardMode = Field(default=ForwardMode.NAT, description="Forwarding mode")
    bridge: str = Field(min_length=1, description="Bridge device name")
    gateway: IPv4Address = Field(description="Host address on the network")
    netmask: IPv4Address = Field(default=IPv4Address("255.255.255.0"), description="Subnet mask")
    dhcp: Optional[DhcpRange] = Field(default=None, description="DHCP range")
    active: bool = Field(default=True, description="Start the network")
    autostart: bool = Field(default=True, description="Start the network with the daemon")

    @field_validator("netmask")
    @classmethod
    def validate_netmask(cls, v):
        try:
            IPv4Network(f"0.0.0.0/{v}")
        except ValueError:
            raise ValueError(f"Invalid netmask: {v}")
        return v

    @property
    def subnet(self) -> IPv4Network:
        return IPv4Network(f"{self.gateway}/{self.netmask}", strict=False)

    @property
    def resolved_identifier(self) -> uuid.UUID:
        return self.identifier or stable_identifier(ResourceKind.NETWORK, self.name)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class VolumeSpec(SpecModel):
    """Declared volume inside a storage pool."""

    name: str = Field(min_length=1, description="Volume name (unique within its pool)")
    capacity: Quantity = Field(description="Virtual size")
    format: str = Field(default="qcow2", description="On-disk format")


class VolumeEntry(SpecModel):
    """A pool's volume list entry.

    ``present=False`` is an explicit request to delete the volume; a volume that
    is simply not listed is left alone.
    """

    name: str = Field(min_length=1)
    present: bool = True
    volume: Optional[VolumeSpec] = None

    @model_validator(mode="after")
    def check_volume(self):
        if self.present and self.volume is None:
            raise ValueError(f"Volume entry {self.name!r} is present but has no volume definition")
        if self.volume is not None and self.volume.name != self.name:
            raise ValueError(
                f"Volume entry {self.name!r} carries a definition named {self.volume.name!r}"
            )
        return self


class StoragePoolSpec(SpecModel):
    """Declared storage pool and the volumes it should (or should not) contain."""

    name: str = Field(min_length=1, description="Pool name (unique key)")
    identifier: Optional[uuid.UUID] = Field(default=None, description="Pool UUID")
    kind: str = Field(default="dir", description="Pool type")
    target: str = Field(min_length=1, description="Target path")
    volumes: List[VolumeEntry] = Field(default_factory=list)
    active: bool = Field(default=True, description="Start the pool")
    autostart: bool = Field(default=True, description="Start the pool with the daemon")

    @property
    def resolved_identifier(self) -> uuid.UUID:
        return self.identifier or stable_identifier(ResourceKind.POOL, self.name)

    def volume_entry(self, name: str) -> Optional[VolumeEntry]:
        for entry in self.volumes:
            if entry.name == name:
                return entry
        return None


# ---------------------------------------------------------------------------
# Domains
# ---------------------------------------------------------------------------


class Firmware(str, Enum):
    """Guest firmware modes."""

    LEGACY = "legacy"
    UEFI = "uefi"  # secure-boot-capable


class DiskAttachment(SpecModel):
    """Reference from a domain to a pool volume."""

    pool: str = Field(min_length=1)
    volume: str = Field(min_length=1)
    bus: str = "sata"
    format: str = "qcow2"


class InterfaceSpec(SpecModel):
    """Network interface attached to a domain."""

    network: str = Field(min_length=1, description="Referenced network name")
    model: str = Field(default="virtio", description="NIC model")
    mac: Optional[str] = Field(default=None, description="Fixed MAC address")
    static_address: Optional[IPv4Address] = Field(
        default=None, description="Address the guest configures itself"
    )

    @field_validator("mac")
    @classmethod
    def validate_mac(cls, v):
        if v is None:
            return v
        v = v.lower()
        if not _MAC_PATTERN.match(v):
            raise ValueError(f"Invalid MAC address: {v}")
        return v


class ShareMount(SpecModel):
    """Host directory shared into the guest over virtiofs."""

    host_path: str = Field(min_length=1)
    mount_tag: str = Field(min_length=1)
    binary_path: Optional[str] = Field(default=None, description="virtiofsd binary")


class DomainSpec(SpecModel):
    """Declared virtual machine."""

    name: str = Field(min_length=1, description="Domain name (unique key)")
    identifier: Optional[uuid.UUID] = Field(default=None, description="Domain UUID")
    memory: Quantity = Field(description="Memory size")
    vcpus: int = Field(default=2, ge=1, le=256, description="Number of virtual CPUs")
    firmware: Firmware = Field(default=Firmware.LEGACY)
    tpm: bool = Field(default=False, description="Attach an emulated TPM 2.0")
    machine: str = Field(default="q35", description="Machine type")
    disks: List[DiskAttachment] = Field(default_factory=list)
    interfaces: List[InterfaceSpec] = Field(default_factory=list)
    shares: List[ShareMount] = Field(default_factory=list)
    install_media: List[str] = Field(default_factory=list, description="ISO paths, attached read-only")
    nvram: Optional[str] = Field(default=None, description="NVRAM file path")
    active: Optional[bool] = Field(
        default=None,
        description="Power state: None leaves it alone, True keeps it running, False keeps it off",
    )
    restart: Optional[bool] = Field(
        default=None,
        description="Restart a running domain: True always, False never, None only when "
                    "its definition changed and it is meant to be running",
    )

    @property
    def resolved_identifier(self) -> uuid.UUID:
        return self.identifier or stable_identifier(ResourceKind.DOMAIN, self.name)


# ---------------------------------------------------------------------------
# Desired state
# ---------------------------------------------------------------------------


class Unmanaged(SpecModel):
    """This kind is not touched at all during the run.

    ``assume_present`` names live resources that managed domains may reference.
    """

    mode: Literal["unmanaged"] = "unmanaged"
    assume_present: List[str] = Field(default_factory=list)


class ManagedNetworks(SpecModel):
    """Networks are managed: live state is made to match ``items`` exactly."""

    mode: Literal["managed"] = "managed"
    items: List[NetworkSpec] = Field(default_factory=list)


class ManagedPools(SpecModel):
    """Pools are managed: live state is made to match ``items`` exactly."""

    mode: Literal["managed"] = "managed"
    items: List[StoragePoolSpec] = Field(default_factory=list)


class ManagedDomains(SpecModel):
    """Domains are managed: live state is made to match ``items`` exactly."""

    mode: Literal["managed"] = "managed"
    items: List[DomainSpec] = Field(default_factory=list)


NetworksState = Annotated[Union[Unmanaged, ManagedNetworks], Field(discriminator="mode")]
PoolsState = Annotated[Union[Unmanaged, ManagedPools], Field(discriminator="mode")]
DomainsState = Annotated[Union[Unmanaged, ManagedDomains], Field(discriminator="mode")]


class DesiredState(SpecModel):
    """A complete desired-state submission. Kinds left out are unmanaged."""

    networks: NetworksState = Field(default_factory=Unmanaged)
    pools: PoolsState = Field(default_factory=Unmanaged)
    domains: DomainsState = Field(default_factory=Unmanaged)

    def managed_networks(self) -> List[NetworkSpec]:
        return list(self.networks.items) if isinstance(self.networks, ManagedNetworks) else []

    def managed_pools(self) -> List[StoragePoolSpec]:
        return list(self.pools.items) if isinstance(self.pools, ManagedPools) else []

    def managed_domains(self) -> List[DomainSpec]:
        return list(self.domains.items) if isinstance(self.domains, ManagedDomains) else []


# ---------------------------------------------------------------------------
# Validation and reporting
# ---------------------------------------------------------------------------


class ValidationIssue(BaseModel):
    """A single problem found while validating a desired state."""

    kind: ResourceKind
    name: str
    code: str = Field(description="Machine-readable issue code")
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value} {self.name!r}: {self.message}"


class Outcome(str, Enum):
    """Per-resource result of a reconciliation pass."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    SKIPPED_UNMANAGED = "skipped-unmanaged"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    """Why a resource failed."""

    OPERATIONAL = "operational"
    UNSUPPORTED_CHANGE = "unsupported-change"
    DEPENDENCY_FAILED = "dependency-failed"
    IN_USE = "in-use"


_KIND_ORDER = {
    ResourceKind.NETWORK: 0,
    ResourceKind.POOL: 1,
    ResourceKind.VOLUME: 2,
    ResourceKind.DOMAIN: 3,
}


class ResourceResult(BaseModel):
    """What happened to one resource."""

    kind: ResourceKind
    name: str
    outcome: Outcome
    operation: Optional[str] = Field(default=None, description="Attempted operation")
    reason: Optional[str] = Field(default=None, description="Failure reason")
    error_kind: Optional[ErrorKind] = None
    details: List[str] = Field(default_factory=list)


class ReconcileReport(BaseModel):
    """Structured result of an apply."""

    results: List[ResourceResult] = Field(default_factory=list)
    dry_run: bool = False

    @model_validator(mode="after")
    def sort_results(self):
        self.results.sort(key=lambda r: (_KIND_ORDER[r.kind], r.name))
        return self

    @property
    def success(self) -> bool:
        return not any(
            r.outcome in (Outcome.FAILED, Outcome.CANCELLED) for r in self.results
        )

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    @property
    def change_count(self) -> int:
        return sum(
            1 for r in self.results
            if r.outcome in (Outcome.CREATED, Outcome.UPDATED, Outcome.DELETED)
        )

    def get(self, kind: ResourceKind, name: str) -> Optional[ResourceResult]:
        for result in self.results:
            if result.kind == kind and result.name == name:
                return result
        return None

    def of_kind(self, kind: ResourceKind) -> List[ResourceResult]:
        return [r for r in self.results if r.kind == kind]

    def names_with(self, kind: ResourceKind, outcome: Outcome) -> List[str]:
        return [r.name for r in self.results if r.kind == kind and r.outcome == outcome]

    def counts(self) -> dict:
        counts = {}
        for result in self.results:
            counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
        return counts

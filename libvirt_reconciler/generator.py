"""
Profile expansion for libvirt-reconciler.

A profile ("server", "client", ...) is a short-hand for a complete Windows
guest: secure-boot UEFI firmware, an emulated TPM, one primary disk in the lab
pool, a primary NIC on the lab network and the configured virtiofs shares.
Profiles only differ in memory size and install media; everything else comes
from the ``generator`` configuration section, including the optional driver
disc that is attached behind the install media.

The module also provides builders for the other resource kinds and typed
helpers to extend a generated domain. Extensions always construct a new list;
a spec's list fields are never patched in place.
"""

import uuid
from ipaddress import IPv4Address
from pathlib import PurePosixPath
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import GeneratorConfig
from .exceptions import ConfigurationError
from .logging import get_logger
from .models import (
    DhcpRange,
    DiskAttachment,
    DomainSpec,
    Firmware,
    ForwardMode,
    InterfaceSpec,
    NetworkSpec,
    Quantity,
    ShareMount,
    StoragePoolSpec,
    VolumeEntry,
    VolumeSpec,
)


logger = get_logger(__name__)


class ProfileParams(BaseModel):
    """Per-VM parameters for a profile expansion."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1, description="Domain name")
    volume: str = Field(min_length=1, description="Primary disk volume in the profile pool")
    identifier: Optional[uuid.UUID] = Field(default=None, description="Domain UUID")
    memory: Optional[Quantity] = Field(default=None, description="Override the profile memory")
    install_media: Optional[str] = Field(default=None, description="Override the profile ISO")
    static_address: Optional[IPv4Address] = Field(
        default=None, description="Address the guest configures on its primary NIC"
    )
    extra_interfaces: List[InterfaceSpec] = Field(
        default_factory=list, description="NICs appended after the primary one"
    )
    active: Optional[bool] = Field(default=None, description="Domain power state management")
    restart: Optional[bool] = Field(default=None, description="Restart policy for a running domain")
    nvram: Optional[str] = Field(default=None, description="Override the NVRAM path")


class ProfileGenerator:
    """Expands named profiles into fully specified domains."""

    def __init__(self, config: Optional[GeneratorConfig] = None):
        self.config = config or GeneratorConfig()

    @property
    def profile_names(self) -> List[str]:
        return sorted(self.config.profiles)

    def expand(self, profile_name: str, params: ProfileParams) -> DomainSpec:
        """Build the complete domain for ``params`` from profile ``profile_name``."""
        profile = self.config.profiles.get(profile_name)
        if profile is None:
            raise ConfigurationError(
                f"Unknown profile: {profile_name}",
                details={"available": self.profile_names},
            )

        install_media = [
            self._media_path(media)
            for media in (params.install_media or profile.install_media, self.config.driver_media)
            if media
        ]

        interfaces = [
            InterfaceSpec(
                network=self.config.lab_network,
                model=self.config.nic_model,
                static_address=params.static_address,
            ),
            *params.extra_interfaces,
        ]

        shares = [
            ShareMount(
                host_path=share.host_path,
                mount_tag=share.mount_tag,
                binary_path=share.binary_path or self.config.virtiofsd_path,
            )
            for share in self.config.shares
        ]

        spec = DomainSpec(
            name=params.name,
            identifier=params.identifier,
            memory=params.memory or profile.memory,
            vcpus=self.config.vcpus,
            firmware=Firmware.UEFI,
            tpm=True,
            disks=[
                DiskAttachment(
                    pool=self.config.pool,
                    volume=params.volume,
                    bus=self.config.disk_bus,
                )
            ],
            interfaces=interfaces,
            shares=shares,
            install_media=install_media,
            nvram=params.nvram or self._nvram_path(params.volume),
            active=params.active,
            restart=params.restart,
        )
        logger.debug(f"Expanded profile {profile_name} into domain {spec.name}")
        return spec

    def secondary_interface(self, model: Optional[str] = None) -> InterfaceSpec:
        """The internet-facing NIC on the secondary network."""
        return InterfaceSpec(
            network=self.config.secondary_network,
            model=model or self.config.nic_model,
        )

    def _media_path(self, media: str) -> str:
        path = PurePosixPath(media)
        if path.is_absolute():
            return str(path)
        return str(PurePosixPath(self.config.iso_dir) / path)

    def _nvram_path(self, volume: str) -> str:
        # dc01.qcow2 -> <nvram_dir>/dc01.nvram
        return str(PurePosixPath(self.config.nvram_dir) / f"{PurePosixPath(volume).stem}.nvram")


def expand(profile_name: str, params: ProfileParams, config: Optional[GeneratorConfig] = None) -> DomainSpec:
    """Expand a profile with the given (or default) generator configuration."""
    return ProfileGenerator(config).expand(profile_name, params)


def with_interface(spec: DomainSpec, interface: InterfaceSpec) -> DomainSpec:
    """Return a copy of ``spec`` with ``interface`` appended after the existing ones."""
    return spec.model_copy(update={"interfaces": [*spec.interfaces, interface]})


def with_share(spec: DomainSpec, share: ShareMount) -> DomainSpec:
    """Return a copy of ``spec`` with ``share`` added to its mounts."""
    return spec.model_copy(update={"shares": [*spec.shares, share]})


def nat_network(
    name: str,
    subnet_byte: int,
    identifier: Optional[uuid.UUID] = None,
    bridge: Optional[str] = None,
    dhcp_start: int = 2,
    dhcp_end: int = 254,
) -> NetworkSpec:
    """
    Build a NAT network on 192.168.<subnet_byte>.0/24.

    The host takes .1; DHCP hands out ``dhcp_start``-``dhcp_end``. The bridge
    defaults to ``virbr<subnet_byte>``.
    """
    if not 0 <= subnet_byte <= 255:
        raise ConfigurationError(f"Invalid subnet byte: {subnet_byte}")
    if not 2 <= dhcp_start <= dhcp_end <= 254:
        raise ConfigurationError(f"Invalid DHCP range: .{dhcp_start}-.{dhcp_end}")

    prefix = f"192.168.{subnet_byte}"
    return NetworkSpec(
        name=name,
        identifier=identifier,
        forward=ForwardMode.NAT,
        bridge=bridge or f"virbr{subnet_byte}",
        gateway=IPv4Address(f"{prefix}.1"),
        dhcp=DhcpRange(start=IPv4Address(f"{prefix}.{dhcp_start}"), end=IPv4Address(f"{prefix}.{dhcp_end}")),
    )


def qcow2_volume(name: str, capacity: Quantity) -> VolumeEntry:
    """A present qcow2 volume entry."""
    return VolumeEntry(name=name, volume=VolumeSpec(name=name, capacity=capacity, format="qcow2"))


def dir_pool(
    name: str,
    target: str,
    volumes: Optional[List[VolumeEntry]] = None,
    identifier: Optional[uuid.UUID] = None,
) -> StoragePoolSpec:
    """A directory-backed storage pool."""
    return StoragePoolSpec(
        name=name,
        identifier=identifier,
        kind="dir",
        target=target,
        volumes=list(volumes or []),
    )

"""
XML template generators for libvirt networks, storage pools, volumes and domains.

Every generator is a pure mapping from a fully specified spec to libvirt XML:
rendering the same spec twice always yields the same document, so the
reconciler can diff desired against live state by comparing documents.
Identifiers and MAC addresses that a spec leaves open are derived from names
and positions, never drawn at random.

The module also holds the comparison used for that diff. libvirt decorates the
definitions it stores (PCI addresses, aliases, expanded machine names, pool
capacity figures), so a live document matches when it states everything the
rendered document states; see ``documents_match``.
"""

import hashlib
import xml.etree.ElementTree as ET
from typing import List, Optional, Set, Tuple
from xml.dom import minidom

from .models import (
    DomainSpec,
    Firmware,
    ForwardMode,
    NetworkSpec,
    Quantity,
    StoragePoolSpec,
    VolumeSpec,
)


# Children the reconciler owns: their count must match even when the desired
# document has none, so removing the last disk or share is detected.
OWNED_CHILDREN = {
    "domain": {"memoryBacking"},
    "os": {"boot", "nvram"},
    "devices": {"disk", "interface", "filesystem", "tpm"},
    "network": {"forward", "ip"},
    "ip": {"dhcp"},
    "dhcp": {"range"},
}

# Attributes the reconciler owns: present on the live side but not the
# desired side means the resource has to be redefined.
OWNED_ATTRIBUTES = {
    "os": {"firmware"},
}

_TARGET_PREFIX = {
    "virtio": "vd",
    "sata": "sd",
    "scsi": "sd",
    "usb": "sd",
    "ide": "hd",
}


def _prettify_xml(element: ET.Element) -> str:
    """Pretty print XML with proper indentation and no declaration."""
    rough_string = ET.tostring(element, encoding='unicode')
    reparsed = minidom.parseString(rough_string)
    return reparsed.documentElement.toprettyxml(indent="  ").strip()


class NetworkXMLGenerator:
    """Generator for virtual network XML configurations."""

    def generate(self, spec: NetworkSpec) -> str:
        """Generate network XML from a spec."""
        network = ET.Element("network")

        ET.SubElement(network, "name").text = spec.name
        ET.SubElement(network, "uuid").text = str(spec.resolved_identifier)

        # Isolated networks have no forward element at all
        if spec.forward != ForwardMode.ISOLATED:
            ET.SubElement(network, "forward", mode=spec.forward.value)

        ET.SubElement(network, "bridge", name=spec.bridge)

        ip = ET.SubElement(network, "ip", address=str(spec.gateway), netmask=str(spec.netmask))
        if spec.dhcp is not None:
            dhcp = ET.SubElement(ip, "dhcp")
            ET.SubElement(dhcp, "range", start=str(spec.dhcp.start), end=str(spec.dhcp.end))

        return _prettify_xml(network)


class PoolXMLGenerator:
    """Generator for storage pool and volume XML configurations."""

    def generate(self, spec: StoragePoolSpec) -> str:
        """Generate pool XML from a spec. Volumes are rendered separately."""
        pool = ET.Element("pool", type=spec.kind)

        ET.SubElement(pool, "name").text = spec.name
        ET.SubElement(pool, "uuid").text = str(spec.resolved_identifier)

        target = ET.SubElement(pool, "target")
        ET.SubElement(target, "path").text = spec.target

        return _prettify_xml(pool)

    def generate_volume(self, spec: VolumeSpec) -> str:
        """Generate volume XML from a spec, with capacity normalized to bytes."""
        volume = ET.Element("volume")

        ET.SubElement(volume, "name").text = spec.name
        capacity = ET.SubElement(volume, "capacity", unit="bytes")
        capacity.text = str(spec.capacity.to_bytes())

        target = ET.SubElement(volume, "target")
        ET.SubElement(target, "format", type=spec.format)

        return _prettify_xml(volume)


class DomainXMLGenerator:
    """Generator for domain XML configurations."""

    def __init__(self):
        """Initialize the generator with default settings."""
        self.default_settings = {
            "arch": "x86_64",
            "os_type": "hvm",
            "cdrom_bus": "sata",
            "graphics": "spice",
            "video_model": "qxl",
            "tpm_model": "tpm-tis",
            "tpm_version": "2.0",
        }

    def generate(self, spec: DomainSpec) -> str:
        """Generate domain XML from a fully specified domain."""
        domain = ET.Element("domain", type="kvm")

        ET.SubElement(domain, "name").text = spec.name
        ET.SubElement(domain, "uuid").text = str(spec.resolved_identifier)

        # Memory is normalized to KiB, the unit libvirt reports back
        memory = ET.SubElement(domain, "memory", unit="KiB")
        memory.text = str(spec.memory.to_kib())

        ET.SubElement(domain, "vcpu").text = str(spec.vcpus)

        # virtiofs requires shared memory backing
        if spec.shares:
            backing = ET.SubElement(domain, "memoryBacking")
            ET.SubElement(backing, "source", type="memfd")
            ET.SubElement(backing, "access", mode="shared")

        domain.append(self._generate_os_config(spec))
        domain.append(self._generate_features(spec))
        ET.SubElement(domain, "cpu", mode="host-model")
        domain.append(self._generate_clock_config())
        domain.append(self._generate_devices(spec))

        return _prettify_xml(domain)

    def _generate_os_config(self, spec: DomainSpec) -> ET.Element:
        """Generate OS configuration."""
        os_elem = ET.Element("os")
        if spec.firmware == Firmware.UEFI:
            os_elem.set("firmware", "efi")

        type_elem = ET.SubElement(
            os_elem, "type", arch=self.default_settings["arch"], machine=spec.machine
        )
        type_elem.text = self.default_settings["os_type"]

        if spec.firmware == Firmware.UEFI:
            firmware_elem = ET.SubElement(os_elem, "firmware")
            ET.SubElement(firmware_elem, "feature", enabled="yes", name="secure-boot")
            ET.SubElement(firmware_elem, "feature", enabled="yes", name="enrolled-keys")

        if spec.nvram:
            ET.SubElement(os_elem, "nvram").text = spec.nvram

        # Disk first; an empty disk falls through to the install media
        ET.SubElement(os_elem, "boot", dev="hd")
        if spec.install_media:
            ET.SubElement(os_elem, "boot", dev="cdrom")

        return os_elem

    def _generate_features(self, spec: DomainSpec) -> ET.Element:
        """Generate features configuration."""
        features = ET.Element("features")
        ET.SubElement(features, "acpi")
        ET.SubElement(features, "apic")
        # Secure boot needs system management mode
        if spec.firmware == Firmware.UEFI:
            ET.SubElement(features, "smm", state="on")
        return features

    def _generate_clock_config(self) -> ET.Element:
        """Generate clock configuration."""
        clock = ET.Element("clock", offset="utc")
        ET.SubElement(clock, "timer", name="rtc", tickpolicy="catchup")
        ET.SubElement(clock, "timer", name="pit", tickpolicy="delay")
        ET.SubElement(clock, "timer", name="hpet", present="no")
        return clock

    def _generate_devices(self, spec: DomainSpec) -> ET.Element:
        """Generate devices configuration."""
        devices = ET.Element("devices")
        target_counters = {}

        for attachment in spec.disks:
            disk = ET.SubElement(devices, "disk", type="volume", device="disk")
            ET.SubElement(disk, "driver", name="qemu", type=attachment.format)
            ET.SubElement(disk, "source", pool=attachment.pool, volume=attachment.volume)
            ET.SubElement(
                disk, "target",
                dev=self._next_target(target_counters, attachment.bus),
                bus=attachment.bus,
            )

        cdrom_bus = self.default_settings["cdrom_bus"]
        for media in spec.install_media:
            cdrom = ET.SubElement(devices, "disk", type="file", device="cdrom")
            ET.SubElement(cdrom, "driver", name="qemu", type="raw")
            ET.SubElement(cdrom, "source", file=media)
            ET.SubElement(cdrom, "target", dev=self._next_target(target_counters, cdrom_bus), bus=cdrom_bus)
            ET.SubElement(cdrom, "readonly")

        seed = str(spec.resolved_identifier)
        for index, iface in enumerate(spec.interfaces):
            interface = ET.SubElement(devices, "interface", type="network")
            ET.SubElement(interface, "mac", address=iface.mac or derive_mac(seed, index))
            ET.SubElement(interface, "source", network=iface.network)
            ET.SubElement(interface, "model", type=iface.model)

        for share in spec.shares:
            filesystem = ET.SubElement(devices, "filesystem", type="mount", accessmode="passthrough")
            ET.SubElement(filesystem, "driver", type="virtiofs")
            if share.binary_path:
                ET.SubElement(filesystem, "binary", path=share.binary_path)
            ET.SubElement(filesystem, "source", dir=share.host_path)
            ET.SubElement(filesystem, "target", dir=share.mount_tag)

        if spec.tpm:
            tpm = ET.SubElement(devices, "tpm", model=self.default_settings["tpm_model"])
            ET.SubElement(tpm, "backend", type="emulator", version=self.default_settings["tpm_version"])

        ET.SubElement(devices, "input", type="tablet", bus="usb")
        ET.SubElement(devices, "graphics", type=self.default_settings["graphics"], autoport="yes")
        video = ET.SubElement(devices, "video")
        ET.SubElement(video, "model", type=self.default_settings["video_model"])
        ET.SubElement(devices, "memballoon", model="virtio")

        return devices

    @staticmethod
    def _next_target(counters: dict, bus: str) -> str:
        prefix = _TARGET_PREFIX.get(bus, "sd")
        index = counters.get(prefix, 0)
        counters[prefix] = index + 1
        return prefix + _target_suffix(index)


def _target_suffix(index: int) -> str:
    """0 -> a, 25 -> z, 26 -> aa, like the kernel's disk naming."""
    suffix = ""
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        suffix = chr(ord("a") + remainder) + suffix
    return suffix


def derive_mac(seed: str, index: int) -> str:
    """Derive a stable MAC address (QEMU/KVM OUI prefix) for an interface slot."""
    digest = hashlib.sha256(f"{seed}/{index}".encode("utf-8")).digest()
    return "52:54:00:" + ":".join("{:02x}".format(b) for b in digest[:3])


def render_network(spec: NetworkSpec) -> str:
    return NetworkXMLGenerator().generate(spec)


def render_pool(spec: StoragePoolSpec) -> str:
    return PoolXMLGenerator().generate(spec)


def render_volume(spec: VolumeSpec) -> str:
    return PoolXMLGenerator().generate_volume(spec)


def render_domain(spec: DomainSpec) -> str:
    return DomainXMLGenerator().generate(spec)


# ---------------------------------------------------------------------------
# Comparison and read-back
# ---------------------------------------------------------------------------


def documents_match(desired: str, live: str) -> bool:
    """
    Check whether a live definition already satisfies a rendered one.

    Every attribute and text value stated in ``desired`` must appear in
    ``live``. Repeated children the reconciler owns (see ``OWNED_CHILDREN``)
    are compared in order and must have the same count; other repeated
    children may appear in any order, and children only present in ``live``
    are ignored.
    """
    try:
        desired_root = ET.fromstring(desired)
        live_root = ET.fromstring(live)
    except ET.ParseError:
        return False
    return _element_matches(desired_root, live_root)


def _element_matches(desired: ET.Element, live: ET.Element) -> bool:
    if desired.tag != live.tag:
        return False

    for attr, value in desired.attrib.items():
        if not _attribute_matches(desired.tag, attr, value, live.get(attr)):
            return False
    for attr in OWNED_ATTRIBUTES.get(desired.tag, set()):
        if attr not in desired.attrib and live.get(attr) is not None:
            return False

    desired_text = (desired.text or "").strip()
    if desired_text and desired_text != (live.text or "").strip():
        return False

    owned = OWNED_CHILDREN.get(desired.tag, set())
    tags = []
    for child in desired:
        if child.tag not in tags:
            tags.append(child.tag)
    tags.extend(tag for tag in sorted(owned) if tag not in tags)

    for tag in tags:
        desired_children = desired.findall(tag)
        live_children = live.findall(tag)
        if tag in owned:
            if not desired_children and _generated_by_libvirt(desired, live_children):
                continue
            if len(desired_children) != len(live_children):
                return False
            if not all(_element_matches(d, l) for d, l in zip(desired_children, live_children)):
                return False
        elif not _unordered_match(desired_children, live_children):
            return False

    return True


def _generated_by_libvirt(desired_parent: ET.Element, live_children: List[ET.Element]) -> bool:
    # With firmware auto-selection and no <nvram>, libvirt creates <nvram_dir>/<name>_VARS.fd
    return (
        desired_parent.tag == "os"
        and desired_parent.get("firmware") is not None
        and len(live_children) == 1
        and live_children[0].tag == "nvram"
        and (live_children[0].text or "").strip().endswith("_VARS.fd")
    )


def _unordered_match(desired_children: List[ET.Element], live_children: List[ET.Element]) -> bool:
    remaining = list(live_children)
    for desired_child in desired_children:
        for candidate in remaining:
            if _element_matches(desired_child, candidate):
                remaining.remove(candidate)
                break
        else:
            return False
    return True


def _attribute_matches(tag: str, attr: str, desired: str, live: Optional[str]) -> bool:
    if live is None:
        return False
    if desired == live:
        return True
    # libvirt expands machine aliases: q35 -> pc-q35-8.2, pc -> pc-i440fx-8.2
    if tag == "type" and attr == "machine":
        if live.startswith(f"pc-{desired}-"):
            return True
        return desired == "pc" and live.startswith("pc-i440fx-")
    return False


def interface_entries(document: str) -> List[Tuple[Optional[str], Optional[str], Optional[str]]]:
    """Return ``(network, model, mac)`` for each interface of a domain, in order."""
    root = ET.fromstring(document)
    entries = []
    for interface in root.findall("./devices/interface"):
        source = interface.find("source")
        model = interface.find("model")
        mac = interface.find("mac")
        network = None
        if source is not None:
            network = source.get("network") or source.get("bridge")
        entries.append((
            network,
            model.get("type") if model is not None else None,
            mac.get("address").lower() if mac is not None and mac.get("address") else None,
        ))
    return entries


def domain_references(document: str) -> Tuple[Set[str], Set[str]]:
    """Return the network names and pool names a domain definition refers to."""
    root = ET.fromstring(document)
    networks = set()
    for source in root.findall("./devices/interface/source"):
        if source.get("network"):
            networks.add(source.get("network"))
    pools = set()
    for source in root.findall("./devices/disk/source"):
        if source.get("pool"):
            pools.add(source.get("pool"))
    return networks, pools


def volume_capacity(document: str) -> Optional[int]:
    """Return a volume's capacity in bytes, or None if it cannot be read."""
    capacity = ET.fromstring(document).find("capacity")
    if capacity is None or not (capacity.text or "").strip():
        return None
    try:
        return Quantity(count=int(capacity.text.strip()), unit=capacity.get("unit", "bytes")).to_bytes()
    except ValueError:
        return None


def volume_format(document: str) -> Optional[str]:
    """Return a volume's on-disk format, or None if it is not stated."""
    fmt = ET.fromstring(document).find("./target/format")
    return fmt.get("type") if fmt is not None else None

"""Tests for profile expansion and resource builders."""

import uuid
from ipaddress import IPv4Address

import pytest
import xml.etree.ElementTree as ET

from libvirt_reconciler.config import GeneratorConfig
from libvirt_reconciler.exceptions import ConfigurationError
from libvirt_reconciler.generator import (
    ProfileGenerator,
    ProfileParams,
    dir_pool,
    expand,
    nat_network,
    qcow2_volume,
    with_interface,
    with_share,
)
from libvirt_reconciler.models import Firmware, ForwardMode, InterfaceSpec, Quantity, ShareMount
from libvirt_reconciler.xml_templates import render_domain


@pytest.fixture
def generator():
    return ProfileGenerator(GeneratorConfig(
        virtiofsd_path="/usr/libexec/virtiofsd",
        shares=[
            {"host_path": "/srv/homelab/scripts", "mount_tag": "scripts"},
            {"host_path": "/mnt/vms/windows", "mount_tag": "windows"},
        ],
    ))


class TestProfileGenerator:
    """Tests for ProfileGenerator.expand()."""

    def test_server_profile(self, generator):
        domain = generator.expand("server", ProfileParams(name="DC01", volume="dc01.qcow2"))

        assert domain.name == "DC01"
        assert domain.firmware == Firmware.UEFI
        assert domain.tpm is True
        assert domain.memory.to_bytes() == 4 * 1024 ** 3
        assert domain.install_media == ["/var/lib/libvirt/iso/windows-server-2022.iso"]
        assert domain.nvram == "/var/lib/libvirt/qemu/nvram/dc01.nvram"
        assert domain.active is None

        assert len(domain.disks) == 1
        assert (domain.disks[0].pool, domain.disks[0].volume, domain.disks[0].bus) == ("homelab", "dc01.qcow2", "sata")

        assert [(i.network, i.model) for i in domain.interfaces] == [("lab-net", "e1000e")]

        assert [s.mount_tag for s in domain.shares] == ["scripts", "windows"]
        assert all(s.binary_path == "/usr/libexec/virtiofsd" for s in domain.shares)

    def test_profiles_differ_only_in_memory_and_media(self, generator):
        server = generator.expand("server", ProfileParams(name="VM", volume="vm.qcow2"))
        client = generator.expand("client", ProfileParams(name="VM", volume="vm.qcow2"))

        assert server.memory != client.memory
        assert server.install_media != client.install_media
        assert server.model_dump(exclude={"memory", "install_media"}) == \
            client.model_dump(exclude={"memory", "install_media"})

    def test_overrides(self, generator):
        identifier = uuid.UUID("4c82c973-7299-468e-bf15-d442ee681475")
        domain = generator.expand("server", ProfileParams(
            name="DC01",
            volume="dc01.qcow2",
            identifier=identifier,
            memory="2GiB",
            install_media="/isos/custom.iso",
            static_address="192.168.56.10",
            active=True,
        ))
        assert domain.identifier == identifier
        assert domain.memory == Quantity(count=2, unit="GiB")
        assert domain.install_media == ["/isos/custom.iso"]
        assert domain.interfaces[0].static_address == IPv4Address("192.168.56.10")
        assert domain.active is True

    def test_extra_interfaces_appended_in_order(self, generator):
        domain = generator.expand("client", ProfileParams(
            name="CLIENT01",
            volume="client01.qcow2",
            extra_interfaces=[{"network": "default", "model": "e1000e"}, {"network": "storage"}],
        ))
        assert [i.network for i in domain.interfaces] == ["lab-net", "default", "storage"]

    def test_unknown_profile(self, generator):
        with pytest.raises(ConfigurationError) as exc_info:
            generator.expand("workstation", ProfileParams(name="x", volume="x.qcow2"))
        assert exc_info.value.details["available"] == ["client", "server"]

    def test_profile_without_media(self):
        generator = ProfileGenerator(GeneratorConfig(profiles={"bare": {"memory": "1GiB"}}))
        domain = generator.expand("bare", ProfileParams(name="vm", volume="vm.qcow2"))
        assert domain.install_media == []
        assert domain.shares == []

    def test_driver_media_follows_install_media(self):
        generator = ProfileGenerator(GeneratorConfig(iso_dir="/mnt/vms/iso", driver_media="virtio-win.iso"))
        domain = generator.expand("server", ProfileParams(name="DC01", volume="dc01.qcow2"))

        assert domain.install_media == ["/mnt/vms/iso/windows-server-2022.iso", "/mnt/vms/iso/virtio-win.iso"]

        root = ET.fromstring(render_domain(domain))
        cdroms = root.findall("./devices/disk[@device='cdrom']")
        assert [c.find("source").get("file") for c in cdroms] == domain.install_media
        assert [c.find("target").get("dev") for c in cdroms] == ["sdb", "sdc"]

    def test_driver_media_without_install_media(self):
        generator = ProfileGenerator(GeneratorConfig(
            driver_media="/isos/virtio-win.iso",
            profiles={"bare": {"memory": "1GiB"}},
        ))
        domain = generator.expand("bare", ProfileParams(name="vm", volume="vm.qcow2"))
        assert domain.install_media == ["/isos/virtio-win.iso"]

    def test_restart_policy_passed_through(self, generator):
        domain = generator.expand("client", ProfileParams(name="vm", volume="vm.qcow2", restart=False))
        assert domain.restart is False

    def test_module_level_expand_uses_defaults(self):
        domain = expand("client", ProfileParams(name="vm", volume="vm.qcow2"))
        assert domain.memory.to_bytes() == 2 * 1024 ** 3
        assert domain.interfaces[0].network == "lab-net"

    def test_secondary_interface(self, generator):
        interface = generator.secondary_interface()
        assert (interface.network, interface.model) == ("default", "e1000e")

    def test_expansion_is_deterministic(self, generator):
        params = ProfileParams(name="DC01", volume="dc01.qcow2")
        first = render_domain(generator.expand("server", params))
        second = render_domain(generator.expand("server", params))
        assert first == second


class TestExtensionHelpers:
    """Tests for with_interface() and with_share()."""

    def test_single_interface_extended_renders_two_in_order(self, generator):
        domain = generator.expand("client", ProfileParams(name="vm", volume="vm.qcow2"))
        assert len(domain.interfaces) == 1

        extended = with_interface(domain, InterfaceSpec(network="default", model="virtio"))

        root = ET.fromstring(render_domain(extended))
        sources = [s.get("network") for s in root.findall("./devices/interface/source")]
        assert sources == ["lab-net", "default"]

        # The original spec is untouched
        assert len(domain.interfaces) == 1

    def test_with_share(self, generator):
        domain = generator.expand("client", ProfileParams(name="vm", volume="vm.qcow2"))
        extended = with_share(domain, ShareMount(host_path="/srv/data", mount_tag="data"))
        assert [s.mount_tag for s in extended.shares] == ["scripts", "windows", "data"]
        assert len(domain.shares) == 2


class TestResourceBuilders:
    """Tests for nat_network(), dir_pool() and qcow2_volume()."""

    def test_nat_network(self):
        network = nat_network("default", 122, bridge="virbr0")
        assert network.forward == ForwardMode.NAT
        assert network.bridge == "virbr0"
        assert network.gateway == IPv4Address("192.168.122.1")
        assert network.dhcp.start == IPv4Address("192.168.122.2")
        assert network.dhcp.end == IPv4Address("192.168.122.254")

    def test_nat_network_default_bridge(self):
        network = nat_network("lab-net", 56, dhcp_start=100, dhcp_end=200)
        assert network.bridge == "virbr56"
        assert str(network.dhcp.start) == "192.168.56.100"

    def test_nat_network_rejects_bad_input(self):
        with pytest.raises(ConfigurationError):
            nat_network("x", 300)
        with pytest.raises(ConfigurationError):
            nat_network("x", 10, dhcp_start=200, dhcp_end=100)

    def test_dir_pool_and_volume(self):
        pool = dir_pool("homelab", "/var/lib/libvirt/images/homelab", [
            qcow2_volume("dc01.qcow2", Quantity(count=60)),
        ])
        assert pool.kind == "dir"
        entry = pool.volume_entry("dc01.qcow2")
        assert entry.present is True
        assert entry.volume.format == "qcow2"
        assert entry.volume.capacity.to_bytes() == 60 * 1024 ** 3
        assert pool.volume_entry("missing") is None

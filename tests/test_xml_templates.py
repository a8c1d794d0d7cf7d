"""Tests for XML rendering and document comparison."""

import xml.etree.ElementTree as ET

from libvirt_reconciler.generator import ProfileParams, expand, nat_network
from libvirt_reconciler.models import DomainSpec, NetworkSpec, StoragePoolSpec, VolumeSpec
from libvirt_reconciler.xml_templates import (
    DomainXMLGenerator,
    derive_mac,
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


def _domain(**kwargs):
    values = {
        "name": "vm",
        "memory": "2GiB",
        "disks": [{"pool": "homelab", "volume": "vm.qcow2"}],
        "interfaces": [{"network": "lab-net"}],
    }
    values.update(kwargs)
    return DomainSpec(**values)


class TestNetworkXML:
    """Tests for network rendering."""

    def test_nat_network(self):
        root = ET.fromstring(render_network(nat_network("lab-net", 56, dhcp_start=100, dhcp_end=200)))
        assert root.tag == "network"
        assert root.find("name").text == "lab-net"
        assert root.find("uuid").text
        assert root.find("forward").get("mode") == "nat"
        assert root.find("bridge").get("name") == "virbr56"

        ip = root.find("ip")
        assert (ip.get("address"), ip.get("netmask")) == ("192.168.56.1", "255.255.255.0")
        dhcp_range = ip.find("./dhcp/range")
        assert (dhcp_range.get("start"), dhcp_range.get("end")) == ("192.168.56.100", "192.168.56.200")

    def test_isolated_network_has_no_forward(self):
        network = NetworkSpec(name="iso", forward="isolated", bridge="virbr9", gateway="10.9.0.1")
        root = ET.fromstring(render_network(network))
        assert root.find("forward") is None
        assert root.find("./ip/dhcp") is None


class TestStorageXML:
    """Tests for pool and volume rendering."""

    def test_pool(self):
        pool = StoragePoolSpec(name="homelab", target="/var/lib/libvirt/images/homelab")
        root = ET.fromstring(render_pool(pool))
        assert root.get("type") == "dir"
        assert root.find("./target/path").text == "/var/lib/libvirt/images/homelab"

    def test_volume_capacity_in_bytes(self):
        document = render_volume(VolumeSpec(name="dc01.qcow2", capacity="60GiB"))
        root = ET.fromstring(document)
        assert root.find("capacity").get("unit") == "bytes"
        assert root.find("capacity").text == str(60 * 1024 ** 3)
        assert volume_capacity(document) == 60 * 1024 ** 3
        assert volume_format(document) == "qcow2"

    def test_equal_sizes_render_identically(self):
        assert render_volume(VolumeSpec(name="v", capacity="1GiB")) == \
            render_volume(VolumeSpec(name="v", capacity="1024MiB"))

    def test_volume_capacity_other_units(self):
        document = "<volume><name>v</name><capacity unit='KiB'>4</capacity></volume>"
        assert volume_capacity(document) == 4096
        assert volume_format(document) is None
        assert volume_capacity("<volume><name>v</name></volume>") is None


class TestDomainXML:
    """Tests for domain rendering."""

    def test_profile_domain(self):
        domain = expand("server", ProfileParams(name="DC01", volume="dc01.qcow2"))
        root = ET.fromstring(render_domain(domain))

        assert root.get("type") == "kvm"
        assert root.find("memory").get("unit") == "KiB"
        assert root.find("memory").text == str(4 * 1024 * 1024)

        os_elem = root.find("os")
        assert os_elem.get("firmware") == "efi"
        assert os_elem.find("type").get("machine") == "q35"
        features = {f.get("name"): f.get("enabled") for f in os_elem.findall("./firmware/feature")}
        assert features == {"secure-boot": "yes", "enrolled-keys": "yes"}
        assert os_elem.find("nvram").text == "/var/lib/libvirt/qemu/nvram/dc01.nvram"
        assert [b.get("dev") for b in os_elem.findall("boot")] == ["hd", "cdrom"]
        assert root.find("./features/smm").get("state") == "on"

        disks = root.findall("./devices/disk")
        assert [d.get("device") for d in disks] == ["disk", "cdrom"]
        assert disks[0].find("source").get("volume") == "dc01.qcow2"
        assert [d.find("target").get("dev") for d in disks] == ["sda", "sdb"]
        assert disks[1].find("readonly") is not None

        tpm = root.find("./devices/tpm")
        assert tpm.get("model") == "tpm-tis"
        assert tpm.find("backend").get("version") == "2.0"
        assert root.find("./devices/memballoon").get("model") == "virtio"

    def test_legacy_firmware(self):
        root = ET.fromstring(render_domain(_domain()))
        assert root.find("os").get("firmware") is None
        assert root.find("./os/firmware") is None
        assert root.find("./devices/tpm") is None
        assert root.find("./features/smm") is None

    def test_shares_need_shared_memory(self):
        root = ET.fromstring(render_domain(_domain(shares=[
            {"host_path": "/srv/scripts", "mount_tag": "scripts", "binary_path": "/usr/bin/virtiofsd"},
        ])))
        assert root.find("./memoryBacking/source").get("type") == "memfd"
        assert root.find("./memoryBacking/access").get("mode") == "shared"

        filesystem = root.find("./devices/filesystem")
        assert filesystem.find("driver").get("type") == "virtiofs"
        assert filesystem.find("binary").get("path") == "/usr/bin/virtiofsd"
        assert filesystem.find("source").get("dir") == "/srv/scripts"
        assert filesystem.find("target").get("dir") == "scripts"

        assert ET.fromstring(render_domain(_domain())).find("memoryBacking") is None

    def test_interface_order_and_stable_macs(self):
        domain = _domain(interfaces=[{"network": "lab-net"}, {"network": "default", "model": "e1000e"}])
        document = render_domain(domain)

        entries = interface_entries(document)
        assert [(network, model) for network, model, _ in entries] == [("lab-net", "virtio"), ("default", "e1000e")]

        seed = str(domain.resolved_identifier)
        assert [mac for _, _, mac in entries] == [derive_mac(seed, 0), derive_mac(seed, 1)]
        assert all(mac.startswith("52:54:00:") for _, _, mac in entries)

        # Rendering is referentially transparent
        assert render_domain(domain) == document

    def test_fixed_mac_kept(self):
        document = render_domain(_domain(interfaces=[{"network": "lab-net", "mac": "52:54:00:12:34:56"}]))
        assert interface_entries(document)[0][2] == "52:54:00:12:34:56"

    def test_memory_units_normalize(self):
        assert render_domain(_domain(memory="2GiB")) == render_domain(_domain(memory="2048MiB"))

    def test_target_names(self):
        disks = [{"pool": "p", "volume": f"v{i}", "bus": "virtio"} for i in range(28)]
        root = ET.fromstring(render_domain(_domain(disks=disks)))
        targets = [t.get("dev") for t in root.findall("./devices/disk/target")]
        assert targets[0] == "vda"
        assert targets[25] == "vdz"
        assert targets[26] == "vdaa"

    def test_domain_references(self):
        document = render_domain(_domain(
            interfaces=[{"network": "lab-net"}, {"network": "default"}],
            disks=[{"pool": "homelab", "volume": "a"}, {"pool": "scratch", "volume": "b"}],
        ))
        assert domain_references(document) == ({"lab-net", "default"}, {"homelab", "scratch"})

    def test_generator_defaults_are_per_instance(self):
        generator = DomainXMLGenerator()
        generator.default_settings["video_model"] = "virtio"
        assert DomainXMLGenerator().default_settings["video_model"] == "qxl"


class TestDocumentsMatch:
    """Tests for documents_match()."""

    def test_identical(self):
        document = render_domain(_domain())
        assert documents_match(document, document)

    def test_live_decoration_ignored(self):
        desired = render_domain(_domain())
        live = ET.fromstring(desired)
        live.find("./os/type").set("machine", "pc-q35-8.2")
        live.find("./devices/interface").append(ET.Element("address", type="pci", bus="0x01"))
        live.find("./devices/interface").append(ET.Element("alias", name="net0"))
        ET.SubElement(live.find("devices"), "emulator").text = "/usr/bin/qemu-system-x86_64"
        ET.SubElement(live.find("devices"), "controller", type="usb", index="0")
        ET.SubElement(live, "on_reboot").text = "restart"

        assert documents_match(desired, ET.tostring(live, encoding="unicode"))

    def test_machine_alias_must_match_family(self):
        desired = render_domain(_domain())
        live = ET.fromstring(desired)
        live.find("./os/type").set("machine", "pc-i440fx-8.2")
        assert not documents_match(desired, ET.tostring(live, encoding="unicode"))

        legacy = render_domain(_domain(machine="pc"))
        live = ET.fromstring(legacy)
        live.find("./os/type").set("machine", "pc-i440fx-8.2")
        assert documents_match(legacy, ET.tostring(live, encoding="unicode"))

    def test_changed_value_detected(self):
        assert not documents_match(render_domain(_domain(vcpus=4)), render_domain(_domain(vcpus=2)))
        assert not documents_match(render_domain(_domain(memory="4GiB")), render_domain(_domain()))

    def test_interface_reorder_detected(self):
        a = _domain(interfaces=[{"network": "lab-net", "mac": "52:54:00:00:00:01"},
                                {"network": "default", "mac": "52:54:00:00:00:02"}])
        b = _domain(interfaces=[{"network": "default", "mac": "52:54:00:00:00:02"},
                                {"network": "lab-net", "mac": "52:54:00:00:00:01"}])
        assert not documents_match(render_domain(a), render_domain(b))

    def test_removed_owned_children_detected(self):
        with_share = render_domain(_domain(shares=[{"host_path": "/srv", "mount_tag": "srv"}]))
        without = render_domain(_domain())
        assert not documents_match(without, with_share)

        two_nics = render_domain(_domain(interfaces=[{"network": "lab-net"}, {"network": "default"}]))
        assert not documents_match(render_domain(_domain()), two_nics)

    def test_dropped_nvram_detected(self):
        with_nvram = render_domain(_domain(firmware="uefi", nvram="/var/lib/libvirt/qemu/nvram/vm.nvram"))
        assert not documents_match(render_domain(_domain(firmware="uefi")), with_nvram)

    def test_libvirt_generated_nvram_ignored(self):
        desired = render_domain(_domain(firmware="uefi"))
        live = ET.fromstring(desired)
        nvram = ET.SubElement(live.find("os"), "nvram", template="/usr/share/OVMF/OVMF_VARS.secboot.fd")
        nvram.text = "/var/lib/libvirt/qemu/nvram/vm_VARS.fd"
        assert documents_match(desired, ET.tostring(live, encoding="unicode"))

        # Without firmware auto-selection an unexpected NVRAM is drift
        legacy = render_domain(_domain())
        live = ET.fromstring(legacy)
        ET.SubElement(live.find("os"), "nvram").text = "/var/lib/libvirt/qemu/nvram/vm_VARS.fd"
        assert not documents_match(legacy, ET.tostring(live, encoding="unicode"))

    def test_firmware_switch_detected(self):
        uefi = render_domain(_domain(firmware="uefi"))
        legacy = render_domain(_domain())
        assert not documents_match(legacy, uefi)
        assert not documents_match(uefi, legacy)

    def test_network_changes(self):
        desired = render_network(nat_network("lab-net", 56))
        assert documents_match(desired, desired)
        assert not documents_match(render_network(nat_network("lab-net", 56, dhcp_start=100)), desired)

        isolated = NetworkSpec(name="lab-net", forward="isolated", bridge="virbr56", gateway="192.168.56.1")
        assert not documents_match(render_network(isolated), desired)

    def test_unparseable_live_document(self):
        assert not documents_match(render_network(nat_network("n", 1)), "<network><name>n")

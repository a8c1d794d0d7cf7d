"""Tests for loading topology files."""

from ipaddress import IPv4Address
from pathlib import Path

import pytest

from libvirt_reconciler.config import Config, GeneratorConfig
from libvirt_reconciler.exceptions import ConfigurationError
from libvirt_reconciler.generator import ProfileGenerator
from libvirt_reconciler.models import DomainSpec, Firmware, ManagedDomains, Unmanaged
from libvirt_reconciler.topology import desired_state_from_dict, load_desired_state
from libvirt_reconciler.validation import validate

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


class TestDesiredStateFromDict:
    """Tests for desired_state_from_dict()."""

    def test_plain_domain_items(self):
        desired = desired_state_from_dict({
            "domains": {"mode": "managed", "items": [{"name": "vm", "memory": "1GiB"}]},
        })
        assert isinstance(desired.domains, ManagedDomains)
        assert isinstance(desired.networks, Unmanaged)
        assert desired.managed_domains()[0].name == "vm"

    def test_profile_items_expanded(self):
        desired = desired_state_from_dict({
            "domains": {"mode": "managed", "items": [
                {"profile": "server", "name": "DC01", "volume": "dc01.qcow2", "static_address": "192.168.56.10"},
                {"name": "plain", "memory": "512MiB"},
            ]},
        })
        dc01, plain = desired.managed_domains()
        assert isinstance(dc01, DomainSpec)
        assert dc01.firmware == Firmware.UEFI
        assert dc01.interfaces[0].static_address == IPv4Address("192.168.56.10")
        assert plain.firmware == Firmware.LEGACY

    def test_custom_generator(self):
        generator = ProfileGenerator(GeneratorConfig(pool="scratch"))
        desired = desired_state_from_dict({
            "domains": {"mode": "managed", "items": [{"profile": "client", "name": "c", "volume": "c.qcow2"}]},
        }, generator)
        assert desired.managed_domains()[0].disks[0].pool == "scratch"

    def test_bad_profile_parameters(self):
        with pytest.raises(ConfigurationError) as exc_info:
            desired_state_from_dict({
                "domains": {"mode": "managed", "items": [{"profile": "server", "name": "x", "colour": "red"}]},
            })
        assert "server" in exc_info.value.message
        assert exc_info.value.details["errors"]

    def test_unknown_profile(self):
        with pytest.raises(ConfigurationError):
            desired_state_from_dict({
                "domains": {"mode": "managed", "items": [{"profile": "kiosk", "name": "x", "volume": "x"}]},
            })

    def test_invalid_topology(self):
        with pytest.raises(ConfigurationError) as exc_info:
            desired_state_from_dict({"networks": {"mode": "managed", "items": [{"name": "n"}]}})
        assert exc_info.value.details["errors"]

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError):
            desired_state_from_dict(["networks"])


class TestLoadDesiredState:
    """Tests for load_desired_state()."""

    def test_homelab_example(self):
        config = Config.from_yaml_file(str(EXAMPLES / "config.yaml"))
        desired = load_desired_state(str(EXAMPLES / "homelab.yaml"), ProfileGenerator(config.generator))

        assert [n.name for n in desired.managed_networks()] == ["lab-net", "default"]
        assert [p.name for p in desired.managed_pools()] == ["homelab"]
        assert [d.name for d in desired.managed_domains()] == ["DC01", "SCCM01", "CLIENT01", "CLIENT02"]

        dc01 = desired.managed_domains()[0]
        assert str(dc01.identifier) == "4c82c973-7299-468e-bf15-d442ee681475"
        assert dc01.memory.to_bytes() == 2 * 1024 ** 3
        assert [i.network for i in dc01.interfaces] == ["lab-net", "default"]
        assert dc01.install_media == ["/mnt/vms/iso/windows-server-2022.iso", "/mnt/vms/iso/virtio-win.iso"]
        assert dc01.shares[0].binary_path == "/run/current-system/sw/bin/virtiofsd"

        assert validate(desired) == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_desired_state(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("networks: [unterminated\n")
        with pytest.raises(ConfigurationError):
            load_desired_state(str(path))

    def test_empty_file_is_all_unmanaged(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        desired = load_desired_state(str(path))
        assert isinstance(desired.networks, Unmanaged)
        assert isinstance(desired.domains, Unmanaged)

"""Tests for tillstand.yml loading and validation."""
import pytest

from tillstand.config import ConfigLoader, ConfigValidationError
from tillstand.models.devices import DiskDevice, VMNIC
from tillstand.models.instance import AppSpec, InstanceSpec, VMSpec

FULL_CONFIG = """
vms:
  - name: web
    memory: 2048
    vcpus: 2
    bootloader: UEFI
    desired_state: running
    disks:
      - path: /dev/zvol/tank/web
        type: VIRTIO
    nics:
      - type: VIRTIO
        nic_attach: br0
        mac: "00:a0:98:12:34:56"

containers:
  - name: dns
    image_name: alpine
    image_version: "3.20"
    storage_pool: tank
    disks:
      - source: /mnt/tank/dns
        destination: /etc/dns
    nics:
      - network: incusbr0
    proxies:
      - source_proto: UDP
        source_port: 53
        dest_proto: UDP
        dest_port: 53

apps:
  - name: plex
    desired_state: STOPPED
"""


def write_config(tmp_path, text):
    path = tmp_path / "tillstand.yml"
    path.write_text(text)
    return ConfigLoader(str(path))


def test_full_config_yields_specs(tmp_path):
    specs = write_config(tmp_path, FULL_CONFIG).specs()

    vm = specs["vm"][0]
    assert isinstance(vm, VMSpec)
    assert vm.desired_state == "RUNNING"
    assert vm.bootloader == "UEFI"
    assert vm.disks[0].path == "/dev/zvol/tank/web"
    assert isinstance(vm.nics[0], VMNIC)

    container = specs["instance"][0]
    assert isinstance(container, InstanceSpec)
    assert container.image == "alpine/3.20"
    assert container.desired_state == "RUNNING"
    assert container.disks == [DiskDevice(source="/mnt/tank/dns", destination="/etc/dns")]
    assert container.proxies[0].dest_port == 53

    assert specs["app"] == [AppSpec(name="plex", desired_state="STOPPED")]


def test_vm_desired_state_defaults_to_stopped(tmp_path):
    specs = write_config(tmp_path, "vms:\n  - name: web\n").specs()
    assert specs["vm"][0].desired_state == "STOPPED"


def test_integer_image_version_becomes_string(tmp_path):
    loader = write_config(
        tmp_path,
        "containers:\n  - name: dns\n    image_name: debian\n    image_version: 12\n",
    )
    assert loader.container_specs()[0].image_version == "12"


def test_float_image_version_rejected(tmp_path):
    loader = write_config(
        tmp_path,
        "containers:\n  - name: dns\n    image_name: alpine\n    image_version: 3.20\n",
    )
    with pytest.raises(ConfigValidationError) as exc_info:
        loader.load()
    assert "containers.0.image_version" in str(exc_info.value)
    assert "Quote image_version" in str(exc_info.value)


@pytest.mark.parametrize("text,expected", [
    ("apps:\n  - name: plex\n    desired_state: STARTING\n", "desired_state must be one of"),
    ("vms:\n  - name: web\n    memory: 10\n", "vms.0.memory"),
    ("vms:\n  - name: web-1\n", "vms.0.name"),
    ("vms:\n  - name: web\n    cpus: 2\n", "vms.0.cpus"),
    ("vms:\n  - name: web\n    memory: 512\n    min_memory: 1024\n", "min_memory (1024) exceeds memory"),
    (
        "containers:\n  - name: dns\n    image_name: a\n    image_version: b\n"
        "    nics:\n      - network: incusbr0\n        parent: eno1\n",
        "either network or parent",
    ),
    (
        "containers:\n  - name: dns\n    image_name: a\n    image_version: b\n"
        "    disks:\n      - source: /a\n        destination: relative\n",
        "must be absolute",
    ),
    (
        "containers:\n  - name: dns\n    image_name: a\n    image_version: b\n"
        "    disks:\n      - name: data\n        source: /a\n        destination: /a\n"
        "    nics:\n      - name: data\n        network: incusbr0\n",
        "Duplicate device name 'data'",
    ),
    ("apps:\n  - name: plex\n  - name: plex\n", "Duplicate apps names: plex"),
    ("vms:\n  - name: web\n    nics:\n      - mac: nope\n", "vms.0.nics.0.mac"),
])
def test_invalid_configs(tmp_path, text, expected):
    with pytest.raises(ConfigValidationError) as exc_info:
        write_config(tmp_path, text).load()
    assert expected in str(exc_info.value)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ConfigLoader(str(tmp_path / "nope.yml")).load()


def test_empty_file(tmp_path):
    with pytest.raises(ConfigValidationError) as exc_info:
        write_config(tmp_path, "").load()
    assert "empty" in str(exc_info.value)


def test_malformed_yaml(tmp_path):
    with pytest.raises(ConfigValidationError) as exc_info:
        write_config(tmp_path, "vms: [\n").load()
    assert "Cannot parse" in str(exc_info.value)


def test_root_must_be_mapping(tmp_path):
    with pytest.raises(ConfigValidationError):
        write_config(tmp_path, "- web\n").load()

"""Tests for rebuilding specs from observed state."""
from tillstand.core.refresh import (
    carry_caller_fields,
    preserve_raw_exists,
    refresh_app_spec,
    refresh_instance_spec,
    refresh_vm_spec,
)
from tillstand.models.devices import DiskDevice, NICDevice, VMDisk, VMRaw
from tillstand.models.instance import AppSpec, InstanceSpec, ObservedState, VMSpec


def _instance_observed(status="RUNNING", devices=None):
    return ObservedState(
        id="web",
        status=status,
        devices=devices or [],
        record={"id": "web", "name": "web", "status": status, "autostart": True, "storage_pool": "tank"},
    )


def test_drift_keeps_desired_state():
    prior = InstanceSpec(name="web", image_name="debian", image_version="bookworm", desired_state="STOPPED")

    spec = refresh_instance_spec(prior, _instance_observed("RUNNING"))

    assert spec.desired_state == "STOPPED"
    assert spec.state == "RUNNING"
    assert prior.state is None


def test_timeouts_carry_over_or_default(fast_config):
    prior = InstanceSpec(name="web", state_timeout=240)

    spec = refresh_instance_spec(prior, _instance_observed())

    assert spec.state_timeout == 240
    assert spec.shutdown_timeout == fast_config.default_shutdown_timeout


def test_missing_desired_state_adopts_observed():
    prior = InstanceSpec(name="web", desired_state=None)

    spec = refresh_instance_spec(prior, _instance_observed("STOPPED"))

    assert spec.desired_state == "STOPPED"


def test_image_is_preserved_not_read_back():
    prior = InstanceSpec(name="web", image_name="debian", image_version="bookworm")
    observed = _instance_observed()
    observed.record["image"] = {"os": "Debian", "release": "Bookworm"}

    spec = refresh_instance_spec(prior, observed)

    assert spec.image == "debian/bookworm"
    assert spec.id == "web"
    assert spec.autostart is True


def test_instance_devices_filtered_to_managed_names():
    prior = InstanceSpec(
        name="web",
        disks=[DiskDevice(name="data", source="/mnt/tank/web", destination="/srv")],
        nics=[NICDevice(network="incusbr0")],
    )
    observed = _instance_observed(devices=[
        DiskDevice(name="root", destination="/"),
        DiskDevice(name="data", source="/mnt/tank/web", destination="/srv"),
        NICDevice(name="eth0", network="incusbr0"),
    ])

    spec = refresh_instance_spec(prior, observed)

    assert [d.name for d in spec.disks] == ["data"]
    assert spec.nics == []


def test_instance_without_managed_names_has_no_devices():
    prior = InstanceSpec(name="web")
    observed = _instance_observed(devices=[DiskDevice(name="root", destination="/")])

    assert refresh_instance_spec(prior, observed).devices() == []


def test_vm_refresh_tracks_every_device():
    prior = VMSpec(name="web", desired_state="RUNNING")
    observed = ObservedState(
        id=3,
        status="STOPPED",
        devices=[VMDisk(device_id=5, path="/dev/zvol/tank/web"), VMRaw(device_id=6, path="/mnt/tank/a.img")],
        record={"id": 3, "name": "web", "memory": 1024, "status": {"state": "STOPPED"}},
    )

    spec = refresh_vm_spec(prior, observed)

    assert spec.id == 3
    assert spec.memory == 1024
    assert spec.state == "STOPPED"
    assert spec.desired_state == "RUNNING"
    assert [d.device_id for d in spec.devices()] == [5, 6]


def test_app_refresh():
    spec = refresh_app_spec(
        AppSpec(name="plex", desired_state="RUNNING"),
        ObservedState(id="plex", status="CRASHED"),
    )
    assert spec.state == "CRASHED"
    assert spec.desired_state == "RUNNING"


class TestPreserveRawExists:
    def test_matches_by_id(self):
        prior = [VMRaw(device_id=2, exists=True), VMRaw(device_id=1, exists=False)]
        mapped = [VMRaw(device_id=1), VMRaw(device_id=2)]

        preserve_raw_exists(mapped, prior)

        assert [r.exists for r in mapped] == [False, True]

    def test_falls_back_to_position(self):
        prior = [VMRaw(exists=True)]
        mapped = [VMRaw(device_id=9)]

        preserve_raw_exists(mapped, prior)

        assert mapped[0].exists is True

    def test_extra_devices_left_alone(self):
        mapped = [VMRaw(device_id=1), VMRaw(device_id=2)]

        preserve_raw_exists(mapped, [VMRaw(device_id=1, exists=True)])

        assert mapped[1].exists is None


def test_vm_refresh_leaves_observed_devices_untouched():
    observed_raw = VMRaw(device_id=6, path="/mnt/tank/a.img")
    observed = ObservedState(
        id=3,
        status="STOPPED",
        devices=[observed_raw],
        record={"id": 3, "name": "web", "status": {"state": "STOPPED"}},
    )
    prior = VMSpec(name="web", raws=[VMRaw(device_id=6, path="/mnt/tank/a.img", exists=True)])

    spec = refresh_vm_spec(prior, observed)

    assert spec.raws[0].exists is True
    assert spec.raws[0] is not observed_raw
    assert observed_raw.exists is None


def test_instance_refresh_copies_observed_devices():
    observed_disk = DiskDevice(name="data", source="/mnt/tank/web", destination="/srv")
    prior = InstanceSpec(name="web", disks=[DiskDevice(name="data", source="/mnt/tank/web", destination="/srv")])

    spec = refresh_instance_spec(prior, _instance_observed(devices=[observed_disk]))
    spec.disks[0].readonly = True

    assert observed_disk.readonly is None


class TestCarryCallerFields:
    def test_copies_set_fields(self):
        source = InstanceSpec(name="web", desired_state="stopped", state_timeout=240)
        target = InstanceSpec(name="web", desired_state="RUNNING", state_timeout=90, shutdown_timeout=30)

        carry_caller_fields(source, target)

        assert target.desired_state == "STOPPED"
        assert target.state_timeout == 240
        assert target.shutdown_timeout == 30

    def test_app_without_shutdown_timeout(self):
        target = AppSpec(name="plex", desired_state="RUNNING")

        carry_caller_fields(AppSpec(name="plex", desired_state="STOPPED"), target)

        assert target.desired_state == "STOPPED"

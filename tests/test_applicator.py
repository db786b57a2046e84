"""Tests for plan/apply/refresh/destroy across resource kinds."""
import pytest

from tillstand.core.applicator import ApplyRunner, format_plan
from tillstand.core.device_reconciler import DeviceAction
from tillstand.core.errors import NotFoundError
from tillstand.core.state_store import StateStore
from tillstand.models.devices import DiskDevice, NICDevice, VMCDROM, VMDisk
from tillstand.models.instance import AppSpec, InstanceSpec, VMSpec


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state.json")


@pytest.fixture
def runner(gateway, truenas, store):
    truenas.apps["plex"] = {"name": "plex", "state": "STOPPED"}
    return ApplyRunner(gateway, store)


def desired_specs():
    """Fresh specs, as the config loader would build them on every run."""
    return {
        "vm": [
            VMSpec(
                name="web",
                memory=1024,
                desired_state="RUNNING",
                disks=[VMDisk(path="/dev/zvol/tank/web")],
                cdroms=[VMCDROM(path="/mnt/iso/debian.iso")],
            )
        ],
        "instance": [
            InstanceSpec(
                name="dns",
                image_name="alpine",
                image_version="3.20",
                desired_state="RUNNING",
                disks=[DiskDevice(source="/mnt/tank/dns", destination="/etc/dns")],
                nics=[NICDevice(network="incusbr0")],
            )
        ],
        "app": [AppSpec(name="plex", desired_state="RUNNING")],
    }


def test_first_plan_creates_new_resources(runner):
    plans = runner.plan(desired_specs())

    assert [(p.kind, p.name, p.action) for p in plans] == [
        ("vm", "web", "create"),
        ("instance", "dns", "create"),
        ("app", "plex", "update"),
    ]
    assert all(op.action == DeviceAction.CREATE for op in plans[0].device_operations)
    assert plans[2].power_change == ("STOPPED", "RUNNING")

    text = format_plan(plans)
    assert "+ web (will be created)" in text
    assert "~ plex (will be updated)" in text
    assert "state: STOPPED -> RUNNING" in text
    assert "Plan: 3 resource(s) to change" in text


def test_apply_then_plan_again_is_noop(runner, store, gateway):
    runner.apply(runner.plan(desired_specs()))

    assert store.get_resource("vm", "web")["id"] == 1
    assert [d["name"] for d in store.get_resource("instance", "dns")["disks"]] == ["disk0"]
    assert store.get_resource("app", "plex")["state"] == "RUNNING"

    gateway.calls.clear()
    plans = runner.plan(desired_specs())

    assert [p.action for p in plans] == ["noop", "noop", "noop"]
    assert format_plan(plans) == "No changes required. Resources are up to date."
    assert gateway.mutating_methods() == []


def test_config_devices_adopt_stored_identities(runner):
    runner.apply(runner.plan(desired_specs()))

    specs = desired_specs()
    specs["vm"][0].disks[0].type = "VIRTIO"
    plans = runner.plan(specs)

    ops = plans[0].device_operations
    assert [(op.action, op.identity, op.changed) for op in ops] == [
        (DeviceAction.UPDATE, 10, ["type"]),
    ]


def test_removed_device_is_planned_as_delete(runner):
    runner.apply(runner.plan(desired_specs()))

    specs = desired_specs()
    specs["instance"][0].nics = []
    plan = runner.plan(specs)[1]

    assert [(op.action, op.identity) for op in plan.device_operations] == [
        (DeviceAction.DELETE, "nic1"),
    ]


def test_untracked_instance_adopts_server_device_names(runner, truenas, gateway):
    truenas.instance_create({
        "name": "dns",
        "image": "alpine/3.20",
        "devices": [
            {"dev_type": "DISK", "source": "/mnt/tank/dns", "destination": "/etc/dns"},
            {"dev_type": "NIC", "network": "incusbr0"},
        ],
    })
    specs = desired_specs()

    plan = runner.prepare("instance", specs["instance"][0])

    assert plan.action == "noop"
    assert [d.name for d in specs["instance"][0].devices()] == ["disk0", "nic1"]
    assert [d.name for d in plan.state.devices()] == ["disk0", "nic1"]


def test_power_drift_is_planned(runner, truenas):
    runner.apply(runner.plan(desired_specs()))
    truenas.vms[1]["status"]["state"] = "STOPPED"

    plan = runner.plan(desired_specs())[0]

    assert plan.action == "update"
    assert plan.power_change == ("STOPPED", "RUNNING")
    assert plan.device_operations == []


def test_field_changes_are_planned(runner):
    runner.apply(runner.plan(desired_specs()))

    specs = desired_specs()
    specs["vm"][0].memory = 4096
    plan = runner.plan(specs)[0]

    assert plan.field_changes == {"memory": (1024, 4096)}
    assert "memory: 1024 -> 4096" in format_plan([plan])


def test_apply_uninstalled_app_fails(runner):
    specs = {"app": [AppSpec(name="jellyfin")]}
    plans = runner.plan(specs)

    assert plans[0].action == "create"
    with pytest.raises(NotFoundError):
        runner.apply(plans)


def test_refresh_forgets_deleted_resources(runner, truenas, store):
    runner.apply(runner.plan(desired_specs()))
    truenas.instances.clear()
    truenas.vms[1]["status"]["state"] = "STOPPED"

    summary = runner.refresh()

    assert summary["removed"] == ["instance/dns"]
    assert sorted(summary["refreshed"]) == ["app/plex", "vm/web"]
    assert store.get_resource("instance", "dns") is None
    vm = store.get_resource("vm", "web")
    assert vm["state"] == "STOPPED"
    assert vm["desired_state"] == "RUNNING"


def test_destroy(runner, truenas, store):
    runner.apply(runner.plan(desired_specs()))

    runner.destroy("vm", "web")

    assert truenas.vms == {}
    assert store.get_resource("vm", "web") is None


def test_destroy_untracked(runner):
    with pytest.raises(NotFoundError) as exc_info:
        runner.destroy("instance", "ghost")
    assert "in state" in str(exc_info.value)


def _server_disks(truenas, instance="dns"):
    return [d["name"] for d in truenas.instance_devices[instance] if d["dev_type"] == "DISK" and d["name"] != "root"]


def test_trailing_slash_disk_is_not_recreated(runner, truenas):
    name_device = truenas._name_device

    def stripping_name_device(device):
        device = name_device(device)
        if device.get("source"):
            device["source"] = device["source"].rstrip("/")
        return device

    truenas._name_device = stripping_name_device

    for _ in range(3):
        specs = desired_specs()
        specs["instance"][0].disks = [DiskDevice(source="/mnt/tank/dns/", destination="/etc/dns/")]
        runner.apply(runner.plan(specs))

    assert _server_disks(truenas) == ["disk0"]


def test_tracked_instance_adopts_device_missing_from_state(runner, store, truenas):
    runner.apply(runner.plan(desired_specs()))
    record = store.get_resource("instance", "dns")
    record["disks"] = []
    store.record_resource("instance", "dns", record)

    plan = runner.plan(desired_specs())[1]

    assert plan.action == "noop"
    assert [d.name for d in plan.spec.disks] == ["disk0"]

    runner.apply([plan])
    assert [d["name"] for d in store.get_resource("instance", "dns")["disks"]] == ["disk0"]
    assert _server_disks(truenas) == ["disk0"]


def test_removed_device_still_deleted_after_server_adoption(runner):
    runner.apply(runner.plan(desired_specs()))

    specs = desired_specs()
    specs["instance"][0].nics = []
    specs["instance"][0].disks.append(DiskDevice(source="/mnt/tank/logs", destination="/var/log"))
    plan = runner.plan(specs)[1]

    assert [(op.action, op.identity) for op in plan.device_operations] == [
        (DeviceAction.DELETE, "nic1"),
        (DeviceAction.CREATE, None),
    ]


def test_noop_records_caller_fields_from_config(runner, store):
    runner.apply(runner.plan(desired_specs()))

    specs = desired_specs()
    specs["app"][0].state_timeout = 300
    plans = runner.plan(specs)
    assert plans[2].action == "noop"

    runner.apply(plans)

    assert store.get_resource("app", "plex")["state_timeout"] == 300
    assert store.get_resource("app", "plex")["desired_state"] == "RUNNING"

"""
Unit tests for the VM lifecycle.

FakeHost interprets the handful of qm/arp/ls/cat/test commands VMManager
issues and keeps just enough state to check what is left behind.
"""

import json
import shlex
import unittest
from datetime import datetime, timezone
from unittest.mock import Mock

from pveadmin import (
    ALREADY_DELETED,
    STOPPED_AND_REMOVED,
    AllocationExhaustedError,
    CommandError,
    NotFoundError,
    OwnershipError,
    RemoteConnectionError,
    TemplateNotFoundError,
    ValidationError,
    VMDefaults,
    VMManager,
)

TEMPLATE_DIR = "/var/lib/vz/template/qemu"
FIXED_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeHost:
    kind = "ssh"

    def __init__(self):
        self.vms = {}
        self.files = {f"{TEMPLATE_DIR}/kali-disk0.qcow2": ""}
        self.neighbors = {}
        self.arp_misses = 0
        self.fail_on = {}
        self.commands = []
        self.mac_counter = 0

    def _missing(self, command, vmid):
        raise CommandError(
            command, 2, f"Configuration file 'nodes/pve/qemu-server/{vmid}.conf' does not exist"
        )

    def add_vm(self, vmid, status="running", **config):
        self.vms[vmid] = {"status": status, "config": dict(config)}

    def execute(self, command):
        self.commands.append(command)
        for prefix, error in self.fail_on.items():
            if command.startswith(prefix):
                raise error
        argv = shlex.split(command)

        if argv[0] == "test":
            return "present" if argv[2] in self.files else ""
        if argv[0] == "arp":
            if self.arp_misses > 0:
                self.arp_misses -= 1
                return ""
            return "\n".join(
                f"{ip}  ether  {mac.lower()}  C  vmbr1" for mac, ip in self.neighbors.items()
            )
        if argv[0] == "ls":
            return "\n".join(
                path for path in sorted(self.files) if path.endswith("-metadata.json")
            )
        if argv[0] == "cat":
            if argv[1] not in self.files:
                raise CommandError(command, 1, f"cat: {argv[1]}: No such file or directory")
            return self.files[argv[1]]
        if argv[:2] == ["qm", "list"]:
            lines = ["      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID"]
            for vmid, vm in sorted(self.vms.items()):
                name = vm["config"].get("name", "")
                lines.append(f"      {vmid} {name:<20} {vm['status']:<10} 2048       32.00        0")
            return "\n".join(lines)

        verb, vmid = argv[1], int(argv[2])
        if verb == "create":
            if vmid in self.vms:
                raise CommandError(command, 255, f"VM {vmid} already exists")
            opts = dict(zip(argv[3::2], argv[4::2]))
            self.mac_counter += 1
            model, _, rest = opts["--net0"].partition(",")
            mac = f"BC:24:11:00:00:{self.mac_counter:02X}"
            self.add_vm(
                vmid,
                status="stopped",
                name=opts["--name"],
                memory=opts["--memory"],
                cores=opts["--cores"],
                net0=f"{model}={mac},{rest}",
            )
            return ""
        if vmid not in self.vms:
            self._missing(command, vmid)
        vm = self.vms[vmid]
        if verb == "status":
            return f"status: {vm['status']}"
        if verb == "config":
            return "\n".join(f"{k}: {v}" for k, v in sorted(vm["config"].items()))
        if verb == "set":
            for key, value in zip(argv[3::2], argv[4::2]):
                vm["config"][key.lstrip("-")] = value
            return ""
        if verb == "importdisk":
            vm["config"]["unused0"] = f"{argv[4]}:vm-{vmid}-disk-0"
            return ""
        if verb == "start":
            vm["status"] = "running"
            return ""
        if verb == "stop":
            vm["status"] = "stopped"
            return ""
        if verb == "destroy":
            del self.vms[vmid]
            return ""
        raise AssertionError(f"unexpected command {command}")

    def mac_of(self, vmid):
        return self.vms[vmid]["config"]["net0"].split(",")[0].split("=")[1]


def make_manager(host, start=4242):
    rng = Mock()
    rng.randint.return_value = start
    sleep = Mock()
    manager = VMManager(host, VMDefaults(), sleep=sleep, rng=rng, clock=lambda: FIXED_NOW)
    return manager, sleep


class TestDeploy(unittest.TestCase):
    def setUp(self):
        self.host = FakeHost()
        self.manager, self.sleep = make_manager(self.host)

    def test_deploy_discovers_address(self):
        self.host.arp_misses = 2
        self.host.neighbors["BC:24:11:00:00:01"] = "192.168.1.57"

        record = self.manager.deploy("kali", "jdoe")

        self.assertEqual(record.vmid, 4242)
        self.assertEqual(record.name, "kali-jdoe")
        self.assertEqual(record.status, "running")
        self.assertEqual(record.ip_address, "192.168.1.57")
        self.assertFalse(record.address_pending)
        self.assertEqual(record.deployed_at, "2026-01-01T12:00:00Z")
        self.assertEqual(record.expires_at, "2026-01-01T14:00:00Z")
        self.assertEqual(self.sleep.call_count, 3)

        vm = self.host.vms[4242]
        self.assertEqual(vm["status"], "running")
        self.assertEqual(vm["config"]["scsi0"], "local-lvm:vm-4242-disk-0")
        self.assertEqual(vm["config"]["boot"], "order=scsi0")
        self.assertEqual(vm["config"]["vga"], "std")
        self.assertEqual(
            json.loads(vm["config"]["description"]),
            {
                "username": "jdoe",
                "vmName": "kali",
                "deployedAt": "2026-01-01T12:00:00Z",
                "expiresAt": "2026-01-01T14:00:00Z",
            },
        )

    def test_deploy_without_address_is_still_successful(self):
        record = self.manager.deploy("kali", "jdoe", memory=4096, cores=4)

        self.assertIsNone(record.ip_address)
        self.assertTrue(record.address_pending)
        self.assertTrue(record.to_dict()["addressPending"])
        self.assertEqual(record.memory, 4096)
        self.assertEqual(self.sleep.call_count, 12)
        self.sleep.assert_called_with(5)
        self.assertEqual(self.host.vms[4242]["status"], "running")

    def test_vmid_probe_skips_existing(self):
        self.host.add_vm(4242)
        self.host.add_vm(4243)
        record = self.manager.deploy("kali", "jdoe")
        self.assertEqual(record.vmid, 4244)

    def test_allocation_exhausted(self):
        for vmid in range(4242, 4342):
            self.host.add_vm(vmid)
        with self.assertRaises(AllocationExhaustedError):
            self.manager.deploy("kali", "jdoe")
        self.assertFalse(any(c.startswith("qm create") for c in self.host.commands))

    def test_missing_template(self):
        with self.assertRaises(TemplateNotFoundError):
            self.manager.deploy("windows", "jdoe")
        self.assertFalse(any(c.startswith("qm ") for c in self.host.commands))

    def test_import_failure_cleans_up_and_reraises(self):
        error = CommandError("qm importdisk", 255, "storage 'local-lvm' is full")
        self.host.fail_on["qm importdisk"] = error

        with self.assertRaises(CommandError) as ctx:
            self.manager.deploy("kali", "jdoe")

        self.assertIs(ctx.exception, error)
        self.assertNotIn(4242, self.host.vms)
        self.assertIn("qm destroy 4242 --purge 1 --skiplock 1", self.host.commands)

    def test_cleanup_failure_is_swallowed(self):
        error = CommandError("qm start", 255, "failed to start")
        self.host.fail_on["qm start"] = error
        self.host.fail_on["qm destroy"] = RemoteConnectionError("connection lost")

        with self.assertRaises(CommandError) as ctx:
            self.manager.deploy("kali", "jdoe")
        self.assertIs(ctx.exception, error)

    def test_create_collision_leaves_existing_vm_alone(self):
        # Another deploy took the id between the probe and qm create
        self.manager.vmid_exists = lambda vmid: False
        self.host.add_vm(
            4242,
            name="kali-alice",
            description=json.dumps({"username": "alice", "vmName": "kali"}),
        )

        with self.assertRaises(CommandError) as ctx:
            self.manager.deploy("kali", "jdoe")

        self.assertIn("already exists", ctx.exception.stderr)
        self.assertIn(4242, self.host.vms)
        self.assertEqual(self.host.vms[4242]["config"]["name"], "kali-alice")
        self.assertFalse(any(c.startswith("qm destroy") for c in self.host.commands))

    def test_unexpected_cleanup_error_does_not_mask_failure(self):
        error = CommandError("qm importdisk", 255, "storage 'local-lvm' is full")
        self.host.fail_on["qm importdisk"] = error
        self.host.fail_on["qm destroy"] = RuntimeError("channel closed")

        with self.assertRaises(CommandError) as ctx:
            self.manager.deploy("kali", "jdoe")
        self.assertIs(ctx.exception, error)

    def test_rejects_bad_input(self):
        for template, owner, memory in (
            ("../../etc/passwd", "jdoe", 2048),
            ("kali", "", 2048),
            ("kali", "jdoe", "lots"),
            ("kali", "jdoe", 0),
        ):
            with self.assertRaises(ValidationError):
                self.manager.deploy(template, owner, memory=memory)
        self.assertEqual(self.host.commands, [])


class TestStop(unittest.TestCase):
    def setUp(self):
        self.host = FakeHost()
        self.manager, self.sleep = make_manager(self.host)
        self.host.add_vm(
            5000,
            name="kali-jdoe",
            description=json.dumps({"username": "jdoe", "vmName": "kali"}),
        )

    def test_missing_vm_counts_as_deleted(self):
        result = self.manager.stop(7777, "jdoe")
        self.assertEqual(result, {"vmid": 7777, "message": ALREADY_DELETED})

    def test_other_owner_is_refused(self):
        with self.assertRaises(OwnershipError):
            self.manager.stop(5000, "mallory")
        self.assertIn(5000, self.host.vms)

    def test_vm_without_metadata_is_refused(self):
        self.host.add_vm(5001, name="manual", description="hand made")
        with self.assertRaises(OwnershipError):
            self.manager.stop(5001, "jdoe")

    def test_stop_and_destroy(self):
        result = self.manager.stop("5000", "jdoe")
        self.assertEqual(result, {"vmid": 5000, "message": STOPPED_AND_REMOVED})
        self.assertNotIn(5000, self.host.vms)
        self.sleep.assert_called_once_with(3)
        stop_index = self.host.commands.index("qm stop 5000")
        destroy_index = self.host.commands.index("qm destroy 5000 --purge 1 --skiplock 1")
        self.assertLess(stop_index, destroy_index)

    def test_failed_graceful_stop_still_destroys(self):
        self.host.fail_on["qm stop"] = CommandError("qm stop", 255, "VM is locked")
        self.manager.stop(5000, "jdoe")
        self.assertNotIn(5000, self.host.vms)

    def test_connection_errors_propagate(self):
        self.host.fail_on["qm config"] = RemoteConnectionError("unreachable")
        with self.assertRaises(RemoteConnectionError):
            self.manager.stop(5000, "jdoe")


class TestStatus(unittest.TestCase):
    def setUp(self):
        self.host = FakeHost()
        self.manager, _ = make_manager(self.host)

    def test_running_vm(self):
        self.host.add_vm(
            5000,
            name="kali-jdoe",
            memory="2048",
            cores="2",
            net0="virtio=BC:24:11:00:00:AA,bridge=vmbr1",
            description=json.dumps(
                {"username": "jdoe", "vmName": "kali", "expiresAt": "2026-01-01T14:00:00Z"}
            ),
        )
        self.host.neighbors["BC:24:11:00:00:AA"] = "10.0.0.12"

        record = self.manager.status(5000)
        self.assertEqual(record.status, "running")
        self.assertEqual(record.ip_address, "10.0.0.12")
        self.assertEqual(record.owner, "jdoe")
        self.assertEqual(record.template, "kali")
        self.assertEqual(record.memory, 2048)
        self.assertEqual(record.expires_at, "2026-01-01T14:00:00Z")

    def test_stopped_vm_with_corrupt_description(self):
        self.host.add_vm(5001, status="stopped", name="x", description="{oops")
        record = self.manager.status(5001)
        self.assertEqual(record.status, "stopped")
        self.assertEqual(record.owner, "")
        self.assertIsNone(record.ip_address)

    def test_unknown_vm(self):
        with self.assertRaises(NotFoundError):
            self.manager.status(6000)

    def test_neighbor_lookup_failure_is_tolerated(self):
        self.host.add_vm(5002, net0="virtio=BC:24:11:00:00:BB,bridge=vmbr1")
        self.host.fail_on["arp"] = CommandError("arp -n", 1, "arp: not found")
        self.assertIsNone(self.manager.status(5002).ip_address)


class TestTemplatesAndListing(unittest.TestCase):
    def setUp(self):
        self.host = FakeHost()
        self.manager, _ = make_manager(self.host)

    def test_list_templates_skips_unparsable_files(self):
        self.host.files[f"{TEMPLATE_DIR}/kali-metadata.json"] = json.dumps(
            {"os": "linux", "description": "Kali Linux"}
        )
        self.host.files[f"{TEMPLATE_DIR}/broken-metadata.json"] = "{not json"
        self.host.files[f"{TEMPLATE_DIR}/list-metadata.json"] = "[1, 2]"

        templates = self.manager.list_templates()
        self.assertEqual([t.id for t in templates], ["kali"])
        self.assertEqual(
            templates[0].to_dict(),
            {"id": "kali", "name": "kali", "os": "linux", "description": "Kali Linux"},
        )

    def test_no_templates(self):
        self.host.files = {}
        self.assertEqual(self.manager.list_templates(), [])

    def test_active_vmids_for_user(self):
        self.host.add_vm(5000, name="kali-jdoe")
        self.host.add_vm(5001, name="kali-asmith")
        self.host.add_vm(5002, name="ubuntu-jdoe")
        self.assertEqual(self.manager.list_active_vmids_for_user("jdoe"), [5000, 5002])
        self.assertEqual(self.manager.list_active_vmids_for_user(""), [])

    def test_active_vmids_best_effort(self):
        self.host.fail_on["qm list"] = RemoteConnectionError("unreachable")
        self.assertEqual(self.manager.list_active_vmids_for_user("jdoe"), [])


if __name__ == "__main__":
    unittest.main()

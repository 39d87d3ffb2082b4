"""Tests for pve module."""

from conftest import commands

from pvetemplate.pve import ProxmoxCLI, _option_args

QM_LIST = """      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID
       100 web                  running    2048              32.00 1234
      9000 ubuntu-22.04-template stopped    2048              20.00 0
"""


def test_option_args_skips_none_and_maps_bools():
    args = _option_args({"name": "tmpl", "tags": None, "agent": True, "onboot": False, "memory": 2048})
    assert args == ["--name", "tmpl", "--agent", "1", "--onboot", "0", "--memory", "2048"]


def test_create_vm(mock_runner):
    ProxmoxCLI(mock_runner).create_vm(9000, name="tmpl", memory=2048, net0="virtio,bridge=vmbr0")
    assert commands(mock_runner) == [
        ["qm", "create", "9000", "--name", "tmpl", "--memory", "2048", "--net0", "virtio,bridge=vmbr0"]
    ]


def test_vm_exists_uses_readonly_probe(mock_runner):
    mock_runner.responses[("qm", "status", "100")] = (2, "")
    assert ProxmoxCLI(mock_runner).vm_exists(100) is False
    assert mock_runner.run.call_args.kwargs == {"check": False, "readonly": True}


def test_id_in_use_checks_containers(mock_runner):
    mock_runner.responses[("qm", "status")] = (2, "")
    mock_runner.responses[("pct", "status")] = (0, "status: running")
    assert ProxmoxCLI(mock_runner).id_in_use(100)


def test_vm_status(mock_runner):
    mock_runner.responses[("qm", "status")] = (0, "status: running\n")
    assert ProxmoxCLI(mock_runner).vm_status(100) == "running"
    mock_runner.responses[("qm", "status")] = (2, "")
    assert ProxmoxCLI(mock_runner).vm_status(100) == "unknown"


def test_list_vms_parses_header(mock_runner):
    mock_runner.responses[("qm", "list")] = (0, QM_LIST)
    vms = ProxmoxCLI(mock_runner).list_vms()
    assert [vm["vmid"] for vm in vms] == ["100", "9000"]
    assert vms[1]["name"] == "ubuntu-22.04-template"
    assert vms[0]["status"] == "running"


def test_list_templates(mock_runner):
    mock_runner.responses[("qm", "list")] = (0, QM_LIST)
    mock_runner.responses[("qm", "config", "9000")] = (0, "name: ubuntu-22.04-template\ntemplate: 1\n")
    mock_runner.responses[("qm", "config", "100")] = (0, "name: web\n")
    templates = ProxmoxCLI(mock_runner).list_templates()
    assert [t["vmid"] for t in templates] == ["9000"]


def test_wait_for_vm_stopped(mock_runner):
    mock_runner.responses[("qm", "status")] = (0, "status: stopped")
    assert ProxmoxCLI(mock_runner).wait_for_vm_stopped(100, timeout=1)


def test_wait_for_vm_stopped_times_out(mock_runner):
    mock_runner.responses[("qm", "status")] = (0, "status: running")
    assert not ProxmoxCLI(mock_runner).wait_for_vm_stopped(100, timeout=0.05, interval=0.01)


def test_wait_for_vm_stopped_dry_run(dry_runner):
    assert ProxmoxCLI(dry_runner).wait_for_vm_stopped(100)
    dry_runner.run.assert_not_called()


def test_destroy_vm_purges(mock_runner):
    ProxmoxCLI(mock_runner).destroy_vm(100)
    assert commands(mock_runner) == [["qm", "destroy", "100", "--purge"]]


def test_storage_path(mock_runner):
    mock_runner.responses[("pvesm", "path")] = (0, "/dev/pve/vm-100-disk-0\n")
    assert ProxmoxCLI(mock_runner).storage_path("local-lvm:vm-100-disk-0") == "/dev/pve/vm-100-disk-0"
    mock_runner.responses[("pvesm", "path")] = (2, "")
    assert ProxmoxCLI(mock_runner).storage_path("local-lvm:vm-100-disk-0") == ""


def test_container_commands(mock_runner):
    cli = ProxmoxCLI(mock_runner)
    cli.create_container(200, "local:vztmpl/ubuntu.tar.zst", hostname="box", unprivileged=True)
    cli.container_exec(200, ["bash", "-c", "echo hi"])
    cli.push_file(200, "/tmp/a", "/srv/a")
    cli.destroy_container(200)
    assert commands(mock_runner) == [
        ["pct", "create", "200", "local:vztmpl/ubuntu.tar.zst", "--hostname", "box", "--unprivileged", "1"],
        ["pct", "exec", "200", "--", "bash", "-c", "echo hi"],
        ["pct", "push", "200", "/tmp/a", "/srv/a"],
        ["pct", "destroy", "200", "--purge"],
    ]

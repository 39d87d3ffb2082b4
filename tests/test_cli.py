"""Tests for the pve-template command line."""

from unittest import mock

import pytest
from typer.testing import CliRunner

from pvetemplate import __version__
from pvetemplate.cli import app
from pvetemplate.models import (
    InsufficientPermissionsError,
    InvalidParameterError,
    MissingDependencyError,
    TemplateResult,
)
from pvetemplate.preflight import BASE_TOOLS

cli_runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_cli():
    """Keep the CLI from reconfiguring logging or signal handlers during tests."""
    with mock.patch("pvetemplate.cli.configure_logging"), mock.patch("pvetemplate.cli.signal"):
        yield


@pytest.fixture
def builder():
    with mock.patch("pvetemplate.cli.TemplateBuilder") as builder_cls, \
            mock.patch("pvetemplate.cli.check_root") as check_root, \
            mock.patch("pvetemplate.cli.check_dependencies") as check_dependencies:
        instance = builder_cls.return_value
        instance.create.side_effect = lambda config: TemplateResult(
            name=config.template_name, vmid=config.vmid or 9000, success=True
        )
        instance.check_root = check_root
        instance.check_dependencies = check_dependencies
        yield instance


def test_version():
    result = cli_runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_no_arguments_starts_menu(mock_env, builder):
    with mock.patch("pvetemplate.cli.InteractiveMenu") as menu:
        result = cli_runner.invoke(app, [])
    assert result.exit_code == 0
    menu.return_value.run.assert_called_once_with()
    builder.create.assert_not_called()
    builder.check_root.assert_called_once()
    assert builder.check_dependencies.call_args.args[1] == BASE_TOOLS


def test_menu_not_started_without_root(mock_env, builder):
    builder.check_root.side_effect = InsufficientPermissionsError("run as root")
    with mock.patch("pvetemplate.cli.InteractiveMenu") as menu:
        result = cli_runner.invoke(app, [])
    assert result.exit_code == 4
    menu.assert_not_called()


class TestCreate:
    """Creating templates from flags."""

    def test_single_template(self, mock_env, builder):
        result = cli_runner.invoke(app, [
            "-d", "debian-12", "-n", "web", "--vmid", "9000",
            "-p", "curl,git", "-p", "vim", "--cores", "4", "--tag", "linux",
        ])

        assert result.exit_code == 0, result.output
        config = builder.create.call_args.args[0]
        assert config.distribution == "debian-12"
        assert config.name == "web"
        assert config.vmid == 9000
        assert config.cores == 4
        assert config.packages == ["curl", "git", "vim"]
        assert config.tags == ["linux"]
        builder.check_root.assert_called_once()
        assert "virt-customize" in builder.check_dependencies.call_args.args[1]

    def test_image_url_implies_custom(self, mock_env, builder):
        result = cli_runner.invoke(app, ["--image-url", "https://example.com/base.qcow2"])
        assert result.exit_code == 0, result.output
        config = builder.create.call_args.args[0]
        assert config.distribution == "custom"
        assert config.custom_image_url == "https://example.com/base.qcow2"

    def test_integration_flags(self, mock_env, builder):
        result = cli_runner.invoke(app, [
            "-d", "ubuntu-22.04",
            "--docker-template", "web", "--ansible-playbook", "site", "--ansible-var", "env=prod",
            "--enable-terraform", "--terraform-var", "vm_count=2", "--keep-containers",
        ])
        assert result.exit_code == 0, result.output
        config = builder.create.call_args.args[0]
        assert config.docker_enabled and config.docker_templates == ["web"]
        assert config.ansible_enabled and config.ansible_vars == {"env": "prod"}
        assert config.terraform_enabled and config.terraform_vars == {"vm_count": "2"}
        assert config.keep_containers

    def test_failed_template_exits_1(self, mock_env, builder):
        builder.create.side_effect = lambda config: TemplateResult(name="x", success=False, error="boom")
        result = cli_runner.invoke(app, ["-d", "debian-12"])
        assert result.exit_code == 1

    def test_invalid_parameter_exits_2(self, mock_env, builder):
        builder.create.side_effect = InvalidParameterError("bad value")
        result = cli_runner.invoke(app, ["-d", "debian-12"])
        assert result.exit_code == 2
        assert "bad value" in result.output

    def test_missing_dependency_exits_3(self, mock_env, builder):
        builder.check_dependencies.side_effect = MissingDependencyError("Missing required tools: qm")
        result = cli_runner.invoke(app, ["-d", "debian-12"])
        assert result.exit_code == 3
        builder.create.assert_not_called()

    def test_bad_key_value_exits_2(self, mock_env, builder):
        result = cli_runner.invoke(app, ["-d", "debian-12", "--ansible-var", "novalue"])
        assert result.exit_code == 2

    def test_bad_log_level(self, mock_env, builder):
        result = cli_runner.invoke(app, ["-d", "debian-12", "--log-level", "loud"])
        assert result.exit_code == 2

    def test_interrupt_exits_1(self, mock_env, builder):
        builder.create.side_effect = KeyboardInterrupt
        result = cli_runner.invoke(app, ["-d", "debian-12"])
        assert result.exit_code == 1
        assert "Interrupted" in result.output


class TestConfigFiles:
    """--config, --batch and --export-config."""

    def test_config_file_with_override(self, mock_env, builder, tmp_path):
        path = tmp_path / "web.conf"
        path.write_text('SELECTED_DISTRIBUTION="rocky-9"\nVM_MEMORY="4096"\n')
        result = cli_runner.invoke(app, ["--config", str(path), "--memory", "8192"])

        assert result.exit_code == 0, result.output
        config = builder.create.call_args.args[0]
        assert (config.distribution, config.memory) == ("rocky-9", 8192)

    def test_batch(self, mock_env, builder, tmp_path):
        path = tmp_path / "queue.conf"
        path.write_text('[web]\nSELECTED_DISTRIBUTION="debian-12"\n[db]\nSELECTED_DISTRIBUTION="rocky-9"\n')
        builder.create_batch.side_effect = lambda configs: [
            TemplateResult(name=c.template_name, success=True) for c in configs
        ]
        result = cli_runner.invoke(app, ["--batch", "--config", str(path), "--dry-run"])

        assert result.exit_code == 0, result.output
        configs = builder.create_batch.call_args.args[0]
        assert [c.name for c in configs] == ["web", "db"]
        builder.create.assert_not_called()

    def test_export_config(self, mock_env, builder, tmp_path):
        out = tmp_path / "exported.conf"
        result = cli_runner.invoke(app, ["-d", "debian-12", "-n", "web", "--export-config", str(out)])

        assert result.exit_code == 0, result.output
        assert 'VM_NAME="web"' in out.read_text()
        builder.create.assert_not_called()

    def test_missing_config_file(self, mock_env, builder, tmp_path):
        result = cli_runner.invoke(app, ["--config", str(tmp_path / "nope.conf")])
        assert result.exit_code == 2


class TestSubcommands:
    """Listing and generation commands."""

    def test_list_distributions(self):
        result = cli_runner.invoke(app, ["list-distributions", "--category", "debian"])
        assert result.exit_code == 0
        assert "debian-12" in result.output
        assert "Categories:" in result.output

    def test_list_distributions_unknown_category(self):
        result = cli_runner.invoke(app, ["list-distributions", "--category", "windows"])
        assert result.exit_code == 2

    def test_list_templates(self):
        with mock.patch("pvetemplate.cli.ProxmoxCLI") as cli:
            cli.return_value.list_templates.return_value = [{"vmid": "9000", "name": "ubuntu"}]
            result = cli_runner.invoke(app, ["list-templates"])
        assert result.exit_code == 0
        assert "9000" in result.output

    def test_list_templates_empty(self):
        with mock.patch("pvetemplate.cli.ProxmoxCLI") as cli:
            cli.return_value.list_templates.return_value = []
            result = cli_runner.invoke(app, ["list-templates"])
        assert "No templates found" in result.output

    def test_next_vmid(self):
        with mock.patch("pvetemplate.cli.VMIDAllocator") as allocator:
            allocator.return_value.next_available.return_value = 9005
            result = cli_runner.invoke(app, ["next-vmid"])
        assert result.exit_code == 0
        assert result.output.strip() == "9005"

    def test_generate_terraform(self, mock_env, tmp_path):
        out = tmp_path / "tf"
        result = cli_runner.invoke(app, ["-n", "base", "generate-terraform", "-o", str(out), "-m", "vm"])
        assert result.exit_code == 0, result.output
        assert (out / "modules" / "vm" / "main.tf").exists()
        assert not (out / "modules" / "network").exists()

    def test_generate_terraform_unknown_module(self, mock_env, tmp_path):
        result = cli_runner.invoke(app, ["generate-terraform", "-o", str(tmp_path), "-m", "dns"])
        assert result.exit_code == 2

    def test_generate_inventory(self, tmp_path):
        path = tmp_path / "inventory" / "proxmox.yml"
        result = cli_runner.invoke(app, ["generate-inventory", "-o", str(path)])
        assert result.exit_code == 0, result.output
        assert "community.general.proxmox" in path.read_text()

    def test_list_docker_templates(self, tmp_path):
        (tmp_path / "web.yml").write_text("services: {}\n")
        result = cli_runner.invoke(app, ["list-docker-templates", "--dir", str(tmp_path)])
        assert "web.yml" in result.output

    def test_list_k8s_templates_empty(self, tmp_path):
        result = cli_runner.invoke(app, ["list-k8s-templates", "--dir", str(tmp_path)])
        assert "No Kubernetes templates found" in result.output

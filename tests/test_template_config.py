"""Tests for template_config module."""

import pytest

from pvetemplate.models import InvalidParameterError, NetworkMode, UnknownDistributionError
from pvetemplate.template_config import (
    TemplateConfig,
    export_config,
    load_batch_file,
    load_config_file,
    parse_key_values,
    split_list,
    split_option_values,
)


class TestTemplateConfig:
    """Defaults, derived values and validation."""

    def test_defaults(self, mock_env):
        config = TemplateConfig()
        assert config.distribution == "ubuntu-22.04"
        assert config.template_name == "ubuntu-22.04-template"
        assert config.mode is NetworkMode.DHCP
        assert config.tags == ["template"]
        assert config.effective_terraform_modules == ["vm", "network"]

    def test_templates_imply_integration(self, mock_env):
        config = TemplateConfig(docker_templates=["web"], terraform_modules=["vm"])
        assert config.docker_enabled
        assert config.terraform_enabled
        assert not config.k8s_enabled

    def test_valid_config(self, mock_env):
        TemplateConfig(name="web-01", vmid=9000, packages=["curl"]).validate()

    @pytest.mark.parametrize("overrides,message", [
        ({"name": "bad name"}, "Invalid template name"),
        ({"vmid": 42}, "out of range"),
        ({"cores": 0}, "Cores"),
        ({"memory": 64}, "Memory"),
        ({"disk_size": "20GB"}, "disk size"),
        ({"disk_size": "512M"}, "at least 1G"),
        ({"storage": ""}, "Storage"),
        ({"vlan_tag": 5000}, "VLAN"),
        ({"network_mode": "bridge"}, "network mode"),
        ({"network_mode": "static"}, "STATIC_IP"),
        ({"network_mode": "static", "static_ip": "10.0.0.300/24"}, "static network"),
        ({"docker_enabled": True}, "Docker template"),
        ({"k8s_enabled": True}, "Kubernetes template"),
        ({"terraform_modules": ["vm", "dns"]}, "dns"),
        ({"distribution": "alpine-3.19", "packages": ["curl"]}, "package pre-installation"),
    ])
    def test_invalid_values(self, mock_env, overrides, message):
        with pytest.raises(InvalidParameterError, match=message):
            TemplateConfig(**overrides).validate()

    @pytest.mark.parametrize("size,spec,gib", [
        ("20", "20G", 20),
        ("20G", "20G", 20),
        ("1536M", "1536M", 2),
        ("1T", "1T", 1024),
    ])
    def test_disk_size_units(self, mock_env, size, spec, gib):
        config = TemplateConfig(disk_size=size)
        config.validate()
        assert config.disk_size_spec == spec
        assert config.disk_size_gib == gib

    def test_unknown_distribution(self, mock_env):
        with pytest.raises(UnknownDistributionError):
            TemplateConfig(distribution="plan9").validate()

    def test_static_network_ok(self, mock_env):
        TemplateConfig(network_mode="static", static_ip="10.0.0.5/24", gateway="10.0.0.1").validate()

    def test_custom_distribution(self, mock_env):
        config = TemplateConfig(
            distribution="custom",
            custom_image_url="https://example.com/base.qcow2",
            custom_package_manager="dnf",
            ci_user="admin",
        )
        dist = config.resolve_distribution()
        assert dist.package_manager == "dnf"
        assert config.cloud_user(dist) == "admin"

    def test_custom_requires_url(self, mock_env):
        with pytest.raises(InvalidParameterError, match="CUSTOM_IMAGE_URL"):
            TemplateConfig(distribution="custom").resolve_distribution()

    def test_checksum_applied_to_catalog_entry(self, mock_env):
        config = TemplateConfig(image_checksum="sha256:abc")
        assert config.resolve_distribution().checksum == "sha256:abc"

    def test_cloud_user_defaults_to_distribution(self, mock_env):
        assert TemplateConfig(distribution="debian-12").cloud_user() == "debian"

    def test_with_overrides_skips_unset(self, mock_env):
        config = TemplateConfig(cores=4)
        updated = config.with_overrides(cores=None, memory=4096, packages=[], name="x")
        assert updated.cores == 4
        assert updated.memory == 4096
        assert updated.name == "x"
        assert config.memory == 2048

    def test_with_overrides_accepts_display_name(self, mock_env):
        config = TemplateConfig().with_overrides(distribution="Debian 12 (Bookworm)|https://x|qcow2")
        assert config.distribution == "debian-12"


class TestValueParsing:
    """List and key=value helpers."""

    @pytest.mark.parametrize("raw,expected", [
        ("(curl git 'my pkg')", ["curl", "git", "my pkg"]),
        ("curl,git", ["curl", "git"]),
        ("curl git", ["curl", "git"]),
        ("()", []),
        ("", []),
    ])
    def test_split_list(self, raw, expected):
        assert split_list(raw) == expected

    def test_split_option_values(self):
        assert split_option_values(["curl,git", " vim ", ""]) == ["curl", "git", "vim"]
        assert split_option_values(None) == []

    def test_parse_key_values(self):
        assert parse_key_values(["a=1", "b=x=y"]) == {"a": "1", "b": "x=y"}
        with pytest.raises(InvalidParameterError):
            parse_key_values(["novalue"])


class TestConfigFiles:
    """KEY="value" files and batch queues."""

    def test_load_config_file(self, mock_env, tmp_path):
        path = tmp_path / "web.conf"
        path.write_text(
            '# comment\n'
            'SELECTED_DISTRIBUTION="debian-12"\n'
            'VM_NAME="web"\n'
            'VM_CORES="4"\n'
            'VMID_DEFAULT="auto"\n'
            'SELECTED_PACKAGES=(curl git)\n'
            'ANSIBLE_VARS=(env=prod tier=web)\n'
            'DOCKER_INTEGRATION="yes"\n'
            'DOCKER_TEMPLATES="nginx"\n'
            'UNKNOWN_KEY="ignored"\n'
        )
        config = load_config_file(path)
        assert config.distribution == "debian-12"
        assert config.name == "web"
        assert config.cores == 4
        assert config.vmid is None
        assert config.packages == ["curl", "git"]
        assert config.ansible_vars == {"env": "prod", "tier": "web"}
        assert config.docker_enabled
        assert config.docker_templates == ["nginx"]

    def test_load_config_file_bad_number(self, mock_env, tmp_path):
        path = tmp_path / "bad.conf"
        path.write_text('VM_MEMORY="lots"\n')
        with pytest.raises(InvalidParameterError, match="VM_MEMORY"):
            load_config_file(path)

    def test_load_config_file_missing(self, tmp_path):
        with pytest.raises(InvalidParameterError, match="not found"):
            load_config_file(tmp_path / "missing.conf")

    def test_export_then_load_keeps_values(self, mock_env, tmp_path):
        config = TemplateConfig(
            distribution="rocky-9",
            name="db",
            vmid=9100,
            packages=["postgresql", "my tool"],
            description='Has "quotes"',
            terraform_vars={"vm_count": "3"},
            network_mode="static",
            static_ip="10.0.0.5/24",
        )
        path = export_config(config, tmp_path / "out" / "db.conf")
        text = path.read_text()
        assert 'SELECTED_DISTRIBUTION="rocky-9"' in text
        assert "# Network Settings" in text

        assert load_config_file(path) == config

    def test_load_batch_file(self, mock_env, tmp_path):
        path = tmp_path / "queue.conf"
        path.write_text(
            'VM_MEMORY="4096"\n'
            '\n'
            '[web]\n'
            'SELECTED_DISTRIBUTION="ubuntu-24.04"\n'
            '\n'
            '[db]\n'
            'SELECTED_DISTRIBUTION="debian-12"\n'
            'VM_NAME="database"\n'
            'VM_MEMORY="8192"\n'
        )
        web, db = load_batch_file(path)
        assert (web.name, web.distribution, web.memory) == ("web", "ubuntu-24.04", 4096)
        assert (db.name, db.distribution, db.memory) == ("database", "debian-12", 8192)

    def test_load_batch_file_without_sections(self, mock_env, tmp_path):
        path = tmp_path / "single.conf"
        path.write_text('VM_NAME="solo"\n')
        assert [c.name for c in load_batch_file(path)] == ["solo"]

    def test_base_values_kept(self, mock_env, tmp_path):
        path = tmp_path / "partial.conf"
        path.write_text('VM_CORES="8"\n')
        config = load_config_file(path, base=TemplateConfig(memory=16384))
        assert (config.cores, config.memory) == (8, 16384)

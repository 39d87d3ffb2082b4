"""Tests for config module."""

from pvetemplate.config import Config, _getbool


def test_getbool(monkeypatch):
    monkeypatch.setenv("PVE_TEST_FLAG", "yes")
    assert _getbool("PVE_TEST_FLAG") is True
    monkeypatch.setenv("PVE_TEST_FLAG", "0")
    assert _getbool("PVE_TEST_FLAG") is False
    monkeypatch.delenv("PVE_TEST_FLAG")
    assert _getbool("PVE_TEST_FLAG", "true") is True


def test_template_tags_default(monkeypatch):
    monkeypatch.delenv("TEMPLATE_TAGS", raising=False)
    assert Config.template_tags() == ["template"]


def test_template_tags_from_env(monkeypatch):
    monkeypatch.setenv("TEMPLATE_TAGS", "template, ubuntu ,,cloud")
    assert Config.template_tags() == ["template", "ubuntu", "cloud"]

"""Tests for images module."""

import gzip
import hashlib
import os
from unittest import mock

import pytest
import requests

from conftest import make_runner

from pvetemplate.distributions import custom_distribution, get_distribution
from pvetemplate.images import ImageDownloadError, ImageManager, decompress, verify_checksum


@pytest.fixture
def image_dir(tmp_path):
    return str(tmp_path / "cache")


def _response(chunks):
    response = mock.MagicMock()
    response.__enter__.return_value = response
    response.iter_content.return_value = chunks
    return response


class TestDownload:
    """Image download and cache."""

    def test_download_streams_to_cache(self, image_dir):
        manager = ImageManager(make_runner(), image_dir=image_dir, retries=1)
        with mock.patch("pvetemplate.images.requests.get", return_value=_response([b"abc", b"", b"def"])) as get:
            path = manager.download(get_distribution("debian-12"))

        assert path.endswith("debian-12-generic-amd64.qcow2")
        with open(path, "rb") as f:
            assert f.read() == b"abcdef"
        assert get.call_args.kwargs["stream"] is True

    def test_cached_image_is_reused(self, image_dir):
        manager = ImageManager(make_runner(), image_dir=image_dir)
        dist = get_distribution("debian-12")
        os.makedirs(image_dir)
        with open(manager.cache_path(dist), "wb") as f:
            f.write(b"cached")
        with mock.patch("pvetemplate.images.requests.get") as get:
            assert manager.download(dist) == manager.cache_path(dist)
        get.assert_not_called()

    def test_retries_then_fails(self, image_dir):
        manager = ImageManager(make_runner(), image_dir=image_dir, retries=2)
        with mock.patch("pvetemplate.images.requests.get", side_effect=requests.ConnectionError("down")) as get, \
                mock.patch("pvetemplate.images.time.sleep") as sleep:
            with pytest.raises(ImageDownloadError, match="after 2 attempts"):
                manager.download(get_distribution("debian-12"))
        assert get.call_count == 2
        sleep.assert_called_once_with(2)

    def test_dry_run_skips_download(self, image_dir):
        manager = ImageManager(make_runner(dry_run=True), image_dir=image_dir)
        with mock.patch("pvetemplate.images.requests.get") as get:
            path = manager.download(get_distribution("freebsd-14"))
        get.assert_not_called()
        assert path.endswith("FreeBSD-14.0-RELEASE-amd64.qcow2")

    def test_file_url_is_copied(self, image_dir, tmp_path):
        source = tmp_path / "base.qcow2"
        source.write_bytes(b"local image")
        manager = ImageManager(make_runner(), image_dir=image_dir)
        path = manager.download(custom_distribution(f"file://{source}"))
        with open(path, "rb") as f:
            assert f.read() == b"local image"

    def test_missing_file_url(self, image_dir, tmp_path):
        manager = ImageManager(make_runner(), image_dir=image_dir)
        with pytest.raises(ImageDownloadError, match="not found"):
            manager.download(custom_distribution(f"file://{tmp_path}/missing.qcow2"))

    def test_remote_upload(self, image_dir, tmp_path):
        source = tmp_path / "base.raw"
        source.write_bytes(b"raw")
        runner = make_runner(is_remote=True)
        runner.exists.return_value = False
        path = ImageManager(runner, image_dir=image_dir).download(custom_distribution(f"file://{source}"))
        runner.put_file.assert_called_once_with(path, path)


def test_decompress_gzip(tmp_path):
    compressed = tmp_path / "disk.raw.gz"
    with gzip.open(compressed, "wb") as f:
        f.write(b"disk contents")
    target = decompress(str(compressed))
    assert target == str(tmp_path / "disk.raw")
    with open(target, "rb") as f:
        assert f.read() == b"disk contents"
    assert compressed.exists()


def test_decompress_corrupt(tmp_path):
    broken = tmp_path / "disk.raw.gz"
    broken.write_bytes(b"not gzip")
    with pytest.raises(ImageDownloadError, match="decompress"):
        decompress(str(broken))
    assert not (tmp_path / "disk.raw.part").exists()


def test_decompress_uncompressed_passthrough(tmp_path):
    assert decompress(str(tmp_path / "disk.qcow2")) == str(tmp_path / "disk.qcow2")


class TestChecksum:
    """Checksum verification."""

    def test_sha256_default(self, tmp_path):
        path = tmp_path / "img"
        path.write_bytes(b"data")
        verify_checksum(str(path), hashlib.sha256(b"data").hexdigest().upper())

    def test_prefixed_algorithm(self, tmp_path):
        path = tmp_path / "img"
        path.write_bytes(b"data")
        verify_checksum(str(path), "sha512:" + hashlib.sha512(b"data").hexdigest())

    def test_mismatch(self, tmp_path):
        path = tmp_path / "img"
        path.write_bytes(b"data")
        with pytest.raises(ImageDownloadError, match="mismatch"):
            verify_checksum(str(path), "sha256:" + "0" * 64)

    def test_unknown_algorithm(self, tmp_path):
        path = tmp_path / "img"
        path.write_bytes(b"data")
        with pytest.raises(ImageDownloadError, match="Unsupported"):
            verify_checksum(str(path), "crc99:abc")

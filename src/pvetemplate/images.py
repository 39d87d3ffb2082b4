"""Download and prepare distribution images."""

import bz2
import gzip
import hashlib
import logging
import lzma
import os
import shutil
import time
from typing import Optional
from urllib.parse import urlparse

import requests

from pvetemplate.command_runner import CommandRunner
from pvetemplate.config import Config
from pvetemplate.distributions import Distribution
from pvetemplate.models import TemplateCreatorError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192

_DECOMPRESSORS = {
    ".xz": lzma.open,
    ".gz": gzip.open,
    ".bz2": bz2.open,
}


class ImageDownloadError(TemplateCreatorError):
    """Raised when an image cannot be downloaded or verified."""

    pass


def compression_suffix(filename: str) -> Optional[str]:
    for suffix in _DECOMPRESSORS:
        if filename.endswith(suffix):
            return suffix
    return None


def decompress(path: str) -> str:
    """
    Decompress ``path`` next to itself, keeping the compressed file.

    Returns:
        Path of the decompressed image (``path`` itself when not compressed)
    """
    suffix = compression_suffix(path)
    if suffix is None:
        return path

    target = path[: -len(suffix)]
    if os.path.isfile(target):
        logger.info(f"Using previously decompressed image {target}")
        return target

    logger.info(f"📦 Decompressing {os.path.basename(path)}")
    partial = target + ".part"
    try:
        with _DECOMPRESSORS[suffix](path, "rb") as src, open(partial, "wb") as dst:
            shutil.copyfileobj(src, dst, CHUNK_SIZE * 128)
    except (OSError, EOFError, lzma.LZMAError) as e:
        if os.path.exists(partial):
            os.remove(partial)
        raise ImageDownloadError(f"Failed to decompress {path}: {e}")
    os.replace(partial, target)
    return target


def verify_checksum(path: str, checksum: str) -> None:
    """
    Check ``path`` against ``algorithm:hexdigest`` (sha256 when no prefix).

    Raises:
        ImageDownloadError: On mismatch or unknown algorithm
    """
    algorithm, _, expected = checksum.rpartition(":")
    algorithm = algorithm or "sha256"
    try:
        digest = hashlib.new(algorithm)
    except ValueError:
        raise ImageDownloadError(f"Unsupported checksum algorithm {algorithm!r}")

    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE * 128), b""):
            digest.update(chunk)

    if digest.hexdigest().lower() != expected.strip().lower():
        raise ImageDownloadError(f"Checksum mismatch for {os.path.basename(path)} ({algorithm})")
    logger.info(f"✅ Checksum verified for {os.path.basename(path)}")


class ImageManager:
    """Downloads distribution images into a local cache."""

    def __init__(self, runner: CommandRunner, image_dir: Optional[str] = None, retries: Optional[int] = None) -> None:
        self.runner = runner
        self.image_dir = image_dir or Config.IMAGE_DIR
        self.retries = retries or Config.MAX_RETRY_ATTEMPTS

    def cache_path(self, distribution: Distribution) -> str:
        return os.path.join(self.image_dir, distribution.filename)

    def download(self, distribution: Distribution) -> str:
        """
        Make the distribution image available where the Proxmox tools run.

        Returns:
            Path of the (decompressed) image on the command host

        Raises:
            ImageDownloadError: If every attempt fails or the checksum does not match
        """
        path = self.cache_path(distribution)
        if self.runner.dry_run:
            suffix = compression_suffix(path)
            final = path[: -len(suffix)] if suffix else path
            logger.info(f"[DRY RUN] Would download {distribution.url} → {path}")
            return final

        os.makedirs(self.image_dir, exist_ok=True)
        if os.path.isfile(path):
            logger.info(f"Image {distribution.filename} already cached. Skipping download.")
        else:
            self._fetch(distribution.url, path)

        if distribution.checksum:
            verify_checksum(path, distribution.checksum)

        image = decompress(path)
        if self.runner.is_remote and not self.runner.exists(image):
            self.runner.put_file(image, image)
        return image

    def _fetch(self, url: str, path: str) -> None:
        if url.startswith("file://"):
            source = urlparse(url).path
            if not os.path.isfile(source):
                raise ImageDownloadError(f"Local image not found: {source}")
            logger.info(f"Copying local image {source}")
            shutil.copyfile(source, path)
            return

        partial = path + ".part"
        for attempt in range(1, self.retries + 1):
            logger.info(f"⬇️  Downloading {url} (attempt {attempt}/{self.retries})")
            try:
                with requests.get(url, stream=True, timeout=60) as response:
                    response.raise_for_status()
                    with open(partial, "wb") as image_file:
                        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                            if chunk:
                                image_file.write(chunk)
                os.replace(partial, path)
                logger.info(f"Downloaded {os.path.basename(path)}.")
                return
            except (requests.RequestException, OSError) as e:
                logger.warning(f"Download failed: {e}")
                if os.path.exists(partial):
                    os.remove(partial)
                if attempt < self.retries:
                    time.sleep(2 ** attempt)

        raise ImageDownloadError(f"Failed to download {url} after {self.retries} attempts")

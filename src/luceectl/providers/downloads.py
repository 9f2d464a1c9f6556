"""Cached downloads shared by the runtime providers."""
from __future__ import annotations

import logging
import os
import tempfile
import zipfile
from pathlib import Path

import httpx

LOGGER = logging.getLogger(__name__)


class DownloadError(RuntimeError):
    """Raised when a runtime artifact cannot be downloaded or unpacked."""


def download_file(url: str, destination: Path, *, timeout: float = 120.0) -> Path:
    """Stream *url* into *destination* and return the path."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    LOGGER.info("Downloading %s", url)
    try:
        with httpx.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()
            with destination.open("wb") as handle:
                for chunk in response.iter_bytes():
                    handle.write(chunk)
    except httpx.HTTPStatusError as exc:
        raise DownloadError(
            f"Download of {url} failed with HTTP {exc.response.status_code}. "
            "Check the version in lucee.json."
        ) from exc
    except httpx.HTTPError as exc:
        raise DownloadError(f"Download of {url} failed: {exc}") from exc
    return destination


def safe_extract(archive: Path, target: Path) -> None:
    """Extract *archive* into *target*, refusing members that escape it."""
    root = target.resolve()
    try:
        with zipfile.ZipFile(archive) as bundle:
            for member in bundle.namelist():
                resolved = (root / member).resolve()
                if resolved != root and root not in resolved.parents:
                    raise DownloadError(f"Refusing to extract {member!r} outside {target}.")
            bundle.extractall(root)  # noqa: S202 - members validated above
    except zipfile.BadZipFile as exc:
        raise DownloadError(f"{archive.name} is not a valid zip archive: {exc}") from exc


def ensure_lucee_jar(
    cache_dir: Path,
    version: str,
    *,
    url_template: str = "https://cdn.lucee.org/lucee-{version}.jar",
    timeout: float = 120.0,
) -> Path:
    """Return ``<cache_dir>/lucee-<version>.jar``, downloading it once."""
    target = cache_dir / f"lucee-{version}.jar"
    if target.is_file():
        return target
    cache_dir.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(cache_dir), prefix=f".{target.name}.")
    os.close(tmp_fd)
    tmp_path = Path(tmp_name)
    try:
        download_file(url_template.format(version=version), tmp_path, timeout=timeout)
        if not zipfile.is_zipfile(tmp_path):
            raise DownloadError(f"Downloaded lucee-{version}.jar is not a valid jar archive.")
        os.replace(tmp_path, target)
    finally:
        tmp_path.unlink(missing_ok=True)
    return target


__all__ = ["DownloadError", "download_file", "ensure_lucee_jar", "safe_extract"]

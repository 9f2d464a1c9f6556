"""Lucee Express runtime: a cached Tomcat+Lucee distribution per version.

Distributions are downloaded once into ``<express_dir>/<version>`` and shared
by every instance. Downloads land in a staging directory beside the target
and are moved into place only after extraction succeeds, so an interrupted
download never leaves a half-populated cache entry behind.
"""
from __future__ import annotations

import logging
import shutil
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .downloads import DownloadError, download_file, safe_extract
from .runtime import MaterializeContext, RunnableInstance, RuntimeProvider, RuntimeValidationError
from .tomcat import catalina_runnable

LOGGER = logging.getLogger(__name__)

CATALINA_SCRIPT = Path("bin") / "catalina.sh"


@dataclass(frozen=True)
class ExpressInstaller:
    """Download and cache Lucee Express distributions."""

    install_root: Path
    url_template: str = "https://cdn.lucee.org/lucee-express-{version}.zip"
    timeout: float = 120.0

    def path_for(self, version: str) -> Path:
        """Return the cache directory for *version*."""
        return self.install_root / version

    def is_installed(self, version: str) -> bool:
        """Return True when *version* is already cached and usable."""
        return (self.path_for(version) / CATALINA_SCRIPT).is_file()

    def ensure(self, version: str) -> Path:
        """Return the cached distribution for *version*, downloading it if needed."""
        normalized = version.strip()
        if not normalized:
            raise RuntimeValidationError("Lucee version must be a non-empty string.")
        target = self.path_for(normalized)
        if self.is_installed(normalized):
            return target
        if target.exists():
            raise DownloadError(
                f"{target} exists but does not contain {CATALINA_SCRIPT}. "
                "Remove it to allow a fresh download."
            )

        self.install_root.mkdir(parents=True, exist_ok=True)
        staging = Path(
            tempfile.mkdtemp(prefix=f"luceectl-express-{normalized}-", dir=str(self.install_root))
        )
        try:
            archive = download_file(
                self.url_template.format(version=normalized),
                staging / "express.zip",
                timeout=self.timeout,
            )
            unpacked = staging / "dist"
            safe_extract(archive, unpacked)
            archive.unlink()
            root = _distribution_root(unpacked)
            if not (root / CATALINA_SCRIPT).is_file():
                raise DownloadError(
                    f"Lucee Express {normalized} archive has no {CATALINA_SCRIPT}."
                )
            _make_scripts_executable(root / "bin")
            shutil.move(str(root), str(target))
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        LOGGER.info("Installed Lucee Express %s into %s", normalized, target)
        return target


def materialize(provider: RuntimeProvider, context: MaterializeContext) -> RunnableInstance:
    """Prepare an instance backed by the cached Lucee Express distribution."""
    runtime = context.settings.runtime
    install_path = provider.option("installPath")
    if install_path:
        home = Path(install_path).expanduser()
        if not (home / CATALINA_SCRIPT).is_file():
            raise RuntimeValidationError(
                f"runtime.installPath {home} does not contain {CATALINA_SCRIPT}."
            )
    else:
        installer = ExpressInstaller(
            install_root=context.settings.express_dir,
            url_template=runtime.express_url,
            timeout=runtime.download_timeout,
        )
        home = installer.ensure(context.config.version)
    return catalina_runnable(home, context)


def _distribution_root(unpacked: Path) -> Path:
    children = [child for child in unpacked.iterdir() if not child.name.startswith(".")]
    if len(children) == 1 and children[0].is_dir() and not (unpacked / "bin").exists():
        return children[0]
    return unpacked


def _make_scripts_executable(bin_dir: Path) -> None:
    if not bin_dir.is_dir():
        return
    for script in bin_dir.glob("*.sh"):
        mode = script.stat().st_mode
        script.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


__all__ = ["ExpressInstaller", "materialize"]

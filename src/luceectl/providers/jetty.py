"""Experimental Jetty runtime.

The instance directory becomes ``JETTY_BASE``. Lucee runs as the root web
application through a generated context descriptor, and the Lucee jar is
loaded from ``lib/ext``. URL rewriting is not available on this runtime.
"""
from __future__ import annotations

import logging
import re
import secrets
import shutil
from collections.abc import Mapping
from pathlib import Path

from ..artifacts import ArtifactPlan, build_cfconfig, jvm_options, patch_web_xml
from ..templates import write_if_changed
from .downloads import ensure_lucee_jar
from .runtime import (
    MaterializeContext,
    RunnableInstance,
    RuntimeCommandError,
    RuntimeProvider,
    RuntimeValidationError,
    lucee_major,
    run_tool,
)

LOGGER = logging.getLogger(__name__)

STOP_KEY_FILE = "jetty.stopkey"
VERSION_PATTERNS = (
    re.compile(r"jetty-server-(\d+)\.\d+"),
    re.compile(r"(?:Jetty|jetty)[^\d]*(\d+)\.\d+\.\d+"),
)
LEGACY_MODULES = ("server", "http", "deploy", "ext", "resources")
EE10_MODULES = ("server", "http", "ee10-deploy", "ext", "resources")


def resolve_jetty_home(provider: RuntimeProvider, environ: Mapping[str, str]) -> Path:
    """Return ``runtime.jettyHome``, falling back to ``JETTY_HOME``."""
    configured = provider.option("jettyHome") or (environ.get("JETTY_HOME") or "").strip()
    if not configured:
        raise RuntimeValidationError(
            "runtime.type is 'jetty' but no Jetty installation was given. Set "
            "runtime.jettyHome in lucee.json or export JETTY_HOME."
        )
    return Path(configured).expanduser()


def validate_jetty_home(home: Path) -> None:
    """Check that *home* looks like a Jetty distribution."""
    if not (home / "start.jar").is_file():
        raise RuntimeValidationError(
            f"start.jar not found in {home}. Point runtime.jettyHome at a Jetty distribution."
        )
    for child in ("lib", "modules"):
        if not (home / child).is_dir():
            raise RuntimeValidationError(
                f"JETTY_HOME/{child} not found: {home / child}. This does not appear to be "
                "a valid Jetty distribution."
            )


def detect_jetty_major(home: Path, java_bin: str, environ: Mapping[str, str]) -> int | None:
    """Return Jetty's major version from ``java -jar start.jar --version``."""
    try:
        result = run_tool(
            [java_bin, "-jar", str(home / "start.jar"), "--version"],
            error_prefix="start.jar --version",
            guidance="Install a JDK or set runtime.java_bin in settings.yml.",
            env=dict(environ),
            cwd=home,
            timeout=60,
        )
    except RuntimeCommandError as exc:
        LOGGER.warning("Could not detect Jetty version: %s", exc)
        return None
    output = f"{result.stdout or ''}\n{result.stderr or ''}"
    for pattern in VERSION_PATTERNS:
        match = pattern.search(output)
        if match is not None:
            return int(match.group(1))
    return None


def check_compatibility(jetty_major: int | None, lucee_version: str) -> None:
    """Reject Lucee/Jetty pairs whose servlet APIs differ."""
    major = lucee_major(lucee_version)
    if jetty_major is None or major is None:
        return
    if jetty_major >= 12 and major < 7:
        raise RuntimeValidationError(
            f"Lucee {lucee_version} is not compatible with Jetty {jetty_major}: Jetty 12 "
            "serves jakarta.servlet applications and needs Lucee 7.x."
        )
    if jetty_major < 12 and major >= 7:
        raise RuntimeValidationError(
            f"Lucee {lucee_version} is not compatible with Jetty {jetty_major}: Lucee 7.x "
            "needs Jetty 12 or newer."
        )


def stop_key(instance_dir: Path) -> str:
    """Return the instance's ``STOP.KEY``, creating it on first use."""
    path = instance_dir / STOP_KEY_FILE
    if path.exists():
        return path.read_text(encoding="utf-8").strip()
    key = f"luceectl-{secrets.token_hex(4)}"
    path.parent.mkdir(parents=True, exist_ok=True)
    write_if_changed(path, key + "\n", mode=0o600)
    return key


def read_stop_key(instance_dir: Path) -> str | None:
    """Return the stored ``STOP.KEY`` without creating one."""
    path = instance_dir / STOP_KEY_FILE
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8").strip() or None


def materialize(provider: RuntimeProvider, context: MaterializeContext) -> RunnableInstance:
    """Prepare ``JETTY_BASE`` and the ``start.jar`` launch."""
    config = context.config
    home = resolve_jetty_home(provider, context.environ)
    validate_jetty_home(home)
    java_bin = context.settings.runtime.java_bin
    jetty_major = detect_jetty_major(home, java_bin, context.environ)
    check_compatibility(jetty_major, config.version)

    warnings: list[str] = []
    if jetty_major is None:
        warnings.append("Skipping Lucee/Jetty compatibility check (Jetty version unknown).")
    if config.https.enabled:
        warnings.append("HTTPS is not configured on the Jetty runtime; only HTTP is served.")

    base = context.instance_dir
    for child in ("start.d", "webapps", "etc", "logs", "lib/ext",
                  "lucee-server/context", "lucee-web"):
        (base / child).mkdir(parents=True, exist_ok=True)

    runtime = context.settings.runtime
    jar = ensure_lucee_jar(
        context.settings.home / "jars",
        config.version,
        url_template=runtime.lucee_jar_url,
        timeout=runtime.download_timeout,
    )
    deployed = base / "lib" / "ext" / jar.name
    changed: list[Path] = []
    if not deployed.exists():
        shutil.copyfile(jar, deployed)
        changed.append(deployed)

    ee10 = jetty_major is not None and jetty_major >= 12
    templates = context.templates
    descriptor = base / "etc" / "lucee-web.xml"
    vendor_web = templates.render_to_string("jetty/web.xml.j2", {}).encode("utf-8")
    outputs = {
        base / "start.d" / "luceectl.ini": templates.render_to_string(
            "jetty/luceectl.ini.j2",
            {
                "name": config.name,
                "modules": EE10_MODULES if ee10 else LEGACY_MODULES,
                "http_port": context.ports.http,
                "bind_host": context.settings.ports.bind_host,
            },
        ),
        base / "webapps" / "ROOT.xml": templates.render_to_string(
            "jetty/lucee-context.xml.j2",
            {
                "name": config.name,
                "context_class": (
                    "org.eclipse.jetty.ee10.webapp.WebAppContext"
                    if ee10
                    else "org.eclipse.jetty.webapp.WebAppContext"
                ),
                "webroot": str(config.webroot_path),
                "descriptor": str(descriptor),
            },
        ),
        descriptor: patch_web_xml(vendor_web, config).decode("utf-8"),
    }
    cfconfig = build_cfconfig(config)
    if cfconfig is not None:
        outputs[base / "lucee-server" / "context" / ".CFConfig.json"] = cfconfig
    for path, content in outputs.items():
        if write_if_changed(path, content):
            changed.append(path)

    plan = ArtifactPlan(
        config=config, ports=context.ports, instance_dir=base, url_rewrite=context.url_rewrite
    )
    key = stop_key(base)
    command = (
        java_bin,
        *jvm_options(plan),
        "-jar",
        str(home / "start.jar"),
        f"jetty.home={home}",
        f"jetty.base={base}",
        f"STOP.PORT={context.ports.shutdown}",
        f"STOP.KEY={key}",
    )
    env = dict(context.environ)
    env.update({"JETTY_HOME": str(home), "JETTY_BASE": str(base)})
    if config.admin.password:
        env["LUCEE_ADMIN_PASSWORD"] = config.admin.password

    return RunnableInstance(
        command=command,
        env=env,
        cwd=base,
        log_file=base / "logs" / "server.out",
        warnings=tuple(warnings),
        changed=tuple(changed),
    )


__all__ = [
    "check_compatibility",
    "detect_jetty_major",
    "materialize",
    "read_stop_key",
    "resolve_jetty_home",
    "stop_key",
    "validate_jetty_home",
]

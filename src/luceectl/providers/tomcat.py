"""External Tomcat runtime and the CATALINA_BASE launch shared with Lucee Express.

Instances never modify the Tomcat installation: everything generated lives
in the instance directory, which becomes ``CATALINA_BASE`` while the
installation stays ``CATALINA_HOME``.
"""
from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path

from ..artifacts import ArtifactPlan, apply_catalina_base, jvm_options
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

VERSION_PATTERN = re.compile(r"Server version:\s*Apache Tomcat/(\d+)\.\d+")
LUCEE_JAR_PATTERN = re.compile(r"lucee(-light|-zero)?-.*\.jar$")


def resolve_catalina_home(provider: RuntimeProvider, environ: Mapping[str, str]) -> Path:
    """Return ``runtime.catalinaHome``, falling back to ``CATALINA_HOME``."""
    configured = provider.option("catalinaHome") or (environ.get("CATALINA_HOME") or "").strip()
    if not configured:
        raise RuntimeValidationError(
            "runtime.type is 'tomcat' but no Tomcat installation was given. Set "
            "runtime.catalinaHome in lucee.json or export CATALINA_HOME."
        )
    return Path(configured).expanduser()


def validate_catalina_home(home: Path) -> None:
    """Check that *home* looks like a Tomcat installation."""
    if not home.exists():
        raise RuntimeValidationError(
            f"CATALINA_HOME does not exist: {home}. Point runtime.catalinaHome at a "
            "valid Tomcat installation."
        )
    for child in ("bin", "lib"):
        if not (home / child).is_dir():
            raise RuntimeValidationError(
                f"CATALINA_HOME/{child} not found: {home / child}. This does not appear "
                "to be a valid Tomcat installation."
            )
    if not (home / "bin" / "catalina.sh").is_file():
        raise RuntimeValidationError(
            f"Tomcat startup script not found: {home / 'bin' / 'catalina.sh'}."
        )


def detect_tomcat_major(home: Path, environ: Mapping[str, str]) -> int | None:
    """Return Tomcat's major version from ``catalina.sh version``, or ``None``."""
    env = dict(environ)
    env["CATALINA_HOME"] = str(home)
    try:
        result = run_tool(
            [str(home / "bin" / "catalina.sh"), "version"],
            error_prefix="catalina.sh version",
            env=env,
            timeout=30,
        )
    except (RuntimeCommandError, RuntimeValidationError) as exc:
        LOGGER.warning("Could not detect Tomcat version: %s", exc)
        return None
    match = VERSION_PATTERN.search(result.stdout or "")
    if match is None:
        LOGGER.warning("Could not parse Tomcat version from catalina.sh output.")
        return None
    return int(match.group(1))


def check_compatibility(tomcat_major: int | None, lucee_version: str) -> None:
    """Reject Lucee/Tomcat pairs whose servlet APIs differ."""
    if tomcat_major is None:
        return
    major = lucee_major(lucee_version)
    if major is None:
        return
    if tomcat_major >= 10 and major < 7:
        raise RuntimeValidationError(
            f"Lucee {lucee_version} is not compatible with Tomcat {tomcat_major}: Tomcat 10+ "
            "uses jakarta.servlet and needs Lucee 7.x. Set \"version\" to a 7.x release "
            "in lucee.json or point runtime.catalinaHome at a Tomcat 9 installation."
        )
    if tomcat_major < 10 and major >= 7:
        raise RuntimeValidationError(
            f"Lucee {lucee_version} is not compatible with Tomcat {tomcat_major}: Lucee 7.x "
            "uses jakarta.servlet and needs Tomcat 10+. Point runtime.catalinaHome at "
            "Tomcat 10 or newer, or use a 6.x Lucee version."
        )


def deploy_lucee_jar(jar: Path, instance_dir: Path) -> list[str]:
    """Copy *jar* into ``CATALINA_BASE/lib`` and return warnings about other Lucee jars."""
    lib_dir = instance_dir / "lib"
    lib_dir.mkdir(parents=True, exist_ok=True)
    target = lib_dir / jar.name
    others = sorted(
        path.name
        for path in lib_dir.iterdir()
        if path.name != jar.name and LUCEE_JAR_PATTERN.match(path.name)
    )
    if not target.exists():
        shutil.copyfile(jar, target)
    if others:
        return [f"Other Lucee jars found in {lib_dir}: {', '.join(others)}. Remove them."]
    return []


def catalina_runnable(
    catalina_home: Path,
    context: MaterializeContext,
    *,
    warnings: list[str] | None = None,
) -> RunnableInstance:
    """Write the instance CATALINA_BASE and describe the ``catalina.sh run`` launch."""
    config = context.config
    plan = ArtifactPlan(
        config=config,
        ports=context.ports,
        instance_dir=context.instance_dir,
        url_rewrite=context.url_rewrite,
    )
    if context.keystore is not None:
        plan = replace(
            plan,
            keystore_file=context.keystore.keystore,
            keystore_password=context.keystore.password,
        )
    changed = apply_catalina_base(plan, catalina_home, context.templates)

    env = dict(context.environ)
    env.update(
        {
            "CATALINA_HOME": str(catalina_home),
            "CATALINA_BASE": str(context.instance_dir),
            "CATALINA_OPTS": " ".join(jvm_options(plan)),
            "CATALINA_TMPDIR": str(context.instance_dir / "temp"),
        }
    )
    if config.admin.password:
        env["LUCEE_ADMIN_PASSWORD"] = config.admin.password

    return RunnableInstance(
        command=(str(catalina_home / "bin" / "catalina.sh"), "run"),
        env=env,
        cwd=context.instance_dir,
        log_file=context.instance_dir / "logs" / "server.out",
        warnings=tuple(warnings or ()),
        changed=tuple(changed),
    )


def materialize(provider: RuntimeProvider, context: MaterializeContext) -> RunnableInstance:
    """Prepare an instance on an external Tomcat installation."""
    home = resolve_catalina_home(provider, context.environ)
    validate_catalina_home(home)
    warnings: list[str] = []
    tomcat_major = detect_tomcat_major(home, context.environ)
    if tomcat_major is None:
        warnings.append("Skipping Lucee/Tomcat compatibility check (Tomcat version unknown).")
    check_compatibility(tomcat_major, context.config.version)

    runtime = context.settings.runtime
    jar = ensure_lucee_jar(
        context.settings.home / "jars",
        context.config.version,
        url_template=runtime.lucee_jar_url,
        timeout=runtime.download_timeout,
    )
    warnings.extend(deploy_lucee_jar(jar, context.instance_dir))
    return catalina_runnable(home, context, warnings=warnings)


__all__ = [
    "catalina_runnable",
    "check_compatibility",
    "deploy_lucee_jar",
    "detect_tomcat_major",
    "materialize",
    "resolve_catalina_home",
    "validate_catalina_home",
]

"""Dry-run previews of everything ``start`` would generate.

The previewer runs the read-only half of the start pipeline and renders the
artifacts in memory with the same pure patch functions ``start`` uses. It
never writes the registry, the lock file or an instance directory.
"""
from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .artifacts import (
    ArtifactPlan,
    build_cfconfig,
    patch_server_xml,
    patch_web_xml,
    read_project_rules,
    render_rewrite_config,
    vendor_bytes,
)
from .certs import keystore_paths
from .instance_config import DEFAULT_CONFIG_NAME, StartOverrides
from .lifecycle import InstanceLifecycle, InstancePlan
from .providers import RuntimeKind

SECTION_LUCEE = "lucee"
SECTION_SERVER_XML = "tomcat-server"
SECTION_WEB_XML = "tomcat-web"
SECTION_KEYSTORE = "https-keystore"
SECTION_REDIRECT = "https-redirect"
ALL_SECTIONS = (
    SECTION_LUCEE,
    SECTION_SERVER_XML,
    SECTION_WEB_XML,
    SECTION_KEYSTORE,
    SECTION_REDIRECT,
)

SECTION_TITLES = {
    SECTION_LUCEE: "Lucee server configuration (.CFConfig.json)",
    SECTION_SERVER_XML: "Tomcat server.xml",
    SECTION_WEB_XML: "Tomcat web.xml",
    SECTION_KEYSTORE: "HTTPS keystore plan",
    SECTION_REDIRECT: "Rewrite rules (rewrite.config)",
}


@dataclass(frozen=True)
class PreviewSection:
    """One rendered preview block."""

    name: str
    title: str
    content: str
    language: str = "text"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "title": self.title, "language": self.language,
                "content": self.content}


@dataclass(frozen=True)
class PreviewReport:
    """Everything ``start --dry-run`` shows."""

    name: str
    environment: str | None
    instance_dir: Path
    runtime: str
    ports: dict[str, object]
    effective_config: dict[str, object]
    sections: tuple[PreviewSection, ...] = ()
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "environment": self.environment,
            "instance_dir": str(self.instance_dir),
            "runtime": self.runtime,
            "ports": dict(self.ports),
            "effective_config": self.effective_config,
            "sections": [section.to_dict() for section in self.sections],
            "warnings": list(self.warnings),
        }


def normalize_sections(requested: Iterable[str]) -> list[str]:
    """Expand ``all`` and drop duplicates while keeping the canonical order."""
    wanted = {item.strip().lower() for item in requested if item.strip()}
    if "all" in wanted:
        return list(ALL_SECTIONS)
    unknown = wanted - set(ALL_SECTIONS)
    if unknown:
        allowed = ", ".join((*ALL_SECTIONS, "all"))
        listed = ", ".join(sorted(unknown))
        raise ValueError(f"Unknown preview section(s): {listed}. Allowed: {allowed}.")
    return [name for name in ALL_SECTIONS if name in wanted]


class DryRunPreviewer:
    """Render start previews from a lifecycle's components."""

    def __init__(self, lifecycle: InstanceLifecycle) -> None:
        """Reuse the lifecycle's settings, registry, allocator and templates."""
        self.lifecycle = lifecycle

    def preview(
        self,
        project_dir: Path,
        env_key: str | None = None,
        sections: Iterable[str] = (),
        *,
        config_name: str = DEFAULT_CONFIG_NAME,
        overrides: StartOverrides | None = None,
    ) -> PreviewReport:
        """Return the preview report for *project_dir*."""
        plan = self.lifecycle.plan(
            project_dir, env_key, config_name=config_name, overrides=overrides
        )
        warnings = list(plan.warnings)
        if plan.drift is not None:
            warnings.append(plan.drift.message)
        if plan.provider.kind is RuntimeKind.DOCKER:
            warnings.append("Tomcat artifacts are not generated for the docker runtime.")

        artifact_plan = self._artifact_plan(plan)
        rendered = [
            self._render(name, plan, artifact_plan) for name in normalize_sections(sections)
        ]
        return PreviewReport(
            name=plan.name,
            environment=plan.config.environment,
            instance_dir=plan.instance_dir,
            runtime=plan.provider.kind.value,
            ports=plan.ports.to_dict(),
            effective_config=plan.config.to_dict(),
            sections=tuple(rendered),
            warnings=tuple(warnings),
        )

    # ------------------------------------------------------------------
    def _artifact_plan(self, plan: InstancePlan) -> ArtifactPlan:
        keystore, _ = keystore_paths(plan.instance_dir)
        return ArtifactPlan(
            config=plan.config,
            ports=plan.ports,
            instance_dir=plan.instance_dir,
            keystore_file=keystore,
            url_rewrite=plan.url_rewrite,
        )

    def _render(self, name: str, plan: InstancePlan, artifact_plan: ArtifactPlan) -> PreviewSection:
        templates = self.lifecycle.templates
        title = SECTION_TITLES[name]
        if name == SECTION_LUCEE:
            content = build_cfconfig(plan.config)
            if content is None:
                return PreviewSection(name, title, "No embedded Lucee configuration.")
            return PreviewSection(name, title, content, "json")
        if name == SECTION_SERVER_XML:
            vendor = vendor_bytes(
                self._vendor_home(plan), "conf/server.xml", templates, "tomcat/server.xml.j2"
            )
            return PreviewSection(
                name, title, patch_server_xml(vendor, artifact_plan).decode("utf-8"), "xml"
            )
        if name == SECTION_WEB_XML:
            vendor = vendor_bytes(
                self._vendor_home(plan), "conf/web.xml", templates, "tomcat/web.xml.j2"
            )
            return PreviewSection(
                name, title, patch_web_xml(vendor, plan.config).decode("utf-8"), "xml"
            )
        if name == SECTION_KEYSTORE:
            if not plan.uses_tls:
                return PreviewSection(name, title, "HTTPS is disabled; no keystore is needed.")
            keystore_plan = self.lifecycle.certificates.plan_keystore(
                plan.instance_dir, plan.config.host
            )
            return PreviewSection(
                name, title, json.dumps(keystore_plan.to_dict(), indent=2), "json"
            )
        rules = render_rewrite_config(templates, artifact_plan, read_project_rules(plan.config))
        if rules is None:
            return PreviewSection(name, title, "No rewrite rules are generated.")
        return PreviewSection(name, title, rules)

    def _vendor_home(self, plan: InstancePlan) -> Path | None:
        """Return the installation whose vendor files would be patched, if present."""
        settings = self.lifecycle.settings
        environ: Mapping[str, str] = self.lifecycle.environ
        provider = plan.provider
        if provider.kind is RuntimeKind.EXPRESS:
            install_path = provider.option("installPath")
            if install_path:
                return Path(install_path).expanduser()
            return settings.express_dir / plan.config.version
        if provider.kind is RuntimeKind.TOMCAT:
            home = provider.option("catalinaHome") or environ.get("CATALINA_HOME", "").strip()
            return Path(home).expanduser() if home else None
        return None


__all__ = [
    "ALL_SECTIONS",
    "DryRunPreviewer",
    "PreviewReport",
    "PreviewSection",
    "normalize_sections",
]

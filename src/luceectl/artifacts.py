"""Idempotent patching of Tomcat configuration artifacts.

Every toggle is an independent *ensure* function over a parsed
:mod:`xml.etree.ElementTree` document. Elements are located by a structural
predicate (``scheme="https"``, a servlet name, a url-pattern) and updated in
place, so patching an already patched document converges instead of
duplicating elements.

``patch_server_xml`` and ``patch_web_xml`` are pure (bytes in, bytes out) so
dry-run previews reuse them unchanged. :func:`apply_catalina_base` is the
only function here that writes to disk.
"""
from __future__ import annotations

import json
import logging
import shutil
import xml.etree.ElementTree as ET  # noqa: S405 - parses local vendor files only
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .instance_config import EffectiveConfig
from .state.registry import PortAssignment
from .templates import TemplateEngine, write_if_changed

LOGGER = logging.getLogger(__name__)

XML_HEADER = '<?xml version="1.0" encoding="UTF-8"?>\n'
DRY_RUN_PASSWORD = "<stored in certs/keystore.pass>"
CONFIG_FILE_PATTERN = "/lucee.json"
CONFIG_RESOURCE_NAME = "LuCLI configuration"
ADMIN_PATTERN = "/lucee/admin/*"
ADMIN_RESOURCE_NAME = "Lucee administrator"
REST_PATTERN = "/rest/*"
CFML_SERVLET = "CFMLServlet"
REST_SERVLET = "RESTServlet"
CFML_PATTERNS = ("*.cfm", "*.cfml", "*.cfc", "/index.cfm/*", "/index.cfc/*", "/index.cfml/*")
REWRITE_VALVE = "org.apache.catalina.valves.rewrite.RewriteValve"
HTTPS_PROTOCOL = "org.apache.coyote.http11.Http11NioProtocol"
HTTP_PROTOCOLS = {"", "HTTP/1.1", HTTPS_PROTOCOL}
TLS_PROTOCOLS = "TLSv1.2,TLSv1.3"
KEY_ALIAS = "lucli"

VENDOR_CONF_FILES = (
    "catalina.properties",
    "catalina.policy",
    "context.xml",
    "tomcat-users.xml",
    "jaspic-providers.xml",
    "logging.properties",
)


class ArtifactError(RuntimeError):
    """Raised when a configuration artifact cannot be parsed or generated."""


@dataclass(frozen=True)
class ArtifactPlan:
    """Inputs shared by every artifact generated for one instance."""

    config: EffectiveConfig
    ports: PortAssignment
    instance_dir: Path
    keystore_file: Path | None = None
    keystore_password: str = DRY_RUN_PASSWORD
    url_rewrite: bool = True

    @property
    def redirect_enabled(self) -> bool:
        """Return True when plain HTTP should redirect to HTTPS."""
        return self.config.https.enabled and self.config.https.redirect and bool(self.ports.https)

    @property
    def rewrite_rules_enabled(self) -> bool:
        """Return True when the RewriteValve has any rules to apply."""
        return self.url_rewrite or self.redirect_enabled


# ----------------------------------------------------------------------
# XML plumbing
# ----------------------------------------------------------------------
def parse_xml(data: bytes, label: str) -> ET.Element:
    """Parse *data*, keeping comments, or raise :class:`ArtifactError`."""
    parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True))  # noqa: S314
    try:
        return ET.fromstring(data, parser=parser)  # noqa: S314
    except ET.ParseError as exc:
        raise ArtifactError(f"Failed to parse {label}: {exc}") from exc


def serialize_xml(root: ET.Element) -> bytes:
    """Return *root* as indented UTF-8 bytes with an XML declaration."""
    ET.indent(root, space="  ")
    namespace = _namespace(root)
    if namespace:
        # Keep the descriptor's namespace as the default instead of ns0:.
        ET.register_namespace("", namespace)
    body = ET.tostring(root, encoding="unicode")
    return (XML_HEADER + body + "\n").encode("utf-8")


def _namespace(root: ET.Element) -> str:
    if isinstance(root.tag, str) and root.tag.startswith("{"):
        return root.tag[1:].split("}", 1)[0]
    return ""


def _q(ns: str, tag: str) -> str:
    return f"{{{ns}}}{tag}" if ns else tag


def _children(parent: ET.Element, tag: str) -> Iterator[ET.Element]:
    return (child for child in list(parent) if child.tag == tag)


def _insert_after_last(parent: ET.Element, element: ET.Element, tag: str,
                       *, before: str | None = None) -> None:
    children = list(parent)
    index = None
    for position, child in enumerate(children):
        if child.tag == tag:
            index = position + 1
    if index is None and before is not None:
        for position, child in enumerate(children):
            if child.tag == before:
                index = position
                break
    if index is None:
        parent.append(element)
    else:
        parent.insert(index, element)


def _text(element: ET.Element | None) -> str:
    return (element.text or "").strip() if element is not None else ""


# ----------------------------------------------------------------------
# server.xml
# ----------------------------------------------------------------------
def _first_service(root: ET.Element) -> ET.Element:
    service = root.find("Service")
    if service is None:
        raise ArtifactError("server.xml has no <Service> element.")
    return service


def _is_https_connector(connector: ET.Element) -> bool:
    return (
        connector.get("scheme", "").lower() == "https"
        or connector.get("SSLEnabled", "").lower() == "true"
    )


def default_host(root: ET.Element) -> ET.Element:
    """Return the Host element named by the Engine's ``defaultHost``."""
    engine = root.find("./Service/Engine")
    if engine is None:
        raise ArtifactError("server.xml has no <Engine> element.")
    hosts = list(_children(engine, "Host"))
    if not hosts:
        raise ArtifactError("server.xml has no <Host> element.")
    wanted = engine.get("defaultHost", "")
    for host in hosts:
        if wanted and host.get("name") == wanted:
            return host
    return hosts[0]


def host_name(root: ET.Element) -> str:
    """Return the default host name used for ``conf/Catalina/<host>``."""
    return default_host(root).get("name") or "localhost"


def ensure_shutdown_port(root: ET.Element, port: int) -> None:
    """Set the ``<Server port>`` shutdown listener."""
    if root.tag != "Server":
        raise ArtifactError(f"Expected <Server> root element, found <{root.tag}>.")
    root.set("port", str(port))
    root.set("shutdown", root.get("shutdown") or "SHUTDOWN")


def ensure_http_connector(root: ET.Element, port: int, *, redirect_port: int | None = None) -> None:
    """Point the first plain HTTP connector at *port*, creating it if absent."""
    service = _first_service(root)
    connector = next(
        (
            element
            for element in _children(service, "Connector")
            if element.get("protocol", "") in HTTP_PROTOCOLS and not _is_https_connector(element)
        ),
        None,
    )
    if connector is None:
        connector = ET.Element("Connector", {"protocol": "HTTP/1.1", "connectionTimeout": "20000"})
        _insert_after_last(service, connector, "Connector", before="Engine")
    connector.set("port", str(port))
    if redirect_port:
        connector.set("redirectPort", str(redirect_port))


def ensure_root_context(root: ET.Element, doc_base: str) -> None:
    """Ensure the default Host serves *doc_base* at the root path."""
    host = default_host(root)
    for context in _children(host, "Context"):
        if context.get("path", "") in {"", "/"}:
            context.set("path", "")
            context.set("docBase", doc_base)
            return
    ET.SubElement(host, "Context", {"path": "", "docBase": doc_base})


def ensure_https_connector(root: ET.Element, port: int, keystore: Path, password: str) -> None:
    """Ensure exactly one HTTPS connector with a modern SSLHostConfig."""
    service = _first_service(root)
    matches = [
        element for element in _children(service, "Connector") if _is_https_connector(element)
    ]
    for duplicate in matches[1:]:
        service.remove(duplicate)
    if matches:
        connector = matches[0]
    else:
        connector = ET.Element("Connector")
        _insert_after_last(service, connector, "Connector", before="Engine")

    connector.set("protocol", HTTPS_PROTOCOL)
    connector.set("port", str(port))
    connector.set("scheme", "https")
    connector.set("secure", "true")
    connector.set("SSLEnabled", "true")
    for legacy in ("keystoreFile", "keystorePass", "keystoreType", "sslProtocol", "clientAuth"):
        connector.attrib.pop(legacy, None)

    for existing in list(_children(connector, "SSLHostConfig")):
        connector.remove(existing)
    ssl_host = ET.SubElement(
        connector,
        "SSLHostConfig",
        {"hostName": "_default_", "protocols": TLS_PROTOCOLS},
    )
    ET.SubElement(
        ssl_host,
        "Certificate",
        {
            "certificateKeystoreFile": str(keystore),
            "certificateKeystorePassword": password,
            "certificateKeystoreType": "PKCS12",
            "certificateKeyAlias": KEY_ALIAS,
            "type": "RSA",
        },
    )


def remove_https_connector(root: ET.Element) -> None:
    """Remove every HTTPS connector."""
    service = _first_service(root)
    for connector in list(_children(service, "Connector")):
        if _is_https_connector(connector):
            service.remove(connector)


def ensure_rewrite_valve(root: ET.Element) -> None:
    """Ensure the default Host declares Tomcat's RewriteValve once."""
    host = default_host(root)
    valves = [v for v in _children(host, "Valve") if v.get("className") == REWRITE_VALVE]
    for duplicate in valves[1:]:
        host.remove(duplicate)
    if not valves:
        ET.SubElement(host, "Valve", {"className": REWRITE_VALVE})


def remove_rewrite_valve(root: ET.Element) -> None:
    """Remove the RewriteValve from the default Host."""
    host = default_host(root)
    for valve in list(_children(host, "Valve")):
        if valve.get("className") == REWRITE_VALVE:
            host.remove(valve)


def patch_server_xml(vendor: bytes, plan: ArtifactPlan) -> bytes:
    """Return *vendor* server.xml patched for *plan*."""
    root = parse_xml(vendor, "server.xml")
    https_port = plan.ports.https if plan.config.https.enabled else None
    ensure_shutdown_port(root, plan.ports.shutdown)
    ensure_http_connector(root, plan.ports.http, redirect_port=https_port)
    ensure_root_context(root, str(plan.config.webroot_path))
    if https_port:
        keystore = plan.keystore_file or plan.instance_dir / "certs" / "keystore.p12"
        ensure_https_connector(root, https_port, keystore, plan.keystore_password)
    else:
        remove_https_connector(root)
    if plan.rewrite_rules_enabled:
        ensure_rewrite_valve(root)
    else:
        remove_rewrite_valve(root)
    return serialize_xml(root)


def server_host_name(server_xml: bytes) -> str:
    """Return the default host name declared by *server_xml*."""
    return host_name(parse_xml(server_xml, "server.xml"))


# ----------------------------------------------------------------------
# web.xml
# ----------------------------------------------------------------------
def _servlet_name(element: ET.Element, ns: str) -> str:
    return _text(element.find(_q(ns, "servlet-name")))


def _servlet_class(element: ET.Element, ns: str) -> str:
    return _text(element.find(_q(ns, "servlet-class")))


def _engine_servlet_names(root: ET.Element, ns: str) -> set[str]:
    names = {CFML_SERVLET, REST_SERVLET}
    for servlet in _children(root, _q(ns, "servlet")):
        if _servlet_class(servlet, ns).startswith("lucee.loader.servlet"):
            names.add(_servlet_name(servlet, ns))
    return names


def _mappings(root: ET.Element, ns: str, servlet: str) -> list[ET.Element]:
    return [
        mapping
        for mapping in _children(root, _q(ns, "servlet-mapping"))
        if _servlet_name(mapping, ns) == servlet
    ]


def _mapping_patterns(mapping: ET.Element, ns: str) -> list[str]:
    return [_text(item) for item in mapping.findall(_q(ns, "url-pattern"))]


def _ensure_mapping(root: ET.Element, ns: str, servlet: str, pattern: str) -> None:
    for mapping in _mappings(root, ns, servlet):
        if pattern in _mapping_patterns(mapping, ns):
            return
    mapping = ET.Element(_q(ns, "servlet-mapping"))
    ET.SubElement(mapping, _q(ns, "servlet-name")).text = servlet
    ET.SubElement(mapping, _q(ns, "url-pattern")).text = pattern
    _insert_after_last(root, mapping, _q(ns, "servlet-mapping"))


def _remove_mapping(root: ET.Element, ns: str, servlet: str, pattern: str) -> None:
    for mapping in _mappings(root, ns, servlet):
        patterns = mapping.findall(_q(ns, "url-pattern"))
        for item in patterns:
            if _text(item) == pattern:
                mapping.remove(item)
        if not mapping.findall(_q(ns, "url-pattern")):
            root.remove(mapping)


def _servlet_package(lucee_version: str) -> str:
    try:
        major = Version(lucee_version).major
    except InvalidVersion:
        major = 6
    return "lucee.loader.servlet.jakarta" if major >= 7 else "lucee.loader.servlet"


def ensure_engine_servlets(root: ET.Element, lucee_version: str) -> None:
    """Declare the CFML and REST servlets plus the CFML mappings."""
    ns = _namespace(root)
    declared = {_servlet_name(s, ns) for s in _children(root, _q(ns, "servlet"))}
    package = _servlet_package(lucee_version)
    for order, (name, cls) in enumerate(
        ((CFML_SERVLET, "CFMLServlet"), (REST_SERVLET, "RestServlet")), start=1
    ):
        if name in declared:
            continue
        servlet = ET.Element(_q(ns, "servlet"))
        ET.SubElement(servlet, _q(ns, "servlet-name")).text = name
        ET.SubElement(servlet, _q(ns, "servlet-class")).text = f"{package}.{cls}"
        ET.SubElement(servlet, _q(ns, "load-on-startup")).text = str(order)
        _insert_after_last(root, servlet, _q(ns, "servlet"))
    for pattern in CFML_PATTERNS:
        _ensure_mapping(root, ns, CFML_SERVLET, pattern)


def remove_engine_servlets(root: ET.Element) -> None:
    """Remove Lucee servlets and their mappings so only static files are served."""
    ns = _namespace(root)
    names = _engine_servlet_names(root, ns)
    for servlet in list(_children(root, _q(ns, "servlet"))):
        if _servlet_name(servlet, ns) in names:
            root.remove(servlet)
    for mapping in list(_children(root, _q(ns, "servlet-mapping"))):
        if _servlet_name(mapping, ns) in names:
            root.remove(mapping)


def ensure_rest_mapping(root: ET.Element, enabled: bool) -> None:
    """Map ``/rest/*`` to the REST servlet only when REST is enabled."""
    ns = _namespace(root)
    if enabled:
        _ensure_mapping(root, ns, REST_SERVLET, REST_PATTERN)
    else:
        for mapping in list(_mappings(root, ns, REST_SERVLET)):
            root.remove(mapping)


def _find_constraint(root: ET.Element, ns: str, pattern: str) -> ET.Element | None:
    for constraint in _children(root, _q(ns, "security-constraint")):
        for collection in constraint.findall(_q(ns, "web-resource-collection")):
            if pattern in [_text(p) for p in collection.findall(_q(ns, "url-pattern"))]:
                return constraint
    return None


def _ensure_deny_constraint(root: ET.Element, ns: str, name: str, pattern: str) -> None:
    if _find_constraint(root, ns, pattern) is not None:
        return
    constraint = ET.SubElement(root, _q(ns, "security-constraint"))
    collection = ET.SubElement(constraint, _q(ns, "web-resource-collection"))
    ET.SubElement(collection, _q(ns, "web-resource-name")).text = name
    ET.SubElement(collection, _q(ns, "url-pattern")).text = pattern
    # No roles listed means nobody is authorised.
    ET.SubElement(constraint, _q(ns, "auth-constraint"))


def ensure_admin_mappings(root: ET.Element, enabled: bool) -> None:
    """Expose or block the Lucee administrator."""
    ns = _namespace(root)
    if enabled:
        blocker = _find_constraint(root, ns, ADMIN_PATTERN)
        if blocker is not None:
            root.remove(blocker)
        if any(_servlet_name(s, ns) == CFML_SERVLET for s in _children(root, _q(ns, "servlet"))):
            _ensure_mapping(root, ns, CFML_SERVLET, ADMIN_PATTERN)
    else:
        _remove_mapping(root, ns, CFML_SERVLET, ADMIN_PATTERN)
        _ensure_deny_constraint(root, ns, ADMIN_RESOURCE_NAME, ADMIN_PATTERN)


def ensure_config_protected(root: ET.Element) -> None:
    """Deny HTTP access to the project's ``lucee.json``."""
    ns = _namespace(root)
    _ensure_deny_constraint(root, ns, CONFIG_RESOURCE_NAME, CONFIG_FILE_PATTERN)


def patch_web_xml(vendor: bytes, config: EffectiveConfig) -> bytes:
    """Return *vendor* web.xml patched for *config*."""
    root = parse_xml(vendor, "web.xml")
    if config.enable_lucee:
        ensure_engine_servlets(root, config.version)
        ensure_rest_mapping(root, config.enable_rest)
        ensure_admin_mappings(root, config.admin.enabled)
    else:
        remove_engine_servlets(root)
    ensure_config_protected(root)
    return serialize_xml(root)


# ----------------------------------------------------------------------
# Text artifacts
# ----------------------------------------------------------------------
def https_redirect_rules(host: str, https_port: int) -> str:
    """Return RewriteValve rules redirecting plain HTTP to HTTPS."""
    return (
        "RewriteCond %{HTTPS} !=on\n"
        f"RewriteRule ^/(.*)$ https://{host}:{https_port}/$1 [R=302,L]\n"
    )


def render_rewrite_config(
    templates: TemplateEngine,
    plan: ArtifactPlan,
    project_rules: str | None = None,
) -> str | None:
    """Return ``rewrite.config`` content, or ``None`` when no rules apply."""
    if not plan.rewrite_rules_enabled:
        return None
    redirect = ""
    if plan.redirect_enabled and plan.ports.https:
        redirect = https_redirect_rules(plan.config.host, plan.ports.https)
    return templates.render_to_string(
        "tomcat/rewrite.config.j2",
        {
            "redirect_rules": redirect,
            "project_rules": project_rules if plan.url_rewrite else None,
            "url_rewrite": plan.url_rewrite,
            "router_file": plan.config.url_rewrite.router_file.lstrip("/"),
        },
    )


def jvm_options(plan: ArtifactPlan) -> list[str]:
    """Return the JVM options for the instance (``CATALINA_OPTS`` on Tomcat)."""
    config = plan.config
    opts = [f"-Xms{config.jvm.min_memory}", f"-Xmx{config.jvm.max_memory}"]
    if config.monitoring.enabled and plan.ports.jmx:
        opts.extend(
            [
                "-Dcom.sun.management.jmxremote",
                f"-Dcom.sun.management.jmxremote.port={plan.ports.jmx}",
                "-Dcom.sun.management.jmxremote.authenticate=false",
                "-Dcom.sun.management.jmxremote.ssl=false",
            ]
        )
    opts.append(f"-Dlucee.server.dir={plan.instance_dir / 'lucee-server'}")
    opts.append(f"-Dlucee.web.dir={plan.instance_dir / 'lucee-web'}")
    opts.extend(config.jvm.additional_args)
    opts.extend(config.agent_jvm_args)
    return opts


def render_setenv(templates: TemplateEngine, plan: ArtifactPlan) -> str:
    """Return ``bin/setenv.sh`` exporting the instance JVM options."""
    joined = " ".join(jvm_options(plan)).replace('"', '\\"')
    return templates.render_to_string(
        "tomcat/setenv.sh.j2",
        {"name": plan.config.name, "catalina_opts": joined},
    )


def build_cfconfig(config: EffectiveConfig) -> str | None:
    """Return ``.CFConfig.json`` content, or ``None`` without embedded configuration."""
    if config.configuration is None:
        return None
    return json.dumps(config.configuration, indent=2) + "\n"


def read_project_rules(config: EffectiveConfig) -> str | None:
    """Return the project's own ``rewrite.config`` when it exists."""
    path = config.project_dir / "rewrite.config"
    if path.is_file():
        return path.read_text(encoding="utf-8")
    return None


def vendor_bytes(catalina_home: Path | None, relative: str, templates: TemplateEngine,
                 fallback: str) -> bytes:
    """Return a vendor file from *catalina_home*, else the built-in fallback template."""
    if catalina_home is not None:
        candidate = catalina_home / relative
        if candidate.is_file():
            return candidate.read_bytes()
    return templates.render_to_string(fallback, {}).encode("utf-8")


# ----------------------------------------------------------------------
# Writing a CATALINA_BASE
# ----------------------------------------------------------------------
def apply_catalina_base(
    plan: ArtifactPlan,
    catalina_home: Path,
    templates: TemplateEngine,
) -> list[Path]:
    """Materialise the instance CATALINA_BASE and return the files that changed."""
    base = plan.instance_dir
    vendor_server = catalina_home / "conf" / "server.xml"
    if not vendor_server.is_file():
        raise ArtifactError(f"Vendor server.xml not found: {vendor_server}")

    for child in ("conf", "logs", "temp", "work", "webapps", "bin",
                  "lucee-server/context", "lucee-web"):
        (base / child).mkdir(parents=True, exist_ok=True)

    changed: list[Path] = []
    for name in VENDOR_CONF_FILES:
        source = catalina_home / "conf" / name
        target = base / "conf" / name
        if source.is_file() and _copy_if_changed(source, target):
            changed.append(target)

    server_xml = patch_server_xml(vendor_server.read_bytes(), plan)
    if _write(base / "conf" / "server.xml", server_xml.decode("utf-8")):
        changed.append(base / "conf" / "server.xml")

    vendor_web = vendor_bytes(catalina_home, "conf/web.xml", templates, "tomcat/web.xml.j2")
    if _write(base / "conf" / "web.xml", patch_web_xml(vendor_web, plan.config).decode("utf-8")):
        changed.append(base / "conf" / "web.xml")

    rewrite_dir = base / "conf" / "Catalina" / server_host_name(server_xml)
    rewrite_path = rewrite_dir / "rewrite.config"
    rules = render_rewrite_config(templates, plan, read_project_rules(plan.config))
    if rules is None:
        if rewrite_path.exists():
            rewrite_path.unlink()
            changed.append(rewrite_path)
    elif _write(rewrite_path, rules):
        changed.append(rewrite_path)

    setenv = base / "bin" / "setenv.sh"
    if write_if_changed(setenv, render_setenv(templates, plan), mode=0o755):
        changed.append(setenv)

    cfconfig = build_cfconfig(plan.config)
    if cfconfig is not None:
        target = base / "lucee-server" / "context" / ".CFConfig.json"
        if _write(target, cfconfig):
            changed.append(target)

    if changed:
        LOGGER.debug("Updated %d artifact(s) for %s.", len(changed), plan.config.name)
    return changed


def _write(path: Path, content: str) -> bool:
    return write_if_changed(path, content)


def _copy_if_changed(source: Path, target: Path) -> bool:
    data = source.read_bytes()
    if target.exists() and target.read_bytes() == data:
        return False
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, target)
    return True


__all__ = [
    "ArtifactError",
    "ArtifactPlan",
    "DRY_RUN_PASSWORD",
    "apply_catalina_base",
    "build_cfconfig",
    "ensure_admin_mappings",
    "ensure_config_protected",
    "ensure_engine_servlets",
    "ensure_http_connector",
    "ensure_https_connector",
    "ensure_rest_mapping",
    "ensure_rewrite_valve",
    "ensure_root_context",
    "ensure_shutdown_port",
    "host_name",
    "https_redirect_rules",
    "jvm_options",
    "parse_xml",
    "patch_server_xml",
    "patch_web_xml",
    "read_project_rules",
    "remove_engine_servlets",
    "remove_https_connector",
    "remove_rewrite_valve",
    "render_rewrite_config",
    "render_setenv",
    "serialize_xml",
    "server_host_name",
    "vendor_bytes",
]

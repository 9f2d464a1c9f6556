"""Self-signed TLS keystores for HTTPS-enabled instances.

Each instance keeps ``certs/keystore.p12`` and ``certs/keystore.pass``.
Existing files are reused untouched; only missing ones are generated.
Generation uses ``keytool`` when available (or requested) and otherwise the
``cryptography`` package in-process.
"""
from __future__ import annotations

import base64
import ipaddress
import logging
import os
import secrets
import shutil
import subprocess
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from .settings import CertificateSettings

LOGGER = logging.getLogger(__name__)

KEY_ALIAS = "lucli"
CERTS_DIR = "certs"
KEYSTORE_NAME = "keystore.p12"
PASSWORD_NAME = "keystore.pass"
OWNER_ONLY = 0o600


class CertificateToolingMissingError(RuntimeError):
    """Raised when the requested certificate tool is not installed."""


class CertificateError(RuntimeError):
    """Raised when keystore generation fails."""


@dataclass(frozen=True)
class KeystorePaths:
    """Location of an instance keystore and its password."""

    keystore: Path
    password_file: Path
    password: str
    created: bool = False


@dataclass(frozen=True)
class KeystorePlan:
    """Read-only description of what :meth:`CertificateManager.ensure_keystore` would do."""

    keystore: Path
    password_file: Path
    action: str
    generator: str
    host: str
    subject_alt_names: tuple[str, ...]
    subject: str | None = None
    not_valid_after: datetime | None = None
    notes: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "keystore": str(self.keystore),
            "password_file": str(self.password_file),
            "action": self.action,
            "generator": self.generator,
            "host": self.host,
            "alias": KEY_ALIAS,
            "subject_alt_names": list(self.subject_alt_names),
            "subject": self.subject,
            "not_valid_after": self.not_valid_after.isoformat() if self.not_valid_after else None,
            "notes": list(self.notes),
        }


def keystore_paths(instance_dir: Path) -> tuple[Path, Path]:
    """Return the keystore and password file paths for *instance_dir*."""
    certs = instance_dir / CERTS_DIR
    return certs / KEYSTORE_NAME, certs / PASSWORD_NAME


def subject_alt_names(host: str) -> list[str]:
    """Return SAN entries covering localhost, *host* and the loopback address."""
    names = ["DNS:localhost"]
    normalized = (host or "localhost").strip()
    if normalized.lower() != "localhost":
        prefix = "IP" if _is_ip(normalized) else "DNS"
        names.append(f"{prefix}:{normalized}")
    if "IP:127.0.0.1" not in names:
        names.append("IP:127.0.0.1")
    return names


class CertificateManager:
    """Provision per-instance PKCS12 keystores."""

    def __init__(
        self,
        settings: CertificateSettings | None = None,
        *,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        """Store generation preferences and the executable lookup."""
        self.settings = settings or CertificateSettings()
        self._which = which

    # ------------------------------------------------------------------
    def resolve_generator(self) -> str:
        """Return ``keytool`` or ``cryptography`` per settings and PATH."""
        requested = self.settings.generator
        if requested == "cryptography":
            return "cryptography"
        found = self._which(self.settings.keytool_bin) is not None
        if requested == "keytool" and not found:
            raise CertificateToolingMissingError(
                f"'{self.settings.keytool_bin}' was not found on PATH. Install a JDK "
                "(keytool ships with it) or set tls.generator to 'cryptography' in "
                "settings.yml (LUCEECTL_TLS__GENERATOR=cryptography)."
            )
        return "keytool" if found else "cryptography"

    def plan_keystore(self, instance_dir: Path, host: str) -> KeystorePlan:
        """Describe the keystore action without touching the filesystem."""
        keystore, password_file = keystore_paths(instance_dir)
        sans = tuple(subject_alt_names(host))
        if keystore.exists() and password_file.exists():
            subject, expires, notes = self._describe_existing(keystore, password_file)
            return KeystorePlan(
                keystore=keystore,
                password_file=password_file,
                action="reuse",
                generator="existing",
                host=host,
                subject_alt_names=sans,
                subject=subject,
                not_valid_after=expires,
                notes=notes,
            )
        notes: tuple[str, ...] = ()
        try:
            generator = self.resolve_generator()
        except CertificateToolingMissingError as exc:
            generator = self.settings.generator
            notes = (str(exc),)
        return KeystorePlan(
            keystore=keystore,
            password_file=password_file,
            action="create",
            generator=generator,
            host=host,
            subject_alt_names=sans,
            subject=f"CN={host}",
            not_valid_after=None,
            notes=notes,
        )

    def ensure_keystore(self, instance_dir: Path, host: str) -> KeystorePaths:
        """Return the instance keystore, generating missing pieces."""
        keystore, password_file = keystore_paths(instance_dir)
        if keystore.exists() and password_file.exists():
            return KeystorePaths(keystore, password_file, _read_password(password_file))

        # A keystore whose password is lost cannot be opened; replace both.
        generator = self.resolve_generator()
        keystore.parent.mkdir(parents=True, exist_ok=True)
        if keystore.exists():
            LOGGER.warning(
                "%s has no %s; generating a new keystore and password.",
                keystore,
                password_file.name,
            )
            keystore.unlink()

        if password_file.exists():
            password = _read_password(password_file)
        else:
            password = generate_password()
            _write_private(password_file, (password + "\n").encode("utf-8"))

        LOGGER.info("Generating self-signed keystore for %s with %s.", host, generator)
        if generator == "keytool":
            self._generate_with_keytool(keystore, password, host)
        else:
            payload = build_pkcs12(host, password, validity_days=self.settings.validity_days)
            _write_private(keystore, payload)
        return KeystorePaths(keystore, password_file, password, created=True)

    # ------------------------------------------------------------------
    def _generate_with_keytool(self, keystore: Path, password: str, host: str) -> None:
        keytool = self._which(self.settings.keytool_bin) or self.settings.keytool_bin
        san = ",".join(entry.replace("DNS:", "dns:").replace("IP:", "ip:")
                       for entry in subject_alt_names(host))
        staging = Path(tempfile.mkdtemp(dir=str(keystore.parent), prefix=".keystore."))
        target = staging / KEYSTORE_NAME
        args = [
            keytool,
            "-genkeypair",
            "-alias", KEY_ALIAS,
            "-keyalg", "RSA",
            "-keysize", "2048",
            "-validity", str(self.settings.validity_days),
            "-storetype", "PKCS12",
            "-keystore", str(target),
            "-storepass", password,
            "-dname", f"CN={host}",
            "-ext", f"SAN={san}",
        ]
        try:
            try:
                result = subprocess.run(  # noqa: S603
                    args,
                    capture_output=True,
                    text=True,
                    check=False,
                )
            except FileNotFoundError as exc:
                raise CertificateToolingMissingError(
                    f"{keytool} not found: {exc}. Install a JDK or set tls.generator to "
                    "'cryptography'."
                ) from exc
            if result.returncode != 0:
                message = (result.stderr or "").strip() or (result.stdout or "").strip()
                raise CertificateError(
                    f"keytool failed (exit {result.returncode}): {message or 'no output'}"
                )
            os.chmod(target, OWNER_ONLY)
            os.replace(target, keystore)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _describe_existing(
        self,
        keystore: Path,
        password_file: Path,
    ) -> tuple[str | None, datetime | None, tuple[str, ...]]:
        if not password_file.exists():
            return None, None, (f"Password file {password_file} is missing.",)
        try:
            _, certificate, _ = pkcs12.load_key_and_certificates(
                keystore.read_bytes(), _read_password(password_file).encode("utf-8")
            )
        except (OSError, ValueError) as exc:
            return None, None, (f"Unable to read existing keystore: {exc}",)
        if certificate is None:
            return None, None, ("Keystore holds no certificate.",)
        return (
            certificate.subject.rfc4514_string(),
            certificate.not_valid_after_utc,
            (),
        )


def generate_password() -> str:
    """Return 32 random bytes as URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def build_pkcs12(host: str, password: str, *, validity_days: int = 825) -> bytes:
    """Return a password-protected PKCS12 keystore holding a self-signed certificate."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, host)])
    now = datetime.now(UTC)

    general_names: list[x509.GeneralName] = []
    for entry in subject_alt_names(host):
        kind, _, value = entry.partition(":")
        if kind == "IP":
            general_names.append(x509.IPAddress(ipaddress.ip_address(value)))
        else:
            general_names.append(x509.DNSName(value))

    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.SubjectAlternativeName(general_names), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return pkcs12.serialize_key_and_certificates(
        name=KEY_ALIAS.encode("ascii"),
        key=key,
        cert=certificate,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode("utf-8")),
    )


def _read_password(path: Path) -> str:
    return path.read_text(encoding="utf-8").strip()


def _write_private(path: Path, payload: bytes) -> None:
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(payload)
        os.chmod(tmp_path, OWNER_ONLY)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


__all__ = [
    "CertificateError",
    "CertificateManager",
    "CertificateToolingMissingError",
    "KEY_ALIAS",
    "KeystorePaths",
    "KeystorePlan",
    "build_pkcs12",
    "generate_password",
    "keystore_paths",
    "subject_alt_names",
]

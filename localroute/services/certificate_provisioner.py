from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Protocol, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from localroute.errors import CertificateError, ProvisioningError
from localroute.schemas import Site
from localroute.utils.commands import CommandRunner
from localroute.utils.files import write_file_atomic


logger = logging.getLogger(__name__)

BACKEND_CHOICES = {"auto", "mkcert", "self-signed"}
DEFAULT_VALIDITY_DAYS = 365
SELF_SIGNED_KEY_SIZE = 2048
SELF_SIGNED_ORGANIZATION = "LocalRoute"
SELF_SIGNED_COUNTRY = "US"


@dataclass(frozen=True, slots=True)
class CertificateRecord:
    domain: str
    key_path: Path
    cert_path: Path

    @property
    def exists(self) -> bool:
        return self.key_path.is_file() and self.cert_path.is_file()


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    record: CertificateRecord
    generated: bool
    backend: str | None = None


class CertificateBackend(Protocol):
    name: str

    def prepare(self) -> None: ...

    def generate(self, domain: str, key_path: Path, cert_path: Path) -> None: ...


class MkcertBackend:
    """Issues certificates from the local mkcert CA, which browsers trust."""

    name = "mkcert"

    def __init__(self, runner: CommandRunner | None = None, binary: str = "mkcert") -> None:
        self.runner = runner or CommandRunner()
        self.binary = binary

    @classmethod
    def is_available(cls, which: Callable[[str], str | None] = shutil.which, binary: str = "mkcert") -> bool:
        return which(binary) is not None

    def prepare(self) -> None:
        result = self.runner.run([self.binary, "-install"])
        if not result.ok:
            raise CertificateError(
                f"Failed to install the mkcert local CA: {result.summary()}",
                entity=self.binary,
                diagnostics={"install": result.as_dict()},
            )

    def generate(self, domain: str, key_path: Path, cert_path: Path) -> None:
        result = self.runner.run(
            [self.binary, "-cert-file", str(cert_path), "-key-file", str(key_path), domain]
        )
        if not result.ok:
            raise CertificateError(
                f"mkcert failed for {domain}: {result.summary()}",
                entity=domain,
                diagnostics={"generate": result.as_dict()},
            )


class SelfSignedBackend:
    name = "self-signed"

    def __init__(
        self,
        validity_days: int = DEFAULT_VALIDITY_DAYS,
        key_size: int = SELF_SIGNED_KEY_SIZE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.validity_days = validity_days
        self.key_size = key_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def prepare(self) -> None:
        return None

    def build(self, domain: str) -> tuple[bytes, bytes]:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        subject = x509.Name(
            [
                x509.NameAttribute(NameOID.COUNTRY_NAME, SELF_SIGNED_COUNTRY),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, SELF_SIGNED_ORGANIZATION),
                x509.NameAttribute(NameOID.COMMON_NAME, domain),
            ]
        )
        now = self._clock()
        certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=self.validity_days))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(private_key, hashes.SHA256())
        )

        key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
        return key_pem, cert_pem

    def generate(self, domain: str, key_path: Path, cert_path: Path) -> None:
        key_pem, cert_pem = self.build(domain)
        try:
            write_file_atomic(key_path, key_pem, 0o600)
            write_file_atomic(cert_path, cert_pem, 0o644)
        except OSError as exc:
            raise CertificateError(f"Failed to store certificate for {domain}: {exc}", entity=domain) from exc


def select_backend(
    preference: str = "auto",
    runner: CommandRunner | None = None,
    validity_days: int = DEFAULT_VALIDITY_DAYS,
    which: Callable[[str], str | None] = shutil.which,
) -> CertificateBackend:
    """Pick the backend once per run. The other backend is never used as a retry."""
    preference = preference.strip().lower()
    if preference not in BACKEND_CHOICES:
        raise ProvisioningError(f"Unknown certificate backend: {preference}", entity=preference)

    mkcert_available = MkcertBackend.is_available(which)
    if preference == "mkcert" and not mkcert_available:
        raise ProvisioningError("mkcert was requested but is not installed.", entity="mkcert")

    if preference in {"auto", "mkcert"} and mkcert_available:
        logger.info("mkcert found; generating trusted certificates")
        return MkcertBackend(runner=runner)

    if preference == "auto":
        logger.info("mkcert not found; falling back to self-signed certificates")
    return SelfSignedBackend(validity_days=validity_days)


class CertificateProvisioner:
    def __init__(self, cert_dir: str | Path, backend: CertificateBackend) -> None:
        self.cert_dir = Path(cert_dir)
        self.backend = backend
        self._prepared = False

    def record_for(self, domain: str) -> CertificateRecord:
        return CertificateRecord(
            domain=domain,
            key_path=self.cert_dir / f"{domain}.key",
            cert_path=self.cert_dir / f"{domain}.crt",
        )

    def ensure_certificate(self, domain: str) -> ProvisionResult:
        record = self.record_for(domain)
        if record.exists:
            logger.info("Certificates for %s already exist, skipping", domain)
            return ProvisionResult(record=record, generated=False)

        if not self._prepared:
            self.backend.prepare()
            self._prepared = True

        logger.info("Generating %s certificate for %s", self.backend.name, domain)
        self.cert_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.backend.generate(domain, record.key_path, record.cert_path)
        except CertificateError:
            raise
        except Exception as exc:
            raise CertificateError(f"Certificate generation failed for {domain}: {exc}", entity=domain) from exc

        if not record.exists:
            raise CertificateError(
                f"{self.backend.name} did not produce both {record.key_path.name} and {record.cert_path.name}.",
                entity=domain,
            )
        return ProvisionResult(record=record, generated=True, backend=self.backend.name)

    def ensure(self, sites: Sequence[Site]) -> list[ProvisionResult]:
        return [self.ensure_certificate(site.domain) for site in sites if site.tls_required]

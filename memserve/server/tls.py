"""
TLS certificate provider (memserve/server/tls.py)

PURPOSE:
Supplies the certificate the HTTPS listener presents for the configured
server name. Issuance and renewal happen outside this process (an ACME
client writing PEM files, for instance); the provider checks that what it is
handed is usable, and CertificateReloader swaps a renewed certificate into
the live SSLContext so new connections pick it up without a restart.

CHECKS (StaticCertificateProvider):
- certificate and key files exist and parse as PEM
- the key belongs to the certificate
- the certificate is currently valid
- the hostname is covered by a SubjectAlternativeName DNS entry
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization

from memserve.errors import ErrorCode, MemserveError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertificatePaths:
    cert_file: Path
    key_file: Path
    not_valid_after: datetime.datetime
    dns_names: tuple
    fingerprint: str = ""

    @property
    def days_remaining(self) -> int:
        now = datetime.datetime.now(datetime.timezone.utc)
        return (self.not_valid_after - now).days


class CertificateProvider(Protocol):
    """Anything that can hand out the current certificate for a hostname."""

    def get_certificate(self, hostname: str) -> CertificatePaths:
        ...


def hostname_matches(hostname: str, pattern: str) -> bool:
    """DNS-name match with single-label leftmost wildcards."""
    hostname = hostname.lower().rstrip(".")
    pattern = pattern.lower().rstrip(".")
    if pattern.startswith("*."):
        head, _, rest = hostname.partition(".")
        return bool(head) and rest == pattern[2:]
    return hostname == pattern


class StaticCertificateProvider:
    """Certificate and key read from PEM files on disk."""

    def __init__(self, cert_file: Union[str, Path], key_file: Union[str, Path]):
        self.cert_file = Path(cert_file)
        self.key_file = Path(key_file)

    def _read(self, path: Path, what: str) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise MemserveError(
                ErrorCode.TLS_CERT_NOT_FOUND,
                f"TLS {what} file not found: {path}",
                details={"path": str(path)},
            ) from None
        except OSError as e:
            raise MemserveError(
                ErrorCode.TLS_CERT_INVALID,
                f"Cannot read TLS {what} file {path}: {e}",
                details={"path": str(path)},
            ) from e

    def load(self) -> x509.Certificate:
        cert_pem = self._read(self.cert_file, "certificate")
        key_pem = self._read(self.key_file, "key")
        try:
            cert = x509.load_pem_x509_certificate(cert_pem)
            key = serialization.load_pem_private_key(key_pem, password=None)
        except (ValueError, TypeError) as e:
            raise MemserveError(
                ErrorCode.TLS_CERT_INVALID,
                f"Cannot parse certificate or key: {e}",
                details={"cert_file": str(self.cert_file), "key_file": str(self.key_file)},
            ) from e

        spki = serialization.PublicFormat.SubjectPublicKeyInfo
        if key.public_key().public_bytes(serialization.Encoding.PEM, spki) != \
                cert.public_key().public_bytes(serialization.Encoding.PEM, spki):
            raise MemserveError(
                ErrorCode.TLS_CERT_INVALID,
                "Private key does not match certificate",
                details={"cert_file": str(self.cert_file), "key_file": str(self.key_file)},
            )
        return cert

    @staticmethod
    def dns_names(cert: x509.Certificate) -> List[str]:
        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return []
        return san.value.get_values_for_type(x509.DNSName)

    def get_certificate(self, hostname: str) -> CertificatePaths:
        cert = self.load()

        now = datetime.datetime.now(datetime.timezone.utc)
        if now > cert.not_valid_after_utc:
            raise MemserveError(
                ErrorCode.TLS_CERT_INVALID,
                f"Certificate expired on {cert.not_valid_after_utc.isoformat()}",
                details={"cert_file": str(self.cert_file)},
            )
        if now < cert.not_valid_before_utc:
            raise MemserveError(
                ErrorCode.TLS_CERT_INVALID,
                f"Certificate not valid until {cert.not_valid_before_utc.isoformat()}",
                details={"cert_file": str(self.cert_file)},
            )

        names = self.dns_names(cert)
        if not any(hostname_matches(hostname, name) for name in names):
            raise MemserveError(
                ErrorCode.TLS_CERT_INVALID,
                f"Certificate does not cover {hostname}",
                details={"dns_names": names},
            )

        paths = CertificatePaths(
            cert_file=self.cert_file,
            key_file=self.key_file,
            not_valid_after=cert.not_valid_after_utc,
            dns_names=tuple(names),
            fingerprint=cert.fingerprint(hashes.SHA256()).hex(),
        )
        logger.debug(f"[TLS] Using certificate for {hostname}, {paths.days_remaining} days remaining")
        return paths


class CertificateReloader:
    """Keeps a server SSLContext loaded with the provider's current certificate.

    New handshakes use whatever chain the context holds, so re-running
    ``load_cert_chain`` on the live context is enough to roll a renewed
    certificate; established connections keep the one they negotiated.
    A renewal that fails validation is logged and the current chain stays.
    """

    def __init__(
        self,
        provider: CertificateProvider,
        hostname: str,
        context: ssl.SSLContext,
        current: Optional[CertificatePaths] = None,
    ):
        self.provider = provider
        self.hostname = hostname
        self.context = context
        self.current = current
        self.reloads = 0

    def apply(self, paths: CertificatePaths) -> bool:
        """Load ``paths`` into the context unless it is the certificate already in use."""
        if self.current is not None and paths.fingerprint == self.current.fingerprint:
            return False
        self.context.load_cert_chain(certfile=str(paths.cert_file), keyfile=str(paths.key_file))
        self.current = paths
        self.reloads += 1
        logger.info(f"[TLS] Loaded renewed certificate for {self.hostname}, {paths.days_remaining} days remaining")
        return True

    def check(self) -> bool:
        return self.apply(self.provider.get_certificate(self.hostname))

    async def watch(self, interval: float) -> None:
        """Re-check every ``interval`` seconds until cancelled."""
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(interval)
            try:
                paths = await loop.run_in_executor(None, self.provider.get_certificate, self.hostname)
                self.apply(paths)
            except MemserveError as e:
                logger.error(f"[TLS] Keeping current certificate: {e}")
            except (ssl.SSLError, OSError) as e:
                logger.error(f"[TLS] Cannot load renewed certificate, keeping current one: {e}")

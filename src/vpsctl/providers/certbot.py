"""Certificate authority client (certbot) and certificate inspection."""
from __future__ import annotations

import posixpath
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from cryptography import x509
from cryptography.x509.oid import NameOID

from ..transport import Transport
from .files import FilesProvider


class CertificateParseError(ValueError):
    """Raised when a certificate on the host cannot be decoded."""


@dataclass(frozen=True, slots=True)
class CertificateInfo:
    """Expiry and names of an issued certificate."""

    domain: str
    not_after: datetime
    names: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {"expires_at": self.not_after.isoformat(), "names": list(self.names)}


def parse_certificate(domain: str, pem: str) -> CertificateInfo:
    """Decode the leaf certificate at the top of ``pem``."""
    data = pem.encode("ascii", errors="ignore")
    try:
        certificate = x509.load_pem_x509_certificate(data)
    except ValueError as exc:
        raise CertificateParseError(f"Cannot parse certificate for {domain}: {exc}") from exc
    names: list[str] = []
    try:
        extension = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        names = extension.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        names = [
            str(attribute.value)
            for attribute in certificate.subject.get_attributes_for_oid(
                NameOID.COMMON_NAME
            )
        ]
    return CertificateInfo(
        domain=domain,
        not_after=certificate.not_valid_after_utc,
        names=tuple(sorted(names)),
    )


@dataclass(slots=True)
class CertbotClient:
    """Issue and renew certificates with certbot's webroot plugin."""

    transport: Transport
    files: FilesProvider
    live_dir: str = "/etc/letsencrypt/live"
    certbot_bin: str = "certbot"
    timeout: float = 300.0

    def certificate_dir(self, domain: str) -> str:
        """Return the directory holding the live certificate for ``domain``."""
        return posixpath.join(self.live_dir, domain)

    def expiry(self, domain: str) -> CertificateInfo | None:
        """Return details of the live certificate or ``None`` when absent."""
        pem = self.files.read(posixpath.join(self.certificate_dir(domain), "fullchain.pem"))
        if pem is None:
            return None
        return parse_certificate(domain, pem)

    def issue(
        self,
        domain: str,
        email: str,
        webroot: str,
        *,
        extra_domains: Sequence[str] = (),
    ) -> None:
        """Obtain a certificate for ``domain`` (and ``extra_domains``)."""
        args = [
            self.certbot_bin,
            "certonly",
            "--non-interactive",
            "--agree-tos",
            "--webroot",
            "-w",
            webroot,
            "--email",
            email,
            "--cert-name",
            domain,
            "--expand",
            "-d",
            domain,
        ]
        for extra in extra_domains:
            args.extend(["-d", extra])
        self.transport.run(args, timeout=self.timeout)

    def renew(self, domain: str) -> None:
        """Renew the certificate named ``domain`` now."""
        self.transport.run(
            [
                self.certbot_bin,
                "renew",
                "--non-interactive",
                "--cert-name",
                domain,
                "--force-renewal",
            ],
            timeout=self.timeout,
        )


__all__ = ["CertbotClient", "CertificateInfo", "CertificateParseError", "parse_certificate"]

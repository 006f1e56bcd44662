"""
Self-signed certificate rotation for the reverse proxy.

Traefik watches the certificate directory and hot-reloads on change, so
rotation only has to replace the files atomically; no container is
restarted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Callable, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .config import StackConfig
from .fileutil import atomic_write

logger = logging.getLogger(__name__)


@dataclass
class RotationResult:
    """Outcome of a rotation check."""
    rotated: bool
    reason: str
    cert_path: Path
    key_path: Path
    not_after: Optional[datetime] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CertificateRotator:
    """Regenerates the proxy certificate ahead of its expiry."""

    def __init__(
        self,
        cert_dir: Path,
        domain: str,
        renew_before_days: int = 30,
        validity_days: int = 365,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.cert_dir = Path(cert_dir)
        self.domain = domain
        self.renew_before = timedelta(days=renew_before_days)
        self.validity = timedelta(days=validity_days)
        self.clock = clock

    @classmethod
    def from_config(cls, config: StackConfig) -> "CertificateRotator":
        return cls(
            config.certs_dir,
            config.domain,
            renew_before_days=config.cert_renew_before_days,
            validity_days=config.cert_validity_days,
        )

    @property
    def cert_path(self) -> Path:
        return self.cert_dir / "cert.pem"

    @property
    def key_path(self) -> Path:
        return self.cert_dir / "key.pem"

    def expires_at(self) -> Optional[datetime]:
        """Expiry of the current certificate, or None if missing or unreadable."""
        try:
            cert = x509.load_pem_x509_certificate(self.cert_path.read_bytes())
        except FileNotFoundError:
            return None
        except ValueError as e:
            logger.warning(f"Unreadable certificate {self.cert_path}: {e}")
            return None
        return cert.not_valid_after_utc

    def check(self) -> Tuple[bool, str, Optional[datetime]]:
        """Return (needs rotation, reason, current expiry)."""
        not_after = self.expires_at()
        if not_after is None:
            return True, "no valid certificate", None
        remaining = not_after - self.clock()
        if remaining <= self.renew_before:
            return True, f"expires in {remaining.days} days", not_after
        return False, f"valid for {remaining.days} more days", not_after

    def generate(self) -> Tuple[bytes, bytes]:
        """Create a fresh key and self-signed certificate; returns PEM (key, cert)."""
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, self.domain)])
        now = self.clock()
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + self.validity)
            .add_extension(
                x509.SubjectAlternativeName([
                    x509.DNSName(self.domain),
                    x509.DNSName(f"*.{self.domain}"),
                ]),
                critical=False,
            )
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(key, hashes.SHA256())
        )
        key_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
        return key_pem, cert.public_bytes(serialization.Encoding.PEM)

    def rotate(self, force: bool = False) -> RotationResult:
        """Replace key and certificate if they are due (or force is set)."""
        due, reason, not_after = self.check()
        if not (due or force):
            logger.info(f"Certificate for {self.domain} {reason}; not rotating")
            return RotationResult(False, reason, self.cert_path, self.key_path, not_after)

        self.cert_dir.mkdir(parents=True, exist_ok=True)
        key_pem, cert_pem = self.generate()
        # key first: the proxy reloads when the certificate changes
        atomic_write(self.key_path, key_pem, mode=0o600)
        atomic_write(self.cert_path, cert_pem, mode=0o644)
        new_expiry = self.expires_at()
        reason = reason if due else "forced"
        logger.info(f"Rotated certificate for {self.domain} ({reason}); valid until {new_expiry}")
        return RotationResult(True, reason, self.cert_path, self.key_path, new_expiry)

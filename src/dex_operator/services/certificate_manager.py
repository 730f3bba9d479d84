"""
Mutual-TLS credential lifecycle for the Dex gRPC API.

The bundle is a secret holding a CA, a server certificate and a client
certificate, plus an annotation recording when the server certificate
expires. The annotation is the source of truth for renewal decisions:

- no bundle: generate and create it
- annotation missing or not an RFC 3339 timestamp: treat as corrupt and
  regenerate in place
- inside the renewal window before expiry: regenerate in place
- otherwise: leave the bundle alone

Every regeneration produces a brand new CA along with the leaf certificates,
so clients have to pick up the new bundle from the secret rather than keep
trusting the previous CA.
"""

import asyncio
import base64
import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..constants import (
    GRPC_SERVICE_NAME,
    MTLS_CERT_EXPIRY_ANNOTATION,
    OPERATOR_LABEL_KEY,
    OPERATOR_LABEL_VALUE,
    SECRET_MTLS_NAME,
)
from ..errors import CertificateError
from ..utils.kubernetes import ResourceStore, set_owner_reference

logger = logging.getLogger(__name__)

CAUSE_MISSING = "missing"
CAUSE_CORRUPT = "corrupt"
CAUSE_EXPIRING = "expiring"

# Backdate notBefore to tolerate clock skew between nodes.
_CLOCK_SKEW = timedelta(minutes=5)


@dataclass
class MTLSCertificates:
    """PEM-encoded CA, server and client credentials."""

    ca_cert: bytes
    ca_key: bytes
    server_cert: bytes
    server_key: bytes
    client_cert: bytes
    client_key: bytes
    expiry: datetime

    def secret_data(self) -> dict[str, str]:
        """Secret data with base64 values; leaf certificates carry the CA after them."""
        raw = {
            "ca.crt": self.ca_cert,
            "ca.key": self.ca_key,
            "tls.crt": self.server_cert + self.ca_cert,
            "tls.key": self.server_key,
            "client.crt": self.client_cert + self.ca_cert,
            "client.key": self.client_key,
        }
        return {key: base64.b64encode(value).decode() for key, value in raw.items()}


def format_expiry(expiry: datetime) -> str:
    return expiry.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_expiry(value: str | None) -> datetime | None:
    """Parse an expiry annotation; returns None when it is absent or malformed."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(UTC)


def grpc_dns_names(namespace: str) -> list[str]:
    return [
        GRPC_SERVICE_NAME,
        f"{GRPC_SERVICE_NAME}.{namespace}",
        f"{GRPC_SERVICE_NAME}.{namespace}.svc",
        f"{GRPC_SERVICE_NAME}.{namespace}.svc.cluster.local",
    ]


def _private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "dex-operator"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _leaf_certificate(
    common_name: str,
    key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    ca_key: rsa.RSAPrivateKey,
    usage: x509.ObjectIdentifier,
    not_before: datetime,
    not_after: datetime,
    dns_names: list[str] | None = None,
) -> x509.Certificate:
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]),
            critical=False,
        )
    return builder.sign(ca_key, hashes.SHA256())


def generate_mtls_certificates(
    namespace: str,
    ca_validity: timedelta,
    cert_validity: timedelta,
    key_size: int = 2048,
    now: datetime | None = None,
) -> MTLSCertificates:
    """
    Generate a fresh CA with a server and a client certificate signed by it.

    Args:
        namespace: Namespace of the gRPC service the server certificate is for
        ca_validity: Lifetime of the CA certificate
        cert_validity: Lifetime of the server and client certificates
        key_size: RSA key size
        now: Issue time (defaults to the current time)

    Returns:
        The PEM-encoded bundle with the server certificate's expiry

    Raises:
        CertificateError: If key generation or signing fails
    """
    now = (now or datetime.now(UTC)).replace(microsecond=0)
    not_before = now - _CLOCK_SKEW

    try:
        ca_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        ca_cert = (
            x509.CertificateBuilder()
            .subject_name(_name("dex-grpc-ca"))
            .issuer_name(_name("dex-grpc-ca"))
            .public_key(ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(now + ca_validity)
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )

        leaf_not_after = min(now + cert_validity, now + ca_validity)

        server_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        server_cert = _leaf_certificate(
            f"{GRPC_SERVICE_NAME}.{namespace}.svc",
            server_key,
            ca_cert,
            ca_key,
            ExtendedKeyUsageOID.SERVER_AUTH,
            not_before,
            leaf_not_after,
            dns_names=grpc_dns_names(namespace),
        )

        client_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        client_cert = _leaf_certificate(
            "dex-grpc-client",
            client_key,
            ca_cert,
            ca_key,
            ExtendedKeyUsageOID.CLIENT_AUTH,
            not_before,
            leaf_not_after,
        )
    except (ValueError, TypeError) as e:
        raise CertificateError(f"error generating mtls certs: {e}", cause=e) from e

    pem = serialization.Encoding.PEM
    return MTLSCertificates(
        ca_cert=ca_cert.public_bytes(pem),
        ca_key=_private_key_pem(ca_key),
        server_cert=server_cert.public_bytes(pem),
        server_key=_private_key_pem(server_key),
        client_cert=client_cert.public_bytes(pem),
        client_key=_private_key_pem(client_key),
        expiry=server_cert.not_valid_after_utc,
    )


class CertificateManager:
    """Keeps the grpc-mtls bundle of a namespace present and fresh."""

    def __init__(
        self,
        store: ResourceStore,
        ca_validity: timedelta = timedelta(days=365),
        cert_validity: timedelta = timedelta(days=90),
        renewal_window: timedelta = timedelta(hours=24),
        key_size: int = 2048,
        clock: Callable[[], datetime] | None = None,
        metrics: Any = None,
    ):
        self.store = store
        self.ca_validity = ca_validity
        self.cert_validity = cert_validity
        self.renewal_window = renewal_window
        self.key_size = key_size
        self.clock = clock or (lambda: datetime.now(UTC))
        self.metrics = metrics

    def renewal_cause(self, secret: dict[str, Any]) -> str | None:
        """Why an existing bundle must be regenerated, or None if it is fine."""
        annotations = secret.get("metadata", {}).get("annotations") or {}
        raw = annotations.get(MTLS_CERT_EXPIRY_ANNOTATION)
        expiry = parse_expiry(raw)
        if expiry is None:
            if raw:
                logger.warning(f"mtls cert expiry could not be parsed: {raw!r}")
            return CAUSE_CORRUPT
        if self.clock() >= expiry - self.renewal_window:
            return CAUSE_EXPIRING
        return None

    def build_secret(
        self, namespace: str, certs: MTLSCertificates, owner: dict[str, Any] | None
    ) -> dict[str, Any]:
        labels = {OPERATOR_LABEL_KEY: OPERATOR_LABEL_VALUE}
        if owner is not None:
            labels["app"] = owner["metadata"]["name"]
        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {
                "name": SECRET_MTLS_NAME,
                "namespace": namespace,
                "labels": labels,
                "annotations": {MTLS_CERT_EXPIRY_ANNOTATION: format_expiry(certs.expiry)},
            },
            "data": certs.secret_data(),
        }
        if owner is not None:
            set_owner_reference(secret, owner)
        return secret

    async def ensure(self, namespace: str, owner: dict[str, Any] | None = None) -> bool:
        """
        Make sure the namespace has a valid, non-expiring mTLS bundle.

        Args:
            namespace: Namespace of the DexServer
            owner: The DexServer object, used for labels and the owner reference

        Returns:
            True if the bundle was created or regenerated, False if untouched
        """
        existing = await self.store.get_optional("Secret", SECRET_MTLS_NAME, namespace)
        if existing is None:
            cause = CAUSE_MISSING
        else:
            cause = self.renewal_cause(existing)
            if cause is None:
                logger.debug(f"mtls cert in {namespace} found and does not require renewal")
                if self.metrics is not None:
                    expiry = parse_expiry(
                        existing["metadata"]["annotations"][MTLS_CERT_EXPIRY_ANNOTATION]
                    )
                    self.metrics.record_mtls_expiry(namespace, expiry.timestamp())
                return False

        certs = await asyncio.to_thread(
            generate_mtls_certificates,
            namespace,
            self.ca_validity,
            self.cert_validity,
            self.key_size,
            self.clock(),
        )
        desired = self.build_secret(namespace, certs, owner)

        if existing is None:
            logger.info(f"Creating mtls secret {namespace}/{SECRET_MTLS_NAME}")
            await self.store.create(desired)
        else:
            logger.info(
                f"Regenerating mtls secret {namespace}/{SECRET_MTLS_NAME} ({cause})"
            )
            updated = copy.deepcopy(existing)
            meta = updated.setdefault("metadata", {})
            meta["labels"] = {**(meta.get("labels") or {}), **desired["metadata"]["labels"]}
            meta["annotations"] = {
                **(meta.get("annotations") or {}),
                **desired["metadata"]["annotations"],
            }
            if owner is not None:
                set_owner_reference(updated, owner)
            updated["data"] = desired["data"]
            updated.pop("stringData", None)
            await self.store.update(updated)

        if self.metrics is not None:
            self.metrics.record_mtls_regeneration(
                namespace, cause, certs.expiry.timestamp()
            )
        return True

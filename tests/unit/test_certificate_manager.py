"""
Unit tests for the gRPC mTLS certificate lifecycle.

Certificates are generated for real with ``cryptography``; only the cluster
is faked.
"""

import base64
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID

from dex_operator.constants import (
    MTLS_CERT_EXPIRY_ANNOTATION,
    OPERATOR_LABEL_KEY,
    SECRET_MTLS_NAME,
)
from dex_operator.services.certificate_manager import (
    CAUSE_CORRUPT,
    CAUSE_EXPIRING,
    CertificateManager,
    format_expiry,
    generate_mtls_certificates,
    parse_expiry,
)

from .helpers import make_dexserver

NOW = datetime(2024, 3, 1, 9, 0, 0, tzinfo=UTC)
SECRET_KEYS = {"ca.crt", "ca.key", "tls.crt", "tls.key", "client.crt", "client.key"}


@pytest.fixture(scope="module")
def certs():
    return generate_mtls_certificates(
        "idp", ca_validity=timedelta(days=365), cert_validity=timedelta(days=90), now=NOW
    )


@pytest.fixture
def manager(store):
    return CertificateManager(store, clock=lambda: NOW)


def _bundle(expiry_annotation):
    annotations = {}
    if expiry_annotation is not None:
        annotations[MTLS_CERT_EXPIRY_ANNOTATION] = expiry_annotation
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": SECRET_MTLS_NAME,
            "namespace": "idp",
            "annotations": annotations,
        },
        "data": {"ca.crt": base64.b64encode(b"old-ca").decode()},
    }


class TestExpiryAnnotation:
    def test_format_is_rfc3339_utc(self):
        assert format_expiry(NOW) == "2024-03-01T09:00:00Z"

    def test_parse_round_trip(self):
        assert parse_expiry("2024-03-01T09:00:00Z") == NOW

    def test_parse_offset(self):
        assert parse_expiry("2024-03-01T10:00:00+01:00") == NOW

    @pytest.mark.parametrize("value", [None, "", "not-a-date", "2024-03-01T09:00:00"])
    def test_unparseable(self, value):
        assert parse_expiry(value) is None


class TestGeneratedCertificates:
    """Test the content of a generated bundle."""

    def test_secret_has_fixed_keys(self, certs):
        assert set(certs.secret_data()) == SECRET_KEYS

    def test_expiry_is_server_not_after(self, certs):
        server = x509.load_pem_x509_certificate(certs.server_cert)
        assert certs.expiry == server.not_valid_after_utc
        assert certs.expiry == NOW + timedelta(days=90)

    def test_ca_is_a_ca(self, certs):
        ca = x509.load_pem_x509_certificate(certs.ca_cert)
        constraints = ca.extensions.get_extension_for_class(x509.BasicConstraints)
        assert constraints.value.ca is True

    def test_server_cert_covers_grpc_service(self, certs):
        server = x509.load_pem_x509_certificate(certs.server_cert)
        san = server.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        assert san.value.get_values_for_type(x509.DNSName) == [
            "grpc",
            "grpc.idp",
            "grpc.idp.svc",
            "grpc.idp.svc.cluster.local",
        ]
        usage = server.extensions.get_extension_for_class(x509.ExtendedKeyUsage)
        assert ExtendedKeyUsageOID.SERVER_AUTH in usage.value

    def test_client_cert_usage(self, certs):
        client = x509.load_pem_x509_certificate(certs.client_cert)
        usage = client.extensions.get_extension_for_class(x509.ExtendedKeyUsage)
        assert ExtendedKeyUsageOID.CLIENT_AUTH in usage.value

    def test_leaves_are_signed_by_ca(self, certs):
        ca = x509.load_pem_x509_certificate(certs.ca_cert)
        for pem in (certs.server_cert, certs.client_cert):
            leaf = x509.load_pem_x509_certificate(pem)
            leaf.verify_directly_issued_by(ca)

    def test_leaf_chains_carry_ca(self, certs):
        data = certs.secret_data()
        tls_chain = base64.b64decode(data["tls.crt"])
        assert tls_chain.startswith(certs.server_cert)
        assert tls_chain.endswith(certs.ca_cert)
        assert base64.b64decode(data["client.crt"]).endswith(certs.ca_cert)


class TestRenewalCause:
    def test_far_expiry_needs_nothing(self, manager):
        assert manager.renewal_cause(_bundle(format_expiry(NOW + timedelta(days=30)))) is None

    def test_expiry_inside_window(self, manager):
        cause = manager.renewal_cause(_bundle(format_expiry(NOW + timedelta(hours=1))))
        assert cause == CAUSE_EXPIRING

    def test_already_expired(self, manager):
        cause = manager.renewal_cause(_bundle(format_expiry(NOW - timedelta(days=1))))
        assert cause == CAUSE_EXPIRING

    def test_missing_annotation_is_corrupt(self, manager):
        assert manager.renewal_cause(_bundle(None)) == CAUSE_CORRUPT

    def test_garbage_annotation_is_corrupt(self, manager):
        assert manager.renewal_cause(_bundle("garbage")) == CAUSE_CORRUPT


class TestEnsure:
    """Test ensure() against the fake store."""

    @pytest.mark.asyncio
    async def test_creates_missing_bundle(self, store, manager):
        owner = store.add(make_dexserver())

        created = await manager.ensure("idp", owner=owner)

        assert created is True
        secret = store.peek("Secret", SECRET_MTLS_NAME, "idp")
        assert set(secret["data"]) == SECRET_KEYS
        assert all(secret["data"].values())
        assert secret["metadata"]["annotations"][MTLS_CERT_EXPIRY_ANNOTATION] == (
            "2024-05-30T09:00:00Z"
        )
        assert secret["metadata"]["labels"]["app"] == "dex"
        assert secret["metadata"]["labels"][OPERATOR_LABEL_KEY] == "dex-operator"
        owner_ref = secret["metadata"]["ownerReferences"][0]
        assert owner_ref["kind"] == "DexServer"
        assert owner_ref["uid"] == owner["metadata"]["uid"]
        assert store.writes == [("create", "Secret", "idp", SECRET_MTLS_NAME)]

    @pytest.mark.asyncio
    async def test_fresh_bundle_is_left_alone(self, store, manager):
        store.add(_bundle(format_expiry(NOW + timedelta(days=30))))

        created = await manager.ensure("idp")

        assert created is False
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_expiring_bundle_is_regenerated_in_place(self, store, manager):
        store.add(_bundle(format_expiry(NOW + timedelta(hours=1))))

        created = await manager.ensure("idp")

        assert created is True
        assert store.writes == [("update", "Secret", "idp", SECRET_MTLS_NAME)]
        secret = store.peek("Secret", SECRET_MTLS_NAME, "idp")
        assert base64.b64decode(secret["data"]["ca.crt"]) != b"old-ca"
        assert parse_expiry(
            secret["metadata"]["annotations"][MTLS_CERT_EXPIRY_ANNOTATION]
        ) == NOW + timedelta(days=90)

    @pytest.mark.asyncio
    async def test_corrupt_bundle_is_regenerated_regardless_of_window(self, store):
        manager = CertificateManager(store, renewal_window=timedelta(0), clock=lambda: NOW)
        store.add(_bundle("corrupted"))

        assert await manager.ensure("idp") is True
        assert store.writes_of("Secret") == [("update", "Secret", "idp", SECRET_MTLS_NAME)]

    @pytest.mark.asyncio
    async def test_renewal_replaces_the_ca(self, store, manager):
        await manager.ensure("idp")
        first_ca = store.peek("Secret", SECRET_MTLS_NAME, "idp")["data"]["ca.crt"]

        later = CertificateManager(store, clock=lambda: NOW + timedelta(days=89, hours=12))
        assert await later.ensure("idp") is True

        second_ca = store.peek("Secret", SECRET_MTLS_NAME, "idp")["data"]["ca.crt"]
        assert first_ca != second_ca

    @pytest.mark.asyncio
    async def test_regeneration_is_recorded(self, store):
        metrics = MagicMock()
        manager = CertificateManager(store, clock=lambda: NOW, metrics=metrics)

        await manager.ensure("idp")

        metrics.record_mtls_regeneration.assert_called_once_with(
            "idp", "missing", (NOW + timedelta(days=90)).timestamp()
        )

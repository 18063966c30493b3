from __future__ import annotations

import re
from datetime import timedelta

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID

from mcloud.authority import (
    CredentialAuthority,
    hash_token,
    node_request_message,
    sign_node_request,
    token_display_prefix,
    verify_certificate,
    verify_node_signature,
)
from mcloud.config import Settings
from mcloud.utils import utcnow


def test_ca_is_self_signed_and_marked_as_ca(authority: CredentialAuthority) -> None:
    ca = authority.create_ca()
    cert = x509.load_pem_x509_certificate(ca.cert_pem.encode("utf-8"))
    constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    assert constraints.ca is True
    assert cert.issuer == cert.subject
    assert "PRIVATE KEY" in ca.key_pem


def test_node_certificate_chains_to_issuing_ca(authority: CredentialAuthority) -> None:
    ca = authority.create_ca()
    issued = authority.issue_node_certificate(ca, "10.0.0.2", common_name="node-a")
    assert authority.verify_certificate(issued.cert_pem, ca.cert_pem)

    cert = x509.load_pem_x509_certificate(issued.cert_pem.encode("utf-8"))
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert [str(ip) for ip in san.get_values_for_type(x509.IPAddress)] == ["10.0.0.2"]
    usages = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert ExtendedKeyUsageOID.SERVER_AUTH in usages
    assert ExtendedKeyUsageOID.CLIENT_AUTH in usages


def test_certificate_from_other_ca_does_not_verify(authority: CredentialAuthority) -> None:
    ca = authority.create_ca()
    other = authority.create_ca()
    issued = authority.issue_node_certificate(other, "10.0.0.3", common_name="node-b")
    assert not verify_certificate(issued.cert_pem, ca.cert_pem)


def test_node_certificate_validity_is_capped(authority: CredentialAuthority) -> None:
    ca = authority.create_ca()
    issued = authority.issue_node_certificate(ca, "10.0.0.4", common_name="node-c")
    assert issued.expires_at <= utcnow() + timedelta(days=365, minutes=1)
    assert not verify_certificate(issued.cert_pem, ca.cert_pem, at=utcnow() + timedelta(days=400))


def test_node_cert_validity_above_a_year_is_rejected() -> None:
    with pytest.raises(ValueError):
        Settings(node_cert_validity_days=400, log_file="", adapter_mode="noop")


def test_bootstrap_token_shape(authority: CredentialAuthority) -> None:
    token = authority.generate_bootstrap_token("0f1e2d3c-aaaa-bbbb")
    assert re.fullmatch(r"mcloud-0f1e2d3c-[A-Za-z0-9]{16}", token)
    assert token_display_prefix(token) == "mcloud-0f1e2d3c"
    assert authority.generate_bootstrap_token("0f1e2d3c-aaaa-bbbb") != token


def test_hash_token_ignores_surrounding_whitespace() -> None:
    assert hash_token(" mcloud-abc-def ") == hash_token("mcloud-abc-def")


def test_signed_node_request_round_trip(authority: CredentialAuthority) -> None:
    ca = authority.create_ca()
    issued = authority.issue_node_certificate(ca, "10.0.0.5", common_name="node-d")
    message = node_request_message(action="heartbeat", node_id="node-d", signed_at=1700000000)
    signature = sign_node_request(key_pem=issued.key_pem, message=message)

    assert verify_node_signature(
        cert_pem=issued.cert_pem,
        ca_cert_pem=ca.cert_pem,
        message=message,
        signature_b64=signature,
    )
    tampered = node_request_message(action="leave", node_id="node-d", signed_at=1700000000)
    assert not verify_node_signature(
        cert_pem=issued.cert_pem,
        ca_cert_pem=ca.cert_pem,
        message=tampered,
        signature_b64=signature,
    )
    assert not verify_node_signature(
        cert_pem=issued.cert_pem,
        ca_cert_pem=ca.cert_pem,
        message=message,
        signature_b64="not base64!",
    )

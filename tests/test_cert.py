import ipaddress
import socket
import ssl
import threading
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
)
from cryptography.x509.oid import NameOID

from calnex.cert import Bundle, CertError, fetch, parse

HOST = "calnex01.example.com"
NOW = datetime.now(timezone.utc)


def _make_cert(key, dns_names=(), ips=(), common_name=HOST, start=None, end=None):
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start or NOW - timedelta(days=1))
        .not_valid_after(end or NOW + timedelta(days=1))
    )
    sans = [x509.DNSName(n) for n in dns_names]
    sans += [x509.IPAddress(ipaddress.ip_address(i)) for i in ips]
    if sans:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(sans), critical=False
        )
    return builder.sign(key, hashes.SHA256())


def _cert_pem(cert):
    return cert.public_bytes(Encoding.PEM)


def _key_pem(key, fmt=PrivateFormat.TraditionalOpenSSL):
    return key.private_bytes(Encoding.PEM, fmt, NoEncryption())


@pytest.fixture(scope="module")
def key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def host_cert(key):
    return _make_cert(key, dns_names=[HOST])


@pytest.fixture(scope="module")
def other_cert(key):
    return _make_cert(key, dns_names=["other.example.com"], common_name="other")


def test_parse_cert_and_pkcs1_key(key, host_cert):
    bundle = parse(_cert_pem(host_cert) + _key_pem(key))
    assert len(bundle.certs) == 1
    assert bundle.certs[0].public_bytes(Encoding.DER) == host_cert.public_bytes(
        Encoding.DER
    )
    assert bundle.priv_key.private_numbers() == key.private_numbers()


def test_parse_pkcs8_key(key):
    bundle = parse(_key_pem(key, PrivateFormat.PKCS8))
    assert bundle.certs == []
    assert bundle.priv_key.private_numbers() == key.private_numbers()


def test_parse_empty_data_gives_empty_bundle():
    bundle = parse(b"")
    assert bundle.certs == []
    assert bundle.priv_key is None


def test_parse_garbage_fails():
    with pytest.raises(CertError, match="failed to parse certificate PEM"):
        parse(b"this is not pem data")


def test_parse_trailing_garbage_fails(host_cert):
    with pytest.raises(CertError, match="failed to parse certificate PEM"):
        parse(_cert_pem(host_cert) + b"junk")


def test_parse_multiple_private_keys(key):
    with pytest.raises(CertError, match="multiple private keys in PEM"):
        parse(_key_pem(key) + _key_pem(key, PrivateFormat.PKCS8))


def test_parse_non_rsa_pkcs8_key():
    ec_key = ec.generate_private_key(ec.SECP256R1())
    with pytest.raises(CertError, match="only RSA private keys are supported"):
        parse(_key_pem(ec_key, PrivateFormat.PKCS8))


def test_parse_ec_private_key_block_unsupported():
    ec_key = ec.generate_private_key(ec.SECP256R1())
    with pytest.raises(CertError, match="unsupported PEM block"):
        parse(_key_pem(ec_key, PrivateFormat.TraditionalOpenSSL))


def test_parse_unknown_block_unsupported():
    block = b"-----BEGIN PUBLIC THING-----\nAAAA\n-----END PUBLIC THING-----\n"
    with pytest.raises(CertError, match="unsupported PEM block"):
        parse(block)


def test_equals_ignores_order(host_cert, other_cert):
    first = Bundle(certs=[host_cert, other_cert])
    second = Bundle(certs=[other_cert, host_cert])
    assert first.equals(second)
    assert second.equals(first)


def test_equals_detects_differences(host_cert, other_cert):
    assert not Bundle(certs=[host_cert]).equals(Bundle(certs=[host_cert, other_cert]))
    assert not Bundle(certs=[host_cert, other_cert]).equals(Bundle(certs=[host_cert]))
    assert not Bundle(certs=[host_cert]).equals(Bundle(certs=[other_cert]))


def test_equals_does_not_modify_other(host_cert, other_cert):
    other = Bundle(certs=[host_cert, other_cert])
    Bundle(certs=[host_cert]).equals(other)
    assert len(other.certs) == 2


def test_verify_ok(key, host_cert, other_cert):
    bundle = parse(_cert_pem(other_cert) + _cert_pem(host_cert) + _key_pem(key))
    bundle.verify(HOST, NOW)
    assert bundle.priv_key is not None and len(bundle.certs) == 2


def test_verify_no_private_key(host_cert):
    with pytest.raises(CertError, match="bundle has no private key"):
        Bundle(certs=[host_cert]).verify(HOST, NOW)


def test_verify_no_certs(key):
    with pytest.raises(CertError, match="bundle has no certificates"):
        Bundle(priv_key=key).verify(HOST, NOW)


def test_verify_wrong_host(key, other_cert):
    with pytest.raises(CertError, match="no certificate for supplied host"):
        Bundle(certs=[other_cert], priv_key=key).verify(HOST, NOW)


def test_verify_common_name_only_is_not_enough(key):
    cert = _make_cert(key, common_name=HOST)
    with pytest.raises(CertError, match="no certificate for supplied host"):
        Bundle(certs=[cert], priv_key=key).verify(HOST, NOW)


def test_verify_wildcard(key):
    cert = _make_cert(key, dns_names=["*.example.com"])
    bundle = Bundle(certs=[cert], priv_key=key)
    bundle.verify(HOST, NOW)
    with pytest.raises(CertError, match="no certificate for supplied host"):
        bundle.verify("a.b.example.com", NOW)


def test_verify_ip_address(key):
    cert = _make_cert(key, ips=["fd00::d"])
    bundle = Bundle(certs=[cert], priv_key=key)
    bundle.verify("fd00::d", NOW)
    with pytest.raises(CertError, match="no certificate for supplied host"):
        bundle.verify("fd00::e", NOW)


def test_verify_not_yet_valid(key):
    cert = _make_cert(
        key, dns_names=[HOST], start=NOW + timedelta(days=1), end=NOW + timedelta(days=2)
    )
    with pytest.raises(CertError, match="certificate is not yet valid"):
        Bundle(certs=[cert], priv_key=key).verify(HOST, NOW)


def test_verify_expired(key):
    cert = _make_cert(
        key, dns_names=[HOST], start=NOW - timedelta(days=2), end=NOW - timedelta(days=1)
    )
    with pytest.raises(CertError, match="certificate has expired"):
        Bundle(certs=[cert], priv_key=key).verify(HOST, NOW)


def test_fetch_returns_served_certificate(tmp_path, key, host_cert):
    cert_file = tmp_path / "cert.pem"
    key_file = tmp_path / "key.pem"
    cert_file.write_bytes(_cert_pem(host_cert))
    key_file.write_bytes(_key_pem(key))

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(str(cert_file), str(key_file))
    server = socket.create_server(("127.0.0.1", 0))
    server.settimeout(10)
    port = server.getsockname()[1]

    def serve():
        try:
            conn, _ = server.accept()
            with context.wrap_socket(conn, server_side=True) as tls:
                tls.recv(1)
        except (OSError, ssl.SSLError):
            pass

    thread = threading.Thread(target=serve)
    thread.start()
    try:
        bundle = fetch(f"127.0.0.1:{port}")
    finally:
        thread.join(timeout=10)
        server.close()

    assert bundle.equals(Bundle(certs=[host_cert]))
    assert bundle.priv_key is None


def test_fetch_connection_refused():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    with pytest.raises(CertError):
        fetch(f"127.0.0.1:{port}")


def test_fetch_missing_port():
    with pytest.raises(CertError, match="missing port"):
        fetch("localhost")
"""PEM certificate bundles: parsing, comparison, validation and retrieval."""

from __future__ import annotations

import base64
import binascii
import ipaddress
import re
import socket
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    load_der_private_key,
)

ERR_BUNDLE_NO_CERT_FOR_HOST = "bundle has no certificate for supplied host"
ERR_BUNDLE_NO_CERTS = "bundle has no certificates"
ERR_BUNDLE_NO_PRIV_KEY = "bundle has no private key"
ERR_CERT_EXPIRED = "certificate has expired"
ERR_CERT_NOT_YET_VALID = "certificate is not yet valid"
ERR_FAILED_TO_PARSE_PEM = "failed to parse certificate PEM"
ERR_MULTIPLE_PRIV_KEYS = "multiple private keys in PEM"
ERR_ONLY_RSA = "only RSA private keys are supported"
ERR_UNSUPPORTED_PEM_BLOCK = "unsupported PEM block"

_PEM_BLOCK = re.compile(
    rb"-----BEGIN ([^\r\n]*?)-----[ \t]*\r?\n(.*?)-----END \1-----[ \t]*(?:\r?\n|\Z)",
    re.S,
)

_KEY_ERRORS = (ValueError, TypeError, UnsupportedAlgorithm)


class CertError(Exception):
    """Raised when a certificate bundle is invalid or cannot be obtained."""


@dataclass(eq=False)
class Bundle:
    """A private key together with its certificates."""

    certs: list[x509.Certificate] = field(default_factory=list)
    priv_key: rsa.RSAPrivateKey | None = None

    def equals(self, other: Bundle) -> bool:
        """Return True if both bundles hold exactly the same certificates."""
        remaining = [cert.public_bytes(Encoding.DER) for cert in other.certs]
        for cert in self.certs:
            try:
                remaining.remove(cert.public_bytes(Encoding.DER))
            except ValueError:
                return False
        return not remaining

    def verify(self, hostname: str, when: datetime) -> None:
        """Check the bundle has a key and a certificate for ``hostname`` valid at ``when``."""
        if self.priv_key is None:
            raise CertError(ERR_BUNDLE_NO_PRIV_KEY)
        if not self.certs:
            raise CertError(ERR_BUNDLE_NO_CERTS)

        host_cert = None
        for cert in self.certs:
            if _matches_hostname(cert, hostname):
                host_cert = cert
        if host_cert is None:
            raise CertError(ERR_BUNDLE_NO_CERT_FOR_HOST)

        moment = when.astimezone(timezone.utc)
        if _validity(host_cert, "not_valid_before") > moment:
            raise CertError(ERR_CERT_NOT_YET_VALID)
        if _validity(host_cert, "not_valid_after") < moment:
            raise CertError(ERR_CERT_EXPIRED)


def _validity(cert: x509.Certificate, attr: str) -> datetime:
    value = getattr(cert, f"{attr}_utc", None)
    if value is None:
        value = getattr(cert, attr).replace(tzinfo=timezone.utc)
    return value


def _subject_alt_names(cert: x509.Certificate) -> x509.SubjectAlternativeName | None:
    try:
        return cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return None


def _match_pattern(pattern: str, host: str) -> bool:
    pattern = pattern.lower().rstrip(".")
    host = host.rstrip(".")
    if not pattern or not host:
        return False
    pattern_parts = pattern.split(".")
    host_parts = host.split(".")
    if len(pattern_parts) != len(host_parts):
        return False
    for index, (part, host_part) in enumerate(zip(pattern_parts, host_parts)):
        if index == 0 and part == "*":
            continue
        if part != host_part:
            return False
    return True


def _matches_hostname(cert: x509.Certificate, hostname: str) -> bool:
    names = _subject_alt_names(cert)
    if names is None:
        return False

    candidate = hostname
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        address = None
    if address is not None:
        return address in names.get_values_for_type(x509.IPAddress)

    host = hostname.lower()
    return any(
        _match_pattern(pattern, host)
        for pattern in names.get_values_for_type(x509.DNSName)
    )


def _block_bytes(body: bytes) -> bytes:
    lines = body.split(b"\n")
    if lines and b":" in lines[0]:
        blank = next((i for i, line in enumerate(lines) if not line.strip()), None)
        if blank is None:
            raise CertError(ERR_FAILED_TO_PARSE_PEM)
        lines = lines[blank + 1:]
    try:
        return base64.b64decode(b"".join(line.strip() for line in lines), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CertError(ERR_FAILED_TO_PARSE_PEM) from exc


def _load_rsa_key(der: bytes, pkcs8: bool) -> rsa.RSAPrivateKey:
    try:
        key = load_der_private_key(der, None)
    except _KEY_ERRORS as exc:
        raise CertError(f"failed to parse private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        if pkcs8:
            raise CertError(ERR_ONLY_RSA)
        raise CertError("failed to parse private key: not an RSA key")
    return key


def parse(data: bytes) -> Bundle:
    """Parse PEM data holding certificates and at most one RSA private key."""
    bundle = Bundle()
    rest = bytes(data)
    while rest:
        match = _PEM_BLOCK.search(rest)
        if match is None:
            raise CertError(ERR_FAILED_TO_PARSE_PEM)
        block_type = match.group(1).decode("ascii", "replace")
        der = _block_bytes(match.group(2))
        rest = rest[match.end():]

        if block_type == "CERTIFICATE":
            try:
                bundle.certs.append(x509.load_der_x509_certificate(der))
            except ValueError as exc:
                raise CertError(f"failed to parse certificate: {exc}") from exc
        elif "PRIVATE KEY" in block_type:
            if bundle.priv_key is not None:
                raise CertError(ERR_MULTIPLE_PRIV_KEYS)
            if block_type == "RSA PRIVATE KEY":
                bundle.priv_key = _load_rsa_key(der, pkcs8=False)
            elif block_type == "PRIVATE KEY":
                bundle.priv_key = _load_rsa_key(der, pkcs8=True)
            else:
                raise CertError(ERR_UNSUPPORTED_PEM_BLOCK)
        else:
            raise CertError(ERR_UNSUPPORTED_PEM_BLOCK)
    return bundle


def _split_host_port(hostport: str) -> tuple[str, int]:
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0 or hostport[end + 1:end + 2] != ":":
            raise CertError(f"invalid address: {hostport}")
        host, port = hostport[1:end], hostport[end + 2:]
    else:
        host, sep, port = hostport.rpartition(":")
        if not sep:
            raise CertError(f"missing port in address: {hostport}")
        if ":" in host:
            raise CertError(f"too many colons in address: {hostport}")
    try:
        return host, int(port)
    except ValueError:
        raise CertError(f"invalid port in address: {hostport}") from None


def fetch(host: str) -> Bundle:
    """Connect to ``host:port`` over TLS and return the certificates it presents."""
    name, port = _split_host_port(host)
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    try:
        ipaddress.ip_address(name)
        server_hostname = None
    except ValueError:
        server_hostname = name or None

    try:
        with socket.create_connection((name, port)) as raw:
            with context.wrap_socket(raw, server_hostname=server_hostname) as tls:
                chain_getter = getattr(tls, "get_unverified_chain", None)
                chain = chain_getter() if chain_getter is not None else None
                if chain and all(isinstance(item, bytes) for item in chain):
                    ders = list(chain)
                else:
                    leaf = tls.getpeercert(binary_form=True)
                    ders = [leaf] if leaf else []
    except OSError as exc:
        raise CertError(str(exc)) from exc

    try:
        return Bundle(certs=[x509.load_der_x509_certificate(der) for der in ders])
    except ValueError as exc:
        raise CertError(f"failed to parse certificate: {exc}") from exc
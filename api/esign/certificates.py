"""
Self-issued signing material for detached PDF signatures.

The chain is root CA -> intermediate CA -> signing certificate. It is built
lazily on first use and cached for the lifetime of the process; every signature
produced by this process is made with the same leaf key. Regenerating the
material (``clear_cache``) only affects signatures made afterwards.

This module is the only owner of key material. Other components receive a
:class:`SigningMaterial` and use :meth:`SigningMaterial.pdf_signer`.
"""

import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from asn1crypto import keys as asn1_keys, x509 as asn1_x509
from pyhanko.sign import signers
from pyhanko_certvalidator.registry import SimpleCertificateStore

from . import config
from .errors import CertificateAuthorityError

logger = logging.getLogger(__name__)

MIN_KEY_SIZE = 2048

_lock = threading.Lock()
_cached: Optional["SigningMaterial"] = None


@dataclass(frozen=True)
class SigningMaterial:
    """Leaf key and certificate plus the (intermediate, root) chain."""
    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    chain: Tuple[x509.Certificate, ...]

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    @property
    def common_name(self) -> str:
        attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return attrs[0].value if attrs else self.subject

    def pdf_signer(self) -> signers.SimpleSigner:
        """Wrap the material in a pyHanko signer; the chain is embedded in every signature."""
        der = serialization.Encoding.DER
        return signers.SimpleSigner(
            signing_cert=asn1_x509.Certificate.load(self.certificate.public_bytes(der)),
            signing_key=asn1_keys.PrivateKeyInfo.load(
                self.private_key.private_bytes(
                    der, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
                )
            ),
            cert_registry=SimpleCertificateStore.from_certs(
                [asn1_x509.Certificate.load(c.public_bytes(der)) for c in self.chain]
            ),
        )

    def to_pkcs12(self, password: Optional[bytes] = None) -> bytes:
        encryption = (
            serialization.BestAvailableEncryption(password)
            if password
            else serialization.NoEncryption()
        )
        return pkcs12.serialize_key_and_certificates(
            name=config.PRODUCT_NAME.encode("utf-8"),
            key=self.private_key,
            cert=self.certificate,
            cas=list(self.chain),
            encryption_algorithm=encryption,
        )


def materialize() -> SigningMaterial:
    """Return the process-wide signing material, building it exactly once."""
    global _cached
    material = _cached
    if material is not None:
        return material
    with _lock:
        if _cached is None:
            _cached = _load_configured() or _generate_chain()
        return _cached


def clear_cache() -> None:
    global _cached
    with _lock:
        _cached = None


def _load_configured() -> Optional[SigningMaterial]:
    if not (config.SIGNING_CERT_PEM and config.SIGNING_KEY_PEM):
        return None
    try:
        key = serialization.load_pem_private_key(config.SIGNING_KEY_PEM.encode(), password=None)
        cert = x509.load_pem_x509_certificate(config.SIGNING_CERT_PEM.encode())
        chain = (
            tuple(x509.load_pem_x509_certificates(config.SIGNING_CHAIN_PEM.encode()))
            if config.SIGNING_CHAIN_PEM
            else ()
        )
    except Exception as exc:
        raise CertificateAuthorityError(f"configured signing material is invalid: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CertificateAuthorityError("configured signing key must be an RSA key")
    logger.info("loaded configured signing certificate %s", cert.subject.rfc4514_string())
    return SigningMaterial(private_key=key, certificate=cert, chain=chain)


def _name(common_name: str, unit: Optional[str] = None) -> x509.Name:
    attrs = [
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, config.PRODUCT_ORGANIZATION),
        x509.NameAttribute(NameOID.COUNTRY_NAME, config.PRODUCT_COUNTRY),
    ]
    if unit:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, unit))
    return x509.Name(attrs)


def _new_key() -> rsa.RSAPrivateKey:
    if config.SIGNING_KEY_SIZE < MIN_KEY_SIZE:
        raise CertificateAuthorityError(
            f"SIGNING_KEY_SIZE must be at least {MIN_KEY_SIZE} bits, got {config.SIGNING_KEY_SIZE}"
        )
    return rsa.generate_private_key(public_exponent=65537, key_size=config.SIGNING_KEY_SIZE)


def _issue(subject, subject_key, issuer, issuer_key, *, ca: bool, not_before, not_after):
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.subject if issuer is not None else subject)
        .public_key(subject_key.public_key())
        .serial_number(int.from_bytes(secrets.token_bytes(16), "big") >> 1)
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=not ca,
                content_commitment=not ca,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=ca,
                crl_sign=ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(subject_key.public_key()), critical=False)
    )
    if issuer is not None:
        builder = builder.add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
    if not ca:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.EMAIL_PROTECTION]), critical=False
        )
    return builder.sign(issuer_key, hashes.SHA256())


def _generate_chain() -> SigningMaterial:
    logger.info("generating signing certificate chain")
    not_before = datetime.now(timezone.utc) - timedelta(minutes=5)
    not_after = not_before + timedelta(days=365 * config.SIGNING_CERT_VALIDITY_YEARS)
    try:
        root_key = _new_key()
        root = _issue(
            _name(f"{config.PRODUCT_NAME} Root CA"), root_key, None, root_key,
            ca=True, not_before=not_before, not_after=not_after,
        )
        sub_key = _new_key()
        sub = _issue(
            _name(f"{config.PRODUCT_NAME} Sub-CA"), sub_key, root, root_key,
            ca=True, not_before=not_before, not_after=not_after,
        )
        leaf_key = _new_key()
        leaf = _issue(
            _name(config.PRODUCT_NAME, unit=config.PRODUCT_NAME), leaf_key, sub, sub_key,
            ca=False, not_before=not_before, not_after=not_after,
        )
    except CertificateAuthorityError:
        raise
    except Exception as exc:
        raise CertificateAuthorityError(f"certificate generation failed: {exc}") from exc
    logger.info("signing certificate chain generated: %s", leaf.subject.rfc4514_string())
    return SigningMaterial(private_key=leaf_key, certificate=leaf, chain=(sub, root))

"""Verification of RFC 3161 timestamp tokens.

:func:`verify` answers one question: does this token prove that
``original_digest`` existed at the token's genTime, according to a TSA the
caller trusts? The checks run in a fixed order and stop at the first
failure:

1. Message imprint: algorithm and digest must match byte for byte.
2. Nonce: when the caller sent one, the token must echo it.
3. Signature: the CMS signed attributes must bind the TSTInfo, and the
   signature must verify against the signer certificate's public key.
   The signer certificate must then chain to a trusted certificate, with
   every link valid at genTime.

An imprint mismatch is an ordinary answer, not an error: it comes back as
``RejectionReason.DIGEST_MISMATCH`` so callers can tell "wrong document"
apart from "could not verify" (the other reasons) and from broken input
(exceptions).

The cryptographic work is done by :class:`SignatureVerifier`, built on the
``cryptography`` package. It can be replaced by passing ``verifier=`` to
:func:`verify`.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, padding, rsa
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import ExtendedKeyUsageOID

from . import der
from .errors import ChainUntrusted, MalformedEncoding, SignatureInvalid
from .models import (
    DigestAlgorithm,
    RejectionReason,
    TimeStampToken,
    VerificationResult,
)
from .request import check_digest
from .response import OID_TST_INFO

logger = logging.getLogger("skstamp.verify")

OID_CONTENT_TYPE = "1.2.840.113549.1.9.3"
OID_MESSAGE_DIGEST = "1.2.840.113549.1.9.4"
OID_SIGNING_CERTIFICATE = "1.2.840.113549.1.9.16.2.12"
OID_SIGNING_CERTIFICATE_V2 = "1.2.840.113549.1.9.16.2.47"
OID_RSASSA_PSS = "1.2.840.113549.1.1.10"

MAX_CHAIN_DEPTH = 8

_HASHES: dict[DigestAlgorithm, type[hashes.HashAlgorithm]] = {
    DigestAlgorithm.SHA1: hashes.SHA1,
    DigestAlgorithm.SHA224: hashes.SHA224,
    DigestAlgorithm.SHA256: hashes.SHA256,
    DigestAlgorithm.SHA384: hashes.SHA384,
    DigestAlgorithm.SHA512: hashes.SHA512,
}

CertificateInput = Union[x509.Certificate, bytes]


# ---------------------------------------------------------------------------
# Certificate loading
# ---------------------------------------------------------------------------


def load_certificates(data: bytes) -> list[x509.Certificate]:
    """Load certificates from a PEM bundle or a single DER certificate.

    Raises:
        MalformedEncoding: If the data holds no readable certificate.
    """
    try:
        if b"-----BEGIN CERTIFICATE-----" in data:
            certificates = x509.load_pem_x509_certificates(data)
        else:
            certificates = [x509.load_der_x509_certificate(data)]
    except (ValueError, x509.InvalidVersion) as exc:
        raise MalformedEncoding(f"cannot load certificate: {exc}") from exc
    return [_decoded(cert) for cert in certificates]


def _decoded(cert: x509.Certificate) -> x509.Certificate:
    """Return ``cert`` once its lazily parsed fields are known to decode."""
    try:
        cert.issuer
        cert.subject
        cert.extensions
    except (ValueError, x509.DuplicateExtension, x509.UnsupportedGeneralNameType) as exc:
        raise MalformedEncoding(f"cannot decode certificate: {exc}") from exc
    return cert


def load_certificate_file(path: Union[str, Path]) -> list[x509.Certificate]:
    """Load the trusted chain from a PEM or DER file.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    return load_certificates(Path(path).read_bytes())


def _as_certificates(chain: Iterable[CertificateInput]) -> list[x509.Certificate]:
    certificates: list[x509.Certificate] = []
    for item in chain:
        if isinstance(item, x509.Certificate):
            certificates.append(_decoded(item))
        else:
            certificates.extend(load_certificates(bytes(item)))
    return certificates


def _fingerprint(cert: x509.Certificate) -> bytes:
    return cert.fingerprint(hashes.SHA256())


def _subject(cert: x509.Certificate) -> str:
    return cert.subject.rfc4514_string()


def _subject_key_identifier(cert: x509.Certificate) -> bytes:
    try:
        return cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value.digest
    except x509.ExtensionNotFound:
        pass
    try:
        return x509.SubjectKeyIdentifier.from_public_key(cert.public_key()).digest
    except (ValueError, UnsupportedAlgorithm):
        return b""


def _digest_algorithm(oid: str) -> DigestAlgorithm:
    algorithm = DigestAlgorithm.from_oid(oid)
    if algorithm is None:
        raise SignatureInvalid(f"unsupported digest algorithm {oid}")
    return algorithm


def _signed_attributes(signed_attrs_der: bytes) -> dict[str, list[der.Element]]:
    """Map attribute OID -> attribute values from the raw ``[0]`` SET."""
    attributes: dict[str, list[der.Element]] = {}
    for attribute in der.decode_all(signed_attrs_der, der.context_tag(0)).children():
        reader = der.SequenceReader(attribute.expect(der.SEQUENCE))
        oid = der.decode_oid(reader.next(der.OBJECT_IDENTIFIER))
        attributes[oid] = reader.next(der.SET).children()
    return attributes


# ---------------------------------------------------------------------------
# Cryptographic primitive
# ---------------------------------------------------------------------------


class SignatureVerifier:
    """Signature and certificate-chain checks for timestamp tokens.

    Args:
        require_timestamping_eku: Require the signer certificate to carry
            the id-kp-timeStamping extended key usage (RFC 3161 2.3).
    """

    def __init__(self, require_timestamping_eku: bool = True) -> None:
        self.require_timestamping_eku = require_timestamping_eku

    def find_signer(
        self,
        token: TimeStampToken,
        candidates: Sequence[x509.Certificate],
    ) -> x509.Certificate:
        """Locate the certificate named by the token's SignerIdentifier.

        Raises:
            ChainUntrusted: If no candidate matches; the caller has to
                supply the TSA certificate.
        """
        info = token.signer_info
        for cert in candidates:
            if info.subject_key_identifier is not None:
                if _subject_key_identifier(cert) == info.subject_key_identifier:
                    return cert
            elif (
                cert.serial_number == info.serial_number
                and cert.issuer.public_bytes() == info.issuer_der
            ):
                return cert
        raise ChainUntrusted(
            "signing certificate is neither embedded in the token nor in the trusted chain"
        )

    def verify_signature(self, token: TimeStampToken, signer: x509.Certificate) -> None:
        """Check the CMS signature over the token's TSTInfo.

        With signed attributes present, the message-digest attribute must
        equal the hash of the TSTInfo, the content-type attribute must be
        id-ct-TSTInfo, any ESS signing-certificate attribute must match the
        signer, and the signature covers the DER SET OF attributes.
        Without them, the signature covers the TSTInfo bytes directly.

        Raises:
            SignatureInvalid: On any mismatch.
        """
        info = token.signer_info
        algorithm = _digest_algorithm(info.digest_algorithm_oid)

        if info.signed_attrs_der is None:
            signed_bytes = token.tst_info_der
        else:
            attributes = _signed_attributes(info.signed_attrs_der)
            self._check_content_type(attributes)
            self._check_message_digest(attributes, token.tst_info_der, algorithm)
            self._check_signing_certificate(attributes, signer)
            signed_bytes = der.retag(info.signed_attrs_der, der.SET)

        try:
            public_key = signer.public_key()
        except UnsupportedAlgorithm as exc:
            raise SignatureInvalid(f"unsupported signer key: {exc}") from exc
        except ValueError as exc:
            raise MalformedEncoding(f"cannot decode the signer public key: {exc}") from exc

        self._verify_bytes(
            public_key,
            info.signature,
            signed_bytes,
            info.signature_algorithm_oid,
            _HASHES[algorithm](),
        )

    def verify_chain(
        self,
        signer: x509.Certificate,
        intermediates: Sequence[x509.Certificate],
        trusted: Sequence[x509.Certificate],
        at: datetime,
    ) -> None:
        """Check that ``signer`` chains to a certificate in ``trusted``.

        Every certificate on the path, the trusted one included, must be
        valid at ``at`` (the token's genTime).

        Raises:
            ChainUntrusted: If no such path exists.
        """
        if not trusted:
            raise ChainUntrusted("no trusted certificates were supplied")
        if self.require_timestamping_eku:
            self._check_timestamping_usage(signer)

        anchors = {_fingerprint(cert) for cert in trusted}
        pool = list(intermediates) + list(trusted)
        current = signer
        for depth in range(MAX_CHAIN_DEPTH):
            self._check_validity(current, at)
            if _fingerprint(current) in anchors:
                return
            current = self._find_issuer(current, pool, depth)
        raise ChainUntrusted(f"certificate chain is longer than {MAX_CHAIN_DEPTH}")

    # ------------------------------------------------------------------
    # Signed attribute checks
    # ------------------------------------------------------------------

    @staticmethod
    def _check_content_type(attributes: dict[str, list[der.Element]]) -> None:
        values = attributes.get(OID_CONTENT_TYPE)
        if not values:
            raise SignatureInvalid("signed attributes lack the content-type attribute")
        if der.decode_oid(values[0]) != OID_TST_INFO:
            raise SignatureInvalid("content-type attribute is not id-ct-TSTInfo")

    @staticmethod
    def _check_message_digest(
        attributes: dict[str, list[der.Element]],
        content: bytes,
        algorithm: DigestAlgorithm,
    ) -> None:
        values = attributes.get(OID_MESSAGE_DIGEST)
        if not values:
            raise SignatureInvalid("signed attributes lack the message-digest attribute")
        expected = der.decode_octet_string(values[0])
        if hashlib.new(algorithm.value, content).digest() != expected:
            raise SignatureInvalid("message-digest attribute does not match the TSTInfo")

    @staticmethod
    def _check_signing_certificate(
        attributes: dict[str, list[der.Element]],
        signer: x509.Certificate,
    ) -> None:
        """Match the ESS signing-certificate(-v2) attribute, when present."""
        cert_der = signer.public_bytes(Encoding.DER)
        for oid, default in (
            (OID_SIGNING_CERTIFICATE_V2, DigestAlgorithm.SHA256),
            (OID_SIGNING_CERTIFICATE, DigestAlgorithm.SHA1),
        ):
            values = attributes.get(oid)
            if not values:
                continue
            reader = der.SequenceReader(values[0].expect(der.SEQUENCE))
            cert_ids = reader.next(der.SEQUENCE).children()
            if not cert_ids:
                raise SignatureInvalid("signing-certificate attribute lists no certificate")
            cert_id = der.SequenceReader(cert_ids[0].expect(der.SEQUENCE))
            algorithm = default
            if oid == OID_SIGNING_CERTIFICATE_V2:
                hash_algorithm = cert_id.optional(der.SEQUENCE)
                if hash_algorithm is not None:
                    algorithm = _digest_algorithm(der.decode_algorithm_identifier(hash_algorithm))
            cert_hash = der.decode_octet_string(cert_id.next(der.OCTET_STRING))
            if hashlib.new(algorithm.value, cert_der).digest() != cert_hash:
                raise SignatureInvalid(
                    "signing-certificate attribute does not match the signer certificate"
                )

    @staticmethod
    def _verify_bytes(
        public_key,
        signature: bytes,
        data: bytes,
        signature_algorithm_oid: str,
        hash_algorithm: hashes.HashAlgorithm,
    ) -> None:
        try:
            if isinstance(public_key, rsa.RSAPublicKey):
                if signature_algorithm_oid == OID_RSASSA_PSS:
                    pad = padding.PSS(
                        mgf=padding.MGF1(hash_algorithm), salt_length=padding.PSS.AUTO
                    )
                else:
                    pad = padding.PKCS1v15()
                public_key.verify(signature, data, pad, hash_algorithm)
            elif isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(signature, data, ec.ECDSA(hash_algorithm))
            elif isinstance(public_key, dsa.DSAPublicKey):
                public_key.verify(signature, data, hash_algorithm)
            elif isinstance(public_key, (ed25519.Ed25519PublicKey, ed448.Ed448PublicKey)):
                public_key.verify(signature, data)
            else:
                raise SignatureInvalid(
                    f"unsupported signer key type {type(public_key).__name__}"
                )
        except InvalidSignature as exc:
            raise SignatureInvalid(
                "signature does not verify against the signer certificate"
            ) from exc

    # ------------------------------------------------------------------
    # Chain checks
    # ------------------------------------------------------------------

    @staticmethod
    def _check_timestamping_usage(signer: x509.Certificate) -> None:
        try:
            usage = signer.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        except x509.ExtensionNotFound:
            usage = []
        if ExtendedKeyUsageOID.TIME_STAMPING not in usage:
            raise ChainUntrusted(
                f"{_subject(signer)} is not authorised for time-stamping"
            )

    @staticmethod
    def _check_validity(cert: x509.Certificate, at: datetime) -> None:
        if not cert.not_valid_before_utc <= at <= cert.not_valid_after_utc:
            raise ChainUntrusted(
                f"certificate {_subject(cert)} is not valid at {at.isoformat()}"
            )

    @staticmethod
    def _can_issue(candidate: x509.Certificate, intermediates_below: int) -> bool:
        """Whether ``candidate`` may sign certificates at this path position.

        It must be a CA whose pathLenConstraint allows the CA certificates
        already below it, and whose key usage, when present, includes
        keyCertSign.
        """
        try:
            constraints = candidate.extensions.get_extension_for_class(
                x509.BasicConstraints
            ).value
        except x509.ExtensionNotFound:
            return False
        if not constraints.ca:
            return False
        if constraints.path_length is not None and constraints.path_length < intermediates_below:
            return False
        try:
            usage = candidate.extensions.get_extension_for_class(x509.KeyUsage).value
        except x509.ExtensionNotFound:
            return True
        return usage.key_cert_sign

    @classmethod
    def _find_issuer(
        cls,
        cert: x509.Certificate,
        pool: Sequence[x509.Certificate],
        intermediates_below: int,
    ) -> x509.Certificate:
        own = _fingerprint(cert)
        for candidate in pool:
            if candidate.subject != cert.issuer or _fingerprint(candidate) == own:
                continue
            if not cls._can_issue(candidate, intermediates_below):
                logger.debug("Skipping %s: not allowed to issue certificates", _subject(candidate))
                continue
            try:
                cert.verify_directly_issued_by(candidate)
            except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
                continue
            return candidate
        raise ChainUntrusted(f"no trusted issuer found for {_subject(cert)}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def verify(
    token: TimeStampToken,
    original_digest: bytes,
    algorithm: DigestAlgorithm,
    trusted_chain: Iterable[CertificateInput],
    *,
    nonce: Optional[int] = None,
    verifier: Optional[SignatureVerifier] = None,
) -> VerificationResult:
    """Verify a timestamp token against the digest it should cover.

    Args:
        token: Token from :func:`~skstamp.response.parse_response`.
        original_digest: Raw hash of the data that was timestamped.
        algorithm: Algorithm that produced ``original_digest``.
        trusted_chain: Trusted certificates (``x509.Certificate`` objects,
            PEM bundles or DER bytes).
        nonce: The nonce sent in the request, if any.
        verifier: Replacement cryptographic primitive.

    Returns:
        An accepted result carrying genTime, or a rejected result whose
        ``reason`` says which check failed.

    Raises:
        InvalidDigestLength: If ``original_digest`` does not fit
            ``algorithm``.
        MalformedEncoding: If embedded or trusted certificates, or the
            signed attributes, cannot be decoded.
    """
    check_digest(original_digest, algorithm)

    imprint = token.message_imprint
    if imprint.algorithm_oid != algorithm.oid:
        logger.warning(
            "Message imprint algorithm mismatch: token=%s, expected=%s",
            imprint.algorithm_oid,
            algorithm.oid,
        )
        return VerificationResult.reject(
            RejectionReason.DIGEST_MISMATCH,
            f"token imprint uses {imprint.algorithm_oid}, expected {algorithm.value}",
        )
    if imprint.digest != original_digest:
        logger.warning(
            "Message imprint mismatch: token=%s, computed=%s",
            imprint.digest.hex()[:16],
            original_digest.hex()[:16],
        )
        return VerificationResult.reject(
            RejectionReason.DIGEST_MISMATCH, "message imprint mismatch"
        )

    if nonce is not None and token.nonce != nonce:
        logger.warning("Nonce mismatch: sent=%d, echoed=%s", nonce, token.nonce)
        return VerificationResult.reject(
            RejectionReason.NONCE_MISMATCH,
            "token does not echo the request nonce"
            if token.nonce is None
            else "token echoes a different nonce",
        )

    verifier = verifier or SignatureVerifier()
    trusted = _as_certificates(trusted_chain)
    embedded = _as_certificates(token.certificates)
    try:
        signer = verifier.find_signer(token, embedded + trusted)
        verifier.verify_signature(token, signer)
        verifier.verify_chain(signer, embedded, trusted, token.gen_time)
    except SignatureInvalid as exc:
        logger.warning("Timestamp signature invalid: %s", exc)
        return VerificationResult.reject(RejectionReason.SIGNATURE_INVALID, str(exc))
    except ChainUntrusted as exc:
        logger.warning("Timestamp signer untrusted: %s", exc)
        return VerificationResult.reject(RejectionReason.CHAIN_UNTRUSTED, str(exc))

    logger.info(
        "Timestamp verified: serial=%d genTime=%s", token.serial_number, token.gen_time
    )
    return VerificationResult.accept(token.gen_time)

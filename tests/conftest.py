"""Shared fixtures for SKStamp tests.

Provides a throwaway PKI (root CA, TSA certificate, an untrusted signer)
generated with ``cryptography``, and an in-memory TSA that answers
TimeStampReqs with correctly signed TimeStampResps.
"""

import hashlib
from datetime import datetime, timezone
from typing import Optional, Sequence

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from skstamp import der
from skstamp.models import DigestAlgorithm
from skstamp.request import decode_request


GEN_TIME = datetime(2020, 1, 1, tzinfo=timezone.utc)
POLICY_OID = "1.2.3.4.1"

OID_SIGNED_DATA = "1.2.840.113549.1.7.2"
OID_TST_INFO = "1.2.840.113549.1.9.16.1.4"
OID_CONTENT_TYPE = "1.2.840.113549.1.9.3"
OID_MESSAGE_DIGEST = "1.2.840.113549.1.9.4"
OID_SIGNING_CERTIFICATE_V2 = "1.2.840.113549.1.9.16.2.47"
OID_ECDSA_WITH_SHA256 = "1.2.840.10045.4.3.2"

SHA1_FOO = bytes.fromhex("0beec7b5ea3f0fdbc95d0dd47f3c5bc275da8a33")


def _name(common_name: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "SKStamp Test"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


def _certificate(
    subject: str,
    key,
    issuer_name: x509.Name,
    issuer_key,
    *,
    ca: bool,
    eku: bool = True,
    path_length: Optional[int] = None,
    not_before: datetime = datetime(2019, 1, 1, tzinfo=timezone.utc),
    not_after: datetime = datetime(2040, 1, 1, tzinfo=timezone.utc),
) -> x509.Certificate:
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.BasicConstraints(ca=ca, path_length=path_length if ca else None),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        )
    )
    if not ca and eku:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.TIME_STAMPING]), critical=True
        )
    return builder.sign(issuer_key, hashes.SHA256())


class TestPki:
    """Root CA, a TSA certificate it issued, and an unrelated signer."""

    __test__ = False

    def __init__(self) -> None:
        self.root_key = ec.generate_private_key(ec.SECP256R1())
        self.root_cert = _certificate(
            "SKStamp Test Root", self.root_key, _name("SKStamp Test Root"),
            self.root_key, ca=True,
        )

        self.tsa_key = ec.generate_private_key(ec.SECP256R1())
        self.tsa_cert = _certificate(
            "SKStamp Test TSA", self.tsa_key, self.root_cert.subject,
            self.root_key, ca=False,
        )

        self.no_eku_key = ec.generate_private_key(ec.SECP256R1())
        self.no_eku_cert = _certificate(
            "SKStamp Test Plain Signer", self.no_eku_key, self.root_cert.subject,
            self.root_key, ca=False, eku=False,
        )

        self.expired_key = ec.generate_private_key(ec.SECP256R1())
        self.expired_cert = _certificate(
            "SKStamp Test Expired TSA", self.expired_key, self.root_cert.subject,
            self.root_key, ca=False,
            not_before=datetime(2015, 1, 1, tzinfo=timezone.utc),
            not_after=datetime(2018, 1, 1, tzinfo=timezone.utc),
        )

        self.rogue_key = ec.generate_private_key(ec.SECP256R1())
        self.rogue_cert = _certificate(
            "SKStamp Rogue TSA", self.rogue_key, _name("SKStamp Rogue TSA"),
            self.rogue_key, ca=False,
        )

        # A leaf issuing its own TSA certificate
        self.forged_key = ec.generate_private_key(ec.SECP256R1())
        self.forged_cert = _certificate(
            "SKStamp Forged TSA", self.forged_key, self.no_eku_cert.subject,
            self.no_eku_key, ca=False,
        )

        # root -> intermediate (pathLen 0) -> TSA, and a sub-CA the
        # intermediate was not allowed to create
        self.intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.intermediate_cert = _certificate(
            "SKStamp Test Intermediate", self.intermediate_key, self.root_cert.subject,
            self.root_key, ca=True, path_length=0,
        )
        self.issued_tsa_key = ec.generate_private_key(ec.SECP256R1())
        self.issued_tsa_cert = _certificate(
            "SKStamp Intermediate TSA", self.issued_tsa_key,
            self.intermediate_cert.subject, self.intermediate_key, ca=False,
        )
        self.sub_ca_key = ec.generate_private_key(ec.SECP256R1())
        self.sub_ca_cert = _certificate(
            "SKStamp Test Sub CA", self.sub_ca_key, self.intermediate_cert.subject,
            self.intermediate_key, ca=True,
        )
        self.sub_ca_tsa_key = ec.generate_private_key(ec.SECP256R1())
        self.sub_ca_tsa_cert = _certificate(
            "SKStamp Sub CA TSA", self.sub_ca_tsa_key, self.sub_ca_cert.subject,
            self.sub_ca_key, ca=False,
        )

    @property
    def root_pem(self) -> bytes:
        return self.root_cert.public_bytes(Encoding.PEM)


class SimulatedTsa:
    """Builds signed TimeStampResps the way a real TSA would.

    The default signer is the trusted TSA certificate; tests swap
    ``key``/``cert`` to simulate rogue or misconfigured authorities.
    """

    def __init__(self, pki: TestPki) -> None:
        self.pki = pki
        self.key = pki.tsa_key
        self.cert = pki.tsa_cert
        self.serial = 1000

    # ------------------------------------------------------------------

    def tst_info(
        self,
        digest: bytes,
        algorithm: DigestAlgorithm,
        *,
        nonce: Optional[int] = None,
        gen_time: datetime = GEN_TIME,
        accuracy: bool = True,
    ) -> bytes:
        self.serial += 1
        items = [
            der.encode_integer(1),
            der.encode_oid(POLICY_OID),
            der.encode_sequence(
                der.encode_algorithm_identifier(algorithm.oid),
                der.encode_octet_string(digest),
            ),
            der.encode_integer(self.serial),
            der.encode_generalized_time(gen_time),
        ]
        if accuracy:
            # seconds=1, millis=500
            items.append(der.encode_sequence(
                der.encode_integer(1),
                der.encode_tlv(der.context_tag(0, constructed=False), b"\x01\xf4"),
            ))
        if nonce is not None:
            items.append(der.encode_integer(nonce))
        return der.encode_sequence(*items)

    def signed_attributes(self, tst_info: bytes, cert: x509.Certificate) -> bytes:
        """Return the signed attributes as a DER SET OF (tag 0x31)."""
        cert_hash = hashlib.sha256(cert.public_bytes(Encoding.DER)).digest()
        return der.encode_set(
            der.encode_sequence(
                der.encode_oid(OID_CONTENT_TYPE),
                der.encode_set(der.encode_oid(OID_TST_INFO)),
            ),
            der.encode_sequence(
                der.encode_oid(OID_MESSAGE_DIGEST),
                der.encode_set(der.encode_octet_string(hashlib.sha256(tst_info).digest())),
            ),
            der.encode_sequence(
                der.encode_oid(OID_SIGNING_CERTIFICATE_V2),
                der.encode_set(der.encode_sequence(der.encode_sequence(
                    der.encode_sequence(der.encode_octet_string(cert_hash))
                ))),
            ),
        )

    def token(
        self,
        tst_info: bytes,
        *,
        embed_certs: bool = True,
        use_ski: bool = False,
        with_signed_attrs: bool = True,
        corrupt_signature: bool = False,
        extra_certs: Sequence[x509.Certificate] = (),
    ) -> bytes:
        """Wrap a TSTInfo in a signed CMS ContentInfo.

        ``extra_certs`` are embedded after the signer certificate.
        """
        if with_signed_attrs:
            signed_set = self.signed_attributes(tst_info, self.cert)
            signature = self.key.sign(signed_set, ec.ECDSA(hashes.SHA256()))
            attrs_field = der.retag(signed_set, der.context_tag(0))
        else:
            signature = self.key.sign(tst_info, ec.ECDSA(hashes.SHA256()))
            attrs_field = b""
        if corrupt_signature:
            signature = signature[:-1] + bytes([signature[-1] ^ 0x01])

        if use_ski:
            ski = self.cert.extensions.get_extension_for_class(
                x509.SubjectKeyIdentifier
            ).value.digest
            version, sid = 3, der.encode_tlv(der.context_tag(0, constructed=False), ski)
        else:
            version, sid = 1, der.encode_sequence(
                self.cert.issuer.public_bytes(),
                der.encode_integer(self.cert.serial_number),
            )

        signer_info = der.encode_sequence(
            der.encode_integer(version),
            sid,
            der.encode_algorithm_identifier(DigestAlgorithm.SHA256.oid),
            attrs_field,
            der.encode_algorithm_identifier(OID_ECDSA_WITH_SHA256, null_parameters=False),
            der.encode_octet_string(signature),
        )

        parts = [
            der.encode_integer(3),
            der.encode_set(der.encode_algorithm_identifier(DigestAlgorithm.SHA256.oid)),
            der.encode_sequence(
                der.encode_oid(OID_TST_INFO),
                der.encode_context(0, der.encode_octet_string(tst_info)),
            ),
        ]
        if embed_certs:
            parts.append(der.encode_context(0, b"".join(
                cert.public_bytes(Encoding.DER) for cert in [self.cert, *extra_certs]
            )))
        parts.append(der.encode_set(signer_info))

        return der.encode_sequence(
            der.encode_oid(OID_SIGNED_DATA),
            der.encode_context(0, der.encode_sequence(*parts)),
        )

    def response(
        self,
        digest: bytes,
        algorithm: DigestAlgorithm,
        *,
        nonce: Optional[int] = None,
        gen_time: datetime = GEN_TIME,
        **token_options,
    ) -> bytes:
        """Build a granted TimeStampResp for ``digest``."""
        tst_info = self.tst_info(digest, algorithm, nonce=nonce, gen_time=gen_time)
        return der.encode_sequence(
            der.encode_sequence(der.encode_integer(0)),
            self.token(tst_info, **token_options),
        )

    def reply_to(self, request_der: bytes, **options) -> bytes:
        """Answer a DER TimeStampReq, echoing its imprint and nonce."""
        request = decode_request(request_der)
        return self.response(
            request.digest, request.algorithm, nonce=request.nonce, **options
        )

    @staticmethod
    def rejection(status: int = 2, text: str = "bad request", fail_bits: int = 0x04) -> bytes:
        """Build a TimeStampResp that refuses the request.

        ``fail_bits`` is the first octet of the PKIFailureInfo BIT STRING;
        0x04 sets bit 5 (badDataFormat).
        """
        return der.encode_sequence(
            der.encode_sequence(
                der.encode_integer(status),
                der.encode_sequence(der.encode_utf8_string(text)),
                der.encode_bit_string(bytes([fail_bits]), unused_bits=2),
            )
        )


@pytest.fixture(scope="session")
def pki() -> TestPki:
    """A freshly generated test PKI, shared across the session."""
    return TestPki()


@pytest.fixture
def tsa(pki: TestPki) -> SimulatedTsa:
    """An in-memory TSA signing with the trusted test certificate."""
    return SimulatedTsa(pki)


@pytest.fixture
def ca_file(pki: TestPki, tmp_path) -> str:
    """The test root certificate written to a PEM file."""
    path = tmp_path / "root.pem"
    path.write_bytes(pki.root_pem)
    return str(path)


@pytest.fixture
def sample_pdf() -> bytes:
    """Minimal valid PDF bytes for testing."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj<</Type/Catalog/Pages 2 0 R>>endobj\n"
        b"2 0 obj<</Type/Pages/Kids[3 0 R]/Count 1>>endobj\n"
        b"3 0 obj<</Type/Page/MediaBox[0 0 612 792]/Parent 2 0 R>>endobj\n"
        b"xref\n0 4\n"
        b"0000000000 65535 f \n"
        b"0000000009 00000 n \n"
        b"0000000058 00000 n \n"
        b"0000000115 00000 n \n"
        b"trailer<</Size 4/Root 1 0 R>>\n"
        b"startxref\n190\n%%EOF"
    )

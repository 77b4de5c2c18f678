"""Pydantic models for RFC 3161 timestamping.

These models represent the data structures involved in Time Stamping
Authority (TSA) interactions: digest algorithms, timestamp requests, the
signed token returned by a TSA, and verification results. All protocol
models are frozen; a request or token never changes once it exists.
"""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

_DIGEST_OIDS = {
    "sha1": "1.3.14.3.2.26",
    "sha224": "2.16.840.1.101.3.4.2.4",
    "sha256": "2.16.840.1.101.3.4.2.1",
    "sha384": "2.16.840.1.101.3.4.2.2",
    "sha512": "2.16.840.1.101.3.4.2.3",
}

_DIGEST_SIZES = {
    "sha1": 20,
    "sha224": 28,
    "sha256": 32,
    "sha384": 48,
    "sha512": 64,
}


class DigestAlgorithm(str, Enum):
    """Hash algorithms supported for timestamp requests.

    The value doubles as the :mod:`hashlib` name. SHA-1 is kept for
    interoperability with older TSAs; SHA-256 is the default.
    """

    SHA1 = "sha1"
    SHA224 = "sha224"
    SHA256 = "sha256"
    SHA384 = "sha384"
    SHA512 = "sha512"

    @property
    def oid(self) -> str:
        """Dotted OID used in AlgorithmIdentifier."""
        return _DIGEST_OIDS[self.value]

    @property
    def digest_size(self) -> int:
        """Length in bytes of a digest produced by this algorithm."""
        return _DIGEST_SIZES[self.value]

    @classmethod
    def from_oid(cls, oid: str) -> Optional["DigestAlgorithm"]:
        """Return the algorithm for a dotted OID, or None if unknown."""
        for name, known in _DIGEST_OIDS.items():
            if known == oid:
                return cls(name)
        return None


class PKIStatus(IntEnum):
    """PKIStatus values from RFC 3161 section 2.4.2."""

    GRANTED = 0
    GRANTED_WITH_MODS = 1
    REJECTION = 2
    WAITING = 3
    REVOCATION_WARNING = 4
    REVOCATION_NOTIFICATION = 5


class RejectionReason(str, Enum):
    """Why a token was not accepted by the verifier.

    ``DIGEST_MISMATCH`` is the business outcome "this document was not the
    one timestamped"; the other reasons mean verification itself could not
    succeed (bad nonce, bad signature, untrusted signer).
    """

    DIGEST_MISMATCH = "digest_mismatch"
    NONCE_MISMATCH = "nonce_mismatch"
    SIGNATURE_INVALID = "signature_invalid"
    CHAIN_UNTRUSTED = "chain_untrusted"


class TimestampStatus(str, Enum):
    """Status of a document timestamping operation."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TimestampConfig(BaseModel):
    """Configuration for TSA connections and timestamp operations.

    Attributes:
        tsa_url: URL of the Time Stamping Authority endpoint.
        hash_algorithm: Hash algorithm to use for the timestamp request.
        timeout_seconds: HTTP request timeout in seconds.
        request_cert: Whether to request the TSA certificate in the response.
        nonce: Whether to include a random nonce in requests (prevents replay).
        policy_id: TSA policy OID to request (optional).
        username: HTTP basic-auth user for TSAs that require an account.
        password: HTTP basic-auth password.
        headers: Extra HTTP headers sent with every request.
        ca_file: PEM/DER file holding the trusted TSA certificate chain.
    """

    tsa_url: str = "https://freetsa.org/tsr"
    hash_algorithm: DigestAlgorithm = DigestAlgorithm.SHA256
    timeout_seconds: float = 10
    request_cert: bool = True
    nonce: bool = True
    policy_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    ca_file: Optional[str] = None

    model_config = {"populate_by_name": True}

    @property
    def auth(self) -> Optional[tuple[str, str]]:
        """Basic-auth credentials, or None when no user is configured."""
        if self.username is None:
            return None
        return (self.username, self.password or "")


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class TimeStampRequest(BaseModel):
    """An RFC 3161 TimeStampReq before DER encoding.

    Attributes:
        algorithm: Digest algorithm of the message imprint.
        digest: Raw hash bytes of the data being timestamped.
        policy_id: Requested TSA policy OID.
        nonce: Random value the TSA must echo back (replay protection).
        cert_req: Ask the TSA to embed its signing certificate.
    """

    algorithm: DigestAlgorithm
    digest: bytes
    policy_id: Optional[str] = None
    nonce: Optional[int] = None
    cert_req: bool = True

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Token
# ---------------------------------------------------------------------------


class MessageImprint(BaseModel):
    """The (algorithm, digest) pair a token asserts was timestamped."""

    algorithm_oid: str
    digest: bytes

    model_config = {"frozen": True}

    @property
    def algorithm(self) -> Optional[DigestAlgorithm]:
        return DigestAlgorithm.from_oid(self.algorithm_oid)


class Accuracy(BaseModel):
    """Accuracy bounds around genTime (RFC 3161 ``Accuracy``)."""

    seconds: Optional[int] = None
    millis: Optional[int] = None
    micros: Optional[int] = None

    model_config = {"frozen": True}

    @property
    def total_seconds(self) -> float:
        return (
            (self.seconds or 0)
            + (self.millis or 0) / 1000.0
            + (self.micros or 0) / 1_000_000.0
        )


class SignerInfo(BaseModel):
    """The CMS SignerInfo attached to a token.

    The signer is identified either by issuer and serial number or by
    subject key identifier. ``signed_attrs_der`` keeps the attributes
    exactly as received (under their IMPLICIT ``[0]`` tag) because the
    signature covers those bytes.
    """

    version: int
    issuer_der: Optional[bytes] = None
    serial_number: Optional[int] = None
    subject_key_identifier: Optional[bytes] = None
    digest_algorithm_oid: str
    signature_algorithm_oid: str
    signed_attrs_der: Optional[bytes] = None
    signature: bytes

    model_config = {"frozen": True}


class TimeStampToken(BaseModel):
    """A parsed, signed RFC 3161 timestamp token.

    Attributes:
        status: PKIStatus of the enclosing response (granted for bare tokens).
        status_string: Free text from the TSA, if any.
        version: TSTInfo version (1).
        policy_id: Policy OID under which the TSA issued the token.
        message_imprint: Algorithm and digest as claimed by the TSA.
        serial_number: Unique serial assigned by the TSA.
        gen_time: The time certified by the TSA (UTC).
        accuracy: Optional accuracy bounds around gen_time.
        ordering: TSTInfo ordering flag.
        nonce: Nonce echoed by the TSA, if one was sent.
        tsa_name_der: DER GeneralName of the TSA, if given.
        signer_info: The CMS SignerInfo over the TSTInfo.
        certificates: DER certificates embedded in the SignedData.
        tst_info_der: The signed TSTInfo bytes (eContent).
        token_der: The complete TimeStampToken (ContentInfo) bytes.
    """

    status: PKIStatus = PKIStatus.GRANTED
    status_string: Optional[str] = None
    version: int
    policy_id: str
    message_imprint: MessageImprint
    serial_number: int
    gen_time: datetime
    accuracy: Optional[Accuracy] = None
    ordering: bool = False
    nonce: Optional[int] = None
    tsa_name_der: Optional[bytes] = None
    signer_info: SignerInfo
    certificates: list[bytes] = Field(default_factory=list)
    tst_info_der: bytes
    token_der: bytes

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class VerificationResult(BaseModel):
    """Outcome of verifying a token against a digest.

    Either ``accepted`` is True and ``gen_time`` holds the certified time,
    or ``accepted`` is False and ``reason`` says why.
    """

    accepted: bool
    gen_time: Optional[datetime] = None
    reason: Optional[RejectionReason] = None
    detail: Optional[str] = None

    model_config = {"frozen": True}

    @classmethod
    def accept(cls, gen_time: datetime) -> "VerificationResult":
        return cls(accepted=True, gen_time=gen_time)

    @classmethod
    def reject(cls, reason: RejectionReason, detail: str) -> "VerificationResult":
        return cls(accepted=False, reason=reason, detail=detail)


# ---------------------------------------------------------------------------
# Workflow results
# ---------------------------------------------------------------------------


class SignedResponse(BaseModel):
    """A TSA reply as handed back to callers that store it as text.

    Attributes:
        response_string: Base64 of the raw DER TimeStampResp.
        response_time: genTime extracted from the reply.
        token: The parsed token.
    """

    response_string: str
    response_time: datetime
    token: TimeStampToken


class TimestampResult(BaseModel):
    """Complete result of a document timestamping operation.

    Bundles together the document identity, the hash that was timestamped,
    the parsed token, and the on-disk path where the token was saved.

    Attributes:
        result_id: Unique identifier.
        file_path: Absolute path to the file that was timestamped.
        file_hash: Hex-encoded hash of the file contents.
        hash_algorithm: Algorithm used to produce file_hash.
        tsa_url: TSA that issued the timestamp.
        tsr_path: Path to the saved .tsr file (DER-encoded token).
        token: The parsed timestamp token.
        verification_status: Verification outcome.
        rejection_reason: Why verification rejected the token, if it did.
        timestamped_at: When the operation was performed.
        error: Error message if the operation failed.
    """

    result_id: str = Field(default_factory=lambda: str(uuid4()))
    file_path: str
    file_hash: str
    hash_algorithm: DigestAlgorithm = DigestAlgorithm.SHA256
    tsa_url: str
    tsr_path: Optional[str] = None
    token: Optional[TimeStampToken] = None
    verification_status: TimestampStatus = TimestampStatus.PENDING
    rejection_reason: Optional[RejectionReason] = None
    timestamped_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        """Return True if the timestamp has been verified as valid."""
        return self.verification_status == TimestampStatus.VALID

    model_config = {"populate_by_name": True}

"""High-level RFC 3161 timestamping workflow.

Ties the protocol pieces together for applications that just want a
document timestamped: hash it, build a TimeStampReq, send it to a Time
Stamping Authority (TSA), parse and verify the reply, and keep the token
as a ``.tsr`` file next to the document.

Two flavours of entry point are provided:

* Document level: :func:`timestamp_document`, :func:`load_tsr_file` and
  :func:`verify_document`, which work with files on disk.
* Text level: :func:`sign_request`, :func:`get_timestamp_from_answer` and
  :func:`validate`, for callers that store the TSA reply as a base64
  string next to a record in a database, together with the certified
  time.

Default TSAs:
    - FreeTSA (https://freetsa.org/tsr), free, no account required
    - DigiCert (http://timestamp.digicert.com), commercial, widely trusted
    - GlobalSign (http://timestamp.globalsign.com/tsa/r6advanced1), commercial

Usage::

    from skstamp.models import TimestampConfig
    from skstamp.timestamp import timestamp_document

    config = TimestampConfig(ca_file="/etc/ssl/freetsa-chain.pem")
    result = timestamp_document("/path/to/contract.pdf", config=config)
    if result.is_valid:
        print(f"Timestamp verified: {result.token.gen_time}")
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Union

from .errors import (
    ChainUntrusted,
    MalformedEncoding,
    NonceMismatch,
    SignatureInvalid,
    TimestampError,
    VerificationError,
)
from .models import (
    DigestAlgorithm,
    RejectionReason,
    SignedResponse,
    TimeStampRequest,
    TimeStampToken,
    TimestampConfig,
    TimestampResult,
    TimestampStatus,
    VerificationResult,
)
from .request import build_request, encode_request
from .response import load_token, parse_response
from .transport import Transport, send, submit_request
from .verify import CertificateInput, load_certificate_file, verify

logger = logging.getLogger("skstamp.timestamp")

# ---------------------------------------------------------------------------
# Default TSA endpoints
# ---------------------------------------------------------------------------

DEFAULT_TSA_URLS: list[str] = [
    "https://freetsa.org/tsr",
    "http://timestamp.digicert.com",
    "http://timestamp.globalsign.com/tsa/r6advanced1",
]

DEFAULT_TSA_URL = DEFAULT_TSA_URLS[0]

_CHUNK_SIZE = 1 << 16

_REASON_ERRORS: dict[RejectionReason, type[VerificationError]] = {
    RejectionReason.NONCE_MISMATCH: NonceMismatch,
    RejectionReason.SIGNATURE_INVALID: SignatureInvalid,
    RejectionReason.CHAIN_UNTRUSTED: ChainUntrusted,
}


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def hash_data(data: bytes, algorithm: DigestAlgorithm = DigestAlgorithm.SHA256) -> bytes:
    """Return the raw digest of ``data``."""
    return hashlib.new(algorithm.value, data).digest()


def hash_file(
    file_path: Union[str, Path],
    algorithm: DigestAlgorithm = DigestAlgorithm.SHA256,
) -> bytes:
    """Return the raw digest of a file's contents, read in chunks.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    hasher = hashlib.new(algorithm.value)
    with open(file_path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.digest()


def _decode_response_string(response_string: str) -> bytes:
    try:
        return base64.b64decode(response_string, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedEncoding(f"response string is not valid base64: {exc}") from exc


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Public API: request and submission
# ---------------------------------------------------------------------------


def create_timestamp_request(
    data: bytes,
    config: Optional[TimestampConfig] = None,
) -> TimeStampRequest:
    """Create an RFC 3161 TimeStampRequest for the given data.

    Hashes the data with the configured algorithm and honours the
    configured nonce, certificate and policy settings. Pass the result to
    :func:`~skstamp.request.encode_request` for the wire bytes, and keep
    it: its nonce is needed to verify the reply.

    Args:
        data: Raw bytes to timestamp (typically the document content).
        config: Timestamp configuration. Uses defaults if not provided.

    Example::

        pdf_bytes = Path("contract.pdf").read_bytes()
        request = create_timestamp_request(pdf_bytes)
        request_der = encode_request(request)
    """
    if config is None:
        config = TimestampConfig()

    return build_request(
        hash_data(data, config.hash_algorithm),
        config.hash_algorithm,
        nonce=config.nonce,
        cert_req=config.request_cert,
        policy_id=config.policy_id,
    )


def _submit(
    request_der: bytes,
    tsa_url: str,
    config: TimestampConfig,
    transport: Transport,
) -> bytes:
    return submit_request(
        request_der,
        tsa_url,
        timeout=config.timeout_seconds,
        headers=config.headers,
        auth=config.auth,
        transport=transport,
    )


def sign_request(
    request_der: bytes,
    tsa_url: Optional[str] = None,
    config: Optional[TimestampConfig] = None,
    transport: Transport = send,
) -> SignedResponse:
    """Submit a DER TimeStampReq and return the reply as storable text.

    Args:
        request_der: Encoded request bytes.
        tsa_url: TSA endpoint; defaults to the configured one.
        config: Timeout, auth and header settings.
        transport: Replacement for :func:`~skstamp.transport.send`.

    Returns:
        :class:`SignedResponse` with the base64 reply and its genTime.

    Raises:
        TransportFailure: If the TSA cannot be reached or errors out.
        TsaRejected: If the TSA refuses the request.
        MalformedEncoding: If the reply is not a TimeStampResp.
    """
    if config is None:
        config = TimestampConfig()
    url = tsa_url or config.tsa_url

    body = _submit(request_der, url, config, transport)
    token = parse_response(body)
    return SignedResponse(
        response_string=base64.b64encode(body).decode("ascii"),
        response_time=token.gen_time,
        token=token,
    )


def get_timestamp_from_answer(response_string: str) -> datetime:
    """Return the certified genTime from a base64 TSA reply.

    Raises:
        MalformedEncoding: If the string is not a base64 TimeStampResp.
        TsaRejected: If the reply is a rejection.
        TimestampNotFound: If the reply carries no genTime.
    """
    return parse_response(_decode_response_string(response_string)).gen_time


# ---------------------------------------------------------------------------
# Public API: verification
# ---------------------------------------------------------------------------


def validate(
    digest: bytes,
    response_string: str,
    response_time: datetime,
    trusted_chain: Iterable[CertificateInput],
    algorithm: DigestAlgorithm = DigestAlgorithm.SHA256,
    nonce: Optional[int] = None,
) -> bool:
    """Check a stored base64 reply against the digest it should cover.

    Args:
        digest: Raw hash of the data that was timestamped.
        response_string: Base64 reply as returned by :func:`sign_request`.
        response_time: genTime stored alongside the reply.
        trusted_chain: Trusted TSA certificates.
        algorithm: Algorithm of ``digest``.
        nonce: Nonce of the original request, when it was kept.

    Returns:
        True if the token is valid for ``digest``; False if it covers a
        different digest.

    Raises:
        VerificationError: If the stored time differs from the token's
            genTime, or the nonce, signature or chain check fails (the
            matching subclass is raised).
        MalformedEncoding: If the reply cannot be decoded.
    """
    token = parse_response(_decode_response_string(response_string))
    if token.gen_time != _as_utc(response_time):
        raise VerificationError(
            f"response time was changed: token says {token.gen_time.isoformat()}, "
            f"stored value is {response_time.isoformat()}"
        )

    result = verify(token, digest, algorithm, trusted_chain, nonce=nonce)
    if result.accepted:
        return True
    if result.reason == RejectionReason.DIGEST_MISMATCH:
        return False
    raise _REASON_ERRORS[result.reason](result.detail)


def verify_document(
    file_path: Union[str, Path],
    token: TimeStampToken,
    trusted_chain: Iterable[CertificateInput],
    algorithm: Optional[DigestAlgorithm] = None,
    nonce: Optional[int] = None,
) -> VerificationResult:
    """Verify a token against a file on disk.

    Args:
        file_path: The document that should have been timestamped.
        token: Token from :func:`load_tsr_file` or a TSA reply.
        trusted_chain: Trusted TSA certificates.
        algorithm: Hash algorithm; defaults to the token's own imprint
            algorithm, falling back to SHA-256 when that is unknown.
        nonce: Nonce of the original request, when it was kept.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    if algorithm is None:
        algorithm = token.message_imprint.algorithm or DigestAlgorithm.SHA256
    digest = hash_file(file_path, algorithm)
    return verify(token, digest, algorithm, trusted_chain, nonce=nonce)


# ---------------------------------------------------------------------------
# Public API: high-level document timestamping
# ---------------------------------------------------------------------------


def timestamp_document(
    file_path: str,
    tsa_url: Optional[str] = None,
    config: Optional[TimestampConfig] = None,
    save_token: bool = True,
    transport: Transport = send,
) -> TimestampResult:
    """Hash a file, submit it to a TSA, verify the response, and save the token.

    This is the primary high-level entry point for timestamping. It:
    1. Reads and hashes the file.
    2. Builds a TimeStampReq (fresh nonce per TSA tried).
    3. Submits it to the TSA, falling back to the default TSAs.
    4. Verifies the token when ``config.ca_file`` names a trusted chain;
       otherwise the result stays PENDING.
    5. Saves the token as ``<file>.tsr`` alongside the document.

    Args:
        file_path: Absolute or relative path to the file to timestamp.
        tsa_url: TSA endpoint URL. Defaults to FreeTSA.
        config: Full configuration object. If provided, tsa_url is ignored.
        save_token: If True, save the .tsr file next to the document.
        transport: Replacement for :func:`~skstamp.transport.send`.

    Returns:
        :class:`TimestampResult` with all details including verification status.

    Raises:
        FileNotFoundError: If file_path or the configured CA file does not
            exist.

    Example::

        result = timestamp_document("/srv/contracts/nda.pdf")
        print(f"Token saved to: {result.tsr_path}")
    """
    path = Path(file_path).resolve()
    if not path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    if config is None:
        config = TimestampConfig(tsa_url=tsa_url or DEFAULT_TSA_URL)
    effective_url = config.tsa_url

    trusted = load_certificate_file(config.ca_file) if config.ca_file else None

    digest = hash_file(path, config.hash_algorithm)
    result = TimestampResult(
        file_path=str(path),
        file_hash=digest.hex(),
        hash_algorithm=config.hash_algorithm,
        tsa_url=effective_url,
        verification_status=TimestampStatus.PENDING,
    )

    # Try the configured TSA first, then fall back to the default list
    tsa_candidates = [effective_url] + [
        u for u in DEFAULT_TSA_URLS if u != effective_url
    ]

    token: Optional[TimeStampToken] = None
    request: Optional[TimeStampRequest] = None
    errors: list[str] = []
    for candidate_url in tsa_candidates:
        request = build_request(
            digest,
            config.hash_algorithm,
            nonce=config.nonce,
            cert_req=config.request_cert,
            policy_id=config.policy_id,
        )
        try:
            body = _submit(encode_request(request), candidate_url, config, transport)
            token = parse_response(body)
        except TimestampError as exc:
            logger.warning("TSA %s failed: %s, trying next", candidate_url, exc)
            errors.append(f"{candidate_url}: {exc}")
            continue
        result.tsa_url = candidate_url
        break

    if token is None:
        result.verification_status = TimestampStatus.ERROR
        result.error = "All TSA endpoints failed: " + "; ".join(errors)
        logger.error(result.error)
        return result

    result.token = token

    if trusted is not None:
        verification = verify(
            token, digest, config.hash_algorithm, trusted, nonce=request.nonce
        )
        result.verification_status = (
            TimestampStatus.VALID if verification.accepted else TimestampStatus.INVALID
        )
        result.rejection_reason = verification.reason
    else:
        logger.info("No CA file configured; token for %s left unverified", path.name)

    if save_token:
        tsr_path = path.with_suffix(path.suffix + ".tsr")
        tsr_path.write_bytes(token.token_der)
        result.tsr_path = str(tsr_path)
        logger.info("Saved timestamp token to %s", tsr_path)

    return result


# ---------------------------------------------------------------------------
# Public API: token files
# ---------------------------------------------------------------------------


def load_tsr_file(tsr_path: Union[str, Path]) -> TimeStampToken:
    """Load and parse a .tsr file from disk.

    Accepts both a bare TimeStampToken (what :func:`timestamp_document`
    writes) and a full TimeStampResp (what ``openssl ts -reply`` writes).

    Raises:
        FileNotFoundError: If the .tsr file does not exist.
        MalformedEncoding: If the file is neither form.
    """
    path = Path(tsr_path).resolve()
    if not path.exists():
        raise FileNotFoundError(f"TSR file not found: {tsr_path}")
    return load_token(path.read_bytes())

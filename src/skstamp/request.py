"""RFC 3161 TimeStampReq construction and encoding.

TimeStampReq ::= SEQUENCE {
    version         INTEGER { v1(1) },
    messageImprint  MessageImprint,
    reqPolicy       TSAPolicyId OPTIONAL,
    nonce           INTEGER OPTIONAL,
    certReq         BOOLEAN DEFAULT FALSE,
    extensions      [0] IMPLICIT Extensions OPTIONAL
}

MessageImprint ::= SEQUENCE {
    hashAlgorithm   AlgorithmIdentifier,
    hashedMessage   OCTET STRING
}

Building a request is pure: nothing here touches the network or the
filesystem. The bytes returned by :func:`encode_request` are exactly what
the transport sends.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from . import der
from .errors import InvalidDigestLength, MalformedEncoding
from .models import DigestAlgorithm, TimeStampRequest

logger = logging.getLogger("skstamp.request")

NONCE_BITS = 64


def generate_nonce() -> int:
    """Return a positive random nonce of NONCE_BITS bits from a CSPRNG."""
    nonce = 0
    while nonce == 0:
        nonce = secrets.randbits(NONCE_BITS)
    return nonce


def check_digest(digest: bytes, algorithm: DigestAlgorithm) -> None:
    """Raise InvalidDigestLength unless digest fits the algorithm."""
    if len(digest) != algorithm.digest_size:
        raise InvalidDigestLength(algorithm.value, algorithm.digest_size, len(digest))


def build_request(
    digest: bytes,
    algorithm: DigestAlgorithm,
    *,
    nonce: bool = True,
    cert_req: bool = True,
    policy_id: Optional[str] = None,
) -> TimeStampRequest:
    """Build a TimeStampRequest for a pre-computed digest.

    Args:
        digest: Raw hash bytes (not hex).
        algorithm: Algorithm that produced the digest.
        nonce: Include a fresh random nonce the TSA must echo.
        cert_req: Ask the TSA to embed its signing certificate.
        policy_id: Optional TSA policy OID to request.

    Returns:
        The request. Keep it: its nonce is needed to verify the reply.

    Raises:
        InvalidDigestLength: If the digest length does not match the
            algorithm.
    """
    check_digest(digest, algorithm)
    request = TimeStampRequest(
        algorithm=algorithm,
        digest=bytes(digest),
        policy_id=policy_id,
        nonce=generate_nonce() if nonce else None,
        cert_req=cert_req,
    )
    logger.debug(
        "Built %s timestamp request for %s (nonce=%s, cert_req=%s)",
        algorithm.value,
        digest.hex()[:16],
        request.nonce is not None,
        cert_req,
    )
    return request


def encode_request(request: TimeStampRequest) -> bytes:
    """Serialize a TimeStampRequest to DER.

    certReq is DEFAULT FALSE, so DER omits it unless it is set.
    """
    message_imprint = der.encode_sequence(
        der.encode_algorithm_identifier(request.algorithm.oid),
        der.encode_octet_string(request.digest),
    )
    items = [der.encode_integer(1), message_imprint]
    if request.policy_id is not None:
        items.append(der.encode_oid(request.policy_id))
    if request.nonce is not None:
        items.append(der.encode_integer(request.nonce))
    if request.cert_req:
        items.append(der.encode_boolean(True))
    return der.encode_sequence(*items)


def decode_message_imprint(element: der.Element) -> tuple[str, bytes]:
    """Decode a MessageImprint into ``(algorithm_oid, digest)``."""
    reader = der.SequenceReader(element.expect(der.SEQUENCE))
    algorithm_oid = der.decode_algorithm_identifier(reader.next(der.SEQUENCE))
    digest = der.decode_octet_string(reader.next(der.OCTET_STRING))
    return algorithm_oid, digest


def decode_request(data: bytes) -> TimeStampRequest:
    """Decode DER TimeStampReq bytes back into a TimeStampRequest.

    Raises:
        MalformedEncoding: If the bytes are not a v1 TimeStampReq for a
            supported digest algorithm.
        InvalidDigestLength: If the imprint length does not fit its
            algorithm.
    """
    reader = der.SequenceReader(der.decode_all(data, der.SEQUENCE))
    version = der.decode_integer(reader.next(der.INTEGER))
    if version != 1:
        raise MalformedEncoding(f"unsupported TimeStampReq version {version}")

    algorithm_oid, digest = decode_message_imprint(reader.next(der.SEQUENCE))
    algorithm = DigestAlgorithm.from_oid(algorithm_oid)
    if algorithm is None:
        raise MalformedEncoding(f"unsupported digest algorithm {algorithm_oid}")
    check_digest(digest, algorithm)

    policy = reader.optional(der.OBJECT_IDENTIFIER)
    nonce = reader.optional(der.INTEGER)
    cert_req = reader.optional(der.BOOLEAN)
    reader.optional(der.context_tag(0))  # extensions are not interpreted
    if not reader.at_end():
        raise MalformedEncoding("unexpected trailing fields in TimeStampReq")

    return TimeStampRequest(
        algorithm=algorithm,
        digest=digest,
        policy_id=der.decode_oid(policy) if policy is not None else None,
        nonce=der.decode_integer(nonce) if nonce is not None else None,
        cert_req=der.decode_boolean(cert_req) if cert_req is not None else False,
    )

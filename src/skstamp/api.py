"""SKStamp REST API — FastAPI server for RFC 3161 timestamp handling.

The API never talks to a TSA itself. It builds requests that the caller
submits, and inspects or verifies the replies the caller got back, so a
browser or another service can use SKStamp without a Python runtime.

Binary payloads travel as base64 and digests as hex.
"""

import base64
import binascii
import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .errors import (
    InvalidDigestLength,
    MalformedEncoding,
    TimestampNotFound,
    TsaRejected,
)
from .models import DigestAlgorithm, RejectionReason, VerificationResult
from .request import build_request, encode_request
from .response import load_token
from .verify import load_certificates, verify

logger = logging.getLogger("skstamp.api")

app = FastAPI(
    title="SKStamp",
    description="RFC 3161 trusted timestamps: build requests, inspect and verify tokens.",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class BuildRequest(BaseModel):
    """Request body for building a TimeStampReq from a digest."""

    digest_hex: str
    algorithm: DigestAlgorithm = DigestAlgorithm.SHA256
    nonce: bool = True
    cert_req: bool = True
    policy_id: Optional[str] = None


class BuiltRequest(BaseModel):
    """A DER TimeStampReq ready to POST to a TSA."""

    request_b64: str
    algorithm: DigestAlgorithm
    digest_hex: str
    nonce: Optional[int] = None


class InspectRequest(BaseModel):
    """Request body carrying a TSA reply or a bare token."""

    response_b64: str


class TokenInfo(BaseModel):
    """Decoded token fields."""

    status: int
    status_string: Optional[str] = None
    gen_time: datetime
    serial_number: int
    policy_id: str
    algorithm_oid: str
    digest_hex: str
    nonce: Optional[int] = None
    accuracy_seconds: Optional[float] = None
    ordering: bool = False
    certificate_count: int = 0


class VerifyRequest(BaseModel):
    """Request body for verifying a token against a digest.

    ``trusted_certs_pem`` holds one or more PEM certificates.
    """

    response_b64: str
    digest_hex: str
    algorithm: DigestAlgorithm = DigestAlgorithm.SHA256
    trusted_certs_pem: str
    nonce: Optional[int] = None


class VerifyResponse(BaseModel):
    """Verification outcome."""

    accepted: bool
    gen_time: Optional[datetime] = None
    reason: Optional[RejectionReason] = None
    detail: Optional[str] = None


def _b64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Invalid base64 payload")


def _hex(value: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid hex digest")


def _load(response_b64: str):
    try:
        return load_token(_b64(response_b64))
    except MalformedEncoding as exc:
        raise HTTPException(status_code=400, detail=f"Malformed token: {exc}")
    except (TsaRejected, TimestampNotFound) as exc:
        raise HTTPException(status_code=422, detail=str(exc))


# ---------------------------------------------------------------------------
# Timestamp endpoints
# ---------------------------------------------------------------------------

@app.post("/api/requests", response_model=BuiltRequest, status_code=201)
async def create_request(req: BuildRequest) -> BuiltRequest:
    """Build a TimeStampReq for a pre-computed digest."""
    digest = _hex(req.digest_hex)
    try:
        request = build_request(
            digest,
            req.algorithm,
            nonce=req.nonce,
            cert_req=req.cert_req,
            policy_id=req.policy_id,
        )
        request_der = encode_request(request)
    except InvalidDigestLength as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid request: {exc}")

    return BuiltRequest(
        request_b64=base64.b64encode(request_der).decode("ascii"),
        algorithm=request.algorithm,
        digest_hex=request.digest.hex(),
        nonce=request.nonce,
    )


@app.post("/api/tokens/inspect", response_model=TokenInfo)
async def inspect_token(req: InspectRequest) -> TokenInfo:
    """Decode a TSA reply or bare token without verifying it."""
    token = _load(req.response_b64)
    return TokenInfo(
        status=int(token.status),
        status_string=token.status_string,
        gen_time=token.gen_time,
        serial_number=token.serial_number,
        policy_id=token.policy_id,
        algorithm_oid=token.message_imprint.algorithm_oid,
        digest_hex=token.message_imprint.digest.hex(),
        nonce=token.nonce,
        accuracy_seconds=token.accuracy.total_seconds if token.accuracy else None,
        ordering=token.ordering,
        certificate_count=len(token.certificates),
    )


@app.post("/api/tokens/verify", response_model=VerifyResponse)
async def verify_token(req: VerifyRequest) -> VerifyResponse:
    """Verify a token against a digest and a trusted certificate chain.

    A token that does not match is a normal 200 answer with
    ``accepted: false``; only unreadable input is an HTTP error.
    """
    token = _load(req.response_b64)
    digest = _hex(req.digest_hex)
    try:
        trusted = load_certificates(req.trusted_certs_pem.encode("utf-8"))
        result: VerificationResult = verify(
            token, digest, req.algorithm, trusted, nonce=req.nonce
        )
    except InvalidDigestLength as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except MalformedEncoding as exc:
        raise HTTPException(status_code=400, detail=f"Malformed input: {exc}")

    logger.info(
        "Verified token serial=%d: accepted=%s", token.serial_number, result.accepted
    )
    return VerifyResponse(
        accepted=result.accepted,
        gen_time=result.gen_time,
        reason=result.reason,
        detail=result.detail,
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health() -> dict:
    """Health check."""
    return {
        "status": "ok",
        "service": "skstamp",
        "version": "0.1.0",
    }

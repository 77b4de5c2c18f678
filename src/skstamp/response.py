"""RFC 3161 TimeStampResp / TimeStampToken decoding.

TimeStampResp ::= SEQUENCE {
    status          PKIStatusInfo,
    timeStampToken  TimeStampToken OPTIONAL
}

A TimeStampToken is a CMS ContentInfo wrapping SignedData whose
encapsulated content is the DER-encoded TSTInfo:

TSTInfo ::= SEQUENCE {
    version         INTEGER { v1(1) },
    policy          TSAPolicyId,
    messageImprint  MessageImprint,
    serialNumber    INTEGER,
    genTime         GeneralizedTime,
    accuracy        Accuracy OPTIONAL,
    ordering        BOOLEAN DEFAULT FALSE,
    nonce           INTEGER OPTIONAL,
    tsa             [0] GeneralName OPTIONAL,
    extensions      [1] IMPLICIT Extensions OPTIONAL
}

Parsing is a pure decode. The status is checked before anything else is
looked at, so a rejection is never mistaken for a token. The signer's
certificates and SignerInfo are decoded alongside the TSTInfo so the
verifier can work without another round trip to the TSA.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import der
from .errors import MalformedEncoding, TimestampNotFound, TsaRejected
from .models import (
    Accuracy,
    MessageImprint,
    PKIStatus,
    SignerInfo,
    TimeStampToken,
)
from .request import decode_message_imprint

logger = logging.getLogger("skstamp.response")

OID_SIGNED_DATA = "1.2.840.113549.1.7.2"
OID_TST_INFO = "1.2.840.113549.1.9.16.1.4"

# PKIFailureInfo named bits (RFC 3161 section 2.4.2)
FAILURE_INFO_NAMES: dict[int, str] = {
    0: "badAlg",
    2: "badRequest",
    5: "badDataFormat",
    14: "timeNotAvailable",
    15: "unacceptedPolicy",
    16: "unacceptedExtension",
    17: "addInfoNotAvailable",
    25: "systemFailure",
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_response(data: bytes) -> TimeStampToken:
    """Parse a DER-encoded TimeStampResp into a TimeStampToken.

    Args:
        data: Raw response body from the TSA.

    Returns:
        The parsed token, carrying the response's status fields.

    Raises:
        MalformedEncoding: If the bytes are not a TimeStampResp.
        TsaRejected: If the status is neither granted nor grantedWithMods.
        TimestampNotFound: If a granted response has no usable genTime.
    """
    reader = der.SequenceReader(der.decode_all(data, der.SEQUENCE))
    status, status_string, fail_info = _parse_status(reader.next(der.SEQUENCE))
    if status not in (PKIStatus.GRANTED, PKIStatus.GRANTED_WITH_MODS):
        logger.warning(
            "TSA response status is not granted: %d (%s)", status, status_string
        )
        raise TsaRejected(status, status_string, fail_info)

    token = reader.optional(der.SEQUENCE)
    if token is None:
        raise TimestampNotFound("granted response carries no TimeStampToken")
    if not reader.at_end():
        raise MalformedEncoding("unexpected trailing fields in TimeStampResp")
    return _parse_content_info(token, PKIStatus(status), status_string)


def parse_token(data: bytes) -> TimeStampToken:
    """Parse a bare DER TimeStampToken (CMS ContentInfo), as in .tsr files."""
    return _parse_content_info(
        der.decode_all(data, der.SEQUENCE), PKIStatus.GRANTED, None
    )


def load_token(data: bytes) -> TimeStampToken:
    """Parse either a full TimeStampResp or a bare TimeStampToken.

    A TimeStampResp opens with the PKIStatusInfo SEQUENCE; a ContentInfo
    opens with its contentType OID.
    """
    outer = der.decode_all(data, der.SEQUENCE)
    children = outer.children()
    if children and children[0].tag == der.SEQUENCE:
        return parse_response(data)
    if children and children[0].tag == der.OBJECT_IDENTIFIER:
        return parse_token(data)
    raise MalformedEncoding("data is neither a TimeStampResp nor a TimeStampToken")


# ---------------------------------------------------------------------------
# Structure decoders
# ---------------------------------------------------------------------------


def _single_child(element: der.Element) -> der.Element:
    children = element.children()
    if len(children) != 1:
        raise MalformedEncoding(
            f"explicit tag 0x{element.tag:02x} must wrap exactly one value"
        )
    return children[0]


def _implicit_integer(element: der.Element) -> int:
    return der.decode_integer(der.Element(der.INTEGER, element.value, element.raw))


def _parse_status(element: der.Element) -> tuple[int, Optional[str], list[str]]:
    """Decode PKIStatusInfo into ``(status, status_string, fail_info)``."""
    reader = der.SequenceReader(element)
    status = der.decode_integer(reader.next(der.INTEGER))

    status_string = None
    free_text = reader.optional(der.SEQUENCE)
    if free_text is not None:
        status_string = "; ".join(der.decode_string(s) for s in free_text.children())

    fail_info: list[str] = []
    failure_bits = reader.optional(der.BIT_STRING)
    if failure_bits is not None:
        fail_info = [
            FAILURE_INFO_NAMES.get(bit, f"bit{bit}")
            for bit in sorted(der.bit_string_flags(failure_bits))
        ]
    return status, status_string, fail_info


def _parse_content_info(
    element: der.Element,
    status: PKIStatus,
    status_string: Optional[str],
) -> TimeStampToken:
    """Decode ContentInfo -> SignedData -> TSTInfo plus signer material."""
    reader = der.SequenceReader(element.expect(der.SEQUENCE))
    content_type = der.decode_oid(reader.next(der.OBJECT_IDENTIFIER))
    if content_type != OID_SIGNED_DATA:
        raise MalformedEncoding(f"token content type is {content_type}, not signedData")
    signed_data = _single_child(reader.next(der.context_tag(0))).expect(der.SEQUENCE)

    sd = der.SequenceReader(signed_data)
    der.decode_integer(sd.next(der.INTEGER))
    sd.next(der.SET)  # digestAlgorithms, repeated in the SignerInfo

    encap = der.SequenceReader(sd.next(der.SEQUENCE))
    econtent_type = der.decode_oid(encap.next(der.OBJECT_IDENTIFIER))
    if econtent_type != OID_TST_INFO:
        raise MalformedEncoding(f"encapsulated content is {econtent_type}, not TSTInfo")
    econtent = encap.optional(der.context_tag(0))
    if econtent is None:
        raise TimestampNotFound("token carries no TSTInfo content")
    tst_info_der = der.decode_octet_string(_single_child(econtent))

    certificates: list[bytes] = []
    cert_set = sd.optional(der.context_tag(0))
    if cert_set is not None:
        # Only plain X.509 certificates are kept; other CertificateChoices
        # alternatives use context tags and are skipped.
        certificates = [c.raw for c in cert_set.children() if c.tag == der.SEQUENCE]
    sd.optional(der.context_tag(1))  # crls

    signer_infos = sd.next(der.SET).children()
    if not signer_infos:
        raise MalformedEncoding("SignedData has no SignerInfo")
    if len(signer_infos) > 1:
        logger.debug("Token has %d SignerInfos; using the first", len(signer_infos))
    signer_info = _parse_signer_info(signer_infos[0])

    fields = _parse_tst_info(tst_info_der)
    token = TimeStampToken(
        status=status,
        status_string=status_string,
        signer_info=signer_info,
        certificates=certificates,
        tst_info_der=tst_info_der,
        token_der=element.raw,
        **fields,
    )
    logger.debug(
        "Parsed timestamp token serial=%d genTime=%s", token.serial_number, token.gen_time
    )
    return token


def _parse_tst_info(data: bytes) -> dict:
    reader = der.SequenceReader(der.decode_all(data, der.SEQUENCE))
    version = der.decode_integer(reader.next(der.INTEGER))
    policy_id = der.decode_oid(reader.next(der.OBJECT_IDENTIFIER))
    algorithm_oid, digest = decode_message_imprint(reader.next(der.SEQUENCE))
    serial_number = der.decode_integer(reader.next(der.INTEGER))

    gen_time_element = reader.optional(der.GENERALIZED_TIME)
    if gen_time_element is None:
        raise TimestampNotFound("TSTInfo has no genTime")
    try:
        gen_time = der.decode_generalized_time(gen_time_element)
    except MalformedEncoding as exc:
        raise TimestampNotFound(f"genTime is unusable: {exc}") from exc

    accuracy = None
    accuracy_element = reader.optional(der.SEQUENCE)
    if accuracy_element is not None:
        accuracy = _parse_accuracy(accuracy_element)

    ordering_element = reader.optional(der.BOOLEAN)
    nonce_element = reader.optional(der.INTEGER)
    tsa_element = reader.optional(der.context_tag(0))
    reader.optional(der.context_tag(1))  # extensions are not interpreted
    if not reader.at_end():
        raise MalformedEncoding("unexpected trailing fields in TSTInfo")

    return {
        "version": version,
        "policy_id": policy_id,
        "message_imprint": MessageImprint(algorithm_oid=algorithm_oid, digest=digest),
        "serial_number": serial_number,
        "gen_time": gen_time,
        "accuracy": accuracy,
        "ordering": der.decode_boolean(ordering_element) if ordering_element is not None else False,
        "nonce": der.decode_integer(nonce_element) if nonce_element is not None else None,
        "tsa_name_der": _single_child(tsa_element).raw if tsa_element is not None else None,
    }


def _parse_accuracy(element: der.Element) -> Accuracy:
    """Accuracy ::= SEQUENCE { seconds INTEGER OPTIONAL,
    millis [0] IMPLICIT INTEGER OPTIONAL, micros [1] IMPLICIT INTEGER OPTIONAL }"""
    reader = der.SequenceReader(element)
    seconds = reader.optional(der.INTEGER)
    millis = reader.optional(der.context_tag(0, constructed=False))
    micros = reader.optional(der.context_tag(1, constructed=False))
    if not reader.at_end():
        raise MalformedEncoding("unexpected trailing fields in Accuracy")
    return Accuracy(
        seconds=der.decode_integer(seconds) if seconds is not None else None,
        millis=_implicit_integer(millis) if millis is not None else None,
        micros=_implicit_integer(micros) if micros is not None else None,
    )


def _parse_signer_info(element: der.Element) -> SignerInfo:
    """Decode a CMS SignerInfo.

    SignerInfo ::= SEQUENCE {
        version, sid, digestAlgorithm, signedAttrs [0] IMPLICIT OPTIONAL,
        signatureAlgorithm, signature OCTET STRING,
        unsignedAttrs [1] IMPLICIT OPTIONAL }
    """
    reader = der.SequenceReader(element.expect(der.SEQUENCE))
    version = der.decode_integer(reader.next(der.INTEGER))

    issuer_der = serial_number = subject_key_identifier = None
    sid = reader.next()
    if sid.tag == der.SEQUENCE:
        sid_reader = der.SequenceReader(sid)
        issuer_der = sid_reader.next(der.SEQUENCE).raw
        serial_number = der.decode_integer(sid_reader.next(der.INTEGER))
    elif sid.tag == der.context_tag(0, constructed=False):
        subject_key_identifier = sid.value
    else:
        raise MalformedEncoding(f"unsupported SignerIdentifier tag 0x{sid.tag:02x}")

    digest_algorithm_oid = der.decode_algorithm_identifier(reader.next(der.SEQUENCE))
    signed_attrs = reader.optional(der.context_tag(0))
    signature_algorithm_oid = der.decode_algorithm_identifier(reader.next(der.SEQUENCE))
    signature = der.decode_octet_string(reader.next(der.OCTET_STRING))
    reader.optional(der.context_tag(1))  # unsignedAttrs

    return SignerInfo(
        version=version,
        issuer_der=issuer_der,
        serial_number=serial_number,
        subject_key_identifier=subject_key_identifier,
        digest_algorithm_oid=digest_algorithm_oid,
        signature_algorithm_oid=signature_algorithm_oid,
        signed_attrs_der=signed_attrs.raw if signed_attrs is not None else None,
        signature=signature,
    )

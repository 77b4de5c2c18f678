"""Minimal ASN.1 DER codec for Time-Stamp Protocol messages.

Covers exactly the universal types that appear in RFC 3161 requests and
responses and in the CMS SignedData envelope that carries a token:

    BOOLEAN, INTEGER, BIT STRING, OCTET STRING, NULL, OBJECT IDENTIFIER,
    UTF8String (plus the legacy string types on decode), SEQUENCE, SET,
    GeneralizedTime, and context-specific tags.

Encoding helpers return complete TLV byte strings that can be concatenated
into larger structures. Decoding is done with :func:`decode`, which returns
an :class:`Element` and the number of bytes it consumed; the typed
``decode_*`` helpers then check the tag and convert the content octets.
Every decoding failure raises :class:`~skstamp.errors.MalformedEncoding`,
so truncated or tampered input can never escape as an ``IndexError``.

Usage::

    from skstamp import der

    blob = der.encode_sequence(der.encode_integer(1), der.encode_null())
    element = der.decode_all(blob, der.SEQUENCE)
    version = der.decode_integer(element.children()[0])
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .errors import MalformedEncoding, UnsupportedTimeFormat

# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

BOOLEAN = 0x01
INTEGER = 0x02
BIT_STRING = 0x03
OCTET_STRING = 0x04
NULL = 0x05
OBJECT_IDENTIFIER = 0x06
UTF8_STRING = 0x0C
PRINTABLE_STRING = 0x13
IA5_STRING = 0x16
GENERALIZED_TIME = 0x18
SEQUENCE = 0x30
SET = 0x31

CONSTRUCTED = 0x20
CONTEXT = 0x80

_STRING_TAGS = (UTF8_STRING, PRINTABLE_STRING, IA5_STRING)

# Lengths above 2**64 cannot describe anything a TSA sends.
_MAX_LENGTH_OCTETS = 8

_GENERALIZED_TIME = re.compile(
    rb"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})(?:\.(\d+))?(.*)$",
    re.DOTALL,
)


def context_tag(number: int, constructed: bool = True) -> int:
    """Return the identifier octet for a context-specific tag ``[number]``."""
    if not 0 <= number < 0x1F:
        raise ValueError(f"context tag number out of range: {number}")
    return CONTEXT | (CONSTRUCTED if constructed else 0) | number


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_length(n: int) -> bytes:
    """Encode an ASN.1 DER length field.

    Args:
        n: The length value to encode.

    Returns:
        DER-encoded length bytes (short form below 128, long form above).
    """
    if n < 0:
        raise ValueError(f"negative length: {n}")
    if n < 0x80:
        return bytes([n])
    body = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(body)]) + body


def encode_tlv(tag: int, value: bytes) -> bytes:
    """Wrap value in a DER TLV (Type-Length-Value) structure.

    Args:
        tag: ASN.1 identifier octet.
        value: The already-encoded content octets.

    Returns:
        Complete DER TLV bytes.
    """
    return bytes([tag]) + encode_length(len(value)) + value


def encode_sequence(*items: bytes) -> bytes:
    """Wrap pre-encoded items in a DER SEQUENCE."""
    return encode_tlv(SEQUENCE, b"".join(items))


def encode_set(*items: bytes) -> bytes:
    """Wrap pre-encoded items in a DER SET OF.

    DER requires the members of a SET OF to appear in ascending order of
    their encodings, so the items are sorted before being joined.
    """
    return encode_tlv(SET, b"".join(sorted(items)))


def encode_context(number: int, content: bytes, constructed: bool = True) -> bytes:
    """Encode ``content`` under the context-specific tag ``[number]``.

    For EXPLICIT tagging pass a complete TLV as ``content``; for IMPLICIT
    tagging pass the content octets of the underlying type.
    """
    return encode_tlv(context_tag(number, constructed), content)


def encode_integer(value: int) -> bytes:
    """Encode an integer as a minimal two's complement DER INTEGER.

    A single leading zero octet is emitted only when a positive value's
    high bit would otherwise be read as a sign bit.
    """
    size = (value + (value < 0)).bit_length() // 8 + 1
    return encode_tlv(INTEGER, value.to_bytes(size, "big", signed=True))


def _base128(n: int) -> bytes:
    out = [n & 0x7F]
    n >>= 7
    while n:
        out.append(0x80 | (n & 0x7F))
        n >>= 7
    return bytes(reversed(out))


def encode_oid(dotted: str) -> bytes:
    """Encode a dotted-notation OID as DER OBJECT IDENTIFIER.

    Args:
        dotted: OID in dotted-decimal notation (e.g. "2.16.840.1.101.3.4.2.1").

    Returns:
        DER OID bytes.
    """
    try:
        arcs = [int(x) for x in dotted.split(".")]
    except ValueError as exc:
        raise ValueError(f"invalid OID: {dotted!r}") from exc
    if len(arcs) < 2 or arcs[0] > 2 or (arcs[0] < 2 and arcs[1] >= 40):
        raise ValueError(f"invalid OID: {dotted!r}")
    if any(arc < 0 for arc in arcs):
        raise ValueError(f"invalid OID: {dotted!r}")
    # First two arcs are merged: 40 * arc0 + arc1
    body = _base128(40 * arcs[0] + arcs[1])
    for arc in arcs[2:]:
        body += _base128(arc)
    return encode_tlv(OBJECT_IDENTIFIER, body)


def encode_octet_string(data: bytes) -> bytes:
    """Encode bytes as DER OCTET STRING."""
    return encode_tlv(OCTET_STRING, data)


def encode_bit_string(data: bytes, unused_bits: int = 0) -> bytes:
    """Encode bytes as DER BIT STRING with ``unused_bits`` padding bits."""
    if not 0 <= unused_bits <= 7 or (unused_bits and not data):
        raise ValueError(f"invalid unused bit count: {unused_bits}")
    return encode_tlv(BIT_STRING, bytes([unused_bits]) + data)


def encode_boolean(value: bool) -> bytes:
    """Encode DER BOOLEAN (0xFF for TRUE, 0x00 for FALSE)."""
    return encode_tlv(BOOLEAN, b"\xff" if value else b"\x00")


def encode_null() -> bytes:
    """Encode DER NULL."""
    return encode_tlv(NULL, b"")


def encode_utf8_string(text: str) -> bytes:
    """Encode text as DER UTF8String."""
    return encode_tlv(UTF8_STRING, text.encode("utf-8"))


def encode_generalized_time(value: datetime) -> bytes:
    """Encode a datetime as DER GeneralizedTime ``YYYYMMDDHHMMSS[.f]Z``.

    Naive datetimes are taken to be UTC; aware ones are converted to UTC.
    Fractional seconds carry no trailing zeros, as DER requires.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    text = (
        f"{value.year:04d}{value.month:02d}{value.day:02d}"
        f"{value.hour:02d}{value.minute:02d}{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    return encode_tlv(GENERALIZED_TIME, (text + "Z").encode("ascii"))


def retag(raw: bytes, tag: int) -> bytes:
    """Return a TLV with its identifier octet replaced by ``tag``.

    CMS signs the signed attributes as a SET OF although they travel under
    an IMPLICIT ``[0]`` tag; this swaps one for the other.
    """
    if not raw:
        raise MalformedEncoding("cannot retag an empty encoding")
    return bytes([tag]) + raw[1:]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Element:
    """A decoded TLV.

    Attributes:
        tag: The identifier octet.
        value: The content octets.
        raw: The complete encoding (identifier, length and content).
    """

    tag: int
    value: bytes
    raw: bytes

    @property
    def constructed(self) -> bool:
        return bool(self.tag & CONSTRUCTED)

    def expect(self, tag: int) -> "Element":
        """Return self, or raise MalformedEncoding if the tag differs."""
        if self.tag != tag:
            raise MalformedEncoding(
                f"expected tag 0x{tag:02x}, found 0x{self.tag:02x}"
            )
        return self

    def children(self) -> list["Element"]:
        """Decode the content octets of a constructed element."""
        if not self.constructed:
            raise MalformedEncoding(
                f"tag 0x{self.tag:02x} is primitive and has no children"
            )
        items = []
        offset = 0
        while offset < len(self.value):
            item, consumed = decode(self.value, offset)
            items.append(item)
            offset += consumed
        return items


def decode(data: bytes, offset: int = 0) -> tuple[Element, int]:
    """Decode one TLV starting at ``offset``.

    Args:
        data: Buffer holding DER bytes.
        offset: Position of the identifier octet.

    Returns:
        ``(element, consumed)`` where ``consumed`` is the size of the TLV.

    Raises:
        MalformedEncoding: If the buffer ends early, the length is
            indefinite or overflows, or the tag uses the high-number form.
    """
    end = len(data)
    if offset >= end:
        raise MalformedEncoding("unexpected end of data while reading a tag")
    tag = data[offset]
    if tag & 0x1F == 0x1F:
        raise MalformedEncoding(f"high-tag-number form is not supported (0x{tag:02x})")

    pos = offset + 1
    if pos >= end:
        raise MalformedEncoding("unexpected end of data while reading a length")
    first = data[pos]
    pos += 1
    if first < 0x80:
        length = first
    elif first == 0x80:
        raise MalformedEncoding("indefinite length is not allowed in DER")
    else:
        count = first & 0x7F
        if count > _MAX_LENGTH_OCTETS:
            raise MalformedEncoding(f"length field of {count} octets overflows")
        if pos + count > end:
            raise MalformedEncoding("unexpected end of data while reading a length")
        if data[pos] == 0:
            raise MalformedEncoding("length has leading zero octets")
        length = int.from_bytes(data[pos:pos + count], "big")
        if length < 0x80:
            raise MalformedEncoding(f"length {length} must use the short form")
        pos += count

    if length > end - pos:
        raise MalformedEncoding(
            f"length {length} exceeds the {end - pos} bytes remaining"
        )
    stop = pos + length
    return Element(tag, bytes(data[pos:stop]), bytes(data[offset:stop])), stop - offset


def decode_all(data: bytes, tag: Optional[int] = None) -> Element:
    """Decode a buffer that must hold exactly one TLV.

    Args:
        data: DER bytes.
        tag: Expected identifier octet, checked when given.

    Raises:
        MalformedEncoding: On any decoding error or trailing bytes.
    """
    element, consumed = decode(data)
    if consumed != len(data):
        raise MalformedEncoding(f"{len(data) - consumed} trailing bytes after DER value")
    if tag is not None:
        element.expect(tag)
    return element


class SequenceReader:
    """Walks the children of a constructed element in order.

    Handy for ASN.1 SEQUENCEs with OPTIONAL members: :meth:`optional`
    consumes the next child only when its tag matches.
    """

    def __init__(self, element: Element) -> None:
        self._items = element.children()
        self._pos = 0

    def next(self, tag: Optional[int] = None) -> Element:
        if self._pos >= len(self._items):
            raise MalformedEncoding("structure ended before a required field")
        item = self._items[self._pos]
        if tag is not None:
            item.expect(tag)
        self._pos += 1
        return item

    def optional(self, tag: int) -> Optional[Element]:
        if self._pos < len(self._items) and self._items[self._pos].tag == tag:
            self._pos += 1
            return self._items[self._pos - 1]
        return None

    def at_end(self) -> bool:
        return self._pos >= len(self._items)


def decode_integer(element: Element) -> int:
    """Decode a DER INTEGER, rejecting empty and non-minimal encodings."""
    value = element.expect(INTEGER).value
    if not value:
        raise MalformedEncoding("INTEGER has no content octets")
    if len(value) > 1 and (
        (value[0] == 0x00 and not value[1] & 0x80)
        or (value[0] == 0xFF and value[1] & 0x80)
    ):
        raise MalformedEncoding("INTEGER is not minimally encoded")
    return int.from_bytes(value, "big", signed=True)


def decode_oid(element: Element) -> str:
    """Decode a DER OBJECT IDENTIFIER to dotted-decimal notation."""
    value = element.expect(OBJECT_IDENTIFIER).value
    if not value or value[-1] & 0x80:
        raise MalformedEncoding("OBJECT IDENTIFIER is truncated")
    subids = []
    current = 0
    fresh = True
    for octet in value:
        if fresh and octet == 0x80:
            raise MalformedEncoding("OBJECT IDENTIFIER arc is not minimally encoded")
        current = (current << 7) | (octet & 0x7F)
        fresh = not octet & 0x80
        if fresh:
            subids.append(current)
            current = 0
    first = subids[0]
    if first < 40:
        arcs = [0, first]
    elif first < 80:
        arcs = [1, first - 40]
    else:
        arcs = [2, first - 80]
    return ".".join(str(arc) for arc in arcs + subids[1:])


def decode_octet_string(element: Element) -> bytes:
    return element.expect(OCTET_STRING).value


def decode_bit_string(element: Element) -> tuple[bytes, int]:
    """Decode a DER BIT STRING into ``(data, unused_bits)``."""
    value = element.expect(BIT_STRING).value
    if not value or value[0] > 7 or (value[0] and len(value) == 1):
        raise MalformedEncoding("BIT STRING has an invalid unused-bits octet")
    return value[1:], value[0]


def bit_string_flags(element: Element) -> set[int]:
    """Return the positions of the bits set in a named-bit BIT STRING."""
    data, _ = decode_bit_string(element)
    return {
        index * 8 + bit
        for index, octet in enumerate(data)
        for bit in range(8)
        if octet & (0x80 >> bit)
    }


def decode_boolean(element: Element) -> bool:
    value = element.expect(BOOLEAN).value
    if value == b"\xff":
        return True
    if value == b"\x00":
        return False
    raise MalformedEncoding(f"invalid DER BOOLEAN content {value.hex()!r}")


def decode_null(element: Element) -> None:
    if element.expect(NULL).value:
        raise MalformedEncoding("NULL must have no content octets")


def decode_string(element: Element) -> str:
    """Decode UTF8String, PrintableString or IA5String content."""
    if element.tag not in _STRING_TAGS:
        raise MalformedEncoding(f"expected a string type, found tag 0x{element.tag:02x}")
    try:
        return element.value.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedEncoding(f"string is not valid UTF-8: {exc}") from exc


def decode_generalized_time(element: Element) -> datetime:
    """Decode a GeneralizedTime in ``YYYYMMDDHHMMSS[.f]Z`` form.

    Returns:
        A timezone-aware UTC datetime (fractions kept to microseconds).

    Raises:
        UnsupportedTimeFormat: If the value is not expressed in UTC.
        MalformedEncoding: If the value is not a GeneralizedTime at all.
    """
    match = _GENERALIZED_TIME.match(element.expect(GENERALIZED_TIME).value)
    if match is None:
        raise MalformedEncoding(f"malformed GeneralizedTime {element.value!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    if zone != b"Z":
        raise UnsupportedTimeFormat(
            f"GeneralizedTime must end in 'Z' (UTC), got {zone.decode('ascii', 'replace')!r}"
        )
    micros = int(fraction[:6].ljust(6, b"0")) if fraction else 0
    try:
        return datetime(
            int(year), int(month), int(day),
            int(hour), int(minute), int(second), micros,
            tzinfo=timezone.utc,
        )
    except ValueError as exc:
        raise MalformedEncoding(f"invalid GeneralizedTime {element.value!r}: {exc}") from exc


def encode_algorithm_identifier(oid: str, null_parameters: bool = True) -> bytes:
    """Encode an AlgorithmIdentifier ``SEQUENCE { algorithm, parameters }``."""
    if null_parameters:
        return encode_sequence(encode_oid(oid), encode_null())
    return encode_sequence(encode_oid(oid))


def decode_algorithm_identifier(element: Element) -> str:
    """Decode an AlgorithmIdentifier and return its OID.

    Parameters are accepted but not interpreted (hash algorithms carry an
    absent or NULL parameter; RSASSA-PSS parameters are re-derived from the
    digest algorithm by the verifier).
    """
    reader = SequenceReader(element.expect(SEQUENCE))
    return decode_oid(reader.next(OBJECT_IDENTIFIER))

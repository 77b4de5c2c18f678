"""Tests for the DER codec in skstamp.der."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from skstamp import der
from skstamp.errors import MalformedEncoding, UnsupportedTimeFormat


class TestEncodeLength:
    """DER length field encoding."""

    def test_short_form(self):
        assert der.encode_length(0) == b"\x00"
        assert der.encode_length(127) == b"\x7f"

    def test_long_form_one_octet(self):
        assert der.encode_length(128) == b"\x81\x80"
        assert der.encode_length(255) == b"\x81\xff"

    def test_long_form_two_octets(self):
        assert der.encode_length(256) == b"\x82\x01\x00"
        assert der.encode_length(0x1234) == b"\x82\x12\x34"

    def test_large_lengths_have_no_three_byte_cap(self):
        assert der.encode_length(0x01000000) == b"\x84\x01\x00\x00\x00"

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            der.encode_length(-1)


class TestEncodeInteger:
    """Minimal two's complement INTEGER encoding."""

    @pytest.mark.parametrize(
        "value, encoded",
        [
            (0, "020100"),
            (1, "020101"),
            (127, "02017f"),
            (128, "02020080"),
            (255, "020200ff"),
            (256, "02020100"),
            (-1, "0201ff"),
            (-128, "020180"),
            (-129, "0202ff7f"),
        ],
    )
    def test_known_encodings(self, value: int, encoded: str):
        assert der.encode_integer(value).hex() == encoded

    def test_large_positive_round_trip(self):
        value = 2**64 - 1
        assert der.decode_integer(der.decode_all(der.encode_integer(value))) == value


class TestOid:
    """OBJECT IDENTIFIER encoding and decoding."""

    def test_sha256_oid_bytes(self):
        assert der.encode_oid("2.16.840.1.101.3.4.2.1").hex() == "0609608648016503040201"

    def test_sha1_oid_bytes(self):
        assert der.encode_oid("1.3.14.3.2.26").hex() == "06052b0e03021a"

    def test_decode_tst_info_oid(self):
        oid = "1.2.840.113549.1.9.16.1.4"
        assert der.decode_oid(der.decode_all(der.encode_oid(oid))) == oid

    def test_invalid_dotted_string(self):
        with pytest.raises(ValueError):
            der.encode_oid("1.two.3")

    def test_first_arc_out_of_range(self):
        with pytest.raises(ValueError):
            der.encode_oid("3.1")

    def test_truncated_arc_rejected(self):
        with pytest.raises(MalformedEncoding):
            der.decode_oid(der.decode_all(b"\x06\x02\x2a\x86"))

    def test_non_minimal_arc_rejected(self):
        with pytest.raises(MalformedEncoding):
            der.decode_oid(der.decode_all(b"\x06\x03\x2a\x80\x01"))


class TestDecode:
    """Generic TLV decoding."""

    def test_sequence_children(self):
        data = der.encode_sequence(der.encode_integer(5), der.encode_null())
        children = der.decode_all(data, der.SEQUENCE).children()
        assert [c.tag for c in children] == [der.INTEGER, der.NULL]

    def test_raw_keeps_full_encoding(self):
        encoded = der.encode_octet_string(b"abc")
        element = der.decode_all(encoded)
        assert element.raw == encoded
        assert element.value == b"abc"

    def test_trailing_bytes_rejected(self):
        with pytest.raises(MalformedEncoding, match="trailing"):
            der.decode_all(der.encode_null() + b"\x00")

    def test_indefinite_length_rejected(self):
        with pytest.raises(MalformedEncoding, match="indefinite"):
            der.decode_all(b"\x30\x80\x00\x00")

    def test_high_tag_number_rejected(self):
        with pytest.raises(MalformedEncoding):
            der.decode_all(b"\x1f\x21\x00")

    def test_oversized_length_field_rejected(self):
        with pytest.raises(MalformedEncoding):
            der.decode_all(b"\x04\x89" + b"\x01" * 9)

    def test_length_beyond_buffer_rejected(self):
        with pytest.raises(MalformedEncoding):
            der.decode_all(b"\x04\x05abc")

    def test_long_form_for_short_length_rejected(self):
        with pytest.raises(MalformedEncoding, match="short form"):
            der.decode_all(b"\x04\x81\x03abc")

    def test_length_with_leading_zero_octet_rejected(self):
        with pytest.raises(MalformedEncoding, match="leading zero"):
            der.decode_all(b"\x04\x82\x00\x80" + b"a" * 0x80)

    def test_minimal_long_form_accepted(self):
        element = der.decode_all(b"\x04\x81\x80" + b"a" * 0x80)
        assert element.value == b"a" * 0x80

    def test_empty_input_rejected(self):
        with pytest.raises(MalformedEncoding):
            der.decode_all(b"")

    def test_wrong_tag_rejected(self):
        with pytest.raises(MalformedEncoding, match="expected tag"):
            der.decode_all(der.encode_null(), der.SEQUENCE)

    def test_primitive_has_no_children(self):
        with pytest.raises(MalformedEncoding):
            der.decode_all(der.encode_null()).children()


class TestSequenceReader:
    """Ordered walking with OPTIONAL members."""

    def test_optional_skips_absent_member(self):
        data = der.encode_sequence(der.encode_integer(1), der.encode_boolean(True))
        reader = der.SequenceReader(der.decode_all(data))
        assert der.decode_integer(reader.next(der.INTEGER)) == 1
        assert reader.optional(der.OCTET_STRING) is None
        assert der.decode_boolean(reader.optional(der.BOOLEAN)) is True
        assert reader.at_end()

    def test_missing_required_member(self):
        reader = der.SequenceReader(der.decode_all(der.encode_sequence()))
        with pytest.raises(MalformedEncoding, match="required"):
            reader.next()


class TestPrimitiveDecoders:
    """Typed decoders reject non-DER content."""

    def test_empty_integer_rejected(self):
        with pytest.raises(MalformedEncoding):
            der.decode_integer(der.decode_all(b"\x02\x00"))

    def test_non_minimal_integer_rejected(self):
        with pytest.raises(MalformedEncoding):
            der.decode_integer(der.decode_all(b"\x02\x02\x00\x01"))

    def test_boolean_must_be_ff_or_00(self):
        with pytest.raises(MalformedEncoding):
            der.decode_boolean(der.decode_all(b"\x01\x01\x01"))

    def test_bit_string_flags(self):
        element = der.decode_all(der.encode_bit_string(b"\x84", unused_bits=2))
        assert der.bit_string_flags(element) == {0, 5}

    def test_bit_string_bad_unused_count(self):
        with pytest.raises(MalformedEncoding):
            der.decode_bit_string(der.decode_all(b"\x03\x02\x08\x00"))

    def test_utf8_string(self):
        assert der.decode_string(der.decode_all(der.encode_utf8_string("grüß"))) == "grüß"


class TestGeneralizedTime:
    """GeneralizedTime is always UTC with a Z suffix."""

    def test_encode_whole_seconds(self):
        value = datetime(2020, 1, 1, tzinfo=timezone.utc)
        assert der.encode_generalized_time(value) == b"\x18\x0f20200101000000Z"

    def test_fraction_has_no_trailing_zeros(self):
        value = datetime(2020, 1, 1, 12, 30, 15, 250000, tzinfo=timezone.utc)
        assert der.encode_generalized_time(value).endswith(b"20200101123015.25Z")

    def test_offset_converted_to_utc(self):
        value = datetime(2020, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        assert der.encode_generalized_time(value) == b"\x18\x0f20200101000000Z"

    def test_decode_returns_aware_utc(self):
        element = der.decode_all(b"\x18\x1320200101123015.123Z")
        value = der.decode_generalized_time(element)
        assert value == datetime(2020, 1, 1, 12, 30, 15, 123000, tzinfo=timezone.utc)
        assert value.tzinfo is not None

    def test_local_time_rejected(self):
        element = der.decode_all(der.encode_tlv(der.GENERALIZED_TIME, b"20200101000000"))
        with pytest.raises(UnsupportedTimeFormat):
            der.decode_generalized_time(element)

    def test_offset_suffix_rejected(self):
        element = der.decode_all(der.encode_tlv(der.GENERALIZED_TIME, b"20200101000000+0100"))
        with pytest.raises(UnsupportedTimeFormat):
            der.decode_generalized_time(element)

    def test_garbage_rejected(self):
        element = der.decode_all(der.encode_tlv(der.GENERALIZED_TIME, b"yesterday"))
        with pytest.raises(MalformedEncoding):
            der.decode_generalized_time(element)

    def test_impossible_date_rejected(self):
        element = der.decode_all(der.encode_tlv(der.GENERALIZED_TIME, b"20201340000000Z"))
        with pytest.raises(MalformedEncoding):
            der.decode_generalized_time(element)


class TestRetag:
    """Swapping the identifier octet of an encoding."""

    def test_set_to_implicit_context(self):
        encoded = der.encode_set(der.encode_integer(2), der.encode_integer(1))
        retagged = der.retag(encoded, der.context_tag(0))
        assert retagged[0] == 0xA0
        assert der.retag(retagged, der.SET) == encoded

    def test_set_members_sorted(self):
        encoded = der.encode_set(der.encode_integer(2), der.encode_integer(1))
        assert encoded == b"\x31\x06\x02\x01\x01\x02\x01\x02"

    def test_empty_rejected(self):
        with pytest.raises(MalformedEncoding):
            der.retag(b"", der.SET)

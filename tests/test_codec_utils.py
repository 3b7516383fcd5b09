import pytest

from mp4flv.remuxer.codec_utils import (
    NAL_TYPE_IDR,
    NAL_TYPE_SEI,
    NAL_TYPE_SLICE,
    iter_nal_unit_types,
    is_keyframe,
    parse_avc_decoder_config,
)
from mp4_builders import PPS, SPS, build_avcc_record


def _nal(payload: bytes, length_size: int = 4) -> bytes:
    return len(payload).to_bytes(length_size, "big") + payload


def test_single_idr_nal_is_keyframe():
    assert is_keyframe(bytes([0, 0, 0, 1, 0x65]))


def test_single_non_idr_slice_is_not_keyframe():
    assert not is_keyframe(bytes([0, 0, 0, 1, 0x41]))


def test_too_short_for_a_nal_header():
    assert list(iter_nal_unit_types(bytes([0, 0, 0, 1]))) == []
    assert not is_keyframe(b"")


def test_two_units_second_is_idr():
    data = _nal(bytes([0x41, 0x9A, 0x02, 0x03])) + _nal(bytes([0x65, 0x88, 0x84, 0x00, 0x10]))
    assert list(iter_nal_unit_types(data)) == [NAL_TYPE_SLICE, NAL_TYPE_IDR]
    assert is_keyframe(data)


def test_two_units_second_is_slice():
    data = _nal(bytes([0x41, 0x9A, 0x02, 0x03])) + _nal(bytes([0x41, 0x9B, 0x84, 0x00, 0x10]))
    assert list(iter_nal_unit_types(data)) == [NAL_TYPE_SLICE, NAL_TYPE_SLICE]
    assert not is_keyframe(data)


def test_idr_after_other_units():
    data = _nal(bytes([0x09, 0xF0])) + _nal(bytes([0x06, 0x05, 0x01, 0x80])) + _nal(bytes([0x65, 0x88, 0x84]))
    assert list(iter_nal_unit_types(data)) == [9, NAL_TYPE_SEI, NAL_TYPE_IDR]
    assert is_keyframe(data)


def test_nal_ref_idc_bits_are_ignored():
    # 0x25: nal_ref_idc 1, type 5
    assert list(iter_nal_unit_types(_nal(bytes([0x25, 0x00])))) == [NAL_TYPE_IDR]


def test_two_byte_length_prefix():
    data = _nal(bytes([0x41, 0x9A]), length_size=2) + _nal(bytes([0x65, 0x88]), length_size=2)
    assert list(iter_nal_unit_types(data, length_size=2)) == [NAL_TYPE_SLICE, NAL_TYPE_IDR]
    assert is_keyframe(data, length_size=2)
    # Read with the wrong length size the IDR unit is never reached
    assert not is_keyframe(data, length_size=4)


def test_oversized_length_ends_scan():
    data = (1000).to_bytes(4, "big") + bytes([0x41]) + (1).to_bytes(4, "big") + bytes([0x65])
    assert list(iter_nal_unit_types(data)) == [NAL_TYPE_SLICE]


def test_parse_avc_decoder_config():
    config = parse_avc_decoder_config(build_avcc_record())
    assert config.version == 1
    assert (config.profile, config.compatibility, config.level) == (0x64, 0x00, 0x1F)
    assert config.nal_length_size == 4
    assert config.sps_list == [SPS]
    assert config.pps_list == [PPS]
    assert config.codec_string == "avc1.64001f"


def test_parse_avc_decoder_config_length_size():
    assert parse_avc_decoder_config(build_avcc_record(length_size=2)).nal_length_size == 2


def test_parse_avc_decoder_config_rejects_truncation():
    record = build_avcc_record()
    with pytest.raises(ValueError):
        parse_avc_decoder_config(record[:5])
    with pytest.raises(ValueError):
        parse_avc_decoder_config(record[:10])
    with pytest.raises(ValueError):
        parse_avc_decoder_config(record[:-2])

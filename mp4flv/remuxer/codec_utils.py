"""
AVC (H.264) helpers for remuxing MP4 samples.

MP4 stores each access unit as length-prefixed NAL units; the length
field width comes from the AVCDecoderConfigurationRecord (avcC).
"""

import struct
from dataclasses import dataclass, field
from typing import Iterator

# H.264 NAL unit types
NAL_TYPE_SLICE = 1
NAL_TYPE_IDR = 5  # Keyframe
NAL_TYPE_SEI = 6

DEFAULT_NAL_LENGTH_SIZE = 4


def iter_nal_unit_types(data: bytes, length_size: int = DEFAULT_NAL_LENGTH_SIZE) -> Iterator[int]:
    """
    Yield the NAL unit type of each length-prefixed unit in an access unit.

    Scanning stops once fewer than ``length_size + 1`` bytes remain, i.e.
    when no further length field plus header byte can fit.
    """
    pos = 0
    while len(data) - pos >= length_size + 1:
        nal_size = int.from_bytes(data[pos : pos + length_size], "big")
        yield data[pos + length_size] & 0x1F
        pos += length_size + nal_size


def is_keyframe(data: bytes, length_size: int = DEFAULT_NAL_LENGTH_SIZE) -> bool:
    """True if the access unit contains an IDR slice."""
    return any(nal_type == NAL_TYPE_IDR for nal_type in iter_nal_unit_types(data, length_size))


@dataclass
class AVCDecoderConfig:
    """Decoded AVCDecoderConfigurationRecord (the avcC box body)."""

    version: int = 1
    profile: int = 0
    compatibility: int = 0
    level: int = 0
    nal_length_size: int = DEFAULT_NAL_LENGTH_SIZE
    sps_list: list[bytes] = field(default_factory=list)
    pps_list: list[bytes] = field(default_factory=list)

    @property
    def codec_string(self) -> str:
        """RFC 6381 codec string, e.g. ``avc1.64001f``."""
        return f"avc1.{self.profile:02x}{self.compatibility:02x}{self.level:02x}"


def _read_parameter_sets(record: bytes, pos: int, count: int) -> tuple[list[bytes], int]:
    sets = []
    for _ in range(count):
        if pos + 2 > len(record):
            raise ValueError("parameter set length truncated")
        length = struct.unpack_from(">H", record, pos)[0]
        pos += 2
        if pos + length > len(record):
            raise ValueError("parameter set data truncated")
        sets.append(record[pos : pos + length])
        pos += length
    return sets, pos


def parse_avc_decoder_config(record: bytes) -> AVCDecoderConfig:
    """
    Parse an AVCDecoderConfigurationRecord.

    Layout:
      [1] configurationVersion
      [1] AVCProfileIndication
      [1] profile_compatibility
      [1] AVCLevelIndication
      [1] 0xFC | lengthSizeMinusOne
      [1] 0xE0 | numOfSequenceParameterSets
      For each SPS: [2 BE] length, [length] data
      [1] numOfPictureParameterSets
      For each PPS: [2 BE] length, [length] data

    Raises:
        ValueError: if the record is truncated.
    """
    if len(record) < 7:
        raise ValueError(f"AVC decoder configuration too short: {len(record)} bytes")

    version, profile, compatibility, level, length_byte, sps_byte = struct.unpack_from(">6B", record, 0)
    sps_list, pos = _read_parameter_sets(record, 6, sps_byte & 0x1F)
    if pos >= len(record):
        raise ValueError("PPS count missing")
    pps_list, _ = _read_parameter_sets(record, pos + 1, record[pos])

    return AVCDecoderConfig(
        version=version,
        profile=profile,
        compatibility=compatibility,
        level=level,
        nal_length_size=(length_byte & 0x03) + 1,
        sps_list=sps_list,
        pps_list=pps_list,
    )

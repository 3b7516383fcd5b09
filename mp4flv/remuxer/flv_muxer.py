"""
FLV tag stream builder.

File layout:
    header(9) | previous_tag_size(4)=0 | tag | trailer(4) | tag | trailer(4) ...

Every tag is an 11-byte header (type, 24-bit payload size, 24-bit timestamp
plus 8-bit extended timestamp, 24-bit stream id) followed by its payload.
The trailer after each tag holds 11 + payload size so readers can walk the
file backwards.
"""

import logging
import struct
from typing import BinaryIO

from mp4flv.remuxer.errors import IoFailure, TagOverflowError

logger = logging.getLogger(__name__)

FLV_SIGNATURE = b"FLV"
FLV_VERSION = 1
FLV_HEADER_SIZE = 9
TAG_HEADER_SIZE = 11
TAG_TRAILER_SIZE = 4

TAG_TYPE_AUDIO = 8
TAG_TYPE_VIDEO = 9

TYPE_FLAG_VIDEO = 0x01
TYPE_FLAG_AUDIO = 0x04

# Video tag body, first byte: frame type (high nibble) | codec id (low nibble)
FRAME_TYPE_KEY = 1
FRAME_TYPE_INTER = 2

VCODEC_AVC = 7

AVC_PACKET_SEQUENCE_HEADER = 0
AVC_PACKET_NALU = 1

_MAX_TAG_PAYLOAD = 0xFFFFFF


def pack_u24(value: int) -> bytes:
    return struct.pack(">I", value & 0xFFFFFF)[1:]


def build_flv_header(has_video: bool = True, has_audio: bool = False) -> bytes:
    """Build the 9-byte FLV file header."""
    flags = (TYPE_FLAG_VIDEO if has_video else 0) | (TYPE_FLAG_AUDIO if has_audio else 0)
    return FLV_SIGNATURE + struct.pack(">BBI", FLV_VERSION, flags, FLV_HEADER_SIZE)


def build_tag_header(tag_type: int, payload_size: int, timestamp_ms: int) -> bytes:
    """Build an 11-byte tag header. Stream id is always 0."""
    if not 0 <= payload_size <= _MAX_TAG_PAYLOAD:
        raise TagOverflowError(f"FLV tag payload of {payload_size} bytes does not fit in 24 bits")
    timestamp = timestamp_ms & 0xFFFFFFFF
    return (
        struct.pack(">B", tag_type)
        + pack_u24(payload_size)
        + pack_u24(timestamp)
        + struct.pack(">B", timestamp >> 24)
        + pack_u24(0)
    )


def build_tag(tag_type: int, timestamp_ms: int, payload: bytes) -> bytes:
    """Build a complete tag: header, payload and previous-tag-size trailer."""
    header = build_tag_header(tag_type, len(payload), timestamp_ms)
    return header + payload + struct.pack(">I", TAG_HEADER_SIZE + len(payload))


def build_video_tag_body(
    data: bytes,
    is_keyframe: bool,
    composition_offset_ms: int = 0,
    packet_type: int = AVC_PACKET_NALU,
    codec_id: int = VCODEC_AVC,
) -> bytes:
    """
    Build a video tag payload.

    For AVC the frame/codec byte is followed by the AVC packet type and a
    signed 24-bit composition time offset; other codecs carry only the
    frame/codec byte.
    """
    frame_type = FRAME_TYPE_KEY if is_keyframe else FRAME_TYPE_INTER
    body = struct.pack(">B", (frame_type << 4) | codec_id)
    if codec_id == VCODEC_AVC:
        body += struct.pack(">B", packet_type) + pack_u24(composition_offset_ms)
    return body + data


class FLVWriter:
    """
    Writes an FLV stream to a binary sink.

    The file header and the leading zero previous-tag-size are written on
    construction; each write_* call appends one tag plus its trailer.
    """

    def __init__(self, sink: BinaryIO, has_video: bool = True, has_audio: bool = False) -> None:
        self._sink = sink
        self.bytes_written = 0
        self.tag_count = 0
        self._write(build_flv_header(has_video, has_audio) + struct.pack(">I", 0))

    def _write(self, data: bytes) -> None:
        try:
            self._sink.write(data)
        except OSError as e:
            raise IoFailure(f"Write of {len(data)} bytes failed after {self.bytes_written} bytes: {e}") from e
        self.bytes_written += len(data)

    def write_tag(self, tag_type: int, timestamp_ms: int, payload: bytes) -> int:
        """Append one tag; returns the value written to its trailer."""
        tag = build_tag(tag_type, timestamp_ms, payload)
        self._write(tag)
        self.tag_count += 1
        return len(tag) - TAG_TRAILER_SIZE

    def write_avc_sequence_header(self, config: bytes) -> int:
        """Append the AVC sequence header tag carrying the decoder configuration record."""
        body = build_video_tag_body(config, is_keyframe=True, packet_type=AVC_PACKET_SEQUENCE_HEADER)
        logger.debug("[flv_muxer] AVC sequence header: %d bytes of configuration", len(config))
        return self.write_tag(TAG_TYPE_VIDEO, 0, body)

    def write_video_frame(
        self, data: bytes, timestamp_ms: int, is_keyframe: bool, composition_offset_ms: int = 0
    ) -> int:
        """Append one AVC NALU tag."""
        body = build_video_tag_body(data, is_keyframe, composition_offset_ms)
        return self.write_tag(TAG_TYPE_VIDEO, timestamp_ms, body)

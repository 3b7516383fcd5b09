"""
FLV tag stream reader.

Parses the file header and tag headers without loading tag payloads,
and walks the stream either forwards (tag headers) or backwards
(previous-tag-size trailers).
"""

import struct
from dataclasses import dataclass
from typing import Iterator

from mp4flv.remuxer.errors import StructuralParseError
from mp4flv.remuxer.flv_muxer import (
    AVC_PACKET_SEQUENCE_HEADER,
    FLV_SIGNATURE,
    FRAME_TYPE_KEY,
    TAG_HEADER_SIZE,
    TAG_TRAILER_SIZE,
    TAG_TYPE_VIDEO,
    VCODEC_AVC,
)
from mp4flv.remuxer.media_source import ByteSource


@dataclass(frozen=True)
class FLVHeader:
    version: int
    has_video: bool
    has_audio: bool
    data_offset: int


@dataclass(frozen=True)
class FLVTag:
    """Location and header fields of one tag."""

    tag_type: int
    data_size: int
    timestamp_ms: int
    stream_id: int
    offset: int  # Absolute offset of the tag header

    @property
    def data_offset(self) -> int:
        return self.offset + TAG_HEADER_SIZE

    @property
    def total_size(self) -> int:
        """Header plus payload, the value recorded in the tag's trailer."""
        return TAG_HEADER_SIZE + self.data_size


@dataclass(frozen=True)
class VideoTagInfo:
    """Decoded leading fields of a video tag payload."""

    frame_type: int
    codec_id: int
    packet_type: int | None = None
    composition_offset_ms: int = 0

    @property
    def is_keyframe(self) -> bool:
        return self.frame_type == FRAME_TYPE_KEY

    @property
    def is_sequence_header(self) -> bool:
        return self.codec_id == VCODEC_AVC and self.packet_type == AVC_PACKET_SEQUENCE_HEADER


def _u24(data: bytes, pos: int) -> int:
    return (data[pos] << 16) | (data[pos + 1] << 8) | data[pos + 2]


def read_flv_header(source: ByteSource) -> FLVHeader:
    """Read and validate the file header at offset 0."""
    data = source.read_at(0, 9)
    if data[:3] != FLV_SIGNATURE:
        raise StructuralParseError(f"Not an FLV stream (signature {data[:3]!r})", 0)
    version, flags, data_offset = struct.unpack_from(">BBI", data, 3)
    return FLVHeader(
        version=version,
        has_video=bool(flags & 0x01),
        has_audio=bool(flags & 0x04),
        data_offset=data_offset,
    )


def parse_tag_header(data: bytes, offset: int) -> FLVTag:
    """Parse an 11-byte tag header read from ``offset``."""
    timestamp = _u24(data, 4) | (data[7] << 24)
    return FLVTag(
        tag_type=data[0],
        data_size=_u24(data, 1),
        timestamp_ms=timestamp,
        stream_id=_u24(data, 8),
        offset=offset,
    )


def iter_tags(source: ByteSource) -> Iterator[FLVTag]:
    """
    Walk tags from the start of the stream, validating every trailer.

    Raises:
        StructuralParseError: if a trailer disagrees with its tag's size.
    """
    header = read_flv_header(source)
    pos = header.data_offset + TAG_TRAILER_SIZE
    while pos + TAG_HEADER_SIZE <= source.size:
        tag = parse_tag_header(source.read_at(pos, TAG_HEADER_SIZE), pos)
        trailer_pos = tag.data_offset + tag.data_size
        trailer = struct.unpack(">I", source.read_at(trailer_pos, TAG_TRAILER_SIZE))[0]
        if trailer != tag.total_size:
            raise StructuralParseError(
                f"Tag at {pos} has trailer {trailer}, expected {tag.total_size}", trailer_pos
            )
        yield tag
        pos = trailer_pos + TAG_TRAILER_SIZE


def iter_tags_backward(source: ByteSource) -> Iterator[FLVTag]:
    """Walk tags from the end of the stream using the previous-tag-size trailers."""
    header = read_flv_header(source)
    first_tag = header.data_offset + TAG_TRAILER_SIZE
    pos = source.size
    while pos - TAG_TRAILER_SIZE >= first_tag:
        previous_size = struct.unpack(">I", source.read_at(pos - TAG_TRAILER_SIZE, TAG_TRAILER_SIZE))[0]
        if previous_size == 0:
            break
        tag_pos = pos - TAG_TRAILER_SIZE - previous_size
        if tag_pos < first_tag:
            raise StructuralParseError(
                f"Trailer {previous_size} at {pos - TAG_TRAILER_SIZE} points before the first tag", pos
            )
        tag = parse_tag_header(source.read_at(tag_pos, TAG_HEADER_SIZE), tag_pos)
        if tag.total_size != previous_size:
            raise StructuralParseError(
                f"Tag at {tag_pos} has size {tag.total_size}, trailer says {previous_size}", tag_pos
            )
        yield tag
        pos = tag_pos


def read_tag_data(source: ByteSource, tag: FLVTag) -> bytes:
    return source.read_at(tag.data_offset, tag.data_size)


def parse_video_tag_info(data: bytes) -> VideoTagInfo:
    """Decode the frame type, codec id and (for AVC) packet type and composition offset."""
    frame_type, codec_id = data[0] >> 4, data[0] & 0x0F
    if codec_id != VCODEC_AVC or len(data) < 5:
        return VideoTagInfo(frame_type=frame_type, codec_id=codec_id)
    composition_offset = _u24(data, 2)
    if composition_offset & 0x800000:
        composition_offset -= 0x1000000
    return VideoTagInfo(
        frame_type=frame_type,
        codec_id=codec_id,
        packet_type=data[1],
        composition_offset_ms=composition_offset,
    )


def count_tags(source: ByteSource, tag_type: int = TAG_TYPE_VIDEO) -> int:
    return sum(1 for tag in iter_tags(source) if tag.tag_type == tag_type)

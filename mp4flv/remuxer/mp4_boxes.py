"""
ISO base media (MP4) box tree parser.

Provides:
- Payload records for the boxes needed to remux one AVC video track
  (ftyp, mvhd, tkhd, mdhd, hdlr, stsd and the sample tables)
- BoxRegistry: static box type -> decoder mapping
- parse_boxes: one-level-at-a-time recursive parse from a ByteSource
- BoxTree: the parsed forest with depth-first lookups and a text dump

Every box is read as [size(4)][type(4)][payload]. After each box the
source is seeked to the position its size field implies, whatever the
decoder consumed, so partially understood boxes never derail the parse.
A size that cannot be honoured ends the current level only; the siblings
parsed so far stay in the tree.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Callable, Iterator, Union

from mp4flv.configs import settings
from mp4flv.remuxer.errors import StructuralParseError, UnsupportedVersion
from mp4flv.remuxer.media_source import ByteSource
from mp4flv.remuxer.sample_tables import (
    ChunkOffsetTable,
    CompositionOffsetTable,
    SampleSizeTable,
    SampleToChunkTable,
    SyncSampleTable,
    TimeToSampleTable,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Box constants
# =============================================================================

BOX_HEADER_SIZE = 8
FULL_BOX_HEADER_SIZE = 4

# Boxes whose payload is nothing but child boxes
CONTAINER_TYPES = frozenset(
    {
        b"moov",
        b"trak",
        b"mdia",
        b"minf",
        b"stbl",
        b"udta",
        b"edts",
        b"dinf",
    }
)

# Full-box versions any decoder here understands
SUPPORTED_VERSIONS = frozenset({0, 1})

# Sample entry formats laid out as a VisualSampleEntry
_VISUAL_FORMATS = frozenset({b"avc1", b"avc3", b"hvc1", b"hev1", b"mp4v", b"encv"})

# VisualSampleEntry fixed fields following the 8-byte entry header
_VISUAL_ENTRY_FIELDS_SIZE = 78


# =============================================================================
# In-memory box helpers (used for sample entries inside stsd)
# =============================================================================


def read_box_header(data: bytes, offset: int) -> tuple[bytes, int, int] | None:
    """
    Read a box header at the given offset of an in-memory buffer.

    Returns:
        (box_type, header_size, total_box_size) or None if not enough data.
    """
    if offset + BOX_HEADER_SIZE > len(data):
        return None

    size, box_type = struct.unpack_from(">I4s", data, offset)
    if size == 0:  # Box extends to end of data
        size = len(data) - offset

    return box_type, BOX_HEADER_SIZE, size


def iter_boxes(data: bytes) -> Iterator[tuple[bytes, bytes]]:
    """Iterate over sibling boxes in a buffer: yields (box_type, box_body_bytes)."""
    offset = 0
    while offset < len(data):
        result = read_box_header(data, offset)
        if result is None:
            break
        box_type, header_size, total_size = result
        if total_size < header_size or offset + total_size > len(data):
            logger.warning("[mp4_boxes] Malformed nested box %r at +%d (size=%d)", box_type, offset, total_size)
            break
        yield box_type, data[offset + header_size : offset + total_size]
        offset += total_size


def parse_full_box_header(data: bytes) -> tuple[int, int, bytes]:
    """
    Split a full box payload into version, flags and the fields that follow.

    Returns:
        (version, flags, body)
    """
    if len(data) < FULL_BOX_HEADER_SIZE:
        raise struct.error(f"full box payload too short ({len(data)} bytes)")
    version = data[0]
    flags = (data[1] << 16) | (data[2] << 8) | data[3]
    return version, flags, data[FULL_BOX_HEADER_SIZE:]


# =============================================================================
# Payload records
# =============================================================================


@dataclass(frozen=True)
class FileType:
    """File Type box (ftyp)."""

    major_brand: bytes = b""
    minor_version: int = 0
    compatible_brands: tuple[bytes, ...] = ()


@dataclass(frozen=True)
class MovieHeader:
    """Movie Header box (mvhd)."""

    version: int = 0
    flags: int = 0
    creation_time: int = 0
    modification_time: int = 0
    timescale: int = 0
    duration: int = 0
    rate: float = 0.0
    volume: float = 0.0
    next_track_id: int = 0


@dataclass(frozen=True)
class TrackHeader:
    """Track Header box (tkhd). Width and height are 16.16 fixed point on disk."""

    version: int = 0
    flags: int = 0
    creation_time: int = 0
    modification_time: int = 0
    track_id: int = 0
    duration: int = 0
    layer: int = 0
    alternate_group: int = 0
    volume: float = 0.0
    matrix: tuple[int, ...] = ()
    width: float = 0.0
    height: float = 0.0


@dataclass(frozen=True)
class MediaHeader:
    """Media Header box (mdhd)."""

    version: int = 0
    flags: int = 0
    creation_time: int = 0
    modification_time: int = 0
    timescale: int = 0
    duration: int = 0
    language: str = ""


@dataclass(frozen=True)
class HandlerReference:
    """Handler Reference box (hdlr)."""

    version: int = 0
    flags: int = 0
    handler_type: bytes = b""
    name: str = ""


@dataclass(frozen=True)
class SampleEntry:
    """One entry of a Sample Description box."""

    format: bytes
    data_reference_index: int = 0
    width: int = 0
    height: int = 0
    body: bytes = field(default=b"", repr=False)  # entry bytes after its 8-byte header
    boxes: tuple[tuple[bytes, bytes], ...] = field(default=(), repr=False)  # (type, body) of nested boxes

    def find_box(self, box_type: bytes) -> bytes | None:
        for nested_type, nested_body in self.boxes:
            if nested_type == box_type:
                return nested_body
        return None


@dataclass(frozen=True)
class SampleDescription:
    """Sample Description box (stsd)."""

    version: int = 0
    flags: int = 0
    entries: tuple[SampleEntry, ...] = ()

    @property
    def codec(self) -> str:
        """FourCC of the first sample entry (e.g. "avc1")."""
        if not self.entries:
            return ""
        return self.entries[0].format.decode("latin-1").strip()

    def codec_config(self, config_type: bytes = b"avcC") -> bytes | None:
        """
        Return the body of the codec configuration box of the first entry.

        Falls back to scanning the entry bytes for the configuration box
        type and returning everything after it, which holds for the usual
        single-entry layout where the configuration box comes last.
        """
        if not self.entries:
            return None
        entry = self.entries[0]
        found = entry.find_box(config_type)
        if found is not None:
            return found
        marker = entry.body.find(config_type)
        if marker < 0:
            return None
        logger.debug("[mp4_boxes] %r located by marker scan in %r entry", config_type, entry.format)
        return entry.body[marker + len(config_type) :]


@dataclass(frozen=True)
class OpaquePayload:
    """Raw payload of a box no decoder is registered for."""

    data: bytes = field(default=b"", repr=False)

    def __repr__(self) -> str:
        preview = ",".join(str(b) for b in self.data[:10])
        return f"OpaquePayload([{preview}...] {len(self.data)} bytes)"


@dataclass(frozen=True)
class DeferredPayload:
    """Location of a large unknown payload that was never read into memory."""

    offset: int  # Absolute offset of the payload (after the box header)
    length: int


BoxPayload = Union[
    None,
    FileType,
    MovieHeader,
    TrackHeader,
    MediaHeader,
    HandlerReference,
    SampleDescription,
    SampleSizeTable,
    ChunkOffsetTable,
    SampleToChunkTable,
    TimeToSampleTable,
    CompositionOffsetTable,
    SyncSampleTable,
    OpaquePayload,
    DeferredPayload,
]


# =============================================================================
# Box node
# =============================================================================


@dataclass(frozen=True)
class Box:
    """A parsed box: header fields, decoded payload and owned children."""

    box_type: bytes
    size: int  # Total size including the 8-byte header
    offset: int  # Absolute offset of the box header
    payload: BoxPayload = None
    children: tuple["Box", ...] = ()

    @property
    def name(self) -> str:
        return self.box_type.decode("latin-1")

    def walk(self) -> Iterator["Box"]:
        """Pre-order depth-first traversal, starting with this box."""
        yield self
        for child in self.children:
            yield from child.walk()

    def find_first(self, box_type: bytes) -> "Box | None":
        for box in self.walk():
            if box.box_type == box_type:
                return box
        return None

    def find_all(self, box_type: bytes) -> list["Box"]:
        return [box for box in self.walk() if box.box_type == box_type]


# =============================================================================
# Decoders
# =============================================================================


def _decode_ftyp(data: bytes) -> FileType:
    major_brand, minor_version = struct.unpack_from(">4sI", data, 0)
    brands = tuple(data[pos : pos + 4] for pos in range(8, len(data) - 3, 4))
    return FileType(major_brand=major_brand, minor_version=minor_version, compatible_brands=brands)


def _decode_mvhd(version: int, flags: int, body: bytes) -> MovieHeader:
    if version == 1:
        creation, modification, timescale, duration = struct.unpack_from(">QQIQ", body, 0)
        pos = 28
    else:
        creation, modification, timescale, duration = struct.unpack_from(">IIII", body, 0)
        pos = 16
    rate, volume = struct.unpack_from(">IH", body, pos)
    # rate(4) volume(2) reserved(10) matrix(36) pre_defined(24)
    next_track_id = 0
    if len(body) >= pos + 80:
        next_track_id = struct.unpack_from(">I", body, pos + 76)[0]
    return MovieHeader(
        version=version,
        flags=flags,
        creation_time=creation,
        modification_time=modification,
        timescale=timescale,
        duration=duration,
        rate=rate / 65536.0,
        volume=volume / 256.0,
        next_track_id=next_track_id,
    )


def _decode_tkhd(version: int, flags: int, body: bytes) -> TrackHeader:
    if version == 1:
        creation, modification, track_id, _, duration = struct.unpack_from(">QQIIQ", body, 0)
        pos = 32
    else:
        creation, modification, track_id, _, duration = struct.unpack_from(">IIIII", body, 0)
        pos = 20
    # reserved(8) layer(2) alternate_group(2) volume(2) reserved(2) matrix(36) width(4) height(4)
    layer, alternate_group, volume = struct.unpack_from(">hhh", body, pos + 8)
    matrix = struct.unpack_from(">9i", body, pos + 16)
    width, height = struct.unpack_from(">II", body, pos + 52)
    return TrackHeader(
        version=version,
        flags=flags,
        creation_time=creation,
        modification_time=modification,
        track_id=track_id,
        duration=duration,
        layer=layer,
        alternate_group=alternate_group,
        volume=volume / 256.0,
        matrix=matrix,
        width=width / 65536.0,
        height=height / 65536.0,
    )


def _decode_language(packed: int) -> str:
    """ISO-639-2/T code packed as three 5-bit letters offset by 0x60."""
    if packed == 0:
        return ""
    return "".join(chr(((packed >> shift) & 0x1F) + 0x60) for shift in (10, 5, 0))


def _decode_mdhd(version: int, flags: int, body: bytes) -> MediaHeader:
    if version == 1:
        creation, modification, timescale, duration = struct.unpack_from(">QQIQ", body, 0)
        pos = 28
    else:
        creation, modification, timescale, duration = struct.unpack_from(">IIII", body, 0)
        pos = 16
    language = _decode_language(struct.unpack_from(">H", body, pos)[0]) if len(body) >= pos + 2 else ""
    return MediaHeader(
        version=version,
        flags=flags,
        creation_time=creation,
        modification_time=modification,
        timescale=timescale,
        duration=duration,
        language=language,
    )


def _decode_hdlr(version: int, flags: int, body: bytes) -> HandlerReference:
    # pre_defined(4) handler_type(4) reserved(12) name(rest, null-terminated)
    handler_type = struct.unpack_from(">4x4s", body, 0)[0]
    name = body[20:].split(b"\x00", 1)[0].decode("utf-8", errors="replace")
    return HandlerReference(version=version, flags=flags, handler_type=handler_type, name=name)


def _decode_sample_entry(entry_type: bytes, body: bytes) -> SampleEntry:
    data_reference_index = struct.unpack_from(">6xH", body, 0)[0] if len(body) >= 8 else 0
    if entry_type not in _VISUAL_FORMATS or len(body) < _VISUAL_ENTRY_FIELDS_SIZE:
        return SampleEntry(format=entry_type, data_reference_index=data_reference_index, body=body)

    # reserved(6) data_reference_index(2) pre_defined(2) reserved(2) pre_defined(12) width(2) height(2)
    width, height = struct.unpack_from(">HH", body, 24)
    boxes = tuple(iter_boxes(body[_VISUAL_ENTRY_FIELDS_SIZE:]))
    return SampleEntry(
        format=entry_type,
        data_reference_index=data_reference_index,
        width=width,
        height=height,
        body=body,
        boxes=boxes,
    )


def _decode_stsd(version: int, flags: int, body: bytes) -> SampleDescription:
    entry_count = struct.unpack_from(">I", body, 0)[0]
    entries = []
    pos = 4
    while len(entries) < entry_count:
        result = read_box_header(body, pos)
        if result is None:
            break
        entry_type, header_size, entry_size = result
        if entry_size < header_size or pos + entry_size > len(body):
            logger.warning("[mp4_boxes] stsd entry %r at +%d overruns the box (size=%d)", entry_type, pos, entry_size)
            break
        entries.append(_decode_sample_entry(entry_type, body[pos + header_size : pos + entry_size]))
        pos += entry_size

    if len(entries) != entry_count:
        logger.warning("[mp4_boxes] stsd declares %d entries, decoded %d", entry_count, len(entries))
    return SampleDescription(version=version, flags=flags, entries=tuple(entries))


def _table_decoder(table_cls: type) -> Callable[[int, int, bytes], object]:
    def decode(version: int, flags: int, body: bytes):
        return table_cls(version=version, flags=flags, data=body)

    return decode


@dataclass(frozen=True)
class BoxCodec:
    """How a registered box type is decoded."""

    decode: Callable  # (payload) for plain boxes, (version, flags, body) for full boxes
    payload_type: type  # Called with no args (plain) or version/flags (full) for the zero view
    full_box: bool = True


DEFAULT_CODECS: dict[bytes, BoxCodec] = {
    b"ftyp": BoxCodec(_decode_ftyp, FileType, full_box=False),
    b"mvhd": BoxCodec(_decode_mvhd, MovieHeader),
    b"tkhd": BoxCodec(_decode_tkhd, TrackHeader),
    b"mdhd": BoxCodec(_decode_mdhd, MediaHeader),
    b"hdlr": BoxCodec(_decode_hdlr, HandlerReference),
    b"stsd": BoxCodec(_decode_stsd, SampleDescription),
    b"stsz": BoxCodec(_table_decoder(SampleSizeTable), SampleSizeTable),
    b"stco": BoxCodec(_table_decoder(ChunkOffsetTable), ChunkOffsetTable),
    b"stsc": BoxCodec(_table_decoder(SampleToChunkTable), SampleToChunkTable),
    b"stts": BoxCodec(_table_decoder(TimeToSampleTable), TimeToSampleTable),
    b"ctts": BoxCodec(_table_decoder(CompositionOffsetTable), CompositionOffsetTable),
    b"stss": BoxCodec(_table_decoder(SyncSampleTable), SyncSampleTable),
}


# =============================================================================
# Registry and parser
# =============================================================================


class BoxRegistry:
    """
    Maps box types to decoders.

    Containers recurse, registered types decode their payload, and anything
    else is kept as an opaque blob, or as (offset, length) when larger than
    ``large_box_threshold`` so a media data box is never loaded whole.
    """

    def __init__(
        self,
        codecs: dict[bytes, BoxCodec] | None = None,
        containers: frozenset[bytes] = CONTAINER_TYPES,
        large_box_threshold: int | None = None,
    ) -> None:
        self._codecs = dict(DEFAULT_CODECS if codecs is None else codecs)
        self._containers = containers
        self.large_box_threshold = (
            settings.large_box_threshold if large_box_threshold is None else large_box_threshold
        )

    def register(self, box_type: bytes, codec: BoxCodec) -> None:
        self._codecs[box_type] = codec

    def is_container(self, box_type: bytes) -> bool:
        return box_type in self._containers

    def codec_for(self, box_type: bytes) -> BoxCodec | None:
        return self._codecs.get(box_type)

    def decode_payload(self, box_type: bytes, data: bytes) -> BoxPayload:
        """Decode a registered box payload, degrading to its zero view on failure."""
        codec = self._codecs[box_type]
        if not codec.full_box:
            try:
                return codec.decode(data)
            except struct.error as e:
                logger.warning("[mp4_boxes] Truncated %r payload (%d bytes): %s", box_type, len(data), e)
                return codec.payload_type()

        try:
            version, flags, body = parse_full_box_header(data)
        except struct.error:
            logger.warning("[mp4_boxes] %r payload too short for version/flags (%d bytes)", box_type, len(data))
            return codec.payload_type()

        try:
            if version not in SUPPORTED_VERSIONS:
                raise UnsupportedVersion(box_type, version)
            return codec.decode(version, flags, body)
        except UnsupportedVersion as e:
            logger.warning("[mp4_boxes] %s; using an empty view", e)
        except struct.error as e:
            logger.warning("[mp4_boxes] Truncated %r payload (%d bytes): %s", box_type, len(body), e)
        return codec.payload_type(version=version, flags=flags)

    def parse_box(self, source: ByteSource, box_type: bytes, size: int, offset: int) -> Box:
        """Decode one box whose header has been read; the source sits at its payload."""
        payload_offset = offset + BOX_HEADER_SIZE
        payload_size = size - BOX_HEADER_SIZE

        if self.is_container(box_type):
            children = parse_boxes(source, payload_offset + payload_size, self)
            return Box(box_type, size, offset, None, tuple(children))

        if box_type in self._codecs:
            data = source.read_exact(payload_size)
            return Box(box_type, size, offset, self.decode_payload(box_type, data))

        if size > self.large_box_threshold:
            logger.debug("[mp4_boxes] Deferring %r at %d (%d bytes)", box_type, offset, size)
            return Box(box_type, size, offset, DeferredPayload(payload_offset, payload_size))

        return Box(box_type, size, offset, OpaquePayload(source.read_exact(payload_size)))


def parse_boxes(source: ByteSource, end: int, registry: BoxRegistry) -> list[Box]:
    """
    Parse sibling boxes from the current source position up to ``end``.

    Stops early, keeping the boxes already parsed, when a header is
    truncated, a size is below the header size, or a box overruns ``end``.
    """
    boxes: list[Box] = []
    while True:
        offset = source.tell()
        if offset >= end:
            break
        try:
            box = _parse_one(source, offset, end, registry)
        except StructuralParseError as e:
            logger.warning("[mp4_boxes] Stopping level at %d: %s", offset, e)
            break
        if box is None:
            break
        boxes.append(box)
        source.seek(offset + box.size)
    return boxes


def _parse_one(source: ByteSource, offset: int, end: int, registry: BoxRegistry) -> Box | None:
    if end - offset < BOX_HEADER_SIZE:
        raise StructuralParseError(f"{end - offset} trailing bytes cannot hold a box header", offset)

    header = source.read(BOX_HEADER_SIZE)
    if len(header) < BOX_HEADER_SIZE:
        # End of stream inside the declared range
        return None

    size, box_type = struct.unpack(">I4s", header)
    if size == 0:
        size = end - offset
    if size < BOX_HEADER_SIZE:
        raise StructuralParseError(f"box {box_type!r} has size {size}", offset)
    if offset + size > end:
        raise StructuralParseError(f"box {box_type!r} (size={size}) overruns its parent ending at {end}", offset)

    return registry.parse_box(source, box_type, size, offset)


# =============================================================================
# Box tree
# =============================================================================


@dataclass(frozen=True)
class BoxTree:
    """Root of a parsed MP4: the top-level boxes in file order."""

    boxes: tuple[Box, ...] = ()

    @classmethod
    def parse(cls, source: ByteSource, limit: int | None = None, registry: BoxRegistry | None = None) -> "BoxTree":
        """Parse boxes from the current position for ``limit`` bytes (default: to end of source)."""
        registry = registry or BoxRegistry()
        start = source.tell()
        end = source.size if limit is None else min(start + limit, source.size)
        boxes = parse_boxes(source, end, registry)
        logger.info("[mp4_boxes] Parsed %d top-level boxes from %d bytes", len(boxes), end - start)
        return cls(tuple(boxes))

    def walk(self) -> Iterator[Box]:
        for box in self.boxes:
            yield from box.walk()

    def find_first(self, box_type: bytes) -> Box | None:
        for box in self.walk():
            if box.box_type == box_type:
                return box
        return None

    def find_all(self, box_type: bytes) -> list[Box]:
        return [box for box in self.walk() if box.box_type == box_type]

    def dump(self) -> str:
        """Indented description of every box, one line per box plus its payload."""
        lines: list[str] = []

        def _dump(box: Box, prefix: str) -> None:
            lines.append(f"{prefix}{box.name} size: {box.size}")
            if box.payload is not None:
                lines.append(f"{prefix} {box.payload!r}")
            for child in box.children:
                _dump(child, prefix + ". ")

        for box in self.boxes:
            _dump(box, "")
        return "\n".join(lines)

"""
MP4 -> FLV remux of a single AVC video track.

Flow:
1. Parse the box tree from the source.
2. Select the first video trak and collect its sample tables.
3. Resolve every sample's file offset, size, decode time and composition
   offset through the tables (one forward pass).
4. Read each sample, scan its NAL units for an IDR slice and emit one FLV
   video tag, after the AVC sequence header tag built from avcC.
"""

import logging
from dataclasses import dataclass
from typing import BinaryIO, Iterator

from mp4flv.configs import settings
from mp4flv.remuxer.codec_utils import DEFAULT_NAL_LENGTH_SIZE, is_keyframe, parse_avc_decoder_config
from mp4flv.remuxer.errors import MissingRequiredBox
from mp4flv.remuxer.flv_muxer import FLVWriter
from mp4flv.remuxer.media_source import ByteSource
from mp4flv.remuxer.mp4_boxes import (
    Box,
    BoxRegistry,
    BoxTree,
    HandlerReference,
    MediaHeader,
    SampleDescription,
    TrackHeader,
)
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
# Track selection
# =============================================================================


@dataclass(frozen=True)
class TrackTables:
    """The selected trak and the payloads of the boxes needed to walk its samples."""

    trak: Box
    mdhd: MediaHeader
    stsd: SampleDescription
    stsz: SampleSizeTable
    stco: ChunkOffsetTable
    stsc: SampleToChunkTable
    stts: TimeToSampleTable
    ctts: CompositionOffsetTable | None = None
    stss: SyncSampleTable | None = None
    tkhd: TrackHeader | None = None
    hdlr: HandlerReference | None = None

    @property
    def timescale(self) -> int:
        return self.mdhd.timescale

    @property
    def sample_count(self) -> int:
        return self.stsz.sample_count

    @property
    def duration_ms(self) -> int:
        return self.mdhd.duration * 1000 // self.timescale

    @property
    def dimensions(self) -> tuple[int, int]:
        """(width, height) in pixels from tkhd, else from the sample entry."""
        if self.tkhd is not None and self.tkhd.width and self.tkhd.height:
            return int(self.tkhd.width), int(self.tkhd.height)
        if self.stsd.entries:
            return self.stsd.entries[0].width, self.stsd.entries[0].height
        return 0, 0


def _handler_type(trak: Box) -> bytes:
    hdlr = trak.find_first(b"hdlr")
    if hdlr is None or not isinstance(hdlr.payload, HandlerReference):
        return b""
    return hdlr.payload.handler_type


def select_track(tree: BoxTree) -> TrackTables:
    """
    Pick the first trak with a video handler (or the first trak when none
    declares one) and collect its tables.

    Raises:
        MissingRequiredBox: no trak, a required box absent, or a zero timescale.
    """
    traks = tree.find_all(b"trak")
    if not traks:
        raise MissingRequiredBox(b"trak")
    trak = next((t for t in traks if _handler_type(t) == b"vide"), traks[0])

    def payload(box_type: bytes, required: bool = True):
        box = trak.find_first(box_type)
        if box is None:
            if required:
                raise MissingRequiredBox(box_type)
            return None
        return box.payload

    tables = TrackTables(
        trak=trak,
        mdhd=payload(b"mdhd"),
        stsd=payload(b"stsd"),
        stsz=payload(b"stsz"),
        stco=payload(b"stco"),
        stsc=payload(b"stsc"),
        stts=payload(b"stts"),
        ctts=payload(b"ctts", required=False),
        stss=payload(b"stss", required=False),
        tkhd=payload(b"tkhd", required=False),
        hdlr=payload(b"hdlr", required=False),
    )
    if tables.timescale == 0:
        raise MissingRequiredBox(b"mdhd", "Track media header has a zero timescale")

    if tables.stts.total_samples != tables.sample_count:
        logger.warning(
            "[mp4_to_flv] stts describes %d samples, stsz %d",
            tables.stts.total_samples,
            tables.sample_count,
        )
    if tables.ctts is not None and tables.ctts.total_samples != tables.sample_count:
        logger.warning(
            "[mp4_to_flv] ctts describes %d samples, stsz %d",
            tables.ctts.total_samples,
            tables.sample_count,
        )
    return tables


# =============================================================================
# Sample extraction
# =============================================================================


@dataclass(frozen=True)
class Sample:
    """Location and timing of one sample. Times are in media timescale ticks."""

    index: int
    offset: int
    size: int
    decode_time: int
    composition_offset: int
    timescale: int
    is_sync: bool = True

    @property
    def dts_ms(self) -> int:
        return self.decode_time * 1000 // self.timescale

    @property
    def pts_ms(self) -> int:
        return (self.decode_time + self.composition_offset) * 1000 // self.timescale

    @property
    def cts_ms(self) -> int:
        return self.composition_offset * 1000 // self.timescale


def _build_sample(tables: TrackTables, index: int, offset: int, strict: bool) -> Sample:
    composition_offset = tables.ctts.sample_to_offset(index, strict) if tables.ctts is not None else 0
    return Sample(
        index=index,
        offset=offset,
        size=tables.stsz.size(index),
        decode_time=tables.stts.sample_to_time(index, strict),
        composition_offset=composition_offset,
        timescale=tables.timescale,
        is_sync=tables.stss.is_sync(index) if tables.stss is not None else True,
    )


def iter_samples(tables: TrackTables, strict: bool | None = None) -> Iterator[Sample]:
    """
    Yield every sample in increasing index order.

    The offset inside a chunk is accumulated from the preceding samples'
    sizes and reset whenever the chunk changes, so this must be consumed
    in order.
    """
    strict = settings.strict_sample_tables if strict is None else strict
    last_chunk = -1
    offset_in_chunk = 0
    for index in range(tables.sample_count):
        chunk = tables.stsc.sample_to_chunk(index, strict)
        if chunk != last_chunk:
            last_chunk = chunk
            offset_in_chunk = 0
        sample = _build_sample(tables, index, tables.stco.offset(chunk) + offset_in_chunk, strict)
        offset_in_chunk += sample.size
        yield sample


def locate_sample(tables: TrackTables, index: int, strict: bool | None = None) -> Sample:
    """Resolve a single sample without walking the samples before its chunk."""
    strict = settings.strict_sample_tables if strict is None else strict
    chunk = tables.stsc.sample_to_chunk(index, strict)
    first = tables.stsc.first_sample_of_chunk(chunk)
    offset_in_chunk = sum(tables.stsz.size(i) for i in range(first, index))
    return _build_sample(tables, index, tables.stco.offset(chunk) + offset_in_chunk, strict)


def read_sample(source: ByteSource, sample: Sample) -> bytes:
    return source.read_at(sample.offset, sample.size)


# =============================================================================
# Conversion
# =============================================================================


@dataclass
class ConversionResult:
    sample_count: int = 0
    keyframe_count: int = 0
    bytes_written: int = 0
    duration_ms: int = 0
    width: int = 0
    height: int = 0
    codec: str = ""


def convert(
    source: ByteSource,
    sink: BinaryIO,
    strict: bool | None = None,
    registry: BoxRegistry | None = None,
) -> ConversionResult:
    """
    Remux the first video track of ``source`` into an FLV stream on ``sink``.

    Raises:
        MissingRequiredBox: the track or one of its required boxes is absent.
        IoFailure: a read, seek or write failed.
        TagOverflowError: a sample does not fit in one FLV tag.
    """
    source.seek(0)
    tree = BoxTree.parse(source, registry=registry)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("[mp4_to_flv] Box tree:\n%s", tree.dump())

    tables = select_track(tree)
    config = tables.stsd.codec_config(b"avcC")
    if config is None:
        raise MissingRequiredBox(b"avcC", f"Sample entry {tables.stsd.codec!r} has no avcC configuration")

    nal_length_size = DEFAULT_NAL_LENGTH_SIZE
    try:
        avc = parse_avc_decoder_config(config)
        nal_length_size = avc.nal_length_size
        logger.info(
            "[mp4_to_flv] %s, %d SPS / %d PPS, %d-byte NAL lengths",
            avc.codec_string,
            len(avc.sps_list),
            len(avc.pps_list),
            nal_length_size,
        )
    except ValueError as e:
        logger.warning("[mp4_to_flv] Unreadable avcC (%s); assuming %d-byte NAL lengths", e, nal_length_size)

    width, height = tables.dimensions
    result = ConversionResult(
        duration_ms=tables.duration_ms,
        width=width,
        height=height,
        codec=tables.stsd.codec,
    )

    writer = FLVWriter(sink)
    writer.write_avc_sequence_header(config)

    for sample in iter_samples(tables, strict):
        data = read_sample(source, sample)
        keyframe = is_keyframe(data, nal_length_size)
        writer.write_video_frame(data, sample.dts_ms, keyframe, sample.cts_ms)

        result.sample_count += 1
        result.keyframe_count += int(keyframe)
        if keyframe != sample.is_sync:
            logger.debug(
                "[mp4_to_flv] Sample %d: NAL scan keyframe=%s, stss sync=%s", sample.index, keyframe, sample.is_sync
            )
        logger.debug(
            "[mp4_to_flv] Sample %d: offset=%d size=%d dts=%dms cts=%dms key=%s",
            sample.index,
            sample.offset,
            sample.size,
            sample.dts_ms,
            sample.cts_ms,
            keyframe,
        )

    result.bytes_written = writer.bytes_written
    logger.info(
        "[mp4_to_flv] Wrote %d samples (%d keyframes), %dx%d, duration=%.1fs, %d bytes",
        result.sample_count,
        result.keyframe_count,
        result.width,
        result.height,
        result.duration_ms / 1000.0,
        result.bytes_written,
    )
    return result

import struct

from mp4flv.remuxer.mp4_boxes import (
    BoxRegistry,
    BoxTree,
    DeferredPayload,
    FileType,
    HandlerReference,
    MediaHeader,
    MovieHeader,
    OpaquePayload,
    SampleDescription,
    TrackHeader,
)
from mp4flv.remuxer.sample_tables import SampleSizeTable, TimeToSampleTable
from mp4_builders import (
    build_avc1_entry,
    build_avcc_record,
    build_box,
    build_full_box,
    build_ftyp,
    build_mdhd,
    build_mp4,
    build_mvhd,
    build_stsd,
    build_stsz,
    build_stts,
    build_trak,
    idr_sample,
    inter_sample,
)


def _parse(make_source, data: bytes, **registry_kwargs) -> BoxTree:
    registry = BoxRegistry(**registry_kwargs) if registry_kwargs else None
    return BoxTree.parse(make_source(data), registry=registry)


def _sample_file() -> bytes:
    return build_mp4(
        chunks=[[idr_sample(40), inter_sample(30)], [inter_sample(20)]],
        stsc_runs=[(1, 2, 1), (2, 1, 1)],
        stts_runs=[(3, 3000)],
        timescale=90000,
    )


def test_parse_builds_typed_tree(make_source):
    tree = _parse(make_source, _sample_file())

    assert [box.box_type for box in tree.boxes] == [b"ftyp", b"moov", b"mdat"]
    ftyp = tree.find_first(b"ftyp").payload
    assert isinstance(ftyp, FileType)
    assert ftyp.major_brand == b"isom"
    assert b"avc1" in ftyp.compatible_brands

    assert isinstance(tree.find_first(b"mvhd").payload, MovieHeader)
    assert tree.find_first(b"mvhd").payload.timescale == 90000
    assert tree.find_first(b"moov").payload is None

    tkhd = tree.find_first(b"tkhd").payload
    assert isinstance(tkhd, TrackHeader)
    assert (tkhd.width, tkhd.height) == (640.0, 360.0)

    mdhd = tree.find_first(b"mdhd").payload
    assert isinstance(mdhd, MediaHeader)
    assert (mdhd.timescale, mdhd.duration, mdhd.language) == (90000, 9000, "und")

    hdlr = tree.find_first(b"hdlr").payload
    assert isinstance(hdlr, HandlerReference)
    assert hdlr.handler_type == b"vide"
    assert hdlr.name == "VideoHandler"

    assert isinstance(tree.find_first(b"stsz").payload, SampleSizeTable)
    assert tree.find_first(b"stsz").payload.sample_count == 3
    assert isinstance(tree.find_first(b"mdat").payload, OpaquePayload)


def test_box_sizes_nest_within_parents(make_source):
    tree = _parse(make_source, _sample_file())
    for box in tree.walk():
        assert box.size >= 8
        assert 8 + sum(child.size for child in box.children) <= box.size


def test_find_first_and_find_all_are_pre_order(make_source):
    first_trak = build_trak([build_stsz([1])], handler_type=b"soun", track_id=1)
    second_trak = build_trak([build_stsz([2, 3])], handler_type=b"vide", track_id=2)
    data = build_box(b"moov", build_mvhd() + first_trak + second_trak)
    tree = _parse(make_source, data)

    all_stsz = tree.find_all(b"stsz")
    assert [box.payload.sample_count for box in all_stsz] == [1, 2]
    assert tree.find_first(b"stsz") is all_stsz[0]
    assert tree.find_first(b"trak").find_first(b"hdlr").payload.handler_type == b"soun"
    assert tree.find_first(b"ctts") is None
    assert tree.find_all(b"ctts") == []

    order = [box.box_type for box in tree.walk()]
    assert order.index(b"mvhd") < order.index(b"trak") < order.index(b"tkhd") < order.index(b"mdia")


def test_box_find_first_includes_itself(make_source):
    tree = _parse(make_source, build_box(b"moov", build_mvhd()))
    moov = tree.boxes[0]
    assert moov.find_first(b"moov") is moov
    assert moov.find_first(b"mvhd") is moov.children[0]


def test_large_unknown_box_is_deferred(make_source):
    data = build_ftyp() + build_box(b"mdat", b"\x00" * 300) + build_box(b"uuid", b"\x01" * 16)
    tree = _parse(make_source, data, large_box_threshold=256)

    mdat = tree.find_first(b"mdat")
    assert mdat.payload == DeferredPayload(offset=mdat.offset + 8, length=300)
    uuid = tree.find_first(b"uuid")
    assert isinstance(uuid.payload, OpaquePayload)
    assert uuid.payload.data == b"\x01" * 16


def test_undersized_box_ends_level_but_keeps_siblings(make_source):
    bogus = struct.pack(">I4s", 4, b"junk")
    data = build_ftyp() + build_mvhd() + bogus + build_box(b"free", b"")
    tree = _parse(make_source, data)
    assert [box.box_type for box in tree.boxes] == [b"ftyp", b"mvhd"]


def test_undersized_child_only_truncates_its_parent(make_source):
    bogus = struct.pack(">I4s", 2, b"junk")
    moov = build_box(b"moov", build_mvhd() + bogus + b"\x00" * 8)
    data = build_ftyp() + moov + build_box(b"free", b"abc")
    tree = _parse(make_source, data)

    assert [box.box_type for box in tree.boxes] == [b"ftyp", b"moov", b"free"]
    assert [box.box_type for box in tree.find_first(b"moov").children] == [b"mvhd"]
    assert tree.find_first(b"free").payload.data == b"abc"


def test_box_overrunning_parent_is_dropped(make_source):
    overrun = struct.pack(">I4s", 64, b"mvhd") + b"\x00" * 8
    moov = build_box(b"moov", build_box(b"udta", b"") + overrun)
    tree = _parse(make_source, moov)
    assert [box.box_type for box in tree.find_first(b"moov").children] == [b"udta"]


def test_truncated_top_level_header_stops_parse(make_source):
    data = build_ftyp() + b"\x00\x00\x00"
    tree = _parse(make_source, data)
    assert [box.box_type for box in tree.boxes] == [b"ftyp"]


def test_zero_size_extends_to_end(make_source):
    data = build_ftyp() + struct.pack(">I4s", 0, b"mdat") + b"\xFF" * 20
    tree = _parse(make_source, data)
    mdat = tree.find_first(b"mdat")
    assert mdat.size == 28
    assert mdat.payload.data == b"\xFF" * 20


def test_cursor_is_reseeked_past_trailing_payload(make_source):
    mdhd_with_extra = build_full_box(b"mdhd", 0, 0, build_mdhd(600, 1200)[12:] + b"\xEE" * 10)
    data = build_box(b"mdia", mdhd_with_extra + build_stts([(4, 150)]))
    tree = _parse(make_source, data)

    assert tree.find_first(b"mdhd").payload.timescale == 600
    stts = tree.find_first(b"stts").payload
    assert isinstance(stts, TimeToSampleTable)
    assert stts.sample_to_time(3) == 450


def test_unsupported_version_yields_empty_view(make_source):
    mdhd_v2 = build_full_box(b"mdhd", 2, 0, b"\x00" * 24)
    data = build_box(b"mdia", mdhd_v2 + build_stts([(1, 10)]))
    tree = _parse(make_source, data)

    mdhd = tree.find_first(b"mdhd").payload
    assert mdhd == MediaHeader(version=2, flags=0)
    assert tree.find_first(b"stts").payload.total_samples == 1


def test_truncated_record_yields_empty_view(make_source):
    data = build_full_box(b"tkhd", 0, 7, b"\x00" * 6) + build_mvhd(48000)
    tree = _parse(make_source, data)
    assert tree.find_first(b"tkhd").payload == TrackHeader(version=0, flags=7)
    assert tree.find_first(b"mvhd").payload.timescale == 48000


def test_version_1_media_header(make_source):
    tree = _parse(make_source, build_mdhd(timescale=24000, duration=2**40, version=1))
    mdhd = tree.find_first(b"mdhd").payload
    assert (mdhd.version, mdhd.timescale, mdhd.duration) == (1, 24000, 2**40)


def test_stsd_entries_are_parsed_as_boxes(make_source):
    avcc = build_avcc_record()
    tree = _parse(make_source, build_stsd(build_avc1_entry(avcc, width=1280, height=720)))

    stsd = tree.find_first(b"stsd").payload
    assert isinstance(stsd, SampleDescription)
    assert stsd.codec == "avc1"
    entry = stsd.entries[0]
    assert (entry.width, entry.height, entry.data_reference_index) == (1280, 720, 1)
    assert stsd.codec_config(b"avcC") == avcc
    assert stsd.codec_config(b"hvcC") is None


def test_stsd_falls_back_to_marker_scan(make_source):
    avcc = build_avcc_record()
    # Unrecognized entry format: no structured child parse, the marker scan finds avcC
    entry = build_box(b"xvc1", b"\x00" * 20 + b"avcC" + avcc)
    tree = _parse(make_source, build_stsd(entry))
    assert tree.find_first(b"stsd").payload.codec_config(b"avcC") == avcc


def test_registry_accepts_custom_containers(make_source):
    data = build_box(b"wrap", build_mvhd(1234))
    registry = BoxRegistry(containers=frozenset({b"wrap"}))
    tree = BoxTree.parse(make_source(data), registry=registry)
    assert tree.find_first(b"mvhd").payload.timescale == 1234


def test_parse_respects_limit(make_source):
    data = build_ftyp() + build_mvhd() + build_box(b"free", b"")
    source = make_source(data)
    tree = BoxTree.parse(source, limit=len(build_ftyp()))
    assert [box.box_type for box in tree.boxes] == [b"ftyp"]


def test_dump_lists_every_box(make_source):
    tree = _parse(make_source, _sample_file())
    dump = tree.dump()
    lines = dump.splitlines()
    assert lines[0].startswith("ftyp size: ")
    assert any(line.startswith(". trak size: ") for line in lines)
    assert any(line.startswith(". . . . . stsz size: ") for line in lines)
    assert "SampleSizeTable(" in dump

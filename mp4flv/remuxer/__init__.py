"""
MP4 to FLV remuxer package.

Provides pure Python implementations for ISO base media parsing and FLV
muxing of a single AVC video track:

- media_source: Random-access byte source protocol and file-backed source
- mp4_boxes: Box tree parser with registry-based dispatch
- sample_tables: stsz/stco/stsc/stts/ctts/stss index translation
- codec_utils: AVC NAL unit scanning and decoder configuration parsing
- flv_muxer: FLV header and tag serialization
- flv_reader: FLV tag parsing with forward and backward traversal
- mp4_to_flv: Track selection, sample extraction and the conversion loop
- errors: Error taxonomy shared by the modules above
"""

"""
Error taxonomy for MP4 parsing and FLV remuxing.

StructuralParseError and UnsupportedVersion are recovered inside the box
parser (the current level or box degrades, the rest of the tree survives).
MissingRequiredBox, IoFailure and TagOverflowError abort a conversion.
"""


class RemuxError(Exception):
    """Base exception for all remuxer errors."""

    category = "remux_error"


class StructuralParseError(RemuxError):
    """Truncated box header, size underflow, or a box overrunning its parent."""

    category = "structural_parse_error"

    def __init__(self, message: str, offset: int = -1):
        self.offset = offset
        super().__init__(message)


class UnsupportedVersion(RemuxError):
    """Full box carries a version its decoder does not understand."""

    category = "unsupported_version"

    def __init__(self, box_type: bytes, version: int):
        self.box_type = box_type
        self.version = version
        super().__init__(f"Unsupported {box_type.decode('latin-1')} version {version}")


class MissingRequiredBox(RemuxError):
    """The selected track lacks a box the conversion cannot do without."""

    category = "missing_required_box"

    def __init__(self, box_type: bytes, message: str | None = None):
        self.box_type = box_type
        super().__init__(message or f"Required box '{box_type.decode('latin-1')}' not found")


class IoFailure(RemuxError):
    """Seek, read or write failure on the source or sink."""

    category = "io_failure"


class SampleIndexError(RemuxError, IndexError):
    """Sample or chunk index past what a sample table describes."""

    category = "sample_index_error"


class TagOverflowError(RemuxError, ValueError):
    """Tag payload too large for the 24-bit FLV data size field."""

    category = "tag_overflow"

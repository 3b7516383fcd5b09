"""
Sample table decoders (stsz, stco, stsc, stts, ctts, stss).

Each table keeps the payload bytes that follow the full-box version/flags
and answers per-record queries straight from them with struct.unpack_from.
Run-length tables precompute one prefix-sum tuple at construction so that
sample-to-X lookups are a bisect instead of a linear walk.

Index policy:
- Run tables (stsc, stts, ctts) extrapolate from their last run for a
  sample index past the described range. Pass ``strict=True`` to raise
  SampleIndexError instead.
- Fixed-stride arrays (stsz without a default size, stco) always raise
  SampleIndexError for an index past the array.
"""

import bisect
import logging
import struct
from dataclasses import dataclass, field

from mp4flv.remuxer.errors import SampleIndexError

logger = logging.getLogger(__name__)


def _clamp_entry_count(box_name: str, declared: int, data_len: int, start: int, record_size: int) -> int:
    """Limit a declared entry count to the records actually present in the payload."""
    available = max(data_len - start, 0) // record_size
    if declared > available:
        logger.warning(
            "[sample_tables] %s declares %d entries but only %d fit in %d bytes; clamping",
            box_name,
            declared,
            available,
            data_len,
        )
        return available
    return declared


def _read_entry_count(box_name: str, data: bytes, record_size: int) -> int:
    if len(data) < 4:
        return 0
    declared = struct.unpack_from(">I", data, 0)[0]
    return _clamp_entry_count(box_name, declared, len(data), 4, record_size)


def _check_index(index: int, limit: int, what: str) -> None:
    if not 0 <= index < limit:
        raise SampleIndexError(f"{what} index {index} out of range [0, {limit})")


# =============================================================================
# Fixed-stride tables
# =============================================================================


@dataclass(frozen=True)
class SampleSizeTable:
    """
    Sample Size box (stsz).

    Layout: sample_size(4) + sample_count(4) + [entry_size(4)]...
    A non-zero sample_size means every sample has that size and no array follows.
    """

    version: int = 0
    flags: int = 0
    data: bytes = field(default=b"", repr=False)
    default_size: int = field(init=False, default=0)
    sample_count: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        if len(self.data) < 8:
            return
        default_size, declared = struct.unpack_from(">II", self.data, 0)
        if not default_size:
            declared = _clamp_entry_count("stsz", declared, len(self.data), 8, 4)
        object.__setattr__(self, "default_size", default_size)
        object.__setattr__(self, "sample_count", declared)

    def size(self, index: int) -> int:
        if self.default_size:
            return self.default_size
        _check_index(index, self.sample_count, "stsz sample")
        return struct.unpack_from(">I", self.data, 8 + 4 * index)[0]


@dataclass(frozen=True)
class ChunkOffsetTable:
    """
    Chunk Offset box (stco) - 32-bit absolute file offsets.

    Layout: entry_count(4) + [chunk_offset(4)]...
    """

    version: int = 0
    flags: int = 0
    data: bytes = field(default=b"", repr=False)
    entry_count: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        object.__setattr__(self, "entry_count", _read_entry_count("stco", self.data, 4))

    def offset(self, chunk: int) -> int:
        _check_index(chunk, self.entry_count, "stco chunk")
        return struct.unpack_from(">I", self.data, 4 + 4 * chunk)[0]


@dataclass(frozen=True)
class SyncSampleTable:
    """
    Sync Sample box (stss) - 1-based sample numbers of random access points.

    Layout: entry_count(4) + [sample_number(4)]...
    """

    version: int = 0
    flags: int = 0
    data: bytes = field(default=b"", repr=False)
    entry_count: int = field(init=False, default=0)
    _numbers: frozenset = field(init=False, default=frozenset(), repr=False)

    def __post_init__(self) -> None:
        entry_count = _read_entry_count("stss", self.data, 4)
        object.__setattr__(self, "entry_count", entry_count)
        if entry_count:
            object.__setattr__(self, "_numbers", frozenset(struct.unpack_from(f">{entry_count}I", self.data, 4)))

    def sample_number(self, n: int) -> int:
        _check_index(n, self.entry_count, "stss entry")
        return struct.unpack_from(">I", self.data, 4 + 4 * n)[0]

    def is_sync(self, index: int) -> bool:
        """True if the 0-based sample ``index`` is listed as a sync sample."""
        return (index + 1) in self._numbers


# =============================================================================
# Run-length tables
# =============================================================================


@dataclass(frozen=True)
class SampleToChunkTable:
    """
    Sample-to-Chunk box (stsc).

    Layout: entry_count(4) + [first_chunk(4) + samples_per_chunk(4) + sample_description_index(4)]...
    first_chunk is 1-based on disk; lookups return 0-based chunk indices.
    """

    version: int = 0
    flags: int = 0
    data: bytes = field(default=b"", repr=False)
    entry_count: int = field(init=False, default=0)
    _run_starts: tuple[int, ...] = field(init=False, default=(), repr=False)

    def __post_init__(self) -> None:
        entry_count = _read_entry_count("stsc", self.data, 12)

        # Samples consumed before each run. The gap ahead of the first run is
        # counted at one sample per chunk; a first_chunk going backwards
        # contributes nothing.
        run_starts = []
        consumed = 0
        last_first, last_spc = 1, 1
        for run in range(entry_count):
            first = self.first_chunk(run)
            consumed += max(first - last_first, 0) * last_spc
            run_starts.append(consumed)
            last_first, last_spc = first, self.samples_per_chunk(run)

        object.__setattr__(self, "entry_count", entry_count)
        object.__setattr__(self, "_run_starts", tuple(run_starts))

    def first_chunk(self, run: int) -> int:
        return struct.unpack_from(">I", self.data, 4 + 12 * run)[0]

    def samples_per_chunk(self, run: int) -> int:
        return struct.unpack_from(">I", self.data, 8 + 12 * run)[0]

    def description_index(self, run: int) -> int:
        return struct.unpack_from(">I", self.data, 12 + 12 * run)[0]

    def sample_to_chunk(self, index: int, strict: bool = False) -> int:
        """Return the 0-based chunk holding the 0-based sample ``index``."""
        if index < 0:
            raise SampleIndexError(f"stsc sample index {index} is negative")
        if not self._run_starts:
            if strict:
                raise SampleIndexError("stsc has no runs")
            return 0

        run = bisect.bisect_right(self._run_starts, index) - 1
        if run < 0:
            # Samples ahead of the first run all land in the first chunk
            return 0

        spc = self.samples_per_chunk(run)
        if spc == 0:
            raise SampleIndexError(f"stsc run {run} holds no samples (sample index {index})")
        return self.first_chunk(run) - 1 + (index - self._run_starts[run]) // spc

    def first_sample_of_chunk(self, chunk: int) -> int:
        """Return the 0-based index of the first sample stored in 0-based ``chunk``."""
        if chunk < 0:
            raise SampleIndexError(f"stsc chunk index {chunk} is negative")
        run = -1
        for candidate in range(self.entry_count):
            if self.first_chunk(candidate) - 1 <= chunk:
                run = candidate
            else:
                break
        if run < 0:
            return 0
        return self._run_starts[run] + (chunk - (self.first_chunk(run) - 1)) * self.samples_per_chunk(run)


@dataclass(frozen=True)
class TimeToSampleTable:
    """
    Decoding Time-to-Sample box (stts) - run-length encoded sample durations.

    Layout: entry_count(4) + [sample_count(4) + sample_delta(4)]...
    Times are in media timescale ticks.
    """

    version: int = 0
    flags: int = 0
    data: bytes = field(default=b"", repr=False)
    entry_count: int = field(init=False, default=0)
    total_samples: int = field(init=False, default=0)
    total_duration: int = field(init=False, default=0)
    _run_starts: tuple[int, ...] = field(init=False, default=(), repr=False)
    _run_times: tuple[int, ...] = field(init=False, default=(), repr=False)

    def __post_init__(self) -> None:
        entry_count = _read_entry_count("stts", self.data, 8)
        run_starts, run_times = [], []
        total_samples = total_duration = 0
        for run in range(entry_count):
            run_starts.append(total_samples)
            run_times.append(total_duration)
            count, delta = self.entry(run)
            total_samples += count
            total_duration += count * delta

        object.__setattr__(self, "entry_count", entry_count)
        object.__setattr__(self, "total_samples", total_samples)
        object.__setattr__(self, "total_duration", total_duration)
        object.__setattr__(self, "_run_starts", tuple(run_starts))
        object.__setattr__(self, "_run_times", tuple(run_times))

    def entry(self, run: int) -> tuple[int, int]:
        """Return (sample_count, sample_delta) of ``run``."""
        return struct.unpack_from(">II", self.data, 4 + 8 * run)

    def sample_to_time(self, index: int, strict: bool = False) -> int:
        """Return the decode time of the 0-based sample ``index``."""
        if index < 0:
            raise SampleIndexError(f"stts sample index {index} is negative")
        if index >= self.total_samples:
            if strict:
                raise SampleIndexError(f"stts sample index {index} out of range [0, {self.total_samples})")
            if not self.entry_count:
                return 0
            _, last_delta = self.entry(self.entry_count - 1)
            return self.total_duration + (index - self.total_samples) * last_delta

        run = bisect.bisect_right(self._run_starts, index) - 1
        _, delta = self.entry(run)
        return self._run_times[run] + (index - self._run_starts[run]) * delta


@dataclass(frozen=True)
class CompositionOffsetTable:
    """
    Composition Time-to-Sample box (ctts).

    Layout: entry_count(4) + [sample_count(4) + sample_offset(4)]...
    Offsets are read as signed 32-bit values for both versions.
    """

    version: int = 0
    flags: int = 0
    data: bytes = field(default=b"", repr=False)
    entry_count: int = field(init=False, default=0)
    total_samples: int = field(init=False, default=0)
    _run_starts: tuple[int, ...] = field(init=False, default=(), repr=False)

    def __post_init__(self) -> None:
        entry_count = _read_entry_count("ctts", self.data, 8)
        run_starts = []
        total_samples = 0
        for run in range(entry_count):
            run_starts.append(total_samples)
            total_samples += self.entry(run)[0]

        object.__setattr__(self, "entry_count", entry_count)
        object.__setattr__(self, "total_samples", total_samples)
        object.__setattr__(self, "_run_starts", tuple(run_starts))

    def entry(self, run: int) -> tuple[int, int]:
        """Return (sample_count, sample_offset) of ``run``."""
        return struct.unpack_from(">Ii", self.data, 4 + 8 * run)

    def sample_to_offset(self, index: int, strict: bool = False) -> int:
        """Return the composition offset of the 0-based sample ``index``."""
        if index < 0:
            raise SampleIndexError(f"ctts sample index {index} is negative")
        if not self.entry_count:
            if strict:
                raise SampleIndexError("ctts has no runs")
            return 0
        if index >= self.total_samples:
            if strict:
                raise SampleIndexError(f"ctts sample index {index} out of range [0, {self.total_samples})")
            return self.entry(self.entry_count - 1)[1]

        run = bisect.bisect_right(self._run_starts, index) - 1
        return self.entry(run)[1]

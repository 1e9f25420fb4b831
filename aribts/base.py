"""Shared primitives: exit codes, service id sets and the PCR-driven clock."""

from __future__ import annotations

import copy
import enum
import logging
import re
from datetime import datetime, timedelta
from typing import Iterable, Iterator

from .log import TRACE

_log = logging.getLogger(__name__)

BLOCK_SIZE = 4096

NULL_PID = 0x1FFF

MAX_PCR_EXT = 300
PCR_TICKS_PER_MS = 27_000
PCR_TICKS_PER_SEC = 27_000_000
PCR_UPPER_BOUND = (1 << 33) * MAX_PCR_EXT

TIME_ORIGIN = datetime(1970, 1, 1)


class ExitCode(enum.IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    FAILURE = 1
    # The filter stopped before the program started (canceled or rescheduled).
    RETRY = 222


def is_valid_pcr(pcr: int) -> bool:
    """Return True if `pcr` is a 27 MHz clock value in the PCR range."""
    return 0 <= pcr < PCR_UPPER_BOUND


def format_pcr(pcr: int) -> str:
    """Format a PCR as its 90 kHz base and 27 MHz extension."""
    return f"{pcr // MAX_PCR_EXT:010d}+{pcr % MAX_PCR_EXT:03d}"


def compare_pcr(lhs: int, rhs: int) -> int:
    """Compare two PCR values taking wrap-around into account.

    Returns a negative number, zero or a positive number.
    """
    delta = (lhs - rhs) % PCR_UPPER_BOUND
    if delta == 0:
        return 0
    return 1 if delta < PCR_UPPER_BOUND // 2 else -1


def _div_trunc(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def _ms_between(later: datetime, earlier: datetime) -> int:
    micros = (later - earlier) // timedelta(microseconds=1)
    return _div_trunc(micros, 1000)


_LEADING_INT = re.compile(r"\s*[+-]?\d+")


class SidSet:
    """A set of service ids."""

    def __init__(self, sids: Iterable[int] = ()) -> None:
        self._set: set[int] = {sid & 0xFFFF for sid in sids}

    def add(self, sid: int) -> None:
        self._set.add(sid & 0xFFFF)

    def extend(self, values: Iterable[str]) -> None:
        """Add service ids given as decimal strings.

        Strings with trailing non-digit characters are ignored; strings with
        no leading number at all raise ValueError.
        """
        for text in values:
            match = _LEADING_INT.match(text)
            if match is None:
                raise ValueError(f"invalid service id: {text!r}")
            if match.end() != len(text):
                continue
            self.add(int(match.group()))

    def __contains__(self, sid: object) -> bool:
        return sid in self._set

    def __len__(self) -> int:
        return len(self._set)

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._set))

    def __repr__(self) -> str:
        return f"SidSet({sorted(self._set)!r})"


class ClockBaseline:
    """A pair of a PCR value and the (JST) time it corresponds to."""

    def __init__(self) -> None:
        self._time = TIME_ORIGIN
        self._pcr = 0
        self._pid = NULL_PID
        self._pcr_ready = False
        self._time_ready = False

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def pcr(self) -> int:
        return self._pcr

    @property
    def time(self) -> datetime:
        return self._time

    @property
    def has_pid(self) -> bool:
        return self._pid != NULL_PID

    @property
    def is_ready(self) -> bool:
        return self._pcr_ready and self._time_ready

    def _require_ready(self) -> None:
        if not self.is_ready:
            raise RuntimeError("clock baseline is not ready")

    def pcr_to_time(self, pcr: int) -> datetime:
        self._require_ready()
        delta_ms = _div_trunc(pcr - self._pcr, PCR_TICKS_PER_MS)
        return self._time + timedelta(milliseconds=delta_ms)

    def time_to_pcr(self, time: datetime) -> int:
        self._require_ready()
        ms = _ms_between(time, self._time)  # may be negative
        return (self._pcr + ms * PCR_TICKS_PER_MS) % PCR_UPPER_BOUND

    def set_pid(self, pid: int) -> None:
        self._pid = pid
        self._pcr_ready = False
        self._time_ready = False

    def set_pcr(self, pcr: int) -> None:
        if not is_valid_pcr(pcr):
            raise ValueError(f"invalid PCR: {pcr}")
        self._pcr = pcr
        self._pcr_ready = True
        _log.log(TRACE, "Updated baseline clock PCR: %011X", pcr)

    def set_time(self, time: datetime) -> None:
        self._time = time
        self._time_ready = True
        _log.log(TRACE, "Updated baseline clock time: %s", time)

    def invalidate(self) -> None:
        self._pcr_ready = False
        self._time_ready = False


class Clock:
    """Stream time computed from PCR values against a baseline."""

    PCR_GAP_COUNT_THRESHOLD = 4

    def __init__(self, baseline: ClockBaseline | None = None) -> None:
        self._baseline = copy.copy(baseline) if baseline is not None else ClockBaseline()
        self._baseline_local_time = TIME_ORIGIN
        self._last_pcr = 0
        self._pcr_gap_count = 0
        self._ready = False
        self._pcr_wrap_around = False

    @property
    def pid(self) -> int:
        return self._baseline.pid

    @property
    def has_pid(self) -> bool:
        return self._baseline.has_pid

    @property
    def is_ready(self) -> bool:
        return self._ready and self._baseline.is_ready

    def now(self) -> datetime:
        if self.is_ready:
            last_pcr = self._last_pcr
            if self._pcr_wrap_around:
                last_pcr += PCR_UPPER_BOUND
            return self._baseline.pcr_to_time(last_pcr)
        # While the PCR PID is being switched, advance with the local clock.
        return self._baseline.time + (datetime.now() - self._baseline_local_time)

    def set_pid(self, pid: int) -> None:
        self._baseline.set_pid(pid)
        self._ready = False

    def update_time(self, time: datetime) -> None:
        self._baseline.set_time(time)
        self._baseline_local_time = datetime.now()
        if self._ready:
            self._sync_pcr()

    def update_pcr(self, pcr: int) -> None:
        if not is_valid_pcr(pcr):
            raise ValueError(f"invalid PCR: {pcr}")
        if self.is_ready:
            gap = self._compute_delta(pcr, self._last_pcr)
            if gap >= PCR_TICKS_PER_SEC:
                self._pcr_gap_count += 1
                if self._pcr_gap_count <= self.PCR_GAP_COUNT_THRESHOLD:
                    _log.warning(
                        "PCR#%04X: large gap %s -> %s, ignore",
                        self.pid, format_pcr(self._last_pcr), format_pcr(pcr),
                    )
                    return
                _log.warning(
                    "PCR#%04X: large gap %s -> %s, invalidate the clock for resync",
                    self.pid, format_pcr(self._last_pcr), format_pcr(pcr),
                )
                self._invalidate()
                return
            self._pcr_gap_count = 0
        if pcr < self._last_pcr:
            _log.debug(
                "PCR#%04X: wrap-around %s -> %s",
                self.pid, format_pcr(self._last_pcr), format_pcr(pcr),
            )
            self._pcr_wrap_around = True
        self._last_pcr = pcr
        self._ready = True
        if not self._baseline.is_ready:
            self._sync_pcr()

    def time_to_pcr(self, time: datetime) -> int:
        return self._baseline.time_to_pcr(time)

    def pcr_to_time(self, pcr: int) -> datetime:
        if not is_valid_pcr(pcr):
            raise ValueError(f"invalid PCR: {pcr}")
        return self._baseline.pcr_to_time(pcr)

    @staticmethod
    def _compute_delta(pcr: int, base_pcr: int) -> int:
        if pcr < base_pcr:
            return PCR_UPPER_BOUND - base_pcr + pcr
        return pcr - base_pcr

    def _invalidate(self) -> None:
        self._baseline.invalidate()
        self._last_pcr = 0
        self._ready = False
        self._pcr_wrap_around = False

    def _sync_pcr(self) -> None:
        self._baseline.set_pcr(self._last_pcr)
        self._pcr_wrap_around = False
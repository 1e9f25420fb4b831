"""Prints PSI/SI tables, PCR, PTS and DTS of a stream as a timeline."""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import NamedTuple, TextIO

from .base import MAX_PCR_EXT, NULL_PID, Clock, format_pcr, is_valid_pcr
from .packet_source import PacketSink
from .psi import (
    CAT_PID,
    EIT_PID,
    PAT_PID,
    TID_CAT,
    TID_EIT_PF_ACT,
    TID_PAT,
    TID_PMT,
    TID_TOT,
    TOT_PID,
    Section,
    SectionDemux,
    parse_cat,
    parse_eit,
    parse_packet,
    parse_pat,
    parse_pmt,
    parse_tot,
)

_log = logging.getLogger(__name__)

_BLANK_TIME = " " * 23
_BLANK_PCR = " " * 14


def _format_time(time: datetime | None) -> str:
    if time is None:
        return "undefined"
    return f"{time:%Y/%m/%d %H:%M:%S}.{time.microsecond // 1000:03d}"


class _StreamInfo(NamedTuple):
    kind: str
    pcr_pid: int


class PesPrinter(PacketSink):
    """Writes one line per table, PCR, PTS and DTS seen in the stream."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream
        self._demux = SectionDemux(table_handler=self._handle_table)
        for pid in (PAT_PID, CAT_PID, EIT_PID, TOT_PID):
            self._demux.add_pid(pid)
        self._sids: set[int] = set()
        self._pmt_pids: list[int] = []
        self._clocks: dict[int, Clock] = {}
        self._streams: dict[int, _StreamInfo] = {}
        self._done = False

    def handle_packet(self, packet) -> bool:
        pkt = parse_packet(packet)
        pid = pkt.pid
        pcr = pkt.pcr
        if pcr is not None and is_valid_pcr(pcr):
            clock = self._clocks.get(pid)
            if clock is not None:
                clock.update_pcr(pcr)
                self._print_pcr(pid, pcr, f"PCR#{pid:04X}")
        for label, stamp in (("PTS", pkt.pts), ("DTS", pkt.dts)):
            if stamp is None:
                continue
            pcr = stamp * MAX_PCR_EXT
            info = self._streams.get(pid)
            if info is not None:
                self._print_pcr(info.pcr_pid, pcr, f"{info.kind}#{pid:04X} {label}")
            else:
                self._print_pcr(NULL_PID, pcr, f"PES#{pid:04X} {label}")
        self._demux.feed_packet(pkt)
        return not self._done

    def _write(self, line: str) -> None:
        stream = self._stream if self._stream is not None else sys.stdout
        stream.write(line + "\n")

    def _print(self, msg: str) -> None:
        self._write(f"{_BLANK_TIME}|{_BLANK_PCR}|{msg}")

    def _print_pcr(self, pcr_pid: int, pcr: int, msg: str) -> None:
        clock = self._clocks.get(pcr_pid)
        if clock is not None and clock.is_ready:
            time = clock.pcr_to_time(pcr)
            self._write(f"{_format_time(time)}|{format_pcr(pcr)}|{msg}")
        else:
            self._write(f"{_BLANK_TIME}|{format_pcr(pcr)}|{msg}")

    def _print_time(self, time: datetime, msg: str) -> None:
        self._write(f"{_format_time(time)}|{_BLANK_PCR}|{msg}")

    def _handle_table(self, sections: list[Section]) -> None:
        handlers = {
            TID_PAT: self._handle_pat,
            TID_CAT: self._handle_cat,
            TID_PMT: self._handle_pmt,
            TID_EIT_PF_ACT: self._handle_eit,
            TID_TOT: self._handle_tot,
        }
        handler = handlers.get(sections[0].table_id)
        if handler is not None:
            handler(sections)

    def _handle_pat(self, sections: list[Section]) -> None:
        try:
            pats = [parse_pat(section) for section in sections]
        except ValueError:
            _log.warning("Broken PAT, skip")
            return
        pat = pats[0]
        for part in pats[1:]:
            pat.pmts.update(part.pmts)
        source_pid = sections[0].pid

        self._reset_states()

        self._print(f"PAT: V#{pat.version} PID#{source_pid:04X}")

        if source_pid == PAT_PID:
            for sid, pmt_pid in pat.pmts.items():
                self._print(f"  SID#{sid:04X} => PMT#{pmt_pid:04X}")
                self._demux.add_pid(pmt_pid)
                self._sids.add(sid)
                self._pmt_pids.append(pmt_pid)
            if not self._pmt_pids:
                self._done = True
                _log.warning("No service defined in PAT, done")
        else:
            # A PAT delivered on an unexpected PID.
            for sid, pmt_pid in pat.pmts.items():
                self._print(f"  SID#{sid:04X} => PMT#{pmt_pid:04X}")

    def _handle_cat(self, sections: list[Section]) -> None:
        try:
            cat = parse_cat(sections[0])
        except ValueError:
            _log.warning("Broken CAT, skip")
            return
        self._print(f"CAT: V#{cat.version}")

    def _handle_pmt(self, sections: list[Section]) -> None:
        try:
            pmt = parse_pmt(sections[0])
        except ValueError:
            _log.warning("Broken PMT, skip")
            return
        self._print(f"PMT: SID#{pmt.service_id:04X} PCR#{pmt.pcr_pid:04X} V#{pmt.version}")
        if pmt.pcr_pid != NULL_PID:
            clock = Clock()
            clock.set_pid(pmt.pcr_pid)
            self._clocks[pmt.pcr_pid] = clock
        for pid, stream in pmt.streams.items():
            kind = stream.kind
            self._streams[pid] = _StreamInfo(kind, pmt.pcr_pid)
            self._print(f"  PES#{pid:04X} => {kind}#{stream.stream_type:02X}")

    def _handle_eit(self, sections: list[Section]) -> None:
        try:
            eits = [parse_eit(section) for section in sections]
        except ValueError:
            _log.warning("Broken EIT, skip")
            return
        eit = eits[0]
        if eit.service_id not in self._sids:
            return
        self._print(f"EIT p/f Actual: SID#{eit.service_id:04X} V#{eit.version}")
        events = [event for part in eits for event in part.events]
        for index, event in enumerate(events):
            if event.start_time is not None and event.duration is not None:
                from datetime import timedelta

                end = event.start_time + timedelta(seconds=event.duration)
            else:
                end = None
            minutes = "undefined" if event.duration is None else str(event.duration // 60)
            self._print(
                f"  Event[{index}]: EID#{event.event_id:04X} "
                f"{_format_time(event.start_time)} - {_format_time(end)} ({minutes}m)"
            )

    def _handle_tot(self, sections: list[Section]) -> None:
        try:
            tot = parse_tot(sections[0])
        except ValueError:
            _log.warning("Broken TOT, skip")
            return
        self._print_time(tot.time, "TOT")  # JST in ARIB
        for clock in self._clocks.values():
            clock.update_time(tot.time)

    def _reset_states(self) -> None:
        _log.debug("Reset states")
        for pid in self._pmt_pids:
            self._demux.remove_pid(pid)
        self._sids.clear()
        self._pmt_pids.clear()
        self._done = False
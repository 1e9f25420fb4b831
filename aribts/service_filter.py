"""Passes through the packets of one service with a rewritten PAT."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from .base import NULL_PID, ExitCode
from .packet_source import PacketSink
from .psi import (
    BIT_PID,
    CAT_PID,
    CDT_PID,
    EIT_PID,
    NIT_PID,
    PAT_PID,
    RST_PID,
    SDT_PID,
    TID_CAT,
    TID_PAT,
    TID_PMT,
    TID_TOT,
    TOT_PID,
    Section,
    SectionDemux,
    build_pat_section,
    packetize_section,
    parse_cat,
    parse_packet,
    parse_pat,
    parse_pmt,
    parse_tot,
)

_log = logging.getLogger(__name__)
_PREFIX = "service-filter: "


@dataclass(frozen=True)
class ServiceFilterOption:
    sid: int = 0
    time_limit: datetime | None = None  # JST


class ServiceFilter(PacketSink):
    """Drops packets that do not belong to the selected service."""

    def __init__(self, option: ServiceFilterOption) -> None:
        self._option = option
        self._demux = SectionDemux(table_handler=self._handle_table)
        self._sink: PacketSink | None = None
        self._psi_filter: set[int] = set()
        self._content_filter: set[int] = set()
        self._emm_filter: set[int] = set()
        self._pmt_pid = NULL_PID
        self._pat_packets: list[bytes] = []
        self._pat_index = 0
        self._pat_cc = 0
        self._done = False
        self._error = False
        self._demux.add_pid(PAT_PID)
        _log.debug(_PREFIX + "Demux PAT")
        self._demux.add_pid(CAT_PID)
        _log.debug(_PREFIX + "Demux CAT for detecting EMM PIDs")
        if option.time_limit is not None:
            self._demux.add_pid(TOT_PID)
            _log.debug(_PREFIX + "Demux TOT for checking the time limit")

    def connect(self, sink: PacketSink) -> None:
        self._sink = sink

    def _require_sink(self) -> PacketSink:
        if self._sink is None:
            raise RuntimeError("no packet sink connected")
        return self._sink

    def start(self) -> bool:
        return self._require_sink().start()

    def end(self) -> None:
        self._require_sink().end()

    @property
    def exit_code(self) -> int:
        code = self._require_sink().exit_code
        if code == ExitCode.SUCCESS and self._error:
            return ExitCode.FAILURE
        return code

    def handle_packet(self, packet) -> bool:
        if self._sink is None:
            _log.error(_PREFIX + "No sink connected")
            return False
        pkt = parse_packet(packet)
        self._demux.feed_packet(pkt)
        if self._done:
            return False
        pid = pkt.pid
        if self._should_drop(pid):
            return True
        if pid == PAT_PID:
            return self._sink.handle_packet(self._next_pat_packet())
        return self._sink.handle_packet(packet)

    def _should_drop(self, pid: int) -> bool:
        return not (
            pid in self._content_filter or pid in self._psi_filter or pid in self._emm_filter
        )

    def _next_pat_packet(self) -> bytes:
        raw = bytearray(self._pat_packets[self._pat_index])
        raw[3] = (raw[3] & 0xF0) | self._pat_cc
        self._pat_cc = (self._pat_cc + 1) & 0x0F
        self._pat_index = (self._pat_index + 1) % len(self._pat_packets)
        return bytes(raw)

    def _handle_table(self, sections: list[Section]) -> None:
        handlers = {
            TID_PAT: self._handle_pat,
            TID_CAT: self._handle_cat,
            TID_PMT: self._handle_pmt,
            TID_TOT: self._handle_tot,
        }
        handler = handlers.get(sections[0].table_id)
        if handler is not None:
            handler(sections)

    def _handle_pat(self, sections: list[Section]) -> None:
        pid = sections[0].pid
        if pid != PAT_PID:
            _log.warning(_PREFIX + "PAT delivered with PID#%04X, skip", pid)
            return
        try:
            pats = [parse_pat(section) for section in sections]
        except ValueError:
            _log.warning(_PREFIX + "Broken PAT, skip")
            return
        pat = pats[0]
        for part in pats[1:]:
            pat.pmts.update(part.pmts)
        if pat.tsid == 0:
            _log.warning(_PREFIX + "PAT for TSID#0000, skip")
            return
        sid = self._option.sid
        if sid not in pat.pmts:
            _log.error(_PREFIX + "SID#%04X not found in PAT", sid)
            self._done = True
            self._error = True
            return

        self._psi_filter.clear()
        _log.debug(_PREFIX + "Clear PSI/SI filter")

        new_pmt_pid = pat.pmts[sid]
        if self._pmt_pid != NULL_PID:
            _log.info(
                _PREFIX + "PID of PMT has been changed: %04X -> %04X",
                self._pmt_pid, new_pmt_pid,
            )
            self._demux.remove_pid(self._pmt_pid)
            _log.debug(_PREFIX + "Stop to demux PMT#%04X", self._pmt_pid)
            # The content filter is replaced when the new PMT arrives.
        self._pmt_pid = new_pmt_pid
        self._demux.add_pid(new_pmt_pid)
        _log.debug(_PREFIX + "Demux PMT#%04X", new_pmt_pid)

        entries = {sid: new_pmt_pid}
        if pat.nit_pid != NULL_PID:
            entries[0] = pat.nit_pid
        self._pat_packets = packetize_section(
            PAT_PID, build_pat_section(pat.tsid, pat.version, entries)
        )
        self._pat_index = 0

        self._psi_filter.update({
            PAT_PID, CAT_PID, NIT_PID, SDT_PID, EIT_PID, RST_PID, TOT_PID, BIT_PID, CDT_PID,
            new_pmt_pid,
        })
        _log.debug(
            _PREFIX + "PSI/SI filter += PAT CAT NIT SDT EIT RST TOT BIT CDT PMT#%04X",
            new_pmt_pid,
        )

    def _handle_cat(self, sections: list[Section]) -> None:
        try:
            cats = [parse_cat(section) for section in sections]
        except ValueError:
            _log.warning(_PREFIX + "Broken CAT, skip")
            return
        self._emm_filter.clear()
        _log.debug(_PREFIX + "Clear EMM filter")
        for cat in cats:
            for pid in cat.ca_pids:
                self._emm_filter.add(pid)
                _log.debug(_PREFIX + "EMM filter += EMM#%04X", pid)

    def _handle_pmt(self, sections: list[Section]) -> None:
        try:
            pmt = parse_pmt(sections[0])
        except ValueError:
            _log.warning(_PREFIX + "Broken PMT, skip")
            return
        if pmt.service_id != self._option.sid:
            _log.warning(_PREFIX + "PMT.SID#%d unmatched, skip", pmt.service_id)
            return
        self._content_filter.clear()
        _log.debug(_PREFIX + "Clear content filter")
        self._content_filter.add(pmt.pcr_pid)
        _log.debug(_PREFIX + "Content filter += PCR#%04X", pmt.pcr_pid)
        for pid in pmt.ca_pids:
            self._content_filter.add(pid)
            _log.debug(_PREFIX + "Content filter += ECM#%04X", pid)
        for pid, stream in pmt.streams.items():
            self._content_filter.add(pid)
            kind = stream.kind
            label = "Other" if kind == "Other" else f"PES/{kind}"
            _log.debug(_PREFIX + "Content filter += %s#%04X", label, pid)

    def _handle_tot(self, sections: list[Section]) -> None:
        try:
            tot = parse_tot(sections[0])
        except ValueError:
            _log.warning(_PREFIX + "Broken TOT, skip")
            return
        self._check_time_limit(tot.time)  # JST in ARIB

    def _check_time_limit(self, jst_time: datetime) -> None:
        limit = self._option.time_limit
        if limit is None or jst_time < limit:
            return
        self._done = True
        _log.info(_PREFIX + "Over the time limit, stop streaming")
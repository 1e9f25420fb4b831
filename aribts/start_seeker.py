"""Buffers packets until the real start of a program, then streams them."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from .base import NULL_PID, PCR_TICKS_PER_MS, PCR_UPPER_BOUND, compare_pcr
from .log import TRACE
from .packet_source import PacketSink
from .psi import (
    PAT_PID,
    TID_PAT,
    TID_PMT,
    Section,
    SectionDemux,
    parse_packet,
    parse_pat,
    parse_pmt,
)

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartSeekerOption:
    sid: int = 0
    max_duration: int = 0  # milliseconds
    max_packets: int = 0


class _State(enum.Enum):
    SEEK = enum.auto()
    STREAMING = enum.auto()


class StartSeeker(PacketSink):
    """Holds packets back until the video/audio streams change or a limit is hit."""

    def __init__(self, option: StartSeekerOption) -> None:
        self._option = option
        self._demux = SectionDemux(table_handler=self._handle_table)
        self._demux.add_pid(PAT_PID)
        _log.debug("Demux += PAT")
        self._sink: PacketSink | None = None
        self._state = _State.SEEK
        self._packets: list = []
        self._pmt_pid = NULL_PID
        self._pcr_pid = NULL_PID
        self._video_pids: set[int] = set()
        self._audio_pids: set[int] = set()
        self._end_pcr = -1
        self._transition_index = 0
        self._pat_index = 0

    def connect(self, sink: PacketSink) -> None:
        self._sink = sink

    def _require_sink(self) -> PacketSink:
        if self._sink is None:
            raise RuntimeError("no packet sink connected")
        return self._sink

    def start(self) -> bool:
        return self._require_sink().start()

    def end(self) -> None:
        sink = self._require_sink()
        self._send_packets()  # errors are ignored here
        sink.end()

    @property
    def exit_code(self) -> int:
        return self._require_sink().exit_code

    def handle_packet(self, packet) -> bool:
        sink = self._require_sink()
        pkt = parse_packet(packet)
        self._demux.feed_packet(pkt)
        if self._state is _State.SEEK:
            return self._seek(packet, pkt)
        return sink.handle_packet(packet)

    def _start_streaming(self) -> None:
        self._state = _State.STREAMING

    def _seek(self, packet, pkt) -> bool:
        self._packets.append(packet)

        if self._transition_index > 0:
            _log.info("Found transition point, start streaming")
            self._require_sink().handle_packet(self._packets[self._pat_index])
            self._send_packets(self._transition_index)
            self._start_streaming()
            return True

        max_packets = self._option.max_packets
        if max_packets != 0 and len(self._packets) >= max_packets:
            _log.info("The number of packets reached the limit, start streaming")
            self._send_packets()
            self._start_streaming()
            return True

        pid = pkt.pid
        if self._pcr_pid == NULL_PID or self._pcr_pid != pid:
            return True

        pcr = pkt.pcr
        if pcr is None:
            _log.log(TRACE, "PCR#%04X has no valid PCR...", pid)
            return True

        if self._end_pcr < 0:
            self._end_pcr = (
                pcr + self._option.max_duration * PCR_TICKS_PER_MS
            ) % PCR_UPPER_BOUND
            _log.debug("End PCR: %010d+%03d", self._end_pcr // 300, self._end_pcr % 300)
            return True

        if compare_pcr(pcr, self._end_pcr) < 0:
            return True

        _log.info("The duration reached the limit, start streaming")
        self._send_packets()
        self._start_streaming()
        return True

    def _send_packets(self, index: int = 0) -> bool:
        sink = self._require_sink()
        ok = True
        for packet in self._packets[index:]:
            ok = sink.handle_packet(packet)
            if not ok:
                break
        self._packets.clear()
        return ok

    def _handle_table(self, sections: list[Section]) -> None:
        table_id = sections[0].table_id
        if table_id == TID_PAT:
            self._handle_pat(sections)
        elif table_id == TID_PMT:
            self._handle_pmt(sections)

    def _handle_pat(self, sections: list[Section]) -> None:
        first = sections[0]
        if first.pid != PAT_PID:
            _log.warning("PAT delivered with PID#%04X, skip", first.pid)
            return
        try:
            pats = [parse_pat(section) for section in sections]
        except ValueError:
            _log.warning("Broken PAT, skip")
            return
        pat = pats[0]
        for part in pats[1:]:
            pat.pmts.update(part.pmts)
        if pat.tsid == 0:
            _log.warning("PAT for TSID#0000, skip")
            return

        sid = self._option.sid
        if sid not in pat.pmts:
            # The service filter in front of this sink guarantees the service.
            raise RuntimeError(f"SID#{sid:04X} not found in PAT")

        new_pmt_pid = pat.pmts[sid]
        if self._pmt_pid != NULL_PID:
            _log.debug("Demux -= PMT#%04X", self._pmt_pid)
            self._demux.remove_pid(self._pmt_pid)
        self._pmt_pid = new_pmt_pid
        self._demux.add_pid(new_pmt_pid)
        _log.debug("Demux += PMT#%04X", new_pmt_pid)

        # The PAT is assumed to fit in a single packet.
        self._pat_index = first.first_packet_index
        _log.debug("PAT packet#%d", self._pat_index)

    def _handle_pmt(self, sections: list[Section]) -> None:
        try:
            pmt = parse_pmt(sections[0])
        except ValueError:
            _log.warning("Broken PMT, skip")
            return
        if pmt.service_id != self._option.sid:
            _log.warning("PMT.SID#%d unmatched, skip", pmt.service_id)
            return

        self._pcr_pid = pmt.pcr_pid
        _log.debug("PCR#%04X", self._pcr_pid)

        video_pids = {pid for pid, stream in pmt.streams.items() if stream.is_video}
        audio_pids = {pid for pid, stream in pmt.streams.items() if stream.is_audio}

        changed = False
        if self._video_pids and self._video_pids != video_pids:
            changed = True
            _log.debug("video streams change")
        if self._audio_pids and self._audio_pids != audio_pids:
            changed = True
            _log.debug("audio streams change")

        self._video_pids = video_pids
        self._audio_pids = audio_pids

        if changed:
            self._transition_index = sections[0].first_packet_index
            _log.debug("The content changes at packet#%d", self._transition_index)
            _log.debug("Demux -= PAT PMT#%04X", self._pmt_pid)
            self._demux.remove_pid(self._pmt_pid)
            self._demux.remove_pid(PAT_PID)
            self._pmt_pid = NULL_PID
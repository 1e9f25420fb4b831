"""Reports the airtime of one event from EIT present/following."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .jsonl import JsonlSource
from .packet_source import PacketSink
from .psi import (
    EIT_PID,
    TID_EIT_PF_ACT,
    Eit,
    Event,
    Section,
    SectionDemux,
    jst_to_unix_ms,
    parse_eit,
)

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AirtimeTrackerOption:
    sid: int = 0
    eid: int = 0


class AirtimeTracker(PacketSink, JsonlSource):
    """Emits the start time and duration of the tracked event on every change."""

    def __init__(self, option: AirtimeTrackerOption) -> None:
        self._option = option
        self._demux = SectionDemux(table_handler=self._handle_table)
        self._demux.add_pid(EIT_PID)
        self._done = False
        _log.debug("Demux EIT")

    def handle_packet(self, packet) -> bool:
        self._demux.feed_packet(packet)
        return not self._done

    def _handle_table(self, sections: list[Section]) -> None:
        if sections[0].table_id != TID_EIT_PF_ACT:
            return
        try:
            eits = [parse_eit(section) for section in sections]
        except ValueError:
            _log.warning("Broken EIT, skip")
            return
        eit = eits[0]
        if eit.service_id != self._option.sid:
            return
        events = [event for part in eits for event in part.events]
        eid = self._option.eid

        if not events:
            _log.error("No event in EIT")
            self._done = True
            return
        if events[0].event_id == eid:
            _log.debug("Event#%04X has started", eid)
            self._write_event_info(eit, events[0])
            return
        if len(events) < 2:
            _log.warning("No following event in EIT")
            self._done = True
            return
        if events[1].event_id == eid:
            _log.debug("Event#%04X will start soon", eid)
            self._write_event_info(eit, events[1])
            return
        _log.error("Event#%04X might have been canceled", eid)
        self._done = True

    def _write_event_info(self, eit: Eit, event: Event) -> None:
        start = jst_to_unix_ms(event.start_time) if event.start_time is not None else None
        duration = event.duration * 1000 if event.duration is not None else None
        self.feed_document({
            "nid": eit.original_network_id,
            "tsid": eit.transport_stream_id,
            "sid": eit.service_id,
            "eid": event.event_id,
            "startTime": start,
            "duration": duration,
        })
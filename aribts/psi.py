"""TS packets, PSI/SI sections, a section demultiplexer and table parsers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable

from .base import NULL_PID
from .packet_source import PKT_SIZE, SYNC_BYTE

_log = logging.getLogger(__name__)

PAT_PID = 0x0000
CAT_PID = 0x0001
NIT_PID = 0x0010
SDT_PID = 0x0011
EIT_PID = 0x0012
RST_PID = 0x0013
TOT_PID = 0x0014
BIT_PID = 0x0024
CDT_PID = 0x0029

TID_PAT = 0x00
TID_CAT = 0x01
TID_PMT = 0x02
TID_EIT_PF_ACT = 0x4E
TID_EIT_MIN = 0x4E
TID_EIT_MAX = 0x6F
TID_TOT = 0x73

DID_CA = 0x09
DID_TELETEXT = 0x56
DID_SUBTITLING = 0x59
DID_STREAM_IDENTIFIER = 0x52

JST_OFFSET = timedelta(hours=9)
_UNIX_EPOCH_JST = datetime(1970, 1, 1) + JST_OFFSET
_MJD_EPOCH = datetime(1858, 11, 17)

_VIDEO_TYPES = frozenset(
    {0x01, 0x02, 0x10, 0x1B, 0x1E, 0x1F, 0x20, 0x21, 0x24, 0x25, 0x42, 0xD1, 0xEA}
)
_AUDIO_TYPES = frozenset({0x03, 0x04, 0x0F, 0x11, 0x1C, 0x2D, 0x2E, 0x81, 0x87})

Descriptor = tuple[int, bytes]


def _make_crc_table() -> tuple[int, ...]:
    table = []
    for i in range(256):
        crc = i << 24
        for _ in range(8):
            crc = ((crc << 1) ^ 0x04C11DB7) if crc & 0x80000000 else crc << 1
        table.append(crc & 0xFFFFFFFF)
    return tuple(table)


_CRC_TABLE = _make_crc_table()


def _crc32(data: bytes) -> int:
    crc = 0xFFFFFFFF
    for byte in data:
        crc = ((crc << 8) & 0xFFFFFFFF) ^ _CRC_TABLE[((crc >> 24) ^ byte) & 0xFF]
    return crc


def _bcd(value: int) -> int:
    return (value >> 4) * 10 + (value & 0x0F)


def _need(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise ValueError(f"truncated {what}")


# --- packets -----------------------------------------------------------------


@dataclass(frozen=True)
class TsPacket:
    """A 188-byte transport stream packet."""

    data: bytes

    def __bytes__(self) -> bytes:
        return self.data

    @property
    def pid(self) -> int:
        return ((self.data[1] & 0x1F) << 8) | self.data[2]

    @property
    def pusi(self) -> bool:
        return bool(self.data[1] & 0x40)

    @property
    def cc(self) -> int:
        return self.data[3] & 0x0F

    @property
    def has_adaptation_field(self) -> bool:
        return bool(self.data[3] & 0x20)

    @property
    def has_payload(self) -> bool:
        return bool(self.data[3] & 0x10)

    def _adaptation_field(self) -> bytes:
        if not self.has_adaptation_field:
            return b""
        length = self.data[4]
        return self.data[5:5 + length]

    @property
    def payload(self) -> bytes:
        if not self.has_payload:
            return b""
        start = 4
        if self.has_adaptation_field:
            start = 5 + self.data[4]
        return self.data[start:] if start < PKT_SIZE else b""

    @property
    def pcr(self) -> int | None:
        """The PCR in 27 MHz ticks, or None."""
        af = self._adaptation_field()
        if len(af) < 7 or not af[0] & 0x10:
            return None
        raw = int.from_bytes(af[1:7], "big")
        base = raw >> 15
        ext = raw & 0x1FF
        return base * 300 + ext

    def _pes_timestamp(self, flag: int, offset: int) -> int | None:
        payload = self.payload
        if not self.pusi or len(payload) < 9 or payload[:3] != b"\x00\x00\x01":
            return None
        if payload[6] & 0xC0 != 0x80 or not payload[7] & flag:
            return None
        ts = payload[9 + offset:14 + offset]
        if len(ts) < 5:
            return None
        return (
            ((ts[0] >> 1) & 0x07) << 30
            | ts[1] << 22
            | (ts[2] >> 1) << 15
            | ts[3] << 7
            | ts[4] >> 1
        )

    @property
    def pts(self) -> int | None:
        """The PES presentation timestamp in 90 kHz ticks, or None."""
        return self._pes_timestamp(0x80, 0)

    @property
    def dts(self) -> int | None:
        """The PES decoding timestamp in 90 kHz ticks, or None."""
        payload = self.payload
        if len(payload) < 8 or payload[7] & 0xC0 != 0xC0:
            return None
        return self._pes_timestamp(0x40, 5)


def parse_packet(data) -> TsPacket:
    """Wrap 188 bytes as a TsPacket; raise ValueError if they are not one."""
    if isinstance(data, TsPacket):
        return data
    raw = bytes(data)
    if len(raw) != PKT_SIZE:
        raise ValueError(f"packet must be {PKT_SIZE} bytes, got {len(raw)}")
    if raw[0] != SYNC_BYTE:
        raise ValueError("packet has no sync byte")
    return TsPacket(raw)


def packetize_section(pid: int, section: bytes, cc: int = 0) -> list[bytes]:
    """Split a section into packets starting with a zero pointer field."""
    packets = []
    data = b"\x00" + bytes(section)
    first = True
    while data:
        chunk, data = data[:PKT_SIZE - 4], data[PKT_SIZE - 4:]
        header = bytes([
            SYNC_BYTE,
            (0x40 if first else 0x00) | ((pid >> 8) & 0x1F),
            pid & 0xFF,
            0x10 | (cc & 0x0F),
        ])
        packets.append(header + chunk + b"\xff" * (PKT_SIZE - 4 - len(chunk)))
        cc = (cc + 1) & 0x0F
        first = False
    return packets


# --- sections ----------------------------------------------------------------


@dataclass(frozen=True)
class Section:
    """A PSI/SI section as delivered on a PID."""

    raw: bytes
    pid: int = NULL_PID
    first_packet_index: int = 0

    compute_crc = staticmethod(_crc32)

    @property
    def table_id(self) -> int:
        return self.raw[0]

    @property
    def is_long(self) -> bool:
        return bool(self.raw[1] & 0x80)

    @property
    def has_crc(self) -> bool:
        return self.is_long or self.table_id == TID_TOT

    @property
    def table_id_ext(self) -> int:
        return (self.raw[3] << 8) | self.raw[4] if self.is_long else 0

    @property
    def version(self) -> int:
        return (self.raw[5] >> 1) & 0x1F if self.is_long else 0

    @property
    def is_current(self) -> bool:
        return bool(self.raw[5] & 0x01) if self.is_long else True

    @property
    def is_next(self) -> bool:
        return not self.is_current

    @property
    def section_number(self) -> int:
        return self.raw[6] if self.is_long else 0

    @property
    def last_section_number(self) -> int:
        return self.raw[7] if self.is_long else 0

    @property
    def is_valid(self) -> bool:
        raw = self.raw
        if len(raw) < 3 or len(raw) != 3 + (((raw[1] & 0x0F) << 8) | raw[2]):
            return False
        if self.is_long and len(raw) < 12:
            return False
        if self.has_crc and (len(raw) < 7 or _crc32(raw) != 0):
            return False
        return True

    @property
    def payload(self) -> bytes:
        start = 8 if self.is_long else 3
        end = len(self.raw) - 4 if self.has_crc else len(self.raw)
        return self.raw[start:end]


TableHandler = Callable[[list[Section]], None]
SectionHandler = Callable[[Section], None]


@dataclass
class _Pending:
    data: bytearray
    first_index: int


@dataclass
class _TableState:
    version: int
    last_section_number: int
    sections: dict[int, Section] = field(default_factory=dict)
    done: bool = False


class SectionDemux:
    """Reassembles sections from packets on selected PIDs.

    The section handler receives every valid section. The table handler
    receives the list of sections of a complete table once per version.
    """

    def __init__(
        self,
        table_handler: TableHandler | None = None,
        section_handler: SectionHandler | None = None,
    ) -> None:
        self.table_handler = table_handler
        self.section_handler = section_handler
        self._pids: set[int] = set()
        self._pending: dict[int, _Pending] = {}
        self._tables: dict[tuple[int, int, int], _TableState] = {}
        self._packet_index = 0

    @property
    def pids(self) -> frozenset[int]:
        return frozenset(self._pids)

    def add_pid(self, pid: int) -> None:
        self._pids.add(pid)

    def remove_pid(self, pid: int) -> None:
        self._pids.discard(pid)
        self._pending.pop(pid, None)
        for key in [key for key in self._tables if key[0] == pid]:
            del self._tables[key]

    def feed_packet(self, packet) -> None:
        pkt = parse_packet(packet)
        index = self._packet_index
        self._packet_index += 1
        pid = pkt.pid
        if pid not in self._pids:
            return
        payload = pkt.payload
        if not payload:
            return
        pending = self._pending.get(pid)
        if pkt.pusi:
            pointer = payload[0]
            rest = payload[1:]
            if pending is not None:
                pending.data += rest[:pointer]
                self._drain(pid, pending, index)
            pending = _Pending(bytearray(rest[pointer:]), index)
            self._pending[pid] = pending
        elif pending is None:
            return
        else:
            pending.data += payload
        self._drain(pid, pending, index)

    def _drain(self, pid: int, pending: _Pending, index: int) -> None:
        data = pending.data
        while len(data) >= 3:
            if data[0] == 0xFF:
                data.clear()
                return
            length = 3 + (((data[1] & 0x0F) << 8) | data[2])
            if len(data) < length:
                return
            raw = bytes(data[:length])
            del data[:length]
            self._handle_section(Section(raw, pid, pending.first_index))
            pending.first_index = index

    def _handle_section(self, section: Section) -> None:
        if not section.is_valid:
            _log.debug("Invalid section on PID#%04X, skip", section.pid)
            return
        if self.section_handler is not None:
            self.section_handler(section)
        if self.table_handler is None:
            return
        if not section.is_long:
            self.table_handler([section])
            return
        if section.is_next:
            return
        key = (section.pid, section.table_id, section.table_id_ext)
        state = self._tables.get(key)
        if (
            state is None
            or state.version != section.version
            or state.last_section_number != section.last_section_number
        ):
            state = _TableState(section.version, section.last_section_number)
            self._tables[key] = state
        if state.done:
            return
        state.sections[section.section_number] = section
        if len(state.sections) == state.last_section_number + 1:
            state.done = True
            self.table_handler([state.sections[n] for n in sorted(state.sections)])


# --- tables ------------------------------------------------------------------


def _parse_descriptors(data: bytes) -> list[Descriptor]:
    out = []
    pos = 0
    while pos + 2 <= len(data):
        tag, length = data[pos], data[pos + 1]
        body = data[pos + 2:pos + 2 + length]
        if len(body) < length:
            raise ValueError("truncated descriptor")
        out.append((tag, bytes(body)))
        pos += 2 + length
    return out


def _ca_pids(descriptors: Iterable[Descriptor]) -> list[int]:
    return [
        ((body[2] & 0x1F) << 8) | body[3]
        for tag, body in descriptors
        if tag == DID_CA and len(body) >= 4
    ]


def _check(section: Section, table_ids: Iterable[int], name: str) -> None:
    if section.table_id not in table_ids:
        raise ValueError(f"not a {name} section: table id {section.table_id:#04x}")
    if not section.is_valid:
        raise ValueError(f"broken {name} section")


@dataclass
class Pat:
    tsid: int
    version: int
    pmts: dict[int, int] = field(default_factory=dict)
    nit_pid: int = NULL_PID


@dataclass
class Stream:
    stream_type: int
    descriptors: list[Descriptor] = field(default_factory=list)

    def _component_tag(self) -> int | None:
        for tag, body in self.descriptors:
            if tag == DID_STREAM_IDENTIFIER and body:
                return body[0]
        return None

    @property
    def is_video(self) -> bool:
        return self.stream_type in _VIDEO_TYPES

    @property
    def is_audio(self) -> bool:
        return self.stream_type in _AUDIO_TYPES

    @property
    def is_subtitles(self) -> bool:
        return self.stream_type == 0x06 and any(
            tag in (DID_SUBTITLING, DID_TELETEXT) for tag, _ in self.descriptors
        )

    @property
    def is_arib_subtitle(self) -> bool:
        tag = self._component_tag()
        return self.stream_type == 0x06 and tag is not None and 0x30 <= tag <= 0x37

    @property
    def is_arib_superimposed_text(self) -> bool:
        tag = self._component_tag()
        return self.stream_type == 0x06 and tag is not None and 0x38 <= tag <= 0x3F

    @property
    def kind(self) -> str:
        if self.is_video:
            return "Video"
        if self.is_audio:
            return "Audio"
        if self.is_subtitles:
            return "Subtitle"
        if self.is_arib_subtitle:
            return "ARIB-Subtitle"
        if self.is_arib_superimposed_text:
            return "ARIB-SuperimposedText"
        return "Other"


@dataclass
class Pmt:
    service_id: int
    version: int
    pcr_pid: int
    descriptors: list[Descriptor] = field(default_factory=list)
    streams: dict[int, Stream] = field(default_factory=dict)

    @property
    def ca_pids(self) -> list[int]:
        return _ca_pids(self.descriptors)


@dataclass
class Cat:
    version: int
    descriptors: list[Descriptor] = field(default_factory=list)

    @property
    def ca_pids(self) -> list[int]:
        return _ca_pids(self.descriptors)


@dataclass
class Event:
    event_id: int
    start_time: datetime | None
    duration: int | None  # seconds
    running_status: int = 0
    free_ca_mode: bool = False
    descriptors: bytes = b""


@dataclass
class Eit:
    table_id: int
    service_id: int
    version: int
    section_number: int
    last_section_number: int
    transport_stream_id: int
    original_network_id: int
    segment_last_section_number: int
    last_table_id: int
    events: list[Event] = field(default_factory=list)


@dataclass
class Tot:
    time: datetime  # JST in ARIB
    descriptors: list[Descriptor] = field(default_factory=list)


def parse_pat(section: Section) -> Pat:
    _check(section, (TID_PAT,), "PAT")
    pat = Pat(tsid=section.table_id_ext, version=section.version)
    payload = section.payload
    for pos in range(0, len(payload) - 3, 4):
        program = (payload[pos] << 8) | payload[pos + 1]
        pid = ((payload[pos + 2] & 0x1F) << 8) | payload[pos + 3]
        if program == 0:
            pat.nit_pid = pid
        else:
            pat.pmts[program] = pid
    return pat


def parse_pmt(section: Section) -> Pmt:
    _check(section, (TID_PMT,), "PMT")
    payload = section.payload
    _need(payload, 4, "PMT")
    pcr_pid = ((payload[0] & 0x1F) << 8) | payload[1]
    info_len = ((payload[2] & 0x0F) << 8) | payload[3]
    _need(payload, 4 + info_len, "PMT")
    pmt = Pmt(
        service_id=section.table_id_ext,
        version=section.version,
        pcr_pid=pcr_pid,
        descriptors=_parse_descriptors(payload[4:4 + info_len]),
    )
    pos = 4 + info_len
    while pos + 5 <= len(payload):
        stream_type = payload[pos]
        pid = ((payload[pos + 1] & 0x1F) << 8) | payload[pos + 2]
        es_len = ((payload[pos + 3] & 0x0F) << 8) | payload[pos + 4]
        _need(payload, pos + 5 + es_len, "PMT stream")
        descs = _parse_descriptors(payload[pos + 5:pos + 5 + es_len])
        pmt.streams[pid] = Stream(stream_type, descs)
        pos += 5 + es_len
    return pmt


def parse_cat(section: Section) -> Cat:
    _check(section, (TID_CAT,), "CAT")
    return Cat(version=section.version, descriptors=_parse_descriptors(section.payload))


def decode_mjd_time(data: bytes) -> datetime | None:
    """Decode a 40-bit MJD+BCD time; None when all bits are set (undefined)."""
    if len(data) != 5:
        raise ValueError("MJD time must be 5 bytes")
    if all(b == 0xFF for b in data):
        return None
    mjd = (data[0] << 8) | data[1]
    return _MJD_EPOCH + timedelta(
        days=mjd, hours=_bcd(data[2]), minutes=_bcd(data[3]), seconds=_bcd(data[4])
    )


def _decode_duration(data: bytes) -> int | None:
    if all(b == 0xFF for b in data):
        return None
    return _bcd(data[0]) * 3600 + _bcd(data[1]) * 60 + _bcd(data[2])


def jst_to_unix_ms(time: datetime) -> int:
    """Milliseconds since the Unix epoch for a naive JST time."""
    return (time - _UNIX_EPOCH_JST) // timedelta(milliseconds=1)


def parse_eit(section: Section) -> Eit:
    _check(section, range(TID_EIT_MIN, TID_EIT_MAX + 1), "EIT")
    payload = section.payload
    _need(payload, 6, "EIT")
    eit = Eit(
        table_id=section.table_id,
        service_id=section.table_id_ext,
        version=section.version,
        section_number=section.section_number,
        last_section_number=section.last_section_number,
        transport_stream_id=(payload[0] << 8) | payload[1],
        original_network_id=(payload[2] << 8) | payload[3],
        segment_last_section_number=payload[4],
        last_table_id=payload[5],
    )
    pos = 6
    while pos + 12 <= len(payload):
        loop_len = ((payload[pos + 10] & 0x0F) << 8) | payload[pos + 11]
        _need(payload, pos + 12 + loop_len, "EIT event")
        eit.events.append(Event(
            event_id=(payload[pos] << 8) | payload[pos + 1],
            start_time=decode_mjd_time(payload[pos + 2:pos + 7]),
            duration=_decode_duration(payload[pos + 7:pos + 10]),
            running_status=payload[pos + 10] >> 5,
            free_ca_mode=bool(payload[pos + 10] & 0x10),
            descriptors=bytes(payload[pos + 12:pos + 12 + loop_len]),
        ))
        pos += 12 + loop_len
    return eit


def parse_tot(section: Section) -> Tot:
    _check(section, (TID_TOT,), "TOT")
    payload = section.payload
    _need(payload, 5, "TOT")
    time = decode_mjd_time(payload[:5])
    if time is None:
        raise ValueError("TOT has an undefined time")
    descs: list[Descriptor] = []
    if len(payload) >= 7:
        loop_len = ((payload[5] & 0x0F) << 8) | payload[6]
        descs = _parse_descriptors(payload[7:7 + loop_len])
    return Tot(time=time, descriptors=descs)


def build_pat_section(tsid: int, version: int, pmts: dict[int, int]) -> bytes:
    """Serialize a single-section PAT; program 0 denotes the NIT PID."""
    body = b"".join(
        bytes([program >> 8, program & 0xFF, 0xE0 | ((pid >> 8) & 0x1F), pid & 0xFF])
        for program, pid in sorted(pmts.items())
    )
    length = 5 + len(body) + 4
    head = bytes([
        TID_PAT,
        0xB0 | ((length >> 8) & 0x0F),
        length & 0xFF,
        (tsid >> 8) & 0xFF,
        tsid & 0xFF,
        0xC1 | ((version & 0x1F) << 1),
        0,
        0,
    ])
    data = head + body
    return data + _crc32(data).to_bytes(4, "big")
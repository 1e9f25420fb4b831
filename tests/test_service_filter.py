from collections import deque
from datetime import datetime

import pytest

from aribts.base import ExitCode
from aribts.packet_source import PacketSink, PacketSource
from aribts.psi import (
    Section,
    SectionDemux,
    build_pat_section,
    packetize_section,
    parse_packet,
    parse_pat,
)
from aribts.service_filter import ServiceFilter, ServiceFilterOption


class ListSource(PacketSource):
    def __init__(self, packets):
        self.packets = deque(packets)

    def next_packet(self):
        return self.packets.popleft() if self.packets else None


class CaptureSink(PacketSink):
    def __init__(self):
        self.packets = []

    def handle_packet(self, packet):
        self.packets.append(bytes(packet))
        return True


def long_section(tid, ext, version, body):
    length = 5 + len(body) + 4
    head = bytes([tid, 0xB0 | (length >> 8), length & 0xFF, ext >> 8, ext & 0xFF,
                  0xC1 | (version << 1), 0, 0])
    data = head + body
    return data + Section.compute_crc(data).to_bytes(4, "big")


def pmt_packets(pid, sid, pcr_pid, streams):
    body = bytes([0xE0 | (pcr_pid >> 8), pcr_pid & 0xFF, 0xF0, 0x00])
    for spid, stype in streams:
        body += bytes([stype, 0xE0 | (spid >> 8), spid & 0xFF, 0xF0, 0x00])
    return packetize_section(pid, long_section(0x02, sid, 1, body))


def cat_packets(emm_pid):
    body = bytes([0x09, 0x04, 0x00, 0x05, 0xE0 | (emm_pid >> 8), emm_pid & 0xFF])
    return packetize_section(1, long_section(0x01, 0xFFFF, 1, body))


def tot_packets(time):
    mjd = (time.date() - datetime(1858, 11, 17).date()).days
    bcd = lambda n: ((n // 10) << 4) | (n % 10)
    body = bytes([mjd >> 8, mjd & 0xFF, bcd(time.hour), bcd(time.minute), bcd(time.second),
                  0xF0, 0x00])
    length = len(body) + 4
    data = bytes([0x73, 0x30, length]) + body
    return packetize_section(0x14, data + Section.compute_crc(data).to_bytes(4, "big"))


def data_packet(pid):
    return bytes([0x47, pid >> 8, pid & 0xFF, 0x10]) + b"\xff" * 184


def pat_packets():
    return packetize_section(0, build_pat_section(2, 1, {0: 0x10, 3: 0x101, 4: 0x102}))


def run(packets, option):
    src = ListSource(packets)
    sink = CaptureSink()
    flt = ServiceFilter(option)
    flt.connect(sink)
    src.connect(flt)
    return src.feed_packets(), sink.packets


def pids(packets):
    return [parse_packet(p).pid for p in packets]


def test_filters_service_packets():
    packets = (
        pat_packets()
        + pmt_packets(0x101, 3, 0x901, [(0x301, 0x02)])
        + pmt_packets(0x102, 4, 0x902, [(0x302, 0x02)])
        + [data_packet(0x301), data_packet(0x302), data_packet(0x901)]
    )
    code, out = run(packets, ServiceFilterOption(sid=3))
    assert code == ExitCode.SUCCESS
    assert pids(out) == [0x000, 0x101, 0x301, 0x901]


def test_pat_is_rewritten():
    code, out = run(pat_packets(), ServiceFilterOption(sid=3))
    assert code == ExitCode.SUCCESS
    got = []
    demux = SectionDemux(section_handler=got.append)
    demux.add_pid(0)
    demux.feed_packet(out[0])
    pat = parse_pat(got[0])
    assert pat.pmts == {3: 0x101}
    assert pat.nit_pid == 0x10
    assert pat.tsid == 2


def test_emm_pid_forwarded():
    packets = pat_packets() + cat_packets(0x88) + [data_packet(0x88), data_packet(0x89)]
    _, out = run(packets, ServiceFilterOption(sid=3))
    assert pids(out) == [0x000, 0x001, 0x088]


def test_missing_service_fails():
    packets = pat_packets() + [data_packet(0x12)]
    code, out = run(packets, ServiceFilterOption(sid=9))
    assert code == ExitCode.FAILURE
    assert out == []


def test_time_limit_stops():
    limit = datetime(2021, 1, 1, 0, 0, 1)
    packets = (
        pat_packets()
        + tot_packets(datetime(2021, 1, 1))
        + tot_packets(limit)
        + [data_packet(0x12)]
    )
    code, out = run(packets, ServiceFilterOption(sid=3, time_limit=limit))
    assert code == ExitCode.SUCCESS
    assert pids(out) == [0x000, 0x014]


def test_no_sink():
    flt = ServiceFilter(ServiceFilterOption(sid=3))
    assert flt.handle_packet(data_packet(0)) is False
    with pytest.raises(RuntimeError):
        flt.start()
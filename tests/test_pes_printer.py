import io
from datetime import date, datetime

from aribts.base import format_pcr
from aribts.packet_source import PKT_SIZE, SYNC_BYTE
from aribts.pes_printer import PesPrinter
from aribts.psi import Section, build_pat_section, packetize_section

BT = " " * 23
BP = " " * 14


def _bcd(value):
    return ((value // 10) << 4) | (value % 10)


def _mjd(dt):
    days = (dt.date() - date(1858, 11, 17)).days
    return bytes([days >> 8, days & 0xFF, _bcd(dt.hour), _bcd(dt.minute), _bcd(dt.second)])


def _crc(data):
    return Section.compute_crc(data).to_bytes(4, "big")


def _long_section(tid, ext, version, body, number=0, last=0):
    length = 5 + len(body) + 4
    head = bytes([
        tid, 0xB0 | (length >> 8), length & 0xFF, ext >> 8, ext & 0xFF,
        0xC1 | (version << 1), number, last,
    ])
    data = head + body
    return data + _crc(data)


def _pmt(sid, pcr_pid, streams, version=1):
    body = bytes([0xE0 | (pcr_pid >> 8), pcr_pid & 0xFF, 0xF0, 0x00])
    for pid, stream_type in streams.items():
        body += bytes([stream_type, 0xE0 | (pid >> 8), pid & 0xFF, 0xF0, 0x00])
    return packetize_section(0x101, _long_section(0x02, sid, version, body))[0]


def _pat(pmts, version=1):
    return packetize_section(0x0000, build_pat_section(2, version, pmts))[0]


def _tot(dt):
    body = _mjd(dt) + bytes([0xF0, 0x00])
    length = len(body) + 4
    data = bytes([0x73, 0x70 | (length >> 8), length & 0xFF]) + body
    return packetize_section(0x0014, data + _crc(data))[0]


def _eit(sid, version, events):
    body = bytes([0x00, 0x02, 0x00, 0x01, 0x00, 0x4E])
    for eid, start, dur in events:
        body += bytes([eid >> 8, eid & 0xFF]) + _mjd(start) + bytes(_bcd(v) for v in dur)
        body += bytes([0x00, 0x00])
    return packetize_section(0x0012, _long_section(0x4E, sid, version, body))[0]


def _pcr_packet(pid, pcr):
    base, ext = divmod(pcr, 300)
    raw = (base << 15) | (0x3F << 9) | ext
    return (
        bytes([SYNC_BYTE, pid >> 8, pid & 0xFF, 0x20, PKT_SIZE - 5, 0x10])
        + raw.to_bytes(6, "big")
        + b"\xff" * (PKT_SIZE - 12)
    )


def _pts_packet(pid, pts):
    stamp = bytes([
        0x21 | (((pts >> 30) & 0x07) << 1),
        (pts >> 22) & 0xFF,
        (((pts >> 15) & 0x7F) << 1) | 1,
        (pts >> 7) & 0xFF,
        ((pts & 0x7F) << 1) | 1,
    ])
    payload = b"\x00\x00\x01\xe0\x00\x00\x80\x80\x05" + stamp
    header = bytes([SYNC_BYTE, 0x40 | (pid >> 8), pid & 0xFF, 0x10])
    return header + payload + b"\xff" * (PKT_SIZE - 4 - len(payload))


def _lines(out):
    return out.getvalue().splitlines()


def test_pat_lines():
    out = io.StringIO()
    printer = PesPrinter(out)
    assert printer.handle_packet(_pat({3: 0x101})) is True
    assert _lines(out) == [
        f"{BT}|{BP}|PAT: V#1 PID#0000",
        f"{BT}|{BP}|  SID#0003 => PMT#0101",
    ]


def test_empty_pat_stops():
    out = io.StringIO()
    printer = PesPrinter(out)
    assert printer.handle_packet(_pat({})) is False
    assert _lines(out) == [f"{BT}|{BP}|PAT: V#1 PID#0000"]


def test_pmt_lines():
    out = io.StringIO()
    printer = PesPrinter(out)
    printer.handle_packet(_pat({3: 0x101}))
    printer.handle_packet(_pmt(3, 0x901, {0x301: 0x02, 0x302: 0x0F}))
    assert _lines(out)[2:] == [
        f"{BT}|{BP}|PMT: SID#0003 PCR#0901 V#1",
        f"{BT}|{BP}|  PES#0301 => Video#02",
        f"{BT}|{BP}|  PES#0302 => Audio#0F",
    ]


def test_pts_without_clock():
    out = io.StringIO()
    printer = PesPrinter(out)
    assert printer.handle_packet(_pts_packet(0x400, 90000)) is True
    assert _lines(out) == [f"{BT}|{format_pcr(90000 * 300)}|PES#0400 PTS"]


def test_pts_with_clock():
    out = io.StringIO()
    printer = PesPrinter(out)
    printer.handle_packet(_pat({3: 0x101}))
    printer.handle_packet(_pmt(3, 0x901, {0x301: 0x02}))
    printer.handle_packet(_tot(datetime(2021, 1, 1)))
    printer.handle_packet(_pcr_packet(0x901, 0))
    printer.handle_packet(_pts_packet(0x301, 90000))
    lines = _lines(out)
    assert lines[-3] == f"2021/01/01 00:00:00.000|{BP}|TOT"
    assert lines[-2] == f"2021/01/01 00:00:00.000|{format_pcr(0)}|PCR#0901"
    assert lines[-1] == f"2021/01/01 00:00:01.000|{format_pcr(90000 * 300)}|Video#0301 PTS"


def test_eit_only_for_known_services():
    out = io.StringIO()
    printer = PesPrinter(out)
    printer.handle_packet(_pat({3: 0x101}))
    start = datetime(2021, 1, 1)
    printer.handle_packet(_eit(9, 1, [(4, start, (0, 1, 0))]))
    assert len(_lines(out)) == 2
    printer.handle_packet(_eit(3, 1, [(4, start, (0, 1, 0))]))
    assert _lines(out)[2:] == [
        f"{BT}|{BP}|EIT p/f Actual: SID#0003 V#1",
        f"{BT}|{BP}|  Event[0]: EID#0004 2021/01/01 00:00:00.000 - 2021/01/01 00:01:00.000 (1m)",
    ]
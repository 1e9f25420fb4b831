# aribts

A pure-Python library for working with ARIB MPEG-2 transport streams as
broadcast in Japan (ISDB). It has no dependencies beyond the standard
library.

## Modules

- `aribts.base` — `Clock` and `ClockBaseline` map PCR values to (JST) time,
  handling PCR wrap-around and invalidating the clock after repeated gaps of
  one second or more. `SidSet` holds service ids (`add`, and `extend` from
  decimal strings). PCR helpers: `is_valid_pcr`, `format_pcr`,
  `compare_pcr`. `ExitCode` has `SUCCESS` (0), `FAILURE` (1) and `RETRY`
  (222).
- `aribts.log` — `init_logger(name)` sends the `aribts` loggers to stderr
  at INFO level, one letter per level plus `name`. Set
  `ARIBTS_LOG_NO_TIMESTAMP=1` to leave the timestamp out. A `TRACE` level
  (5) is also defined.
- `aribts.jsonl` — `JsonlSource` (`connect`, `feed_document`), `JsonlSink`
  and `StdoutJsonlSink`, which writes each document as one compact JSON
  line to stdout or to a given text stream.
- `aribts.packet_source` — `File` (an abstract byte file), `BinaryFile`
  (a `File` over a binary file object), `SeekMode`, `PacketSink` and
  `PacketSource`. `FileSource` reads 188-byte packets from a `File` and
  resynchronises when the sync byte is lost. `feed_packets()` drives the
  connected sink and returns its exit code.
- `aribts.ring_file_sink` — `RingFileSink` writes packets into a ring file
  of `num_chunks` chunks of `chunk_size` bytes, syncing at each chunk
  boundary, truncating and rewinding at the end of the ring, and notifying
  a `PacketRingObserver`. Its exit code is `FAILURE` once a write, sync,
  truncate or seek has failed.
- `aribts.psi` — `TsPacket` (PID, payload, PCR, PTS, DTS), `Section`, a
  `SectionDemux` delivering sections and complete tables, parsers for PAT,
  PMT, CAT, EIT and TOT, `decode_mjd_time`, `jst_to_unix_ms`, and
  `build_pat_section` / `packetize_section` for writing a PAT.
- `aribts.airtime_tracker` — `AirtimeTracker` watches EIT present/following
  for one service and emits `nid`, `tsid`, `sid`, `eid`, `startTime` (Unix
  ms) and `duration` (ms) of the tracked event each time the table carries
  it; it stops when the event is neither present nor following.
- `aribts.service_filter` — `ServiceFilter` passes on only the packets of
  one service (its PMT, PCR, streams, ECM/EMM and the common SI PIDs), with
  a PAT rewritten to list just that service. With `time_limit` set, it stops
  once a TOT reaches that time. A service missing from the PAT stops the
  stream with a failure exit code.
- `aribts.pes_printer` — `PesPrinter` prints one line per PAT, CAT, PMT,
  EIT p/f, TOT, PCR, PTS and DTS, with times derived from the PCR clock.
- `aribts.start_seeker` — `StartSeeker` holds packets back until the
  service's video or audio streams change (the program start), a packet
  count limit or a PCR duration limit is reached, then streams on.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
from aribts.airtime_tracker import AirtimeTracker, AirtimeTrackerOption
from aribts.jsonl import StdoutJsonlSink
from aribts.packet_source import BinaryFile, FileSource

with open("record.ts", "rb") as stream:
    source = FileSource(BinaryFile(stream, "record.ts"))
    tracker = AirtimeTracker(AirtimeTrackerOption(sid=0x0400, eid=0x1234))
    tracker.connect(StdoutJsonlSink())
    source.connect(tracker)
    exit_code = source.feed_packets()
```

Each sink's `handle_packet` returns `False` to stop the feed.

## What it does not do

- There is no command-line program; the classes are meant to be wired
  together from Python.
- There is no collector for the EIT schedule tables, no service scanner
  (SDT/NIT), no logo collector and no recorder that reports events along
  with ring-file positions.
- Descriptors in EIT events are kept as raw bytes and are not decoded.
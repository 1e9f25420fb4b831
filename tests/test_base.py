from datetime import datetime, timedelta

import pytest

from aribts.base import (
    PCR_TICKS_PER_MS,
    PCR_TICKS_PER_SEC,
    PCR_UPPER_BOUND,
    Clock,
    ClockBaseline,
    ExitCode,
    SidSet,
    compare_pcr,
    format_pcr,
    is_valid_pcr,
)

T0 = datetime(1970, 1, 1)


def _baseline(pcr):
    baseline = ClockBaseline()
    baseline.set_pid(0x100)
    baseline.set_pcr(pcr)
    baseline.set_time(T0)
    return baseline


def test_pcr_wrap_around():
    baseline = _baseline(PCR_UPPER_BOUND - PCR_TICKS_PER_MS)
    assert baseline.is_ready

    clock = Clock(baseline)
    clock.update_pcr(PCR_UPPER_BOUND - PCR_TICKS_PER_MS)
    assert clock.is_ready
    assert clock.now() == T0

    clock.update_pcr(0)
    assert clock.now() == T0 + timedelta(milliseconds=1)


def test_invalidate():
    baseline = _baseline(0)
    assert baseline.is_ready

    clock = Clock(baseline)
    clock.update_pcr(0)
    assert clock.is_ready
    assert clock.now() == T0

    for _ in range(Clock.PCR_GAP_COUNT_THRESHOLD):
        clock.update_pcr(PCR_TICKS_PER_SEC)
        assert clock.is_ready

    clock.update_pcr(PCR_TICKS_PER_SEC)
    assert not clock.is_ready

    clock.update_pcr(0)
    assert not clock.is_ready

    clock.update_time(T0)
    assert clock.is_ready
    assert clock.now() == T0


def test_clock_copies_baseline():
    baseline = _baseline(0)
    clock = Clock(baseline)
    baseline.invalidate()
    clock.update_pcr(0)
    assert clock.is_ready


def test_time_to_pcr_round_trip():
    baseline = _baseline(PCR_TICKS_PER_SEC)
    t = T0 + timedelta(seconds=3)
    pcr = baseline.time_to_pcr(t)
    assert baseline.pcr_to_time(pcr) == t


def test_time_to_pcr_wraps_negative():
    baseline = _baseline(0)
    pcr = baseline.time_to_pcr(T0 - timedelta(milliseconds=1))
    assert pcr == PCR_UPPER_BOUND - PCR_TICKS_PER_MS


def test_baseline_not_ready_raises():
    baseline = ClockBaseline()
    assert not baseline.has_pid
    with pytest.raises(RuntimeError):
        baseline.pcr_to_time(0)


def test_set_pid_resets_readiness():
    baseline = _baseline(0)
    baseline.set_pid(0x200)
    assert baseline.pid == 0x200
    assert not baseline.is_ready


def test_invalid_pcr_rejected():
    with pytest.raises(ValueError):
        ClockBaseline().set_pcr(PCR_UPPER_BOUND)
    with pytest.raises(ValueError):
        Clock().update_pcr(-1)


def test_pcr_helpers():
    assert is_valid_pcr(0)
    assert not is_valid_pcr(PCR_UPPER_BOUND)
    assert format_pcr(0) == "0000000000+000"
    assert compare_pcr(5, 5) == 0
    assert compare_pcr(10, 5) > 0
    assert compare_pcr(5, 10) < 0
    assert compare_pcr(0, PCR_UPPER_BOUND - 1) > 0


def test_sid_set_extend():
    sids = SidSet()
    assert len(sids) == 0
    sids.extend(["1", "2x", "3"])
    assert 1 in sids
    assert 3 in sids
    assert 2 not in sids
    assert list(sids) == [1, 3]
    with pytest.raises(ValueError):
        sids.extend(["abc"])


@pytest.mark.parametrize(
    "value, name",
    [(0, "SUCCESS"), (1, "FAILURE"), (222, "RETRY")],
)
def test_exit_code_lookup(value, name):
    code = ExitCode(value)
    assert code.name == name
    assert int(code) == value
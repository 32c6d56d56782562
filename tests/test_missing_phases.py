import pytest

from conftest import make_catalog
from rtddpy.config import Config
from rtddpy.exceptions import ModelLookupError
from rtddpy.missing_phases import (
    add_missing_event_phases,
    create_theoretical_phase,
    find_missing_event_phases,
    fix_phases,
)
from rtddpy.xcorr import XCorrCache


@pytest.fixture
def catalog(ttt, stations):
    return make_catalog(ttt, stations, [(0.0, 0.0, 5.0), (0.4, 0.0, 5.0),
                                        (0.0, 0.4, 5.5)])


@pytest.fixture
def phase_family():
    return Config().phase_family


def _without_station(catalog, event_id, station_id):
    phases = [ph for ph in catalog.get_phases(event_id)
              if ph.station_id != station_id]
    return catalog.replace_event_phases(event_id, phases)


def test_find_missing_event_phases(catalog, phase_family):
    assert find_missing_event_phases(catalog, 1, phase_family) == {}
    catalog = _without_station(catalog, 1, "XX.ST02")
    missing = find_missing_event_phases(catalog, 1, phase_family)
    assert sorted(missing) == [("XX.ST02", "P"), ("XX.ST02", "S")]
    assert sorted(ph.event_id for ph in missing[("XX.ST02", "P")]) == [2, 3]


def test_theoretical_phase_uses_peer_residuals(catalog, ttt, phase_family):
    original = [ph for ph in catalog.get_phases(1)
                if ph.station_id == "XX.ST02" and ph.type == "P"][0]
    catalog = _without_station(catalog, 1, "XX.ST02")
    peers = find_missing_event_phases(catalog, 1,
                                      phase_family)[("XX.ST02", "P")]
    phase = create_theoretical_phase(catalog, 1, peers, ttt)
    # exact picks: the residuals are zero and the prediction is exact
    assert abs(phase.time - original.time) < 1e-6
    assert phase.source == "theoretical"
    assert phase.is_theoretical
    assert not phase.is_manual
    assert phase.weight == 1.0
    assert phase.channel_code == "HHZ"

    # a constant delay at the station moves the theoretical pick too
    delayed = [ph.replace(time=ph.time + 0.2) for ph in peers]
    phase = create_theoretical_phase(catalog, 1, delayed, ttt)
    assert phase.time - original.time == pytest.approx(0.2, abs=1e-6)


def test_theoretical_phase_without_travel_times(catalog):
    class FailingTable(object):
        def predict(self, *args):
            raise ModelLookupError("out of range")

    catalog = _without_station(catalog, 1, "XX.ST02")
    peers = find_missing_event_phases(catalog, 1,
                                      Config().phase_family)[("XX.ST02", "P")]
    with pytest.raises(ModelLookupError):
        create_theoretical_phase(catalog, 1, peers, FailingTable())
    # failures only skip the phase
    assert add_missing_event_phases(catalog, 1, FailingTable(),
                                    Config().phase_family) is catalog


def test_add_missing_event_phases(catalog, ttt, phase_family):
    reduced = _without_station(catalog, 1, "XX.ST02")
    completed = add_missing_event_phases(reduced, 1, ttt, phase_family)
    theoretical = [ph for ph in completed.get_phases(1) if ph.is_theoretical]
    assert sorted(ph.type for ph in theoretical) == ["P", "S"]
    assert len(completed.get_phases(1)) == len(catalog.get_phases(1))
    # other events are untouched
    assert completed.get_phases(2) == catalog.get_phases(2)
    assert add_missing_event_phases(catalog, 1, ttt, phase_family) is catalog


def test_fix_phases(catalog, ttt, phase_family):
    reduced = _without_station(catalog, 1, "XX.ST02")
    completed = add_missing_event_phases(reduced, 1, ttt, phase_family)
    theoretical_p = [ph for ph in completed.get_phases(1)
                     if ph.is_theoretical and ph.type == "P"][0]

    cache = XCorrCache()
    # the true arrival is 0.05 s later than the theoretical pick
    cache.add(1, 2, "XX.ST02", "P", 0.9, 0.05)
    cache.add(3, 1, "XX.ST02", "P", 0.6, -0.05)
    cache.add(1, 2, "XX.ST03", "P", 0.9, 0.0)
    fixed = fix_phases(completed, 1, cache, phase_family)

    phases = [ph for ph in fixed.get_phases(1)
              if ph.station_id == "XX.ST02"]
    # the S phase has no correlation and is dropped
    assert len(phases) == 1
    phase = phases[0]
    assert phase.source == "xcorr"
    assert not phase.is_theoretical
    assert phase.time - theoretical_p.time == pytest.approx(0.05)
    assert phase.weight == pytest.approx(0.75)
    # the lags now refer to the new pick
    assert cache.get(1, 2, "XX.ST02", "P").lag == pytest.approx(0.0)
    assert cache.get(1, 3, "XX.ST02", "P").lag == pytest.approx(0.0)
    assert cache.get(1, 2, "XX.ST03", "P").lag == pytest.approx(0.0)
    # real phases are kept as they are
    assert len(fixed.get_phases(1)) == len(reduced.get_phases(1)) + 1

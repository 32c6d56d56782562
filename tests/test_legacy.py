import pytest
from obspy import UTCDateTime

from conftest import make_catalog
from rtddpy.legacy import (
    apply_reloc_results,
    read_reloc_file,
    write_dt_cc,
    write_dt_ct,
    write_phase_dat,
    write_station_dat,
)
from rtddpy.neighbours import select_neighbouring_events_catalog
from rtddpy.xcorr import XCorrCache

RELOC_LINES = [
    "      1  46.012345   8.001234    5.123   12.3   -4.5  120.0   10.0"
    "   12.0   15.0 2020  1  1  0  0 12.345 1.2    3    2   10    8"
    "  0.012  0.034  1",
    "      2  46.002000   8.003000    4.500    1.0    2.0    3.0    4.0"
    "    5.0    6.0 2020  1  1  0  0 60.000 1.3    0    0    6    6"
    " -9.000  0.020  2",
    "     99  46.0  8.0  5.0  0 0 0 0 0 0 2020  1  1  0  0 1.0 1.0"
    "    0    0    6    6  0.0  0.0  1",
]


@pytest.fixture
def catalog(ttt, stations):
    return make_catalog(ttt, stations, [(0.0, 0.0, 5.0), (0.3, 0.0, 5.0)])


def _read_lines(filename):
    with open(filename, "r") as open_file:
        return open_file.read().splitlines()


def test_station_dat(catalog, tmp_path):
    filename = str(tmp_path / "station.dat")
    write_station_dat(catalog, filename)
    lines = _read_lines(filename)
    assert len(lines) == 6
    station = catalog.stations["XX.ST01"]
    assert lines[0] == "%-7s %9.5f %10.5f %5i" % (
        "XX.ST01", station.latitude, station.longitude, 0)
    assert lines[0].split()[0] == "XX.ST01"


def test_phase_dat(catalog, tmp_path):
    # negative travel times are skipped
    phases = list(catalog.get_phases(2))
    phases[0] = phases[0].replace(time=catalog.events[2].time - 1.0)
    catalog = catalog.replace_event_phases(2, phases)

    filename = str(tmp_path / "phase.dat")
    write_phase_dat(catalog, filename)
    lines = _read_lines(filename)
    headers = [line for line in lines if line.startswith("#")]
    assert len(headers) == 2
    assert headers[0].split()[1:6] == ["2020", "1", "1", "0", "0"]
    assert headers[0].split()[-1] == "1"
    assert len(lines) == 2 + 12 + 11

    station_id, travel_time, weight, family = lines[1].split()
    phase = catalog.get_phases(1)[0]
    assert station_id == phase.station_id
    assert float(travel_time) == pytest.approx(
        phase.time - catalog.events[1].time, abs=1e-3)
    assert float(weight) == 1.0
    assert family == phase.type


def test_phase_dat_writes_phase_families(catalog, tmp_path):
    # Pg and Sg are written as P and S, other phases are skipped
    types = {"P": "Pg", "S": "Sg"}
    phases = [ph.replace(type=types[ph.type]) for ph in catalog.get_phases(1)]
    phases[0] = phases[0].replace(type="Lg")
    catalog = catalog.replace_event_phases(1, phases)

    filename = str(tmp_path / "phase.dat")
    write_phase_dat(catalog, filename)
    lines = _read_lines(filename)
    first_event = lines[1:lines.index(next(
        line for line in lines[1:] if line.startswith("#")))]
    assert len(first_event) == 11
    assert sorted(set(line.split()[-1] for line in first_event)) == \
        ["P", "S"]


def test_dt_ct_and_dt_cc(catalog, tmp_path):
    neighbour_cats, _ = select_neighbouring_events_catalog(catalog,
                                                           num_ellipsoids=0)
    filename = str(tmp_path / "dt.ct")
    write_dt_ct(neighbour_cats, filename)
    lines = _read_lines(filename)
    assert lines[0].split() == ["#", "1", "2"]
    assert len(lines) == 13
    station_id, tt1, tt2, weight, family = lines[1].split()
    phase1 = [ph for ph in catalog.get_phases(1)
              if ph.station_id == station_id and ph.type == family][0]
    assert float(tt1) == pytest.approx(
        phase1.time - catalog.events[1].time, abs=1e-5)
    assert float(weight) == 1.0

    cache = XCorrCache()
    cache.add(1, 2, "XX.ST01", "P", 0.85, 0.01)
    cache.add(2, 1, "XX.ST02", "S", 0.75, 0.02)
    filename = str(tmp_path / "dt.cc")
    write_dt_cc(neighbour_cats, cache, filename)
    lines = _read_lines(filename)
    assert lines[0].split() == ["#", "1", "2", "0.0"]
    assert len(lines) == 3
    by_station = {line.split()[0]: line.split() for line in lines[1:]}

    def catalog_dt(station_id, phase_type):
        phases = {ph.event_id: ph for ph in catalog.all_phases()
                  if ph.station_id == station_id and ph.type == phase_type}
        return (phases[1].time - catalog.events[1].time) - \
            (phases[2].time - catalog.events[2].time)

    _, diff_time, coefficient, family = by_station["XX.ST01"]
    assert family == "P"
    assert float(diff_time) == pytest.approx(
        catalog_dt("XX.ST01", "P") + 0.01, abs=1e-5)
    assert float(coefficient) == pytest.approx(0.85)
    _, diff_time, coefficient, family = by_station["XX.ST02"]
    assert float(diff_time) == pytest.approx(
        catalog_dt("XX.ST02", "S") - 0.02, abs=1e-5)


def test_read_reloc_file(tmp_path):
    filename = str(tmp_path / "hypoDD.reloc")
    with open(filename, "w") as open_file:
        open_file.write("\n".join(RELOC_LINES) + "\n")
    results = read_reloc_file(filename)
    assert sorted(results) == [1, 2, 99]

    result = results[1]
    assert result["time"] == UTCDateTime(2020, 1, 1, 0, 0, 12, 345000)
    assert result["latitude"] == 46.012345
    assert result["longitude"] == 8.001234
    assert result["depth"] == 5.123
    info = result["reloc_info"]
    assert info.cluster_id == 1
    assert (info.num_cc_p, info.num_cc_s, info.num_ct_p, info.num_ct_s) == \
        (3, 2, 10, 8)
    assert info.final_rms == 0.034

    # hypoDD can write 60 seconds
    assert results[2]["time"] == UTCDateTime(2020, 1, 1, 0, 1, 0)
    assert results[2]["reloc_info"].cluster_id == 2


def test_apply_reloc_results(catalog, tmp_path):
    filename = str(tmp_path / "hypoDD.reloc")
    with open(filename, "w") as open_file:
        open_file.write("\n".join(RELOC_LINES) + "\n")
    relocated = apply_reloc_results(catalog, read_reloc_file(filename))
    assert len(relocated) == 2
    assert relocated.events[1].latitude == 46.012345
    assert relocated.events[2].time == UTCDateTime(2020, 1, 1, 0, 1, 0)
    assert relocated.events[1].is_relocated
    assert relocated.events[1].magnitude == catalog.events[1].magnitude
    assert relocated.get_phases(1) == catalog.get_phases(1)

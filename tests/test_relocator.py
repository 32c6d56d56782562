import json
import os

import matplotlib
import pytest

from conftest import line_locations, make_catalog, make_waveforms
from rtddpy.catalog import Catalog
from rtddpy.catalog_io import read_catalog
from rtddpy.exceptions import InsufficientObservations, SolverDivergence
from rtddpy.geo import compute_distance
from rtddpy.relocator import (
    EventOutcome,
    HypoDDRelocator,
    RelocationReport,
    _find_clusters,
    _pair_graph,
)
from rtddpy.solver import Solver
from rtddpy.waveform import StreamWaveformProxy

matplotlib.use("Agg")


@pytest.fixture
def make_relocator(tmp_path, ttt):
    relocators = []

    def factory(config=None, **kwargs):
        kwargs.setdefault("verbose", False)
        kwargs.setdefault("travel_time_table", ttt)
        relocator = HypoDDRelocator(str(tmp_path / "working_dir"),
                                    config=config, **kwargs)
        relocators.append(relocator)
        return relocator

    yield factory
    for relocator in relocators:
        relocator.close()


def _location_error(event, truth):
    return compute_distance(event.latitude, event.longitude, event.depth,
                            truth.latitude, truth.longitude, truth.depth)[0]


def _join(*catalogs):
    stations = {}
    events = []
    phases = []
    for catalog in catalogs:
        stations.update(catalog.stations)
        events.extend(catalog.events.values())
        phases.extend(catalog.all_phases())
    return Catalog(stations, events, phases)


def test_consistent_catalog_stays_in_place(line_catalog, make_relocator,
                                           tmp_path):
    relocator = make_relocator()
    relocated, report = relocator.relocate_catalog(line_catalog)

    assert report.relocated == sorted(line_catalog.events)
    assert report.excluded == []
    assert report.not_relocated == []
    for event_id, event in relocated.events.items():
        original = line_catalog.events[event_id]
        assert _location_error(event, original) < 0.01
        assert abs(event.time - original.time) < 0.01
        assert event.reloc_info is not None
        assert event.reloc_info.cluster_id == 1
        # phases are kept
        assert relocated.get_phases(event_id) == \
            line_catalog.get_phases(event_id)
    # both events of a pair count it, whichever catalog keeps it
    for event_id in (1, 10):
        info = relocated.events[event_id].reloc_info
        assert info.num_neighbours == 9
        assert info.num_ct_p == 9 * 6
        assert info.num_ct_s == 9 * 6

    output_dir = tmp_path / "working_dir" / "output_files"
    assert read_catalog(str(output_dir)) == relocated
    with open(str(output_dir / "relocation_report.json")) as open_file:
        saved = json.load(open_file)
    assert len(saved["outcomes"]) == len(line_catalog)
    assert os.path.exists(str(tmp_path / "working_dir" / "log.txt"))


def test_catalog_relocation_reduces_residuals(ttt, stations, make_relocator):
    locations = line_locations()
    start = list(locations)
    start[4] = (locations[4][0] + 0.3, locations[4][1] + 0.4,
                locations[4][2] + 0.3)
    catalog = make_catalog(ttt, stations, start, pick_locations=locations)
    relocator = make_relocator()
    relocated, report = relocator.relocate_catalog(catalog)
    assert report.relocated == sorted(catalog.events)
    info = relocated.events[5].reloc_info
    assert info.final_rms < 0.5 * info.start_rms
    assert info.location_change > 0.0


def test_catalog_relocation_excludes_events(line_catalog, ttt, stations,
                                            make_relocator):
    unusable = make_catalog(ttt, stations, [(0.2, 0.2, 5.0)], weight=0.0,
                            first_id=11, time_offset=3600.0)
    catalog = _join(line_catalog, unusable)
    config = {"step1_clustering": {"min_weight": 0.05},
              "step2_clustering": {"min_weight": 0.05}}
    relocator = make_relocator(config)
    relocated, report = relocator.relocate_catalog(catalog)

    assert report.excluded == [11]
    assert isinstance(report.outcomes[11].reason, InsufficientObservations)
    assert report.outcomes[11].step == 1
    assert report.relocated == sorted(line_catalog.events)
    assert 11 not in relocated.events
    assert len(relocated) == len(line_catalog)
    assert "Excluded events: 1" in report.summary()


def test_catalog_relocation_with_waveforms(ttt, stations, make_relocator,
                                           tmp_path):
    catalog = make_catalog(ttt, stations, line_locations(4, spacing=0.3))
    stream = make_waveforms(catalog)
    # event 1 has no pick at ST02, its waveform is there though
    phases = [ph for ph in catalog.get_phases(1)
              if ph.station_id != "XX.ST02"]
    catalog = catalog.replace_event_phases(1, phases)

    relocator = make_relocator(waveform_proxy=StreamWaveformProxy(stream),
                               cache_waveforms_on_disk=True,
                               working_dir_cleanup=False, max_threads=2)
    relocated, report = relocator.relocate_catalog(catalog)

    assert report.relocated == [1, 2, 3, 4]
    counters = report.counters
    assert counters.performed_p > 0
    assert counters.good_cc_p > 0
    assert counters.performed_p_theo > 0
    assert counters.good_cc_p_theo > 0
    assert relocated.events[2].reloc_info.num_cc_p > 0
    for event_id, event in relocated.events.items():
        assert _location_error(event, catalog.events[event_id]) < 0.05
    # the theoretical phases are not part of the output
    assert relocated.get_phases(1) == catalog.get_phases(1)
    assert len(relocator.xcorr_cache) > 0
    assert os.path.isdir(relocator.paths["waveform_cache"])

    # saved results are reused by the next relocation only
    filename = str(tmp_path / "xcorr.json")
    relocator.save_cross_correlation_results(filename)
    other = make_relocator(waveform_proxy=StreamWaveformProxy(stream))
    other.load_cross_correlation_results(filename)
    other.load_cross_correlation_results(filename, purge=True)
    again, again_report = other.relocate_catalog(catalog)
    # only the rejected pairs are correlated again
    assert again_report.counters.performed_p == \
        counters.performed_p - counters.good_cc_p
    assert again_report.counters.performed_s == \
        counters.performed_s - counters.good_cc_s
    assert again.events[2].reloc_info.num_cc_p == \
        relocated.events[2].reloc_info.num_cc_p
    assert len(other.xcorr_cache) == len(relocator.xcorr_cache)
    _, third_report = other.relocate_catalog(catalog)
    assert third_report.counters.performed_p == counters.performed_p


def test_waveform_cache_is_cleaned_up(ttt, stations, make_relocator):
    catalog = make_catalog(ttt, stations, line_locations(3, spacing=0.3))
    relocator = make_relocator(
        waveform_proxy=StreamWaveformProxy(make_waveforms(catalog)),
        cache_waveforms_on_disk=True)
    relocator.relocate_catalog(catalog)
    assert not os.path.exists(relocator.paths["waveform_cache"])


def test_single_event_converges(line_catalog, ttt, stations, make_relocator):
    truth = (0.2, 0.3, 5.3)
    event_catalog = make_catalog(ttt, stations, [(1.0, -0.5, 6.0)],
                                 pick_locations=[truth], time_shifts=[0.2],
                                 first_id=100, time_offset=3600.0)
    true_event = make_catalog(ttt, stations, [truth], first_id=100,
                              time_offset=3600.0).events[100]
    relocator = make_relocator()
    relocated, report = relocator.relocate_single_event(line_catalog,
                                                        event_catalog)
    assert sorted(relocated.events) == [100]
    event = relocated.events[100]
    assert _location_error(event, true_event) < 0.1
    assert abs(event.time - true_event.time) < 0.02
    assert report.relocated == [100]
    assert report.outcomes[100].step == 2
    assert event.reloc_info.num_neighbours == len(line_catalog)
    # the background is not modified
    assert len(line_catalog) == 10


def test_single_event_needs_an_id(line_catalog, ttt, stations,
                                  make_relocator):
    event_catalog = make_catalog(ttt, stations, [(0.0, 0.0, 5.0),
                                                 (0.1, 0.0, 5.0)],
                                 time_offset=3600.0)
    relocator = make_relocator()
    with pytest.raises(ValueError):
        relocator.relocate_single_event(line_catalog, event_catalog)


def test_single_event_without_observations(line_catalog, ttt, stations,
                                           make_relocator):
    event_catalog = make_catalog(ttt, stations, [(0.0, 0.2, 5.0)],
                                 weight=0.0, time_offset=3600.0)
    config = {"step1_clustering": {"min_weight": 0.05},
              "step2_clustering": {"min_weight": 0.05}}
    relocator = make_relocator(config)
    with pytest.raises(InsufficientObservations):
        relocator.relocate_single_event(line_catalog, event_catalog)


def test_batch_relocation(line_catalog, ttt, stations, make_relocator):
    good = make_catalog(ttt, stations, [(0.5, 0.5, 5.5)],
                        pick_locations=[(0.4, 0.4, 5.2)], first_id=100,
                        time_offset=3600.0)
    unusable = make_catalog(ttt, stations, [(0.2, 0.2, 5.0)], weight=0.0,
                            first_id=101, time_offset=7200.0)
    event_catalog = _join(good, unusable)
    config = {"step1_clustering": {"min_weight": 0.05},
              "step2_clustering": {"min_weight": 0.05}}
    relocator = make_relocator(config, max_threads=2)
    relocated, report = relocator.relocate_events(line_catalog,
                                                  event_catalog)
    assert report.relocated == [100]
    assert report.excluded == [101]
    assert sorted(relocated.events) == [100]
    assert relocated.events[100].is_relocated
    assert relocated.get_phases(100) == good.get_phases(100)
    outcomes = report.to_dict()["outcomes"]
    assert [outcome["status"] for outcome in outcomes] == [
        EventOutcome.RELOCATED, EventOutcome.EXCLUDED]
    assert outcomes[1]["error"] == "InsufficientObservations"


def test_plots(line_catalog, make_relocator, tmp_path):
    relocator = make_relocator({"solver": {"algo_iterations": 2}})
    relocator.relocate_catalog(line_catalog, create_plots=True)
    output_dir = tmp_path / "working_dir" / "output_files"
    assert (output_dir / "original_event_location.pdf").exists()
    assert (output_dir / "relocated_event_location.pdf").exists()


def test_find_clusters(ttt, stations):
    catalog = make_catalog(ttt, stations, line_locations(6))
    neighbour_cats = {
        1: catalog.extract_events([1, 2]),
        2: catalog.extract_events([2]),
        3: catalog.extract_events([3, 4, 5]),
        4: catalog.extract_events([4, 3]),
        6: catalog.extract_events([6]),
    }
    graph = _pair_graph(neighbour_cats)
    assert _find_clusters(graph) == [{3, 4, 5}, {1, 2}, {6}]
    assert graph.degree(3) == 2
    assert graph.degree(4) == 1
    assert graph.degree(6) == 0


def test_cross_correlations_are_not_shared_between_catalogs(
        ttt, stations, make_relocator):
    catalog = make_catalog(ttt, stations, line_locations(3, spacing=0.3))
    relocator = make_relocator(
        waveform_proxy=StreamWaveformProxy(make_waveforms(catalog)))
    _, report = relocator.relocate_catalog(catalog)
    assert report.counters.good_cc_p > 0

    # same event ids, one day later: no waveforms
    other = make_catalog(ttt, stations, line_locations(3, spacing=0.3),
                         time_offset=86400.0)
    relocated, report = relocator.relocate_catalog(other)
    assert report.counters.good_cc_p == 0
    assert report.counters.good_cc_s == 0
    for event in relocated.events.values():
        assert event.reloc_info.num_cc_p == 0
        assert event.reloc_info.num_cc_s == 0
    assert len(relocator.xcorr_cache) == 0


def _failing_solve(monkeypatch, should_fail):
    original_solve = Solver.solve

    def solve(self):
        if should_fail(self):
            raise SolverDivergence("Diverging solution")
        return original_solve(self)

    monkeypatch.setattr(Solver, "solve", solve)


def test_solver_failure_in_catalog_mode(line_catalog, ttt, stations,
                                        make_relocator, monkeypatch):
    far_away = make_catalog(ttt, stations,
                            [(40.0, 0.0, 5.0), (40.5, 0.0, 5.0),
                             (41.0, 0.0, 5.0)],
                            first_id=11, time_offset=3600.0)
    catalog = _join(line_catalog, far_away)
    _failing_solve(monkeypatch,
                   lambda solver: solver._free_events & {11, 12, 13})
    relocator = make_relocator()
    relocated, report = relocator.relocate_catalog(catalog)

    assert report.relocated == sorted(line_catalog.events)
    assert report.not_relocated == [11, 12, 13]
    assert isinstance(report.outcomes[11].reason, SolverDivergence)
    assert report.outcomes[11].step == 2
    for event_id in (11, 12, 13):
        # the input location is kept
        assert relocated.events[event_id] == catalog.events[event_id]
        assert not relocated.events[event_id].is_relocated
    assert relocated.events[1].reloc_info.cluster_id == 1


def test_solver_failure_in_single_event_mode(line_catalog, ttt, stations,
                                             make_relocator, monkeypatch):
    event_catalog = make_catalog(ttt, stations, [(0.5, 0.5, 5.5)],
                                 first_id=100, time_offset=3600.0)
    _failing_solve(monkeypatch, lambda solver: True)
    relocator = make_relocator()
    with pytest.raises(SolverDivergence):
        relocator.relocate_single_event(line_catalog, event_catalog)

    relocated, report = relocator.relocate_events(line_catalog,
                                                  event_catalog)
    assert len(relocated) == 0
    assert report.not_relocated == [100]
    assert isinstance(report.outcomes[100].reason, SolverDivergence)


def test_single_event_step2_failure(line_catalog, ttt, stations,
                                    make_relocator, monkeypatch):
    event_catalog = make_catalog(ttt, stations, [(0.5, 0.5, 5.5)],
                                 pick_locations=[(0.4, 0.4, 5.2)],
                                 first_id=100, time_offset=3600.0)
    calls = []

    def should_fail(solver):
        calls.append(solver)
        # step 1 has 2 iterations
        return len(calls) > 2

    _failing_solve(monkeypatch, should_fail)
    relocator = make_relocator({"solver": {"algo_iterations": 2}})
    relocated, report = relocator.relocate_single_event(line_catalog,
                                                        event_catalog)
    # step 1 result
    assert report.relocated == [100]
    assert report.outcomes[100].step == 1
    assert relocated.events[100].is_relocated
    assert len(calls) == 3


def test_report_merge():
    report = RelocationReport()
    report.add(1, EventOutcome.RELOCATED, 2)
    report.counters.add("P", False, True)
    other = RelocationReport()
    other.add(2, EventOutcome.NOT_RELOCATED, 1, Exception("diverged"))
    other.counters.add("P", False, False)
    report.merge(other)
    assert report.relocated == [1]
    assert report.not_relocated == [2]
    assert report.counters.performed_p == 2
    assert "diverged" in report.summary()

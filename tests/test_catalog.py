import pytest
from obspy import UTCDateTime

from rtddpy.catalog import Catalog, Event, Phase, RelocInfo, Station
from rtddpy.exceptions import CatalogError


def test_merge_is_idempotent(line_catalog):
    merged = line_catalog.merge(line_catalog)
    assert merged == line_catalog
    assert len(merged) == len(line_catalog)
    assert len(list(merged.all_phases())) == \
        len(list(line_catalog.all_phases()))
    assert merged.merge(line_catalog) == merged


def test_merge_assigns_new_ids(line_catalog):
    first = line_catalog.extract_events([1, 2])
    second = line_catalog.extract_events([2, 3])
    merged, event_map = first.merge_with_map(second)
    assert len(merged) == 3
    # event 2 is already there, event 3 gets the next free id
    assert event_map == {2: 2, 3: 3}
    assert merged.events[3] == line_catalog.events[3]
    assert len(merged.get_phases(3)) == len(line_catalog.get_phases(3))
    assert len(merged.get_phases(2)) == len(line_catalog.get_phases(2))


def test_merge_renumbers_clashing_ids(line_catalog):
    first = line_catalog.extract_events([1])
    # same id, different event
    other = Catalog(line_catalog.stations,
                    [line_catalog.events[5].replace(id=1)],
                    [ph.replace(event_id=1)
                     for ph in line_catalog.get_phases(5)])
    merged, event_map = first.merge_with_map(other)
    assert event_map == {1: 2}
    assert merged.events[2] == line_catalog.events[5]
    assert all(ph.event_id == 2 for ph in merged.get_phases(2))


def test_equality_ignores_ids(line_catalog):
    events = [ev.replace(id=ev.id + 100)
              for ev in line_catalog.events.values()]
    phases = [ph.replace(event_id=ph.event_id + 100)
              for ph in line_catalog.all_phases()]
    renumbered = Catalog(line_catalog.stations, events, phases)
    assert renumbered == line_catalog


def test_find_event(line_catalog):
    event = line_catalog.events[4]
    assert line_catalog.find_event(event.replace(id=99)) == 4
    assert line_catalog.find_event(event.replace(depth=99.0)) is None


def test_extract_and_remove_events(line_catalog):
    extracted = line_catalog.extract_events([1, 3])
    assert sorted(extracted.events) == [1, 3]
    assert {ph.event_id for ph in extracted.all_phases()} == {1, 3}
    removed = line_catalog.remove_events([1, 3])
    assert len(removed) == len(line_catalog) - 2
    assert 1 not in removed.events
    assert not removed.get_phases(1)


def test_replace_events(line_catalog):
    event = line_catalog.events[2].replace(depth=7.0)
    replaced = line_catalog.replace_events([event])
    assert replaced.events[2].depth == 7.0
    assert replaced.get_phases(2) == line_catalog.get_phases(2)
    # the original catalog is unchanged
    assert line_catalog.events[2].depth != 7.0
    with pytest.raises(CatalogError):
        line_catalog.replace_events([event.replace(id=1000)])


def test_phases_reference_known_entities():
    station = Station("XX.A", 46.0, 8.0, 0.0, "XX", "A")
    event = Event(1, UTCDateTime(2020, 1, 1), 46.0, 8.0, 5.0)
    with pytest.raises(CatalogError):
        Catalog([station], [event],
                [Phase(2, "XX.A", UTCDateTime(2020, 1, 1, 0, 0, 3), "P")])
    with pytest.raises(CatalogError):
        Catalog([station], [event],
                [Phase(1, "XX.B", UTCDateTime(2020, 1, 1, 0, 0, 3), "P")])
    with pytest.raises(CatalogError):
        Phase(1, "XX.A", UTCDateTime(2020, 1, 1), "P", source="other")


def test_catalog_views_are_read_only(line_catalog):
    with pytest.raises(TypeError):
        line_catalog.events[1] = None
    assert isinstance(line_catalog.get_phases(1), tuple)


def test_reloc_info_does_not_change_equality(line_catalog):
    event = line_catalog.events[1]
    relocated = event.replace(reloc_info=RelocInfo(cluster_id=3))
    assert relocated == event
    assert relocated.is_relocated
    assert not event.is_relocated


def test_find_station_and_next_id(line_catalog):
    station = line_catalog.find_station("XX", "ST02")
    assert station.id == "XX.ST02"
    assert line_catalog.find_station("YY", "ST02") is None
    assert line_catalog.next_event_id() == 11
    assert Catalog().next_event_id() == 1

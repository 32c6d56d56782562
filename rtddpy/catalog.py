"""
Immutable catalog of stations, events and phases.

A Catalog owns flat tables of stations (keyed by station id) and events (keyed
by numeric event id). Phases reference their event and station by id. Every
operation that changes the content of a catalog returns a new Catalog.

Equality semantics are physical, not id based, so that the same entity can be
recognized in two independently built catalogs:

* Station: network and station code.
* Event: origin time, latitude, longitude, depth and magnitude.
* Phase: pick time, phase type and network/station code.
"""
from collections.abc import Mapping
from types import MappingProxyType

from obspy import UTCDateTime

from .exceptions import CatalogError


def _time_key(time):
    # Microsecond resolution, the precision of the text interfaces.
    return (time.ns + 500) // 1000


class Station(object):
    """
    A seismic station.

    :param id: Station id, by convention "network.station".
    :param elevation: Elevation in meters.
    :param extra: Opaque passthrough metadata, never used by the algorithms.
    """
    def __init__(self, id, latitude, longitude, elevation=0.0,
                 network_code="", station_code="", location_code="",
                 extra=None):
        self.id = id
        self.latitude = float(latitude)
        self.longitude = float(longitude)
        self.elevation = float(elevation)
        self.network_code = network_code
        self.station_code = station_code
        self.location_code = location_code
        self.extra = dict(extra or {})

    @staticmethod
    def make_id(network_code, station_code):
        return "%s.%s" % (network_code, station_code)

    @property
    def key(self):
        return (self.network_code, self.station_code)

    def replace(self, **kwargs):
        values = dict(self.__dict__)
        values.update(kwargs)
        return Station(**values)

    def __eq__(self, other):
        if not isinstance(other, Station):
            return NotImplemented
        return self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        return "Station(%s %.5f %.5f %.1fm)" % (
            self.id, self.latitude, self.longitude, self.elevation)


class RelocInfo(object):
    """
    Relocation statistics attached to a relocated event. Passthrough data that
    does not take part in event equality.
    """
    def __init__(self, cluster_id=0, num_neighbours=0, num_cc_p=0,
                 num_cc_s=0, num_ct_p=0, num_ct_s=0, start_rms=0.0,
                 final_rms=0.0, location_change=0.0, depth_change=0.0,
                 time_change=0.0):
        self.cluster_id = cluster_id
        self.num_neighbours = num_neighbours
        self.num_cc_p = num_cc_p
        self.num_cc_s = num_cc_s
        self.num_ct_p = num_ct_p
        self.num_ct_s = num_ct_s
        self.start_rms = start_rms
        self.final_rms = final_rms
        self.location_change = location_change
        self.depth_change = depth_change
        self.time_change = time_change

    def to_dict(self):
        return dict(self.__dict__)

    def __repr__(self):
        return "RelocInfo(%s)" % ", ".join(
            "%s=%s" % item for item in sorted(self.__dict__.items()))


class Event(object):
    """
    An earthquake hypocenter.

    :param id: Numeric id, unique within the owning catalog only.
    :param depth: Depth in km.
    :param rms: Travel time residual summary in seconds.
    """
    def __init__(self, id, time, latitude, longitude, depth, magnitude=0.0,
                 horizontal_error=0.0, depth_error=0.0, rms=0.0, extra=None,
                 reloc_info=None):
        self.id = int(id)
        self.time = UTCDateTime(time)
        self.latitude = float(latitude)
        self.longitude = float(longitude)
        self.depth = float(depth)
        self.magnitude = float(magnitude)
        self.horizontal_error = float(horizontal_error)
        self.depth_error = float(depth_error)
        self.rms = float(rms)
        self.extra = dict(extra or {})
        self.reloc_info = reloc_info

    @property
    def key(self):
        return (_time_key(self.time), self.latitude, self.longitude,
                self.depth, self.magnitude)

    @property
    def is_relocated(self):
        return self.reloc_info is not None

    def replace(self, **kwargs):
        values = dict(self.__dict__)
        values.update(kwargs)
        return Event(**values)

    def __eq__(self, other):
        if not isinstance(other, Event):
            return NotImplemented
        return self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        return "Event(%i %s %.5f %.5f %.3fkm M%.2f)" % (
            self.id, self.time, self.latitude, self.longitude, self.depth,
            self.magnitude)


class Phase(object):
    """
    A phase pick.

    :param type: Phase type tag, e.g. "P", "Pg", "S".
    :param weight: Pick quality weight in [0, 1].
    :param source: "catalog" for real picks, "theoretical" for picks
        synthesized from travel times and "xcorr" for theoretical picks
        re-timed by cross-correlation.
    """
    SOURCES = ("catalog", "theoretical", "xcorr")

    def __init__(self, event_id, station_id, time, type, weight=1.0,
                 network_code="", station_code="", location_code="",
                 channel_code="", is_manual=True, source="catalog",
                 extra=None):
        if source not in self.SOURCES:
            raise CatalogError("Unknown phase source '%s'" % source)
        self.event_id = int(event_id)
        self.station_id = station_id
        self.time = UTCDateTime(time)
        self.type = type
        self.weight = float(weight)
        self.network_code = network_code
        self.station_code = station_code
        self.location_code = location_code
        self.channel_code = channel_code
        self.is_manual = bool(is_manual)
        self.source = source
        self.extra = dict(extra or {})

    @property
    def key(self):
        return (_time_key(self.time), self.type, self.network_code,
                self.station_code)

    @property
    def is_theoretical(self):
        return self.source == "theoretical"

    def replace(self, **kwargs):
        values = dict(self.__dict__)
        values.update(kwargs)
        return Phase(**values)

    def __eq__(self, other):
        if not isinstance(other, Phase):
            return NotImplemented
        return self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        return "Phase(ev=%i %s %s %s w=%.2f %s)" % (
            self.event_id, self.station_id, self.type, self.time,
            self.weight, self.source)


class Catalog(object):
    """
    Immutable snapshot of stations, events and phases.

    :param stations: Dict station id -> Station or an iterable of Stations.
    :param events: Dict event id -> Event or an iterable of Events.
    :param phases: Dict event id -> list of Phases or an iterable of Phases.
    """
    def __init__(self, stations=None, events=None, phases=None):
        if isinstance(stations, Mapping):
            stations = stations.values()
        if isinstance(events, Mapping):
            events = events.values()
        if isinstance(phases, Mapping):
            phases = [ph for phase_list in phases.values() for ph in phase_list]
        self._stations = {st.id: st for st in (stations or [])}
        self._events = {ev.id: ev for ev in (events or [])}
        grouped = {}
        for phase in phases or []:
            if phase.event_id not in self._events:
                msg = "Phase %s references unknown event %i" % (
                    phase, phase.event_id)
                raise CatalogError(msg)
            if phase.station_id not in self._stations:
                msg = "Phase %s references unknown station %s" % (
                    phase, phase.station_id)
                raise CatalogError(msg)
            grouped.setdefault(phase.event_id, []).append(phase)
        self._phases = {
            event_id: tuple(sorted(phase_list, key=lambda ph: ph.time))
            for event_id, phase_list in grouped.items()
        }

    @property
    def stations(self):
        return MappingProxyType(self._stations)

    @property
    def events(self):
        return MappingProxyType(self._events)

    @property
    def phases(self):
        return MappingProxyType(self._phases)

    def get_phases(self, event_id):
        return self._phases.get(event_id, ())

    def all_phases(self):
        for phase_list in self._phases.values():
            for phase in phase_list:
                yield phase

    def __len__(self):
        return len(self._events)

    def __iter__(self):
        return iter(sorted(self._events.values(), key=lambda ev: ev.time))

    def __repr__(self):
        return "Catalog(%i stations, %i events, %i phases)" % (
            len(self._stations), len(self._events),
            sum(len(_i) for _i in self._phases.values()))

    def find_station(self, network_code, station_code):
        for station in self._stations.values():
            if station.key == (network_code, station_code):
                return station
        return None

    def find_event(self, event):
        """
        Returns the id of the event value-equal to `event` or None.
        """
        for candidate in self._events.values():
            if candidate == event:
                return candidate.id
        return None

    def next_event_id(self):
        return max(self._events, default=0) + 1

    def extract_events(self, event_ids):
        """
        New catalog with the given events (ids are kept), their phases and the
        stations the phases reference.
        """
        event_ids = set(event_ids)
        events = [ev for ev_id, ev in self._events.items() if ev_id in event_ids]
        phases = [ph for ev_id in event_ids for ph in self.get_phases(ev_id)]
        station_ids = {ph.station_id for ph in phases}
        stations = [st for st_id, st in self._stations.items()
                    if st_id in station_ids]
        return Catalog(stations, events, phases)

    def remove_events(self, event_ids):
        event_ids = set(event_ids)
        return self.extract_events(
            [ev_id for ev_id in self._events if ev_id not in event_ids])

    def replace_events(self, events):
        """
        New catalog where the events with matching ids are replaced by the
        given ones. Phases are kept.
        """
        new_events = dict(self._events)
        for event in events:
            if event.id not in new_events:
                raise CatalogError("Event %i not in catalog" % event.id)
            new_events[event.id] = event
        return Catalog(self._stations, new_events, self._phases)

    def replace_event_phases(self, event_id, phases):
        new_phases = dict(self._phases)
        new_phases[event_id] = list(phases)
        return Catalog(self._stations, self._events, new_phases)

    def add_stations(self, stations):
        new_stations = dict(self._stations)
        for station in stations:
            new_stations.setdefault(station.id, station)
        return Catalog(new_stations, self._events, self._phases)

    def merge(self, other):
        return self.merge_with_map(other)[0]

    def merge_with_map(self, other):
        """
        Merge `other` into a copy of this catalog. Entities of `other` that
        have a value-equal counterpart here are not added again. New events
        get new ids.

        :return: Tuple of (merged catalog, dict mapping the event ids of
            `other` to the event ids in the merged catalog).
        """
        stations = dict(self._stations)
        station_index = {st.key: st for st in self._stations.values()}
        station_map = {}
        for station in other.stations.values():
            existing = station_index.get(station.key)
            if existing is None:
                if station.id in stations:
                    msg = "Station id %s is used by two different stations" % (
                        station.id)
                    raise CatalogError(msg)
                stations[station.id] = station
                existing = station
            station_map[station.id] = existing.id

        events = dict(self._events)
        event_index = {ev.key: ev.id for ev in self._events.values()}
        event_map = {}
        next_id = self.next_event_id()
        for event in sorted(other.events.values(), key=lambda ev: ev.id):
            existing_id = event_index.get(event.key)
            if existing_id is None:
                existing_id = next_id
                next_id += 1
                events[existing_id] = event.replace(id=existing_id)
            event_map[event.id] = existing_id

        phases = {ev_id: list(phs) for ev_id, phs in self._phases.items()}
        for event_id, phase_list in other.phases.items():
            new_event_id = event_map[event_id]
            current = phases.setdefault(new_event_id, [])
            known = set(current)
            for phase in phase_list:
                if phase in known:
                    continue
                phase = phase.replace(
                    event_id=new_event_id,
                    station_id=station_map[phase.station_id])
                current.append(phase)
                known.add(phase)
        return Catalog(stations, events, phases), event_map

    def _phase_sets(self):
        return {
            event: frozenset(self.get_phases(event_id))
            for event_id, event in self._events.items()
        }

    def __eq__(self, other):
        if not isinstance(other, Catalog):
            return NotImplemented
        return (
            set(self._stations.values()) == set(other.stations.values())
            and set(self._events.values()) == set(other.events.values())
            and self._phase_sets() == other._phase_sets()
        )

    __hash__ = None

"""
Assembly of the solver observations of a reference event and its neighbours.
"""
import logging
import threading

from .exceptions import ModelLookupError

logger = logging.getLogger(__name__)


class ObservationParams(object):
    """
    Travel times and ray geometry per (event id, station id, phase family),
    computed at most once per key even when requested concurrently.

    An instance must only be used for one solver invocation since the
    entries depend on the current event locations.

    :param ttt: The TravelTimeTable.
    :param phase_family: Function mapping a phase type to "P", "S" or None.
    """
    def __init__(self, ttt, phase_family):
        self._ttt = ttt
        self._phase_family = phase_family
        self._entries = {}
        self._key_locks = {}
        self._lock = threading.Lock()
        self.num_computations = 0

    def add(self, catalog, event_id, station_id, phase_type):
        """
        :return: Tuple (travel_time, azimuth, takeoff_angle, velocity).
        :raises ModelLookupError: The travel time table has no answer, the
            failure is remembered as well.
        """
        key = (event_id, station_id, self._phase_family(phase_type))
        with self._lock:
            key_lock = self._key_locks.setdefault(key, threading.Lock())
        with key_lock:
            if key not in self._entries:
                event = catalog.events[event_id]
                station = catalog.stations[station_id]
                with self._lock:
                    self.num_computations += 1
                try:
                    value = self._ttt.compute(phase_type, event.latitude,
                                              event.longitude, event.depth,
                                              station)
                except ModelLookupError as exc:
                    value = exc
                self._entries[key] = value
            value = self._entries[key]
        if isinstance(value, ModelLookupError):
            raise value
        return value

    def get(self, event_id, station_id, phase_family):
        value = self._entries.get((event_id, station_id, phase_family))
        if isinstance(value, ModelLookupError):
            return None
        return value

    def __len__(self):
        return len(self._entries)


def _best_phases(catalog, event_id, phase_family):
    best = {}
    for phase in catalog.get_phases(event_id):
        family = phase_family(phase.type)
        if family is None:
            continue
        key = (phase.station_id, family)
        if key not in best or best[key].weight < phase.weight:
            best[key] = phase
    return best


def _is_differential_pair(ref_phase, phase, xcorr_result):
    # synthetic phases need a correlation
    return xcorr_result is not None or (
        ref_phase.source == "catalog" and phase.source == "catalog")


def find_paired_phases(neighbour_cats, xcorr_cache, phase_family):
    """
    Phases taking part in at least one differential time of the neighbour
    catalogs.

    :param neighbour_cats: Dict reference event id -> neighbour Catalog.
    :return: Set of (event id, station id, phase family).
    """
    paired = set()
    for ref_id, catalog in neighbour_cats.items():
        ref_phases = _best_phases(catalog, ref_id, phase_family)
        for event_id in catalog.events:
            if event_id == ref_id:
                continue
            phases = _best_phases(catalog, event_id, phase_family)
            for (station_id, family), phase in phases.items():
                ref_phase = ref_phases.get((station_id, family))
                if ref_phase is None:
                    continue
                result = None
                if xcorr_cache is not None:
                    result = xcorr_cache.get(ref_id, event_id, station_id,
                                             family)
                if _is_differential_pair(ref_phase, phase, result):
                    paired.add((ref_id, station_id, family))
                    paired.add((event_id, station_id, family))
    return paired


def add_observations(solver, catalog, ref_event_id, fixed_neighbours,
                     xcorr_cache, params, config, paired_phases=None):
    """
    Add the observations between the reference event and its neighbours to
    the solver.

    For every phase pair with an accepted cross-correlation, a differential
    time corrected by the lag and weighted by the coefficient is added.
    Otherwise real picks give a catalog differential time with a lower
    weight. Reference phases without any pairing give an absolute travel
    time observation.

    :param solver: The Solver.
    :param catalog: Neighbour catalog with the reference event.
    :param fixed_neighbours: If True the neighbours' locations are not
        changed by the solver.
    :param xcorr_cache: XCorrCache or None to use catalog times only.
    :param params: The ObservationParams of this solver invocation.
    :param config: The Config.
    :param paired_phases: Phases paired in other neighbour catalogs solved
        together with this one (see find_paired_phases). They do not give
        absolute observations.
    :return: Dict with the number of observations by kind.
    """
    solver_config = config["solver"]
    phase_family = config.phase_family
    stats = {"num_cc_p": 0, "num_cc_s": 0, "num_ct_p": 0, "num_ct_s": 0,
             "num_abs": 0}
    ref_event = catalog.events[ref_event_id]
    neighbours = {ev_id: _best_phases(catalog, ev_id, phase_family)
                  for ev_id in catalog.events if ev_id != ref_event_id}

    def register(event_id, phase, family):
        entry = params.add(catalog, event_id, phase.station_id, phase.type)
        free = event_id == ref_event_id or not fixed_neighbours
        solver.add_observation_params(event_id, phase.station_id, family,
                                      *entry, compute_changes=free)

    for (station_id, family), ref_phase in sorted(
            _best_phases(catalog, ref_event_id, phase_family).items()):
        try:
            register(ref_event_id, ref_phase, family)
        except ModelLookupError as exc:
            logger.debug("Skipping %s: %s", ref_phase, exc)
            continue
        ref_travel_time = ref_phase.time - ref_event.time

        paired = False
        for event_id, phases in sorted(neighbours.items()):
            peer = phases.get((station_id, family))
            if peer is None:
                continue
            event = catalog.events[event_id]
            observed = ref_travel_time - (peer.time - event.time)

            result = None
            if xcorr_cache is not None:
                result = xcorr_cache.get(ref_event_id, event_id, station_id,
                                         family)
            if not _is_differential_pair(ref_phase, peer, result):
                continue
            if result is not None:
                observed += result.lag
                weight = result.coefficient
                stat = "num_cc_" + family.lower()
            else:
                weight = (ref_phase.weight + peer.weight) / 2.0 * \
                    solver_config["catalog_obs_weight"]
                stat = "num_ct_" + family.lower()

            try:
                register(event_id, peer, family)
            except ModelLookupError as exc:
                logger.debug("Skipping %s: %s", peer, exc)
                continue
            solver.add_observation(ref_event_id, event_id, station_id, family,
                                   observed, weight,
                                   is_xcorr=result is not None)
            stats[stat] += 1
            paired = True

        if paired_phases is not None and \
                (ref_event_id, station_id, family) in paired_phases:
            paired = True
        if not paired and ref_phase.source == "catalog":
            solver.add_observation(
                ref_event_id, None, station_id, family, ref_travel_time,
                ref_phase.weight * solver_config["absolute_obs_weight"])
            stats["num_abs"] += 1
    return stats

"""
Selection of the neighbouring events of a reference event.

From Waldhauser 2009: to assure a spatially homogeneous subsampling, reference
events are selected within each of several concentric, vertically elongated
ellipsoidal layers of increasing thickness. Each layer has 8 quadrants and the
closest events of every layer/quadrant cell are picked in turn.
"""
import logging

from .exceptions import InsufficientNeighbors, InsufficientObservations
from .geo import compute_distance, ellipsoid_layers, local_offset
from .geo import Ellipsoid

logger = logging.getLogger(__name__)


def default_phase_family(phase_type):
    if phase_type and phase_type[0].upper() in ("P", "S"):
        return phase_type[0].upper()
    return None


def _usable_phases(catalog, event, phase_family, min_weight, min_es_dist,
                   max_es_dist):
    """
    Best phase (highest weight) of an event per (station key, phase family)
    passing the weight and event-station distance filters. Values are tuples
    (phase, station, event-station distance).
    """
    usable = {}
    for phase in catalog.get_phases(event.id):
        family = phase_family(phase.type)
        if family is None or phase.weight < min_weight:
            continue
        station = catalog.stations[phase.station_id]
        distance = compute_distance(
            event.latitude, event.longitude, event.depth,
            station.latitude, station.longitude, -station.elevation / 1000.0,
        )[0]
        if distance < min_es_dist:
            continue
        if max_es_dist > 0 and distance > max_es_dist:
            continue
        key = (station.key, family)
        if key not in usable or usable[key][0].weight < phase.weight:
            usable[key] = (phase, station, distance)
    return usable


def select_neighbouring_events(catalog, ref_event, ref_event_catalog,
                               phase_family=default_phase_family,
                               min_weight=0.0, min_es_dist=0.0,
                               max_es_dist=-1, min_es_to_ie_ratio=0.0,
                               min_dt_per_evt=1, max_dt_per_evt=-1,
                               min_num_neigh=1, max_num_neigh=-1,
                               num_ellipsoids=5, max_ellipsoid_size=10.0,
                               keep_unmatched=False):
    """
    Select the neighbours of `ref_event` among the events of `catalog`.

    :param catalog: Catalog where the neighbours are searched.
    :param ref_event: The reference event.
    :param ref_event_catalog: Catalog containing `ref_event` and its phases.
        It can be `catalog` itself.
    :param phase_family: Function mapping a phase type to "P", "S" or None.
    :param keep_unmatched: If True events failing the `min_dt_per_evt`
        filter are still candidates and all their usable phases are kept,
        otherwise neighbours only keep the phases matching a phase of the
        reference event.
    :return: A Catalog with the reference event and its neighbours. The
        neighbours keep their ids. The reference event keeps its id when
        `ref_event_catalog` is `catalog`, otherwise it gets a new one (use
        `find_event` to retrieve it).
    """
    ref_usable = _usable_phases(ref_event_catalog, ref_event, phase_family,
                                min_weight, min_es_dist, max_es_dist)
    if not ref_usable:
        msg = "Event %s has no usable phases" % ref_event
        raise InsufficientObservations(msg)

    same_catalog = ref_event_catalog is catalog

    # Find the candidates and the phases they share with the reference event
    candidates = []
    for event in catalog.events.values():
        if same_catalog and event.id == ref_event.id:
            continue
        if not same_catalog and event == ref_event:
            continue
        inter_event_distance = compute_distance(
            ref_event.latitude, ref_event.longitude, ref_event.depth,
            event.latitude, event.longitude, event.depth)[0]
        usable = _usable_phases(catalog, event, phase_family, min_weight,
                                min_es_dist, max_es_dist)
        matched = []
        unmatched = []
        for key, (phase, station, distance) in usable.items():
            # epicenter-station to inter-event distance ratio
            if inter_event_distance > 0 and \
                    distance / inter_event_distance < min_es_to_ie_ratio:
                continue
            if key in ref_usable:
                matched.append((distance, phase))
            else:
                unmatched.append((distance, phase))
        if len(matched) < min_dt_per_evt and not keep_unmatched:
            continue
        if not matched and not unmatched:
            continue
        # Keep the closest stations when there are too many pairs
        matched.sort(key=lambda item: item[0])
        if max_dt_per_evt > 0:
            matched = matched[:max_dt_per_evt]
        phases = [phase for _, phase in matched]
        if keep_unmatched:
            phases.extend(phase for _, phase in unmatched)
        candidates.append((inter_event_distance, event, phases))

    candidates.sort(key=lambda item: (item[0], item[1].id))
    selected = _select_from_ellipsoids(ref_event, candidates, num_ellipsoids,
                                       max_ellipsoid_size, max_num_neigh)

    if len(selected) < min_num_neigh:
        msg = "Event %s has %i neighbours (min %i required)" % (
            ref_event, len(selected), min_num_neigh)
        raise InsufficientNeighbors(msg)

    logger.debug("Event %s: %i candidates, %i neighbours selected",
                 ref_event, len(candidates), len(selected))

    ref_phases = [phase for phase, _, _ in ref_usable.values()]
    if same_catalog:
        phases = list(ref_phases)
        for _, event, event_phases in selected:
            phases.extend(event_phases)
        station_ids = {phase.station_id for phase in phases}
        stations = [catalog.stations[st_id] for st_id in station_ids]
        events = [ref_event] + [event for _, event, _ in selected]
        return type(catalog)(stations, events, phases)

    neighbour_phases = [ph for _, _, event_phases in selected
                        for ph in event_phases]
    station_ids = {phase.station_id for phase in neighbour_phases}
    neighbour_cat = type(catalog)(
        [catalog.stations[st_id] for st_id in station_ids],
        [event for _, event, _ in selected],
        neighbour_phases,
    )
    ref_station_ids = {phase.station_id for phase in ref_phases}
    ref_cat = type(catalog)(
        [ref_event_catalog.stations[st_id] for st_id in ref_station_ids],
        [ref_event],
        ref_phases,
    )
    return neighbour_cat.merge(ref_cat)


def _select_from_ellipsoids(ref_event, candidates, num_ellipsoids,
                            max_ellipsoid_size, max_num_neigh):
    """
    Pick candidates (sorted by distance) in turn from every ellipsoid layer
    and quadrant, from the innermost layer outwards, until there are no
    candidates left or max_num_neigh is reached.
    """
    if num_ellipsoids <= 0 or max_ellipsoid_size <= 0:
        if max_num_neigh > 0:
            return candidates[:max_num_neigh]
        return list(candidates)

    layers = ellipsoid_layers(num_ellipsoids, max_ellipsoid_size,
                              ref_event.latitude, ref_event.longitude,
                              ref_event.depth)
    # Assign every candidate to its (layer, quadrant) cell
    cells = {}
    for candidate in candidates:
        event = candidate[1]
        offset = local_offset(ref_event.latitude, ref_event.longitude,
                              ref_event.depth, event.latitude,
                              event.longitude, event.depth)
        for layer_num, ellipsoid in enumerate(layers):
            if ellipsoid.is_offset_inside(*offset):
                quadrant = Ellipsoid.offset_quadrant(*offset)
                cells.setdefault((layer_num, quadrant), []).append(candidate)
                break

    selected = []
    work_to_do = True
    while work_to_do:
        work_to_do = False
        for layer_num in range(num_ellipsoids):
            for quadrant in range(1, 9):
                cell = cells.get((layer_num, quadrant))
                if not cell:
                    continue
                selected.append(cell.pop(0))
                work_to_do = True
                if 0 < max_num_neigh <= len(selected):
                    return selected
    return selected


def select_neighbouring_events_catalog(catalog,
                                       phase_family=default_phase_family,
                                       keep_unmatched=False, **params):
    """
    Select the neighbours of every event of a catalog.

    Events without enough neighbours are removed from the catalog and the
    selection is repeated, since their removal can leave other events without
    enough neighbours. Event pairs appearing in both directions are kept only
    in the neighbour catalog of the event with the smaller id.

    :param params: Clustering parameters, see select_neighbouring_events.
    :return: Tuple (dict event id -> neighbour Catalog,
        dict excluded event id -> exception explaining the exclusion).
    """
    excluded = {}
    while True:
        work_catalog = catalog.remove_events(excluded) if excluded else catalog
        neighbour_cats = {}
        new_exclusions = False
        for event in work_catalog.events.values():
            try:
                neighbour_cats[event.id] = select_neighbouring_events(
                    work_catalog, event, work_catalog,
                    phase_family=phase_family, keep_unmatched=keep_unmatched,
                    **params)
            except (InsufficientNeighbors, InsufficientObservations) as exc:
                logger.info("Excluding event %s: %s", event, exc)
                excluded[event.id] = exc
                new_exclusions = True
        if not new_exclusions:
            break

    existing_pairs = set()
    for event_id in sorted(neighbour_cats):
        neighbour_ids = [ev_id for ev_id in neighbour_cats[event_id].events
                         if ev_id != event_id]
        duplicated = [ev_id for ev_id in neighbour_ids
                      if (ev_id, event_id) in existing_pairs]
        existing_pairs.update((event_id, ev_id) for ev_id in neighbour_ids)
        if duplicated:
            neighbour_cats[event_id] = \
                neighbour_cats[event_id].remove_events(duplicated)

    logger.info("Neighbour selection: %i events with neighbours, %i excluded",
                len(neighbour_cats), len(excluded))
    return neighbour_cats, excluded

"""
Theoretical phases for the stations where the neighbours of an event have a
pick but the event itself has none.

The pick time of a theoretical phase is the predicted travel time corrected by
the average residual (observed minus predicted travel time) of the neighbours
at that station. Cross-correlation with the neighbours' waveforms then either
re-times it (fix_phases) or drops it.
"""
import logging

import numpy as np

from .catalog import Phase
from .exceptions import ModelLookupError

logger = logging.getLogger(__name__)


def find_missing_event_phases(catalog, ref_event_id, phase_family):
    """
    :return: Dict (station id, phase family) -> list of peer Phases (real
        picks of the other events) for every station/phase the reference
        event lacks.
    """
    existing = set()
    for phase in catalog.get_phases(ref_event_id):
        existing.add((phase.station_id, phase_family(phase.type)))

    missing = {}
    for event_id in catalog.events:
        if event_id == ref_event_id:
            continue
        for phase in catalog.get_phases(event_id):
            family = phase_family(phase.type)
            if family is None or phase.source != "catalog":
                continue
            key = (phase.station_id, family)
            if key in existing:
                continue
            missing.setdefault(key, []).append(phase)
    return missing


def create_theoretical_phase(catalog, ref_event_id, peers, ttt):
    """
    Theoretical phase of the reference event at the station of the peers.

    :raises ModelLookupError: If no travel time can be predicted.
    """
    ref_event = catalog.events[ref_event_id]
    station = catalog.stations[peers[0].station_id]

    residuals = []
    for peer in peers:
        peer_event = catalog.events[peer.event_id]
        try:
            predicted = ttt.predict(peer.type, peer_event.latitude,
                                    peer_event.longitude, peer_event.depth,
                                    station)
        except ModelLookupError:
            continue
        residuals.append((peer.time - peer_event.time) - predicted)
    if not residuals:
        raise ModelLookupError("No travel time for the peers at %s" %
                               station.id)

    best = max(peers, key=lambda ph: ph.weight)
    travel_time = ttt.predict(best.type, ref_event.latitude,
                              ref_event.longitude, ref_event.depth, station)
    return Phase(
        event_id=ref_event_id,
        station_id=station.id,
        time=ref_event.time + travel_time + float(np.mean(residuals)),
        type=best.type,
        weight=float(np.mean([ph.weight for ph in peers])),
        network_code=station.network_code,
        station_code=station.station_code,
        location_code=best.location_code,
        channel_code=best.channel_code,
        is_manual=False,
        source="theoretical",
    )


def add_missing_event_phases(catalog, ref_event_id, ttt, phase_family):
    """
    New catalog where the reference event has a theoretical phase at every
    station/phase where one of the other events has a real pick and the
    reference event has none.
    """
    missing = find_missing_event_phases(catalog, ref_event_id, phase_family)
    new_phases = []
    for (station_id, family), peers in sorted(missing.items()):
        try:
            new_phases.append(
                create_theoretical_phase(catalog, ref_event_id, peers, ttt))
        except ModelLookupError as exc:
            logger.debug("No theoretical %s phase at %s: %s", family,
                         station_id, exc)
    if not new_phases:
        return catalog
    logger.debug("Event %i: added %i theoretical phases", ref_event_id,
                 len(new_phases))
    phases = list(catalog.get_phases(ref_event_id)) + new_phases
    return catalog.replace_event_phases(ref_event_id, phases)


def fix_phases(catalog, ref_event_id, xcorr_cache, phase_family):
    """
    Re-time the theoretical phases of the reference event using the
    cross-correlation with the real picks of the other events.

    The new pick is the coefficient weighted mean of the arrivals implied by
    every correlated real pick. The phase becomes an "xcorr" phase weighted by
    the mean coefficient, and the cache lags of the phase are shifted
    accordingly. Theoretical phases without any accepted correlation are
    removed.

    :return: The new catalog. xcorr_cache is updated in place.
    """
    phases = []
    num_fixed = num_dropped = 0
    for phase in catalog.get_phases(ref_event_id):
        if not phase.is_theoretical:
            phases.append(phase)
            continue
        family = phase_family(phase.type)
        lags = []
        weights = []
        for event_id, result in xcorr_cache.entries_for(
                ref_event_id, phase.station_id, family):
            if event_id not in catalog.events:
                continue
            for peer in catalog.get_phases(event_id):
                if peer.station_id != phase.station_id or \
                        phase_family(peer.type) != family or \
                        peer.source != "catalog":
                    continue
                lags.append(result.lag)
                weights.append(result.coefficient)
                break
        if not lags:
            num_dropped += 1
            continue
        shift = float(np.average(lags, weights=weights))
        xcorr_cache.shift_event(ref_event_id, phase.station_id, family, shift)
        phases.append(phase.replace(time=phase.time + shift, source="xcorr",
                                    weight=float(np.mean(weights))))
        num_fixed += 1
    logger.debug("Event %i: %i theoretical phases fixed, %i dropped",
                 ref_event_id, num_fixed, num_dropped)
    return catalog.replace_event_phases(ref_event_id, phases)

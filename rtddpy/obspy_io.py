"""
Conversion between obspy event/inventory objects (QuakeML, StationXML) and
Catalog.
"""
import copy
import logging

from obspy.core.event import Arrival, Comment, Magnitude, Origin, Pick
from obspy.core.event import Catalog as ObspyCatalog
from obspy.core.event import Event as ObspyEvent
from obspy.core.event import OriginQuality, WaveformStreamID

from .catalog import Catalog, Event, Phase, Station
from .exceptions import CatalogError

logger = logging.getLogger(__name__)


def stations_from_inventory(inventory):
    stations = {}
    for network in inventory:
        for station in network:
            station_id = Station.make_id(network.code, station.code)
            if station_id in stations:
                continue
            stations[station_id] = Station(
                id=station_id,
                latitude=station.latitude,
                longitude=station.longitude,
                elevation=station.elevation or 0.0,
                network_code=network.code,
                station_code=station.code,
            )
    return stations


def _uncertainty(errors, scale=1.0):
    if errors is None or errors.uncertainty is None:
        return 0.0
    return errors.uncertainty * scale


def catalog_from_obspy(events, inventory):
    """
    Build a Catalog from an obspy event Catalog and an Inventory.

    The preferred origin (or the first one) and the preferred magnitude of
    every event are used. Picks get the phase hint of the pick or of the
    associated arrival and the arrival time weight (1.0 if not available).
    Picks at stations missing from the inventory are discarded.

    :param events: obspy.core.event.Catalog, e.g. from read_events.
    :param inventory: obspy Inventory, e.g. from read_inventory.
    """
    stations = stations_from_inventory(inventory)
    new_events = []
    phases = []
    discarded_picks = 0
    for event_id, event in enumerate(events, 1):
        origin = event.preferred_origin()
        if origin is None and len(event.origins) > 0:
            # Fallback to first available origin if no preferred origin
            origin = event.origins[0]
        elif origin is None:
            raise CatalogError("No origin found for event %s" %
                               event.resource_id)
        if origin.time is None or origin.latitude is None or \
                origin.longitude is None or origin.depth is None:
            raise CatalogError("Incomplete origin for event %s" %
                               event.resource_id)

        magnitude = event.preferred_magnitude()
        if magnitude is None and len(event.magnitudes) > 0:
            magnitude = event.magnitudes[0]
        horizontal_error = 0.0
        if origin.origin_uncertainty is not None and \
                origin.origin_uncertainty.horizontal_uncertainty is not None:
            horizontal_error = \
                origin.origin_uncertainty.horizontal_uncertainty / 1000.0
        rms = 0.0
        if origin.quality is not None and \
                origin.quality.standard_error is not None:
            rms = origin.quality.standard_error
        new_events.append(Event(
            id=event_id,
            time=origin.time,
            latitude=origin.latitude,
            longitude=origin.longitude,
            # QuakeML depth is in meters. Convert to km.
            depth=origin.depth / 1000.0,
            magnitude=magnitude.mag if magnitude is not None else 0.0,
            horizontal_error=horizontal_error,
            depth_error=_uncertainty(origin.depth_errors, 1.0 / 1000.0),
            rms=rms,
            extra={"resource_id": str(event.resource_id),
                   "origin_id": str(origin.resource_id)},
        ))

        arrivals = {str(arrival.pick_id): arrival
                    for arrival in origin.arrivals if arrival.pick_id}
        for pick in event.picks:
            arrival = arrivals.get(str(pick.resource_id))
            phase_type = pick.phase_hint
            if not phase_type and arrival is not None:
                phase_type = arrival.phase
            waveform_id = pick.waveform_id
            if not phase_type or waveform_id is None or \
                    not waveform_id.station_code:
                discarded_picks += 1
                continue
            station_id = Station.make_id(waveform_id.network_code or "",
                                         waveform_id.station_code)
            if station_id not in stations:
                discarded_picks += 1
                continue
            weight = 1.0
            if arrival is not None and arrival.time_weight is not None:
                weight = min(max(arrival.time_weight, 0.0), 1.0)
            phases.append(Phase(
                event_id=event_id,
                station_id=station_id,
                time=pick.time,
                type=phase_type,
                weight=weight,
                network_code=waveform_id.network_code or "",
                station_code=waveform_id.station_code,
                location_code=waveform_id.location_code or "",
                channel_code=waveform_id.channel_code or "",
                is_manual=pick.evaluation_mode != "automatic",
                extra={"pick_id": str(pick.resource_id)},
            ))
    logger.info("%i picks discarded because of unavailable station "
                "information.", discarded_picks)
    return Catalog(stations, new_events, phases)


def _relocated_origin(event):
    origin = Origin()
    origin.time = event.time
    origin.latitude = event.latitude
    origin.longitude = event.longitude
    # Convert back to meters.
    origin.depth = event.depth * 1000.0
    origin.quality = OriginQuality(standard_error=event.rms)
    if event.reloc_info is not None:
        origin.method_id = "HypoDD"
        # Put the cluster id in the comments to be able to use it later on.
        origin.comments.append(
            Comment(text="HypoDD cluster id: %i" % event.reloc_info.cluster_id)
        )
    return origin


def catalog_to_obspy(catalog, events=None):
    """
    Convert a Catalog to an obspy event Catalog.

    :param events: The obspy Catalog the catalog was built from with
        catalog_from_obspy. If given, a copy of it is returned where every
        relocated event gets its relocated location as an additional origin.
        Otherwise new obspy events with picks and arrivals are created.
    """
    if events is not None:
        output = copy.deepcopy(events)
        by_id = {str(event.resource_id): event for event in output}
        for event in catalog.events.values():
            if event.reloc_info is None:
                continue
            obspy_event = by_id.get(event.extra.get("resource_id"))
            if obspy_event is None:
                logger.warning("Event %s not in the obspy catalog", event)
                continue
            obspy_event.origins.append(_relocated_origin(event))
        return output

    output = ObspyCatalog()
    for event in catalog:
        obspy_event = ObspyEvent()
        origin = _relocated_origin(event)
        for phase in catalog.get_phases(event.id):
            pick = Pick(
                time=phase.time,
                phase_hint=phase.type,
                waveform_id=WaveformStreamID(
                    network_code=phase.network_code,
                    station_code=phase.station_code,
                    location_code=phase.location_code,
                    channel_code=phase.channel_code,
                ),
                evaluation_mode="manual" if phase.is_manual else "automatic",
            )
            obspy_event.picks.append(pick)
            origin.arrivals.append(Arrival(
                pick_id=pick.resource_id, phase=phase.type,
                time_weight=phase.weight))
        obspy_event.origins.append(origin)
        obspy_event.preferred_origin_id = origin.resource_id
        magnitude = Magnitude(mag=event.magnitude,
                              origin_id=origin.resource_id)
        obspy_event.magnitudes.append(magnitude)
        obspy_event.preferred_magnitude_id = magnitude.resource_id
        output.append(obspy_event)
    return output

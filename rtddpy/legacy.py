"""
Input and output files of the original hypoDD programs.

The writers produce station.dat, phase.dat (ph2dt input), dt.ct and dt.cc
(hypoDD input) from catalogs, and read_reloc_file parses hypoDD.reloc. They
make it possible to compare the results with, or to feed, the Fortran
programs. Event ids are the catalog event ids.
"""
import logging

from obspy import UTCDateTime

from .catalog import RelocInfo
from .neighbours import default_phase_family

logger = logging.getLogger(__name__)


def write_station_dat(catalog, filename):
    """
    The format is one station per line and:
        station_label latitude longitude elevation_in_meters
    """
    station_strings = []
    for station in sorted(catalog.stations.values(), key=lambda s: s.id):
        station_strings.append(
            "%-7s %9.5f %10.5f %5i"
            % (
                station.id,
                station.latitude,
                station.longitude,
                station.elevation,
            )
        )
    with open(filename, "w") as open_file:
        open_file.write("\n".join(station_strings))
    logger.info("Created %s", filename)


def _event_header(event):
    string = (
        "# {year} {month} {day} {hour} {minute} "
        + "{second:.6f} {latitude:.6f} {longitude:.6f} "
        + "{depth:.4f} {magnitude:.6f} {horizontal_error:.6f} "
        + "{depth_error:.6f} {travel_time_residual:.6f} {event_id}"
    )
    return string.format(
        year=event.time.year,
        month=event.time.month,
        day=event.time.day,
        hour=event.time.hour,
        minute=event.time.minute,
        # Seconds + microseconds
        second=float(event.time.second) + (event.time.microsecond / 1e6),
        latitude=event.latitude,
        longitude=event.longitude,
        depth=event.depth,
        magnitude=event.magnitude,
        horizontal_error=event.horizontal_error,
        depth_error=event.depth_error,
        travel_time_residual=event.rms,
        event_id=event.id,
    )


def write_phase_dat(catalog, filename, phase_family=default_phase_family):
    """
    Write the phase.dat input file for ph2dt. Only P and S phases are
    supported by hypoDD, the phase type is written as its family.
    """
    event_strings = []
    for event in catalog:
        event_strings.append(_event_header(event))
        for phase in catalog.get_phases(event.id):
            family = phase_family(phase.type)
            if family is None:
                continue
            travel_time = phase.time - event.time
            # Simple check to assure no negative travel times are used.
            if travel_time < 0:
                logger.warning("Negative absolute travel time for %s, phase "
                               "will not be used.", phase)
                continue
            event_strings.append(
                "{station_id:7s} {travel_time:7.3f} {weight:5.2f} {phase}"
                .format(station_id=phase.station_id, travel_time=travel_time,
                        weight=phase.weight, phase=family))
    with open(filename, "w") as open_file:
        open_file.write("\n".join(event_strings))
    logger.info("Created %s", filename)


def _phase_pairs(catalog, ref_event_id, event_id, phase_family):
    ref_phases = {}
    for phase in catalog.get_phases(ref_event_id):
        family = phase_family(phase.type)
        if family is not None:
            ref_phases.setdefault((phase.station_id, family), phase)
    for phase in catalog.get_phases(event_id):
        family = phase_family(phase.type)
        key = (phase.station_id, family)
        if key in ref_phases:
            yield family, ref_phases.pop(key), phase


def write_dt_ct(neighbour_cats, filename, phase_family=default_phase_family):
    """
    Catalog differential times of every reference event with its neighbours.

    :param neighbour_cats: Dict reference event id -> neighbour Catalog.
    """
    lines = []
    for ref_id in sorted(neighbour_cats):
        catalog = neighbour_cats[ref_id]
        ref_event = catalog.events[ref_id]
        for event_id in sorted(catalog.events):
            if event_id == ref_id:
                continue
            event = catalog.events[event_id]
            pair_lines = [
                "%-7s %9.5f %9.5f %6.4f %s" % (
                    ref_phase.station_id, ref_phase.time - ref_event.time,
                    phase.time - event.time,
                    (ref_phase.weight + phase.weight) / 2.0, family)
                for family, ref_phase, phase in _phase_pairs(
                    catalog, ref_id, event_id, phase_family)
                if ref_phase.source == "catalog" and phase.source == "catalog"
            ]
            if pair_lines:
                lines.append("# %10i %10i" % (ref_id, event_id))
                lines.extend(pair_lines)
    with open(filename, "w") as open_file:
        open_file.write("\n".join(lines))
    logger.info("Created %s", filename)


def write_dt_cc(neighbour_cats, xcorr_cache, filename,
                phase_family=default_phase_family):
    """
    Cross-correlation differential times (catalog differential time
    corrected by the lag) weighted by the correlation coefficient.
    """
    lines = []
    for ref_id in sorted(neighbour_cats):
        catalog = neighbour_cats[ref_id]
        ref_event = catalog.events[ref_id]
        for event_id in sorted(catalog.events):
            if event_id == ref_id:
                continue
            event = catalog.events[event_id]
            pair_lines = []
            for family, ref_phase, phase in _phase_pairs(
                    catalog, ref_id, event_id, phase_family):
                result = xcorr_cache.get(ref_id, event_id,
                                         ref_phase.station_id, family)
                if result is None:
                    continue
                diff_time = (ref_phase.time - ref_event.time) - \
                    (phase.time - event.time) + result.lag
                pair_lines.append("%-7s %9.5f %6.4f %s" % (
                    ref_phase.station_id, diff_time, result.coefficient,
                    family))
            if pair_lines:
                lines.append("# %10i %10i %5.1f" % (ref_id, event_id, 0.0))
                lines.extend(pair_lines)
    with open(filename, "w") as open_file:
        open_file.write("\n".join(lines))
    logger.info("Created %s", filename)


def read_reloc_file(filename):
    """
    Parse a hypoDD.reloc file.

    :return: Dict event id -> dict with time, latitude, longitude, depth (km)
        and reloc_info (RelocInfo).
    """
    results = {}
    with open(filename, "r") as open_file:
        for line in open_file:
            if not line.strip():
                continue
            (
                event_id,
                lat,
                lon,
                depth,
                _,
                _,
                _,
                _,
                _,
                _,
                year,
                month,
                day,
                hour,
                minute,
                second,
                _,
                num_cc_p,
                num_cc_s,
                num_ct_p,
                num_ct_s,
                rms_cc,
                rms_ct,
                cluster_id,
            ) = line.split()
            sec = int(float(second))
            # Correct for a bug in hypoDD which can write 60 seconds...
            add_minute = False
            if sec >= 60:
                sec = 0
                add_minute = True
            time = UTCDateTime(
                int(year),
                int(month),
                int(day),
                int(hour),
                int(minute),
                sec,
                int(round((float(second) % 1.0) * 1e6)) % 1000000,
            )
            if add_minute is True:
                time = time + 60.0
            results[int(event_id)] = {
                "time": time,
                "latitude": float(lat),
                "longitude": float(lon),
                "depth": float(depth),
                "reloc_info": RelocInfo(
                    cluster_id=int(cluster_id),
                    num_cc_p=int(num_cc_p),
                    num_cc_s=int(num_cc_s),
                    num_ct_p=int(num_ct_p),
                    num_ct_s=int(num_ct_s),
                    final_rms=max(float(rms_cc), float(rms_ct)),
                ),
            }
    return results


def apply_reloc_results(catalog, results):
    """
    New catalog where the events found in read_reloc_file results have the
    relocated locations.
    """
    events = []
    for event_id, values in results.items():
        if event_id not in catalog.events:
            logger.warning("Relocated event %i not in catalog", event_id)
            continue
        events.append(catalog.events[event_id].replace(**values))
    return catalog.replace_events(events)

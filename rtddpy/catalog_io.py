"""
Plain text (CSV) catalog files.

A catalog is stored as three files in a directory: station.csv, event.csv and
phase.csv, one row per entity. Floats are written with full precision and
times in ISO format with microseconds so that reading back a written catalog
yields an equal catalog.
"""
import csv
import json
import logging
import os

from obspy import UTCDateTime

from .catalog import Catalog, Event, Phase, RelocInfo, Station
from .exceptions import CatalogError

logger = logging.getLogger(__name__)

STATION_FILE = "station.csv"
EVENT_FILE = "event.csv"
PHASE_FILE = "phase.csv"

STATION_COLUMNS = ["id", "latitude", "longitude", "elevation", "networkCode",
                   "stationCode", "locationCode", "extra"]
EVENT_COLUMNS = ["id", "isotime", "latitude", "longitude", "depth",
                 "magnitude", "horizontalErr", "verticalErr", "rms", "extra",
                 "relocated", "clusterId", "numNeighbours", "num_cc_p",
                 "num_cc_s", "num_ct_p", "num_ct_s", "startRms", "finalRms",
                 "locChange", "depthChange", "timeChange"]
PHASE_COLUMNS = ["eventId", "stationId", "isotime", "weight", "type",
                 "networkCode", "stationCode", "locationCode", "channelCode",
                 "isManual", "source", "extra"]

_RELOC_FIELDS = [
    ("clusterId", "cluster_id", int),
    ("numNeighbours", "num_neighbours", int),
    ("num_cc_p", "num_cc_p", int),
    ("num_cc_s", "num_cc_s", int),
    ("num_ct_p", "num_ct_p", int),
    ("num_ct_s", "num_ct_s", int),
    ("startRms", "start_rms", float),
    ("finalRms", "final_rms", float),
    ("locChange", "location_change", float),
    ("depthChange", "depth_change", float),
    ("timeChange", "time_change", float),
]


def _format_time(time):
    # Round to the microsecond, strftime truncates.
    time = UTCDateTime(ns=(time.ns + 500) // 1000 * 1000)
    return time.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _format_extra(extra):
    return json.dumps(extra, sort_keys=True) if extra else ""


def _parse_extra(value):
    return json.loads(value) if value else {}


def _parse_bool(value):
    return value.strip().lower() in ("true", "1", "yes")


def write_catalog(catalog, directory):
    """
    Write a catalog as station.csv, event.csv and phase.csv into directory.
    """
    if not os.path.exists(directory):
        os.makedirs(directory)

    with open(os.path.join(directory, STATION_FILE), "w", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(STATION_COLUMNS)
        for station in sorted(catalog.stations.values(), key=lambda s: s.id):
            writer.writerow([
                station.id, repr(station.latitude), repr(station.longitude),
                repr(station.elevation), station.network_code,
                station.station_code, station.location_code,
                _format_extra(station.extra),
            ])

    with open(os.path.join(directory, EVENT_FILE), "w", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(EVENT_COLUMNS)
        for event in sorted(catalog.events.values(), key=lambda e: e.id):
            row = [
                event.id, _format_time(event.time), repr(event.latitude),
                repr(event.longitude), repr(event.depth),
                repr(event.magnitude), repr(event.horizontal_error),
                repr(event.depth_error), repr(event.rms),
                _format_extra(event.extra),
            ]
            info = event.reloc_info
            if info is None:
                row += ["false"] + [""] * len(_RELOC_FIELDS)
            else:
                row += ["true"] + [repr(getattr(info, attr))
                                   for _, attr, _ in _RELOC_FIELDS]
            writer.writerow(row)

    with open(os.path.join(directory, PHASE_FILE), "w", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(PHASE_COLUMNS)
        for event_id in sorted(catalog.phases):
            for phase in catalog.get_phases(event_id):
                writer.writerow([
                    phase.event_id, phase.station_id, _format_time(phase.time),
                    repr(phase.weight), phase.type, phase.network_code,
                    phase.station_code, phase.location_code,
                    phase.channel_code, "true" if phase.is_manual else "false",
                    phase.source, _format_extra(phase.extra),
                ])
    logger.info("Wrote %s to %s", catalog, directory)


def _read_rows(filename, required):
    if not os.path.exists(filename):
        raise CatalogError("Catalog file %s does not exist" % filename)
    with open(filename, "r", newline="") as fh:
        reader = csv.DictReader(fh)
        missing = set(required) - set(reader.fieldnames or [])
        if missing:
            msg = "File %s lacks the columns: %s" % (
                filename, ", ".join(sorted(missing)))
            raise CatalogError(msg)
        rows = list(reader)
    return rows


def read_catalog(directory=None, station_file=None, event_file=None,
                 phase_file=None):
    """
    Read a catalog written by write_catalog. The files can also be given
    one by one. Only the first columns of each file are required (id,
    location and time), the others are optional.
    """
    if directory is not None:
        station_file = station_file or os.path.join(directory, STATION_FILE)
        event_file = event_file or os.path.join(directory, EVENT_FILE)
        phase_file = phase_file or os.path.join(directory, PHASE_FILE)

    stations = []
    for row in _read_rows(station_file, STATION_COLUMNS[:4]):
        try:
            network_code = row.get("networkCode") or ""
            station_code = row.get("stationCode") or ""
            stations.append(Station(
                id=row["id"],
                latitude=float(row["latitude"]),
                longitude=float(row["longitude"]),
                elevation=float(row["elevation"]),
                network_code=network_code,
                station_code=station_code,
                location_code=row.get("locationCode") or "",
                extra=_parse_extra(row.get("extra")),
            ))
        except ValueError as exc:
            raise CatalogError("Invalid station row %s: %s" % (row, exc))

    events = []
    for row in _read_rows(event_file, EVENT_COLUMNS[:5]):
        try:
            reloc_info = None
            if _parse_bool(row.get("relocated") or ""):
                reloc_info = RelocInfo(**{
                    attr: cast(row[column])
                    for column, attr, cast in _RELOC_FIELDS
                    if row.get(column)
                })
            events.append(Event(
                id=int(row["id"]),
                time=UTCDateTime(row["isotime"]),
                latitude=float(row["latitude"]),
                longitude=float(row["longitude"]),
                depth=float(row["depth"]),
                magnitude=float(row.get("magnitude") or 0.0),
                horizontal_error=float(row.get("horizontalErr") or 0.0),
                depth_error=float(row.get("verticalErr") or 0.0),
                rms=float(row.get("rms") or 0.0),
                extra=_parse_extra(row.get("extra")),
                reloc_info=reloc_info,
            ))
        except ValueError as exc:
            raise CatalogError("Invalid event row %s: %s" % (row, exc))

    phases = []
    for row in _read_rows(phase_file, PHASE_COLUMNS[:5]):
        try:
            phases.append(Phase(
                event_id=int(row["eventId"]),
                station_id=row["stationId"],
                time=UTCDateTime(row["isotime"]),
                type=row["type"],
                weight=float(row["weight"]),
                network_code=row.get("networkCode") or "",
                station_code=row.get("stationCode") or "",
                location_code=row.get("locationCode") or "",
                channel_code=row.get("channelCode") or "",
                is_manual=_parse_bool(row.get("isManual") or "true"),
                source=row.get("source") or "catalog",
                extra=_parse_extra(row.get("extra")),
            ))
        except ValueError as exc:
            raise CatalogError("Invalid phase row %s: %s" % (row, exc))

    catalog = Catalog(stations, events, phases)
    logger.info("Read %s", catalog)
    return catalog

import math

import numpy as np
import pytest
from obspy import Stream, Trace, UTCDateTime

from rtddpy.catalog import Catalog, Event, Phase, Station
from rtddpy.geo import move_point
from rtddpy.ttt import ConstantVelocityTable

CENTER_LATITUDE = 46.0
CENTER_LONGITUDE = 8.0
ORIGIN_TIME = UTCDateTime(2020, 1, 1)
SAMPLING_RATE = 100.0


def make_stations(distances=(10.0, 15.0, 20.0, 25.0, 30.0, 35.0)):
    """
    Stations on a spiral around the center, 60 degrees apart.
    """
    stations = []
    for _i, distance in enumerate(distances):
        azimuth = math.radians(60.0 * _i)
        latitude, longitude, _ = move_point(
            CENTER_LATITUDE, CENTER_LONGITUDE, 0.0,
            distance * math.sin(azimuth), distance * math.cos(azimuth), 0.0)
        code = "ST%02i" % (_i + 1)
        stations.append(Station(Station.make_id("XX", code), latitude,
                                longitude, 0.0, "XX", code))
    return stations


def make_catalog(ttt, stations, locations, pick_locations=None,
                 time_shifts=None, weight=1.0, first_id=1, time_offset=0.0):
    """
    Events at (north km, east km, depth km) offsets from the center, 60 s
    apart, with P and S picks at every station computed with `ttt` from
    `pick_locations` (the event locations by default).
    """
    pick_locations = pick_locations or locations
    time_shifts = time_shifts or [0.0] * len(locations)
    events = []
    phases = []
    for _i, (location, pick_location, shift) in enumerate(
            zip(locations, pick_locations, time_shifts)):
        event_id = first_id + _i
        true_time = ORIGIN_TIME + time_offset + 60.0 * _i
        latitude, longitude, depth = move_point(
            CENTER_LATITUDE, CENTER_LONGITUDE, location[2], location[1],
            location[0], 0.0)
        events.append(Event(event_id, true_time + shift, latitude, longitude,
                            depth, magnitude=1.0 + 0.1 * _i))
        pick_lat, pick_lon, pick_depth = move_point(
            CENTER_LATITUDE, CENTER_LONGITUDE, pick_location[2],
            pick_location[1], pick_location[0], 0.0)
        for station in stations:
            for phase_type in ("P", "S"):
                travel_time = ttt.predict(phase_type, pick_lat, pick_lon,
                                          pick_depth, station)
                phases.append(Phase(
                    event_id, station.id, true_time + travel_time, phase_type,
                    weight=weight, network_code=station.network_code,
                    station_code=station.station_code, channel_code="HHZ"))
    return Catalog(stations, events, phases)


def ricker(times, frequency=8.0):
    arg = (math.pi * frequency * times) ** 2
    return (1.0 - 2.0 * arg) * np.exp(-arg)


def make_waveforms(catalog, before=5.0, after=20.0):
    """
    One vertical component trace per event and station with a wavelet at
    every pick.
    """
    stream = Stream()
    npts = int((before + after) * SAMPLING_RATE) + 1
    for event in catalog.events.values():
        starttime = event.time - before
        times = np.arange(npts) / SAMPLING_RATE
        by_station = {}
        for phase in catalog.get_phases(event.id):
            data = by_station.setdefault(phase.station_id, np.zeros(npts))
            data += ricker(times - (phase.time - starttime))
        for station_id, data in by_station.items():
            station = catalog.stations[station_id]
            stream.append(Trace(data=data, header={
                "network": station.network_code,
                "station": station.station_code,
                "location": "",
                "channel": "HHZ",
                "starttime": starttime,
                "sampling_rate": SAMPLING_RATE,
            }))
    return stream


def line_locations(num_events=10, spacing=0.9, depth=5.0):
    return [(spacing * (_i - (num_events - 1) / 2.0), 0.0, depth)
            for _i in range(num_events)]


@pytest.fixture
def ttt():
    return ConstantVelocityTable(vp=5.8, vs=3.36)


@pytest.fixture
def stations():
    return make_stations()


@pytest.fixture
def line_catalog(ttt, stations):
    return make_catalog(ttt, stations, line_locations())

"""
Travel time tables.

A travel time table predicts the travel time of a phase from a hypocenter to a
station, together with the ray geometry at the source that the solver needs for
the partial derivatives:

    tt, azimuth, takeoff_angle, velocity = table.compute(
        "P", latitude, longitude, depth, station)

The azimuth is measured clockwise from north, from the event towards the
station. The takeoff angle is measured from the downward vertical, in degrees.
"""
import math
import threading

import numpy as np
from obspy.geodetics import kilometer2degrees
from obspy.taup import TauPyModel

from .exceptions import ConfigError, ModelLookupError
from .geo import compute_distance


def _phase_family(phase_type):
    family = phase_type[:1].upper()
    if family not in ("P", "S"):
        raise ModelLookupError("Unsupported phase type '%s'" % phase_type)
    return family


class TravelTimeTable(object):
    """
    Base class of the travel time tables.
    """
    def compute(self, phase_type, latitude, longitude, depth, station):
        """
        :param depth: Event depth in km.
        :param station: A Station.
        :return: Tuple (travel_time, azimuth, takeoff_angle, velocity).
        """
        raise NotImplementedError

    def predict(self, phase_type, latitude, longitude, depth, station):
        return self.compute(phase_type, latitude, longitude, depth, station)[0]


class ConstantVelocityTable(TravelTimeTable):
    """
    Straight rays in a homogeneous half space.
    """
    def __init__(self, vp=5.8, vs=3.36):
        if vp <= 0 or vs <= 0:
            raise ConfigError("Velocities must be positive")
        self.vp = float(vp)
        self.vs = float(vs)

    def compute(self, phase_type, latitude, longitude, depth, station):
        velocity = self.vp if _phase_family(phase_type) == "P" else self.vs
        if not np.isfinite(depth):
            raise ModelLookupError("Invalid depth %s" % depth)
        station_depth = -station.elevation / 1000.0
        distance, azimuth, _ = compute_distance(
            latitude, longitude, depth,
            station.latitude, station.longitude, station_depth)
        horizontal = math.sqrt(max(distance ** 2 -
                                   (station_depth - depth) ** 2, 0.0))
        takeoff_angle = math.degrees(
            math.atan2(horizontal, station_depth - depth))
        return distance / velocity, azimuth, takeoff_angle, velocity


class TauPTable(TravelTimeTable):
    """
    1D layered earth model through obspy.taup. The first arrival of the phase
    family is used ("p"/"P" or "s"/"S").
    """
    PHASE_LISTS = {"P": ["p", "P"], "S": ["s", "S"]}

    def __init__(self, model="iasp91"):
        self.model_name = model
        self._model = TauPyModel(model=model)
        # TauPyModel instances are not meant to be shared between threads
        self._lock = threading.Lock()

    def compute(self, phase_type, latitude, longitude, depth, station):
        family = _phase_family(phase_type)
        if depth < 0:
            raise ModelLookupError("Negative depth %.3f km" % depth)
        receiver_depth = max(-station.elevation / 1000.0, 0.0)
        _, azimuth, _ = compute_distance(
            latitude, longitude, depth, station.latitude, station.longitude,
            receiver_depth)
        epicentral = compute_distance(
            latitude, longitude, 0.0, station.latitude, station.longitude,
            0.0)[0]
        with self._lock:
            try:
                arrivals = self._model.get_travel_times(
                    source_depth_in_km=depth,
                    distance_in_degree=kilometer2degrees(epicentral),
                    phase_list=self.PHASE_LISTS[family],
                    receiver_depth_in_km=receiver_depth,
                )
            except ValueError as exc:
                raise ModelLookupError(str(exc))
            if not arrivals:
                msg = "No %s arrival for depth %.3f km and distance %.3f km" % (
                    family, depth, epicentral)
                raise ModelLookupError(msg)
            velocity = self._model.model.s_mod.v_mod.evaluate_below(
                depth, family.lower())
        arrival = arrivals[0]
        return (arrival.time, azimuth, arrival.takeoff_angle,
                float(np.atleast_1d(velocity)[0]))


def create_travel_time_table(ttt_config):
    """
    Build the travel time table described by the "ttt" configuration section.
    """
    if ttt_config["type"] == "constant":
        return ConstantVelocityTable(ttt_config["vp"], ttt_config["vs"])
    if ttt_config["type"] == "taup":
        return TauPTable(ttt_config["model"])
    raise ConfigError("Unknown travel time table type %s" % ttt_config["type"])

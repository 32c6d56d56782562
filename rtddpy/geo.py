"""
Geometry helpers working in km around a reference hypocenter.
"""
import math

from obspy.geodetics import gps2dist_azimuth, kilometer2degrees


def compute_distance(lat1, lon1, depth1, lat2, lon2, depth2):
    """
    Hypocentral distance between two points.

    :param depth1: Depth in km (positive down), same for depth2.
    :return: Tuple (distance_km, azimuth, back_azimuth) where the azimuths
        are the ones of the epicentral great circle path in degrees.
    """
    dist_m, azimuth, back_azimuth = gps2dist_azimuth(lat1, lon1, lat2, lon2)
    horizontal = dist_m / 1000.0
    vertical = depth2 - depth1
    return math.sqrt(horizontal ** 2 + vertical ** 2), azimuth, back_azimuth


def epicentral_distance(lat1, lon1, lat2, lon2):
    return gps2dist_azimuth(lat1, lon1, lat2, lon2)[0] / 1000.0


def local_offset(ref_lat, ref_lon, ref_depth, lat, lon, depth):
    """
    East, north and down offset in km of a point from a reference point.
    """
    dist_m, azimuth, _ = gps2dist_azimuth(ref_lat, ref_lon, lat, lon)
    horizontal = dist_m / 1000.0
    azimuth = math.radians(azimuth)
    return (horizontal * math.sin(azimuth), horizontal * math.cos(azimuth),
            depth - ref_depth)


def move_point(lat, lon, depth, east_km, north_km, down_km):
    """
    Shift a point by local offsets in km. Small shifts only, a flat earth
    approximation is used.
    """
    new_lat = lat + kilometer2degrees(north_km)
    cos_lat = max(math.cos(math.radians(new_lat)), 1e-6)
    new_lon = lon + kilometer2degrees(east_km) / cos_lat
    if new_lon > 180.0:
        new_lon -= 360.0
    elif new_lon < -180.0:
        new_lon += 360.0
    return new_lat, new_lon, depth + down_km


class Ellipsoid(object):
    """
    Vertically elongated ellipsoid centered on a hypocenter: the horizontal
    semi-axes are `size` km long, the vertical semi-axis is twice as long.

    Quadrants are numbered 1 to 8 from the signs of the east, north and down
    offsets from the center.
    """
    def __init__(self, size, latitude, longitude, depth):
        self.size = float(size)
        self.latitude = latitude
        self.longitude = longitude
        self.depth = depth

    def _offset(self, latitude, longitude, depth):
        return local_offset(self.latitude, self.longitude, self.depth,
                            latitude, longitude, depth)

    def is_inside(self, latitude, longitude, depth):
        east, north, down = self._offset(latitude, longitude, depth)
        return self.is_offset_inside(east, north, down)

    def is_offset_inside(self, east, north, down):
        horizontal = self.size
        vertical = 2.0 * self.size
        return (east / horizontal) ** 2 + (north / horizontal) ** 2 + \
            (down / vertical) ** 2 <= 1.0

    @staticmethod
    def offset_quadrant(east, north, down):
        return 1 + (east < 0) + 2 * (north < 0) + 4 * (down < 0)

    def quadrant(self, latitude, longitude, depth):
        return self.offset_quadrant(*self._offset(latitude, longitude, depth))


def ellipsoid_layers(num_ellipsoids, max_size, latitude, longitude, depth):
    """
    Concentric ellipsoids from the smallest to the biggest. Each one is twice
    the size of the previous one, the biggest is `max_size`.
    """
    return [
        Ellipsoid(max_size / 2.0 ** (num_ellipsoids - 1 - _i), latitude,
                  longitude, depth)
        for _i in range(num_ellipsoids)
    ]

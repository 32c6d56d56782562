"""
Waveform access for the cross-correlation.

A waveform proxy knows how to fetch raw data for a channel and time window.
The WaveformManager sits on top of a proxy: it filters, resamples, rotates
horizontal components and keeps the processed snippets in memory (and
optionally on disk) so that a snippet used by many event pairs is only
fetched and processed once.
"""
import fnmatch
import logging
import os
import shutil
import threading
from collections import OrderedDict

import numpy as np
from obspy.core import read, Stream
from obspy.signal.rotate import rotate_ne_rt

from .exceptions import GapError, NoDataError

logger = logging.getLogger(__name__)


class LRUCache(object):
    """Least Recently Used cache for waveform data."""
    def __init__(self, capacity):
        self.cache = OrderedDict()
        self.capacity = capacity
        self.hits = 0
        self.misses = 0
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            if key in self.cache:
                self.cache.move_to_end(key)
                self.hits += 1
                return self.cache[key]
            self.misses += 1
            return None

    def put(self, key, value):
        with self._lock:
            if key in self.cache:
                self.cache.move_to_end(key)
            elif len(self.cache) >= self.capacity:
                self.cache.popitem(last=False)
            self.cache[key] = value

    def clear(self):
        with self._lock:
            self.cache.clear()

    def __len__(self):
        return len(self.cache)


def _single_trace(stream, starttime, endtime, trace_id):
    """
    Cut a stream to the requested window and make sure exactly one complete,
    gap free trace remains.
    """
    stream = stream.slice(starttime, endtime)
    if not stream:
        raise NoDataError("No data for %s %s - %s" % (trace_id, starttime,
                                                        endtime))
    # cleanup merges, in case the window spans several records or files
    stream.merge()
    if len(stream) != 1 or np.ma.is_masked(stream[0].data):
        raise GapError("Data gaps for %s %s - %s" % (trace_id, starttime,
                                                       endtime))
    trace = stream[0]
    tolerance = trace.stats.delta
    if trace.stats.starttime > starttime + tolerance or \
            trace.stats.endtime < endtime - tolerance:
        msg = "Incomplete data for %s %s - %s (available %s - %s)" % (
            trace_id, starttime, endtime, trace.stats.starttime,
            trace.stats.endtime)
        raise NoDataError(msg)
    if not np.isfinite(trace.data).all():
        raise NoDataError("Invalid data (NaN/inf) for %s" % trace_id)
    return trace


class WaveformProxy(object):
    """
    Source of raw waveform data.
    """
    def get_waveform(self, network, station, location, channel, starttime,
                     endtime):
        """
        :return: A single obspy Trace covering [starttime, endtime].
        :raises NoDataError: Data is not available.
        :raises GapError: Data has gaps in the requested window.
        """
        raise NotImplementedError


class StreamWaveformProxy(WaveformProxy):
    """
    Serves data from an in-memory obspy Stream.
    """
    def __init__(self, stream):
        self.stream = stream

    def get_waveform(self, network, station, location, channel, starttime,
                     endtime):
        trace_id = ".".join([network, station, location, channel])
        stream = self.stream.select(network=network, station=station,
                                    location=location, channel=channel)
        return _single_trace(stream.copy(), starttime, endtime, trace_id)


class FileWaveformProxy(WaveformProxy):
    """
    Serves data from a list of waveform files readable by obspy. The headers of
    all files are indexed on first use.
    """
    def __init__(self, waveform_files):
        if isinstance(waveform_files, str):
            waveform_files = [waveform_files]
        self.waveform_files = list(waveform_files)
        self._waveform_information = None
        self._lock = threading.Lock()

    def _parse_waveform_files(self):
        waveform_information = {}
        for waveform_file in self.waveform_files:
            try:
                stream = read(waveform_file, headonly=True)
            except Exception as exc:
                logger.warning("Could not read %s: %s", waveform_file, exc)
                continue
            for trace in stream:
                waveform_information.setdefault(trace.id, []).append({
                    "filename": waveform_file,
                    "starttime": trace.stats.starttime,
                    "endtime": trace.stats.endtime,
                })
        logger.info("Parsed %i waveform files, %i unique trace ids",
                    len(self.waveform_files), len(waveform_information))
        return waveform_information

    @property
    def waveform_information(self):
        with self._lock:
            if self._waveform_information is None:
                self._waveform_information = self._parse_waveform_files()
            return self._waveform_information

    def _find_data(self, trace_id, starttime, endtime):
        filenames = []
        for key, waveforms in self.waveform_information.items():
            if not fnmatch.fnmatch(key, trace_id):
                continue
            for waveform in waveforms:
                if waveform["endtime"] < starttime:
                    continue
                if waveform["starttime"] > endtime:
                    continue
                filenames.append(waveform["filename"])
        return sorted(set(filenames))

    def get_waveform(self, network, station, location, channel, starttime,
                     endtime):
        trace_id = ".".join([network, station, location, channel])
        filenames = self._find_data(trace_id, starttime, endtime)
        if not filenames:
            raise NoDataError("No waveform file for %s %s - %s" % (
                trace_id, starttime, endtime))
        stream = Stream()
        for filename in filenames:
            stream += read(filename, starttime=starttime, endtime=endtime)
        stream = stream.select(network=network, station=station,
                               location=location, channel=channel)
        return _single_trace(stream, starttime, endtime, trace_id)


class ClientWaveformProxy(WaveformProxy):
    """
    Serves data from any obspy client implementing get_waveforms, e.g. an
    FDSN or SDS client.
    """
    def __init__(self, client):
        self.client = client

    def get_waveform(self, network, station, location, channel, starttime,
                     endtime):
        trace_id = ".".join([network, station, location, channel])
        try:
            stream = self.client.get_waveforms(network, station, location,
                                               channel, starttime, endtime)
        except Exception as exc:
            raise NoDataError("Client returned no data for %s: %s" % (
                trace_id, exc))
        return _single_trace(stream, starttime, endtime, trace_id)


def compute_snr(trace, pick_time, noise_start, noise_end, signal_start,
                signal_end):
    """
    Ratio of the max absolute amplitude in the signal window to the one in the
    noise window. Windows are in seconds relative to pick_time.
    """
    noise = trace.slice(pick_time + noise_start, pick_time + noise_end)
    signal = trace.slice(pick_time + signal_start, pick_time + signal_end)
    if not len(noise.data) or not len(signal.data):
        raise NoDataError("SNR windows not covered by data")
    noise_max = np.abs(noise.data).max()
    signal_max = np.abs(signal.data).max()
    if noise_max == 0:
        return np.inf if signal_max > 0 else 0.0
    return signal_max / noise_max


class WaveformManager(object):
    """
    Processed waveform snippets on top of a WaveformProxy.

    :param proxy: The WaveformProxy providing raw data.
    :param waveform_filter: Dict with the obspy filter type under "type" and
        the filter options, or None to skip filtering.
    :param resample_freq: Resample to this frequency. 0 keeps the original
        sampling rate.
    :param cache_capacity: Number of processed snippets kept in memory.
    :param disk_cache_dir: If given, raw data is also cached in this directory
        as MiniSEED files.
    :param debug_dir: If given, snippets passed to write_debug are stored here.
    :param margin: Extra data in seconds fetched on both sides of a window so
        that the filter transients fall outside of it.
    """
    def __init__(self, proxy, waveform_filter=None, resample_freq=0.0,
                 cache_capacity=1000, disk_cache_dir=None, debug_dir=None,
                 margin=2.0):
        self.proxy = proxy
        self.waveform_filter = waveform_filter
        self.resample_freq = resample_freq
        self.cache = LRUCache(cache_capacity)
        self.disk_cache_dir = disk_cache_dir
        self.debug_dir = debug_dir
        self.margin = margin
        self._unavailable = {}
        self._lock = threading.Lock()
        for directory in (disk_cache_dir, debug_dir):
            if directory and not os.path.exists(directory):
                os.makedirs(directory)

    @classmethod
    def from_config(cls, proxy, config, **kwargs):
        wf_config = config["waveform_filter"]
        return cls(proxy, waveform_filter=wf_config["filter"],
                   resample_freq=wf_config["resample_freq"], **kwargs)

    def get_waveform(self, network, station, location, channel, starttime,
                     endtime, back_azimuth=None):
        """
        Processed snippet for [starttime, endtime]. Channels ending in "R" or
        "T" are rotated from the N and E components and need back_azimuth.

        :raises NoDataError: Data not available (GapError for gaps).
        """
        key = (network, station, location, channel, str(starttime),
               str(endtime), None if back_azimuth is None
               else round(back_azimuth, 3))
        trace = self.cache.get(key)
        if trace is not None:
            return trace.copy()

        with self._lock:
            error = self._unavailable.get(key)
        if error is not None:
            raise error

        try:
            if channel[-1:] in ("R", "T"):
                trace = self._rotated(network, station, location, channel,
                                      starttime, endtime, back_azimuth)
            else:
                trace = self._processed(network, station, location, channel,
                                        starttime, endtime)
        except NoDataError as exc:
            with self._lock:
                self._unavailable[key] = exc
            raise
        self.cache.put(key, trace)
        return trace.copy()

    def _fetch_raw(self, network, station, location, channel, starttime,
                   endtime):
        trace_id = ".".join([network, station, location, channel])
        cache_file = None
        if self.disk_cache_dir:
            cache_file = os.path.join(self.disk_cache_dir, "%s_%s_%s.mseed" % (
                trace_id, starttime.strftime("%Y%m%dT%H%M%S.%f"),
                endtime.strftime("%Y%m%dT%H%M%S.%f")))
            if os.path.exists(cache_file):
                return _single_trace(read(cache_file), starttime, endtime,
                                     trace_id)
        trace = self.proxy.get_waveform(network, station, location, channel,
                                        starttime, endtime)
        if cache_file:
            os.makedirs(self.disk_cache_dir, exist_ok=True)
            trace.write(cache_file, format="MSEED")
        return trace

    def _processed(self, network, station, location, channel, starttime,
                   endtime):
        trace = self._fetch_raw(network, station, location, channel,
                                starttime - self.margin, endtime + self.margin)
        trace = trace.copy()
        trace.data = trace.data.astype(np.float64)
        trace.detrend("demean")
        if self.margin > 0:
            trace.taper(max_percentage=0.5, max_length=self.margin)
        if self.waveform_filter:
            options = dict(self.waveform_filter)
            filter_type = options.pop("type")
            trace.filter(filter_type, **options)
        if self.resample_freq and \
                trace.stats.sampling_rate != self.resample_freq:
            trace.resample(self.resample_freq)
        trace.trim(starttime, endtime, nearest_sample=True)
        return trace

    def _rotated(self, network, station, location, channel, starttime,
                 endtime, back_azimuth):
        if back_azimuth is None:
            raise NoDataError("Rotation to %s needs the back azimuth" %
                              channel)
        north = self._processed(network, station, location,
                                channel[:-1] + "N", starttime, endtime)
        east = self._processed(network, station, location,
                               channel[:-1] + "E", starttime, endtime)
        npts = min(len(north.data), len(east.data))
        if abs(north.stats.starttime - east.stats.starttime) > \
                north.stats.delta / 2.0 or \
                north.stats.sampling_rate != east.stats.sampling_rate:
            raise NoDataError("N and E components of %s.%s are not aligned" %
                              (network, station))
        radial, transverse = rotate_ne_rt(north.data[:npts], east.data[:npts],
                                          back_azimuth)
        trace = north.copy()
        trace.stats.channel = channel
        trace.data = radial if channel.endswith("R") else transverse
        return trace

    def write_debug(self, trace, label):
        if not self.debug_dir:
            return
        os.makedirs(self.debug_dir, exist_ok=True)
        filename = os.path.join(self.debug_dir, "%s.mseed" % label)
        trace.write(filename, format="MSEED")

    def cleanup(self):
        """
        Remove the scratch directories and empty the memory cache.
        """
        self.cache.clear()
        for directory in (self.disk_cache_dir, self.debug_dir):
            if directory and os.path.exists(directory):
                shutil.rmtree(directory)

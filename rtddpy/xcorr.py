"""
Cross-correlation of phase waveforms between neighbouring events.

For every pair of events sharing a station and phase family the waveforms of
the two phases are cross correlated. The coarse alignment slides the short
window of one event over the long window (short window plus max_delay on both
sides) of the other. When the coarse peak is good enough, the lag is refined
by correlating the short windows around the coarse lag with sub-sample
(parabolic) interpolation of the peak.

Lag convention: an entry (A, B, station, phase) with lag L states that

    arrival_A - arrival_B = (pick_A - pick_B) + L

hence (B, A, station, phase) resolves to -L.
"""
import json
import logging
import threading
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor, as_completed

import numpy as np
import progressbar
from obspy.signal.cross_correlation import correlate_template, xcorr_max

from .exceptions import NoDataError
from .geo import compute_distance
from .waveform import compute_snr

logger = logging.getLogger(__name__)


XCorrResult = namedtuple("XCorrResult", ["coefficient", "lag", "polarity"])


class XCorrCache(object):
    """
    Accepted cross-correlation results keyed by (event id 1, event id 2,
    station id, phase family). Only results that passed the coefficient gate
    are stored: a missing entry means no acceptable correlation.
    """
    def __init__(self):
        self._entries = {}

    @staticmethod
    def _canonical(event_id1, event_id2, station_id, phase_family):
        if event_id1 <= event_id2:
            return (event_id1, event_id2, station_id, phase_family), 1.0
        return (event_id2, event_id1, station_id, phase_family), -1.0

    def add(self, event_id1, event_id2, station_id, phase_family,
            coefficient, lag, polarity=1):
        key, sign = self._canonical(event_id1, event_id2, station_id,
                                    phase_family)
        self._entries[key] = XCorrResult(coefficient, sign * lag, polarity)

    def has(self, event_id1, event_id2, station_id, phase_family):
        key, _ = self._canonical(event_id1, event_id2, station_id,
                                 phase_family)
        return key in self._entries

    def get(self, event_id1, event_id2, station_id, phase_family):
        """
        :return: XCorrResult with the lag oriented as event_id1 - event_id2
            or None.
        """
        key, sign = self._canonical(event_id1, event_id2, station_id,
                                    phase_family)
        result = self._entries.get(key)
        if result is None:
            return None
        return result._replace(lag=sign * result.lag)

    def remove(self, event_id1, event_id2, station_id, phase_family):
        key, _ = self._canonical(event_id1, event_id2, station_id,
                                 phase_family)
        self._entries.pop(key, None)

    def shift_event(self, event_id, station_id, phase_family, shift):
        """
        Update the lags after the pick of `event_id` at `station_id` has been
        moved by `shift` seconds.
        """
        for key, result in list(self._entries.items()):
            if key[2] != station_id or key[3] != phase_family:
                continue
            if key[0] == event_id:
                self._entries[key] = result._replace(lag=result.lag - shift)
            elif key[1] == event_id:
                self._entries[key] = result._replace(lag=result.lag + shift)

    def entries_for(self, event_id, station_id, phase_family):
        """
        Yields (other event id, XCorrResult oriented as event_id - other).
        """
        for key in list(self._entries):
            if key[2] != station_id or key[3] != phase_family:
                continue
            if key[0] == event_id:
                yield key[1], self.get(event_id, key[1], station_id,
                                       phase_family)
            elif key[1] == event_id:
                yield key[0], self.get(event_id, key[0], station_id,
                                       phase_family)

    def update(self, other):
        for key, result in other.items():
            self.add(key[0], key[1], key[2], key[3], *result)

    def items(self):
        return list(self._entries.items())

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return self.has(*key)

    def to_dict(self):
        return {
            "entries": [
                [key[0], key[1], key[2], key[3], result.coefficient,
                 result.lag, result.polarity]
                for key, result in sorted(self._entries.items())
            ]
        }

    @classmethod
    def from_dict(cls, data):
        cache = cls()
        for ev1, ev2, station_id, family, coef, lag, polarity in \
                data["entries"]:
            cache.add(int(ev1), int(ev2), station_id, family, float(coef),
                      float(lag), int(polarity))
        return cache

    def save(self, filename):
        with open(filename, "w") as open_file:
            json.dump(self.to_dict(), open_file)

    @classmethod
    def load(cls, filename):
        with open(filename, "r") as open_file:
            return cls.from_dict(json.load(open_file))


class XCorrCounters(object):
    """
    Attempted and accepted cross-correlations split by phase family and by
    real/theoretical phases. Diagnostics only.
    """
    FIELDS = ("performed_p", "performed_p_theo", "performed_s",
              "performed_s_theo", "good_cc_p", "good_cc_p_theo", "good_cc_s",
              "good_cc_s_theo")

    def __init__(self):
        for field in self.FIELDS:
            setattr(self, field, 0)
        self._lock = threading.Lock()

    def add(self, phase_family, theoretical, good):
        suffix = phase_family.lower() + ("_theo" if theoretical else "")
        with self._lock:
            setattr(self, "performed_" + suffix,
                    getattr(self, "performed_" + suffix) + 1)
            if good:
                setattr(self, "good_cc_" + suffix,
                        getattr(self, "good_cc_" + suffix) + 1)

    def merge(self, other):
        with self._lock:
            for field in self.FIELDS:
                setattr(self, field, getattr(self, field) +
                        getattr(other, field))

    def to_dict(self):
        return {field: getattr(self, field) for field in self.FIELDS}

    def __str__(self):
        def _pct(good, performed):
            return 100.0 * good / performed if performed else 0.0
        lines = []
        for family in ("p", "s"):
            for theo, label in (("", "real"), ("_theo", "theoretical")):
                performed = getattr(self, "performed_%s%s" % (family, theo))
                good = getattr(self, "good_cc_%s%s" % (family, theo))
                lines.append("%s %-11s phases: %6i performed, %6i good (%.1f%%)"
                             % (family.upper(), label, performed, good,
                                _pct(good, performed)))
        return "\n".join(lines)


def _cut(trace, starttime, endtime):
    return trace.slice(starttime, endtime, nearest_sample=True)


def _best_match(long_trace, long_pick, short_trace, short_pick,
                interpolate=False):
    """
    Slide short_trace over long_trace.

    :return: Tuple (signed coefficient, lag) or None if the traces cannot be
        correlated.
    """
    if long_trace.stats.sampling_rate != short_trace.stats.sampling_rate:
        return None
    data = long_trace.data
    template = short_trace.data
    if len(template) < 2 or len(data) < len(template) or \
            np.std(template) == 0:
        return None
    cc = correlate_template(data, template, mode="valid", normalize="full",
                            demean=True)
    cc = np.nan_to_num(cc)
    # shift is relative to the middle sample of cc
    shift, peak = xcorr_max(cc)
    idx = int(round(shift + (len(cc) - 1) / 2.0))
    peak = float(peak)
    fraction = 0.0
    if interpolate and 0 < idx < len(cc) - 1:
        # parabola through the peak and its neighbours
        y0, y1, y2 = np.abs(cc[idx - 1:idx + 2])
        denom = y0 - 2.0 * y1 + y2
        if denom < 0:
            fraction = min(max(0.5 * (y0 - y2) / denom, -0.5), 0.5)
            peak = np.sign(peak) * min(y1 - 0.25 * (y0 - y2) * fraction,
                                       1.0)
    lag = (long_trace.stats.starttime - long_pick) + \
        (idx + fraction) * long_trace.stats.delta - \
        (short_trace.stats.starttime - short_pick)
    return peak, lag


def _refine(trace, pick, short_trace, short_pick, lag, pad=2):
    """
    Correlate short_trace with the portion of `trace` aligned to it by `lag`,
    allowing `pad` samples of movement, with sub-sample precision.
    """
    delta = trace.stats.delta
    starttime = pick + (short_trace.stats.starttime - short_pick) + lag - \
        pad * delta
    endtime = starttime + (len(short_trace.data) - 1 + 2 * pad) * delta
    return _best_match(_cut(trace, starttime, endtime), pick, short_trace,
                       short_pick, interpolate=True)


def xcorr_traces(trace1, pick1, trace2, pick2, start_offset, end_offset,
                 max_delay, min_coef=None):
    """
    Cross correlate the waveforms of two phases.

    :param trace1: Trace of the first phase, covering at least
        [pick1 + start_offset - max_delay, pick1 + end_offset + max_delay].
    :param pick1: Pick time of the first phase.
    :param start_offset: Short window start relative to the picks.
    :param end_offset: Short window end relative to the picks.
    :param max_delay: Maximum lag searched.
    :param min_coef: If the correlation of trace2's short window in trace1's
        long window does not reach it, the opposite configuration is tried as
        well and the best one is kept.
    :return: Tuple (signed coefficient, lag) with
        arrival1 - arrival2 = (pick1 - pick2) + lag. (0.0, 0.0) when no
        correlation can be computed.
    """
    short1 = _cut(trace1, pick1 + start_offset, pick1 + end_offset)
    short2 = _cut(trace2, pick2 + start_offset, pick2 + end_offset)
    long1 = _cut(trace1, pick1 + start_offset - max_delay,
                 pick1 + end_offset + max_delay)
    long2 = _cut(trace2, pick2 + start_offset - max_delay,
                 pick2 + end_offset + max_delay)

    best = None
    coarse = _best_match(long1, pick1, short2, pick2)
    if coarse is not None:
        best = _refine(trace1, pick1, short2, pick2, coarse[1]) or coarse

    if best is None or (min_coef is not None and abs(best[0]) < min_coef):
        coarse = _best_match(long2, pick2, short1, pick1)
        if coarse is not None:
            swapped = _refine(trace2, pick2, short1, pick1, coarse[1]) or \
                coarse
            swapped = (swapped[0], -swapped[1])
            if best is None or abs(swapped[0]) > abs(best[0]):
                best = swapped

    if best is None:
        return 0.0, 0.0
    coefficient, lag = best
    if abs(lag) > max_delay + trace1.stats.delta:
        return 0.0, 0.0
    return coefficient, lag


class XCorrCacheBuilder(object):
    """
    Computes the cross-correlations of the phase pairs of neighbour catalogs.

    :param waveform_manager: WaveformManager providing processed snippets.
    :param config: The Config.
    :param max_threads: Number of worker threads. Pairs are independent, the
        results are collected by the calling thread.
    :param show_progress: Display a progress bar.
    """
    def __init__(self, waveform_manager, config, max_threads=4,
                 show_progress=False):
        self.waveforms = waveform_manager
        self.config = config
        self.max_threads = max_threads
        self.show_progress = show_progress

    def _collect_pairs(self, neighbour_cats, cache):
        attempted = set()
        pairs = []
        for ref_id, catalog in neighbour_cats.items():
            ref_event = catalog.events[ref_id]
            for ref_phase in catalog.get_phases(ref_id):
                family = self.config.phase_family(ref_phase.type)
                if family is None:
                    continue
                station = catalog.stations[ref_phase.station_id]
                for event_id, event in catalog.events.items():
                    if event_id == ref_id:
                        continue
                    for phase in catalog.get_phases(event_id):
                        if phase.station_id != ref_phase.station_id or \
                                self.config.phase_family(phase.type) != family:
                            continue
                        # two synthetic phases tell nothing
                        if ref_phase.source != "catalog" and \
                                phase.source != "catalog":
                            continue
                        key = XCorrCache._canonical(
                            ref_id, event_id, station.id, family)[0]
                        if key in attempted or cache.has(*key):
                            continue
                        attempted.add(key)
                        pairs.append((ref_event, ref_phase, event, phase,
                                      station, family))
        return pairs

    def _snippet(self, event, phase, station, component, starttime, endtime):
        """
        Processed waveform of a phase. Returns None if the phase is a real
        pick failing the SNR gate.
        """
        channel = phase.channel_code[:-1] + component
        back_azimuth = None
        if component in ("R", "T"):
            back_azimuth = compute_distance(
                station.latitude, station.longitude, 0.0,
                event.latitude, event.longitude, 0.0)[1]
        trace = self.waveforms.get_waveform(
            station.network_code, station.station_code, phase.location_code,
            channel, phase.time + starttime, phase.time + endtime,
            back_azimuth)

        snr = self.config["snr"]
        if snr["min_snr"] > 0 and phase.source == "catalog":
            snr_trace = self.waveforms.get_waveform(
                station.network_code, station.station_code,
                phase.location_code, channel, phase.time + snr["noise_start"],
                phase.time + snr["signal_end"], back_azimuth)
            value = compute_snr(snr_trace, phase.time, snr["noise_start"],
                                 snr["noise_end"], snr["signal_start"],
                                 snr["signal_end"])
            if value < snr["min_snr"]:
                logger.debug("SNR %.2f too low for %s", value, phase)
                return None
        return trace

    def correlate_pair(self, event1, phase1, event2, phase2, station, family):
        """
        Cross correlate two phases at a station trying the configured
        components in order of priority.

        :return: XCorrResult if accepted, otherwise None.
        """
        params = self.config["xcorr"][family]
        starttime = params["start_offset"] - params["max_delay"]
        endtime = params["end_offset"] + params["max_delay"]
        for component in params["components"]:
            try:
                trace1 = self._snippet(event1, phase1, station, component,
                                       starttime, endtime)
                trace2 = self._snippet(event2, phase2, station, component,
                                       starttime, endtime)
            except NoDataError as exc:
                logger.debug("Component %s skipped: %s", component, exc)
                continue
            if trace1 is None or trace2 is None:
                return None
            coefficient, lag = xcorr_traces(
                trace1, phase1.time, trace2, phase2.time,
                params["start_offset"], params["end_offset"],
                params["max_delay"], params["min_coef"])
            coefficient = round(coefficient, 6)
            if abs(coefficient) < params["min_coef"]:
                logger.debug("Low coefficient %.3f for %s - %s", coefficient,
                             phase1, phase2)
                return None
            label = "%i_%i_%s_%s_%s" % (event1.id, event2.id, station.id,
                                        family, component)
            self.waveforms.write_debug(trace1, label + "_1")
            self.waveforms.write_debug(trace2, label + "_2")
            polarity = 1 if coefficient >= 0 else -1
            return XCorrResult(abs(coefficient), lag, polarity)
        return None

    def build(self, neighbour_cats, counters=None, cache=None):
        """
        Cross correlate the reference event of every neighbour catalog with
        its neighbours.

        :param neighbour_cats: Dict reference event id -> neighbour Catalog.
            Event ids must be consistent across the catalogs.
        :param counters: XCorrCounters updated with the attempts.
        :param cache: Existing XCorrCache to extend. Pairs already present are
            not computed again.
        :return: The XCorrCache.
        """
        if cache is None:
            cache = XCorrCache()
        if counters is None:
            counters = XCorrCounters()
        pairs = self._collect_pairs(neighbour_cats, cache)
        logger.info("Cross correlating %i phase pairs using up to %s threads",
                    len(pairs), self.max_threads)
        if not pairs:
            return cache

        pbar = None
        if self.show_progress:
            pbar = progressbar.ProgressBar(
                widgets=[
                    progressbar.Percentage(),
                    progressbar.Bar(),
                    progressbar.ETA(),
                ],
                max_value=len(pairs),
            )
            pbar.start()

        def collect(pair, result):
            event1, phase1, event2, phase2, station, family = pair
            theoretical = phase1.source != "catalog" or \
                phase2.source != "catalog"
            counters.add(family, theoretical, result is not None)
            if result is not None:
                cache.add(event1.id, event2.id, station.id, family, *result)

        done = 0
        if self.max_threads and self.max_threads > 1:
            with ThreadPoolExecutor(max_workers=self.max_threads) as executor:
                future_to_pair = {
                    executor.submit(self.correlate_pair, *pair): pair
                    for pair in pairs
                }
                for future in as_completed(future_to_pair):
                    pair = future_to_pair[future]
                    try:
                        result = future.result()
                    except Exception as exc:
                        logger.error("Error correlating %s - %s: %s",
                                     pair[1], pair[3], exc)
                        result = None
                    collect(pair, result)
                    done += 1
                    if pbar:
                        pbar.update(done)
        else:
            for pair in pairs:
                try:
                    result = self.correlate_pair(*pair)
                except Exception as exc:
                    logger.error("Error correlating %s - %s: %s",
                                 pair[1], pair[3], exc)
                    result = None
                collect(pair, result)
                done += 1
                if pbar:
                    pbar.update(done)
        if pbar:
            pbar.finish()
        logger.info("Cross correlation results:\n%s", counters)
        return cache

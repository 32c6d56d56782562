"""
Double-difference relocation controller.

Two relocation modes are supported:

* Catalog mode (relocate_catalog): the whole catalog is relocated. Step 1
  uses catalog differential times only and produces a background catalog,
  step 2 relocates it again adding cross-correlation differential times.
* Single event mode (relocate_single_event): an event is relocated against a
  background catalog whose events are kept fixed. relocate_events runs many
  of them in parallel.
"""
import json
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed

import networkx as nx

from .catalog import RelocInfo
from .catalog_io import write_catalog
from .config import Config
from .exceptions import (
    InsufficientNeighbors,
    InsufficientObservations,
    SolverFailure,
)
from .geo import compute_distance, move_point
from .missing_phases import add_missing_event_phases, fix_phases
from .neighbours import (
    select_neighbouring_events,
    select_neighbouring_events_catalog,
)
from .observations import (
    ObservationParams,
    add_observations,
    find_paired_phases,
)
from .solver import Solver
from .ttt import create_travel_time_table
from .waveform import WaveformManager
from .xcorr import XCorrCache, XCorrCacheBuilder, XCorrCounters

logger = logging.getLogger(__name__)

# Errors affecting a single event. They never abort a catalog relocation.
RELOCATION_ERRORS = (InsufficientNeighbors, InsufficientObservations,
                     SolverFailure)


class EventOutcome(object):
    """
    What happened to an event during a relocation.
    """
    RELOCATED = "relocated"
    EXCLUDED = "excluded"
    NOT_RELOCATED = "not_relocated"

    def __init__(self, event_id, status, step=None, reason=None):
        self.event_id = event_id
        self.status = status
        self.step = step
        self.reason = reason

    def to_dict(self):
        return {
            "event_id": self.event_id,
            "status": self.status,
            "step": self.step,
            "reason": None if self.reason is None else str(self.reason),
            "error": None if self.reason is None
            else type(self.reason).__name__,
        }

    def __repr__(self):
        string = "EventOutcome(%s %s" % (self.event_id, self.status)
        if self.step is not None:
            string += " step %s" % self.step
        if self.reason is not None:
            string += ": %s" % self.reason
        return string + ")"


class RelocationReport(object):
    """
    Per event outcomes of a relocation and the cross-correlation counters.
    """
    def __init__(self):
        self.outcomes = {}
        self.counters = XCorrCounters()

    def add(self, event_id, status, step=None, reason=None):
        self.outcomes[event_id] = EventOutcome(event_id, status, step, reason)

    def merge(self, other):
        self.outcomes.update(other.outcomes)
        self.counters.merge(other.counters)

    def _with_status(self, status):
        return sorted(ev_id for ev_id, outcome in self.outcomes.items()
                      if outcome.status == status)

    @property
    def relocated(self):
        return self._with_status(EventOutcome.RELOCATED)

    @property
    def excluded(self):
        return self._with_status(EventOutcome.EXCLUDED)

    @property
    def not_relocated(self):
        return self._with_status(EventOutcome.NOT_RELOCATED)

    def summary(self):
        lines = [
            "Relocated events: %i" % len(self.relocated),
            "Excluded events: %i" % len(self.excluded),
            "Events not relocated: %i" % len(self.not_relocated),
        ]
        for event_id in self.excluded + self.not_relocated:
            lines.append("  %s" % self.outcomes[event_id])
        lines.append(str(self.counters))
        return "\n".join(lines)

    def to_dict(self):
        return {
            "outcomes": [self.outcomes[ev_id].to_dict()
                         for ev_id in sorted(self.outcomes)],
            "xcorr_counters": self.counters.to_dict(),
        }


def _pair_graph(neighbour_cats):
    """
    Graph of the event pairs of the neighbour catalogs.
    """
    graph = nx.Graph()
    for ref_id, catalog in neighbour_cats.items():
        graph.add_node(ref_id)
        graph.add_edges_from((ref_id, ev_id) for ev_id in catalog.events
                             if ev_id != ref_id)
    return graph


def _find_clusters(graph):
    """
    Connected components of the event pair graph, biggest first.
    """
    return sorted(nx.connected_components(graph),
                  key=lambda c: (-len(c), min(c)))


class HypoDDRelocator(object):
    def __init__(
        self,
        working_dir,
        config=None,
        waveform_proxy=None,
        travel_time_table=None,
        max_threads=4,
        verbose=True,
        show_progress=False,
        cache_waveforms_on_disk=False,
        debug_waveforms=False,
        working_dir_cleanup=True,
        waveform_cache_capacity=1000,
    ):
        """
        :param working_dir: The working directory where all temporary and final
            files will be placed.
        :param config: A Config or a dict overriding the default configuration.
        :param waveform_proxy: WaveformProxy providing the waveforms for the
            cross-correlation. Without it step 2 only uses catalog
            differential times.
        :param travel_time_table: TravelTimeTable. Defaults to the one
            described by the "ttt" configuration section.
        :param max_threads: Threads used for the cross-correlation and for
            relocate_events.
        :param verbose: Echo the log messages on stdout.
        :param show_progress: Display progress bars while cross correlating.
        :param cache_waveforms_on_disk: Cache raw waveforms in
            working_dir/working_files/waveforms.
        :param debug_waveforms: Write the correlated snippets to
            working_dir/working_files/debug_waveforms.
        :param working_dir_cleanup: Remove the waveform cache and debug
            directories when a relocation is over.
        :param waveform_cache_capacity: Number of processed waveform snippets
            kept in memory.
        """
        self.working_dir = working_dir
        if not os.path.exists(working_dir):
            os.makedirs(working_dir)
        self.config = config if isinstance(config, Config) else Config(config)
        self.verbose = verbose
        self.show_progress = show_progress
        self.max_threads = max_threads
        self.working_dir_cleanup = working_dir_cleanup

        # Setup logging.
        self._log_handler = None
        self._setup_logging()
        # Configure the paths.
        self._configure_paths()

        if travel_time_table is None:
            travel_time_table = create_travel_time_table(self.config["ttt"])
        self.ttt = travel_time_table

        self.waveforms = None
        if waveform_proxy is not None:
            self.waveforms = WaveformManager.from_config(
                waveform_proxy, self.config,
                cache_capacity=waveform_cache_capacity,
                disk_cache_dir=self.paths["waveform_cache"]
                if cache_waveforms_on_disk else None,
                debug_dir=self.paths["debug_waveforms"]
                if debug_waveforms else None,
            )
        # Results of the last catalog relocation
        self.xcorr_cache = XCorrCache()
        # Results loaded by the caller, used by the next catalog relocation
        self._xcorr_seed = None

    def _setup_logging(self):
        """
        Log everything of the package to working_dir/log.txt.
        """
        log_file = os.path.abspath(os.path.join(self.working_dir, "log.txt"))
        package_logger = logging.getLogger(__name__.split(".")[0])
        package_logger.setLevel(logging.DEBUG)
        for handler in package_logger.handlers:
            if isinstance(handler, logging.FileHandler) and \
                    handler.baseFilename == log_file:
                self._log_handler = handler
                return
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s"))
        package_logger.addHandler(handler)
        self._log_handler = handler

    def close(self):
        """
        Detach the log file handler.
        """
        if self._log_handler is not None:
            logging.getLogger(__name__.split(".")[0]).removeHandler(
                self._log_handler)
            self._log_handler.close()
            self._log_handler = None

    def _configure_paths(self):
        """
        Central place to setup up all the paths needed.
        """
        self.paths = {}

        # Setup some necessary directories.
        for path in ["working_files", "output_files"]:
            self.paths[path] = os.path.join(self.working_dir, path)
            if not os.path.exists(self.paths[path]):
                os.makedirs(self.paths[path])
        self.paths["waveform_cache"] = os.path.join(
            self.paths["working_files"], "waveforms")
        self.paths["debug_waveforms"] = os.path.join(
            self.paths["working_files"], "debug_waveforms")

    def log(self, string, level="info"):
        """
        Prints a colorful and fancy string and logs the same string.

        level is the log level. Default is info which will result in a green
        output. So far everything else will be output with a red color.
        """
        logger.log(getattr(logging, level.upper(), logging.INFO), string)
        if not self.verbose:
            return
        # Info is green
        if level == "info":
            print("\033[0;32m" + ">>> " + string + "\033[1;m")
        # Everything else is currently red.
        else:
            level = level.lower().capitalize()
            print("\033[1;31m" + ">>> " + level + ": " + string + "\033[1;m")
        sys.stdout.flush()

    def _cleanup(self):
        if self.working_dir_cleanup and self.waveforms is not None:
            self.waveforms.cleanup()

    def save_cross_correlation_results(self, filename):
        self.xcorr_cache.save(filename)
        self.log(
            "Successfully saved cross correlation results to file: %s."
            % filename
        )

    def load_cross_correlation_results(self, filename, purge=False):
        """
        Load previously computed and saved cross correlation results. They are
        used by the next catalog relocation instead of computing the same
        pairs again, so they must refer to the event ids of that catalog.
        Each relocation otherwise starts from scratch.

        :param purge: If True results loaded before and not used yet will be
            discarded, if False they are updated with the loaded ones.
        """
        cache = XCorrCache.load(filename)
        if purge or self._xcorr_seed is None:
            self._xcorr_seed = cache
        else:
            self._xcorr_seed.update(cache)
        self.log(
            "Successfully loaded cross correlation results from file: "
            "%s." % filename
        )

    def _build_xcorr(self, neighbour_cats, counters, seed=None):
        """
        Cross correlate the neighbour catalogs, adding and fixing theoretical
        phases if enabled.

        :return: Tuple (neighbour catalogs, XCorrCache, XCorrCache before the
            theoretical phases were fixed).
        """
        if self.waveforms is None:
            self.log("No waveform data: cross-correlation skipped",
                     level="warning")
            return neighbour_cats, None, None
        artificial = self.config["artificial_phases"]["enable"]
        phase_family = self.config.phase_family
        if artificial:
            neighbour_cats = {
                ev_id: add_missing_event_phases(cat, ev_id, self.ttt,
                                                phase_family)
                for ev_id, cat in neighbour_cats.items()
            }
        cache = XCorrCache()
        if seed is not None:
            cache.update(seed)
        builder = XCorrCacheBuilder(self.waveforms, self.config,
                                    max_threads=self.max_threads,
                                    show_progress=self.show_progress)
        cache = builder.build(neighbour_cats, counters, cache)
        raw_cache = XCorrCache()
        raw_cache.update(cache)
        if artificial:
            neighbour_cats = {
                ev_id: fix_phases(cat, ev_id, cache, phase_family)
                for ev_id, cat in neighbour_cats.items()
            }
        return neighbour_cats, cache, raw_cache

    def _solve(self, neighbour_cats, graph, event_ids, cluster_id,
               xcorr_cache, fixed_neighbours):
        """
        Iteratively relocate the events `event_ids`, the reference events of
        `neighbour_cats`.

        :param graph: Event pair graph of `neighbour_cats`.
        :return: Tuple (dict event id -> relocated Event, dict event id ->
            exception for the events without observations).
        """
        solver_config = self.config["solver"]
        current = {ev_id: neighbour_cats[ev_id].events[ev_id]
                   for ev_id in event_ids}
        original = dict(current)
        # A pair is kept in one neighbour catalog only
        paired_phases = None
        if not fixed_neighbours:
            paired_phases = find_paired_phases(
                {ev_id: neighbour_cats[ev_id] for ev_id in event_ids},
                xcorr_cache, self.config.phase_family)
        failed = {}
        start_rms = None
        solver = None
        for iteration in range(solver_config["algo_iterations"]):
            params = ObservationParams(self.ttt, self.config.phase_family)
            solver = Solver.from_config(solver_config)
            for ev_id in sorted(current):
                catalog = neighbour_cats[ev_id]
                catalog = catalog.replace_events(
                    [current[_i] for _i in catalog.events if _i in current])
                add_observations(solver, catalog, ev_id, fixed_neighbours,
                                 xcorr_cache, params, self.config,
                                 paired_phases=paired_phases)
            for ev_id in list(current):
                if solver.num_observations(ev_id) == 0:
                    msg = "No observations for event %s" % ev_id
                    failed[ev_id] = InsufficientObservations(msg)
                    del current[ev_id]
            if not current:
                break
            changes = solver.solve()
            if start_rms is None:
                start_rms = dict(solver.residual_rms)
            for ev_id, (east, north, down, time) in changes.items():
                if ev_id not in current:
                    continue
                event = current[ev_id]
                latitude, longitude, depth = move_point(
                    event.latitude, event.longitude, event.depth,
                    east, north, down)
                current[ev_id] = event.replace(
                    latitude=latitude, longitude=longitude, depth=depth,
                    time=event.time + time)
            logger.debug("Cluster %s iteration %i done", cluster_id,
                         iteration + 1)

        relocated = {}
        for ev_id, event in current.items():
            before = original[ev_id]
            counts = solver.observation_counts(ev_id)
            info = RelocInfo(
                cluster_id=cluster_id,
                num_neighbours=graph.degree(ev_id),
                num_cc_p=counts["num_cc_p"],
                num_cc_s=counts["num_cc_s"],
                num_ct_p=counts["num_ct_p"],
                num_ct_s=counts["num_ct_s"],
                start_rms=start_rms.get(ev_id, 0.0),
                final_rms=solver.residual_rms.get(ev_id, 0.0),
                location_change=compute_distance(
                    before.latitude, before.longitude, before.depth,
                    event.latitude, event.longitude, event.depth)[0],
                depth_change=event.depth - before.depth,
                time_change=event.time - before.time,
            )
            relocated[ev_id] = event.replace(
                rms=info.final_rms, reloc_info=info)
        return relocated, failed

    def _relocate_catalog_step(self, catalog, step, report):
        self.log("Step %i: selecting neighbouring events of %i events" % (
            step, len(catalog)))
        neighbour_cats, excluded = select_neighbouring_events_catalog(
            catalog, phase_family=self.config.phase_family,
            **self.config.clustering(step))
        for event_id, exc in excluded.items():
            report.add(event_id, EventOutcome.EXCLUDED, step, exc)
            self.log("Event %i excluded: %s" % (event_id, exc),
                     level="warning")

        xcorr_cache = None
        if step == 2:
            self.log("Step 2: cross correlating waveforms")
            seed, self._xcorr_seed = self._xcorr_seed, None
            neighbour_cats, xcorr_cache, raw_cache = self._build_xcorr(
                neighbour_cats, report.counters, seed=seed)
            self.xcorr_cache = raw_cache if raw_cache is not None \
                else XCorrCache()

        relocated = {}
        graph = _pair_graph(neighbour_cats)
        clusters = _find_clusters(graph)
        self.log("Step %i: relocating %i clusters" % (step, len(clusters)))
        for cluster_id, cluster in enumerate(clusters, 1):
            try:
                events, failed = self._solve(
                    neighbour_cats, graph, cluster, cluster_id, xcorr_cache,
                    fixed_neighbours=False)
            except InsufficientObservations as exc:
                events, failed = {}, {ev_id: exc for ev_id in cluster}
            except SolverFailure as exc:
                self.log("Cluster %i not relocated: %s" % (cluster_id, exc),
                         level="warning")
                for event_id in cluster:
                    report.add(event_id, EventOutcome.NOT_RELOCATED, step,
                               exc)
                continue
            for event_id, exc in failed.items():
                excluded[event_id] = exc
                report.add(event_id, EventOutcome.EXCLUDED, step, exc)
                self.log("Event %i excluded: %s" % (event_id, exc),
                         level="warning")
            for event_id in events:
                report.add(event_id, EventOutcome.RELOCATED, step)
            relocated.update(events)

        result = catalog.remove_events(excluded)
        return result.replace_events(list(relocated.values()))

    def relocate_catalog(self, catalog, create_plots=False):
        """
        Relocate all the events of a catalog.

        The relocated catalog (CSV files) and the report are also written to
        working_dir/output_files.

        :param catalog: The Catalog to relocate.
        :param create_plots: If true, plots of the original and relocated
            locations are created in working_dir/output_files.
        :return: Tuple (relocated Catalog, RelocationReport). Excluded events
            are not part of the relocated catalog, events that could not be
            relocated keep their input location.
        """
        self.log("Starting relocation of %s" % catalog)
        report = RelocationReport()
        try:
            background = self._relocate_catalog_step(catalog, 1, report)
            relocated = self._relocate_catalog_step(background, 2, report)
        finally:
            self._cleanup()

        write_catalog(relocated, self.paths["output_files"])
        report_file = os.path.join(self.paths["output_files"],
                                   "relocation_report.json")
        with open(report_file, "w") as open_file:
            json.dump(report.to_dict(), open_file, indent=2)
        if create_plots:
            from .plotting import plot_relocation
            plot_relocation(catalog, relocated, self.paths["output_files"])
        self.log(report.summary())
        return relocated, report

    def _relocate_single_step(self, background, event_catalog, event_id,
                              step, report):
        event = event_catalog.events[event_id]
        neighbour_cat = select_neighbouring_events(
            background, event, event_catalog,
            phase_family=self.config.phase_family,
            **self.config.clustering(step))
        ref_id = neighbour_cat.find_event(event)
        neighbour_cats = {ref_id: neighbour_cat}

        xcorr_cache = None
        if step == 2:
            neighbour_cats, xcorr_cache, _ = self._build_xcorr(
                neighbour_cats, report.counters)

        relocated, failed = self._solve(neighbour_cats,
                                        _pair_graph(neighbour_cats), [ref_id],
                                        1, xcorr_cache, fixed_neighbours=True)
        if ref_id in failed:
            raise failed[ref_id]
        return event_catalog.replace_events(
            [relocated[ref_id].replace(id=event_id)])

    def _relocate_single_event(self, background, event_catalog, event_id):
        report = RelocationReport()
        current = event_catalog.extract_events([event_id])
        step = None
        try:
            current = self._relocate_single_step(background, current,
                                                 event_id, 1, report)
            step = 1
        except RELOCATION_ERRORS as exc:
            self.log("Event %i: step 1 failed: %s" % (event_id, exc),
                     level="warning")
        try:
            current = self._relocate_single_step(background, current,
                                                 event_id, 2, report)
            step = 2
        except RELOCATION_ERRORS as exc:
            self.log("Event %i: step 2 failed: %s" % (event_id, exc),
                     level="warning")
            if step is None:
                raise
        report.add(event_id, EventOutcome.RELOCATED, step)
        return current, report

    def relocate_single_event(self, background, event_catalog, event_id=None):
        """
        Relocate an event against a background catalog. The background events
        are not moved.

        :param background: The (relocated) background Catalog.
        :param event_catalog: Catalog containing the event and its phases.
        :param event_id: Id of the event in event_catalog. Can be omitted if
            event_catalog has only one event.
        :return: Tuple (Catalog with the relocated event, RelocationReport).
        :raises InsufficientNeighbors, InsufficientObservations,
            SolverFailure: If the event cannot be relocated.
        """
        if event_id is None:
            if len(event_catalog) != 1:
                msg = "event_id is needed for catalogs with several events"
                raise ValueError(msg)
            event_id = next(iter(event_catalog.events))
        try:
            return self._relocate_single_event(background, event_catalog,
                                               event_id)
        finally:
            self._cleanup()

    def relocate_events(self, background, event_catalog, event_ids=None):
        """
        Relocate many events against the same background catalog, each one
        independently in single event mode.

        :return: Tuple (Catalog with the relocated events, RelocationReport).
            Events that could not be relocated are reported and not part of
            the returned catalog.
        """
        if event_ids is None:
            event_ids = sorted(event_catalog.events)
        report = RelocationReport()
        relocated = []
        self.log("Relocating %i events against %s" % (len(event_ids),
                                                      background))
        try:
            with ThreadPoolExecutor(max_workers=self.max_threads) as executor:
                future_to_id = {
                    executor.submit(self._relocate_single_event, background,
                                    event_catalog, event_id): event_id
                    for event_id in event_ids
                }
                for future in as_completed(future_to_id):
                    event_id = future_to_id[future]
                    try:
                        result, event_report = future.result()
                    except (InsufficientNeighbors,
                            InsufficientObservations) as exc:
                        report.add(event_id, EventOutcome.EXCLUDED, None, exc)
                        continue
                    except SolverFailure as exc:
                        report.add(event_id, EventOutcome.NOT_RELOCATED, None,
                                   exc)
                        continue
                    report.merge(event_report)
                    relocated.append(result.events[event_id])
        finally:
            self._cleanup()

        result = event_catalog.extract_events([ev.id for ev in relocated])
        result = result.replace_events(relocated)
        self.log(report.summary())
        return result, report

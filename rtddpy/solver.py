"""
Double-difference least squares solver.

Observations are differential travel times between two events at a station
(or absolute travel times of a single event). Each observation contributes a
row to the linearized system

    G_1 . dm_1 - G_2 . dm_2 = r

where dm = (east, north, down, time) is the hypocenter change of an event,
r the residual (observed minus predicted differential travel time) and

    G = (-sin(i) sin(az) / v, -sin(i) cos(az) / v, -cos(i) / v, 1)

with i the takeoff angle, az the source-station azimuth and v the velocity at
the source. Events whose location is fixed have no unknowns. The weighted,
column normalized system is solved with scipy's LSMR or LSQR.
"""
import logging
import math

import numpy as np
import scipy.sparse
import scipy.sparse.linalg

from .exceptions import InsufficientObservations, SolverDivergence
from .exceptions import SolverFailure

logger = logging.getLogger(__name__)


class Solver(object):
    """
    :param solver_type: "LSMR" or "LSQR".
    :param damping_factor: Damping of the least squares problem.
    :param mean_shift_weight: Weight of the constraint forcing the mean change
        of the free events to zero. 0 disables it.
    :param max_iterations: Iteration limit of the least squares algorithm.
    :param downweighting_by_residual: Rows with residuals above this many
        median absolute deviations get zero weight, the others are bi-weight
        scaled. 0 disables it.
    :param use_observation_weights: If False all a priori weights are 1.
    """
    def __init__(self, solver_type="LSMR", damping_factor=0.0,
                 mean_shift_weight=0.0, max_iterations=100,
                 downweighting_by_residual=0.0,
                 use_observation_weights=True):
        self.solver_type = solver_type.upper()
        if self.solver_type not in ("LSMR", "LSQR"):
            raise SolverFailure("Unknown solver type %s" % solver_type)
        self.damping_factor = damping_factor
        self.mean_shift_weight = mean_shift_weight
        self.max_iterations = max_iterations
        self.downweighting_by_residual = downweighting_by_residual
        self.use_observation_weights = use_observation_weights
        self._params = {}
        self._free_events = set()
        self._observations = []
        self.residual_rms = {}

    @classmethod
    def from_config(cls, solver_config):
        return cls(
            solver_type=solver_config["type"],
            damping_factor=solver_config["damping_factor"],
            mean_shift_weight=solver_config["mean_shift_constraint_weight"],
            max_iterations=solver_config["solver_iterations"],
            downweighting_by_residual=solver_config[
                "downweighting_by_residual"],
            use_observation_weights=solver_config["use_observation_weights"],
        )

    def add_observation_params(self, event_id, station_id, phase_family,
                               travel_time, azimuth, takeoff_angle, velocity,
                               compute_changes):
        """
        Travel time and ray geometry of a phase of an event.

        :param compute_changes: False if the event location is fixed.
        """
        self._params[(event_id, station_id, phase_family)] = (
            travel_time, azimuth, takeoff_angle, velocity)
        if compute_changes:
            self._free_events.add(event_id)

    def add_observation(self, event_id1, event_id2, station_id, phase_family,
                        observed, weight, is_xcorr=False):
        """
        :param event_id2: None for an absolute travel time observation.
        :param observed: Observed travel time difference (event 1 minus
            event 2) or observed travel time if event_id2 is None.
        :param weight: A priori weight.
        """
        for event_id in (event_id1, event_id2):
            if event_id is None:
                continue
            if (event_id, station_id, phase_family) not in self._params:
                msg = "Missing observation parameters for event %s %s %s" % (
                    event_id, station_id, phase_family)
                raise SolverFailure(msg)
        self._observations.append((event_id1, event_id2, station_id,
                                   phase_family, observed, weight, is_xcorr))

    def num_observations(self, event_id):
        return sum(1 for obs in self._observations
                   if event_id in (obs[0], obs[1]))

    def observation_counts(self, event_id):
        """
        Observations of an event as either event of the pair: differential
        times from cross-correlation (num_cc_p, num_cc_s) and from the catalog
        (num_ct_p, num_ct_s), absolute times (num_abs).
        """
        counts = {"num_cc_p": 0, "num_cc_s": 0, "num_ct_p": 0, "num_ct_s": 0,
                  "num_abs": 0}
        for event_id1, event_id2, _, family, _, _, is_xcorr in \
                self._observations:
            if event_id not in (event_id1, event_id2):
                continue
            if event_id2 is None:
                counts["num_abs"] += 1
            else:
                counts[("num_cc_" if is_xcorr else "num_ct_") +
                       family.lower()] += 1
        return counts

    def _residual(self, observation):
        event_id1, event_id2, station_id, family, observed = observation[:5]
        predicted = self._params[(event_id1, station_id, family)][0]
        if event_id2 is not None:
            predicted -= self._params[(event_id2, station_id, family)][0]
        return observed - predicted

    def _partials(self, event_id, station_id, family):
        _, azimuth, takeoff_angle, velocity = self._params[
            (event_id, station_id, family)]
        azimuth = math.radians(azimuth)
        takeoff_angle = math.radians(takeoff_angle)
        return (
            -math.sin(takeoff_angle) * math.sin(azimuth) / velocity,
            -math.sin(takeoff_angle) * math.cos(azimuth) / velocity,
            -math.cos(takeoff_angle) / velocity,
            1.0,
        )

    def _residual_weights(self, residuals):
        weights = np.ones(len(residuals))
        if self.downweighting_by_residual <= 0 or len(residuals) < 3:
            return weights
        median = np.median(residuals)
        mad = np.median(np.abs(residuals - median))
        if mad <= 0:
            return weights
        cutoff = self.downweighting_by_residual * mad
        scaled = (residuals - median) / cutoff
        weights = (1.0 - scaled ** 2) ** 2
        weights[np.abs(scaled) >= 1.0] = 0.0
        return weights

    def solve(self):
        """
        :return: Dict event id -> (east km, north km, down km, time s) change
            for every free event.
        """
        free_events = sorted(self._free_events)
        if not self._observations or not free_events:
            raise InsufficientObservations("No observations to solve for")
        columns = {event_id: 4 * _i for _i, event_id in enumerate(free_events)}

        residuals = np.array([self._residual(obs)
                              for obs in self._observations])
        if self.use_observation_weights:
            weights = np.array([obs[5] for obs in self._observations])
        else:
            weights = np.ones(len(self._observations))
        weights = weights * self._residual_weights(residuals)

        for event_id in free_events:
            mask = np.array([event_id in (obs[0], obs[1])
                             for obs in self._observations])
            self.residual_rms[event_id] = float(
                np.sqrt(np.mean(residuals[mask] ** 2))) if mask.any() else 0.0

        row_idxs = []
        column_idxs = []
        nonzero_values = []
        rhs = []
        num_rows = 0
        for obs, residual, weight in zip(self._observations, residuals,
                                         weights):
            if weight <= 0:
                continue
            event_id1, event_id2, station_id, family = obs[:4]
            used = False
            for event_id, sign in ((event_id1, 1.0), (event_id2, -1.0)):
                if event_id is None or event_id not in columns:
                    continue
                partials = self._partials(event_id, station_id, family)
                for _j, value in enumerate(partials):
                    row_idxs.append(num_rows)
                    column_idxs.append(columns[event_id] + _j)
                    nonzero_values.append(sign * weight * value)
                used = True
            if not used:
                continue
            rhs.append(weight * residual)
            num_rows += 1
        if num_rows == 0:
            raise InsufficientObservations("All observations down-weighted")

        if self.mean_shift_weight > 0 and len(free_events) > 1:
            for _j in range(4):
                for event_id in free_events:
                    row_idxs.append(num_rows)
                    column_idxs.append(columns[event_id] + _j)
                    nonzero_values.append(self.mean_shift_weight)
                rhs.append(0.0)
                num_rows += 1

        matrix = scipy.sparse.coo_matrix(
            (nonzero_values, (row_idxs, column_idxs)),
            shape=(num_rows, 4 * len(free_events)),
        ).tocsc()
        norms = np.sqrt(np.asarray(matrix.multiply(matrix).sum(axis=0))
                        ).ravel()
        norms[norms == 0] = 1.0
        matrix = matrix @ scipy.sparse.diags(1.0 / norms)
        rhs = np.array(rhs)

        if self.solver_type == "LSMR":
            result = scipy.sparse.linalg.lsmr(
                matrix, rhs, damp=self.damping_factor,
                maxiter=self.max_iterations)
        else:
            result = scipy.sparse.linalg.lsqr(
                matrix, rhs, damp=self.damping_factor,
                iter_lim=self.max_iterations)
        x = result[0] / norms
        if not np.all(np.isfinite(x)):
            raise SolverDivergence("Solver returned a non finite solution")
        logger.debug("Solved %i rows, %i events: istop=%i itn=%i", num_rows,
                     len(free_events), result[1], result[2])

        return {
            event_id: tuple(float(_v) for _v in x[col:col + 4])
            for event_id, col in columns.items()
        }

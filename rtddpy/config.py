"""
Configuration of the relocation engine.

The configuration is a nested dictionary. User supplied values are merged on
top of DEFAULT_CONFIG so only the values that differ from the defaults need to
be given, e.g.:

    cfg = Config({"solver": {"type": "LSQR", "algo_iterations": 10}})
    cfg = Config.from_file("relocation.json")
"""
import copy
import json

from .exceptions import ConfigError


# Clustering parameters shared by both relocation steps. -1 means unlimited.
_CLUSTERING = {
    # Min weight of phases required (0-1)
    "min_weight": 0.0,
    # Min epicenter-station to inter-event distance ratio required
    "min_es_to_ie_ratio": 0.0,
    # Min/max epicenter-station distance (km)
    "min_es_dist": 0.0,
    "max_es_dist": -1,
    # Min/max neighbours (the furthest events are discarded)
    "min_num_neigh": 1,
    "max_num_neigh": -1,
    # Min/max differential times per event pair (P+S)
    "min_dt_per_evt": 1,
    "max_dt_per_evt": -1,
    # Waldhauser 2009: neighbours are sampled within concentric, vertically
    # elongated ellipsoidal layers, each one split in 8 quadrants.
    "num_ellipsoids": 5,
    "max_ellipsoid_size": 10.0,
}

DEFAULT_CONFIG = {
    "valid_p_phases": ["Pg", "P", "Px"],
    "valid_s_phases": ["Sg", "S", "Sx"],
    "step1_clustering": copy.deepcopy(_CLUSTERING),
    "step2_clustering": copy.deepcopy(_CLUSTERING),
    "xcorr": {
        "P": {
            "min_coef": 0.50,
            "start_offset": -0.50,
            "end_offset": 0.50,
            "max_delay": 0.50,
            "components": ["Z"],
        },
        "S": {
            "min_coef": 0.50,
            "start_offset": -0.50,
            "end_offset": 0.75,
            "max_delay": 0.50,
            "components": ["T", "Z"],
        },
    },
    "artificial_phases": {"enable": True},
    "waveform_filter": {
        "filter": {
            "type": "bandpass",
            "freqmin": 1.5,
            "freqmax": 15.0,
            "corners": 3,
        },
        "resample_freq": 0.0,
    },
    "snr": {
        "min_snr": 0.0,
        "noise_start": -3.0,
        "noise_end": -0.35,
        "signal_start": -0.35,
        "signal_end": 1.0,
    },
    "ttt": {"type": "constant", "model": "iasp91", "vp": 5.8, "vs": 3.36},
    "solver": {
        "type": "LSMR",
        "use_observation_weights": True,
        "damping_factor": 0.01,
        "mean_shift_constraint_weight": 0.0,
        "solver_iterations": 100,
        "algo_iterations": 20,
        "downweighting_by_residual": 10.0,
        "catalog_obs_weight": 0.5,
        "absolute_obs_weight": 0.1,
    },
}


def _deep_update(target, source, path=""):
    for key, value in source.items():
        if key not in target:
            msg = "Unknown configuration key '%s%s'." % (path, key)
            raise ConfigError(msg)
        if isinstance(target[key], dict) and isinstance(value, dict) \
                and key not in ("filter",):
            _deep_update(target[key], value, path + key + ".")
        else:
            target[key] = copy.deepcopy(value)


class Config(object):
    """
    Validated relocation configuration.

    :param config: Dictionary with the values overriding DEFAULT_CONFIG.
    """
    def __init__(self, config=None):
        self._config = copy.deepcopy(DEFAULT_CONFIG)
        if config is not None:
            if isinstance(config, Config):
                config = config.to_dict()
            _deep_update(self._config, config)
        self.validate()

    @classmethod
    def from_file(cls, filename):
        with open(filename, "r") as open_file:
            return cls(json.load(open_file))

    def save(self, filename):
        with open(filename, "w") as open_file:
            json.dump(self._config, open_file, indent=2)

    def to_dict(self):
        return copy.deepcopy(self._config)

    def __getitem__(self, key):
        return self._config[key]

    def __repr__(self):
        return "Config(%r)" % self._config

    def clustering(self, step):
        if step not in (1, 2):
            raise ConfigError("Clustering step must be 1 or 2, not %s" % step)
        return self._config["step%i_clustering" % step]

    def phase_family(self, phase_type):
        """
        Returns 'P' or 'S' for a phase type tag or None if the tag is not
        part of the valid phases.
        """
        if phase_type in self._config["valid_p_phases"]:
            return "P"
        if phase_type in self._config["valid_s_phases"]:
            return "S"
        return None

    def validate(self):
        for step in (1, 2):
            params = self.clustering(step)
            if not 0.0 <= params["min_weight"] <= 1.0:
                raise ConfigError("min_weight must be in the [0,1] interval")
            if params["min_num_neigh"] < 0:
                raise ConfigError("min_num_neigh cannot be negative")
            if 0 <= params["max_num_neigh"] < params["min_num_neigh"]:
                msg = "max_num_neigh must be >= min_num_neigh (or -1)"
                raise ConfigError(msg)
            if 0 <= params["max_dt_per_evt"] < params["min_dt_per_evt"]:
                msg = "max_dt_per_evt must be >= min_dt_per_evt (or -1)"
                raise ConfigError(msg)
            if params["num_ellipsoids"] < 0:
                raise ConfigError("num_ellipsoids cannot be negative")
        for phase in ("P", "S"):
            xcorr = self._config["xcorr"][phase]
            if not 0.0 <= xcorr["min_coef"] <= 1.0:
                raise ConfigError("xcorr min_coef must be in the [0,1] interval")
            if xcorr["start_offset"] >= xcorr["end_offset"]:
                msg = "xcorr start_offset has to be smaller than end_offset."
                raise ConfigError(msg)
            if xcorr["max_delay"] < 0:
                raise ConfigError("xcorr max_delay cannot be negative")
            if not xcorr["components"]:
                raise ConfigError("xcorr components list cannot be empty")
        wf_filter = self._config["waveform_filter"]["filter"]
        if wf_filter is not None and "type" not in wf_filter:
            raise ConfigError("waveform filter needs a 'type'")
        snr = self._config["snr"]
        if snr["min_snr"] > 0:
            if snr["noise_start"] >= snr["noise_end"] or \
                    snr["signal_start"] >= snr["signal_end"]:
                raise ConfigError("Invalid SNR noise/signal windows")
        solver = self._config["solver"]
        if solver["type"].upper() not in ("LSMR", "LSQR"):
            msg = "Solver type %s unknown. Use LSMR or LSQR." % solver["type"]
            raise ConfigError(msg)
        if solver["algo_iterations"] < 1 or solver["solver_iterations"] < 1:
            raise ConfigError("Solver iteration counts must be positive")
        if solver["damping_factor"] < 0 or \
                solver["mean_shift_constraint_weight"] < 0:
            raise ConfigError("Solver weights cannot be negative")
        if self._config["ttt"]["type"] not in ("constant", "taup"):
            msg = "Travel time table type %s unknown." % self._config["ttt"]["type"]
            raise ConfigError(msg)

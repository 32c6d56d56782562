"""
HypoDD Relocator Example

This example relocates a QuakeML catalog in two steps:
1. Catalog mode: the whole catalog is relocated (catalog differential times,
   then cross-correlation differential times).
2. Single event mode: new events are relocated against the relocated
   catalog, which is kept fixed.
"""

import glob

from obspy import read_events, read_inventory

from rtddpy import Config, FileWaveformProxy, HypoDDRelocator
from rtddpy.obspy_io import catalog_from_obspy, catalog_to_obspy

config = Config({
    "step1_clustering": {
        "min_weight": 0.05,
        "max_es_dist": 80.0,
        "min_num_neigh": 4,
        "max_num_neigh": 40,
        "min_dt_per_evt": 4,
        "num_ellipsoids": 5,
        "max_ellipsoid_size": 5.0,
    },
    "step2_clustering": {
        "max_es_dist": 80.0,
        "min_num_neigh": 4,
        "max_num_neigh": 80,
        "min_dt_per_evt": 4,
        "num_ellipsoids": 0,
        "max_ellipsoid_size": 5.0,
    },
    "xcorr": {
        "P": {"min_coef": 0.6, "start_offset": -0.05, "end_offset": 0.2,
              "max_delay": 0.05},
        "S": {"min_coef": 0.6, "start_offset": -0.05, "end_offset": 0.4,
              "max_delay": 0.1},
    },
    "waveform_filter": {
        "filter": {"type": "bandpass", "freqmin": 2.0, "freqmax": 15.0,
                   "corners": 3},
    },
    "ttt": {"type": "taup", "model": "iasp91"},
})

events = read_events(
    "/Users/lion/Documents/Dropbox/Masterarbeit/"
    + "data/final_data/all_obspyck_events.xml"
)
inventory = None
for filename in glob.glob(
        "/Users/lion/Documents/Dropbox/"
        + "Masterarbeit/data/final_data/station_data/*.xml"):
    if inventory is None:
        inventory = read_inventory(filename)
    else:
        inventory += read_inventory(filename)
catalog = catalog_from_obspy(events, inventory)

waveforms = FileWaveformProxy(
    glob.glob(
        "/Users/lion/Documents/Dropbox/"
        + "Masterarbeit/data/final_data/waveform_data/*.mseed"
    )
)

relocator = HypoDDRelocator(
    working_dir="relocator_working_dir",
    config=config,
    waveform_proxy=waveforms,
    max_threads=8,
    show_progress=True,
    cache_waveforms_on_disk=True,
)

# Cross correlation results of a previous run are reused.
# relocator.load_cross_correlation_results("xcorr.json")
relocated, report = relocator.relocate_catalog(catalog, create_plots=True)
relocator.save_cross_correlation_results("xcorr.json")
print(report.summary())

catalog_to_obspy(relocated, events).write("relocated_events.xml",
                                          format="quakeml")

# Relocate the events of another file against the relocated catalog.
# new_catalog = catalog_from_obspy(read_events("new_events.xml"), inventory)
# new_relocated, new_report = relocator.relocate_events(relocated,
#                                                       new_catalog)

"""
Plots of original and relocated event locations.
"""
import logging
import os

logger = logging.getLogger(__name__)


def _scatter(plt, latitudes, longitudes, depths, colors, marker_size,
             limits=None):
    """
    Latitude/depth, longitude/depth and map view of a set of locations.

    :param limits: Axis limits of a previous figure to reuse, so that both
        figures are comparable.
    :return: The axis limits of the three subplots.
    """
    new_limits = []
    for index, (subplot, xs, ys, xlabel, ylabel) in enumerate([
            (221, latitudes, depths, "Latitude", "Depth in km"),
            (222, longitudes, depths, "Longitude", "Depth in km"),
            (212, longitudes, latitudes, "Longitude", "Latitude")]):
        plt.subplot(subplot)
        plt.scatter(xs, ys, s=marker_size ** 2, c=colors)
        plt.xlabel(xlabel)
        plt.ylabel(ylabel)
        if limits is not None:
            plt.xlim(limits[index][0])
            plt.ylim(limits[index][1])
        elif ylabel == "Depth in km":
            # Invert the depth axis.
            plt.ylim(plt.ylim()[::-1])
        new_limits.append((plt.xlim(), plt.ylim()))
    return new_limits


def plot_relocation(original, relocated, output_dir, marker_size=2):
    """
    Creates original_event_location.pdf and relocated_event_location.pdf in
    output_dir.

    Events are colored by cluster id. Events missing from the relocated
    catalog or not relocated are grey and plotted at their original location
    in both figures.

    :param original: The Catalog before the relocation.
    :param relocated: The Catalog returned by the relocation.
    :return: Tuple of the two file names.
    """
    import matplotlib.pyplot as plt
    from matplotlib.colors import ColorConverter

    original_filename = os.path.join(output_dir,
                                     "original_event_location.pdf")
    relocated_filename = os.path.join(output_dir,
                                      "relocated_event_location.pdf")

    color_invalid = ColorConverter().to_rgba("grey")
    cmap = plt.get_cmap("Paired", 12)

    before = ([], [], [])
    after = ([], [], [])
    colors = []
    for event in original:
        new_event = relocated.events.get(event.id)
        if new_event is None or new_event.reloc_info is None:
            new_event = event
            colors.append(color_invalid)
        else:
            colors.append(cmap(new_event.reloc_info.cluster_id % 12))
        for values, ev in ((before, event), (after, new_event)):
            values[0].append(ev.latitude)
            values[1].append(ev.longitude)
            values[2].append(ev.depth)

    figure = plt.figure()
    try:
        limits = _scatter(plt, before[0], before[1], before[2], colors,
                          marker_size)
        plt.savefig(original_filename)
        logger.info("Output figure: %s", original_filename)

        plt.clf()
        _scatter(plt, after[0], after[1], after[2], colors, marker_size,
                 limits=limits)
        plt.savefig(relocated_filename)
        logger.info("Output figure: %s", relocated_filename)
    finally:
        plt.close(figure)
    return original_filename, relocated_filename

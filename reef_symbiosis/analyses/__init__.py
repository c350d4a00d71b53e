"""One module per analysis. Each exposes NAME, DESCRIPTION, run(cfg) and main(argv)."""

from collections import OrderedDict

from . import (
    algal_overgrowth,
    coral_growth,
    coral_survival,
    crab_feeding,
    crab_retention,
    epibiont_counts,
    growth_pathways,
    microbiome,
    symbiont_density,
    tissue_nutrients,
    wound_healing,
)

ANALYSES = OrderedDict((m.NAME, m) for m in (
    coral_growth,
    crab_retention,
    algal_overgrowth,
    symbiont_density,
    epibiont_counts,
    wound_healing,
    coral_survival,
    growth_pathways,
    microbiome,
    crab_feeding,
    tissue_nutrients,
))


def get_analysis(name: str):
    if name not in ANALYSES:
        raise KeyError("Unknown analysis '{}'. Available: {}".format(name, ", ".join(ANALYSES)))
    return ANALYSES[name]

"""Microbial community composition and diversity.

Reads per taxon are pivoted to a coral x taxon table, rare taxa are dropped,
counts are transformed (config [Community] transform) and compared with
Bray-Curtis dissimilarity:

  - PERMANOVA (sequential) on nutrient + crab + wound + algae + nutrient:crab,
    permutations restricted within blocks;
  - PERMDISP for nutrient and for crab, since PERMANOVA confounds location
    with dispersion;
  - PCoA ordination;
  - Shannon diversity (untransformed counts) in an LMM with a tank intercept.
"""

import logging

import numpy as np

from .. import community, data, plotting
from ..models import build_formula, fit_model
from ..reporting import print_table, report_model, write_table
from . import base

logger = logging.getLogger(__name__)

NAME = "microbiome"
DESCRIPTION = "Bray-Curtis PERMANOVA, PERMDISP and PCoA of the coral microbiome, plus a Shannon diversity LMM"

PERMANOVA_TERMS = ["nutrient", "crab", "wound", "algae", "nutrient:crab"]
DISPERSION_FACTORS = ["nutrient", "crab"]
SHANNON_TERMS = ["nutrient_enriched", "crab_present", "wounded", "algae_present"]


def load(cfg, meta=None):
    meta = meta if meta is not None else data.load_metadata(cfg)
    long_df = data.load_dataset(cfg, "microbiome", required=[data.ID_COL, "taxon", "reads"])
    unknown = sorted(set(long_df[data.ID_COL]) - set(meta[data.ID_COL]))
    if unknown:
        raise ValueError("microbiome: coral_id values not in metadata: {}".format(unknown[:20]))
    counts = community.community_matrix(long_df, data.ID_COL, "taxon", "reads")
    samples = meta.set_index(data.ID_COL).loc[counts.index]
    return counts, samples


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    rng = np.random.default_rng(cfg.seed)
    counts, samples = load(cfg)
    print("Community table: {} samples x {} taxa".format(*counts.shape))

    mat = community.transform(community.filter_rare(counts, cfg.min_prevalence), cfg.transform)
    dist = community.bray_curtis(mat)
    write_table(dist, outdir / "bray_curtis.csv", index=True)

    perm = community.permanova(dist, samples, PERMANOVA_TERMS, n_perm=cfg.n_perm, rng=rng, strata="block")
    write_table(perm, outdir / "permanova.csv")
    print_table(perm, title="PERMANOVA (Bray-Curtis, {} permutations within block)".format(cfg.n_perm))

    parts = [base.summary_frame(NAME, "permanova", perm[~perm["term"].isin(["Residual", "Total"])]
                                .assign(test="pseudo_F", statistic=perm["F"]))]
    for factor in DISPERSION_FACTORS:
        disp, _ = community.permdisp(dist, samples[factor], n_perm=cfg.n_perm, rng=rng)
        write_table(disp, outdir / "permdisp_{}.csv".format(factor))
        print_table(disp, title="PERMDISP by {}".format(factor))
        overall = disp[disp["group"] == "overall"]
        parts.append(base.summary_frame(NAME, "permdisp", overall.assign(
            term=factor, test="F", statistic=overall["F"], df=float(samples[factor].nunique() - 1))))

    coords, explained = community.pcoa(dist)
    write_table(coords, outdir / "pcoa_coordinates.csv", index=True)
    plotting.ordination_plot(coords, explained.to_numpy(), samples, color="nutrient", marker="crab",
                             outpath=outdir / "pcoa.png", title="PCoA of Bray-Curtis dissimilarity", dpi=cfg.dpi)

    div = samples.assign(shannon=community.shannon_diversity(counts)).reset_index()
    write_table(div[[data.ID_COL, "shannon"]], outdir / "shannon.csv")
    fit = fit_model(div, build_formula("shannon", SHANNON_TERMS), "gaussian", groups="tank", name="shannon")
    rep = report_model(fit, cfg, outdir, terms=SHANNON_TERMS, rng=rng)
    parts.append(base.summary_frame(NAME, fit.name, rep["term_tests"]))
    plotting.treatment_boxplot(div, x="crab", y="shannon", hue="nutrient", outpath=outdir / "shannon_by_treatment.png",
                               ylabel="Shannon diversity (H')", dpi=cfg.dpi)

    return base.finish(NAME, parts, outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()

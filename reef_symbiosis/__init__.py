"""Statistical analyses for the coral / guard crab / algae enrichment experiment.

Each analysis is a linear pipeline (read -> clean/join -> fit -> diagnose ->
report -> plot) living in :mod:`reef_symbiosis.analyses`. The shared layers
are:

  - config       INI configuration
  - data         CSV loading, column cleaning, treatment coding, joins
  - models       OLS / GLM / mixed-model fitting and model comparison
  - diagnostics  simulated scaled residuals and assumption tests
  - survival     Kaplan-Meier, log-rank and Cox models
  - sem          piecewise structural equation models
  - community    Bray-Curtis, PERMANOVA, PERMDISP, PCoA
  - comparisons  t-tests, ANOVA, Tukey HSD
"""

__version__ = "0.1.0"

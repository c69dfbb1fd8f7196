"""
Stacked spatial prediction of agronomic site indices and management zones.

Modules:
    config              – paths, seeds, hyperparameter grids, study definitions
    s01_partition       – stratified calibration / validation split
    s02_covariates      – covariate grid I/O, site points, point extraction
    learners            – statsmodels-backed GLM, stepwise GLM and GAM classifiers
    s03_base_models     – cross-validated base learners (gm, gl1, gl2, rf, gb, nn)
    s04_spatial_predict – per-model probability grids
    s05_stacking        – stacking meta-model on held-out predictions
    s06_roc_mask        – ROC thresholds and management-zone mask
    s07_outputs         – prediction rasters, site-level check, tables
    s08_yield_potential – yield mixed model and quantile uncertainty
    plots               – diagnostic figures
    run_all             – orchestrator: run every stage + save report
"""

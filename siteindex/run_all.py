"""
Orchestrator: run the stacked site-index pipeline for one study and write
its report.

Usage:
    python -m siteindex.run_all --study OAF --sites data/oaf_sites.csv --grids data/grids
    python -m siteindex.run_all --study OCP --sites data/ocp_sites.csv --grids data/grids --basemap
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

import joblib
import pandas as pd

from . import config, plots
from .file_utils import result_path
from .learners import StepAICGLM
from .s01_partition import label_vector, partition
from .s02_covariates import extract_covariates, load_grids, load_sites
from .s03_base_models import MODEL_LABELS, resolve_feature_cols, train_all, variable_importance
from .s04_spatial_predict import predict_stack
from .s05_stacking import predict_stacked, train_stacker, validation_features
from .s06_roc_mask import evaluate, reclassify, thresholds
from .s07_outputs import confusion_stats, site_predictions, write_sites, write_stack
from .s08_yield_potential import fit_yield_model, quantile_fits

logger = logging.getLogger(__name__)


def run(
    study: config.StudyConfig,
    sites_path: Path,
    grids_path: Path,
    results_dir: Path = config.RESULTS_DIR,
    force: bool = False,
    basemap: bool = False,
    yield_model: bool | None = None,
    n_jobs: int = config.N_JOBS,
) -> dict:
    """Execute every pipeline stage; return the collected results."""
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    stem = study.output_stem
    label = study.label

    # ── Data setup ─────────────────────────────────────────────────
    print("\n--- Loading covariate grids and sites ---")
    grid = load_grids(grids_path)
    sites = load_sites(sites_path, crs=grid.crs)
    sites = extract_covariates(sites, grid)
    feature_cols = resolve_feature_cols(study, grid.names)

    cal, val = partition(sites, label)
    y_cal = label_vector(cal, label)
    print(f"  Calibration: {len(cal)} sites, validation: {len(val)} sites")

    # ── Base models ────────────────────────────────────────────────
    print("--- Training base models ---")
    models = train_all(study, cal, y_cal, feature_cols, results_dir, force=force, n_jobs=n_jobs)

    importances = {}
    for name, model in models.items():
        imp = variable_importance(model.estimator, cal[model.columns], y_cal)
        imp.to_csv(result_path(results_dir, f"{label}_{name}_importance", ".csv"), index=False)
        plots.plot_importance(imp, f"{MODEL_LABELS[name]}: variable importance",
                              results_dir, f"{label}_{name}_importance")
        importances[name] = imp

    # ── Spatial predictions ────────────────────────────────────────
    print("--- Predicting base models over the grid ---")
    preds = predict_stack(models, grid)
    plots.plot_probability_grids(preds, results_dir, f"{stem}_model_preds")

    # ── Stacking ───────────────────────────────────────────────────
    print("--- Fitting stacking model ---")
    X_val, labels_val = validation_features(preds, val, label)
    y_val = label_vector(labels_val.to_frame(), label)
    stacker = train_stacker(X_val, y_val, name=study.stack_name, n_jobs=n_jobs)
    joblib.dump(stacker, result_path(results_dir, f"{label}_{study.stack_name}", ".joblib"))
    stacked = predict_stacked(stacker, preds)
    plots.plot_stacked_probability(stacked, results_dir, f"{stem}_{study.stack_name}")

    stack_imp = variable_importance(stacker.glm, X_val, y_val)
    plots.plot_importance(stack_imp, "Stacking model: variable importance",
                          results_dir, f"{label}_{study.stack_name}_importance")
    importances[study.stack_name] = stack_imp

    # ── ROC & mask ─────────────────────────────────────────────────
    print("--- ROC thresholds and management-zone mask ---")
    prob_val = stacker.predict_proba(X_val)
    roc = evaluate(y_val, prob_val)
    cutoffs = thresholds(y_val, prob_val)
    threshold = cutoffs[study.threshold_method]
    mask = reclassify(stacked, threshold)
    plots.plot_roc(roc, threshold, results_dir, f"{stem}_roc")
    plots.plot_mask(mask, threshold, results_dir, f"{stem}_mask")

    # ── Outputs ────────────────────────────────────────────────────
    print("--- Writing prediction grids ---")
    final = preds.stack(stacked).stack(mask)
    raster_path = write_stack(final, result_path(results_dir, f"{stem}_preds", ".tif"))

    gsout = site_predictions(sites, final)
    checked = gsout.dropna(subset=[label, "mzone"])
    confusion = confusion_stats(checked[label], checked["mzone"])

    yield_results = {}
    run_yield = study.yield_model if yield_model is None else yield_model
    if run_yield:
        print("--- Fitting yield potential model ---")
        yld_result, gsout["yldf"] = fit_yield_model(gsout, si_col=study.stack_name)
        qfits = quantile_fits(gsout)
        qfits.to_csv(result_path(results_dir, f"{stem}_yield_quantiles", ".csv"), index=False)
        plots.plot_yield_by_zone(gsout, results_dir, f"{stem}_yield_by_zone")
        plots.plot_quantile_fits(gsout, qfits, results_dir, f"{stem}_yield_quantiles")
        yield_results = {"model": yld_result, "quantiles": qfits}

    sites_path_out = write_sites(gsout, result_path(results_dir, f"{stem}_out", ".csv"), crs=grid.crs)

    if basemap:
        plots.plot_probability_basemap(stacked, results_dir, f"{stem}_{study.stack_name}_basemap")

    return {
        "study": study,
        "n_sites": len(sites),
        "n_calibration": len(cal),
        "n_validation": len(val),
        "models": models,
        "importances": importances,
        "stacker": stacker,
        "roc": roc,
        "thresholds": cutoffs,
        "threshold": threshold,
        "confusion": confusion,
        "yield": yield_results,
        "raster_path": raster_path,
        "sites_path": sites_path_out,
        "sites": gsout,
    }


def generate_text_report(results: dict) -> str:
    """Generate a human-readable run report."""
    study = results["study"]
    lines = [
        "=" * 80,
        f"STACKED SITE-INDEX PREDICTIONS: {study.name} ({study.label})",
        "=" * 80,
        "",
        f"Sites: {results['n_sites']} (calibration {results['n_calibration']}, "
        f"validation {results['n_validation']})",
        "",
    ]

    # 1. Base models
    lines.append("1. BASE MODELS (cross-validated ROC AUC, calibration set)")
    lines.append("-" * 60)
    rows = [
        {
            "model": name,
            "description": MODEL_LABELS[name],
            "n_covariates": len(m.columns),
            "cv_auc": round(m.cv_auc, 3),
            "best_params": m.best_params,
        }
        for name, m in results["models"].items()
    ]
    lines.append(pd.DataFrame(rows).to_string(index=False))
    lines.append("")

    for name, m in results["models"].items():
        glm = m.estimator.named_steps["model"]
        if not isinstance(glm, StepAICGLM):
            continue
        kept = ", ".join(glm.selected_names_) or "intercept only"
        lines.append(f"  {name}: stepwise AIC kept {len(glm.selected_names_)}/{len(m.columns)} "
                     f"covariates (AIC={glm.aic_:.2f}): {kept}")
        lines.append("  Coefficients (standardised covariates):")
        lines.append(glm.summary().round(4).to_string(index=False))
        lines.append("")

    # 2. Stacking
    stacker = results["stacker"]
    lines.append(f"2. STACKING MODEL '{stacker.name}' (validation set)")
    lines.append("-" * 60)
    lines.append(f"  CV ROC AUC: {stacker.cv_auc:.3f}")
    lines.append(stacker.summary().round(4).to_string(index=False))
    lines.append("")

    # 3. ROC thresholds
    roc = results["roc"]
    lines.append("3. ROC THRESHOLDS")
    lines.append("-" * 60)
    lines.append(f"  AUC: {roc.auc:.3f} (presences={roc.n_presence}, absences={roc.n_absence})")
    for method, value in results["thresholds"].items():
        marker = "  <- mask" if method == study.threshold_method else ""
        lines.append(f"  {method:16s}: {value:.4f}{marker}")
    lines.append("")

    # 4. Site-level check
    conf = results["confusion"]
    lines.append("4. SITE INDEX PREDICTION CHECK (all sites, positive class = A)")
    lines.append("-" * 60)
    lines.append(conf["table"].to_string())
    lines.append(f"  Accuracy:    {conf['accuracy']:.3f}")
    lines.append(f"  Kappa:       {conf['kappa']:.3f}")
    lines.append(f"  Sensitivity: {conf['sensitivity']:.3f}")
    lines.append(f"  Specificity: {conf['specificity']:.3f}")
    lines.append("")

    # 5. Yield potential
    if results["yield"]:
        lines.append("5. YIELD POTENTIAL")
        lines.append("-" * 60)
        lines.append(str(results["yield"]["model"].summary()))
        lines.append("Quantile regressions (measured ~ predicted):")
        lines.append(results["yield"]["quantiles"].round(4).to_string(index=False))
        lines.append("")

    lines.append("=" * 80)
    lines.append(f"Prediction grids: {results['raster_path']}")
    lines.append(f"Site table:       {results['sites_path']}")
    return "\n".join(lines)


def _setup_logging(results_dir: Path, verbose: bool) -> None:
    results_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(results_dir / "siteindex.log"),
            logging.StreamHandler(sys.stdout),
        ],
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Stacked spatial predictions of site indices and management zones.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--study", required=True, choices=sorted(config.STUDIES),
                        help="Study definition to run")
    parser.add_argument("--sites", required=True, type=Path,
                        help="Site CSV with x, y, the label column and (optionally) covariates")
    parser.add_argument("--grids", type=Path, default=config.GRIDS_DIR,
                        help="Directory of GeoTIFF covariates or one multiband GeoTIFF")
    parser.add_argument("--results", type=Path, default=config.RESULTS_DIR,
                        help="Output directory (default: ./Results)")
    parser.add_argument("--study-config", type=Path, metavar="JSON",
                        help="JSON file overriding study fields (covariate lists, threshold method)")
    parser.add_argument("--force", action="store_true",
                        help="Retrain models even if cached .joblib files exist")
    parser.add_argument("--basemap", action="store_true",
                        help="Also render the stacked probability over web map tiles")
    parser.add_argument("--skip-yield", action="store_true",
                        help="Skip the yield potential model")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    _setup_logging(args.results, args.verbose)
    study = config.get_study(args.study)
    if args.study_config:
        study = config.load_study_overrides(args.study_config, study)

    t0 = time.time()
    print("=" * 60)
    print(f"Stacked site-index predictions: {study.name}")
    print("=" * 60)

    results = run(
        study,
        args.sites,
        args.grids,
        results_dir=args.results,
        force=args.force,
        basemap=args.basemap,
        yield_model=False if args.skip_yield else None,
    )

    report = generate_text_report(results)
    report_path = result_path(args.results, f"{study.output_stem}_report", ".txt")
    report_path.write_text(report, encoding="utf-8")

    print("\n" + report)
    print(f"\nReport saved to: {report_path}")
    print(f"All stages completed in {time.time() - t0:.1f}s")


if __name__ == "__main__":
    main()

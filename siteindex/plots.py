"""
Diagnostic plots for the site-index pipeline.

Generates:
1. Per-model probability grids (one panel per base model)
2. Stacked ensemble probability map
3. ROC curve of the stacked model at the validation sites
4. Management-zone mask
5. Variable importance bars
6. Measured yield by predicted management zone
7. Measured vs predicted yield with quantile-regression bands
8. Stacked probability over a web basemap (optional)
"""
from __future__ import annotations

from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.colors import ListedColormap
from rasterio.plot import plotting_extent

from .s02_covariates import CovariateGrid
from .s03_base_models import MODEL_LABELS
from .s06_roc_mask import RocEvaluation

# Global plot style
plt.rcParams.update({
    "figure.dpi": 150,
    "savefig.dpi": 300,
    "savefig.bbox": "tight",
    "font.size": 10,
    "axes.titlesize": 12,
    "axes.labelsize": 11,
})


def _save(fig, out_dir: Path, name: str) -> Path:
    """Save figure to the plots directory."""
    out = Path(out_dir) / "plots"
    out.mkdir(parents=True, exist_ok=True)
    path = out / f"{name}.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def _show_layer(ax, grid: CovariateGrid, name: str, **kwargs):
    data = grid.layer(name)
    extent = plotting_extent(data, grid.transform)
    im = ax.imshow(np.ma.masked_invalid(data), extent=extent, **kwargs)
    ax.set_axis_off()
    return im


# ──────────────────────────────────────────────────────────────────
# 1. Per-model probability grids
# ──────────────────────────────────────────────────────────────────
def plot_probability_grids(preds: CovariateGrid, out_dir: Path, name: str) -> Path:
    n = len(preds.names)
    ncols = min(3, n)
    nrows = int(np.ceil(n / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(4.5 * ncols, 4 * nrows), squeeze=False)

    for ax, layer in zip(axes.ravel(), preds.names):
        im = _show_layer(ax, preds, layer, cmap="Greens", vmin=0, vmax=1)
        ax.set_title(MODEL_LABELS.get(layer, layer))
    for ax in axes.ravel()[n:]:
        ax.set_visible(False)

    fig.colorbar(im, ax=axes.ravel().tolist(), shrink=0.6, label="P(site index = A)")
    return _save(fig, out_dir, name)


# ──────────────────────────────────────────────────────────────────
# 2. Stacked probability / 4. Mask
# ──────────────────────────────────────────────────────────────────
def plot_stacked_probability(prob: CovariateGrid, out_dir: Path, name: str) -> Path:
    fig, ax = plt.subplots(figsize=(7, 6))
    im = _show_layer(ax, prob, prob.names[0], cmap="Greens", vmin=0, vmax=1)
    ax.set_title("Stacked site-index probability")
    fig.colorbar(im, ax=ax, shrink=0.8, label="P(site index = A)")
    return _save(fig, out_dir, name)


def plot_mask(mask: CovariateGrid, threshold: float, out_dir: Path, name: str) -> Path:
    fig, ax = plt.subplots(figsize=(7, 6))
    cmap = ListedColormap(["#d9d9d9", "#238b45"])
    _show_layer(ax, mask, mask.names[0], cmap=cmap, vmin=0, vmax=1, interpolation="nearest")
    ax.set_title(f"Management zones (cutoff = {threshold:.3f})")
    handles = [
        plt.Rectangle((0, 0), 1, 1, color=cmap(1)),
        plt.Rectangle((0, 0), 1, 1, color=cmap(0)),
    ]
    ax.legend(handles, ["Zone A", "Zone B"], loc="lower right", frameon=True)
    return _save(fig, out_dir, name)


# ──────────────────────────────────────────────────────────────────
# 3. ROC curve
# ──────────────────────────────────────────────────────────────────
def plot_roc(roc: RocEvaluation, threshold: float, out_dir: Path, name: str) -> Path:
    fig, ax = plt.subplots(figsize=(6, 6))
    ax.plot(roc.fpr, roc.tpr, color="darkgreen", lw=2, label=f"AUC = {roc.auc:.3f}")
    ax.plot([0, 1], [0, 1], color="grey", ls="--", lw=1)

    # thresholds are decreasing; first index with cutoff <= t is the operating point
    idx = int(np.argmax(roc.thresholds <= threshold))
    ax.scatter(roc.fpr[idx], roc.tpr[idx], color="darkred", zorder=3,
               label=f"cutoff = {threshold:.3f}")

    ax.set_xlabel("False positive rate")
    ax.set_ylabel("True positive rate")
    ax.set_title(f"ROC (n = {roc.n_presence} A, {roc.n_absence} B)")
    ax.set_aspect("equal")
    ax.legend(loc="lower right")
    return _save(fig, out_dir, name)


# ──────────────────────────────────────────────────────────────────
# 5. Variable importance
# ──────────────────────────────────────────────────────────────────
def plot_importance(imp_df: pd.DataFrame, title: str, out_dir: Path, name: str, top_n: int = 15) -> Path:
    top = imp_df.head(min(top_n, len(imp_df)))
    fig, ax = plt.subplots(figsize=(8, max(3, 0.35 * len(top) + 1)))
    ax.barh(top["feature"][::-1], top["importance"][::-1],
            xerr=top["importance_sd"][::-1], color="skyblue", edgecolor="k")
    ax.set_title(title)
    ax.set_xlabel("Mean decrease in ROC AUC (permutation)")
    fig.tight_layout()
    return _save(fig, out_dir, name)


# ──────────────────────────────────────────────────────────────────
# 6. Yield by management zone
# ──────────────────────────────────────────────────────────────────
def plot_yield_by_zone(df: pd.DataFrame, out_dir: Path, name: str, yield_col: str = "yield") -> Path:
    data = df.dropna(subset=["mzone", yield_col])
    fig, ax = plt.subplots(figsize=(5, 6))
    sns.boxplot(data=data, x="mzone", y=yield_col, order=["A", "B"], notch=True,
                color="lightgreen", ax=ax)
    ax.set_xlabel("Management zone")
    ax.set_ylabel("Measured yield (t/ha)")
    return _save(fig, out_dir, name)


# ──────────────────────────────────────────────────────────────────
# 7. Quantile regression uncertainty
# ──────────────────────────────────────────────────────────────────
def plot_quantile_fits(df: pd.DataFrame, qfits: pd.DataFrame, out_dir: Path, name: str,
                       observed: str = "yield", predicted: str = "yldf") -> Path:
    fig, ax = plt.subplots(figsize=(6, 6))
    ax.scatter(df[predicted], df[observed], s=10, alpha=0.5, color="k")

    hi = float(np.nanmax([df[predicted].max(), df[observed].max(), 1.0])) * 1.05
    xs = np.linspace(0, hi, 100)
    for _, row in qfits.iterrows():
        color = "blue" if row["tau"] != 0.5 else "red"
        ax.plot(xs, row["intercept"] + row["slope"] * xs, color=color, lw=2,
                label=f"tau = {row['tau']:.2f}")
    ax.plot([0, hi], [0, hi], color="grey", lw=1)

    ax.set_xlim(-1, hi)
    ax.set_ylim(-1, hi)
    ax.set_aspect("equal")
    ax.set_xlabel("Maize yield prediction (t/ha)")
    ax.set_ylabel("Measured yield (t/ha)")
    ax.legend(loc="upper left")
    return _save(fig, out_dir, name)


# ──────────────────────────────────────────────────────────────────
# 8. Basemap overlay
# ──────────────────────────────────────────────────────────────────
def plot_probability_basemap(prob: CovariateGrid, out_dir: Path, name: str, alpha: float = 0.6) -> Path:
    """Stacked probability over OpenStreetMap tiles (needs network access)."""
    import contextily as cx

    if prob.crs is None:
        raise ValueError("Basemap overlay needs a georeferenced grid (CRS is unset).")
    crs = prob.crs.to_string() if hasattr(prob.crs, "to_string") else str(prob.crs)

    fig, ax = plt.subplots(figsize=(9, 8))
    im = _show_layer(ax, prob, prob.names[0], cmap="Greens", vmin=0, vmax=1, alpha=alpha, zorder=2)
    cx.add_basemap(ax, crs=crs, source=cx.providers.OpenStreetMap.Mapnik, zorder=1)
    ax.set_title("Site index prob.")
    fig.colorbar(im, ax=ax, shrink=0.7, label="P(site index = A)")
    return _save(fig, out_dir, name)

"""
Outputs and Site-Level Check
============================
Write the final prediction stack (per-model probabilities, stacked
probability, mask) as a GeoTIFF, sample it back at every survey site and
compare the predicted management zone with the observed site-index class.

Output:
  - Results/<stem>_preds.tif   (FLOAT32, band-interleaved, named bands)
  - Results/<stem>_out.csv / .gpkg
"""
from __future__ import annotations

import logging
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from sklearn.metrics import accuracy_score, cohen_kappa_score, confusion_matrix

from . import config
from .s02_covariates import CovariateGrid

logger = logging.getLogger(__name__)


def write_stack(grid: CovariateGrid, path: Path) -> Path:
    """Write every layer as a float32 band, layer names as band descriptions."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    rows, cols = grid.shape
    profile = {
        "driver": "GTiff",
        "height": rows,
        "width": cols,
        "count": len(grid.names),
        "dtype": "float32",
        "crs": grid.crs,
        "transform": grid.transform,
        "nodata": config.NODATA,
        "interleave": "band",
    }
    data = np.where(np.isnan(grid.data), config.NODATA, grid.data).astype(np.float32)
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(data)
        for i, name in enumerate(grid.names, start=1):
            dst.set_band_description(i, name)

    logger.info(f"Wrote {len(grid.names)} layers to {path.name}")
    return path


def site_predictions(sites: pd.DataFrame, stack: CovariateGrid, mask_layer: str = "mk") -> pd.DataFrame:
    """Sample the final stack at every site and assign the predicted zone."""
    values = stack.sample(sites["x"].to_numpy(), sites["y"].to_numpy())
    values.index = sites.index
    out = sites.drop(columns=[c for c in stack.names if c in sites.columns])
    out = pd.concat([out, values], axis=1)
    mzone = pd.Series(
        np.where(out[mask_layer] == 1, config.POSITIVE_CLASS, config.NEGATIVE_CLASS),
        index=out.index,
    )
    # sites off the grid or on nodata pixels get no zone
    out["mzone"] = mzone.where(out[mask_layer].notna())
    return out


def confusion_stats(observed, predicted) -> dict:
    """
    Confusion matrix and summary statistics with class A as positive.

    Returns:
        Dictionary with the 2x2 matrix (rows = predicted, cols = observed),
        accuracy, kappa, sensitivity, specificity and n
    """
    observed = pd.Series(observed).astype(str).to_numpy()
    predicted = pd.Series(predicted).astype(str).to_numpy()
    labels = list(config.CLASS_LABELS)

    cm = confusion_matrix(observed, predicted, labels=labels)
    tp, fn = cm[0, 0], cm[0, 1]
    fp, tn = cm[1, 0], cm[1, 1]
    table = pd.DataFrame(
        cm.T,
        index=pd.Index(labels, name="Prediction"),
        columns=pd.Index(labels, name="Reference"),
    )
    return {
        "table": table,
        "accuracy": float(accuracy_score(observed, predicted)),
        "kappa": float(cohen_kappa_score(observed, predicted, labels=labels)),
        "sensitivity": float(tp / (tp + fn)) if tp + fn else float("nan"),
        "specificity": float(tn / (tn + fp)) if tn + fp else float("nan"),
        "n": int(len(observed)),
    }


def write_sites(df: pd.DataFrame, path: Path, crs=None) -> Path:
    """Write the site table as CSV and its points as a GeoPackage next to it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table = pd.DataFrame(df.drop(columns="geometry", errors="ignore"))
    table.to_csv(path, index=False)

    gdf = gpd.GeoDataFrame(
        table, geometry=gpd.points_from_xy(table["x"], table["y"]), crs=crs
    )
    gdf.to_file(path.with_suffix(".gpkg"), driver="GPKG")
    logger.info(f"Wrote {len(table)} sites to {path.name} (+ .gpkg)")
    return path

"""
Spatial Prediction
==================
Apply each fitted base model to every valid pixel of the covariate grid and
stack the per-model probability surfaces into one layer stack.
"""
from __future__ import annotations

import logging

import numpy as np
from tqdm import tqdm

from . import config
from .s02_covariates import CovariateGrid

logger = logging.getLogger(__name__)


def predict_grid(model, grid: CovariateGrid, chunk_size: int = config.PREDICT_CHUNK) -> CovariateGrid:
    """
    Probability of the positive class for every pixel where all of the
    model's covariates are finite; NaN elsewhere.
    """
    table, mask = grid.to_frame(model.columns)
    probs = np.empty(len(table), dtype=np.float32)
    for start in range(0, len(table), chunk_size):
        chunk = table.iloc[start:start + chunk_size]
        probs[start:start + len(chunk)] = model.predict_proba(chunk)

    logger.info(f"{model.name}: predicted {len(table):,} pixels")
    return CovariateGrid.from_pixels(probs, mask, [model.name], like=grid)


def predict_stack(models: dict, grid: CovariateGrid, chunk_size: int = config.PREDICT_CHUNK) -> CovariateGrid:
    """Per-model probability grids stacked in model order."""
    if not models:
        raise ValueError("No fitted models to predict.")
    if any("x" in m.columns or "y" in m.columns for m in models.values()):
        grid = grid.with_coordinates()

    stacked = None
    for name, model in tqdm(models.items(), desc="Spatial predictions"):
        layer = predict_grid(model, grid, chunk_size=chunk_size)
        stacked = layer if stacked is None else stacked.stack(layer)
    return stacked

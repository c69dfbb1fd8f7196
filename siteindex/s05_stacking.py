"""
Model Stacking
==============
Second-stage meta-model: a binomial GLM on the base-model probabilities
sampled at the held-out validation sites, applied back to the probability
stack to give the ensemble site-index surface.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from sklearn.model_selection import cross_val_score

from . import config
from .learners import BinomialGLM
from .s02_covariates import CovariateGrid
from .s03_base_models import cv_control

logger = logging.getLogger(__name__)


@dataclass
class Stacker:
    """Fitted meta-model with its cross-validated ROC AUC."""

    name: str
    columns: list[str]
    glm: BinomialGLM
    cv_scores: np.ndarray

    @property
    def cv_auc(self) -> float:
        return float(np.mean(self.cv_scores))

    def predict_proba(self, X: pd.DataFrame) -> np.ndarray:
        return self.glm.predict_proba(X[self.columns])[:, 1]

    def summary(self) -> pd.DataFrame:
        return self.glm.summary()


def validation_features(
    preds: CovariateGrid,
    val: pd.DataFrame,
    label: str,
) -> tuple[pd.DataFrame, pd.Series]:
    """
    Sample the per-model probability stack at the validation sites.

    Returns:
        (features with one column per model, the matching labels); sites
        with a NaN prediction in any layer are dropped
    """
    feats = preds.sample(val["x"].to_numpy(), val["y"].to_numpy())
    feats.index = val.index
    keep = feats.notna().all(axis=1)
    if not keep.all():
        logger.warning(
            f"{(~keep).sum()} validation sites have no prediction in some layer and are dropped."
        )
    return feats[keep], val.loc[keep, label]


def train_stacker(
    X: pd.DataFrame,
    y: np.ndarray,
    name: str = "si",
    n_jobs: int = config.N_JOBS,
) -> Stacker:
    """Fit the stacking GLM and score it with the shared CV control."""
    scores = cross_val_score(
        BinomialGLM(), X, y, scoring=config.CV_SCORING, cv=cv_control(y), n_jobs=n_jobs
    )
    glm = BinomialGLM().fit(X, y)
    stacker = Stacker(name, list(X.columns), glm, scores)
    logger.info(f"{name}: stacked CV ROC AUC={stacker.cv_auc:.3f}")
    return stacker


def predict_stacked(stacker: Stacker, preds: CovariateGrid) -> CovariateGrid:
    """Ensemble probability surface from the per-model stack."""
    table, mask = preds.to_frame(stacker.columns)
    probs = stacker.predict_proba(table) if len(table) else np.empty(0)
    return CovariateGrid.from_pixels(probs, mask, [stacker.name], like=preds)

"""
ROC Thresholds and Management-Zone Mask
=======================================
Evaluate the stacked predictions at the validation sites, derive
probability cutoffs from the ROC and reclassify the stacked surface into a
binary mask (1 = predicted class A, 0 = class B).

Candidate cutoffs are every distinct score less CUTOFF_OFFSET, plus the top
score and the top score plus CUTOFF_OFFSET. A site is predicted positive
when p >= t; because t sits just below an observed score, the mask rule
p > t puts the site that defines the cutoff on the same side.

Threshold definitions:
    kappa            – maximises Cohen's kappa
    spec_sens        – maximises sensitivity + specificity
    no_omission      – highest cutoff that keeps every presence
    prevalence       – cutoff closest to the observed prevalence
    equal_sens_spec  – sensitivity closest to specificity
    sensitivity      – sensitivity closest to 0.9
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from sklearn.metrics import roc_auc_score, roc_curve

from . import config
from .s02_covariates import CovariateGrid


@dataclass
class RocEvaluation:
    auc: float
    fpr: np.ndarray
    tpr: np.ndarray
    thresholds: np.ndarray
    n_presence: int
    n_absence: int


def _check_binary(y, prob) -> tuple[np.ndarray, np.ndarray]:
    y = np.asarray(y, dtype=int)
    prob = np.asarray(prob, dtype=float)
    if y.shape != prob.shape:
        raise ValueError(f"Labels {y.shape} and probabilities {prob.shape} differ in shape.")
    if y.sum() == 0 or y.sum() == len(y):
        raise ValueError("ROC evaluation needs both presences (A) and absences (B).")
    return y, prob


def evaluate(y, prob) -> RocEvaluation:
    """ROC curve of the positive-class probability."""
    y, prob = _check_binary(y, prob)
    fpr, tpr, thresholds = roc_curve(y, prob)
    return RocEvaluation(
        auc=float(roc_auc_score(y, prob)),
        fpr=fpr,
        tpr=tpr,
        thresholds=thresholds,
        n_presence=int(y.sum()),
        n_absence=int(len(y) - y.sum()),
    )


def _confusion_by_cutoff(y: np.ndarray, prob: np.ndarray, cutoffs: np.ndarray):
    pred = prob[np.newaxis, :] >= cutoffs[:, np.newaxis]
    pos = y.astype(bool)
    tp = (pred & pos).sum(axis=1).astype(float)
    fp = (pred & ~pos).sum(axis=1).astype(float)
    fn = (~pred & pos).sum(axis=1).astype(float)
    tn = (~pred & ~pos).sum(axis=1).astype(float)
    return tp, fp, fn, tn


def candidate_cutoffs(prob) -> np.ndarray:
    """Distinct scores less CUTOFF_OFFSET, then the top score and top + CUTOFF_OFFSET."""
    scores = np.unique(np.round(np.asarray(prob, dtype=float), 8))
    top = scores[-1]
    return np.concatenate([scores - config.CUTOFF_OFFSET, [top, top + config.CUTOFF_OFFSET]])


def thresholds(y, prob) -> dict[str, float]:
    """Every ROC-derived cutoff named in ``config.THRESHOLD_METHODS``."""
    y, prob = _check_binary(y, prob)
    cutoffs = candidate_cutoffs(prob)
    tp, fp, fn, tn = _confusion_by_cutoff(y, prob, cutoffs)
    n = len(y)

    sens = tp / (tp + fn)
    spec = tn / (tn + fp)

    observed = (tp + tn) / n
    expected = ((tp + fn) * (tp + fp) + (tn + fp) * (tn + fn)) / n**2
    with np.errstate(divide="ignore", invalid="ignore"):
        kappa = np.where(expected < 1, (observed - expected) / (1 - expected), 0.0)

    prevalence = y.mean()
    keeps_all = cutoffs[fn == 0]

    return {
        "kappa": float(cutoffs[np.argmax(kappa)]),
        "spec_sens": float(cutoffs[np.argmax(sens + spec)]),
        "no_omission": float(keeps_all.max()),
        "prevalence": float(cutoffs[np.argmin(np.abs(cutoffs - prevalence))]),
        "equal_sens_spec": float(cutoffs[np.argmin(np.abs(sens - spec))]),
        "sensitivity": float(cutoffs[np.argmin(np.abs(sens - config.THRESHOLD_SENSITIVITY))]),
    }


def select_threshold(y, prob, method: str = config.DEFAULT_THRESHOLD) -> float:
    if method not in config.THRESHOLD_METHODS:
        raise ValueError(f"Unknown threshold method '{method}'. Known: {config.THRESHOLD_METHODS}")
    return thresholds(y, prob)[method]


def reclassify(prob: CovariateGrid, threshold: float, name: str = "mk") -> CovariateGrid:
    """Mask grid: 1 where probability > threshold, 0 where <= threshold, NaN kept."""
    data = prob.data[0]
    mask = np.where(np.isnan(data), np.nan, (data > threshold).astype(np.float32))
    return CovariateGrid(mask.astype(np.float32), [name], prob.transform, prob.crs)

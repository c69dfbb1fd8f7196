"""
Calibration / Validation Partition
==================================
Stratified random split of the labelled site table into a calibration set
(base-model training) and a validation set (held out for the stacking
meta-model and the ROC threshold).
"""
from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split

from . import config

logger = logging.getLogger(__name__)


def partition(
    df: pd.DataFrame,
    label: str,
    p: float = config.CALIBRATION_FRACTION,
    seed: int = config.PARTITION_SEED,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Split sites into calibration and validation sets, stratified by label.

    Args:
        df: Site table with a label column
        label: Name of the site-index class column
        p: Fraction of each class assigned to calibration
        seed: Random seed for the split

    Returns:
        (calibration, validation) DataFrames with the original index
    """
    if label not in df.columns:
        raise ValueError(f"Label column '{label}' not found in site data.")
    if not 0 < p < 1:
        raise ValueError(f"Calibration fraction must be in (0, 1), got {p}")

    labelled = df.dropna(subset=[label])
    n_dropped = len(df) - len(labelled)
    if n_dropped:
        logger.warning(f"Dropped {n_dropped} sites with missing '{label}'.")

    counts = labelled[label].value_counts()
    small = counts[counts < 2]
    if not small.empty:
        raise ValueError(
            f"Cannot stratify on '{label}': classes {list(small.index)} have fewer than 2 sites."
        )

    cal, val = train_test_split(
        labelled,
        train_size=p,
        stratify=labelled[label],
        random_state=seed,
        shuffle=True,
    )
    cal = cal.sort_index()
    val = val.sort_index()

    logger.info(
        f"Partitioned {len(labelled)} sites: calibration={len(cal)}, validation={len(val)}"
    )
    return cal, val


def label_vector(df: pd.DataFrame, label: str) -> np.ndarray:
    """Encode the site-index class as 1 (positive class) / 0."""
    values = df[label].astype(str)
    unexpected = sorted(set(values) - set(config.CLASS_LABELS))
    if unexpected:
        raise ValueError(
            f"Column '{label}' holds labels {unexpected}; expected {list(config.CLASS_LABELS)}"
        )
    return (values == config.POSITIVE_CLASS).to_numpy(dtype=int)

"""
Yield Potential
===============
Mixed-effects model of measured maize yield on treatment, the stacked
site-index probability and fertilizer rates, with crossed random
intercepts for year and grid cell (GID); quantile regressions of measured
on predicted yield give the prediction uncertainty band.

    log(yield) ~ C(trt) * si + I(dap/50) * I(can/50) + (1|year) + (1|GID)
"""
from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf

from . import config

logger = logging.getLogger(__name__)


def _model_frame(df: pd.DataFrame, si_col: str) -> pd.DataFrame:
    needed = [c if c != "si" else si_col for c in config.YIELD_COLUMNS]
    missing = [c for c in needed if c not in df.columns]
    if missing:
        raise ValueError(f"Yield model needs columns missing from the site data: {missing}")

    frame = df[needed].dropna().rename(columns={"yield": "yld", si_col: "si"})
    positive = frame["yld"] > 0
    if not positive.all():
        logger.warning(f"Dropped {(~positive).sum()} sites with non-positive yield.")
    frame = frame[positive].copy()
    if frame.empty:
        raise ValueError("No sites with complete yield-model data.")
    frame["grp"] = 1
    return frame


def fit_yield_model(df: pd.DataFrame, si_col: str = "si") -> tuple[object, pd.Series]:
    """
    Fit the yield mixed model.

    Returns:
        (statsmodels MixedLMResults, back-transformed fitted yield ``yldf``
        indexed like ``df``; NaN for sites left out of the fit)
    """
    frame = _model_frame(df, si_col)
    model = smf.mixedlm(
        "np.log(yld) ~ C(trt) * si + I(dap / 50) * I(can / 50)",
        data=frame,
        groups="grp",
        re_formula="0",
        vc_formula={"year": "0 + C(year)", "GID": "0 + C(GID)"},
    )
    result = model.fit(reml=True)
    logger.info(f"Yield model fitted on {len(frame)} sites")

    yldf = pd.Series(np.nan, index=df.index, name="yldf")
    yldf.loc[frame.index] = np.exp(np.asarray(result.fittedvalues))
    return result, yldf


def quantile_fits(
    df: pd.DataFrame,
    taus=config.YIELD_QUANTILES,
    observed: str = "yield",
    predicted: str = "yldf",
) -> pd.DataFrame:
    """Linear quantile regressions of measured on predicted yield."""
    frame = df[[observed, predicted]].dropna().rename(columns={observed: "yld", predicted: "pred"})
    if frame.empty:
        raise ValueError("No sites with both measured and predicted yield.")

    rows = []
    for tau in taus:
        fit = smf.quantreg("yld ~ pred", frame).fit(q=tau)
        rows.append({
            "tau": tau,
            "intercept": float(fit.params["Intercept"]),
            "slope": float(fit.params["pred"]),
        })
    return pd.DataFrame(rows)

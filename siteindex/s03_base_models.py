"""
Base Learners
=============
Cross-validated training of the first-stage site-index classifiers.

    gm   – spatial trend GAM on the trend covariates
    gl1  – stepwise-AIC GLM on the central-place covariates
    gl2  – stepwise-AIC GLM on all covariates
    rf   – random forest (max_features tuned)
    gb   – gradient boosting (depth x trees tuned)
    nn   – single-hidden-layer network (size x weight decay tuned)

Every learner is a median-impute -> centre/scale -> estimator Pipeline
tuned by GridSearchCV on ROC AUC with a shared StratifiedKFold control.
Fitted models are cached as ``<label>_<model>.joblib`` in the results
directory.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import joblib
import numpy as np
import pandas as pd
from sklearn.ensemble import GradientBoostingClassifier, RandomForestClassifier
from sklearn.impute import SimpleImputer
from sklearn.inspection import permutation_importance
from sklearn.model_selection import GridSearchCV, StratifiedKFold
from sklearn.neural_network import MLPClassifier
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler

from . import config
from .file_utils import has_artifact, result_path
from .learners import LogisticGAM, StepAICGLM

logger = logging.getLogger(__name__)

MODEL_LABELS = {
    "gm": "Spatial trend GAM",
    "gl1": "Central place GLM (stepAIC)",
    "gl2": "GLM, all covariates (stepAIC)",
    "rf": "Random forest",
    "gb": "Gradient boosting",
    "nn": "Neural network",
}


@dataclass
class ModelSpec:
    """A base learner before training."""

    name: str
    columns: list[str]
    estimator: Pipeline
    param_grid: dict


@dataclass
class FittedModel:
    """A tuned, refitted base learner."""

    name: str
    columns: list[str]
    search: GridSearchCV
    cv_results: pd.DataFrame

    @property
    def estimator(self) -> Pipeline:
        return self.search.best_estimator_

    @property
    def best_params(self) -> dict:
        return {k.replace("model__", ""): v for k, v in self.search.best_params_.items()}

    @property
    def cv_auc(self) -> float:
        return float(self.search.best_score_)

    def predict_proba(self, X: pd.DataFrame) -> np.ndarray:
        """Probability of the positive site-index class."""
        return self.estimator.predict_proba(X[self.columns])[:, 1]


def _pipeline(estimator) -> Pipeline:
    # pandas output keeps covariate names through to the estimator
    return Pipeline([
        ("impute", SimpleImputer(strategy="median")),
        ("scale", StandardScaler()),
        ("model", estimator),
    ]).set_output(transform="pandas")


def resolve_feature_cols(study: config.StudyConfig, available: list[str]) -> list[str]:
    """The full covariate set: the study's list or every grid layer."""
    if study.feature_cols is not None:
        return list(study.feature_cols)
    return [c for c in available if c not in ("x", "y")]


def build_model_specs(study: config.StudyConfig, feature_cols: list[str]) -> list[ModelSpec]:
    """Model specifications in study order."""
    builders = {
        "gm": lambda: ModelSpec(
            "gm",
            list(study.trend_cols),
            _pipeline(LogisticGAM(df=config.GAM_SPLINE_DF, degree=config.GAM_DEGREE)),
            config.GAM_GRID,
        ),
        "gl1": lambda: ModelSpec(
            "gl1", list(study.central_place_cols), _pipeline(StepAICGLM()), config.GLM_GRID
        ),
        "gl2": lambda: ModelSpec(
            "gl2", list(feature_cols), _pipeline(StepAICGLM()), config.GLM_GRID
        ),
        "rf": lambda: ModelSpec(
            "rf",
            list(feature_cols),
            _pipeline(RandomForestClassifier(
                n_estimators=config.RF_TREES, random_state=config.CV_SEED
            )),
            _clip_max_features(config.RF_GRID, len(feature_cols)),
        ),
        "gb": lambda: ModelSpec(
            "gb",
            list(feature_cols),
            _pipeline(GradientBoostingClassifier(random_state=config.CV_SEED)),
            config.GB_GRID,
        ),
        "nn": lambda: ModelSpec(
            "nn",
            list(feature_cols),
            _pipeline(MLPClassifier(
                solver="lbfgs", max_iter=config.NN_MAX_ITER, random_state=config.CV_SEED
            )),
            config.NN_GRID,
        ),
    }

    specs = []
    for name in study.models:
        if name not in builders:
            raise ValueError(f"Unknown base model '{name}'. Known: {sorted(builders)}")
        spec = builders[name]()
        if not spec.columns:
            raise ValueError(f"Model '{name}' of study {study.name} has no covariates.")
        specs.append(spec)
    return specs


def _clip_max_features(grid: dict, n_features: int) -> dict:
    values = [v for v in grid["model__max_features"] if v <= n_features] or [n_features]
    return {**grid, "model__max_features": values}


def cv_control(y=None, seed: int = config.CV_SEED, n_splits: int = config.CV_FOLDS) -> StratifiedKFold:
    """Stratified K-fold, shrunk to the minority-class size when needed."""
    if y is not None:
        minority = int(np.bincount(np.asarray(y, dtype=int)).min())
        if minority < 2:
            raise ValueError("Cross-validation needs at least 2 sites of each class.")
        if minority < n_splits:
            logger.warning(f"Reducing CV folds from {n_splits} to {minority} (minority class size).")
            n_splits = minority
    return StratifiedKFold(n_splits=n_splits, shuffle=True, random_state=seed)


def train_model(
    spec: ModelSpec,
    cal: pd.DataFrame,
    y: np.ndarray,
    n_jobs: int = config.N_JOBS,
) -> FittedModel:
    """Tune ``spec`` by cross-validated ROC AUC and refit on all calibration sites."""
    missing = [c for c in spec.columns if c not in cal.columns]
    if missing:
        raise ValueError(f"Model '{spec.name}' needs columns missing from the site data: {missing}")

    search = GridSearchCV(
        spec.estimator,
        param_grid=spec.param_grid,
        scoring=config.CV_SCORING,
        cv=cv_control(y),
        n_jobs=n_jobs,
        refit=True,
    )
    search.fit(cal[spec.columns], y)

    cv_results = pd.DataFrame(search.cv_results_)
    keep = [c for c in cv_results.columns if c.startswith("param_")] + [
        "mean_test_score", "std_test_score", "rank_test_score",
    ]
    model = FittedModel(spec.name, spec.columns, search, cv_results[keep])
    logger.info(f"{spec.name}: CV ROC AUC={model.cv_auc:.3f} {model.best_params}")
    return model


def train_all(
    study: config.StudyConfig,
    cal: pd.DataFrame,
    y: np.ndarray,
    feature_cols: list[str],
    results_dir: Path,
    force: bool = False,
    n_jobs: int = config.N_JOBS,
) -> dict[str, FittedModel]:
    """Train (or reload) every base model of the study."""
    models = {}
    for spec in build_model_specs(study, feature_cols):
        path = result_path(results_dir, f"{study.label}_{spec.name}", ".joblib")
        if not force and has_artifact(path):
            cached = joblib.load(path)
            if cached.columns == spec.columns:
                logger.info(f"{spec.name}: loaded cached model {path.name}")
                models[spec.name] = cached
                continue
            logger.warning(f"{spec.name}: cached model {path.name} uses other covariates, retraining.")

        print(f"  Training {spec.name} ({MODEL_LABELS[spec.name]}) on {len(spec.columns)} covariates")
        model = train_model(spec, cal, y, n_jobs=n_jobs)
        joblib.dump(model, path)
        models[spec.name] = model
    return models


def variable_importance(
    estimator,
    X: pd.DataFrame,
    y: np.ndarray,
    n_repeats: int = config.IMPORTANCE_REPEATS,
) -> pd.DataFrame:
    """Permutation importance (drop in ROC AUC) of each column of ``X``, sorted descending."""
    result = permutation_importance(
        estimator,
        X,
        y,
        scoring=config.CV_SCORING,
        n_repeats=n_repeats,
        random_state=config.CV_SEED,
    )
    return pd.DataFrame({
        "feature": list(X.columns),
        "importance": result.importances_mean,
        "importance_sd": result.importances_std,
    }).sort_values("importance", ascending=False).reset_index(drop=True)

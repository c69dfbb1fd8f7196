"""
scikit-learn compatible binomial classifiers backed by statsmodels.

    BinomialGLM  – logistic GLM (stacking meta-model, final stepwise fit)
    StepAICGLM   – bidirectional stepwise covariate selection by AIC
    LogisticGAM  – binomial GAM, one penalised B-spline smooth per column

All three take a numeric matrix and a 0/1 target and expose
``predict_proba`` with columns ordered as ``classes_`` ([0, 1]), so they
drop into Pipeline / GridSearchCV / roc_auc scoring like any sklearn
classifier.
"""
from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.special import expit
from sklearn.base import BaseEstimator, ClassifierMixin
from sklearn.utils.validation import check_array, check_is_fitted
from statsmodels.gam.api import BSplines, GLMGam

logger = logging.getLogger(__name__)


def _binary_target(y) -> tuple[np.ndarray, np.ndarray]:
    y = np.asarray(y)
    classes = np.unique(y)
    if len(classes) != 2:
        raise ValueError(f"Binomial models need exactly 2 classes, got {classes.tolist()}")
    return (y == classes[1]).astype(float), classes


def _design(X: np.ndarray, fit_intercept: bool) -> np.ndarray:
    if fit_intercept:
        return np.column_stack([np.ones(X.shape[0]), X])
    return X


def _column_names(X, n: int) -> list[str]:
    if isinstance(X, pd.DataFrame):
        return [str(c) for c in X.columns]
    return [f"x{i}" for i in range(n)]


def binomial_aic(X: np.ndarray, y: np.ndarray) -> float:
    """AIC of an intercept + ``X`` logistic GLM."""
    result = sm.GLM(y, _design(X, True), family=sm.families.Binomial()).fit()
    return float(result.aic)


class BinomialGLM(ClassifierMixin, BaseEstimator):
    """Logistic regression fitted by IRLS, without penalty."""

    def __init__(self, fit_intercept: bool = True, maxiter: int = 100):
        self.fit_intercept = fit_intercept
        self.maxiter = maxiter

    def fit(self, X, y):
        self.feature_names_ = _column_names(X, np.shape(X)[1])
        X = check_array(X, ensure_min_features=0)
        y_bin, self.classes_ = _binary_target(y)

        result = sm.GLM(
            y_bin, _design(X, self.fit_intercept), family=sm.families.Binomial()
        ).fit(maxiter=self.maxiter)

        params = np.asarray(result.params)
        if self.fit_intercept:
            self.intercept_, self.coef_ = float(params[0]), params[1:]
        else:
            self.intercept_, self.coef_ = 0.0, params
        self.bse_ = np.asarray(result.bse)
        self.pvalues_ = np.asarray(result.pvalues)
        self.aic_ = float(result.aic)
        self.deviance_ = float(result.deviance)
        self.n_features_in_ = X.shape[1]
        return self

    def decision_function(self, X):
        check_is_fitted(self, "coef_")
        X = check_array(X, ensure_min_features=0)
        return X @ self.coef_ + self.intercept_

    def predict_proba(self, X):
        p = expit(self.decision_function(X))
        return np.column_stack([1.0 - p, p])

    def predict(self, X):
        return self.classes_[(self.predict_proba(X)[:, 1] > 0.5).astype(int)]

    def summary(self) -> pd.DataFrame:
        """Coefficient table (estimate, std. error, z, p)."""
        check_is_fitted(self, "coef_")
        names = list(self.feature_names_)
        estimates = list(self.coef_)
        if self.fit_intercept:
            names = ["(Intercept)"] + names
            estimates = [self.intercept_] + estimates
        estimates = np.asarray(estimates)
        return pd.DataFrame({
            "term": names,
            "estimate": estimates,
            "std_error": self.bse_,
            "z_value": estimates / self.bse_,
            "p_value": self.pvalues_,
        })


class StepAICGLM(ClassifierMixin, BaseEstimator):
    """
    Logistic GLM with bidirectional stepwise selection by AIC.

    Starts from the full model; each step applies the single drop or
    re-add that lowers AIC most and stops when no move improves it.
    """

    def __init__(self, direction: str = "both", max_steps: int = 1000, tol: float = 1e-8):
        self.direction = direction
        self.max_steps = max_steps
        self.tol = tol

    def fit(self, X, y):
        if self.direction not in ("both", "backward"):
            raise ValueError(f"direction must be 'both' or 'backward', got {self.direction!r}")
        names = _column_names(X, np.shape(X)[1])
        X = check_array(X)
        y_bin, self.classes_ = _binary_target(y)
        n_features = X.shape[1]

        selected = list(range(n_features))
        current = binomial_aic(X[:, selected], y_bin)
        path = [("<full>", current)]

        for _ in range(self.max_steps):
            moves = [("-", j) for j in selected]
            if self.direction == "both":
                moves += [("+", j) for j in range(n_features) if j not in selected]
            if not moves:
                break

            best_move, best_aic = None, current
            for op, j in moves:
                cols = [c for c in selected if c != j] if op == "-" else sorted(selected + [j])
                aic = binomial_aic(X[:, cols], y_bin)
                if aic < best_aic - self.tol:
                    best_move, best_aic = (op, j), aic

            if best_move is None:
                break
            op, j = best_move
            selected = [c for c in selected if c != j] if op == "-" else sorted(selected + [j])
            current = best_aic
            path.append((f"{op} {names[j]}", current))

        self.selected_ = np.array(selected, dtype=int)
        self.selected_names_ = [names[j] for j in selected]
        self.steps_ = pd.DataFrame(path, columns=["step", "aic"])
        self.aic_ = current
        self.n_features_in_ = n_features

        self.glm_ = BinomialGLM().fit(pd.DataFrame(X[:, selected], columns=self.selected_names_), y)
        logger.debug(f"StepAIC kept {len(selected)}/{n_features} covariates, AIC={current:.2f}")
        return self

    def predict_proba(self, X):
        check_is_fitted(self, "glm_")
        X = check_array(X)
        return self.glm_.predict_proba(X[:, self.selected_])

    def predict(self, X):
        return self.classes_[(self.predict_proba(X)[:, 1] > 0.5).astype(int)]

    def summary(self) -> pd.DataFrame:
        return self.glm_.summary()


class LogisticGAM(ClassifierMixin, BaseEstimator):
    """
    Binomial GAM with an additive penalised B-spline smooth per column.

    Prediction inputs are clipped to the calibration range: the spline
    basis is undefined beyond its outer knots.
    """

    def __init__(self, df: int = 6, degree: int = 3, alpha: float = 1.0, maxiter: int = 100):
        self.df = df
        self.degree = degree
        self.alpha = alpha
        self.maxiter = maxiter

    def fit(self, X, y):
        X = check_array(X)
        y_bin, self.classes_ = _binary_target(y)
        n, p = X.shape

        self.lower_ = X.min(axis=0)
        self.upper_ = X.max(axis=0)
        constant = np.flatnonzero(self.upper_ <= self.lower_)
        if len(constant):
            raise ValueError(f"LogisticGAM cannot smooth constant columns {constant.tolist()}")

        smoother = BSplines(X, df=[self.df] * p, degree=[self.degree] * p)
        self.result_ = GLMGam(
            y_bin,
            exog=np.ones((n, 1)),
            smoother=smoother,
            alpha=[self.alpha] * p,
            family=sm.families.Binomial(),
        ).fit(maxiter=self.maxiter)
        self.n_features_in_ = p
        return self

    def predict_proba(self, X):
        check_is_fitted(self, "result_")
        X = np.clip(check_array(X), self.lower_, self.upper_)
        p = np.asarray(self.result_.predict(exog=np.ones((X.shape[0], 1)), exog_smooth=X))
        return np.column_stack([1.0 - p, p])

    def predict(self, X):
        return self.classes_[(self.predict_proba(X)[:, 1] > 0.5).astype(int)]

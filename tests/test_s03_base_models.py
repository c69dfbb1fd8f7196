"""Tests for s03_base_models.py: model specs, CV control, training and caching."""
from dataclasses import replace
from unittest.mock import patch

import numpy as np
import pytest
from sklearn.model_selection import StratifiedKFold

from siteindex import config
from siteindex.s03_base_models import (
    MODEL_LABELS, FittedModel, ModelSpec, build_model_specs, cv_control,
    resolve_feature_cols, train_all, train_model, variable_importance,
)


@pytest.fixture
def study():
    return replace(
        config.get_study("OAF"),
        models=("gm", "gl1", "gl2", "rf", "gb", "nn"),
        trend_cols=["x0", "x1"],
        central_place_cols=["x0", "x2"],
    )


@pytest.fixture
def small_grids(monkeypatch):
    monkeypatch.setattr(config, "RF_TREES", 25)
    monkeypatch.setattr(config, "GB_GRID", {
        "model__max_depth": [2],
        "model__learning_rate": [0.1],
        "model__n_estimators": [20],
        "model__min_samples_leaf": [10],
    })
    monkeypatch.setattr(config, "NN_GRID", {
        "model__hidden_layer_sizes": [(2,)],
        "model__alpha": [0.01],
    })
    monkeypatch.setattr(config, "GAM_GRID", {"model__alpha": [1.0]})


# ─── Specs ───────────────────────────────────────────────────────

def test_model_labels_cover_every_study_model():
    for study in config.STUDIES.values():
        for name in study.models:
            assert name in MODEL_LABELS


def test_resolve_feature_cols(study):
    assert resolve_feature_cols(study, ["c1", "x", "c2", "y"]) == ["c1", "c2"]
    explicit = replace(study, feature_cols=["c2"])
    assert resolve_feature_cols(explicit, ["c1", "c2"]) == ["c2"]


def test_build_model_specs_columns(study):
    specs = {s.name: s for s in build_model_specs(study, ["x0", "x1", "x2"])}
    assert list(specs) == list(study.models)
    assert specs["gm"].columns == ["x0", "x1"]
    assert specs["gl1"].columns == ["x0", "x2"]
    assert specs["gl2"].columns == ["x0", "x1", "x2"]
    for spec in specs.values():
        assert isinstance(spec, ModelSpec)
        assert [step for step, _ in spec.estimator.steps] == ["impute", "scale", "model"]
        assert spec.param_grid


def test_rf_grid_clipped_to_feature_count(study):
    rf = next(s for s in build_model_specs(study, ["x0", "x1"]) if s.name == "rf")
    assert rf.param_grid["model__max_features"] == [1, 2]
    assert rf.estimator.named_steps["model"].n_estimators == config.RF_TREES


def test_unknown_model(study):
    with pytest.raises(ValueError, match="Unknown base model"):
        build_model_specs(replace(study, models=("svm",)), ["x0"])


def test_model_without_covariates(study):
    with pytest.raises(ValueError, match="no covariates"):
        build_model_specs(replace(study, models=("gm",), trend_cols=[]), ["x0"])


# ─── CV control ──────────────────────────────────────────────────

def test_cv_control_defaults():
    cv = cv_control()
    assert isinstance(cv, StratifiedKFold)
    assert cv.n_splits == config.CV_FOLDS
    assert cv.random_state == config.CV_SEED


def test_cv_control_shrinks_to_minority():
    y = np.array([1] * 4 + [0] * 40)
    assert cv_control(y).n_splits == 4


def test_cv_control_needs_two_of_each_class():
    with pytest.raises(ValueError, match="at least 2"):
        cv_control(np.array([1] + [0] * 20))


# ─── Training ────────────────────────────────────────────────────

def test_train_model_glm(study, binary_data):
    X, y = binary_data
    spec = next(s for s in build_model_specs(study, list(X.columns)) if s.name == "gl2")
    model = train_model(spec, X, y, n_jobs=1)

    assert isinstance(model, FittedModel)
    assert model.cv_auc > 0.8
    assert model.best_params == {"direction": "both"}
    assert {"mean_test_score", "rank_test_score"} <= set(model.cv_results.columns)

    prob = model.predict_proba(X)
    assert prob.shape == (len(X),)
    assert ((prob >= 0) & (prob <= 1)).all()


def test_train_model_missing_columns(study, binary_data):
    X, y = binary_data
    spec = build_model_specs(study, ["x0", "x9"])[2]
    with pytest.raises(ValueError, match="x9"):
        train_model(spec, X, y, n_jobs=1)


def test_train_all_every_model(study, binary_data, small_grids, tmp_path):
    X, y = binary_data
    models = train_all(study, X, y, list(X.columns), tmp_path, n_jobs=1)

    assert list(models) == list(study.models)
    for name, model in models.items():
        assert (tmp_path / f"qy_{name}.joblib").exists()
        assert model.cv_auc > 0.6


def test_train_all_reuses_cache(study, binary_data, tmp_path):
    X, y = binary_data
    study = replace(study, models=("gl1",))
    first = train_all(study, X, y, list(X.columns), tmp_path, n_jobs=1)

    with patch("siteindex.s03_base_models.train_model") as mock_train:
        second = train_all(study, X, y, list(X.columns), tmp_path, n_jobs=1)
    mock_train.assert_not_called()
    assert second["gl1"].columns == first["gl1"].columns


def test_train_all_retrains_on_new_covariates(study, binary_data, tmp_path):
    X, y = binary_data
    train_all(replace(study, models=("gl1",)), X, y, list(X.columns), tmp_path, n_jobs=1)

    changed = replace(study, models=("gl1",), central_place_cols=["x1", "x2"])
    models = train_all(changed, X, y, list(X.columns), tmp_path, n_jobs=1)
    assert models["gl1"].columns == ["x1", "x2"]


def test_train_all_force(study, binary_data, tmp_path):
    X, y = binary_data
    study = replace(study, models=("gl1",))
    train_all(study, X, y, list(X.columns), tmp_path, n_jobs=1)

    with patch("siteindex.s03_base_models.joblib.dump"), \
         patch("siteindex.s03_base_models.train_model") as mock_train:
        train_all(study, X, y, list(X.columns), tmp_path, force=True, n_jobs=1)
    mock_train.assert_called_once()


# ─── Importance ──────────────────────────────────────────────────

def test_variable_importance_ranks_signal_first(study, binary_data):
    X, y = binary_data
    spec = next(s for s in build_model_specs(study, list(X.columns)) if s.name == "gl2")
    model = train_model(spec, X, y, n_jobs=1)

    imp = variable_importance(model.estimator, X, y, n_repeats=3)
    assert list(imp.columns) == ["feature", "importance", "importance_sd"]
    assert imp["feature"].iloc[0] == "x0"
    assert imp["importance"].is_monotonic_decreasing


def test_stepwise_glm_keeps_covariate_names(study, binary_data):
    X, y = binary_data
    cal = X.rename(columns={"x0": "dmkt", "x1": "droad", "x2": "dhq"})
    named = replace(study, models=("gl1",), central_place_cols=["dmkt", "droad", "dhq"])
    spec = build_model_specs(named, list(cal.columns))[0]
    model = train_model(spec, cal, y, n_jobs=1)

    glm = model.estimator.named_steps["model"]
    assert "dmkt" in glm.selected_names_
    assert set(glm.selected_names_) <= {"dmkt", "droad", "dhq"}
    terms = glm.summary()["term"].tolist()
    assert terms[0] == "(Intercept)"
    assert terms[1:] == glm.selected_names_

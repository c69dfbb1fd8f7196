"""Tests for s04_spatial_predict.py and s05_stacking.py."""
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest
from rasterio.transform import from_origin

from siteindex.s02_covariates import CovariateGrid
from siteindex.s04_spatial_predict import predict_grid, predict_stack
from siteindex.s05_stacking import (
    Stacker, predict_stacked, train_stacker, validation_features,
)


def _covariates():
    a = np.linspace(0, 1, 20, dtype=np.float32).reshape(4, 5)
    b = np.ones((4, 5), dtype=np.float32)
    b[0, 0] = np.nan
    return CovariateGrid(np.stack([a, b]), ["a", "b"], from_origin(0, 40, 10, 10), "EPSG:32737")


def _fake_model(name, columns):
    """Model stub returning the first covariate as its probability."""
    return SimpleNamespace(
        name=name,
        columns=columns,
        predict_proba=lambda X: X[columns[0]].to_numpy(),
    )


# ─── Spatial prediction ──────────────────────────────────────────

def test_predict_grid_keeps_nodata():
    grid = _covariates()
    out = predict_grid(_fake_model("m1", ["a", "b"]), grid)
    assert out.names == ["m1"]
    assert np.isnan(out.layer("m1")[0, 0])
    np.testing.assert_allclose(out.layer("m1")[1:], grid.layer("a")[1:])


def test_predict_grid_ignores_unused_nodata():
    out = predict_grid(_fake_model("m1", ["a"]), _covariates())
    assert np.isfinite(out.layer("m1")).all()


def test_predict_grid_chunks():
    grid = _covariates()
    whole = predict_grid(_fake_model("m1", ["a"]), grid)
    chunked = predict_grid(_fake_model("m1", ["a"]), grid, chunk_size=3)
    np.testing.assert_array_equal(whole.data, chunked.data)


def test_predict_stack_order_and_coordinates():
    models = {
        "m1": _fake_model("m1", ["a"]),
        "m2": _fake_model("m2", ["x", "y"]),
    }
    out = predict_stack(models, _covariates())
    assert out.names == ["m1", "m2"]
    # m2 returns the pixel-centre x coordinate
    assert out.layer("m2")[0, 0] == pytest.approx(5)
    assert out.layer("m2")[3, 4] == pytest.approx(45)


def test_predict_stack_empty():
    with pytest.raises(ValueError, match="No fitted models"):
        predict_stack({}, _covariates())


# ─── Stacking ────────────────────────────────────────────────────

@pytest.fixture
def prediction_stack():
    """Two base-model surfaces over a 20 x 20 grid; m1 is informative."""
    rng = np.random.default_rng(5)
    m1 = np.tile(np.linspace(0.05, 0.95, 20, dtype=np.float32), (20, 1))
    m2 = rng.uniform(0, 1, (20, 20)).astype(np.float32)
    m2[0, 0] = np.nan
    return CovariateGrid(np.stack([m1, m2]), ["m1", "m2"], from_origin(0, 200, 10, 10))


@pytest.fixture
def validation_sites(prediction_stack):
    rng = np.random.default_rng(8)
    rows, cols = np.indices((20, 20))
    rows, cols = rows.ravel(), cols.ravel()
    p = prediction_stack.layer("m1")[rows, cols]
    label = np.where(rng.uniform(size=len(p)) < p, "A", "B")
    return pd.DataFrame({
        "x": cols * 10 + 5.0,
        "y": 200 - (rows * 10 + 5.0),
        "qy": label,
    })


def test_validation_features_drops_nan_sites(prediction_stack, validation_sites):
    feats, labels = validation_features(prediction_stack, validation_sites, "qy")
    assert list(feats.columns) == ["m1", "m2"]
    assert len(feats) == len(validation_sites) - 1
    assert feats.index.equals(labels.index)
    assert feats.notna().all().all()


def test_train_stacker(prediction_stack, validation_sites):
    feats, labels = validation_features(prediction_stack, validation_sites, "qy")
    y = (labels == "A").to_numpy(dtype=int)
    stacker = train_stacker(feats, y, name="si", n_jobs=1)

    assert isinstance(stacker, Stacker)
    assert stacker.columns == ["m1", "m2"]
    assert len(stacker.cv_scores) == 10
    assert stacker.cv_auc > 0.65
    summary = stacker.summary().set_index("term")
    assert summary.loc["m1", "estimate"] > 0
    assert summary.loc["m1", "p_value"] < summary.loc["m2", "p_value"]


def test_predict_stacked_surface(prediction_stack, validation_sites):
    feats, labels = validation_features(prediction_stack, validation_sites, "qy")
    stacker = train_stacker(feats, (labels == "A").to_numpy(dtype=int), n_jobs=1)
    out = predict_stacked(stacker, prediction_stack)

    assert out.names == ["si"]
    assert out.shape == prediction_stack.shape
    assert np.isnan(out.layer("si")[0, 0])
    valid = out.layer("si")[np.isfinite(out.layer("si"))]
    assert ((valid > 0) & (valid < 1)).all()
    # probability rises along the informative surface
    row = out.layer("si")[5]
    assert row[-1] > row[0]

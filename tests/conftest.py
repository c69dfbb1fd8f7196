"""Pytest configuration and shared fixtures."""
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import from_origin

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

GRID_ROWS = 30
GRID_COLS = 40
GRID_CRS = "EPSG:32737"
GRID_TRANSFORM = from_origin(500_000, 9_000_000, 100, 100)


def _covariate_layers() -> dict[str, np.ndarray]:
    rng = np.random.default_rng(7)
    rows, cols = np.indices((GRID_ROWS, GRID_COLS))
    layers = {
        "c1": (cols / GRID_COLS).astype(np.float32),
        "c2": (rows / GRID_ROWS).astype(np.float32),
        "c3": rng.normal(0, 1, (GRID_ROWS, GRID_COLS)).astype(np.float32),
        "c4": np.sin(cols / 6.0).astype(np.float32),
    }
    # nodata block in one corner of c3
    layers["c3"][:3, :3] = -9999.0
    return layers


def write_geotiff(path: Path, data: np.ndarray, descriptions=None, transform=GRID_TRANSFORM):
    if data.ndim == 2:
        data = data[np.newaxis, ...]
    with rasterio.open(
        path, "w", driver="GTiff",
        height=data.shape[1], width=data.shape[2], count=data.shape[0],
        dtype="float32", crs=GRID_CRS, transform=transform, nodata=-9999.0,
    ) as dst:
        dst.write(data.astype(np.float32))
        if descriptions:
            for i, name in enumerate(descriptions, start=1):
                dst.set_band_description(i, name)
    return path


@pytest.fixture
def grid_dir(tmp_path):
    """Directory of single-band covariate GeoTIFFs."""
    out = tmp_path / "grids"
    out.mkdir()
    for name, data in _covariate_layers().items():
        write_geotiff(out / f"{name}.tif", data)
    return out


@pytest.fixture
def grid_file(tmp_path):
    """One multiband covariate GeoTIFF with band descriptions."""
    layers = _covariate_layers()
    return write_geotiff(
        tmp_path / "stack.tif", np.stack(list(layers.values())), descriptions=list(layers)
    )


@pytest.fixture
def site_table():
    """Synthetic survey sites located on grid pixel centres."""
    rng = np.random.default_rng(42)
    n = 300
    layers = _covariate_layers()
    rows = rng.integers(3, GRID_ROWS, n)
    cols = rng.integers(3, GRID_COLS, n)
    x = GRID_TRANSFORM.c + (cols + 0.5) * GRID_TRANSFORM.a
    y = GRID_TRANSFORM.f + (rows + 0.5) * GRID_TRANSFORM.e

    signal = 2.0 * layers["c1"][rows, cols] + 1.5 * layers["c2"][rows, cols] + rng.normal(0, 0.3, n)
    qy = np.where(signal > np.median(signal), "A", "B")

    trt = rng.integers(0, 2, n)
    dap = rng.choice([0, 25, 50], n)
    can = rng.choice([0, 25, 50], n)
    year = rng.choice([2016, 2017], n)
    gid = rng.integers(1, 25, n)
    log_yield = 0.8 + 0.25 * trt + 0.4 * (qy == "A") + 0.002 * dap + rng.normal(0, 0.2, n)

    return pd.DataFrame({
        "x": x, "y": y, "qy": qy,
        "trt": trt, "dap": dap, "can": can, "year": year, "GID": gid,
        "yield": np.exp(log_yield),
    })


@pytest.fixture
def sites_csv(tmp_path, site_table):
    path = tmp_path / "sites.csv"
    site_table.to_csv(path, index=False)
    return path


@pytest.fixture
def binary_data():
    """Small classification problem: x0 carries the signal, x1..x2 are noise."""
    rng = np.random.default_rng(0)
    n = 240
    X = pd.DataFrame(rng.normal(0, 1, (n, 3)), columns=["x0", "x1", "x2"])
    logits = 2.5 * X["x0"].to_numpy()
    y = (rng.uniform(size=n) < 1 / (1 + np.exp(-logits))).astype(int)
    return X, y

"""
Covariate Grids and Survey Sites
================================
Read raster covariate grids, load geo-referenced survey sites and sample
grid values at site locations.

Grids are held in memory as a (bands, rows, cols) float32 array with NaN
for nodata, together with the layer names and the georeference.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from rasterio.transform import Affine, rowcol, xy

logger = logging.getLogger(__name__)

COORD_LAYERS = ("x", "y")


@dataclass
class CovariateGrid:
    """A stack of co-registered raster layers."""

    data: np.ndarray
    names: list[str]
    transform: Affine
    crs: object = None

    def __post_init__(self):
        if self.data.ndim == 2:
            self.data = self.data[np.newaxis, ...]
        if self.data.shape[0] != len(self.names):
            raise ValueError(
                f"Grid has {self.data.shape[0]} bands but {len(self.names)} layer names."
            )
        if len(set(self.names)) != len(self.names):
            raise ValueError(f"Duplicate layer names: {self.names}")

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape[1], self.data.shape[2]

    def layer(self, name: str) -> np.ndarray:
        return self.data[self._index(name)]

    def _index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(f"Layer '{name}' not in grid. Available: {self.names}") from None

    def select(self, names: list[str]) -> "CovariateGrid":
        """Return a grid holding only ``names``, in that order."""
        idx = [self._index(n) for n in names]
        return CovariateGrid(self.data[idx], list(names), self.transform, self.crs)

    def with_coordinates(self) -> "CovariateGrid":
        """Add pixel-centre ``x`` / ``y`` layers (map units) if absent."""
        missing = [c for c in COORD_LAYERS if c not in self.names]
        if not missing:
            return self
        rows, cols = np.indices(self.shape)
        xs, ys = xy(self.transform, rows.ravel(), cols.ravel(), offset="center")
        coords = {
            "x": np.asarray(xs, dtype=np.float32).reshape(self.shape),
            "y": np.asarray(ys, dtype=np.float32).reshape(self.shape),
        }
        extra = np.stack([coords[c] for c in missing])
        return CovariateGrid(
            np.concatenate([self.data, extra]), self.names + missing, self.transform, self.crs
        )

    def valid_mask(self, names: list[str] | None = None) -> np.ndarray:
        """Pixels that are finite in every (selected) layer."""
        data = self.data if names is None else self.select(names).data
        return np.all(np.isfinite(data), axis=0)

    def to_frame(self, names: list[str] | None = None) -> tuple[pd.DataFrame, np.ndarray]:
        """
        Flatten valid pixels into a table.

        Returns:
            (table with one column per layer, boolean (rows, cols) mask of
            the pixels the table rows came from)
        """
        grid = self if names is None else self.select(names)
        mask = grid.valid_mask()
        table = pd.DataFrame(grid.data[:, mask].T, columns=grid.names)
        return table, mask

    def sample(self, xs, ys) -> pd.DataFrame:
        """Layer values at map coordinates; NaN outside the grid."""
        xs = np.asarray(xs, dtype=float)
        ys = np.asarray(ys, dtype=float)
        out = np.full((len(xs), len(self.names)), np.nan, dtype=np.float64)
        if len(xs) == 0:
            return pd.DataFrame(out, columns=self.names)

        rows, cols = rowcol(self.transform, xs, ys)
        rows = np.asarray(rows)
        cols = np.asarray(cols)
        n_rows, n_cols = self.shape
        inside = (rows >= 0) & (rows < n_rows) & (cols >= 0) & (cols < n_cols)
        if not inside.all():
            logger.warning(f"{(~inside).sum()} points fall outside the grid extent.")
        out[inside] = self.data[:, rows[inside], cols[inside]].T
        return pd.DataFrame(out, columns=self.names)

    def stack(self, other: "CovariateGrid") -> "CovariateGrid":
        """Concatenate the layers of two grids with identical geometry."""
        if self.shape != other.shape or self.transform != other.transform:
            raise ValueError("Cannot stack grids with different shape or transform.")
        return CovariateGrid(
            np.concatenate([self.data, other.data]),
            self.names + other.names,
            self.transform,
            self.crs,
        )

    @classmethod
    def from_pixels(
        cls,
        values: np.ndarray,
        mask: np.ndarray,
        names: list[str],
        like: "CovariateGrid",
    ) -> "CovariateGrid":
        """Scatter per-pixel values (n_valid, n_layers) back into a grid."""
        values = np.asarray(values, dtype=np.float32)
        if values.ndim == 1:
            values = values[:, np.newaxis]
        data = np.full((values.shape[1], *mask.shape), np.nan, dtype=np.float32)
        data[:, mask] = values.T
        return cls(data, list(names), like.transform, like.crs)


def _read_raster(path: Path) -> tuple[np.ndarray, dict, tuple]:
    with rasterio.open(path) as src:
        data = src.read().astype(np.float32)
        if src.nodata is not None:
            data[data == src.nodata] = np.nan
        meta = {"transform": src.transform, "crs": src.crs, "shape": src.shape}
        descriptions = src.descriptions
    return data, meta, descriptions


def load_grids(path: Path) -> CovariateGrid:
    """
    Load covariate grids from a directory of single-band GeoTIFFs or from
    one multiband GeoTIFF.

    A directory yields one layer per file, named by the file stem; rasters
    not aligned with the first file are skipped. A multiband file yields
    layers named by the band descriptions (b1..bn when unset).
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Covariate grids not found: {path}")

    if path.is_file():
        data, meta, descriptions = _read_raster(path)
        names = [d if d else f"b{i + 1}" for i, d in enumerate(descriptions)]
        logger.info(f"Loaded {len(names)} layers from {path.name}")
        return CovariateGrid(data, names, meta["transform"], meta["crs"])

    raster_files = sorted(p for p in path.iterdir() if p.suffix.lower() in (".tif", ".tiff"))
    if not raster_files:
        raise FileNotFoundError(f"No GeoTIFF rasters found in {path}")

    layers, names = [], []
    reference = None
    for raster_file in raster_files:
        data, meta, _ = _read_raster(raster_file)
        if reference is None:
            reference = meta
        elif (
            meta["transform"] != reference["transform"]
            or meta["shape"] != reference["shape"]
            or meta["crs"] != reference["crs"]
        ):
            logger.warning(f"Skipping misaligned raster: {raster_file.name}")
            continue
        layers.append(data[0])
        names.append(raster_file.stem)

    logger.info(f"Loaded {len(names)} covariate layers from {path}")
    return CovariateGrid(np.stack(layers), names, reference["transform"], reference["crs"])


def load_sites(path: Path, crs=None) -> gpd.GeoDataFrame:
    """Load the survey site table (x / y in grid map units) as points."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Site data not found: {path}")

    df = pd.read_csv(path, low_memory=False)
    missing = [c for c in COORD_LAYERS if c not in df.columns]
    if missing:
        raise ValueError(f"Site data {path.name} lacks coordinate columns {missing}")

    n_before = len(df)
    df = df.dropna(subset=list(COORD_LAYERS)).reset_index(drop=True)
    if len(df) < n_before:
        logger.warning(f"Dropped {n_before - len(df)} sites without coordinates.")

    gdf = gpd.GeoDataFrame(df, geometry=gpd.points_from_xy(df["x"], df["y"]), crs=crs)
    logger.info(f"Loaded {len(gdf)} sites from {path.name}")
    return gdf


def extract_covariates(
    sites: pd.DataFrame,
    grid: CovariateGrid,
    overwrite: bool = False,
) -> pd.DataFrame:
    """
    Add grid values at the site locations as columns.

    Layers already present as site columns are kept unless ``overwrite``.
    """
    names = [n for n in grid.names if overwrite or n not in sites.columns]
    if not names:
        return sites.copy()

    values = grid.select(names).sample(sites["x"].to_numpy(), sites["y"].to_numpy())
    out = sites.copy()
    for name in names:
        out[name] = values[name].to_numpy()
    return out

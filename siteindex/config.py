"""
Configuration for the stacked site-index mapping pipeline.

Note on class labels:
    Site-index classes are coded "A" (high) and "B" (low). Every model
    probability, stacked layer and ROC evaluation refers to class "A";
    the management-zone mask is 1 where the stacked probability of "A"
    exceeds the ROC-derived cutoff.

Note on column groups:
    Each study names three covariate groups: spatial-trend covariates for
    the GAM, central-place covariates (distances to markets, roads,
    settlements) for the first stepwise GLM, and the full covariate set
    for the remaining learners. feature_cols=None means every layer of the
    covariate grid.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

logger = logging.getLogger(__name__)

# ─── Paths ───────────────────────────────────────────────────────
ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = ROOT / "data"
GRIDS_DIR = DATA_DIR / "grids"
RESULTS_DIR = ROOT / "Results"

# ─── Randomisation ───────────────────────────────────────────────
PARTITION_SEED = 12358   # calibration/validation split
CV_SEED = 1385321        # every cross-validation control

# ─── Partition / CV ──────────────────────────────────────────────
CALIBRATION_FRACTION = 4 / 5
CV_FOLDS = 10
CV_SCORING = "roc_auc"

POSITIVE_CLASS = "A"
NEGATIVE_CLASS = "B"
CLASS_LABELS = (POSITIVE_CLASS, NEGATIVE_CLASS)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring {name}={value!r}: not an integer, using {default}.")
        return default


# -1 = all cores
N_JOBS = _env_int("SITEINDEX_N_JOBS", -1)

# ─── Hyperparameter grids ────────────────────────────────────────
# Keys are pipeline parameter names (estimator step is "model").
RF_TREES = 501
RF_GRID = {"model__max_features": [1, 2, 3, 4, 5]}

GB_GRID = {
    "model__max_depth": [2, 3, 4, 5],
    "model__learning_rate": [0.01],
    "model__n_estimators": list(range(101, 502, 50)),
    "model__min_samples_leaf": [50],
}

NN_GRID = {
    "model__hidden_layer_sizes": [(size,) for size in range(2, 11, 2)],
    "model__alpha": [0.001, 0.01, 0.1],
}
NN_MAX_ITER = 1000

# stepAIC has no tuning parameter; one grid point keeps the CV report uniform
GLM_GRID = {"model__direction": ["both"]}

GAM_SPLINE_DF = 6
GAM_DEGREE = 3
GAM_GRID = {"model__alpha": [0.1, 1.0, 10.0]}

# ─── ROC thresholds ──────────────────────────────────────────────
THRESHOLD_METHODS = (
    "kappa",
    "spec_sens",
    "no_omission",
    "prevalence",
    "equal_sens_spec",
    "sensitivity",
)
DEFAULT_THRESHOLD = "kappa"
THRESHOLD_SENSITIVITY = 0.9
# cutoffs sit this far below each observed score
CUTOFF_OFFSET = 1e-4

# ─── Spatial prediction ──────────────────────────────────────────
PREDICT_CHUNK = 250_000  # pixels per predict_proba call
NODATA = -9999.0

# ─── Permutation importance ──────────────────────────────────────
IMPORTANCE_REPEATS = 5

# ─── Yield potential ─────────────────────────────────────────────
YIELD_QUANTILES = (0.05, 0.5, 0.95)
YIELD_COLUMNS = ["yield", "trt", "si", "dap", "can", "year", "GID"]


@dataclass(frozen=True)
class StudyConfig:
    """Definition of one site-index study."""

    name: str
    label: str
    stack_name: str
    models: tuple[str, ...]
    output_stem: str
    trend_cols: list[str] = field(default_factory=list)
    central_place_cols: list[str] = field(default_factory=list)
    feature_cols: list[str] | None = None
    yield_model: bool = False
    threshold_method: str = DEFAULT_THRESHOLD

    @property
    def layer_names(self) -> list[str]:
        """Band names of the final prediction stack."""
        return [*self.models, self.stack_name, "mk"]


STUDIES: dict[str, StudyConfig] = {
    "OAF": StudyConfig(
        name="OAF",
        label="qy",
        stack_name="si",
        models=("gm", "gl1", "gl2", "rf", "gb", "nn"),
        output_stem="OAF_qy",
        trend_cols=["x", "y"],
        central_place_cols=[
            "bcount", "bd20", "cdist", "dcell", "dgrid", "dhq",
            "dnppa", "dtfc", "mdist", "pdist", "rdist", "wdist",
        ],
        yield_model=True,
    ),
    "OCP": StudyConfig(
        name="OCP",
        label="sic",
        stack_name="st",
        models=("gl1", "gl2", "rf", "gb", "nn"),
        output_stem="OCP_sic",
        central_place_cols=[
            "bcount", "bd20", "cdist", "dcell", "dgrid", "dhq",
            "dnppa", "mdist", "pdist", "rdist", "wdist",
        ],
    ),
}


def get_study(name: str) -> StudyConfig:
    """Look up a study by name (case-insensitive)."""
    key = name.upper()
    if key not in STUDIES:
        raise KeyError(f"Unknown study '{name}'. Known studies: {sorted(STUDIES)}")
    return STUDIES[key]


def load_study_overrides(path: Path, study: StudyConfig) -> StudyConfig:
    """
    Apply field overrides from a JSON file to a study definition.

    The file holds a single object whose keys are StudyConfig field names,
    e.g. {"central_place_cols": ["dmkt", "droad"], "threshold_method": "spec_sens"}.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Study override file not found: {path}")
    overrides = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(overrides, dict):
        raise ValueError(
            f"{path.name} must hold a JSON object of study fields, got {type(overrides).__name__}"
        )

    known = {f.name for f in fields(StudyConfig)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown study fields in {path.name}: {unknown}")
    if "models" in overrides:
        overrides["models"] = tuple(overrides["models"])
    if overrides.get("threshold_method", study.threshold_method) not in THRESHOLD_METHODS:
        raise ValueError(
            f"threshold_method must be one of {THRESHOLD_METHODS}, "
            f"got {overrides['threshold_method']!r}"
        )
    return replace(study, **overrides)

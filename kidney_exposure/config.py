"""
Configuration loader and engine constants for the kidney-function exposure models.

Usage:
    from kidney_exposure.config import cfg, ENGINE, tree_rng
    rng = tree_rng(cfg["modeling"]["random_seed"], tree_index=3)
    print(cfg["forest"]["n_trees"])        # 500
"""

import os
import yaml
import numpy as np
from pathlib import Path
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------
_PACKAGE_ROOT = Path(__file__).resolve().parent
_DEFAULT_CONFIG = _PACKAGE_ROOT / "configs" / "default.yaml"
CONFIG_ENV_VAR = "KIDNEY_EXPOSURE_CONFIG"


def load_config(path: Path | str | None = None) -> dict:
    """
    Load YAML config and return as dict.

    Resolution order: explicit path, then $KIDNEY_EXPOSURE_CONFIG, then the
    packaged default.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or _DEFAULT_CONFIG
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


cfg = load_config()


# ---------------------------------------------------------------------------
# Engine constants (immutable numeric tolerances)
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class EngineConstants:
    """Fixed numeric constants shared by the analytic modules."""
    VALID_COLUMN_KINDS: tuple = ("continuous", "categorical")
    # relative SSE reduction a split must achieve to be kept
    SPLIT_GAIN_RTOL: float = 1e-12
    # tolerated log-likelihood decrease before step halving kicks in
    LOGLIK_ATOL: float = 1e-10
    # seed stream ids used with tree_rng
    STREAM_BUILD: int = 0
    STREAM_IMPORTANCE: int = 1
    STREAM_SUBSAMPLE: int = 2


ENGINE = EngineConstants()


# ---------------------------------------------------------------------------
# Deterministic seed derivation
# ---------------------------------------------------------------------------
def tree_rng(root_seed: int, tree_index: int, stream: int = 0) -> np.random.Generator:
    """
    Return a generator owned by one tree.

    The generator depends only on (root_seed, tree_index, stream), so an
    ensemble is reproducible regardless of how many workers build it.
    """
    seq = np.random.SeedSequence([int(root_seed), int(tree_index), int(stream)])
    return np.random.default_rng(seq)


def resolve(value, section: str, key: str):
    """Return `value`, or the configured default when it is None."""
    if value is None:
        return cfg[section][key]
    return value


# ---------------------------------------------------------------------------
# Output path helpers
# ---------------------------------------------------------------------------
def get_output_dir(kind: str = "tables", base: Path | None = None) -> Path:
    """Return absolute path for an output directory, creating it if needed."""
    key_map = {
        "tables": "tables_dir",
    }
    rel = cfg["outputs"].get(key_map.get(kind, kind), kind)
    out = (base or Path.cwd()) / rel
    out.mkdir(parents=True, exist_ok=True)
    return out

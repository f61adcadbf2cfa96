import dataclasses

import numpy as np
import pandas as pd
import pytest

from kidney_exposure import config
from kidney_exposure.config import ENGINE, cfg, get_output_dir, load_config, resolve, tree_rng
from kidney_exposure.dataset import Dataset
from kidney_exposure.errors import DataError, DesignError, ExposureModelError
from kidney_exposure.survey import build_design, fit_weighted_logistic


def test_default_config_sections():
    for section in ("modeling", "regression", "forest", "interpretability", "outputs", "analysis"):
        assert section in cfg
    assert cfg["regression"]["lonely_psu"] in ("fail", "adjust")
    assert cfg["forest"]["n_trees"] == 500


@pytest.mark.parametrize("section", ["regression", "forest", "interpretability"])
def test_numeric_defaults_load_as_numbers(section):
    for key, value in cfg[section].items():
        if key == "lonely_psu" or value is None:
            continue
        assert isinstance(value, (int, float)) and not isinstance(value, bool), (key, value)


def test_unsigned_exponent_in_override_file_still_fits(tmp_path, monkeypatch):
    path = tmp_path / "run.yaml"
    path.write_text("regression:\n  singular_cond: 1.0e12\n  tol: 1.0e-8\n", encoding="utf-8")
    overridden = load_config(path)["regression"]
    assert overridden["singular_cond"] == "1.0e12"
    monkeypatch.setitem(cfg["regression"], "singular_cond", overridden["singular_cond"])

    rng = np.random.default_rng(4)
    n = 200
    x = rng.normal(size=n)
    frame = pd.DataFrame({
        "y": (rng.uniform(size=n) < 1.0 / (1.0 + np.exp(-x))).astype(float),
        "x": x,
        "stratum": np.repeat([1, 2], n // 2),
        "psu": np.tile([1, 2], n // 2),
        "w": 1.0,
    })
    ds = Dataset.from_frame(frame, {"y": "continuous", "x": "continuous"})
    fit = fit_weighted_logistic(build_design(ds, "stratum", "psu", "w"), "y", ["x"])
    assert np.all(np.isfinite(fit.coefficients))


def test_load_config_explicit_path(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("forest:\n  n_trees: 7\n", encoding="utf-8")
    assert load_config(path)["forest"]["n_trees"] == 7


def test_load_config_env_var(tmp_path, monkeypatch):
    path = tmp_path / "env.yaml"
    path.write_text("modeling:\n  random_seed: 99\n", encoding="utf-8")
    monkeypatch.setenv(config.CONFIG_ENV_VAR, str(path))
    assert load_config()["modeling"]["random_seed"] == 99


def test_resolve_prefers_explicit_value():
    assert resolve(3, "forest", "n_trees") == 3
    assert resolve(None, "forest", "n_trees") == cfg["forest"]["n_trees"]
    # falsy but explicit values are kept
    assert resolve(0, "forest", "n_jobs") == 0


def test_engine_constants_are_frozen():
    with pytest.raises(dataclasses.FrozenInstanceError):
        ENGINE.SPLIT_GAIN_RTOL = 0.0


def test_tree_rng_depends_only_on_seed_tree_and_stream():
    a = tree_rng(1, 4).random(5)
    b = tree_rng(1, 4).random(5)
    assert np.array_equal(a, b)
    assert not np.array_equal(a, tree_rng(1, 5).random(5))
    assert not np.array_equal(a, tree_rng(2, 4).random(5))
    assert not np.array_equal(a, tree_rng(1, 4, ENGINE.STREAM_IMPORTANCE).random(5))


def test_get_output_dir_creates_directory(tmp_path):
    out = get_output_dir("tables", base=tmp_path)
    assert out.is_dir()
    assert out == tmp_path / cfg["outputs"]["tables_dir"]


def test_error_context_rendering():
    err = DataError("bad column", column="age")
    assert err.context == {"column": "age"}
    assert str(err) == "bad column [column='age']"
    assert str(DataError("plain")) == "plain"


def test_with_context_keeps_type_and_merges():
    err = DesignError("lonely PSU", stratum=3).with_context(exposure="lead")
    assert type(err) is DesignError
    assert err.context == {"stratum": 3, "exposure": "lead"}
    assert isinstance(err, DataError)
    assert isinstance(err, ExposureModelError)

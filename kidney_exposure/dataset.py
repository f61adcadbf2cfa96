"""
Dataset contract for the exposure models.

An analysis-ready table plus a declared schema (column name -> type),
validated once at construction. Both analytic tracks read their matrices
from here; nothing downstream looks columns up by string at fit time.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from kidney_exposure.config import ENGINE
from kidney_exposure.errors import DataError

logger = logging.getLogger(__name__)


# === 1. COLUMN SPECIFICATION ===

@dataclass(frozen=True)
class ColumnSpec:
    """Declared type of one column: continuous, or categorical with ordered levels."""
    name: str
    kind: str = "continuous"
    levels: tuple = ()

    def __post_init__(self):
        if self.kind not in ENGINE.VALID_COLUMN_KINDS:
            raise DataError(
                f"Unknown column kind '{self.kind}'. Use: {', '.join(ENGINE.VALID_COLUMN_KINDS)}.",
                column=self.name,
            )
        object.__setattr__(self, "levels", tuple(self.levels))
        if self.is_categorical and not self.levels:
            raise DataError("Categorical column declares no levels", column=self.name)
        if len(set(self.levels)) != len(self.levels):
            raise DataError("Categorical column declares duplicate levels", column=self.name)

    @property
    def is_categorical(self) -> bool:
        return self.kind == "categorical"

    @classmethod
    def coerce(cls, name: str, spec) -> "ColumnSpec":
        """Build from a ColumnSpec, a kind string, or a {kind, levels} mapping."""
        if isinstance(spec, ColumnSpec):
            return spec
        if isinstance(spec, str):
            return cls(name=name, kind=spec)
        if isinstance(spec, Mapping):
            return cls(name=name, kind=spec.get("kind", "continuous"),
                       levels=tuple(spec.get("levels", ())))
        raise DataError(f"Cannot interpret schema entry {spec!r}", column=name)

    def encode(self, values) -> np.ndarray:
        """
        Encode raw values as floats.

        Continuous values pass through; categorical values become the index of
        their level in `levels`.
        """
        if not self.is_categorical:
            return np.asarray(values, dtype=float)
        lookup = {level: code for code, level in enumerate(self.levels)}
        series = pd.Series(np.asarray(values, dtype=object))
        codes = series.map(lookup)
        if codes.isna().any():
            bad = sorted(set(series[codes.isna()].tolist()), key=str)
            raise DataError(f"Values {bad} are not declared levels {list(self.levels)}",
                            column=self.name)
        return codes.to_numpy(dtype=float)


# === 2. DATASET ===

@dataclass(frozen=True, eq=False)
class Dataset:
    """
    Immutable analysis table with a declared schema.

    Columns not in the schema (weights, strata, PSU ids) are carried along
    untyped and validated by whoever uses them. The table itself is private;
    `frame` hands out copies.
    """
    _frame: pd.DataFrame
    schema: Mapping[str, ColumnSpec] = field(default_factory=dict)

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, schema: Mapping) -> "Dataset":
        """
        Validate `frame` against `schema` and wrap it.

        Args:
            frame: Analysis-ready table (one row per participant).
            schema: column name -> ColumnSpec, kind string, or {kind, levels}.

        Returns:
            Dataset holding a private copy of the frame.

        Raises:
            DataError: missing column, missing values, non-numeric or
                non-finite continuous values, undeclared categorical levels.
        """
        if not isinstance(frame, pd.DataFrame):
            raise DataError(f"Expected a pandas DataFrame, got {type(frame).__name__}")
        specs = {name: ColumnSpec.coerce(name, spec) for name, spec in schema.items()}

        missing = [name for name in specs if name not in frame.columns]
        if missing:
            raise DataError(f"Declared columns missing from data: {missing}")

        for name, spec in specs.items():
            col = frame[name]
            if col.isna().any():
                raise DataError(f"{int(col.isna().sum())} missing values", column=name)
            if spec.is_categorical:
                spec.encode(col.to_numpy())
                continue
            if not pd.api.types.is_numeric_dtype(col):
                raise DataError(f"Continuous column has dtype {col.dtype}", column=name)
            if not np.isfinite(col.to_numpy(dtype=float)).all():
                raise DataError("Continuous column has non-finite values", column=name)

        data = frame.reset_index(drop=True).copy()
        logger.debug("Dataset validated: %d rows, %d typed columns", len(data), len(specs))
        return cls(_frame=data, schema=MappingProxyType(specs))

    # --- basic accessors ---------------------------------------------------

    @property
    def frame(self) -> pd.DataFrame:
        """Copy of the underlying table."""
        return self._frame.copy()

    def __len__(self) -> int:
        return len(self._frame)

    @property
    def n_rows(self) -> int:
        return len(self._frame)

    @property
    def columns(self) -> list[str]:
        return list(self._frame.columns)

    def has_column(self, name: str) -> bool:
        return name in self._frame.columns

    def spec(self, name: str) -> ColumnSpec:
        """Declared spec for `name`; DataError if the column is not typed."""
        try:
            return self.schema[name]
        except KeyError:
            raise DataError("Column is not declared in the dataset schema", column=name) from None

    def column(self, name: str) -> np.ndarray:
        """Raw values of one column as a read-only array."""
        if name not in self._frame.columns:
            raise DataError("Column not found in dataset", column=name)
        values = self._frame[name].to_numpy(copy=True)
        values.setflags(write=False)
        return values

    def row(self, i: int) -> dict:
        """One observation as a {column: value} mapping."""
        return self._frame.iloc[i].to_dict()

    # --- numeric encodings ---------------------------------------------------

    def outcome(self, name: str) -> np.ndarray:
        """Continuous outcome vector."""
        spec = self.spec(name)
        if spec.is_categorical:
            raise DataError("Outcome must be declared continuous", column=name)
        return spec.encode(self._frame[name].to_numpy())

    def binary_outcome(self, name: str) -> np.ndarray:
        """Outcome vector restricted to {0, 1} for the logistic model."""
        y = self.outcome(name)
        bad = ~np.isin(y, (0.0, 1.0))
        if bad.any():
            raise DataError(f"Binary outcome has {int(bad.sum())} values outside {{0, 1}}",
                            column=name)
        return y

    def feature_matrix(self, features: Iterable[str]) -> np.ndarray:
        """Float matrix of the given features; categoricals as level codes."""
        features = list(features)
        if not features:
            raise DataError("At least one feature is required")
        cols = [self.spec(name).encode(self._frame[name].to_numpy()) for name in features]
        return np.column_stack(cols)

    def design_matrix(self, predictors: Iterable[str],
                      intercept: bool = True) -> tuple[np.ndarray, list[str]]:
        """
        Regression design matrix with treatment coding.

        Categorical predictors expand to one indicator per non-reference level
        (the first declared level is the reference), named "col[level]".

        Returns:
            X: (n_rows, n_terms) float matrix.
            names: term names, "(Intercept)" first when intercept=True.
        """
        cols: list[np.ndarray] = []
        names: list[str] = []
        if intercept:
            cols.append(np.ones(self.n_rows))
            names.append("(Intercept)")
        for name in predictors:
            spec = self.spec(name)
            codes = spec.encode(self._frame[name].to_numpy())
            if not spec.is_categorical:
                cols.append(codes)
                names.append(name)
                continue
            for code, level in enumerate(spec.levels[1:], start=1):
                cols.append((codes == code).astype(float))
                names.append(f"{name}[{level}]")
        if not cols:
            raise DataError("Design matrix has no columns")
        return np.column_stack(cols), names

    # --- codebook ------------------------------------------------------------

    def schema_frame(self) -> pd.DataFrame:
        """Codebook of typed columns: kind, levels, distinct values, range."""
        rows = []
        for name, spec in self.schema.items():
            values = self._frame[name]
            rows.append({
                "variable": name,
                "kind": spec.kind,
                "levels": ", ".join(str(lv) for lv in spec.levels) if spec.levels else "",
                "n_unique": int(values.nunique()),
                "min": float(values.min()) if not spec.is_categorical else np.nan,
                "max": float(values.max()) if not spec.is_categorical else np.nan,
            })
        return pd.DataFrame(rows)

"""
Survey design and design-based weighted logistic regression.

Stratified-cluster design metadata (NHANES SDMVSTRA / SDMVPSU style), an IRLS
fit of the weighted binomial-logit model, and Taylor-linearization
(sandwich) standard errors that account for clustering within strata.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import expit

from kidney_exposure.config import ENGINE, resolve
from kidney_exposure.dataset import Dataset
from kidney_exposure.errors import (
    ConvergenceError,
    DesignError,
    ExposureModelError,
    SingularMatrixError,
)

logger = logging.getLogger(__name__)

LONELY_PSU_OPTIONS = ("fail", "adjust")


# ===================================================================
# 1. SURVEY DESIGN
# ===================================================================

@dataclass(frozen=True, eq=False)
class SurveyDesign:
    """
    Dataset plus resolved stratum / PSU / weight linkage.

    PSU ids are nested within strata: the same PSU label in two strata is two
    different clusters. `psu_codes` indexes PSUs globally, `psu_stratum` maps
    each PSU to its stratum.
    """
    dataset: Dataset
    strata_field: str
    psu_field: str
    weight_field: str
    weights: np.ndarray
    stratum_codes: np.ndarray
    psu_codes: np.ndarray
    psu_stratum: np.ndarray
    stratum_labels: tuple
    singleton_strata: tuple
    lonely_psu: str = "fail"

    @property
    def n_strata(self) -> int:
        return len(self.stratum_labels)

    @property
    def n_psu(self) -> int:
        return len(self.psu_stratum)

    @property
    def psu_per_stratum(self) -> np.ndarray:
        return np.bincount(self.psu_stratum, minlength=self.n_strata)

    @property
    def degrees_of_freedom(self) -> int:
        """Design degrees of freedom: #PSU - #strata."""
        return self.n_psu - self.n_strata

    def summary(self) -> dict:
        return {
            "n_rows": len(self.weights),
            "weight_field": self.weight_field,
            "n_strata": self.n_strata,
            "n_psu": self.n_psu,
            "degrees_of_freedom": self.degrees_of_freedom,
            "n_singleton_strata": len(self.singleton_strata),
            "weight_min": float(self.weights.min()),
            "weight_max": float(self.weights.max()),
            "weight_sum": float(self.weights.sum()),
        }


def build_design(
    dataset: Dataset,
    strata_field: str,
    psu_field: str,
    weight_field: str,
    lonely_psu: str | None = None,
) -> SurveyDesign:
    """
    Resolve survey linkage for one exposure-weight pair.

    Args:
        dataset: Validated analysis dataset.
        strata_field: Column holding the variance stratum.
        psu_field: Column holding the PSU (nested within stratum).
        weight_field: Column holding the sampling weight for this analysis.
        lonely_psu: "fail" or "adjust" (default from config).

    Returns:
        SurveyDesign. Strata with fewer than 2 PSUs are flagged in
        `singleton_strata`.

    Raises:
        DesignError: a linkage field is missing or has missing values, or a
            weight is non-positive / non-finite.
    """
    lonely_psu = resolve(lonely_psu, "regression", "lonely_psu")
    if lonely_psu not in LONELY_PSU_OPTIONS:
        raise ValueError(f"Unknown lonely_psu '{lonely_psu}'. Use: {', '.join(LONELY_PSU_OPTIONS)}.")

    frame = dataset.frame
    for role, name in (("stratum", strata_field), ("PSU", psu_field), ("weight", weight_field)):
        if not dataset.has_column(name):
            raise DesignError(f"{role} field not in data", column=name)
        if frame[name].isna().any():
            raise DesignError(f"{role} field has missing values", column=name)

    raw_w = frame[weight_field]
    if not pd.api.types.is_numeric_dtype(raw_w):
        raise DesignError(f"Weight field has dtype {raw_w.dtype}", column=weight_field)
    weights = raw_w.to_numpy(dtype=float)
    bad = ~np.isfinite(weights) | (weights <= 0)
    if bad.any():
        raise DesignError(f"{int(bad.sum())} non-positive or non-finite weights",
                          column=weight_field)

    linkage = frame[[strata_field, psu_field]]
    stratum_codes, stratum_labels = pd.factorize(linkage[strata_field], sort=True)
    psu_codes = linkage.groupby([strata_field, psu_field], sort=True).ngroup().to_numpy()

    psu_stratum = np.zeros(psu_codes.max() + 1, dtype=int)
    psu_stratum[psu_codes] = stratum_codes

    counts = np.bincount(psu_stratum, minlength=len(stratum_labels))
    singleton = tuple(stratum_labels[h] for h in np.flatnonzero(counts < 2))
    if singleton:
        logger.warning(
            "%d stratum/strata with a single PSU (%s): variance estimation will %s",
            len(singleton), ", ".join(map(str, singleton)),
            "raise DesignError" if lonely_psu == "fail" else "centre them on the grand mean",
        )

    weights.setflags(write=False)
    return SurveyDesign(
        dataset=dataset,
        strata_field=strata_field,
        psu_field=psu_field,
        weight_field=weight_field,
        weights=weights,
        stratum_codes=stratum_codes,
        psu_codes=psu_codes,
        psu_stratum=psu_stratum,
        stratum_labels=tuple(stratum_labels),
        singleton_strata=singleton,
        lonely_psu=lonely_psu,
    )


# ===================================================================
# 2. WEIGHTED LOGISTIC REGRESSION (IRLS)
# ===================================================================

@dataclass(frozen=True, eq=False)
class LogisticFit:
    """Design-based weighted logistic fit. Arrays follow the order of `names`."""
    outcome: str
    names: tuple
    coefficients: np.ndarray
    standard_errors: np.ndarray
    covariance: np.ndarray
    naive_covariance: np.ndarray
    ci_lower: np.ndarray
    ci_upper: np.ndarray
    z_values: np.ndarray
    p_values: np.ndarray
    log_likelihood: float
    n_iter: int
    n_obs: int
    degrees_of_freedom: int
    ci_level: float

    @property
    def odds_ratios(self) -> np.ndarray:
        return np.exp(self.coefficients)

    @property
    def naive_standard_errors(self) -> np.ndarray:
        return np.sqrt(np.diag(self.naive_covariance))

    def odds_ratio_table(self, sort: bool = False) -> pd.DataFrame:
        """
        Coefficient table for reporting.

        Columns: variable, coefficient, std_error, odds_ratio, ci_lower,
        ci_upper (odds-ratio scale), p_value. With sort=True rows are ordered
        by absolute coefficient and ranked.
        """
        df = pd.DataFrame({
            "variable": list(self.names),
            "coefficient": self.coefficients,
            "std_error": self.standard_errors,
            "odds_ratio": self.odds_ratios,
            "ci_lower": np.exp(self.ci_lower),
            "ci_upper": np.exp(self.ci_upper),
            "p_value": self.p_values,
        })
        if sort:
            df["abs_coef"] = df["coefficient"].abs()
            df = df.sort_values("abs_coef", ascending=False).drop(columns=["abs_coef"])
            df["rank"] = range(1, len(df) + 1)
        return df

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        """Fitted probabilities for a design matrix laid out like `names`."""
        return expit(np.asarray(X, dtype=float) @ self.coefficients)


def _log_likelihood(eta: np.ndarray, y: np.ndarray, w: np.ndarray) -> float:
    # log(1 + e^eta) computed without overflow
    return float(np.sum(w * (y * eta - np.logaddexp(0.0, eta))))


def _information(X: np.ndarray, mu: np.ndarray, w: np.ndarray) -> np.ndarray:
    return (X * (w * mu * (1.0 - mu))[:, None]).T @ X


def _solve(info: np.ndarray, rhs: np.ndarray, singular_cond: float) -> np.ndarray:
    cond = np.linalg.cond(info)
    if not np.isfinite(cond) or cond > singular_cond:
        raise SingularMatrixError(
            "Weighted information matrix is not invertible "
            "(near-perfect separation or collinear predictors)",
            condition_number=float(cond),
        )
    try:
        return np.linalg.solve(info, rhs)
    except np.linalg.LinAlgError as exc:
        raise SingularMatrixError(f"Weighted information matrix is singular: {exc}") from exc


def _irls(
    X: np.ndarray,
    y: np.ndarray,
    w: np.ndarray,
    max_iter: int,
    tol: float,
    max_step_halvings: int,
    singular_cond: float,
) -> tuple[np.ndarray, float, int]:
    """
    Newton-Raphson / IRLS on the weighted log-likelihood.

    Returns (beta, log_likelihood, iterations). A step that lowers the
    log-likelihood is halved up to `max_step_halvings` times.
    """
    beta = np.zeros(X.shape[1])
    loglik = _log_likelihood(X @ beta, y, w)

    for iteration in range(1, max_iter + 1):
        mu = expit(X @ beta)
        score = X.T @ (w * (y - mu))
        step = _solve(_information(X, mu, w), score, singular_cond)

        scale = 1.0
        for _ in range(max_step_halvings + 1):
            candidate = beta + scale * step
            cand_ll = _log_likelihood(X @ candidate, y, w)
            if np.isfinite(cand_ll) and cand_ll >= loglik - ENGINE.LOGLIK_ATOL * max(1.0, abs(loglik)):
                break
            scale /= 2.0
        else:
            raise ConvergenceError(
                f"Log-likelihood still decreasing after {max_step_halvings} step halvings",
                iteration=iteration,
            )

        change = float(np.max(np.abs(candidate - beta)))
        beta, loglik = candidate, cand_ll
        logger.debug("IRLS iter %d: loglik=%.6f max|dbeta|=%.3g", iteration, loglik, change)
        if change < tol:
            return beta, loglik, iteration

    raise ConvergenceError(
        f"IRLS did not converge in {max_iter} iterations",
        last_max_change=change,
    )


# ===================================================================
# 3. TAYLOR-LINEARIZATION VARIANCE
# ===================================================================

def _linearization_meat(design: SurveyDesign, scores: np.ndarray) -> np.ndarray:
    """
    Between-PSU variance of weighted score totals, summed over strata.

    B = sum_h n_h / (n_h - 1) * sum_j (z_hj - zbar_h)(z_hj - zbar_h)'
    """
    p = scores.shape[1]
    psu_totals = np.zeros((design.n_psu, p))
    np.add.at(psu_totals, design.psu_codes, scores)

    grand_mean = psu_totals.mean(axis=0)
    meat = np.zeros((p, p))
    for h, label in enumerate(design.stratum_labels):
        totals = psu_totals[design.psu_stratum == h]
        n_h = len(totals)
        if n_h < 2:
            if design.lonely_psu == "fail":
                raise DesignError("Stratum has a single PSU; variance cannot be estimated",
                                  stratum=label)
            dev = totals - grand_mean
            meat += dev.T @ dev
            continue
        dev = totals - totals.mean(axis=0)
        meat += (n_h / (n_h - 1.0)) * (dev.T @ dev)
    return meat


def fit_weighted_logistic(
    design: SurveyDesign,
    outcome: str,
    predictors: Iterable[str],
    max_iter: int | None = None,
    tol: float | None = None,
    max_step_halvings: int | None = None,
    ci_level: float | None = None,
    singular_cond: float | None = None,
) -> LogisticFit:
    """
    Fit a survey-weighted binomial-logit model with design-based SEs.

    Args:
        design: SurveyDesign for the exposure's weight.
        outcome: Binary (0/1) outcome column.
        predictors: Predictor columns; categoricals are treatment-coded.
        max_iter, tol, max_step_halvings, ci_level, singular_cond:
            Overrides of the `regression` config section.

    Returns:
        LogisticFit with sandwich covariance and Wald intervals
        coef +/- z * SE (log-odds scale).

    Raises:
        DesignError: a stratum has a single PSU (lonely_psu="fail").
        SingularMatrixError: rank-deficient design or singular information.
        ConvergenceError: iteration or step-halving budget exhausted.
    """
    # YAML 1.1 reads exponents without a sign as strings
    max_iter = int(resolve(max_iter, "regression", "max_iter"))
    tol = float(resolve(tol, "regression", "tol"))
    max_step_halvings = int(resolve(max_step_halvings, "regression", "max_step_halvings"))
    ci_level = float(resolve(ci_level, "regression", "ci_level"))
    singular_cond = float(resolve(singular_cond, "regression", "singular_cond"))
    if not 0.0 < ci_level < 1.0:
        raise ValueError(f"ci_level must be in (0, 1), got {ci_level}")
    if max_iter < 1:
        raise ValueError(f"max_iter must be >= 1, got {max_iter}")

    if design.singleton_strata and design.lonely_psu == "fail":
        raise DesignError("Stratum has a single PSU; variance cannot be estimated",
                          stratum=design.singleton_strata[0])

    dataset = design.dataset
    y = dataset.binary_outcome(outcome)
    X, names = dataset.design_matrix(list(predictors))
    w = design.weights

    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        raise SingularMatrixError("Design matrix is rank deficient",
                                  rank=int(rank), n_terms=X.shape[1])

    beta, loglik, n_iter = _irls(X, y, w, max_iter, tol, max_step_halvings, singular_cond)

    mu = expit(X @ beta)
    info = _information(X, mu, w)
    bread = _solve(info, np.eye(len(beta)), singular_cond)
    scores = X * (w * (y - mu))[:, None]
    meat = _linearization_meat(design, scores)
    cov = bread @ meat @ bread
    se = np.sqrt(np.clip(np.diag(cov), 0.0, None))

    z_crit = stats.norm.ppf(1.0 - (1.0 - ci_level) / 2.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        z_values = np.where(se > 0, beta / se, np.nan)
    p_values = 2.0 * stats.norm.sf(np.abs(z_values))

    logger.info("Weighted logit '%s' ~ %d terms converged in %d iterations (loglik=%.4f)",
                outcome, len(names), n_iter, loglik)
    return LogisticFit(
        outcome=outcome,
        names=tuple(names),
        coefficients=beta,
        standard_errors=se,
        covariance=cov,
        naive_covariance=bread,
        ci_lower=beta - z_crit * se,
        ci_upper=beta + z_crit * se,
        z_values=z_values,
        p_values=p_values,
        log_likelihood=loglik,
        n_iter=n_iter,
        n_obs=len(y),
        degrees_of_freedom=design.degrees_of_freedom,
        ci_level=ci_level,
    )


# ===================================================================
# 4. PER-EXPOSURE FITS
# ===================================================================

def fit_exposures(
    dataset: Dataset,
    outcome: str,
    exposures: Mapping[str, str],
    covariates: Iterable[str],
    strata_field: str,
    psu_field: str,
    lonely_psu: str | None = None,
    exposure_terms_only: bool = True,
    **fit_kwargs,
) -> pd.DataFrame:
    """
    One design-based logistic model per exposure biomarker.

    Each exposure is paired with its own weight field (biomarker panels carry
    different subsample weights) and adjusted for the same covariates.

    Returns:
        Long DataFrame of odds-ratio rows tagged with exposure, weight_field
        and n_obs. With exposure_terms_only=True only the exposure's own
        term(s) are kept.
    """
    covariates = list(covariates)
    tables = []
    for exposure, weight_field in exposures.items():
        predictors = [exposure] + [c for c in covariates if c != exposure]
        try:
            design = build_design(dataset, strata_field, psu_field, weight_field, lonely_psu)
            fit = fit_weighted_logistic(design, outcome, predictors, **fit_kwargs)
        except ExposureModelError as exc:
            raise exc.with_context(exposure=exposure) from exc

        table = fit.odds_ratio_table()
        if exposure_terms_only:
            is_exposure = (table["variable"] == exposure) | table["variable"].str.startswith(f"{exposure}[")
            table = table[is_exposure]
        table.insert(0, "exposure", exposure)
        table["weight_field"] = weight_field
        table["n_obs"] = fit.n_obs
        tables.append(table)

    if not tables:
        raise ValueError("No exposures given")
    return pd.concat(tables, ignore_index=True)

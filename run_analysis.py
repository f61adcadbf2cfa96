"""
Exposure -> kidney function modeling pipeline
==============================================
Runs both analytic tracks on an analysis-ready table and writes the numeric
output tables consumed by the reporting layer.

Usage:
    python run_analysis.py
    KIDNEY_EXPOSURE_CONFIG=configs/my_run.yaml python run_analysis.py

Phases:
  1. Load the analysis-ready table and validate it against the schema
  2. Survey-weighted logistic regression, one model per exposure
  3. Random forest on eGFR: OOB error + permutation importance
  4. Partial dependence curves
  5. Pairwise interaction (H-statistic) matrix
"""

import logging
from pathlib import Path

import pandas as pd

from kidney_exposure.config import cfg, get_output_dir
from kidney_exposure.dataset import Dataset
from kidney_exposure.survey import fit_exposures
from kidney_exposure.forest import train_forest, variable_importance
from kidney_exposure.partial_dependence import compute_pdp
from kidney_exposure.interaction import interaction_matrix

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

acfg = cfg["analysis"]
print("=" * 65)
print("Exposure -> kidney function models")
print("=" * 65)

# ---- 1. Load and validate data -------------------------------------------
print("\n--- Loading analysis-ready data ---")
data_path = Path(acfg["data_path"])
frame = pd.read_csv(data_path)
dataset = Dataset.from_frame(frame, acfg["schema"])
print(f"Loaded {len(dataset):,} participants, {len(dataset.schema)} typed columns from {data_path}")

tables_dir = get_output_dir("tables")
dataset.schema_frame().to_csv(tables_dir / "codebook.csv", index=False)


# =====================================================================
# 2.  SURVEY-WEIGHTED LOGISTIC REGRESSION
# =====================================================================
print("\n" + "=" * 65)
print("2.  Survey-weighted logistic regression (Taylor linearization SEs)")
print("=" * 65)

or_df = fit_exposures(
    dataset,
    outcome=acfg["binary_outcome"],
    exposures=acfg["exposures"],
    covariates=acfg["covariates"],
    strata_field=acfg["strata_field"],
    psu_field=acfg["psu_field"],
)
or_df.to_csv(tables_dir / "odds_ratios.csv", index=False)
for _, row in or_df.iterrows():
    sig = "*" if (row["ci_lower"] > 1.0 or row["ci_upper"] < 1.0) else ""
    print(f"  {row['variable']:<25s} [{row['weight_field']}]  "
          f"OR={row['odds_ratio']:.3f} [{row['ci_lower']:.3f}, {row['ci_upper']:.3f}]{sig}")


# =====================================================================
# 3.  RANDOM FOREST
# =====================================================================
print("\n" + "=" * 65)
print("3.  Random forest on eGFR")
print("=" * 65)

forest_features = list(acfg["exposures"]) + [c for c in acfg["covariates"] if c not in acfg["exposures"]]
forest = train_forest(dataset, acfg["continuous_outcome"], forest_features)
print(f"  Trees: {forest.n_trees}   OOB MSE: {forest.oob_error():.3f}   "
      f"OOB R^2: {forest.oob_r2():.3f}")

imp_df = variable_importance(forest)
imp_df.to_csv(tables_dir / "variable_importance.csv", index=False)
print("  Permutation importance (scaled):")
for _, row in imp_df.iterrows():
    print(f"    #{row['rank']:.0f}  {row['feature']:<20s}  {row['importance']:.3f}")


# =====================================================================
# 4.  PARTIAL DEPENDENCE
# =====================================================================
print("\n" + "=" * 65)
print("4.  Partial dependence")
print("=" * 65)

for feature in acfg["pdp_features"]:
    curve = compute_pdp(forest, dataset, feature)
    curve.to_frame().to_csv(tables_dir / f"pdp_{feature}.csv", index=False)
    print(f"  {feature:<20s} {len(curve):>3d} grid values, amplitude {curve.amplitude:.3f}")


# =====================================================================
# 5.  INTERACTION STRENGTH
# =====================================================================
print("\n" + "=" * 65)
print("5.  Pairwise interaction strength (H-statistic)")
print("=" * 65)

h_matrix = interaction_matrix(
    forest, dataset, acfg["interaction_features"],
    callback=lambda a, b, h: print(f"  H({a}, {b}) = {h:.3f}"),
)
h_matrix.to_frame().to_csv(tables_dir / "interaction_matrix.csv")
h_matrix.pairs_frame().to_csv(tables_dir / "interaction_pairs.csv", index=False)


# =====================================================================
# SUMMARY
# =====================================================================
print("\n" + "=" * 65)
print("COMPLETE")
print("=" * 65)
print(f"\nTables written to {tables_dir}:")
print("    - codebook.csv")
print("    - odds_ratios.csv")
print("    - variable_importance.csv")
for feature in acfg["pdp_features"]:
    print(f"    - pdp_{feature}.csv")
print("    - interaction_matrix.csv")
print("    - interaction_pairs.csv")

top = h_matrix.pairs_frame().iloc[0]
print(f"\n  Strongest interaction: {top['feature_a']} x {top['feature_b']} (H={top['h_statistic']:.3f})")
print()

"""
Kidney-Function Exposure Models
===============================
Modules:
    config             – Configuration loading + engine constants, seed derivation
    errors             – Error taxonomy
    dataset            – Dataset contract: schema, validation, matrix encodings
    survey             – Survey design + design-based weighted logistic regression
    tree               – Arena regression tree builder
    forest             – Random forest: training, prediction, OOB error, importance
    partial_dependence – One- and two-way partial dependence
    interaction        – Friedman-Popescu H-statistic, pairwise and matrix
"""

from kidney_exposure.errors import (
    ConvergenceError,
    DataError,
    DesignError,
    EmptyDatasetError,
    ExposureModelError,
    SingularMatrixError,
)
from kidney_exposure.dataset import ColumnSpec, Dataset
from kidney_exposure.survey import (
    LogisticFit,
    SurveyDesign,
    build_design,
    fit_exposures,
    fit_weighted_logistic,
)
from kidney_exposure.tree import RegressionTree, build_tree
from kidney_exposure.forest import (
    Forest,
    impurity_importance,
    train_forest,
    variable_importance,
)
from kidney_exposure.partial_dependence import (
    PDPCurve,
    PDPSurface,
    compute_pdp,
    compute_pdp_2d,
)
from kidney_exposure.interaction import (
    InteractionMatrix,
    interaction_matrix,
    iter_pairwise_interactions,
    pairwise_interaction,
)

__version__ = "0.1.0"

__all__ = [
    "ColumnSpec",
    "ConvergenceError",
    "DataError",
    "Dataset",
    "DesignError",
    "EmptyDatasetError",
    "ExposureModelError",
    "Forest",
    "InteractionMatrix",
    "LogisticFit",
    "PDPCurve",
    "PDPSurface",
    "RegressionTree",
    "SingularMatrixError",
    "SurveyDesign",
    "build_design",
    "build_tree",
    "compute_pdp",
    "compute_pdp_2d",
    "fit_exposures",
    "fit_weighted_logistic",
    "impurity_importance",
    "interaction_matrix",
    "iter_pairwise_interactions",
    "pairwise_interaction",
    "train_forest",
    "variable_importance",
]

from .features import FEATURE_NAMES, FeatureBundle, build_features
from .ranker import LlmRanker, RerankOutcome, extract_score
from .scorer import (
    ModelTrainer,
    OpportunityScorer,
    RidgeModel,
    ScoredCandidate,
    risk_weight,
    rule_score,
    train_ridge,
    variant_for_opportunity,
)

__all__ = [
    "FEATURE_NAMES",
    "FeatureBundle",
    "LlmRanker",
    "ModelTrainer",
    "OpportunityScorer",
    "RerankOutcome",
    "RidgeModel",
    "ScoredCandidate",
    "build_features",
    "extract_score",
    "risk_weight",
    "rule_score",
    "train_ridge",
    "variant_for_opportunity",
]

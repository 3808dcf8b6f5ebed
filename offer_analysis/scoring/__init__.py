# Scoring Engine Module
# Technical + price synthesis of a negotiation version

from .models import (
    PriceScenario,
    DeviationBand,
    Deviation,
    LineDeviation,
    Flag,
    CriterionScore,
    CompanyScore,
    ScenarioEntry,
    ScenarioResult,
    VersionScoring,
)
from .engine import (
    ScoringEngine,
    line_deviations,
    lot_estimation,
    lowest_cost_scores,
    notation_value,
    price_deviation,
    price_scenarios,
    score_version,
)

__all__ = [
    "PriceScenario",
    "DeviationBand",
    "Deviation",
    "LineDeviation",
    "Flag",
    "CriterionScore",
    "CompanyScore",
    "ScenarioEntry",
    "ScenarioResult",
    "VersionScoring",
    "ScoringEngine",
    "line_deviations",
    "lot_estimation",
    "lowest_cost_scores",
    "notation_value",
    "price_deviation",
    "price_scenarios",
    "score_version",
]

"""
Scoring Engine Models
=====================
Pydantic models for the technical / price synthesis of a negotiation version.

Key principles:
1. Scores are DERIVED: recomputed from (lot, version) on every read, never stored
2. Technical score = notation value / 5 x criterion weight (sub-criteria renormalized)
3. Price score = lowest positive total / company total x price weight
4. Excluded companies score 0 everywhere and are ranked last without a rank number
5. Partial data entry is normal: missing notes or prices contribute 0, never fail
"""

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, computed_field

from ..models import CriterionRole, NegotiationDecision


class PriceScenario(str, Enum):
    """Which lot lines enter a company's total price"""
    TOTAL = "total"    # every active line
    BASE = "base"      # untyped ("tranche ferme") lines only
    OPTION = "option"  # untyped lines + one typed line (PSE, variante, tranche optionnelle)


class DeviationBand(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Deviation(BaseModel):
    """Offered amount vs estimation: (offered - estimate) / |estimate|"""
    offered: float
    estimate: float
    ratio: float
    band: DeviationBand

    @computed_field
    @property
    def percent(self) -> float:
        return self.ratio * 100


class LineDeviation(BaseModel):
    company_id: int
    lot_line_id: int
    label: str
    deviation: Optional[Deviation] = None


class Flag(BaseModel):
    """Warning or info flag for a company or for the whole synthesis"""
    type: Literal["warning", "info", "success"] = "info"
    code: str
    message: str


class CriterionScore(BaseModel):
    criterion_id: str
    label: str
    role: CriterionRole
    weight: float
    score: float = 0.0


class CompanyScore(BaseModel):
    """Complete scoring result for a single company"""
    company_id: int
    company_name: str
    excluded: bool = False
    decision: NegotiationDecision = NegotiationDecision.UNDECIDED

    # Per-criterion contributions (auditability)
    criterion_scores: List[CriterionScore] = Field(default_factory=list)

    # Presentation grouping of the same contributions
    technical_score: float = 0.0
    environmental_score: float = 0.0
    planning_score: float = 0.0

    price_total: float = 0.0
    price_score: float = 0.0

    rank: Optional[int] = None
    flags: List[Flag] = Field(default_factory=list)

    @computed_field
    @property
    def technical_total(self) -> float:
        return self.technical_score + self.environmental_score + self.planning_score

    @computed_field
    @property
    def global_score(self) -> float:
        return self.technical_total + self.price_score


class ScenarioEntry(BaseModel):
    company_id: int
    total: float
    score: float


class ScenarioResult(BaseModel):
    scenario: PriceScenario
    # Typed line added on top of the base, OPTION scenarios only
    option_line_id: Optional[int] = None
    label: str = ""
    min_total: float
    price_weight: float
    entries: List[ScenarioEntry] = Field(default_factory=list)


class VersionScoring(BaseModel):
    """Ranked synthesis of one negotiation version"""
    lot_id: str
    version_id: str
    version_label: str
    scenario: PriceScenario = PriceScenario.TOTAL
    option_line_id: Optional[int] = None

    weighting_total: float
    weighting_valid: bool
    price_weight: float
    max_score: float

    results: List[CompanyScore] = Field(default_factory=list)
    flags: List[Flag] = Field(default_factory=list)

    def for_company(self, company_id: int) -> Optional[CompanyScore]:
        return next((r for r in self.results if r.company_id == company_id), None)

    @property
    def ranked(self) -> List[CompanyScore]:
        return [r for r in self.results if r.rank is not None]

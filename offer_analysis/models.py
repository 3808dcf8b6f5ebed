"""
Project Document Models
=======================
Pydantic models for a procurement analysis project.

A project holds lots; each lot holds its companies, price lines, weighting
criteria and up to three negotiation versions (initial analysis + 2 rounds).
Models serialize to the camelCase JSON stored by the persistence service;
enum values keep the tokens used by existing documents.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .config import (
    DEFAULT_TOLERANCE_PCT,
    MAX_COMPANIES,
    MAX_COMPANY_ID,
    MAX_LOT_LINES,
    MAX_SUB_CRITERIA,
    MAX_VERSIONS,
)


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentModel(BaseModel):
    """Base model: camelCase aliases on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ============== Enums ==============

class CompanyStatus(str, Enum):
    RETAINED = "retenue"
    EXCLUDED = "ecartee"
    UNDECIDED = "non_defini"


class LotLineType(str, Enum):
    PSE = "PSE"
    VARIANTE = "VARIANTE"
    OPTIONAL_TRANCHE = "T_OPTIONNELLE"


class DpgfAssignment(str, Enum):
    DPGF_1 = "DPGF_1"
    DPGF_2 = "DPGF_2"
    BOTH = "both"


class NotationLevel(str, Enum):
    """5-level ordinal technical scale"""
    INSUFFICIENT = "insuffisant"
    PASSABLE = "passable"
    AVERAGE = "moyen"
    GOOD = "bien"
    VERY_GOOD = "tres_bien"

    @property
    def value_points(self) -> int:
        return NOTATION_VALUES[self]


NOTATION_VALUES: Dict[NotationLevel, int] = {
    NotationLevel.INSUFFICIENT: 1,
    NotationLevel.PASSABLE: 2,
    NotationLevel.AVERAGE: 3,
    NotationLevel.GOOD: 4,
    NotationLevel.VERY_GOOD: 5,
}

NOTATION_MAX = 5


class NegotiationDecision(str, Enum):
    UNDECIDED = "non_defini"
    RETAINED = "retenue"
    NOT_RETAINED = "non_retenue"
    AWARDEE = "attributaire"


class CriterionRole(str, Enum):
    """What a weighting criterion stands for in the synthesis"""
    PRICE = "price"
    ENVIRONMENTAL = "environmental"
    PLANNING = "planning"
    GENERIC = "generic"


# Criterion ids used by documents written before roles were stored
LEGACY_ROLE_IDS = {
    "prix": CriterionRole.PRICE,
    "environnemental": CriterionRole.ENVIRONMENTAL,
    "planning": CriterionRole.PLANNING,
}


# ============== Lot entities ==============

class Company(DocumentModel):
    id: int = Field(..., ge=1, le=MAX_COMPANY_ID)
    name: str = Field(default="", max_length=200)
    status: CompanyStatus = CompanyStatus.UNDECIDED
    exclusion_reason: str = Field(default="", max_length=1000)

    @property
    def is_excluded(self) -> bool:
        return self.status == CompanyStatus.EXCLUDED

    @property
    def is_active(self) -> bool:
        return self.name.strip() != ""


class LotLine(DocumentModel):
    id: int = Field(..., ge=1, le=50)
    label: str = Field(default="", max_length=200)
    type: Optional[LotLineType] = None
    dpgf_assignment: DpgfAssignment = DpgfAssignment.BOTH
    estimation_dpgf1: Optional[float] = None
    estimation_dpgf2: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.label.strip() != ""


class SubCriterion(DocumentModel):
    id: str = Field(default_factory=new_id, max_length=100)
    label: str = Field(default="", max_length=200)
    weight: float = Field(default=0, ge=0, le=100)


class WeightingCriterion(DocumentModel):
    id: str = Field(default_factory=new_id, max_length=100)
    label: str = Field(default="", max_length=200)
    weight: float = Field(default=0, ge=0, le=100)
    role: CriterionRole = CriterionRole.GENERIC
    sub_criteria: List[SubCriterion] = Field(default_factory=list, max_length=MAX_SUB_CRITERIA)

    @model_validator(mode="before")
    @classmethod
    def resolve_legacy_role(cls, data):
        # Role is resolved once, here, for documents that predate it
        if isinstance(data, dict) and "role" not in data:
            legacy = LEGACY_ROLE_IDS.get(data.get("id", ""))
            if legacy is not None:
                data = {**data, "role": legacy}
        return data

    @property
    def sub_weight_total(self) -> float:
        return sum(s.weight for s in self.sub_criteria)


# ============== Version entities ==============

class TechnicalNote(DocumentModel):
    company_id: int
    criterion_id: str
    sub_criterion_id: Optional[str] = None
    notation: Optional[NotationLevel] = None
    comment: str = Field(default="", max_length=2000)
    positive_comment: str = Field(default="", max_length=2000, alias="commentPositif")
    negative_comment: str = Field(default="", max_length=2000, alias="commentNegatif")

    def matches(self, company_id: int, criterion_id: str, sub_criterion_id: Optional[str]) -> bool:
        return (
            self.company_id == company_id
            and self.criterion_id == criterion_id
            and (self.sub_criterion_id or None) == (sub_criterion_id or None)
        )


class PriceEntry(DocumentModel):
    company_id: int
    lot_line_id: int = Field(..., ge=0)
    dpgf1: Optional[float] = None
    dpgf2: Optional[float] = None

    @property
    def amount(self) -> float:
        return (self.dpgf1 or 0.0) + (self.dpgf2 or 0.0)


class NegotiationQuestion(DocumentModel):
    id: str = Field(default_factory=new_id)
    text: str = Field(default="", max_length=4000)
    response: str = Field(default="", max_length=4000)


class CompanyQuestionnaire(DocumentModel):
    company_id: int
    reception_mode: bool = False
    questions: List[NegotiationQuestion] = Field(default_factory=list)


class NegotiationQuestionnaire(DocumentModel):
    activated: bool = False
    deadline_date: Optional[date] = None
    questionnaires: List[CompanyQuestionnaire] = Field(default_factory=list)

    def for_company(self, company_id: int) -> Optional[CompanyQuestionnaire]:
        return next((q for q in self.questionnaires if q.company_id == company_id), None)


class NegotiationVersion(DocumentModel):
    id: str = Field(default_factory=new_id, max_length=100)
    label: str = Field(default="V0", max_length=20)
    created_at: datetime = Field(default_factory=utcnow)
    analysis_date: date = Field(default_factory=date.today)
    technical_notes: List[TechnicalNote] = Field(default_factory=list)
    price_entries: List[PriceEntry] = Field(default_factory=list)
    negotiation_decisions: Dict[int, NegotiationDecision] = Field(default_factory=dict)
    documents_to_verify: Dict[int, str] = Field(default_factory=dict)
    questionnaire: Optional[NegotiationQuestionnaire] = None
    # None = every company of the lot (initial analysis)
    company_ids: Optional[List[int]] = None
    frozen: bool = False
    validated: bool = False
    validated_at: Optional[datetime] = None

    @property
    def read_only(self) -> bool:
        return self.frozen or self.validated

    def decision_for(self, company_id: int) -> NegotiationDecision:
        return self.negotiation_decisions.get(company_id, NegotiationDecision.UNDECIDED)

    def has_decision(self, decision: NegotiationDecision) -> bool:
        return any(d == decision for d in self.negotiation_decisions.values())

    def find_note(
        self, company_id: int, criterion_id: str, sub_criterion_id: Optional[str] = None
    ) -> Optional[TechnicalNote]:
        return next(
            (n for n in self.technical_notes if n.matches(company_id, criterion_id, sub_criterion_id)),
            None,
        )

    def find_price(self, company_id: int, lot_line_id: int) -> Optional[PriceEntry]:
        return next(
            (e for e in self.price_entries if e.company_id == company_id and e.lot_line_id == lot_line_id),
            None,
        )


# ============== Lot / Project ==============

class Lot(DocumentModel):
    id: str = Field(default_factory=new_id, max_length=100)
    label: str = Field(default="Lot 1", max_length=200)
    lot_number: str = Field(default="", max_length=50)
    lot_analyzed: str = Field(default="", max_length=200)
    has_dual_dpgf: bool = False
    estimation_dpgf1: Optional[float] = None
    estimation_dpgf2: Optional[float] = None
    tolerance_seuil: float = Field(default=DEFAULT_TOLERANCE_PCT, ge=0)
    companies: List[Company] = Field(..., min_length=1, max_length=MAX_COMPANIES)
    lot_lines: List[LotLine] = Field(default_factory=list, max_length=MAX_LOT_LINES)
    weighting_criteria: List[WeightingCriterion] = Field(default_factory=list)
    versions: List[NegotiationVersion] = Field(..., min_length=1, max_length=MAX_VERSIONS)
    current_version_id: str

    @model_validator(mode="after")
    def check_consistency(self) -> "Lot":
        ids = [c.id for c in self.companies]
        if len(ids) != len(set(ids)):
            raise ValueError("company ids must be unique within a lot")
        if not any(v.id == self.current_version_id for v in self.versions):
            raise ValueError(f"current version {self.current_version_id} is not a version of the lot")
        return self

    def get_company(self, company_id: int) -> Optional[Company]:
        return next((c for c in self.companies if c.id == company_id), None)

    def get_criterion(self, criterion_id: str) -> Optional[WeightingCriterion]:
        return next((c for c in self.weighting_criteria if c.id == criterion_id), None)

    def get_line(self, line_id: int) -> Optional[LotLine]:
        return next((l for l in self.lot_lines if l.id == line_id), None)

    def find_version(self, version_id: str) -> Optional[NegotiationVersion]:
        return next((v for v in self.versions if v.id == version_id), None)

    @property
    def current_version(self) -> NegotiationVersion:
        return self.find_version(self.current_version_id)

    @property
    def price_criterion(self) -> Optional[WeightingCriterion]:
        return next((c for c in self.weighting_criteria if c.role == CriterionRole.PRICE), None)

    @property
    def weighting_total(self) -> float:
        return sum(c.weight for c in self.weighting_criteria)

    @property
    def active_lines(self) -> List[LotLine]:
        return [l for l in self.lot_lines if l.is_active]

    def roster(self, version: NegotiationVersion) -> List[Company]:
        """Active companies taking part in a version, in lot order"""
        active = [c for c in self.companies if c.is_active]
        if version.company_ids is None:
            return active
        allowed = set(version.company_ids)
        return [c for c in active if c.id in allowed]

    def in_roster(self, version: NegotiationVersion, company_id: int) -> bool:
        if self.get_company(company_id) is None:
            return False
        return version.company_ids is None or company_id in version.company_ids


class ProjectInfo(DocumentModel):
    name: str = Field(default="", max_length=200)
    market_ref: str = Field(default="", max_length=200)
    analysis_date: date = Field(default_factory=date.today)
    author: str = Field(default="", max_length=200)
    number_of_lots: int = Field(default=1, ge=1, le=20)


class Project(DocumentModel):
    id: str = Field(default_factory=new_id, max_length=100)
    info: ProjectInfo = Field(default_factory=ProjectInfo)
    lots: List[Lot] = Field(..., min_length=1, max_length=20)
    current_lot_index: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_lot_index(self) -> "Project":
        if self.current_lot_index >= len(self.lots):
            self.current_lot_index = 0
        return self

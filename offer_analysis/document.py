"""
Project document holder and data-model mutations.

``ProjectDocument`` owns one ``Project`` for the call site (tests, an editing
session, a batch job). Nothing here does I/O. Every operation checks its
input before touching the project, so a rejected call leaves it unchanged.
Version contents (notes, prices, decisions) are mutated through
``lifecycle``, which enforces the freeze rules.
"""

from datetime import date
import logging
from typing import Any, Dict, List, Optional

from . import config
from .errors import InvalidInput, NotFound
from .models import (
    Company,
    CompanyStatus,
    CriterionRole,
    Lot,
    LotLine,
    NegotiationVersion,
    Project,
    ProjectInfo,
    SubCriterion,
    WeightingCriterion,
    new_id,
)

logger = logging.getLogger(__name__)


def default_criteria() -> List[WeightingCriterion]:
    return [
        WeightingCriterion(id="prix", label="Prix", weight=40, role=CriterionRole.PRICE),
        WeightingCriterion(
            id="technique",
            label="Valeur technique",
            weight=40,
            sub_criteria=[
                SubCriterion(id="tech_1", label="Sous-critère 1", weight=50),
                SubCriterion(id="tech_2", label="Sous-critère 2", weight=50),
            ],
        ),
        WeightingCriterion(
            id="environnemental", label="Environnemental", weight=10, role=CriterionRole.ENVIRONMENTAL
        ),
        WeightingCriterion(id="planning", label="Planning", weight=10, role=CriterionRole.PLANNING),
    ]


def blank_line(line_id: int) -> LotLine:
    return LotLine(id=line_id)


def create_default_lot(label: str = "Lot 1") -> Lot:
    version = NegotiationVersion(label="V0")
    return Lot(
        label=label,
        companies=[Company(id=1)],
        lot_lines=[blank_line(1)],
        weighting_criteria=default_criteria(),
        versions=[version],
        current_version_id=version.id,
    )


def create_default_project() -> Project:
    return Project(info=ProjectInfo(), lots=[create_default_lot()])


def _check_weight(weight: float, step: float, what: str) -> None:
    if weight < 0 or weight > 100:
        raise InvalidInput(f"{what} weight must be between 0 and 100, got {weight}", code="INVALID_WEIGHT")
    if abs(weight / step - round(weight / step)) > 1e-9:
        raise InvalidInput(f"{what} weight must be a multiple of {step}, got {weight}", code="INVALID_WEIGHT")


def _purge_company(version: NegotiationVersion, company_id: int) -> None:
    version.technical_notes = [n for n in version.technical_notes if n.company_id != company_id]
    version.price_entries = [e for e in version.price_entries if e.company_id != company_id]
    version.negotiation_decisions.pop(company_id, None)
    version.documents_to_verify.pop(company_id, None)
    if version.questionnaire is not None:
        version.questionnaire.questionnaires = [
            q for q in version.questionnaire.questionnaires if q.company_id != company_id
        ]
    if version.company_ids is not None:
        version.company_ids = [cid for cid in version.company_ids if cid != company_id]


class ProjectDocument:
    """Explicit, injectable holder for one project document."""

    def __init__(self, project: Optional[Project] = None, updated_at: Optional[str] = None):
        self.project = project or create_default_project()
        self.updated_at = updated_at

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "ProjectDocument":
        return cls(Project.model_validate(migrate_legacy_project(data)))

    def to_document(self) -> Dict[str, Any]:
        return self.project.to_document()

    @property
    def id(self) -> str:
        return self.project.id

    # ============== Project / lots ==============

    def update_info(self, **fields) -> ProjectInfo:
        unknown = set(fields) - set(ProjectInfo.model_fields)
        if unknown:
            raise InvalidInput(f"Unknown project info fields: {sorted(unknown)}")
        merged = {**self.project.info.model_dump(), **fields}
        self.project.info = ProjectInfo.model_validate(merged)
        return self.project.info

    def get_lot(self, lot_id: str) -> Lot:
        lot = next((l for l in self.project.lots if l.id == lot_id), None)
        if lot is None:
            raise NotFound(f"Lot {lot_id} not found")
        return lot

    @property
    def current_lot(self) -> Lot:
        return self.project.lots[self.project.current_lot_index]

    def add_lot(self, label: Optional[str] = None) -> Lot:
        if len(self.project.lots) >= 20:
            raise InvalidInput("A project holds at most 20 lots", code="TOO_MANY_LOTS")
        lot = create_default_lot(label or f"Lot {len(self.project.lots) + 1}")
        self.project.lots.append(lot)
        self.project.info.number_of_lots = len(self.project.lots)
        return lot

    def remove_lot(self, lot_id: str) -> None:
        lot = self.get_lot(lot_id)
        if len(self.project.lots) <= 1:
            raise InvalidInput("A project keeps at least one lot", code="LAST_LOT")
        self.project.lots.remove(lot)
        self.project.info.number_of_lots = len(self.project.lots)
        if self.project.current_lot_index >= len(self.project.lots):
            self.project.current_lot_index = len(self.project.lots) - 1

    def switch_lot(self, index: int) -> Lot:
        if not 0 <= index < len(self.project.lots):
            raise NotFound(f"No lot at index {index}")
        self.project.current_lot_index = index
        return self.current_lot

    def get_version(self, lot: Lot, version_id: Optional[str] = None) -> NegotiationVersion:
        version = lot.find_version(version_id or lot.current_version_id)
        if version is None:
            raise NotFound(f"Version {version_id} not found in lot {lot.label}")
        return version

    def current_version(self, lot: Optional[Lot] = None) -> NegotiationVersion:
        return self.get_version(lot or self.current_lot)

    def summary(self) -> Dict[str, Any]:
        info = self.project.info
        return {
            "id": self.project.id,
            "name": info.name or "Sans titre",
            "marketRef": info.market_ref,
            "lotAnalyzed": self.current_lot.lot_analyzed,
            "updatedAt": self.updated_at,
        }

    # ============== Companies ==============

    def get_company(self, lot: Lot, company_id: int) -> Company:
        company = lot.get_company(company_id)
        if company is None:
            raise NotFound(f"Company {company_id} not found in lot {lot.label}")
        return company

    def add_company(self, lot: Lot, name: str = "") -> Company:
        if len(lot.companies) >= config.MAX_COMPANIES:
            raise InvalidInput(f"A lot holds at most {config.MAX_COMPANIES} companies", code="TOO_MANY_COMPANIES")
        used = {c.id for c in lot.companies}
        next_id = next(i for i in range(1, config.MAX_COMPANY_ID + 1) if i not in used)
        company = Company(id=next_id, name=name)
        lot.companies.append(company)
        return company

    def remove_company(self, lot: Lot, company_id: int) -> None:
        """Remove a company and everything entered for it in every version"""
        company = self.get_company(lot, company_id)
        if len(lot.companies) <= 1:
            raise InvalidInput("A lot keeps at least one company", code="LAST_COMPANY")
        lot.companies.remove(company)
        # Ids are reused by add_company: nothing may survive under this one
        for version in lot.versions:
            _purge_company(version, company_id)
        logger.info(f"Company {company_id} removed from lot {lot.label}")

    def update_company(self, lot: Lot, company_id: int, name: str) -> Company:
        company = self.get_company(lot, company_id)
        updated = Company.model_validate({**company.model_dump(), "name": name})
        company.name = updated.name
        return company

    def set_company_status(
        self, lot: Lot, company_id: int, status: CompanyStatus, exclusion_reason: str = ""
    ) -> Company:
        """Excluding keeps the company's notes and prices; scoring ignores them."""
        company = self.get_company(lot, company_id)
        status = CompanyStatus(status)
        company.status = status
        company.exclusion_reason = exclusion_reason if status == CompanyStatus.EXCLUDED else ""
        if status == CompanyStatus.EXCLUDED:
            logger.info(f"Company {company_id} excluded from lot {lot.label}: {exclusion_reason or '-'}")
        return company

    # ============== Lot lines ==============

    def update_lot_line(self, lot: Lot, line_id: int, **fields) -> LotLine:
        line = lot.get_line(line_id)
        if line is None:
            raise NotFound(f"Lot line {line_id} not found")
        updated = LotLine.model_validate({**line.model_dump(), **fields, "id": line_id})
        index = lot.lot_lines.index(line)
        lot.lot_lines[index] = updated

        # Cascading list: naming a line opens the next blank one
        if updated.is_active and len(lot.lot_lines) < config.MAX_LOT_LINES:
            next_id = line_id + 1
            if lot.get_line(next_id) is None:
                lot.lot_lines.append(blank_line(next_id))
        return updated

    # ============== Weighting ==============

    def get_criterion(self, lot: Lot, criterion_id: str) -> WeightingCriterion:
        criterion = lot.get_criterion(criterion_id)
        if criterion is None:
            raise NotFound(f"Criterion {criterion_id} not found")
        return criterion

    def add_criterion(
        self, lot: Lot, label: str, weight: float = 0, role: CriterionRole = CriterionRole.GENERIC
    ) -> WeightingCriterion:
        _check_weight(weight, config.CRITERION_WEIGHT_STEP, "Criterion")
        role = CriterionRole(role)
        if role != CriterionRole.GENERIC and any(c.role == role for c in lot.weighting_criteria):
            raise InvalidInput(f"The lot already has a {role.value} criterion", code="DUPLICATE_ROLE")
        criterion = WeightingCriterion(label=label, weight=weight, role=role)
        lot.weighting_criteria.append(criterion)
        return criterion

    def remove_criterion(self, lot: Lot, criterion_id: str) -> None:
        lot.weighting_criteria.remove(self.get_criterion(lot, criterion_id))

    def update_criterion_weight(self, lot: Lot, criterion_id: str, weight: float) -> WeightingCriterion:
        criterion = self.get_criterion(lot, criterion_id)
        _check_weight(weight, config.CRITERION_WEIGHT_STEP, "Criterion")
        criterion.weight = weight
        return criterion

    def update_criterion_label(self, lot: Lot, criterion_id: str, label: str) -> WeightingCriterion:
        criterion = self.get_criterion(lot, criterion_id)
        criterion.label = WeightingCriterion(label=label).label
        return criterion

    def add_sub_criterion(self, lot: Lot, criterion_id: str, label: str = "", weight: int = 0) -> SubCriterion:
        criterion = self.get_criterion(lot, criterion_id)
        if criterion.role == CriterionRole.PRICE:
            raise InvalidInput("The price criterion has no sub-criteria", code="PRICE_SUB_CRITERIA")
        if len(criterion.sub_criteria) >= config.MAX_SUB_CRITERIA:
            raise InvalidInput(
                f"A criterion holds at most {config.MAX_SUB_CRITERIA} sub-criteria", code="TOO_MANY_SUB_CRITERIA"
            )
        _check_weight(weight, 1, "Sub-criterion")
        sub = SubCriterion(label=label, weight=weight)
        criterion.sub_criteria.append(sub)
        return sub

    def remove_sub_criterion(self, lot: Lot, criterion_id: str, sub_id: str) -> None:
        criterion = self.get_criterion(lot, criterion_id)
        sub = next((s for s in criterion.sub_criteria if s.id == sub_id), None)
        if sub is None:
            raise NotFound(f"Sub-criterion {sub_id} not found")
        criterion.sub_criteria.remove(sub)

    def update_sub_criterion(
        self,
        lot: Lot,
        criterion_id: str,
        sub_id: str,
        label: Optional[str] = None,
        weight: Optional[int] = None,
    ) -> SubCriterion:
        criterion = self.get_criterion(lot, criterion_id)
        sub = next((s for s in criterion.sub_criteria if s.id == sub_id), None)
        if sub is None:
            raise NotFound(f"Sub-criterion {sub_id} not found")
        if weight is not None:
            _check_weight(weight, 1, "Sub-criterion")
        if label is not None:
            sub.label = label
        if weight is not None:
            sub.weight = weight
        return sub

    @staticmethod
    def weighting_total(lot: Lot) -> float:
        return lot.weighting_total

    @staticmethod
    def check_weighting(lot: Lot) -> None:
        """Raise when top-level weights do not sum to 100. Never corrects them."""
        total = lot.weighting_total
        if abs(total - config.WEIGHTING_TOTAL) > 1e-9:
            raise InvalidInput(
                f"Weighting criteria sum to {total:g}%, expected {config.WEIGHTING_TOTAL}%",
                code="WEIGHTING_INVALID",
            )


# ============== Legacy documents ==============

def _today() -> str:
    return date.today().isoformat()


def _migrate_version(version: Dict[str, Any], fallback_date: str) -> Dict[str, Any]:
    decisions = version.get("negotiationDecisions")
    if decisions is None:
        decisions = {str(cid): "retenue" for cid in version.get("negotiationRetained") or []}
    migrated = {k: v for k, v in version.items() if k != "negotiationRetained"}
    migrated.update(
        analysisDate=version.get("analysisDate") or fallback_date,
        validated=version.get("validated", False),
        validatedAt=version.get("validatedAt"),
        negotiationDecisions=decisions,
        documentsToVerify=version.get("documentsToVerify") or {},
    )
    return migrated


def migrate_legacy_project(data: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade a single-lot document to the multi-lot shape. Multi-lot input is returned as is."""
    if isinstance(data.get("lots"), list):
        return data

    info = data.get("info") or {}
    fallback_date = info.get("analysisDate") or _today()
    versions = [_migrate_version(v, fallback_date) for v in data.get("versions") or []]
    if not versions:
        versions = [NegotiationVersion(label="V0").to_document()]

    lines = data.get("lotLines") or [blank_line(1).to_document()]
    lines = [
        {
            **{k: v for k, v in line.items() if k != "estimation"},
            "estimationDpgf1": line.get("estimationDpgf1", line.get("estimation")),
            "estimationDpgf2": line.get("estimationDpgf2"),
        }
        for line in lines
    ]

    lot = {
        "id": new_id(),
        "label": "Lot 1",
        "lotNumber": info.get("lotNumber", ""),
        "lotAnalyzed": info.get("lotAnalyzed", ""),
        "hasDualDpgf": info.get("hasDualDpgf", (info.get("estimationDpgf2") or 0) != 0),
        "estimationDpgf1": info.get("estimationDpgf1"),
        "estimationDpgf2": info.get("estimationDpgf2"),
        "toleranceSeuil": data.get("toleranceSeuil", config.DEFAULT_TOLERANCE_PCT),
        "companies": data.get("companies") or [Company(id=1).to_document()],
        "lotLines": lines,
        "weightingCriteria": data.get("weightingCriteria")
        or [c.to_document() for c in default_criteria()],
        "versions": versions,
        "currentVersionId": data.get("currentVersionId") or versions[0]["id"],
    }
    logger.info(f"Migrated legacy single-lot project {data.get('id', '?')} to multi-lot format")
    return {
        "id": data.get("id") or new_id(),
        "info": {
            "name": info.get("name", ""),
            "marketRef": info.get("marketRef", ""),
            "analysisDate": fallback_date,
            "author": info.get("author", ""),
            "numberOfLots": 1,
        },
        "lots": [lot],
        "currentLotIndex": 0,
    }

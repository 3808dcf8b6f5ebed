"""
Lot view consumed by the export renderer.

Everything here is derived on read from the project document; nothing is
written back.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from .lifecycle import get_version, synthesis_label, version_display_label
from .models import Company, Lot, LotLine, NegotiationVersion, Project, ProjectInfo, WeightingCriterion
from .scoring import (
    LineDeviation,
    PriceScenario,
    ScenarioResult,
    VersionScoring,
    line_deviations,
    price_scenarios,
    score_version,
)


class LotView(BaseModel):
    """Entities of one lot + the derived synthesis of one of its versions"""
    project_id: str
    info: ProjectInfo
    lot_id: str
    lot_label: str
    lot_number: str
    lot_analyzed: str
    has_dual_dpgf: bool
    estimation_dpgf1: Optional[float] = None
    estimation_dpgf2: Optional[float] = None
    tolerance_seuil: float

    companies: List[Company] = Field(default_factory=list)
    lot_lines: List[LotLine] = Field(default_factory=list)
    weighting_criteria: List[WeightingCriterion] = Field(default_factory=list)

    version: NegotiationVersion
    version_index: int
    version_display_label: str
    synthesis_label: str
    read_only: bool

    scoring: VersionScoring
    scenarios: List[ScenarioResult] = Field(default_factory=list)
    deviations: List[LineDeviation] = Field(default_factory=list)


def build_lot_view(
    project: Project,
    lot: Lot,
    version_id: Optional[str] = None,
    scenario: PriceScenario = PriceScenario.TOTAL,
    option_line_id: Optional[int] = None,
) -> LotView:
    version = get_version(lot, version_id or lot.current_version_id)
    index = lot.versions.index(version)
    return LotView(
        project_id=project.id,
        info=project.info,
        lot_id=lot.id,
        lot_label=lot.label,
        lot_number=lot.lot_number,
        lot_analyzed=lot.lot_analyzed,
        has_dual_dpgf=lot.has_dual_dpgf,
        estimation_dpgf1=lot.estimation_dpgf1,
        estimation_dpgf2=lot.estimation_dpgf2,
        tolerance_seuil=lot.tolerance_seuil,
        companies=lot.roster(version),
        lot_lines=lot.active_lines,
        weighting_criteria=lot.weighting_criteria,
        version=version,
        version_index=index,
        version_display_label=version_display_label(version.label),
        synthesis_label=synthesis_label(lot, index),
        read_only=version.read_only,
        scoring=score_version(lot, version, scenario, option_line_id),
        scenarios=price_scenarios(lot, version),
        deviations=line_deviations(lot, version),
    )

"""
Scoring Engine
==============
Technical + price synthesis of a negotiation version.

Key features:
1. Pure function of (lot, version): no mutation, safe to call on every read
2. Notation scale insufficient..very good -> 1..5, contribution = value / 5 x weight
3. Sub-criterion weights renormalized to sum to 1 (nominal sum may differ from 100)
4. Lowest-cost normalized price score, per price scenario
5. Explicit ranking: excluded last, ties broken by company id
6. Never raises on partial data: missing notes / prices contribute 0
"""

from typing import Dict, List, Optional

from .. import config
from ..models import (
    NOTATION_MAX,
    CriterionRole,
    Company,
    Lot,
    LotLine,
    NegotiationVersion,
    NotationLevel,
    WeightingCriterion,
)
from .models import (
    CompanyScore,
    CriterionScore,
    Deviation,
    DeviationBand,
    Flag,
    LineDeviation,
    PriceScenario,
    ScenarioEntry,
    ScenarioResult,
    VersionScoring,
)

# Precision used when comparing global scores for ties
_RANK_PRECISION = 9


def notation_value(notation: Optional[NotationLevel]) -> int:
    """Value of a notation on the 1..5 scale, 0 when not noted"""
    if notation is None:
        return 0
    return NotationLevel(notation).value_points


def price_deviation(offered: float, estimate: float) -> Optional[Deviation]:
    """
    Deviation of an offered amount from its estimation.

    Banding uses the magnitude of the deviation: an offer 30% under the
    estimation is as "high" as one 30% over. Undefined when either side is 0.
    """
    if not estimate or not offered:
        return None
    ratio = (offered - estimate) / abs(estimate)
    magnitude = abs(ratio)
    if magnitude <= config.DEVIATION_LOW_MAX:
        band = DeviationBand.LOW
    elif magnitude <= config.DEVIATION_MEDIUM_MAX:
        band = DeviationBand.MEDIUM
    else:
        band = DeviationBand.HIGH
    return Deviation(offered=offered, estimate=estimate, ratio=ratio, band=band)


def lowest_cost_scores(totals: Dict[int, float], price_weight: float) -> Dict[int, float]:
    """
    Lowest-cost normalization: min positive total / total x weight.

    Companies with a zero total score 0 (they are not "free"); with no
    positive total at all every score is 0. Ties at the minimum all get
    the full weight.
    """
    positive = [t for t in totals.values() if t > 0]
    if not positive:
        return {company_id: 0.0 for company_id in totals}
    min_total = min(positive)
    return {
        company_id: (min_total / total) * price_weight if total > 0 else 0.0
        for company_id, total in totals.items()
    }


class ScoringEngine:
    """
    Synthesis engine for one lot.

    Score buckets (presentation grouping of the same per-criterion numbers):
    1. TECHNICAL: generic criteria
    2. ENVIRONMENTAL: criterion with the environmental role
    3. PLANNING: criterion with the planning role
    4. PRICE: lowest-cost normalized, weighted by the price criterion
    """

    def __init__(self, scenario: PriceScenario = PriceScenario.TOTAL, option_line_id: Optional[int] = None):
        self.scenario = PriceScenario(scenario)
        if self.scenario == PriceScenario.OPTION and option_line_id is None:
            raise ValueError("The option scenario needs the id of its option line")
        self.option_line_id = option_line_id if self.scenario == PriceScenario.OPTION else None

    def score(self, lot: Lot, version: Optional[NegotiationVersion] = None) -> VersionScoring:
        """Score every company of the version roster and return ranked results"""
        version = version or lot.current_version
        companies = lot.roster(version)
        price_weight = self._price_weight(lot)
        weighting_valid = abs(lot.weighting_total - config.WEIGHTING_TOTAL) < 1e-9

        results = [self._score_company(lot, version, company) for company in companies]

        # Step 2: price normalization across non-excluded companies
        totals = {r.company_id: r.price_total for r in results if not r.excluded}
        price_scores = lowest_cost_scores(totals, price_weight)
        for result in results:
            result.price_score = price_scores.get(result.company_id, 0.0)

        # Step 3: ranking, then flags (BEST_OFFER depends on rank)
        ranked = self._rank(results, assign_ranks=weighting_valid)
        for result, company in zip(results, companies):
            result.flags = self._generate_flags(lot, version, company, result)

        flags = []
        if not weighting_valid:
            flags.append(Flag(
                type="warning",
                code="WEIGHTING_INVALID",
                message=f"Weighting criteria sum to {lot.weighting_total:g}% instead of "
                        f"{config.WEIGHTING_TOTAL}% - ranking withheld",
            ))

        return VersionScoring(
            lot_id=lot.id,
            version_id=version.id,
            version_label=version.label,
            scenario=self.scenario,
            option_line_id=self.option_line_id,
            weighting_total=lot.weighting_total,
            weighting_valid=weighting_valid,
            price_weight=price_weight,
            max_score=lot.weighting_total,
            results=ranked,
            flags=flags,
        )

    def _score_company(self, lot: Lot, version: NegotiationVersion, company: Company) -> CompanyScore:
        """Technical contributions and raw price total for one company"""
        result = CompanyScore(
            company_id=company.id,
            company_name=company.name,
            excluded=company.is_excluded,
            decision=version.decision_for(company.id),
        )

        for criterion in lot.weighting_criteria:
            if criterion.role == CriterionRole.PRICE:
                continue
            # Excluded companies score 0 whatever is stored
            score = 0.0 if company.is_excluded else self._criterion_score(version, criterion, company.id)
            result.criterion_scores.append(CriterionScore(
                criterion_id=criterion.id,
                label=criterion.label,
                role=criterion.role,
                weight=criterion.weight,
                score=score,
            ))
            if criterion.role == CriterionRole.ENVIRONMENTAL:
                result.environmental_score += score
            elif criterion.role == CriterionRole.PLANNING:
                result.planning_score += score
            else:
                result.technical_score += score

        if not company.is_excluded:
            result.price_total = self.price_total(lot, version, company.id)
        return result

    @staticmethod
    def _criterion_score(version: NegotiationVersion, criterion: WeightingCriterion, company_id: int) -> float:
        if not criterion.sub_criteria:
            note = version.find_note(company_id, criterion.id)
            value = notation_value(note.notation if note else None)
            return (value / NOTATION_MAX) * criterion.weight

        sub_total = criterion.sub_weight_total
        accumulator = 0.0
        for sub in criterion.sub_criteria:
            note = version.find_note(company_id, criterion.id, sub.id)
            if note is None or note.notation is None:
                continue  # counts as 0, weights are not renormalized away
            share = sub.weight / sub_total if sub_total > 0 else 0.0
            accumulator += notation_value(note.notation) * share
        return (accumulator / NOTATION_MAX) * criterion.weight

    @staticmethod
    def scenario_lines(
        lot: Lot, scenario: PriceScenario, option_line_id: Optional[int] = None
    ) -> List[LotLine]:
        scenario = PriceScenario(scenario)
        if scenario == PriceScenario.TOTAL:
            return lot.active_lines
        return [
            l for l in lot.active_lines
            if l.type is None or (scenario == PriceScenario.OPTION and l.id == option_line_id)
        ]

    def price_total(self, lot: Lot, version: NegotiationVersion, company_id: int) -> float:
        """Base entry (line 0) + scenario lines, dpgf1 + dpgf2, missing as 0"""
        lines = self.scenario_lines(lot, self.scenario, self.option_line_id)
        line_ids = [config.BASE_LINE_ID] + [l.id for l in lines]
        total = 0.0
        for line_id in line_ids:
            entry = version.find_price(company_id, line_id)
            if entry is not None:
                total += entry.amount
        return total

    @staticmethod
    def _price_weight(lot: Lot) -> float:
        criterion = lot.price_criterion
        return criterion.weight if criterion else 0.0

    @staticmethod
    def _rank(results: List[CompanyScore], assign_ranks: bool) -> List[CompanyScore]:
        """Excluded last (by id); others by descending global score, ties by company id"""
        eligible = sorted(
            (r for r in results if not r.excluded),
            key=lambda r: (-round(r.global_score, _RANK_PRECISION), r.company_id),
        )
        excluded = sorted((r for r in results if r.excluded), key=lambda r: r.company_id)
        if assign_ranks:
            for i, result in enumerate(eligible):
                result.rank = i + 1
        return eligible + excluded

    def _generate_flags(
        self, lot: Lot, version: NegotiationVersion, company: Company, result: CompanyScore
    ) -> List[Flag]:
        flags = []

        if company.is_excluded:
            reason = company.exclusion_reason or "no reason given"
            flags.append(Flag(type="info", code="EXCLUDED", message=f"Excluded: {reason}"))
            return flags

        if result.price_total <= 0:
            flags.append(Flag(
                type="warning",
                code="MISSING_PRICE",
                message="No price entered - price score is 0",
            ))
        else:
            estimate = lot_estimation(lot)
            deviation = price_deviation(result.price_total, estimate) if estimate else None
            if deviation is not None and abs(deviation.percent) > lot.tolerance_seuil:
                flags.append(Flag(
                    type="warning",
                    code="OUT_OF_TOLERANCE",
                    message=f"Total deviates {deviation.percent:+.2f}% from the estimation "
                            f"(tolerance ±{lot.tolerance_seuil:g}%)",
                ))

        missing = self._missing_notes(lot, version, company.id)
        if missing:
            flags.append(Flag(
                type="info",
                code="INCOMPLETE_NOTES",
                message=f"{missing} technical notation(s) missing",
            ))

        if result.rank == 1:
            flags.append(Flag(type="success", code="BEST_OFFER", message="Best global score"))

        return flags

    @staticmethod
    def _missing_notes(lot: Lot, version: NegotiationVersion, company_id: int) -> int:
        missing = 0
        for criterion in lot.weighting_criteria:
            if criterion.role == CriterionRole.PRICE:
                continue
            keys = [s.id for s in criterion.sub_criteria] or [None]
            for sub_id in keys:
                note = version.find_note(company_id, criterion.id, sub_id)
                if note is None or note.notation is None:
                    missing += 1
        return missing


def lot_estimation(lot: Lot) -> float:
    """Lot-level estimation: both sheets on dual-estimate lots, sheet 1 otherwise"""
    est1 = lot.estimation_dpgf1 or 0.0
    est2 = lot.estimation_dpgf2 or 0.0
    return est1 + est2 if lot.has_dual_dpgf else est1


def line_deviations(lot: Lot, version: Optional[NegotiationVersion] = None) -> List[LineDeviation]:
    """Per company x active line deviation of the offer from the line estimation"""
    version = version or lot.current_version
    deviations = []
    for company in lot.roster(version):
        if company.is_excluded:
            continue
        for line in lot.active_lines:
            entry = version.find_price(company.id, line.id)
            d1 = (entry.dpgf1 or 0.0) if entry else 0.0
            d2 = (entry.dpgf2 or 0.0) if entry else 0.0
            est1 = line.estimation_dpgf1 or 0.0
            est2 = line.estimation_dpgf2 or 0.0
            if lot.has_dual_dpgf:
                offered, estimate = d1 + d2, est1 + est2
            else:
                offered, estimate = d1, est1
            deviations.append(LineDeviation(
                company_id=company.id,
                lot_line_id=line.id,
                label=line.label,
                deviation=price_deviation(offered, estimate),
            ))
    return deviations


def price_scenarios(lot: Lot, version: Optional[NegotiationVersion] = None) -> List[ScenarioResult]:
    """
    Price totals and scores of every scenario: all lines, tranche ferme alone,
    then base + each typed line on its own (one scenario per PSE / variante /
    tranche optionnelle, including the ones not retained).
    """
    version = version or lot.current_version
    companies = [c for c in lot.roster(version) if not c.is_excluded]
    price_weight = ScoringEngine._price_weight(lot)

    engines = [
        (ScoringEngine(PriceScenario.TOTAL), "Total (toutes lignes)"),
        (ScoringEngine(PriceScenario.BASE), "Tranche Ferme (Base seule)"),
    ]
    for line in lot.active_lines:
        if line.type is not None:
            engines.append((ScoringEngine(PriceScenario.OPTION, line.id), f"Base + {line.label}"))

    results = []
    for engine, label in engines:
        totals = {c.id: engine.price_total(lot, version, c.id) for c in companies}
        scores = lowest_cost_scores(totals, price_weight)
        positive = [t for t in totals.values() if t > 0]
        results.append(ScenarioResult(
            scenario=engine.scenario,
            option_line_id=engine.option_line_id,
            label=label,
            min_total=min(positive) if positive else 0.0,
            price_weight=price_weight,
            entries=[ScenarioEntry(company_id=cid, total=totals[cid], score=scores[cid]) for cid in totals],
        ))
    return results


def score_version(
    lot: Lot,
    version: Optional[NegotiationVersion] = None,
    scenario: PriceScenario = PriceScenario.TOTAL,
    option_line_id: Optional[int] = None,
) -> VersionScoring:
    """Convenience function to score a version"""
    return ScoringEngine(scenario, option_line_id).score(lot, version)

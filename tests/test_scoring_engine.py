"""
Unit tests for Scoring Engine
=============================
Tests cover:
1. Lowest-cost price normalization (example 100 / 120 / 150)
2. Scale invariance and full weight at the minimum price
3. Notation values and sub-criterion renormalization (70/30 vs 7/3)
4. Excluded companies and blank rosters
5. Ranking, tie-break and withheld ranks on invalid weighting
6. Price scenarios, deviations and flags
"""

import pytest

from offer_analysis import lifecycle
from offer_analysis.models import CompanyStatus, CriterionRole, LotLineType, NotationLevel
from offer_analysis.scoring import (
    DeviationBand,
    PriceScenario,
    ScoringEngine,
    line_deviations,
    lowest_cost_scores,
    notation_value,
    price_deviation,
    price_scenarios,
    score_version,
)


def note(lot, company_id, criterion_id, notation, sub_id=None):
    lifecycle.set_technical_note(
        lot, lot.current_version_id, company_id, criterion_id, sub_id, notation=notation
    )


def score_of(scoring, company_id):
    return scoring.for_company(company_id)


# =============================================================================
# Price score
# =============================================================================

class TestPriceScore:
    """Lowest-cost normalization: minTotal / total x price weight"""

    def test_reference_example(self, lot, set_base_prices):
        """Base prices 100 / 120 / 150 with weight 40 give 40 / 33.33 / 26.67"""
        set_base_prices({1: 100, 2: 120, 3: 150})
        scoring = score_version(lot)

        assert scoring.price_weight == 40
        assert score_of(scoring, 1).price_score == pytest.approx(40.0)
        assert score_of(scoring, 2).price_score == pytest.approx(33.33, abs=0.01)
        assert score_of(scoring, 3).price_score == pytest.approx(26.67, abs=0.01)

    def test_scale_invariance(self, lot, set_base_prices):
        """Scaling every total by the same factor leaves every price score unchanged"""
        set_base_prices({1: 100, 2: 120, 3: 150})
        before = {r.company_id: r.price_score for r in score_version(lot).results}

        set_base_prices({1: 350, 2: 420, 3: 525})
        after = {r.company_id: r.price_score for r in score_version(lot).results}

        for company_id, value in before.items():
            assert after[company_id] == pytest.approx(value)

    def test_minimum_price_gets_full_weight(self, lot, set_base_prices):
        set_base_prices({1: 980.5, 2: 731.25, 3: 731.25})
        scoring = score_version(lot)
        assert score_of(scoring, 2).price_score == pytest.approx(40.0)
        assert score_of(scoring, 3).price_score == pytest.approx(40.0)
        assert score_of(scoring, 1).price_score < 40.0

    def test_zero_total_is_not_free(self, lot, set_base_prices):
        """A company with no price scores 0, it does not win the price criterion"""
        set_base_prices({1: 100, 2: 0})
        scoring = score_version(lot)
        assert score_of(scoring, 1).price_score == pytest.approx(40.0)
        assert score_of(scoring, 2).price_score == 0
        assert score_of(scoring, 3).price_score == 0

    def test_no_positive_total(self, lot):
        scoring = score_version(lot)
        assert all(r.price_score == 0 for r in scoring.results)

    def test_dpgf1_and_dpgf2_are_summed_with_lines(self, document, lot):
        document.update_lot_line(lot, 1, label="Gros oeuvre")
        version_id = lot.current_version_id
        lifecycle.set_price_entry(lot, version_id, 1, 0, dpgf1=50, dpgf2=25)
        lifecycle.set_price_entry(lot, version_id, 1, 1, dpgf1=25)
        lifecycle.set_price_entry(lot, version_id, 2, 0, dpgf1=200)

        scoring = score_version(lot)
        assert score_of(scoring, 1).price_total == pytest.approx(100)
        assert score_of(scoring, 2).price_score == pytest.approx(20.0)

    def test_no_price_criterion_means_zero_price_weight(self, document, lot, set_base_prices):
        document.remove_criterion(lot, "prix")
        set_base_prices({1: 100, 2: 200})
        scoring = score_version(lot)
        assert scoring.price_weight == 0
        assert all(r.price_score == 0 for r in scoring.results)

    def test_lowest_cost_scores_helper(self):
        scores = lowest_cost_scores({1: 200.0, 2: 100.0, 3: 0.0}, 30)
        assert scores == {1: pytest.approx(15.0), 2: pytest.approx(30.0), 3: 0.0}


# =============================================================================
# Technical score
# =============================================================================

class TestTechnicalScore:
    """value / 5 x weight, sub-criteria renormalized"""

    def test_notation_scale(self):
        assert [notation_value(n) for n in NotationLevel] == [1, 2, 3, 4, 5]
        assert notation_value(None) == 0

    def test_criterion_without_sub_criteria(self, lot):
        note(lot, 1, "environnemental", NotationLevel.GOOD)
        result = score_of(score_version(lot), 1)
        assert result.environmental_score == pytest.approx(8.0)
        assert result.technical_score == 0

    def test_missing_sub_notation_is_not_renormalized_away(self, lot):
        note(lot, 1, "technique", NotationLevel.VERY_GOOD, "tech_1")
        result = score_of(score_version(lot), 1)
        # 5 x 0.5 = 2.5 -> 2.5 / 5 x 40
        assert result.technical_score == pytest.approx(20.0)

    @pytest.mark.parametrize("weights", [(70, 30), (7, 3)])
    def test_sub_criteria_renormalization(self, document, lot, weights):
        """70/30 and 7/3 give the same 0.7 / 0.3 split"""
        document.update_sub_criterion(lot, "technique", "tech_1", weight=weights[0])
        document.update_sub_criterion(lot, "technique", "tech_2", weight=weights[1])
        note(lot, 1, "technique", NotationLevel.VERY_GOOD, "tech_1")
        note(lot, 1, "technique", NotationLevel.INSUFFICIENT, "tech_2")

        result = score_of(score_version(lot), 1)
        # 5 x 0.7 + 1 x 0.3 = 3.8 -> 3.8 / 5 x 40
        assert result.technical_score == pytest.approx(30.4)

    def test_zero_sub_weight_sum_scores_zero(self, document, lot):
        document.update_sub_criterion(lot, "technique", "tech_1", weight=0)
        document.update_sub_criterion(lot, "technique", "tech_2", weight=0)
        note(lot, 1, "technique", NotationLevel.VERY_GOOD, "tech_1")
        assert score_of(score_version(lot), 1).technical_score == 0

    def test_grouping_by_role(self, lot):
        note(lot, 1, "technique", NotationLevel.AVERAGE, "tech_1")
        note(lot, 1, "technique", NotationLevel.AVERAGE, "tech_2")
        note(lot, 1, "environnemental", NotationLevel.PASSABLE)
        note(lot, 1, "planning", NotationLevel.VERY_GOOD)
        result = score_of(score_version(lot), 1)

        assert result.technical_score == pytest.approx(24.0)
        assert result.environmental_score == pytest.approx(4.0)
        assert result.planning_score == pytest.approx(10.0)
        assert result.technical_total == pytest.approx(38.0)
        assert [c.role for c in result.criterion_scores] == [
            CriterionRole.GENERIC, CriterionRole.ENVIRONMENTAL, CriterionRole.PLANNING
        ]

    def test_bounded_score(self, lot, set_base_prices):
        """Fully scored companies never exceed the sum of the weights"""
        for company_id in (1, 2, 3):
            note(lot, company_id, "technique", NotationLevel.VERY_GOOD, "tech_1")
            note(lot, company_id, "technique", NotationLevel.VERY_GOOD, "tech_2")
            note(lot, company_id, "environnemental", NotationLevel.VERY_GOOD)
            note(lot, company_id, "planning", NotationLevel.VERY_GOOD)
        set_base_prices({1: 100, 2: 100, 3: 250})

        scoring = score_version(lot)
        assert score_of(scoring, 1).global_score == pytest.approx(100.0)
        for result in scoring.results:
            assert result.global_score <= scoring.max_score + 1e-9


# =============================================================================
# Exclusion and roster
# =============================================================================

class TestExclusion:

    def test_excluded_company_scores_zero(self, document, lot, set_base_prices):
        note(lot, 2, "planning", NotationLevel.VERY_GOOD)
        set_base_prices({1: 150, 2: 100, 3: 120})
        document.set_company_status(lot, 2, CompanyStatus.EXCLUDED, "Offre irrégulière")

        scoring = score_version(lot)
        excluded = score_of(scoring, 2)
        assert excluded.excluded
        assert excluded.global_score == 0
        assert excluded.price_score == 0
        assert excluded.rank is None
        assert [f.code for f in excluded.flags] == ["EXCLUDED"]
        # The minimum is taken over the remaining companies
        assert score_of(scoring, 3).price_score == pytest.approx(40.0)
        assert scoring.results[-1].company_id == 2

    def test_exclusion_keeps_stored_data(self, document, lot, set_base_prices):
        set_base_prices({2: 100})
        document.set_company_status(lot, 2, CompanyStatus.EXCLUDED)
        assert lot.current_version.find_price(2, 0).dpgf1 == 100

        document.set_company_status(lot, 2, CompanyStatus.RETAINED)
        assert score_of(score_version(lot), 2).price_score == pytest.approx(40.0)

    def test_blank_company_is_not_scored(self, document, lot):
        document.add_company(lot)
        assert {r.company_id for r in score_version(lot).results} == {1, 2, 3}


# =============================================================================
# Ranking
# =============================================================================

class TestRanking:

    def test_descending_global_score(self, lot, set_base_prices):
        set_base_prices({1: 150, 2: 100, 3: 120})
        scoring = score_version(lot)
        assert [r.company_id for r in scoring.results] == [2, 3, 1]
        assert [r.rank for r in scoring.results] == [1, 2, 3]

    def test_ties_broken_by_company_id(self, lot, set_base_prices):
        set_base_prices({3: 100, 1: 100, 2: 100})
        scoring = score_version(lot)
        assert [r.company_id for r in scoring.results] == [1, 2, 3]
        assert [r.rank for r in scoring.results] == [1, 2, 3]

    def test_invalid_weighting_withholds_ranks(self, document, lot, set_base_prices):
        document.update_criterion_weight(lot, "prix", 30)
        set_base_prices({1: 100, 2: 120})
        scoring = score_version(lot)

        assert not scoring.weighting_valid
        assert scoring.weighting_total == 90
        assert [f.code for f in scoring.flags] == ["WEIGHTING_INVALID"]
        assert all(r.rank is None for r in scoring.results)
        # Scores are still reported
        assert score_of(scoring, 1).price_score == pytest.approx(30.0)

    def test_scoring_does_not_mutate(self, document, lot, set_base_prices):
        set_base_prices({1: 100, 2: 120})
        note(lot, 1, "planning", NotationLevel.GOOD)
        before = document.to_document()
        first = score_version(lot).model_dump()
        second = score_version(lot).model_dump()
        assert document.to_document() == before
        assert first == second


# =============================================================================
# Scenarios, deviations and flags
# =============================================================================

@pytest.fixture
def lined_lot(document, lot):
    """Lines: 1 untyped, 2 PSE, 3 VARIANTE"""
    document.update_lot_line(lot, 1, label="Tranche ferme")
    document.update_lot_line(lot, 2, label="PSE 1", type=LotLineType.PSE)
    document.update_lot_line(lot, 3, label="Variante 1", type=LotLineType.VARIANTE)
    version_id = lot.current_version_id
    for company_id, amounts in {1: (100, 10, 30), 2: (90, 40, 5)}.items():
        for line_id, amount in zip((1, 2, 3), amounts):
            lifecycle.set_price_entry(lot, version_id, company_id, line_id, dpgf1=amount)
    return lot


class TestPriceScenarios:

    @staticmethod
    def totals_by_label(lot):
        return {s.label: {e.company_id: e.total for e in s.entries} for s in price_scenarios(lot)}

    def test_scenario_totals(self, lined_lot):
        totals = self.totals_by_label(lined_lot)
        assert list(totals) == [
            "Total (toutes lignes)",
            "Tranche Ferme (Base seule)",
            "Base + PSE 1",
            "Base + Variante 1",
        ]
        assert totals["Total (toutes lignes)"] == {1: 140, 2: 135, 3: 0}
        assert totals["Tranche Ferme (Base seule)"] == {1: 100, 2: 90, 3: 0}
        assert totals["Base + PSE 1"] == {1: 110, 2: 130, 3: 0}
        assert totals["Base + Variante 1"] == {1: 130, 2: 95, 3: 0}

    def test_option_scenarios_are_keyed_by_line(self, lined_lot):
        options = [s for s in price_scenarios(lined_lot) if s.scenario == PriceScenario.OPTION]
        assert [s.option_line_id for s in options] == [2, 3]
        assert all(s.option_line_id is None for s in price_scenarios(lined_lot)[:2])

    def test_each_option_is_compared_on_its_own(self, document, lot):
        document.update_lot_line(lot, 1, label="Base")
        document.update_lot_line(lot, 2, label="PSE A", type=LotLineType.PSE)
        document.update_lot_line(lot, 3, label="PSE B", type=LotLineType.PSE)
        version_id = lot.current_version_id
        for company_id, amounts in {1: (100, 10, 50), 2: (100, 40, 5)}.items():
            for line_id, amount in zip((1, 2, 3), amounts):
                lifecycle.set_price_entry(lot, version_id, company_id, line_id, dpgf1=amount)

        by_line = {s.option_line_id: s for s in price_scenarios(lot) if s.scenario == PriceScenario.OPTION}
        pse_a = {e.company_id: e for e in by_line[2].entries}
        pse_b = {e.company_id: e for e in by_line[3].entries}
        assert (pse_a[1].total, pse_a[2].total) == (110, 140)
        assert (pse_b[1].total, pse_b[2].total) == (150, 105)
        # Full weight goes to a different company in each comparison
        assert pse_a[1].score == pytest.approx(40.0)
        assert pse_b[2].score == pytest.approx(40.0)
        assert by_line[2].min_total == 110
        assert by_line[3].min_total == 105

    def test_engine_scenario_drives_ranking(self, lined_lot):
        pse = ScoringEngine(PriceScenario.OPTION, option_line_id=2).score(lined_lot)
        assert pse.option_line_id == 2
        assert pse.results[0].company_id == 1
        assert pse.results[0].price_total == 110
        assert ScoringEngine(PriceScenario.TOTAL).score(lined_lot).results[0].company_id == 2

    def test_option_scenario_needs_a_line(self):
        with pytest.raises(ValueError):
            ScoringEngine(PriceScenario.OPTION)

    def test_blank_lines_are_ignored(self, document, lined_lot):
        # Line 4 was opened by the cascade but has no label
        lifecycle.set_price_entry(lined_lot, lined_lot.current_version_id, 1, 4, dpgf1=1000)
        scenario = price_scenarios(lined_lot)[0]
        assert {e.company_id: e.total for e in scenario.entries}[1] == 140


class TestDeviation:

    @pytest.mark.parametrize("offered, band", [
        (110, DeviationBand.LOW),
        (90, DeviationBand.LOW),
        (120, DeviationBand.MEDIUM),
        (80, DeviationBand.MEDIUM),
        (121, DeviationBand.HIGH),
        (70, DeviationBand.HIGH),
    ])
    def test_bands(self, offered, band):
        assert price_deviation(offered, 100).band == band

    def test_ratio(self):
        deviation = price_deviation(125, 100)
        assert deviation.ratio == pytest.approx(0.25)
        assert deviation.percent == pytest.approx(25.0)

    @pytest.mark.parametrize("offered, estimate", [(100, 0), (0, 100)])
    def test_undefined(self, offered, estimate):
        assert price_deviation(offered, estimate) is None

    def test_line_deviation_single_estimate(self, document, lined_lot):
        document.update_lot_line(lined_lot, 1, estimation_dpgf1=80)
        deviations = {(d.company_id, d.lot_line_id): d for d in line_deviations(lined_lot)}
        assert deviations[(1, 1)].deviation.ratio == pytest.approx(0.25)
        assert deviations[(1, 2)].deviation is None
        assert deviations[(3, 1)].deviation is None

    def test_line_deviation_dual_estimate(self, document, lined_lot):
        lined_lot.has_dual_dpgf = True
        document.update_lot_line(lined_lot, 1, estimation_dpgf1=60, estimation_dpgf2=40)
        lifecycle.set_price_entry(lined_lot, lined_lot.current_version_id, 1, 1, dpgf2=20)
        deviation = next(
            d for d in line_deviations(lined_lot) if d.company_id == 1 and d.lot_line_id == 1
        ).deviation
        # (100 + 20) vs (60 + 40)
        assert deviation.ratio == pytest.approx(0.20)
        assert deviation.band == DeviationBand.MEDIUM


class TestFlags:

    def codes(self, scoring, company_id):
        return [f.code for f in scoring.for_company(company_id).flags]

    def test_missing_price_and_notes(self, lot, set_base_prices):
        set_base_prices({1: 100})
        scoring = score_version(lot)
        assert "MISSING_PRICE" in self.codes(scoring, 2)
        assert "MISSING_PRICE" not in self.codes(scoring, 1)
        assert "INCOMPLETE_NOTES" in self.codes(scoring, 1)

    def test_complete_notes_have_no_flag(self, lot, set_base_prices):
        note(lot, 1, "technique", NotationLevel.GOOD, "tech_1")
        note(lot, 1, "technique", NotationLevel.GOOD, "tech_2")
        note(lot, 1, "environnemental", NotationLevel.GOOD)
        note(lot, 1, "planning", NotationLevel.GOOD)
        set_base_prices({1: 100})
        assert "INCOMPLETE_NOTES" not in self.codes(score_version(lot), 1)

    def test_out_of_tolerance(self, lot, set_base_prices):
        lot.estimation_dpgf1 = 100
        set_base_prices({1: 115, 2: 150})
        scoring = score_version(lot)
        assert "OUT_OF_TOLERANCE" not in self.codes(scoring, 1)
        assert "OUT_OF_TOLERANCE" in self.codes(scoring, 2)

    def test_best_offer(self, lot, set_base_prices):
        set_base_prices({1: 120, 2: 100})
        scoring = score_version(lot)
        assert "BEST_OFFER" in self.codes(scoring, 2)
        assert "BEST_OFFER" not in self.codes(scoring, 1)

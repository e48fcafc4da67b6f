# =============================================================================
# test_simulation.py — Unit tests for the Monte Carlo simulation engine
#
# These tests verify that:
#   1. Each pipeline type (new business, renewal, expansion) produces
#      statistically sensible outcomes
#   2. Percentiles, quota probability and the histogram are computed correctly
#   3. Degenerate inputs and deadlines fail loudly
#   4. Seeded runs are reproducible, serial or parallel
#
# RUN TESTS:
#   pip install -e ".[test]" && pytest tests/ -v
#
# WHY TEST MONTE CARLO?
#   With random simulations we can't assert exact values, but we CAN assert
#   properties that hold over many runs (bounds, ordering, convergence) and we
#   can fix the seed so a run is repeatable.
# =============================================================================

import sys
import os
import math
import time
import pytest
from datetime import date, timedelta

# Add the api/ directory to the Python path so we can import our modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import numpy as np
from models import (
    BetaDistribution,
    DealRiskAdjustment,
    ExpansionRate,
    FittedDistributions,
    LogNormalDistribution,
    NormalDistribution,
    OpenDeal,
    PipelineRateDistribution,
    SimulationInputs,
    UpcomingRenewal,
)
from sampling import RandomSource
from simulation import (
    SimulationInputError,
    SimulationTimeoutError,
    build_data_quality_report,
    build_histogram,
    format_currency,
    run_iteration,
    run_simulation,
)

TODAY = date(2026, 1, 1)
WINDOW_END = TODAY + timedelta(days=90)


# ─── Test Fixtures ─────────────────────────────────────────────────────────────

def make_distributions(**overrides):
    fields = dict(
        deal_size=LogNormalDistribution(mu=math.log(50_000), sigma=1.0),
        cycle_length=LogNormalDistribution(mu=math.log(60), sigma=0.0),
        stage_win_rates={"proposal": BetaDistribution(alpha=5, beta=5)},
        # Zero slippage: a deal closing on the window end still counts.
        slippage={"proposal": NormalDistribution(mean=0, sigma=0)},
    )
    fields.update(overrides)
    return FittedDistributions(**fields)


def make_inputs(**overrides):
    fields = dict(
        open_deals=[],
        distributions=make_distributions(),
        forecast_window_end=WINDOW_END,
        today=TODAY,
        iterations=2_000,
    )
    fields.update(overrides)
    return SimulationInputs(**fields)


@pytest.fixture
def three_deals():
    """Three $100K proposals closing inside the window."""
    return [
        OpenDeal(id=f"d{i}", name=f"Deal {i}", amount=100_000, stage_normalized="proposal",
                 close_date=WINDOW_END, owner_email="rep@example.com")
        for i in range(3)
    ]


@pytest.fixture
def existing_inputs(three_deals):
    return make_inputs(open_deals=three_deals, iterations=5_000)


@pytest.fixture
def renewal_inputs():
    renewals = [
        UpcomingRenewal(deal_id=f"r{i}", name=f"Renewal {i}", contract_value=50_000,
                        expected_close_date=TODAY + timedelta(days=45), owner="am@example.com")
        for i in range(2)
    ]
    return make_inputs(
        pipeline_type="renewal",
        upcoming_renewals=renewals,
        distributions=make_distributions(
            deal_size=LogNormalDistribution(mu=math.log(50_000), sigma=2.0),
            stage_win_rates={"renewal": BetaDistribution(alpha=9, beta=1)},
        ),
        iterations=5_000,
    )


# ─── Test: Existing Pipeline ──────────────────────────────────────────────────

class TestExistingPipeline:

    def test_mean_converges_to_expected_value(self, existing_inputs):
        """
        Beta(5, 5) wins half the time; the amount multiplier is LogNormal(0, 0.3)
        clipped to [0.5, 2], mean ~1.046. Three $100K deals → ~$157K.
        """
        outputs = run_simulation(existing_inputs, rng=RandomSource(11))
        assert 140_000 < outputs.mean < 175_000, f"mean {outputs.mean:.0f} outside expected range"

    def test_p50_near_half_the_pipeline(self, existing_inputs):
        outputs = run_simulation(existing_inputs, rng=RandomSource(13))
        assert 135_000 <= outputs.existing_pipeline_p50 <= 165_000, (
            f"existing p50 {outputs.existing_pipeline_p50:.0f} outside expected range"
        )

    def test_outcomes_bounded_by_clip(self, existing_inputs):
        """A won deal contributes between 0.5× and 2× its amount."""
        outputs = run_simulation(existing_inputs, rng=RandomSource(3))
        assert min(outputs.iteration_results) >= 0
        assert max(outputs.iteration_results) <= 3 * 200_000 + 0.01

    def test_projected_is_zero_without_creation_rates(self, existing_inputs):
        outputs = run_simulation(existing_inputs, rng=RandomSource(5))
        assert outputs.existing_pipeline_p50 == outputs.p50
        assert outputs.projected_pipeline_p50 == 0

    def test_deal_closing_after_window_never_counts(self):
        late = OpenDeal(id="late", amount=500_000, stage_normalized="proposal",
                        close_date=WINDOW_END + timedelta(days=30))
        outputs = run_simulation(make_inputs(open_deals=[late]), rng=RandomSource(1))
        assert all(v == 0 for v in outputs.iteration_results)

    def test_zero_risk_multiplier_floor_still_wins_sometimes(self, three_deals):
        """Win probability is clamped to [0.05, 0.95] whatever the multiplier."""
        adjustments = {d.id: DealRiskAdjustment(deal_id=d.id, multiplier=0.05) for d in three_deals}
        outputs = run_simulation(
            make_inputs(open_deals=three_deals, risk_adjustments=adjustments, iterations=5_000),
            rng=RandomSource(9),
        )
        assert outputs.mean > 0
        assert outputs.mean < 50_000

    def test_unknown_stage_uses_prior(self):
        deal = OpenDeal(id="x", amount=100_000, stage_normalized="discovery", close_date=TODAY)
        existing, projected, record = run_iteration(make_inputs(open_deals=[deal]), RandomSource(2))
        assert existing >= 0
        assert projected == 0
        assert record.total == existing


# ─── Test: Projected Pipeline ─────────────────────────────────────────────────

class TestProjectedPipeline:

    def test_renewal_p50_near_contract_values(self, renewal_inputs):
        """Both renewals renew ~81% of the time; P50 sits just under $100K."""
        outputs = run_simulation(renewal_inputs, rng=RandomSource(21))
        assert 85_000 <= outputs.p50 <= 108_000, f"p50 {outputs.p50:.0f} outside expected range"
        assert outputs.existing_pipeline_p50 == 0

    def test_renewal_outside_window_skipped(self, renewal_inputs):
        late = [r.model_copy(update={"expected_close_date": WINDOW_END + timedelta(days=1)})
                for r in renewal_inputs.upcoming_renewals]
        outputs = run_simulation(renewal_inputs.model_copy(update={"upcoming_renewals": late, "iterations": 500}),
                                 rng=RandomSource(4))
        assert outputs.p90 == 0

    def test_renewal_revenue_attributed_to_owner(self, renewal_inputs):
        inputs = renewal_inputs.model_copy(update={"iterations": 200, "store_iterations": True})
        outputs = run_simulation(inputs, rng=RandomSource(8))
        assert any("am@example.com" in rec.by_rep for rec in outputs.iterations)

    def test_expansion_mean(self):
        """$1M ARR × 15% × full window × Beta(6, 4) win rate → ~$90K."""
        inputs = make_inputs(
            pipeline_type="expansion",
            customer_base_arr=1_000_000,
            expansion_rate=ExpansionRate(mean=0.15, sigma=0.0),
            distributions=make_distributions(stage_win_rates={"expansion": BetaDistribution(alpha=6, beta=4)}),
        )
        outputs = run_simulation(inputs, rng=RandomSource(17))
        assert 85_000 < outputs.mean < 95_000, f"mean {outputs.mean:.0f} outside expected range"
        assert outputs.p90 <= 150_000

    def test_new_business_creation(self):
        """
        4 deals/month for 3 months, 20-day cycle: ~9.3 can close in the window,
        25% win at $10K each → ~$23K.
        """
        inputs = make_inputs(
            distributions=make_distributions(
                deal_size=LogNormalDistribution(mu=math.log(10_000), sigma=0.0),
                cycle_length=LogNormalDistribution(mu=math.log(20), sigma=0.0),
                pipeline_rates={"ae@example.com": PipelineRateDistribution(mean=4, sigma=0)},
            ),
            store_iterations=True,
        )
        outputs = run_simulation(inputs, rng=RandomSource(23))
        assert 20_000 < outputs.mean < 27_000, f"mean {outputs.mean:.0f} outside expected range"
        assert all(rec.new_deals_created <= 12 for rec in outputs.iterations)
        assert all(rec.existing == 0 for rec in outputs.iterations)

    def test_ramp_factor_zero_creates_nothing(self):
        inputs = make_inputs(
            distributions=make_distributions(
                pipeline_rates={"new@example.com": PipelineRateDistribution(mean=4, sigma=0, ramp_factor=0)},
            ),
            iterations=300,
        )
        outputs = run_simulation(inputs, rng=RandomSource(6))
        assert outputs.p90 == 0


# ─── Test: Aggregation ────────────────────────────────────────────────────────

class TestAggregation:

    def test_percentiles_are_ordered(self, existing_inputs):
        outputs = run_simulation(existing_inputs, rng=RandomSource(1))
        assert outputs.p10 <= outputs.p25 <= outputs.p50 <= outputs.p75 <= outputs.p90, (
            f"Percentiles not ordered: p10={outputs.p10}, p25={outputs.p25}, "
            f"p50={outputs.p50}, p75={outputs.p75}, p90={outputs.p90}"
        )

    def test_results_sorted_and_complete(self, existing_inputs):
        outputs = run_simulation(existing_inputs, rng=RandomSource(2))
        assert len(outputs.iteration_results) == existing_inputs.iterations
        assert outputs.iteration_results == sorted(outputs.iteration_results)

    def test_percentile_is_floor_index(self, existing_inputs):
        outputs = run_simulation(existing_inputs, rng=RandomSource(2))
        n = len(outputs.iteration_results)
        assert outputs.p90 == outputs.iteration_results[int(0.9 * n)]
        assert outputs.p10 == outputs.iteration_results[int(0.1 * n)]

    def test_store_iterations(self, existing_inputs):
        stored = run_simulation(existing_inputs.model_copy(update={"store_iterations": True, "iterations": 300}),
                                rng=RandomSource(3))
        assert len(stored.iterations) == 300
        for rec in stored.iterations:
            assert abs(rec.total - (rec.existing + rec.projected)) < 1e-6
            assert len(rec.deals_won) <= 3

        plain = run_simulation(existing_inputs.model_copy(update={"iterations": 300}), rng=RandomSource(3))
        assert plain.iterations is None

    def test_quota_probability(self, existing_inputs):
        outputs = run_simulation(existing_inputs, quota=1e12, rng=RandomSource(4))
        assert outputs.prob_of_hitting_target == 0.0
        assert run_simulation(existing_inputs, rng=RandomSource(4)).prob_of_hitting_target is None

    def test_quota_probability_decreases_with_quota(self, existing_inputs):
        low = run_simulation(existing_inputs, quota=50_000, rng=RandomSource(5))
        high = run_simulation(existing_inputs, quota=250_000, rng=RandomSource(5))
        assert 0 <= high.prob_of_hitting_target <= low.prob_of_hitting_target <= 1

    def test_seeded_runs_reproducible(self, existing_inputs):
        a = run_simulation(existing_inputs, rng=RandomSource(42))
        b = run_simulation(existing_inputs, rng=RandomSource(42))
        c = run_simulation(existing_inputs, rng=RandomSource(43))
        assert a.iteration_results == b.iteration_results
        assert a.iteration_results != c.iteration_results

    def test_parallel_run_matches_shape_and_reproduces(self, existing_inputs):
        a = run_simulation(existing_inputs, rng=RandomSource(7), workers=2)
        b = run_simulation(existing_inputs, rng=RandomSource(7), workers=2)
        assert len(a.iteration_results) == existing_inputs.iterations
        assert a.iteration_results == b.iteration_results
        assert 140_000 < a.mean < 175_000


# ─── Test: Input Validation ───────────────────────────────────────────────────

class TestInputValidation:

    def test_no_revenue_sources_rejected(self):
        with pytest.raises(SimulationInputError):
            run_simulation(make_inputs())

    def test_renewal_mode_without_renewals_rejected(self):
        with pytest.raises(SimulationInputError):
            run_simulation(make_inputs(pipeline_type="renewal"))

    def test_expansion_mode_without_arr_rejected(self):
        with pytest.raises(SimulationInputError):
            run_simulation(make_inputs(pipeline_type="expansion"))

    def test_window_before_today_rejected(self, three_deals):
        with pytest.raises(SimulationInputError):
            run_simulation(make_inputs(open_deals=three_deals, forecast_window_end=TODAY - timedelta(days=1)))

    def test_zero_iterations_rejected(self, three_deals):
        with pytest.raises(SimulationInputError):
            run_simulation(make_inputs(open_deals=three_deals, iterations=0))

    def test_input_error_is_value_error(self):
        assert issubclass(SimulationInputError, ValueError)

    def test_deadline_exceeded(self, existing_inputs):
        with pytest.raises(SimulationTimeoutError):
            run_simulation(existing_inputs, rng=RandomSource(1), deadline_seconds=-1)

    def test_shared_absolute_deadline(self, existing_inputs):
        with pytest.raises(SimulationTimeoutError):
            run_simulation(existing_inputs, rng=RandomSource(1), deadline_at=time.time() - 1)
        # An absolute deadline wins over a relative one.
        with pytest.raises(SimulationTimeoutError):
            run_simulation(existing_inputs, rng=RandomSource(1), deadline_seconds=600, deadline_at=time.time() - 1)


# ─── Test: Data Quality ───────────────────────────────────────────────────────

class TestDataQuality:

    def test_thin_history_is_tier_one(self):
        report = build_data_quality_report(make_distributions(), closed_deals_used_for_fitting=5)
        assert report.tier == 1
        assert "deal_size" in report.unreliable_distributions
        assert "stage_win_rates" in report.unreliable_distributions
        assert any("slippage" in w for w in report.warnings)

    def test_reliable_history_is_tier_two(self):
        distributions = make_distributions(
            deal_size=LogNormalDistribution(mu=10, sigma=0.5, is_reliable=True, sample_size=80),
            cycle_length=LogNormalDistribution(mu=4, sigma=0.5, is_reliable=True, sample_size=80),
            stage_win_rates={
                "proposal": BetaDistribution(alpha=20, beta=30, is_reliable=True),
                "negotiation": BetaDistribution(alpha=30, beta=20, is_reliable=True),
            },
            slippage={
                "proposal": NormalDistribution(mean=10, sigma=5, is_reliable=True),
                "negotiation": NormalDistribution(mean=5, sigma=5, is_reliable=True),
            },
        )
        report = build_data_quality_report(distributions, closed_deals_used_for_fitting=120)
        assert report.tier == 2
        assert report.unreliable_distributions == []
        assert report.warnings == []
        assert set(report.reliable_distributions) == {"deal_size", "cycle_length", "stage_win_rates", "slippage"}

    def test_report_attached_to_outputs(self, existing_inputs):
        outputs = run_simulation(existing_inputs.model_copy(update={"closed_deals_used_for_fitting": 50}),
                                 rng=RandomSource(1))
        assert outputs.closed_deals_used_for_fitting == 50
        assert outputs.data_quality.tier == 2


# ─── Test: Histogram ──────────────────────────────────────────────────────────

class TestHistogram:

    @pytest.mark.parametrize("buckets", [1, 7, 100])
    def test_histogram_counts_sum_to_results(self, existing_inputs, buckets):
        outputs = run_simulation(existing_inputs, rng=RandomSource(12))
        histogram = build_histogram(outputs.iteration_results, buckets)
        assert len(histogram) == buckets
        assert sum(b.count for b in histogram) == len(outputs.iteration_results)
        assert abs(sum(b.frequency for b in histogram) - 1.0) < 0.001

    def test_histogram_spans_min_to_max(self):
        values = sorted(np.linspace(0, 1_000_000, 1_001).tolist())
        histogram = build_histogram(values, 10)
        assert histogram[0].bucket_min == 0
        assert histogram[-1].bucket_max == 1_000_000
        # The maximum lands in the last bucket.
        assert histogram[-1].count == 101

    def test_identical_values_single_bucket(self):
        histogram = build_histogram([5_000.0] * 40, 4)
        assert histogram[0].count == 40
        assert sum(b.count for b in histogram) == 40

    def test_empty_results(self):
        assert build_histogram([], 10) == []

    def test_invalid_bucket_count(self):
        with pytest.raises(ValueError):
            build_histogram([1.0, 2.0], 0)

    def test_labels(self):
        histogram = build_histogram([0.0, 2_000_000.0], 2)
        assert histogram[0].label == "$0 – $1.0M"
        assert format_currency(850_000) == "$850K"
        assert format_currency(120) == "$120"

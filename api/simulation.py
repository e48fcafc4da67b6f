# =============================================================================
# simulation.py — Monte Carlo revenue simulation engine
#
# This is the mathematical core of the service. One iteration plays out a
# single possible future:
#
#   A. EXISTING PIPELINE — every open deal draws a win probability from the
#      Beta fitted to its stage, scaled by its risk multiplier. Winners may
#      slip past the forecast window; those that land in time contribute a
#      noisy version of their CRM amount.
#   B. PROJECTED PIPELINE — depends on the pipeline type:
#        renewal      → upcoming renewals renew (or don't) at fitted rates
#        expansion    → customer-base ARR × expansion rate × time-in-window
#        new_business → reps create new deals month by month; some close
#                       inside the window
#
# run_simulation repeats that thousands of times (optionally across a process
# pool), sorts the outcomes and reads percentiles off the sorted array.
#
# run_iteration is a pure function of (inputs, random source): no globals, no
# shared mutable state, so chunks of iterations can run on any worker.
# =============================================================================

import math
import time
from concurrent.futures import ProcessPoolExecutor
from datetime import date
from typing import Dict, List, Optional, Tuple

import numpy as np
import structlog

from config import settings
from models import (
    DataQualityReport,
    FittedDistributions,
    HistogramBucket,
    IterationRecord,
    SimulationInputs,
    SimulationOutputs,
)
from sampling import (
    RandomSource,
    resolve_random_source,
    sample_bernoulli,
    sample_beta,
    sample_log_normal,
    sample_normal,
)

logger = structlog.get_logger(__name__)

# ─── Fallbacks for stages / modes without fitted data ─────────────────────────
DEFAULT_STAGE_WIN_PRIOR = (2.0, 6.0)
DEFAULT_RENEWAL_WIN_PRIOR = (7.0, 3.0)
DEFAULT_EXPANSION_WIN_PRIOR = (6.0, 4.0)
NEW_DEAL_WIN_PRIOR = (2.0, 6.0)
DEFAULT_SLIPPAGE_MEAN_DAYS = 14.0
DEFAULT_SLIPPAGE_SIGMA_DAYS = 21.0
DEFAULT_EXPANSION_RATE_MEAN = 0.15
DEFAULT_EXPANSION_RATE_SIGMA = 0.08

WIN_PROBABILITY_FLOOR = 0.05
WIN_PROBABILITY_CEILING = 0.95
AMOUNT_CLIP_LOW = 0.5
AMOUNT_CLIP_HIGH = 2.0
EXISTING_AMOUNT_SIGMA_SCALE = 0.3
RENEWAL_AMOUNT_SIGMA_SCALE = 0.15
EXPANSION_CYCLE_SCALE = 0.7
MIN_CYCLE_DAYS = 14.0
MIN_NEW_DEAL_AMOUNT = 1_000.0
DAYS_PER_MONTH = 30.0

# How often (in iterations) a chunk checks its deadline.
DEADLINE_CHECK_INTERVAL = 250


class SimulationInputError(ValueError):
    """The inputs cannot produce a meaningful distribution."""


class SimulationTimeoutError(TimeoutError):
    """The run exceeded its wall-clock deadline."""


# ─── Input Validation ─────────────────────────────────────────────────────────

def has_revenue_sources(inputs: SimulationInputs) -> bool:
    """True when there is at least one thing that could produce revenue."""
    if inputs.open_deals:
        return True
    if inputs.pipeline_type == "renewal":
        return bool(inputs.upcoming_renewals)
    if inputs.pipeline_type == "expansion":
        return inputs.customer_base_arr > 0
    return bool(inputs.distributions.pipeline_rates)


def validate_simulation_inputs(inputs: SimulationInputs) -> None:
    if inputs.iterations < 1:
        raise SimulationInputError(f"iterations must be at least 1, got {inputs.iterations}")
    if inputs.forecast_window_end < inputs.today:
        raise SimulationInputError(
            f"forecast window ends {inputs.forecast_window_end} before today ({inputs.today})"
        )
    if not has_revenue_sources(inputs):
        raise SimulationInputError(
            f"nothing to simulate for pipeline type '{inputs.pipeline_type}': no open deals and no "
            + {
                "renewal": "upcoming renewals",
                "expansion": "customer-base ARR",
                "new_business": "pipeline creation rates",
            }[inputs.pipeline_type]
        )


# ─── One Iteration ────────────────────────────────────────────────────────────

def _days_between(start: date, end: date) -> float:
    return float(max(0, (end - start).days))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def run_iteration(
    inputs: SimulationInputs,
    rng: RandomSource,
) -> Tuple[float, float, IterationRecord]:
    """
    Play out one possible future.

    Returns (existing_revenue, projected_revenue, record).
    """
    distributions = inputs.distributions
    window_end = inputs.forecast_window_end
    days_remaining = _days_between(inputs.today, window_end)
    months_remaining = days_remaining / DAYS_PER_MONTH

    existing_revenue = 0.0
    projected_revenue = 0.0
    deals_won: List[str] = []
    by_rep: Dict[str, float] = {}
    new_deals_created = 0

    # ── A: existing pipeline ──
    amount_sigma = distributions.deal_size.sigma * EXISTING_AMOUNT_SIGMA_SCALE
    for deal in inputs.open_deals:
        stage_dist = distributions.stage_win_rates.get(deal.stage_normalized)
        if stage_dist is not None:
            base_win_rate = sample_beta(rng, stage_dist.alpha, stage_dist.beta)
        else:
            base_win_rate = sample_beta(rng, *DEFAULT_STAGE_WIN_PRIOR)

        adjustment = inputs.risk_adjustments.get(deal.id)
        multiplier = adjustment.multiplier if adjustment is not None else 1.0
        win_rate = max(WIN_PROBABILITY_FLOOR, min(WIN_PROBABILITY_CEILING, base_win_rate * multiplier))
        if not sample_bernoulli(rng, win_rate):
            continue

        slippage_dist = distributions.slippage.get(deal.stage_normalized)
        if slippage_dist is not None:
            slippage_days = sample_normal(rng, slippage_dist.mean, slippage_dist.sigma)
        else:
            slippage_days = sample_normal(rng, DEFAULT_SLIPPAGE_MEAN_DAYS, DEFAULT_SLIPPAGE_SIGMA_DAYS)
        # Positive means the simulated close lands after the window.
        if (deal.close_date - window_end).days + slippage_days > 0:
            continue

        amount_multiplier = sample_log_normal(rng, 0.0, amount_sigma)
        amount = max(
            deal.amount * AMOUNT_CLIP_LOW,
            min(deal.amount * AMOUNT_CLIP_HIGH, deal.amount * amount_multiplier),
        )
        existing_revenue += amount
        deals_won.append(deal.id)

    # ── B: projected pipeline ──
    if inputs.pipeline_type == "renewal":
        renewal_dist = distributions.stage_win_rates.get("renewal")
        renewal_sigma = distributions.deal_size.sigma * RENEWAL_AMOUNT_SIGMA_SCALE
        for renewal in inputs.upcoming_renewals:
            if renewal.expected_close_date > window_end:
                continue
            if renewal_dist is not None:
                win_rate = sample_beta(rng, renewal_dist.alpha, renewal_dist.beta)
            else:
                win_rate = sample_beta(rng, *DEFAULT_RENEWAL_WIN_PRIOR)
            if not sample_bernoulli(rng, win_rate):
                continue

            amount = sample_log_normal(rng, math.log(renewal.contract_value), renewal_sigma)
            projected_revenue += amount
            new_deals_created += 1
            if renewal.owner:
                by_rep[renewal.owner] = by_rep.get(renewal.owner, 0.0) + amount

    elif inputs.pipeline_type == "expansion":
        if inputs.customer_base_arr > 0:
            rate_mean = inputs.expansion_rate.mean if inputs.expansion_rate else DEFAULT_EXPANSION_RATE_MEAN
            rate_sigma = inputs.expansion_rate.sigma if inputs.expansion_rate else DEFAULT_EXPANSION_RATE_SIGMA
            expansion_rate = max(0.0, sample_normal(rng, rate_mean, rate_sigma))

            cycle_days = max(
                MIN_CYCLE_DAYS,
                sample_log_normal(rng, distributions.cycle_length.mu, distributions.cycle_length.sigma),
            )
            cycle_months = cycle_days * EXPANSION_CYCLE_SCALE / DAYS_PER_MONTH
            window_fraction = min(1.0, months_remaining / cycle_months)

            expansion_dist = distributions.stage_win_rates.get("expansion")
            if expansion_dist is not None:
                win_rate = sample_beta(rng, expansion_dist.alpha, expansion_dist.beta)
            else:
                win_rate = sample_beta(rng, *DEFAULT_EXPANSION_WIN_PRIOR)

            projected_revenue += inputs.customer_base_arr * expansion_rate * window_fraction * win_rate

    else:
        cycle = distributions.cycle_length
        deal_size = distributions.deal_size
        for rep, rate in distributions.pipeline_rates.items():
            rep_revenue = 0.0
            for month in range(math.ceil(months_remaining)):
                month_fraction = min(1.0, months_remaining - month)
                deals_this_month = max(
                    0,
                    round_half_up(
                        sample_normal(rng, rate.mean * rate.ramp_factor * month_fraction, rate.sigma * 0.5)
                    ),
                )
                for _ in range(deals_this_month):
                    cycle_days = max(MIN_CYCLE_DAYS, sample_log_normal(rng, cycle.mu, cycle.sigma))
                    created_day = month * DAYS_PER_MONTH + rng.uniform() * DAYS_PER_MONTH
                    if created_day + cycle_days > days_remaining:
                        continue
                    # Not-yet-created pipeline converts at a fixed prior, not a fitted stage rate.
                    if not sample_bernoulli(rng, sample_beta(rng, *NEW_DEAL_WIN_PRIOR)):
                        continue

                    amount = max(MIN_NEW_DEAL_AMOUNT, sample_log_normal(rng, deal_size.mu, deal_size.sigma))
                    rep_revenue += amount
                    projected_revenue += amount
                    new_deals_created += 1
            if rep_revenue > 0:
                by_rep[rep] = rep_revenue

    record = IterationRecord(
        total=existing_revenue + projected_revenue,
        existing=existing_revenue,
        projected=projected_revenue,
        deals_won=deals_won,
        new_deals_created=new_deals_created,
        by_rep=by_rep,
    )
    return existing_revenue, projected_revenue, record


# ─── Chunked Execution ────────────────────────────────────────────────────────

def _run_chunk(
    inputs: SimulationInputs,
    count: int,
    rng: RandomSource,
    deadline_at: Optional[float],
) -> Tuple[List[float], List[float], List[IterationRecord]]:
    """Run `count` iterations on one stream. Module-level so worker processes can pickle it."""
    totals: List[float] = []
    existing: List[float] = []
    records: List[IterationRecord] = []
    for i in range(count):
        if deadline_at is not None and i % DEADLINE_CHECK_INTERVAL == 0 and time.time() > deadline_at:
            raise SimulationTimeoutError(f"simulation deadline exceeded after {i} of {count} iterations in chunk")
        existing_revenue, projected_revenue, record = run_iteration(inputs, rng)
        totals.append(existing_revenue + projected_revenue)
        existing.append(existing_revenue)
        if inputs.store_iterations:
            records.append(record)
    return totals, existing, records


def _split_iterations(iterations: int, workers: int) -> List[int]:
    base, extra = divmod(iterations, workers)
    return [base + (1 if i < extra else 0) for i in range(workers) if base + (1 if i < extra else 0) > 0]


def _run_parallel(
    inputs: SimulationInputs,
    rng: RandomSource,
    workers: int,
    deadline_at: Optional[float],
) -> Tuple[List[float], List[float], List[IterationRecord]]:
    chunks = _split_iterations(inputs.iterations, workers)
    children = rng.spawn(len(chunks))
    totals: List[float] = []
    existing: List[float] = []
    records: List[IterationRecord] = []
    with ProcessPoolExecutor(max_workers=len(chunks)) as executor:
        futures = [
            executor.submit(_run_chunk, inputs, count, child, deadline_at)
            for count, child in zip(chunks, children)
        ]
        # Concatenate in submission order so a seeded run is reproducible.
        for future in futures:
            chunk_totals, chunk_existing, chunk_records = future.result()
            totals.extend(chunk_totals)
            existing.extend(chunk_existing)
            records.extend(chunk_records)
    return totals, existing, records


# ─── Aggregation ──────────────────────────────────────────────────────────────

def build_data_quality_report(
    distributions: FittedDistributions,
    closed_deals_used_for_fitting: int = 0,
) -> DataQualityReport:
    threshold = settings.reliable_sample_size
    reliable: List[str] = []
    unreliable: List[str] = []
    warnings: List[str] = []

    if distributions.deal_size.is_reliable:
        reliable.append("deal_size")
    else:
        unreliable.append("deal_size")
        warnings.append(f"Deal size distribution based on fewer than {threshold} closed-won deals.")

    if distributions.cycle_length.is_reliable:
        reliable.append("cycle_length")
    else:
        unreliable.append("cycle_length")
        warnings.append(f"Sales cycle distribution based on fewer than {threshold} closed deals.")

    reliable_stages = sum(1 for d in distributions.stage_win_rates.values() if d.is_reliable)
    if reliable_stages >= 2:
        reliable.append("stage_win_rates")
    else:
        unreliable.append("stage_win_rates")
        warnings.append("Fewer than 2 stages have reliable win rate data.")

    reliable_slippage = sum(1 for d in distributions.slippage.values() if d.is_reliable)
    if reliable_slippage >= 2:
        reliable.append("slippage")
    else:
        warnings.append(
            f"Using default close date slippage ({DEFAULT_SLIPPAGE_MEAN_DAYS:.0f} days mean, "
            f"{DEFAULT_SLIPPAGE_SIGMA_DAYS:.0f} days sigma) where stage history is insufficient."
        )

    return DataQualityReport(
        reliable_distributions=reliable,
        unreliable_distributions=unreliable,
        warnings=warnings,
        tier=1 if closed_deals_used_for_fitting < threshold else 2,
    )


def _percentile(sorted_values: np.ndarray, q: float) -> float:
    return float(sorted_values[int(math.floor(q * len(sorted_values)))])


def run_simulation(
    inputs: SimulationInputs,
    quota: Optional[float] = None,
    rng: Optional[RandomSource] = None,
    workers: Optional[int] = None,
    deadline_seconds: Optional[float] = None,
    deadline_at: Optional[float] = None,
    quiet: bool = False,
) -> SimulationOutputs:
    """
    Run `inputs.iterations` independent iterations and aggregate them.

    Percentiles are floor-indexed lookups into the sorted outcomes.
    Raises SimulationInputError for degenerate inputs and
    SimulationTimeoutError when the deadline passes first. deadline_at is an
    absolute time.time() value shared by several runs; it takes precedence
    over deadline_seconds. quiet logs the completion event at debug level.
    """
    validate_simulation_inputs(inputs)
    start_time = time.perf_counter()
    rng = resolve_random_source(rng)
    workers = workers if workers is not None else settings.simulation_workers
    if deadline_at is None and deadline_seconds:
        deadline_at = time.time() + deadline_seconds

    if workers > 1 and inputs.iterations >= settings.parallel_min_iterations:
        totals, existing, records = _run_parallel(inputs, rng, workers, deadline_at)
    else:
        totals, existing, records = _run_chunk(inputs, inputs.iterations, rng, deadline_at)

    sorted_totals = np.sort(np.asarray(totals, dtype=np.float64))
    sorted_existing = np.sort(np.asarray(existing, dtype=np.float64))
    n = len(sorted_totals)

    p50 = _percentile(sorted_totals, 0.50)
    existing_p50 = _percentile(sorted_existing, 0.50)
    prob_of_hitting_target = float(np.count_nonzero(sorted_totals >= quota) / n) if quota is not None else None

    outputs = SimulationOutputs(
        p10=_percentile(sorted_totals, 0.10),
        p25=_percentile(sorted_totals, 0.25),
        p50=p50,
        p75=_percentile(sorted_totals, 0.75),
        p90=_percentile(sorted_totals, 0.90),
        mean=float(np.mean(sorted_totals)),
        prob_of_hitting_target=prob_of_hitting_target,
        existing_pipeline_p50=existing_p50,
        projected_pipeline_p50=p50 - existing_p50,
        iteration_results=sorted_totals.tolist(),
        closed_deals_used_for_fitting=inputs.closed_deals_used_for_fitting,
        iterations=records if inputs.store_iterations else None,
        data_quality=build_data_quality_report(inputs.distributions, inputs.closed_deals_used_for_fitting),
    )

    log = logger.debug if quiet else logger.info
    log(
        "monte_carlo_complete",
        iterations=n,
        pipeline_type=inputs.pipeline_type,
        open_deals=len(inputs.open_deals),
        workers=workers,
        p10=round(outputs.p10, 2),
        p50=round(outputs.p50, 2),
        p90=round(outputs.p90, 2),
        duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
    )
    return outputs


# ─── Histogram ────────────────────────────────────────────────────────────────

def format_currency(v: float) -> str:
    """Compact dollar label: $1.2M, $850K, $120."""
    if abs(v) >= 1_000_000:
        return f"${v / 1_000_000:.1f}M"
    elif abs(v) >= 1_000:
        return f"${v / 1_000:.0f}K"
    else:
        return f"${v:,.0f}"


def build_histogram(
    sorted_results: List[float],
    buckets: int = 100,
) -> List[HistogramBucket]:
    """
    Bucket the sorted outcomes into equal-width bins for charting.

    The last bucket is closed on the right so the maximum is counted; bucket
    counts always add up to len(sorted_results).
    """
    if buckets < 1:
        raise ValueError(f"buckets must be at least 1, got {buckets}")
    if len(sorted_results) == 0:
        return []

    values = np.asarray(sorted_results, dtype=np.float64)
    low = float(values[0])
    high = float(values[-1])
    width = (high - low) / buckets or 1.0

    indices = np.minimum(buckets - 1, np.floor((values - low) / width).astype(np.int64))
    counts = np.bincount(indices, minlength=buckets)
    total = len(values)

    histogram = []
    for i in range(buckets):
        bucket_min = low + i * width
        bucket_max = low + (i + 1) * width
        count = int(counts[i])
        histogram.append(HistogramBucket(
            bucket_min=round(bucket_min, 2),
            bucket_max=round(bucket_max, 2),
            label=f"{format_currency(bucket_min)} – {format_currency(bucket_max)}",
            count=count,
            frequency=round(count / total, 6),
        ))
    return histogram

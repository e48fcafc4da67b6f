# =============================================================================
# variance.py — Variance driver ("tornado") analysis
#
# Answers "which assumption matters most?". For every assumption that applies
# to the pipeline type, two perturbed copies of the base inputs are built
# (assumption nudged up, assumption nudged down) and each is re-simulated at
# a reduced iteration count. The move in P50 against the baseline is the
# driver's upside / downside impact.
#
# Up and down runs for one driver replay the same random stream (common
# random numbers), so the difference between them reflects the perturbation
# rather than sampling noise. Impacts are still clamped at zero.
# =============================================================================

import math
import time
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import structlog

from config import settings
from models import (
    DriverAssumption,
    ExpansionRate,
    PipelineType,
    SimulationInputs,
    SkewClassification,
    VarianceDriver,
)
from sampling import RandomSource, beta_mean_and_sd, resolve_random_source
from simulation import (
    DEFAULT_EXPANSION_RATE_MEAN,
    DEFAULT_EXPANSION_RATE_SIGMA,
    DEFAULT_SLIPPAGE_MEAN_DAYS,
    DEFAULT_STAGE_WIN_PRIOR,
    format_currency,
    has_revenue_sources,
    round_half_up,
    run_simulation,
)

logger = structlog.get_logger(__name__)

WIN_RATE_UP = 1.20
WIN_RATE_DOWN = 0.80
WIN_RATE_ALPHA_FLOOR = 1.1
LOG_MU_SHIFT = 0.2
SLIPPAGE_SHIFT_DAYS = 7.0
CREATION_RATE_UP = 1.20
CREATION_RATE_DOWN = 0.80
RENEWAL_COUNT_SHARE = 0.2
ARR_UP = 1.20
ARR_DOWN = 0.80

UPSIDE_HEAVY_RATIO = 1.15
DOWNSIDE_HEAVY_RATIO = 0.85
# z for the 10th/90th percentile band around a Beta mean.
BAND_Z = 1.28


class Scenario(NamedTuple):
    variable: str
    label: str
    up: SimulationInputs
    down: SimulationInputs


NARRATIVES: Dict[Tuple[str, SkewClassification], str] = {
    ("win_rate", "upside_heavy"):
        "Lifting win rates adds more ({upside}) than a slip would cost ({downside}); deal coaching has room to pay off.",
    ("win_rate", "downside_heavy"):
        "A dip in win rates costs {downside}, more than the {upside} a lift would add; protect late-stage conversion first.",
    ("win_rate", "balanced"):
        "Win rate moves the forecast about equally either way (+{upside} / -{downside}).",
    ("deal_size", "upside_heavy"):
        "Larger deals would add {upside} versus {downside} at risk from smaller ones; pricing and packaging are the lever.",
    ("deal_size", "downside_heavy"):
        "Discounting or smaller deals would cost {downside}, outweighing the {upside} upside from larger ones.",
    ("deal_size", "balanced"):
        "Deal size swings the forecast symmetrically (+{upside} / -{downside}).",
    ("cycle_length", "upside_heavy"):
        "Shorter cycles would pull {upside} into the window; longer ones would cost {downside}.",
    ("cycle_length", "downside_heavy"):
        "Longer sales cycles would push {downside} out of the window, more than faster cycles would add ({upside}).",
    ("cycle_length", "balanced"):
        "Sales cycle length shifts the forecast about equally in both directions (+{upside} / -{downside}).",
    ("close_date_slippage", "upside_heavy"):
        "Closing on schedule would recover {upside}; extra slippage would cost {downside}.",
    ("close_date_slippage", "downside_heavy"):
        "Another week of slippage would cost {downside}, more than tighter close dates would add ({upside}).",
    ("close_date_slippage", "balanced"):
        "Close date slippage moves the forecast evenly (+{upside} / -{downside}).",
    ("pipeline_creation_rate", "upside_heavy"):
        "More pipeline creation would add {upside}; a slowdown would cost {downside}. Top-of-funnel investment pays off here.",
    ("pipeline_creation_rate", "downside_heavy"):
        "A slowdown in pipeline creation would cost {downside}, more than extra creation would add ({upside}).",
    ("pipeline_creation_rate", "balanced"):
        "Pipeline creation rate moves the forecast evenly (+{upside} / -{downside}).",
    ("renewal_count", "upside_heavy"):
        "Additional renewals in the window would add {upside}; losing some would cost {downside}.",
    ("renewal_count", "downside_heavy"):
        "Losing renewals from the window would cost {downside}, more than extra renewals would add ({upside}).",
    ("renewal_count", "balanced"):
        "The renewal book moves the forecast evenly (+{upside} / -{downside}).",
    ("expansion_rate", "upside_heavy"):
        "Higher expansion rates would add {upside} against {downside} at risk; account growth plays have leverage.",
    ("expansion_rate", "downside_heavy"):
        "Weaker expansion would cost {downside}, more than stronger expansion would add ({upside}).",
    ("expansion_rate", "balanced"):
        "Expansion rate moves the forecast evenly (+{upside} / -{downside}).",
    ("customer_base_arr", "upside_heavy"):
        "A larger customer base would add {upside}; a smaller one would cost {downside}.",
    ("customer_base_arr", "downside_heavy"):
        "Churn in the customer base would cost {downside}, more than base growth would add ({upside}).",
    ("customer_base_arr", "balanced"):
        "Customer-base ARR moves the forecast evenly (+{upside} / -{downside}).",
}


def classify_skew(upside: float, downside: float) -> SkewClassification:
    if downside <= 0:
        return "upside_heavy" if upside > 0 else "balanced"
    ratio = upside / downside
    if ratio > UPSIDE_HEAVY_RATIO:
        return "upside_heavy"
    if ratio < DOWNSIDE_HEAVY_RATIO:
        return "downside_heavy"
    return "balanced"


# ─── Perturbations ────────────────────────────────────────────────────────────

def _perturb_win_rates(inputs: SimulationInputs, factor: float, floor: float = 0.0) -> SimulationInputs:
    dists = inputs.distributions
    stages = {
        stage: d.model_copy(update={"alpha": max(floor, d.alpha * factor)})
        for stage, d in dists.stage_win_rates.items()
    }
    return inputs.model_copy(update={"distributions": dists.model_copy(update={"stage_win_rates": stages})})


def _shift_log_mu(inputs: SimulationInputs, field: str, shift: float) -> SimulationInputs:
    dists = inputs.distributions
    current = getattr(dists, field)
    shifted = current.model_copy(update={"mu": current.mu + shift})
    return inputs.model_copy(update={"distributions": dists.model_copy(update={field: shifted})})


def _shift_slippage(inputs: SimulationInputs, shift_days: float) -> SimulationInputs:
    dists = inputs.distributions
    slippage = {stage: d.model_copy(update={"mean": d.mean + shift_days}) for stage, d in dists.slippage.items()}
    return inputs.model_copy(update={"distributions": dists.model_copy(update={"slippage": slippage})})


def _scale_creation_rates(inputs: SimulationInputs, factor: float) -> SimulationInputs:
    dists = inputs.distributions
    rates = {rep: d.model_copy(update={"mean": d.mean * factor}) for rep, d in dists.pipeline_rates.items()}
    return inputs.model_copy(update={"distributions": dists.model_copy(update={"pipeline_rates": rates})})


def _renewal_delta(count: int) -> int:
    return max(1, round_half_up(count * RENEWAL_COUNT_SHARE))


def _add_renewals(inputs: SimulationInputs) -> SimulationInputs:
    renewals = list(inputs.upcoming_renewals)
    if not renewals:
        return inputs
    extra = [renewals[i % len(renewals)] for i in range(_renewal_delta(len(renewals)))]
    return inputs.model_copy(update={"upcoming_renewals": renewals + extra})


def _drop_renewals(inputs: SimulationInputs) -> SimulationInputs:
    renewals = list(inputs.upcoming_renewals)
    keep = max(0, len(renewals) - _renewal_delta(len(renewals)))
    return inputs.model_copy(update={"upcoming_renewals": renewals[:keep]})


def _expansion_rate(inputs: SimulationInputs) -> ExpansionRate:
    return inputs.expansion_rate or ExpansionRate(
        mean=DEFAULT_EXPANSION_RATE_MEAN, sigma=DEFAULT_EXPANSION_RATE_SIGMA
    )


def _shift_expansion_rate(inputs: SimulationInputs, direction: int) -> SimulationInputs:
    rate = _expansion_rate(inputs)
    mean = rate.mean + rate.sigma if direction > 0 else max(0.0, rate.mean - rate.sigma)
    return inputs.model_copy(update={"expansion_rate": ExpansionRate(mean=mean, sigma=rate.sigma)})


def _scale_arr(inputs: SimulationInputs, factor: float) -> SimulationInputs:
    return inputs.model_copy(update={"customer_base_arr": inputs.customer_base_arr * factor})


def build_scenarios(inputs: SimulationInputs, pipeline_type: PipelineType) -> List[Scenario]:
    """Up/down input pairs for every driver that applies to the pipeline type."""
    scenarios = [
        Scenario(
            "win_rate", "Win Rate",
            _perturb_win_rates(inputs, WIN_RATE_UP),
            _perturb_win_rates(inputs, WIN_RATE_DOWN, floor=WIN_RATE_ALPHA_FLOOR),
        ),
        Scenario(
            "deal_size", "Deal Size",
            _shift_log_mu(inputs, "deal_size", LOG_MU_SHIFT),
            _shift_log_mu(inputs, "deal_size", -LOG_MU_SHIFT),
        ),
    ]
    if pipeline_type != "renewal":
        # Shorter cycles are the upside.
        scenarios.append(Scenario(
            "cycle_length", "Sales Cycle Length",
            _shift_log_mu(inputs, "cycle_length", -LOG_MU_SHIFT),
            _shift_log_mu(inputs, "cycle_length", LOG_MU_SHIFT),
        ))
    if pipeline_type != "expansion":
        scenarios.append(Scenario(
            "close_date_slippage", "Close Date Slippage",
            _shift_slippage(inputs, -SLIPPAGE_SHIFT_DAYS),
            _shift_slippage(inputs, SLIPPAGE_SHIFT_DAYS),
        ))
    if pipeline_type == "new_business":
        scenarios.append(Scenario(
            "pipeline_creation_rate", "Pipeline Creation Rate",
            _scale_creation_rates(inputs, CREATION_RATE_UP),
            _scale_creation_rates(inputs, CREATION_RATE_DOWN),
        ))
    if pipeline_type == "renewal":
        scenarios.append(Scenario("renewal_count", "Renewal Count", _add_renewals(inputs), _drop_renewals(inputs)))
    if pipeline_type == "expansion":
        scenarios.append(Scenario(
            "expansion_rate", "Expansion Rate",
            _shift_expansion_rate(inputs, 1),
            _shift_expansion_rate(inputs, -1),
        ))
        scenarios.append(Scenario(
            "customer_base_arr", "Customer Base ARR",
            _scale_arr(inputs, ARR_UP),
            _scale_arr(inputs, ARR_DOWN),
        ))
    return scenarios


# ─── Assumption Descriptors ───────────────────────────────────────────────────

def _win_rate_band(inputs: SimulationInputs) -> Tuple[float, float, float]:
    stages = inputs.distributions.stage_win_rates.values()
    params = [(d.alpha, d.beta) for d in stages] or [DEFAULT_STAGE_WIN_PRIOR]
    moments = [beta_mean_and_sd(alpha, beta) for alpha, beta in params]
    mean = sum(m for m, _ in moments) / len(moments)
    sd = sum(s for _, s in moments) / len(moments)
    return mean, max(0.0, mean - BAND_Z * sd), min(1.0, mean + BAND_Z * sd)


def _log_normal_band(mu: float) -> Tuple[float, float, float]:
    median = math.exp(mu)
    return median, median * math.exp(-LOG_MU_SHIFT), median * math.exp(LOG_MU_SHIFT)


def _slippage_band(inputs: SimulationInputs) -> Tuple[float, float, float]:
    means = [d.mean for d in inputs.distributions.slippage.values()] or [DEFAULT_SLIPPAGE_MEAN_DAYS]
    mean = sum(means) / len(means)
    return mean, mean - SLIPPAGE_SHIFT_DAYS, mean + SLIPPAGE_SHIFT_DAYS


def _creation_rate_band(inputs: SimulationInputs) -> Tuple[float, float, float]:
    total = sum(d.mean * d.ramp_factor for d in inputs.distributions.pipeline_rates.values())
    return total, total * CREATION_RATE_DOWN, total * CREATION_RATE_UP


def _renewal_band(inputs: SimulationInputs) -> Tuple[float, float, float]:
    count = len(inputs.upcoming_renewals)
    if count == 0:
        return 0.0, 0.0, 0.0
    delta = _renewal_delta(count)
    return float(count), float(max(0, count - delta)), float(count + delta)


def _expansion_rate_band(inputs: SimulationInputs) -> Tuple[float, float, float]:
    rate = _expansion_rate(inputs)
    return rate.mean, max(0.0, rate.mean - rate.sigma), rate.mean + rate.sigma


def _arr_band(inputs: SimulationInputs) -> Tuple[float, float, float]:
    arr = inputs.customer_base_arr
    return arr, arr * ARR_DOWN, arr * ARR_UP


BANDS: Dict[str, Tuple[str, Callable[[SimulationInputs], Tuple[float, float, float]]]] = {
    "win_rate": ("percent", _win_rate_band),
    "deal_size": ("currency", lambda inputs: _log_normal_band(inputs.distributions.deal_size.mu)),
    "cycle_length": ("days", lambda inputs: _log_normal_band(inputs.distributions.cycle_length.mu)),
    "close_date_slippage": ("days", _slippage_band),
    "pipeline_creation_rate": ("deals_per_month", _creation_rate_band),
    "renewal_count": ("renewals", _renewal_band),
    "expansion_rate": ("percent", _expansion_rate_band),
    "customer_base_arr": ("currency", _arr_band),
}


def describe_assumption(
    variable: str,
    inputs: SimulationInputs,
    upside: float,
    downside: float,
) -> DriverAssumption:
    unit, band = BANDS[variable]
    current, low, high = band(inputs)
    skew = classify_skew(upside, downside)
    narrative = NARRATIVES[(variable, skew)].format(
        upside=format_currency(upside),
        downside=format_currency(downside),
    )
    return DriverAssumption(
        current_value=round(current, 4),
        low=round(low, 4),
        high=round(high, 4),
        unit=unit,
        skew=skew,
        narrative=narrative,
    )


# ─── Analysis ─────────────────────────────────────────────────────────────────

def _scenario_p50(
    inputs: SimulationInputs,
    rng: RandomSource,
    workers: Optional[int],
    deadline_at: Optional[float],
) -> float:
    # A perturbation can remove every revenue source (e.g. dropping the only
    # renewal); that scenario forecasts zero.
    if not has_revenue_sources(inputs):
        return 0.0
    return run_simulation(inputs, None, rng=rng, workers=workers, deadline_at=deadline_at, quiet=True).p50


def compute_variance_drivers(
    base_inputs: SimulationInputs,
    base_p50: float,
    pipeline_type: Optional[PipelineType] = None,
    rng: Optional[RandomSource] = None,
    iterations: Optional[int] = None,
    workers: Optional[int] = None,
    deadline_at: Optional[float] = None,
) -> List[VarianceDriver]:
    """
    Rank the assumptions by how far they move P50.

    Returns at most `settings.top_variance_drivers` drivers, ordered by
    upside + downside impact, largest first. pipeline_type overrides the
    mode of base_inputs for both the scenarios and their simulations.
    deadline_at (a time.time() value) bounds every perturbed run; once it
    passes, SimulationTimeoutError propagates.
    """
    start_time = time.perf_counter()
    pipeline_type = pipeline_type or base_inputs.pipeline_type
    mini_inputs = base_inputs.model_copy(update={
        "iterations": iterations or settings.sensitivity_iterations,
        "store_iterations": False,
        "pipeline_type": pipeline_type,
    })
    scenarios = build_scenarios(mini_inputs, pipeline_type)
    streams = resolve_random_source(rng).spawn(len(scenarios))

    drivers: List[VarianceDriver] = []
    for scenario, stream in zip(scenarios, streams):
        up_p50 = _scenario_p50(scenario.up, stream.replicate(), workers, deadline_at)
        down_p50 = _scenario_p50(scenario.down, stream.replicate(), workers, deadline_at)
        upside = max(0.0, up_p50 - base_p50)
        downside = max(0.0, base_p50 - down_p50)
        drivers.append(VarianceDriver(
            variable=scenario.variable,
            label=scenario.label,
            upside_impact=round(upside, 2),
            downside_impact=round(downside, 2),
            total_variance=round(abs(up_p50 - base_p50) + abs(down_p50 - base_p50), 2),
            assumption=describe_assumption(scenario.variable, base_inputs, upside, downside),
        ))

    drivers.sort(key=lambda d: d.upside_impact + d.downside_impact, reverse=True)
    top = drivers[: settings.top_variance_drivers]

    logger.info(
        "variance_drivers_computed",
        pipeline_type=pipeline_type,
        scenarios=len(scenarios),
        iterations_per_run=mini_inputs.iterations,
        top_driver=top[0].variable if top else None,
        duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
    )
    return top

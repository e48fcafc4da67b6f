# =============================================================================
# forecast.py — End-to-end forecast workflow
#
# The single entry point called by the FastAPI route handler:
#   1. Resolve per-deal risk adjustments (the only awaited step)
#   2. Run the Monte Carlo simulation
#   3. Bucket the sorted outcomes into a histogram
#   4. Optionally rank variance drivers against the baseline P50
#   5. Wrap everything in metadata and return
#
# Steps 2 and 4 are CPU-bound, so they run in a worker thread to keep the
# event loop responsive.
# =============================================================================

import time
from datetime import date, datetime, timezone
from typing import Dict

import structlog
from fastapi.concurrency import run_in_threadpool

from config import settings
from models import (
    DealRiskAdjustment,
    ForecastMetadata,
    ForecastRequest,
    ForecastResponse,
    SimulationInputs,
)
from risk import InMemoryEvidenceStore, compute_deal_risk_adjustments
from sampling import RandomSource
from simulation import build_histogram, run_simulation
from variance import compute_variance_drivers

logger = structlog.get_logger(__name__)


async def resolve_risk_adjustments(request: ForecastRequest, today: date) -> Dict[str, DealRiskAdjustment]:
    """Caller-supplied adjustments win; otherwise evaluate the supplied evidence."""
    if request.risk_adjustments is not None:
        return dict(request.risk_adjustments)

    evidence = request.signal_evidence
    store = None
    workspace_id = "default"
    if evidence is not None:
        workspace_id = evidence.workspace_id
        # Evidence age is measured from the end of the forecast's own day.
        now = datetime.combine(today, datetime.max.time(), tzinfo=timezone.utc) if request.today else None
        store = InMemoryEvidenceStore(evidence.skill_runs, evidence.rep_average_won_amounts, now=now)
    return await compute_deal_risk_adjustments(workspace_id, request.open_deals, store, today=today)


def build_simulation_inputs(
    request: ForecastRequest,
    today: date,
    risk_adjustments: Dict[str, DealRiskAdjustment],
) -> SimulationInputs:
    return SimulationInputs(
        open_deals=request.open_deals,
        distributions=request.distributions,
        risk_adjustments=risk_adjustments,
        forecast_window_end=request.forecast_window_end,
        today=today,
        iterations=request.iterations or settings.default_iterations,
        pipeline_type=request.pipeline_type,
        upcoming_renewals=request.upcoming_renewals,
        customer_base_arr=request.customer_base_arr,
        expansion_rate=request.expansion_rate,
        store_iterations=request.include_iterations,
        closed_deals_used_for_fitting=request.closed_deals_used_for_fitting,
    )


def _simulate_and_analyze(request: ForecastRequest, inputs: SimulationInputs):
    rng = RandomSource(request.seed)
    simulation_stream, variance_stream = rng.spawn(2)
    # One deadline covers the main run and every sensitivity run.
    deadline_seconds = settings.simulation_deadline_seconds
    deadline_at = time.time() + deadline_seconds if deadline_seconds else None
    outputs = run_simulation(
        inputs,
        request.quota,
        rng=simulation_stream,
        deadline_at=deadline_at,
    )
    drivers = []
    if request.include_variance_drivers:
        drivers = compute_variance_drivers(inputs, outputs.p50, rng=variance_stream, deadline_at=deadline_at)
    return outputs, drivers


async def run_full_forecast(request: ForecastRequest) -> ForecastResponse:
    start_time = time.perf_counter()
    today = request.today or date.today()
    if request.forecast_window_end < today:
        raise ValueError(f"forecast_window_end {request.forecast_window_end} is before today ({today})")

    risk_adjustments = await resolve_risk_adjustments(request, today)
    inputs = build_simulation_inputs(request, today, risk_adjustments)

    outputs, drivers = await run_in_threadpool(_simulate_and_analyze, request, inputs)
    histogram = build_histogram(outputs.iteration_results, request.histogram_buckets or settings.histogram_buckets)

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    metadata = ForecastMetadata(
        iterations=inputs.iterations,
        pipeline_type=inputs.pipeline_type,
        open_deals_included=len(inputs.open_deals),
        renewals_included=sum(1 for r in inputs.upcoming_renewals if r.expected_close_date <= inputs.forecast_window_end),
        risk_adjusted_deals=sum(1 for adj in risk_adjustments.values() if adj.signals or adj.multiplier != 1.0),
        compute_time_ms=round(elapsed_ms, 2),
        timestamp=datetime.now(timezone.utc),
        api_version=settings.api_version,
    )

    logger.info(
        "forecast_complete",
        pipeline_type=inputs.pipeline_type,
        iterations=inputs.iterations,
        p50=round(outputs.p50, 2),
        drivers=[d.variable for d in drivers],
        compute_time_ms=metadata.compute_time_ms,
    )

    return ForecastResponse(
        simulation=outputs,
        histogram=histogram,
        variance_drivers=drivers,
        risk_adjustments=risk_adjustments,
        metadata=metadata,
    )

# =============================================================================
# models.py — Simulation value objects and the HTTP request/response contract
#
# Pydantic v2 models define exactly what data comes IN and goes OUT. The
# simulation inputs are frozen: the variance analysis builds perturbed
# scenarios with model_copy(update=...), so a base scenario is never mutated
# by a perturbation.
#
# Field names are snake_case; upstream collaborators (distribution fitting,
# CRM queries) are expected to map their own shapes onto these models.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Any, Dict, List, Literal, Optional
from datetime import date, datetime


PipelineType = Literal["new_business", "renewal", "expansion"]
SkewClassification = Literal["upside_heavy", "downside_heavy", "balanced"]


class ValueObject(BaseModel):
    """Immutable base for everything the engine reads inside the hot loop."""

    model_config = ConfigDict(frozen=True)


# ─── Fitted Distributions (external input) ────────────────────────────────────

class BetaDistribution(ValueObject):
    """Stage win rate, Beta(alpha, beta) with Laplace-smoothed counts upstream."""

    alpha: float = Field(ge=0, description="Successes + 1.")
    beta: float = Field(ge=0, description="Failures + 1.")
    mean: Optional[float] = None
    sample_size: int = 0
    is_reliable: bool = False


class LogNormalDistribution(ValueObject):
    """Log-space parameters: exp(mu) is the median of the fitted quantity."""

    mu: float
    sigma: float = Field(ge=0)
    median: Optional[float] = None
    sample_size: int = 0
    is_reliable: bool = False


class NormalDistribution(ValueObject):
    mean: float
    sigma: float = Field(ge=0)
    sample_size: int = 0
    is_reliable: bool = False


class PipelineRateDistribution(NormalDistribution):
    """Deals created per month for one rep; ramp_factor < 1 for new hires."""

    ramp_factor: float = Field(default=1.0, ge=0, le=1)


class ExpansionRate(ValueObject):
    mean: float
    sigma: float = Field(ge=0)


class FittedDistributions(ValueObject):
    deal_size: LogNormalDistribution
    cycle_length: LogNormalDistribution = Field(description="Sales cycle length in days (log-space).")
    stage_win_rates: Dict[str, BetaDistribution] = Field(default_factory=dict)
    slippage: Dict[str, NormalDistribution] = Field(
        default_factory=dict, description="Close-date slippage in days, per stage."
    )
    pipeline_rates: Dict[str, PipelineRateDistribution] = Field(
        default_factory=dict, description="Pipeline creation rate, keyed by rep."
    )


# ─── Pipeline ─────────────────────────────────────────────────────────────────

class OpenDeal(ValueObject):
    """An open CRM deal. Only the statistical inputs the simulation needs."""

    id: str
    name: str = ""
    amount: float = Field(ge=0)
    stage_normalized: str
    close_date: date
    owner_email: Optional[str] = None
    probability: Optional[float] = Field(default=None, ge=0, le=1)


class UpcomingRenewal(ValueObject):
    deal_id: str
    name: str = ""
    contract_value: float = Field(gt=0)
    expected_close_date: date
    owner: Optional[str] = None


class DealRiskAdjustment(ValueObject):
    deal_id: str
    multiplier: float = Field(default=1.0, ge=0.05, le=2.0)
    signals: List[str] = Field(default_factory=list)


class SimulationInputs(ValueObject):
    open_deals: List[OpenDeal] = Field(default_factory=list)
    distributions: FittedDistributions
    risk_adjustments: Dict[str, DealRiskAdjustment] = Field(default_factory=dict)
    forecast_window_end: date
    today: date
    iterations: int
    pipeline_type: PipelineType = "new_business"
    upcoming_renewals: List[UpcomingRenewal] = Field(default_factory=list)
    customer_base_arr: float = 0.0
    expansion_rate: Optional[ExpansionRate] = None
    store_iterations: bool = False
    closed_deals_used_for_fitting: int = 0


# ─── Simulation Outputs ───────────────────────────────────────────────────────

class IterationRecord(ValueObject):
    total: float
    existing: float
    projected: float
    deals_won: List[str]
    new_deals_created: int
    by_rep: Dict[str, float]


class DataQualityReport(BaseModel):
    reliable_distributions: List[str]
    unreliable_distributions: List[str]
    warnings: List[str]
    tier: Literal[1, 2] = Field(description="1 = thin history, treat the range as indicative only.")


class SimulationOutputs(BaseModel):
    """
    Aggregated result of one simulation run.

    iteration_results is sorted ascending. projected_pipeline_p50 is
    p50 - existing_pipeline_p50, an approximation and not the true median of
    the projected-only distribution.
    """

    p10: float
    p25: float
    p50: float
    p75: float
    p90: float
    mean: float
    prob_of_hitting_target: Optional[float] = None
    existing_pipeline_p50: float
    projected_pipeline_p50: float
    iteration_results: List[float]
    closed_deals_used_for_fitting: int = 0
    iterations: Optional[List[IterationRecord]] = None
    data_quality: DataQualityReport


class HistogramBucket(BaseModel):
    """One bar in the revenue distribution histogram."""

    bucket_min: float = Field(description="Lower bound of this bucket (inclusive).")
    bucket_max: float = Field(description="Upper bound of this bucket (exclusive, except the last).")
    label: str = Field(description="Human-readable range label, e.g. '$8.0M – $9.0M'.")
    count: int
    frequency: float = Field(description="count / total outcomes.")


class DriverAssumption(BaseModel):
    current_value: float
    low: float
    high: float
    unit: Literal["percent", "currency", "days", "deals_per_month", "renewals"]
    skew: SkewClassification
    narrative: str


class VarianceDriver(BaseModel):
    variable: str
    label: str
    upside_impact: float = Field(ge=0)
    downside_impact: float = Field(ge=0)
    total_variance: float = Field(ge=0)
    assumption: DriverAssumption


# ─── Risk Evidence (HTTP input) ───────────────────────────────────────────────

class SkillRun(BaseModel):
    """A completed skill execution whose result may flag deals."""

    skill_id: str
    completed_at: datetime
    status: str = "completed"
    result: Any = None


class SignalEvidence(BaseModel):
    workspace_id: str = "default"
    skill_runs: List[SkillRun] = Field(default_factory=list)
    rep_average_won_amounts: Dict[str, float] = Field(
        default_factory=dict,
        description="Owner -> trailing average closed-won amount.",
    )


# ─── HTTP Contract ────────────────────────────────────────────────────────────

class ForecastRequest(BaseModel):
    """
    Full request payload for the /api/v1/forecast endpoint.

    Distributions arrive already fitted and deals already loaded; this service
    only runs the math.
    """

    open_deals: List[OpenDeal] = Field(default_factory=list, max_length=5_000)
    distributions: FittedDistributions
    forecast_window_end: date
    today: Optional[date] = Field(default=None, description="Defaults to the server's current date.")
    iterations: Optional[int] = Field(
        default=None, ge=10, le=100_000, description="Defaults to the configured iteration count."
    )
    pipeline_type: PipelineType = "new_business"
    upcoming_renewals: List[UpcomingRenewal] = Field(default_factory=list)
    customer_base_arr: float = Field(default=0.0, ge=0)
    expansion_rate: Optional[ExpansionRate] = None
    quota: Optional[float] = Field(default=None, gt=0)
    risk_adjustments: Optional[Dict[str, DealRiskAdjustment]] = Field(
        default=None, description="Precomputed adjustments; skips evidence evaluation when set."
    )
    signal_evidence: Optional[SignalEvidence] = None
    include_variance_drivers: bool = True
    include_iterations: bool = False
    histogram_buckets: Optional[int] = Field(default=None, ge=1, le=1_000)
    closed_deals_used_for_fitting: int = Field(default=0, ge=0)
    seed: Optional[int] = Field(default=None, ge=0, description="Fix for reproducible results.")

    @model_validator(mode="after")
    def validate_window(self) -> "ForecastRequest":
        if self.today is not None and self.forecast_window_end < self.today:
            raise ValueError("forecast_window_end must not be before today")
        return self


class ForecastMetadata(BaseModel):
    iterations: int
    pipeline_type: PipelineType
    open_deals_included: int
    renewals_included: int
    risk_adjusted_deals: int
    compute_time_ms: float
    timestamp: datetime
    api_version: str = "2.0.0"


class ForecastResponse(BaseModel):
    simulation: SimulationOutputs
    histogram: List[HistogramBucket]
    variance_drivers: List[VarianceDriver]
    risk_adjustments: Dict[str, DealRiskAdjustment]
    metadata: ForecastMetadata


class HealthResponse(BaseModel):
    """Simple health check — used by load balancers and deploy probes."""

    status: str = "ok"
    version: str
    timestamp: datetime

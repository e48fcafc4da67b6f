# =============================================================================
# risk.py — Per-deal risk adjustment from behavioural evidence
#
# Each open deal starts at a 1.0 win-probability multiplier. Independent
# signals (stale close date, single-threaded, no recent activity, competitor
# mentioned, active champion, unusually large for its owner) each multiply it,
# and the result is clamped to [0.05, 2.0].
#
# Evidence comes from an EvidenceStore. These lookups are the only I/O in the
# forecast and happen once, before the simulation starts. A failed lookup is
# logged and treated as "no signal": a forecast never fails because a
# secondary signal was unavailable.
# =============================================================================

import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

import structlog

from config import settings
from models import DealRiskAdjustment, OpenDeal, SkillRun

logger = structlog.get_logger(__name__)

MULTIPLIER_FLOOR = 0.05
MULTIPLIER_CEILING = 2.0

SINGLE_THREAD_SKILL = "single-thread-alert"
HYGIENE_SKILL = "pipeline-hygiene"
CONVERSATION_SKILL = "conversation-intelligence"
EVIDENCE_SKILLS = (SINGLE_THREAD_SKILL, HYGIENE_SKILL, CONVERSATION_SKILL)

# (skill, keyword searched in the evidence, signal recorded, multiplier)
EVIDENCE_SIGNALS = [
    (SINGLE_THREAD_SKILL, "single_threaded", "single_threaded", 0.75),
    (HYGIENE_SKILL, "no_activity", "no_recent_activity", 0.70),
    (CONVERSATION_SKILL, "competitor_mentioned", "competitor_mentioned", 0.85),
    (CONVERSATION_SKILL, "champion_active", "champion_active", 1.15),
]

CLOSE_DATE_PAST_MULTIPLIER = 0.80
LARGE_DEAL_MULTIPLIER = 0.90
LARGE_DEAL_RATIO = 2.0


class EvidenceStore(Protocol):
    """Where the calculator reads skill evidence and rep history from."""

    async def latest_skill_results(
        self, workspace_id: str, skill_ids: Sequence[str], max_age_days: int
    ) -> Dict[str, Any]:
        """Most recent completed result per skill, no older than max_age_days."""
        ...

    async def rep_average_won_amounts(self, workspace_id: str, lookback_months: int) -> Dict[str, float]:
        """Owner -> average closed-won amount over the lookback."""
        ...


class InMemoryEvidenceStore:
    """EvidenceStore over skill runs and rep averages supplied by the caller."""

    def __init__(
        self,
        skill_runs: Iterable[SkillRun] = (),
        rep_averages: Optional[Dict[str, float]] = None,
        now: Optional[datetime] = None,
    ):
        self.skill_runs = list(skill_runs)
        self.rep_averages = dict(rep_averages or {})
        self.now = now

    async def latest_skill_results(
        self, workspace_id: str, skill_ids: Sequence[str], max_age_days: int
    ) -> Dict[str, Any]:
        now = self.now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=max_age_days)
        latest: Dict[str, SkillRun] = {}
        for run in self.skill_runs:
            if run.skill_id not in skill_ids or run.status != "completed":
                continue
            completed_at = _as_aware(run.completed_at)
            if completed_at <= cutoff:
                continue
            current = latest.get(run.skill_id)
            if current is None or completed_at > _as_aware(current.completed_at):
                latest[run.skill_id] = run
        return {skill_id: run.result if run.result is not None else {} for skill_id, run in latest.items()}

    async def rep_average_won_amounts(self, workspace_id: str, lookback_months: int) -> Dict[str, float]:
        return dict(self.rep_averages)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def extract_flagged_deal_ids(payload: Any, signal: str) -> List[str]:
    """
    Deal ids that a skill result flags for `signal`.

    An explicit typed list, {"signals": [{"deal_id": ..., "signal": ...}]},
    is used as-is when present. Otherwise this falls back to a best-effort
    scan: any nested object with a string `deal_id` whose JSON text mentions
    the signal keyword counts as flagged. The scan can produce false
    positives (e.g. a deal whose notes mention "no activity").
    """
    if not payload:
        return []

    if isinstance(payload, dict) and isinstance(payload.get("signals"), list):
        typed = [
            item["deal_id"]
            for item in payload["signals"]
            if isinstance(item, dict) and item.get("signal") == signal and isinstance(item.get("deal_id"), str)
        ]
        return list(dict.fromkeys(typed))

    keywords = (signal.replace("_", " ", 1), signal)
    ids: List[str] = []

    def visit(node: Any) -> None:
        if isinstance(node, list):
            for item in node:
                visit(item)
            return
        if not isinstance(node, dict):
            return
        deal_id = node.get("deal_id")
        if isinstance(deal_id, str):
            text = json.dumps(node, default=str).lower()
            if any(keyword in text for keyword in keywords):
                ids.append(deal_id)
        for value in node.values():
            visit(value)

    visit(payload)
    return list(dict.fromkeys(ids))


async def compute_deal_risk_adjustments(
    workspace_id: str,
    open_deals: Sequence[OpenDeal],
    store: Optional[EvidenceStore] = None,
    today: Optional[date] = None,
) -> Dict[str, DealRiskAdjustment]:
    """
    Build a clamped win-probability multiplier for every open deal.

    Without a store only the close-date signal can apply.
    """
    today = today or date.today()
    multipliers: Dict[str, float] = {deal.id: 1.0 for deal in open_deals}
    signals: Dict[str, List[str]] = {deal.id: [] for deal in open_deals}

    def apply(deal_id: str, signal: str, factor: float) -> None:
        if deal_id in multipliers:
            multipliers[deal_id] *= factor
            signals[deal_id].append(signal)

    for deal in open_deals:
        if deal.close_date < today:
            apply(deal.id, "close_date_past", CLOSE_DATE_PAST_MULTIPLIER)

    skill_results: Dict[str, Any] = {}
    rep_averages: Dict[str, float] = {}
    if store is not None:
        try:
            skill_results = await store.latest_skill_results(
                workspace_id, EVIDENCE_SKILLS, settings.risk_evidence_max_age_days
            )
        except Exception as exc:
            logger.warning(
                "risk_signal_lookup_failed",
                workspace_id=workspace_id,
                lookup="skill_results",
                error=str(exc),
            )
        try:
            rep_averages = await store.rep_average_won_amounts(
                workspace_id, settings.rep_average_lookback_months
            )
        except Exception as exc:
            logger.warning(
                "risk_signal_lookup_failed",
                workspace_id=workspace_id,
                lookup="rep_averages",
                error=str(exc),
            )

    for skill_id, keyword, signal, factor in EVIDENCE_SIGNALS:
        payload = skill_results.get(skill_id)
        if not payload:
            continue
        for deal_id in extract_flagged_deal_ids(payload, keyword):
            apply(deal_id, signal, factor)

    for deal in open_deals:
        average = rep_averages.get(deal.owner_email) if deal.owner_email else None
        if average and average > 0 and deal.amount > 0 and deal.amount > LARGE_DEAL_RATIO * average:
            apply(deal.id, "large_deal_vs_rep_avg", LARGE_DEAL_MULTIPLIER)

    adjustments = {
        deal_id: DealRiskAdjustment(
            deal_id=deal_id,
            multiplier=clamp_multiplier(multipliers[deal_id]),
            signals=signals[deal_id],
        )
        for deal_id in multipliers
    }

    logger.info(
        "risk_adjustments_computed",
        workspace_id=workspace_id,
        deals=len(adjustments),
        adjusted=sum(1 for adj in adjustments.values() if adj.signals),
        skills_with_evidence=sorted(skill_results),
    )
    return adjustments


def clamp_multiplier(value: float) -> float:
    return max(MULTIPLIER_FLOOR, min(MULTIPLIER_CEILING, value))

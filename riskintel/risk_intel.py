from __future__ import annotations

from .logger import get_logger
from .models import DataPoint, TaskResult
from .scoring import failed_assessment, score_risk
from .signals import collect_signals

logger = get_logger(__name__)

KEY = "domain_risk_assessment"
LABEL = "Domain risk assessment"
SIGNALS_KEY = "domain_intel_signals"
SIGNALS_LABEL = "Domain intel signals"


async def extract_risk_intel_task(ctx) -> TaskResult:
    """Collect domain signals, score them and emit both as data points.

    Reads the Stage A `contact_details` and `policy_links` rows so that
    extracted contact info and verified policy links count as presence.
    """
    contact = await ctx.read_data_point("contact_details")
    policy_links = await ctx.read_data_point("policy_links")

    try:
        collected = await collect_signals(ctx)
    except Exception as e:
        logger.exception("Scan %s: signal collection failed", ctx.scan_id)
        return TaskResult(
            data_points=[
                DataPoint(
                    key=KEY,
                    label=LABEL,
                    value=failed_assessment(str(e) or type(e).__name__).model_dump(),
                    sources=[ctx.url],
                )
            ]
        )

    assessment, scoring_logs = score_risk(
        collected.signals,
        contact=contact,
        policy_links=policy_links,
        urls_checked=collected.urls_checked,
    )
    logger.info(
        "Scan %s: risk %d (%s), confidence %d",
        ctx.scan_id, assessment.overall_risk_score, assessment.primary_risk_type, assessment.confidence,
    )

    return TaskResult(
        data_points=[
            DataPoint(
                key=SIGNALS_KEY,
                label=SIGNALS_LABEL,
                value=collected.signals.model_dump(mode="json"),
                sources=collected.urls_checked,
            ),
            DataPoint(
                key=KEY,
                label=LABEL,
                value=assessment.model_dump(),
                sources=collected.urls_checked,
            ),
        ],
        signal_logs=collected.signal_logs + scoring_logs,
    )

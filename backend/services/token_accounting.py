# backend/services/token_accounting.py
import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from core.config import settings
from db.models import Interview, TokenUsageEntry

log = logging.getLogger(__name__)

OPERATIONS = ("chat", "feedback", "resume_analysis", "tts", "transcription")


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    return round(
        input_tokens * settings.input_price_per_mtok / 1_000_000
        + output_tokens * settings.output_price_per_mtok / 1_000_000,
        8,
    )


def record_usage(
    db: Session,
    operation: str,
    usage,
    model: Optional[str] = None,
    interview_id: Optional[str] = None,
    user_id: Optional[int] = None,
) -> TokenUsageEntry:
    """
    Log one model call and add it to the interview totals. Totals are bumped
    with SQL expressions so concurrent writers never lose an increment.
    """
    inp = max(0, int(getattr(usage, "input_tokens", 0) or 0))
    out = max(0, int(getattr(usage, "output_tokens", 0) or 0))
    cost = estimate_cost(inp, out)
    entry = TokenUsageEntry(
        interview_id=interview_id,
        user_id=user_id,
        operation=operation,
        model=model,
        input_tokens=inp,
        output_tokens=out,
        cost=cost,
    )
    try:
        db.add(entry)
        if interview_id:
            db.execute(
                update(Interview)
                .where(Interview.id == interview_id)
                .values(
                    total_input_tokens=Interview.total_input_tokens + inp,
                    total_output_tokens=Interview.total_output_tokens + out,
                    total_tokens=Interview.total_tokens + inp + out,
                    estimated_cost=Interview.estimated_cost + cost,
                )
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info(
        "token usage recorded",
        extra={"operation": operation, "interview_id": interview_id, "input_tokens": inp, "output_tokens": out},
    )
    return entry


def usage_breakdown(db: Session, interview_id: str) -> dict:
    rows = db.execute(
        select(
            TokenUsageEntry.operation,
            func.count(TokenUsageEntry.id),
            func.coalesce(func.sum(TokenUsageEntry.input_tokens), 0),
            func.coalesce(func.sum(TokenUsageEntry.output_tokens), 0),
            func.coalesce(func.sum(TokenUsageEntry.cost), 0.0),
        )
        .where(TokenUsageEntry.interview_id == interview_id)
        .group_by(TokenUsageEntry.operation)
    ).all()
    return {
        op: {"calls": int(n), "inputTokens": int(i), "outputTokens": int(o), "cost": round(float(c), 6)}
        for op, n, i, o, c in rows
    }


def totals(db: Session) -> dict:
    n, i, o, c = db.execute(
        select(
            func.count(TokenUsageEntry.id),
            func.coalesce(func.sum(TokenUsageEntry.input_tokens), 0),
            func.coalesce(func.sum(TokenUsageEntry.output_tokens), 0),
            func.coalesce(func.sum(TokenUsageEntry.cost), 0.0),
        )
    ).one()
    return {
        "calls": int(n),
        "inputTokens": int(i),
        "outputTokens": int(o),
        "totalTokens": int(i) + int(o),
        "estimatedCost": round(float(c), 6),
    }

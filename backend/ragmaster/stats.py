# ragmaster/stats.py
# ──────────────────────────────────────────────────────────────────────────────
#  Everything the dashboard mines out of request_logs: KPI summary, WhatsApp
#  contact list and per-user conversation "sessions".
# ──────────────────────────────────────────────────────────────────────────────
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from . import models
from .config import INPUT_TOKEN_PRICE, OUTPUT_TOKEN_PRICE

Log = models.RequestLog


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def estimated_cost(input_tokens: int, output_tokens: int) -> float:
    return (input_tokens / 1_000_000) * INPUT_TOKEN_PRICE + (output_tokens / 1_000_000) * OUTPUT_TOKEN_PRICE


def _question_stats(db: Session, success: bool, limit: int = 5) -> List[Dict[str, Any]]:
    rows = (
        db.query(Log.query_text, func.count(Log.id), func.max(Log.created_at))
        .filter(Log.is_success.is_(success), Log.query_text.isnot(None), Log.query_text != "")
        .group_by(Log.query_text)
        .order_by(func.count(Log.id).desc(), func.max(Log.created_at).desc())
        .limit(limit)
        .all()
    )
    return [{"query": q, "count": n, "last_asked": _iso(last)} for q, n, last in rows]


def summary(db: Session) -> Dict[str, Any]:
    total, succeeded, tokens_in, tokens_out, latency = db.query(
        func.count(Log.id),
        func.coalesce(func.sum(case((Log.is_success.is_(True), 1), else_=0)), 0),
        func.coalesce(func.sum(Log.input_tokens), 0),
        func.coalesce(func.sum(Log.output_tokens), 0),
        func.avg(Log.latency_ms),
    ).one()

    channels = dict(db.query(Log.channel, func.count(Log.id)).group_by(Log.channel).all())

    top_docs = (
        db.query(models.Document)
        .order_by(models.Document.usage_count.desc(), models.Document.id)
        .limit(5)
        .all()
    )

    return {
        "totalRequests":  total,
        "ragSuccessRate": round(100 * succeeded / total) if total else 0,
        "avgLatency":     round(latency) if latency is not None else 0,
        "activeChannels": len(channels),
        "channels":       channels,
        "totalTokens":    {"input": int(tokens_in), "output": int(tokens_out)},
        "estimatedCost":  estimated_cost(int(tokens_in), int(tokens_out)),
        "topDocuments": [
            {"name": d.name, "usage_count": d.usage_count or 0, "last_used_at": _iso(d.last_used_at)}
            for d in top_docs
        ],
        "topQuestions":        _question_stats(db, success=True),
        "unansweredQuestions": _question_stats(db, success=False),
    }


def contacts(db: Session, limit: int = 50) -> List[Dict[str, Any]]:
    rows = (
        db.query(Log.user_id, func.max(Log.created_at))
        .filter(Log.channel == "whatsapp", Log.user_id.isnot(None))
        .group_by(Log.user_id)
        .order_by(func.max(Log.created_at).desc())
        .limit(limit)
        .all()
    )
    return [
        {"number": number, "name": f"User {number[-4:]}", "lastActive": _iso(last)}
        for number, last in rows
    ]


def sessions(db: Session, channel: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    q = db.query(Log).filter(Log.user_id.isnot(None))
    if channel:
        q = q.filter(Log.channel == channel)

    out: Dict[tuple, Dict[str, Any]] = {}
    for row in q.order_by(Log.created_at.desc(), Log.id.desc()).all():
        key = (row.channel, row.user_id)
        if key not in out:
            if len(out) >= limit:
                continue
            out[key] = {
                "userId":       row.user_id,
                "channel":      row.channel,
                "lastMessage":  row.query_text or "",
                "lastActive":   _iso(row.created_at),
                "messageCount": 0,
            }
        out[key]["messageCount"] += 1
    return list(out.values())


def history(db: Session, user_id: str, channel: Optional[str] = None) -> List[Dict[str, Any]]:
    q = db.query(Log).filter(Log.user_id == user_id)
    if channel:
        q = q.filter(Log.channel == channel)

    messages: List[Dict[str, Any]] = []
    for row in q.order_by(Log.created_at, Log.id).all():
        messages.append({"id": f"{row.id}-q", "role": "user", "content": row.query_text or "",
                         "timestamp": _iso(row.created_at)})
        if row.is_success:
            messages.append({"id": f"{row.id}-a", "role": "model", "content": row.response_text or "",
                             "timestamp": _iso(row.created_at)})
    return messages

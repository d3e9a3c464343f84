"""
Fallback Scoring - deterministic lead scores for when the LLM is unavailable.

Scores conversation characteristics (volume, message length, buying
keywords, back-and-forth, recency) so a contact never ends up with a 0
score just because analysis failed. Results are capped at 80; 81-100 is
reserved for confident model scores.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

BUYING_KEYWORDS = [
    "price", "cost", "buy", "purchase", "order",
    "how much", "available", "delivery", "shipping",
    "payment", "invoice", "quote", "interested",
    "need", "want", "looking for", "urgent",
]

MIN_SCORE = 15
MAX_SCORE = 80
FALLBACK_CONFIDENCE = 60


@dataclass
class FallbackScore:
    lead_score: int
    lead_status: str
    reasoning: str
    confidence: int


def _days_since(moment: datetime, now: datetime) -> int:
    # Compare naive UTC to naive UTC
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    return int((now - moment).total_seconds() // 86400)


def calculate_fallback_score(messages: list, conversation_age: Optional[datetime] = None,
                             now: Optional[datetime] = None) -> FallbackScore:
    """Heuristic score for a conversation.

    Args:
        messages: [{"from": str, "text": str}, ...] oldest first.
        conversation_age: Time of the last message, if known.
        now: Reference time (defaults to current UTC).
    """
    if not messages:
        return FallbackScore(
            lead_score=MIN_SCORE,
            lead_status="NEW",
            reasoning="No conversation data available - assigned minimum score",
            confidence=50,
        )

    score = 20
    factors = []

    count = len(messages)
    if count >= 20:
        score += 25
        factors.append("high message count (20+)")
    elif count >= 10:
        score += 15
        factors.append("moderate message count (10-19)")
    elif count >= 5:
        score += 10
        factors.append("some messages (5-9)")
    else:
        score += 5
        factors.append("few messages (<5)")

    texts = [m.get("text") or "" for m in messages]
    avg_length = sum(len(t) for t in texts) / count
    if avg_length > 100:
        score += 15
        factors.append("detailed messages (avg 100+ chars)")
    elif avg_length > 50:
        score += 10
        factors.append("moderate messages (avg 50-100 chars)")
    else:
        score += 5
        factors.append("short messages")

    conversation_text = " ".join(t.lower() for t in texts)
    keyword_matches = sum(1 for kw in BUYING_KEYWORDS if kw in conversation_text)
    if keyword_matches >= 5:
        score += 20
        factors.append("strong buying signals")
    elif keyword_matches >= 3:
        score += 12
        factors.append("some buying signals")
    elif keyword_matches >= 1:
        score += 6
        factors.append("minimal buying signals")

    sender_changes = sum(
        1 for prev, cur in zip(messages, messages[1:]) if cur.get("from") != prev.get("from")
    )
    response_rate = sender_changes / max(count - 1, 1)
    if response_rate > 0.7:
        score += 15
        factors.append("active conversation")
    elif response_rate > 0.4:
        score += 8
        factors.append("moderate back-and-forth")

    if conversation_age is not None:
        days = _days_since(conversation_age, now or datetime.now(timezone.utc))
        if days <= 1:
            score += 10
            factors.append("very recent activity")
        elif days <= 7:
            score += 5
            factors.append("recent activity")
        elif days > 30:
            score -= 10
            factors.append("old conversation")

    score = min(max(score, MIN_SCORE), MAX_SCORE)

    if score >= 60:
        status = "QUALIFIED"
    elif score >= 40:
        status = "CONTACTED"
    else:
        status = "NEW"

    return FallbackScore(
        lead_score=score,
        lead_status=status,
        reasoning=f"Fallback scoring (AI unavailable): {', '.join(factors)}. Score: {score}",
        confidence=FALLBACK_CONFIDENCE,
    )


def is_low_quality_score(score: int, has_messages: bool) -> bool:
    """0 is always suspect; under 15 is suspect when there was a conversation."""
    if score == 0:
        return True
    return has_messages and score < MIN_SCORE


def enhance_low_score(current_score: int, messages: list,
                      conversation_age: Optional[datetime] = None) -> int:
    if not is_low_quality_score(current_score, len(messages) > 0):
        return current_score
    fallback = calculate_fallback_score(messages, conversation_age)
    return max(current_score, fallback.lead_score)

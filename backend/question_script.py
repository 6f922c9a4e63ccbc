"""Deterministic interview scripts built from a survey goal.

Both builders are pure: the same goal string always yields the same list.
"""
from __future__ import annotations
from typing import Optional

DEFAULT_GOAL = "this product or experience"
DEFAULT_COUNT = 7

# researcher-facing draft for the setup step
_DRAFT_TEMPLATES = (
    "In your own words, what initially attracted you to {goal}?",
    "Can you walk me through the last time you engaged with {goal}?",
    "What specific problems were you hoping {goal} would solve for you?",
    "What, if anything, felt confusing or frustrating about {goal}?",
    "If you could change one thing about {goal}, what would it be and why?",
    "How does {goal} compare to other options you've tried?",
    "What would make you excited to recommend {goal} to a friend or colleague?",
    "What almost stopped you from trying or continuing with {goal}?",
    "What's the biggest value you feel you've gotten from {goal} so far?",
    "Imagine we're meeting again in six months. What would need to be true for you to say {goal} was a success?",
)

# used in-session when a survey has no saved questions
_FALLBACK_TEMPLATES = (
    "To start, in your own words, what interested you most about {goal}?",
    "Can you describe the last time you used or thought about {goal}?",
    "What were you hoping {goal} would help you achieve or change?",
    "What, if anything, has been frustrating or confusing about {goal}?",
    "If you could improve one thing about {goal}, what would it be and why?",
)

MAX_COUNT = len(_DRAFT_TEMPLATES)


def normalize_goal(goal: Optional[str]) -> str:
    return (goal or "").strip() or DEFAULT_GOAL


def _question(text: str, index: int) -> dict:
    return {
        "text": text,
        "type": "OPEN",
        "category": "general",
        "options": None,
        "scale_min": 1,
        "scale_max": 10,
        "scale_min_label": "Not at all",
        "scale_max_label": "Absolutely",
        "star_count": 5,
        "is_required": False,
        "allow_followup": True,
        "order_index": index,
    }


def draft_questions(goal: Optional[str], count: int = DEFAULT_COUNT) -> list[dict]:
    """Return ``count`` editable questions (clamped to 1..MAX_COUNT)."""
    try:
        count = int(count)
    except (TypeError, ValueError):
        count = DEFAULT_COUNT
    count = max(1, min(count, MAX_COUNT))
    g = normalize_goal(goal)
    return [_question(t.format(goal=g), i) for i, t in enumerate(_DRAFT_TEMPLATES[:count])]


def fallback_script(goal: Optional[str]) -> list[dict]:
    """Fixed-size script for a survey with no saved questions. Never persisted."""
    g = normalize_goal(goal)
    return [_question(t.format(goal=g), i) for i, t in enumerate(_FALLBACK_TEMPLATES)]


def intro_message(goal: Optional[str]) -> str:
    g = (goal or "").strip() or "this product"
    return (
        f"Thanks for joining! I'll ask a few quick questions about your experience with {g}. "
        "Take your time and be as honest as you like."
    )

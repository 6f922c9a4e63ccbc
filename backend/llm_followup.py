# LLM judgment: is an answer shallow enough to deserve one probing follow-up?
from __future__ import annotations
from typing import Any, Optional
import os, re
import json
import logging
from openai import OpenAI, OpenAIError, APIConnectionError, APIStatusError, APITimeoutError, RateLimitError
from dotenv import load_dotenv

from schemas import FollowUpResult

load_dotenv()
log = logging.getLogger(__name__)

NO_FOLLOW_UP = FollowUpResult(should_follow_up=False, follow_up_question=None, reason="")

_SYSTEM_PROMPT = (
    "You are a strategic research assistant reviewing one answer from a customer interview.\n"
    "If the answer is shallow (e.g. \"it was good\", \"nice\", \"don't know\"), write ONE short, "
    "curious, context-aware probing follow-up question that moves toward the research goal.\n"
    "If the answer is detailed or clearly complete, do NOT follow up.\n"
    "CRITICAL:\n"
    "1. Do NOT follow up if the question is itself already a follow-up (category PROBE).\n"
    "2. Do NOT just say thank you. If you have no specific probe, set should_follow_up to false.\n"
    "Return ONLY JSON: "
    '{"should_follow_up": boolean, "follow_up_question": string|null, "reason": string}'
)

_FENCE = re.compile(r"```(?:json)?\s*|```", re.I)
_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")
_THANKS_ONLY = re.compile(r"^\W*(thank(s| you)|thx|great,? thanks|appreciate it)\b[^?]*$", re.I)


def _loads(text: str) -> Optional[Any]:
    cleaned = _FENCE.sub("", text or "").strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        m = _JSON_BLOCK.search(cleaned)
        if not m:
            return None
        try:
            return json.loads(m.group(0))
        except json.JSONDecodeError:
            return None


def parse_judgment(text: str) -> FollowUpResult:
    """Coerce raw model output into a judgment, failing toward no follow-up.

    Anything that is not an object with ``should_follow_up`` literally true
    and a non-empty, non-"thank you" question becomes a negative judgment.
    """
    data = _loads(text)
    if not isinstance(data, dict):
        return FollowUpResult(should_follow_up=False, reason="unparseable judgment")

    reason = str(data.get("reason") or "").strip()
    question = data.get("follow_up_question")
    question = question.strip() if isinstance(question, str) else ""

    if data.get("should_follow_up") is not True or not question:
        return FollowUpResult(should_follow_up=False, follow_up_question=None, reason=reason)
    if _THANKS_ONLY.match(question):
        return FollowUpResult(should_follow_up=False, follow_up_question=None, reason="courtesy reply, not a probe")
    return FollowUpResult(should_follow_up=True, follow_up_question=question, reason=reason)


class FollowUpJudge:
    """Asks the model whether an answer needs a probe.

    Never raises for upstream trouble: a missing key, API errors and bad
    output all come back as ``should_follow_up=False`` so the interview
    keeps moving.
    """

    def __init__(self, client: Optional[OpenAI] = None, model: str = "gpt-4o-mini"):
        self.client = client
        self.model = model

    @classmethod
    def from_env(cls) -> "FollowUpJudge":
        api_key = os.getenv("OPENAI_API_KEY", "")
        timeout = float(os.getenv("LLM_TIMEOUT", "15"))
        client = OpenAI(api_key=api_key, timeout=timeout, max_retries=1) if api_key else None
        return cls(client=client, model=os.getenv("LLM_MODEL", "gpt-4o-mini"))

    def judge(self, question_text: str, answer: str, survey_goal: Optional[str]) -> FollowUpResult:
        if not (answer or "").strip():
            return NO_FOLLOW_UP
        if not self.client:
            return FollowUpResult(should_follow_up=False, reason="no LLM configured")

        goal = (survey_goal or "").strip() or "this product or experience"
        user_message = f"SURVEY_GOAL: {goal}\nLAST_QUESTION: {question_text}\nUSER_ANSWER: {answer}"
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                temperature=0.3,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": user_message},
                ],
            )
            content = resp.choices[0].message.content or ""
        except (RateLimitError, APITimeoutError, APIStatusError, APIConnectionError) as e:
            log.warning("follow-up judgment unavailable: %s", e)
            return FollowUpResult(should_follow_up=False, reason="judge unavailable")
        except OpenAIError as e:
            log.warning("follow-up judgment failed: %s", e)
            return FollowUpResult(should_follow_up=False, reason="judge error")
        except (IndexError, AttributeError) as e:
            log.warning("follow-up judgment returned no content: %s", e)
            return FollowUpResult(should_follow_up=False, reason="empty judgment")

        result = parse_judgment(content)
        log.debug("follow-up judgment: %s", result)
        return result

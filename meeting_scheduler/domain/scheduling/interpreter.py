"""
Response interpretation for inbound scheduling replies

The AI call sits behind ResponseInterpreter.classify(). Its output is validated
against the tagged-union schema at the boundary, then every instant is parsed in
the request's timezone and reconciled with the grounding table. Anything that
does not survive those checks becomes an "unclear" reply for a human.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

import httpx
from pydantic import ValidationError

from ...config import AI_API_KEY, AI_API_URL, AI_MAX_TOKENS, AI_MODEL, AI_TIMEOUT_SECONDS
from ...utils.datetime_utils import format_for_display, parse_instant, to_iso, to_local, utcnow
from . import constants as c
from .grounding import WEEKDAYS, GroundingTable, mentioned_weekdays, strip_quoted
from .schemas import INTERPRETATION_SCHEMA, UnclearIntent, interpretation_adapter

logger = logging.getLogger(__name__)


@dataclass
class ReplyContext:
    """Everything the interpreter is allowed to see about one reply"""

    request_id: str
    reply_text: str
    proposed_times: List[str]
    timezone: str
    grounding: GroundingTable
    subject: str = ""
    meeting_title: str = ""


@dataclass
class InterpretedReply:
    """Interpretation after boundary validation and grounding; times are naive UTC"""

    intent: str
    confidence: str = "medium"
    sentiment: Optional[str] = None
    reasoning: str = ""
    selected_time: Optional[datetime] = None
    counter_proposed_times: List[datetime] = field(default_factory=list)
    question: Optional[str] = None
    downgrade_reason: Optional[str] = None

    @property
    def needs_review(self) -> bool:
        return self.intent == c.INTENT_UNCLEAR or self.confidence == "low"

    def audit_text(self) -> str:
        text = self.reasoning or ""
        if self.downgrade_reason:
            text = f"{text} [downgraded to unclear: {self.downgrade_reason}]".strip()
        return text


def parse_interpretation(raw: Any):
    """
    Validate raw interpreter output against the tagged union.
    Malformed output becomes an UnclearIntent instead of propagating.
    """
    try:
        if isinstance(raw, (str, bytes)):
            return interpretation_adapter.validate_json(raw)
        return interpretation_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(f"⚠️ Interpreter output failed validation: {e.error_count()} error(s)")
        return UnclearIntent(intent="unclear", confidence="low", reasoning=f"Malformed interpreter output: {str(e)[:300]}")


class ResponseInterpreter(ABC):
    """Classifies a reply into one of the scheduling intents"""

    @abstractmethod
    async def classify(self, context: ReplyContext):
        """Return a validated intent model (see schemas.Interpretation)"""


def build_prompt(context: ReplyContext) -> str:
    """Interpretation prompt: grounding table, proposed times and the reply body"""
    if context.proposed_times:
        proposed = "\n".join(
            f"{i + 1}. {format_for_display(parse_instant(t), context.timezone)} ({t})"
            for i, t in enumerate(context.proposed_times)
        )
    else:
        proposed = "None provided"

    return f"""Analyze this email reply to a meeting scheduling request.

{context.grounding.render()}

PROSPECT'S TIMEZONE: {context.timezone}
MEETING: {context.meeting_title}

## Proposed Times
{proposed}

## Email Reply
Subject: {context.subject}
{context.reply_text}

## Task
Decide whether the sender accepts one of the proposed times, declines the meeting,
proposes other times, asks a question, or is unclear.
- Resolve every day reference ONLY with the DATE REFERENCE TABLE above. Never guess a date.
- Return times as the sender stated them, in their LOCAL timezone, as ISO timestamps
  WITHOUT an offset (e.g. 2026-10-20T14:00:00). Do not convert to UTC.
- If accepting a proposed time, copy that time into selected_time.
- Use confidence "low" whenever you are not sure.

Respond with a single JSON object matching this schema:
{json.dumps(INTERPRETATION_SCHEMA)}"""


def _extract_json(text: str) -> str:
    text = text.strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.S)
    if fenced:
        return fenced.group(1).strip()
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return text


class HttpResponseInterpreter(ResponseInterpreter):
    """Calls a messages-style LLM endpoint with a bounded timeout"""

    def __init__(
        self,
        api_url: str = AI_API_URL,
        api_key: Optional[str] = AI_API_KEY,
        model: str = AI_MODEL,
        max_tokens: int = AI_MAX_TOKENS,
        timeout: float = AI_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.transport = transport

    async def classify(self, context: ReplyContext):
        if not self.api_key:
            logger.error("❌ AI_API_KEY not configured, reply left for human review")
            return UnclearIntent(intent="unclear", confidence="low", reasoning="Interpreter not configured")

        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": 0.2,
            "system": (
                "You are an expert at understanding email intent in scheduling conversations. "
                "You only output JSON."
            ),
            "messages": [{"role": "user", "content": build_prompt(context)}],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"⏱️ Interpreter timed out for request {context.request_id}")
            return UnclearIntent(intent="unclear", confidence="low", reasoning="Interpreter timed out")
        except httpx.HTTPError as e:
            logger.error(f"❌ Interpreter call failed for request {context.request_id}: {str(e)}")
            return UnclearIntent(intent="unclear", confidence="low", reasoning="Interpreter call failed")

        if response.status_code != 200:
            logger.error(f"❌ Interpreter returned {response.status_code}: {response.text[:300]}")
            return UnclearIntent(intent="unclear", confidence="low", reasoning=f"Interpreter HTTP {response.status_code}")

        try:
            blocks = response.json().get("content", [])
            text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        except (ValueError, AttributeError) as e:
            logger.error(f"❌ Unreadable interpreter response: {str(e)}")
            return UnclearIntent(intent="unclear", confidence="low", reasoning="Unreadable interpreter response")

        return parse_interpretation(_extract_json(text))


_ORDINALS = {"first": 0, "second": 1, "third": 2, "fourth": 3, "fifth": 4}
_OPTION_PATTERNS = [
    re.compile(r"option\s*#?\s*(\d)", re.I),
    re.compile(r"number\s*(\d)", re.I),
    re.compile(r"#(\d)"),
    re.compile(r"\b(first|second|third|fourth|fifth)\b", re.I),
]


def match_selected_time(proposed_times: List[str], reply_text: str, timezone: str) -> Optional[str]:
    """
    Find which proposed time an "accept" refers to when none was extracted:
    an option number or ordinal, or a weekday that names exactly one proposed time.
    """
    text = strip_quoted(reply_text).lower()
    for pattern in _OPTION_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        token = match.group(1).lower()
        index = _ORDINALS[token] if token in _ORDINALS else int(token) - 1
        if 0 <= index < len(proposed_times):
            return proposed_times[index]

    named = mentioned_weekdays(text)
    if named:
        matches = [
            t for t in proposed_times if WEEKDAYS[to_local(parse_instant(t), timezone).weekday()] in named
        ]
        if len(matches) == 1:
            return matches[0]
    return None


def _unclear(parsed, reason: str) -> InterpretedReply:
    logger.info(f"🤔 Reply downgraded to unclear: {reason}")
    return InterpretedReply(
        intent=c.INTENT_UNCLEAR,
        confidence="low",
        sentiment=getattr(parsed, "sentiment", None),
        reasoning=getattr(parsed, "reasoning", ""),
        downgrade_reason=reason,
    )


def ground_interpretation(parsed, context: ReplyContext, now: Optional[datetime] = None) -> InterpretedReply:
    """Parse every instant in the request's timezone and reconcile it with the grounding table"""
    now = now or utcnow()
    base = dict(confidence=parsed.confidence, sentiment=parsed.sentiment, reasoning=parsed.reasoning)

    if parsed.intent == c.INTENT_ACCEPT:
        raw_time = parsed.selected_time or match_selected_time(
            context.proposed_times, context.reply_text, context.timezone
        )
        if not raw_time:
            return _unclear(parsed, "accept without an identifiable time")
        try:
            selected = parse_instant(raw_time, context.timezone)
        except ValueError:
            return _unclear(parsed, f"unparseable selected_time {raw_time!r}")

        problem = context.grounding.reconcile(selected, context.reply_text, now, offered=context.proposed_times)
        if problem:
            return _unclear(parsed, problem)

        if to_iso(selected) not in set(context.proposed_times):
            # Accepting a time we never offered is a counter-proposal of that time
            return InterpretedReply(intent=c.INTENT_COUNTER_PROPOSE, counter_proposed_times=[selected], **base)
        return InterpretedReply(intent=c.INTENT_ACCEPT, selected_time=selected, **base)

    if parsed.intent == c.INTENT_COUNTER_PROPOSE:
        times: List[datetime] = []
        for raw_time in parsed.counter_proposed_times:
            try:
                instant = parse_instant(raw_time, context.timezone)
            except ValueError:
                return _unclear(parsed, f"unparseable counter-proposed time {raw_time!r}")
            problem = context.grounding.reconcile(instant, context.reply_text, now)
            if problem:
                return _unclear(parsed, problem)
            if instant not in times:
                times.append(instant)
        return InterpretedReply(intent=c.INTENT_COUNTER_PROPOSE, counter_proposed_times=times, **base)

    if parsed.intent == c.INTENT_QUESTION:
        return InterpretedReply(intent=c.INTENT_QUESTION, question=parsed.question, **base)

    return InterpretedReply(intent=parsed.intent, **base)


async def interpret_reply(
    interpreter: ResponseInterpreter, context: ReplyContext, now: Optional[datetime] = None
) -> InterpretedReply:
    """classify() → boundary validation → grounding. Never raises for interpreter problems."""
    try:
        raw = await interpreter.classify(context)
    except Exception as e:
        logger.error(f"❌ Interpreter raised for request {context.request_id}: {str(e)}")
        raw = UnclearIntent(intent="unclear", confidence="low", reasoning="Interpreter error")

    # Stubs and adapters may hand back plain dicts
    parsed = raw if hasattr(raw, "intent") else parse_interpretation(raw)
    return ground_interpretation(parsed, context, now)

# src/agents/llm_agent.py
from openai import OpenAI, OpenAIError
from typing import List, Optional, Any
from dataclasses import dataclass
from src.config.settings import Settings
from src.config.constants import ANALYSIS_FIELDS, THEME_TAXONOMY
from src.models.errors import CapabilityUnavailable, ClassificationError
from src.models.schemas import FeedbackRecord, StructuredAnalysis
from src.models.validation import theme_is_valid
import json
import math
import re
import logging

logger = logging.getLogger(__name__)

FENCE_START = re.compile(r'^```(?:json)?\s*', re.IGNORECASE)
FENCE_END = re.compile(r'\s*```\s*$')


class ChatAgent:
    """OpenAI chat completion client."""

    def __init__(self, config: Settings):
        self.config = config
        # Retries are owned by FeedbackClassifier, not the SDK
        self.client = OpenAI(api_key=config.openai_api_key, max_retries=0) if config.openai_api_key else None
        self.model = config.openai_llm_model

    @property
    def is_available(self) -> bool:
        return self.client is not None

    def chat(self, messages: List[dict], temperature: Optional[float] = None,
             max_tokens: Optional[int] = None) -> str:
        """
        Send a list of messages to the OpenAI chat model and get the response.

        Args:
            messages: List of message dicts (e.g., [{"role": "user", "content": "Hello"}])
            temperature: Sampling temperature (provider default if None)
            max_tokens: Maximum length of the reply (provider default if None)

        Returns:
            The assistant's reply as a string.

        Raises:
            CapabilityUnavailable: If no OpenAI API key is configured
        """
        if self.client is None:
            raise CapabilityUnavailable("chat")

        params = {}
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens is not None:
            params["max_tokens"] = max_tokens

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **params
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


@dataclass
class AttemptResult:
    """Outcome of one classification attempt; carries the raw text into the retry."""
    analysis: Optional[StructuredAnalysis] = None
    error: Optional[str] = None
    raw: str = ""


def extract_json_text(raw: str) -> str:
    """
    Strip code fences and return the first balanced {...} span.

    Falls back to the span between the first '{' and the last '}' when braces
    never balance, and to the cleaned text when there is no '{' at all.
    """
    text = FENCE_END.sub('', FENCE_START.sub('', raw.strip()))
    start = text.find('{')
    if start == -1:
        return text

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == '{':
            depth += 1
        elif ch == '}':
            depth -= 1
            if depth == 0:
                return text[start:i + 1]

    end = text.rfind('}')
    return text[start:end + 1] if end > start else text[start:]


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def validate_analysis_payload(payload: Any) -> StructuredAnalysis:
    """
    Check a parsed classifier payload and normalize it.

    Raises:
        ValueError: Naming the first rule that failed
    """
    if not isinstance(payload, dict):
        raise ValueError("Response is not a JSON object")
    for key in ANALYSIS_FIELDS:
        if key not in payload:
            raise ValueError(f"Missing key: {key}")

    summary = payload["summary"]
    if not isinstance(summary, str) or not summary.strip():
        raise ValueError("Invalid summary")
    if not theme_is_valid(payload["theme"]):
        raise ValueError("Invalid theme")
    sentiment_label = payload["sentiment_label"]
    if not isinstance(sentiment_label, str) or not sentiment_label.strip():
        raise ValueError("Invalid sentiment_label")

    sentiment_score = _to_number(payload["sentiment_score"])
    if sentiment_score is None or not 0 <= sentiment_score <= 1:
        raise ValueError("Invalid sentiment_score")
    urgency_score = _to_number(payload["urgency_score"])
    if urgency_score is None or not 0 <= urgency_score <= 100:
        raise ValueError("Invalid urgency_score")

    if not isinstance(payload["proposed_fix"], str):
        raise ValueError("Invalid proposed_fix")
    if not isinstance(payload["suggested_owner"], str):
        raise ValueError("Invalid suggested_owner")

    return StructuredAnalysis(
        summary=summary.strip(),
        theme=payload["theme"],
        sentiment_label=sentiment_label.strip(),
        sentiment_score=sentiment_score,
        # Half-up rounding
        urgency_score=int(math.floor(urgency_score + 0.5)),
        proposed_fix=payload["proposed_fix"].strip(),
        suggested_owner=payload["suggested_owner"].strip()
    )


def parse_analysis(raw: str) -> AttemptResult:
    """Run cleanup, JSON parsing and validation over a raw model reply."""
    try:
        payload = json.loads(extract_json_text(raw))
    except json.JSONDecodeError:
        return AttemptResult(error="Invalid JSON from model", raw=raw)
    try:
        return AttemptResult(analysis=validate_analysis_payload(payload), raw=raw)
    except ValueError as e:
        return AttemptResult(error=str(e), raw=raw)


def build_classification_messages(feedback: FeedbackRecord) -> List[dict]:
    """Build the system and user prompts for a first classification attempt."""
    themes = ", ".join(THEME_TAXONOMY)
    system_prompt = f"""You triage customer feedback for a developer platform so product managers can prioritize work.

Respond with a single JSON object and nothing else: no markdown, no commentary.

Required fields:
{{
  "summary": "one or two sentences describing the core issue",
  "theme": "exactly one of: {themes}",
  "sentiment_label": "positive, negative, or neutral",
  "sentiment_score": number from 0.0 (very negative) to 1.0 (very positive),
  "urgency_score": integer from 0 (no urgency) to 100 (critical, blocking),
  "proposed_fix": "a concrete next step",
  "suggested_owner": "owning team, e.g. Docs, Engineering, Dashboard, API, Billing"
}}

Theme guide:
- "Docs confusion": unclear or contradictory documentation, missing examples
- "Billing/pricing": unexpected charges, invoices, pricing questions
- "Performance/latency": slow responses, timeouts, replication lag
- "Reliability/outage": 5xx errors, downtime, failed deployments
- "Authentication/access": login, SSO, tokens, permissions
- "Dashboard UX": navigation problems and UI bugs in the dashboard
- "API ergonomics": API design, SDK and CLI problems
- "Limits/quotas": rate limits, size limits, resource caps
- "Feature request": asks for new capabilities

Urgency guide:
- 90-100: production outage, data loss, security issue, blocked enterprise customer
- 70-89: significant workflow impact, several users affected, recurring
- 40-69: moderate inconvenience, workaround exists, single user
- 0-39: nice to have, cosmetic, praise

Pick the theme of the primary issue, not of passing mentions."""

    user_prompt = f"""Classify this feedback.

SOURCE: {feedback.source}
CUSTOMER TIER: {feedback.customer_tier or 'Unknown'}
TITLE: {feedback.title or 'No title'}

BODY:
{feedback.body}

Reply with the JSON object only."""

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt}
    ]


def build_retry_messages(feedback: FeedbackRecord, previous: AttemptResult) -> List[dict]:
    """Build the corrective prompt from the failed attempt's raw output and error."""
    field_lines = "\n".join([
        "- summary (string)",
        f"- theme (one of: {', '.join(THEME_TAXONOMY)})",
        "- sentiment_label (string)",
        "- sentiment_score (number between 0 and 1)",
        "- urgency_score (integer between 0 and 100)",
        "- proposed_fix (string)",
        "- suggested_owner (string)",
    ])
    fix_prompt = f"""Your previous reply could not be used.

PREVIOUS REPLY:
{previous.raw}

ERROR: {previous.error or 'Invalid JSON structure'}

Reply with one JSON object containing exactly these fields:
{field_lines}

Feedback being classified:
Source: {feedback.source}
Title: {feedback.title or 'No title'}
Body: {feedback.body[:200]}...

Output only the corrected JSON."""

    return [
        {"role": "system", "content": "You are a JSON generator. Output only valid JSON, nothing else."},
        {"role": "user", "content": fix_prompt}
    ]


class FeedbackClassifier:
    """Classify feedback into the theme taxonomy with one corrective retry."""

    def __init__(self, config: Settings):
        """
        Initialize the classifier.

        Args:
            config: Settings object with OpenAI and classifier configuration
        """
        self.config = config
        self.agent = ChatAgent(config)
        self.model = config.openai_llm_model

    @property
    def is_available(self) -> bool:
        return self.agent.is_available

    def classify(self, feedback: FeedbackRecord) -> StructuredAnalysis:
        """
        Classify a feedback record.

        The first attempt runs at the configured temperature. If it yields no
        valid analysis, a second attempt is sent with the previous reply and
        its error at the lower retry temperature.

        Returns:
            The validated analysis from whichever attempt succeeded

        Raises:
            ClassificationError: If both attempts fail, or with unavailable=True
                when no chat capability is configured
        """
        if not self.is_available:
            raise ClassificationError("Missing capability: chat", unavailable=True)

        first = self._attempt(
            build_classification_messages(feedback),
            self.config.classifier_temperature
        )
        if first.analysis is not None:
            return first.analysis

        logger.warning(f"Classification of {feedback.id} failed ({first.error}); retrying once")
        second = self._attempt(
            build_retry_messages(feedback, first),
            self.config.classifier_retry_temperature
        )
        if second.analysis is not None:
            return second.analysis

        raise ClassificationError(f"{second.error} (after retry)")

    def _attempt(self, messages: List[dict], temperature: float) -> AttemptResult:
        try:
            raw = self.agent.chat(
                messages,
                temperature=temperature,
                max_tokens=self.config.classifier_max_tokens
            )
        except OpenAIError as e:
            return AttemptResult(error=str(e) or "Model request failed")
        return parse_analysis(raw)

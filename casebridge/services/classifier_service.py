"""Email classifiers used by the triage pipeline.

A classifier receives the frozen context snapshot built by triage and returns
a raw suggestion dict. Its output is untrusted: triage validates the shape
with ``ClassifierOutput`` and every id against office reference data.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from casebridge.core.config import settings
from casebridge.db.enums import EmailType, Priority, RecommendedAction

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def extract_json_object(text: str) -> dict | None:
    """First JSON object in model text. Markdown fences and surrounding prose are ignored."""
    content = _FENCE_RE.sub("", text.strip())
    decoder = json.JSONDecoder()
    start = content.find("{")
    while start != -1:
        try:
            data, _ = decoder.raw_decode(content, start)
        except json.JSONDecodeError:
            start = content.find("{", start + 1)
            continue
        if isinstance(data, dict):
            return data
        start = content.find("{", start + 1)
    logger.warning("No JSON object in classifier content")
    return None


class ClassifierUnavailable(Exception):
    """The classifier could not produce a usable answer. Worth retrying."""


class ClassifierOutput(BaseModel):
    """Shape of a classifier answer. Ids may be numeric or reference names."""

    model_config = ConfigDict(extra="ignore")

    email_type: EmailType = EmailType.OTHER
    email_type_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    recommended_action: RecommendedAction
    action_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    case_type_id: int | str | None = None
    status_id: int | str | None = None
    category_type_id: int | str | None = None
    assignee_id: int | str | None = None
    priority: Priority | None = None
    tags: list[int | str] = Field(default_factory=list)
    existing_case_id: str | None = None
    campaign_id: str | None = None
    summary: str | None = None
    reasoning: str | None = None


class Classifier(ABC):
    """Abstract base class for classifiers."""

    name: str = "classifier"

    @abstractmethod
    async def classify(self, context: dict[str, Any]) -> dict[str, Any]:
        """Return the raw suggestion for a context snapshot."""
        pass


class HttpClassifier(Classifier):
    """Remote model endpoint taking ``{model, context}`` and returning JSON."""

    name = "http"

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url or settings.CLASSIFIER_URL
        self.api_key = api_key if api_key is not None else settings.CLASSIFIER_API_KEY
        self.model = model or settings.CLASSIFIER_MODEL
        self.timeout = timeout or settings.CLASSIFIER_TIMEOUT_SECONDS
        self._transport = transport

    async def classify(self, context: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.url,
                    headers=headers,
                    json={"model": self.model, "context": context},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ClassifierUnavailable(
                f"Classifier returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ClassifierUnavailable(f"Classifier request failed: {exc}") from exc
        except ValueError as exc:
            raise ClassifierUnavailable("Classifier returned non-JSON body") from exc

        if isinstance(data, dict) and isinstance(data.get("suggestion"), dict):
            return data["suggestion"]
        if isinstance(data, dict) and isinstance(data.get("content"), str):
            parsed = extract_json_object(data["content"])
            if parsed is None:
                raise ClassifierUnavailable("Classifier content was not a JSON object")
            return parsed
        if isinstance(data, dict):
            return data
        raise ClassifierUnavailable("Classifier response was not a JSON object")


URGENT_KEYWORDS = (
    "urgent",
    "emergency",
    "eviction",
    "homeless",
    "immediately",
    "asap",
    "danger",
)
STOPWORDS = frozenset(
    "about after again also been before being from have here into just more "
    "need only over please regarding some than that their there they this "
    "very what when which with would your".split()
)
_WORD_RE = re.compile(r"[a-z0-9']+")


def _words(text: str | None) -> set[str]:
    return {w for w in _WORD_RE.findall((text or "").lower()) if len(w) >= 4 and w not in STOPWORDS}


def keyword_tags(text: str | None, tags: list[dict], limit: int = 5) -> list[int]:
    """Tags whose name words all appear in ``text``, most specific first."""
    text_words = _words(text)
    scored = []
    for tag in tags:
        name_words = _words(tag.get("name"))
        if name_words and name_words <= text_words:
            scored.append((-len(name_words), tag["id"]))
    return [tag_id for _, tag_id in sorted(scored)[:limit]]


class RuleBasedClassifier(Classifier):
    """Keyword heuristics. Used when no classifier endpoint is configured."""

    name = "rules"

    async def classify(self, context: dict[str, Any]) -> dict[str, Any]:
        message = context.get("message") or {}
        subject = message.get("subject") or ""
        text = f"{subject} {message.get('text') or ''}".lower()
        reference = context.get("reference_data") or {}
        tags = keyword_tags(text, reference.get("tag") or [])

        campaigns = context.get("campaigns") or []
        best_campaign = campaigns[0] if campaigns else None
        if best_campaign and best_campaign.get("confidence", 0) >= 0.8:
            return {
                "email_type": EmailType.CAMPAIGN.value,
                "email_type_confidence": best_campaign["confidence"],
                "recommended_action": RecommendedAction.ASSIGN_CAMPAIGN.value,
                "action_confidence": best_campaign["confidence"],
                "campaign_id": best_campaign["id"],
                "priority": Priority.LOW.value,
                "summary": subject,
                "reasoning": f"Matches campaign {best_campaign.get('name')}",
            }

        priority = Priority.MEDIUM.value
        if any(keyword in text for keyword in URGENT_KEYWORDS):
            priority = Priority.HIGH.value

        subject_words = _words(subject)
        best_case = None
        best_overlap = 0
        for case in context.get("cases") or []:
            overlap = len(subject_words & _words(case.get("summary")))
            if overlap > best_overlap:
                best_case, best_overlap = case, overlap
        if best_case is not None and best_overlap >= 2:
            return {
                "email_type": EmailType.CASEWORK.value,
                "email_type_confidence": 0.7,
                "recommended_action": RecommendedAction.ADD_TO_EXISTING.value,
                "action_confidence": min(0.6 + 0.1 * best_overlap, 0.9),
                "existing_case_id": best_case["id"],
                "case_type_id": best_case.get("case_type_id"),
                "priority": priority,
                "tags": tags,
                "summary": f"Related to: {best_case.get('summary')}",
                "reasoning": f"{best_overlap} subject words shared with an open case",
            }

        case_type_id = None
        for item in sorted(reference.get("case_type") or [], key=lambda i: i["id"]):
            name_words = _words(item.get("name"))
            if name_words and name_words <= _words(text):
                case_type_id = item["id"]
                break

        return {
            "email_type": EmailType.CASEWORK.value,
            "email_type_confidence": 0.7,
            "recommended_action": RecommendedAction.CREATE_CASE.value,
            "action_confidence": 0.6,
            "case_type_id": case_type_id,
            "priority": priority,
            "tags": tags,
            "summary": subject,
            "reasoning": "No open case matched; new casework",
        }


def get_classifier() -> Classifier:
    if settings.CLASSIFIER_URL:
        return HttpClassifier()
    return RuleBasedClassifier()

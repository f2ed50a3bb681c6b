"""Campaign detection for inbound mail."""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from dataclasses import dataclass

import nh3
from sqlalchemy import select
from sqlalchemy.orm import Session

from casebridge.core.config import settings
from casebridge.db.models import Campaign

logger = logging.getLogger(__name__)

MAX_MATCHES = 5
KEYWORD_WEIGHT = 0.7

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_SPACE_RE = re.compile(r"\s+")


class CampaignServiceError(Exception):
    pass


class InvalidSubjectPattern(CampaignServiceError):
    pass


@dataclass(frozen=True)
class CampaignMatch:
    campaign_id: uuid.UUID
    name: str
    confidence: float
    method: str

    def to_dict(self) -> dict:
        return {
            "id": str(self.campaign_id),
            "name": self.name,
            "confidence": round(self.confidence, 4),
            "method": self.method,
        }


def normalize_content(subject: str | None, body: str | None) -> str:
    text = f"{subject or ''} {nh3.clean(body or '', tags=set())}".lower()
    text = _NON_ALNUM_RE.sub("", text)
    return _SPACE_RE.sub(" ", text).strip()


def compute_fingerprint(subject: str | None, body: str | None) -> str:
    """Content hash shared by every copy of the same template letter."""
    return hashlib.sha256(normalize_content(subject, body).encode("utf-8")).hexdigest()


def _keywords(campaign: Campaign) -> set[str]:
    text = f"{campaign.name} {campaign.description or ''}".lower()
    return {w for w in _NON_ALNUM_RE.sub(" ", text).split() if len(w) >= 4}


def _pattern_matches(pattern: str, subject: str) -> bool:
    try:
        return re.search(pattern, subject, re.IGNORECASE) is not None
    except re.error:
        logger.warning("Ignoring invalid campaign subject pattern %r", pattern)
        return False


def score_campaign(campaign: Campaign, subject: str, fingerprint: str, words: set[str]) -> CampaignMatch | None:
    if campaign.fingerprint and campaign.fingerprint == fingerprint:
        return CampaignMatch(campaign.id, campaign.name, 1.0, "fingerprint")
    if campaign.subject_pattern and _pattern_matches(campaign.subject_pattern, subject):
        return CampaignMatch(campaign.id, campaign.name, 0.95, "subject_pattern")
    keywords = _keywords(campaign)
    if not keywords:
        return None
    matched = len(keywords & words)
    if not matched:
        return None
    return CampaignMatch(
        campaign.id, campaign.name, matched / len(keywords) * KEYWORD_WEIGHT, "keywords"
    )


def match_campaigns(
    db: Session,
    office_id: uuid.UUID,
    subject: str | None,
    body: str | None,
    *,
    floor: float | None = None,
    limit: int = MAX_MATCHES,
) -> list[CampaignMatch]:
    """Known campaigns this message resembles, best first. Weak matches are dropped."""
    floor = settings.CAMPAIGN_MATCH_FLOOR if floor is None else floor
    subject = subject or ""
    fingerprint = compute_fingerprint(subject, body)
    words = set(normalize_content(subject, body).split())

    matches = []
    campaigns = db.execute(
        select(Campaign).where(Campaign.office_id == office_id).order_by(Campaign.created_at)
    ).scalars()
    for campaign in campaigns:
        match = score_campaign(campaign, subject, fingerprint, words)
        if match is not None and match.confidence >= floor:
            matches.append(match)
    matches.sort(key=lambda m: (-m.confidence, m.name, str(m.campaign_id)))
    return matches[:limit]


def create_campaign(
    db: Session,
    office_id: uuid.UUID,
    name: str,
    *,
    description: str | None = None,
    subject_pattern: str | None = None,
    sample_subject: str | None = None,
    sample_body: str | None = None,
) -> Campaign:
    if subject_pattern:
        try:
            re.compile(subject_pattern)
        except re.error as exc:
            raise InvalidSubjectPattern(str(exc)) from exc
    campaign = Campaign(
        office_id=office_id,
        name=name,
        description=description,
        subject_pattern=subject_pattern,
    )
    if sample_subject is not None or sample_body is not None:
        campaign.fingerprint = compute_fingerprint(sample_subject, sample_body)
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    return campaign


def record_message(db: Session, campaign_id: uuid.UUID) -> None:
    campaign = db.get(Campaign, campaign_id)
    if campaign is not None:
        campaign.message_count += 1

import pytest

from casebridge.db.models import Campaign
from casebridge.services import campaign_service

LETTER_SUBJECT = "Save our library"
LETTER_BODY = "<p>I am writing to ask you to <b>save</b> the Anytown library.</p>"


def test_fingerprint_ignores_markup_case_and_punctuation():
    a = campaign_service.compute_fingerprint(LETTER_SUBJECT, LETTER_BODY)
    b = campaign_service.compute_fingerprint(
        "SAVE our library!", "I am writing to ask you to save the   Anytown library."
    )
    assert a == b
    assert a != campaign_service.compute_fingerprint("Save our pool", LETTER_BODY)


def test_template_copy_matches_by_fingerprint(db, office):
    campaign = campaign_service.create_campaign(
        db, office.id, "Library closure", sample_subject=LETTER_SUBJECT, sample_body=LETTER_BODY
    )

    matches = campaign_service.match_campaigns(db, office.id, LETTER_SUBJECT, LETTER_BODY)

    assert len(matches) == 1
    assert matches[0].campaign_id == campaign.id
    assert matches[0].confidence == 1.0
    assert matches[0].method == "fingerprint"


def test_subject_pattern_match(db, office):
    campaign_service.create_campaign(db, office.id, "Bus route 7", subject_pattern=r"route\s*7")

    matches = campaign_service.match_campaigns(db, office.id, "Keep ROUTE 7 running", "")

    assert [m.method for m in matches] == ["subject_pattern"]
    assert matches[0].confidence == 0.95


def test_keyword_overlap_is_scaled_and_floored(db, office):
    campaign_service.create_campaign(
        db, office.id, "Library closure", description="protect library funding"
    )
    # keywords: library, closure, protect, funding
    strong = campaign_service.match_campaigns(
        db, office.id, "Library closure", "Please protect funding", floor=0.3
    )
    assert strong[0].method == "keywords"
    assert strong[0].confidence == pytest.approx(0.7)

    weak = campaign_service.match_campaigns(db, office.id, "Library hours", "", floor=0.3)
    assert weak == []


def test_matches_are_ranked_best_first(db, office):
    campaign_service.create_campaign(db, office.id, "Library closure", description="library funding")
    pattern = campaign_service.create_campaign(
        db, office.id, "Library petition", subject_pattern="library"
    )

    matches = campaign_service.match_campaigns(db, office.id, "Library closure", "funding", floor=0.1)

    assert matches[0].campaign_id == pattern.id
    assert [m.confidence for m in matches] == sorted((m.confidence for m in matches), reverse=True)


def test_invalid_subject_pattern_is_refused(db, office):
    with pytest.raises(campaign_service.InvalidSubjectPattern):
        campaign_service.create_campaign(db, office.id, "Broken", subject_pattern="(unclosed")
    assert db.query(Campaign).count() == 0


def test_record_message_counts(db, office):
    campaign = campaign_service.create_campaign(db, office.id, "Library closure")
    campaign_service.record_message(db, campaign.id)
    campaign_service.record_message(db, campaign.id)
    db.commit()
    db.refresh(campaign)
    assert campaign.message_count == 2

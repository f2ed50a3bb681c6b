from datetime import timedelta

import pytest

from casebridge import worker
from casebridge.db.enums import JobKind, JobState, TriageStatus
from casebridge.db.models import Case, Constituent, Job, Message, OutboxMessage, TriageSuggestion
from casebridge.db.types import utc_now
from casebridge.services import (
    campaign_service,
    classifier_service,
    job_service,
    sync_service,
    triage_service,
)
from casebridge.services.classifier_service import ClassifierUnavailable, RuleBasedClassifier


class FlakyClassifier(RuleBasedClassifier):
    """Fails the first ``failures`` calls, then answers like the rule-based one."""

    def __init__(self, failures=1):
        self.failures = failures
        self.calls = 0

    async def classify(self, context):
        self.calls += 1
        if self.calls <= self.failures:
            raise ClassifierUnavailable("classifier timed out")
        return await super().classify(context)


def _claim(db, message, office):
    triage_service.request_triage(db, office.id, message.id)
    return job_service.claim_job(db, "test-worker")


@pytest.mark.asyncio
async def test_unknown_sender_gets_create_case_suggestion(db, office, reference_data, make_message):
    message = make_message()
    job = _claim(db, message, office)

    result = await triage_service.process_message(db, job, classifier=RuleBasedClassifier())

    assert result["status"] == "awaiting_decision"
    steps = job.output["steps"]
    assert list(steps) == list(triage_service.STEPS)
    assert steps["match_constituent"]["result"]["status"] == "unmatched"
    assert steps["find_related_cases"]["result"]["skipped"] is True
    assert steps["parse"]["result"]["text"] == "My flat has damp and mould on every wall."

    suggestion = triage_service.get_suggestion(db, office.id, message.id)
    assert suggestion.recommended_action == "create_case"
    assert suggestion.suggested_case_type_id == reference_data["Housing"]
    assert suggestion.suggested_priority == "medium"
    assert suggestion.matched_constituent_id is None
    assert suggestion.decision == "pending"

    # Nothing is written anywhere until someone decides
    assert db.query(Case).count() == 0
    db.refresh(message)
    assert message.triage_status == TriageStatus.SUGGESTED.value


@pytest.mark.asyncio
async def test_known_sender_sees_open_cases_only(db, office, reference_data, constituent, case, make_message):
    closed = Case(
        office_id=office.id,
        constituent_id=constituent.id,
        external_id=40,
        status_id=reference_data["Closed"],
        summary="Old benefits query",
        pending_fields=[],
    )
    db.add(closed)
    db.commit()
    message = make_message(from_address="Jane.Doe@example.org", subject="Damp in bedroom is worse")
    job = _claim(db, message, office)

    await triage_service.process_message(db, job, classifier=RuleBasedClassifier())

    steps = job.output["steps"]
    assert steps["match_constituent"]["result"]["external_id"] == 7
    cases = steps["find_related_cases"]["result"]["cases"]
    assert [c["external_id"] for c in cases] == [42]

    suggestion = triage_service.get_suggestion(db, office.id, message.id)
    assert suggestion.recommended_action == "add_to_existing"
    assert suggestion.suggested_case_id == case.id


def test_validation_drops_unknown_ids_deterministically():
    context = {
        "reference_data": {
            "case_type": [{"id": 11, "name": "Housing"}],
            "status_type": [{"id": 1, "name": "Open"}],
            "tag": [{"id": 41, "name": "Damp"}],
        },
        "cases": [],
        "campaigns": [],
    }
    raw = {
        "email_type": "casework",
        "recommended_action": "add_to_existing",
        "existing_case_id": "9e0b3c1a-0000-4000-8000-000000000000",
        "case_type_id": 999,
        "status_id": "Open",
        "tags": ["Damp", "Mould", 41],
        "priority": "high",
    }

    first = triage_service.validate_suggestion(context, raw)
    second = triage_service.validate_suggestion(context, raw)
    assert first == second

    fields, dropped = first
    assert fields["suggested_case_type_id"] is None
    assert fields["suggested_status_id"] == 1
    assert fields["suggested_tags"] == [41]
    assert fields["suggested_case_id"] is None
    assert fields["recommended_action"] == "create_case"
    assert dropped == {
        "case_type_id": 999,
        "tags": ["Mould"],
        "existing_case_id": "9e0b3c1a-0000-4000-8000-000000000000",
        "recommended_action": "add_to_existing",
    }


def test_tags_fall_back_to_keywords_when_the_model_names_none():
    context = {
        "message": {"subject": "Damp in bedroom", "text": "It is getting worse"},
        "reference_data": {"tag": [{"id": 41, "name": "Damp"}, {"id": 43, "name": "Noise"}]},
    }

    fields, dropped = triage_service.validate_suggestion(
        context, {"email_type": "casework", "recommended_action": "create_case", "tags": ["Heating"]}
    )

    assert fields["suggested_tags"] == [41]
    assert dropped == {"tags": ["Heating"]}


def test_malformed_classifier_output_is_unavailable():
    with pytest.raises(ClassifierUnavailable):
        triage_service.validate_suggestion({}, {"recommended_action": "launch_rocket"})
    with pytest.raises(ClassifierUnavailable):
        triage_service.check_classifier_output(["not", "a", "dict"])


@pytest.mark.asyncio
async def test_retry_resumes_from_failed_step(db, office, reference_data, make_message, monkeypatch):
    real_match = campaign_service.match_campaigns
    match_calls = []

    def counting_match(*args, **kwargs):
        match_calls.append(args)
        return real_match(*args, **kwargs)

    monkeypatch.setattr(campaign_service, "match_campaigns", counting_match)

    message = make_message()
    job = _claim(db, message, office)
    classifier = FlakyClassifier(failures=1)

    with pytest.raises(triage_service.TriageStepFailed) as exc_info:
        await triage_service.process_message(db, job, classifier=classifier)
    assert exc_info.value.step == "classify"
    assert exc_info.value.retryable is True
    assert job.output["failed_step"] == "classify"
    assert "match_campaign" in job.output["steps"]
    snapshot = job.output["steps"]["build_context"]["result"]

    result = await triage_service.process_message(db, job, classifier=classifier)

    assert result["status"] == "awaiting_decision"
    assert len(match_calls) == 1
    assert classifier.calls == 2
    suggestion = triage_service.get_suggestion(db, office.id, message.id)
    assert suggestion.context_snapshot == snapshot


@pytest.mark.asyncio
async def test_forced_rerun_replaces_pending_suggestion(db, office, reference_data, make_message):
    message = make_message()
    job = _claim(db, message, office)
    await triage_service.process_message(db, job, classifier=RuleBasedClassifier())
    job_service.complete_job(db, job)

    # Same key returns the finished job; force queues a fresh one
    assert triage_service.request_triage(db, office.id, message.id).id == job.id
    rerun = triage_service.request_triage(db, office.id, message.id, force=True)
    assert rerun.id != job.id

    claimed = job_service.claim_job(db, "test-worker")
    await triage_service.process_message(db, claimed, classifier=RuleBasedClassifier())
    assert db.query(TriageSuggestion).count() == 1
    assert triage_service.get_suggestion(db, office.id, message.id).job_id == rerun.id


@pytest.mark.asyncio
async def test_classifier_outage_on_last_attempt_needs_manual_triage(
    db, office, reference_data, make_message, monkeypatch
):
    monkeypatch.setattr(classifier_service, "get_classifier", lambda: FlakyClassifier(failures=99))
    message = make_message()
    triage_service.request_triage(db, office.id, message.id)
    db.query(Job).update({Job.max_attempts: 1})
    db.commit()
    job = job_service.claim_job(db, "test-worker")

    state = await worker.run_job(db, job, "test-worker")

    assert state == JobState.FAILED.value
    db.refresh(message)
    assert message.triage_status == TriageStatus.NEEDS_MANUAL_TRIAGE.value
    assert db.query(TriageSuggestion).count() == 0


@pytest.mark.asyncio
async def test_classifier_outage_with_attempts_left_is_retried(
    db, office, reference_data, make_message, monkeypatch
):
    monkeypatch.setattr(classifier_service, "get_classifier", lambda: FlakyClassifier(failures=99))
    message = make_message()
    triage_service.request_triage(db, office.id, message.id)
    job = job_service.claim_job(db, "test-worker")

    assert await worker.run_job(db, job, "test-worker") == JobState.RETRY.value
    db.refresh(message)
    assert message.triage_status == TriageStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_accepting_create_case_writes_through_legacy(
    db, office, reference_data, constituent, make_message, client, fake_legacy
):
    message = make_message(from_address="jane.doe@example.org")
    job = _claim(db, message, office)
    await triage_service.process_message(db, job, classifier=RuleBasedClassifier())

    fake_legacy.on("POST", "/cases", (200, {"id": 900}))
    fake_legacy.on("POST", "/cases/900/notes", (200, {"id": 1}))
    fake_legacy.on("PATCH", "/emails/555", (200, {"id": 555, "actioned": True}))

    response = await client.post(
        f"/messages/{message.id}/decision",
        json={
            "decision": "accepted",
            "decided_by": "alex@anytown.test",
            "reply": {"body_html": "<p>Thanks, we have opened a case.</p>"},
        },
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["action"] == "create_case"
    assert body["case"]["status"] == "committed"
    assert body["case"]["external_id"] == 900
    assert body["actioned"]["status"] == "committed"
    assert body["link_error"] is None

    created = fake_legacy.calls("POST", "/cases")[0][2]
    assert created["constituentID"] == 7
    assert created["caseTypeID"] == reference_data["Housing"]
    assert fake_legacy.calls("POST", "/cases/900/notes")[0][2] == {"type": "email", "emailId": 555}
    assert fake_legacy.calls("PATCH", "/emails/555")[0][2] == {"actioned": True}

    db.expire_all()
    case = db.query(Case).one()
    assert case.external_id == 900
    assert case.priority == "medium"
    message = db.get(Message, message.id)
    assert message.case_id == case.id
    assert message.actioned is True
    assert message.triage_status == TriageStatus.DECIDED.value

    outbox = db.query(OutboxMessage).one()
    assert outbox.to_addresses == ["jane.doe@example.org"]
    assert outbox.subject == "Re: Housing disrepair"
    assert outbox.related_case_id == case.id
    assert db.query(Job).filter(Job.kind == JobKind.EMAIL_DELIVER.value).count() == 1

    again = await client.post(
        f"/messages/{message.id}/decision",
        json={"decision": "rejected", "decided_by": "alex@anytown.test"},
    )
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_create_case_without_constituent_is_invalid(
    db, office, reference_data, make_message, client, fake_legacy
):
    message = make_message()
    job = _claim(db, message, office)
    await triage_service.process_message(db, job, classifier=RuleBasedClassifier())

    response = await client.post(
        f"/messages/{message.id}/decision",
        json={"decision": "accepted", "decided_by": "alex@anytown.test"},
    )

    assert response.status_code == 422
    assert fake_legacy.calls("POST", "/cases") == []
    assert triage_service.get_suggestion(db, office.id, message.id).decision == "pending"


@pytest.mark.asyncio
async def test_modified_decision_checks_reference_ids(
    db, office, reference_data, constituent, make_message, client
):
    message = make_message(from_address="jane.doe@example.org")
    job = _claim(db, message, office)
    await triage_service.process_message(db, job, classifier=RuleBasedClassifier())

    response = await client.post(
        f"/messages/{message.id}/decision",
        json={
            "decision": "modified",
            "decided_by": "alex@anytown.test",
            "modifications": {"case_type_id": 999},
        },
    )
    assert response.status_code == 422
    assert "case_type_id" in response.json()["detail"]


@pytest.mark.asyncio
async def test_rejected_decision_writes_nothing(db, office, reference_data, make_message, client, fake_legacy):
    message = make_message()
    job = _claim(db, message, office)
    await triage_service.process_message(db, job, classifier=RuleBasedClassifier())

    response = await client.post(
        f"/messages/{message.id}/decision",
        json={"decision": "rejected", "decided_by": "alex@anytown.test"},
    )

    assert response.status_code == 200
    assert response.json()["decision"] == "rejected"
    assert fake_legacy.requests == []
    suggestion = await client.get(f"/messages/{message.id}/suggestion")
    assert suggestion.json()["decision"] == "rejected"
    assert suggestion.json()["decided_by"] == "alex@anytown.test"


@pytest.mark.asyncio
async def test_triage_endpoint_queues_job(db, office, make_message, client):
    message = make_message()

    response = await client.post(f"/messages/{message.id}/triage")

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    status = await client.get(f"/jobs/{job_id}")
    assert status.json()["kind"] == JobKind.TRIAGE_PROCESS.value
    assert status.json()["state"] == JobState.CREATED.value


@pytest.mark.asyncio
async def test_suggestion_missing_is_404(db, office, make_message, client):
    message = make_message()
    response = await client.get(f"/messages/{message.id}/suggestion")
    assert response.status_code == 404


async def _suggest(db, office, message):
    job = _claim(db, message, office)
    await triage_service.process_message(db, job, classifier=RuleBasedClassifier())
    job_service.complete_job(db, job)


def _claim_push(db):
    return job_service.claim_job(
        db, "test-worker", kinds=[JobKind.SYNC_PUSH.value], now=utc_now() + timedelta(minutes=5)
    )


@pytest.mark.asyncio
async def test_link_to_a_queued_case_is_sent_once_the_case_exists(
    db, office, reference_data, constituent, make_message, legacy, fake_legacy
):
    message = make_message(from_address="jane.doe@example.org")
    await _suggest(db, office, message)
    fake_legacy.on("POST", "/cases", (503, {"message": "maintenance"}))
    fake_legacy.on("PATCH", "/emails/555", (200, {"id": 555}))

    result = await triage_service.submit_decision(
        db, office.id, message.id, decision="accepted", decided_by="alex@anytown.test", client=legacy
    )

    assert result["case"]["status"] == "queued"
    assert result["link"] == "deferred"
    assert "link_error" not in result

    fake_legacy.on("POST", "/cases", (200, {"id": 900}))
    fake_legacy.on("POST", "/cases/900/notes", (503, {}), (200, {"id": 1}))
    push = _claim_push(db)

    with pytest.raises(sync_service.LinkPending):
        await sync_service.push_queued(db, push, client=legacy)
    assert db.query(Case).one().external_id == 900

    output = await sync_service.push_queued(db, push, client=legacy)

    assert output == {"status": "nothing_to_push", "linked_messages": [str(message.id)]}
    notes = fake_legacy.calls("POST", "/cases/900/notes")
    assert len(notes) == 2
    assert notes[-1][2] == {"type": "email", "emailId": 555}
    assert len(fake_legacy.calls("POST", "/cases")) == 2
    db.refresh(push)
    assert push.payload["link_message_ids"] == []


@pytest.mark.asyncio
async def test_create_case_for_a_new_constituent(db, office, reference_data, make_message, client, fake_legacy):
    message = make_message()
    await _suggest(db, office, message)
    fake_legacy.on("POST", "/constituents", (200, {"id": 8}))
    fake_legacy.on("POST", "/contactDetails", (200, {"id": 80}))
    fake_legacy.on("POST", "/cases", (200, {"id": 900}))
    fake_legacy.on("POST", "/cases/900/notes", (200, {"id": 1}))
    fake_legacy.on("PATCH", "/emails/555", (200, {"id": 555}))

    response = await client.post(
        f"/messages/{message.id}/decision",
        json={
            "decision": "modified",
            "decided_by": "alex@anytown.test",
            "modifications": {"new_constituent": {"first_name": "Sam", "last_name": "Stranger"}},
        },
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["constituent"]["external_id"] == 8
    assert body["contact_detail"]["status"] == "committed"
    assert body["link"] == "linked"
    assert fake_legacy.calls("POST", "/constituents")[0][2] == {"firstName": "Sam", "lastName": "Stranger"}
    detail = fake_legacy.calls("POST", "/contactDetails")[0][2]
    assert detail["constituentID"] == 8
    assert detail["contactTypeID"] == reference_data["Email"]
    assert detail["value"] == "stranger@example.net"
    assert fake_legacy.calls("POST", "/cases")[0][2]["constituentID"] == 8

    db.expire_all()
    constituent = db.query(Constituent).one()
    assert db.get(Message, message.id).constituent_id == constituent.id
    assert db.query(Case).one().constituent_id == constituent.id


@pytest.mark.asyncio
async def test_new_constituent_needs_a_last_name(db, office, reference_data, make_message, client, fake_legacy):
    message = make_message()
    await _suggest(db, office, message)

    response = await client.post(
        f"/messages/{message.id}/decision",
        json={
            "decision": "modified",
            "decided_by": "alex@anytown.test",
            "modifications": {"new_constituent": {"first_name": "Sam"}},
        },
    )

    assert response.status_code == 422
    assert "new_constituent" in response.json()["detail"]
    assert fake_legacy.requests == []


@pytest.mark.asyncio
async def test_confident_suggestion_is_accepted_for_an_autonomous_office(
    db, office, reference_data, constituent, make_message, legacy, fake_legacy
):
    office.autonomous_triage = True
    office.autonomy_threshold = 0.5
    db.commit()
    message = make_message(from_address="jane.doe@example.org")
    job = _claim(db, message, office)
    fake_legacy.on("POST", "/cases", (200, {"id": 900}))
    fake_legacy.on("POST", "/cases/900/notes", (200, {"id": 1}))
    fake_legacy.on("PATCH", "/emails/555", (200, {"id": 555, "actioned": True}))

    result = await triage_service.process_message(db, job, classifier=RuleBasedClassifier(), client=legacy)

    assert result["status"] == "auto_accepted"
    suggestion = triage_service.get_suggestion(db, office.id, message.id)
    assert suggestion.decision == "accepted"
    assert suggestion.decided_by == "autonomous"
    case = db.query(Case).one()
    assert case.external_id == 900
    assert case.constituent_id == constituent.id
    assert len(fake_legacy.calls("POST", "/cases/900/notes")) == 1


@pytest.mark.asyncio
async def test_autonomous_office_still_reviews_low_confidence(
    db, office, reference_data, constituent, make_message, legacy, fake_legacy
):
    office.autonomous_triage = True
    office.autonomy_threshold = 0.9
    db.commit()
    message = make_message(from_address="jane.doe@example.org")
    job = _claim(db, message, office)

    result = await triage_service.process_message(db, job, classifier=RuleBasedClassifier(), client=legacy)

    assert result["status"] == "awaiting_decision"
    assert triage_service.get_suggestion(db, office.id, message.id).decision == "pending"
    assert fake_legacy.calls("POST", "/cases") == []

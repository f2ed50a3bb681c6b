import json

import httpx
import pytest

from casebridge.services.classifier_service import (
    ClassifierUnavailable,
    HttpClassifier,
    RuleBasedClassifier,
    extract_json_object,
    keyword_tags,
)


def _classifier(handler) -> HttpClassifier:
    return HttpClassifier(
        url="http://classifier.test/v1/classify",
        api_key="k",
        model="triage-small",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_http_classifier_sends_context_and_reads_fenced_content():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, json={"content": '```json\n{"recommended_action": "ignore"}\n```'}
        )

    result = await _classifier(handler).classify({"message": {"subject": "Hi"}})

    assert result == {"recommended_action": "ignore"}
    assert seen["auth"] == "Bearer k"
    assert seen["body"] == {"model": "triage-small", "context": {"message": {"subject": "Hi"}}}


@pytest.mark.asyncio
async def test_http_classifier_errors_are_unavailable():
    with pytest.raises(ClassifierUnavailable, match="503"):
        await _classifier(lambda request: httpx.Response(503)).classify({})

    with pytest.raises(ClassifierUnavailable):
        await _classifier(lambda request: httpx.Response(200, text="not json")).classify({})

    with pytest.raises(ClassifierUnavailable):
        await _classifier(lambda request: httpx.Response(200, json={"content": "no object here"})).classify({})


@pytest.mark.asyncio
async def test_rules_flag_urgent_mail():
    result = await RuleBasedClassifier().classify(
        {"message": {"subject": "Eviction notice", "text": "I am being evicted on Friday"}}
    )

    assert result["recommended_action"] == "create_case"
    assert result["priority"] == "high"


@pytest.mark.asyncio
async def test_rules_prefer_a_strong_campaign_match():
    result = await RuleBasedClassifier().classify(
        {
            "message": {"subject": "Save our library"},
            "campaigns": [{"id": "c-1", "name": "Library closure", "confidence": 1.0}],
        }
    )

    assert result["recommended_action"] == "assign_campaign"
    assert result["campaign_id"] == "c-1"


def test_extract_json_object_skips_prose_and_non_objects():
    text = 'Sure! Options were [1, 2]. Answer: {"recommended_action": "mark_spam"} Hope that helps {'
    assert extract_json_object(text) == {"recommended_action": "mark_spam"}
    assert extract_json_object("[1, 2]") is None


@pytest.mark.asyncio
async def test_rules_suggest_tags_named_in_the_mail():
    tags = [{"id": 41, "name": "Damp"}, {"id": 42, "name": "Damp and Mould"}, {"id": 43, "name": "Noise"}]
    result = await RuleBasedClassifier().classify(
        {
            "message": {"subject": "Housing disrepair", "text": "Damp and mould on every wall"},
            "reference_data": {"tag": tags},
        }
    )

    assert result["tags"] == [42, 41]


def test_keyword_tags_ignore_short_and_common_words():
    tags = [{"id": 1, "name": "Of"}, {"id": 2, "name": "Parking"}, {"id": 3, "name": "Parking permits"}]

    assert keyword_tags("Question about parking", tags) == [2]
    assert keyword_tags(None, tags) == []
    assert keyword_tags("parking permits parking", tags, limit=1) == [3]

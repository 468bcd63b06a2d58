# file: tests/test_api.py
import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.schema import DetectionOutcome
from engine import CompletionDetector

from conftest import days_ago

SCOPE = {"user_id": 1, "org_id": 1}


@pytest.fixture
def client(store_server, registry):
    store_server.seed({
        "deals": [{"id": 1, **SCOPE, "name": "Acme Rollout", "stage": "qualified",
                   "updated_at": days_ago(2).isoformat()}],
        "emails": [{"id": 5, **SCOPE, "deal_id": 1, "direction": "sent", "subject": "Intro",
                    "body": "Great to meet you", "sent_at": days_ago(1).isoformat()}],
        "actions": [{"id": "a1", **SCOPE, "deal_id": 1, "title": "Send intro", "action_type": "email_send",
                     "completed": False, "source": "auto_generated"}],
        "action_configs": [{"org_id": 1, "generation_mode": "rules"}],
        "detection_configs": [{"org_id": 1, "detection_mode": "rules_only"}],
    })
    llm = AsyncMock(return_value={"confidence": 50, "reasoning": "n/a"})
    return TestClient(create_app(registry, llm=llm))


def test_generate_for_deal(client):
    response = client.post("/deals/1/actions", json=SCOPE)
    assert response.status_code == 200
    titles = [a["title"] for a in response.json()["persisted"]]
    assert "Schedule discovery call for Acme Rollout" in titles

    assert client.post("/deals/1/actions", json={"user_id": 1, "org_id": 2}).status_code == 404


def test_generate_streams_ndjson(client):
    response = client.post("/generate", json={**SCOPE, "deal_ids": [1]})
    events = [json.loads(line) for line in response.text.splitlines() if line]
    assert events[0]["type"] == "store_call"
    assert events[-1]["type"] == "agent_end"


def test_detection_endpoints(client):
    report = client.post("/emails/5/detect", json=SCOPE).json()
    assert report["trigger"] == "email"
    assert report["skipped_reason"] is None

    outcome = client.post("/detect/email-for-action", json={**SCOPE, "email_id": 5, "action_id": "a1"})
    assert outcome.status_code == 200
    # no suggested_action on the action: email sent is enough
    assert outcome.json()["outcome"] == "completed"

    missing = client.post("/detect/email-for-action", json={**SCOPE, "email_id": 99, "action_id": "a1"})
    assert missing.status_code == 404


def test_unknown_suggestion_is_404(client):
    assert client.post("/suggestions/nope/accept", json=SCOPE).status_code == 404
    assert client.post("/suggestions/nope/dismiss", json=SCOPE).status_code == 404


def test_targeted_check_failure_is_500_not_404(client):
    failed = DetectionOutcome(action_id="a1", outcome="skipped", confidence=0,
                              detection_source="none", skipped_reason="error")
    with patch.object(CompletionDetector, "detect_from_email_for_action", AsyncMock(return_value=failed)):
        response = client.post("/detect/email-for-action", json={**SCOPE, "email_id": 5, "action_id": "a1"})
    assert response.status_code == 500
    assert response.json()["skipped_reason"] == "error"

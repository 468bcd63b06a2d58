# file: tests/test_store.py
import pytest
import pytest_asyncio

from app.errors import StoreError
from store.servers.store_server import StoreServer


def seed_rows():
    return {
        "deals": [
            {"id": 1, "org_id": 1, "user_id": 1, "name": "Acme", "stage": "demo"},
            {"id": 2, "org_id": 2, "user_id": 5, "name": "Globex", "stage": "demo"},
        ],
        "contacts": [{"id": 10, "org_id": 1, "first_name": "Ann", "last_name": "Lee", "email": "ann@acme.com"}],
        "deal_contacts": [{"deal_id": 1, "contact_id": 10, "role": "champion"}],
        "actions": [
            {"id": "a1", "org_id": 1, "user_id": 1, "deal_id": 1, "title": "Send deck", "completed": False},
            {"id": "a2", "org_id": 2, "user_id": 5, "deal_id": 2, "title": "Send deck", "completed": False},
        ],
        "suggestions": [],
        "playbooks": [
            {"org_id": 1, "user_id": 1, "playbook_data": {"deal_stages": {"demo": {"key_actions": ["Book demo"]}}}},
        ],
        "detection_configs": [
            {"org_id": 1, "detection_mode": "hybrid"},
            {"org_id": 1, "user_id": 1, "detection_mode": "rules_only"},
        ],
    }


@pytest_asyncio.fixture
async def store(registry):
    client = registry.get_store_client()
    await client.seed(seed_rows())
    return client


@pytest.mark.asyncio
async def test_reads_are_tenant_scoped(store):
    assert (await store.get_deal(1, user_id=1, org_id=1)).name == "Acme"
    assert await store.get_deal(2, user_id=1, org_id=1) is None
    assert await store.list_actions(2, user_id=1, org_id=1) == []
    assert await store.get_action("a2", user_id=1, org_id=1) is None


@pytest.mark.asyncio
async def test_contacts_carry_deal_role(store):
    [contact] = await store.list_deal_contacts(1, user_id=1, org_id=1)
    assert contact.role == "champion"
    assert await store.list_deal_contacts(1, user_id=1, org_id=2) == []


@pytest.mark.asyncio
async def test_config_prefers_user_row(store):
    assert (await store.get_detection_config(user_id=1, org_id=1))["detection_mode"] == "rules_only"
    assert (await store.get_detection_config(user_id=9, org_id=1))["detection_mode"] == "hybrid"
    assert await store.get_detection_config(user_id=1, org_id=3) is None


@pytest.mark.asyncio
async def test_stage_actions_from_mapping(store):
    assert await store.get_stage_actions("demo", user_id=1, org_id=1) == ["Book demo"]
    assert await store.get_stage_actions("closing", user_id=1, org_id=1) == []
    assert await store.get_stage_actions("demo", user_id=2, org_id=1) == []


@pytest.mark.asyncio
async def test_complete_is_first_writer_wins(store):
    assert await store.complete_action("a1", user_id=1, org_id=1, auto_completed=True, confidence=96) is True
    assert await store.complete_action("a1", user_id=1, org_id=1) is False
    assert await store.complete_action("a2", user_id=1, org_id=1) is None
    action = await store.get_action("a1", user_id=1, org_id=1)
    assert action.completion_confidence == 96
    assert action.status == "completed"


@pytest.mark.asyncio
async def test_suggestions_are_unique_per_evidence(store):
    row = {"action_id": "a1", "evidence_type": "email", "evidence_id": 7, "confidence": 80}

    first = await store.create_suggestion(row, user_id=1, org_id=1)
    second = await store.create_suggestion(row, user_id=1, org_id=1)
    other_tenant = await store.create_suggestion({**row, "action_id": "a2"}, user_id=1, org_id=1)

    assert first["created"] and first["suggestion"].deal_id == 1
    assert not second["created"] and second["reason"] == "duplicate_suggestion"
    assert other_tenant is None


@pytest.mark.asyncio
async def test_replace_keeps_completed_titles(store):
    await store.complete_action("a1", user_id=1, org_id=1)
    inserted = await store.replace_generated_actions(1, [
        {"title": " send DECK", "source": "auto_generated"},
        {"title": "Book demo", "source": "playbook"},
    ], user_id=1, org_id=1)
    assert [a.title for a in inserted] == ["Book demo"]


@pytest.mark.asyncio
async def test_unknown_method_is_a_store_error(store):
    with pytest.raises(StoreError):
        await store.call("store.drop_everything")
    with pytest.raises(StoreError):
        await store.call("store._save", {"name": "deals"})


def test_data_survives_restart(tmp_path):
    server = StoreServer(tmp_path)
    server.seed({"deals": [{"id": 1, "org_id": 1, "name": "Acme"}]})
    assert StoreServer(tmp_path).get_deal(1, user_id=None, org_id=1)["name"] == "Acme"

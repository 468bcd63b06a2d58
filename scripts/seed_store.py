# file: scripts/seed_store.py
#!/usr/bin/env python3
"""Seed the store with a small demo org and generate actions for its deals"""

import sys
import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import get_settings
from app.logging_utils import setup_logging
from store.registry import StoreRegistry
from store.servers.store_server import StoreServer
from engine import ActionGenerator

ORG_ID = 1
USER_ID = 1


def _iso(days: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def demo_collections() -> dict:
    owner = {"org_id": ORG_ID, "user_id": USER_ID}
    return {
        "accounts": [
            {"id": 1, "org_id": ORG_ID, "name": "Northwind Logistics", "industry": "Logistics"},
            {"id": 2, "org_id": ORG_ID, "name": "Contoso Health", "industry": "Healthcare"},
        ],
        "deals": [
            {
                "id": 101, **owner, "account_id": 1, "name": "Northwind Fleet Analytics",
                "stage": "proposal", "value": 180000, "close_date": _iso(5),
                "updated_at": _iso(-20), "health": "risk", "health_score": 42,
                "health_score_breakdown": {
                    "params": {
                        "1a": {"state": "unknown", "label": "Buyer confirmed close date"},
                        "2a": {"state": "absent", "label": "Economic buyer identified"},
                        "5a": {"state": "confirmed", "label": "Competitive deal",
                               "competitors": [{"name": "Fleetio"}]},
                        "6a": {"state": "confirmed", "label": "Recent meeting", "daysSinceLastMeeting": 12},
                    },
                },
            },
            {
                "id": 102, **owner, "account_id": 2, "name": "Contoso Patient Portal",
                "stage": "qualified", "value": 45000, "close_date": _iso(40),
                "updated_at": _iso(-3), "health": "healthy", "health_score": 78,
            },
        ],
        "contacts": [
            {"id": 11, "org_id": ORG_ID, "first_name": "Dana", "last_name": "Reyes",
             "email": "dana.reyes@northwindlogistics.com", "title": "VP Operations", "role_type": "champion"},
            {"id": 12, "org_id": ORG_ID, "first_name": "Lee", "last_name": "Park",
             "email": "lee.park@northwindlogistics.com", "title": "CFO", "role_type": "decision_maker"},
        ],
        "deal_contacts": [
            {"deal_id": 101, "contact_id": 11, "role": "champion"},
            {"deal_id": 101, "contact_id": 12, "role": "economic_buyer"},
        ],
        "meetings": [
            {"id": 201, **owner, "deal_id": 101, "title": "Fleet analytics demo", "meeting_type": "demo",
             "status": "completed", "start_time": _iso(-12)},
        ],
        "emails": [
            {"id": 301, **owner, "deal_id": 101, "contact_id": 11, "direction": "sent",
             "subject": "Proposal for Northwind Fleet Analytics", "body": "Attached is our proposal.",
             "sent_at": _iso(-9), "has_attachments": True},
        ],
        "files": [],
        "playbooks": [
            {**owner, "playbook_data": {"deal_stages": [
                {"name": "qualified", "key_actions": ["Schedule demo call with technical stakeholders"]},
                {"name": "proposal", "key_actions": ["Send pricing proposal to economic buyer",
                                                     "Prepare ROI calculator for CFO review"]},
            ]}},
        ],
        "detection_configs": [
            {"org_id": ORG_ID, "detection_mode": "hybrid", "detect_from_emails": True,
             "detect_from_meetings": True, "confidence_threshold": 70, "auto_complete_threshold": 95},
        ],
        "action_configs": [
            {"org_id": ORG_ID, "generation_mode": "playbook", "ai_enhanced_generation": False},
        ],
        "actions": [],
        "suggestions": [],
    }


async def seed_store():
    """Write the demo org and print the actions generated for it"""

    settings = get_settings()
    print(f"Seeding store in {settings.store_data_dir}...")
    registry = StoreRegistry(server=StoreServer(settings.store_data_dir))
    store = registry.get_store_client()

    counts = await store.seed(demo_collections())
    for name, count in counts.items():
        print(f"  {name}: {count}")

    generator = ActionGenerator(registry)
    for deal_id in (101, 102):
        result = await generator.generate_for_deal(deal_id, USER_ID, ORG_ID)
        print(f"\nDeal {deal_id}: {len(result.persisted)} action(s)")
        for action in result.persisted:
            print(f"  [{action.priority}] {action.title} -> {action.next_step}")

    print("\nStore seeded successfully!")


if __name__ == "__main__":
    setup_logging()
    asyncio.run(seed_store())

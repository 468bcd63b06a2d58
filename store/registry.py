# file: store/registry.py
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from app.config import get_settings
from app.errors import StoreError
from app.schema import (
    Account, Action, ActionSuggestion, Contact, Deal, Email, Meeting, StorageFile,
)

log = logging.getLogger("store")


def _jsonable(value):
    # pydantic models, datetimes and enums all travel as plain JSON
    return json.loads(json.dumps(value, default=_encode))


def _encode(o):
    if hasattr(o, "model_dump"):
        return o.model_dump(mode="json")
    if hasattr(o, "isoformat"):
        return o.isoformat()
    if hasattr(o, "value"):
        return o.value
    return str(o)


class StoreClient:
    """Store RPC client; results come back as schema models"""

    def __init__(self, base_url: str):
        self.base_url = base_url
        self.session = None

    async def connect(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def call(self, method: str, params: Dict[str, Any] = None):
        if not self.session:
            await self.connect()

        async with self.session.post(
            f"{self.base_url}/rpc",
            json={"method": method, "params": _jsonable(params or {})}
        ) as response:
            result = await response.json()
            if response.status != 200 or "error" in result:
                raise StoreError(result.get("error") or f"{method} failed with HTTP {response.status}")
            return result.get("result")

    # ---------- reads ----------

    async def get_deal(self, deal_id, user_id, org_id) -> Optional[Deal]:
        result = await self.call("store.get_deal", {"deal_id": deal_id, "user_id": user_id, "org_id": org_id})
        if result:
            return Deal(**result)

    async def get_account(self, deal_id, user_id, org_id) -> Optional[Account]:
        result = await self.call("store.get_account", {"deal_id": deal_id, "user_id": user_id, "org_id": org_id})
        if result:
            return Account(**result)

    async def list_deal_contacts(self, deal_id, user_id, org_id) -> List[Contact]:
        results = await self.call("store.list_deal_contacts", {"deal_id": deal_id, "user_id": user_id, "org_id": org_id})
        return [Contact(**c) for c in results or []]

    async def list_meetings(self, deal_id, user_id, org_id) -> List[Meeting]:
        results = await self.call("store.list_meetings", {"deal_id": deal_id, "user_id": user_id, "org_id": org_id})
        return [Meeting(**m) for m in results or []]

    async def list_emails(self, deal_id, user_id, org_id) -> List[Email]:
        results = await self.call("store.list_emails", {"deal_id": deal_id, "user_id": user_id, "org_id": org_id})
        return [Email(**e) for e in results or []]

    async def list_files(self, deal_id, user_id, org_id) -> List[StorageFile]:
        results = await self.call("store.list_files", {"deal_id": deal_id, "user_id": user_id, "org_id": org_id})
        return [StorageFile(**f) for f in results or []]

    async def get_playbook(self, user_id, org_id) -> Optional[dict]:
        return await self.call("store.get_playbook", {"user_id": user_id, "org_id": org_id})

    async def get_stage_actions(self, stage: str, user_id, org_id) -> List[str]:
        return await self.call("store.get_stage_actions", {"stage": stage, "user_id": user_id, "org_id": org_id}) or []

    async def get_health_config(self, user_id, org_id) -> Optional[dict]:
        return await self.call("store.get_health_config", {"user_id": user_id, "org_id": org_id})

    async def get_detection_config(self, user_id, org_id) -> Optional[dict]:
        return await self.call("store.get_detection_config", {"user_id": user_id, "org_id": org_id})

    async def get_action_config(self, user_id, org_id) -> Optional[dict]:
        return await self.call("store.get_action_config", {"user_id": user_id, "org_id": org_id})

    async def get_email(self, email_id, user_id, org_id) -> Optional[Email]:
        result = await self.call("store.get_email", {"email_id": email_id, "user_id": user_id, "org_id": org_id})
        if result:
            return Email(**result)

    async def get_meeting(self, meeting_id, user_id, org_id) -> Optional[Meeting]:
        result = await self.call("store.get_meeting", {"meeting_id": meeting_id, "user_id": user_id, "org_id": org_id})
        if result:
            return Meeting(**result)

    async def get_action(self, action_id, user_id, org_id) -> Optional[Action]:
        result = await self.call("store.get_action", {"action_id": action_id, "user_id": user_id, "org_id": org_id})
        if result:
            return Action(**result)

    async def list_actions(self, deal_id, user_id, org_id, completed: Optional[bool] = None) -> List[Action]:
        results = await self.call("store.list_actions", {
            "deal_id": deal_id, "user_id": user_id, "org_id": org_id, "completed": completed,
        })
        return [Action(**a) for a in results or []]

    async def get_suggestion(self, suggestion_id, user_id, org_id) -> Optional[ActionSuggestion]:
        result = await self.call("store.get_suggestion", {"suggestion_id": suggestion_id, "user_id": user_id, "org_id": org_id})
        if result:
            return ActionSuggestion(**result)

    # ---------- writes ----------

    async def replace_generated_actions(self, deal_id, actions: List[dict], user_id, org_id) -> List[Action]:
        results = await self.call("store.replace_generated_actions", {
            "deal_id": deal_id, "actions": actions, "user_id": user_id, "org_id": org_id,
        })
        return [Action(**a) for a in results or []]

    async def insert_actions(self, actions: List[dict], user_id, org_id) -> List[Action]:
        results = await self.call("store.insert_actions", {"actions": actions, "user_id": user_id, "org_id": org_id})
        return [Action(**a) for a in results or []]

    async def complete_action(self, action_id, user_id, org_id, auto_completed: bool = False,
                              confidence: Optional[int] = None, evidence: Optional[dict] = None) -> Optional[bool]:
        """True if this call completed the action, False if it was already done, None if not found."""
        result = await self.call("store.complete_action", {
            "action_id": action_id, "user_id": user_id, "org_id": org_id,
            "auto_completed": auto_completed, "confidence": confidence, "evidence": evidence,
        })
        if result is None:
            return None
        return bool(result.get("completed"))

    async def create_suggestion(self, suggestion: dict, user_id, org_id) -> Optional[dict]:
        result = await self.call("store.create_suggestion", {"suggestion": suggestion, "user_id": user_id, "org_id": org_id})
        if result and result.get("suggestion"):
            result["suggestion"] = ActionSuggestion(**result["suggestion"])
        return result

    async def resolve_suggestion(self, suggestion_id, status: str, user_id, org_id) -> Optional[dict]:
        result = await self.call("store.resolve_suggestion", {
            "suggestion_id": suggestion_id, "status": status, "user_id": user_id, "org_id": org_id,
        })
        if result and result.get("suggestion"):
            result["suggestion"] = ActionSuggestion(**result["suggestion"])
        return result

    async def seed(self, collections: Dict[str, list]):
        return await self.call("store.seed", {"collections": collections})

    async def clear_all(self):
        return await self.call("store.clear_all")


class LocalStoreClient(StoreClient):
    """Same client surface, dispatched in-process to a StoreServer (tests, scripts)."""

    def __init__(self, server):
        super().__init__("local")
        self.server = server

    async def connect(self):
        pass

    async def close(self):
        pass

    async def call(self, method: str, params: Dict[str, Any] = None):
        try:
            result = await self.server.dispatch(method, _jsonable(params or {}))
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"{method} failed: {e}") from e
        return _jsonable(result)


class StoreRegistry:
    """Hands out the store client used by the engine components"""

    def __init__(self, store_url: Optional[str] = None, server=None):
        if server is not None:
            self.store = LocalStoreClient(server)
        else:
            self.store = StoreClient(store_url or get_settings().store_url)

    async def connect(self):
        await self.store.connect()

    async def close(self):
        await self.store.close()

    async def health_check(self):
        try:
            await self.store.call("health")
            return {"store": "healthy"}
        except (aiohttp.ClientError, StoreError) as e:
            log.warning("store health check failed: %s", e)
            return {"store": f"unhealthy: {e}"}

    def get_store_client(self) -> StoreClient:
        return self.store

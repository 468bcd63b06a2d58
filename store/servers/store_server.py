# file: store/servers/store_server.py
#!/usr/bin/env python3
import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from aiohttp import web

from app.config import get_settings

log = logging.getLogger("store")

COLLECTIONS = (
    "deals", "accounts", "contacts", "deal_contacts", "meetings", "emails",
    "files", "playbooks", "health_configs", "detection_configs", "action_configs",
    "actions", "suggestions",
)

# sources owned by the generator; replaced wholesale on every run
GENERATED_SOURCES = ("auto_generated", "playbook", "ai_generated")


def _now():
    return datetime.now(timezone.utc).isoformat()


def _same(a, b) -> bool:
    return a is not None and b is not None and str(a) == str(b)


def _in_scope(row, user_id=None, org_id=None) -> bool:
    """A row is visible when every owner field it carries matches the caller."""
    if "org_id" in row and row["org_id"] is not None and not _same(row["org_id"], org_id):
        return False
    if "user_id" in row and row["user_id"] is not None and not _same(row["user_id"], user_id):
        return False
    return True


class StoreServer:
    """CRM store RPC server with JSON persistence"""

    def __init__(self, data_dir=None):
        self.data_dir = Path(data_dir or get_settings().store_data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.lock = asyncio.Lock()
        self._load_data()

    def _load_data(self):
        self.data = {name: self._load_json(self._path(name), []) for name in COLLECTIONS}

    def _path(self, name):
        return self.data_dir / f"{name}.json"

    def _load_json(self, path, default):
        """Load JSON file; a corrupt file starts empty."""
        if path.exists():
            try:
                with open(path) as f:
                    return json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                log.warning("Could not read %s, starting empty: %s", path, e)
        return default

    def _save(self, name):
        with open(self._path(name), "w") as f:
            json.dump(self.data[name], f, indent=2, default=str)

    # ---------- lookups ----------

    def _find(self, name, row_id, user_id=None, org_id=None):
        for row in self.data[name]:
            if _same(row.get("id"), row_id) and _in_scope(row, user_id, org_id):
                return row
        return None

    def _for_deal(self, name, deal_id, user_id, org_id):
        if not self._find("deals", deal_id, user_id, org_id):
            return []
        return [
            row for row in self.data[name]
            if _same(row.get("deal_id"), deal_id) and _in_scope(row, user_id, org_id)
        ]

    def _config_row(self, name, user_id, org_id):
        """User-specific row first, then the org-wide row (no user_id)."""
        rows = [r for r in self.data[name] if _same(r.get("org_id"), org_id)]
        for row in rows:
            if _same(row.get("user_id"), user_id):
                return row
        for row in rows:
            if row.get("user_id") is None:
                return row
        return None

    # ---------- reads ----------

    def get_deal(self, deal_id, user_id, org_id):
        return self._find("deals", deal_id, user_id, org_id)

    def get_account(self, deal_id, user_id, org_id):
        deal = self._find("deals", deal_id, user_id, org_id)
        if not deal or deal.get("account_id") is None:
            return None
        return self._find("accounts", deal["account_id"], user_id, org_id)

    def list_deal_contacts(self, deal_id, user_id, org_id):
        if not self._find("deals", deal_id, user_id, org_id):
            return []
        contacts = []
        for link in self.data["deal_contacts"]:
            if not _same(link.get("deal_id"), deal_id):
                continue
            contact = self._find("contacts", link.get("contact_id"), user_id, org_id)
            if contact:
                contacts.append({**contact, "deal_role": link.get("role")})
        return contacts

    def list_meetings(self, deal_id, user_id, org_id):
        return self._for_deal("meetings", deal_id, user_id, org_id)

    def list_emails(self, deal_id, user_id, org_id):
        return self._for_deal("emails", deal_id, user_id, org_id)

    def list_files(self, deal_id, user_id, org_id):
        return self._for_deal("files", deal_id, user_id, org_id)

    def get_playbook(self, user_id, org_id):
        for row in self.data["playbooks"]:
            if _same(row.get("user_id"), user_id) and _same(row.get("org_id"), org_id):
                content = row.get("playbook_data") or {}
                if isinstance(content, str):
                    content = json.loads(content)
                stages = content.get("deal_stages", content) if isinstance(content, dict) else content
                return {
                    **row,
                    "deal_stages": stages,
                    "company_context": content.get("company_context") if isinstance(content, dict) else None,
                }
        return None

    def get_stage_actions(self, stage, user_id, org_id):
        playbook = self.get_playbook(user_id, org_id)
        stages = (playbook or {}).get("deal_stages")
        if not stages:
            return []
        if isinstance(stages, list):
            stage_data = next(
                (s for s in stages if isinstance(s, dict) and stage in (s.get("name"), s.get("id"))),
                None,
            )
        else:
            stage_data = stages.get(stage)
        if isinstance(stage_data, list):
            return [str(a) for a in stage_data]
        if not stage_data or not stage_data.get("key_actions"):
            return []
        return [str(a) for a in stage_data["key_actions"]]

    def get_health_config(self, user_id, org_id):
        return self._config_row("health_configs", user_id, org_id)

    def get_detection_config(self, user_id, org_id):
        return self._config_row("detection_configs", user_id, org_id)

    def get_action_config(self, user_id, org_id):
        return self._config_row("action_configs", user_id, org_id)

    def get_email(self, email_id, user_id, org_id):
        return self._find("emails", email_id, user_id, org_id)

    def get_meeting(self, meeting_id, user_id, org_id):
        return self._find("meetings", meeting_id, user_id, org_id)

    def get_action(self, action_id, user_id, org_id):
        action = self._find("actions", action_id, user_id, org_id)
        if action:
            action = {**action, "pending_suggestions": [
                s for s in self.data["suggestions"]
                if _same(s.get("action_id"), action_id) and s.get("status") == "pending"
            ]}
        return action

    def list_actions(self, deal_id, user_id, org_id, completed=None):
        rows = self._for_deal("actions", deal_id, user_id, org_id)
        if completed is not None:
            rows = [r for r in rows if bool(r.get("completed")) == completed]
        return rows

    def get_suggestion(self, suggestion_id, user_id, org_id):
        return self._find("suggestions", suggestion_id, user_id, org_id)

    # ---------- writes ----------

    def _new_action(self, action, user_id, org_id):
        return {
            **action,
            "id": uuid.uuid4().hex,
            "org_id": org_id,
            "user_id": user_id,
            "status": "open",
            "completed": False,
            "auto_completed": False,
            "created_at": _now(),
        }

    def replace_generated_actions(self, deal_id, actions, user_id, org_id):
        """
        Drop the deal's open generator-owned actions and insert the new batch.
        Titles still present on the deal (completed, or from another source) are not re-added.
        """
        if not self._find("deals", deal_id, user_id, org_id):
            return []
        kept = [
            a for a in self.data["actions"]
            if not (
                _same(a.get("deal_id"), deal_id)
                and _in_scope(a, user_id, org_id)
                and not a.get("completed")
                and a.get("source") in GENERATED_SOURCES
            )
        ]
        removed_ids = {str(a.get("id")) for a in self.data["actions"]} - {str(a.get("id")) for a in kept}
        removed = len(removed_ids)
        # nothing left to confirm for a dropped action
        for s in self.data["suggestions"]:
            if str(s.get("action_id")) in removed_ids and s.get("status") == "pending":
                s.update({"status": "dismissed", "resolved_at": _now()})
        taken = {
            (a.get("title") or "").lower().strip()
            for a in kept
            if _same(a.get("deal_id"), deal_id) and _in_scope(a, user_id, org_id)
        }
        inserted = [
            self._new_action(a, user_id, org_id) for a in actions
            if (a.get("title") or "").lower().strip() not in taken
        ]
        self.data["actions"] = kept + inserted
        self._save("actions")
        if removed_ids:
            self._save("suggestions")
        log.info("deal=%s replaced %d open generated action(s) with %d", deal_id, removed, len(inserted))
        return inserted

    def insert_actions(self, actions, user_id, org_id):
        inserted = [self._new_action(a, user_id, org_id) for a in actions]
        self.data["actions"].extend(inserted)
        self._save("actions")
        return inserted

    def complete_action(self, action_id, user_id, org_id, auto_completed=False,
                        confidence=None, evidence=None):
        """Complete only if still open; the first writer wins."""
        action = self._find("actions", action_id, user_id, org_id)
        if action is None:
            return None
        if action.get("completed"):
            return {"completed": False, "action": action}
        action.update({
            "completed": True,
            "status": "completed",
            "auto_completed": bool(auto_completed),
            "completion_confidence": confidence,
            "completion_evidence": evidence,
            "completed_at": _now(),
        })
        # a completed action has nothing left to confirm
        for s in self.data["suggestions"]:
            if _same(s.get("action_id"), action_id) and s.get("status") == "pending":
                s.update({"status": "dismissed", "resolved_at": _now()})
        self._save("actions")
        self._save("suggestions")
        return {"completed": True, "action": action}

    def create_suggestion(self, suggestion, user_id, org_id):
        action = self._find("actions", suggestion.get("action_id"), user_id, org_id)
        if action is None:
            return None
        if action.get("completed"):
            return {"created": False, "reason": "already_completed", "suggestion": None}
        for s in self.data["suggestions"]:
            if (_same(s.get("action_id"), suggestion.get("action_id"))
                    and s.get("evidence_type") == suggestion.get("evidence_type")
                    and _same(s.get("evidence_id"), suggestion.get("evidence_id"))):
                return {"created": False, "reason": "duplicate_suggestion", "suggestion": s}
        row = {
            **suggestion,
            "id": uuid.uuid4().hex,
            "org_id": org_id,
            "user_id": user_id,
            "deal_id": action.get("deal_id"),
            "status": "pending",
            "created_at": _now(),
        }
        self.data["suggestions"].append(row)
        self._save("suggestions")
        return {"created": True, "reason": None, "suggestion": row}

    def resolve_suggestion(self, suggestion_id, status, user_id, org_id):
        """pending -> accepted | dismissed, only from pending."""
        suggestion = self._find("suggestions", suggestion_id, user_id, org_id)
        if suggestion is None:
            return None
        if suggestion.get("status") != "pending":
            return {"resolved": False, "suggestion": suggestion}
        suggestion.update({"status": status, "resolved_at": _now()})
        self._save("suggestions")
        return {"resolved": True, "suggestion": suggestion}

    def seed(self, collections):
        for name, rows in (collections or {}).items():
            if name not in self.data:
                raise ValueError(f"Unknown collection: {name}")
            self.data[name] = list(rows)
            self._save(name)
        return {name: len(self.data[name]) for name in collections}

    def clear_all(self):
        for name in COLLECTIONS:
            self.data[name] = []
            self._save(name)
        return "cleared"

    # ---------- transport ----------

    async def dispatch(self, method, params):
        if method == "health":
            return "ok"
        name = method[len("store."):] if method.startswith("store.") else None
        handler = getattr(self, name, None) if name in RPC_METHODS else None
        if handler is None:
            raise KeyError(f"Unknown method: {method}")
        async with self.lock:
            return handler(**(params or {}))

    async def handle_rpc(self, request):
        data = await request.json()
        method = data.get("method")
        params = data.get("params", {})
        try:
            result = await self.dispatch(method, params)
        except KeyError as e:
            return web.json_response({"error": str(e)}, status=400)
        except (TypeError, ValueError) as e:
            log.warning("Bad params for %s: %s", method, e)
            return web.json_response({"error": f"Bad params for {method}: {e}"}, status=400)
        return web.json_response({"result": result}, dumps=lambda o: json.dumps(o, default=str))


RPC_METHODS = {
    "get_deal", "get_account", "list_deal_contacts", "list_meetings", "list_emails",
    "list_files", "get_playbook", "get_stage_actions", "get_health_config",
    "get_detection_config", "get_action_config", "get_email", "get_meeting",
    "get_action", "list_actions", "get_suggestion", "replace_generated_actions",
    "insert_actions", "complete_action", "create_suggestion", "resolve_suggestion",
    "seed", "clear_all",
}


def create_app(server=None):
    app = web.Application()
    server = server or StoreServer()
    app.router.add_post("/rpc", server.handle_rpc)
    return app


if __name__ == "__main__":
    from app.logging_config import setup_logging
    setup_logging()
    port = int(get_settings().store_url.rsplit(":", 1)[-1].split("/")[0])
    web.run_app(create_app(), port=port)

# file: engine/generator.py
import logging
from datetime import datetime
from typing import AsyncGenerator, List, Optional

from app.config import get_settings
from app.errors import NotFound, StoreError
from app.logging_utils import log_event
from app.schema import ActionCandidate, ActionConfig, DealContext, GenerationResult, Id
from engine.context_builder import ContextBuilder
from engine.email_analyzer import EmailAnalyzer
from engine.enhancer import ActionsAIEnhancer
from engine.next_step import assign_next_steps
from engine.rules import RulesEngine, deduplicate
from store.registry import StoreRegistry

log = logging.getLogger("generator")


class ActionGenerator:
    """Builds, enriches and persists the next actions for a deal"""

    def __init__(self, store_registry: Optional[StoreRegistry] = None, llm=None):
        self.registry = store_registry or StoreRegistry()
        self.store = self.registry.get_store_client()
        self.settings = get_settings()
        self.context_builder = ContextBuilder(self.registry)
        self.rules = RulesEngine()
        self.enhancer = ActionsAIEnhancer(llm)
        self.analyzer = EmailAnalyzer(llm, self.settings)

    async def load_action_config(self, user_id: Id, org_id: Id) -> ActionConfig:
        try:
            row = await self.store.get_action_config(user_id=user_id, org_id=org_id)
        except StoreError as e:
            log.warning("action config lookup failed for org=%s user=%s, using defaults: %s", org_id, user_id, e)
            row = None
        return ActionConfig.from_row(row, self.settings)

    def rule_candidates(self, ctx: DealContext, config: ActionConfig) -> List[ActionCandidate]:
        if config.generation_mode == "rules":
            # playbook key actions only count in playbook mode
            ctx = ctx.model_copy(update={"playbook_stage_actions": []})
        return assign_next_steps(self.rules.generate(ctx))

    async def generate_for_deal(self, deal_id: Id, user_id: Id, org_id: Id,
                                persist: bool = True, now: Optional[datetime] = None) -> GenerationResult:
        """Raises NotFound when the deal is not visible to the caller."""
        config = await self.load_action_config(user_id, org_id)
        if config.generation_mode == "manual":
            log.info("deal=%s generation skipped (manual mode)", deal_id)
            return GenerationResult(deal_id=deal_id, skipped_reason="manual_mode")

        ctx = await self.context_builder.build(deal_id, user_id, org_id, now=now)
        candidates = self.rule_candidates(ctx, config)

        ai_actions = assign_next_steps(await self.enhancer.enhance(ctx, candidates, config))
        candidates = deduplicate(candidates + ai_actions)

        persisted = []
        if persist:
            persisted = await self.store.replace_generated_actions(
                ctx.deal.id, [c.model_dump(mode="json") for c in candidates],
                user_id=user_id, org_id=org_id,
            )
        log.info("deal=%s generated=%d ai=%d persisted=%d", deal_id, len(candidates), len(ai_actions), len(persisted))
        return GenerationResult(
            deal_id=ctx.deal.id,
            candidates=candidates,
            persisted=persisted,
            ai_actions=len(ai_actions),
        )

    async def generate_for_email(self, email_id: Id, user_id: Id, org_id: Id) -> Optional[GenerationResult]:
        email = await self.store.get_email(email_id, user_id=user_id, org_id=org_id)
        if email is None or email.deal_id is None:
            return None
        return await self.generate_for_deal(email.deal_id, user_id, org_id)

    async def generate_for_meeting(self, meeting_id: Id, user_id: Id, org_id: Id) -> Optional[GenerationResult]:
        meeting = await self.store.get_meeting(meeting_id, user_id=user_id, org_id=org_id)
        if meeting is None or meeting.deal_id is None:
            return None
        return await self.generate_for_deal(meeting.deal_id, user_id, org_id)

    async def actions_from_email(self, email_id: Id, user_id: Id, org_id: Id, persist: bool = True):
        """Turn the action items an LLM finds in one email into actions."""
        email = await self.store.get_email(email_id, user_id=user_id, org_id=org_id)
        if email is None:
            raise NotFound(f"Email {email_id} not found")
        analysis = await self.analyzer.analyze(email)
        candidates = assign_next_steps(self.analyzer.to_candidates(email, analysis))
        if persist and candidates:
            return await self.store.insert_actions(
                [c.model_dump(mode="json") for c in candidates], user_id=user_id, org_id=org_id,
            )
        return candidates

    async def run_streaming(self, deal_ids: List[Id], user_id: Id, org_id: Id,
                            persist: bool = True) -> AsyncGenerator[dict, None]:
        """Generate for several deals, yielding pipeline events as each step runs"""

        yield log_event("generator", "Loading action config", "store_call",
                        {"server": "store", "method": "get_action_config"})
        config = await self.load_action_config(user_id, org_id)
        if config.generation_mode == "manual":
            yield log_event("generator", "Generation disabled (manual mode)", "agent_end",
                            {"generation_mode": config.generation_mode})
            return

        for deal_id in deal_ids:
            try:
                yield log_event("context", f"Building context for deal {deal_id}", "agent_start")
                ctx = await self.context_builder.build(deal_id, user_id, org_id)
                yield log_event("context", f"Context ready for {ctx.deal.name}", "agent_end",
                                {"stage": ctx.deal.stage, "contacts": len(ctx.contacts),
                                 "meetings": len(ctx.meetings), "emails": len(ctx.emails),
                                 "files": len(ctx.files), "playbook_actions": len(ctx.playbook_stage_actions)})

                yield log_event("rules", "Running rule groups", "agent_start")
                candidates = self.rule_candidates(ctx, config)
                yield log_event("rules", f"{len(candidates)} rule action(s)", "agent_end",
                                {"count": len(candidates)})

                ai_actions: List[ActionCandidate] = []
                if config.ai_enhanced_generation:
                    yield log_event("enhancer", "Calling Ollama for additional actions", "llm_call",
                                    {"server": "ollama", "model": self.settings.ollama_model})
                    ai_actions = assign_next_steps(await self.enhancer.enhance(ctx, candidates, config))
                    yield log_event("enhancer", f"{len(ai_actions)} AI action(s)", "llm_done",
                                    {"count": len(ai_actions)})
                candidates = deduplicate(candidates + ai_actions)

                persisted = []
                if persist:
                    yield log_event("generator", "Calling store to replace generated actions", "store_call",
                                    {"server": "store", "method": "replace_generated_actions",
                                     "deal_id": ctx.deal.id})
                    persisted = await self.store.replace_generated_actions(
                        ctx.deal.id, [c.model_dump(mode="json") for c in candidates],
                        user_id=user_id, org_id=org_id,
                    )
                    yield log_event("generator", f"Store saved {len(persisted)} action(s)", "store_response",
                                    {"server": "store", "saved": len(persisted)})

                yield log_event("generator", f"Actions ready for {ctx.deal.name}", "agent_end",
                                {"deal_id": ctx.deal.id, "actions": [c.title for c in candidates],
                                 "persisted": len(persisted)})
            except Exception as e:
                log.error("Generation error for deal %s: %s", deal_id, e)
                yield log_event("generator", f"Error: {e}", "agent_log",
                                {"error": str(e), "deal_id": deal_id})

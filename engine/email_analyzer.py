# file: engine/email_analyzer.py
from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from app.config import get_settings
from app.schema import ActionCandidate, Email, EmailAnalysis, SourceRule
from app.tools.llm import ollama_generate_json
from engine import playbook as pb
from engine.context_builder import utc

log = logging.getLogger("generator")

ANALYSIS_PROMPT = """You are an AI assistant that analyzes emails and extracts actionable information for a CRM system.

Analyze the following email:

To: {to}
Subject: {subject}
Date: {date}

Email Body:
{body}

Extract the following information and respond ONLY with valid JSON:

{{
  "action_items": [
    {{
      "description": "Clear, actionable description",
      "deadline": "ISO 8601 date or null if not mentioned",
      "priority": "high|medium|low",
      "estimated_effort": "Brief estimate like '30 minutes' or '2 hours'"
    }}
  ],
  "key_contacts": ["email@example.com or contact names"],
  "category": "Sales|Support|Meeting Request|Follow-up|Task|Information|Other",
  "sentiment": "positive|neutral|negative|urgent",
  "priority": "high|medium|low",
  "summary": "1-2 sentence summary of the email",
  "requires_response": true or false,
  "suggested_actions": ["Brief action suggestions"]
}}

Important:
- Only include action_items if there are clear, specific tasks mentioned
- Set requires_response to true if the email expects a reply
- Estimate priority based on urgency indicators, deadlines, and sender importance"""


class EmailAnalyzer:
    """Extracts action items, sentiment and a summary from an email via the LLM"""

    def __init__(self, llm=None, settings=None):
        self.llm = llm or ollama_generate_json
        self.settings = settings or get_settings()

    def _default(self, email: Email, error: str) -> EmailAnalysis:
        return EmailAnalysis(summary=email.subject or "Email analysis failed", error=error)

    async def analyze(self, email: Email) -> EmailAnalysis:
        prompt = ANALYSIS_PROMPT.format(
            to=email.to_address or "Unknown",
            subject=email.subject or "No Subject",
            date=email.sent_at.isoformat() if email.sent_at else "Unknown Date",
            body=(email.body or "No content")[:4000],
        )
        try:
            data = await self.llm(prompt, temperature=0.3)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            if not isinstance(data.get("action_items"), list):
                data["action_items"] = []
            return EmailAnalysis(**data)
        except ValueError as e:
            log.warning("Email %s analysis unusable: %s", email.id, e)
            return self._default(email, str(e))
        except Exception as e:
            log.error("Email %s analysis failed: %s", email.id, e)
            return self._default(email, str(e))

    async def analyze_batch(self, emails: List[Email]) -> List[dict]:
        """Sequential, with a pause between LLM calls."""
        results = []
        for i, email in enumerate(emails):
            analysis = await self.analyze(email)
            results.append({"email_id": email.id, "analysis": analysis, "success": analysis.error is None})
            if i < len(emails) - 1:
                await asyncio.sleep(self.settings.llm_batch_delay_seconds)
        return results

    def to_candidates(self, email: Email, analysis: EmailAnalysis,
                      now: Optional[datetime] = None) -> List[ActionCandidate]:
        now = utc(now) or datetime.now(timezone.utc)
        candidates = []
        for item in analysis.action_items:
            text = item.description.strip()
            if not text:
                continue
            action_type = pb.classify_action_type(text)
            due = utc(item.deadline) or now + timedelta(days=pb.suggest_due_days(None, action_type))
            candidates.append(ActionCandidate(
                title=text[:255],
                description=f"Subject: {email.subject or ''}\n\n{analysis.summary}",
                action_type=action_type,
                priority=item.priority,
                due_date=due,
                deal_id=email.deal_id,
                contact_id=email.contact_id,
                keywords=pb.extract_keywords(text),
                requires_external_evidence=pb.requires_external_evidence(action_type, text),
                source="email_analysis",
                source_rule=SourceRule.EMAIL_ANALYSIS,
                context=f"{analysis.category} / {analysis.sentiment}",
            ))
        return candidates

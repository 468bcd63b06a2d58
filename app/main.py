# file: app/main.py
import asyncio
import json
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse

from app.config import get_settings
from app.errors import NotFound, StoreError
from app.logging_utils import setup_logging
from app.schema import ActionEmailCheck, GenerateRequest, Scope
from app.tools.llm import check_llm_ready
from engine import ActionGenerator, CompletionDetector
from store.registry import StoreRegistry


def create_app(registry: StoreRegistry = None, llm=None) -> FastAPI:
    """Trigger surface for the engine: generation, detection and suggestion review"""

    registry = registry or StoreRegistry()
    generator = ActionGenerator(registry, llm=llm)
    detector = CompletionDetector(registry, llm=llm)
    app = FastAPI(title="Next Actions Engine", version="0.1.0")

    @app.on_event("startup")
    async def startup():
        await registry.connect()

    @app.on_event("shutdown")
    async def shutdown():
        await registry.close()

    @app.get("/health")
    async def health():
        """Store reachability plus an Ollama ping"""
        settings = get_settings()
        try:
            store_status = await registry.health_check()
            return {
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "ollama": {
                    "connected": await asyncio.to_thread(check_llm_ready),
                    "base_url": settings.ollama_base,
                    "model": settings.ollama_model,
                },
                "store": store_status,
            }
        except Exception as e:
            return JSONResponse(status_code=503, content={"status": "unhealthy", "error": str(e)})

    async def stream_generation(request: GenerateRequest) -> AsyncGenerator[bytes, None]:
        async for event in generator.run_streaming(request.deal_ids, request.user_id, request.org_id,
                                                   persist=request.persist):
            yield (json.dumps(event, default=str) + "\n").encode()

    @app.post("/generate")
    async def generate(request: GenerateRequest):
        """Generate actions for several deals with NDJSON streaming"""
        return StreamingResponse(stream_generation(request), media_type="application/x-ndjson")

    @app.post("/deals/{deal_id}/actions")
    async def generate_for_deal(deal_id: str, scope: Scope):
        try:
            result = await generator.generate_for_deal(deal_id, scope.user_id, scope.org_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except StoreError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return result.model_dump(mode="json")

    @app.post("/emails/{email_id}/actions")
    async def actions_from_email(email_id: str, scope: Scope):
        """Extract action items from one email and save them"""
        try:
            saved = await generator.actions_from_email(email_id, scope.user_id, scope.org_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"count": len(saved), "actions": [a.model_dump(mode="json") for a in saved]}

    @app.post("/emails/{email_id}/detect")
    async def detect_from_email(email_id: str, scope: Scope):
        report = await detector.detect_from_email(email_id, scope.user_id, scope.org_id)
        return report.model_dump(mode="json")

    @app.post("/meetings/{meeting_id}/detect")
    async def detect_from_meeting(meeting_id: str, scope: Scope):
        report = await detector.detect_from_meeting(meeting_id, scope.user_id, scope.org_id)
        return report.model_dump(mode="json")

    @app.post("/detect/email-for-action")
    async def detect_from_email_for_action(request: ActionEmailCheck):
        outcome = await detector.detect_from_email_for_action(
            request.email_id, request.user_id, request.action_id, request.org_id,
        )
        if outcome is None:
            raise HTTPException(status_code=404, detail="Email or action not found")
        if outcome.skipped_reason == "error":
            return JSONResponse(status_code=500, content=outcome.model_dump(mode="json"))
        return outcome.model_dump(mode="json")

    @app.post("/suggestions/{suggestion_id}/accept")
    async def accept_suggestion(suggestion_id: str, scope: Scope):
        try:
            accepted = await detector.accept_suggestion(suggestion_id, scope.user_id, scope.org_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        if not accepted:
            raise HTTPException(status_code=409, detail="Suggestion already resolved")
        return {"status": "accepted"}

    @app.post("/suggestions/{suggestion_id}/dismiss")
    async def dismiss_suggestion(suggestion_id: str, scope: Scope):
        try:
            dismissed = await detector.dismiss_suggestion(suggestion_id, scope.user_id, scope.org_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        if not dismissed:
            raise HTTPException(status_code=409, detail="Suggestion already resolved")
        return {"status": "dismissed"}

    return app


setup_logging()
app = create_app()

# app/tools/llm.py
from __future__ import annotations
import re, json, time, asyncio, logging, requests
import aiohttp
from typing import Any, Optional
from app.config import get_settings
from app.errors import LLMNotReady

log = logging.getLogger("llm")

# Strip Ollama <think> blocks just in case
_THINK_BLOCK = re.compile(r"<\s*think\s*>.*?<\s*/\s*think\s*>", re.I | re.S)
_CODE_FENCE = re.compile(r"```(?:json)?\s*|```", re.I)

def _clean(t: str) -> str:
    return _THINK_BLOCK.sub("", t or "").strip()

def parse_json_response(text: str) -> Any:
    """
    Pull the first JSON object or array out of a model reply.
    Tolerates code fences and leading/trailing chatter; raises LLMNotReady otherwise.
    """
    cleaned = _CODE_FENCE.sub("", _clean(text)).strip()
    if not cleaned:
        raise LLMNotReady("Empty response from LLM.")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = cleaned.find(opener), cleaned.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                continue
    raise LLMNotReady(f"LLM returned non-JSON output: {cleaned[:120]!r}")

def _post(path: str, payload: dict, timeout: float):
    s = get_settings()
    payload = dict(payload or {})
    payload.setdefault("think", s.ollama_think)  # default False (no <think> in response)
    url = f"{s.ollama_base}{path}"
    r = requests.post(url, json=payload, timeout=timeout)
    r.raise_for_status()
    return r.json()

def check_llm_ready() -> bool:
    s = get_settings()
    try:
        t0 = time.time()
        data = _post("/api/generate", {
            "model": s.ollama_model, "prompt": "ping",
            "options": {"temperature": 0.0}, "stream": False
        }, timeout=s.llm_timeout_seconds)
        resp = (data.get("response") or "").strip()
        ok = bool(resp)
        log.info("LLM ready=%s latency=%.2fs", ok, time.time() - t0)
        return ok
    except Exception as e:
        log.warning("LLM not ready: %s", e)
        return False

async def _generate_once(session: aiohttp.ClientSession, prompt: str, system: str,
                         temperature: float, timeout: float) -> str:
    s = get_settings()
    async with session.post(
        f"{s.ollama_base}/api/generate",
        json={
            "model": s.ollama_model,
            "prompt": prompt,
            "system": system,
            "options": {"temperature": temperature},
            "format": "json",
            "stream": False,
            "think": s.ollama_think,
        },
        timeout=aiohttp.ClientTimeout(total=timeout),
    ) as response:
        response.raise_for_status()
        data = await response.json()
        return data.get("response") or ""

async def ollama_generate_json(prompt: str, system: str = "", temperature: float = 0.1,
                               timeout: Optional[float] = None,
                               retries: Optional[int] = None) -> Any:
    """
    Ask the model for a JSON reply and return it parsed.

    Each attempt is bounded by `timeout`; after `retries` extra attempts the last
    error is raised as LLMNotReady so callers can apply their fallback value.
    """
    s = get_settings()
    timeout = s.llm_timeout_seconds if timeout is None else timeout
    retries = s.llm_max_retries if retries is None else retries
    last_error: Exception | None = None
    t0 = time.time()
    async with aiohttp.ClientSession() as session:
        for attempt in range(retries + 1):
            try:
                raw = await _generate_once(session, prompt, system, temperature, timeout)
                parsed = parse_json_response(raw)
                log.info("LLM json chars=%d attempt=%d latency=%.2fs", len(raw), attempt + 1, time.time() - t0)
                return parsed
            except (aiohttp.ClientError, asyncio.TimeoutError, LLMNotReady, ValueError) as e:
                last_error = e
                log.warning("LLM json attempt %d/%d failed: %s", attempt + 1, retries + 1, e)
    raise LLMNotReady(f"LLM unavailable after {retries + 1} attempt(s): {last_error}")

"""
Hiro - LLM Gateway
Single interface for every LLM call (conversation summaries, stage
recommendations, follow-ups, campaign personalization).

Features:
- OpenRouter chat-completions client (thin requests wrapper)
- Model fallback: primary model, then each fallback model on rate limit
- Same-key retries on rate limit, then key rotation through ApiKeyManager
- Per-key success/failure bookkeeping
- Logging redaction (no secrets in logs)
"""

import json
import logging
import re
import time
import uuid
from typing import Callable, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from hiro.ai.api_key_manager import ApiKeyManager, get_key_manager
from hiro.config import (
    LLM_FALLBACK_MODELS,
    LLM_PRIMARY_MODEL,
    OPENROUTER_BASE_URL,
    OPENROUTER_SITE_NAME,
    OPENROUTER_SITE_URL,
    OPENROUTER_TIMEOUT,
)

logger = logging.getLogger("hiro.ai.llm_gateway")

RATE_LIMIT_RETRY_DELAY = 6  # seconds
MAX_ATTEMPTS_PER_KEY = 3

LEAD_STATUSES = ("NEW", "CONTACTED", "QUALIFIED", "PROPOSAL_SENT", "NEGOTIATING",
                 "WON", "LOST", "UNRESPONSIVE")

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_RATE_LIMIT_MARKERS = ("429", "quota", "rate limit")


# ─── ERRORS ────────────────────────────────────────────────────

class LLMError(Exception):
    """Raised when the LLM provider returns an error or is unreachable."""
    pass


class RateLimitError(LLMError):
    """Raised on HTTP 429 or a quota/rate-limit error body."""
    pass


class AuthenticationError(LLMError):
    """Raised on HTTP 401 (bad or revoked key)."""
    pass


def _looks_rate_limited(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


# ─── OPENROUTER CLIENT ─────────────────────────────────────────

class OpenRouterClient:
    """OpenAI-compatible chat-completions client for OpenRouter."""

    def __init__(self, api_key: str, base_url: str = None, timeout: int = None,
                 session: requests.Session = None):
        self.api_key = api_key
        self.base_url = (base_url or OPENROUTER_BASE_URL).rstrip("/")
        self.timeout = timeout or OPENROUTER_TIMEOUT
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": OPENROUTER_SITE_URL,
            "X-Title": OPENROUTER_SITE_NAME,
        }

    def chat(self, model: str, prompt: str) -> tuple:
        """Send a single user message.

        Returns:
            (text, usage) where text may be empty if the model returned nothing.

        Raises:
            RateLimitError, AuthenticationError, LLMError
        """
        payload = {"model": model, "messages": [{"role": "user", "content": prompt}]}
        try:
            resp = self.session.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                data=json.dumps(payload),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise LLMError(f"Connection error: {e}")

        body = resp.text or ""
        if resp.status_code == 429:
            raise RateLimitError(f"HTTP 429: {body[:200]}")
        if resp.status_code == 401:
            raise AuthenticationError(f"HTTP 401: {body[:200]}")
        if resp.status_code >= 400:
            if _looks_rate_limited(body):
                raise RateLimitError(f"HTTP {resp.status_code}: {body[:200]}")
            raise LLMError(f"HTTP {resp.status_code}: {body[:200]}")

        try:
            data = resp.json()
        except ValueError:
            raise LLMError(f"Invalid JSON from provider: {body[:200]}")

        # OpenRouter reports upstream failures inside a 200 body
        error = data.get("error")
        if error:
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            if code == 429 or _looks_rate_limited(message):
                raise RateLimitError(message)
            if code == 401:
                raise AuthenticationError(message)
            raise LLMError(message or "Provider returned an error")

        choices = data.get("choices") or []
        text = ""
        if choices:
            text = ((choices[0].get("message") or {}).get("content") or "").strip()
        return text, data.get("usage") or {}


# ─── RESULT MODELS ─────────────────────────────────────────────

class ContactAnalysis(BaseModel):
    """Structured stage recommendation returned by the model."""
    model_config = ConfigDict(populate_by_name=True)

    summary: str = ""
    recommended_stage: str = Field("", alias="recommendedStage")
    lead_score: int = Field(0, alias="leadScore")
    lead_status: str = Field("NEW", alias="leadStatus")
    confidence: int = 0
    reasoning: str = ""

    @field_validator("lead_score", "confidence", mode="before")
    @classmethod
    def _clamp_percent(cls, v):
        if v is None:
            return 0
        return max(0, min(100, int(round(float(v)))))

    @field_validator("lead_status", mode="before")
    @classmethod
    def _known_status(cls, v):
        status = str(v or "").strip().upper()
        return status if status in LEAD_STATUSES else "NEW"

    @field_validator("summary", "recommended_stage", "reasoning", mode="before")
    @classmethod
    def _text(cls, v):
        return "" if v is None else str(v)


def format_conversation(messages: list) -> str:
    return "\n".join(f"{m.get('from', '')}: {m.get('text', '')}" for m in messages)


def fill_template(template: str, name: str) -> str:
    return template.replace("{firstName}", name).replace("{name}", name)


def extract_json(text: str) -> Optional[dict]:
    """Parse the first-{ to last-} span of a model response."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


# ─── LLM GATEWAY ───────────────────────────────────────────────

class LLMGateway:
    """Routes prompts through the key pool and model fallback chain.

    Usage:
        gateway = LLMGateway()
        summary = gateway.summarize_conversation(messages)
    """

    def __init__(self, key_manager: ApiKeyManager = None,
                 client_factory: Callable = None,
                 primary_model: str = None, fallback_models: list = None):
        self.keys = key_manager or get_key_manager()
        self.client_factory = client_factory or OpenRouterClient
        self.primary_model = primary_model or LLM_PRIMARY_MODEL
        self.fallback_models = list(LLM_FALLBACK_MODELS if fallback_models is None
                                    else fallback_models)

    @property
    def models(self) -> list:
        return [self.primary_model] + self.fallback_models

    def _try_models(self, client, prompt: str, models: list, request_id: str) -> str:
        """Call each model in turn until one answers; rate limits move to the next."""
        last_rate_limit = None
        for model in models:
            try:
                text, usage = client.chat(model, prompt)
                logger.info("[%s] Response from %s, usage=%s", request_id, model, usage)
                return text
            except RateLimitError as e:
                logger.warning("[%s] Model %s hit rate limit, trying next model", request_id, model)
                last_rate_limit = e
        raise last_rate_limit or RateLimitError("All models rate limited")

    def _complete(self, prompt: str, stage_name: str = "unknown", retries: int = 2,
                  models: list = None, attempts_per_key: int = MAX_ATTEMPTS_PER_KEY) -> Optional[str]:
        """Run a prompt with key rotation. Returns the response text or None."""
        request_id = uuid.uuid4().hex[:12]
        models = models or self.models
        preview = prompt[:80].replace("\n", " ") + ("..." if len(prompt) > 80 else "")
        logger.info("[%s] LLM request: stage=%s, prompt='%s'", request_id, stage_name, preview)

        while True:
            picked = self.keys.get_next_key()
            if not picked:
                logger.error("[%s] No API key available", request_id)
                return None
            key_id, api_key = picked
            client = self.client_factory(api_key)

            attempt = 0
            while True:
                start = time.time()
                try:
                    text = self._try_models(client, prompt, models, request_id)
                except RateLimitError:
                    attempt += 1
                    if attempt < attempts_per_key:
                        logger.warning("[%s] Rate limit on key %s, retrying same key "
                                       "(attempt %d/%d) in %ss", request_id, key_id,
                                       attempt + 1, attempts_per_key, RATE_LIMIT_RETRY_DELAY)
                        time.sleep(RATE_LIMIT_RETRY_DELAY)
                        continue
                    break
                except AuthenticationError as e:
                    self.keys.record_failure(key_id)
                    logger.error("[%s] Authentication failed for key %s: %s. "
                                 "OpenRouter keys start with 'sk-or-v1-'", request_id, key_id, e)
                    return None
                except LLMError as e:
                    self.keys.record_failure(key_id)
                    logger.error("[%s] %s failed: %s", request_id, stage_name, e)
                    return None

                if not text:
                    logger.error("[%s] No response content received", request_id)
                    return None
                self.keys.record_success(key_id)
                logger.info("[%s] %s completed", request_id, stage_name,
                            extra={"duration_ms": int((time.time() - start) * 1000)})
                return text

            logger.warning("[%s] Rate limit persists, marking key %s as rate-limited",
                           request_id, key_id)
            self.keys.mark_rate_limited(key_id)
            if retries <= 0:
                logger.error("[%s] All API keys rate limited", request_id)
                return None
            retries -= 1
            time.sleep(RATE_LIMIT_RETRY_DELAY)

    # ─── prompts ──────────────────────────────────────────────

    def summarize_conversation(self, messages: list, retries: int = 2) -> Optional[str]:
        """3-5 sentence summary of a conversation, or None."""
        prompt = f"""Analyze this conversation and provide a concise 3-5 sentence summary covering:
- The main topic or purpose of the conversation
- Key points discussed
- Customer intent or needs
- Any action items or requests

Conversation:
{format_conversation(messages)}

Summary:"""
        return self._complete(prompt, stage_name="summary", retries=retries)

    def recommend_stage(self, messages: list, stages: list,
                        retries: int = 2) -> Optional[ContactAnalysis]:
        """Ask the model for a stage, score, status and confidence."""
        lines = []
        for i, s in enumerate(stages, start=1):
            desc = f"{i}. {s['name']} ({s.get('type', '')})"
            if s.get("lead_score_min") is not None and s.get("lead_score_max") is not None:
                desc += f" [Score: {s['lead_score_min']}-{s['lead_score_max']}]"
            if s.get("description"):
                desc += f": {s['description']}"
            lines.append(desc)
        stage_descriptions = "\n".join(lines)

        prompt = f"""Analyze this customer conversation and intelligently assign them to the most appropriate sales/support stage.

Available Pipeline Stages:
{stage_descriptions}

Conversation:
{format_conversation(messages)}

Analyze the conversation and determine:
1. Which stage best fits this contact's current position in the customer journey
2. Their engagement level and intent (lead score 0-100)
   - Use the stage score ranges as guides for appropriate scoring
3. Their status (NEW, CONTACTED, QUALIFIED, PROPOSAL_SENT, NEGOTIATING, WON, LOST, UNRESPONSIVE)
   - If the conversation indicates a CLOSED deal, status: WON
   - If the conversation indicates a LOST opportunity, status: LOST
4. Your confidence in this assessment (0-100)

Scoring Guidelines:
- 0-30: Cold leads, initial contact, minimal engagement, just browsing
- 31-60: Warm leads, asking questions, showing interest, early qualification
- 61-80: Hot leads, high engagement, discussing specifics, budget/timeline mentioned
- 81-100: Ready to close, strong commitment signals, final negotiations, deal imminent

IMPORTANT:
- If customer has AGREED TO BUY, CLOSED THE DEAL, or SIGNED: leadStatus MUST be "WON" (score 85-100)
- If customer has REJECTED, DECLINED, or SAID NO: leadStatus MUST be "LOST" (score 0-20)
- Match your lead score to the appropriate stage's score range when possible

Respond ONLY with valid JSON (no markdown, no explanation):
{{
  "summary": "3-5 sentence summary of conversation",
  "recommendedStage": "exact stage name from list above",
  "leadScore": 0-100,
  "leadStatus": "NEW|CONTACTED|QUALIFIED|PROPOSAL_SENT|NEGOTIATING|WON|LOST|UNRESPONSIVE",
  "confidence": 0-100,
  "reasoning": "brief explanation of stage choice and score"
}}"""
        text = self._complete(prompt, stage_name="stage_recommendation", retries=retries)
        if text is None:
            return None

        parsed = extract_json(text)
        if parsed is None:
            logger.error("No JSON found in stage recommendation. Raw text: %s", text[:200])
            return None
        try:
            analysis = ContactAnalysis.model_validate(parsed)
        except ValidationError as e:
            logger.error("Stage recommendation failed validation: %s", e)
            return None

        logger.info("Stage recommendation: %s (confidence: %d%%, score: %d)",
                    analysis.recommended_stage, analysis.confidence, analysis.lead_score)
        return analysis

    def generate_follow_up(self, contact_name: str, history: list, custom_prompt: str = None,
                           language_style: str = None, retries: int = 2) -> Optional[dict]:
        """Draft a follow-up message. Returns {"message", "reasoning"} or None."""
        style = (f"\n\nLanguage Style: {language_style}" if language_style else
                 "\n\nUse a friendly, professional tone that feels natural and conversational.")
        custom = f"\n\nCustom Instructions: {custom_prompt}" if custom_prompt else ""

        prompt = f"""You are a helpful business assistant generating a follow-up message for a customer named {contact_name}.

Previous Conversation:
{format_conversation(history)}
{style}{custom}

Generate a natural, engaging follow-up message that:
1. References the previous conversation context
2. Provides value or continues the conversation naturally
3. Encourages further engagement
4. Feels personalized and human (not robotic)
5. Is concise (2-4 sentences)

Respond ONLY with valid JSON (no markdown, no explanation):
{{
  "message": "the follow-up message text here",
  "reasoning": "brief explanation of why this message was chosen"
}}"""
        text = self._complete(prompt, stage_name="follow_up", retries=retries,
                              models=[self.primary_model])
        if text is None:
            return None
        parsed = extract_json(text)
        if not parsed or not parsed.get("message"):
            logger.error("No JSON found in follow-up response")
            return None
        return {"message": str(parsed["message"]), "reasoning": str(parsed.get("reasoning", ""))}

    def personalize_message(self, contact_name: str, history: list, template: str,
                            instructions: str = None, retries: int = 2) -> str:
        """Personalized rewrite of a campaign template. Falls back to the filled template."""
        history_text = format_conversation(history) if history else "No previous conversation"
        custom = f"\n\nCustom Instructions: {instructions}" if instructions else ""

        prompt = f"""Generate a personalized follow-up message for {contact_name}.

Template Message: {template}

Previous Conversation History:
{history_text}{custom}

Create a natural, personalized version of the template message that:
1. References specific points from the conversation history (if available)
2. Feels personal and tailored to {contact_name}
3. Maintains the intent and key information from the template
4. Uses a conversational, friendly tone
5. Is concise and engaging (2-4 sentences)

Respond with ONLY the personalized message text (no JSON, no markdown, no explanation)."""
        text = self._complete(prompt, stage_name="personalize", retries=retries,
                              models=[self.primary_model], attempts_per_key=1)
        return text or fill_template(template, contact_name)

    def get_available_key_count(self) -> int:
        return self.keys.get_key_count()


# ─── MODULE-LEVEL SINGLETON ───────────────────────────────────

_gateway_instance = None


def get_gateway() -> LLMGateway:
    """Get or create the module-level LLM Gateway singleton."""
    global _gateway_instance
    if _gateway_instance is None:
        _gateway_instance = LLMGateway()
    return _gateway_instance

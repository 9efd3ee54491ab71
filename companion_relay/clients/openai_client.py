# companion_relay/clients/openai_client.py
#
# Single integration layer for the response generator: companion replies and
# feedback scoring against any OpenAI-compatible endpoint.
# - Upstream failures are classified and logged here, never passed verbatim
#   to clients.
# - Generation raises GeneratorError (the relay substitutes FALLBACK_REPLY);
#   scoring never raises and returns the neutral score instead.

import asyncio
import json
import random
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

from openai import AsyncOpenAI

from companion_relay.config.settings import COACH_PROMPT_PATH, COMPANION_PROMPT_PATH, Settings
from companion_relay.core.errors import GeneratorError
from companion_relay.memory.models import Message, MessageRole
from companion_relay.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

FALLBACK_REPLY = (
    "I'm sorry, I'm having trouble finding the right words right now. "
    "Could you give me a moment and try again?"
)
FALLBACK_FEEDBACK = "I'm unable to analyze this message right now. Please try again."

# Upstream conversations accept a bounded number of seed items
MAX_SEED_ITEMS = 20


@dataclass
class GeneratedReply:
    content: str
    continuation_token: Optional[str] = None


@dataclass
class MessageScore:
    score: int
    feedback: str

    def to_wire(self) -> Dict[str, Any]:
        return {"score": self.score, "feedback": self.feedback}


# ---------------------------------------------------------------------------
# Base URL normalization
# ---------------------------------------------------------------------------

def _strip_outer_quotes(s: str) -> str:
    """
    Users sometimes put OPENAI_BASE_URL="https://..." including quotes.
    This removes a single pair of matching outer quotes.
    """
    s2 = (s or "").strip()
    if len(s2) >= 2 and ((s2[0] == s2[-1]) and s2[0] in ("'", '"')):
        return s2[1:-1].strip()
    return s2


def normalize_api_base(raw: Optional[str]) -> str:
    """
    Ensures the base URL ends with /v1 (e.g. "https://api.groq.com/openai"
    becomes "https://api.groq.com/openai/v1").
    """
    base = _strip_outer_quotes((raw or "https://api.openai.com").strip())

    if not (base.startswith("http://") or base.startswith("https://")):
        raise GeneratorError(f"OPENAI_BASE_URL is invalid (missing scheme): {base!r}")

    while base.endswith("/"):
        base = base[:-1]

    # A full endpoint like .../v1/chat/completions is trimmed back to /v1
    if "/v1/" in base:
        return base.split("/v1/")[0] + "/v1"

    if base.endswith("/v1"):
        return base

    return base + "/v1"


# ---------------------------------------------------------------------------
# Request ids, error classification, back-off
# ---------------------------------------------------------------------------

def _mk_req_id(prefix: str = "req") -> str:
    return f"{prefix}_{int(time.time()*1000)}_{random.randint(1000, 9999)}"


def _is_transient_status(code: int) -> bool:
    return code in {408, 409, 425, 429, 500, 502, 503, 504}


def _backoff_delay(attempt_idx: int) -> float:
    base = 0.4 * (2 ** max(0, attempt_idx - 1))
    jitter = random.uniform(0.0, 0.25)
    return min(3.0, base + jitter)


def _classify_error(e: BaseException) -> str:
    name = e.__class__.__name__
    msg = (str(e) or "").lower()

    if isinstance(e, asyncio.TimeoutError) or "timeout" in name.lower() or "timed out" in msg:
        return "upstream_timeout"

    if "notfound" in name.lower() or "404" in msg:
        return "upstream_404_not_found"

    if "authentication" in name.lower() or "401" in msg or "incorrect api key" in msg:
        return "upstream_auth"

    if "ratelimit" in name.lower() or "429" in msg or "rate limit" in msg:
        return "upstream_rate_limit"

    if "502" in msg or "bad gateway" in msg:
        return "upstream_502"

    if "503" in msg or "service unavailable" in msg:
        return "upstream_503"

    if "connection" in name.lower() or "connection" in msg or "dns" in msg:
        return "upstream_network"

    if isinstance(e, (json.JSONDecodeError, GeneratorError)):
        return "upstream_malformed"

    return "upstream_unknown"


def _is_transient(e: BaseException) -> bool:
    status = getattr(e, "status_code", None)
    if isinstance(status, int):
        return _is_transient_status(status)
    return _classify_error(e) in {
        "upstream_timeout",
        "upstream_rate_limit",
        "upstream_502",
        "upstream_503",
        "upstream_network",
    }


# ---------------------------------------------------------------------------
# Prompt loading
# ---------------------------------------------------------------------------

def load_prompt(path: Path) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            prompt = f.read().strip()
    except OSError as e:
        logger.error("Failed to load system prompt from %s: %s", path, e)
        raise GeneratorError(f"System prompt missing at {path}") from e

    if not prompt:
        raise GeneratorError(f"System prompt at {path} is empty.")
    return prompt


# ---------------------------------------------------------------------------
# Score parsing
# ---------------------------------------------------------------------------

_SCORE_RE = re.compile(r'"(?:score|connectionScore)"\s*:\s*(-?\d+(?:\.\d+)?)')
_FEEDBACK_RE = re.compile(r'"feedback"\s*:\s*"((?:[^"\\]|\\.)*)')


def _salvage_partial_score(raw: str) -> Dict[str, Any]:
    """
    Pull score/feedback out of a truncated JSON object, e.g. when the model
    ran out of tokens mid-string.
    """
    score_match = _SCORE_RE.search(raw)
    if not score_match:
        raise GeneratorError("Score payload is not JSON and holds no score field.")

    # keep the literal's type: only a float may be read as a unit-interval score
    number = score_match.group(1)
    data: Dict[str, Any] = {"score": float(number) if "." in number else int(number)}
    feedback_match = _FEEDBACK_RE.search(raw)
    if feedback_match and feedback_match.group(1).strip():
        data["feedback"] = feedback_match.group(1).strip() + "..."
    return data


def _normalize_feedback(raw: Any) -> str:
    if isinstance(raw, str):
        return raw.strip()
    if isinstance(raw, (list, tuple)):
        return " ".join(str(part).strip() for part in raw if isinstance(part, str) and part.strip())
    if isinstance(raw, dict):
        return " ".join(str(v).strip() for v in raw.values() if isinstance(v, str) and v.strip())
    return ""


def parse_score_payload(raw: str, score_min: int = 1, score_max: int = 10) -> MessageScore:
    """
    Turn the coach model's JSON into a MessageScore on [score_min, score_max].

    Accepts either "score" or "connectionScore". A float in [0, 1] is read as
    a unit-interval score and scaled to score_max. Raises GeneratorError when
    no usable score is present.
    """
    text = (raw or "").strip()
    if not text:
        raise GeneratorError("Empty score payload.")

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("[score] payload is not valid JSON; attempting partial extraction.")
        data = _salvage_partial_score(text)

    if not isinstance(data, dict):
        raise GeneratorError("Score payload is not a JSON object.")

    value = data.get("score", data.get("connectionScore"))
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise GeneratorError(f"Score payload has no numeric score: {value!r}")

    if isinstance(value, float) and 0.0 <= value <= 1.0 and score_max > 1:
        value = value * score_max

    score = max(score_min, min(score_max, int(round(value))))
    feedback = _normalize_feedback(data.get("feedback")) or FALLBACK_FEEDBACK
    return MessageScore(score=score, feedback=feedback)


def neutral_score(score_min: int = 1, score_max: int = 10) -> MessageScore:
    return MessageScore(score=(score_min + score_max) // 2, feedback=FALLBACK_FEEDBACK)


# ---------------------------------------------------------------------------
# Message shaping
# ---------------------------------------------------------------------------

def _to_input_item(message: Message) -> Dict[str, str]:
    role = "user" if message.role == MessageRole.USER.value else "assistant"
    return {"role": role, "content": message.content}


def _format_history(history: Sequence[Message]) -> str:
    lines = []
    for m in history:
        speaker = "Sender" if m.role == MessageRole.USER.value else "Recipient"
        lines.append(f"{speaker}: {m.content}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class ResponseGenerator:
    """
    Produces companion replies and feedback scores.

    The AsyncOpenAI client is built lazily so the relay can start without an
    API key; every generation then fails over to the fallback reply.
    """

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None) -> None:
        self._settings = settings
        self._client = client
        self._companion_prompt: Optional[str] = None
        self._coach_prompt: Optional[str] = None

    # ---------- client + config ----------

    def _get_client(self) -> AsyncOpenAI:
        if self._client is not None:
            return self._client

        api_key = (self._settings.openai_api_key or "").strip()
        if not api_key:
            raise GeneratorError("OPENAI_API_KEY is not configured.")

        base_url = normalize_api_base(self._settings.openai_base_url)
        # Retries are handled here so they share one classification + log format
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=self._settings.generator_timeout_seconds,
            max_retries=0,
        )
        logger.info("Response generator api_base resolved to: %s api=%s", base_url, self._settings.generator_api)
        return self._client

    def _get_companion_prompt(self) -> str:
        if self._companion_prompt is None:
            self._companion_prompt = load_prompt(COMPANION_PROMPT_PATH)
        return self._companion_prompt

    def _get_coach_prompt(self) -> str:
        if self._coach_prompt is None:
            self._coach_prompt = load_prompt(COACH_PROMPT_PATH)
        return self._coach_prompt

    def _coach_model(self) -> str:
        return (self._settings.coach_model or "").strip() or self._settings.openai_model

    async def _with_retries(self, tag: str, req_id: str, call: Callable[[], Awaitable[T]]) -> T:
        max_attempts = max(1, self._settings.generator_max_attempts)
        last_err: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            t0 = time.monotonic()
            try:
                result = await call()
                dt_ms = int((time.monotonic() - t0) * 1000)
                logger.info("[%s] req_id=%s OK attempt=%d latency_ms=%d", tag, req_id, attempt, dt_ms)
                return result
            except GeneratorError:
                raise
            except Exception as e:
                last_err = e
                dt_ms = int((time.monotonic() - t0) * 1000)
                code = _classify_error(e)
                transient = _is_transient(e) and code != "upstream_auth"

                logger.warning("[%s] req_id=%s FAIL attempt=%d/%d latency_ms=%d code=%s transient=%s err=%s",
                               tag, req_id, attempt, max_attempts, dt_ms, code, transient, str(e))

                if attempt >= max_attempts or not transient:
                    break

                await asyncio.sleep(_backoff_delay(attempt))

        logger.error("[%s] req_id=%s failed after retries. last_code=%s last_err=%r",
                     tag, req_id, _classify_error(last_err or Exception("unknown")), last_err)
        raise GeneratorError(f"{tag} request failed upstream.") from last_err

    # ---------- companion replies ----------

    async def generate_counterpart_message(
        self,
        content: str,
        conversation_id: int,
        continuation_token: Optional[str] = None,
        history: Optional[Sequence[Message]] = None,
    ) -> GeneratedReply:
        """
        Produce the companion's reply to `content`.

        In "conversations" mode the upstream conversation holds the context:
        without a token a new upstream conversation is created (seeded with
        `history`) and its id is returned as the continuation token. In "chat"
        mode the history window is sent with every call and no token is
        returned.
        """
        cleaned = (content or "").strip()
        if not cleaned:
            raise GeneratorError("Cannot generate a reply to empty content.")

        req_id = _mk_req_id("generate")
        client = self._get_client()
        instructions = self._get_companion_prompt()
        model_name = self._settings.openai_model
        past = list(history or [])

        logger.info("[generate] req_id=%s start conversation_id=%s model=%s api=%s has_token=%s history=%d",
                    req_id, conversation_id, model_name, self._settings.generator_api,
                    bool(continuation_token), len(past))

        if self._settings.generator_api == "chat":
            async def _chat_call() -> str:
                messages: List[Dict[str, str]] = [{"role": "system", "content": instructions}]
                messages += [_to_input_item(m) for m in past]
                messages.append({"role": "user", "content": cleaned})
                resp = await client.chat.completions.create(
                    model=model_name,
                    messages=messages,
                    temperature=0.7,
                )
                return resp.choices[0].message.content or ""

            text = await self._with_retries("generate", req_id, _chat_call)
            token = None
        else:
            token = continuation_token
            if not token:
                seed = [_to_input_item(m) for m in past][-MAX_SEED_ITEMS:]

                async def _create_conversation() -> str:
                    conv = await client.conversations.create(
                        items=seed,
                        metadata={"relay_conversation_id": str(conversation_id)},
                    )
                    return conv.id

                token = await self._with_retries("generate", req_id, _create_conversation)

            async def _respond() -> str:
                resp = await client.responses.create(
                    model=model_name,
                    instructions=instructions,
                    input=[{"role": "user", "content": cleaned}],
                    conversation=token,
                    temperature=0.7,
                )
                return resp.output_text or ""

            text = await self._with_retries("generate", req_id, _respond)

        text = (text or "").strip()
        if not text:
            logger.error("[generate] req_id=%s conversation_id=%s empty reply from model.", req_id, conversation_id)
            raise GeneratorError("Model returned an empty reply.")

        snippet = text[:240] + ("..." if len(text) > 240 else "")
        logger.info("[generate] req_id=%s conversation_id=%s reply=%r", req_id, conversation_id, snippet)
        return GeneratedReply(content=text, continuation_token=token)

    # ---------- feedback scoring ----------

    def _build_score_request(
        self,
        content: str,
        history: Sequence[Message],
        subject_attributes: Optional[Mapping[str, Any]],
    ) -> str:
        s_min, s_max = self._settings.score_min, self._settings.score_max
        parts = [
            f"Score the message on an integer scale from {s_min} to {s_max} "
            f"and return JSON: {{\"score\": <integer>, \"feedback\": \"<text>\"}}."
        ]
        if subject_attributes:
            about = "; ".join(f"{k}: {v}" for k, v in subject_attributes.items() if v not in (None, ""))
            if about:
                parts.append(f"About the sender: {about}")
        if history:
            parts.append("Conversation so far:\n" + _format_history(history))
        parts.append(f"Message to analyze: {json.dumps(content, ensure_ascii=False)}")
        return "\n\n".join(parts)

    async def score_message(
        self,
        content: str,
        history: Optional[Sequence[Message]] = None,
        subject_attributes: Optional[Mapping[str, Any]] = None,
    ) -> MessageScore:
        """
        Rate how likely `content` is to build a connection and give advice.
        Never raises: any failure yields the neutral score and an apology.
        """
        s_min, s_max = self._settings.score_min, self._settings.score_max
        req_id = _mk_req_id("score")

        cleaned = (content or "").strip()
        if not cleaned:
            logger.warning("[score] req_id=%s empty content; returning neutral score.", req_id)
            return neutral_score(s_min, s_max)

        try:
            client = self._get_client()
            messages = [
                {"role": "system", "content": self._get_coach_prompt()},
                {"role": "user", "content": self._build_score_request(cleaned, list(history or []), subject_attributes)},
            ]

            async def _call() -> str:
                resp = await client.chat.completions.create(
                    model=self._coach_model(),
                    messages=messages,
                    temperature=0.7,
                    max_tokens=200,
                    response_format={"type": "json_object"},
                )
                return resp.choices[0].message.content or ""

            raw = await asyncio.wait_for(
                self._with_retries("score", req_id, _call),
                timeout=self._settings.generator_timeout_seconds,
            )
            result = parse_score_payload(raw, s_min, s_max)
        except Exception as e:
            logger.error("[score] req_id=%s falling back to neutral score code=%s err=%r",
                         req_id, _classify_error(e), e)
            return neutral_score(s_min, s_max)

        logger.info("[score] req_id=%s score=%d feedback_len=%d", req_id, result.score, len(result.feedback))
        return result

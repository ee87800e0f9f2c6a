"""
Similarity Oracle Adapter
=========================
Asks an external language model which concepts in a small batch are
semantically similar enough to merge.

The model is treated as an opaque, possibly-unreliable service:
  - transport failures, timeouts and non-200 responses -> OracleCallError
  - unparseable or schema-violating output             -> OracleParseError
Both are caught at ``compare()``; callers always receive a (possibly empty)
list of SimilarityCandidate objects.

Supported providers: "ollama" (local), "openai" (OpenAI-compatible chat
completions) and "anthropic" (messages API).
"""

from __future__ import annotations

import asyncio
import json
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import aiohttp
from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from .config import OracleConfig
from .exceptions import OracleCallError, OracleError, OracleParseError
from .models import Concept, SimilarityCandidate

SYSTEM_PROMPT = """You are a semantic similarity analyzer. Given a list of concepts, identify pairs that are semantically similar enough to merge.

Return a JSON array of pairs: [{{"id1": number, "id2": number, "similarity": 0.0-1.0, "reason": "why they should merge"}}]

Only include pairs with similarity >= {threshold}.
Consider: synonyms, near-synonyms, concepts that are subsets of each other, or concepts that represent the same underlying idea.

Return ONLY valid JSON array. If no pairs qualify, return []."""

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


# ─────────────────────────────────────────────────────────────────────────────
# Model clients
# ─────────────────────────────────────────────────────────────────────────────


class ModelClient:
    """Base class for LLM model clients."""

    provider = "base"

    def __init__(self, model_name: str, model_url: str, timeout: int = 60):
        self.model_name = model_name
        self.model_url = model_url
        self.timeout = timeout

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 500,
        temperature: float = 0.2,
    ) -> str:
        """Return the model's text completion. Raises OracleCallError on failure."""
        raise NotImplementedError

    async def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> dict:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    if resp.status != 200:
                        error_text = await resp.text()
                        raise OracleCallError(
                            self.provider, f"HTTP {resp.status}: {error_text[:200]}"
                        )
                    return await resp.json()
        except asyncio.TimeoutError:
            raise OracleCallError(self.provider, f"request timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise OracleCallError(self.provider, f"request failed: {e}")


class OllamaClient(ModelClient):
    """Client for Ollama local models."""

    provider = "ollama"

    def __init__(self, model_name: str, model_url: str, timeout: int = 60):
        super().__init__(model_name, model_url, timeout)
        self._generate_url = f"{model_url.rstrip('/')}/api/generate"

    async def generate(self, prompt, system=None, max_tokens=500, temperature=0.2) -> str:
        payload = {
            "model": self.model_name,
            "prompt": prompt,
            "stream": False,
            "options": {
                "num_predict": max_tokens,
                "temperature": temperature,
            },
        }
        if system:
            payload["system"] = system

        data = await self._post(self._generate_url, payload)
        return str(data.get("response", "")).strip()


class APIClient(ModelClient):
    """Client for hosted API providers (OpenAI-compatible, Anthropic)."""

    def __init__(
        self,
        model_name: str,
        model_url: str,
        api_key: Optional[str] = None,
        provider: str = "openai",
        timeout: int = 60,
    ):
        super().__init__(model_name, model_url, timeout)
        self.api_key = api_key
        self.provider = provider

    async def generate(self, prompt, system=None, max_tokens=500, temperature=0.2) -> str:
        headers = {"Content-Type": "application/json"}
        base = self.model_url.rstrip("/")

        if self.provider == "anthropic":
            endpoint = f"{base}/v1/messages"
            headers["x-api-key"] = self.api_key or ""
            headers["anthropic-version"] = "2023-06-01"
            payload = {
                "model": self.model_name,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "messages": [{"role": "user", "content": prompt}],
            }
            if system:
                payload["system"] = system
        else:
            endpoint = f"{base}/v1/chat/completions"
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            messages = [{"role": "user", "content": prompt}]
            if system:
                messages.insert(0, {"role": "system", "content": system})
            payload = {
                "model": self.model_name,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }

        data = await self._post(endpoint, payload, headers)
        # Handle both OpenAI and Anthropic response formats
        try:
            if "choices" in data:
                return (data["choices"][0]["message"]["content"] or "").strip()
            if "content" in data:
                return data["content"][0]["text"].strip()
        except (KeyError, IndexError, TypeError) as e:
            raise OracleCallError(self.provider, f"unexpected response shape: {e}")
        return ""


def build_model_client(cfg: OracleConfig) -> ModelClient:
    """Factory for model clients."""
    provider = cfg.provider.lower()
    if provider in ("openai", "anthropic"):
        return APIClient(
            model_name=cfg.model,
            model_url=cfg.url,
            api_key=cfg.api_key,
            provider=provider,
            timeout=cfg.timeout_seconds,
        )
    if provider != "ollama":
        logger.warning(f"Unknown oracle provider '{provider}', defaulting to Ollama")
    return OllamaClient(model_name=cfg.model, model_url=cfg.url, timeout=cfg.timeout_seconds)


# ─────────────────────────────────────────────────────────────────────────────
# Response decoding
# ─────────────────────────────────────────────────────────────────────────────


class OraclePair(BaseModel):
    """One pair as returned by the model."""

    id1: int
    id2: int
    similarity: float = Field(ge=0.0)
    reason: str = ""

    @field_validator("similarity")
    @classmethod
    def normalize_percent(cls, v: float) -> float:
        # Some models answer on a 0-100 scale.
        if v > 1.0:
            v = v / 100.0
        if v > 1.0:
            raise ValueError(f"similarity out of range: {v * 100}")
        return v

    @field_validator("reason", mode="before")
    @classmethod
    def coerce_reason(cls, v) -> str:
        return "" if v is None else str(v)


_PAIR_LIST = TypeAdapter(List[dict])
_PAIR = TypeAdapter(OraclePair)


def decode_oracle_response(raw: str) -> List[OraclePair]:
    """
    Decode model text into validated pairs.

    Code fences and prose around the JSON array are tolerated. Individual items
    that fail validation are dropped; a response with no JSON array at all, or
    whose array is not a list of objects, raises OracleParseError.
    """
    if raw is None or not raw.strip():
        raise OracleParseError("empty response", raw or "")

    text = raw.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    start, end = text.find("["), text.rfind("]")
    if start == -1 or end < start:
        raise OracleParseError("no JSON array found", raw)

    try:
        items = _PAIR_LIST.validate_python(json.loads(text[start:end + 1]))
    except (json.JSONDecodeError, ValidationError) as e:
        raise OracleParseError(f"invalid JSON array: {e}", raw)

    pairs: List[OraclePair] = []
    for item in items:
        try:
            pairs.append(_PAIR.validate_python(item))
        except ValidationError as e:
            logger.debug(f"Dropping malformed oracle pair {item!r}: {e.error_count()} error(s)")
    return pairs


# ─────────────────────────────────────────────────────────────────────────────
# Oracle port
# ─────────────────────────────────────────────────────────────────────────────


class SimilarityOracle(ABC):
    """Port: ``compare(batch, threshold)`` never raises."""

    @abstractmethod
    async def compare(self, batch: Sequence[Concept], threshold: float) -> List[SimilarityCandidate]:
        ...


def format_batch(batch: Sequence[Concept]) -> str:
    return "\n".join(f"{c.id}: {c.name} ({c.cluster})" for c in batch)


class LLMSimilarityOracle(SimilarityOracle):
    """Similarity oracle backed by a chat/completion model."""

    def __init__(self, client: ModelClient, config: Optional[OracleConfig] = None):
        self.client = client
        self.cfg = config or OracleConfig()

    @classmethod
    def from_config(cls, cfg: OracleConfig) -> "LLMSimilarityOracle":
        return cls(build_model_client(cfg), cfg)

    async def compare(self, batch: Sequence[Concept], threshold: float) -> List[SimilarityCandidate]:
        if len(batch) < 2:
            return []
        try:
            raw = await self.client.generate(
                prompt=f"Analyze these concepts for similarity:\n{format_batch(batch)}",
                system=SYSTEM_PROMPT.format(threshold=threshold),
                max_tokens=self.cfg.max_tokens,
                temperature=self.cfg.temperature,
            )
            pairs = decode_oracle_response(raw)
        except OracleError as e:
            logger.warning(f"Oracle batch of {len(batch)} skipped: {e}")
            return []
        except Exception as e:
            logger.error(f"Oracle batch of {len(batch)} failed unexpectedly: {e}")
            return []

        return [
            SimilarityCandidate(id1=p.id1, id2=p.id2, similarity=p.similarity, reason=p.reason)
            for p in pairs
            if p.similarity >= threshold and p.id1 != p.id2
        ]

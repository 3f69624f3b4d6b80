"""
Pulso — AI Classifier
──────────────────────
Narrow request/response contract with the AI collaborator:

  request  = {title, content, candidate categories}
  response = accepted + category + summary  |  rejected + reason
             | transient failure

Claude is asked for a single JSON object. Anything that is not a
well-formed answer is a transient failure, never an acceptance:

  timeout             no answer within CLASSIFY_TIMEOUT_S
  quota               rate limited / overloaded
  malformed_response  not JSON, or missing "accepted"
  upstream            any other API / connection error
  unavailable         no ANTHROPIC_API_KEY configured

Environment variables:
  ANTHROPIC_API_KEY   = sk-ant-...
  AI_MODEL            = claude-sonnet-4-20250514
  CLASSIFY_TIMEOUT_S  = 20
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

import anthropic
from anthropic import Anthropic

log = logging.getLogger("pulso.ai")

AI_MODEL           = os.getenv("AI_MODEL", "claude-sonnet-4-20250514")
AI_MAX_TOKENS      = int(os.getenv("AI_MAX_TOKENS", "600"))
CLASSIFY_TIMEOUT_S = float(os.getenv("CLASSIFY_TIMEOUT_S", "20"))

MAX_PROMPT_CONTENT = 3000


class OutcomeKind(str, Enum):
    ACCEPTED  = "accepted"
    REJECTED  = "rejected"
    TRANSIENT = "transient"


@dataclass
class ClassificationOutcome:
    kind:        OutcomeKind
    category:    Optional[str] = None
    summary:     Optional[str] = None
    key_points:  List[str] = field(default_factory=list)
    clean_title: Optional[str] = None
    reason:      Optional[str] = None     # rejection reason
    failure:     Optional[str] = None     # transient failure kind
    detail:      Optional[str] = None

    @classmethod
    def accepted(cls, category: Optional[str], summary: Optional[str] = None,
                 key_points: Optional[List[str]] = None, clean_title: Optional[str] = None):
        return cls(OutcomeKind.ACCEPTED, category=category, summary=summary,
                   key_points=key_points or [], clean_title=clean_title)

    @classmethod
    def rejected(cls, reason: str):
        return cls(OutcomeKind.REJECTED, reason=reason)

    @classmethod
    def transient(cls, failure: str, detail: str):
        return cls(OutcomeKind.TRANSIENT, failure=failure, detail=detail)


def build_prompt(title: str, content: str, categories: Sequence[str]) -> str:
    return f"""Sos editor de un portal de finanzas y agronegocios de Rosario, Argentina.

Decidí si esta noticia es relevante para el portal (finanzas, economía, mercados
agrícolas, cripto o empresas que cotizan en Argentina) y, si lo es, resumila.

Título: {title}
Contenido: {content[:MAX_PROMPT_CONTENT]}

Categorías posibles: {", ".join(categories)}

Respondé SOLO con un objeto JSON, sin texto adicional:
{{"accepted": true|false,
  "category": "<una de las categorías posibles>",
  "clean_title": "<título sin clickbait>",
  "summary": "<resumen de 2-3 oraciones>",
  "key_points": ["<punto 1>", "<punto 2>", "<punto 3>"],
  "rejection_reason": "<motivo breve si accepted es false>"}}"""


def parse_response(text: str, categories: Sequence[str]) -> ClassificationOutcome:
    """Model text -> outcome. Code fences are tolerated; anything else malformed is transient."""
    cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", (text or "").strip())
    try:
        data = json.loads(cleaned)
    except ValueError:
        return ClassificationOutcome.transient("malformed_response", f"not JSON: {cleaned[:80]!r}")
    if not isinstance(data, dict) or not isinstance(data.get("accepted"), bool):
        return ClassificationOutcome.transient("malformed_response", "missing boolean 'accepted'")

    if not data["accepted"]:
        return ClassificationOutcome.rejected(str(data.get("rejection_reason") or "not relevant"))

    category = str(data.get("category") or "").strip().lower()
    key_points = data.get("key_points") or []
    if not isinstance(key_points, list):
        key_points = [str(key_points)]
    return ClassificationOutcome.accepted(
        category    = category if category in categories else None,
        summary     = (data.get("summary") or None),
        key_points  = [str(k) for k in key_points][:5],
        clean_title = (data.get("clean_title") or None),
    )


class AIClassifier:
    """Claude-backed relevance check + summary. Blocking SDK calls run in the default executor."""

    def __init__(self, client=None, model: str = AI_MODEL, timeout: float = CLASSIFY_TIMEOUT_S):
        api_key = os.getenv("ANTHROPIC_API_KEY", "")
        if client is None and api_key:
            client = Anthropic(api_key=api_key)
        self.client  = client
        self.model   = model
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return self.client is not None

    async def classify(self, title: str, content: str,
                       categories: Sequence[str]) -> ClassificationOutcome:
        if not self.client:
            return ClassificationOutcome.transient("unavailable", "AI classification disabled, set ANTHROPIC_API_KEY")

        prompt = build_prompt(title, content, categories)
        loop = asyncio.get_running_loop()
        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: self.client.messages.create(
                    model=self.model,
                    max_tokens=AI_MAX_TOKENS,
                    messages=[{"role": "user", "content": prompt}],
                )),
                self.timeout,
            )
        except asyncio.TimeoutError:
            return ClassificationOutcome.transient("timeout", f"no answer within {self.timeout:.0f}s")
        except anthropic.RateLimitError as e:
            log.warning(f"Claude rate limited: {e}")
            return ClassificationOutcome.transient("quota", str(e)[:200])
        except anthropic.APIError as e:
            log.error(f"Claude API error: {e}")
            return ClassificationOutcome.transient("upstream", str(e)[:200])

        try:
            text = response.content[0].text
        except (AttributeError, IndexError, TypeError):
            return ClassificationOutcome.transient("malformed_response", "empty completion")
        return parse_response(text, categories)

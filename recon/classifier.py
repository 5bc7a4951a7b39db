"""AI column classification.

The mapper only depends on the :class:`ColumnClassifier` protocol. The
OpenRouter-backed implementation asks a chat model to rank candidate roles
for one header at a time and returns whatever it said, filtered to the
candidate list. It raises on transport or parse failures; the mapper turns
those into a deterministic fallback.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from recon.api import DEFAULT_MODEL

log = logging.getLogger(__name__)

CLASSIFIER_RESPONSE_FORMAT: dict[str, str] = {"type": "json_object"}

CLASSIFIER_PROMPT = """\
You are classifying one column of a compensation ground-truth spreadsheet.

Column header: {header}
Sample values: {samples}

Candidate roles:
{roles}

Role meanings:
- entity_id: identifier of the payee (employee number, rep code, officer code)
- entity_name: display name of the payee
- total_amount: total payout for the payee in the period
- period: the pay period (month, quarter, date)
- year: the year of the pay period, when it sits in its own column
- group: store, location, branch or team the payee belongs to
- component:<id>: payout amount for one plan component
- metric:<id>.<metric>: an input metric for a plan component (attainment, target, actual)
- unmapped: anything else

Return a JSON object: {{"suggestions": [{{"role": "<candidate role>", \
"confidence": <0.0-1.0>, "rationale": "<short reason>"}}]}}
List at most 3 suggestions, best first. Only use roles from the candidate list."""


@dataclass(frozen=True)
class RoleSuggestion:
    role: str
    confidence: float
    rationale: str = ""


class ColumnClassifier(Protocol):
    async def classify(
        self,
        header: str,
        sample_values: Sequence[Any],
        candidate_roles: Sequence[str],
    ) -> list[RoleSuggestion]: ...


def _extract_message_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text = item.get("text", "")
                if text:
                    parts.append(text)
        return "\n".join(parts)
    return ""


def parse_suggestions(text: str, candidate_roles: Sequence[str]) -> list[RoleSuggestion]:
    """Parse a ``{"suggestions": [...]}`` reply into ranked suggestions.

    Roles outside ``candidate_roles`` and malformed entries are dropped;
    confidences are clamped to [0, 1]. Raises RuntimeError when the reply
    is not a JSON object with a ``suggestions`` list.
    """
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        snippet = text[:200].replace("\n", " ")
        raise RuntimeError(f"Classifier returned invalid JSON: {snippet}") from e
    if not isinstance(parsed, dict) or not isinstance(parsed.get("suggestions"), list):
        raise RuntimeError("Classifier reply has no 'suggestions' list")

    allowed = set(candidate_roles)
    out: list[RoleSuggestion] = []
    for item in parsed["suggestions"]:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        if role not in allowed:
            continue
        try:
            confidence = float(item.get("confidence", 0.0))
        except (TypeError, ValueError):
            continue
        confidence = min(max(confidence, 0.0), 1.0)
        out.append(RoleSuggestion(role, confidence, str(item.get("rationale") or "")))
    out.sort(key=lambda s: -s.confidence)
    return out


class OpenRouterColumnClassifier:
    """ColumnClassifier backed by an entered :class:`recon.api.OpenRouterClient`."""

    def __init__(self, client: Any, model: str = DEFAULT_MODEL, max_samples: int = 8):
        self.client = client
        self.model = model
        self.max_samples = max_samples

    def build_prompt(
        self, header: str, sample_values: Sequence[Any], candidate_roles: Sequence[str]
    ) -> str:
        samples = [v for v in sample_values if v is not None][: self.max_samples]
        return CLASSIFIER_PROMPT.format(
            header=json.dumps(header),
            samples=json.dumps([str(v) for v in samples]),
            roles="\n".join(f"- {r}" for r in candidate_roles),
        )

    async def classify(
        self,
        header: str,
        sample_values: Sequence[Any],
        candidate_roles: Sequence[str],
    ) -> list[RoleSuggestion]:
        prompt = self.build_prompt(header, sample_values, candidate_roles)
        response = await self.client.chat(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            response_format=CLASSIFIER_RESPONSE_FORMAT,
        )
        message = response.get("message", {})
        text = _extract_message_text(message.get("content"))
        if not text.strip():
            raise RuntimeError(f"Classifier returned empty response for {header!r}")
        suggestions = parse_suggestions(text, candidate_roles)
        log.debug("Classifier suggestions for %r: %s", header, suggestions)
        return suggestions

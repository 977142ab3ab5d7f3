"""Stateless mapper: prompt construction and claim-map extraction."""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterator, List, Sequence, Tuple

logger = logging.getLogger(__name__)

_MAP_RE = re.compile(r"<map>(.*?)</map>", re.DOTALL | re.IGNORECASE)
_NARRATIVE_RE = re.compile(r"<narrative>(.*?)</narrative>", re.DOTALL | re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def build_mapping_prompt(
    user_prompt: str,
    sources: Sequence[Tuple[str, str]],
    citation_order: Sequence[str] | None = None,
) -> str:
    """Prompt the mapper over ``(provider_id, text)`` sources.

    Models are numbered from 0 in ``citation_order`` first, then in source
    order, and the numbers double as supporter indices in the returned map.
    """
    numbers: Dict[str, int] = {}
    for pid in citation_order or []:
        numbers.setdefault(pid, len(numbers))
    blocks = []
    for pid, text in sources:
        numbers.setdefault(pid, len(numbers))
        blocks.append(f"=== MODEL {numbers[pid]} ===\n{text}")
    outputs = "\n\n".join(blocks)

    return f"""You are mapping what several independent models said in answer to one query.

<user_query>
"{user_prompt}"
</user_query>

Index positions, not topics. A position is a stance that can be supported,
opposed or traded against another. Where several models reach the same
position, record every one of them as a supporter. Where only one model sees
something, keep it. Map conflicts, tradeoffs and prerequisites between
positions. Note what no model addressed but matters.

<model_outputs>
{outputs}
</model_outputs>

Return two blocks.

<map>
A JSON object with:
- claims: [{{"id": "claim_1", "label": verb phrase, "text": one sentence,
  "supporters": [model numbers], "type": factual|prescriptive|conditional|contested|speculative,
  "role": "challenger" or null, "challenges": claim id or null, "dimension": short name or null,
  "applies_when": condition or null}}]
- edges: [{{"from": claim id, "to": claim id, "type": supports|conflicts|tradeoff|prerequisite}}]
- ghosts: [what no model addressed] or null
</map>

<narrative>
A short walk through the landscape: what is settled, where the tension lives,
which lone positions matter, what remains uncharted. No verdict.
</narrative>
"""


def _json_objects(text: str) -> Iterator[Dict[str, Any]]:
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            value, end = decoder.raw_decode(text, index)
        except ValueError:
            index = text.find("{", index + 1)
            continue
        if isinstance(value, dict):
            yield value
        index = text.find("{", end)


def extract_artifact(text: str, model_count: int | None = None) -> Dict[str, Any] | None:
    """Pull the claim-map JSON out of mapper output.

    Tries a ``<map>`` block, then fenced code, then the first embedded
    claim-map object. Returns None when nothing parses.
    """
    if not text:
        return None
    candidates: List[str] = []
    match = _MAP_RE.search(text)
    if match:
        candidates.append(match.group(1))
    candidates.extend(_FENCE_RE.findall(text))
    candidates.append(text)

    for candidate in candidates:
        for artifact in _json_objects(candidate):
            if "claims" in artifact or "consensus" in artifact:
                if model_count and not artifact.get("model_count"):
                    artifact["model_count"] = model_count
                return artifact
    logger.warning("Mapper output contained no claim map")
    return None


def extract_narrative(text: str) -> str:
    match = _NARRATIVE_RE.search(text or "")
    return match.group(1).strip() if match else ""

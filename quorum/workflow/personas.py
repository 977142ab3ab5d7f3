"""Prompts for the steps that read the mapping: understand, gauntlet, refiner, antagonist."""
from __future__ import annotations

from typing import Dict

from quorum.analysis.engine import StructuralAnalysis, build_structural_brief


def _outputs_block(outputs: Dict[str, str]) -> str:
    return "\n\n".join(
        f'<model_{i} provider="{pid}">\n{text}\n</model_{i}>'
        for i, (pid, text) in enumerate(outputs.items())
    )


def build_understand_prompt(original_prompt: str, analysis: StructuralAnalysis, narrative: str = "") -> str:
    overview = f"## Landscape Overview\n{narrative}\n\n" if narrative else ""
    return f"""The user asked: "{original_prompt}"

{overview}## Structure
{build_structural_brief(analysis)}

Explain the landscape so the user understands it. Give a short answer (two
sentences) and a long answer that walks from what is settled to where the
tension lives. Name the single position that matters most and why."""


def build_gauntlet_prompt(original_prompt: str, analysis: StructuralAnalysis, narrative: str = "") -> str:
    overview = f"## Landscape Overview\n{narrative}\n\n" if narrative else ""
    return f"""The user asked: "{original_prompt}"

{overview}## Structure
{build_structural_brief(analysis)}

Put every position through the gauntlet. Drop the ones that fail under the
user's likely constraints, keep the survivors and return one answer with the
reasoning that survived. State the condition under which that answer would
be wrong."""


def build_refiner_prompt(
    original_prompt: str,
    outputs: Dict[str, str],
    mapping_text: str,
    prior: str = "",
) -> str:
    context = f"\n## Prior Analysis\n{prior}\n" if prior else ""
    return f"""The user asked: "{original_prompt}"
{len(outputs)} models responded and a mapper catalogued their positions.

## Mapping
{mapping_text}
{context}
## Raw Outputs
{_outputs_block(outputs)}

Find the single signal the consensus missed that changes the answer. Write the
answer that results, as if you were the only one asked."""


def build_antagonist_prompt(
    original_prompt: str,
    outputs: Dict[str, str],
    mapping_text: str,
    refiner_text: str = "",
) -> str:
    refined = f"\n## Refined Answer\n{refiner_text}\n" if refiner_text else ""
    return f"""The user asked: "{original_prompt}"

## Mapping
{mapping_text}
{refined}
## Raw Outputs
{_outputs_block(outputs)}

You cannot see the user's intent. Author the one question that, once the user
answers it, would collapse this decision into obvious action. Then write the
prompt the user should send next, with the answer slots left blank."""

"""Prompt builders for the three concierge phases."""
from __future__ import annotations

from typing import Any, Dict, List

from quorum.concierge.handover import ExecutionHandover, IntentHandover

SHAPE_GUIDANCE = {
    "sparse": (
        "No position has broad agreement. Say so plainly, lay out the strongest "
        "candidates and ask what would let them tell the candidates apart."
    ),
    "convergent": (
        "The perspectives largely agree. Lead with the shared answer, then name the "
        "assumption it rests on and the one voice that pushes against it, if any."
    ),
    "forked": (
        "Strong positions contradict each other. Present both sides fairly and "
        "surface the condition that decides between them."
    ),
    "constrained": (
        "The strong positions trade off against each other. Make the tradeoff "
        "explicit and ask which side they can least afford to lose."
    ),
    "parallel": (
        "The answer splits into independent areas. Cover each briefly and ask which "
        "one matters most to them right now."
    ),
}

NEVER = """## Never
- Mention models, analysis, structure or claims
- Hedge without saying what you are unsure about
- Say "it depends" without saying on what"""

WORKFLOW_BLOCK = """<<<BATCH>>>
TYPE: WORKFLOW

HANDOVER:
  goal: [refined goal]
  problem_summary: [one paragraph]
  situation: [who they are]
  constraints: [hard limits]
  priorities: [what they optimize for]
  decisions_made: [locked choices]
  open_questions: [may surface later]
  exploration_highlights: [key moments]

PROMPT:
[expert prompt]
<<<END>>>"""

STEP_HELP_BLOCK = """<<<BATCH>>>
TYPE: STEP_HELP

STEP: [step name]
BLOCKER: [what is blocking them]
CONTEXT: [relevant constraints]

PROMPT:
[expert prompt for this step]
<<<END>>>"""


def bullets(items: List[str] | None, empty: str = "- None") -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def shape_guidance(shape: str) -> str:
    return SHAPE_GUIDANCE.get(shape, SHAPE_GUIDANCE["sparse"])


def build_starter_initial(user_message: str, brief: str, shape: str) -> str:
    return f"""You are a single assistant speaking with the combined judgment of several expert perspectives.

## The Query
"{user_message}"

## What You Know
{brief}

## Response Guide
{shape_guidance(shape)}

{NEVER}

Respond."""


def build_starter_continue(user_message: str, seed: Dict[str, Any] | None = None) -> str:
    seed = seed or {}
    return f"""Continue the conversation naturally.

When you have enough signal, write an intent handover:
- their goal is understood, not only the question they asked
- some constraints have surfaced
- they have engaged with your framing

If they are still orienting, continue without a handover.

To hand over, append after your response:

<<<HANDOVER>>>
shape: {seed.get("shape") or ""}
key_findings: [list]
tensions: [list]
gaps: [list]
user_query: {seed.get("user_query") or ""}
starter_response: {seed.get("starter_response") or ""}
user_reply: {{their most recent message}}
goal: {{what they actually want}}
constraints: [what limits them]
accepted_framing: {{how they engaged}}
resisted_framing: {{what they pushed back on, or null}}
unprompted_reveals: [what they volunteered]
still_unclear: [what to probe next]
effective_stance: explore|decide|challenge
<<<END>>>

---

"{user_message}\""""


def build_explorer_initial(handover: IntentHandover, user_message: str) -> str:
    return f"""You are continuing a conversation handed over from an earlier phase.

## What Was Learned

**Shape:** {handover.shape}

**Key findings:**
{bullets(handover.key_findings)}

**Tensions:**
{bullets(handover.tensions, "None identified")}

**Gaps:**
{bullets(handover.gaps, "None identified")}

## The Exchange So Far

**They asked:** "{handover.user_query}"

**You responded:** "{handover.starter_response}"

**They replied:** "{handover.user_reply}"

## Your Read

- **Goal:** {handover.implied_goal}
- **Constraints:**
{bullets(handover.revealed_constraints, "- None stated")}
- **Accepted:** {handover.accepted_framing}
- **Resisted:** {handover.resisted_framing or "Nothing"}
- **Volunteered:**
{bullets(handover.unprompted_reveals)}
- **Unclear:**
{bullets(handover.still_unclear)}

## Your Role

You are the explorer. Make constraints, tradeoffs and red lines explicit.
Do not invent urgency. Revisit assumptions when new context changes them.

## When They Are Ready

When they ask for a plan or commit to a direction, append:

{WORKFLOW_BLOCK}

The prompt names an expert role, the task, the context as bullets and the
expected output.

## Current Message

"{user_message}\""""


def build_explorer_continue(user_message: str) -> str:
    return f"""Continue the conversation naturally.

Trigger a workflow only when the goal is stable, constraints are explicit and
they ask for a plan or next steps. To trigger it, append after your response:

{WORKFLOW_BLOCK}

---

"{user_message}\""""


def build_executor_initial(handover: ExecutionHandover | None, brief: str, user_message: str) -> str:
    handover = handover or ExecutionHandover()
    return f"""You are entering execution mode.

## The Problem

**Goal:** {handover.goal}

{handover.problem_summary}

## The User

- **Situation:** {handover.situation}
- **Constraints:**
{bullets(handover.constraints)}
- **Priorities:**
{bullets(handover.priorities)}
- **Decided:**
{bullets(handover.decisions_made)}
- **Open:**
{bullets(handover.open_questions)}

## What the Experts Proposed

{brief}

## Your Task

Synthesize a workflow with phases, steps, "done when" criteria and the
pitfalls to avoid. Where the experts disagreed, pick for this user.

If they get stuck on a step that needs several perspectives, append:

{STEP_HELP_BLOCK}

---

"{user_message}\""""


def build_executor_continue(user_message: str) -> str:
    return f"""Keep helping them execute. Answer directly when you can.

For a blocker that genuinely needs several perspectives, append:

{STEP_HELP_BLOCK}

---

"{user_message}\""""


def build_step_help_result(brief: str, user_message: str) -> str:
    return f"""The step help batch returned. Here is what the experts said:

{brief}

Turn this into actionable guidance for them.

---

"{user_message}\""""

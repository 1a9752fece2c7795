"""
services/chat_prompts.py

System prompt assembly for the assistant chat.

The large static training document is read from TRAINING_PROMPT_PATH (or the
bundled ``app/prompts/assistant_training.md``) on every request, so it can be
edited without a redeploy. If the file cannot be read, the short embedded
default is used instead.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

from app.core.config import settings
from app.core.logger import logger
from app.services.case_memory_service import CaseMemorySnapshot

BUNDLED_TRAINING_PATH = Path(__file__).resolve().parent.parent / "prompts" / "assistant_training.md"


# ============================================================================
# Training document
# ============================================================================

DEFAULT_TRAINING_PROMPT = """You are Veronica, a trauma-informed NSW legal information assistant.
Ground every answer in the supplied legal excerpts and the user's own evidence,
cite them as [CITATION n], and never invent section numbers or case names.
Safety first: if the user may be in danger, give 000 and 1800RESPECT before anything else.
You provide general legal information, not legal advice."""


def load_training_prompt() -> str:
    path = Path(settings.TRAINING_PROMPT_PATH) if settings.TRAINING_PROMPT_PATH else BUNDLED_TRAINING_PATH
    try:
        content = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        logger.warning("Could not read training prompt at %s, using embedded default: %s", path, exc)
        return DEFAULT_TRAINING_PROMPT
    return content or DEFAULT_TRAINING_PROMPT


# ============================================================================
# Journey stages
# ============================================================================

STAGE_GUIDANCE = {
    1: "Focus: Safety assessment and trust-building. Ask about immediate safety, validate their decision to seek help.",
    2: "Focus: Information gathering. Break questions into manageable chunks, normalize trauma responses.",
    3: "Focus: Goal clarification. Help articulate clear goals, explain NSW legal pathways simply.",
    4: "Focus: Evidence collection. Guide systematic gathering, validate emotional responses.",
    5: "Focus: Legal strategy. Present 2-3 options with clear pros/cons, set realistic expectations.",
    6: "Focus: Case readiness check. Review preparedness, identify ONE key gap to address.",
    7: "Focus: Form completion. Guide through one court form at a time, prepare supporting docs.",
    8: "Focus: Court preparation. Explain process step-by-step, practice one thing at a time.",
    9: "Focus: Post-court support. Review outcomes, plan immediate next step, celebrate progress.",
}

# Appended to the user's question before embedding
STAGE_QUERY_CONTEXT = {
    1: "safety planning apprehended violence order immediate protection",
    2: "domestic violence coercive control definitions NSW",
    3: "legal options AVO parenting orders family court pathways",
    4: "evidence requirements documentation admissibility",
    5: "legal strategy court application grounds",
    6: "case preparation evidence sufficiency",
    7: "court forms application filing requirements",
    8: "court hearing procedure local court final hearing",
    9: "orders compliance variation breach enforcement",
}


def stage_guidance(stage: int) -> str:
    return STAGE_GUIDANCE.get(stage, STAGE_GUIDANCE[1])


def build_enhanced_query(query: str, memory: CaseMemorySnapshot) -> str:
    parts = [query.strip()]
    if memory.primary_goal:
        parts.append(memory.primary_goal.strip())
    parts.append(STAGE_QUERY_CONTEXT.get(memory.current_stage, STAGE_QUERY_CONTEXT[1]))
    return " ".join(p for p in parts if p)


# ============================================================================
# System prompt
# ============================================================================

_STYLE_RULES = {
    "concise": "Maximum 2 short paragraphs",
    "detailed": "Maximum 3 focused paragraphs",
    "balanced": "Maximum 2-3 clear points",
}

_EXPERIENCE_RULES = {
    "first_time": "EXPLAIN legal terms simply. Avoid jargon.",
    "experienced": "Be direct and strategic. Assume legal literacy.",
}

_LAWYER_MODE = """
PROFESSIONAL MODE: the reader is a legal practitioner. Use precise technical
language, full citations with pinpoint sections, and note any conflicting
authority. Skip plain-English explanations of basic terms."""


def build_system_prompt(
    memory: CaseMemorySnapshot,
    context_blocks: List[str],
    mode: str = "user",
    training_prompt: str = "",
) -> str:
    profile = memory.personalization_profile
    user_name = profile.get("name") or "this user"
    style = memory.communication_style
    goal = memory.primary_goal or "understanding their legal options"

    lines = [
        training_prompt or load_training_prompt(),
        "",
        f'Guide {user_name} step-by-step toward their goal: "{goal}".',
        "",
        "RESPONSE RULES:",
        f"- BREVITY: {_STYLE_RULES.get(style, _STYLE_RULES['balanced'])}",
        "- Cite legal excerpts and evidence as [CITATION n].",
        "",
        "USER CONTEXT:",
        f'- Primary Goal: "{memory.primary_goal or "Not set"}"',
        f"- Current Stage: {memory.current_stage}/9 - {stage_guidance(memory.current_stage)}",
        f"- Experience Level: {memory.experience_level}",
        f"- Communication Style: {style}",
        f"- Case Readiness: {memory.case_readiness_status or 'collecting'}",
        "",
        _EXPERIENCE_RULES.get(memory.experience_level, "Balance explanation with efficiency."),
    ]
    if mode == "lawyer":
        lines.append(_LAWYER_MODE)

    if context_blocks:
        lines.append("")
        lines.extend(context_blocks)

    return "\n".join(lines)


def max_tokens_for_style(style: str) -> int:
    return {"concise": 300, "detailed": 600}.get(style, 450)

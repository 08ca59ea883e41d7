"""
ContextBudgetManager — assembles the message list for a chat turn under a
token ceiling.

Layout:
  1. system prompt: base instructions, agent identity, user profile,
     project context, retrieval context, tool instructions
  2. prior conversation, truncated oldest-first to fit the budget
  3. the current user turn (text, optionally paired with an image)

Every block is recorded in a ContextBreakdown (name -> estimated tokens) so
context-size failures can be explained to the user.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from config import BASE_SYSTEM_PROMPT, DEFAULT_CONTEXT_SIZE, HISTORY_BUDGET_RATIO
from inference.tokens import estimate_content_tokens, estimate_tokens, estimate_turn_tokens

logger = logging.getLogger(__name__)

# Readable labels for user profile fields
USER_FIELD_LABELS = {
    "nickname": "Nickname",
    "email": "Email",
    "language": "Language",
    "age": "Age",
    "gender": "Gender Identity",
    "orientation": "Gender Orientation",
    "job_title": "Job Title",
    "employer": "Employer",
    "education_level": "Education Level",
    "political_ideology": "Political Ideology",
    "religion": "Religion",
    "interests": "Interests",
    "country": "Country",
    "state": "State",
    "zipcode": "Zipcode",
}

BREAKDOWN_BASE = "Base System Prompt"
BREAKDOWN_AGENT = "Agent Identity"
BREAKDOWN_USER = "User Profile"
BREAKDOWN_PROJECT = "Project Context"
BREAKDOWN_RAG = "RAG Context"
BREAKDOWN_TOOLS = "Tool Instructions"
BREAKDOWN_HISTORY = "Conversation History"
BREAKDOWN_TOOL_RESULTS = "Tool Results"
BREAKDOWN_PROMPT = "Current Prompt"


def _label_for(key: str) -> str:
    if key in USER_FIELD_LABELS:
        return USER_FIELD_LABELS[key]
    return key.replace("_", " ").strip().capitalize()


@dataclass
class BuiltContext:
    messages: list[dict]
    breakdown: dict[str, int] = field(default_factory=dict)
    kept_history: int = 0
    dropped_history: int = 0

    @property
    def estimated_tokens(self) -> int:
        return sum(self.breakdown.values())


class ContextBudgetManager:
    def __init__(self, base_prompt: str = BASE_SYSTEM_PROMPT,
                 default_context: int = DEFAULT_CONTEXT_SIZE,
                 history_ratio: float = HISTORY_BUDGET_RATIO):
        self.base_prompt = base_prompt
        self.default_context = default_context
        self.history_ratio = history_ratio

    # ── System prompt blocks ──

    @staticmethod
    def agent_identity_block(agent) -> str:
        if not agent or not agent.name:
            return ""
        text = f"Your name is {agent.name}."
        if agent.nickname:
            text += f' Your nickname is "{agent.nickname}".'
        if agent.job_title:
            text += f" Your job title is {agent.job_title}."
        return text

    @staticmethod
    def user_profile_block(user: dict) -> str:
        if not user:
            return ""
        lines = []
        name = user.get("name") or user.get("nickname")
        if name:
            lines.append(f"You are assisting {name}.")
        info = []
        for key, value in user.items():
            if value is None or str(value).strip() == "":
                continue
            label = "Name" if key == "name" else _label_for(key)
            info.append(f"- {label}: {value}")
        if info:
            lines.append("Here is some background information about your user:\n" + "\n".join(info))
        return "\n\n".join(lines)

    @staticmethod
    def project_block(project_path: Optional[str], container_id: Optional[str],
                      project_context: Optional[str]) -> str:
        parts = []
        if project_path:
            parts.append(f"Current project: {project_path}")
        if container_id:
            parts.append(f"Active container: {container_id}")
        if project_context:
            parts.append(project_context.strip())
        return "\n".join(parts)

    @staticmethod
    def rag_block(rag_context: Optional[str]) -> str:
        if not rag_context or not rag_context.strip():
            return ""
        return "Relevant context retrieved from the project:\n" + rag_context.strip()

    def build_system_prompt(self, request, tool_docs: str = "",
                            rag_context: Optional[str] = None) -> tuple[str, dict[str, int]]:
        blocks = [
            (BREAKDOWN_BASE, self.base_prompt),
            (BREAKDOWN_AGENT, self.agent_identity_block(request.agent)),
            (BREAKDOWN_USER, self.user_profile_block(request.user)),
            (BREAKDOWN_PROJECT, self.project_block(
                request.project_path, request.container_id, request.project_context)),
            (BREAKDOWN_RAG, self.rag_block(rag_context if rag_context is not None else request.rag_context)),
            (BREAKDOWN_TOOLS, tool_docs.strip() if tool_docs else ""),
        ]
        breakdown: dict[str, int] = {}
        parts = []
        for name, text in blocks:
            if not text:
                continue
            parts.append(text)
            breakdown[name] = estimate_tokens(text)
        return "\n\n".join(parts), breakdown

    # ── Current turn ──

    @staticmethod
    def current_turn(request) -> dict:
        if request.image and request.image.data:
            url = f"data:{request.image.media_type};base64,{request.image.data}"
            return {
                "role": "user",
                "content": [
                    {"type": "text", "text": request.prompt},
                    {"type": "image_url", "image_url": {"url": url}},
                ],
            }
        return {"role": "user", "content": request.prompt}

    # ── History ──

    def history_budget(self, max_context: int, fixed_tokens: int) -> int:
        """Tokens available for prior turns given the system prompt and current turn."""
        ratio_budget = int(max_context * self.history_ratio)
        return max(0, min(ratio_budget, max_context - fixed_tokens))

    def truncate_history(self, history: list[dict], budget: int) -> list[dict]:
        """Keep the newest turns that fit in `budget`, in chronological order."""
        kept: list[dict] = []
        used = 0
        for turn in reversed(history):
            cost = estimate_turn_tokens(turn)
            if used + cost > budget:
                break
            kept.append(turn)
            used += cost
        kept.reverse()
        return kept

    # ── Assembly ──

    def build(self, request, tool_docs: str = "",
              rag_context: Optional[str] = None) -> BuiltContext:
        max_context = request.max_context or self.default_context

        system_prompt, breakdown = self.build_system_prompt(request, tool_docs, rag_context)
        current = self.current_turn(request)
        current_tokens = estimate_content_tokens(current["content"])
        system_tokens = sum(breakdown.values())

        history = [
            {"role": t.role, "content": t.content}
            for t in (request.history or [])
            if t.role in ("user", "assistant")
        ]
        budget = self.history_budget(max_context, system_tokens + current_tokens)
        kept = self.truncate_history(history, budget)
        dropped = len(history) - len(kept)
        if dropped:
            logger.info("History truncated: kept %d of %d turns (budget %d tokens)",
                        len(kept), len(history), budget)

        breakdown[BREAKDOWN_HISTORY] = sum(estimate_turn_tokens(t) for t in kept)
        breakdown[BREAKDOWN_PROMPT] = current_tokens

        messages = [{"role": "system", "content": system_prompt}, *kept, current]
        return BuiltContext(
            messages=messages,
            breakdown=breakdown,
            kept_history=len(kept),
            dropped_history=dropped,
        )

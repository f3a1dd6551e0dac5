"""Prompt templates and response parsers for the reflection pipeline."""

from __future__ import annotations

import re
from typing import List, Optional, Sequence

from .schemas import ReflectionCategory

QUESTION_GENERATION_PROMPT = """
You are an introspective agent living in a simulated environment. Based on your recent experiences, generate {count} high-level questions that would help you synthesize these observations into deeper insights.

RECENT EXPERIENCES:
{memories}

Your questions should ask about patterns, themes or underlying meanings, stay open-ended, and help identify strategies or learnings. Avoid simple factual questions about specific events.

EXAMPLES OF GOOD QUESTIONS:
- "What does my recent behavior reveal about my priorities?"
- "What patterns am I noticing in how I handle challenges?"
- "What have I learned about this environment that could inform future decisions?"

FORMAT YOUR RESPONSE AS:
{format}

Now generate {count} insightful questions based on the experiences above:
""".strip()


REFLECTION_ANSWER_PROMPT = """
You are an introspective agent reflecting on your experiences. Answer the following question thoughtfully based on your relevant memories.

QUESTION: {question}

RELEVANT EXPERIENCES:
{memories}

Provide an abstract insight in 1-2 sentences that synthesizes patterns across several experiences and is useful for future decisions.

INSIGHT:
""".strip()


META_REFLECTION_PROMPT = """
You are an agent reflecting on your own reflections. Answer the following question by identifying the broader pattern that connects the insights below.

QUESTION: {question}

YOUR RECENT REFLECTIONS:
{reflections}

Consider what these reflections collectively say about your thinking, and which principle or strategy connects them. Answer in 1-2 sentences.

META-INSIGHT:
""".strip()


CATEGORIZATION_PROMPT = """
Categorize the following reflection into ONE category:

REFLECTION: "{reflection}"

CATEGORIES:
- strategy: how to approach problems or make decisions
- pattern: observed patterns in behavior, environment or events
- emotional: emotional states, feelings or psychological reactions
- learning: new knowledge, discoveries or factual understanding
- social: relationships, interactions or social dynamics
- meta: thinking, reasoning or the reflection process itself

Respond with ONLY the category name (one word):
CATEGORY:
""".strip()


PLANNING_PROMPT = """
You are an agent planning your next actions. Use your recent reflections to inform your plan.

CURRENT GOAL: {goal}

RECENT REFLECTIONS:
{reflections}

CURRENT CONTEXT: {context}

Provide a concrete, actionable plan (2-3 sentences):
PLAN:
""".strip()


MIN_QUESTION_LENGTH = 10
MIN_ANSWER_LINE_LENGTH = 20

_QUESTION_RE = re.compile(r"QUESTION_\d+:\s*(.+?)(?=QUESTION_\d+:|$)", re.DOTALL)
_NUMBERED_RE = re.compile(r"^\s*\d+[.)]\s*(.+)$")
_INSIGHT_RE = re.compile(r"(?<!META-)INSIGHT:\s*(.+?)(?=\n\n|$)", re.DOTALL)
_META_INSIGHT_RE = re.compile(r"META-INSIGHT:\s*(.+?)(?=\n\n|$)", re.DOTALL)
_CATEGORY_RE = re.compile(r"CATEGORY:\s*(\w+)", re.IGNORECASE)


def _numbered(texts: Sequence[str], bullet: bool = False) -> str:
    if bullet:
        return "\n".join(f"- {text}" for text in texts)
    return "\n".join(f"{index}. {text}" for index, text in enumerate(texts, start=1))


def build_question_prompt(memories: Sequence[str], count: int = 3) -> str:
    layout = "\n".join(f"QUESTION_{index}: [question {index}]" for index in range(1, count + 1))
    return QUESTION_GENERATION_PROMPT.format(
        count=count, memories=_numbered(memories), format=layout
    )


def build_answer_prompt(question: str, memories: Sequence[str]) -> str:
    return REFLECTION_ANSWER_PROMPT.format(question=question, memories=_numbered(memories, bullet=True))


def build_meta_prompt(question: str, reflections: Sequence[str]) -> str:
    return META_REFLECTION_PROMPT.format(question=question, reflections=_numbered(reflections))


def build_categorization_prompt(reflection: str) -> str:
    return CATEGORIZATION_PROMPT.format(reflection=reflection)


def build_planning_prompt(goal: str, reflections: Sequence[str], context: str) -> str:
    return PLANNING_PROMPT.format(goal=goal, reflections=_numbered(reflections), context=context)


def _strip_quotes(text: str) -> str:
    return text.strip().strip('"').strip()


def parse_generated_questions(response: str, limit: int = 3) -> List[str]:
    """Extract ``QUESTION_N:`` entries, falling back to a numbered list."""

    questions: List[str] = []
    for match in _QUESTION_RE.finditer(response or ""):
        question = _strip_quotes(match.group(1))
        if len(question) > MIN_QUESTION_LENGTH:
            questions.append(question)

    if not questions:
        for line in (response or "").splitlines():
            numbered = _NUMBERED_RE.match(line)
            if numbered:
                question = _strip_quotes(numbered.group(1))
                if len(question) > MIN_QUESTION_LENGTH:
                    questions.append(question)

    return questions[: max(0, limit)]


def parse_reflection_answer(response: str) -> str:
    """Return the insight text; empty string when nothing usable came back."""

    text = (response or "").strip()
    if not text:
        return ""
    for pattern in (_INSIGHT_RE, _META_INSIGHT_RE):
        match = pattern.search(text)
        if match:
            return _strip_quotes(match.group(1))

    lines = [line.strip() for line in text.splitlines() if len(line.strip()) > MIN_ANSWER_LINE_LENGTH]
    return _strip_quotes(lines[0] if lines else text)


def parse_category(response: str) -> Optional[ReflectionCategory]:
    """Strict ``CATEGORY: <name>`` match; ``None`` otherwise."""

    match = _CATEGORY_RE.search(response or "")
    if not match:
        return None
    return ReflectionCategory.parse(match.group(1))


__all__ = [
    "CATEGORIZATION_PROMPT",
    "META_REFLECTION_PROMPT",
    "PLANNING_PROMPT",
    "QUESTION_GENERATION_PROMPT",
    "REFLECTION_ANSWER_PROMPT",
    "build_answer_prompt",
    "build_categorization_prompt",
    "build_meta_prompt",
    "build_planning_prompt",
    "build_question_prompt",
    "parse_category",
    "parse_generated_questions",
    "parse_reflection_answer",
]

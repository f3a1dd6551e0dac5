"""Category and importance estimation for memories and reflections."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

from .clients import GenerateOptions
from .errors import ProviderError
from .prompts import build_categorization_prompt, parse_category
from .schemas import MAX_IMPORTANCE, ReflectionCategory

if TYPE_CHECKING:
    from .llm import LLMService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    category: ReflectionCategory
    source: str


class CategoryStrategy:
    """One step of the classifier chain; ``None`` means "ask the next one"."""

    name = "base"

    async def classify(self, text: str) -> Optional[ReflectionCategory]:
        raise NotImplementedError


class LLMCategoryStrategy(CategoryStrategy):
    name = "llm"

    def __init__(self, llm: "LLMService", *, temperature: float = 0.3, max_tokens: int = 10) -> None:
        self.llm = llm
        self.options = GenerateOptions(temperature=temperature, max_tokens=max_tokens)

    async def classify(self, text: str) -> Optional[ReflectionCategory]:
        try:
            response = await self.llm.generate(build_categorization_prompt(text), self.options)
        except ProviderError as exc:
            logger.debug("LLM categorization unavailable: %s", exc)
            return None
        category = parse_category(response)
        if category is None:
            # Models often answer with the bare word after the trailing marker.
            category = ReflectionCategory.parse(response.strip().rstrip("."))
        return category


KEYWORD_RULES: Tuple[Tuple[Tuple[str, ...], ReflectionCategory], ...] = (
    (("strategy", "should"), ReflectionCategory.STRATEGY),
    (("pattern", "always", "whenever"), ReflectionCategory.PATTERN),
    (("feel", "stress", "emotion", "hope"), ReflectionCategory.EMOTIONAL),
    (("social", "relationship", "interact"), ReflectionCategory.SOCIAL),
    (("meta", "thinking", "reflect"), ReflectionCategory.META),
)


class KeywordCategoryStrategy(CategoryStrategy):
    name = "keyword"

    def __init__(self, rules: Sequence[Tuple[Tuple[str, ...], ReflectionCategory]] = KEYWORD_RULES) -> None:
        self.rules = tuple(rules)

    async def classify(self, text: str) -> Optional[ReflectionCategory]:
        return self.match(text)

    def match(self, text: str) -> Optional[ReflectionCategory]:
        lowered = text.lower()
        for keywords, category in self.rules:
            if any(keyword in lowered for keyword in keywords):
                return category
        return None


class DefaultCategoryStrategy(CategoryStrategy):
    name = "default"

    def __init__(self, category: ReflectionCategory = ReflectionCategory.LEARNING) -> None:
        self.category = category

    async def classify(self, text: str) -> Optional[ReflectionCategory]:
        return self.category


class CategoryClassifier:
    """Run the strategies in order and return the first answer."""

    def __init__(self, strategies: Sequence[CategoryStrategy]) -> None:
        self.strategies: List[CategoryStrategy] = list(strategies)
        if not any(isinstance(strategy, DefaultCategoryStrategy) for strategy in self.strategies):
            self.strategies.append(DefaultCategoryStrategy())

    @classmethod
    def default(cls, llm: Optional["LLMService"] = None) -> "CategoryClassifier":
        strategies: List[CategoryStrategy] = []
        if llm is not None:
            strategies.append(LLMCategoryStrategy(llm))
        strategies.extend([KeywordCategoryStrategy(), DefaultCategoryStrategy()])
        return cls(strategies)

    async def classify(self, text: str) -> Classification:
        for strategy in self.strategies:
            category = await strategy.classify(text)
            if category is not None:
                logger.debug("Categorised %r as %s via %s", text[:60], category.value, strategy.name)
                return Classification(category=category, source=strategy.name)
        # Unreachable while a DefaultCategoryStrategy is in the chain.
        return Classification(category=ReflectionCategory.LEARNING, source="default")


REFLECTION_BASE_IMPORTANCE = 7

_CRITICAL_RE = re.compile(r"critical|essential|crucial|vital", re.IGNORECASE)
_STRATEGIC_RE = re.compile(r"pattern|strategy|learned", re.IGNORECASE)
_ABSOLUTE_RE = re.compile(r"always|never|whenever", re.IGNORECASE)
_INSIGHT_RE = re.compile(r"reflection|insight|understanding|realize", re.IGNORECASE)


def estimate_reflection_importance(text: str) -> int:
    importance = REFLECTION_BASE_IMPORTANCE
    if _CRITICAL_RE.search(text):
        importance += 2
    if _STRATEGIC_RE.search(text):
        importance += 1
    if _ABSOLUTE_RE.search(text):
        importance += 1
    if _INSIGHT_RE.search(text):
        importance += 1
    return min(MAX_IMPORTANCE, importance)


OBSERVATION_RULES: Tuple[Tuple[Tuple[str, ...], int], ...] = (
    (("exit", "dying", "critical", "danger"), 9),
    (("food", "water", "resource", "found", "discovered"), 7),
    (("junction", "decision", "dead end", "new area"), 5),
)
MUNDANE_IMPORTANCE = 3


def estimate_observation_importance(text: str) -> int:
    lowered = text.lower()
    for keywords, importance in OBSERVATION_RULES:
        if any(keyword in lowered for keyword in keywords):
            return importance
    return MUNDANE_IMPORTANCE


__all__ = [
    "CategoryClassifier",
    "CategoryStrategy",
    "Classification",
    "DefaultCategoryStrategy",
    "KeywordCategoryStrategy",
    "LLMCategoryStrategy",
    "estimate_observation_importance",
    "estimate_reflection_importance",
]

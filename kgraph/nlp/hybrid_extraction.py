"""Pre-match known entities in raw text and constrain the extraction prompt with them."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .entity_dictionary import DEFAULT_SCOPE, EntityDictionary, EntityMatch, UsageEvent
from ..data.models import ExtractionResult
from ..errors import NotFoundError
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

EXTRACTION_RULES = (
    "1. Use the exact canonical names provided above for known entities.",
    "2. Only extract relationships between the known entities listed above, unless new entities are clearly present in the content.",
    "3. Extract additional entities that are not in the list as new entities.",
    "4. Prefer precision over recall: only extract relationships you are confident about.",
)


@dataclass(slots=True)
class EntityConstraint:
    entity_type: str
    canonical_name: str
    aliases: List[str]
    confidence: float
    description: Optional[str] = None


@dataclass(slots=True)
class EntityConstraints:
    entities: List[EntityConstraint] = field(default_factory=list)
    context: str = "Pre-matched entities from dictionary"
    threshold: float = 0.7


@dataclass(slots=True)
class PreprocessedContent:
    original_content: str
    matched_entities: List[EntityMatch]
    constraints: EntityConstraints
    processed_content: str


def best_match_per_entity(matches: List[EntityMatch]) -> List[EntityMatch]:
    """Keep the highest-similarity match of each entity, best first."""
    best: Dict[str, EntityMatch] = {}
    for match in matches:
        current = best.get(match.entity.id)
        if current is None or match.similarity > current.similarity:
            best[match.entity.id] = match
    return sorted(best.values(), key=lambda match: match.similarity, reverse=True)


class HybridExtractionPreprocessor:
    def __init__(self, dictionary: EntityDictionary) -> None:
        self.dictionary = dictionary

    def preprocess_text(
        self,
        content: str,
        scope: str = DEFAULT_SCOPE,
        threshold: float = 0.7,
    ) -> PreprocessedContent:
        matches = self.dictionary.find_matching_entities(content, threshold, scope=scope)
        LOGGER.debug("Found %s dictionary matches in content of scope %s", len(matches), scope)
        constraints = EntityConstraints(
            entities=[
                EntityConstraint(
                    entity_type=match.entity.entity_type,
                    canonical_name=match.entity.canonical_name,
                    aliases=match.entity.alias_texts(),
                    confidence=match.similarity,
                    description=match.entity.metadata.get("description"),
                )
                for match in best_match_per_entity(matches)
            ],
            threshold=threshold,
        )
        return PreprocessedContent(
            original_content=content,
            matched_entities=matches,
            constraints=constraints,
            processed_content=self._highlight(content, matches),
        )

    def build_constrained_prompt(
        self,
        content: str,
        matches: List[EntityMatch],
        base_prompt: Optional[str] = None,
    ) -> str:
        """Append a known-entities block and extraction rules to ``base_prompt``."""
        prompt = base_prompt or content
        if not matches:
            return prompt

        by_type: Dict[str, List[EntityMatch]] = {}
        for match in best_match_per_entity(matches):
            by_type.setdefault(match.entity.entity_type, []).append(match)

        sections = []
        for entity_type, typed in by_type.items():
            lines = []
            for match in typed:
                aliases = ", ".join(match.entity.alias_texts())
                suffix = f" (aliases: {aliases})" if aliases else ""
                lines.append(f"- {match.entity.canonical_name}{suffix}")
            sections.append(f"Known {entity_type} entities in this content:\n" + "\n".join(lines))

        parts = [
            prompt,
            "IMPORTANT CONSTRAINTS:\n"
            "The following entities are already known to exist in this content. "
            "Use these exact names and types when extracting entities and relationships.",
            "\n\n".join(sections),
            "EXTRACTION RULES:\n" + "\n".join(EXTRACTION_RULES),
        ]
        if content and content not in prompt:
            parts.append(f"Content to analyze:\n{content}")
        return "\n\n".join(parts)

    def update_entity_usage_from_extraction(
        self,
        result: ExtractionResult,
        matches: List[EntityMatch],
    ) -> int:
        """Record one usage event per matched entity the model actually used."""
        labels = {node.label.lower() for node in result.nodes}
        for edge in result.edges:
            labels.add(edge.source.lower())
            labels.add(edge.target.lower())

        used = 0
        for match in best_match_per_entity(matches):
            names = {match.entity.canonical_name.lower(), *(a.lower() for a in match.entity.alias_texts())}
            if not names & labels:
                continue
            try:
                self.dictionary.update_entity_from_usage(
                    match.entity.id,
                    UsageEvent(matched_alias=match.alias.alias if match.alias else None),
                )
                used += 1
            except NotFoundError as exc:
                LOGGER.warning("Skipping usage update for removed entity: %s", exc)
        LOGGER.debug("Extraction used %s of %s pre-matched entities", used, len(matches))
        return used

    @staticmethod
    def _highlight(content: str, matches: List[EntityMatch]) -> str:
        processed = content
        for match in sorted(matches, key=lambda m: m.similarity, reverse=True):
            canonical = match.entity.canonical_name
            if not match.matched_text or match.matched_text.lower() == canonical.lower():
                continue
            words = [re.escape(word) for word in match.matched_text.split()]
            pattern = re.compile(r"\b" + r"[\W_]+".join(words) + r"\b", re.IGNORECASE)
            replacement = f"[{canonical}]"
            processed = pattern.sub(lambda _: replacement, processed)
        return processed

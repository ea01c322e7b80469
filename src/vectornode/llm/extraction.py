from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from ..util_text import strip_code_fences
from .chat import ChatModel

logger = logging.getLogger(__name__)

DEFAULT_ENTITY_TYPE = "OTHER"
DEFAULT_RELATION_TYPE = "RELATED_TO"

EXTRACTION_PROMPT = """You are a knowledge graph extraction system. Extract entities, relations and document metadata from the following text.

TEXT:
{text}

Respond ONLY with valid JSON in this exact format (no markdown, no explanation):
{{
  "entities": [
    {{"name": "Entity Name", "type": "PERSON|ORGANIZATION|LOCATION|CONCEPT|EVENT|OTHER", "description": "Brief description"}}
  ],
  "relations": [
    {{"source": "Source Entity Name", "target": "Target Entity Name", "relation": "RELATION_TYPE"}}
  ],
  "metadata": {{
    "topics": ["topic"], "keywords": ["keyword"], "sentiment": "positive|neutral|negative",
    "language": "en", "content_type": "conversation|document|note|other", "summary": "One sentence"
  }}
}}

Rules:
- Extract only clearly stated entities and relationships
- Use simple, normalized entity names
- Every relation source and target must be the name of an extracted entity
- Relation types should be uppercase with underscores (e.g., WORKS_FOR, LOCATED_IN, PART_OF)
- If no entities found, return empty arrays
"""

_NON_IDENT = re.compile(r"[^A-Z0-9]+")


@dataclass(frozen=True, slots=True)
class ExtractedEntity:
    name: str
    type: str = DEFAULT_ENTITY_TYPE
    description: str = ""


@dataclass(frozen=True, slots=True)
class ExtractedRelation:
    source_name: str
    target_name: str
    relation_type: str = DEFAULT_RELATION_TYPE


@dataclass(slots=True)
class ExtractionResult:
    entities: list[ExtractedEntity] = field(default_factory=list)
    relations: list[ExtractedRelation] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.entities and not self.relations


def _text(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, str):
        return v.strip()
    if isinstance(v, (int, float)):
        return str(v)
    return ""


def normalize_relation_type(v: Any) -> str:
    s = _NON_IDENT.sub("_", _text(v).upper()).strip("_")
    return s or DEFAULT_RELATION_TYPE


def _str_list(v: Any) -> list[str]:
    if not isinstance(v, list):
        return []
    return [s for s in (_text(x) for x in v) if s]


def parse_metadata(raw: Any) -> dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    return {
        "topics": _str_list(raw.get("topics")),
        "keywords": _str_list(raw.get("keywords")),
        "sentiment": _text(raw.get("sentiment")) or None,
        "language": _text(raw.get("language")) or None,
        "content_type": _text(raw.get("content_type")) or None,
        "summary": _text(raw.get("summary")) or None,
    }


def parse_extraction(response: str | None) -> ExtractionResult:
    """Parse model output into an ExtractionResult. Never raises.

    Missing arrays become empty, nameless entities and endpoint-less relations
    are dropped, absent types fall back to OTHER / RELATED_TO.
    """
    try:
        root = json.loads(strip_code_fences(response) or "{}")
    except (TypeError, ValueError) as e:
        logger.warning("Extraction output is not JSON, treating as empty: %s", e)
        return ExtractionResult()
    if not isinstance(root, dict):
        logger.warning("Extraction output is not a JSON object, treating as empty")
        return ExtractionResult()

    result = ExtractionResult(metadata=parse_metadata(root.get("metadata")))

    entities = root.get("entities")
    for node in entities if isinstance(entities, list) else []:
        if not isinstance(node, dict):
            continue
        name = _text(node.get("name"))
        if not name:
            continue
        result.entities.append(
            ExtractedEntity(
                name=name,
                type=_text(node.get("type")).upper() or DEFAULT_ENTITY_TYPE,
                description=_text(node.get("description")),
            )
        )

    relations = root.get("relations")
    for node in relations if isinstance(relations, list) else []:
        if not isinstance(node, dict):
            continue
        src = _text(node.get("source", node.get("source_name")))
        dst = _text(node.get("target", node.get("target_name")))
        if not src or not dst:
            continue
        result.relations.append(
            ExtractedRelation(
                source_name=src,
                target_name=dst,
                relation_type=normalize_relation_type(node.get("relation", node.get("relation_type"))),
            )
        )

    logger.debug("Parsed %d entities and %d relations", len(result.entities), len(result.relations))
    return result


class LlmExtractor:
    """text -> {entities, relations, metadata} via the chat model.

    Total: any failure (transport, auth, malformed output) yields an empty result.
    """

    def __init__(self, chat: ChatModel):
        self.chat = chat

    async def extract(self, text: str) -> ExtractionResult:
        if not text or not text.strip():
            return ExtractionResult()
        try:
            response = await self.chat.complete(EXTRACTION_PROMPT.format(text=text))
        except Exception as e:
            logger.warning("Extraction call failed, continuing with empty result: %s", e)
            return ExtractionResult()
        return parse_extraction(response)

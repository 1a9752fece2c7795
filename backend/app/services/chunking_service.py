"""
Chunking: sections → ordered chunks.

A section that fits in ``chunk_size`` (and respect_boundaries is on) becomes
one chunk verbatim. Larger sections are split by the model along sentence,
paragraph and citation boundaries; if that fails, a fixed-width window of
``chunk_size`` characters advancing by ``chunk_size - overlap`` is used.

``chunk_order`` runs across the whole document, 0..n-1 with no gaps.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Annotated, Any, List

from pydantic import Field

from app.core.config import settings
from app.db.schemas import ChunkConfig
from app.services.llm_schemas import StructuredSection
from app.services.openai_service import openai_service
from app.services.structure_service import section_uuid
from app.utils.exceptions import AllModelsFailedError, LlmResponseError

logger = logging.getLogger(__name__)

SPLIT_SYSTEM_PROMPT = "Split legal text intelligently while preserving legal context and meaning."

NonEmptyChunks = Annotated[List[Annotated[str, Field(min_length=1)]], Field(min_length=1)]


@dataclass
class DocumentChunk:
    chunk_text: str
    chunk_order: int
    section_id: uuid.UUID
    section: StructuredSection
    metadata: dict[str, Any] = field(default_factory=dict)
    citation_references: list[str] = field(default_factory=list)
    legal_concepts: list[str] = field(default_factory=list)


def section_metadata(section: StructuredSection) -> dict[str, Any]:
    return {
        "section_number": section.section_number,
        "title": section.title,
        "level": section.level,
        "parent_section": section.parent_section,
        "act_name": section.act_name,
        "jurisdiction": section.jurisdiction,
        "page_start": section.page_start,
        "page_end": section.page_end,
        "legal_concepts": section.legal_concepts,
        "normalized_citation": section.normalized_citation,
    }


def split_fixed_width(text: str, chunk_size: int, overlap: int = 0) -> list[str]:
    """Character windows of *chunk_size*; consecutive windows share *overlap* characters."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    overlap = min(max(overlap, 0), chunk_size - 1)
    step = chunk_size - overlap

    pieces: list[str] = []
    start = 0
    while start < len(text):
        pieces.append(text[start:start + chunk_size])
        if start + chunk_size >= len(text):
            break
        start += step
    return pieces


class ChunkingService:

    async def chunk_sections(
        self,
        sections: list[StructuredSection],
        config: ChunkConfig,
        checksum: str,
    ) -> list[DocumentChunk]:
        chunks: list[DocumentChunk] = []
        chunk_order = 0

        for position, section in enumerate(sections):
            section_id = section_uuid(checksum, position, section.section_number)
            base_meta = section_metadata(section)
            citation_refs = [section.normalized_citation] if section.normalized_citation else []

            if config.respect_boundaries and len(section.content) <= config.chunk_size:
                pieces = [section.content]
                split_method = None
            else:
                pieces, split_method = await self._split_section(section, config)

            for idx, piece in enumerate(pieces):
                meta = dict(base_meta)
                if split_method:
                    meta.update({"chunk_index": idx, "split_method": split_method})
                chunks.append(DocumentChunk(
                    chunk_text=piece,
                    chunk_order=chunk_order,
                    section_id=section_id,
                    section=section,
                    metadata=meta,
                    citation_references=list(citation_refs),
                    legal_concepts=list(section.legal_concepts),
                ))
                chunk_order += 1

        logger.info("Created %d chunks from %d sections", len(chunks), len(sections))
        return chunks

    async def _split_section(self, section: StructuredSection, config: ChunkConfig) -> tuple[list[str], str]:
        try:
            pieces = await self._split_with_llm(section.content, config.chunk_size)
            return pieces, "ai_intelligent"
        except (LlmResponseError, AllModelsFailedError) as exc:
            logger.warning("Intelligent split failed for %s, using fixed-width: %s", section.section_number, exc)
        return split_fixed_width(section.content, config.chunk_size, config.overlap), "simple"

    async def _split_with_llm(self, text: str, chunk_size: int) -> list[str]:
        prompt = (
            f"Split this legal text into coherent chunks of approximately {chunk_size} characters each, respecting:\n"
            "- Sentence boundaries\n"
            "- Paragraph boundaries\n"
            "- Legal concept groupings\n"
            "- Citation continuity\n\n"
            f"Text: {text}\n\n"
            "Return ONLY a JSON array of strings, one per chunk, maintaining legal context."
        )
        return await openai_service.complete_json(
            [
                {"role": "system", "content": SPLIT_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            NonEmptyChunks,
            models=settings.ingestion_models_list,
            max_tokens=1500,
            temperature=0.7,
        )


# Singleton
chunking_service = ChunkingService()

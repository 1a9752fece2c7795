"""
Structure extraction: document text → ordered list of legal sections.

Two explicit branches:
  1. LLM: one completion with the NSW citation patterns and a strict JSON
     schema, validated as SectionsPayload.
  2. regex: taken when the model call fails or its reply does not validate;
     splits on "s. N" / "Section N" anchors, or returns the whole
     document as section "1" when there are none.
"""

from __future__ import annotations

import logging
import re
import uuid

from app.core.config import settings
from app.db.schemas import IngestionMetadata
from app.services.llm_schemas import SectionsPayload, StructuredSection
from app.services.openai_service import openai_service
from app.utils.exceptions import AllModelsFailedError, LlmResponseError

logger = logging.getLogger(__name__)

SECTION_ANCHOR_RE = re.compile(r"(?:^|\n)\s*(?:s\.|Section)\s*(\d+(?:\([A-Za-z0-9]+\))*)[:\s]", re.IGNORECASE | re.MULTILINE)
SECTION_SPLIT_RE = re.compile(r"(?=(?:^|\n)\s*(?:s\.|Section)\s*\d+)", re.IGNORECASE | re.MULTILINE)
SECTION_NUMBER_RE = re.compile(r"(?:s\.|Section)\s*(\d+(?:\([A-Za-z0-9]+\))*)", re.IGNORECASE)

STRUCTURE_SYSTEM_PROMPT = (
    "You are an expert NSW legal document analyzer. Extract hierarchical structure using exact "
    "NSW legal citation formats (s 8(1), Part VII, Division 2). Always preserve exact section "
    'numbers and normalize citations to format: "Act Name Year (Jurisdiction) s Section". '
    "Respond with JSON only."
)

STRUCTURE_SCHEMA_EXAMPLE = """{
  "sections": [
    {
      "section_number": "s 60CC",
      "title": "Best interests of child",
      "content": "full section text",
      "level": 1,
      "parent_section": "Part VII",
      "act_name": "Family Law Act 1975",
      "jurisdiction": "NSW",
      "page_start": 15,
      "page_end": 17,
      "normalized_citation": "Family Law Act 1975 (NSW) s 60CC",
      "cross_references": ["s 60CA", "s 60CB"],
      "legal_concepts": ["best interests", "child welfare"],
      "definitions": [{"term": "child", "definition": "person under 18"}]
    }
  ]
}"""


def section_uuid(checksum: str, position: int, section_number: str) -> uuid.UUID:
    """Stable section id: same content and position give the same id on every run."""
    return uuid.uuid5(uuid.NAMESPACE_URL, f"legal-section:{checksum}:{position}:{section_number}")


class StructureExtractionService:

    def build_prompt(self, text: str, metadata: IngestionMetadata) -> str:
        limit = settings.STRUCTURE_MAX_CHARS
        excerpt = text[:limit]
        if len(text) > limit:
            excerpt += " ...[truncated]"
        return (
            f"Extract the hierarchical NSW legal structure from this {metadata.document_type}.\n\n"
            "CRITICAL NSW LEGAL PATTERNS:\n"
            '- Parts: "Part 1", "Part I", "Part 2 - Criminal Procedure"\n'
            '- Divisions: "Division 1", "Division 2 - Family Provisions"\n'
            '- Sections: "s 8(1)", "Section 60CC", "s 79(4)(a)"\n'
            '- Acts: "Family Law Act 1975 (Cth)", "Care and Protection Act 1998 (NSW)"\n\n'
            "REQUIREMENTS:\n"
            '1. Extract sections with NSW format: "s 8(1)", "s 60CC", etc.\n'
            '2. Normalize citations: "Family Law Act 1975 (NSW) s 60CC"\n'
            "3. Detect page numbers from content\n"
            "4. Preserve hierarchical structure (Parts > Divisions > Sections)\n"
            "5. Include cross-references to other Acts/sections\n\n"
            f"Content to analyze:\n{excerpt}\n\n"
            f"Return JSON with this structure:\n{STRUCTURE_SCHEMA_EXAMPLE}"
        )

    async def extract(self, text: str, metadata: IngestionMetadata) -> list[StructuredSection]:
        try:
            sections = await self._extract_with_llm(text, metadata)
            logger.info("Extracted %d sections with the model", len(sections))
            return sections
        except (LlmResponseError, AllModelsFailedError) as exc:
            logger.warning("Structure extraction failed, using regex fallback: %s", exc)
        sections = self.fallback_sections(text, metadata)
        logger.info("Regex fallback produced %d sections", len(sections))
        return sections

    async def _extract_with_llm(self, text: str, metadata: IngestionMetadata) -> list[StructuredSection]:
        payload = await openai_service.complete_json(
            [
                {"role": "system", "content": STRUCTURE_SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(text, metadata)},
            ],
            SectionsPayload,
            models=settings.ingestion_models_list,
            max_tokens=3000,
            temperature=0.7,
            json_mode=True,
        )
        return payload.sections

    def fallback_sections(self, text: str, metadata: IngestionMetadata) -> list[StructuredSection]:
        jurisdiction = metadata.jurisdiction or settings.DEFAULT_JURISDICTION
        sections: list[StructuredSection] = []

        if SECTION_ANCHOR_RE.search(text):
            for part in SECTION_SPLIT_RE.split(text):
                match = SECTION_NUMBER_RE.search(part)
                if not match or not part.strip():
                    continue
                number = match.group(1)
                sections.append(StructuredSection(
                    section_number=f"s {number}",
                    title=f"Section {number}",
                    content=part.strip(),
                    level=1,
                    act_name=metadata.title,
                    jurisdiction=jurisdiction,
                    normalized_citation=f"{metadata.title} s {number}",
                ))

        if not sections:
            sections.append(StructuredSection(
                section_number="1",
                title=metadata.title,
                content=text,
                level=1,
                act_name=metadata.title,
                jurisdiction=jurisdiction,
                normalized_citation=metadata.title,
            ))
        return sections


# Singleton
structure_service = StructureExtractionService()

"""
Citation & concept extraction for ingested legal documents.

Per chunk, one model call returns candidate citations. Only candidates with
confidence strictly above CITATION_CONFIDENCE_THRESHOLD are kept; they are
upserted on (short_citation, section_id). Concepts come from one call over the
first CONCEPT_SAMPLE_CHUNKS chunks of the document.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.models import CitationType, LegalCitation
from app.services.chunking_service import DocumentChunk
from app.services.llm_schemas import CitationCandidate, CitationsPayload
from app.services.openai_service import openai_service
from app.utils.exceptions import AllModelsFailedError, LlmResponseError

logger = logging.getLogger(__name__)

AUSTLII_NSW_CASES_URL = "https://www.austlii.edu.au/cgi-bin/viewdoc/au/cases/nsw/"
NSW_LEGISLATION_URL = "https://legislation.nsw.gov.au/view/html/inforce/current/"

CITATION_SYSTEM_PROMPT = "You are an expert at extracting and formatting Australian legal citations with perfect accuracy."
CONCEPT_SYSTEM_PROMPT = "Extract NSW-specific legal concepts with precision."

NSW_CONCEPT_HINTS = [
    "AVO (Apprehended Violence Order)",
    "Domestic Violence",
    "Coercive Control",
    "Parenting Orders",
    "Best Interests of the Child",
    "Family Dispute Resolution",
    "Local Court",
    "Federal Circuit and Family Court",
    "Practice Directions",
    "Interim Orders",
    "Final Hearing",
    "Service of Documents",
]


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def generate_citation_url(candidate: CitationCandidate) -> Optional[str]:
    if candidate.citation_type == CitationType.case_law and candidate.neutral_citation:
        return f"{AUSTLII_NSW_CASES_URL}{candidate.neutral_citation.strip()}"
    if candidate.citation_type == CitationType.statute and candidate.year:
        return f"{NSW_LEGISLATION_URL}act-{candidate.year}-{_slug(candidate.short_citation)}"
    return None


class CitationService:

    # ------------------------------------------------------------------
    # Citations
    # ------------------------------------------------------------------

    def _citation_prompt(self, chunk_text: str) -> str:
        return (
            "Extract legal citations from this text:\n\n"
            f'"{chunk_text}"\n\n'
            "Find and format:\n"
            "- Case law citations (neutral citations, traditional citations)\n"
            "- Statutory references (Act names, section numbers)\n"
            "- Regulation citations\n"
            "- Cross-references to other legal documents\n\n"
            'Return JSON: {"citations": [{\n'
            '  "citation_type": "case_law|statute|regulation|practice_direction|rule",\n'
            '  "short_citation": "string",\n'
            '  "full_citation": "string",\n'
            '  "neutral_citation": "string|null",\n'
            '  "court": "string|null",\n'
            '  "year": number|null,\n'
            '  "jurisdiction": "NSW|Commonwealth",\n'
            '  "confidence_score": number,\n'
            '  "context": "string"\n'
            "}]}"
        )

    async def extract_candidates(self, chunk_text: str) -> List[CitationCandidate]:
        payload = await openai_service.complete_json(
            [
                {"role": "system", "content": CITATION_SYSTEM_PROMPT},
                {"role": "user", "content": self._citation_prompt(chunk_text)},
            ],
            CitationsPayload,
            models=settings.ingestion_models_list,
            max_tokens=800,
            temperature=0.7,
            json_mode=True,
        )
        candidates: List[CitationCandidate] = []
        for raw in payload.citations:
            try:
                candidates.append(CitationCandidate.model_validate(raw))
            except ValidationError:
                logger.debug("Dropping malformed citation candidate: %s", raw)
        return candidates

    def upsert_citation(
        self,
        db: Session,
        candidate: CitationCandidate,
        section_id: uuid.UUID,
        document_id: uuid.UUID,
    ) -> LegalCitation:
        values = {
            "citation_type": candidate.citation_type,
            "full_citation": candidate.full_citation,
            "neutral_citation": candidate.neutral_citation,
            "court": candidate.court,
            "year": candidate.year,
            "jurisdiction": candidate.jurisdiction,
            "confidence_score": candidate.confidence_score,
            "url": generate_citation_url(candidate),
            "context": candidate.context,
            "document_id": document_id,
        }
        existing = (
            db.query(LegalCitation)
            .filter(
                LegalCitation.short_citation == candidate.short_citation,
                LegalCitation.section_id == section_id,
            )
            .first()
        )
        if existing is not None:
            for key, value in values.items():
                setattr(existing, key, value)
            citation = existing
        else:
            citation = LegalCitation(
                short_citation=candidate.short_citation,
                section_id=section_id,
                **values,
            )
            db.add(citation)
        db.flush()
        return citation

    async def extract_and_store(
        self,
        db: Session,
        chunks: List[DocumentChunk],
        document_id: uuid.UUID,
    ) -> int:
        """Returns the number of citations upserted across all chunks."""
        threshold = settings.CITATION_CONFIDENCE_THRESHOLD
        stored = 0

        for chunk in chunks:
            try:
                candidates = await self.extract_candidates(chunk.chunk_text)
            except (LlmResponseError, AllModelsFailedError) as exc:
                logger.warning("Citation extraction failed for chunk %d: %s", chunk.chunk_order, exc)
                continue

            kept = [c for c in candidates if c.confidence_score > threshold]
            if len(kept) < len(candidates):
                logger.debug(
                    "Chunk %d: dropped %d citations at or below %.2f",
                    chunk.chunk_order, len(candidates) - len(kept), threshold,
                )
            for candidate in kept:
                try:
                    with db.begin_nested():
                        self.upsert_citation(db, candidate, chunk.section_id, document_id)
                except SQLAlchemyError as exc:
                    logger.warning(
                        "Skipping citation %r for chunk %d: %s",
                        candidate.short_citation, chunk.chunk_order, exc,
                    )
                    continue
                stored += 1
            db.commit()

        logger.info("Extracted %d citations for document %s", stored, document_id)
        return stored

    # ------------------------------------------------------------------
    # Concepts
    # ------------------------------------------------------------------

    async def identify_concepts(self, chunks: List[DocumentChunk]) -> List[str]:
        sample = chunks[:settings.CONCEPT_SAMPLE_CHUNKS]
        if not sample:
            return []

        hints = "\n".join(f"- {hint}" for hint in NSW_CONCEPT_HINTS)
        joined = "\n\n".join(c.chunk_text for c in sample)
        prompt = (
            f"Identify key NSW legal concepts in this text:\n\n{joined}\n\n"
            f"Return array of specific legal concepts, focusing on NSW-specific terms:\n{hints}\n\n"
            "Return as JSON array of strings."
        )
        try:
            concepts = await openai_service.complete_json(
                [
                    {"role": "system", "content": CONCEPT_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                List[str],
                models=settings.ingestion_models_list,
                max_tokens=500,
                temperature=0.7,
            )
        except (LlmResponseError, AllModelsFailedError) as exc:
            logger.warning("Concept identification failed: %s", exc)
            return []

        unique: List[str] = []
        for concept in concepts:
            concept = concept.strip()
            if concept and concept not in unique:
                unique.append(concept)
        logger.info("Identified %d legal concepts", len(unique))
        return unique


# Singleton
citation_service = CitationService()

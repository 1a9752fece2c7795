"""
Structure extraction and chunking: the model branch, the regex / fixed-width
fallbacks, and document-wide chunk ordering.
"""

import json

import pytest

from app.db.schemas import ChunkConfig, IngestionMetadata
from app.services.chunking_service import chunking_service, split_fixed_width
from app.services.llm_schemas import StructuredSection
from app.services.structure_service import section_uuid, structure_service

STRUCTURE_MARKER = "expert NSW legal document analyzer"
SPLIT_MARKER = "Split legal text intelligently"

METADATA = IngestionMetadata(title="Crimes (Domestic and Personal Violence) Act 2007", document_type="legislation")


# =============================================================================
# Structure
# =============================================================================

async def test_model_sections_are_used_when_valid(fake_llm):
    fake_llm.on(STRUCTURE_MARKER, "```json\n" + json.dumps({"sections": [
        {"section_number": 16, "title": "Court may make AVO", "content": "A court may make an order...", "cross_references": "s 15"},
    ]}) + "\n```")

    sections = await structure_service.extract("Section 16 A court may make an order...", METADATA)

    assert len(sections) == 1
    assert sections[0].section_number == "16"
    assert sections[0].cross_references == ["s 15"]


async def test_invalid_model_reply_falls_back_to_regex(fake_llm):
    # Sections without content fail validation
    fake_llm.on(STRUCTURE_MARKER, json.dumps({"sections": [{"section_number": "s 1"}]}))
    text = "Section 1: Name of Act\nThis Act is the Test Act.\nSection 2: Commencement\nThis Act commences on assent."

    sections = await structure_service.extract(text, METADATA)

    assert [s.section_number for s in sections] == ["s 1", "s 2"]
    assert sections[1].content.startswith("Section 2: Commencement")
    assert sections[0].normalized_citation == f"{METADATA.title} s 1"


async def test_model_outage_falls_back_to_whole_document(fake_llm):
    text = "Practice note with no numbered sections."

    sections = await structure_service.extract(text, METADATA)

    assert len(sections) == 1
    assert sections[0].section_number == "1"
    assert sections[0].content == text
    assert sections[0].jurisdiction == "NSW"


def test_regex_fallback_recognises_dotted_anchor():
    sections = structure_service.fallback_sections("s. 4 Definitions\nIn this Act...\ns. 5 Objects\nThe objects are...", METADATA)

    assert [s.section_number for s in sections] == ["s 4", "s 5"]


def test_long_documents_are_truncated_in_the_prompt(monkeypatch):
    from app.core.config import settings

    monkeypatch.setattr(settings, "STRUCTURE_MAX_CHARS", 20)
    prompt = structure_service.build_prompt("x" * 50, METADATA)

    assert "x" * 20 + " ...[truncated]" in prompt
    assert "x" * 21 not in prompt


def test_section_ids_are_stable():
    assert section_uuid("abc", 0, "s 1") == section_uuid("abc", 0, "s 1")
    assert section_uuid("abc", 0, "s 1") != section_uuid("abc", 1, "s 1")
    assert section_uuid("abc", 0, "s 1") != section_uuid("abd", 0, "s 1")


# =============================================================================
# Fixed-width fallback
# =============================================================================

def test_split_fixed_width_applies_overlap():
    assert split_fixed_width("abcdefghij", 4, 1) == ["abcd", "defg", "ghij"]


def test_split_fixed_width_without_overlap():
    assert split_fixed_width("abcdefghij", 4) == ["abcd", "efgh", "ij"]


def test_split_fixed_width_caps_overlap():
    # Overlap >= size would never advance
    assert split_fixed_width("abcdef", 3, 10) == ["abc", "bcd", "cde", "def"]


def test_split_fixed_width_rejects_bad_size():
    with pytest.raises(ValueError):
        split_fixed_width("abc", 0)


def test_chunk_config_clamps_overlap():
    config = ChunkConfig(chunk_size=200, overlap=500)
    assert config.overlap == 199


# =============================================================================
# Chunking
# =============================================================================

def section(number: str, content: str) -> StructuredSection:
    return StructuredSection(
        section_number=number,
        title=f"Section {number}",
        content=content,
        normalized_citation=f"Test Act s {number}",
        legal_concepts=["avo"],
    )


async def test_small_sections_become_single_chunks(fake_llm):
    chunks = await chunking_service.chunk_sections(
        [section("1", "short one"), section("2", "short two")], ChunkConfig(), "checksum"
    )

    assert [c.chunk_text for c in chunks] == ["short one", "short two"]
    assert [c.chunk_order for c in chunks] == [0, 1]
    assert "split_method" not in chunks[0].metadata
    assert chunks[0].citation_references == ["Test Act s 1"]
    assert fake_llm.calls == []


async def test_large_sections_use_model_split(fake_llm):
    fake_llm.on(SPLIT_MARKER, json.dumps(["first part", "second part"]))
    big = "word " * 60

    chunks = await chunking_service.chunk_sections(
        [section("1", "tiny"), section("2", big)], ChunkConfig(chunk_size=100, overlap=10), "checksum"
    )

    assert [c.chunk_text for c in chunks] == ["tiny", "first part", "second part"]
    assert [c.chunk_order for c in chunks] == [0, 1, 2]
    assert chunks[1].metadata["split_method"] == "ai_intelligent"
    assert chunks[2].metadata["chunk_index"] == 1
    assert chunks[1].section_id == chunks[2].section_id != chunks[0].section_id


async def test_failed_model_split_uses_fixed_width_with_overlap(fake_llm):
    fake_llm.on(SPLIT_MARKER, "[]")
    text = "".join(chr(ord("a") + i % 26) for i in range(250))

    chunks = await chunking_service.chunk_sections([section("1", text)], ChunkConfig(chunk_size=100, overlap=20), "c")

    assert [len(c.chunk_text) for c in chunks] == [100, 100, 90]
    assert chunks[0].chunk_text[-20:] == chunks[1].chunk_text[:20]
    assert all(c.metadata["split_method"] == "simple" for c in chunks)


async def test_respect_boundaries_off_always_splits(fake_llm):
    chunks = await chunking_service.chunk_sections(
        [section("1", "short")], ChunkConfig(chunk_size=100, overlap=0, respect_boundaries=False), "c"
    )

    assert [c.chunk_text for c in chunks] == ["short"]
    assert chunks[0].metadata["split_method"] == "simple"
    assert len(fake_llm.calls_matching(SPLIT_MARKER)) == 2  # one try per configured model

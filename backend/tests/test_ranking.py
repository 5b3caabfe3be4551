from grantforge.proposal import KnowledgeChunk, Partner
from grantforge.ranking import (
    KEYWORD_MATCH_WEIGHT,
    extract_smart_keywords,
    rank_knowledge,
    rank_partners,
    render_grounding,
    select_grounding_chunks,
    tokenize_context,
)

CONTEXT = "A consortium deploying AI for precision agriculture across rural regions"


def test_keyword_match_outranks_unrelated_partner() -> None:
    partner_a = Partner(name="Agritech Lab", keywords=["AI"], description="Precision farming research")
    partner_b = Partner(name="Opera House", keywords=["music"], description="Stage performances")

    ranked = rank_partners(CONTEXT, [partner_b, partner_a])

    assert ranked[0].candidate is partner_a
    assert ranked[0].relevance_score >= KEYWORD_MATCH_WEIGHT + 1
    assert ranked[0].match_reasons == ["Keyword match: AI"]
    assert ranked[1].candidate is partner_b
    assert ranked[1].relevance_score == 0
    assert ranked[1].match_reasons == []


def test_description_and_experience_count_separately() -> None:
    partner = Partner(name="Rural Net", description="rural networks", experience="rural projects")

    ranked = rank_partners("rural development", [partner])

    assert ranked[0].relevance_score == 2


def test_ties_keep_input_order() -> None:
    partners = [Partner(name=f"P{index}", description="unrelated") for index in range(5)]

    ranked = rank_partners(CONTEXT, partners)

    assert [item.candidate.name for item in ranked] == ["P0", "P1", "P2", "P3", "P4"]


def test_empty_context_scores_everything_zero() -> None:
    partners = [Partner(name="A", keywords=["AI"]), Partner(name="B")]

    ranked = rank_partners("   ", partners)

    assert [item.relevance_score for item in ranked] == [0, 0]
    assert [item.candidate.name for item in ranked] == ["A", "B"]


def test_match_reasons_are_capped_at_three() -> None:
    partner = Partner(name="Wide", keywords=["consortium", "AI", "precision", "agriculture", "rural"])

    ranked = rank_partners(CONTEXT, [partner])

    assert ranked[0].relevance_score == 5 * KEYWORD_MATCH_WEIGHT
    assert len(ranked[0].match_reasons) == 3


def test_tokenize_context_keeps_long_unique_words() -> None:
    assert tokenize_context("AI for the Farm, farm and FARMERS") == ["farm", "farmers"]


def test_grounding_keeps_positive_scores_only_up_to_top_k() -> None:
    chunks = [
        KnowledgeChunk(content="Describe the needs analysis", keywords=["needs analysis"], sourceName="Guide"),
        KnowledgeChunk(content="Unrelated catering rules", keywords=["catering"]),
        KnowledgeChunk(content="Impact indicators for agriculture needs", keywords=["impact"], sourceName="Guide"),
    ]

    selected = select_grounding_chunks("needs analysis and impact for agriculture", chunks, top_k=5)

    assert [chunk.content for chunk in selected] == [
        "Impact indicators for agriculture needs",
        "Describe the needs analysis",
    ]
    assert select_grounding_chunks("anything", chunks, top_k=0) == []


def test_render_grounding_formats_source_blocks() -> None:
    rendered = render_grounding([KnowledgeChunk(content=" Use SMART objectives. ", sourceName="KA220 Guide", type="criteria")])

    assert rendered == "--- EXPERT KNOWLEDGE FROM: KA220 Guide (criteria) ---\nUse SMART objectives."


def test_rank_knowledge_scores_content_tokens() -> None:
    ranked = rank_knowledge("agriculture pilots", [KnowledgeChunk(content="Pilots in agriculture")])

    assert ranked[0].relevance_score == 2


def test_extract_smart_keywords_finds_programme_codes() -> None:
    keywords = extract_smart_keywords("Erasmus+ KA220-ADU call with a focus on digital inclusion and impact")

    assert keywords[:2] == ["KA220-ADU", "Erasmus+"]
    assert "Inclusion" not in keywords
    assert {"inclusion", "digital", "Impact"} <= set(keywords)
    assert extract_smart_keywords("") == []

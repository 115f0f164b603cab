from kgraph.data.dictionary_store import InMemoryDictionaryStore
from kgraph.data.models import ExtractedNode, ExtractionResult
from kgraph.nlp.entity_dictionary import EntityDictionary
from kgraph.nlp.hybrid_extraction import HybridExtractionPreprocessor

CONTENT = "We love acmecorp and nike shoes."


def build_preprocessor():
    dictionary = EntityDictionary(InMemoryDictionaryStore())
    acme = dictionary.add_entity("organization", "Acme Corp", scope="ds")
    nike = dictionary.add_entity("brand", "Nike", scope="ds")
    return HybridExtractionPreprocessor(dictionary), dictionary, acme, nike


def test_preprocess_text_builds_constraints_and_highlights():
    preprocessor, _, _, _ = build_preprocessor()

    processed = preprocessor.preprocess_text(CONTENT, scope="ds", threshold=0.7)

    names = sorted(constraint.canonical_name for constraint in processed.constraints.entities)
    assert names == ["Acme Corp", "Nike"]
    assert all(constraint.confidence == 1.0 for constraint in processed.constraints.entities)
    assert processed.constraints.threshold == 0.7
    assert processed.original_content == CONTENT
    assert processed.processed_content == "We love [Acme Corp] and nike shoes."


def test_preprocess_text_without_matches():
    preprocessor, _, _, _ = build_preprocessor()
    processed = preprocessor.preprocess_text("Nothing relevant here.", scope="ds")
    assert processed.matched_entities == []
    assert processed.constraints.entities == []
    assert processed.processed_content == "Nothing relevant here."


def test_constrained_prompt_lists_known_entities_by_type():
    preprocessor, dictionary, acme, _ = build_preprocessor()
    dictionary.add_alias(acme.id, "ACME")
    matches = preprocessor.preprocess_text(CONTENT, scope="ds").matched_entities

    prompt = preprocessor.build_constrained_prompt(CONTENT, matches, base_prompt="Extract a graph.")

    assert prompt.startswith("Extract a graph.")
    assert "IMPORTANT CONSTRAINTS:" in prompt
    assert "Known organization entities in this content:\n- Acme Corp (aliases: ACME)" in prompt
    assert "Known brand entities in this content:\n- Nike" in prompt
    assert "EXTRACTION RULES:" in prompt
    assert prompt.endswith(f"Content to analyze:\n{CONTENT}")


def test_constrained_prompt_without_matches_is_the_base_prompt():
    preprocessor, _, _, _ = build_preprocessor()
    assert preprocessor.build_constrained_prompt(CONTENT, [], base_prompt="Base") == "Base"
    assert preprocessor.build_constrained_prompt(CONTENT, []) == CONTENT


def test_usage_is_recorded_only_for_entities_the_model_used():
    preprocessor, dictionary, acme, nike = build_preprocessor()
    matches = preprocessor.preprocess_text(CONTENT, scope="ds").matched_entities
    result = ExtractionResult(nodes=[ExtractedNode("Acme Corp", "organization")])

    used = preprocessor.update_entity_usage_from_extraction(result, matches)

    assert used == 1
    assert dictionary.get_entity(acme.id).usage_count == 1
    assert dictionary.get_entity(nike.id).usage_count == 0

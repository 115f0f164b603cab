from pathlib import Path

import pytest

from kgraph.data.models import Dataset, Document
from kgraph.errors import NotFoundError
from kgraph.nlp.prompts import (
    DOCUMENT_PROMPT_ID,
    SOCIAL_MEDIA_PROMPT_ID,
    PromptCatalog,
    PromptSelector,
    determine_content_type,
    render_prompt,
)


def test_render_prompt_leaves_unknown_placeholders():
    rendered = render_prompt("{{ content }} by {{author}} on {{platform}}", {"content": "Hi", "author": None})
    assert rendered == "Hi by  on {{platform}}"


def test_content_type_precedence():
    dataset = Dataset(name="Twitter brand monitoring")
    assert determine_content_type(dataset) == "social_media"
    assert determine_content_type(Dataset(name="misc", metadata={"content_type": "News"})) == "news"
    document = Document(dataset.id, metadata={"content_type": "legal"})
    assert determine_content_type(dataset, document) == "legal"
    assert determine_content_type(Dataset(name="misc")) == "document"


def test_selector_picks_prompt_by_content_type_and_falls_back():
    selector = PromptSelector()
    assert selector.select(Dataset(name="instagram posts")).id == SOCIAL_MEDIA_PROMPT_ID
    assert selector.select(Dataset(name="misc", metadata={"content_type": "poetry"})).id == DOCUMENT_PROMPT_ID
    assert "hashtag" in selector.available_node_types("social_media")
    assert selector.available_edge_types("poetry") == selector.available_edge_types("document")


def test_catalog_from_yaml_and_inactive_prompts(tmp_path: Path):
    path = tmp_path / "prompts.yaml"
    path.write_text(
        "prompts:\n"
        "  - id: reviews\n"
        "    user_prompt_template: 'Review: {{content}}'\n"
        "    content_types: [reviews]\n"
        "  - id: retired\n"
        "    user_prompt_template: 'Old: {{content}}'\n"
        "    is_active: false\n",
        encoding="utf-8",
    )

    catalog = PromptCatalog.from_yaml(path)

    assert catalog.find_by_content_type("reviews").id == "reviews"
    assert catalog.get("reviews").json_schema is not None
    assert catalog.default().id == DOCUMENT_PROMPT_ID
    with pytest.raises(NotFoundError):
        catalog.get("retired")

import pytest

from kgraph.errors import ConfigurationError, NotFoundError, ParseError
from kgraph.nlp.llm_client import ChatCompletionClient, ProviderConfig, ProviderRegistry


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, payload):
        self.payload = payload
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return FakeResponse(self.payload)


def test_chat_completion_request_and_response(monkeypatch):
    monkeypatch.setenv("TEST_LLM_KEY", "secret")
    session = FakeSession({"choices": [{"message": {"content": '{"nodes": [], "edges": []}'}}]})
    provider = ProviderConfig(id="local", base_url="http://llm/v1/", api_key_env="TEST_LLM_KEY", timeout=30)
    client = ChatCompletionClient(provider, "llama3", session=session)

    content = client.complete("system", "user", {"type": "object"}, 0.2)

    assert content == '{"nodes": [], "edges": []}'
    request = session.requests[0]
    assert request["url"] == "http://llm/v1/chat/completions"
    assert request["headers"]["Authorization"] == "Bearer secret"
    assert request["timeout"] == 30
    assert request["json"]["model"] == "llama3"
    assert request["json"]["temperature"] == 0.2
    assert request["json"]["messages"][1] == {"role": "user", "content": "user"}
    assert request["json"]["response_format"]["json_schema"]["schema"] == {"type": "object"}


@pytest.mark.parametrize("payload", [{"choices": []}, {"choices": [{"message": {"content": "  "}}]}])
def test_empty_completion_is_a_parse_error(payload):
    client = ChatCompletionClient(ProviderConfig(id="p", base_url="http://llm"), "m", session=FakeSession(payload))
    with pytest.raises(ParseError):
        client.complete("system", "user", None, 0.7)


def test_registry_builds_clients_from_config():
    sessions = []

    def _session():
        session = FakeSession({"choices": [{"message": {"content": "ok"}}]})
        sessions.append(session)
        return session

    registry = ProviderRegistry.from_config(
        {"local": {"base_url": "http://llm/v1", "timeout": 5}},
        session_factory=_session,
    )

    client = registry.create_client("local", "llama3")

    assert "local" in registry
    assert client.complete("s", "u", None, 0.1) == "ok"
    assert sessions[0].requests[0]["timeout"] == 5.0
    with pytest.raises(NotFoundError):
        registry.create_client("other", "llama3")


def test_provider_without_base_url_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        ProviderRegistry.from_config({"broken": {"timeout": 5}})

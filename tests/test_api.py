"""Agent server: management routes and the conversation websocket."""

import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import KeywordExtractor, ScriptedAdapter, StaticCrewSource, fields, make_crew
from crewflow.application.websocket import ws_server
from crewflow.application.websocket.ws_server import build_dispatcher, build_llm_dispatcher, create_app
from crewflow.domain.crew.capabilities import FieldsCompleteTransfer
from crewflow.domain.crew.registry import CrewRegistry
from crewflow.domain.errors import ConfigurationError
from crewflow.domain.fields.extractor import LLMFieldExtractor
from crewflow.infrastructure.config.settings import ServerSettings, Settings
from crewflow.infrastructure.llm.chat_model_adapter import ChatModelAdapter


def demo_crews():
    return [
        make_crew(
            "entry",
            is_default=True,
            fields_to_collect=fields("name"),
            transition_to="main",
            pre_transfer=FieldsCompleteTransfer(["name"])
        ),
        make_crew("main"),
    ]


@pytest.fixture
def source():
    return StaticCrewSource({"demo": demo_crews()})


@pytest.fixture
def client(source):
    dispatcher = build_dispatcher(
        ScriptedAdapter(),
        KeywordExtractor(),
        registry=CrewRegistry([source])
    )
    with TestClient(create_app(dispatcher)) as test_client:
        yield test_client


def receive_turn(websocket):
    events = []
    while True:
        event = websocket.receive_json()
        events.append(event)
        if event["type"] in ("turn_complete", "error"):
            return events


class TestRoutes:
    def test_list_crews(self, client):
        response = client.get("/agents/demo/crews")

        assert response.status_code == 200
        body = response.json()
        assert body["default_crew"] == "entry"
        assert [c["name"] for c in body["crews"]] == ["entry", "main"]

    def test_unknown_agent_is_404(self, client):
        assert client.get("/agents/nobody/crews").status_code == 404

    def test_reload_agent(self, client):
        client.get("/agents/demo/crews")
        response = client.post("/agents/demo/reload")

        assert response.status_code == 200
        assert response.json()["version"] == 2

    def test_reload_unknown_agent_is_400(self, client):
        assert client.post("/agents/nobody/reload").status_code == 400

    def test_reload_crew(self, client, source):
        source.crews["demo"] = [demo_crews()[0], make_crew("main", guidance="edited")]

        response = client.post("/agents/demo/crews/main/reload")

        assert response.status_code == 200
        assert response.json()["version"] == 2
        assert source.refreshed == ["demo"]

    def test_reload_missing_crew_is_404(self, client):
        assert client.post("/agents/demo/crews/ghost/reload").status_code == 404

    def test_reload_invalid_crew_is_400(self, client, source):
        source.crews["demo"] = [demo_crews()[0], make_crew("main", transition_to="ghost")]
        assert client.post("/agents/demo/crews/main/reload").status_code == 400

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["active_connections"] == 0
        assert "metrics" in body

    def test_missing_conversation_is_404(self, client):
        assert client.get("/agents/demo/conversations/none").status_code == 404


class TestWebsocket:
    def test_unknown_agent_is_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/agents/nobody/c1") as websocket:
                websocket.receive_json()
        assert exc_info.value.code == 1008

    def test_turn_streams_events(self, client):
        with client.websocket_connect("/ws/agents/demo/c1") as websocket:
            connected = websocket.receive_json()
            assert connected["type"] == "connection"
            assert connected["agent_name"] == "demo"

            websocket.send_json({"type": "user_message", "content": "name=Dana", "user_id": "u1"})
            events = receive_turn(websocket)

        assert [e["type"] for e in events] == ["transition", "markdown", "markdown", "markdown", "turn_complete"]
        assert events[0]["payload"]["to_crew"] == "main"
        assert "".join(e["payload"] for e in events if e["type"] == "markdown") == "main reply"
        assert events[-1]["payload"]["collected_fields"] == {"name": "Dana"}

        assert client.get("/agents/demo/conversations").json()["conversations"] == ["c1"]
        conversation = client.get("/agents/demo/conversations/c1").json()
        assert conversation["active_crew"] == "main"
        assert conversation["message_count"] == 2
        assert conversation["transitions"][0]["phase"] == "pre_message"

    def test_unsupported_event_type(self, client):
        with client.websocket_connect("/ws/agents/demo/c2") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "ping"})
            error = websocket.receive_json()

        assert error["type"] == "error"
        assert error["error_code"] == "unsupported_event"


class TestStandaloneServer:
    def test_chat_model_is_wired_into_generation_and_extraction(self):
        model = GenericFakeChatModel(messages=iter([AIMessage(content="Welcome aboard")]))
        dispatcher = build_llm_dispatcher(
            model,
            registry=CrewRegistry([StaticCrewSource({"demo": [make_crew("main", is_default=True)]})])
        )

        assert isinstance(dispatcher.generation.adapter, ChatModelAdapter)
        assert isinstance(dispatcher.controller.field_collector.extractor, LLMFieldExtractor)

        with TestClient(create_app(dispatcher)) as client:
            with client.websocket_connect("/ws/agents/demo/s1") as websocket:
                websocket.receive_json()
                websocket.send_json({"type": "user_message", "content": "hello"})
                events = receive_turn(websocket)

        assert events[-1]["type"] == "turn_complete"
        assert "".join(e["payload"] for e in events if e["type"] == "markdown") == "Welcome aboard"

    def test_main_requires_a_chat_model(self, monkeypatch):
        monkeypatch.setattr(ws_server, "get_settings", lambda: Settings(server=ServerSettings(chat_model=None)))

        with pytest.raises(ConfigurationError):
            ws_server.main()

"""End-to-end tests for the FastAPI routes."""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import pytest
from fastapi.testclient import TestClient

from backend.app.config import HighlightsConfig, NodeContextConfig, ServiceConfig, load_config
from backend.app.contracts import Entity, ExtractionResult, Relationship
from backend.app.extraction import (
    ExtractionContractError,
    ExtractionServiceError,
    ExtractionUnavailableError,
    NodeContextClient,
    TextValidationError,
)
from backend.app.main import create_app


class _StubExtraction:
    """Extraction backend returning a canned result or raising a canned error."""

    def __init__(self, result: Optional[ExtractionResult] = None, error: Optional[Exception] = None) -> None:
        self.result = result or ExtractionResult()
        self.error = error

    def validate_text(self, text: str) -> str:
        if not text.strip():
            raise TextValidationError("Text to analyse must not be empty")
        return text

    async def analyze(self, text: str) -> ExtractionResult:
        if self.error is not None:
            raise self.error
        return self.result


@dataclass
class _FakeResponse:
    status_code: int
    body: Any

    def json(self) -> Any:
        return self.body


NODE_CONTEXT_SETTINGS = NodeContextConfig(
    model="gpt-4o-mini", base_url="https://api.openai.com/v1", timeout_seconds=5
)

CAUSES_RESULT = ExtractionResult(
    entities=[
        Entity(id="a", type="event", text="A", start_index=0, end_index=1),
        Entity(id="b", type="event", text="B", start_index=9, end_index=10),
    ],
    relationships=[Relationship(source="a", target="b", type="causes")],
)


@pytest.fixture(name="app_config")
def fixture_app_config(tmp_path):
    load_config.cache_clear()
    try:
        config = load_config()
    finally:
        load_config.cache_clear()
    return config.model_copy(
        update={
            "highlights": HighlightsConfig(store_path=str(tmp_path / "highlights.json")),
            "service": ServiceConfig(),
        }
    )


def _node_context(status_code: int = 200, content: str = "## Context\n- Important") -> NodeContextClient:
    async def _post(url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> _FakeResponse:
        if status_code >= 400:
            return _FakeResponse(status_code, {"error": {"message": "quota exceeded"}})
        return _FakeResponse(status_code, {"choices": [{"message": {"content": content}}]})

    return NodeContextClient(settings=NODE_CONTEXT_SETTINGS, api_key="sk-test", http_post=_post)


def _client(app_config, extraction=None, node_context=None) -> TestClient:
    app = create_app(
        config=app_config,
        extraction_client=extraction or _StubExtraction(CAUSES_RESULT),
        node_context_client=node_context or _node_context(),
    )
    return TestClient(app)


def test_health_reports_client_availability(app_config) -> None:
    response = _client(app_config).get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["extraction_available"] is True


def test_node_and_edge_lifecycle(app_config) -> None:
    client = _client(app_config)

    first = client.post("/api/graph/nodes", json={"label": "Treaty of Paris", "type": "Event"})
    second = client.post("/api/graph/nodes", json={"label": "Britain", "type": "place"})
    assert first.status_code == 201
    first_node = first.json()
    second_node = second.json()
    assert first_node["type"] == "event"
    assert 590 <= first_node["position"]["x"] <= 690
    assert 350 <= first_node["position"]["y"] <= 450

    ghost = client.post("/api/graph/edges", json={"source": first_node["id"], "target": "ghost"})
    assert ghost.status_code == 400

    edge = client.post("/api/graph/edges", json={"source": first_node["id"], "target": second_node["id"]})
    assert edge.status_code == 201
    assert edge.json()["label"] == "Influences"
    assert edge.json()["id"].startswith("e")

    patched = client.patch(f"/api/graph/nodes/{first_node['id']}", json={"description": "1783"})
    assert patched.json()["description"] == "1783"
    assert client.patch("/api/graph/nodes/missing", json={"label": "x"}).status_code == 404

    moved = client.post(f"/api/graph/nodes/{second_node['id']}/move", json={"x": 5, "y": 6})
    assert moved.json()["position"] == {"x": 5.0, "y": 6.0}

    removed = client.delete(f"/api/graph/nodes/{first_node['id']}")
    assert removed.status_code == 200
    state = removed.json()
    assert [node["id"] for node in state["nodes"]] == [second_node["id"]]
    assert state["edges"] == []
    assert client.delete(f"/api/graph/nodes/{first_node['id']}").status_code == 404


def test_edge_update_and_removal(app_config) -> None:
    client = _client(app_config)
    a = client.post("/api/graph/nodes", json={"label": "A"}).json()
    b = client.post("/api/graph/nodes", json={"label": "B"}).json()
    edge = client.post("/api/graph/edges", json={"source": a["id"], "target": b["id"], "type": "causes"}).json()

    assert client.patch(f"/api/graph/edges/{edge['id']}", json={"target": "ghost"}).status_code == 400
    updated = client.patch(f"/api/graph/edges/{edge['id']}", json={"label": "triggered"})
    assert updated.json()["label"] == "triggered"
    assert client.delete(f"/api/graph/edges/{edge['id']}").json()["edges"] == []
    assert client.delete(f"/api/graph/edges/{edge['id']}").status_code == 404


def test_selection_endpoint(app_config) -> None:
    client = _client(app_config)
    node = client.post("/api/graph/nodes", json={"label": "Rome"}).json()

    selected = client.post("/api/graph/selection", json={"node_id": node["id"]}).json()
    assert selected["selected_node_id"] == node["id"]
    assert client.post("/api/graph/selection", json={"node_id": "x", "edge_id": "y"}).status_code == 400
    assert client.post("/api/graph/selection", json={"edge_id": "missing"}).status_code == 404
    cleared = client.post("/api/graph/selection", json={}).json()
    assert cleared["selected_node_id"] is None


def test_analyze_text_merges_graph(app_config) -> None:
    client = _client(app_config)

    response = client.post("/api/analyze-text", json={"text": "A causes B."})

    assert response.status_code == 200
    body = response.json()
    assert [entity["id"] for entity in body["entities"]] == ["a", "b"]
    graph = body["graph"]
    assert sorted(node["id"] for node in graph["nodes"]) == ["a", "b"]
    assert [(edge["source"], edge["target"]) for edge in graph["edges"]] == [("a", "b")]
    assert graph["loading"] is False


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (ExtractionServiceError("bad request", status_code=400), 502),
        (ExtractionContractError("missing markers"), 502),
        (ExtractionUnavailableError("still unavailable"), 503),
    ],
)
def test_analyze_text_error_mapping(app_config, error: Exception, status_code: int) -> None:
    client = _client(app_config, extraction=_StubExtraction(error=error))

    response = client.post("/api/analyze-text", json={"text": "A causes B."})

    assert response.status_code == status_code
    assert client.get("/api/graph").json()["error"] == str(error)


def test_analyze_text_rejects_empty_text(app_config) -> None:
    response = _client(app_config).post("/api/analyze-text", json={"text": "  "})
    assert response.status_code == 400


def test_missing_credentials_disable_language_model_endpoints(monkeypatch, app_config) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    client = TestClient(create_app(config=app_config))

    assert client.get("/health").json()["extraction_available"] is False
    assert client.post("/api/analyze-text", json={"text": "A"}).status_code == 503
    assert client.post("/api/analyze-node", json={"label": "A"}).status_code == 503


def test_analyze_node_updates_context(app_config) -> None:
    client = _client(app_config)
    node = client.post("/api/graph/nodes", json={"label": "Joan of Arc", "type": "person"}).json()

    response = client.post(
        "/api/analyze-node",
        json={"label": "Joan of Arc", "type": "person", "node_id": node["id"]},
    )

    assert response.status_code == 200
    assert response.json() == {"context": "## Context\n- Important"}
    stored = client.get("/api/graph").json()["nodes"][0]
    assert stored["context"] == "## Context\n- Important"


def test_analyze_node_error_shape(app_config) -> None:
    client = _client(app_config, node_context=_node_context(status_code=500))
    response = client.post("/api/analyze-node", json={"label": "Joan of Arc", "type": "person"})
    assert response.status_code == 502
    assert "quota exceeded" in response.json()["error"]


def test_entities_layout_and_viewport_endpoints(app_config) -> None:
    client = _client(app_config)
    entities = [entity.model_dump() for entity in CAUSES_RESULT.entities]

    converted = client.post("/api/graph/entities", json={"entities": entities}).json()
    again = client.post("/api/graph/entities", json={"entities": entities}).json()
    assert len(converted["nodes"]) == 2
    assert len(again["nodes"]) == 2

    laid_out = client.post("/api/graph/layout", json={"direction": "TB"})
    assert laid_out.status_code == 200
    assert client.post("/api/graph/layout", json={"direction": "XX"}).status_code == 422

    viewport = client.post("/api/graph/viewport", json={"width": 400, "height": 300, "zoom": 2})
    assert viewport.json() == {"width": 400.0, "height": 300.0, "zoom": 2.0}


def test_export_endpoints(app_config) -> None:
    client = _client(app_config)
    assert client.get("/api/export/pdf").status_code == 400

    client.post("/api/analyze-text", json={"text": "A causes B."})
    pdf = client.get("/api/export/pdf")
    png = client.get("/api/export/png")

    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert 'filename="historical-flow.pdf"' in pdf.headers["content-disposition"]
    assert pdf.content.startswith(b"%PDF")
    assert png.headers["content-type"] == "image/png"


def test_blocking_export_and_highlight_routes_run_in_threadpool(app_config) -> None:
    app = create_app(config=app_config, extraction_client=_StubExtraction(), node_context_client=_node_context())
    blocking = [
        route
        for route in app.routes
        if getattr(route, "path", "").startswith(("/api/export", "/api/highlights"))
    ]

    assert len(blocking) == 7
    for route in blocking:
        assert not inspect.iscoroutinefunction(route.endpoint), route.path


def test_highlight_endpoints(app_config, tmp_path) -> None:
    client = _client(app_config)

    created = client.post("/api/highlights", json={"text": "Magna Carta", "from_offset": 0, "to_offset": 11})
    assert created.status_code == 201
    highlight_id = created.json()["id"]
    assert [item["id"] for item in client.get("/api/highlights").json()] == [highlight_id]
    stored = json.loads(json.loads((tmp_path / "highlights.json").read_text(encoding="utf-8"))["highlights"])
    assert stored[0]["text"] == "Magna Carta"

    replaced = client.put("/api/highlights", json={"highlights": [{"id": "h2", "text": "Runnymede"}]})
    assert [item["id"] for item in replaced.json()] == ["h2"]
    assert client.delete(f"/api/highlights/{highlight_id}").status_code == 404
    assert client.delete("/api/highlights/h2").json() == []

    client.post("/api/highlights", json={"text": "again"})
    assert client.delete("/api/highlights").status_code == 204
    assert client.get("/api/highlights").json() == []


def test_api_key_protects_api_routes(app_config) -> None:
    config = app_config.model_copy(update={"service": ServiceConfig(api_key="secret")})
    client = _client(config)

    assert client.get("/health").status_code == 200
    assert client.get("/api/graph").status_code == 401
    assert client.get("/api/graph", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/api/graph", headers={"X-API-Key": "secret"}).status_code == 200

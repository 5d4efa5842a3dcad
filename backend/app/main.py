"""FastAPI application factory for the Historiflow backend."""
from __future__ import annotations

import logging
import secrets
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, ValidationError
from typing_extensions import Literal

from backend.app.config import REPO_ROOT, AppConfig, load_config
from backend.app.contracts import Edge, Entity, GraphSnapshot, Highlight, Node, Position
from backend.app.export import (
    DiagramRasterizer,
    DiagramSurface,
    ExportError,
    ExportedFile,
    NothingToExportError,
    PDFExportService,
    SurfaceUnavailableError,
    Viewport,
)
from backend.app.extraction import (
    ExtractionContractError,
    ExtractionError,
    ExtractionServiceError,
    ExtractionUnavailableError,
    GeminiExtractionClient,
    NodeContextClient,
    NodeContextError,
    TextValidationError,
)
from backend.app.graph import GraphStore
from backend.app.highlights import HighlightStore, JSONKeyValueStore
from backend.app.ui import LayoutAdapter

LOGGER = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


class NodeCreateRequest(BaseModel):
    """Payload for adding a node manually."""

    label: str = Field(..., min_length=1)
    type: str = "concept"
    subtitle: Optional[str] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    context: Optional[str] = None
    position: Optional[Position] = None
    width: Optional[float] = Field(default=None, ge=0)
    height: Optional[float] = Field(default=None, ge=0)


class NodeUpdateRequest(BaseModel):
    """Partial node update; only the provided fields are merged."""

    label: Optional[str] = Field(default=None, min_length=1)
    type: Optional[str] = None
    subtitle: Optional[str] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    context: Optional[str] = None
    position: Optional[Position] = None
    width: Optional[float] = Field(default=None, ge=0)
    height: Optional[float] = Field(default=None, ge=0)


class MoveNodeRequest(BaseModel):
    """New top-left position of a dragged node."""

    x: float
    y: float


class EdgeCreateRequest(BaseModel):
    """Payload for connecting two nodes."""

    source: str = ""
    target: str = ""
    type: Optional[str] = None
    label: Optional[str] = None
    description: Optional[str] = None


class EdgeUpdateRequest(BaseModel):
    """Partial edge update; only the provided fields are merged."""

    source: Optional[str] = Field(default=None, min_length=1)
    target: Optional[str] = Field(default=None, min_length=1)
    type: Optional[str] = None
    label: Optional[str] = None
    description: Optional[str] = None


class SelectionRequest(BaseModel):
    """Select one node or one edge; both empty clears the selection."""

    node_id: Optional[str] = None
    edge_id: Optional[str] = None


class ConvertEntitiesRequest(BaseModel):
    """Entities to promote into nodes."""

    entities: List[Entity] = Field(default_factory=list)


class LayoutRequest(BaseModel):
    """Optional direction override for the layered layout."""

    direction: Optional[Literal["TB", "LR"]] = None


class ViewportRequest(BaseModel):
    """Size and transform of the client's visible canvas."""

    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)
    x: float = 0.0
    y: float = 0.0
    zoom: float = Field(1.0, gt=0)


class AnalyzeTextRequest(BaseModel):
    """Free text to extract entities and relationships from."""

    text: str = ""


class AnalyzeNodeRequest(BaseModel):
    """Node description sent to the context endpoint."""

    label: str = ""
    type: str = "concept"
    description: Optional[str] = None
    node_id: Optional[str] = None


class HighlightCreateRequest(BaseModel):
    """Payload for adding a text highlight."""

    id: Optional[str] = None
    text: str = Field(..., min_length=1)
    type: Optional[str] = None
    from_offset: Optional[int] = Field(default=None, ge=0)
    to_offset: Optional[int] = Field(default=None, ge=0)
    color: Optional[str] = None


class HighlightsReplaceRequest(BaseModel):
    """Full replacement of the highlight list."""

    highlights: List[Highlight] = Field(default_factory=list)


class GraphStateResponse(BaseModel):
    """Snapshot of the graph session for the client."""

    nodes: List[Node]
    edges: List[Edge]
    selected_node_id: Optional[str] = None
    selected_edge_id: Optional[str] = None
    loading: bool = False
    error: Optional[str] = None
    default_edge_type: str


class AnalyzeTextResponse(BaseModel):
    """Extraction outcome plus the updated graph."""

    entities: List[Entity]
    graph: GraphStateResponse


def _graph_state(store: GraphStore) -> GraphStateResponse:
    snapshot: GraphSnapshot = store.snapshot()
    selected_node = store.selected_node
    selected_edge = store.selected_edge
    return GraphStateResponse(
        nodes=snapshot.nodes,
        edges=snapshot.edges,
        selected_node_id=selected_node.id if selected_node else None,
        selected_edge_id=selected_edge.id if selected_edge else None,
        loading=store.loading,
        error=store.error,
        default_edge_type=store.default_edge_type,
    )


def _file_response(exported: ExportedFile) -> Response:
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )


def _resolve_store_path(raw: str) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = REPO_ROOT / path
    return path


def _build_extraction_client(config: AppConfig) -> Optional[GeminiExtractionClient]:
    try:
        return GeminiExtractionClient(settings=config.extraction)
    except ExtractionError as exc:
        LOGGER.warning("Extraction client unavailable: %s", exc)
        return None


def _build_node_context_client(config: AppConfig) -> Optional[NodeContextClient]:
    try:
        return NodeContextClient(settings=config.node_context)
    except NodeContextError as exc:
        LOGGER.warning("Node context client unavailable: %s", exc)
        return None


def create_app(
    config: AppConfig | None = None,
    extraction_client: Optional[GeminiExtractionClient] = None,
    node_context_client: Optional[NodeContextClient] = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        config: Optional pre-loaded configuration. If omitted, the default
            configuration defined in config.yaml is used.
        extraction_client: Optional extraction client. When omitted the factory
            builds a Gemini client; without credentials the analysis endpoint
            returns ``503``.
        node_context_client: Optional node context client, built the same way.

    Returns:
        FastAPI: Configured FastAPI application.
    """

    resolved_config = config or load_config()
    app = FastAPI(title="Historiflow API", version=resolved_config.app.version)
    app.state.app_config = resolved_config

    allowed_origins = resolved_config.ui.allowed_origins
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    extraction = extraction_client or _build_extraction_client(resolved_config)
    node_context = node_context_client or _build_node_context_client(resolved_config)
    store = GraphStore(
        extraction,
        arrangement=resolved_config.arrangement,
        default_edge_type=resolved_config.ui.default_edge_type,
    )
    store.set_container_dimensions(
        resolved_config.ui.viewport_width, resolved_config.ui.viewport_height
    )
    surface = DiagramSurface(
        store,
        width=resolved_config.ui.viewport_width,
        height=resolved_config.ui.viewport_height,
        rasterizer=DiagramRasterizer(background_color=resolved_config.export.background_color),
    )
    highlight_storage = JSONKeyValueStore(_resolve_store_path(resolved_config.highlights.store_path))
    app.state.extraction_client = extraction
    app.state.node_context_client = node_context
    app.state.graph_store = store
    app.state.surface = surface
    app.state.layout_adapter = LayoutAdapter(resolved_config.layout)
    app.state.export_service = PDFExportService(
        surface=surface, config=resolved_config.export, events=store.events
    )
    app.state.highlight_store = HighlightStore(
        highlight_storage, key=resolved_config.highlights.store_key
    )

    @app.on_event("shutdown")
    async def _close_clients() -> None:
        store.close()
        for client in (extraction, node_context):
            closer = getattr(client, "aclose", None)
            if closer is not None:
                await closer()

    async def require_api_key(request: Request) -> None:
        expected = resolved_config.service.api_key
        if not expected:
            return
        provided = request.headers.get(API_KEY_HEADER, "")
        if not secrets.compare_digest(provided, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    api = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])

    @app.get("/health", tags=["system"], summary="Service health check")
    def health() -> Dict[str, object]:
        """Return service health information."""

        return {
            "status": "ok",
            "version": resolved_config.app.version,
            "extraction_available": extraction is not None,
            "node_context_available": node_context is not None,
        }

    # ------------------------------------------------------------------
    # Graph state
    # ------------------------------------------------------------------
    @api.get("/graph", tags=["graph"], summary="Current graph session")
    async def get_graph() -> GraphStateResponse:
        return _graph_state(store)

    @api.post("/graph/nodes", tags=["graph"], status_code=status.HTTP_201_CREATED)
    async def add_node(payload: NodeCreateRequest) -> Node:
        try:
            return store.add_node(payload.model_dump(exclude_none=True))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @api.patch("/graph/nodes/{node_id}", tags=["graph"])
    async def update_node(node_id: str, payload: NodeUpdateRequest) -> Node:
        if store.get_node(node_id) is None:
            raise HTTPException(status_code=404, detail="Node not found")
        try:
            updated = store.update_node(node_id, payload.model_dump(exclude_unset=True))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if updated is None:
            raise HTTPException(status_code=404, detail="Node not found")
        return updated

    @api.post("/graph/nodes/{node_id}/move", tags=["graph"])
    async def move_node(node_id: str, payload: MoveNodeRequest) -> Node:
        moved = store.move_node(node_id, payload.x, payload.y)
        if moved is None:
            raise HTTPException(status_code=404, detail="Node not found")
        return moved

    @api.delete("/graph/nodes/{node_id}", tags=["graph"])
    async def remove_node(node_id: str) -> GraphStateResponse:
        if not store.remove_node(node_id):
            raise HTTPException(status_code=404, detail="Node not found")
        return _graph_state(store)

    @api.post("/graph/edges", tags=["graph"], status_code=status.HTTP_201_CREATED)
    async def add_edge(payload: EdgeCreateRequest) -> Edge:
        try:
            edge = store.add_edge(payload.model_dump(exclude_none=True))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if edge is None:
            raise HTTPException(
                status_code=400, detail="Edge source and target must reference existing nodes"
            )
        return edge

    @api.patch("/graph/edges/{edge_id}", tags=["graph"])
    async def update_edge(edge_id: str, payload: EdgeUpdateRequest) -> Edge:
        if store.get_edge(edge_id) is None:
            raise HTTPException(status_code=404, detail="Edge not found")
        try:
            updated = store.update_edge(edge_id, payload.model_dump(exclude_unset=True))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if updated is None:
            raise HTTPException(
                status_code=400, detail="Edge source and target must reference existing nodes"
            )
        return updated

    @api.delete("/graph/edges/{edge_id}", tags=["graph"])
    async def remove_edge(edge_id: str) -> GraphStateResponse:
        if not store.remove_edge(edge_id):
            raise HTTPException(status_code=404, detail="Edge not found")
        return _graph_state(store)

    @api.post("/graph/selection", tags=["graph"])
    async def select(payload: SelectionRequest) -> GraphStateResponse:
        if payload.node_id and payload.edge_id:
            raise HTTPException(status_code=400, detail="Select either a node or an edge, not both")
        if payload.node_id:
            if store.get_node(payload.node_id) is None:
                raise HTTPException(status_code=404, detail="Node not found")
            store.select_node(payload.node_id)
        elif payload.edge_id:
            if store.get_edge(payload.edge_id) is None:
                raise HTTPException(status_code=404, detail="Edge not found")
            store.select_edge(payload.edge_id)
        else:
            store.select_node(None)
        return _graph_state(store)

    @api.post("/graph/entities", tags=["graph"], summary="Promote entities to nodes")
    async def convert_entities(payload: ConvertEntitiesRequest) -> GraphStateResponse:
        store.convert_entities_to_nodes(payload.entities)
        return _graph_state(store)

    @api.post("/graph/layout", tags=["graph"], summary="Apply the layered auto-layout")
    async def auto_layout(payload: Optional[LayoutRequest] = None) -> GraphStateResponse:
        direction = payload.direction if payload else None
        store.auto_layout(app.state.layout_adapter, direction=direction)
        return _graph_state(store)

    @api.post("/graph/viewport", tags=["graph"], summary="Report the client canvas size")
    async def set_viewport(payload: ViewportRequest) -> Dict[str, float]:
        store.set_container_dimensions(payload.width, payload.height)
        surface.resize(payload.width, payload.height)
        surface.set_viewport(Viewport(x=payload.x, y=payload.y, zoom=payload.zoom))
        return {"width": payload.width, "height": payload.height, "zoom": payload.zoom}

    # ------------------------------------------------------------------
    # Language model endpoints
    # ------------------------------------------------------------------
    @api.post("/analyze-text", tags=["analysis"], summary="Extract entities into the graph")
    async def analyze_text(payload: AnalyzeTextRequest) -> AnalyzeTextResponse:
        if extraction is None:
            raise HTTPException(status_code=503, detail="Extraction service unavailable")
        try:
            result = await store.analyze_text(payload.text)
        except TextValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except (ExtractionContractError, ExtractionServiceError) as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except ExtractionUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except ExtractionError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return AnalyzeTextResponse(entities=result.entities, graph=_graph_state(store))

    @api.post("/analyze-node", tags=["analysis"], summary="Historical context for a node")
    async def analyze_node(payload: AnalyzeNodeRequest):
        if node_context is None:
            raise HTTPException(status_code=503, detail="Node context service unavailable")
        if payload.node_id is not None and store.get_node(payload.node_id) is None:
            raise HTTPException(status_code=404, detail="Node not found")
        result = await node_context.describe(payload.label, payload.type, payload.description)
        if result.error is not None:
            return JSONResponse(status_code=502, content={"error": result.error})
        if payload.node_id is not None:
            store.update_node(payload.node_id, {"context": result.context})
        return {"context": result.context}

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------
    def _export(fmt: str) -> Response:
        service: PDFExportService = app.state.export_service
        try:
            if fmt == "pdf":
                exported = service.export_to_pdf()
            else:
                exported = service.export_to_png()
        except NothingToExportError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except SurfaceUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except ExportError as exc:
            raise HTTPException(status_code=500, detail=f"Failed to generate {fmt.upper()}") from exc
        return _file_response(exported)

    @api.get("/export/pdf", tags=["export"], summary="Download the diagram as PDF")
    def export_pdf() -> Response:
        return _export("pdf")

    @api.get("/export/png", tags=["export"], summary="Download the diagram as PNG")
    def export_png() -> Response:
        return _export("png")

    # ------------------------------------------------------------------
    # Highlights
    # ------------------------------------------------------------------
    @api.get("/highlights", tags=["highlights"])
    def list_highlights() -> List[Highlight]:
        return app.state.highlight_store.highlights

    @api.post("/highlights", tags=["highlights"], status_code=status.HTTP_201_CREATED)
    def add_highlight(payload: HighlightCreateRequest) -> Highlight:
        try:
            return app.state.highlight_store.add_highlight(payload.model_dump(exclude_none=True))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @api.put("/highlights", tags=["highlights"])
    def replace_highlights(payload: HighlightsReplaceRequest) -> List[Highlight]:
        return app.state.highlight_store.set_highlights(payload.highlights)

    @api.delete("/highlights", tags=["highlights"], status_code=status.HTTP_204_NO_CONTENT)
    def clear_highlights() -> Response:
        app.state.highlight_store.clear_highlights()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @api.delete("/highlights/{highlight_id}", tags=["highlights"])
    def remove_highlight(highlight_id: str) -> List[Highlight]:
        if not app.state.highlight_store.remove_highlight(highlight_id):
            raise HTTPException(status_code=404, detail="Highlight not found")
        return app.state.highlight_store.highlights

    app.include_router(api)
    return app

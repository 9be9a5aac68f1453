"""Knowledge router: add, list, search, get, remove and trigger a sync."""

import asyncio
import json
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from services.knowledge_sync.KnowledgeService import KnowledgeService
from shared.dependencies.auth import verify_api_key
from shared.exceptions import ValidationError
from shared.models.knowledge import DocumentPage, KnowledgeDocument
from shared.models.search import (
    AddKnowledgeRequest,
    AddKnowledgeResponse,
    SearchRequest,
    SearchResponse,
    SyncAcceptedResponse,
)

knowledge_router = APIRouter(prefix="/knowledge", dependencies=[Depends(verify_api_key)], tags=["Knowledge"])


def get_knowledge_service(request: Request) -> KnowledgeService:
    service = getattr(request.app.state, "knowledge", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Knowledge service not ready.")
    return service


def _parse_filters(raw: str | None) -> dict | None:
    if raw is None or not raw.strip():
        return None
    try:
        filters = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"filters is not valid JSON: {e}") from e
    if not isinstance(filters, dict):
        raise ValidationError("filters must be a JSON object.")
    return filters


@knowledge_router.post("", response_model=AddKnowledgeResponse)
async def add_knowledge(
    body: AddKnowledgeRequest,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> AddKnowledgeResponse:
    """Store a text as a knowledge document. Unchanged text is skipped."""
    document_id = body.id or str(uuid.uuid4())
    outcome = await service.add(document_id, body.text, body.metadata)
    return AddKnowledgeResponse(id=document_id, outcome=outcome.value)


@knowledge_router.get("", response_model=DocumentPage)
async def list_knowledge(
    limit: int = 20,
    cursor: str | None = None,
    sort: str = "desc",
    filters: str | None = None,
    include_fragments: bool = False,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> DocumentPage:
    """List documents page by page. ``filters`` is a JSON encoded filter object."""
    return await service.list(
        limit=limit,
        cursor=cursor,
        sort=sort,
        filters=_parse_filters(filters),
        include_fragments=include_fragments,
    )


@knowledge_router.post("/search", response_model=SearchResponse)
async def search_knowledge(
    request: Request,
    body: SearchRequest,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> SearchResponse:
    """Return the fragments most similar to the query."""
    request.app.state.logging.info("Knowledge search received, query=%r", body.query[:80])
    results = await service.search(body.query, limit=body.limit, threshold=body.threshold, filters=body.filters)
    return SearchResponse(query=body.query, results=results, total=len(results))


@knowledge_router.post("/sync", status_code=202, response_model=SyncAcceptedResponse)
async def trigger_sync(
    request: Request,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> SyncAcceptedResponse:
    """Start one sync cycle in the background and return at once."""
    if service.sync is None:
        raise HTTPException(status_code=409, detail="No remote knowledge source configured.")

    logger = request.app.state.logging
    tasks: set = request.app.state.background_tasks

    async def run_cycle() -> None:
        try:
            await service.sync_now()
        except Exception as e:
            logger.error("Triggered knowledge sync failed: %s", e)

    task = asyncio.create_task(run_cycle())
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return SyncAcceptedResponse(agent_id=service.agent_id)


@knowledge_router.get("/{document_id}", response_model=KnowledgeDocument)
async def get_knowledge(
    document_id: str,
    include_fragments: bool = False,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeDocument:
    doc = await service.get(document_id)
    if doc is None:
        raise HTTPException(status_code=404, detail=f"Knowledge {document_id} not found.")
    if include_fragments:
        doc.fragments = await service.fragments(document_id)
    return doc


@knowledge_router.delete("/{document_id}", status_code=204)
async def delete_knowledge(
    document_id: str,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> Response:
    if not await service.remove(document_id):
        raise HTTPException(status_code=404, detail=f"Knowledge {document_id} not found.")
    return Response(status_code=204)

from typing import Annotated, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from flowmind.domain.orchestration.core.system import FlowMindSystem
from flowmind.infrastructure.observability.logging import metrics

router = APIRouter(prefix="/api/v1")


def get_system(request: Request) -> FlowMindSystem:
    return request.app.state.system


SystemDep = Annotated[FlowMindSystem, Depends(get_system)]


@router.get("/graph")
async def get_graph(system: SystemDep):
    graph = await system.graph()
    return graph.to_wire()


@router.get("/thoughts")
async def list_thoughts(system: SystemDep):
    return [thought.to_wire() for thought in await system.list_thoughts()]


@router.get("/thoughts/{thought_id}")
async def get_thought(thought_id: str, system: SystemDep):
    thought = await system.get_thought(thought_id)
    if thought is None:
        raise HTTPException(status_code=404, detail=f"Thought {thought_id} not found")
    return thought.to_wire()


@router.get("/guides")
async def list_guides(system: SystemDep):
    return [guide.to_wire() for guide in await system.list_guides()]


@router.get("/events")
async def list_events(
    system: SystemDep,
    target_id: Annotated[Optional[str], Query(alias="targetId")] = None,
    event_type: Annotated[Optional[str], Query(alias="type")] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
):
    events = await system.get_events(target_id=target_id, event_type=event_type, limit=limit)
    return [event.to_wire() for event in events]


@router.get("/tools")
async def list_tools(system: SystemDep, q: Optional[str] = None):
    tools = system.registry.search_tools(q) if q else system.registry.list()
    return [tool.describe() for tool in tools]


@router.get("/search")
async def search(
    system: SystemDep,
    q: Annotated[str, Query(min_length=1)],
    k: Annotated[int, Query(ge=1, le=50)] = 5,
):
    """Semantic search; empty when no embedding model is available"""

    results = await system.find_thoughts(q, k)
    return [{"thought": thought.to_wire(), "score": round(score, 4)} for thought, score in results]


@router.get("/metrics")
async def get_metrics():
    return metrics.get_metrics_summary()

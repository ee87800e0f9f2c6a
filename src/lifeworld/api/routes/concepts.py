"""
Concept Routes
==============
"""

from fastapi import APIRouter, Depends, Request

from lifeworld.core.engine import ConvergenceEngine
from lifeworld.api.models import ReinforceRequest

router = APIRouter(prefix="/concepts", tags=["Concepts"])


def get_engine(request: Request) -> ConvergenceEngine:
    return request.app.state.engine


@router.post("/reinforce", summary="Create or reinforce a concept for a user")
async def reinforce_concept(req: ReinforceRequest, engine: ConvergenceEngine = Depends(get_engine)):
    concept = await engine.reinforce_concept(
        user_id=req.user_id,
        name=req.name,
        description=req.description,
        category=req.category,
        importance=req.importance,
        conversation_id=req.conversation_id,
    )
    return {"ok": True, "concept": concept.to_dict()}

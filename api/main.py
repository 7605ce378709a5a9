"""FastAPI server for EchoVault."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException, Header, Depends
from pydantic import BaseModel, Field

from echovault import (
    ClassificationContext,
    ComplexityClassifier,
    CostGovernor,
    EmbeddingCache,
    Gateway,
    JSONFileCacheRepository,
    LocalInferenceEngine,
    Priority,
    RemoteCallError,
    SQLiteStorage,
    SummaryStyle,
    UserTier,
    ValidationError,
)
from echovault.config import get_cache_path, get_db_path
from echovault.local_models import EMBEDDING_MODEL
from echovault.providers import default_provider
from echovault.schemas import Chunk


def _get_api_key() -> Optional[str]:
    return os.getenv("ECHOVAULT_API_KEY")


def _require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = _get_api_key()
    if api_key and x_api_key != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    return x_user_id or "anonymous"


@lru_cache(maxsize=1)
def get_governor() -> CostGovernor:
    return CostGovernor(SQLiteStorage(db_path=get_db_path()))


@lru_cache(maxsize=1)
def get_gateway() -> Gateway:
    return Gateway(default_provider(), get_governor())


@lru_cache(maxsize=1)
def get_engine() -> LocalInferenceEngine:
    return LocalInferenceEngine()


@lru_cache(maxsize=1)
def get_classifier() -> ComplexityClassifier:
    return ComplexityClassifier()


@lru_cache(maxsize=1)
def get_embedding_cache() -> EmbeddingCache:
    return EmbeddingCache(JSONFileCacheRepository(get_cache_path()))


app = FastAPI(title="EchoVault API", version="0.3.0")


class ClassifyRequest(BaseModel):
    text: str
    has_audio: bool = False
    duration_seconds: float = Field(0.0, ge=0)
    previous_messages: int = Field(0, ge=0)
    user_tier: UserTier = UserTier.FREE


class SummarizeRequest(BaseModel):
    text: str
    max_length: int = Field(150, ge=10, le=5000)
    style: SummaryStyle = SummaryStyle.CONCISE
    min_quality: float = Field(0.5, ge=0, le=1)


class TextRequest(BaseModel):
    text: str


class EmbedRequest(BaseModel):
    text: str
    dimensions: int = Field(384, ge=1, le=4096)


class ChunkModel(BaseModel):
    id: str
    content: str
    score: float
    source_id: str
    title: str = ""


class AnswerabilityRequest(BaseModel):
    query: str = Field(..., min_length=1)
    chunks: List[ChunkModel] = Field(default_factory=list)


class BudgetCheckRequest(BaseModel):
    user_id: str
    operation: str = "chat"
    est_tokens: int = Field(0, ge=0)
    est_cost_usd: float = Field(0.0, ge=0)
    priority: Priority = Priority.MEDIUM


class BudgetLimitRequest(BaseModel):
    user_id: str
    daily_limit_usd: float = Field(..., ge=0, le=100)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/gateway", dependencies=[Depends(_require_api_key)])
def gateway_call(
    payload: Dict[str, Any],
    user_id: str = Depends(_user_id),
    gateway: Gateway = Depends(get_gateway),
) -> Dict[str, Any]:
    try:
        return gateway.handle(payload, user_id=user_id)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail={"ok": False, "error": str(exc)}) from exc
    except RemoteCallError as exc:
        raise HTTPException(status_code=502, detail={"ok": False, "error": str(exc)}) from exc


@app.post("/classify", dependencies=[Depends(_require_api_key)])
def classify(req: ClassifyRequest, classifier: ComplexityClassifier = Depends(get_classifier)) -> Dict[str, Any]:
    result = classifier.classify(
        req.text,
        ClassificationContext(
            has_audio=req.has_audio,
            duration_seconds=req.duration_seconds,
            previous_messages=req.previous_messages,
            user_tier=req.user_tier,
        ),
    )
    return {
        "score": result.score,
        "suggested_tier": result.suggested_tier.value,
        "reasoning": result.reasoning,
        "factors": result.factors.__dict__,
    }


@app.post("/local/summarize", dependencies=[Depends(_require_api_key)])
def summarize(req: SummarizeRequest, engine: LocalInferenceEngine = Depends(get_engine)) -> Dict[str, Any]:
    result = engine.summarize(
        req.text,
        max_length=req.max_length,
        style=req.style,
        min_quality=req.min_quality,
    )
    return result.__dict__


@app.post("/local/categorize", dependencies=[Depends(_require_api_key)])
def categorize(req: TextRequest, engine: LocalInferenceEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.categorize(req.text).__dict__


@app.post("/local/embed", dependencies=[Depends(_require_api_key)])
def embed(
    req: EmbedRequest,
    engine: LocalInferenceEngine = Depends(get_engine),
    cache: EmbeddingCache = Depends(get_embedding_cache),
) -> Dict[str, Any]:
    model = f"{EMBEDDING_MODEL}:{req.dimensions}"
    cached = cache.get(req.text, model)
    if cached is not None:
        return {
            "vector": cached,
            "dimensions": len(cached),
            "model": EMBEDDING_MODEL,
            "confidence": 1.0,
            "cache_hit": True,
        }

    result = engine.embed(req.text, dimensions=req.dimensions)
    if result.confidence > 0:
        cache.put(req.text, result.vector, model=model)
    return {**result.__dict__, "cache_hit": False}


@app.post("/local/answerability", dependencies=[Depends(_require_api_key)])
def answerability(req: AnswerabilityRequest, engine: LocalInferenceEngine = Depends(get_engine)) -> Dict[str, Any]:
    chunks = [Chunk(**c.model_dump()) for c in req.chunks]
    return engine.assess_answerability(req.query, chunks).__dict__


@app.post("/budgets/check", dependencies=[Depends(_require_api_key)])
def check_budget(req: BudgetCheckRequest, governor: CostGovernor = Depends(get_governor)) -> Dict[str, Any]:
    decision = governor.should_proceed(
        req.operation,
        req.est_tokens,
        req.est_cost_usd,
        priority=req.priority,
        user_id=req.user_id,
    )
    return {
        "allowed": decision.allowed,
        "suggested_action": decision.suggested_action.value,
        "reason": decision.reason,
        "remaining_usd": decision.remaining_usd,
        "warnings": decision.warnings,
    }


@app.post("/budgets", dependencies=[Depends(_require_api_key)])
def set_budget(req: BudgetLimitRequest, governor: CostGovernor = Depends(get_governor)) -> Dict[str, Any]:
    return governor.set_daily_limit(req.user_id, req.daily_limit_usd).__dict__


@app.get("/budgets/{user_id}", dependencies=[Depends(_require_api_key)])
def get_budget(user_id: str, governor: CostGovernor = Depends(get_governor)) -> Dict[str, Any]:
    return governor.get_user_report(user_id)


@app.get("/audit/{user_id}", dependencies=[Depends(_require_api_key)])
def audit(user_id: str, governor: CostGovernor = Depends(get_governor)) -> Dict[str, Any]:
    entries = governor.storage.list_audit(user_id)
    return {
        "user_id": user_id,
        "entries": [
            {
                "operation": e.operation,
                "model": e.model,
                "cost_usd": e.cost_usd,
                "cache_hit": e.cache_hit,
                "outcome": e.outcome,
                "escalated": e.escalated,
                "created_at": e.created_at.isoformat(),
            }
            for e in entries
        ],
    }

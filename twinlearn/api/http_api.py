"""
HTTP API adapter for the twinlearn service.

Architectural role:
- Expose chat, feedback, training, status, and conversation-management routes.
- Enforce adapter-level input validation through pydantic request schemas.
- Delegate all behavior to one `TwinService` instance.

Endpoint responsibilities:
- `POST /v1/twin/chat`: run one turn and return the selected reply.
- `POST /v1/twin/feedback`: rate a delivered reply by response id.
- `POST /v1/twin/batch-train`: train a user's model on labelled texts.
- `GET /v1/twin/status`: live upstream reachability and resident counts.
- `GET|POST /v1/twin/conversations/{user_id}`: list or create conversations.
- `DELETE /v1/twin/conversations/{conversation_id}`: delete one conversation.
- `POST /v1/twin/conversations/maintenance/clear-expired`: sweep idle sessions.
- `POST /v1/twin/users/{user_id}/retrain`: replay the user's training log.
- `DELETE /v1/twin/users/{user_id}`: delete everything stored for a user.

Service lifecycle:
- The app lifespan starts periodic maintenance and, on shutdown, stops it and
  flushes every dirty model.

Error handling strategy:
- Schema violations -> HTTP 422 (FastAPI default).
- `InvalidInputError` -> HTTP 400 `{"error": ...}`.
- `UpstreamUnavailable` / `PersistenceUnavailable` -> HTTP 503 `{"error": ...}`.
- Unknown conversation on delete -> HTTP 404.
- Stale feedback is not an error: `{"accepted": false}`.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from twinlearn.core.service import TwinService
from twinlearn.errors import InvalidInputError, PersistenceUnavailable, UpstreamUnavailable


logger = logging.getLogger(__name__)


# ============================================================
# Request Schemas
# ============================================================

class ChatRequest(BaseModel):
    user_id: str
    message: str
    conversation_id: str | None = None


class FeedbackRequest(BaseModel):
    response_id: str
    feedback: float


class LabelledText(BaseModel):
    text: str
    label: float


class BatchTrainRequest(BaseModel):
    user_id: str
    interactions: list[LabelledText] = Field(default_factory=list)


# ============================================================
# App Factory
# ============================================================

def create_app(service: TwinService | None = None) -> FastAPI:
    """
    Build the FastAPI app around `service`.

    A default `TwinService` is built from the environment when none is given,
    so the factory can be handed to uvicorn directly.
    """
    service = service or TwinService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(title="twinlearn", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(InvalidInputError)
    async def invalid_input(request: Request, exc: InvalidInputError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(UpstreamUnavailable)
    async def upstream_unavailable(request: Request, exc: UpstreamUnavailable):
        logger.warning("Upstream unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(PersistenceUnavailable)
    async def persistence_unavailable(request: Request, exc: PersistenceUnavailable):
        logger.warning("Persistence unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"error": str(exc)})

    # --------------------------------------------------------
    # Chat and learning
    # --------------------------------------------------------

    @app.post("/v1/twin/chat")
    async def chat(body: ChatRequest):
        result = await service.turn(body.user_id, body.conversation_id, body.message)
        return {
            "response": result.text,
            "response_id": result.response_id,
            "conversation_id": result.conversation_id,
            "degraded": result.degraded,
            "score": result.score,
            "temperature": result.temperature,
        }

    @app.post("/v1/twin/feedback")
    async def feedback(body: FeedbackRequest):
        return await service.feedback(body.response_id, body.feedback)

    @app.post("/v1/twin/batch-train")
    async def batch_train(body: BatchTrainRequest):
        if not body.interactions:
            raise InvalidInputError("interactions must be a non-empty list")
        samples = [item.model_dump() for item in body.interactions]
        return await service.batch_train(body.user_id, samples)

    @app.get("/v1/twin/status")
    async def status():
        return await service.status()

    # --------------------------------------------------------
    # Conversations
    # --------------------------------------------------------

    # Declared before the `{user_id}` routes so the literal path wins.
    @app.post("/v1/twin/conversations/maintenance/clear-expired")
    async def clear_expired():
        return {"cleared": await service.clear_expired()}

    @app.get("/v1/twin/conversations/{user_id}")
    async def list_conversations(user_id: str):
        return {"conversations": service.list_conversations(user_id)}

    @app.post("/v1/twin/conversations/{user_id}")
    async def create_conversation(user_id: str):
        return {"conversation_id": await service.create_conversation(user_id)}

    @app.delete("/v1/twin/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str):
        if not await service.delete_conversation(conversation_id):
            return JSONResponse(status_code=404, content={"error": "Conversation not found"})
        return {"deleted": True}

    # --------------------------------------------------------
    # Users
    # --------------------------------------------------------

    @app.post("/v1/twin/users/{user_id}/retrain")
    async def retrain(user_id: str):
        return await service.retrain_from_log(user_id)

    @app.delete("/v1/twin/users/{user_id}")
    async def delete_user(user_id: str):
        await service.delete_user_data(user_id)
        return {"deleted": True}

    return app

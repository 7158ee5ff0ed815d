from functools import lru_cache
import logging
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from docqa.config import get_settings, validate_settings
from docqa.db import get_engine
from docqa.errors import CollectionNotFoundError, RagError
from docqa.llm import ChatClient, build_chat_client
from docqa.logs import configure_logging
from docqa.services.rag import AskPipeline, RetrievalService, VectorIndex
from docqa.services.rag.embedding_client import EmbeddingClient, build_embedding_client
from docqa.services.rag.generator import AnswerGenerator

logger = logging.getLogger(__name__)

QUESTION_REQUIRED = "Question is required."
MAX_K = 50

app = FastAPI(title="docqa", version="0.1.0")


class AskRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question: str | None = None
    k: int | None = Field(default=None, ge=1, le=MAX_K)


@app.on_event("startup")
def startup() -> None:
    settings = validate_settings(get_settings())
    configure_logging(settings.log_level)
    get_engine()
    logger.info(
        "docqa ready collection=%s embedding_provider=%s generation_mode=%s",
        settings.collection,
        settings.embedding_provider,
        settings.generation_mode,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if request.url.path != "/ask":
        return await request_validation_exception_handler(request, exc)

    if any("k" in error.get("loc", ()) for error in exc.errors()):
        message = f"k must be an integer between 1 and {MAX_K}."
    else:
        message = QUESTION_REQUIRED
    return JSONResponse(status_code=400, content={"error": message})


@lru_cache
def get_vector_index() -> VectorIndex:
    return VectorIndex(get_engine(), metric=get_settings().distance_metric)


def get_embedding_client() -> EmbeddingClient:
    return build_embedding_client(get_settings())


def get_chat_client() -> ChatClient:
    return build_chat_client(get_settings())


def get_retrieval_service(
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> RetrievalService:
    settings = get_settings()
    return RetrievalService(
        embedding_client=embedding_client,
        index=get_vector_index(),
        collection=settings.collection,
        top_k=settings.top_k,
        preview_chars=settings.preview_chars,
        min_score=settings.min_score,
    )


def get_ask_pipeline(
    retrieval: Annotated[RetrievalService, Depends(get_retrieval_service)],
    chat_client: Annotated[ChatClient, Depends(get_chat_client)],
) -> AskPipeline:
    return AskPipeline(
        retrieval=retrieval,
        generator=AnswerGenerator(chat_client),
        timeout_seconds=get_settings().request_timeout_seconds,
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/rag/search")
def rag_search(
    q: str,
    retrieval: Annotated[RetrievalService, Depends(get_retrieval_service)],
    k: int = 5,
) -> list[dict[str, Any]]:
    if not q.strip():
        raise HTTPException(status_code=400, detail="q must not be empty")

    top_k = max(1, min(k, MAX_K))
    try:
        bundle = retrieval.retrieve(q.strip(), k=top_k)
    except CollectionNotFoundError as exc:
        raise HTTPException(
            status_code=503,
            detail=f"{exc}. Run `docqa-ingest` first.",
        ) from exc
    except RagError as exc:
        raise HTTPException(status_code=500, detail=f"{exc.kind}: {exc}") from exc

    return [
        {
            "entry_id": item.entry_id,
            "source": item.source,
            "score": round(item.score, 6),
            "text": item.snippet,
        }
        for item in bundle.items
    ]


@app.post("/ask")
def ask(
    pipeline: Annotated[AskPipeline, Depends(get_ask_pipeline)],
    request: AskRequest | None = None,
) -> JSONResponse:
    question = (request.question or "").strip() if request is not None else ""
    if not question:
        return JSONResponse(status_code=400, content={"error": QUESTION_REQUIRED})

    logger.info("received question=%r", question)
    try:
        result = pipeline.run(question, k=request.k)
    except RagError as exc:
        return JSONResponse(status_code=500, content={"error": f"{exc.kind}: {exc}"})
    except Exception:
        logger.exception("ask failed unexpectedly")
        return JSONResponse(status_code=500, content={"error": "Failed to get response from model."})

    return JSONResponse(status_code=200, content={"answer": result.answer})


def run() -> None:
    import uvicorn
    from dotenv import load_dotenv

    load_dotenv()
    uvicorn.run("docqa.main:app", host="0.0.0.0", port=3000, reload=False)


if __name__ == "__main__":
    run()

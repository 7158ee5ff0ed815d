from __future__ import annotations

from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
import logging
from time import perf_counter
from typing import Callable, TypeVar

from docqa.errors import RequestTimeoutError
from docqa.services.rag.generator import AnswerGenerator
from docqa.services.rag.retrieval import RetrievalService
from docqa.services.rag.types import ContextBundle

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STAGE_EXECUTOR = ThreadPoolExecutor(max_workers=16, thread_name_prefix="docqa-stage")


class RequestState(str, Enum):
    RECEIVED = "received"
    EMBEDDING = "embedding"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERRORED = "errored"


_NEXT_STATE = {
    RequestState.RECEIVED: RequestState.EMBEDDING,
    RequestState.EMBEDDING: RequestState.RETRIEVING,
    RequestState.RETRIEVING: RequestState.GENERATING,
    RequestState.GENERATING: RequestState.COMPLETED,
}


class RequestTracker:
    """Per-request state; only moves forward, or to ERRORED."""

    def __init__(self) -> None:
        self.state = RequestState.RECEIVED
        self.trace: list[RequestState] = [RequestState.RECEIVED]
        self.error_kind: str | None = None

    @property
    def finished(self) -> bool:
        return self.state in (RequestState.COMPLETED, RequestState.ERRORED)

    def advance(self, state: RequestState) -> None:
        expected = _NEXT_STATE.get(self.state)
        if state is not expected:
            raise RuntimeError(f"Invalid transition {self.state.value} -> {state.value}")
        self.state = state
        self.trace.append(state)

    def fail(self, error_kind: str) -> None:
        if self.finished:
            raise RuntimeError(f"Request already finished in state {self.state.value}")
        self.state = RequestState.ERRORED
        self.error_kind = error_kind
        self.trace.append(RequestState.ERRORED)


@dataclass(frozen=True)
class AskResult:
    answer: str
    model: str
    bundle: ContextBundle
    trace: tuple[RequestState, ...]


class AskPipeline:
    def __init__(
        self,
        *,
        retrieval: RetrievalService,
        generator: AnswerGenerator,
        timeout_seconds: float,
        clock: Callable[[], float] = perf_counter,
        executor: Executor | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._retrieval = retrieval
        self._generator = generator
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._executor = executor or _STAGE_EXECUTOR

    def run(
        self,
        question: str,
        *,
        k: int | None = None,
        tracker: RequestTracker | None = None,
    ) -> AskResult:
        """Embed, retrieve, then generate, in that order, within one deadline.

        Each stage gets only the time left on the request, both as the timeout
        handed to its provider call and as the longest the pipeline waits for
        it. Errors are re-raised unchanged after the tracker records their
        kind. Nothing computed by an aborted request is kept.
        """
        tracker = tracker or RequestTracker()
        started = self._clock()

        try:
            tracker.advance(RequestState.EMBEDDING)
            query_vector = self._run_stage(
                "embedding",
                started,
                lambda budget: self._retrieval.embed_question(question, timeout=budget),
            )

            tracker.advance(RequestState.RETRIEVING)
            bundle = self._run_stage(
                "retrieval",
                started,
                lambda budget: self._retrieval.bundle(
                    question, self._retrieval.search(query_vector, k=k)
                ),
            )

            tracker.advance(RequestState.GENERATING)
            chat_result = self._run_stage(
                "generation",
                started,
                lambda budget: self._generator.generate(question, bundle, timeout=budget),
            )

            tracker.advance(RequestState.COMPLETED)
        except Exception as exc:
            error_kind = getattr(exc, "kind", type(exc).__name__)
            failed_in = tracker.state.value
            tracker.fail(error_kind)
            logger.warning("ask failed stage=%s kind=%s error=%s", failed_in, error_kind, exc)
            raise

        elapsed_ms = int((self._clock() - started) * 1000)
        logger.info(
            "ask completed hits=%d model=%s duration_ms=%d",
            len(bundle.items),
            chat_result.model,
            elapsed_ms,
        )
        return AskResult(
            answer=chat_result.answer,
            model=chat_result.model,
            bundle=bundle,
            trace=tuple(tracker.trace),
        )

    def _run_stage(self, stage: str, started: float, call: Callable[[float], T]) -> T:
        remaining = self._timeout_seconds - (self._clock() - started)
        if remaining <= 0:
            raise RequestTimeoutError(f"Request exceeded {self._timeout_seconds}s before {stage}")

        future = self._executor.submit(call, remaining)
        try:
            return future.result(timeout=remaining)
        except FutureTimeoutError:
            # The worker finishes on its own; its provider call is capped by the same budget.
            future.cancel()
            raise RequestTimeoutError(
                f"Request exceeded {self._timeout_seconds}s during {stage}"
            ) from None

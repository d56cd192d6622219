"""
FastAPI Backend for the Fusha Tutor learner memory

Provides REST API endpoints with:
- JWT Authentication
- Quota-gated, streamed tutor turns (SSE) with inline protocol decoding
- Lesson lifecycle: fact extraction and reconciliation at lesson end
- Learning reports, quota status and learner facts
- Weekly quota reset entry point for an external scheduler
"""

import os
import sys

# Add the fusha_tutor_memory package to Python path
backend_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(backend_dir)
package_src = os.path.join(project_root, 'fusha_tutor_memory', 'src')
if os.path.exists(package_src) and package_src not in sys.path:
    sys.path.insert(0, package_src)

import json
import signal
import time
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from openai import AsyncOpenAI
from pydantic import BaseModel

from lib.logger import get_logger, level_from_env, setup_logging
from lib.auth import get_current_user, verify_cron_secret
from lib.services import TutorServices, build_services
from lib.supabase_client import create_supabase_client, supabase_configured

from fusha_tutor_memory.errors import NotFound, QuotaExceeded, StoreUnavailable
from fusha_tutor_memory.learner_context import load_learner_facts, load_review_targets
from fusha_tutor_memory.quota_sweep import QuotaSweep
from fusha_tutor_memory.tutor_turn import TutorTurn

load_dotenv()
load_dotenv('../.env')

setup_logging(level=level_from_env(os.getenv("LOG_LEVEL")), use_colors=True)
logger = get_logger("backend.main")

RETRY_MESSAGE = "Temporarily unavailable, please try again"

TUTOR_SYSTEM_PROMPT = """You are a patient tutor of Quranic (Fusha) Arabic.
After grading a learner's answer about a word, append exactly one tag:
[GRAM:<word_id>|<feature>|<student answer>|<correct answer>|correct or incorrect]
[TRANS:<word_id>|<student answer>|<correct answer>|correct or incorrect]
Only use real numeric word ids. These tags are hidden from the learner."""


# ==================== Pydantic Models ====================

class HistoryMessage(BaseModel):
    role: str
    content: str


class ChatMessage(BaseModel):
    content: str
    session_id: str
    lesson_id: Optional[str] = None
    history: List[HistoryMessage] = []


class DecodeRequest(BaseModel):
    session_id: str
    text: str


class LessonStartRequest(BaseModel):
    lesson_id: Optional[str] = None


class LessonEndRequest(BaseModel):
    lesson_id: str


class ReportRequest(BaseModel):
    session_id: str


# ==================== Helper Functions ====================

def get_services(request: Request) -> TutorServices:
    return request.app.state.services


def sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def turn_events(
    turn: TutorTurn,
    chunks: AsyncIterable[str],
    usage: Dict[str, int],
    start_time: Optional[float] = None,
) -> AsyncIterator[str]:
    """
    SSE events for one tutor turn: chunk events, then done or error.

    A client that disconnects does not skip the turn: whatever was decoded
    is still stored and the message is still metered. Only a model or store
    failure leaves the turn unrecorded.
    """
    start_time = start_time or time.time()
    failed = False
    try:
        async for text in turn.stream(chunks):
            yield sse({"type": "chunk", "content": text, "done": False})

        outcome = await turn.complete(usage["tokens"])
        logger.response(200, "/api/chat/stream", duration=time.time() - start_time, data={
            "observations": len(outcome.observations),
            "signals": len(outcome.signals),
            "skipped": len(outcome.skipped),
            "tokens": usage["tokens"],
        })
        yield sse({
            "type": "done",
            "metadata": {
                "session_id": turn.session_id,
                "observations": len(outcome.observations),
                "quota": outcome.usage.to_dict() if outcome.usage else None,
            },
            "done": True,
        })
    except Exception as e:
        failed = True
        logger.error("Error in chat_stream", error=e, data={"session_id": turn.session_id})
        yield sse({"type": "error", "content": "Something went wrong, please try again", "done": True})
    finally:
        if not failed and not turn.completed:
            logger.warning("Client left before the turn finished, recording it", data={
                "session_id": turn.session_id,
            })
            try:
                await turn.complete(usage["tokens"])
            except Exception as e:
                logger.error("Could not record abandoned turn", error=e, data={"session_id": turn.session_id})


async def ensure_session_owner(services: TutorServices, session_id: str, user_id: str) -> None:
    """Raise NotFound when the session belongs to another learner."""
    lesson = await services.lesson_store.get_lesson(session_id)
    if lesson and lesson.user_id:
        owner = lesson.user_id
    else:
        owner = await services.observation_store.find_session_user(session_id)
    if owner is not None and owner != user_id:
        raise NotFound(f"Session {session_id} not found")


def _default_llm_client() -> Optional[AsyncOpenAI]:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        logger.warning("OPENAI_API_KEY not set, chat streaming disabled")
        return None
    return AsyncOpenAI(api_key=api_key)


def _default_supabase_client():
    if not supabase_configured():
        return None
    return create_supabase_client()


def create_app(
    services: Optional[TutorServices] = None,
    llm_client=None,
    supabase_client=None,
    sweep: Optional[QuotaSweep] = None,
) -> FastAPI:
    """
    Build the API.

    Args:
        services: Pre-built components (defaults to Supabase or in-memory stores)
        llm_client: AsyncOpenAI-compatible client for the chat stream
        supabase_client: Client used by the stores and token verification
        sweep: Optional in-process quota sweep started with the app
    """
    if services is None:
        supabase_client = supabase_client or _default_supabase_client()
        services = build_services(supabase_client, matcher_name=os.getenv("FACT_MATCHER"))
        if llm_client is None:
            llm_client = _default_llm_client()
        if sweep is None and os.getenv("QUOTA_SWEEP_ENABLED", "false").lower() == "true":
            sweep = QuotaSweep(
                services.quota_tracker,
                interval_minutes=float(os.getenv("QUOTA_SWEEP_INTERVAL_MINUTES", "60")),
            )

    app = FastAPI(
        title="Fusha Tutor Memory API",
        description="Learner memory, reports and usage quotas for the Fusha tutor",
        version="1.0.0",
    )
    app.state.services = services
    app.state.supabase = supabase_client
    app.state.llm_client = llm_client
    app.state.model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    app.state.sweep = sweep

    # CORS middleware for Next.js frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:3001",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==================== Error Mapping ====================

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(QuotaExceeded)
    async def quota_exceeded_handler(request: Request, exc: QuotaExceeded):
        logger.info(f"Quota exceeded on {request.url.path}", data=exc.check.to_dict())
        return JSONResponse(status_code=429, content=exc.check.to_dict())

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.error(f"Store unavailable on {request.url.path}", error=exc)
        return JSONResponse(status_code=503, content={"detail": RETRY_MESSAGE})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}", error=exc)
        return JSONResponse(status_code=500, content={"detail": "Something went wrong, please try again"})

    # ==================== API Endpoints ====================

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "Fusha Tutor Memory API",
            "version": "1.0.0",
            "store": "supabase" if app.state.supabase is not None else "memory",
            "chat_available": app.state.llm_client is not None,
        }

    @app.post("/api/chat/stream")
    async def chat_stream(
        message: ChatMessage,
        user: dict = Depends(get_current_user),
        services: TutorServices = Depends(get_services),
    ):
        """
        Stream one tutor turn over SSE.

        The quota gate runs before streaming starts, so a blocked user gets a
        429 with the reset date. Protocol tags never reach the client.
        """
        llm = app.state.llm_client
        if llm is None:
            raise HTTPException(status_code=503, detail="Tutor model not configured")

        turn = TutorTurn(
            services.quota_tracker,
            services.observation_store,
            session_id=message.session_id,
            user_id=user["id"],
            lesson_id=message.lesson_id,
            clock=services.clock,
        )
        await turn.begin()

        start_time = time.time()
        logger.request("POST", "/api/chat/stream", user_id=user["id"], data={
            "session_id": message.session_id,
            "message_length": len(message.content),
        })

        messages = [{"role": "system", "content": TUTOR_SYSTEM_PROMPT}]
        messages += [{"role": m.role, "content": m.content} for m in message.history]
        messages.append({"role": "user", "content": message.content})

        usage = {"tokens": 0}

        async def model_chunks():
            stream = await llm.chat.completions.create(
                model=app.state.model,
                messages=messages,
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage["tokens"] = chunk.usage.total_tokens
                if chunk.choices:
                    delta = chunk.choices[0].delta
                    if delta and delta.content:
                        yield delta.content

        return StreamingResponse(
            turn_events(turn, model_chunks(), usage, start_time=start_time),
            media_type="text/event-stream",
        )

    @app.post("/api/observations/decode")
    async def decode_observations(
        request: DecodeRequest,
        user: dict = Depends(get_current_user),
        services: TutorServices = Depends(get_services),
    ):
        """Decode a finished assistant message and store what it graded."""
        result = services.decoder.decode_text(
            request.text,
            session_id=request.session_id,
            user_id=user["id"],
            now=services.clock(),
        )
        stored = await services.observation_store.append(result.observations)
        signals = await services.observation_store.append_signals(result.signals)
        return {
            "cleanedText": result.cleaned_text,
            "observationsStored": stored,
            "signalsStored": signals,
            "skipped": len(result.skipped),
        }

    @app.post("/api/lessons/start")
    async def start_lesson(
        request: LessonStartRequest,
        user: dict = Depends(get_current_user),
        services: TutorServices = Depends(get_services),
    ):
        lesson = await services.lesson_store.start_lesson(user["id"], services.clock(), lesson_id=request.lesson_id)
        return {"lessonId": lesson.id, "startedAt": lesson.started_at.isoformat()}

    @app.post("/api/lessons/end")
    async def end_lesson(
        request: LessonEndRequest,
        user: dict = Depends(get_current_user),
        services: TutorServices = Depends(get_services),
    ):
        """Extract facts from the lesson, reconcile the learner's facts and close it."""
        logger.section("LESSON END", {"lesson_id": request.lesson_id})
        lesson = await services.lesson_store.get_lesson(request.lesson_id)
        if lesson is None or (lesson.user_id and lesson.user_id != user["id"]):
            raise NotFound(f"Lesson {request.lesson_id} not found")

        analysis = await services.extractor.extract_facts(request.lesson_id, user["id"])
        deactivated = await services.reconciler.reconcile(analysis.user_id)
        await services.lesson_store.end_lesson(request.lesson_id, services.clock())
        logger.success("Lesson closed", data={
            "facts": len(analysis.extracted_facts),
            "deactivated": len(deactivated),
            "summary": analysis.performance_summary,
        })
        return {
            "analysis": analysis.to_dict(),
            "deactivatedFacts": [fact.to_dict() for fact in deactivated],
        }

    @app.post("/api/report")
    async def lesson_report(
        request: ReportRequest,
        user: dict = Depends(get_current_user),
        services: TutorServices = Depends(get_services),
    ):
        await ensure_session_owner(services, request.session_id, user["id"])
        report = await services.reports.generate(request.session_id)
        return report.to_dict()

    @app.get("/api/quota")
    async def quota_status(
        user: dict = Depends(get_current_user),
        services: TutorServices = Depends(get_services),
    ):
        check = await services.quota_tracker.can_send(user["id"])
        info = await services.quota_tracker.get_quota_info(user["id"])
        return {**info.to_dict(), **check.to_dict()}

    @app.get("/api/learner/facts")
    async def learner_facts(
        user: dict = Depends(get_current_user),
        services: TutorServices = Depends(get_services),
    ):
        facts = await load_learner_facts(services.fact_store, user["id"])
        return facts.to_dict()

    @app.get("/api/learner/review")
    async def learner_review(
        user: dict = Depends(get_current_user),
        services: TutorServices = Depends(get_services),
    ):
        """Words the learner has missed, for drill targeting."""
        targets = await load_review_targets(services.observation_store, user["id"])
        return targets.to_dict()

    @app.post("/api/cron/reset-quotas", dependencies=[Depends(verify_cron_secret)])
    async def reset_quotas(services: TutorServices = Depends(get_services)):
        """Weekly reset entry point for an external scheduler."""
        count = await services.quota_tracker.reset_expired()
        return {"success": True, "profilesReset": count}

    @app.on_event("startup")
    async def startup_event():
        """Startup event - start the quota sweep if configured."""
        if app.state.sweep:
            await app.state.sweep.start()
            logger.success("Quota sweep started")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Shutdown event - stop the quota sweep."""
        if app.state.sweep:
            await app.state.sweep.stop()
            logger.info("🛑 Quota sweep stopped")

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    def handle_exit(*args):
        """Handle graceful shutdown."""
        logger.section("SERVER SHUTDOWN", {"reason": "signal received"})
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    try:
        uvicorn.run(app, host="0.0.0.0", port=8000)
    except KeyboardInterrupt:
        logger.info("🛑 Server stopped.")
        sys.exit(0)

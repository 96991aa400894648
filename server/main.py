from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Literal, Optional, Union

from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from rpslab import EngineConfig, EngineContext, GameBrain, InvalidMoveError, configure_logging
from rpslab.utils import move_name

logger = logging.getLogger(__name__)

Move = Union[int, str]


class PredictReq(BaseModel):
    profile_id: str
    difficulty: Literal["fair", "normal", "ruthless"] = "normal"


class PredictRes(BaseModel):
    ai_move: int
    ai_move_name: str
    policy: str
    meta: Dict[str, Any]


class FeedbackReq(BaseModel):
    profile_id: str
    user_move: Move
    ai_move: Optional[Move] = None
    match_id: Optional[str] = None
    mode: Literal["challenge", "practice"] = "practice"
    best_of: Literal[3, 5, 7] = 5
    round_number: Optional[int] = None


class ForkReq(BaseModel):
    new_profile_id: str
    carry_over: bool


async def _flush_loop(context: EngineContext, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            # storage writes block, keep them off the event loop
            await run_in_threadpool(context.model_store.flush_if_due)
        except Exception:
            logger.exception("periodic model flush failed")


def create_app(context: Optional[EngineContext] = None, random_seed: Optional[int] = None) -> FastAPI:
    """Build the API around an engine context; one is made from the environment if not given."""
    config = context.config if context is not None else EngineConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context if context is not None else EngineContext(config)
        app.state.context = ctx
        app.state.brain = GameBrain(ctx, random_seed=random_seed)
        task = asyncio.create_task(_flush_loop(ctx, max(0.05, config.flush_interval)))
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            await run_in_threadpool(ctx.close)
            logger.info("model buffer flushed on shutdown")

    app = FastAPI(title="rpslab API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InvalidMoveError)
    async def invalid_move(request: Request, exc: InvalidMoveError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.post("/predict", response_model=PredictRes)
    def predict(req: PredictReq, request: Request):
        ai_move, meta = request.app.state.brain.predict(req.profile_id, req.difficulty)
        return PredictRes(ai_move=ai_move, ai_move_name=move_name(ai_move), policy=meta["policy"], meta=meta)

    @app.post("/feedback")
    def feedback(req: FeedbackReq, request: Request):
        round_log = request.app.state.brain.feedback(
            req.profile_id,
            req.user_move,
            ai_move=req.ai_move,
            match_id=req.match_id,
            mode=req.mode,
            best_of=req.best_of,
            round_number=req.round_number,
        )
        return round_log.to_dict()

    @app.post("/save")
    def save(request: Request):
        written = request.app.state.brain.save()
        return {"ok": True, "written": written}

    @app.post("/profiles/{profile_id}/fork")
    def fork(profile_id: str, req: ForkReq, request: Request):
        record = request.app.state.brain.fork(profile_id, req.new_profile_id, carry_over=req.carry_over)
        return record.to_dict()

    @app.post("/profiles/{profile_id}/reset")
    def reset(profile_id: str, request: Request):
        return request.app.state.brain.reset(profile_id).to_dict()

    @app.get("/profiles/{profile_id}/insights")
    def insights(profile_id: str, request: Request, scope: Literal["session", "history"] = Query("session")):
        return request.app.state.brain.insights(profile_id, scope)

    @app.get("/")
    def root():
        return {"ok": True, "service": "rpslab backend"}

    @app.get("/healthz")
    def healthz():
        return {"status": "healthy"}

    return app


def _default_app() -> FastAPI:
    config = EngineConfig.from_env()
    configure_logging(config.log_level)
    return create_app()


app = _default_app()


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run("server.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum

from .domain import (
    AddGraderRequest,
    CreateEventRequest,
    CreateEventResponse,
    Event,
    EventReport,
    Judge,
    OverallTallyReport,
    RoundProgress,
    RoundReport,
    RoundTallyReport,
    Scorer,
    StartRoundRequest,
    SubmitRoundRequest,
    SubmitScoresRequest,
)
from .errors import (
    DerivationCycleError,
    EventBusyError,
    NotFoundError,
    ScoringModeError,
    SubmissionTooLargeError,
    UnknownCriterionError,
)
from .reports import event_report, round_progress, round_report
from .store import Store, build_store
from .tally import build_engine

logger = logging.getLogger(__name__)


def _load_dotenv(repo_root: Path) -> None:
    env_path = repo_root / "config" / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)


def create_app(store: Store | None = None) -> FastAPI:
    repo_root = Path(__file__).resolve().parents[3]
    _load_dotenv(repo_root)
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Tally")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    engine = build_engine(store if store is not None else build_store())

    @app.exception_handler(NotFoundError)
    def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(UnknownCriterionError)
    @app.exception_handler(ScoringModeError)
    @app.exception_handler(SubmissionTooLargeError)
    def _unprocessable(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(DerivationCycleError)
    def _cycle(request: Request, exc: DerivationCycleError):
        logger.error("recomputation aborted: %s", exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(EventBusyError)
    def _busy(request: Request, exc: EventBusyError):
        logger.warning("%s", exc)
        return JSONResponse(status_code=503, content={"detail": str(exc)}, headers={"Retry-After": "1"})

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post("/api/events", response_model=CreateEventResponse)
    def create_event(req: CreateEventRequest):
        event = engine.store.create_event(req)
        logger.info("created event %s (%s, %d round(s))", event.id, event.event_type, len(event.rounds))
        return CreateEventResponse(event_id=event.id)

    @app.get("/api/events/{event_id}", response_model=Event)
    def get_event(event_id: str):
        event = engine.store.get_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="event not found")
        return event

    @app.post("/api/events/{event_id}/judges", response_model=Judge)
    def add_judge(event_id: str, req: AddGraderRequest):
        engine.require_event(event_id)
        try:
            return engine.store.add_judge(event_id, req.name)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.post("/api/events/{event_id}/scorers", response_model=Scorer)
    def add_scorer(event_id: str, req: AddGraderRequest):
        engine.require_event(event_id)
        try:
            return engine.store.add_scorer(event_id, req.name)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.put(
        "/api/events/{event_id}/rounds/{round_id}/judges/{judge_id}/scores",
        response_model=RoundTallyReport,
    )
    def put_judge_scores(event_id: str, round_id: str, judge_id: str, req: SubmitScoresRequest):
        return engine.submit_judge_scores(
            event_id, judge_id, round_id, req.contestant_code, req.scores
        )

    @app.put(
        "/api/events/{event_id}/rounds/{round_id}/judges/{judge_id}/submissions",
        response_model=RoundTallyReport,
    )
    def put_judge_round(event_id: str, round_id: str, judge_id: str, req: SubmitRoundRequest):
        return engine.submit_judge_round(event_id, judge_id, round_id, req.submissions)

    @app.put(
        "/api/events/{event_id}/rounds/{round_id}/scorers/{scorer_id}/scores",
        response_model=RoundTallyReport,
    )
    def put_scorer_scores(event_id: str, round_id: str, scorer_id: str, req: SubmitScoresRequest):
        return engine.submit_scorer_scores(
            event_id, scorer_id, round_id, req.contestant_code, req.scores
        )

    @app.put("/api/events/{event_id}/rounds/{round_id}/start", response_model=Event)
    def start_round(event_id: str, round_id: str, req: StartRoundRequest):
        return engine.start_round(event_id, round_id, req.contestant_codes)

    @app.post("/api/events/{event_id}/rounds/{round_id}/tally", response_model=RoundTallyReport)
    def recompute_round(event_id: str, round_id: str):
        return engine.recompute(event_id, round_id)

    @app.post("/api/events/{event_id}/tally", response_model=OverallTallyReport)
    def recompute_overall(event_id: str):
        return engine.compute_overall_tally(event_id)

    @app.get("/api/events/{event_id}/rounds/{round_id}/report", response_model=RoundReport)
    def get_round_report(event_id: str, round_id: str):
        return round_report(engine, event_id, round_id)

    @app.get("/api/events/{event_id}/rounds/{round_id}/progress", response_model=RoundProgress)
    def get_round_progress(event_id: str, round_id: str):
        return round_progress(engine, event_id, round_id)

    @app.get("/api/events/{event_id}/report", response_model=EventReport)
    def get_event_report(event_id: str):
        return event_report(engine, event_id)

    return app


app = create_app()
handler = Mangum(app)

"""
TerraEd Quest Verification — API Gateway
FastAPI server exposing the QuestVerificationEngine to the dashboard and the
teacher review console.

Routes:
  - POST /api/v1/quests                       publish a quest (content collaborator)
  - POST /api/v1/users                        register a ledger account (roster collaborator)
  - POST /api/v1/submissions                  submit proof → verified submission
  - GET  /api/v1/submissions                  list by status (review queue)
  - GET  /api/v1/submissions/{id}             submission record
  - GET  /api/v1/submissions/{id}/report      verification report (202 while pending)
  - POST /api/v1/submissions/{id}/review      manual reviewer decision
  - GET  /api/v1/wallet/{user_id}             transactions + counters
  - POST /api/v1/wallet/{user_id}/redeem      voucher redemption
  - POST /api/v1/wallet/{user_id}/bonus       bonus award
  - GET  /api/v1/leaderboard                  ranked projection
"""

import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel, Field, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from engine.errors import (
    ExpiredQuestError,
    InsufficientPointsError,
    IntegrityEngineError,
    InvalidTransitionError,
    NotFoundError,
    UnsupportedProofError,
)
from engine.models import (
    Difficulty,
    GPSCoordinate,
    ProofKind,
    Quest,
    QuestCategory,
    ReviewDecision,
    SubmissionStatus,
)
from engine.quest_engine import QuestVerificationEngine

load_dotenv()

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(level=logging.INFO)
log = logging.getLogger("terra.api")

DEFAULT_API_KEY = "terra-dev-key-change-in-prod"
ENGINE_API_KEY  = os.getenv("ENGINE_API_KEY", DEFAULT_API_KEY)
API_KEY_HEADER  = APIKeyHeader(name="X-Terra-Engine-Key", auto_error=True)

# ─── Rate Limiter ─────────────────────────────────────────────────────────────
RATE_LIMIT_SUBMIT = os.getenv("RATE_LIMIT_SUBMIT", "10/minute")
limiter = Limiter(key_func=get_remote_address)

engine = QuestVerificationEngine()

app = FastAPI(
    title="TerraEd — Quest Verification API",
    description="Proof verification, anti-fraud triage and points ledger for environmental quests",
    version=QuestVerificationEngine.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.on_event("startup")
async def _startup_validation():
    if ENGINE_API_KEY == DEFAULT_API_KEY:
        log.critical(
            f"\n{'='*70}\n⚠️  SECURITY WARNING: DEFAULT API KEY IN USE ('{DEFAULT_API_KEY}'). "
            f"Set ENGINE_API_KEY in .env before going to production.\n{'='*70}"
        )
    else:
        log.info("✅ Startup validation passed. API key is configured.")


@app.on_event("shutdown")
async def _shutdown():
    engine.close()


# ─── CORS ─────────────────────────────────────────────────────────────────────
_raw_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
ALLOWED_ORIGINS: List[str] = [o.strip() for o in _raw_origins.split(",") if o.strip()]
log.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ─── Auth ─────────────────────────────────────────────────────────────────────
async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    if api_key != ENGINE_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid engine API key",
        )
    return api_key


# ─── Error mapping ────────────────────────────────────────────────────────────
def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ExpiredQuestError):
        return HTTPException(status_code=410, detail=str(e))
    if isinstance(e, (InvalidTransitionError, InsufficientPointsError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (UnsupportedProofError, ValueError)):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, PermissionError):
        return HTTPException(status_code=403, detail=str(e))
    log.error(f"Engine failure: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


# ─── Request Models ───────────────────────────────────────────────────────────
class GPSInput(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def to_internal(self) -> GPSCoordinate:
        return GPSCoordinate(latitude=self.lat, longitude=self.lng)


class QuestRequest(BaseModel):
    id:                str
    title:             str
    points:            int = Field(..., gt=0)
    expiry:            datetime
    category:          QuestCategory
    difficulty:        Difficulty        = Difficulty.EASY
    proof_types:       List[ProofKind]   = Field(default_factory=lambda: [ProofKind.PHOTO])
    summary:           str               = ""
    instructions:      str               = ""
    location_hint:     Optional[GPSInput] = None
    location_label:    str               = ""
    location_radius_m: Optional[float]   = Field(default=None, gt=0)
    expected_labels:   List[str]         = Field(default_factory=list)
    safety_notes:      str               = ""
    estimated_time:    int               = 0
    created_by:        str               = ""

    @field_validator("expiry")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)


class UserRequest(BaseModel):
    user_id: str
    name:    str           = ""
    avatar:  Optional[str] = None


class SubmitProofRequest(BaseModel):
    user_id:    str
    quest_id:   str
    media_ref:  Optional[str]       = Field(default=None, description="Image or video URL")
    caption:    str                 = ""
    gps:        Optional[GPSInput]  = None
    proof_kind: Optional[ProofKind] = None


class ReviewRequest(BaseModel):
    decision:    ReviewDecision
    reviewer_id: str
    notes:       str = ""


class RedeemRequest(BaseModel):
    amount:       int = Field(..., gt=0)
    voucher_code: str
    description:  str = ""


class BonusRequest(BaseModel):
    amount:      int = Field(..., gt=0)
    description: str
    quest_id:    Optional[str] = None


# ─── Routes ───────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {
        "status":    "operational",
        "version":   QuestVerificationEngine.VERSION,
        "timestamp": int(time.time()),
    }


@app.post("/api/v1/quests", summary="Publish Quest")
def publish_quest(body: QuestRequest, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    quest = Quest(
        id                = body.id,
        title             = body.title,
        points            = body.points,
        expiry            = body.expiry,
        category          = body.category,
        difficulty        = body.difficulty,
        proof_types       = tuple(body.proof_types),
        summary           = body.summary,
        instructions      = body.instructions,
        location_hint     = body.location_hint.to_internal() if body.location_hint else None,
        location_label    = body.location_label,
        location_radius_m = body.location_radius_m,
        expected_labels   = tuple(body.expected_labels),
        safety_notes      = body.safety_notes,
        estimated_time    = body.estimated_time,
        created_by        = body.created_by,
    )
    try:
        engine.publish_quest(quest)
    except (ValueError, PermissionError) as e:
        raise _http_error(e)
    return {"id": quest.id, "points": quest.points, "expiry": quest.expiry.isoformat()}


@app.post("/api/v1/users", summary="Register Ledger Account")
def register_user(body: UserRequest, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    account = engine.register_user(body.user_id, body.name, body.avatar)
    return {"user_id": account.user_id, "name": account.name, "points": account.points}


@app.post("/api/v1/submissions", summary="Submit Quest Proof")
@limiter.limit(RATE_LIMIT_SUBMIT)
def submit_proof(
    request: Request,                          # required by slowapi
    body:    SubmitProofRequest,
    api_key: str = Security(verify_api_key),
) -> Dict[str, Any]:
    t_start = time.perf_counter()
    try:
        submission = engine.submit_proof(
            user_id    = body.user_id,
            quest_id   = body.quest_id,
            media_ref  = body.media_ref,
            caption    = body.caption,
            gps        = body.gps.to_internal() if body.gps else None,
            proof_kind = body.proof_kind,
        )
    except (IntegrityEngineError, ValueError) as e:
        raise _http_error(e)

    processing_ms = round((time.perf_counter() - t_start) * 1000, 2)
    log.info(f"[SUBMIT] {submission.id} → {submission.status.value} in {processing_ms}ms")
    return {**submission.to_dict(), "processing_time_ms": processing_ms}


@app.get("/api/v1/submissions", summary="List Submissions by Status")
def list_submissions(
    status_filter: SubmissionStatus = Query(SubmissionStatus.REVIEW, alias="status"),
    api_key:       str = Security(verify_api_key),
) -> Dict[str, Any]:
    items = [s.to_dict() for s in engine.submissions.by_status(status_filter)]
    return {"count": len(items), "items": items}


@app.get("/api/v1/users/{user_id}/submissions", summary="User Submission History")
def user_submissions(user_id: str, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    try:
        engine.ledger.store.get_account(user_id)
    except NotFoundError as e:
        raise _http_error(e)
    items = [s.to_dict() for s in engine.submissions.for_user(user_id)]
    return {"count": len(items), "items": items}


@app.get("/api/v1/submissions/{submission_id}", summary="Get Submission")
def get_submission(submission_id: str, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    try:
        return engine.get_submission(submission_id).to_dict()
    except NotFoundError as e:
        raise _http_error(e)


@app.get("/api/v1/submissions/{submission_id}/report", summary="Get Verification Report")
def get_report(submission_id: str, api_key: str = Security(verify_api_key)):
    try:
        report = engine.get_verification_report(submission_id)
    except NotFoundError as e:
        raise _http_error(e)
    if report is None:
        return JSONResponse(status_code=202, content={"status": "pending"})
    return report.to_dict()


@app.post("/api/v1/submissions/{submission_id}/review", summary="Resolve Manual Review")
def resolve_review(
    submission_id: str,
    body:          ReviewRequest,
    api_key:       str = Security(verify_api_key),
) -> Dict[str, Any]:
    try:
        submission = engine.resolve_review(submission_id, body.decision, body.reviewer_id, body.notes)
    except IntegrityEngineError as e:
        raise _http_error(e)
    return submission.to_dict()


@app.get("/api/v1/wallet/{user_id}", summary="Get Wallet")
def get_wallet(user_id: str, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    try:
        return engine.get_wallet(user_id).to_dict()
    except NotFoundError as e:
        raise _http_error(e)


@app.post("/api/v1/wallet/{user_id}/redeem", summary="Redeem Voucher")
def redeem(user_id: str, body: RedeemRequest, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    try:
        txn = engine.record_redemption(user_id, body.amount, body.voucher_code, body.description)
    except (IntegrityEngineError, ValueError) as e:
        raise _http_error(e)
    return txn.to_dict()


@app.post("/api/v1/wallet/{user_id}/bonus", summary="Award Bonus Points")
def bonus(user_id: str, body: BonusRequest, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    try:
        txn = engine.record_bonus(user_id, body.amount, body.description, body.quest_id)
    except (IntegrityEngineError, ValueError) as e:
        raise _http_error(e)
    return txn.to_dict()


@app.get("/api/v1/leaderboard", summary="Leaderboard")
def leaderboard(
    limit:   int = Query(10, ge=1, le=500),
    api_key: str = Security(verify_api_key),
) -> Dict[str, Any]:
    entries = engine.get_leaderboard(limit)
    return {"count": len(entries), "items": [e.to_dict() for e in entries]}


@app.get("/api/v1/engine/info", summary="Engine Configuration")
def engine_info(_: str = Depends(verify_api_key)) -> Dict[str, Any]:
    orchestrator = engine.orchestrator
    return {
        "version":                QuestVerificationEngine.VERSION,
        "duplicate_index":        type(engine.index).__name__,
        "duplicate_scope":        engine.index.policy,
        "phash_threshold":        engine.index.tolerance,
        "auto_pass_confidence":   orchestrator.pass_threshold,
        "auto_reject_confidence": orchestrator.reject_threshold,
        "check_timeout_sec":      orchestrator.check_timeout,
        "rate_limit":             RATE_LIMIT_SUBMIT,
        "allowed_origins":        ALLOWED_ORIGINS,
        "integrity_layers":       [c.name for c in orchestrator.checkers],
    }

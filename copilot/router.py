"""
Copilot API Router
==================

FastAPI endpoints for the copilot orchestrator. The orchestrator instance is
created by the application lifespan and read from `app.state`.
"""

from contextlib import contextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from copilot.crypto import mask_secret
from copilot.errors import IntegrityError, KeyStoreError, ValidationError
from copilot.orchestrator import Orchestrator
from copilot.schemas import (
    ActionItemRecord,
    ActionItemRequest,
    HealthResponse,
    IntegrationData,
    PartialTranscriptResponse,
    ProfileData,
    StartSessionRequest,
    StartSessionResponse,
    StopSessionResponse,
    SuggestionRequest,
    SuggestionResult,
)


router = APIRouter(tags=["copilot"])


# ==============================================================================
# Request/Response Models
# ==============================================================================

class AudioResponseBody(BaseModel):
    samples_buffered: int
    transcription_state: str


class IntegrationView(BaseModel):
    provider: str
    access_token: Optional[str] = None
    has_refresh_token: bool = False
    scopes: Optional[List[str]] = None


class StatusResponseBody(BaseModel):
    status: str


# ==============================================================================
# Helper Functions
# ==============================================================================

def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Copilot is not initialized")
    return orchestrator


@contextmanager
def domain_errors():
    """Translate domain exceptions into HTTP errors."""
    try:
        yield
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except IntegrityError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except KeyStoreError as e:
        raise HTTPException(status_code=503, detail=f"Key store unavailable: {e}")
    except SQLAlchemyError:
        raise HTTPException(status_code=503, detail="Storage unavailable")


# ==============================================================================
# Endpoints
# ==============================================================================

@router.post("/sessions/start", response_model=StartSessionResponse)
async def start_session(body: StartSessionRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """
    Start a session and its transcription.
    Check `transcription_state`: a failed transcriber start reports `disabled`.
    """
    with domain_errors():
        return await orchestrator.start_session(body)


@router.post("/sessions/stop", response_model=StopSessionResponse)
async def stop_session(orchestrator: Orchestrator = Depends(get_orchestrator)):
    with domain_errors():
        return await orchestrator.stop_session()


@router.post("/suggestions", response_model=SuggestionResult)
async def get_suggestions(body: SuggestionRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Always returns a suggestion list; `source` tells whether it came from a provider, cache or fallback."""
    return await orchestrator.get_suggestions(body.context, body.pipeline, body.session_id)


@router.post("/suggestions/{suggestion_id}/accept", response_model=StatusResponseBody)
async def accept_suggestion(suggestion_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)):
    with domain_errors():
        if not orchestrator.accept_suggestion(suggestion_id):
            raise HTTPException(status_code=404, detail="Suggestion not found")
    return StatusResponseBody(status="accepted")


@router.post("/sessions/action-items", response_model=ActionItemRecord)
async def add_action_item(body: ActionItemRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    with domain_errors():
        return orchestrator.add_action_item(body)


@router.get("/transcript/partial", response_model=PartialTranscriptResponse)
async def get_partial_transcript(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.get_partial_transcript()


@router.post("/audio", response_model=AudioResponseBody)
async def push_audio(request: Request, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Raw body: PCM16 little-endian mono at 16 kHz."""
    payload = await request.body()
    with domain_errors():
        buffered = orchestrator.feed_audio(payload)
    return AudioResponseBody(
        samples_buffered=buffered,
        transcription_state=orchestrator.transcription.state.value,
    )


@router.get("/profile", response_model=ProfileData)
async def get_profile(orchestrator: Orchestrator = Depends(get_orchestrator)):
    with domain_errors():
        profile = orchestrator.get_profile()
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not set")
    return profile


@router.put("/profile", response_model=StatusResponseBody)
async def save_profile(body: ProfileData, orchestrator: Orchestrator = Depends(get_orchestrator)):
    with domain_errors():
        orchestrator.save_profile(body)
    return StatusResponseBody(status="saved")


@router.put("/integrations/{provider}", response_model=StatusResponseBody)
async def save_integration(provider: str, body: IntegrationData, orchestrator: Orchestrator = Depends(get_orchestrator)):
    if body.provider != provider:
        raise HTTPException(status_code=422, detail="Provider in path and body must match")
    with domain_errors():
        orchestrator.save_integration(body)
    return StatusResponseBody(status="saved")


@router.get("/integrations/{provider}", response_model=IntegrationView)
async def get_integration(provider: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Tokens are never returned in full."""
    with domain_errors():
        integration = orchestrator.get_integration(provider)
    if integration is None:
        raise HTTPException(status_code=404, detail="Integration not configured")
    return IntegrationView(
        provider=integration.provider,
        access_token=mask_secret(integration.access_token) if integration.access_token else None,
        has_refresh_token=bool(integration.refresh_token),
        scopes=integration.scopes,
    )


@router.delete("/data", response_model=StatusResponseBody)
async def wipe_all_data(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Erase every stored record and destroy the encryption key."""
    with domain_errors():
        await orchestrator.wipe_all_data()
    return StatusResponseBody(status="wiped")


@router.get("/health", response_model=HealthResponse)
async def health(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.health()

"""
FastAPI application for the school voting service.

Voters read the election, start a session and cast one vote; administrators
edit election settings and candidates. Duplicate votes are rejected by the
vote guard and, authoritatively, by the UNIQUE fingerprint constraint.
"""
import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from shared import ChangeType, Table, create_change_event
from .aggregator import ElectionStateAggregator
from .auth import AuthError, auth_client, resolve_admin
from .config import settings
from .database import CandidateNumberConflictError, ReferenceNotFoundError, database
from .fingerprint import ClientSignals
from .ip_resolver import NetworkIdentityResolver
from .models import (
    CandidateRequest,
    CandidateResponse,
    ErrorResponse,
    HealthResponse,
    ResultsResponse,
    SchoolResponse,
    SchoolUpdateRequest,
    SessionRequest,
    SessionResponse,
    VoteRequest,
    VoteResponse,
)
from .publisher import publisher
from .session_store import session_store
from .subscriptions import ChangeFeed
from .vote_guard import VoteOutcome, VoteSubmissionGuard

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

OUTCOME_STATUS = {
    VoteOutcome.ACCEPTED: status.HTTP_201_CREATED,
    VoteOutcome.ALREADY_VOTED: status.HTTP_409_CONFLICT,
    VoteOutcome.SCHOOL_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    VoteOutcome.VOTING_CLOSED: status.HTTP_403_FORBIDDEN,
    VoteOutcome.REFERENCE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    VoteOutcome.STORE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

resolver = NetworkIdentityResolver()
aggregator = ElectionStateAggregator(database)
guard = VoteSubmissionGuard(database, resolver, aggregator, publisher)

limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger.info(f"Starting {settings.SERVICE_NAME} service...")

    async with AsyncExitStack() as stack:
        try:
            await database.initialize()
            stack.push_async_callback(database.close)

            await session_store.initialize()
            stack.push_async_callback(session_store.close)

            await publisher.initialize()
            stack.push_async_callback(publisher.close)

            await aggregator.load()

            feed = await stack.enter_async_context(ChangeFeed())
            for table in Table:
                await stack.enter_async_context(
                    feed.subscribe(table, aggregator.handle_change)
                )

            logger.info(f"{settings.SERVICE_NAME} started successfully")

        except Exception as e:
            logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
            raise

        yield

        logger.info(f"Shutting down {settings.SERVICE_NAME} service...")

    logger.info(f"{settings.SERVICE_NAME} shut down successfully")


app = FastAPI(
    title="School Voting API",
    description="One vote per voter for a single-school election",
    version=settings.API_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Middleware to track request duration."""
    started = time.perf_counter()
    response = await call_next(request)

    route = request.scope.get("route")
    request_duration.labels(
        method=request.method,
        endpoint=getattr(route, "path", request.url.path),
        status=response.status_code
    ).observe(time.perf_counter() - started)

    return response


async def require_admin(authorization: Optional[str] = Header(default=None)) -> Dict:
    """Dependency resolving the caller to an admin record."""
    try:
        admin = await resolve_admin(auth_client, database, authorization)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    if admin is None:
        if not authorization:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required"
            )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required"
        )
    return admin


def _loaded_school() -> Dict:
    if not aggregator.school:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="School data not found"
        )
    return aggregator.school


# ═══════════════════════════════════════════════════════════════════
# VOTER ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@app.get(
    f"/api/{settings.API_VERSION}/school",
    response_model=SchoolResponse,
    responses={404: {"model": ErrorResponse, "description": "No school configured"}}
)
async def get_school() -> SchoolResponse:
    """Get the school and its election settings."""
    return SchoolResponse(**_loaded_school())


@app.get(
    f"/api/{settings.API_VERSION}/candidates",
    response_model=list[CandidateResponse]
)
async def get_candidates() -> list[CandidateResponse]:
    """Get candidates ordered by candidate number."""
    return [CandidateResponse(**candidate) for candidate in aggregator.candidates]


@app.get(
    f"/api/{settings.API_VERSION}/results",
    response_model=ResultsResponse
)
async def get_results() -> ResultsResponse:
    """
    Get the current tally.

    Returns vote counts and whole percentages for every candidate.
    """
    return ResultsResponse(**aggregator.results())


@app.post(
    f"/api/{settings.API_VERSION}/session",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED
)
async def start_session(request: Request, payload: SessionRequest) -> SessionResponse:
    """
    Start a voter session.

    The has_voted flag is initialized from whether a vote with this
    browser's fingerprint already exists.
    """
    try:
        session = await guard.start_session(ClientSignals.from_request(request.headers, payload))
        await session_store.save(session)
        return SessionResponse(session_id=session.session_id, has_voted=session.has_voted)
    except Exception as e:
        logger.error(f"Error starting session: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )


@app.get(
    f"/api/{settings.API_VERSION}/session/{{session_id}}",
    response_model=SessionResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown or expired session"}}
)
async def get_session(session_id: str) -> SessionResponse:
    """Get the voted state of a session."""
    try:
        session = await session_store.get(session_id)
    except Exception as e:
        logger.error(f"Error loading session: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return SessionResponse(session_id=session.session_id, has_voted=session.has_voted)


@app.post(
    f"/api/{settings.API_VERSION}/vote",
    response_model=VoteResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        403: {"model": VoteResponse, "description": "Voting period is closed"},
        404: {"model": VoteResponse, "description": "School, candidate not found"},
        409: {"model": VoteResponse, "description": "Already voted"},
        429: {"description": "Rate limit exceeded"},
        500: {"model": VoteResponse, "description": "Store error"}
    }
)
@limiter.limit(settings.RATE_LIMIT)
async def submit_vote(request: Request, vote: VoteRequest):
    """
    Submit a vote for a candidate.

    - **session_id**: Session from POST /session
    - **candidate_id**: Candidate being voted for
    - **render_signature**, **screen_width**, **screen_height**,
      **timezone_offset**: browser signals for fingerprinting

    At most one vote is recorded per fingerprint.
    """
    signals = ClientSignals.from_request(request.headers, vote)

    try:
        session = await session_store.get(vote.session_id)
        if session is None:
            session = await guard.start_session(signals)
            session.session_id = vote.session_id

        result = await guard.submit_vote(session, vote.candidate_id, signals)

    except Exception as e:
        logger.error(f"Error submitting vote: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    # The vote row is authoritative; a stale session is corrected on the next attempt.
    try:
        await session_store.save(session)
    except Exception as e:
        logger.error(f"Error saving session {session.session_id}: {e}")

    response = VoteResponse(
        success=result.success,
        status=result.outcome.value,
        message=result.message,
        vote_id=result.vote.get("id") if result.vote else None,
        has_voted=session.has_voted
    )
    return JSONResponse(
        status_code=OUTCOME_STATUS[result.outcome],
        content=response.model_dump(mode="json")
    )


# ═══════════════════════════════════════════════════════════════════
# ADMIN ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

@app.put(
    f"/api/{settings.API_VERSION}/admin/school",
    response_model=SchoolResponse
)
async def update_school(payload: SchoolUpdateRequest, admin: Dict = Depends(require_admin)) -> SchoolResponse:
    """Update school name, logo and election settings, including the voting window."""
    school = _loaded_school()

    try:
        updated = await database.update_school(
            school["id"], payload.model_dump(exclude_unset=True)
        )
    except Exception as e:
        logger.error(f"Error updating school: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update school settings"
        )

    if updated is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="School data not found")

    logger.info(f"School {updated['id']} updated by admin {admin['id']}")
    await aggregator.refresh_school()
    await publisher.publish_change(create_change_event(Table.SCHOOLS, ChangeType.UPDATE, updated["id"]))
    return SchoolResponse(**updated)


@app.post(
    f"/api/{settings.API_VERSION}/admin/candidates",
    response_model=CandidateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "Candidate number already in use"}}
)
async def create_candidate(payload: CandidateRequest, admin: Dict = Depends(require_admin)) -> CandidateResponse:
    """Add a candidate to the school."""
    school = _loaded_school()

    try:
        candidate = await database.create_candidate(school["id"], payload.model_dump())
    except CandidateNumberConflictError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Candidate number already in use"
        )
    except ReferenceNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="School data not found")
    except Exception as e:
        logger.error(f"Error saving candidate: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save candidate"
        )

    logger.info(f"Candidate {candidate['id']} created by admin {admin['id']}")
    await aggregator.refresh_candidates()
    await publisher.publish_change(create_change_event(Table.CANDIDATES, ChangeType.INSERT, candidate["id"]))
    return CandidateResponse(**candidate)


@app.put(
    f"/api/{settings.API_VERSION}/admin/candidates/{{candidate_id}}",
    response_model=CandidateResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Candidate not found"},
        409: {"model": ErrorResponse, "description": "Candidate number already in use"}
    }
)
async def update_candidate(
    candidate_id: UUID,
    payload: CandidateRequest,
    admin: Dict = Depends(require_admin)
) -> CandidateResponse:
    """Edit a candidate."""
    try:
        candidate = await database.update_candidate(candidate_id, payload.model_dump())
    except CandidateNumberConflictError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Candidate number already in use"
        )
    except Exception as e:
        logger.error(f"Error saving candidate: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save candidate"
        )

    if candidate is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Candidate not found")

    logger.info(f"Candidate {candidate_id} updated by admin {admin['id']}")
    await aggregator.refresh_candidates()
    await publisher.publish_change(create_change_event(Table.CANDIDATES, ChangeType.UPDATE, candidate_id))
    return CandidateResponse(**candidate)


@app.delete(
    f"/api/{settings.API_VERSION}/admin/candidates/{{candidate_id}}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse, "description": "Candidate not found"}}
)
async def delete_candidate(candidate_id: UUID, admin: Dict = Depends(require_admin)):
    """Delete a candidate together with the votes cast for them."""
    try:
        deleted = await database.delete_candidate(candidate_id)
    except Exception as e:
        logger.error(f"Error deleting candidate: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete candidate"
        )

    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Candidate not found")

    logger.info(f"Candidate {candidate_id} deleted by admin {admin['id']}")
    await aggregator.refresh_candidates()
    await aggregator.refresh_tally()
    await publisher.publish_change(create_change_event(Table.CANDIDATES, ChangeType.DELETE, candidate_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ═══════════════════════════════════════════════════════════════════
# OPERATIONS
# ═══════════════════════════════════════════════════════════════════

@app.get(
    f"/api/{settings.API_VERSION}/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check() -> HealthResponse:
    """
    Check health of the service and its dependencies.

    Verifies connections to:
    - PostgreSQL
    - Redis
    - RabbitMQ
    """
    checks = {
        "postgresql": database.check_health,
        "redis": session_store.check_health,
        "rabbitmq": publisher.check_health,
    }

    services = {}
    for name, check in checks.items():
        try:
            services[name] = "connected" if await check() else "disconnected"
        except Exception as e:
            logger.error(f"{name} health check error: {e}")
            services[name] = "error"

    all_healthy = all(state == "connected" for state in services.values())

    response = HealthResponse(
        status="healthy" if all_healthy else "unhealthy",
        services=services,
        timestamp=datetime.now(timezone.utc)
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "endpoints": {
            "school": f"/api/{settings.API_VERSION}/school",
            "candidates": f"/api/{settings.API_VERSION}/candidates",
            "results": f"/api/{settings.API_VERSION}/results",
            "start_session": f"/api/{settings.API_VERSION}/session",
            "submit_vote": f"/api/{settings.API_VERSION}/vote",
            "health": f"/api/{settings.API_VERSION}/health",
            "metrics": "/metrics"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "voting_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )

"""
FastAPI server for the ChangeMatch service.

Exposes:
  - GET /health - Health check
  - POST /run-graph - Execute a graph (matching, nearby)
  - POST /requests, GET /requests/{id} - Post and read exchange requests
  - POST /matches, GET /matches/{id} - Propose and read matches
  - POST /matches/{id}/{accept|decline|complete|cancel|no-show|expire} - Lifecycle
  - GET /docs - Interactive API documentation (Swagger UI)
"""

from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Request, status, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Dict, Any, Optional, Annotated
from datetime import datetime, timezone
import sys
import time
import uuid

# Import configuration (loads .env automatically)
from changematch.config import config, validate_config

# Import logging setup
from changematch.utils.logging_config import logger, setup_logging

from changematch.graphs.matching import create_matching_graph
from changematch.graphs.nearby import create_nearby_graph
from changematch.models.exchange import (
    Coordinate,
    Denomination,
    ExchangeRequest,
    TrustSignals,
)
from changematch.tools.lifecycle import MatchLifecycle
from changematch.tools.storage import get_store
from changematch.utils.errors import (
    ConflictError,
    FirestoreUnavailableError,
    InvalidInputError,
    NotFoundError,
    ReciprocityViolationError,
    UnauthorizedError,
)
from changematch.utils.geohash import encode

# Setup logging
setup_logging(debug=config.DEBUG)

# ============================================================
# VALIDATE CONFIGURATION AT STARTUP
# ============================================================
try:
    config_status = validate_config()
    logger.info("Configuration validated successfully")
    for key, value in config_status.items():
        logger.info(f"  {key}: {value}")
except ValueError as e:
    logger.error(f"Configuration error: {e}")
    sys.exit(1)

# ============================================================
# FASTAPI APPLICATION
# ============================================================
app = FastAPI(
    title="ChangeMatch Service",
    description="Proximity matching and match lifecycle for cash-denomination exchange",
    version="1.0.0",
)

# ============================================================
# CORS CONFIGURATION
# ============================================================
origins = [
    "http://localhost:5173",  # Vite dev
    "http://localhost:3000",  # React dev
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

GRAPHS = {
    "matching": create_matching_graph,
    "nearby": create_nearby_graph,
}

# Domain error -> (HTTP status, message shown to the user or None for str(exc)).
ERROR_RESPONSES = {
    InvalidInputError: (status.HTTP_400_BAD_REQUEST, None),
    UnauthorizedError: (status.HTTP_403_FORBIDDEN, "You can't perform this action"),
    NotFoundError: (status.HTTP_404_NOT_FOUND, None),
    ConflictError: (
        status.HTTP_409_CONFLICT,
        "This match or post is no longer available",
    ),
    ReciprocityViolationError: (422, None),
    FirestoreUnavailableError: (
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Storage temporarily unavailable",
    ),
}


# ============================================================
# REQUEST/RESPONSE MODELS
# ============================================================
class GraphRequest(BaseModel):
    """
    Request body for /run-graph endpoint.

    Attributes:
        graph (str): Name of graph to execute. Options: 'matching', 'nearby'
        input (dict): Input state, e.g. {"request_id": "...", "max_distance_km": 5}
    """
    graph: str
    input: Dict[str, Any]


class GraphResponse(BaseModel):
    """
    Response body for /run-graph endpoint.

    Attributes:
        success (bool): Whether graph executed successfully
        graph (str): Name of the graph that was executed
        data (dict): Output from the graph
        error (Optional[str]): Error message if something went wrong
    """
    success: bool
    graph: str
    data: Dict[str, Any] = {}
    error: Optional[str] = None


class CreateRequestBody(BaseModel):
    """A new "give X, need Y" post."""
    owner_id: str
    offer_amount: float = Field(..., gt=0)
    offer_denomination: Denomination
    need_amount: float = Field(..., gt=0)
    need_denomination: Denomination
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    trust_signals: TrustSignals = Field(default_factory=TrustSignals)
    notes: Optional[str] = None


class ProposeBody(BaseModel):
    request_a_id: str
    request_b_id: str


class ActorBody(BaseModel):
    actor_id: str


class CompleteBody(ActorBody):
    rating: float


class ReasonBody(ActorBody):
    reason: str = ""


# ============================================================
# DEPENDENCIES
# ============================================================
def verify_token(
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    """Validate the bearer token when SERVICE_TOKEN is configured."""
    if config.SERVICE_TOKEN:
        expected = f"Bearer {config.SERVICE_TOKEN}"
        if authorization != expected:
            logger.warning("Unauthorized request: invalid or missing token")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
            )


def get_lifecycle() -> MatchLifecycle:
    return MatchLifecycle(get_store())


# ============================================================
# MIDDLEWARE
# ============================================================
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """
    Middleware to track request processing time.

    Adds X-Process-Time header to all responses showing how long request took.
    """
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


# ============================================================
# ROUTES
# ============================================================

@app.get("/health", tags=["System"])
async def health_check() -> Dict[str, str]:
    """
    Health check endpoint.

    Returns:
        dict: {"status": "healthy"}
    """
    return {"status": "healthy"}


@app.post(
    "/run-graph",
    response_model=GraphResponse,
    tags=["Graphs"],
    dependencies=[Depends(verify_token)],
)
def run_graph(request: GraphRequest) -> GraphResponse:
    """
    Execute a LangGraph graph and return results.

    Supported graphs:
      - matching: Reciprocal candidates for an open request, ranked best first
      - nearby: Other users' open requests within the radius, nearest first

    Raises:
        HTTPException: If graph doesn't exist or fails to execute
    """
    factory = GRAPHS.get(request.graph)
    if factory is None:
        logger.error(f"Unknown graph: {request.graph}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown graph: {request.graph}. "
                   f"Valid options: {', '.join(sorted(GRAPHS))}"
        )

    if not request.input.get("request_id"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{request.graph} graph requires request_id in input",
        )

    logger.info(f"Executing {request.graph} graph")
    logger.debug(f"Input keys: {list(request.input.keys())}")
    start_time = time.time()

    try:
        result = factory().invoke(request.input)
    except Exception as e:
        execution_time = time.time() - start_time
        logger.error(f"{request.graph} graph failed after {execution_time:.2f}s: {str(e)}")
        logger.exception("Full traceback:")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Graph execution failed: {str(e)}"
        )

    execution_time = time.time() - start_time
    metadata = result.get("response_metadata", {})
    logger.info(
        "run-graph summary: graph=%s success=%s time=%.2fs",
        request.graph,
        metadata.get("success"),
        execution_time,
    )

    return GraphResponse(
        success=bool(metadata.get("success")),
        graph=request.graph,
        data=result,
        error=metadata.get("error"),
    )


@app.post("/requests", tags=["Requests"], dependencies=[Depends(verify_token)])
def create_request(body: CreateRequestBody) -> Dict[str, Any]:
    """Post an open exchange request; the spatial key is computed here."""
    exchange_request = ExchangeRequest(
        id=uuid.uuid4().hex,
        owner_id=body.owner_id,
        offer_amount=body.offer_amount,
        offer_denomination=body.offer_denomination,
        need_amount=body.need_amount,
        need_denomination=body.need_denomination,
        location=Coordinate(latitude=body.latitude, longitude=body.longitude),
        spatial_key=encode(body.latitude, body.longitude, config.GEOHASH_PRECISION),
        created_at=datetime.now(timezone.utc),
        trust_signals=body.trust_signals,
        notes=body.notes,
    )
    get_store().save_request(exchange_request)
    logger.info("Request %s posted in %s", exchange_request.id, exchange_request.spatial_key)
    return exchange_request.to_document()


@app.get("/requests/{request_id}", tags=["Requests"], dependencies=[Depends(verify_token)])
def read_request(request_id: str) -> Dict[str, Any]:
    exchange_request = get_store().get_request(request_id)
    if exchange_request is None:
        raise NotFoundError(f"Request {request_id} not found")
    return exchange_request.to_document()


@app.post("/matches", tags=["Matches"], dependencies=[Depends(verify_token)])
def propose_match(
    body: ProposeBody, lifecycle: MatchLifecycle = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.propose(body.request_a_id, body.request_b_id).to_document()


@app.get("/matches/{match_id}", tags=["Matches"], dependencies=[Depends(verify_token)])
def read_match(match_id: str) -> Dict[str, Any]:
    match = get_store().get_match(match_id)
    if match is None:
        raise NotFoundError(f"Match {match_id} not found")
    return match.to_document()


@app.post("/matches/{match_id}/accept", tags=["Matches"], dependencies=[Depends(verify_token)])
def accept_match(
    match_id: str, body: ActorBody, lifecycle: MatchLifecycle = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.accept(match_id, body.actor_id).to_document()


@app.post("/matches/{match_id}/decline", tags=["Matches"], dependencies=[Depends(verify_token)])
def decline_match(
    match_id: str, body: ActorBody, lifecycle: MatchLifecycle = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.decline(match_id, body.actor_id).to_document()


@app.post("/matches/{match_id}/complete", tags=["Matches"], dependencies=[Depends(verify_token)])
def complete_match(
    match_id: str, body: CompleteBody, lifecycle: MatchLifecycle = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.complete(match_id, body.actor_id, body.rating).to_document()


@app.post("/matches/{match_id}/cancel", tags=["Matches"], dependencies=[Depends(verify_token)])
def cancel_match(
    match_id: str, body: ReasonBody, lifecycle: MatchLifecycle = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.cancel(match_id, body.actor_id, body.reason).to_document()


@app.post("/matches/{match_id}/no-show", tags=["Matches"], dependencies=[Depends(verify_token)])
def report_no_show(
    match_id: str, body: ReasonBody, lifecycle: MatchLifecycle = Depends(get_lifecycle)
) -> Dict[str, Any]:
    return lifecycle.report_no_show(match_id, body.actor_id, body.reason).to_document()


@app.post("/matches/{match_id}/expire", tags=["Matches"], dependencies=[Depends(verify_token)])
def expire_match(
    match_id: str, lifecycle: MatchLifecycle = Depends(get_lifecycle)
) -> Dict[str, Any]:
    """Called by the external deadline sweep for unanswered proposals."""
    return lifecycle.expire(match_id).to_document()


@app.get("/", tags=["System"])
async def root() -> Dict[str, str]:
    """
    Root endpoint.

    Returns information about the API and how to access documentation.
    """
    return {
        "service": "ChangeMatch Service",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health"
    }


# ============================================================
# ERROR HANDLERS
# ============================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handle HTTP exceptions with consistent error response format.
    """
    logger.error(f"HTTP Exception: {exc.status_code} - {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
            "status_code": exc.status_code
        }
    )


async def domain_exception_handler(request: Request, exc: Exception):
    """
    Map matching/lifecycle errors to status codes and user-facing messages.
    """
    status_code, message = status.HTTP_500_INTERNAL_SERVER_ERROR, None
    for cls in type(exc).__mro__:
        if cls in ERROR_RESPONSES:
            status_code, message = ERROR_RESPONSES[cls]
            break

    logger.info(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": message or str(exc),
            "error_type": type(exc).__name__,
            "status_code": status_code
        }
    )


for _error_type in ERROR_RESPONSES:
    app.add_exception_handler(_error_type, domain_exception_handler)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """
    Handle unexpected exceptions.

    Never returns the error message to the client; use logging instead.
    """
    logger.error(f"Unhandled exception: {str(exc)}")
    logger.exception("Full traceback:")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal server error",
            "status_code": 500
        }
    )


# ============================================================
# STARTUP EVENTS
# ============================================================

@app.on_event("startup")
async def startup_event():
    """
    Run when the application starts.

    Configuration is already validated above (in module-level code),
    but we log it again here for visibility.
    """
    logger.info("=" * 60)
    logger.info("ChangeMatch Service Starting Up")
    logger.info("=" * 60)
    logger.info(f"Storage: {config.STORAGE_BACKEND}")
    logger.info(f"Spatial key precision: {config.GEOHASH_PRECISION}")
    logger.info(f"Search radius: {config.MAX_DISTANCE_KM} km")
    logger.info(f"Debug Mode: {config.DEBUG}")


@app.on_event("shutdown")
async def shutdown_event():
    """
    Run when the application shuts down.
    """
    logger.info("ChangeMatch Service Shutting Down")


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    """
    Run with: python -m uvicorn changematch.server:app --reload
    """
    import uvicorn
    uvicorn.run(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level="info" if not config.DEBUG else "debug"
    )

"""
Recommendation API.

Every failure on the query path is returned as ``{"error": ..., "search_id": ...}``;
unclassified exceptions are logged and reported generically.
"""

import asyncio
import hmac
import threading
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from util.logging import logger
from .schemas import (
    BacklogResponse,
    ErrorResponse,
    HealthResponse,
    RecommendRequest,
    RecommendResponse,
)
from ..core.config import (
    VERSION,
    RetrievalConfig,
    StoreConfig,
    debug_enabled,
    get_embedding_client,
    get_recommend_api_key,
    get_vector_store,
)
from ..core.db import health_check
from ..core.errors import (
    OperationCancelledError,
    OperationTimeoutError,
    SearchError,
    ValidationError,
)
from ..core.recommend_service import RecommendationEngine
from ..core.search_log import SqliteSearchLog
from ..core.staging import StagingRepository

# Initialize the FastAPI application
app = FastAPI(
    title="Case Recall API",
    version=VERSION,
    description="Semantic catalog recommendations from historical case narratives",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

_engine: Optional[RecommendationEngine] = None
_engine_lock = threading.Lock()


class CredentialError(Exception):
    pass


def get_engine() -> RecommendationEngine:
    """Build the engine once from environment configuration."""
    global _engine
    with _engine_lock:
        if _engine is None:
            store_config = StoreConfig.from_env()
            store = get_vector_store(store_config)
            if hasattr(store, "load_index") and store.load_index():
                logger.log_operation("vector.index_load", "success", store.index_status())
            _engine = RecommendationEngine(
                store,
                get_embedding_client(),
                RetrievalConfig.from_env(),
                search_log=SqliteSearchLog(store_config.db_path),
            )
        return _engine


def get_staging() -> StagingRepository:
    return StagingRepository(StoreConfig.from_env().db_path)


def verify_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    expected = get_recommend_api_key()
    if expected is None:
        return
    if x_api_key is None or not hmac.compare_digest(x_api_key, expected):
        raise CredentialError()


def error_response(status_code: int, message: str, search_id: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(error=message, search_id=search_id)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(CredentialError)
async def credential_error_handler(request: Request, exc: CredentialError):
    return error_response(401, "invalid or missing API key")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
    return error_response(400, f"invalid request: {fields}")


@app.post("/recommend", response_model=RecommendResponse,
          responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse},
                     502: {"model": ErrorResponse}, 504: {"model": ErrorResponse}})
async def recommend_endpoint(req: RecommendRequest,
                             engine: RecommendationEngine = Depends(get_engine),
                             _: None = Depends(verify_api_key)):
    """Recommend catalog items for a free-text query."""
    task = engine.submit(req.query, req.top_k)
    try:
        result = await asyncio.wrap_future(task.future)
    except asyncio.CancelledError:
        # Client went away; stop the request at its next checkpoint
        task.cancel()
        raise
    except ValidationError as e:
        return error_response(400, e.message, task.search_id)
    except SearchError as e:
        return error_response(502, e.message, task.search_id)
    except OperationTimeoutError as e:
        return error_response(504, e.message, task.search_id)
    except OperationCancelledError as e:
        return error_response(503, e.message, task.search_id)
    except Exception as e:
        logger.logger.error(f"Unhandled recommendation failure {task.search_id}: {type(e).__name__}: {e}")
        return error_response(500, "internal error", task.search_id)

    return result.to_dict()


@app.get("/backlog", response_model=BacklogResponse)
def backlog_endpoint(staging: StagingRepository = Depends(get_staging),
                     _: None = Depends(verify_api_key)):
    """Counts of staging narratives per processing state."""
    return BacklogResponse(**staging.count_by_state())


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(engine: RecommendationEngine = Depends(get_engine),
                          staging: StagingRepository = Depends(get_staging)):
    """Check system health."""
    db_health = health_check(staging.db_path)
    store = engine.vector_store
    index = store.index_status() if hasattr(store, "index_status") else {"type": "exact"}

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        vector_count=store.count(),
        index=index,
        backlog=BacklogResponse(**staging.count_by_state()),
    )

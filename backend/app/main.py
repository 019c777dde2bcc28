import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.errors import AttemptEngineError


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title='Assessment Attempt Engine API',
    version='0.1.0',
    openapi_url='/api/v1/openapi.json',
    docs_url='/api/v1/docs',
    redoc_url='/api/v1/redoc',
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.include_router(api_router, prefix='/api/v1')


@app.exception_handler(AttemptEngineError)
async def attempt_engine_error_handler(request: Request, exc: AttemptEngineError) -> JSONResponse:
    logger.info('%s %s rejected: %s (%s)', request.method, request.url.path, exc.error_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception('Database error on %s %s', request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content={'success': False, 'message': 'Database temporarily unavailable', 'error_code': 'DATABASE_ERROR'},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception('Unhandled exception on %s %s', request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={'success': False, 'message': 'Internal server error', 'error_code': 'INTERNAL_ERROR'},
    )


@app.get('/')
def root() -> dict[str, str]:
    return {'service': 'attempt-engine-api', 'status': 'running'}

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from palletflow.config import settings
from palletflow.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    MissingDocumentError,
    NoEligibleDemandError,
    NoOpenManifestError,
    NotFoundError,
    NothingConfirmedError,
    StoreUnavailableError,
    ValidationError,
    WarehouseError,
)
from palletflow.logging_config import setup_logging
from palletflow.routers import billing, catalog, inventory, receiving, shipping
from palletflow.security.gateway import install_gateway_identity_middleware
from palletflow.security.headers import install_security_headers

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidStateError: 409,
    NoEligibleDemandError: 409,
    NoOpenManifestError: 409,
    ConcurrencyConflictError: 409,
    NothingConfirmedError: 422,
    MissingDocumentError: 422,
    StoreUnavailableError: 503,
}

app = FastAPI(title='Palletflow Warehouse Fulfillment')

install_security_headers(app)
install_gateway_identity_middleware(app)

app.include_router(receiving.router)
app.include_router(inventory.router)
app.include_router(shipping.router)
app.include_router(billing.router)
app.include_router(catalog.router)


def status_for(exc: WarehouseError) -> int:
    for error_cls in type(exc).__mro__:
        if error_cls in ERROR_STATUS:
            return ERROR_STATUS[error_cls]
    return 400


@app.exception_handler(WarehouseError)
async def warehouse_error_handler(request: Request, exc: WarehouseError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc)
    body = {'error': exc.code, 'detail': str(exc)}
    if isinstance(exc, ValidationError) and exc.problems:
        body['problems'] = exc.problems
    return JSONResponse(status_code=status_code, content=body)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'

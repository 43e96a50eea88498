from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from carrier_ledger.errors import LedgerError
from carrier_ledger.logging_config import configure_logging
from carrier_ledger.routers import auth, carrier_accounts, carriers, dispatch, settlements
from carrier_ledger.security.headers import install_security_headers
from carrier_ledger.serialization import to_jsonable

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title='Carrier Settlement Ledger')

install_security_headers(app)

app.include_router(auth.router)
app.include_router(dispatch.router)
app.include_router(settlements.router)
app.include_router(carrier_accounts.router)
app.include_router(carriers.router)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 409:
        logger.warning('%s %s rejected: %s %s', request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=to_jsonable(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [
        {
            'field': '.'.join(str(part) for part in error.get('loc', ()) if part != 'body'),
            'reason': error.get('msg', 'invalid value'),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={'error': 'VALIDATION_ERROR', 'message': 'Request validation failed', 'details': {'fields': fields}},
    )


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'

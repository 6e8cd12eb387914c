from __future__ import annotations

from fastapi import FastAPI, Request

from palletflow.auth import Principal, Role

PRINCIPAL_ID_HEADER = 'x-principal-id'
PRINCIPAL_NAME_HEADER = 'x-principal-name'
PRINCIPAL_ROLE_HEADER = 'x-principal-role'

AUTH_EXEMPT_PATHS = {'/health'}


def load_principal_from_headers(headers) -> Principal | None:
    principal_id = (headers.get(PRINCIPAL_ID_HEADER) or '').strip()
    raw_role = (headers.get(PRINCIPAL_ROLE_HEADER) or '').strip().upper()
    if not principal_id or not raw_role:
        return None
    try:
        role = Role(raw_role)
    except ValueError:
        return None
    name = (headers.get(PRINCIPAL_NAME_HEADER) or '').strip() or principal_id
    return Principal(id=principal_id, name=name, role=role)


def install_gateway_identity_middleware(app: FastAPI) -> None:
    """Trust the identity the upstream gateway resolved; requests without one get no principal."""

    @app.middleware('http')
    async def gateway_identity_middleware(request: Request, call_next):
        request.state.principal = None
        if request.url.path not in AUTH_EXEMPT_PATHS:
            request.state.principal = load_principal_from_headers(request.headers)
        return await call_next(request)

"""
Authorization server application.
"""

import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker

from authserver.audit import AuditEmitter, get_audit_emitter
from authserver.config import settings
from authserver.database import create_engine, create_session_factory, create_tables
from authserver.idp.clients import ClientRegistry
from authserver.idp.device import DeviceAuthorizationGrant
from authserver.idp.errors import OAuthError
from authserver.idp.registration import ClientRegistrar
from authserver.idp.router import oauth_error_response, router, well_known_router
from authserver.idp.service import AuthorizationServer
from authserver.idp.store import OAuthStore
from authserver.profiles import ProfileProvider, get_profile_provider


def configure_logging(level: Optional[str] = None) -> None:
    logger.remove()
    logger.add(sys.stderr, level=(level or settings.log_level).upper())


def create_app(
    session_factory: Optional[async_sessionmaker] = None,
    database_url: Optional[str] = None,
    profiles: Optional[ProfileProvider] = None,
    audit_emitter: Optional[AuditEmitter] = None,
) -> FastAPI:
    """
    Build the app. Collaborators can be injected (tests); otherwise they are
    created from settings when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        factory = session_factory
        if factory is None:
            engine = create_engine(database_url)
            await create_tables(engine)
            factory = create_session_factory(engine)
        profile_provider = profiles or get_profile_provider()
        emitter = audit_emitter or get_audit_emitter()
        await emitter.start()

        store = OAuthStore(factory)
        registry = ClientRegistry(store, emitter)
        server = AuthorizationServer(store, registry, profile_provider, emitter)
        app.state.audit = emitter
        app.state.client_registry = registry
        app.state.authorization_server = server
        app.state.device_grant = DeviceAuthorizationGrant(server)
        app.state.registrar = ClientRegistrar(store, emitter)
        logger.success(f"Authorization server ready, issuer={settings.issuer}")

        yield

        await emitter.stop()
        await profile_provider.close()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(
        title="Authorization Server",
        lifespan=lifespan,
    )
    app.include_router(router, prefix="/oauth", tags=["OAuth"])
    app.include_router(well_known_router, tags=["Discovery"])

    @app.exception_handler(OAuthError)
    async def handle_oauth_error(request: Request, exc: OAuthError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.debug(f"{request.method} {request.url.path} rejected: {exc.error}")
        return oauth_error_response(exc)

    @app.get("/health")
    async def health(request: Request):
        audit = getattr(request.app.state, "audit", None)
        return {"status": "ok", "audit_queue_depth": audit.depth if audit else 0}

    return app


configure_logging()
app = create_app()

import logging
import sys
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from identity_engine.app.api.routes import router as verification_router
from identity_engine.app.config import EngineSettings, get_settings
from identity_engine.app.orchestrator.orchestrator import VerificationOrchestrator
from identity_engine.app.stages.document_reader import (
    DocumentReader,
    HttpDocumentReader,
)
from identity_engine.app.stages.face_matcher import FaceMatcher, HttpFaceMatcher

logger = logging.getLogger("identity_engine.main")


def get_app_version() -> str:
    try:
        return version("identity-engine")
    except PackageNotFoundError:
        return "0.1.0"


def create_app(
    settings: Optional[EngineSettings] = None,
    *,
    document_reader: Optional[DocumentReader] = None,
    face_matcher: Optional[FaceMatcher] = None,
) -> FastAPI:
    """
    Application factory.

    Collaborators may be injected (tests, embedded use). Otherwise they are
    built from the configured endpoints at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Guarantees:
        - Fail-fast startup if configuration is invalid
        - One shared HTTP transport for all collaborators
        - Running sessions are cancelled on shutdown
        """
        logger.info(
            "identity_engine_startup_begin",
            extra={"version": get_app_version()},
        )

        try:
            resolved = settings or get_settings()
        except Exception:
            logger.exception("invalid_engine_configuration")
            raise

        app.state.settings = resolved
        app.state.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=resolved.collaborator_http_timeout_seconds,
                connect=10.0,
            ),
            limits=httpx.Limits(
                max_keepalive_connections=50,
                max_connections=100,
            ),
            headers={"User-Agent": f"identity-engine/{get_app_version()}"},
        )

        reader = document_reader
        if reader is None:
            if resolved.document_reader_url is None:
                await app.state.http_client.aclose()
                raise RuntimeError(
                    "IDENGINE_DOCUMENT_READER_URL must be configured"
                )
            reader = HttpDocumentReader(
                endpoint=str(resolved.document_reader_url),
                http_client=app.state.http_client,
            )

        matcher = face_matcher
        if matcher is None and resolved.face_matcher_url is not None:
            matcher = HttpFaceMatcher(
                endpoint=str(resolved.face_matcher_url),
                http_client=app.state.http_client,
            )

        app.state.orchestrator = VerificationOrchestrator.from_settings(
            resolved,
            document_reader=reader,
            face_matcher=matcher,
        )

        logger.info(
            "identity_engine_ready",
            extra={
                "did_method": resolved.did_method,
                "face_matching": matcher is not None,
            },
        )

        try:
            yield
        finally:
            logger.info("identity_engine_shutdown_begin")

            await app.state.orchestrator.aclose()

            try:
                await app.state.http_client.aclose()
            except httpx.HTTPError:
                logger.warning("http_client_shutdown_failed")

    app = FastAPI(
        title="Identity Engine",
        description=(
            "Decentralized identity issuance and verification: document "
            "analysis, identity matching, risk screening and DID issuance."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.include_router(verification_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness probe",
    )
    async def health_check():
        """
        NOTE:
        - Does NOT call external collaborators
        """
        orchestrator = getattr(app.state, "orchestrator", None)
        return ORJSONResponse(
            content={
                "status": "ok" if orchestrator is not None else "starting",
                "service": "identity-engine",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
                "sessions": orchestrator.stats() if orchestrator else {},
            }
        )

    return app


app = create_app()

import time
from contextlib import asynccontextmanager
from html import escape
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from zaynix import config
from zaynix.app.errors import BadRequest, Forbidden, GatewayError, InternalError, PayloadTooLarge
from zaynix.app.services.delete_service import DeleteService
from zaynix.app.services.naming import object_url
from zaynix.app.services.object_store import ObjectStore, ObjectStoreError, create_object_store
from zaynix.app.services.proxy_service import PassThrough, ProxyService
from zaynix.app.services.upload_service import (
    BodyLimit,
    BodyTooLarge,
    UploadResult,
    UploadService,
    check_declared_length,
    read_form,
)
from zaynix.config import Settings
from zaynix.logger_config import setup_logger

logger = setup_logger()

SECURITY_HEADERS = {
    "X-Frame-Options": "SAMEORIGIN",
    "X-DNS-Prefetch-Control": "off",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "cross-origin",
    "X-Content-Type-Options": "nosniff",
}


def warn_on_settings(settings: Settings):
    if settings.storage_backend == "supabase" and not settings.has_store_credentials:
        logger.warning(
            "Supabase credentials missing. Set SUPABASE_URL and SUPABASE_KEY in .env; "
            "every storage call will fail until they are configured"
        )
    if settings.delete_token == config.DEFAULT_DELETE_TOKEN:
        logger.warning("DELETE_TOKEN is the default value; anyone can delete files")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    warn_on_settings(settings)

    # Stream transfers may take as long as they need; only connecting is bounded
    app.state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(None, connect=settings.connect_timeout),
        follow_redirects=True,
    )
    if app.state.object_store is None:
        app.state.object_store = create_object_store(settings, app.state.http_client)

    logger.info(f"Bucket: {settings.bucket}")
    logger.info(f"Maximum upload size: {settings.max_file_size / (1024*1024):.2f} MB")
    yield
    await app.state.http_client.aclose()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> ObjectStore:
    return request.app.state.object_store


async def read_body_fields(request: Request, ceiling: int) -> Dict[str, Any]:
    """Body fields of a JSON or form-encoded request of at most ``ceiling`` bytes.

    Multipart bodies may carry plain fields only; file parts are refused
    before anything is spooled.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        check_declared_length(request.headers, ceiling)
        limit = BodyLimit(request.receive, ceiling)
        try:
            payload = await Request(request.scope, receive=limit).json()
        except BodyTooLarge:
            raise PayloadTooLarge(detail=limit.detail)
        except ValueError:
            raise BadRequest("Invalid JSON body")
        return payload if isinstance(payload, dict) else {}
    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await read_form(request, ceiling, max_files=0)
        try:
            return dict(form)
        finally:
            await form.close()
    return {}


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def create_app(settings: Optional[Settings] = None, store: Optional[ObjectStore] = None) -> FastAPI:
    """Build the gateway application.

    Args:
        settings: Configuration; read from the environment when omitted.
        store: Object store to use; when omitted one is built from ``settings``
            at startup.
    """
    settings = settings or Settings.from_env()

    app = FastAPI(title="Zaynix", lifespan=lifespan)
    app.state.settings = settings
    app.state.object_store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        for key, value in SECURITY_HEADERS.items():
            response.headers.setdefault(key, value)
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(f"{request.method} {request.url.path} {response.status_code} {duration_ms:.1f}ms")
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if request.url.path.startswith("/api/"):
            return JSONResponse(exc.to_dict(), status_code=exc.status_code)
        return PlainTextResponse(exc.error, status_code=exc.status_code)

    @app.post("/api/upload", response_model=UploadResult)
    async def upload_file(
        request: Request,
        settings: Settings = Depends(get_settings),
        store: ObjectStore = Depends(get_store),
    ):
        """Upload a file in the multipart field ``file``."""
        logger.info(f"Receiving upload request from {request.client.host if request.client else '-'}")
        form = await read_form(request, settings.upload_ceiling, max_files=1)
        try:
            service = UploadService(store, settings.max_file_size)
            base_url = f"{request.url.scheme}://{request.url.netloc}"
            return await service.handle_upload(form.get("file"), base_url)
        except GatewayError:
            raise
        except Exception as e:
            logger.error(f"Error uploading file: {str(e)}", exc_info=True)
            raise InternalError()
        finally:
            await form.close()

    @app.post("/api/delete")
    async def delete_file(
        request: Request,
        settings: Settings = Depends(get_settings),
        store: ObjectStore = Depends(get_store),
    ):
        """Delete a file; needs the shared delete token."""
        service = DeleteService(store, settings.delete_token)
        header_token = request.headers.get("x-delete-token")
        # A bad header token is refused without reading the body
        if header_token and not service.is_authorized(header_token):
            logger.warning("Rejected delete: bad X-Delete-Token header")
            raise Forbidden()

        fields = await read_body_fields(request, config.DELETE_BODY_LIMIT)
        token = header_token or _as_str(fields.get("token"))
        filename = _as_str(fields.get("filename"))
        logger.info(f"Receiving delete request for filename: {filename}")

        try:
            await service.handle_delete(token, filename)
        except GatewayError:
            raise
        except Exception as e:
            logger.error(f"Error deleting {filename}: {str(e)}", exc_info=True)
            raise InternalError()
        return {"ok": True}

    @app.get("/files", response_class=HTMLResponse)
    async def list_files(request: Request, store: ObjectStore = Depends(get_store)):
        """Human-readable listing of stored files, newest first."""
        try:
            objects = await store.list("")
        except ObjectStoreError as e:
            logger.error(f"Storage list error: {str(e)}")
            return PlainTextResponse("Failed to list files", status_code=500)

        base_url = f"{request.url.scheme}://{request.url.netloc}"
        items = []
        for info in objects:
            created = info.created_at.isoformat() if info.created_at else ""
            items.append(
                f'<li><a href="{escape(object_url(base_url, info.name))}">{escape(info.name)}</a>'
                f' - {info.size if info.size is not None else "?"} bytes - {escape(created)}</li>'
            )
        html = (
            "<h1>Uploaded files</h1><ul>" + "".join(items) + "</ul>"
            '<p><a href="/">Upload more</a></p>'
        )
        return HTMLResponse(html)

    @app.get("/{segment}")
    async def proxy_object(segment: str, store: ObjectStore = Depends(get_store)):
        """Stream a stored object from the bucket under its generated name."""
        try:
            stream = await ProxyService(store).open(segment)
        except PassThrough:
            return PlainTextResponse("Not found", status_code=404)

        # The background close covers a client that disconnects mid-stream
        return StreamingResponse(
            ProxyService.relay(stream),
            headers=ProxyService.response_headers(stream),
            background=BackgroundTask(stream.aclose),
        )

    return app


app = create_app()


if __name__ == "__main__":
    logger.info("Starting Zaynix gateway...")
    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port)

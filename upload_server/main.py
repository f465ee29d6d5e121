import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional
from urllib.parse import quote

import uvicorn
from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from upload_server import config
from upload_server.app.models.artifact import UploadResponse
from upload_server.app.services.errors import NotFound, PayloadTooLarge, UploadServerError, error_response
from upload_server.app.services.storage_manager import ArtifactHandle
from upload_server.app.services.upload_service import UploadService
from upload_server.logger_config import setup_logger

logger = setup_logger()

DELETE_TOKEN_HEADER = "X-Delete-Token"


def content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"inline; filename*=utf-8''{quoted}"
    return f'inline; filename="{filename}"'


def stream_handle(handle: ArtifactHandle, media_type: str, size: int, filename: str) -> StreamingResponse:
    return StreamingResponse(
        handle.iter_chunks(),
        media_type=media_type,
        headers={
            "content-length": str(size),
            "content-disposition": content_disposition(filename),
        },
    )


def create_app(settings: Optional[config.Config] = None) -> FastAPI:
    settings = settings or config.Config.from_env()
    upload_service = UploadService.from_config(settings)
    not_found_html = settings.not_found_page.read_text() if settings.not_found_page else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.storage_manager.initialize()
        yield

    app = FastAPI(title="Upload Server", lifespan=lifespan)
    app.state.settings = settings
    app.state.upload_service = upload_service
    app.state.storage_manager = upload_service.storage

    @app.exception_handler(UploadServerError)
    async def upload_error_handler(request: Request, exc: UploadServerError):
        status_code, body = error_response(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.reason}")
        return JSONResponse(body, status_code=status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            if not_found_html is not None:
                return HTMLResponse(not_found_html, status_code=404)
            return JSONResponse({"error": NotFound.reason}, status_code=404)
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code,
                            headers=getattr(exc, "headers", None))

    @app.get("/")
    async def index():
        return PlainTextResponse("i API ready!")

    @app.post("/")
    async def upload(request: Request):
        """Accept a multipart upload with a ``file`` part and optional JSON ``options``."""
        service: UploadService = request.app.state.upload_service
        logger.info("Receiving upload request")

        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > service.max_body_size():
            raise PayloadTooLarge(f"Content-Length {content_length} exceeds the upload limit")

        result = await service.handle_upload(request.stream(), request.headers.get("content-type"))

        body = UploadResponse(
            url=result.url,
            delete_token=result.delete_token,
            thumbnail_url=result.thumbnail_url,
        ).model_dump(by_alias=True, exclude_none=True)
        headers = {DELETE_TOKEN_HEADER: result.delete_token}
        if result.options.redirect:
            headers["Location"] = result.url
            return JSONResponse(body, status_code=303, headers=headers)
        return JSONResponse(body, headers=headers)

    @app.get("/recent")
    async def recent(request: Request, limit: Optional[int] = Query(default=None, ge=0)):
        service: UploadService = request.app.state.upload_service
        entries = await service.recent(limit)
        return JSONResponse([entry.model_dump(mode="json", by_alias=True, exclude_none=True) for entry in entries])

    @app.get("/{artifact_id}/thumbnail")
    async def get_thumbnail(artifact_id: str, request: Request):
        service: UploadService = request.app.state.upload_service
        handle = await service.fetch_thumbnail(artifact_id)
        if handle is None:
            raise NotFound(f"No thumbnail for {artifact_id}")
        return stream_handle(handle, handle.content_type, handle.size, f"thumbnail-{artifact_id}.png")

    @app.get("/{artifact_id}")
    async def get_artifact(artifact_id: str, request: Request):
        service: UploadService = request.app.state.upload_service
        logger.info(f"Receiving download request for {artifact_id}")
        handle = await service.fetch(artifact_id)
        if handle is None:
            raise NotFound(f"Artifact {artifact_id} not found")
        artifact = handle.artifact
        return stream_handle(handle, artifact.content_type, artifact.size, artifact.display_name)

    @app.delete("/{artifact_id}")
    async def delete_artifact(
        artifact_id: str,
        request: Request,
        token: Optional[str] = Query(default=None),
        x_delete_token: Optional[str] = Header(default=None),
    ):
        service: UploadService = request.app.state.upload_service
        await service.handle_delete(artifact_id, x_delete_token or token)
        return Response(status_code=204)

    return app


app = create_app()


async def purge(settings: config.Config, days: float) -> int:
    service = UploadService.from_config(settings)
    await service.storage.initialize()
    return await service.storage.purge_older_than(timedelta(days=days))


def main(argv=None):
    args = config.build_arg_parser(config.Config.from_env()).parse_args(argv)
    settings = config.Config.from_namespace(args)
    setup_logger(verbose=args.verbose)

    if args.purge_older_than is not None:
        purged = asyncio.run(purge(settings, args.purge_older_than))
        logger.info(f"Purged {purged} artifacts")
        return

    logger.info("Starting upload server...")
    logger.info(f"Serving and storing files in: {settings.data_dir}")
    logger.info(f"Public URL base: {settings.server_url}")
    logger.info(f"Maximum upload size: {settings.max_upload_size / (1024 * 1024):.2f} MB")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()

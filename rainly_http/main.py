import secrets
from pathlib import Path
from typing import Optional, List
from fastapi import FastAPI, APIRouter, Request, HTTPException, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException
import uvicorn
from contextlib import asynccontextmanager
from config import ServerConfig
from logger_config import setup_logger
from app.services.storage_manager import (
    StorageManager,
    PathTraversalError,
    FileCreateError,
    FileCopyError,
)
from app.services.file_sender import FileSender
from app.services.body_limit import BodyTooLarge, limit_body

# Logger setup
logger = setup_logger()

UPLOAD_PATH = "/upload"
PASSWORD_HEADER = "X-Upload-Password"
PASSWORD_FIELD = "password"
FILE_FIELD = "file"

# Routed for these methods so the handlers answer wrong ones with 405;
# anything else is rewritten by handle_http_exception
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

router = APIRouter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await app.state.storage_manager.initialize()
    except OSError as e:
        logger.critical(f"Failed to create storage directory {app.state.config.download_dir}: {e}")
        raise
    logger.info(f"RainlyHTTP started, listening on {app.state.config.listen_addr}")
    yield


def create_app(server_config: ServerConfig) -> FastAPI:
    """Build the application around one immutable configuration."""
    app = FastAPI(title="RainlyHTTP", lifespan=lifespan)
    app.state.config = server_config
    app.state.storage_manager = StorageManager(Path(server_config.download_dir), server_config.chunk_size)
    app.state.file_sender = FileSender(server_config.chunk_size)
    app.include_router(router)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    return app


def method_not_allowed(path: str) -> HTTPException:
    if path == UPLOAD_PATH:
        return HTTPException(
            status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
            detail="Only POST requests are supported (file upload)",
            headers={"Allow": "POST"}
        )
    return HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Only GET requests are supported (file download)",
        headers={"Allow": "GET"}
    )


async def handle_http_exception(request: Request, exc: StarletteHTTPException):
    """Give every 405, including ones raised by routing, the route's own Allow header."""
    if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        exc = method_not_allowed(request.url.path)
    return await http_exception_handler(request, exc)


def client_address(request: Request) -> str:
    if request.client is None:
        return "unknown"
    return f"{request.client.host}:{request.client.port}"


def password_matches(candidate: str, expected: str) -> bool:
    """Exact match against the shared secret; an empty candidate never matches."""
    if not candidate:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def body_too_large(e: Exception) -> bool:
    """Whether a form parse failure was caused by the size ceiling."""
    # Inside an app Starlette re-raises parser errors as a 400 HTTPException
    return isinstance(e, BodyTooLarge) or isinstance(e.__context__, BodyTooLarge)


async def parse_upload_form(request: Request, max_size: int) -> FormData:
    """Parse the multipart body, bounded by max_size.

    Oversized and unparseable bodies both end in 413, with different details.
    """
    content_length = request.headers.get("content-length", "")
    if content_length.isdigit() and int(content_length) > max_size:
        logger.warning(f"Upload rejected: declared body of {content_length} bytes exceeds {max_size}")
        raise HTTPException(
            status_code=413,
            detail=f"Upload failed: file too large (maximum {max_size} bytes)"
        )

    content_type = request.headers.get("content-type", "")
    if not content_type.lower().startswith("multipart/form-data"):
        logger.warning(f"Upload rejected: unsupported content type {content_type!r}")
        raise HTTPException(
            status_code=413,
            detail="Upload failed: request body is not multipart/form-data"
        )

    try:
        return await request.form()
    except (MultiPartException, StarletteHTTPException, ValueError) as e:
        if body_too_large(e):
            logger.warning(f"Upload rejected: streamed body exceeds {max_size} bytes")
            raise HTTPException(
                status_code=413,
                detail=f"Upload failed: file too large (maximum {max_size} bytes)"
            )
        reason = getattr(e, "detail", None) or getattr(e, "message", None) or str(e)
        logger.warning(f"Upload rejected: unparseable multipart body ({reason})")
        raise HTTPException(
            status_code=413,
            detail=f"Upload failed: {reason}"
        )


@router.api_route(UPLOAD_PATH, methods=ALL_METHODS)
async def upload_file(request: Request):
    """Store the multipart ``file`` part under its sanitized name.

    The shared secret is taken from the X-Upload-Password header, then the
    ``password`` form field, then the ``password`` query parameter.
    """
    if request.method != "POST":
        raise method_not_allowed(UPLOAD_PATH)

    server_config: ServerConfig = request.app.state.config
    storage_manager: StorageManager = request.app.state.storage_manager
    remote_addr = client_address(request)
    max_size = server_config.max_upload_size

    # All body reads go through the size ceiling
    bounded = Request(request.scope, receive=limit_body(request.receive, max_size))
    form: Optional[FormData] = None
    form_error: Optional[HTTPException] = None

    try:
        candidate = request.headers.get(PASSWORD_HEADER, "")
        if not candidate:
            try:
                form = await parse_upload_form(bounded, max_size)
            except HTTPException as e:
                form_error = e
            else:
                value = form.get(PASSWORD_FIELD)
                candidate = value if isinstance(value, str) else ""
        if not candidate:
            candidate = request.query_params.get(PASSWORD_FIELD, "")

        if not password_matches(candidate, server_config.upload_password):
            logger.warning(f"Upload failed: wrong password (IP: {remote_addr}, password: {candidate!r})")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Wrong password: upload not authorized"
            )

        if form_error is not None:
            raise form_error
        if form is None:
            form = await parse_upload_form(bounded, max_size)

        upload = form.get(FILE_FIELD)
        if not isinstance(upload, UploadFile):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Failed to get uploaded file: no file part named '{FILE_FIELD}'"
            )

        filename = storage_manager.sanitize_filename(upload.filename or "")
        if not filename:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File name must not be empty")

        try:
            destination = storage_manager.resolve(filename)
        except PathTraversalError as e:
            logger.warning(f"Upload rejected: {e} (IP: {remote_addr})")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Illegal file name")

        try:
            size = await storage_manager.save_upload(destination, upload)
        except FileCreateError as e:
            logger.error(f"Error creating {destination}: {e}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to create file: {e}"
            )
        except FileCopyError as e:
            logger.error(f"Error writing {destination}: {e}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"File upload failed: {e}"
            )

        logger.info(f"File uploaded: {filename} (size: {size} bytes, IP: {remote_addr})")
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "code": status.HTTP_200_OK,
                "message": "File uploaded successfully",
                "filename": filename,
                "savePath": str(destination),
            },
        )
    finally:
        if form is not None:
            await form.close()


@router.api_route("/{filename:path}", methods=ALL_METHODS)
async def download_file(filename: str, request: Request):
    """Serve a file from the storage directory, with range support."""
    if request.method != "GET":
        raise method_not_allowed(request.url.path)

    if not filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Please specify a file name (e.g. /1.zip)"
        )

    storage_manager: StorageManager = request.app.state.storage_manager
    file_sender: FileSender = request.app.state.file_sender
    remote_addr = client_address(request)

    try:
        path = storage_manager.resolve(filename)
    except PathTraversalError as e:
        logger.warning(f"Download rejected: {e} (IP: {remote_addr})")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Illegal file path")

    logger.info(f"Receiving download request for {filename} (IP: {remote_addr})")

    try:
        stat_result = await storage_manager.stat_file(path)
        return await file_sender.send(path, request.headers, stat_result)
    except (FileNotFoundError, NotADirectoryError, IsADirectoryError, ValueError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"File {filename} not found")
    except PermissionError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")
    except OSError as e:
        logger.error(f"Error serving {path}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error reading file: {e}"
        )


app = create_app(ServerConfig.from_env())


def run(argv: Optional[List[str]] = None):
    server_config = ServerConfig.from_args(argv)
    logger.info("Starting RainlyHTTP...")
    logger.info(f"Storage directory: {server_config.download_dir}")
    logger.info(f"Maximum upload size: {server_config.max_upload_size / (1024*1024):.2f} MB")
    uvicorn.run(create_app(server_config), host=server_config.host, port=server_config.port)


if __name__ == "__main__":
    run()

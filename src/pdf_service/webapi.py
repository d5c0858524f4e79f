import asyncio
import getpass
import logging
import os
import sys
import tempfile
from pathlib import Path

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, PlainTextResponse
from starlette.background import BackgroundTask

from pdf_service import __version__
from pdf_service.conversion import ConversionFailed, ConversionService, UnsupportedFormat, UploadTooLarge
from pdf_service.conversion.adapters import (
    ApiKeySecurity,
    PsutilProcessTable,
    TempStorage,
    UnoconvEngine,
    hash_api_key,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="PDF Conversion Service",
    version=os.getenv("PDF_SERVICE_VERSION", __version__),
    description="Converts office documents to PDF through a single supervised LibreOffice engine.",
)

# Global configuration defaults
API_KEY = os.getenv("PDFER_API_KEY")
ENGINE_PORT = int(os.getenv("ENGINE_PORT", "8085"))
UNOCONV_BIN = os.getenv("UNOCONV_BIN", "unoconv")
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "5"))
DRAIN_DELAY_SEC = float(os.getenv("DRAIN_DELAY_SEC", "0.5"))
CONVERT_TIMEOUT_SEC = float(os.getenv("CONVERT_TIMEOUT_SEC", "300"))
ENGINE_RESTART_DELAY_SEC = float(os.getenv("ENGINE_RESTART_DELAY_SEC", "1.0"))
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "300"))
DATA_DIR = Path(os.getenv("DATA_DIR", tempfile.gettempdir())).resolve()
SUPPORTED_EXTENSIONS = set(
    (os.getenv(
        "SUPPORTED_EXTENSIONS",
        ",".join([
            "csv", "doc", "doc6", "doc95", "docx", "met", "odd", "odg", "odp", "odt", "ott", "pct",
            "pot", "ppm", "ppsm", "ppsx", "ppt", "pptm", "pptx", "sldm", "sldx", "stc", "sti", "stp",
            "svg", "sxc", "sxd", "sxi", "wmf", "xls", "xls5", "xls95", "xlsx", "xlt", "xlt5", "xlt95",
        ]),
    )).split(",")
)

SERVICE: ConversionService | None = None


def build_service() -> ConversionService:
    engine = UnoconvEngine(UNOCONV_BIN, ENGINE_PORT)
    return ConversionService(
        storage=TempStorage(str(DATA_DIR)),
        security=ApiKeySecurity(API_KEY),
        converter=engine,
        launcher=engine,
        process_table=PsutilProcessTable(),
        engine_port=ENGINE_PORT,
        max_retries=MAX_RETRIES,
        drain_delay=DRAIN_DELAY_SEC,
        convert_timeout=CONVERT_TIMEOUT_SEC,
        restart_delay=ENGINE_RESTART_DELAY_SEC,
    )


def _service() -> ConversionService:
    global SERVICE
    assert SERVICE is not None
    return SERVICE


def _check_api_key(request: Request) -> None:
    security = _service().security
    if not security.enabled():
        return
    scheme, _, rest = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and security.verify(rest.strip()):
        return
    if security.verify(request.query_params.get("authorization")):
        return
    raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "API key incorrect"})


def _extension(filename: str) -> str:
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()


@app.on_event("startup")
async def _startup() -> None:
    global SERVICE
    SERVICE = build_service()
    await SERVICE.start()
    logger.info("PDF service started, engine port %d", ENGINE_PORT)


@app.on_event("shutdown")
async def _shutdown() -> None:
    global SERVICE
    if SERVICE is not None:
        await SERVICE.stop()


@app.get("/health")
async def health() -> dict[str, object]:
    """Basic health check endpoint."""
    return {"status": "ok", **_service().status()}


@app.get("/status", response_class=PlainTextResponse)
async def status() -> PlainTextResponse:
    queued = _service().queue_length()
    logger.info("Status request: %d files queued", queued)
    return PlainTextResponse(f"Queued files: {queued}")


@app.get("/reset", response_class=PlainTextResponse, dependencies=[Depends(_check_api_key)])
async def reset() -> PlainTextResponse:
    removed = _service().reset_queue()
    logger.info("Reset request: removed %d files from queue", removed)
    return PlainTextResponse(f"Removed files: {removed}")


@app.post("/convert", dependencies=[Depends(_check_api_key)])
async def convert(attachment: UploadFile = File(...)) -> FileResponse:
    """Convert the uploaded ``attachment`` part to PDF and return it.

    The request is held open until the document has gone through the
    conversion queue.
    """
    svc = _service()
    filename = attachment.filename or "upload"
    ext = _extension(filename)
    if ext not in SUPPORTED_EXTENSIONS:
        raise HTTPException(
            status_code=415,
            detail={"code": "unsupported_media_type", "message": f"The extension .{ext} is not supported"},
        )

    try:
        staged = await svc.stage_upload(filename, attachment.read, max_upload_mb=MAX_UPLOAD_MB)
    except UploadTooLarge as e:
        raise HTTPException(status_code=413, detail={"code": "payload_too_large", "message": str(e)})

    logger.info("Queueing file %s", filename)
    job = svc.submit(staged.input_path, staged.output_path)
    job.completion.add_done_callback(lambda _: svc.storage.delete(staged.input_path))
    try:
        await asyncio.shield(job.completion)
    except UnsupportedFormat as e:
        logger.error("Error converting %s: %s", filename, e)
        raise HTTPException(status_code=415, detail={"code": "unsupported_media_type", "message": str(e)})
    except ConversionFailed as e:
        logger.error("Error converting %s: %s", filename, e)
        raise HTTPException(status_code=500, detail={"code": "conversion_failed", "message": str(e)})
    except asyncio.CancelledError:
        logger.info("Client for %s went away, its PDF will be discarded", filename)

        def _discard_output(fut) -> None:
            if fut.exception() is None:
                svc.storage.delete(staged.output_path)

        job.completion.add_done_callback(_discard_output)
        raise

    logger.info("Successfully converted %s", filename)
    return FileResponse(
        staged.output_path,
        media_type="application/pdf",
        filename=f"{Path(filename).stem}.pdf",
        background=BackgroundTask(svc.storage.delete, staged.output_path),
    )


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8084). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8084"))
    # the engine supervisor must stay a singleton, so reload is opt-in
    reload = os.getenv("RELOAD", "false").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("pdf_service.webapi:app", host=host, port=port, reload=reload)


def hash_key() -> None:
    """Print an Argon2 hash of an API key, usable as PDFER_API_KEY."""
    key = sys.argv[1] if len(sys.argv) > 1 else getpass.getpass("API key: ")
    print(hash_api_key(key))


if __name__ == "__main__":
    run()

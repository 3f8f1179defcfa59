from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import asyncio
import logging
from pathlib import Path
from typing import Optional

from arkiv_client import ArkivClient
from cache import PageCache
from catalog import ImageCatalog
from config import Settings
from models import ImageInfo
from progress import ProgressChannel


logger = logging.getLogger(__name__)

INDEX_PATH = Path(__file__).resolve().parent / "public" / "index.html"
MAX_PER_PAGE = 1000
LIST_ERROR = "Failed to fetch images"


def get_catalog(request: Request) -> ImageCatalog:
    return request.app.state.catalog


def missing_key_response() -> JSONResponse:
    return JSONResponse(
        {"error": "Missing key parameter"}, status_code=status.HTTP_400_BAD_REQUEST
    )


def create_app(catalog: Optional[ImageCatalog] = None) -> FastAPI:
    """Build the gateway; without a catalog one is wired from the environment on startup"""
    app = FastAPI(title="Arkiv Image Gateway")
    app.state.catalog = catalog
    app.state.client = None
    # Streaming fetches outlive their client connection
    app.state.background_fetches = set()

    @app.on_event("startup")
    async def startup_event():
        """Connect to the entity store"""
        if app.state.catalog is not None:
            return
        settings = Settings.from_env()
        client = ArkivClient(
            rpc_url=settings.rpc_url,
            owner_address=settings.owner_address,
            entity_type=settings.entity_type,
            app_name=settings.app_name,
            timeout=settings.request_timeout,
        )
        app.state.client = client
        app.state.catalog = ImageCatalog(PageCache(ttl=settings.cache_ttl_seconds), client)
        logger.info("Serving images owned by %s from %s", settings.owner_address, settings.rpc_url)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close the store connection"""
        if app.state.client is not None:
            await app.state.client.close()

    @app.exception_handler(StarletteHTTPException)
    async def not_found_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return PlainTextResponse("Not found", status_code=status.HTTP_404_NOT_FOUND)
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.get("/api/healthz")
    async def health_check():
        """Simple health check endpoint"""
        return {"status": "ok"}

    @app.get("/api/images")
    async def api_images(
        page: int = Query(1, ge=1),
        per_page: int = Query(100, ge=1, le=MAX_PER_PAGE, alias="perPage"),
        search: str = "",
        catalog: ImageCatalog = Depends(get_catalog),
    ):
        """Return one page of image metadata"""
        try:
            result = await catalog.list_images(page=page, per_page=per_page, search=search)
        except Exception:
            logger.exception("Error fetching images")
            return JSONResponse(
                {"error": LIST_ERROR}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        logger.info("Fetched %d images for page %d", len(result.images), page)
        return JSONResponse(result.model_dump(by_alias=True))

    @app.get("/api/images/stream")
    async def api_images_stream(
        page: int = Query(1, ge=1),
        per_page: int = Query(50, ge=1, le=MAX_PER_PAGE, alias="perPage"),
        search: str = "",
        catalog: ImageCatalog = Depends(get_catalog),
    ):
        """Stream fetch progress as server-sent events, ending with the page itself"""
        channel = ProgressChannel()

        async def _run_fetch() -> None:
            try:
                result = await catalog.list_images(
                    page=page, per_page=per_page, search=search, progress=channel
                )
            except Exception:
                logger.exception("Error streaming images")
                channel.fail(LIST_ERROR)
                return
            channel.complete(result.model_dump(by_alias=True))

        task = asyncio.create_task(_run_fetch())
        app.state.background_fetches.add(task)
        task.add_done_callback(app.state.background_fetches.discard)

        return StreamingResponse(
            channel.stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/api/image")
    async def api_image(
        key: Optional[str] = None, catalog: ImageCatalog = Depends(get_catalog)
    ):
        """Return the raw bytes of one image"""
        if not key:
            return missing_key_response()

        image_data = await catalog.fetch_image(key)
        if not image_data:
            return PlainTextResponse("Image not found", status_code=status.HTTP_404_NOT_FOUND)

        return Response(
            content=image_data,
            media_type="image/png",
            headers={"Cache-Control": "public, max-age=86400"},
        )

    @app.get("/api/image/info")
    async def api_image_info(
        key: Optional[str] = None, catalog: ImageCatalog = Depends(get_catalog)
    ):
        """Return the payload size of one image"""
        if not key:
            return missing_key_response()

        image_data = await catalog.fetch_image(key)
        if not image_data:
            return JSONResponse(
                {"error": "Image not found"}, status_code=status.HTTP_404_NOT_FOUND
            )

        return JSONResponse(ImageInfo(key=key, size=len(image_data)).model_dump(by_alias=True))

    @app.get("/")
    @app.get("/index.html")
    async def index():
        if not INDEX_PATH.is_file():
            return PlainTextResponse("Not found", status_code=status.HTTP_404_NOT_FOUND)
        return FileResponse(INDEX_PATH, media_type="text/html")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=settings.port)

# api/app.py
# FastAPI application exposing upload, gallery listing and search endpoints

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool

from core.context import ServiceContext
from core.errors import NotFound, Unauthorized, ValidationError
from core.models import CallerIdentity
from .schemas import (
    ColorFilterRequest,
    DeleteResponse,
    HealthResponse,
    ImageItem,
    RebuildResponse,
    SearchRequest,
    SearchResponse,
    SimilarRequest,
    to_items,
)

logger = logging.getLogger(__name__)


def create_app(context: ServiceContext) -> FastAPI:
    """Create the API bound to an already wired service context"""

    app = FastAPI(title="Gallery Search API", version="1.0.0")
    app.state.context = context

    if context.config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=context.config.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    pipeline = context.pipeline
    search = context.search

    def get_caller(authorization: Optional[str] = Header(None)) -> CallerIdentity:
        """Resolve the bearer token into the caller identity"""
        return context.authenticator.authenticate(authorization)

    # Error mapping

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=400, content={"message": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"message": str(exc)})

    @app.exception_handler(Unauthorized)
    async def unauthorized(request: Request, exc: Unauthorized):
        logger.warning("%s %s: unauthenticated request", request.method, request.url.path)
        return JSONResponse(
            status_code=401,
            content={"message": "Authentication required"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Routes

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            images=context.store.count(),
            vector_index=len(context.vector_index),
            color_index=len(context.color_index),
            approximate=context.vector_index.is_approximate,
        )

    @app.post("/api/upload", response_model=List[ImageItem])
    async def upload(files: List[UploadFile] = File(...),
                     caller: CallerIdentity = Depends(get_caller)):
        """Store uploads as pending and queue feature extraction"""
        payloads = [(upload.filename or "", await upload.read()) for upload in files]
        records = await run_in_threadpool(pipeline.upload, caller, payloads)
        return to_items(records)

    @app.get("/api/images", response_model=List[ImageItem])
    def list_images(page: int = Query(1), limit: int = Query(20),
                    caller: CallerIdentity = Depends(get_caller)):
        return to_items(search.get_images(caller, page, limit))

    @app.get("/api/images/{image_id}", response_model=ImageItem)
    def get_image(image_id: int, caller: CallerIdentity = Depends(get_caller)):
        """Single image; clients poll this for the terminal processing status"""
        return ImageItem.from_record(search.get_image(caller, image_id))

    @app.delete("/api/images/{image_id}", response_model=DeleteResponse)
    def delete_image(image_id: int, caller: CallerIdentity = Depends(get_caller)):
        pipeline.delete(caller, image_id)
        return DeleteResponse(deleted=image_id)

    @app.post("/api/images/{image_id}/reprocess", response_model=ImageItem)
    def reprocess_image(image_id: int, caller: CallerIdentity = Depends(get_caller)):
        return ImageItem.from_record(pipeline.reprocess(caller, image_id))

    @app.post("/api/search", response_model=SearchResponse)
    def search_images(request: SearchRequest, caller: CallerIdentity = Depends(get_caller)):
        page = search.search_by_text(caller, request.query, request.page, request.limit)
        return SearchResponse.from_page(page)

    @app.post("/api/similar", response_model=List[ImageItem])
    def similar_images(request: SimilarRequest, caller: CallerIdentity = Depends(get_caller)):
        return to_items(search.find_similar(caller, request.image_id, request.limit))

    @app.post("/api/filter-by-color", response_model=List[ImageItem])
    def filter_by_color(request: ColorFilterRequest, caller: CallerIdentity = Depends(get_caller)):
        return to_items(search.filter_by_color(caller, request.color, request.limit))

    @app.post("/api/admin/rebuild-indexes", response_model=RebuildResponse)
    def rebuild_indexes(caller: CallerIdentity = Depends(get_caller)):
        logger.info("Index rebuild requested by %s", caller.user_id)
        return RebuildResponse(**pipeline.rebuild_indexes())

    return app
